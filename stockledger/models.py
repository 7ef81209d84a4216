# Database models for the stock ledger
# Products, the parties we trade with, and the purchase/sale history that drives stock

from datetime import datetime

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event
from sqlalchemy.orm import Session
from werkzeug.security import generate_password_hash, check_password_hash

from .errors import ValidationError

# Initialize SQLAlchemy database instance
# This will be configured and bound to the Flask app by the application factory
db = SQLAlchemy()

PRODUCT_CATEGORIES = ('Glass', 'MS Casting', 'Other disposables')
UNWEIGHED_CATEGORY = 'Other disposables'
PAYMENT_STATUSES = ('unpaid', 'partial', 'paid')


def _iso(value):
    return value.isoformat() if value is not None else None


# ==================== USERS ====================

class User(db.Model):
    """
    User model for authentication and session management.
    Stores user credentials with secure password hashing.
    """
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    password_hash = db.Column(db.String(256), nullable=False)
    name = db.Column(db.String(120), nullable=True)  # Full name shown on the dashboard
    date_created = db.Column(db.DateTime, default=datetime.now)
    posts = db.relationship('Post', back_populates='user', cascade='all, delete-orphan',
                            order_by='Post.created_at.desc()')

    def set_password(self, password):
        """
        Hash and store the user's password securely.
        Uses Werkzeug's generate_password_hash for security.
        """
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        """
        Verify if provided password matches the stored hash.
        Returns True if password is correct, False otherwise.
        """
        return check_password_hash(self.password_hash, password)

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'name': self.name,
            'date_created': _iso(self.date_created),
        }


class Post(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    description = db.Column(db.Text, nullable=True)
    image_url = db.Column(db.String(500), nullable=True)  # Stored as a link, uploads are not handled here
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.now)
    user = db.relationship('User', back_populates='posts')

    def to_dict(self):
        return {
            'id': self.id,
            'description': self.description,
            'image_url': self.image_url,
            'user': self.user.username if self.user else None,
            'created_at': _iso(self.created_at),
        }


# ==================== PRODUCTS & PARTIES ====================

vendor_product = db.Table(
    'vendor_product',
    db.Column('vendor_id', db.Integer, db.ForeignKey('vendor.id'), primary_key=True),
    db.Column('product_id', db.Integer, db.ForeignKey('product.id'), primary_key=True),
)


class Product(db.Model):
    """
    Product model keyed by HSN code.

    ``stock`` is the on-hand counter every availability check reads. It only
    moves through ``stockledger.stock`` so that it always equals
    ``opening_stock`` plus purchased units minus sold units.
    """
    id = db.Column(db.Integer, primary_key=True)
    hsn_code = db.Column(db.String(40), unique=True, nullable=False, index=True)
    product_name = db.Column(db.String(120), nullable=False)
    category = db.Column(db.String(40), nullable=True, default='Glass')
    product_weight = db.Column(db.Float, nullable=True)  # Required unless category is 'Other disposables'
    cost = db.Column(db.Float, nullable=False, default=0.0)
    selling_price = db.Column(db.Float, nullable=False, default=0.0)
    opening_stock = db.Column(db.Integer, nullable=False, default=0)  # Units on hand at creation
    stock = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, default=datetime.now)
    updated_at = db.Column(db.DateTime, default=datetime.now, onupdate=datetime.now)
    vendors = db.relationship('Vendor', secondary=vendor_product, back_populates='products')

    __table_args__ = (
        db.CheckConstraint('stock >= 0', name='ck_product_stock_non_negative'),
    )

    def validate(self):
        """
        Check the field rules a product must satisfy before it is saved.
        Raises ValidationError describing the first broken rule.
        """
        if not self.hsn_code:
            raise ValidationError('HSN code is required.')
        if not self.product_name:
            raise ValidationError('Product name is required.')
        if self.category not in PRODUCT_CATEGORIES:
            raise ValidationError(f'Category must be one of: {", ".join(PRODUCT_CATEGORIES)}.')
        if self.category != UNWEIGHED_CATEGORY and self.product_weight is None:
            raise ValidationError('Product weight is required for this category.')
        if self.cost is None or self.cost < 0:
            raise ValidationError('Cost must be zero or more.')
        if self.selling_price is None or self.selling_price < 0:
            raise ValidationError('Selling price must be zero or more.')
        if self.stock is not None and self.stock < 0:
            raise ValidationError('Stock cannot be negative.')

    def to_dict(self):
        return {
            'id': self.id,
            'hsn_code': self.hsn_code,
            'product_name': self.product_name,
            'category': self.category,
            'product_weight': self.product_weight,
            'cost': self.cost,
            'selling_price': self.selling_price,
            'opening_stock': self.opening_stock,
            'stock': self.stock,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


class Customer(db.Model):
    __code_prefix__ = 'C'
    __code_field__ = 'cust_id'

    id = db.Column(db.Integer, primary_key=True)
    cust_id = db.Column(db.String(20), unique=True, nullable=False, index=True)  # C001, C002, ...
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    phone = db.Column(db.String(40), nullable=True)
    address = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.now)
    updated_at = db.Column(db.DateTime, default=datetime.now, onupdate=datetime.now)

    def to_dict(self):
        return {
            'id': self.id,
            'cust_id': self.cust_id,
            'name': self.name,
            'email': self.email,
            'phone': self.phone,
            'address': self.address,
        }


class Vendor(db.Model):
    """Supplier record. ``products`` lists what the vendor can supply."""
    __code_prefix__ = 'V'
    __code_field__ = 'vendor_id'

    id = db.Column(db.Integer, primary_key=True)
    vendor_id = db.Column(db.String(20), unique=True, nullable=False, index=True)  # V001, V002, ...
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(120), nullable=True)
    phone = db.Column(db.String(40), nullable=True)
    address = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.now)
    products = db.relationship('Product', secondary=vendor_product, back_populates='vendors',
                               lazy='selectin')

    def supplies(self, product_id):
        return any(p.id == product_id for p in self.products)

    def to_dict(self):
        return {
            'id': self.id,
            'vendor_id': self.vendor_id,
            'name': self.name,
            'email': self.email,
            'phone': self.phone,
            'address': self.address,
            'products': [p.id for p in self.products],
        }


class Employee(db.Model):
    __code_prefix__ = 'E'
    __code_field__ = 'emp_id'

    id = db.Column(db.Integer, primary_key=True)
    emp_id = db.Column(db.String(20), unique=True, nullable=False, index=True)  # E001, E002, ...
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    phone = db.Column(db.String(40), nullable=False)
    address = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(40), nullable=False, default='staff')
    created_at = db.Column(db.DateTime, default=datetime.now)

    def to_dict(self):
        return {
            'id': self.id,
            'emp_id': self.emp_id,
            'name': self.name,
            'email': self.email,
            'phone': self.phone,
            'address': self.address,
            'role': self.role,
        }


# ==================== TRANSACTIONS ====================

class Purchase(db.Model):
    """
    Purchase transaction model. Creating one adds ``units`` to the product's stock.
    Product name and HSN code are snapshotted so history survives product renames.
    """
    __code_prefix__ = 'P'
    __code_field__ = 'purchase_id'

    id = db.Column(db.Integer, primary_key=True)
    purchase_id = db.Column(db.String(20), unique=True, nullable=False, index=True)  # P001, P002, ...
    product_id = db.Column(db.Integer, db.ForeignKey('product.id'), nullable=False)
    hsn_code = db.Column(db.String(40), nullable=False)
    product_name = db.Column(db.String(120), nullable=False)
    vendor_ref = db.Column(db.Integer, db.ForeignKey('vendor.id'), nullable=True)
    vendor = db.Column(db.String(120), nullable=False, default='')  # Vendor name as entered or resolved
    date = db.Column(db.DateTime, nullable=False, default=datetime.now)
    units = db.Column(db.Integer, nullable=False)
    cost = db.Column(db.Float, nullable=False)
    amount = db.Column(db.Float, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.now)
    product = db.relationship('Product')
    supplier = db.relationship('Vendor')

    def to_dict(self):
        return {
            'id': self.id,
            'purchase_id': self.purchase_id,
            'product_id': self.product_id,
            'hsn_code': self.hsn_code,
            'product_name': self.product_name,
            'vendor': self.vendor,
            'vendor_ref': self.vendor_ref,
            'date': _iso(self.date),
            'units': self.units,
            'cost': self.cost,
            'amount': self.amount,
        }


class Sale(db.Model):
    """
    Sales transaction made of one or more line items.
    Totals are recomputed from the line items on every flush.
    """
    __code_prefix__ = 'S'
    __code_field__ = 'sale_id'

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.String(20), unique=True, nullable=False, index=True)  # S001, S002, ...
    customer_id = db.Column(db.Integer, db.ForeignKey('customer.id'), nullable=False)
    customer_name = db.Column(db.String(120), nullable=False)
    date = db.Column(db.DateTime, nullable=False, default=datetime.now)
    total_amount = db.Column(db.Float, nullable=False, default=0.0)
    total_units = db.Column(db.Integer, nullable=False, default=0)
    payment_status = db.Column(db.String(10), nullable=False, default='unpaid')
    paid_amount = db.Column(db.Float, nullable=False, default=0.0)
    created_at = db.Column(db.DateTime, default=datetime.now)
    customer = db.relationship('Customer')
    line_items = db.relationship('SaleLineItem', back_populates='sale', cascade='all, delete-orphan',
                                 order_by='SaleLineItem.id')
    gatepass = db.relationship('Gatepass', back_populates='sale', uselist=False, cascade='all, delete-orphan')

    def compute_totals(self):
        self.total_amount = sum(item.amount or 0.0 for item in self.line_items)
        self.total_units = sum(item.units or 0 for item in self.line_items)

    def units_by_product(self):
        """Map product id -> total units across this sale's line items."""
        totals = {}
        for item in self.line_items:
            totals[item.product_id] = totals.get(item.product_id, 0) + item.units
        return totals

    def to_dict(self):
        return {
            'id': self.id,
            'sale_id': self.sale_id,
            'customer_id': self.customer_id,
            'cust_id': self.customer.cust_id if self.customer else None,
            'customer_name': self.customer_name,
            'date': _iso(self.date),
            'line_items': [item.to_dict() for item in self.line_items],
            'total_amount': self.total_amount,
            'total_units': self.total_units,
            'payment_status': self.payment_status,
            'paid_amount': self.paid_amount,
        }


class SaleLineItem(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey('sale.id'), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey('product.id'), nullable=False)
    hsn_code = db.Column(db.String(40), nullable=False)
    product_name = db.Column(db.String(120), nullable=False)
    units = db.Column(db.Integer, nullable=False)
    price = db.Column(db.Float, nullable=False)
    amount = db.Column(db.Float, nullable=False)
    sale = db.relationship('Sale', back_populates='line_items')
    product = db.relationship('Product')

    __table_args__ = (
        db.CheckConstraint('units >= 1', name='ck_line_item_units_positive'),
        db.CheckConstraint('price >= 0', name='ck_line_item_price_non_negative'),
    )

    def to_dict(self):
        return {
            'product_id': self.product_id,
            'hsn_code': self.hsn_code,
            'product_name': self.product_name,
            'units': self.units,
            'price': self.price,
            'amount': self.amount,
        }


class Gatepass(db.Model):
    """Dispatch pass for the goods of one sale. Only one may exist per sale."""
    __code_prefix__ = 'GP'
    __code_field__ = 'gatepass_id'

    id = db.Column(db.Integer, primary_key=True)
    sale_ref = db.Column(db.Integer, db.ForeignKey('sale.id'), unique=True, nullable=False)
    gatepass_id = db.Column(db.String(20), unique=True, nullable=False)
    vehicle_number = db.Column(db.String(40), nullable=False)
    driver_name = db.Column(db.String(120), nullable=False, default='')
    products = db.Column(db.JSON, nullable=False, default=list)  # [{'product_name': ..., 'quantity': ...}]
    created_by = db.Column(db.String(80), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.now)
    sale = db.relationship('Sale', back_populates='gatepass')

    def to_dict(self):
        return {
            'id': self.id,
            'sale_id': self.sale.sale_id if self.sale else None,
            'gatepass_id': self.gatepass_id,
            'vehicle_number': self.vehicle_number,
            'driver_name': self.driver_name,
            'products': self.products,
            'created_by': self.created_by,
            'created_at': _iso(self.created_at),
        }


# ==================== CODES & LIFECYCLE HOOKS ====================

def format_code(prefix, number):
    """Zero-pad to three digits: P001 ... P999, then P1000."""
    return f"{prefix}{number:03d}"


def next_code(session, model, prefix, field):
    """
    Return the next sequential code for ``model``.

    Finds the highest numeric suffix among existing codes with ``prefix``
    and adds one. Codes that do not follow PREFIX + digits are ignored.
    """
    column = getattr(model, field)
    existing_codes = [row[0] for row in session.query(column).filter(column.isnot(None)).all()]
    numeric_vals = []
    for c in existing_codes:
        # Check if code follows pattern prefix + digits (e.g., P001, P1234)
        suffix = c[len(prefix):]
        if c.startswith(prefix) and suffix.isdigit():
            numeric_vals.append(int(suffix))
    next_num = (max(numeric_vals) + 1) if numeric_vals else 1
    return format_code(prefix, next_num)


@event.listens_for(Session, 'before_flush')
def _assign_codes_and_totals(session, flush_context, instances):
    """
    Lifecycle hook run before every flush.
    Gives new coded records their human-readable ID and refreshes sale totals.
    """
    allocated = {}
    with session.no_autoflush:
        for obj in list(session.new):
            prefix = getattr(obj, '__code_prefix__', None)
            if prefix is None or getattr(obj, obj.__code_field__):
                continue
            model = type(obj)
            if model not in allocated:
                start = next_code(session, model, prefix, obj.__code_field__)
                allocated[model] = int(start[len(prefix):])
            else:
                allocated[model] += 1
            setattr(obj, obj.__code_field__, format_code(prefix, allocated[model]))

        for obj in list(session.new) + list(session.dirty):
            if isinstance(obj, Sale):
                obj.compute_totals()
