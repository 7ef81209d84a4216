# Flask Stock Ledger
# Application factory with configuration, session auth, JSON routes and CLI commands

import logging
import os
from datetime import datetime
from functools import wraps

import click
from flask import Flask, request, redirect, url_for, session, jsonify, g
from flask.logging import default_handler
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from .errors import LedgerError, ValidationError, NotFoundError, ConflictError
from .models import (
    db, User, Post, Product, Customer, Vendor, Employee, Purchase, Sale, SaleLineItem, Gatepass,
    PRODUCT_CATEGORIES,
)
from . import stock

# ==================== REQUEST PARSING HELPERS ====================


def _payload():
    """Return the request body as a dict, whether it came as JSON or a form post."""
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


def _text(data, key, default=None):
    value = data.get(key)
    if value is None:
        return default
    value = str(value).strip()
    return value or default


def _parse_int(data, key, default=None):
    value = data.get(key)
    if value is None or value == '':
        return default
    # JSON true/false and 2.7 must not turn into 1 and 2
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise ValidationError(f'{key} must be a whole number.')
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{key} must be a whole number.')


def _parse_float(data, key, default=None):
    value = data.get(key)
    if value is None or value == '':
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{key} must be a number.')


def _parse_date(data, key='date'):
    value = _text(data, key)
    if value is None:
        return None
    try:
        # Accepts both 2024-05-01 and 2024-05-01T10:30:00
        return datetime.fromisoformat(value)
    except ValueError:
        raise ValidationError(f'{key} must be an ISO date (YYYY-MM-DD).')


def _require(data, *keys):
    missing = [k for k in keys if _text(data, k) is None]
    if missing:
        raise ValidationError(f'Missing required fields: {", ".join(missing)}')


def _get_or_404(model, record_id, label=None):
    obj = db.session.get(model, record_id)
    if obj is None:
        raise NotFoundError(f'{label or model.__name__} not found')
    return obj


def _find_product(data):
    """Locate a product by ``product_id`` or, failing that, by ``hsn_code``."""
    product_id = _parse_int(data, 'product_id')
    if product_id is not None:
        return db.session.get(Product, product_id)
    hsn_code = _text(data, 'hsn_code')
    if hsn_code:
        return Product.query.filter_by(hsn_code=hsn_code).first()
    return None


def _parse_lines(data):
    """
    Read sale line items from a request.

    Accepts a ``line_items`` list, or a single product (``product_id`` or
    ``hsn_code``) with ``units`` and ``price`` at the top level, which becomes
    a one-line sale. Returns None when the request carries neither.
    Price defaults to the product's selling price.
    """
    if 'line_items' in data:
        raw = data.get('line_items')
        if not isinstance(raw, list):
            raise ValidationError('line_items must be a list.')
    elif _text(data, 'product_id') or _text(data, 'hsn_code'):
        raw = [data]
    else:
        return None

    lines = []
    for entry in raw:
        if not isinstance(entry, dict):
            raise ValidationError('Each line item must be an object.')
        product = _find_product(entry)
        if product is None:
            raise ValidationError('Product not found for sale.')
        lines.append({
            'product': product,
            'units': _parse_int(entry, 'units'),
            'price': _parse_float(entry, 'price', default=product.selling_price or product.cost or 0.0),
        })
    return lines


def _resolve_product_ids(raw):
    """Turn a list (or single value) of product ids into Product rows."""
    if raw is None or raw == '':
        return []
    ids = raw if isinstance(raw, list) else [raw]
    products = []
    for value in ids:
        try:
            product = db.session.get(Product, int(value))
        except (TypeError, ValueError):
            raise ValidationError(f'Invalid product id: {value}')
        if product is None:
            raise ValidationError(f'Product {value} not found.')
        products.append(product)
    return products


def _configure_logging(app):
    """
    Apply LOG_LEVEL to the app logger and route the package's module loggers
    through Flask's default handler.
    """
    level = app.config.get('LOG_LEVEL', 'INFO')
    app.logger.setLevel(level)
    package_logger = logging.getLogger('stockledger')
    package_logger.setLevel(level)
    if default_handler not in package_logger.handlers:
        package_logger.addHandler(default_handler)


# ==================== APPLICATION FACTORY ====================

def create_app(test_config=None):
    """
    Application factory function that creates and configures the Flask application.

    Args:
        test_config (dict, optional): Configuration dictionary for testing.
                                    If provided, overrides default config settings.

    Returns:
        Flask: Configured Flask application instance ready to run.
    """
    app = Flask(__name__)

    # ==================== APPLICATION CONFIGURATION ====================
    # SQLite database is stored in the project root unless DATABASE_URL says otherwise
    project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
    db_path = os.path.join(project_root, 'stockledger.db')
    app.config.from_mapping(
        SECRET_KEY=os.environ.get('FLASK_SECRET', 'dev-secret'),  # Use env var in production
        SQLALCHEMY_DATABASE_URI=os.environ.get('DATABASE_URL', f"sqlite:///{db_path}"),
        SQLALCHEMY_TRACK_MODIFICATIONS=False,
        LOG_LEVEL=os.environ.get('LOG_LEVEL', 'INFO'),
        LOW_STOCK_THRESHOLD=int(os.environ.get('LOW_STOCK_THRESHOLD', '10')),  # Dashboard low-stock cut-off
        DASHBOARD_LIMIT=int(os.environ.get('DASHBOARD_LIMIT', '5')),  # Rows per dashboard list
    )

    # Override config with test settings if provided (useful for unit tests)
    if test_config:
        app.config.update(test_config)

    _configure_logging(app)
    db.init_app(app)

    with app.app_context():
        db.create_all()

    # ==================== ERROR HANDLING ====================

    @app.errorhandler(LedgerError)
    def handle_ledger_error(exc):
        app.logger.warning('%s %s refused: %s', request.method, request.path, exc.message)
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(IntegrityError)
    def handle_integrity_error(exc):
        # Unique constraint lost a race with another request
        db.session.rollback()
        app.logger.warning('Integrity error on %s %s: %s', request.method, request.path, exc.orig)
        return jsonify({'error': 'Record conflicts with existing data.'}), 409

    @app.errorhandler(404)
    def handle_not_found(exc):
        return jsonify({'error': 'Not found'}), 404

    # ==================== AUTHENTICATION & SESSION MANAGEMENT ====================

    @app.before_request
    def load_current_user():
        """
        Load the current user from session before each request.
        Makes user object available in request context (g.current_user).
        """
        user_id = session.get('user_id')
        g.current_user = db.session.get(User, user_id) if user_id is not None else None

    def login_required(fn):
        """
        Decorator to protect routes that require authentication.
        API clients get a 401 JSON body, browsers are redirected to the login page.
        """
        @wraps(fn)
        def wrapped(*args, **kwargs):
            if g.get('current_user') is None:
                if request.path.startswith('/api/') or request.accept_mimetypes.best == 'application/json':
                    return jsonify({'error': 'You must be logged in to access that page.'}), 401
                return redirect(url_for('login'))
            return fn(*args, **kwargs)

        return wrapped

    # ==================== AUTHENTICATION ROUTES ====================

    @app.route('/signup', methods=['POST'])
    def signup():
        """Register a new user with a hashed password."""
        data = _payload()
        username = _text(data, 'username', '')
        password = data.get('password') or ''

        if not username or not password:
            raise ValidationError('Username and password are required.')
        if User.query.filter_by(username=username).first():
            raise ConflictError('Username already exists.')

        with stock.transaction():
            user = User(username=username, name=_text(data, 'name'))
            user.set_password(password)  # This hashes the password securely
            db.session.add(user)
        app.logger.info('Registered user %s', username)
        return jsonify({'message': 'Account created successfully. Please log in.', 'user': user.to_dict()}), 201

    @app.route('/login', methods=['GET', 'POST'])
    def login():
        """
        GET: tell the client it has to authenticate.
        POST: verify credentials and start a session.
        """
        if request.method == 'GET':
            return jsonify({'message': 'Please log in.'})

        data = _payload()
        username = _text(data, 'username', '')
        password = data.get('password') or ''
        if not username or not password:
            raise ValidationError('Please enter both username and password.')

        user = User.query.filter_by(username=username).first()
        if user is None or not user.check_password(password):
            app.logger.info('Failed login for %s', username)
            return jsonify({'error': 'Invalid username or password.'}), 401

        session.clear()  # Drop anything left over from a previous session
        session['user_id'] = user.id
        return jsonify({'message': 'Welcome back!', 'user': user.to_dict()})

    @app.route('/logout')
    def logout():
        session.clear()
        return jsonify({'message': 'You have been logged out.'})

    # ==================== DASHBOARD & REPORTS ====================

    @app.route('/')
    @login_required
    def home():
        """
        Dashboard summary: product count, inventory value, best sellers,
        low stock, month-to-date totals and the latest transactions.
        """
        limit = app.config['DASHBOARD_LIMIT']
        now = datetime.now()
        start_of_month = datetime(now.year, now.month, 1)

        total_products = Product.query.count()
        inventory_value = db.session.query(
            db.func.coalesce(db.func.sum(Product.stock * Product.cost), 0.0)
        ).scalar() or 0.0

        # Top selling products by units across all sale line items
        units_sold = db.func.sum(SaleLineItem.units)
        top_products = [
            {'product_id': pid, 'product_name': name, 'units': units or 0, 'amount': amount or 0.0}
            for pid, name, units, amount in db.session.query(
                SaleLineItem.product_id, db.func.min(SaleLineItem.product_name), units_sold,
                db.func.sum(SaleLineItem.amount),
            ).group_by(SaleLineItem.product_id).order_by(units_sold.desc()).limit(limit).all()
        ]

        low_stock = (
            Product.query.filter(Product.stock < app.config['LOW_STOCK_THRESHOLD'])
            .order_by(Product.stock.asc()).limit(limit).all()
        )

        sales_this_month = db.session.query(
            db.func.coalesce(db.func.sum(Sale.total_amount), 0.0)
        ).filter(Sale.date >= start_of_month).scalar() or 0.0
        purchases_this_month = db.session.query(
            db.func.coalesce(db.func.sum(Purchase.amount), 0.0)
        ).filter(Purchase.date >= start_of_month).scalar() or 0.0

        recent_sales = Sale.query.order_by(Sale.date.desc(), Sale.id.desc()).limit(limit).all()
        recent_purchases = Purchase.query.order_by(Purchase.date.desc(), Purchase.id.desc()).limit(limit).all()

        return jsonify({
            'user': g.current_user.to_dict(),
            'total_products': total_products,
            'inventory_value': inventory_value,
            'top_products': top_products,
            'low_stock': [p.to_dict() for p in low_stock],
            'sales_this_month': sales_this_month,
            'purchases_this_month': purchases_this_month,
            'recent_sales': [s.to_dict() for s in recent_sales],
            'recent_purchases': [p.to_dict() for p in recent_purchases],
        })

    @app.route('/reports')
    @login_required
    def reports():
        """
        Sales and purchase totals with a simple profit/loss figure.
        Profit/loss is total sales revenue minus total purchase cost.
        """
        total_sales_txns = db.session.query(db.func.count(Sale.id)).scalar() or 0
        total_sales_qty = db.session.query(db.func.coalesce(db.func.sum(SaleLineItem.units), 0)).scalar() or 0
        total_sales_amount = db.session.query(
            db.func.coalesce(db.func.sum(SaleLineItem.amount), 0.0)
        ).scalar() or 0.0

        total_purchase_txns = db.session.query(db.func.count(Purchase.id)).scalar() or 0
        total_purchase_qty = db.session.query(db.func.coalesce(db.func.sum(Purchase.units), 0)).scalar() or 0
        total_purchase_cost = db.session.query(
            db.func.coalesce(db.func.sum(Purchase.amount), 0.0)
        ).scalar() or 0.0

        return jsonify({
            'total_sales_txns': total_sales_txns,
            'total_sales_qty': total_sales_qty,
            'total_sales_amount': total_sales_amount,
            'total_purchase_txns': total_purchase_txns,
            'total_purchase_qty': total_purchase_qty,
            'total_purchase_cost': total_purchase_cost,
            'profit_loss': total_sales_amount - total_purchase_cost,
        })

    # ==================== PRODUCT ROUTES ====================

    @app.route('/api/products', methods=['GET', 'POST'])
    @login_required
    def products():
        """
        GET: all products ordered by name.
        POST: create a product. ``stock`` sets the opening stock.
        """
        if request.method == 'GET':
            items = Product.query.order_by(Product.product_name).all()
            return jsonify([p.to_dict() for p in items])

        data = _payload()
        hsn_code = _text(data, 'hsn_code')
        if hsn_code and Product.query.filter_by(hsn_code=hsn_code).first():
            raise ConflictError('HSN Code already exists')

        opening = _parse_int(data, 'stock', 0)
        product = Product(
            hsn_code=hsn_code,
            product_name=_text(data, 'product_name'),
            category=_text(data, 'category', 'Glass'),
            product_weight=_parse_float(data, 'product_weight'),
            cost=_parse_float(data, 'cost'),
            selling_price=_parse_float(data, 'selling_price'),
            opening_stock=opening,
            stock=opening,
        )
        product.validate()

        with stock.transaction():
            db.session.add(product)
        app.logger.info('Created product %s with opening stock %s', product.hsn_code, opening)
        return jsonify(product.to_dict()), 201

    @app.route('/api/products/<int:product_id>', methods=['GET', 'PUT', 'DELETE'])
    @login_required
    def product_detail(product_id):
        """
        GET/PUT/DELETE one product.

        Stock is not editable here; it follows purchases and sales. Changing
        ``opening_stock`` shifts the stock counter by the same amount.
        """
        product = _get_or_404(Product, product_id, 'Product')

        if request.method == 'GET':
            return jsonify(product.to_dict())

        if request.method == 'DELETE':
            # Products with transaction history must stay for the ledger to balance
            has_purchases = Purchase.query.filter_by(product_id=product.id).first() is not None
            has_sales = SaleLineItem.query.filter_by(product_id=product.id).first() is not None
            if has_purchases or has_sales:
                raise ConflictError('Cannot delete product with associated purchases or sales')
            with stock.transaction():
                db.session.delete(product)
            app.logger.info('Deleted product %s', product.hsn_code)
            return jsonify({'message': 'Product deleted successfully'})

        data = _payload()
        if 'stock' in data:
            raise ValidationError('Stock follows purchases and sales; adjust opening_stock instead.')

        hsn_code = _text(data, 'hsn_code')
        if hsn_code:
            exists = Product.query.filter(Product.hsn_code == hsn_code, Product.id != product.id).first()
            if exists:
                raise ConflictError('HSN Code already exists')

        with stock.transaction():
            product.hsn_code = hsn_code or product.hsn_code
            product.product_name = _text(data, 'product_name', product.product_name)
            product.category = _text(data, 'category', product.category)
            if 'product_weight' in data:
                product.product_weight = _parse_float(data, 'product_weight')
            product.cost = _parse_float(data, 'cost', product.cost)
            product.selling_price = _parse_float(data, 'selling_price', product.selling_price)
            product.validate()

            opening = _parse_int(data, 'opening_stock')
            if opening is not None and opening != product.opening_stock:
                if opening < 0:
                    raise ValidationError('Opening stock cannot be negative.')
                stock.adjust_stock(product.id, opening - product.opening_stock)
                product.opening_stock = opening
        return jsonify(product.to_dict())

    @app.route('/api/products/<int:product_id>/stock')
    @login_required
    def product_stock(product_id):
        """Stock counter next to the value its purchase and sale history implies."""
        product = _get_or_404(Product, product_id, 'Product')
        expected = stock.derived_stock(product)
        return jsonify({
            'id': product.id,
            'hsn_code': product.hsn_code,
            'stock': product.stock,
            'expected': expected,
            'drift': product.stock - expected,
        })

    # ==================== CUSTOMER ROUTES ====================

    @app.route('/api/customers', methods=['GET', 'POST'])
    @login_required
    def customers():
        if request.method == 'GET':
            return jsonify([c.to_dict() for c in Customer.query.order_by(Customer.name).all()])

        data = _payload()
        _require(data, 'name', 'email', 'address')
        email = _text(data, 'email')
        if Customer.query.filter_by(email=email).first():
            raise ConflictError('Email already in use')

        customer = Customer(name=_text(data, 'name'), email=email, phone=_text(data, 'phone'),
                            address=_text(data, 'address'))
        with stock.transaction():
            db.session.add(customer)
        app.logger.info('Created customer %s', customer.cust_id)
        return jsonify(customer.to_dict()), 201

    @app.route('/api/customers/<int:customer_id>', methods=['GET', 'PUT', 'DELETE'])
    @login_required
    def customer_detail(customer_id):
        customer = _get_or_404(Customer, customer_id, 'Customer')

        if request.method == 'GET':
            return jsonify(customer.to_dict())

        if request.method == 'DELETE':
            if Sale.query.filter_by(customer_id=customer.id).first() is not None:
                raise ConflictError('Cannot delete customer with sales')
            with stock.transaction():
                db.session.delete(customer)
            return jsonify({'message': 'Customer deleted'})

        data = _payload()
        email = _text(data, 'email')
        if email and Customer.query.filter(Customer.email == email, Customer.id != customer.id).first():
            raise ConflictError('Email already in use')
        with stock.transaction():
            customer.name = _text(data, 'name', customer.name)
            customer.email = email or customer.email
            customer.phone = _text(data, 'phone', customer.phone)
            customer.address = _text(data, 'address', customer.address)
        return jsonify(customer.to_dict())

    # ==================== VENDOR ROUTES ====================

    @app.route('/api/vendors', methods=['GET', 'POST'])
    @login_required
    def vendors():
        """
        GET: vendors ordered by name, optionally only those supplying ``product_id``.
        POST: create a vendor with the list of product ids it supplies.
        """
        if request.method == 'GET':
            product_id = request.args.get('product_id', type=int)
            if product_id is not None:
                items = stock.suppliers_of(product_id)
            else:
                items = Vendor.query.order_by(Vendor.name).all()
            return jsonify([v.to_dict() for v in items])

        data = _payload()
        _require(data, 'name')
        vendor = Vendor(
            name=_text(data, 'name'),
            email=_text(data, 'email'),
            phone=_text(data, 'phone'),
            address=_text(data, 'address'),
            products=_resolve_product_ids(data.get('products')),
        )
        with stock.transaction():
            db.session.add(vendor)
        app.logger.info('Created vendor %s', vendor.vendor_id)
        return jsonify(vendor.to_dict()), 201

    @app.route('/api/vendors/<int:vendor_id>', methods=['GET', 'PUT', 'DELETE'])
    @login_required
    def vendor_detail(vendor_id):
        vendor = _get_or_404(Vendor, vendor_id, 'Vendor')

        if request.method == 'GET':
            return jsonify(vendor.to_dict())

        if request.method == 'DELETE':
            if Purchase.query.filter_by(vendor_ref=vendor.id).first() is not None:
                raise ConflictError('Cannot delete vendor with associated purchases')
            with stock.transaction():
                db.session.delete(vendor)
            return jsonify({'message': 'Vendor deleted'})

        data = _payload()
        with stock.transaction():
            vendor.name = _text(data, 'name', vendor.name)
            vendor.email = _text(data, 'email', vendor.email)
            vendor.phone = _text(data, 'phone', vendor.phone)
            vendor.address = _text(data, 'address', vendor.address)
            if 'products' in data:
                vendor.products = _resolve_product_ids(data.get('products'))
        return jsonify(vendor.to_dict())

    # ==================== EMPLOYEE ROUTES ====================

    @app.route('/api/employees', methods=['GET', 'POST'])
    @login_required
    def employees():
        if request.method == 'GET':
            return jsonify([e.to_dict() for e in Employee.query.order_by(Employee.name).all()])

        data = _payload()
        _require(data, 'name', 'email', 'phone', 'address')
        email = _text(data, 'email')
        if Employee.query.filter_by(email=email).first():
            raise ConflictError('Email already in use')

        employee = Employee(name=_text(data, 'name'), email=email, phone=_text(data, 'phone'),
                            address=_text(data, 'address'), role=_text(data, 'role', 'staff'))
        with stock.transaction():
            db.session.add(employee)
        return jsonify(employee.to_dict()), 201

    @app.route('/api/employees/<int:employee_id>', methods=['GET', 'PUT', 'DELETE'])
    @login_required
    def employee_detail(employee_id):
        employee = _get_or_404(Employee, employee_id, 'Employee')

        if request.method == 'GET':
            return jsonify(employee.to_dict())

        if request.method == 'DELETE':
            with stock.transaction():
                db.session.delete(employee)
            return jsonify({'message': 'Employee deleted'})

        data = _payload()
        email = _text(data, 'email')
        if email and Employee.query.filter(Employee.email == email, Employee.id != employee.id).first():
            raise ConflictError('Email already in use')
        with stock.transaction():
            employee.name = _text(data, 'name', employee.name)
            employee.email = email or employee.email
            employee.phone = _text(data, 'phone', employee.phone)
            employee.address = _text(data, 'address', employee.address)
            employee.role = _text(data, 'role', employee.role)
        return jsonify(employee.to_dict())

    # ==================== PURCHASE ROUTES ====================

    @app.route('/api/purchases', methods=['GET', 'POST'])
    @login_required
    def purchases():
        """
        GET: purchase history, most recent first.
        POST: record a purchase and add its units to the product's stock.
        """
        if request.method == 'GET':
            items = Purchase.query.order_by(Purchase.date.desc(), Purchase.id.desc()).all()
            return jsonify([p.to_dict() for p in items])

        data = _payload()
        product = _find_product(data)
        if product is None:
            raise ValidationError('Product not found for purchase')

        vendor = None
        vendor_ref = _parse_int(data, 'vendor_id')
        if vendor_ref is not None:
            vendor = _get_or_404(Vendor, vendor_ref, 'Vendor')

        with stock.transaction():
            purchase = stock.record_purchase(
                product,
                units=_parse_int(data, 'units'),
                cost=_parse_float(data, 'cost'),
                vendor=vendor,
                vendor_name=_text(data, 'vendor', ''),
                date=_parse_date(data),
            )
        app.logger.info('Recorded purchase %s: %s x %s', purchase.purchase_id, purchase.units, purchase.hsn_code)
        return jsonify(purchase.to_dict()), 201

    @app.route('/api/purchases/<int:purchase_id>', methods=['GET', 'PUT', 'DELETE'])
    @login_required
    def purchase_detail(purchase_id):
        """
        PUT may change the product, units, cost, vendor or date; stock moves
        to match. DELETE takes the purchased units back out of stock.
        """
        purchase = _get_or_404(Purchase, purchase_id, 'Purchase')

        if request.method == 'GET':
            return jsonify(purchase.to_dict())

        if request.method == 'DELETE':
            code = purchase.purchase_id
            with stock.transaction():
                stock.delete_purchase(purchase)
            app.logger.info('Deleted purchase %s', code)
            return jsonify({'message': 'Purchase deleted'})

        data = _payload()
        product = None
        if _text(data, 'product_id') or _text(data, 'hsn_code'):
            product = _find_product(data)
            if product is None:
                raise ValidationError('Product not found for purchase')

        vendor = None
        vendor_ref = _parse_int(data, 'vendor_id')
        if vendor_ref is not None:
            vendor = _get_or_404(Vendor, vendor_ref, 'Vendor')
        # A vendor name sent without an id replaces the link with free text
        vendor_name = None
        if vendor is None and 'vendor' in data:
            vendor_name = _text(data, 'vendor', '')

        with stock.transaction():
            stock.update_purchase(
                purchase,
                product=product,
                units=_parse_int(data, 'units'),
                cost=_parse_float(data, 'cost'),
                vendor=vendor,
                vendor_name=vendor_name,
                date=_parse_date(data),
            )
        app.logger.info('Updated purchase %s', purchase.purchase_id)
        return jsonify(purchase.to_dict())

    # ==================== SALES ROUTES ====================

    @app.route('/api/sales', methods=['GET', 'POST'])
    @login_required
    def sales():
        """
        GET: sales history, most recent first.
        POST: record a sale for ``customer_id``. Stock is checked and taken
        for every line item in one transaction.
        """
        if request.method == 'GET':
            items = Sale.query.order_by(Sale.date.desc(), Sale.id.desc()).all()
            return jsonify([s.to_dict() for s in items])

        data = _payload()
        customer_id = _parse_int(data, 'customer_id')
        if customer_id is None:
            raise ValidationError('Missing required fields: customer_id')
        customer = db.session.get(Customer, customer_id)
        if customer is None:
            raise ValidationError('Customer not found for sale')

        lines = _parse_lines(data)
        if lines is None:
            raise ValidationError('A sale needs at least one line item.')

        with stock.transaction():
            sale = stock.record_sale(
                customer,
                lines,
                date=_parse_date(data),
                paid_amount=_parse_float(data, 'paid_amount'),
                payment_status=_text(data, 'payment_status'),
            )
        app.logger.info('Recorded sale %s for %s: %s units', sale.sale_id, customer.cust_id, sale.total_units)
        return jsonify(sale.to_dict()), 201

    @app.route('/api/sales/<int:sale_id>', methods=['GET', 'PUT', 'DELETE'])
    @login_required
    def sale_detail(sale_id):
        """
        PUT may replace the line items, the customer, the date or the payment
        fields. DELETE returns every sold unit to stock.
        """
        sale = _get_or_404(Sale, sale_id, 'Sale')

        if request.method == 'GET':
            return jsonify(sale.to_dict())

        if request.method == 'DELETE':
            code = sale.sale_id
            with stock.transaction():
                stock.delete_sale(sale)
            app.logger.info('Deleted sale %s', code)
            return jsonify({'message': 'Sale deleted'})

        data = _payload()
        customer = None
        customer_id = _parse_int(data, 'customer_id')
        if customer_id is not None:
            customer = db.session.get(Customer, customer_id)
            if customer is None:
                raise ValidationError('Customer not found for sale')

        with stock.transaction():
            stock.update_sale(
                sale,
                customer=customer,
                lines=_parse_lines(data),
                date=_parse_date(data),
                paid_amount=_parse_float(data, 'paid_amount'),
                payment_status=_text(data, 'payment_status'),
            )
        app.logger.info('Updated sale %s', sale.sale_id)
        return jsonify(sale.to_dict())

    @app.route('/api/sales/<int:sale_id>/gatepass', methods=['GET', 'POST'])
    @login_required
    def sale_gatepass(sale_id):
        """
        GET: the gatepass issued for a sale.
        POST: issue one; a sale can only ever have a single gatepass.
        """
        sale = _get_or_404(Sale, sale_id, 'Sale')

        if request.method == 'GET':
            if sale.gatepass is None:
                raise NotFoundError('Gatepass not found')
            return jsonify(sale.gatepass.to_dict())

        if sale.gatepass is not None:
            raise ConflictError('A gatepass already exists for this sale')
        data = _payload()
        _require(data, 'vehicle_number')

        with stock.transaction():
            gatepass = Gatepass(
                sale=sale,
                vehicle_number=_text(data, 'vehicle_number'),
                driver_name=_text(data, 'driver_name', ''),
                products=[{'product_name': item.product_name, 'quantity': item.units} for item in sale.line_items],
                created_by=g.current_user.username,
            )
            db.session.add(gatepass)
        app.logger.info('Issued gatepass %s for sale %s', gatepass.gatepass_id, sale.sale_id)
        return jsonify(gatepass.to_dict()), 201

    # ==================== POSTS ====================

    @app.route('/api/posts', methods=['GET', 'POST'])
    @login_required
    def posts():
        """GET: feed of all posts, newest first. POST: add a post for the current user."""
        if request.method == 'GET':
            items = Post.query.order_by(Post.created_at.desc(), Post.id.desc()).all()
            return jsonify([p.to_dict() for p in items])

        data = _payload()
        description = _text(data, 'description')
        image_url = _text(data, 'image_url')
        if not description and not image_url:
            raise ValidationError('A post needs a description or an image URL.')
        with stock.transaction():
            post = Post(description=description, image_url=image_url, user=g.current_user)
            db.session.add(post)
        return jsonify(post.to_dict()), 201

    # ==================== CLI COMMANDS ====================

    @app.cli.command('check-stock')
    def check_stock():
        """Report products whose stock does not match their purchase and sale history."""
        drifted = [row for row in stock.audit_stock() if row['drift']]
        if not drifted:
            click.echo('All product stock matches history.')
            return
        for row in drifted:
            click.echo(f"{row['hsn_code']} {row['product_name']}: stock {row['stock']}, "
                       f"expected {row['expected']} (drift {row['drift']:+d})")
        raise SystemExit(1)

    @app.cli.command('backfill-categories')
    def backfill_categories():
        """Give every product without a category the default 'Glass' category."""
        with stock.transaction():
            updated = Product.query.filter(
                or_(Product.category.is_(None), Product.category == '')
            ).update({Product.category: PRODUCT_CATEGORIES[0]}, synchronize_session=False)
        click.echo(f'Updated {updated} products.')

    # Return the configured Flask application
    return app


# ==================== APPLICATION ENTRY POINT ====================

if __name__ == '__main__':
    create_app().run(debug=True, host='127.0.0.1', port=5000)
