# Stock bookkeeping for purchases and sales
# Keeps Product.stock == opening_stock + purchased units - sold units, never below zero
#
# Every change to a product's stock counter goes through adjust_stock(), which
# issues a single conditional UPDATE:
#
#     UPDATE product SET stock = stock + :delta
#     WHERE id = :id AND stock + :delta >= 0
#
# The check and the write happen in one statement, so two requests racing on the
# same product cannot both pass the guard with stale numbers. Edits compute one
# net delta per product and apply them inside the caller's transaction(); a
# refused delta rolls back the record change and every stock change before it.

import logging
from contextlib import contextmanager
from datetime import datetime

from sqlalchemy import func, select, update

from .errors import InsufficientStock, NotFoundError, ValidationError
from .models import db, Product, Purchase, Sale, SaleLineItem, Vendor, PAYMENT_STATUSES

logger = logging.getLogger(__name__)


@contextmanager
def transaction():
    """
    Run a block of ledger changes as one unit of work.
    Commits when the block finishes, rolls everything back if it raises.
    """
    try:
        yield db.session
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def lock_products(product_ids):
    """
    Load the given products with SELECT ... FOR UPDATE.

    Rows are locked in id order so two transactions touching the same
    products cannot deadlock. Backends without row locks (SQLite) ignore
    the clause and rely on the conditional UPDATE alone.
    """
    ids = sorted({pid for pid in product_ids if pid is not None})
    if not ids:
        return {}
    rows = db.session.execute(
        select(Product).where(Product.id.in_(ids)).order_by(Product.id).with_for_update()
    ).scalars().all()
    found = {p.id: p for p in rows}
    missing = [pid for pid in ids if pid not in found]
    if missing:
        raise NotFoundError(f'Product {missing[0]} not found.')
    return found


def current_stock(product_id):
    """Read the stock counter straight from the database, bypassing the session cache."""
    return db.session.execute(select(Product.stock).where(Product.id == product_id)).scalar()


def adjust_stock(product_id, delta):
    """
    Atomically add ``delta`` (which may be negative) to a product's stock.

    Raises:
        InsufficientStock: the change would leave the product below zero.
        NotFoundError: no product with that id exists.
    """
    if not delta:
        return
    result = db.session.execute(
        update(Product)
        .where(Product.id == product_id, Product.stock + delta >= 0)
        .values(stock=Product.stock + delta, updated_at=datetime.now())
        .execution_options(synchronize_session=False)
    )
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError(f'Product {product_id} not found.')
    if result.rowcount == 0:
        available = current_stock(product_id)
        logger.warning('Refused stock change %+d for %s: only %s on hand',
                       delta, product.hsn_code, available)
        raise InsufficientStock(
            f'Insufficient stock for {product.product_name}: {available} available, {-delta} required.',
            product=product.hsn_code, requested=-delta, available=available,
        )
    # The UPDATE bypassed the session, make the loaded object re-read its counter
    db.session.expire(product, ['stock', 'updated_at'])
    logger.info('Stock for %s adjusted by %+d', product.hsn_code, delta)


def apply_deltas(deltas):
    """Apply a {product_id: delta} map in product id order."""
    for product_id in sorted(deltas):
        adjust_stock(product_id, deltas[product_id])


# ==================== PURCHASES ====================

def _snapshot_product(record, product):
    record.product = product
    record.product_id = product.id
    record.hsn_code = product.hsn_code
    record.product_name = product.product_name


def record_purchase(product, units, cost=None, vendor=None, vendor_name='', date=None):
    """
    Create a purchase of ``units`` of ``product`` and add them to stock.

    Args:
        product (Product): what was bought.
        units (int): how many; must be positive.
        cost (float, optional): unit cost; defaults to the product's cost.
        vendor (Vendor, optional): linked supplier. Its name wins over ``vendor_name``.
        vendor_name (str): free-text supplier name when no Vendor record exists.
        date (datetime, optional): purchase date; defaults to now.
    """
    if units is None or units <= 0:
        raise ValidationError('Units must be positive.')
    cost = product.cost if cost is None else cost
    if cost < 0:
        raise ValidationError('Cost must be zero or more.')

    lock_products([product.id])
    purchase = Purchase(
        units=units,
        cost=cost,
        amount=units * cost,
        date=date or datetime.now(),
        supplier=vendor,
        vendor=vendor.name if vendor is not None else (vendor_name or ''),
    )
    _snapshot_product(purchase, product)
    db.session.add(purchase)
    db.session.flush()
    adjust_stock(product.id, units)
    return purchase


def suppliers_of(product_id):
    return Vendor.query.filter(Vendor.products.any(Product.id == product_id)).order_by(Vendor.name).all()


def reconcile_vendor(purchase, product_changed, vendor=None, vendor_name=None):
    """
    Settle which vendor a purchase points at after an edit.

    An explicit ``vendor`` wins. An explicit ``vendor_name`` sets the text and
    drops the link. Otherwise, when the product changed, the previous vendor is
    kept only if it supplies the new product; failing that the sole supplier of
    the new product is chosen, and with none or several the vendor is cleared.
    """
    if vendor is not None:
        purchase.supplier = vendor
        purchase.vendor = vendor.name
        return
    if vendor_name is not None:
        purchase.supplier = None
        purchase.vendor_ref = None
        purchase.vendor = vendor_name
        return
    if not product_changed:
        return

    previous = purchase.supplier
    if previous is not None and previous.supplies(purchase.product_id):
        return
    suppliers = suppliers_of(purchase.product_id)
    if len(suppliers) == 1:
        purchase.supplier = suppliers[0]
        purchase.vendor = suppliers[0].name
    else:
        purchase.supplier = None
        purchase.vendor_ref = None
        purchase.vendor = ''


def update_purchase(purchase, product=None, units=None, cost=None, vendor=None, vendor_name=None, date=None):
    """
    Edit a purchase and move stock to match.

    Changing the product takes the old units off the old product and puts
    the new units on the new one; otherwise only the difference is applied.
    Raises InsufficientStock when units being withdrawn were already sold.
    """
    old_product_id = purchase.product_id
    old_units = purchase.units
    new_product = product if product is not None else purchase.product
    new_units = old_units if units is None else units
    new_cost = purchase.cost if cost is None else cost

    if new_units <= 0:
        raise ValidationError('Units must be positive.')
    if new_cost < 0:
        raise ValidationError('Cost must be zero or more.')

    lock_products([old_product_id, new_product.id])
    product_changed = new_product.id != old_product_id
    deltas = {old_product_id: -old_units}
    deltas[new_product.id] = deltas.get(new_product.id, 0) + new_units
    apply_deltas(deltas)

    if product_changed:
        _snapshot_product(purchase, new_product)
    reconcile_vendor(purchase, product_changed, vendor=vendor, vendor_name=vendor_name)

    purchase.units = new_units
    purchase.cost = new_cost
    purchase.amount = new_units * new_cost
    if date is not None:
        purchase.date = date
    db.session.flush()
    return purchase


def delete_purchase(purchase):
    """Remove a purchase and take its units back out of stock."""
    lock_products([purchase.product_id])
    adjust_stock(purchase.product_id, -purchase.units)
    db.session.delete(purchase)
    db.session.flush()


# ==================== SALES ====================

def _units_by_product(lines):
    totals = {}
    for line in lines:
        pid = line['product'].id
        totals[pid] = totals.get(pid, 0) + line['units']
    return totals


def _validate_lines(lines):
    if not lines:
        raise ValidationError('A sale needs at least one line item.')
    for line in lines:
        if line['units'] is None or line['units'] < 1:
            raise ValidationError('Line item units must be at least 1.')
        if line['price'] is None or line['price'] < 0:
            raise ValidationError('Line item price must be zero or more.')


def _build_line_items(lines):
    items = []
    for line in lines:
        item = SaleLineItem(units=line['units'], price=line['price'], amount=line['units'] * line['price'])
        _snapshot_product(item, line['product'])
        items.append(item)
    return items


def derive_payment_status(paid_amount, total_amount):
    if not paid_amount:
        return 'unpaid'
    if paid_amount < total_amount:
        return 'partial'
    return 'paid'


def _apply_payment(sale, paid_amount=None, payment_status=None, total_changed=False):
    """
    Set the payment fields. Without an explicit status it is derived from
    how much of the total has been paid, whenever the paid amount or the
    total moved.
    """
    if paid_amount is not None:
        if paid_amount < 0:
            raise ValidationError('Paid amount cannot be negative.')
        sale.paid_amount = paid_amount
    if sale.paid_amount and sale.paid_amount > sale.total_amount:
        raise ValidationError('Paid amount cannot exceed the sale total.')

    if payment_status is not None:
        if payment_status not in PAYMENT_STATUSES:
            raise ValidationError(f'Payment status must be one of: {", ".join(PAYMENT_STATUSES)}.')
        sale.payment_status = payment_status
    elif paid_amount is not None or total_changed:
        sale.payment_status = derive_payment_status(sale.paid_amount, sale.total_amount)


def record_sale(customer, lines, date=None, paid_amount=None, payment_status=None):
    """
    Create a sale for ``customer`` and take each line item out of stock.

    ``lines`` is a list of ``{'product': Product, 'units': int, 'price': float}``.
    The same product may appear on several lines; availability is checked
    against the combined units.
    """
    _validate_lines(lines)
    lock_products(line['product'].id for line in lines)

    sale = Sale(
        customer=customer,
        customer_name=customer.name,
        date=date or datetime.now(),
        line_items=_build_line_items(lines),
    )
    sale.compute_totals()
    _apply_payment(sale, paid_amount, payment_status)
    db.session.add(sale)
    db.session.flush()

    apply_deltas({pid: -units for pid, units in _units_by_product(lines).items()})
    return sale


def update_sale(sale, customer=None, lines=None, date=None, paid_amount=None, payment_status=None):
    """
    Edit a sale, reconciling stock between its old and new line items.

    Units of the old lines are returned and the new lines withdrawn as one
    net change per product, so a product that appears on both sides only
    needs enough stock for the increase.
    """
    if lines is not None:
        _validate_lines(lines)
        old_units = sale.units_by_product()
        new_units = _units_by_product(lines)
        lock_products(list(old_units) + list(new_units))

        deltas = {}
        for pid in set(old_units) | set(new_units):
            delta = old_units.get(pid, 0) - new_units.get(pid, 0)
            if delta:
                deltas[pid] = delta
        apply_deltas(deltas)

        sale.line_items = _build_line_items(lines)
        sale.compute_totals()

    if customer is not None:
        sale.customer = customer
        sale.customer_name = customer.name
    if date is not None:
        sale.date = date
    _apply_payment(sale, paid_amount, payment_status, total_changed=lines is not None)
    db.session.flush()
    return sale


def delete_sale(sale):
    """Remove a sale and return every line item's units to stock."""
    units = sale.units_by_product()
    lock_products(list(units))
    apply_deltas(units)
    db.session.delete(sale)
    db.session.flush()


# ==================== AUDIT ====================

def derived_stock(product):
    """Stock implied by history: opening stock + purchases - sales."""
    purchased = db.session.query(func.coalesce(func.sum(Purchase.units), 0)) \
        .filter(Purchase.product_id == product.id).scalar() or 0
    sold = db.session.query(func.coalesce(func.sum(SaleLineItem.units), 0)) \
        .filter(SaleLineItem.product_id == product.id).scalar() or 0
    return (product.opening_stock or 0) + purchased - sold


def audit_stock():
    """
    Compare every product's stock counter with the value its history implies.
    Returns one row per product; rows with a non-zero ``drift`` are inconsistent.
    """
    purchased = dict(
        db.session.query(Purchase.product_id, func.sum(Purchase.units)).group_by(Purchase.product_id).all()
    )
    sold = dict(
        db.session.query(SaleLineItem.product_id, func.sum(SaleLineItem.units))
        .group_by(SaleLineItem.product_id).all()
    )
    report = []
    for product in Product.query.order_by(Product.id).all():
        expected = (product.opening_stock or 0) + (purchased.get(product.id) or 0) - (sold.get(product.id) or 0)
        report.append({
            'id': product.id,
            'hsn_code': product.hsn_code,
            'product_name': product.product_name,
            'stock': product.stock,
            'expected': expected,
            'drift': product.stock - expected,
        })
    return report
