"""Inventory and sales ledger that keeps product stock consistent with its history."""

from .models import (
    db, User, Post, Product, Customer, Vendor, Employee, Purchase, Sale, SaleLineItem, Gatepass,
)
from .app import create_app

__all__ = [
    'create_app', 'db',
    'User', 'Post', 'Product', 'Customer', 'Vendor', 'Employee',
    'Purchase', 'Sale', 'SaleLineItem', 'Gatepass',
]
