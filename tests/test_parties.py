"""
CUSTOMER, VENDOR AND EMPLOYEE TESTS
Generated IDs, uniqueness rules, and deletes blocked by transaction history.
"""

import pytest

from stockledger import create_app, db


@pytest.fixture
def app():
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SECRET_KEY': 'test-secret',
    })
    with app.app_context():
        db.create_all()
        yield app


@pytest.fixture
def client(app):
    client = app.test_client()
    client.post('/signup', json={'username': 'owner', 'password': 'pw'})
    client.post('/login', json={'username': 'owner', 'password': 'pw'})
    return client


def _product(client, hsn, stock=10):
    return client.post('/api/products', json={
        'hsn_code': hsn, 'product_name': f'Item {hsn}', 'category': 'Other disposables',
        'cost': 1, 'selling_price': 2, 'stock': stock,
    }).get_json()['id']


def test_customer_ids_and_unique_email(client):
    first = client.post('/api/customers', json={'name': 'Zed', 'email': 'z@example.com', 'address': 'A'})
    second = client.post('/api/customers', json={'name': 'Amy', 'email': 'a@example.com', 'address': 'B'})
    assert first.get_json()['cust_id'] == 'C001'
    assert second.get_json()['cust_id'] == 'C002'

    resp = client.post('/api/customers', json={'name': 'Dup', 'email': 'z@example.com', 'address': 'C'})
    assert resp.status_code == 409
    assert resp.get_json()['error'] == 'Email already in use'

    # Listed by name
    names = [c['name'] for c in client.get('/api/customers').get_json()]
    assert names == ['Amy', 'Zed']


def test_customer_required_fields(client):
    resp = client.post('/api/customers', json={'name': 'No Address', 'email': 'n@example.com'})
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'Missing required fields: address'


def test_update_customer(client):
    cid = client.post('/api/customers', json={'name': 'Zed', 'email': 'z@example.com', 'address': 'A'}).get_json()['id']
    client.post('/api/customers', json={'name': 'Amy', 'email': 'a@example.com', 'address': 'B'})

    resp = client.put(f'/api/customers/{cid}', json={'phone': '555-0101'})
    assert resp.get_json()['phone'] == '555-0101'
    assert resp.get_json()['email'] == 'z@example.com'

    resp = client.put(f'/api/customers/{cid}', json={'email': 'a@example.com'})
    assert resp.status_code == 409


def test_customer_with_sales_cannot_be_deleted(client):
    pid = _product(client, 'H1')
    cid = client.post('/api/customers', json={'name': 'Zed', 'email': 'z@example.com', 'address': 'A'}).get_json()['id']
    sale = client.post('/api/sales', json={'customer_id': cid, 'product_id': pid, 'units': 1}).get_json()

    assert client.delete(f'/api/customers/{cid}').status_code == 409

    client.delete(f"/api/sales/{sale['id']}")
    assert client.delete(f'/api/customers/{cid}').status_code == 200
    assert client.get(f'/api/customers/{cid}').status_code == 404


def test_vendors_filtered_by_product(client):
    glass = _product(client, 'H2')
    casting = _product(client, 'H3')
    resp = client.post('/api/vendors', json={'name': 'Alpha', 'products': [glass, casting]})
    assert resp.status_code == 201
    assert resp.get_json()['vendor_id'] == 'V001'
    client.post('/api/vendors', json={'name': 'Beta', 'products': [casting]})

    names = [v['name'] for v in client.get(f'/api/vendors?product_id={glass}').get_json()]
    assert names == ['Alpha']
    names = [v['name'] for v in client.get(f'/api/vendors?product_id={casting}').get_json()]
    assert names == ['Alpha', 'Beta']
    assert len(client.get('/api/vendors').get_json()) == 2


def test_vendor_rejects_unknown_products(client):
    resp = client.post('/api/vendors', json={'name': 'Gamma', 'products': [999]})
    assert resp.status_code == 400


def test_vendor_update_and_delete_guard(client):
    pid = _product(client, 'H4')
    vid = client.post('/api/vendors', json={'name': 'Alpha'}).get_json()['id']

    resp = client.put(f'/api/vendors/{vid}', json={'products': [pid], 'phone': '555-0199'})
    assert resp.get_json()['products'] == [pid]
    assert resp.get_json()['phone'] == '555-0199'

    purchase = client.post('/api/purchases', json={'product_id': pid, 'units': 3, 'vendor_id': vid}).get_json()
    assert purchase['vendor'] == 'Alpha'
    assert purchase['vendor_ref'] == vid

    assert client.delete(f'/api/vendors/{vid}').status_code == 409
    client.delete(f"/api/purchases/{purchase['id']}")
    assert client.delete(f'/api/vendors/{vid}').status_code == 200


def test_employee_crud(client):
    resp = client.post('/api/employees', json={
        'name': 'Ravi', 'email': 'ravi@example.com', 'phone': '555-0111', 'address': 'Depot Rd',
    })
    assert resp.status_code == 201
    employee = resp.get_json()
    assert employee['emp_id'] == 'E001'
    assert employee['role'] == 'staff'

    resp = client.post('/api/employees', json={'name': 'Incomplete', 'email': 'i@example.com'})
    assert resp.status_code == 400

    resp = client.put(f"/api/employees/{employee['id']}", json={'role': 'manager'})
    assert resp.get_json()['role'] == 'manager'

    assert client.delete(f"/api/employees/{employee['id']}").status_code == 200
    assert client.get('/api/employees').get_json() == []
