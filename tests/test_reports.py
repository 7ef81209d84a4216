import pytest

from stockledger import create_app, db, Product


@pytest.fixture
def app():
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SECRET_KEY': 'test-secret',
        'LOW_STOCK_THRESHOLD': 5,
    })
    with app.app_context():
        db.create_all()
        yield app


@pytest.fixture
def client(app):
    return app.test_client()


def _login(client):
    client.post('/signup', json={'username': 'repouser', 'password': 'pw'})
    client.post('/login', json={'username': 'repouser', 'password': 'pw'})


def _seed(client):
    """Two products, one purchase and one sale of each."""
    ids = []
    for hsn, stock in (('R1', 10), ('R2', 2)):
        ids.append(client.post('/api/products', json={
            'hsn_code': hsn, 'product_name': f'Item {hsn}', 'category': 'Other disposables',
            'cost': 1.0, 'selling_price': 3.0, 'stock': stock,
        }).get_json()['id'])
    cid = client.post('/api/customers', json={'name': 'Acme', 'email': 'acme@example.com',
                                              'address': '1 Main St'}).get_json()['id']
    client.post('/api/purchases', json={'product_id': ids[0], 'units': 4, 'cost': 2.0})
    client.post('/api/purchases', json={'product_id': ids[1], 'units': 1, 'cost': 2.0})
    sale = client.post('/api/sales', json={'customer_id': cid, 'line_items': [
        {'product_id': ids[0], 'units': 6, 'price': 3.0},
        {'product_id': ids[1], 'units': 1, 'price': 3.0},
    ]}).get_json()
    return ids, sale


def test_reports_page_requires_login(client):
    resp = client.get('/reports', follow_redirects=False)
    assert resp.status_code in (301, 302)


def test_reports_totals(client):
    _login(client)
    _seed(client)

    rv = client.get('/reports')
    assert rv.status_code == 200
    data = rv.get_json()
    assert data['total_sales_txns'] == 1
    assert data['total_sales_qty'] == 7
    assert data['total_sales_amount'] == 21.0
    assert data['total_purchase_txns'] == 2
    assert data['total_purchase_qty'] == 5
    assert data['total_purchase_cost'] == 10.0
    assert data['profit_loss'] == 11.0


def test_dashboard_summary(client):
    _login(client)
    (busy, quiet), sale = _seed(client)

    data = client.get('/').get_json()
    assert data['total_products'] == 2
    # stock: R1 10 + 4 - 6 = 8, R2 2 + 1 - 1 = 2, both at cost 1.0
    assert data['inventory_value'] == 10.0
    assert [p['id'] for p in data['low_stock']] == [quiet]
    assert data['top_products'][0]['product_id'] == busy
    assert data['top_products'][0]['units'] == 6
    assert data['sales_this_month'] == 21.0
    assert data['purchases_this_month'] == 10.0
    assert data['recent_sales'][0]['sale_id'] == sale['sale_id']
    assert len(data['recent_purchases']) == 2


def test_gatepass_issued_once_per_sale(client):
    _login(client)
    _, sale = _seed(client)

    assert client.get(f"/api/sales/{sale['id']}/gatepass").status_code == 404
    assert client.post(f"/api/sales/{sale['id']}/gatepass", json={}).status_code == 400

    resp = client.post(f"/api/sales/{sale['id']}/gatepass",
                       json={'vehicle_number': 'GJ01XY9999', 'driver_name': 'Manoj'})
    assert resp.status_code == 201
    gatepass = resp.get_json()
    assert gatepass['gatepass_id'] == 'GP001'
    assert gatepass['created_by'] == 'repouser'
    assert gatepass['products'] == [
        {'product_name': 'Item R1', 'quantity': 6},
        {'product_name': 'Item R2', 'quantity': 1},
    ]

    resp = client.post(f"/api/sales/{sale['id']}/gatepass", json={'vehicle_number': 'GJ01XY0000'})
    assert resp.status_code == 409
    assert client.get(f"/api/sales/{sale['id']}/gatepass").get_json()['vehicle_number'] == 'GJ01XY9999'


def test_posts_feed(client):
    _login(client)
    assert client.post('/api/posts', json={}).status_code == 400
    client.post('/api/posts', json={'description': 'New stock of MS castings arrived'})
    feed = client.get('/api/posts').get_json()
    assert feed[0]['user'] == 'repouser'
    assert feed[0]['description'] == 'New stock of MS castings arrived'


def test_check_stock_command(app, client):
    _login(client)
    (busy, _), _ = _seed(client)
    runner = app.test_cli_runner()

    result = runner.invoke(args=['check-stock'])
    assert result.exit_code == 0
    assert 'All product stock matches history.' in result.output

    product = db.session.get(Product, busy)
    product.stock = 1
    db.session.commit()

    result = runner.invoke(args=['check-stock'])
    assert result.exit_code == 1
    assert 'R1' in result.output
    assert 'drift -7' in result.output


def test_backfill_categories_command(app):
    db.session.add(Product(hsn_code='B1', product_name='Legacy', category='', cost=1, selling_price=1))
    db.session.commit()

    result = app.test_cli_runner().invoke(args=['backfill-categories'])
    assert 'Updated 1 products.' in result.output
    assert Product.query.filter_by(hsn_code='B1').first().category == 'Glass'
