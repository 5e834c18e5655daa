import pytest
from fastapi.testclient import TestClient

from config import Settings
from main import create_app

ADMIN_EMAIL = "admin@shop.com"
ADMIN_PASSWORD = "Admin1234"
PASSWORD = "Passw0rd!"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        secret_key="test-secret",
        upload_dir=str(tmp_path / "images"),
        tx_retry_backoff=0.01,
        admin_email=ADMIN_EMAIL,
        admin_password=ADMIN_PASSWORD,
        log_level="WARNING",
    )


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db(app, client):
    session = app.state.database.session()
    yield session
    session.close()


def signup(client, email, password=PASSWORD):
    res = client.post("/auth/signup", json={"email": email, "password": password})
    assert res.status_code == 201, res.text
    return res.json()["data"]


def login(client, email, password=PASSWORD, path="/auth/login"):
    res = client.post(path, json={"email": email, "password": password})
    assert res.status_code == 200, res.text
    return {"Authorization": f"Bearer {res.json()['access_token']}"}


@pytest.fixture
def admin_headers(client):
    return login(client, ADMIN_EMAIL, ADMIN_PASSWORD)


@pytest.fixture
def alice(client):
    user = signup(client, "alice@shop.com")
    return {"id": user["id"], "headers": login(client, "alice@shop.com")}


@pytest.fixture
def bob(client):
    user = signup(client, "bob@shop.com")
    return {"id": user["id"], "headers": login(client, "bob@shop.com")}


@pytest.fixture
def category(client, admin_headers):
    res = client.post("/categories", json={"name": "Fashion", "slug": "fashion"}, headers=admin_headers)
    assert res.status_code == 201, res.text
    return res.json()["data"]


@pytest.fixture
def product(client, admin_headers, category):
    body = {
        "name": "Cool T-Shirt",
        "slug": "cool-t-shirt",
        "description": "Cotton T-Shirt",
        "category_id": category["id"],
        "variants": [
            {"sku": "TEE-M", "price": "29.99", "stock": 50},
            {"sku": "TEE-L", "price": "10.00", "stock": 5},
        ],
    }
    res = client.post("/products", json=body, headers=admin_headers)
    assert res.status_code == 201, res.text
    return res.json()["data"]


def variant(product, sku):
    return next(v for v in product["variants"] if v["sku"] == sku)


def stock_of(client, product_id, sku):
    res = client.get(f"/products/{product_id}")
    assert res.status_code == 200, res.text
    return variant(res.json()["data"], sku)["stock"]
