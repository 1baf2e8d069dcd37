import os
import tempfile
from decimal import Decimal

import pytest

_DB_DIR = tempfile.mkdtemp(prefix="restaurant-orders-")
os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(_DB_DIR, "test.db")
os.environ.setdefault("SECRET_KEY", "test-secret")

from app import app as flask_app  # noqa: E402
from actors import actor_for  # noqa: E402
from database import db, MenuItem, User  # noqa: E402


PASSWORD = "secret123"

MARGHERITA = 7
COLA = 8
SOUP = 9


@pytest.fixture(autouse=True)
def fresh_db():
    flask_app.config["TESTING"] = True
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
    yield


@pytest.fixture
def ctx():
    """An application context for tests that call the core directly."""
    with flask_app.app_context():
        yield flask_app


def _make_user(name, email, role):
    with flask_app.app_context():
        u = User(name=name, email=email, role=role, phone="")
        u.set_password(PASSWORD)
        db.session.add(u)
        db.session.commit()
        return actor_for(u)


@pytest.fixture
def customer():
    return _make_user("Alice", "alice@example.com", "Customer")


@pytest.fixture
def other_customer():
    return _make_user("Bob", "bob@example.com", "Customer")


@pytest.fixture
def staff():
    return _make_user("Wendy", "wendy@example.com", "Waiter")


@pytest.fixture
def admin():
    return _make_user("Root", "root@example.com", "Admin")


@pytest.fixture
def menu():
    with flask_app.app_context():
        db.session.add_all([
            MenuItem(id=MARGHERITA, name="Margherita", category="Pizza", price=Decimal("14.99"), is_available=True),
            MenuItem(id=COLA, name="Cola", category="Drinks", price=Decimal("2.50"), is_available=True),
            MenuItem(id=SOUP, name="Seasonal Soup", category="Starters", price=Decimal("6.00"), is_available=False),
        ])
        db.session.commit()
    return {"margherita": MARGHERITA, "cola": COLA, "soup": SOUP}


@pytest.fixture
def client_for():
    """Return a test client logged in as the given email."""

    def _login(email, password=PASSWORD):
        client = flask_app.test_client()
        r = client.post("/api/auth/login", json={"email": email, "password": password})
        assert r.status_code == 200, r.get_json()
        return client

    return _login
