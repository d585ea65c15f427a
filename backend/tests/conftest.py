"""
Pytest fixtures for pharmacy stock backend tests.

Provides test database setup, user/token fixtures, catalog factories, and test client.
"""

from datetime import date, timedelta

import pytest
from app import create_app
from app.extensions import db
from app.models import Batch, Product, User, UserRole
from app.services.session_service import create_session
from app.time_utils import utctoday


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'RESERVE_STOCK_ON_SALE': False,
        'LOG_LEVEL': 'WARNING',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


def _make_user(db_session, *, email: str, role: UserRole, is_active: bool = True) -> User:
    user = User(name=email.split("@")[0].title(), email=email, role=role.value, is_active=is_active)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def pharmacist(db_session):
    return _make_user(db_session, email="pharmacist@pharmacy.test", role=UserRole.PHARMACIST)


@pytest.fixture(scope='function')
def admin(db_session):
    return _make_user(db_session, email="admin@pharmacy.test", role=UserRole.ADMIN)


@pytest.fixture(scope='function')
def pharmacist_headers(pharmacist):
    _, token = create_session(pharmacist.id)
    return auth_headers(token)


@pytest.fixture(scope='function')
def admin_headers(admin):
    _, token = create_session(admin.id)
    return auth_headers(token)


@pytest.fixture(scope='function')
def make_product(db_session):
    """Factory: make_product(name=..., **overrides) -> Product (committed)."""
    counter = {"n": 0}

    def _make(name: str | None = None, **overrides) -> Product:
        counter["n"] += 1
        fields = {
            "name": name or f"Product {counter['n']}",
            "category": "OTC",
            "unit_cost_cents": 250,
            "selling_price_cents": 500,
            "min_stock_level": 10,
            "max_stock_level": 1000,
            "is_active": True,
        }
        fields.update(overrides)
        product = Product(**fields)
        db_session.add(product)
        db_session.commit()
        return product

    return _make


@pytest.fixture(scope='function')
def make_batch(db_session):
    """
    Factory: make_batch(product, quantity, expiry=..., **overrides) -> Batch (committed).

    Inserted directly, without a PURCHASE operation, so ledger assertions only
    see the operations a test performs.
    """
    counter = {"n": 0}

    def _make(product: Product, quantity: int, expiry: date | None = None, **overrides) -> Batch:
        counter["n"] += 1
        expiry = expiry or (utctoday() + timedelta(days=365))
        fields = {
            "product_id": product.id,
            "batch_number": f"B-{product.id}-{counter['n']:03d}",
            "manufacturing_date": expiry - timedelta(days=730),
            "expiry_date": expiry,
            "initial_quantity": quantity,
            "current_quantity": quantity,
            "cost_price_cents": 200,
            "is_active": True,
        }
        fields.update(overrides)
        batch = Batch(**fields)
        db_session.add(batch)
        db_session.commit()
        return batch

    return _make


@pytest.fixture(scope='function')
def product(make_product):
    return make_product("Paracetamol 500mg")


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}
