from datetime import datetime, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from vendor_billing.db import Base, get_db
from vendor_billing.main import app
from vendor_billing.models import BillingUnit, Package, User, VendorType
from vendor_billing.roles import Role

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def db():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def catalog(db):
    """Two vendor types and three packages: Basic, Pro (monthly) and Listing (two-week)."""
    db.add_all([
        VendorType(id=1, name="Standard", billing_cycle=BillingUnit.monthly),
        VendorType(id=2, name="Real Estate", billing_cycle=BillingUnit.biweekly),
    ])
    db.flush()
    basic = Package(vendor_type_id=1, name="Basic", price=Decimal("100"), max_products=5, duration_months=1)
    pro = Package(vendor_type_id=1, name="Pro", price=Decimal("250"), max_products=15, duration_months=1, is_popular=True)
    listing = Package(vendor_type_id=2, name="Listing", price=Decimal("120"), price_2weeks=Decimal("70"), max_products=3)
    db.add_all([basic, pro, listing])
    db.commit()
    return {"basic": basic, "pro": pro, "listing": listing}


def make_user(db, name, role):
    user = User(name=name, email=f"{name}@example.com", role_id=int(role))
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def admin(db):
    return make_user(db, "admin", Role.admin)


@pytest.fixture
def vendor(db):
    return make_user(db, "factory", Role.factory_owner)


@pytest.fixture
def agent(db):
    return make_user(db, "agent", Role.real_estate_agent)


@pytest.fixture
def customer(db):
    return make_user(db, "customer", Role.customer)


@pytest.fixture
def order_manager(db):
    return make_user(db, "orders", Role.order_manager)


@pytest.fixture
def product_manager(db):
    return make_user(db, "products", Role.product_manager)


@pytest.fixture
def client(db):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
