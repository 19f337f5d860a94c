import pytest
from sqlalchemy import event
from sqlalchemy.dialects import postgresql

from vendor_billing import entitlement, services

LOCK = "FROM users WHERE users.id"
GUARDED = ("FROM vendor_subscriptions", "FROM products", "INSERT INTO")


@pytest.fixture
def statements(db):
    seen = []

    def record(conn, cursor, statement, parameters, context, executemany):
        seen.append(" ".join(statement.split()))

    engine = db.get_bind()
    event.listen(engine, "before_cursor_execute", record)
    yield seen
    event.remove(engine, "before_cursor_execute", record)


def lock_comes_first(statements):
    lock = next(i for i, sql in enumerate(statements) if LOCK in sql)
    guarded = [i for i, sql in enumerate(statements) if any(part in sql for part in GUARDED)]
    assert guarded, statements
    return lock < min(guarded)


def test_vendor_lock_is_select_for_update():
    sql = str(services.vendor_lock(7).compile(dialect=postgresql.dialect()))
    assert "FROM users" in sql
    assert sql.rstrip().endswith("FOR UPDATE")


def test_product_creation_locks_before_counting(db, catalog, admin, vendor, now, statements):
    services.assign_subscription(
        db, admin, user_id=vendor.id, package_id=catalog["basic"].id, duration_months=1, now=now,
    )
    statements.clear()
    entitlement.create_product(db, vendor, "Chair", now=now)
    assert lock_comes_first(statements)


def test_subscribe_locks_before_reading_subscriptions(db, catalog, vendor, now, statements):
    services.subscribe(db, vendor, catalog["basic"].id, duration_months=1, now=now)
    assert lock_comes_first(statements)


def test_assign_locks_before_reading_subscriptions(db, catalog, admin, vendor, now, statements):
    services.assign_subscription(
        db, admin, user_id=vendor.id, package_id=catalog["basic"].id, duration_months=1, now=now,
    )
    assert lock_comes_first(statements)


def test_staff_creation_skips_entitlement_check(db, catalog, vendor, product_manager, now, statements):
    entitlement.create_product(db, product_manager, "Desk", vendor_id=vendor.id, now=now)
    assert not any("FROM vendor_subscriptions" in sql for sql in statements)
