# conftest.py
import os

os.environ.setdefault("APP_SECRET", "test-secret")
os.environ.setdefault("DB_URL", "sqlite://")
os.environ["APP_ENV"] = "dev"

import random
import string
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from qahwa.db import Base, get_db
from qahwa.main import app
from qahwa.models.core import (
    Branch, MenuCategory, MenuItem, Order, OrderItem, OrderStatus, RawItem, RecipeItem,
    Tenant, Unit,
)
from qahwa.services.money import D


@pytest.fixture()
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture()
def db(engine):
    session = sessionmaker(bind=engine, autoflush=False, autocommit=False)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def client(engine):
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)

    def override_get_db():
        s = TestingSessionLocal()
        try:
            yield s
        finally:
            s.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def boot(client):
    r = client.post("/admin/dev-bootstrap")
    assert r.status_code == 200, f"/admin/dev-bootstrap failed: {r.text}"
    return r.json()


def _login(client, mobile, password):
    r = client.post("/auth/login", params={"mobile": mobile, "password": password})
    assert r.status_code == 200, f"/auth/login failed: {r.text}"
    return {"Authorization": f"Bearer {r.json()['access_token']}"}


@pytest.fixture()
def auth_headers(client, boot):
    return _login(client, boot["admin_mobile"], boot["admin_password"])


@pytest.fixture()
def cashier_headers(client, boot):
    return _login(client, boot["cashier_mobile"], boot["cashier_password"])


@pytest.fixture()
def rng_suffix():
    return "".join(random.choices(string.ascii_lowercase + string.digits, k=6))


# ---------- service-level factories ----------

@pytest.fixture()
def shop(db):
    t = Tenant(name="Test Café")
    db.add(t); db.flush()
    b = Branch(tenant_id=t.id, name="Olaya")
    db.add(b); db.flush()
    hot = MenuCategory(tenant_id=t.id, name="Hot Drinks", position=1)
    cold = MenuCategory(tenant_id=t.id, name="Cold Drinks", position=2)
    db.add_all([hot, cold]); db.commit()
    return {"tenant_id": t.id, "branch_id": b.id, "hot": hot, "cold": cold}


def make_raw(db, tenant_id, code, unit, unit_cost, threshold=0, name_ar=None):
    r = RawItem(
        tenant_id=tenant_id,
        code=code,
        name_ar=name_ar or code,
        unit=Unit(unit),
        unit_cost=D(unit_cost),
        min_stock_threshold=D(threshold),
    )
    db.add(r); db.commit()
    return r


def make_item(db, tenant_id, name, price, category=None, recipe=()):
    """recipe: iterable of (raw_item, quantity, unit)"""
    it = MenuItem(
        tenant_id=tenant_id,
        category_id=category.id if category else None,
        name_ar=name,
        name_en=name,
        price=D(price),
    )
    db.add(it); db.flush()
    for raw, qty, unit in recipe:
        db.add(RecipeItem(coffee_item_id=it.id, raw_item_id=raw.id, quantity=D(qty), unit=Unit(unit)))
    db.commit()
    return it


def make_order(db, shop, lines, status=OrderStatus.COMPLETED, completed_at=None, frozen=True):
    """lines: iterable of (menu_item, quantity, unit_price, unit_cost)"""
    o = Order(
        tenant_id=shop["tenant_id"],
        branch_id=shop["branch_id"],
        order_no=f"T-{random.randint(1000, 999999)}",
        status=status,
        completed_at=completed_at or datetime.now(timezone.utc),
    )
    db.add(o); db.flush()
    total = D(0)
    for item, qty, price, cost in lines:
        category = db.get(MenuCategory, item.category_id) if item.category_id else None
        db.add(OrderItem(
            order_id=o.id,
            item_id=item.id,
            name=item.name_en,
            category=category.name if category else None,
            quantity=qty,
            unit_price=D(price),
            unit_cost=D(cost) if frozen else None,
        ))
        total += D(price) * qty
    o.total_amount = total
    db.commit()
    return o
