import os

# The app module builds its engine at import time; point it away from postgres
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("DEFAULT_TAX_RATE", "11")
os.environ.setdefault("SHARED_STATE_BACKEND", "memory")

from decimal import Decimal
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from posengine import inventory_models, models
from posengine.csrf import CsrfService, MemoryTokenStore
from posengine.db import get_session
from posengine.dependencies import (
    get_csrf_service,
    get_customer_order_limiter,
    get_payment_guard,
    get_qr_limiter,
)
from posengine.main import app
from posengine.notifications import OutboxNotificationSink, get_notification_sink
from posengine.payment_service import PaymentGuard
from posengine.rate_limit import MemoryCounterStore, RateLimiter
from posengine.security import create_access_token


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(name="engine")
def engine_fixture():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="session")
def session_fixture(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture(name="clock")
def clock_fixture():
    return FakeClock()


@pytest.fixture(name="sink")
def sink_fixture(engine):
    return OutboxNotificationSink(session_factory=lambda: Session(engine), publisher=None)


@pytest.fixture(name="guard")
def guard_fixture(clock):
    store = MemoryCounterStore(clock=clock)
    return PaymentGuard(
        attempts=RateLimiter(store, "payment", 5, 60, clock=clock),
        failures=RateLimiter(store, "payment_failed", 3, 3600, clock=clock),
    )


@pytest.fixture(name="csrf")
def csrf_fixture(clock):
    return CsrfService(MemoryTokenStore(clock=clock), ttl_seconds=1800, enabled=True)


@pytest.fixture(name="client")
def client_fixture(engine, sink, guard, csrf, clock):
    def get_session_override():
        with Session(engine) as session:
            yield session

    store = MemoryCounterStore(clock=clock)
    qr_limiter = RateLimiter(store, "qr", 30, 60, clock=clock)
    order_limiter = RateLimiter(store, "order", 5, 60, clock=clock)

    app.dependency_overrides[get_session] = get_session_override
    app.dependency_overrides[get_notification_sink] = lambda: sink
    app.dependency_overrides[get_payment_guard] = lambda: guard
    app.dependency_overrides[get_qr_limiter] = lambda: qr_limiter
    app.dependency_overrides[get_customer_order_limiter] = lambda: order_limiter
    app.dependency_overrides[get_csrf_service] = lambda: csrf

    # Not entered as a context manager: startup would create tables on the app engine
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()


# ============ SEED HELPERS ============

def make_user(session: Session, role: models.UserRole, username: str | None = None) -> models.User:
    user = models.User(username=username or f"{role.value}-{uuid4().hex[:6]}", role=role)
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def auth_headers(user: models.User) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': str(user.id)})}"}


def make_table(session: Session, table_number: str = "T01") -> models.DiningTable:
    table = models.DiningTable(table_number=table_number, seating_capacity=4, location="Main hall")
    session.add(table)
    session.commit()
    session.refresh(table)
    return table


def make_product(session: Session, name: str, price: int, is_available: bool = True) -> models.Product:
    product = models.Product(name=name, price=price, is_available=is_available)
    session.add(product)
    session.commit()
    session.refresh(product)
    return product


def set_setting(session: Session, key: str, value: str) -> None:
    session.add(models.SystemSetting(setting_key=key, setting_value=value))
    session.commit()


def make_ingredient(
    session: Session,
    name: str,
    current_stock: str,
    minimum_stock: str = "0",
    unit: str = "g",
) -> inventory_models.Ingredient:
    ingredient = inventory_models.Ingredient(
        name=name,
        unit=unit,
        current_stock=Decimal(current_stock),
        minimum_stock=Decimal(minimum_stock),
    )
    session.add(ingredient)
    session.commit()
    session.refresh(ingredient)
    return ingredient


def add_recipe(session: Session, product_id: int, ingredient_id: int, quantity: str) -> None:
    session.add(
        inventory_models.ProductIngredient(
            product_id=product_id,
            ingredient_id=ingredient_id,
            quantity_required=Decimal(quantity),
        )
    )
    session.commit()


@pytest.fixture(name="admin")
def admin_fixture(session):
    return make_user(session, models.UserRole.admin, "admin")


@pytest.fixture(name="menu")
def menu_fixture(session):
    """Two products and one table, the usual lunch setup."""
    return {
        "nasi": make_product(session, "Nasi Goreng", 285_000),
        "teh": make_product(session, "Es Teh Manis", 195_000),
        "table": make_table(session, "T05"),
    }
