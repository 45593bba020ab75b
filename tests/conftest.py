"""Shared pytest fixtures.

Environment is configured before the storefront package is imported so the
module-level config picks up an in-memory SQLite database and disabled
outbound integrations.
"""
import datetime as dt
import os
import time

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["STOCK_BROADCAST_ENABLED"] = "false"
os.environ["EMAIL_ENABLED"] = "false"
os.environ["REDIS_URL"] = ""
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["ADMIN_USERNAME"] = "admin"
os.environ["ADMIN_PASSWORD"] = "correct-horse"
os.environ["ADMIN_PASSWORD_HASH"] = ""
os.environ["STOCK_MODIFICATION_TOKEN"] = "service-token"
os.environ["STORE_RETRY_BASE_DELAY"] = "0"
os.environ["RESERVATION_SWEEP_INTERVAL_SECONDS"] = "0"

import pytest

from storefront import crud
from storefront.broadcast import StockBroadcaster
from storefront.database import SessionLocal, engine as db_engine
from storefront.models import Base
from storefront.reservation_store import SqlReservationStore
from storefront.reservations import ReservationEngine


class FakeClock:
    def __init__(self, start=None):
        self.now = start or dt.datetime.now(dt.timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + dt.timedelta(**kwargs)


class RecordingPublisher:
    def __init__(self):
        self.events = []

    def __call__(self, routing_key, payload):
        self.events.append((routing_key, payload))

    @property
    def actions(self):
        return [payload["action"] for _, payload in self.events]


class FakeEmailSender:
    def __init__(self, result=True, error=None):
        self.result = result
        self.error = error
        self.sent = []

    def send(self, to, subject, html):
        self.sent.append({"to": to, "subject": subject, "html": html})
        if self.error is not None:
            raise self.error
        return self.result


def make_session_id(suffix="abc123"):
    return f"session_{int(time.time() * 1000)}_{suffix}"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db():
    Base.metadata.drop_all(bind=db_engine)
    Base.metadata.create_all(bind=db_engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def store(db):
    return SqlReservationStore(db)


@pytest.fixture
def engine(store, publisher, clock):
    return ReservationEngine(
        store,
        broadcaster=StockBroadcaster(publisher),
        clock=clock,
        sleep=lambda _: None,
    )


@pytest.fixture
def make_product(db):
    def _make(product_id="jacket-1", stock=5, title=None, price=50):
        return crud.create_product(
            db,
            {"id": product_id, "title": title or f"Vintage {product_id}", "price": price, "stock": stock},
        )

    return _make


@pytest.fixture
def reservations_of(store):
    def _get(product_id):
        return store.load(product_id).reservations

    return _get
