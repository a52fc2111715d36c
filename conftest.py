"""
Shared fixtures: a fresh SQLite file database and an in-process fake Redis
per test, plus small factories for products, deals, coupons and customers.
"""

from datetime import timedelta
from decimal import Decimal

import fakeredis
import pytest
from fastapi.testclient import TestClient

import models
from cache import LocalCache, RedisCache, TwoTierCache
from config import Settings
from database import Base, make_engine, make_session_factory
from deals import DEAL_MODELS, DealType
from main import create_app
from models import utcnow
from pricing import PriceResolver

STAFF_KEY = "test-staff-key"
STAFF_HEADERS = {"X-Staff-Key": STAFF_KEY}


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'test_marketplace.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def redis_client():
    # Own server per test so no state leaks between tests.
    return fakeredis.FakeRedis(server=fakeredis.FakeServer())


@pytest.fixture
def broken_redis_client():
    server = fakeredis.FakeServer()
    server.connected = False
    return fakeredis.FakeRedis(server=server)


@pytest.fixture
def cache(redis_client):
    return TwoTierCache(LocalCache(), RedisCache(redis_client), l1_ttl=60, l2_ttl=300)


@pytest.fixture
def resolver(session_factory):
    resolver = PriceResolver(session_factory)
    yield resolver
    resolver.close()


@pytest.fixture
def settings():
    return Settings(database_url="sqlite://", staff_api_key=STAFF_KEY, idempotency_ttl=5)


@pytest.fixture
def app(engine, redis_client, settings):
    app = create_app(engine=engine, redis_client=redis_client, settings=settings)
    yield app
    app.state.resolver.close()


@pytest.fixture
def client(app):
    return TestClient(app)


# ══════════════════════════════════════════════
#  Factories
# ══════════════════════════════════════════════

@pytest.fixture
def make_product(db):
    def factory(**fields):
        values = {
            "name": "Product",
            "vendor_id": 1,
            "price": Decimal("100.00"),
            "discount": Decimal("0"),
            "discount_type": "percent",
            "is_active": True,
            "status": "approved",
            "stock": 50,
            "variations": [],
        }
        values.update(fields)
        product = models.Product(**values)
        db.add(product)
        db.commit()
        db.refresh(product)
        return product

    return factory


@pytest.fixture
def make_deal(db):
    def factory(deal_type: DealType, entries=(), **fields):
        """`entries` is a list of (product, discount, discount_type[, is_active])."""
        now = utcnow()
        values = {"title": f"{deal_type.value} deal", "is_published": True}
        if deal_type != DealType.deal_of_the_day:
            values["start_date"] = now - timedelta(days=1)
            values["end_date"] = now + timedelta(days=1)
        values.update(fields)
        deal = DEAL_MODELS[deal_type](**values)
        for entry in entries:
            product, discount, discount_type = entry[:3]
            is_active = entry[3] if len(entry) > 3 else True
            deal.entries.append(models.DealEntry(
                product_id=product.id,
                discount=Decimal(str(discount)),
                discount_type=discount_type,
                is_active=is_active,
            ))
        db.add(deal)
        db.commit()
        db.refresh(deal)
        return deal

    return factory


@pytest.fixture
def make_coupon(db):
    def factory(**fields):
        now = utcnow()
        values = {
            "title": "Coupon",
            "code": "SAVE10",
            "vendor_id": None,
            "discount_type": "percent",
            "discount_amount": Decimal("10"),
            "min_purchase": Decimal("0"),
            "start_date": now - timedelta(days=1),
            "expire_date": now + timedelta(days=30),
            "is_active": True,
        }
        values.update(fields)
        coupon = models.Coupon(**values)
        db.add(coupon)
        db.commit()
        db.refresh(coupon)
        return coupon

    return factory


@pytest.fixture
def make_customer(db):
    counter = {"n": 0}

    def factory(token_version=0, is_active=True):
        counter["n"] += 1
        customer = models.Customer(
            email=f"customer{counter['n']}@example.com",
            token_version=token_version,
            is_active=is_active,
        )
        db.add(customer)
        db.commit()
        db.refresh(customer)
        return customer

    return factory
