import os

# settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")

from decimal import Decimal

import pytest
from sqlalchemy import create_engine

import marketplace.data.models  # noqa: F401
from marketplace.data.database import Base, make_session_factory
from marketplace.data.models.billing import BillingInformationModel, PaymentCardModel
from marketplace.services.abandoned_cart_service import AbandonedCartService
from marketplace.services.cart_service import CartService
from marketplace.services.order_service import OrderService
from marketplace.services.payment_service import PaymentService
from marketplace.services.pricing_service import PricingService
from marketplace.services.provisioning_service import ProvisioningService
from tests.helpers import FakeCatalog, FakeGateway, FakeNotifier, InMemoryLockService


@pytest.fixture
def engine(tmp_path):
    eng = create_engine(
        f"sqlite:///{tmp_path / 'marketplace.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def catalog():
    return FakeCatalog()


@pytest.fixture
def locks():
    return InMemoryLockService()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def pricing():
    return PricingService(default_rate=Decimal("0.16"), store_rates={})


@pytest.fixture
def make_cart_service(catalog, locks, pricing):
    def make(session):
        return CartService(
            db=session,
            catalog_client=catalog,
            lock_service=locks,
            pricing=pricing,
            default_store_id=1,
            currency="MXN",
            exchange_rates={"USD:MXN": Decimal("17.00")},
        )

    return make


@pytest.fixture
def cart_service(db, make_cart_service):
    return make_cart_service(db)


@pytest.fixture
def order_service(db, locks):
    return OrderService(db, lock_service=locks, days_to_cancel=3)


@pytest.fixture
def abandoned_service(db, cart_service):
    return AbandonedCartService(db, cart_service=cart_service)


@pytest.fixture
def payment_service(db, gateway, locks, order_service, abandoned_service, notifier):
    return PaymentService(
        db,
        gateway=gateway,
        lock_service=locks,
        order_service=order_service,
        abandoned_carts=abandoned_service,
        notifier=notifier,
    )


@pytest.fixture
def make_provisioning(db, locks, notifier):
    def make(client):
        return ProvisioningService(db, client=client, lock_service=locks, notifier=notifier)

    return make


@pytest.fixture
def billing(db):
    """Billing info + card for users 1 and 2."""
    records = {}
    for user_id in (1, 2):
        info = BillingInformationModel(user_id=user_id, legal_name=f"Tenant {user_id} SA de CV", tax_id="XAXX010101000")
        card = PaymentCardModel(user_id=user_id, brand="visa", last_four="1111")
        db.add_all([info, card])
        db.flush()
        records[user_id] = {"billing_id": info.id, "card_id": card.id}
    db.commit()
    return records
