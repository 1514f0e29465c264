"""Fake collaborators and small helpers shared by the test modules."""
from decimal import Decimal
from itertools import count

from sqlalchemy import select, func

from marketplace.data.models.cart import CartModel
from marketplace.domain.errors import UpstreamFailure
from marketplace.domain.identity import Identity
from marketplace.services.lock_service import LockService

PRODUCTS = {
    1: {"title": "Microsoft 365 Business Basic", "price": "10.00"},
    2: {"title": "Microsoft 365 E3", "price": "25.50"},
    3: {"title": "Azure Plan", "price": "99.99"},
    4: {"title": "Dynamics 365 Sales", "price": "5.00", "currency": "USD"},
}


class FakeCatalog:
    def __init__(self, products=None):
        self.products = {k: dict(v) for k, v in (products or PRODUCTS).items()}
        self.calls = []
        self.error = None

    def get_product(self, product_id):
        self.calls.append(product_id)
        if self.error is not None:
            raise self.error
        product = self.products.get(product_id)
        if product is None:
            return {"exists": False, "product_id": product_id}
        return {
            "exists": True,
            "product_id": product_id,
            "title": product["title"],
            "unit_price": Decimal(product["price"]),
            "currency": product.get("currency", "MXN"),
        }


class InMemoryLockService(LockService):
    def __init__(self):
        self.held = {}

    def acquire(self, key, owner, ttl=30):
        if key in self.held:
            return False
        self.held[key] = owner
        return True

    def release(self, key, owner):
        if self.held.get(key) == owner:
            del self.held[key]
            return True
        return False


class FakeNotifier:
    def __init__(self):
        self.order_notifications = []
        self.failures = []
        self.provisioning = []

    def send_order_notification(self, user_id, order_id):
        self.order_notifications.append((user_id, order_id))

    def send_provisioning_failure(self, order_id, failed_items):
        self.failures.append((order_id, failed_items))

    def schedule_provisioning(self, order_id):
        self.provisioning.append(order_id)


class FakeGateway:
    def __init__(self):
        self._seq = count(1)
        self.calls = []

    def initiate(self, payment_details):
        self.calls.append(payment_details)
        n = next(self._seq)
        return {
            "transaction_reference": f"MKT17000000{n:02d}_AB12CD{n:02d}",
            "form_payload": "<form action='https://3ds.example/pay'></form>",
            "redirect_url": "https://3ds.example/pay",
        }


class FakeProvisioningClient:
    def __init__(self, fail_products=None, raise_products=None):
        self.fail_products = set(fail_products or ())
        self.raise_products = set(raise_products or ())
        self.calls = []

    def provision_item(self, customer_id, item):
        self.calls.append(item["id"])
        if item["product_id"] in self.raise_products:
            raise UpstreamFailure("partner center timeout")
        if item["product_id"] in self.fail_products:
            return {"success": False, "detail": "SKU not available for customer", "subscription_id": None}
        return {"success": True, "detail": "created", "subscription_id": f"sub-{item['id']}"}



def user(user_id, cart_token=None):
    return Identity(user_id=user_id, cart_token=cart_token)


def guest(cart_token=None):
    return Identity(user_id=None, cart_token=cart_token)


def active_carts_for(session, user_id):
    return session.execute(
        select(func.count(CartModel.id)).where(
            CartModel.user_id == user_id, CartModel.status == "active"
        )
    ).scalar_one()


def count_rows(session, model):
    return session.execute(select(func.count()).select_from(model)).scalar_one()
