# marketplace/api/deps.py
from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from marketplace.data.database import get_db
from marketplace.domain.identity import Identity
from marketplace.services.abandoned_cart_service import AbandonedCartService
from marketplace.services.cart_service import CartService
from marketplace.services.catalog_client import CatalogClient
from marketplace.services.lock_service import LockService
from marketplace.services.notification_service import NotificationService
from marketplace.services.order_service import OrderService
from marketplace.services.payment_gateway import PaymentGatewayClient
from marketplace.services.payment_service import PaymentService
from marketplace.services.provisioning_client import ProvisioningClient
from marketplace.services.provisioning_service import ProvisioningService


# identity comes from the auth gateway in front of us, we only read it
def get_identity(
    x_user_id: int | None = Header(None),
    x_cart_token: str | None = Header(None),
    x_store_id: int | None = Header(None),
) -> Identity:
    return Identity(user_id=x_user_id, cart_token=x_cart_token or None, store_id=x_store_id)


def require_user(identity: Identity = Depends(get_identity)) -> int:
    if identity.user_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return identity.user_id


def get_catalog_client() -> CatalogClient:
    return CatalogClient()


def get_lock_service() -> LockService:
    return LockService()


def get_payment_gateway() -> PaymentGatewayClient:
    return PaymentGatewayClient()


def get_provisioning_client() -> ProvisioningClient:
    return ProvisioningClient()


def get_notifier() -> NotificationService:
    return NotificationService()


def get_cart_service(
    db: Session = Depends(get_db),
    catalog: CatalogClient = Depends(get_catalog_client),
    locks: LockService = Depends(get_lock_service),
) -> CartService:
    return CartService(db=db, catalog_client=catalog, lock_service=locks)


def get_abandoned_cart_service(
    db: Session = Depends(get_db),
    carts: CartService = Depends(get_cart_service),
) -> AbandonedCartService:
    return AbandonedCartService(db, cart_service=carts)


def get_order_service(
    db: Session = Depends(get_db),
    locks: LockService = Depends(get_lock_service),
) -> OrderService:
    return OrderService(db, lock_service=locks)


def get_payment_service(
    db: Session = Depends(get_db),
    gateway: PaymentGatewayClient = Depends(get_payment_gateway),
    locks: LockService = Depends(get_lock_service),
    notifier: NotificationService = Depends(get_notifier),
) -> PaymentService:
    return PaymentService(db, gateway=gateway, lock_service=locks, notifier=notifier)


def get_provisioning_service(
    db: Session = Depends(get_db),
    client: ProvisioningClient = Depends(get_provisioning_client),
    locks: LockService = Depends(get_lock_service),
    notifier: NotificationService = Depends(get_notifier),
) -> ProvisioningService:
    return ProvisioningService(db, client=client, lock_service=locks, notifier=notifier)
