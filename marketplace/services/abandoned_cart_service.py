# marketplace/services/abandoned_cart_service.py
import secrets
from datetime import datetime, timedelta
from typing import Dict, Any

from sqlalchemy.orm import Session

from marketplace.data.models.abandoned_cart import AbandonedCartModel
from marketplace.data.models.order import OrderModel
from marketplace.domain.errors import NotFoundError, InvalidStateError, ConcurrencyConflict
from marketplace.domain.identity import Identity
from marketplace.domain.money import to_money
from marketplace.domain.states import (
    CartStatus,
    AbandonedCartStatus,
    ABANDONED_CART_TRANSITIONS,
    can_transition,
)
from marketplace.repos.abandoned_cart_repo import AbandonedCartRepo
from marketplace.repos.cart_repo import CartRepo
from marketplace.services.cart_service import CartService
from marketplace.utils.settings import ABANDONED_CART_HOURS, RECOVERY_WINDOW_HOURS
from marketplace.utils.timeutils import utcnow
from marketplace.utils.logging import get_logger

logger = get_logger(__name__)


class AbandonedCartService:
    """
    Snapshots carts that went quiet with items in them, and marks those
    snapshots recovered once a matching order is paid.

    Matching is by recovery token first. Without a token the most recent
    snapshot of the same user inside the recovery window is used; that
    fallback is best-effort and can pick the wrong snapshot when the user
    abandoned several carts in the window.
    """

    def __init__(self, db: Session, cart_service: CartService | None = None):
        self.repo = AbandonedCartRepo(db)
        self.carts = CartRepo(db)
        self.cart_service = cart_service

    def mark_abandoned(self, hours: int = ABANDONED_CART_HOURS, now: datetime | None = None) -> int:
        now = now or utcnow()
        cutoff = now - timedelta(hours=hours)
        created = 0

        try:
            for cart in self.carts.find_stale_active_carts(cutoff, with_items=True):
                rowcount = self.carts.transition_cart(
                    cart_id=cart.id,
                    from_status=CartStatus.ACTIVE.value,
                    to_status=CartStatus.ABANDONED.value,
                    extra={"updated_at": now},
                    expected_version=cart.version,
                )
                if rowcount == 0:
                    #ktos go ruszyl w miedzyczasie, zlapie go nastepny przebieg
                    continue

                items = self.carts.get_active_items(cart.id)
                self.repo.add_snapshot(
                    AbandonedCartModel(
                        cart_id=cart.id,
                        user_id=cart.user_id,
                        cart_token=cart.cart_token,
                        store_id=cart.store_id,
                        recovery_token=secrets.token_urlsafe(32),
                        status=AbandonedCartStatus.ABANDONED.value,
                        items=[
                            {
                                "product_id": i.product_id,
                                "product_title": i.product_title,
                                "quantity": i.quantity,
                                "unit_price": str(to_money(i.unit_price)),
                                "total_price": str(to_money(i.total_price)),
                            }
                            for i in items
                        ],
                        items_count=sum(i.quantity for i in items),
                        subtotal=to_money(cart.subtotal),
                        tax_amount=to_money(cart.tax_amount),
                        total_amount=to_money(cart.total_amount),
                        currency_code=cart.currency_code,
                        abandoned_at=now,
                    )
                )
                created += 1
                logger.info(
                    f"Cart {cart.id} marked abandoned ({len(items)} lines)",
                    extra={"cart_id": cart.id, "user_id": cart.user_id},
                )
            self.repo.commit()
        except Exception:
            self.repo.rollback()
            raise

        logger.info(f"Abandoned cart sweep done, {created} snapshots created")
        return created

    def restore(self, recovery_token: str, identity: Identity) -> Dict[str, Any]:
        """Re-adds the snapshot lines to the identity's cart at current catalog prices."""
        if self.cart_service is None:
            raise RuntimeError("restore needs a CartService")

        snapshot = self.repo.get_by_recovery_token(recovery_token)
        if snapshot is None:
            raise NotFoundError("Recovery link not found")
        if snapshot.user_id is not None and snapshot.user_id != identity.user_id:
            raise NotFoundError("Recovery link not found")
        if snapshot.status != AbandonedCartStatus.ABANDONED.value:
            raise InvalidStateError("Cart was already recovered", abandoned_cart_id=snapshot.id)

        for line in snapshot.items:
            try:
                result = self.cart_service.add_item(
                    identity, int(line["product_id"]), int(line["quantity"])
                )
            except NotFoundError:
                logger.warning(
                    f"Product {line['product_id']} no longer in catalog, skipped on restore",
                    extra={"abandoned_cart_id": snapshot.id, "product_id": line["product_id"]},
                )
                continue
            # nowy koszyk goscia zwraca token, dalej uzywamy tego
            if identity.user_id is None:
                identity = Identity(
                    user_id=None,
                    cart_token=result["cart"]["cart_token"],
                    store_id=identity.store_id,
                )

        cart = self.cart_service.resolve_cart(identity)
        if cart is None:
            raise InvalidStateError("Abandoned cart had no items to restore")

        try:
            rowcount = self.carts.update_cart_version(
                cart_id=cart.id,
                old_version=cart.version,
                new_data={"recovery_token": recovery_token},
            )
            if rowcount == 0:
                raise ConcurrencyConflict("Cart changed while restoring", cart_id=cart.id)
            self.carts.commit()
        except Exception:
            self.carts.rollback()
            raise

        self.carts.refresh(cart)
        logger.info(
            f"Abandoned cart {snapshot.id} restored into cart {cart.id}",
            extra={"cart_id": cart.id, "abandoned_cart_id": snapshot.id},
        )
        return self.cart_service.build_summary(cart)

    def recover_for_order(self, order: OrderModel, now: datetime | None = None) -> AbandonedCartModel | None:
        """Runs inside the caller's transaction. Returns the snapshot flipped to recovered, if any."""
        now = now or utcnow()

        snapshot = None
        if order.recovery_token:
            snapshot = self.repo.get_by_recovery_token(order.recovery_token)
            if snapshot is not None and not can_transition(
                ABANDONED_CART_TRANSITIONS, snapshot.status, AbandonedCartStatus.RECOVERED
            ):
                return None
        if snapshot is None and order.user_id is not None:
            since = now - timedelta(hours=RECOVERY_WINDOW_HOURS)
            snapshot = self.repo.find_recent_for_user(order.user_id, since)
            if snapshot is not None:
                logger.info(
                    f"Abandoned cart {snapshot.id} matched to order {order.id} by user/time window",
                    extra={"order_id": order.id, "abandoned_cart_id": snapshot.id},
                )
        if snapshot is None:
            return None

        # max raz, rownolegle odzyskanie dostaje 0 rows affected
        if self.repo.mark_recovered(snapshot.id, order.id, now) == 0:
            return None

        self.carts.transition_cart(
            cart_id=snapshot.cart_id,
            from_status=CartStatus.ABANDONED.value,
            to_status=CartStatus.RECOVERED.value,
            extra={"updated_at": now},
        )
        logger.info(
            f"Abandoned cart {snapshot.id} recovered by order {order.id}",
            extra={"order_id": order.id, "abandoned_cart_id": snapshot.id},
        )
        return snapshot

    def purge_expired_carts(self, now: datetime | None = None) -> int:
        """Active carts past expires_at with nothing in them are closed without a snapshot."""
        now = now or utcnow()
        closed = 0
        try:
            for cart in self.carts.find_expired_empty_carts(now):
                closed += self.carts.transition_cart(
                    cart_id=cart.id,
                    from_status=CartStatus.ACTIVE.value,
                    to_status=CartStatus.ABANDONED.value,
                    extra={"updated_at": now},
                    expected_version=cart.version,
                )
            self.repo.commit()
        except Exception:
            self.repo.rollback()
            raise

        logger.info(f"Closed {closed} expired empty carts")
        return closed
