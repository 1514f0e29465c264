# marketplace/services/order_service.py
import secrets
from contextlib import nullcontext
from datetime import datetime, timedelta
from typing import Dict, Any, List

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace.data.models.order import OrderModel
from marketplace.data.models.order_item import OrderItemModel
from marketplace.domain.checkout import CheckoutParams, CheckoutPlan
from marketplace.domain.errors import (
    ConcurrencyConflict,
    InvalidStateError,
    NotFoundError,
    ValidationFailure,
)
from marketplace.domain.identity import Identity
from marketplace.domain.money import to_money
from marketplace.domain.states import (
    CartStatus,
    OrderStatus,
    PaymentStatus,
    FulfillmentStatus,
    ItemFulfillmentStatus,
    ORDER_TRANSITIONS,
    ensure_transition,
)
from marketplace.repos.billing_repo import BillingRepo
from marketplace.repos.cart_repo import CartRepo
from marketplace.repos.order_repo import OrderRepo
from marketplace.services.lock_service import LockService
from marketplace.utils.settings import DAYS_TO_CANCEL
from marketplace.utils.timeutils import utcnow, as_utc
from marketplace.utils.logging import get_logger

logger = get_logger(__name__)


class OrderService:
    """
    Order conversion workflow.

    Checkout runs in two phases: prepare_checkout does every read-only check
    (ownership, cart state, lines) and commit_checkout performs the single
    transaction that flips the cart active -> converted and writes the order.
    """

    def __init__(
        self,
        db: Session,
        lock_service: LockService | None = None,
        days_to_cancel: int = DAYS_TO_CANCEL,
    ):
        self.repo = OrderRepo(db)
        self.carts = CartRepo(db)
        self.billing = BillingRepo(db)
        self.locks = lock_service
        self.days_to_cancel = days_to_cancel

    # checkout
    def prepare_checkout(self, identity: Identity, params: CheckoutParams) -> CheckoutPlan:
        if identity.user_id is None:
            raise ValidationFailure("Checkout requires an authenticated user")
        if not params.billing_information_id:
            raise ValidationFailure("billing_information_id is required")

        user_id = identity.user_id

        if params.cart_id is not None:
            cart = self.carts.get_cart(params.cart_id)
            if cart is None or cart.user_id != user_id:
                raise NotFoundError(f"Cart {params.cart_id} not found", cart_id=params.cart_id)
        else:
            cart = self.carts.find_active_cart_by_user(user_id)
            if cart is None:
                raise NotFoundError("No active cart for user", user_id=user_id)

        if cart.status != CartStatus.ACTIVE.value:
            raise InvalidStateError(
                f"Cart {cart.id} is {cart.status}, only active carts can be checked out",
                cart_id=cart.id,
            )

        if not self.carts.get_active_items(cart.id):
            raise InvalidStateError(f"Cart {cart.id} is empty", cart_id=cart.id)

        if not self.billing.billing_belongs_to(user_id, params.billing_information_id):
            raise NotFoundError(
                "Billing information not found",
                billing_information_id=params.billing_information_id,
            )

        if params.payment_card_id is not None and not self.billing.card_belongs_to(
            user_id, params.payment_card_id
        ):
            raise NotFoundError("Payment card not found", payment_card_id=params.payment_card_id)

        plan = CheckoutPlan(
            cart_id=cart.id,
            user_id=user_id,
            store_id=cart.store_id,
            currency_code=cart.currency_code,
            total_amount=to_money(cart.total_amount),
            params=params,
            cart_version=cart.version,
            recovery_token=cart.recovery_token,
        )
        # zwolnij odczyt przed transakcja zapisu
        self.repo.rollback()
        return plan

    def plan_for_cart(self, cart_id: int, user_id: int, params: CheckoutParams) -> CheckoutPlan:
        """Plan without a version guard, for payments confirmed after the fact."""
        cart = self.carts.get_cart(cart_id)
        if cart is None or cart.user_id != user_id:
            raise NotFoundError(f"Cart {cart_id} not found", cart_id=cart_id)
        return CheckoutPlan(
            cart_id=cart.id,
            user_id=user_id,
            store_id=cart.store_id,
            currency_code=cart.currency_code,
            total_amount=to_money(cart.total_amount),
            params=params,
            recovery_token=cart.recovery_token,
        )

    def commit_checkout(self, plan: CheckoutPlan) -> Dict[str, Any]:
        lock = self.locks.hold(f"cart:{plan.cart_id}:checkout") if self.locks else nullcontext()
        with lock:
            try:
                order = self.convert_cart(plan)
                self.repo.commit()
            except IntegrityError as e:
                self.repo.rollback()
                raise ConcurrencyConflict(
                    "Order for this cart already exists", cart_id=plan.cart_id
                ) from e
            except Exception:
                self.repo.rollback()
                raise

        logger.info(
            f"Order {order.order_number} created from cart {plan.cart_id}",
            extra={"order_id": order.id, "cart_id": plan.cart_id},
        )
        return self.order_dict(order)

    def create_from_cart(self, identity: Identity, params: CheckoutParams) -> Dict[str, Any]:
        return self.commit_checkout(self.prepare_checkout(identity, params))

    def convert_cart(self, plan: CheckoutPlan) -> OrderModel:
        """
        Writes the order inside the caller's transaction, does not commit.

        The cart flip is a compare-and-swap on status (and version when the plan
        carries one), so of two concurrent callers exactly one gets rowcount 1.
        created_at comes from the database clock, the same one cancel() uses.
        """
        now = as_utc(self.repo.db_now())
        rowcount = self.carts.transition_cart(
            cart_id=plan.cart_id,
            from_status=CartStatus.ACTIVE.value,
            to_status=CartStatus.CONVERTED.value,
            extra={"updated_at": now},
            expected_version=plan.cart_version,
        )
        if rowcount == 0:
            logger.warning(
                f"Cart {plan.cart_id} already converted or modified, checkout rejected",
                extra={"cart_id": plan.cart_id},
            )
            raise ConcurrencyConflict("Cart already converted", cart_id=plan.cart_id)

        cart = self.carts.get_cart(plan.cart_id)
        self.carts.refresh(cart)
        items = self.carts.get_active_items(cart.id)
        if not items:
            raise InvalidStateError(f"Cart {cart.id} is empty", cart_id=cart.id)

        params = plan.params
        order = self.repo.add_order(
            OrderModel(
                order_number=self._new_order_number(now),
                user_id=plan.user_id,
                cart_id=cart.id,
                store_id=cart.store_id,
                billing_information_id=params.billing_information_id,
                payment_card_id=params.payment_card_id,
                payment_method=params.payment_method,
                provisioning_account_id=params.provisioning_account_id,
                status=OrderStatus.PENDING.value,
                payment_status=PaymentStatus.UNPAID.value,
                fulfillment_status=FulfillmentStatus.PENDING.value,
                currency_code=cart.currency_code,
                subtotal=to_money(cart.subtotal),
                tax_amount=to_money(cart.tax_amount),
                total_amount=to_money(cart.total_amount),
                recovery_token=cart.recovery_token,
                created_at=now,
                updated_at=now,
            )
        )

        for item in items:
            self.repo.add_item(
                OrderItemModel(
                    order_id=order.id,
                    product_id=item.product_id,
                    product_title=item.product_title,
                    quantity=item.quantity,
                    unit_price=to_money(item.unit_price),
                    line_total=to_money(item.total_price),
                    currency_code=item.currency_code,
                    fulfillment_status=ItemFulfillmentStatus.PENDING.value,
                    provisioning_attempts=0,
                )
            )
        self.repo.flush()
        return order

    # payment state, called from payment reconciliation inside its transaction
    def mark_paid(self, order_id: int, payment: Dict[str, Any], now: datetime | None = None) -> OrderModel:
        order = self.repo.get_order(order_id, for_update=True)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found", order_id=order_id)
        ensure_transition(ORDER_TRANSITIONS, order.status, OrderStatus.PROCESSING, "Order")

        now = now or utcnow()
        rowcount = self.repo.transition_order(
            order_id=order.id,
            from_status=OrderStatus.PENDING.value,
            to_status=OrderStatus.PROCESSING.value,
            extra={
                "payment_status": PaymentStatus.PAID.value,
                "transaction_reference": payment.get("transaction_reference"),
                "auth_code": payment.get("auth_code"),
                "card_type": payment.get("card_type"),
                "card_last_four": payment.get("card_last_four"),
                "paid_at": now,
                "updated_at": now,
            },
        )
        if rowcount == 0:
            raise ConcurrencyConflict("Order changed while applying payment", order_id=order.id)
        self.repo.refresh(order)
        return order

    def mark_payment_failed(self, order_id: int, reference: str, now: datetime | None = None) -> None:
        order = self.repo.get_order(order_id, for_update=True)
        if order is None or order.status != OrderStatus.PENDING.value:
            return
        order.payment_status = PaymentStatus.FAILED.value
        order.transaction_reference = reference
        order.updated_at = now or utcnow()
        self.repo.flush()

    # cancellation
    def cancel(
        self,
        order_id: int,
        user_id: int,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> Dict[str, Any]:
        order = self.repo.get_order_for_user(order_id, user_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found", order_id=order_id)
        ensure_transition(ORDER_TRANSITIONS, order.status, OrderStatus.CANCELLED, "Order")

        #zegar bazy, chyba ze ktos poda now
        now = as_utc(now) if now is not None else as_utc(self.repo.db_now())
        cutoff = now - timedelta(days=self.days_to_cancel)

        try:
            rowcount = self.repo.cancel_within_window(
                order_id=order.id,
                cutoff=cutoff,
                values={
                    "cancellation_reason": (reason or "").strip() or None,
                    "cancelled_at": now,
                    "updated_at": now,
                },
            )
            if rowcount == 0:
                self.repo.rollback()
                self.repo.refresh(order)
                if order.status != OrderStatus.PENDING.value:
                    raise InvalidStateError(
                        f"Order {order.order_number} is {order.status} and cannot be cancelled",
                        order_id=order.id,
                    )
                raise InvalidStateError(
                    f"Cancellation window of {self.days_to_cancel} days has expired",
                    order_id=order.id,
                )
            self.repo.commit()
        except Exception:
            self.repo.rollback()
            raise

        self.repo.refresh(order)
        logger.info(
            f"Order {order.order_number} cancelled: {order.cancellation_reason}",
            extra={"order_id": order.id},
        )
        return self.order_dict(order)

    # queries
    def get_order(self, order_id: int, user_id: int) -> Dict[str, Any]:
        order = self.repo.get_order_for_user(order_id, user_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found", order_id=order_id)
        return self.order_dict(order)

    def list_orders(self, user_id: int) -> List[Dict[str, Any]]:
        return [self.order_dict(o, with_items=False) for o in self.repo.list_orders_for_user(user_id)]

    def order_dict(self, order: OrderModel, with_items: bool = True) -> Dict[str, Any]:
        data = {
            "id": order.id,
            "order_number": order.order_number,
            "user_id": order.user_id,
            "cart_id": order.cart_id,
            "store_id": order.store_id,
            "status": order.status,
            "payment_status": order.payment_status,
            "fulfillment_status": order.fulfillment_status,
            "currency_code": order.currency_code,
            "subtotal": to_money(order.subtotal),
            "tax_amount": to_money(order.tax_amount),
            "total_amount": to_money(order.total_amount),
            "billing_information_id": order.billing_information_id,
            "payment_card_id": order.payment_card_id,
            "payment_method": order.payment_method,
            "transaction_reference": order.transaction_reference,
            "auth_code": order.auth_code,
            "card_type": order.card_type,
            "card_last_four": order.card_last_four,
            "paid_at": order.paid_at,
            "cancellation_reason": order.cancellation_reason,
            "cancelled_at": order.cancelled_at,
            "created_at": order.created_at,
        }
        if with_items:
            data["items"] = [
                {
                    "id": i.id,
                    "product_id": i.product_id,
                    "product_title": i.product_title,
                    "quantity": i.quantity,
                    "unit_price": to_money(i.unit_price),
                    "line_total": to_money(i.line_total),
                    "currency_code": i.currency_code,
                    "fulfillment_status": i.fulfillment_status,
                    "fulfillment_error": i.fulfillment_error,
                    "subscription_id": i.subscription_id,
                }
                for i in self.repo.get_items(order.id)
            ]
        return data

    def _new_order_number(self, now: datetime) -> str:
        while True:
            number = f"ORD-{now:%Y%m}-{secrets.token_hex(4).upper()}"
            if not self.repo.order_number_exists(number):
                return number
