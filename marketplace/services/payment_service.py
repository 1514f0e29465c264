# marketplace/services/payment_service.py
import re
from datetime import datetime, timedelta
from typing import Dict, Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace.data.models.order import OrderModel
from marketplace.data.models.payment_response import PaymentResponseModel
from marketplace.data.models.payment_session import PaymentSessionModel
from marketplace.domain.checkout import CheckoutParams
from marketplace.domain.errors import (
    ConcurrencyConflict,
    InvalidStateError,
    NotFoundError,
    ValidationFailure,
)
from marketplace.domain.identity import Identity
from marketplace.domain.money import to_money, same_amount, format_currency
from marketplace.domain.states import (
    OrderStatus,
    PaymentOutcome,
    PaymentSessionStatus,
    PaymentStatus,
)
from marketplace.repos.payment_repo import PaymentRepo
from marketplace.services.abandoned_cart_service import AbandonedCartService
from marketplace.services.lock_service import LockService
from marketplace.services.notification_service import NotificationService
from marketplace.services.order_service import OrderService
from marketplace.services.payment_gateway import PaymentGatewayClient
from marketplace.utils.settings import (
    PAYMENT_MAX_AMOUNT,
    PAYMENT_MIN_AMOUNT,
    PAYMENT_SESSION_TTL_MINUTES,
)
from marketplace.utils.timeutils import utcnow
from marketplace.utils.logging import get_logger

logger = get_logger(__name__)

_APPROVED = {"approved", "aprobada"}
# never persisted, not even in raw_payload
_SENSITIVE_KEYS = {"card_number", "cc_number", "cvv", "cvv2", "cc_cvv", "expiration"}


class PaymentService:
    """
    Payment session reconciliation.

    A PaymentSession row is written before the client is sent to the gateway.
    The webhook (or synchronous confirmation) finds it by reference and
    applies exactly one terminal outcome, recorded as a payment_responses row
    keyed by that reference.
    """

    def __init__(
        self,
        db: Session,
        gateway: PaymentGatewayClient,
        lock_service: LockService,
        order_service: OrderService | None = None,
        abandoned_carts: AbandonedCartService | None = None,
        notifier: NotificationService | None = None,
        session_ttl_minutes: int = PAYMENT_SESSION_TTL_MINUTES,
    ):
        self.repo = PaymentRepo(db)
        self.gateway = gateway
        self.locks = lock_service
        self.orders = order_service or OrderService(db, lock_service=lock_service)
        self.abandoned_carts = abandoned_carts or AbandonedCartService(db)
        self.notifier = notifier or NotificationService()
        self.session_ttl_minutes = session_ttl_minutes

    def start_payment(self, identity: Identity, params: CheckoutParams) -> Dict[str, Any]:
        plan = self.orders.prepare_checkout(identity, params)
        amount = to_money(plan.total_amount)
        self._check_amount(amount, cart_id=plan.cart_id)

        initiated = self.gateway.initiate(
            {
                "amount": amount,
                "currency": plan.currency_code,
                "user_id": plan.user_id,
                "cart_id": plan.cart_id,
                "billing_information_id": params.billing_information_id,
                "payment_method": params.payment_method,
            }
        )

        session = self.create_for_payment(
            reference=initiated["transaction_reference"],
            form_payload=initiated["form_payload"],
            redirect_url=initiated["redirect_url"],
            user_id=plan.user_id,
            cart_id=plan.cart_id,
            amount=amount,
            currency_code=plan.currency_code,
            billing_information_id=params.billing_information_id,
            payment_card_id=params.payment_card_id,
            payment_method=params.payment_method,
            provisioning_account_id=params.provisioning_account_id,
        )
        return self._started(session)

    def start_order_payment(self, identity: Identity, order_id: int) -> Dict[str, Any]:
        """Payment for an order placed through checkout, its cart is already converted."""
        if identity.user_id is None:
            raise ValidationFailure("Payment requires an authenticated user")

        order = self.orders.repo.get_order_for_user(order_id, identity.user_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found", order_id=order_id)
        if (
            order.status != OrderStatus.PENDING.value
            or order.payment_status == PaymentStatus.PAID.value
        ):
            raise InvalidStateError(
                f"Order {order.order_number} is {order.status}, only pending orders can be paid",
                order_id=order.id,
            )

        # kwota z zamowienia, nie od klienta
        amount = to_money(order.total_amount)
        self._check_amount(amount, order_id=order.id)

        initiated = self.gateway.initiate(
            {
                "amount": amount,
                "currency": order.currency_code,
                "user_id": order.user_id,
                "cart_id": order.cart_id,
                "order_id": order.id,
                "billing_information_id": order.billing_information_id,
                "payment_method": order.payment_method,
            }
        )

        session = self.create_for_payment(
            reference=initiated["transaction_reference"],
            form_payload=initiated["form_payload"],
            redirect_url=initiated["redirect_url"],
            user_id=order.user_id,
            cart_id=order.cart_id,
            amount=amount,
            currency_code=order.currency_code,
            billing_information_id=order.billing_information_id,
            payment_card_id=order.payment_card_id,
            payment_method=order.payment_method,
            provisioning_account_id=order.provisioning_account_id,
            order_id=order.id,
        )
        return self._started(session)

    def create_for_payment(
        self,
        reference: str,
        form_payload: str,
        redirect_url: str,
        user_id: int,
        cart_id: int,
        amount,
        currency_code: str | None = None,
        billing_information_id: int | None = None,
        payment_card_id: int | None = None,
        payment_method: str | None = None,
        provisioning_account_id: str | None = None,
        order_id: int | None = None,
    ) -> PaymentSessionModel:
        if not reference or not reference.strip():
            raise ValidationFailure("Transaction reference is required")
        if not form_payload or not form_payload.strip():
            raise ValidationFailure("Payment form payload is required", reference=reference)
        if not redirect_url or not redirect_url.strip():
            raise ValidationFailure("Redirect URL is required", reference=reference)

        now = utcnow()
        session = PaymentSessionModel(
            transaction_reference=reference.strip(),
            form_payload=form_payload,
            redirect_url=redirect_url,
            user_id=user_id,
            cart_id=cart_id,
            order_id=order_id,
            billing_information_id=billing_information_id,
            payment_card_id=payment_card_id,
            payment_method=payment_method,
            provisioning_account_id=provisioning_account_id,
            amount=to_money(amount),
            currency_code=currency_code,
            status=PaymentSessionStatus.PENDING.value,
            expires_at=now + timedelta(minutes=self.session_ttl_minutes),
            created_at=now,
        )
        try:
            self.repo.add_session(session)
            self.repo.commit()
        except IntegrityError as e:
            self.repo.rollback()
            raise ConcurrencyConflict("Transaction reference already in use", reference=reference) from e
        except Exception:
            self.repo.rollback()
            raise

        logger.info(
            f"Payment session {reference} created for cart {cart_id}",
            extra={"reference": reference, "cart_id": cart_id, "user_id": user_id},
        )
        return session

    def find_session(self, reference: str) -> PaymentSessionModel | None:
        """
        Exact reference first. Otherwise trailing "_<suffix>" parts are cut one
        at a time, longest candidate first; each candidate is tried as an exact
        reference and then as the base of exactly one session. A base shared by
        several sessions is never guessed.
        """
        session = self.repo.get_session_by_reference(reference)
        if session is not None:
            return session

        candidate = reference
        while candidate:
            if candidate != reference:
                session = self.repo.get_session_by_reference(candidate)
                if session is not None:
                    break

            matches = self.repo.find_sessions_by_prefix(candidate)
            if len(matches) > 1:
                logger.error(
                    f"Reference {reference} matches several payment sessions by base {candidate}",
                    extra={"reference": reference},
                )
                raise NotFoundError("Payment session reference is ambiguous", reference=reference)
            if matches:
                session = matches[0]
                break

            if "_" not in candidate:
                return None
            candidate = candidate.rsplit("_", 1)[0]

        if session is not None:
            logger.info(
                f"Payment session {session.transaction_reference} matched by reference {candidate}",
                extra={"reference": reference},
            )
        return session

    def handle_webhook(self, reference: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not reference or not reference.strip():
            raise ValidationFailure("Transaction reference is required")
        reference = reference.strip()
        payload = payload or {}

        session = self.find_session(reference)
        if session is None:
            logger.error(
                f"Webhook for unknown payment reference {reference}",
                extra={"reference": reference},
            )
            raise NotFoundError("Payment session not found", reference=reference)

        ref = session.transaction_reference
        order = None
        with self.locks.hold(f"payment:{ref}"):
            try:
                session = self.repo.get_session_by_reference(ref, for_update=True)

                existing = self.repo.get_response(ref)
                if existing is not None:
                    self.repo.rollback()
                    logger.info(
                        f"Webhook for {ref} already processed, ignoring replay",
                        extra={"reference": ref, "order_id": existing.order_id},
                    )
                    return self._result(existing, already_processed=True)

                now = utcnow()
                outcome = self._outcome(session, payload)
                response = self.repo.add_response(
                    self._build_response(session, payload, outcome, now)
                )

                if outcome == PaymentOutcome.APPROVED:
                    order = self._apply_success(session, response, now)
                    if order is None:
                        # karta obciazona, ale nie ma zamowienia do oplacenia
                        response.status = PaymentOutcome.UNRECONCILED.value
                        response.order_id = session.order_id
                        response.error_message = (
                            f"Approved payment could not be applied to cart {session.cart_id}"
                        )
                        logger.error(
                            f"Payment {ref} approved but cart {session.cart_id} of user "
                            f"{session.user_id} could not be paid, left for manual reconciliation",
                            extra={
                                "reference": ref,
                                "cart_id": session.cart_id,
                                "user_id": session.user_id,
                                "order_id": session.order_id,
                            },
                        )
                    else:
                        response.order_id = order.id
                        self.abandoned_carts.recover_for_order(order, now)
                elif session.order_id is not None:
                    self.orders.mark_payment_failed(session.order_id, ref, now)
                    response.order_id = session.order_id

                if outcome == PaymentOutcome.AMOUNT_MISMATCH:
                    logger.error(
                        f"Payment {ref} reported amount {payload.get('amount')} but session "
                        f"recorded {session.amount}, left for manual reconciliation",
                        extra={"reference": ref, "cart_id": session.cart_id},
                    )

                session.status = PaymentSessionStatus.RESOLVED.value
                session.resolved_at = now
                if order is not None:
                    session.order_id = order.id
                self.repo.commit()
            except IntegrityError:
                # rownolegly webhook wygral insert do payment_responses
                self.repo.rollback()
                existing = self.repo.get_response(ref)
                if existing is None:
                    raise
                return self._result(existing, already_processed=True)
            except Exception:
                self.repo.rollback()
                raise

        logger.info(
            f"Payment {ref} resolved as {response.status}",
            extra={"reference": ref, "order_id": response.order_id, "cart_id": session.cart_id},
        )

        if order is not None:
            self.notifier.send_order_notification(order.user_id, order.id)
            self.notifier.schedule_provisioning(order.id)

        return self._result(response, already_processed=False, order=order)

    def get_payment_status(self, reference: str, user_id: int) -> Dict[str, Any]:
        session = self.repo.get_session_for_user(reference, user_id)
        if session is None:
            raise NotFoundError("Payment not found", reference=reference)

        response = self.repo.get_response(session.transaction_reference)
        data = {
            "transaction_reference": session.transaction_reference,
            "session_status": session.status,
            "status": response.status if response else "pending",
            "order_id": response.order_id if response else session.order_id,
            "amount": to_money(session.amount),
            "currency_code": session.currency_code,
            "error_message": response.error_message if response else None,
            "processed_at": response.processed_at if response else None,
        }
        return data

    def clean_expired(self, now: datetime | None = None) -> int:
        now = now or utcnow()
        try:
            expired = self.repo.expire_sessions(now)
            self.repo.commit()
        except Exception:
            self.repo.rollback()
            raise
        logger.info(f"Expired {expired} unresolved payment sessions")
        return expired

    # helpers
    @staticmethod
    def _check_amount(amount, **context) -> None:
        if amount < PAYMENT_MIN_AMOUNT or amount > PAYMENT_MAX_AMOUNT:
            raise ValidationFailure(
                f"Amount {amount} outside allowed range {PAYMENT_MIN_AMOUNT}-{PAYMENT_MAX_AMOUNT}",
                **context,
            )

    @staticmethod
    def _started(session: PaymentSessionModel) -> Dict[str, Any]:
        logger.info(
            f"Payment {session.transaction_reference} of "
            f"{format_currency(session.amount, session.currency_code or 'MXN')} started",
            extra={
                "reference": session.transaction_reference,
                "cart_id": session.cart_id,
                "order_id": session.order_id,
            },
        )
        return {
            "transaction_reference": session.transaction_reference,
            "redirect_url": session.redirect_url,
            "form_payload": session.form_payload,
            "amount": to_money(session.amount),
            "currency_code": session.currency_code,
            "order_id": session.order_id,
            "expires_at": session.expires_at,
        }

    def _outcome(self, session: PaymentSessionModel, payload: Dict[str, Any]) -> PaymentOutcome:
        status = str(payload.get("payment_response") or "").strip().lower()
        if status not in _APPROVED:
            return PaymentOutcome.ERROR

        # the gateway amount is informational, our records decide
        recorded = self._recorded_total(session)
        if recorded is None or not same_amount(session.amount, recorded):
            return PaymentOutcome.AMOUNT_MISMATCH

        reported = payload.get("amount")
        if reported not in (None, ""):
            try:
                if not same_amount(reported, recorded):
                    return PaymentOutcome.AMOUNT_MISMATCH
            except ValidationFailure:
                return PaymentOutcome.AMOUNT_MISMATCH

        return PaymentOutcome.APPROVED

    def _recorded_total(self, session: PaymentSessionModel):
        if session.order_id is not None:
            order = self.orders.repo.get_order(session.order_id)
            return to_money(order.total_amount) if order else None
        cart = self.orders.carts.get_cart(session.cart_id)
        return to_money(cart.total_amount) if cart else None

    def _apply_success(
        self, session: PaymentSessionModel, response: PaymentResponseModel, now
    ) -> OrderModel | None:
        """Paid order, or None when the cart or order can no longer take this payment."""
        if session.order_id is not None:
            order_id = session.order_id
        else:
            plan = self.orders.plan_for_cart(
                session.cart_id,
                session.user_id,
                CheckoutParams(
                    billing_information_id=session.billing_information_id,
                    payment_card_id=session.payment_card_id,
                    payment_method=session.payment_method,
                    provisioning_account_id=session.provisioning_account_id,
                ),
            )
            try:
                order_id = self.orders.convert_cart(plan).id
            except ConcurrencyConflict:
                # koszyk przeszedl przez /orders zanim doszla platnosc
                existing = self.orders.repo.get_order_by_cart(session.cart_id)
                if existing is None:
                    # porzucony albo scalony w miedzyczasie
                    return None
                order_id = existing.id

        try:
            return self.orders.mark_paid(
                order_id,
                {
                    "transaction_reference": session.transaction_reference,
                    "auth_code": response.auth_code,
                    "card_type": response.card_type,
                    "card_last_four": response.card_last_four,
                },
                now,
            )
        except (InvalidStateError, ConcurrencyConflict) as e:
            # anulowane albo juz oplacone inna sesja
            logger.warning(
                f"Order {order_id} cannot take payment {session.transaction_reference}: {e}",
                extra={"reference": session.transaction_reference, "order_id": order_id},
            )
            return None

    def _build_response(
        self,
        session: PaymentSessionModel,
        payload: Dict[str, Any],
        outcome: PaymentOutcome,
        now,
    ) -> PaymentResponseModel:
        reported = payload.get("amount")
        return PaymentResponseModel(
            transaction_reference=session.transaction_reference,
            payment_session_id=session.id,
            order_id=session.order_id,
            status=outcome.value,
            amount=to_money(session.amount),
            reported_amount=str(reported) if reported not in (None, "") else None,
            auth_code=_clean(payload.get("auth_code")),
            folio=_clean(payload.get("folio")),
            error_code=_clean(payload.get("cd_error")),
            error_message=_clean(payload.get("nb_error")),
            card_type=_clean(payload.get("card_type")),
            card_last_four=mask_card(payload.get("card_number") or payload.get("cc_number")),
            card_holder=_clean(payload.get("card_holder")),
            raw_payload={k: v for k, v in payload.items() if k not in _SENSITIVE_KEYS},
            processed_at=now,
        )

    @staticmethod
    def _result(response: PaymentResponseModel, already_processed: bool, order=None) -> Dict[str, Any]:
        return {
            "transaction_reference": response.transaction_reference,
            "status": response.status,
            "success": response.status == PaymentOutcome.APPROVED.value,
            "already_processed": already_processed,
            "order_id": response.order_id,
            "order_number": order.order_number if order is not None else None,
            "error_message": response.error_message,
        }


def mask_card(number) -> str | None:
    """Last four digits only."""
    if not number:
        return None
    digits = re.sub(r"\D", "", str(number))
    return digits[-4:] if len(digits) >= 4 else None


def _clean(value) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None
