# marketplace/api/routers/payments.py
from fastapi import APIRouter, Depends

from marketplace.api.deps import get_identity, get_payment_service, require_user
from marketplace.domain.checkout import CheckoutParams
from marketplace.domain.identity import Identity
from marketplace.domain.schemas import (
    CheckoutIn,
    PaymentStartOut,
    PaymentStatusOut,
    WebhookIn,
    WebhookOut,
)
from marketplace.services.payment_service import PaymentService

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/", response_model=PaymentStartOut, status_code=201)
def start_payment(
    payload: CheckoutIn,
    identity: Identity = Depends(get_identity),
    svc: PaymentService = Depends(get_payment_service),
):
    return svc.start_payment(identity, CheckoutParams(**payload.model_dump()))


# zamowienie z POST /orders, koszyk juz skonwertowany
@router.post("/orders/{order_id}", response_model=PaymentStartOut, status_code=201)
def start_order_payment(
    order_id: int,
    user_id: int = Depends(require_user),
    svc: PaymentService = Depends(get_payment_service),
):
    return svc.start_order_payment(Identity(user_id=user_id), order_id)


@router.post("/webhook", response_model=WebhookOut)
def payment_webhook(
    payload: WebhookIn,
    svc: PaymentService = Depends(get_payment_service),
):
    return svc.handle_webhook(payload.reference, payload.payload)


@router.get("/{reference}", response_model=PaymentStatusOut)
def payment_status(
    reference: str,
    user_id: int = Depends(require_user),
    svc: PaymentService = Depends(get_payment_service),
):
    return svc.get_payment_status(reference, user_id)
