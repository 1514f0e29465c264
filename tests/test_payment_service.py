from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from marketplace.data.models.cart import CartModel
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
from marketplace.services.payment_service import mask_card
from marketplace.utils.timeutils import utcnow
from tests.helpers import user, guest, count_rows

APPROVED = {
    "payment_response": "approved",
    "auth_code": "482913",
    "folio": "F-0001",
    "card_type": "VISA",
    "card_number": "4111 1111 1111 1111",
    "cvv": "123",
    "card_holder": "ANA LOPEZ",
    "amount": "64.38",
}


def _params(billing, user_id=1):
    return CheckoutParams(
        billing_information_id=billing[user_id]["billing_id"],
        payment_card_id=billing[user_id]["card_id"],
        payment_method="card",
        provisioning_account_id="tenant-001",
    )


@pytest.fixture
def started(cart_service, payment_service, billing):
    cart_service.add_item(user(1), 1, 3)
    cart_service.add_item(user(1), 2, 1)
    return payment_service.start_payment(user(1), _params(billing))


def test_start_payment_records_pending_session(started, gateway, db):
    assert started["amount"] == Decimal("64.38")
    assert started["currency_code"] == "MXN"
    assert started["redirect_url"] == "https://3ds.example/pay"
    assert gateway.calls[0]["amount"] == Decimal("64.38")

    session = db.execute(select(PaymentSessionModel)).scalar_one()
    assert session.status == "pending"
    assert session.transaction_reference == started["transaction_reference"]
    assert session.provisioning_account_id == "tenant-001"
    # nothing is converted until the gateway answers
    assert count_rows(db, OrderModel) == 0


def test_start_payment_rejects_amount_over_limit(cart_service, payment_service, catalog, gateway, billing):
    catalog.products[9] = {"title": "Enterprise agreement", "price": "999999.00"}
    cart_service.add_item(user(1), 9, 2)

    with pytest.raises(ValidationFailure):
        payment_service.start_payment(user(1), _params(billing))
    assert gateway.calls == []


def test_start_payment_on_empty_cart(payment_service, cart_service, billing):
    item_id = cart_service.add_item(user(1), 1, 1)["item"]["id"]
    cart_service.remove_item(user(1), item_id)

    with pytest.raises(InvalidStateError):
        payment_service.start_payment(user(1), _params(billing))


def test_approved_webhook_converts_cart_and_pays_order(started, payment_service, notifier, db):
    result = payment_service.handle_webhook(started["transaction_reference"], APPROVED)

    assert result["success"] is True
    assert result["status"] == "approved"
    assert result["already_processed"] is False
    assert result["order_number"].startswith("ORD-")

    order = db.get(OrderModel, result["order_id"])
    db.refresh(order)
    assert order.status == "processing"
    assert order.payment_status == "paid"
    assert order.transaction_reference == started["transaction_reference"]
    assert order.auth_code == "482913"
    assert order.card_last_four == "1111"
    assert order.total_amount == Decimal("64.38")

    cart = db.get(CartModel, order.cart_id)
    db.refresh(cart)
    assert cart.status == "converted"

    session = db.execute(select(PaymentSessionModel)).scalar_one()
    assert session.status == "resolved"
    assert session.order_id == order.id

    assert notifier.order_notifications == [(1, order.id)]
    assert notifier.provisioning == [order.id]


def test_replayed_webhook_is_a_noop(started, payment_service, notifier, db):
    first = payment_service.handle_webhook(started["transaction_reference"], APPROVED)
    again = payment_service.handle_webhook(started["transaction_reference"], APPROVED)

    assert again["already_processed"] is True
    assert again["order_id"] == first["order_id"]
    assert again["success"] is True
    assert count_rows(db, OrderModel) == 1
    assert count_rows(db, PaymentResponseModel) == 1
    assert len(notifier.provisioning) == 1


def test_reference_suffix_resolves_by_base(started, payment_service):
    base = started["transaction_reference"].split("_")[0]

    result = payment_service.handle_webhook(f"{base}_RETRY2", APPROVED)

    assert result["success"] is True
    assert result["transaction_reference"] == started["transaction_reference"]


def test_unknown_reference(payment_service):
    with pytest.raises(NotFoundError):
        payment_service.handle_webhook("MKT999_NOPE", APPROVED)
    with pytest.raises(ValidationFailure):
        payment_service.handle_webhook("  ", APPROVED)


def test_declined_payment_leaves_cart_active(started, payment_service, cart_service, notifier, db):
    result = payment_service.handle_webhook(
        started["transaction_reference"],
        {"payment_response": "denied", "cd_error": "05", "nb_error": "Fondos insuficientes"},
    )

    assert result["success"] is False
    assert result["status"] == "error"
    assert result["order_id"] is None
    assert result["error_message"] == "Fondos insuficientes"
    assert count_rows(db, OrderModel) == 0
    assert cart_service.get_cart_summary(user(1))["status"] == "active"
    assert notifier.provisioning == []


def test_reported_amount_mismatch_creates_no_order(started, payment_service, db):
    result = payment_service.handle_webhook(
        started["transaction_reference"], dict(APPROVED, amount="1.00")
    )

    assert result["status"] == "amount_mismatch"
    assert result["success"] is False
    assert count_rows(db, OrderModel) == 0
    response = db.execute(select(PaymentResponseModel)).scalar_one()
    assert response.reported_amount == "1.00"
    assert response.amount == Decimal("64.38")


def test_cart_changed_after_payment_started(started, payment_service, cart_service, db):
    cart_service.add_item(user(1), 3, 1)

    result = payment_service.handle_webhook(started["transaction_reference"], APPROVED)

    assert result["status"] == "amount_mismatch"
    assert count_rows(db, OrderModel) == 0
    assert cart_service.get_cart_summary(user(1))["status"] == "active"


def test_full_card_data_is_never_stored(started, payment_service, db):
    payment_service.handle_webhook(started["transaction_reference"], APPROVED)

    response = db.execute(select(PaymentResponseModel)).scalar_one()
    assert response.card_last_four == "1111"
    assert response.card_holder == "ANA LOPEZ"
    assert "card_number" not in response.raw_payload
    assert "cvv" not in response.raw_payload
    assert response.raw_payload["folio"] == "F-0001"


def test_order_checked_out_before_webhook_is_paid(started, payment_service, order_service, billing, db):
    order = order_service.create_from_cart(user(1), _params(billing))

    result = payment_service.handle_webhook(started["transaction_reference"], APPROVED)

    assert result["order_id"] == order["id"]
    assert count_rows(db, OrderModel) == 1
    assert order_service.get_order(order["id"], 1)["payment_status"] == "paid"


def test_session_linked_to_existing_order(cart_service, order_service, payment_service, billing, db):
    cart_service.add_item(user(1), 3, 1)
    order = order_service.create_from_cart(user(1), _params(billing))
    payment_service.create_for_payment(
        reference="MKT1800000000_LINKED01",
        form_payload="<form/>",
        redirect_url="https://3ds.example/pay",
        user_id=1,
        cart_id=order["cart_id"],
        amount=order["total_amount"],
        order_id=order["id"],
    )

    result = payment_service.handle_webhook(
        "MKT1800000000_LINKED01", dict(APPROVED, amount=str(order["total_amount"]))
    )

    assert result["success"] is True
    assert result["order_id"] == order["id"]
    paid = order_service.get_order(order["id"], 1)
    assert paid["status"] == "processing"
    assert paid["transaction_reference"] == "MKT1800000000_LINKED01"


def test_declined_payment_on_linked_order_marks_it_failed(cart_service, order_service, payment_service, billing):
    cart_service.add_item(user(1), 3, 1)
    order = order_service.create_from_cart(user(1), _params(billing))
    payment_service.create_for_payment(
        reference="MKT1800000000_LINKED02",
        form_payload="<form/>",
        redirect_url="https://3ds.example/pay",
        user_id=1,
        cart_id=order["cart_id"],
        amount=order["total_amount"],
        order_id=order["id"],
    )

    payment_service.handle_webhook("MKT1800000000_LINKED02", {"payment_response": "error"})

    failed = order_service.get_order(order["id"], 1)
    assert failed["status"] == "pending"
    assert failed["payment_status"] == "failed"


def test_create_for_payment_validates_inputs(payment_service):
    kwargs = {
        "reference": "MKT1_A",
        "form_payload": "<form/>",
        "redirect_url": "https://3ds.example/pay",
        "user_id": 1,
        "cart_id": 1,
        "amount": "10.00",
    }
    for field in ("reference", "form_payload", "redirect_url"):
        with pytest.raises(ValidationFailure):
            payment_service.create_for_payment(**dict(kwargs, **{field: " "}))

    payment_service.create_for_payment(**kwargs)
    with pytest.raises(ConcurrencyConflict):
        payment_service.create_for_payment(**kwargs)


def test_payment_status_is_owner_only(started, payment_service):
    ref = started["transaction_reference"]

    status = payment_service.get_payment_status(ref, 1)
    assert status["status"] == "pending"
    assert status["session_status"] == "pending"

    with pytest.raises(NotFoundError):
        payment_service.get_payment_status(ref, 2)

    payment_service.handle_webhook(ref, APPROVED)
    status = payment_service.get_payment_status(ref, 1)
    assert status["status"] == "approved"
    assert status["order_id"] is not None


def test_clean_expired_sessions(started, payment_service, db):
    assert payment_service.clean_expired(now=utcnow() + timedelta(minutes=5)) == 0
    assert payment_service.clean_expired(now=utcnow() + timedelta(minutes=11)) == 1

    session = db.execute(select(PaymentSessionModel)).scalar_one()
    db.refresh(session)
    assert session.status == "expired"


@pytest.mark.parametrize(
    "raw,expected",
    [("4111111111111111", "1111"), ("4111-1111-1111-4242", "4242"), ("12", None), (None, None)],
)
def test_mask_card(raw, expected):
    assert mask_card(raw) == expected


def test_late_webhook_on_expired_session_is_still_applied(started, payment_service, db):
    payment_service.clean_expired(now=utcnow() + timedelta(minutes=11))

    result = payment_service.handle_webhook(started["transaction_reference"], APPROVED)

    assert result["success"] is True
    session = db.execute(select(PaymentSessionModel)).scalar_one()
    db.refresh(session)
    assert session.status == "resolved"


def _session(payment_service, reference, user_id, cart_id):
    return payment_service.create_for_payment(
        reference=reference,
        form_payload="<form/>",
        redirect_url="https://3ds.example/pay",
        user_id=user_id,
        cart_id=cart_id,
        amount="10.00",
    )


def test_suffixed_reference_keeps_its_own_session_within_one_second(payment_service):
    _session(payment_service, "MKT1700000000_AAAA1111", user_id=1, cart_id=1)
    _session(payment_service, "MKT1700000000_BBBB2222", user_id=2, cart_id=2)

    found = payment_service.find_session("MKT1700000000_AAAA1111_R1")
    assert found.transaction_reference == "MKT1700000000_AAAA1111"
    assert found.user_id == 1

    found = payment_service.find_session("MKT1700000000_BBBB2222_R1_R2")
    assert found.user_id == 2


def test_base_shared_by_several_sessions_is_not_guessed(payment_service):
    _session(payment_service, "MKT1700000000_AAAA1111", user_id=1, cart_id=1)
    _session(payment_service, "MKT1700000000_BBBB2222", user_id=2, cart_id=2)

    with pytest.raises(NotFoundError):
        payment_service.find_session("MKT1700000000_RETRY")
    with pytest.raises(NotFoundError):
        payment_service.handle_webhook("MKT1700000000", APPROVED)
    assert payment_service.find_session("MKT1800000000_CCCC3333") is None


def test_approved_payment_on_abandoned_cart_is_recorded_unreconciled(
    started, payment_service, abandoned_service, notifier, db
):
    assert abandoned_service.mark_abandoned(now=utcnow() + timedelta(hours=25)) == 1

    result = payment_service.handle_webhook(started["transaction_reference"], APPROVED)

    assert result["status"] == "unreconciled"
    assert result["success"] is False
    assert result["order_id"] is None
    assert "could not be applied" in result["error_message"]
    assert count_rows(db, OrderModel) == 0
    assert notifier.provisioning == []

    response = db.execute(select(PaymentResponseModel)).scalar_one()
    assert response.auth_code == "482913"
    assert response.card_last_four == "1111"
    session = db.execute(select(PaymentSessionModel)).scalar_one()
    db.refresh(session)
    assert session.status == "resolved"

    again = payment_service.handle_webhook(started["transaction_reference"], APPROVED)
    assert again["already_processed"] is True
    assert again["status"] == "unreconciled"
    assert count_rows(db, PaymentResponseModel) == 1


def test_approved_payment_on_cancelled_order_is_recorded_unreconciled(
    cart_service, order_service, payment_service, billing
):
    cart_service.add_item(user(1), 3, 1)
    order = order_service.create_from_cart(user(1), _params(billing))
    started = payment_service.start_order_payment(user(1), order["id"])
    order_service.cancel(order["id"], 1, reason="wrong tenant")

    result = payment_service.handle_webhook(
        started["transaction_reference"], dict(APPROVED, amount=str(order["total_amount"]))
    )

    assert result["status"] == "unreconciled"
    assert result["order_id"] == order["id"]
    assert order_service.get_order(order["id"], 1)["status"] == "cancelled"


def test_pay_existing_pending_order(cart_service, order_service, payment_service, gateway, billing, db):
    cart_service.add_item(user(1), 3, 1)
    order = order_service.create_from_cart(user(1), _params(billing))

    started = payment_service.start_order_payment(user(1), order["id"])

    assert started["order_id"] == order["id"]
    assert started["amount"] == order["total_amount"]
    assert gateway.calls[-1]["order_id"] == order["id"]
    session = db.execute(select(PaymentSessionModel)).scalar_one()
    assert session.order_id == order["id"]
    assert session.provisioning_account_id == "tenant-001"

    result = payment_service.handle_webhook(
        started["transaction_reference"], dict(APPROVED, amount=str(order["total_amount"]))
    )

    assert result["success"] is True
    assert result["order_id"] == order["id"]
    paid = order_service.get_order(order["id"], 1)
    assert paid["status"] == "processing"
    assert paid["payment_status"] == "paid"
    assert count_rows(db, OrderModel) == 1

    with pytest.raises(InvalidStateError):
        payment_service.start_order_payment(user(1), order["id"])


def test_order_payment_requires_owner(cart_service, order_service, payment_service, gateway, billing):
    cart_service.add_item(user(1), 3, 1)
    order = order_service.create_from_cart(user(1), _params(billing))

    with pytest.raises(NotFoundError):
        payment_service.start_order_payment(user(2), order["id"])
    with pytest.raises(ValidationFailure):
        payment_service.start_order_payment(guest("tok"), order["id"])
    assert gateway.calls == []
