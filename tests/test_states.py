import pytest

from marketplace.domain.errors import InvalidStateError
from marketplace.domain.states import (
    CART_TRANSITIONS,
    ORDER_TRANSITIONS,
    ABANDONED_CART_TRANSITIONS,
    AbandonedCartStatus,
    CartStatus,
    OrderStatus,
    can_transition,
    ensure_transition,
)
from marketplace.repos.cart_repo import CartRepo
from tests.helpers import user


@pytest.mark.parametrize(
    "current,target,allowed",
    [
        ("pending", OrderStatus.PROCESSING, True),
        ("pending", OrderStatus.CANCELLED, True),
        ("processing", OrderStatus.COMPLETED, True),
        ("processing", OrderStatus.CANCELLED, False),
        ("completed", OrderStatus.CANCELLED, False),
        ("cancelled", OrderStatus.PROCESSING, False),
        ("pending", OrderStatus.COMPLETED, False),
    ],
)
def test_order_transitions(current, target, allowed):
    assert can_transition(ORDER_TRANSITIONS, current, target) is allowed


def test_cart_terminal_states():
    for terminal in (CartStatus.CONVERTED, CartStatus.MERGED, CartStatus.RECOVERED):
        for target in CartStatus:
            assert not can_transition(CART_TRANSITIONS, terminal, target)
    assert can_transition(CART_TRANSITIONS, "abandoned", CartStatus.RECOVERED)
    assert not can_transition(CART_TRANSITIONS, "abandoned", CartStatus.ACTIVE)


def test_abandoned_snapshot_recovers_once():
    assert can_transition(ABANDONED_CART_TRANSITIONS, "abandoned", AbandonedCartStatus.RECOVERED)
    assert not can_transition(ABANDONED_CART_TRANSITIONS, "recovered", AbandonedCartStatus.RECOVERED)


def test_ensure_transition_raises_with_context():
    with pytest.raises(InvalidStateError) as exc:
        ensure_transition(ORDER_TRANSITIONS, "completed", OrderStatus.CANCELLED, "Order")

    assert exc.value.code == "invalid_state"
    assert exc.value.context == {"current": "completed", "target": "cancelled"}
    assert "Order cannot move from 'completed' to 'cancelled'" in str(exc.value)


def test_cart_repo_refuses_transitions_outside_the_table(db, cart_service):
    cart_id = cart_service.add_item(user(1), 1, 1)["cart"]["cart_id"]
    repo = CartRepo(db)

    with pytest.raises(InvalidStateError):
        repo.transition_cart(cart_id, from_status="converted", to_status="active")
    with pytest.raises(InvalidStateError):
        repo.transition_cart(cart_id, from_status="active", to_status="recovered")

    assert repo.transition_cart(cart_id, from_status="active", to_status="abandoned") == 1
