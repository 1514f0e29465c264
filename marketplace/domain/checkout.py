from dataclasses import dataclass, field
from decimal import Decimal


@dataclass(frozen=True)
class CheckoutParams:
    billing_information_id: int
    payment_card_id: int | None = None
    payment_method: str | None = None
    provisioning_account_id: str | None = None
    cart_id: int | None = None


@dataclass(frozen=True)
class CheckoutPlan:
    """Result of the pre-transaction checks, plain values only."""

    cart_id: int
    user_id: int
    store_id: int
    currency_code: str
    total_amount: Decimal
    params: CheckoutParams
    # None skips the version guard (webhook path reconciles amounts instead)
    cart_version: int | None = None
    recovery_token: str | None = field(default=None)
