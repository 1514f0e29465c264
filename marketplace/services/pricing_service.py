# marketplace/services/pricing_service.py
from decimal import Decimal
from typing import Dict, Iterable, Mapping

from marketplace.domain.money import ZERO, to_money, line_total, sum_money, apply_rate
from marketplace.domain.states import CartItemStatus
from marketplace.utils.settings import TAX_RATE, STORE_TAX_RATES


class PricingService:
    """
    Recomputes a cart's subtotal/tax/total from its active lines.

    Tax policy: one flat rate per store applied to the whole subtotal and
    rounded half-up to cents (not per line). Shipping is not modeled, so
    total = subtotal + tax.
    """

    def __init__(
        self,
        default_rate: Decimal = TAX_RATE,
        store_rates: Mapping[int, Decimal] | None = None,
    ):
        self.default_rate = Decimal(str(default_rate))
        self.store_rates = dict(STORE_TAX_RATES if store_rates is None else store_rates)

    def tax_rate_for(self, store_id: int | None) -> Decimal:
        return self.store_rates.get(store_id, self.default_rate)

    def summarize(self, items: Iterable, store_id: int | None = None) -> Dict[str, Decimal]:
        active = [i for i in items if i.status == CartItemStatus.ACTIVE.value]
        subtotal = sum_money(line_total(i.quantity, i.unit_price) for i in active) if active else ZERO
        tax_amount = apply_rate(subtotal, self.tax_rate_for(store_id))
        return {
            "subtotal": subtotal,
            "tax_amount": tax_amount,
            "total_amount": to_money(subtotal + tax_amount),
        }

    def recompute(self, cart, items: Iterable) -> Dict[str, Decimal]:
        items = list(items)
        # line totals are always quantity x unit_price
        for item in items:
            if item.status == CartItemStatus.ACTIVE.value:
                item.total_price = line_total(item.quantity, item.unit_price)

        totals = self.summarize(items, cart.store_id)
        cart.subtotal = totals["subtotal"]
        cart.tax_amount = totals["tax_amount"]
        cart.total_amount = totals["total_amount"]
        return totals
