from decimal import Decimal
from types import SimpleNamespace

from marketplace.services.pricing_service import PricingService


def _item(quantity, unit_price, status="active"):
    return SimpleNamespace(quantity=quantity, unit_price=Decimal(unit_price), status=status, total_price=None)


def test_summarize_applies_flat_rate_to_subtotal():
    pricing = PricingService(default_rate=Decimal("0.16"), store_rates={})
    totals = pricing.summarize([_item(3, "10.00"), _item(1, "25.50")])

    assert totals == {
        "subtotal": Decimal("55.50"),
        "tax_amount": Decimal("8.88"),
        "total_amount": Decimal("64.38"),
    }


def test_tax_is_rounded_once_on_the_subtotal():
    pricing = PricingService(default_rate=Decimal("0.16"), store_rates={})
    # per line would give 0.00 + 0.00
    totals = pricing.summarize([_item(1, "0.03"), _item(1, "0.03")])
    assert totals["tax_amount"] == Decimal("0.01")


def test_removed_lines_do_not_count():
    pricing = PricingService(default_rate=Decimal("0.16"), store_rates={})
    totals = pricing.summarize([_item(1, "10.00"), _item(5, "99.99", status="removed")])
    assert totals["subtotal"] == Decimal("10.00")


def test_empty_cart_is_all_zero():
    pricing = PricingService(default_rate=Decimal("0.16"), store_rates={})
    totals = pricing.summarize([])
    assert totals == {
        "subtotal": Decimal("0.00"),
        "tax_amount": Decimal("0.00"),
        "total_amount": Decimal("0.00"),
    }


def test_store_specific_rate():
    pricing = PricingService(default_rate=Decimal("0.16"), store_rates={2: Decimal("0.08")})
    assert pricing.tax_rate_for(2) == Decimal("0.08")
    assert pricing.tax_rate_for(1) == Decimal("0.16")
    assert pricing.summarize([_item(1, "100.00")], store_id=2)["tax_amount"] == Decimal("8.00")


def test_recompute_sets_line_and_cart_totals():
    pricing = PricingService(default_rate=Decimal("0.16"), store_rates={})
    cart = SimpleNamespace(store_id=1, subtotal=None, tax_amount=None, total_amount=None)
    items = [_item(2, "10.00"), _item(1, "5.00", status="removed")]

    pricing.recompute(cart, items)

    assert items[0].total_price == Decimal("20.00")
    assert items[1].total_price is None
    assert cart.subtotal == Decimal("20.00")
    assert cart.tax_amount == Decimal("3.20")
    assert cart.total_amount == Decimal("23.20")
