from decimal import Decimal

import pytest
import requests

from marketplace.domain.errors import UpstreamFailure
from marketplace.services import catalog_client, payment_gateway, provisioning_client
from marketplace.services.catalog_client import CatalogClient
from marketplace.services.payment_gateway import PaymentGatewayClient, new_reference
from marketplace.services.provisioning_client import ProvisioningClient


class FakeResponse:
    def __init__(self, status_code=200, data=None):
        self.status_code = status_code
        self._data = data or {}

    def json(self):
        return self._data

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")


@pytest.fixture(autouse=True)
def no_retry_wait(monkeypatch):
    # tenacity sleeps between attempts
    monkeypatch.setattr("time.sleep", lambda seconds: None)


def test_catalog_product_found(monkeypatch):
    seen = []

    def fake_get(url, timeout):
        seen.append(url)
        return FakeResponse(200, {"title": "Microsoft 365 E5", "price": 57.2, "currency": "usd"})

    monkeypatch.setattr(catalog_client.requests, "get", fake_get)

    product = CatalogClient(base_url="http://catalog/").get_product(12)

    assert seen == ["http://catalog/products/12"]
    assert product == {
        "exists": True,
        "product_id": 12,
        "title": "Microsoft 365 E5",
        "unit_price": Decimal("57.2"),
        "currency": "USD",
    }


@pytest.mark.parametrize(
    "response",
    [FakeResponse(404), FakeResponse(200, {"title": "Old SKU", "price": "1.00", "is_active": False})],
)
def test_catalog_missing_or_inactive_product(monkeypatch, response):
    monkeypatch.setattr(catalog_client.requests, "get", lambda url, timeout: response)

    assert CatalogClient(base_url="http://catalog").get_product(3)["exists"] is False


def test_catalog_outage_is_upstream_failure(monkeypatch):
    calls = []

    def fake_get(url, timeout):
        calls.append(url)
        return FakeResponse(503)

    monkeypatch.setattr(catalog_client.requests, "get", fake_get)

    with pytest.raises(UpstreamFailure):
        CatalogClient(base_url="http://catalog").get_product(3)
    assert len(calls) == 3


def test_new_reference_format():
    ref = new_reference()
    prefix, suffix = ref.split("_")
    assert prefix.startswith("MKT") and prefix[3:].isdigit()
    assert len(suffix) == 8 and suffix == suffix.upper()


def test_references_in_the_same_second_get_distinct_bases(monkeypatch):
    clock = iter([1_700_000_000_000_001_000, 1_700_000_000_000_002_000])
    monkeypatch.setattr("time.time_ns", lambda: next(clock))

    first, second = new_reference(), new_reference()

    assert first.split("_")[0] == "MKT1700000000000001"
    assert second.split("_")[0] == "MKT1700000000000002"


def test_gateway_initiate(monkeypatch):
    def fake_post(url, json, timeout):
        return FakeResponse(200, {"form_payload": "<form/>", "redirect_url": "https://3ds.example/pay"})

    monkeypatch.setattr(payment_gateway.requests, "post", fake_post)

    result = PaymentGatewayClient(base_url="http://gateway").initiate({"amount": Decimal("11.60")})

    assert result["transaction_reference"].startswith("MKT")
    assert result["form_payload"] == "<form/>"
    assert result["redirect_url"] == "https://3ds.example/pay"


def test_gateway_down(monkeypatch):
    def fake_post(url, json, timeout):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(payment_gateway.requests, "post", fake_post)

    with pytest.raises(UpstreamFailure):
        PaymentGatewayClient(base_url="http://gateway").initiate({"amount": Decimal("1.00")})


def test_provisioning_fake_mode_never_calls_out(monkeypatch):
    monkeypatch.setattr(
        provisioning_client.requests, "post", lambda *a, **kw: pytest.fail("network call in fake mode")
    )

    result = ProvisioningClient(base_url="http://pc", fake_mode=True).provision_item(
        "tenant-1", {"id": 1, "product_id": 3, "quantity": 2}
    )

    assert result["success"] is True
    assert result["subscription_id"].startswith("fake-")


def test_provisioning_rejection_is_not_an_exception(monkeypatch):
    def fake_post(url, timeout, json=None, data=None, headers=None):
        if url == "http://login/token":
            return FakeResponse(200, {"access_token": "tkn", "expires_in": 3600})
        assert headers == {"Authorization": "Bearer tkn"}
        return FakeResponse(400, {"description": "Customer has no Azure plan"})

    monkeypatch.setattr(provisioning_client.requests, "post", fake_post)

    client = ProvisioningClient(base_url="http://pc", token_url="http://login/token", fake_mode=False)
    result = client.provision_item("tenant-1", {"id": 7, "product_id": 3, "quantity": 1})

    assert result == {"success": False, "detail": "Customer has no Azure plan", "subscription_id": None}
