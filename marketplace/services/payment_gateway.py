# marketplace/services/payment_gateway.py
import secrets
import time

import requests
from requests import RequestException

from marketplace.domain.errors import UpstreamFailure
from marketplace.utils.retry import http_retry
from marketplace.utils.settings import PAYMENT_GATEWAY_URL, HTTP_TIMEOUT_SECONDS
from marketplace.utils.logging import get_logger

logger = get_logger(__name__)


def new_reference(prefix: str = "MKT") -> str:
    # MKT1693234567123456_A1B2C3D4, baza w mikrosekundach, bramka czasem odsyla sama baze
    return f"{prefix}{time.time_ns() // 1000}_{secrets.token_hex(4).upper()}"


class PaymentGatewayClient:
    """Opens a 3DS payment with the gateway; the protocol itself stays on their side."""

    def __init__(self, base_url: str | None = None, timeout: float = HTTP_TIMEOUT_SECONDS):
        self.base_url = (base_url or PAYMENT_GATEWAY_URL).rstrip("/")
        self.timeout = timeout

    def initiate(self, payment_details: dict) -> dict:
        reference = payment_details.get("transaction_reference") or new_reference()
        body = dict(payment_details)
        body["transaction_reference"] = reference
        body["amount"] = str(body["amount"])

        try:
            data = self._post("/payments", body)
        except RequestException as e:
            logger.error(
                f"Payment gateway rejected or unreachable for {reference}: {e}",
                extra={"reference": reference, "cart_id": payment_details.get("cart_id")},
            )
            raise UpstreamFailure("Payment gateway unavailable", reference=reference) from e

        return {
            "transaction_reference": data.get("transaction_reference") or reference,
            "form_payload": data.get("form_payload") or data.get("form_html") or "",
            "redirect_url": data.get("redirect_url") or "",
        }

    @http_retry()
    def _post(self, path: str, body: dict) -> dict:
        url = f"{self.base_url}{path}"
        logger.info(f"PaymentGatewayClient POST {url}")

        resp = requests.post(url, json=body, timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()
