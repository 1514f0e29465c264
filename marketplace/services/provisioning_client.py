# marketplace/services/provisioning_client.py
import secrets
import time

import requests
from requests import RequestException

from marketplace.domain.errors import UpstreamFailure
from marketplace.utils.retry import http_retry
from marketplace.utils.settings import (
    PROVISIONING_BASE_URL,
    PROVISIONING_TOKEN_URL,
    PROVISIONING_CLIENT_ID,
    PROVISIONING_CLIENT_SECRET,
    PROVISIONING_FAKE_MODE,
    HTTP_TIMEOUT_SECONDS,
)
from marketplace.utils.logging import get_logger

logger = get_logger(__name__)


class ProvisioningClient:
    """
    Partner-center client, one purchase request per order line.

    provision_item returns {"success", "detail", "subscription_id"}; a business
    rejection comes back as success=False, transport problems raise UpstreamFailure.
    """

    def __init__(
        self,
        base_url: str | None = None,
        token_url: str | None = None,
        client_id: str = PROVISIONING_CLIENT_ID,
        client_secret: str = PROVISIONING_CLIENT_SECRET,
        fake_mode: bool = PROVISIONING_FAKE_MODE,
        timeout: float = HTTP_TIMEOUT_SECONDS,
    ):
        self.base_url = (base_url or PROVISIONING_BASE_URL).rstrip("/")
        self.token_url = token_url or PROVISIONING_TOKEN_URL
        self.client_id = client_id
        self.client_secret = client_secret
        self.fake_mode = fake_mode
        self.timeout = timeout
        self._token = None
        self._token_expires = 0.0

    def provision_item(self, customer_id: str, item: dict) -> dict:
        if self.fake_mode:
            subscription_id = f"fake-{secrets.token_hex(8)}"
            logger.info(
                f"[FAKE] Provisioned product {item['product_id']} x{item['quantity']} for {customer_id}",
                extra={"order_id": item.get("order_id"), "order_item_id": item.get("id")},
            )
            return {"success": True, "detail": "fake mode", "subscription_id": subscription_id}

        body = {
            "product_id": item["product_id"],
            "quantity": item["quantity"],
            "reference": f"{item.get('order_number')}-{item.get('id')}",
        }
        try:
            resp = self._post(f"/customers/{customer_id}/orders", body)
        except RequestException as e:
            raise UpstreamFailure(
                f"Provisioning API error: {e}",
                order_item_id=item.get("id"),
            ) from e

        if resp.status_code >= 400:
            detail = _error_detail(resp)
            return {"success": False, "detail": detail, "subscription_id": None}

        data = resp.json()
        return {
            "success": True,
            "detail": data.get("status", "created"),
            "subscription_id": data.get("subscription_id") or data.get("id"),
        }

    @http_retry()
    def _post(self, path: str, body: dict) -> requests.Response:
        url = f"{self.base_url}{path}"
        logger.info(f"ProvisioningClient POST {url}")

        resp = requests.post(
            url,
            json=body,
            headers={"Authorization": f"Bearer {self._access_token()}"},
            timeout=self.timeout,
        )
        # 4xx is an answer about this product, 5xx is worth retrying
        if resp.status_code >= 500:
            resp.raise_for_status()
        return resp

    def _access_token(self) -> str:
        if self._token and time.time() < self._token_expires:
            return self._token

        resp = requests.post(
            self.token_url,
            data={
                "grant_type": "client_credentials",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
            timeout=self.timeout,
        )
        resp.raise_for_status()
        data = resp.json()
        self._token = data["access_token"]
        #odswiez minute wczesniej
        self._token_expires = time.time() + int(data.get("expires_in", 3600)) - 60
        return self._token


def _error_detail(resp: requests.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return f"HTTP {resp.status_code}"
    return str(data.get("description") or data.get("message") or data.get("error") or f"HTTP {resp.status_code}")
