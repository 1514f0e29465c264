# marketplace/services/catalog_client.py
from decimal import Decimal

import requests
from requests import RequestException

from marketplace.domain.errors import UpstreamFailure
from marketplace.utils.retry import http_retry
from marketplace.utils.settings import CATALOG_SERVICE_URL, DEFAULT_CURRENCY, HTTP_TIMEOUT_SECONDS
from marketplace.utils.logging import get_logger

logger = get_logger(__name__)


class CatalogClient:
    def __init__(self, base_url: str | None = None, timeout: float = HTTP_TIMEOUT_SECONDS):
        self.base_url = (base_url or CATALOG_SERVICE_URL).rstrip("/")
        self.timeout = timeout

    def get_product(self, product_id: int) -> dict:
        """
        Returns {"exists", "product_id", "title", "unit_price", "currency"}.
        A 404 is a normal answer (exists=False), anything else failing is upstream.
        """
        try:
            resp = self._fetch(product_id)
        except RequestException as e:
            logger.error(
                f"Catalog lookup failed for product {product_id}: {e}",
                extra={"product_id": product_id},
            )
            raise UpstreamFailure("Catalog service unavailable", product_id=product_id) from e

        if resp.status_code == 404:
            return {"exists": False, "product_id": product_id}

        data = resp.json()
        if not data.get("is_active", True):
            return {"exists": False, "product_id": product_id}

        return {
            "exists": True,
            "product_id": product_id,
            "title": data.get("title") or data.get("name"),
            "unit_price": Decimal(str(data["price"])),
            "currency": (data.get("currency") or DEFAULT_CURRENCY).upper(),
        }

    @http_retry()
    def _fetch(self, product_id: int) -> requests.Response:
        url = f"{self.base_url}/products/{product_id}"
        logger.info(f"CatalogClient GET {url}")

        resp = requests.get(url, timeout=self.timeout)
        if resp.status_code != 404:
            resp.raise_for_status()
        return resp
