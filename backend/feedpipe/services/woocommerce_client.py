"""WooCommerce REST API (v3) client.

WHAT:
    Basic-auth client for `{store}/wp-json/wc/v3/products` with page-number
    pagination and the same retry budget as the Shopify client.

WHY:
    WooCommerce has no cursor; the next page exists while the current page
    came back full.

REFERENCES:
    - https://woocommerce.github.io/woocommerce-rest-api-docs/#list-all-products
    - feedpipe/services/shopify_client.py (same retry policy)
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from feedpipe.errors import UpstreamUnavailableError

logger = logging.getLogger(__name__)

PAGE_SIZE = 100
LISTING_TIMEOUT = 300.0
CREDENTIAL_CHECK_TIMEOUT = 10.0


class WooCommerceAPIError(UpstreamUnavailableError):
    """WooCommerce returned an error or stayed unreachable after retries."""


class WooCommerceClient:
    """REST client for one WooCommerce store."""

    retry_delay = 10.0

    def __init__(
        self,
        store_url: str,
        consumer_key: str,
        consumer_secret: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.store_url = store_url.rstrip("/")
        if not self.store_url.startswith(("http://", "https://")):
            self.store_url = f"https://{self.store_url}"
        self.products_url = f"{self.store_url}/wp-json/wc/v3/products"
        self._auth = httpx.BasicAuth(consumer_key, consumer_secret)
        self._transport = transport

    async def _get(self, params: Dict[str, Any], *, timeout: float, retries: int = 3) -> httpx.Response:
        last_error: Optional[Exception] = None
        for attempt in range(retries):
            try:
                async with httpx.AsyncClient(timeout=timeout, auth=self._auth, transport=self._transport) as client:
                    response = await client.get(self.products_url, params=params)
            except httpx.RequestError as e:
                last_error = e
                logger.warning(
                    "[WOO_CLIENT] Request error (attempt %d/%d): %s", attempt + 1, retries, e
                )
                if attempt < retries - 1:
                    await asyncio.sleep(self.retry_delay)
                continue

            if response.status_code < 200 or response.status_code >= 300:
                raise WooCommerceAPIError(
                    f"WooCommerce API returned status {response.status_code}: {response.text[:500]}",
                    status_code=response.status_code,
                )
            return response

        raise WooCommerceAPIError(f"WooCommerce store unreachable after {retries} attempts: {last_error}")

    async def validate_credentials(self) -> bool:
        """Cheap one-product request; False on auth failure, raises when unreachable."""
        try:
            await self._get({"per_page": 1}, timeout=CREDENTIAL_CHECK_TIMEOUT, retries=1)
        except WooCommerceAPIError as e:
            if e.upstream_status in (401, 403):
                return False
            raise
        return True

    async def get_products(
        self,
        cursor: Optional[str] = None,
        limit: int = PAGE_SIZE,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """Fetch one page; the cursor is the page number as a string."""
        page = int(cursor) if cursor else 1
        response = await self._get({"per_page": limit, "page": page}, timeout=LISTING_TIMEOUT)
        products = response.json()
        if not isinstance(products, list):
            raise WooCommerceAPIError("WooCommerce products response is not a list")
        next_cursor = str(page + 1) if len(products) >= limit else None
        return products, next_cursor
