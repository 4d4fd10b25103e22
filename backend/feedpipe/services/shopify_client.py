"""Shopify REST Admin API client.

WHAT:
    Wrapper for the Shopify Admin REST API with:
    - Access-token authentication
    - Cursor pagination via the `Link: <...>; rel="next"` header (page_info)
    - Bounded retries with fixed sleeps for transport errors

WHY:
    Encapsulates all Shopify HTTP interaction for the pull-sync ingestor.
    The product listing is the slowest upstream call we make, so it gets its
    own long timeout.

REFERENCES:
    - https://shopify.dev/docs/api/admin-rest/2023-10/resources/product
    - https://shopify.dev/docs/api/usage/pagination-rest
"""

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

import httpx

from feedpipe.errors import UpstreamUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_API_VERSION = "2023-10"
PAGE_SIZE = 250

SHOP_TIMEOUT = 30.0          # shop.json and inventory calls
LISTING_TIMEOUT = 300.0      # products.json can be very slow on large catalogs

_NEXT_LINK_RE = re.compile(r'<([^>]+)>;\s*rel="next"')
_PAGE_INFO_RE = re.compile(r"page_info=([^&>]+)")


class ShopifyAPIError(UpstreamUnavailableError):
    """Shopify returned an error or stayed unreachable after retries."""

    def __init__(self, message: str, status_code: Optional[int] = None, errors: Optional[List] = None):
        super().__init__(message, status_code=status_code, details={"errors": errors} if errors else None)
        self.errors = errors or []


def normalize_shop_domain(shop_domain: str) -> str:
    """Return the canonical `<name>.myshopify.com` form of a shop domain."""
    domain = (shop_domain or "").strip().lower()
    domain = re.sub(r"^https?://", "", domain).rstrip("/")
    if domain.endswith(".myshopify.com"):
        domain = domain[: -len(".myshopify.com")]
    return f"{domain}.myshopify.com"


def parse_next_page_info(link_header: Optional[str]) -> Optional[str]:
    """Extract the `page_info` cursor of the rel="next" link, if any."""
    if not link_header:
        return None
    for part in link_header.split(","):
        match = _NEXT_LINK_RE.search(part)
        if match:
            cursor = _PAGE_INFO_RE.search(match.group(1))
            if cursor:
                return cursor.group(1)
    return None


class ShopifyClient:
    """REST client for one Shopify shop.

    Usage:
        client = ShopifyClient(shop_domain="demo.myshopify.com", access_token="shpat_xxx")
        shop = await client.get_shop()
        products, next_cursor = await client.get_products()
    """

    # Fixed sleeps between attempts (seconds)
    shop_retry_delay = 5.0
    listing_retry_delay = 10.0

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        api_version: str = DEFAULT_API_VERSION,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize Shopify client.

        Args:
            shop_domain: Shopify store domain (e.g., "demo.myshopify.com")
            access_token: Shopify Admin API access token
            api_version: API version to use (default: 2023-10)
            transport: Optional httpx transport (tests)
        """
        self.shop_domain = normalize_shop_domain(shop_domain)
        self.access_token = access_token
        self.api_version = api_version
        self.base_url = f"https://{self.shop_domain}/admin/api/{api_version}"
        self._transport = transport

        logger.info("[SHOPIFY_CLIENT] Initialized for %s (API version: %s)", self.shop_domain, api_version)

    async def _get(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        timeout: float,
        retries: int = 3,
        retry_delay: float,
    ) -> httpx.Response:
        """GET with bounded retries for transport errors.

        Non-2xx responses are not retried: they fail the call immediately.

        Raises:
            ShopifyAPIError: on non-2xx or when every attempt failed in transport
        """
        headers = {
            "X-Shopify-Access-Token": self.access_token,
            "Accept": "application/json",
        }
        url = f"{self.base_url}/{path}"
        last_error: Optional[Exception] = None

        for attempt in range(retries):
            try:
                async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                    response = await client.get(url, params=params, headers=headers)
            except httpx.RequestError as e:
                last_error = e
                logger.warning(
                    "[SHOPIFY_CLIENT] Request error on %s (attempt %d/%d): %s", path, attempt + 1, retries, e
                )
                if attempt < retries - 1:
                    await asyncio.sleep(retry_delay)
                continue

            if response.status_code < 200 or response.status_code >= 300:
                raise ShopifyAPIError(
                    f"Shopify {path} returned status {response.status_code}: {response.text[:500]}",
                    status_code=response.status_code,
                )
            return response

        raise ShopifyAPIError(f"Shopify {path} unreachable after {retries} attempts: {last_error}")

    async def get_shop(self) -> Dict[str, Any]:
        """Fetch shop info; doubles as the credential check."""
        response = await self._get(
            "shop.json", timeout=SHOP_TIMEOUT, retry_delay=self.shop_retry_delay,
        )
        return response.json().get("shop", {})

    async def get_products(
        self,
        cursor: Optional[str] = None,
        limit: int = PAGE_SIZE,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """Fetch one page of products.

        Args:
            cursor: page_info from the previous page (None for the first page)
            limit: Page size (max 250)

        Returns:
            Tuple of (products, next_cursor or None)
        """
        params: Dict[str, Any] = {"limit": limit}
        if cursor:
            params["page_info"] = cursor

        response = await self._get(
            "products.json", params, timeout=LISTING_TIMEOUT, retry_delay=self.listing_retry_delay,
        )
        products = response.json().get("products", [])
        return products, parse_next_page_info(response.headers.get("Link"))
