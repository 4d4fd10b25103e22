"""
Source Platform Client Tests (Unit)
===================================

WHAT: Shopify and WooCommerce REST clients against an in-memory transport.
WHY: Pagination cursors and retry rules decide whether a sync finishes,
     loops or silently stops early.

REFERENCES:
- backend/feedpipe/services/shopify_client.py
- backend/feedpipe/services/woocommerce_client.py
"""

import asyncio

import httpx
import pytest

from feedpipe.services.shopify_client import (
    ShopifyAPIError,
    ShopifyClient,
    normalize_shop_domain,
    parse_next_page_info,
)
from feedpipe.services.woocommerce_client import WooCommerceAPIError, WooCommerceClient


def _transport(responses, seen):
    """MockTransport replaying `responses` in order (an Exception entry is raised)."""
    queue = list(responses)

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    return httpx.MockTransport(handler)


# =============================================================================
# SHOPIFY
# =============================================================================

class TestShopDomain:

    @pytest.mark.parametrize(
        "raw",
        ["demo", "demo.myshopify.com", "https://Demo.myshopify.com/", " http://demo.myshopify.com "],
    )
    def test_normalize(self, raw):
        assert normalize_shop_domain(raw) == "demo.myshopify.com"


class TestLinkHeader:

    def test_next_cursor(self):
        header = (
            '<https://demo.myshopify.com/admin/api/2023-10/products.json?limit=250&page_info=prev123>; rel="previous", '
            '<https://demo.myshopify.com/admin/api/2023-10/products.json?limit=250&page_info=next456>; rel="next"'
        )
        assert parse_next_page_info(header) == "next456"

    def test_last_page(self):
        header = '<https://demo.myshopify.com/admin/api/2023-10/products.json?page_info=prev123>; rel="previous"'
        assert parse_next_page_info(header) is None
        assert parse_next_page_info(None) is None


class TestShopifyClient:

    def _client(self, responses, seen):
        client = ShopifyClient("demo", "shpat_test", transport=_transport(responses, seen))
        client.shop_retry_delay = 0
        client.listing_retry_delay = 0
        return client

    def test_get_products_returns_page_and_cursor(self):
        seen = []
        response = httpx.Response(
            200,
            json={"products": [{"id": 1}, {"id": 2}]},
            headers={"Link": '<https://demo.myshopify.com/admin/api/2023-10/products.json?page_info=abc>; rel="next"'},
        )
        client = self._client([response], seen)

        products, cursor = asyncio.run(client.get_products(cursor="prev"))

        assert [p["id"] for p in products] == [1, 2]
        assert cursor == "abc"
        request = seen[0]
        assert request.url.path == "/admin/api/2023-10/products.json"
        assert request.url.params["page_info"] == "prev"
        assert request.url.params["limit"] == "250"
        assert request.headers["X-Shopify-Access-Token"] == "shpat_test"

    def test_get_shop(self):
        seen = []
        client = self._client([httpx.Response(200, json={"shop": {"currency": "EUR", "name": "Demo"}})], seen)

        assert asyncio.run(client.get_shop()) == {"currency": "EUR", "name": "Demo"}

    def test_transport_errors_are_retried(self):
        seen = []
        client = self._client(
            [httpx.ConnectError("refused"), httpx.Response(200, json={"products": []})], seen,
        )

        products, cursor = asyncio.run(client.get_products())

        assert products == []
        assert cursor is None
        assert len(seen) == 2

    def test_retry_warning_is_lazily_formatted(self, caplog):
        seen = []
        client = self._client(
            [httpx.ConnectError("refused"), httpx.Response(200, json={"products": []})], seen,
        )

        with caplog.at_level("WARNING", logger="feedpipe.services.shopify_client"):
            asyncio.run(client.get_products())

        [record] = [r for r in caplog.records if "Request error" in r.msg]
        assert record.msg == "[SHOPIFY_CLIENT] Request error on %s (attempt %d/%d): %s"
        assert record.args[1:3] == (1, 3)
        assert record.getMessage().endswith("(attempt 1/3): refused")

    def test_gives_up_after_three_attempts(self):
        seen = []
        client = self._client([httpx.ConnectError("refused")] * 3, seen)

        with pytest.raises(ShopifyAPIError, match="unreachable after 3 attempts"):
            asyncio.run(client.get_shop())
        assert len(seen) == 3

    def test_error_status_is_not_retried(self):
        seen = []
        client = self._client([httpx.Response(401, text="Invalid API key")], seen)

        with pytest.raises(ShopifyAPIError) as excinfo:
            asyncio.run(client.get_shop())

        assert excinfo.value.upstream_status == 401
        assert len(seen) == 1


# =============================================================================
# WOOCOMMERCE
# =============================================================================

class TestWooCommerceClient:

    def _client(self, responses, seen):
        client = WooCommerceClient("woo.example.com/", "ck_test", "cs_test", transport=_transport(responses, seen))
        client.retry_delay = 0
        return client

    def test_full_page_has_next_cursor(self):
        seen = []
        client = self._client([httpx.Response(200, json=[{"id": n} for n in range(3)])], seen)

        products, cursor = asyncio.run(client.get_products(cursor="2", limit=3))

        assert len(products) == 3
        assert cursor == "3"
        request = seen[0]
        assert str(request.url).startswith("https://woo.example.com/wp-json/wc/v3/products")
        assert request.url.params["page"] == "2"
        assert request.headers["Authorization"].startswith("Basic ")

    def test_short_page_is_last(self):
        seen = []
        client = self._client([httpx.Response(200, json=[{"id": 1}])], seen)

        _, cursor = asyncio.run(client.get_products(limit=3))

        assert cursor is None
        assert seen[0].url.params["page"] == "1"

    def test_non_list_body_is_an_error(self):
        client = self._client([httpx.Response(200, json={"code": "oops"})], [])

        with pytest.raises(WooCommerceAPIError):
            asyncio.run(client.get_products())

    def test_validate_credentials(self):
        assert asyncio.run(self._client([httpx.Response(200, json=[])], []).validate_credentials()) is True
        assert asyncio.run(self._client([httpx.Response(401, json={})], []).validate_credentials()) is False

        with pytest.raises(WooCommerceAPIError):
            asyncio.run(self._client([httpx.Response(500, text="down")], []).validate_credentials())
