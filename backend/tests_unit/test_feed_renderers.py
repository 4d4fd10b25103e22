"""
Feed Renderer Tests (Unit)
==========================

WHAT: Item flattening, the three channel serializers and per-channel validation.
WHY: Channels reject malformed feeds wholesale; the serializers must escape
     free text and render the same bytes for the same products.

REFERENCES:
- backend/feedpipe/services/feed_renderers.py
"""

import csv
import io
import json
from decimal import Decimal
from types import SimpleNamespace

import pytest

from feedpipe.errors import RenderError
from feedpipe.models import FeedFormatEnum, ProductStatusEnum
from feedpipe.services import feed_renderers
from feedpipe.services.feed_renderers import (
    FACEBOOK_CSV_HEADER,
    RenderContext,
    build_feed_items,
    channel_key,
    format_price,
    plain_text,
    render,
    render_csv,
    render_json,
    render_xml,
    slugify,
    validate_items,
)


def _product(**overrides):
    fields = {
        "external_id": "100",
        "title": "Red Shirt",
        "description": "<p>Soft &amp; warm</p>",
        "price": Decimal("24.99"),
        "currency": "USD",
        "metadata_": {"handle": "red-shirt", "gtin": "012345678905"},
        "images": ["https://cdn.example.com/1.jpg", "https://cdn.example.com/2.jpg"],
        "variants": [{"id": 1, "inventory_quantity": 3}],
        "brand": "Acme",
        "sku": "RS-M",
        "category": "Shirts",
        "status": ProductStatusEnum.active,
        "inventory_quantity": 3,
    }
    fields.update(overrides)
    return SimpleNamespace(**fields)


CONTEXT = RenderContext(storefront_base_url="https://shop.example.com/", feed_title="Demo")


class TestHelpers:

    def test_format_price(self):
        assert format_price(Decimal("24.99"), "USD") == "24.99 USD"
        assert format_price("5", None) == "5.00 USD"
        assert format_price(None, "EUR") == "0.00 EUR"
        assert format_price("1.005", "EUR") == "1.01 EUR"

    def test_slugify(self):
        assert slugify("Red Shirt") == "red-shirt"
        assert slugify("  Mug & Co. (Blue) ") == "mug-co-blue"

    def test_plain_text_strips_markup(self):
        assert plain_text("<p>Soft &amp;\n warm</p>") == "Soft & warm"
        assert plain_text(None) == ""

    def test_channel_key(self):
        assert channel_key("Google Shopping") == "google"
        assert channel_key(" TikTok Shop") == "tiktok"


class TestBuildFeedItems:

    def test_active_stocked_product(self):
        item = build_feed_items([_product()], CONTEXT)[0]

        assert item.availability == "in stock"
        assert item.price == "24.99 USD"
        assert item.link == "https://shop.example.com/products/red-shirt"
        assert item.image_link == "https://cdn.example.com/1.jpg"
        assert item.additional_image_links == ["https://cdn.example.com/2.jpg"]
        assert item.description == "Soft & warm"
        assert item.gtin == "012345678905"
        assert item.mpn == "RS-M"
        assert item.item_group_id == ""

    def test_out_of_stock_and_placeholder(self):
        item = build_feed_items([_product(images=[], inventory_quantity=0)], CONTEXT)[0]

        assert item.availability == "out of stock"
        assert item.uses_placeholder_image is True
        assert item.image_link == CONTEXT.placeholder_image_url

    def test_draft_is_never_in_stock(self):
        item = build_feed_items([_product(status=ProductStatusEnum.draft)], CONTEXT)[0]
        assert item.availability == "out of stock"

    def test_link_falls_back_to_slug(self):
        item = build_feed_items([_product(metadata_={})], CONTEXT)[0]
        assert item.link == "https://shop.example.com/products/red-shirt"

    def test_additional_images_are_capped(self):
        images = [f"https://cdn.example.com/{n}.jpg" for n in range(15)]
        item = build_feed_items([_product(images=images)], CONTEXT)[0]
        assert len(item.additional_image_links) == feed_renderers.MAX_ADDITIONAL_IMAGES

    def test_multi_variant_gets_group_id(self):
        item = build_feed_items([_product(variants=[{"id": 1}, {"id": 2}])], CONTEXT)[0]
        assert item.item_group_id == "100"


class TestXml:

    def test_document_structure(self):
        xml = render_xml(build_feed_items([_product()], CONTEXT), CONTEXT).decode("utf-8")

        assert xml.startswith('<?xml version="1.0" encoding="UTF-8"?>')
        assert 'xmlns:g="http://base.google.com/ns/1.0"' in xml
        assert xml.count("<item>") == 1
        assert "<g:price>24.99 USD</g:price>" in xml
        assert "<g:title><![CDATA[Red Shirt]]></g:title>" in xml
        assert "<g:additional_image_link>https://cdn.example.com/2.jpg</g:additional_image_link>" in xml

    def test_text_is_escaped(self):
        item = build_feed_items([_product(title="Tom ]]> Jerry", sku="A&B")], CONTEXT)[0]

        xml = render_xml([item], CONTEXT).decode("utf-8")

        assert "<![CDATA[Tom ]]]]><![CDATA[> Jerry]]>" in xml
        assert "<g:mpn>A&amp;B</g:mpn>" in xml

    def test_same_items_same_bytes(self):
        items = build_feed_items([_product(), _product(external_id="101")], CONTEXT)
        assert render_xml(items, CONTEXT) == render_xml(items, CONTEXT)


class TestCsv:

    def test_header_and_quoting(self):
        item = build_feed_items([_product(title='Shirt, "Red"')], CONTEXT)[0]

        text = render_csv([item]).decode("utf-8")
        rows = list(csv.reader(io.StringIO(text)))

        assert rows[0] == FACEBOOK_CSV_HEADER
        assert rows[1][1] == 'Shirt, "Red"'
        assert '"Shirt, ""Red"""' in text
        assert rows[1][FACEBOOK_CSV_HEADER.index("quantity_to_sell_on_facebook")] == "3"

    def test_empty_feed_is_header_only(self):
        assert render_csv([]).decode("utf-8") == ",".join(FACEBOOK_CSV_HEADER) + "\n"


class TestJson:

    def test_document(self):
        document = json.loads(render_json(build_feed_items([_product()], CONTEXT)))

        assert document["version"] == "1.0"
        assert document["products"][0]["id"] == "100"
        assert document["products"][0]["additional_image_link"] == ["https://cdn.example.com/2.jpg"]


class TestDispatch:

    def test_render_dispatches_by_format(self):
        items = build_feed_items([_product()], CONTEXT)
        assert render(FeedFormatEnum.json, items, CONTEXT) == render_json(items)
        assert render(FeedFormatEnum.csv, items, CONTEXT) == render_csv(items)

    def test_unknown_format(self):
        with pytest.raises(RenderError):
            render("pdf", [], CONTEXT)


class TestValidation:

    def test_clean_product_has_no_issues(self):
        assert validate_items(build_feed_items([_product()], CONTEXT), "Google Shopping") == []

    def test_reports_each_issue(self):
        product = _product(
            title="", description="", price=Decimal("0"), images=[], brand=None, sku=None, metadata_={},
        )

        report = validate_items(build_feed_items([product], CONTEXT), "Google Shopping")

        assert report[0]["product_id"] == "100"
        assert set(report[0]["errors"]) == {
            "Missing title",
            "Missing description",
            "Missing or zero price",
            "Missing image (placeholder used)",
            "Missing product identifier (brand, gtin or mpn)",
        }

    def test_channel_limits(self):
        items = build_feed_items([_product(title="x" * 180)], CONTEXT)

        assert validate_items(items, "Google Shopping")[0]["errors"] == ["Title exceeds 150 characters"]
        assert validate_items(items, "Facebook") == []

    def test_social_channels_need_brand(self):
        items = build_feed_items([_product(brand=None)], CONTEXT)
        assert validate_items(items, "Instagram")[0]["errors"] == ["Missing brand"]
