"""Tests for the streaming feed cursor and the Ormatek XML parser."""

from datetime import datetime, timezone

import pytest

from conftest import FakeClock, ormatek_feed, price_item
from feedsync.exceptions import ConfigurationError
from feedsync.feeds.base import OPTION_DECOR, OPTION_SIZE, image_key, select_images
from feedsync.feeds.ormatek_xml import OrmatekXmlParser
from feedsync.feeds.registry import default_registry
from feedsync.models import ParseOptions, VariantRecord


@pytest.fixture
def parser() -> OrmatekXmlParser:
    return OrmatekXmlParser(clock=FakeClock(datetime(2026, 3, 1, tzinfo=timezone.utc)))


def test_end_to_end_groups_and_skips_zero_price(parser, write_feed):
    """Two priced items of one model form one product; the zero-price model is skipped."""
    path = write_feed(
        ormatek_feed(
            price_item(brand="BrandA", model="ModelX", code="X-160", price=100, width=160),
            price_item(brand="BrandA", model="ModelX", code="X-180", price=120, width=180),
            price_item(brand="BrandB", model="ModelY", code="Y-160", price=0),
        )
    )

    with parser.open(path) as cursor:
        products = list(cursor)
        stats = cursor.stats

    assert len(products) == 1
    product = products[0]
    assert product.name == "ModelX"
    assert product.supplier_sku == "BrandA::ModelX"
    assert [v.sku for v in product.variants] == ["X-160", "X-180"]
    assert [v.options[OPTION_SIZE] for v in product.variants] == ["160x200", "180x200"]
    assert product.min_price() == 100
    assert product.max_price() == 120
    assert stats.total_parsed == 3
    assert stats.skipped == 1
    assert stats.errors == 0
    assert stats.products_emitted == 1


def test_single_group_is_flushed_at_end_of_stream(parser, write_feed):
    path = write_feed(ormatek_feed(price_item(code="A1"), price_item(code="A2", width=180)))

    products = list(parser.parse(path))

    assert len(products) == 1
    assert len(products[0].variants) == 2


def test_product_count_equals_distinct_priced_groups(parser, write_feed):
    path = write_feed(
        ormatek_feed(
            price_item(model="One", code="1a"),
            price_item(model="One", code="1b", width=180),
            price_item(model="Two", code="2a"),
            price_item(model="Three", code="3a", price=0),
            price_item(model="Four", code="4a"),
        )
    )

    first = [p.name for p in parser.parse(path)]
    second = [p.name for p in parser.parse(path)]

    assert first == ["One", "Two", "Four"]
    assert first == second


def test_reordering_groups_changes_only_emission_order(parser, write_feed):
    one = price_item(model="One", code="1a")
    two = price_item(model="Two", code="2a", width=90)
    forward = list(parser.parse(write_feed(ormatek_feed(one, two), "forward.xml")))
    backward = list(parser.parse(write_feed(ormatek_feed(two, one), "backward.xml")))

    assert [p.name for p in forward] == ["One", "Two"]
    assert {p.name: p.get_checksum() for p in forward} == {
        p.name: p.get_checksum() for p in backward
    }


def test_images_deduplicated_by_basename(parser, write_feed):
    path = write_feed(
        ormatek_feed(
            price_item(code="A1", pictures=("https://ormatek.com/img/flex.jpg?v=1",)),
            price_item(code="A2", width=180, pictures=("https://ormatek.com/img/flex.jpg?v=2",)),
        )
    )

    product = next(iter(parser.parse(path)))

    assert product.image_urls == ["https://ormatek.com/img/flex.jpg?v=1"]


def test_image_cap_prefers_first_party_hosts(parser, write_feed):
    path = write_feed(
        ormatek_feed(
            price_item(
                code="A1",
                pictures=(
                    "https://cdn.example.net/a.jpg",
                    "https://cdn.example.net/b.jpg",
                    "https://static.ormatek.com/c.jpg",
                ),
            )
        )
    )

    product = next(iter(parser.parse(path, ParseOptions(max_images_per_product=2))))

    assert product.image_urls == [
        "https://static.ormatek.com/c.jpg",
        "https://cdn.example.net/a.jpg",
    ]


def test_skip_images_option(parser, write_feed):
    path = write_feed(ormatek_feed(price_item(pictures=("https://ormatek.com/a.jpg",))))

    product = next(iter(parser.parse(path, ParseOptions(skip_images=True))))

    assert product.image_urls == []


def test_limit_stops_after_product_that_reached_it(parser, write_feed):
    path = write_feed(
        ormatek_feed(
            price_item(model="One", code="1a"),
            price_item(model="Two", code="2a"),
            price_item(model="Two", code="2b", width=180),
            price_item(model="Three", code="3a"),
        )
    )

    with parser.open(path, ParseOptions(max_products=2)) as cursor:
        products = list(cursor)
        assert cursor.exhausted

    assert [p.name for p in products] == ["One", "Two"]
    assert len(products[1].variants) == 2
    assert cursor.stats.products_emitted == 2


def test_limit_larger_than_feed_still_flushes_last_group(parser, write_feed):
    path = write_feed(ormatek_feed(price_item(model="One"), price_item(model="Two")))

    products = list(parser.parse(path, ParseOptions(max_products=5)))

    assert [p.name for p in products] == ["One", "Two"]


def test_malformed_item_counted_and_skipped(parser, write_feed):
    broken = "<price-item><brand-name>Ormatek</brand-name><product-code>NO-MODEL</product-code></price-item>"
    path = write_feed(ormatek_feed(price_item(code="A1"), broken, price_item(model="Other", code="B1")))

    with parser.open(path) as cursor:
        products = list(cursor)

    assert [p.name for p in products] == ["Flex Standart", "Other"]
    assert cursor.stats.errors == 1
    assert cursor.stats.total_parsed == 2


def test_non_numeric_price_is_an_error_not_a_crash(parser, write_feed):
    path = write_feed(ormatek_feed(price_item(code="A1", price="abc"), price_item(code="A2")))

    with parser.open(path) as cursor:
        products = list(cursor)

    assert len(products) == 1
    assert cursor.stats.errors == 1


def test_truncated_xml_keeps_items_read_so_far(parser, write_feed):
    content = ormatek_feed(price_item(code="A1"), price_item(code="A2", width=180))
    content = content.replace("</price-items>", "<price-item><brand-name>Ormatek")
    path = write_feed(content)

    with parser.open(path) as cursor:
        products = list(cursor)

    assert len(products) == 1
    assert len(products[0].variants) == 2
    assert cursor.stats.errors == 1


def test_active_promotion_sets_compare_price(parser, write_feed):
    actions = (
        "<action><discounted-retail-price>90</discounted-retail-price>"
        "<date-till>2026-12-31T00:00:00</date-till></action>"
    )
    path = write_feed(ormatek_feed(price_item(price=100, actions=actions)))

    variant = next(iter(parser.parse(path))).variants[0]

    assert variant.price == 90
    assert variant.compare_price == 100
    assert variant.has_discount
    assert variant.discount_percent == 10


def test_expired_promotion_is_ignored(parser, write_feed):
    actions = (
        "<action><discounted-retail-price>90</discounted-retail-price>"
        "<date-till>2025-01-01T00:00:00</date-till></action>"
    )
    path = write_feed(ormatek_feed(price_item(price=100, actions=actions)))

    variant = next(iter(parser.parse(path))).variants[0]

    assert variant.price == 100
    assert variant.compare_price is None
    assert variant.discount_percent is None


def test_discount_percent_without_real_discount():
    assert VariantRecord(price=80, compare_price=100).discount_percent == 20
    assert VariantRecord(price=80).discount_percent is None
    assert VariantRecord(price=100, compare_price=100).discount_percent is None
    assert VariantRecord(price=100, compare_price=80).discount_percent is None


def test_item_fields_mapped_to_variant(parser, write_feed):
    path = write_feed(
        ormatek_feed(
            price_item(
                code="A1",
                uuid="uuid-1",
                barcode="4601234567890",
                decor="Oak",
                height=22,
            ),
            price_item(code="A2", uuid="uuid-2", disabled=True),
        )
    )

    product = next(iter(parser.parse(path)))

    assert product.supplier_sku == "uuid-1"
    assert product.attributes == {"Height": "22 cm"}
    assert product.category_path == "Mattresses"
    first, second = product.variants
    assert first.gtin == "4601234567890"
    assert first.options == {OPTION_SIZE: "160x200", OPTION_DECOR: "Oak"}
    assert first.in_stock is True
    assert second.in_stock is False
    assert second.stock_status == "discontinued"
    assert product.in_stock is True


def test_out_of_order_duplicate_group_is_skipped(parser, write_feed):
    path = write_feed(
        ormatek_feed(
            price_item(model="One", code="1a"),
            price_item(model="Two", code="2a"),
            price_item(model="One", code="1b", width=180),
        )
    )

    with parser.open(path) as cursor:
        products = list(cursor)

    assert [p.name for p in products] == ["One", "Two"]
    assert cursor.stats.duplicates == 1


def test_duplicate_group_detected_when_variant_uuids_differ(parser, write_feed):
    """Each variant carries its own uuid, so the group key decides duplicates."""
    path = write_feed(
        ormatek_feed(
            price_item(model="One", code="1a", uuid="u-1a"),
            price_item(model="Two", code="2a", uuid="u-2a"),
            price_item(model="One", code="1b", uuid="u-1b", width=180),
        )
    )

    with parser.open(path) as cursor:
        products = list(cursor)

    assert [p.name for p in products] == ["One", "Two"]
    assert [p.supplier_sku for p in products] == ["u-1a", "u-2a"]
    assert cursor.stats.duplicates == 1
    assert cursor.stats.products_emitted == 2


def test_cursor_next_record_returns_none_when_exhausted(parser, write_feed):
    path = write_feed(ormatek_feed(price_item()))

    cursor = parser.open(path)
    assert cursor.next_record() is not None
    assert cursor.next_record() is None
    assert cursor.next_record() is None
    assert cursor.exhausted


def test_accepts_and_registry_detection(write_feed):
    xml_path = write_feed(ormatek_feed(price_item()))
    csv_path = write_feed("sku,name,price\nA,Thing,1\n", "feed.csv")
    registry = default_registry()

    assert registry.detect(xml_path).supplier_code == "ormatek"
    assert registry.detect(csv_path).supplier_code == "csv"
    assert registry.codes() == ["csv", "ormatek"]


def test_accepts_rejects_other_xml(write_feed):
    path = write_feed('<?xml version="1.0"?><catalog><offer/></catalog>')

    assert OrmatekXmlParser().accepts(path) is False


def test_registry_unknown_supplier_fails_fast():
    with pytest.raises(ConfigurationError, match="No parser registered"):
        default_registry().get("unknown")


def test_estimate_count_is_size_based(parser, write_feed):
    path = write_feed(ormatek_feed(*[price_item(code=f"A{i}") for i in range(200)]))

    estimate = parser.estimate_count(path)

    assert estimate == int(path.stat().st_size / 2048 / 20)


def test_image_helpers():
    assert image_key("https://a.example/x/y/photo.jpg?size=big") == "photo.jpg"
    assert select_images(
        ["https://a.example/1.jpg", "https://b.example/1.jpg?x", "https://a.example/2.jpg"],
        max_images=0,
    ) == ["https://a.example/1.jpg", "https://a.example/2.jpg"]
