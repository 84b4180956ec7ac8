"""Tests for the storefront projector and its httpx transport."""

import json

import httpx
import pytest

from feedsync.channels.drivers.storefront import StorefrontClient, StorefrontSyndicator
from feedsync.exceptions import ChannelUnavailableError, ChannelValidationError
from feedsync.repositories.base import ModelInput, VariantInput


@pytest.fixture
def shop(driver_registry):
    from feedsync.models import SalesChannel

    return driver_registry.bind_settings(
        SalesChannel(
            id=1,
            name="shop",
            driver="storefront",
            api_config={
                "api_url": "https://shop.example/api",
                "api_token": "tok-123",
                "category_map": {"Mattresses": "Sleep/Mattresses"},
            },
        )
    )


def make_client(handler) -> StorefrontClient:
    return StorefrontClient(transport=httpx.MockTransport(handler))


def seed(catalog) -> int:
    model = catalog.create_model(
        ModelInput(
            supplier_id=1,
            supplier_sku="Ormatek::Flex",
            name="Flex",
            model_name="Flex",
            brand="Ormatek",
            manufacturer="Ormatek",
            category_path="Mattresses",
            description="Spring mattress",
            attributes={"Height": "18 cm"},
            image_urls=["https://ormatek.com/flex.jpg"],
            checksum="c1",
        )
    )
    for sku, price, compare, in_stock in (
        ("F-160", 90.0, 100.0, True),
        ("F-180", 120.0, None, False),
        ("F-200", 0.0, None, True),
    ):
        catalog.create_variant(
            model.id,
            VariantInput(
                supplier_id=1,
                sku=sku,
                gtin=None,
                mpn=sku,
                price=price,
                compare_price=compare,
                in_stock=in_stock,
                stock_quantity=None,
                stock_status="available" if in_stock else "out_of_stock",
                options={"Size": sku[2:]},
            ),
        )
    return model.id


def test_projection_maps_catalog_state(catalog, shop):
    model_id = seed(catalog)

    projection = StorefrontSyndicator(catalog).build_projection(model_id, shop)

    assert projection["sku"] == "Ormatek::Flex"
    assert projection["category"] == "Sleep/Mattresses"
    assert projection["min_price"] == 90.0
    assert projection["max_price"] == 120.0
    assert projection["in_stock"] is True
    assert [v["sku"] for v in projection["variants"]] == ["F-160", "F-180"]
    assert projection["variants"][0]["discount_percent"] == 10


def test_projection_for_missing_model_is_none(catalog, shop):
    assert StorefrontSyndicator(catalog).build_projection(404, shop) is None
    assert StorefrontSyndicator(catalog).build_price_projection(404, shop) is None


def test_price_and_stock_projections_list_every_variant(catalog, shop):
    model_id = seed(catalog)
    syndicator = StorefrontSyndicator(catalog)

    prices = syndicator.build_price_projection(model_id, shop)
    stocks = syndicator.build_stock_projection(model_id, shop)

    assert [i["price"] for i in prices["items"]] == [90.0, 120.0, 0.0]
    assert [i["in_stock"] for i in stocks["items"]] == [True, False, True]


def test_push_sends_bearer_token_and_payload(shop):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"success": True})

    client = make_client(handler)

    assert client.push(7, {"name": "Flex"}, shop) is True
    request = seen[0]
    assert request.method == "POST"
    assert str(request.url) == "https://shop.example/api/import/product"
    assert request.headers["Authorization"] == "Bearer tok-123"
    assert json.loads(request.content) == {"model_id": 7, "projection": {"name": "Flex"}}
    client.close()


def test_push_reports_explicit_rejection(shop):
    client = make_client(lambda request: httpx.Response(200, json={"success": False}))

    assert client.push(7, {}, shop) is False


def test_push_batch_reads_per_model_results(shop):
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert [p["model_id"] for p in body["products"]] == [1, 2]
        return httpx.Response(200, json={"results": {"1": True, "2": False}})

    assert make_client(handler).push_batch({1: {}, 2: {}}, shop) == {1: True, 2: False}


def test_push_prices_and_stocks_use_typed_envelopes(shop):
    bodies = {}

    def handler(request: httpx.Request) -> httpx.Response:
        bodies[request.url.path] = json.loads(request.content)
        return httpx.Response(204)

    client = make_client(handler)
    items = [{"variant_id": 1, "price": 90.0}]

    assert client.push_prices(items, shop) is True
    assert client.push_stocks(items, shop) is True
    assert client.push_prices([], shop) is True
    assert bodies["/api/import/prices"] == {"type": "price_update", "items": items}
    assert bodies["/api/import/stocks"]["type"] == "stock_update"


@pytest.mark.parametrize("status", [429, 500, 503])
def test_throttling_and_server_errors_are_transient(shop, status):
    client = make_client(
        lambda request: httpx.Response(status, headers={"Retry-After": "30"}, json={"message": "busy"})
    )

    with pytest.raises(ChannelUnavailableError) as exc_info:
        client.push(7, {}, shop)

    assert exc_info.value.http_code == status
    assert exc_info.value.retry_after == 30.0
    assert "busy" in str(exc_info.value)


def test_client_errors_are_validation_failures_with_payload(shop):
    client = make_client(lambda request: httpx.Response(422, json={"error": "name required"}))

    with pytest.raises(ChannelValidationError) as exc_info:
        client.push(7, {"name": ""}, shop)

    error = exc_info.value
    assert error.http_code == 422
    assert error.channel_name == "shop"
    assert error.payload_dump == {"model_id": 7, "projection": {"name": ""}}
    assert "name required" in str(error)


def test_timeout_is_transient(shop):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(ChannelUnavailableError, match="Timeout"):
        make_client(handler).push(7, {}, shop)


def test_trickling_response_hits_overall_deadline(shop):
    now = [0.0]
    sent = []

    def trickle():
        for _ in range(100):
            now[0] += 1.0
            sent.append(1)
            yield b" "

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=trickle())

    client = StorefrontClient(
        request_timeout=5.0,
        transport=httpx.MockTransport(handler),
        monotonic=lambda: now[0],
    )

    with pytest.raises(ChannelUnavailableError, match="exceeded the 5s deadline"):
        client.push(7, {}, shop)
    assert len(sent) == 6


def test_channel_request_timeout_overrides_client_default(driver_registry):
    from feedsync.models import SalesChannel

    fast_shop = driver_registry.bind_settings(
        SalesChannel(
            id=2,
            name="fast",
            driver="storefront",
            api_config={
                "api_url": "https://fast.example/api",
                "api_token": "tok",
                "request_timeout_sec": 2,
            },
        )
    )
    now = [0.0]

    def handler(request: httpx.Request) -> httpx.Response:
        now[0] += 3.0
        return httpx.Response(200, json={"success": True})

    client = StorefrontClient(
        request_timeout=30.0,
        transport=httpx.MockTransport(handler),
        monotonic=lambda: now[0],
    )

    with pytest.raises(ChannelUnavailableError, match="exceeded the 2s deadline"):
        client.push(7, {}, fast_shop)


def test_connection_error_is_transient(shop):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(ChannelUnavailableError, match="Connection error"):
        make_client(handler).push_stocks([{"variant_id": 1}], shop)


def test_health_check(shop):
    assert make_client(lambda request: httpx.Response(200, json={})).health_check(shop) is True
    assert make_client(lambda request: httpx.Response(503)).health_check(shop) is False
