"""JSON REST storefront driver.

Endpoints (relative to ``api_url``): ``import/product``, ``import/batch``,
``import/prices``, ``import/stocks``, ``import/catalog`` and ``health``.
Authentication is a bearer token. 4xx responses are validation failures;
timeouts, connection errors, 5xx and 429 are transient.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Optional

import httpx
from pydantic import Field, SecretStr, field_validator

from feedsync.channels.base import ChannelSettings, Projection
from feedsync.channels.registry import DriverContext, DriverSpec
from feedsync.exceptions import ChannelUnavailableError, ChannelValidationError
from feedsync.models import SalesChannel, VariantRecord
from feedsync.repositories.base import CatalogRepository

logger = logging.getLogger(__name__)


class StorefrontSettings(ChannelSettings):
    """Typed ``api_config`` for storefront channels."""

    api_url: str = Field(..., min_length=1)
    api_token: SecretStr
    batch_content: bool = False
    category_map: dict[str, str] = Field(default_factory=dict)
    include_out_of_stock: bool = True
    connect_timeout_sec: Optional[float] = Field(default=None, gt=0)
    request_timeout_sec: Optional[float] = Field(default=None, gt=0)

    @field_validator("api_url")
    @classmethod
    def validate_api_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("api_url must start with http:// or https://")
        return v.rstrip("/") + "/"


def _settings(channel: SalesChannel) -> StorefrontSettings:
    settings = channel.settings
    if not isinstance(settings, StorefrontSettings):
        settings = StorefrontSettings.model_validate(channel.api_config)
    return settings


def _discount_percent(price: float, compare_price: Optional[float]) -> Optional[int]:
    return VariantRecord(price=price, compare_price=compare_price).discount_percent


class StorefrontSyndicator:
    """Builds storefront payloads from catalog state."""

    def __init__(self, catalog: CatalogRepository) -> None:
        self.catalog = catalog

    def build_projection(self, model_id: int, channel: SalesChannel) -> Optional[Projection]:
        model = self.catalog.get_model(model_id)
        if model is None:
            return None

        settings = channel.settings
        category_map = getattr(settings, "category_map", {})
        variants = [v for v in self.catalog.get_variants(model_id) if v.price > 0]
        if not getattr(settings, "include_out_of_stock", True):
            variants = [v for v in variants if v.in_stock]
        if not variants:
            return None

        prices = [v.price for v in variants]
        return {
            "model_id": model.id,
            "sku": model.supplier_sku,
            "name": model.name,
            "brand": model.brand,
            "manufacturer": model.manufacturer,
            "category": category_map.get(model.category_path, model.category_path),
            "description": model.description,
            "attributes": dict(model.attributes),
            "images": list(model.image_urls),
            "min_price": min(prices),
            "max_price": max(prices),
            "in_stock": any(v.in_stock for v in variants),
            "variants": [
                {
                    "variant_id": v.id,
                    "sku": v.sku,
                    "gtin": v.gtin,
                    "price": v.price,
                    "compare_price": v.compare_price,
                    "discount_percent": _discount_percent(v.price, v.compare_price),
                    "in_stock": v.in_stock,
                    "stock_status": v.stock_status,
                    "options": dict(v.options),
                }
                for v in variants
            ],
        }

    def build_price_projection(
        self, model_id: int, channel: SalesChannel
    ) -> Optional[Projection]:
        variants = self.catalog.get_variants(model_id)
        if not variants:
            return None
        return {
            "model_id": model_id,
            "items": [
                {
                    "variant_id": v.id,
                    "sku": v.sku,
                    "price": v.price,
                    "compare_price": v.compare_price,
                }
                for v in variants
            ],
        }

    def build_stock_projection(
        self, model_id: int, channel: SalesChannel
    ) -> Optional[Projection]:
        variants = self.catalog.get_variants(model_id)
        if not variants:
            return None
        return {
            "model_id": model_id,
            "items": [
                {
                    "variant_id": v.id,
                    "sku": v.sku,
                    "in_stock": v.in_stock,
                    "stock_quantity": v.stock_quantity,
                    "stock_status": v.stock_status,
                }
                for v in variants
            ],
        }


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500]
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body)
    return str(body)[:500]


class StorefrontClient:
    """httpx transport; one pooled client per channel, shared across workers."""

    def __init__(
        self,
        *,
        connect_timeout: float = 10.0,
        request_timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.connect_timeout = connect_timeout
        self.request_timeout = request_timeout
        self.transport = transport
        self._monotonic = monotonic
        self._clients: dict[int, httpx.Client] = {}
        self._lock = threading.Lock()

    def _client(self, channel: SalesChannel) -> httpx.Client:
        with self._lock:
            client = self._clients.get(channel.id)
            if client is None:
                settings = _settings(channel)
                client = httpx.Client(
                    base_url=settings.api_url,
                    headers={
                        "Authorization": f"Bearer {settings.api_token.get_secret_value()}",
                        "Accept": "application/json",
                    },
                    timeout=httpx.Timeout(
                        settings.request_timeout_sec or self.request_timeout,
                        connect=settings.connect_timeout_sec or self.connect_timeout,
                    ),
                    transport=self.transport,
                )
                self._clients[channel.id] = client
            return client

    def close(self) -> None:
        with self._lock:
            for client in self._clients.values():
                client.close()
            self._clients.clear()

    def _deadline_sec(self, channel: SalesChannel) -> float:
        return _settings(channel).request_timeout_sec or self.request_timeout

    def _request(
        self,
        method: str,
        path: str,
        channel: SalesChannel,
        payload: Optional[dict[str, Any]],
    ) -> httpx.Response:
        """Send and read the whole response within one overall deadline.

        httpx timeouts bound each socket operation only, so the body is
        streamed and the deadline checked after the headers and every chunk.
        """
        budget = self._deadline_sec(channel)
        deadline = self._monotonic() + budget

        def check_deadline() -> None:
            if self._monotonic() > deadline:
                raise ChannelUnavailableError(
                    f"Request to {channel.name} {path} exceeded the {budget:g}s deadline"
                )

        with self._client(channel).stream(method, path, json=payload) as response:
            check_deadline()
            chunks = []
            for chunk in response.iter_raw():
                chunks.append(chunk)
                check_deadline()
            return httpx.Response(
                response.status_code,
                headers=response.headers,
                content=b"".join(chunks),
                request=response.request,
            )

    def _send(
        self,
        method: str,
        path: str,
        channel: SalesChannel,
        payload: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        try:
            response = self._request(method, path, channel, payload)
        except httpx.TimeoutException as e:
            raise ChannelUnavailableError(f"Timeout calling {channel.name} {path}: {e}") from e
        except httpx.TransportError as e:
            raise ChannelUnavailableError(
                f"Connection error calling {channel.name} {path}: {e}"
            ) from e

        status = response.status_code
        if status == 429 or status >= 500:
            raise ChannelUnavailableError(
                f"HTTP {status} from {channel.name} {path}: {_error_message(response)}",
                http_code=status,
                retry_after=_retry_after(response),
            )
        if 400 <= status < 500:
            raise ChannelValidationError(
                f"HTTP {status}: {_error_message(response)}",
                http_code=status,
                channel_name=channel.name,
                payload_dump=payload,
            )

        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    def push(self, model_id: int, projection: Projection, channel: SalesChannel) -> bool:
        body = self._send(
            "POST",
            "import/product",
            channel,
            {"model_id": model_id, "projection": projection},
        )
        ok = bool(body.get("success", True))
        logger.info("storefront[%s]: pushed model_id=%d ok=%s", channel.name, model_id, ok)
        return ok

    def push_batch(
        self, projections: dict[int, Projection], channel: SalesChannel
    ) -> dict[int, bool]:
        if not projections:
            return {}
        body = self._send(
            "POST",
            "import/batch",
            channel,
            {
                "products": [
                    {"model_id": model_id, "projection": projection}
                    for model_id, projection in projections.items()
                ]
            },
        )
        results = body.get("results") or {}
        default = bool(body.get("success", True))
        outcome = {
            model_id: bool(results.get(str(model_id), results.get(model_id, default)))
            if isinstance(results, dict)
            else default
            for model_id in projections
        }
        logger.info(
            "storefront[%s]: batch pushed %d model(s), %d ok",
            channel.name,
            len(outcome),
            sum(outcome.values()),
        )
        return outcome

    def push_prices(self, items: list[dict[str, Any]], channel: SalesChannel) -> bool:
        if not items:
            return True
        body = self._send("POST", "import/prices", channel, {"type": "price_update", "items": items})
        logger.info("storefront[%s]: pushed %d price update(s)", channel.name, len(items))
        return bool(body.get("success", True))

    def push_stocks(self, items: list[dict[str, Any]], channel: SalesChannel) -> bool:
        if not items:
            return True
        body = self._send("POST", "import/stocks", channel, {"type": "stock_update", "items": items})
        logger.info("storefront[%s]: pushed %d stock update(s)", channel.name, len(items))
        return bool(body.get("success", True))

    def push_category_tree(self, payload: dict[str, Any], channel: SalesChannel) -> bool:
        body = self._send("POST", "import/catalog", channel, payload)
        return bool(body.get("success", True))

    def health_check(self, channel: SalesChannel) -> bool:
        try:
            self._send("GET", "health", channel)
        except (ChannelUnavailableError, ChannelValidationError) as e:
            logger.warning("storefront[%s]: health check failed: %s", channel.name, e)
            return False
        return True


def _transport_factory(context: DriverContext) -> StorefrontClient:
    return StorefrontClient(
        connect_timeout=context.config.connect_timeout_sec,
        request_timeout=context.config.request_timeout_sec,
    )


STOREFRONT_DRIVER = DriverSpec(
    name="storefront",
    settings_model=StorefrontSettings,
    projector_factory=lambda context: StorefrontSyndicator(context.catalog),
    transport_factory=_transport_factory,
)
