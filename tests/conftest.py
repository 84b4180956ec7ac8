"""Shared test fixtures."""

from collections.abc import Callable, Generator
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

import pytest

from feedsync.channels.registry import ChannelDriverRegistry, ChannelSet, default_registry, load_channels
from feedsync.config import SyncConfig
from feedsync.repositories.memory import InMemoryCatalogRepository, InMemoryOutboxRepository

FIXED_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = FIXED_NOW) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def price_item(
    *,
    brand: str = "Ormatek",
    model: str = "Flex Standart",
    code: str = "ORM-001",
    price: Any = "100",
    uuid: Optional[str] = None,
    width: int = 160,
    length: int = 200,
    height: Optional[int] = 18,
    barcode: Optional[str] = None,
    decor: Optional[str] = None,
    disabled: bool = False,
    pictures: tuple[str, ...] = (),
    actions: str = "",
    product_line: str = "Mattresses",
) -> str:
    """One ``<price-item>`` element of an Ormatek feed."""
    parts = [
        "<price-item>",
        f"<brand-name>{brand}</brand-name>",
        f"<model-name>{model}</model-name>",
        f"<product-code>{code}</product-code>",
        f"<product-line>{product_line}</product-line>",
        f"<base-retail-price>{price}</base-retail-price>",
        f"<width>{width}</width>",
        f"<length>{length}</length>",
    ]
    if height is not None:
        parts.append(f"<height>{height}</height>")
    if uuid:
        parts.append(f"<product-uuid>{uuid}</product-uuid>")
    if barcode:
        parts.append(f"<barcode>{barcode}</barcode>")
    if decor:
        parts.append(f"<decor-name>{decor}</decor-name>")
    if disabled:
        parts.append("<disabled>true</disabled>")
    if pictures:
        parts.append(
            "<pictures>" + "".join(f"<picture>{url}</picture>" for url in pictures) + "</pictures>"
        )
    if actions:
        parts.append(f"<actions>{actions}</actions>")
    parts.append("</price-item>")
    return "".join(parts)


def ormatek_feed(*items: str) -> str:
    return '<?xml version="1.0" encoding="UTF-8"?>\n<price-items>' + "".join(items) + "</price-items>"


@pytest.fixture
def write_feed(tmp_path: Path) -> Callable[[str, str], Path]:
    """Write feed text to a temp file and return its path."""

    def _write(content: str, name: str = "feed.xml") -> Path:
        path = tmp_path / name
        path.write_text(content, encoding="utf-8")
        return path

    return _write


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sync_config() -> SyncConfig:
    """Test-owned config; never reads .env."""
    return SyncConfig(
        _env_file=None,
        db_path=":memory:",
        batch_size=50,
        backoff_base_sec=5.0,
        backoff_max_sec=60.0,
        max_attempts=3,
        stale_processing_sec=300.0,
        poll_interval_sec=0.01,
    )


@pytest.fixture
def catalog() -> InMemoryCatalogRepository:
    return InMemoryCatalogRepository()


@pytest.fixture
def outbox_repo() -> InMemoryOutboxRepository:
    return InMemoryOutboxRepository()


@pytest.fixture
def driver_registry(
    catalog: InMemoryCatalogRepository, sync_config: SyncConfig
) -> ChannelDriverRegistry:
    return default_registry(catalog, sync_config)


@pytest.fixture
def log_channels(driver_registry: ChannelDriverRegistry) -> ChannelSet:
    """Two active dry-run channels and one inactive one."""
    return load_channels(
        [
            {"id": 1, "name": "shop-a", "driver": "log", "api_config": {}},
            {"id": 2, "name": "shop-b", "driver": "log", "api_config": {"log_payloads": True}},
            {"id": 3, "name": "paused", "driver": "log", "is_active": False},
        ],
        driver_registry,
    )


@pytest.fixture
def env_clean(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Drop feedsync env vars and reset the config singleton around a test."""
    from feedsync.config import reload_config

    for name in (
        "DB_PATH",
        "CHANNELS_FILE",
        "API_KEYS",
        "DEV_BYPASS_API_KEY",
        "LANES",
        "MAX_PRODUCTS",
        "BACKOFF_BASE_SEC",
        "BACKOFF_MAX_SEC",
    ):
        monkeypatch.delenv(name, raising=False)
    reload_config()
    yield
    reload_config()
