"""Driver name to (Projector, Transport) lookup, validated when drivers register."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional, Union

from pydantic import ValidationError

from feedsync.channels.base import (
    PROJECTOR_METHODS,
    TRANSPORT_METHODS,
    ChannelSettings,
    Projector,
    Transport,
)
from feedsync.config import SyncConfig
from feedsync.exceptions import ConfigurationError
from feedsync.models import SalesChannel
from feedsync.repositories.base import CatalogRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DriverContext:
    """What driver factories may depend on."""

    catalog: CatalogRepository
    config: SyncConfig


@dataclass(frozen=True)
class DriverSpec:
    """Registration entry for one channel driver."""

    name: str
    settings_model: type[ChannelSettings]
    projector_factory: Callable[[DriverContext], Projector]
    transport_factory: Callable[[DriverContext], Transport]


def _missing_methods(obj: Any, required: tuple[str, ...]) -> list[str]:
    return [name for name in required if not callable(getattr(obj, name, None))]


class ChannelDriverRegistry:
    """Resolves each driver once and caches its projector and transport.

    ``register`` instantiates both strategies immediately and checks them
    against the required capability methods, so a broken driver fails at
    startup rather than on the first delivery.
    """

    def __init__(self, context: DriverContext) -> None:
        self.context = context
        self._specs: dict[str, DriverSpec] = {}
        self._projectors: dict[str, Projector] = {}
        self._transports: dict[str, Transport] = {}
        self._lock = threading.Lock()

    def register(self, spec: DriverSpec) -> None:
        if not spec.name:
            raise ConfigurationError("Driver name cannot be empty")
        if spec.name in self._specs:
            raise ConfigurationError(f"Channel driver '{spec.name}' is already registered")

        projector = spec.projector_factory(self.context)
        missing = _missing_methods(projector, PROJECTOR_METHODS)
        if missing:
            raise ConfigurationError(
                f"Projector for driver '{spec.name}' does not implement: {', '.join(missing)}"
            )

        transport = spec.transport_factory(self.context)
        missing = _missing_methods(transport, TRANSPORT_METHODS)
        if missing:
            raise ConfigurationError(
                f"Transport for driver '{spec.name}' does not implement: {', '.join(missing)}"
            )

        with self._lock:
            self._specs[spec.name] = spec
            self._projectors[spec.name] = projector
            self._transports[spec.name] = transport
        logger.debug("Registered channel driver %s", spec.name)

    def drivers(self) -> list[str]:
        return sorted(self._specs)

    def has_driver(self, driver: str) -> bool:
        return driver in self._specs

    def _spec(self, driver: str) -> DriverSpec:
        spec = self._specs.get(driver)
        if spec is None:
            registered = ", ".join(self.drivers()) or "none"
            raise ConfigurationError(
                f"Channel driver '{driver}' is not registered. Registered drivers: {registered}"
            )
        return spec

    def get_syndicator(self, channel: SalesChannel) -> Projector:
        self._spec(channel.driver)
        return self._projectors[channel.driver]

    def get_api_client(self, channel: SalesChannel) -> Transport:
        return self.transport_for(channel.driver)

    def transport_for(self, driver: str) -> Transport:
        self._spec(driver)
        return self._transports[driver]

    def bind_settings(self, channel: SalesChannel) -> SalesChannel:
        """Parse ``api_config`` into the driver's typed settings once, at load time."""
        spec = self._spec(channel.driver)
        try:
            settings = spec.settings_model.model_validate(channel.api_config)
        except ValidationError as exc:
            raise ConfigurationError(
                f"Invalid api_config for channel {channel.id} ({channel.name}): {exc}"
            ) from exc
        return channel.model_copy(update={"settings": settings})


class ChannelSet:
    """Loaded sales channels keyed by id."""

    def __init__(self, channels: Optional[list[SalesChannel]] = None) -> None:
        self._channels = {c.id: c for c in channels or []}

    def __len__(self) -> int:
        return len(self._channels)

    def all(self) -> list[SalesChannel]:
        return [self._channels[k] for k in sorted(self._channels)]

    def active(self) -> list[SalesChannel]:
        return [c for c in self.all() if c.is_active]

    def get(self, channel_id: int) -> Optional[SalesChannel]:
        return self._channels.get(channel_id)


def load_channels(
    source: Union[Path, list[dict[str, Any]], None], registry: ChannelDriverRegistry
) -> ChannelSet:
    """Load channels from a JSON file (or already-decoded list) and bind their settings."""
    if source is None:
        return ChannelSet()

    if isinstance(source, Path):
        try:
            raw = json.loads(source.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigurationError(f"Cannot read channels file {source}: {exc}") from exc
    else:
        raw = source

    if not isinstance(raw, list):
        raise ConfigurationError("Channels file must contain a JSON list")

    channels = []
    seen: set[int] = set()
    for entry in raw:
        try:
            channel = SalesChannel.model_validate(entry)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid channel entry {entry!r}: {exc}") from exc
        if channel.id in seen:
            raise ConfigurationError(f"Duplicate channel id {channel.id}")
        seen.add(channel.id)
        channels.append(registry.bind_settings(channel))

    logger.info(
        "Loaded %d channel(s), %d active",
        len(channels),
        sum(1 for c in channels if c.is_active),
    )
    return ChannelSet(channels)


def default_registry(catalog: CatalogRepository, config: SyncConfig) -> ChannelDriverRegistry:
    """Registry with the bundled storefront and log drivers."""
    from feedsync.channels.drivers.log import LOG_DRIVER
    from feedsync.channels.drivers.storefront import STOREFRONT_DRIVER

    registry = ChannelDriverRegistry(DriverContext(catalog=catalog, config=config))
    registry.register(STOREFRONT_DRIVER)
    registry.register(LOG_DRIVER)
    return registry
