"""Dry-run driver: renders storefront payloads and logs them instead of sending.

Projections use the storefront shape, so dry runs show real payloads.
"""

import json
import logging
from typing import Any

from pydantic import Field

from feedsync.channels.base import ChannelSettings, Projection
from feedsync.channels.drivers.storefront import StorefrontSyndicator
from feedsync.channels.registry import DriverSpec
from feedsync.models import SalesChannel

logger = logging.getLogger(__name__)


class LogSettings(ChannelSettings):
    category_map: dict[str, str] = Field(default_factory=dict)
    include_out_of_stock: bool = True
    log_payloads: bool = False


class LogTransport:
    """Accepts everything and writes a log line per call."""

    def _log(self, channel: SalesChannel, action: str, payload: Any, count: int) -> None:
        logger.info("log[%s]: %s (%d item(s))", channel.name, action, count)
        if getattr(channel.settings, "log_payloads", False):
            logger.info("log[%s]: %s", channel.name, json.dumps(payload, ensure_ascii=False, default=str))

    def push(self, model_id: int, projection: Projection, channel: SalesChannel) -> bool:
        self._log(channel, f"push model_id={model_id}", projection, 1)
        return True

    def push_batch(
        self, projections: dict[int, Projection], channel: SalesChannel
    ) -> dict[int, bool]:
        self._log(channel, "push_batch", projections, len(projections))
        return {model_id: True for model_id in projections}

    def push_prices(self, items: list[dict[str, Any]], channel: SalesChannel) -> bool:
        self._log(channel, "push_prices", items, len(items))
        return True

    def push_stocks(self, items: list[dict[str, Any]], channel: SalesChannel) -> bool:
        self._log(channel, "push_stocks", items, len(items))
        return True

    def push_category_tree(self, payload: dict[str, Any], channel: SalesChannel) -> bool:
        self._log(channel, "push_category_tree", payload, 1)
        return True

    def health_check(self, channel: SalesChannel) -> bool:
        return True


LOG_DRIVER = DriverSpec(
    name="log",
    settings_model=LogSettings,
    projector_factory=lambda context: StorefrontSyndicator(context.catalog),
    transport_factory=lambda context: LogTransport(),
)
