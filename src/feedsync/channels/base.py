"""Channel driver capabilities and delivery outcome types."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol, Union

from pydantic import BaseModel, ConfigDict

from feedsync.models import SalesChannel

Projection = dict[str, Any]

PROJECTOR_METHODS = ("build_projection", "build_price_projection", "build_stock_projection")
TRANSPORT_METHODS = (
    "push",
    "push_batch",
    "push_prices",
    "push_stocks",
    "push_category_tree",
    "health_check",
)


class ChannelSettings(BaseModel):
    """Base for typed per-driver settings parsed from a channel's ``api_config``."""

    model_config = ConfigDict(extra="forbid", frozen=True)


class Projector(Protocol):
    """Renders catalog state into one channel's payload shape.

    ``None`` means the model is not eligible for the channel right now.
    """

    def build_projection(self, model_id: int, channel: SalesChannel) -> Optional[Projection]:
        ...

    def build_price_projection(
        self, model_id: int, channel: SalesChannel
    ) -> Optional[Projection]:
        ...

    def build_stock_projection(
        self, model_id: int, channel: SalesChannel
    ) -> Optional[Projection]:
        ...


class Transport(Protocol):
    """Delivers payloads to one kind of channel.

    Raises ``ChannelUnavailableError`` for retryable failures and
    ``ChannelValidationError`` when the channel rejects the payload itself.
    """

    def push(self, model_id: int, projection: Projection, channel: SalesChannel) -> bool:
        ...

    def push_batch(
        self, projections: dict[int, Projection], channel: SalesChannel
    ) -> dict[int, bool]:
        ...

    def push_prices(self, items: list[dict[str, Any]], channel: SalesChannel) -> bool:
        ...

    def push_stocks(self, items: list[dict[str, Any]], channel: SalesChannel) -> bool:
        ...

    def push_category_tree(self, payload: dict[str, Any], channel: SalesChannel) -> bool:
        ...

    def health_check(self, channel: SalesChannel) -> bool:
        ...


@dataclass(frozen=True)
class Delivered:
    pass


@dataclass(frozen=True)
class Skipped:
    reason: str


@dataclass(frozen=True)
class TransientFailure:
    error: str
    http_code: Optional[int] = None
    retry_after: Optional[float] = None
    channel_down: bool = True


@dataclass(frozen=True)
class ValidationFailure:
    error: str
    http_code: Optional[int] = None
    payload_dump: Optional[dict[str, Any]] = None


DeliveryOutcome = Union[Delivered, Skipped, TransientFailure, ValidationFailure]
