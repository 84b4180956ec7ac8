"""Outbox writes (fan-out per active channel) and operator maintenance."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from feedsync.channels.registry import ChannelSet
from feedsync.models import LANE_CONTENT, LANE_PRICE, LANE_STOCK, LANES
from feedsync.repositories.base import (
    DeadLetter,
    OutboxRecord,
    OutboxRepository,
    format_ts,
    utcnow,
)

logger = logging.getLogger(__name__)

ENTITY_MODEL = "model"


@dataclass
class EmitResult:
    """Rows written by one emit call."""

    created: int = 0
    coalesced: int = 0
    records: list[OutboxRecord] = field(default_factory=list)

    def merge(self, other: "EmitResult") -> None:
        self.created += other.created
        self.coalesced += other.coalesced
        self.records.extend(other.records)


@dataclass(frozen=True)
class RetryFailedResult:
    retried_ids: list[int]
    resolved_dead_letters: int


class OutboxService:
    """Appends pending changes and exposes queue maintenance for operators.

    Every change fans out to one record per active channel and lane. A second
    write for an entity that already has a pending record on the same channel
    and lane coalesces into that record instead of adding a row.
    """

    def __init__(
        self,
        outbox: OutboxRepository,
        channels: ChannelSet,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.outbox = outbox
        self.channels = channels
        self.clock = clock or utcnow

    def _now(self) -> str:
        return format_ts(self.clock())

    def emit(
        self,
        *,
        model_id: int,
        lanes: Iterable[str],
        source_event: str,
        entity_type: str = ENTITY_MODEL,
        entity_id: Optional[int] = None,
    ) -> EmitResult:
        wanted = set(lanes)
        unknown = wanted - set(LANES)
        if unknown:
            raise ValueError(f"Unknown lanes: {', '.join(sorted(unknown))}")

        result = EmitResult()
        active = self.channels.active()
        if not active:
            logger.debug("No active channels; change to model %d not queued", model_id)
            return result

        now = self._now()
        for lane in (lane for lane in LANES if lane in wanted):
            for channel in active:
                record, created = self.outbox.append(
                    channel_id=channel.id,
                    lane=lane,
                    source_event=source_event,
                    entity_type=entity_type,
                    entity_id=entity_id if entity_id is not None else model_id,
                    model_id=model_id,
                    now=now,
                )
                result.records.append(record)
                if created:
                    result.created += 1
                else:
                    result.coalesced += 1
        return result

    def emit_content_update(self, model_id: int, source_event: str = "content_changed") -> EmitResult:
        return self.emit(model_id=model_id, lanes=[LANE_CONTENT], source_event=source_event)

    def emit_price_update(self, model_id: int, source_event: str = "price_changed") -> EmitResult:
        return self.emit(model_id=model_id, lanes=[LANE_PRICE], source_event=source_event)

    def emit_stock_update(self, model_id: int, source_event: str = "stock_changed") -> EmitResult:
        return self.emit(model_id=model_id, lanes=[LANE_STOCK], source_event=source_event)

    def get_queue_stats(self) -> dict[str, int]:
        return self.outbox.stats()

    def get_stats_by_channel(self) -> list[dict]:
        return self.outbox.stats_by_channel()

    def list_failed(
        self, limit: int = 100, channel_id: Optional[int] = None
    ) -> list[OutboxRecord]:
        return self.outbox.list_records(status="failed", limit=limit, channel_id=channel_id)

    def list_dead_letters(
        self, channel_id: Optional[int] = None, limit: int = 100
    ) -> list[DeadLetter]:
        return self.outbox.list_dead_letters(channel_id=channel_id, limit=limit)

    def retry_failed(self, channel_id: Optional[int] = None) -> RetryFailedResult:
        """Move failed records back to pending with a fresh retry budget."""
        ids = self.outbox.retry_failed(channel_id)
        resolved = self.outbox.resolve_dead_letters(ids, self._now()) if ids else 0
        logger.info(
            "Retry failed: %d record(s) back to pending, %d dead letter(s) resolved",
            len(ids),
            resolved,
        )
        return RetryFailedResult(retried_ids=ids, resolved_dead_letters=resolved)

    def reset_stuck(self, stale_after_sec: float) -> int:
        """Return claims older than ``stale_after_sec`` to pending."""
        threshold = format_ts(self.clock() - timedelta(seconds=stale_after_sec))
        count = self.outbox.reclaim_stale(threshold)
        if count:
            logger.warning("Reclaimed %d stale processing record(s)", count)
        return count
