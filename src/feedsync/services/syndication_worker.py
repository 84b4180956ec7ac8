"""Outbox drain: claim per lane, project, deliver, record the outcome.

Record lifecycle::

    pending -> processing -> success
                          -> error  -> pending   (after backoff)
                          -> failed              (validation failure or attempts exhausted)

Lanes are drained independently; an exception or an outage in one lane does
not stop the others.
"""

from __future__ import annotations

import logging
import signal
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from feedsync.channels.base import (
    Delivered,
    DeliveryOutcome,
    Projector,
    Skipped,
    TransientFailure,
    Transport,
    ValidationFailure,
)
from feedsync.channels.registry import ChannelDriverRegistry, ChannelSet
from feedsync.config import SyncConfig
from feedsync.exceptions import (
    ChannelUnavailableError,
    ChannelValidationError,
    ConfigurationError,
)
from feedsync.models import LANE_CONTENT, LANE_PRICE, STATUS_PROCESSING, SalesChannel
from feedsync.repositories.base import OutboxRecord, OutboxRepository, format_ts, utcnow

logger = logging.getLogger(__name__)


def backoff_delay(
    retry_count: int,
    *,
    base: float,
    cap: float,
    retry_after: Optional[float] = None,
) -> float:
    """Seconds to wait before the next attempt.

    ``min(cap, base * 2**retry_count)``; a channel-supplied ``retry_after``
    lengthens the delay but never beyond ``cap``.
    """
    delay = min(cap, base * (2 ** max(retry_count, 0)))
    if retry_after is not None:
        delay = min(cap, max(delay, retry_after))
    return delay


@dataclass
class LaneReport:
    """Counts for one lane batch."""

    lane: str
    claimed: int = 0
    delivered: int = 0
    skipped: int = 0
    superseded: int = 0
    retried: int = 0
    failed: int = 0
    dead_lettered: int = 0
    released: int = 0

    def merge(self, other: "LaneReport") -> None:
        self.claimed += other.claimed
        self.delivered += other.delivered
        self.skipped += other.skipped
        self.superseded += other.superseded
        self.retried += other.retried
        self.failed += other.failed
        self.dead_lettered += other.dead_lettered
        self.released += other.released

    def as_dict(self) -> dict[str, Any]:
        return {
            "lane": self.lane,
            "claimed": self.claimed,
            "delivered": self.delivered,
            "skipped": self.skipped,
            "superseded": self.superseded,
            "retried": self.retried,
            "failed": self.failed,
            "dead_lettered": self.dead_lettered,
            "released": self.released,
        }


@dataclass
class DrainReport:
    """Totals across drain cycles, one ``LaneReport`` per lane."""

    cycles: int = 0
    lanes: dict[str, LaneReport] = field(default_factory=dict)

    def add(self, report: LaneReport) -> None:
        total = self.lanes.setdefault(report.lane, LaneReport(lane=report.lane))
        total.merge(report)

    @property
    def claimed(self) -> int:
        return sum(r.claimed for r in self.lanes.values())


def _made_progress(reports: dict[str, LaneReport]) -> bool:
    return any(r.claimed > r.released for r in reports.values())


class _ChannelDown(Exception):
    """Internal: stop delivering to a channel for the rest of the batch."""


class SyndicationWorker:
    """Drains the outbox for every configured lane.

    Several workers may share one outbox; the repository's conditional claim
    guarantees each record goes to exactly one of them. Within a batch only
    the newest record per channel, entity and lane is delivered, and a record
    is skipped when a newer one for the same key is still queued.
    """

    def __init__(
        self,
        outbox: OutboxRepository,
        channels: ChannelSet,
        registry: ChannelDriverRegistry,
        config: SyncConfig,
        *,
        clock: Callable[[], datetime] = utcnow,
        worker_id: Optional[str] = None,
    ) -> None:
        self.outbox = outbox
        self.channels = channels
        self.registry = registry
        self.config = config
        self.clock = clock
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self._shutdown = threading.Event()

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def stop(self) -> None:
        """Finish the current batch, then exit ``run_forever``."""
        logger.info("Worker %s shutting down", self.worker_id)
        self._shutdown.set()

    @property
    def stopping(self) -> bool:
        return self._shutdown.is_set()

    def run_forever(self) -> None:
        logger.info(
            "Worker %s starting: lanes=%s batch=%d poll=%.1fs",
            self.worker_id,
            ",".join(self.config.get_lanes()),
            self.config.batch_size,
            self.config.poll_interval_sec,
        )
        try:
            signal.signal(signal.SIGINT, self._handle_signal)
            signal.signal(signal.SIGTERM, self._handle_signal)
        except (ValueError, OSError):
            pass  # not in main thread

        while not self._shutdown.is_set():
            reports = self.run_once()
            if not _made_progress(reports):
                self._shutdown.wait(self.config.poll_interval_sec)
        logger.info("Worker %s stopped", self.worker_id)

    def _handle_signal(self, signum, frame):
        logger.info("Worker %s received signal %s", self.worker_id, signum)
        self.stop()

    def drain(self, max_cycles: int = 100) -> DrainReport:
        """Run cycles until a cycle settles nothing (or ``max_cycles`` is hit)."""
        total = DrainReport()
        while total.cycles < max_cycles and not self._shutdown.is_set():
            reports = self.run_once()
            total.cycles += 1
            for report in reports.values():
                total.add(report)
            if not _made_progress(reports):
                break
        return total

    def run_once(self) -> dict[str, LaneReport]:
        """One pass over every configured lane."""
        now = self.clock()
        released = self.outbox.release_due_errors(format_ts(now))
        if released:
            logger.debug("Worker %s: %d error record(s) due for retry", self.worker_id, released)
        stale_before = format_ts(now - timedelta(seconds=self.config.stale_processing_sec))
        reclaimed = self.outbox.reclaim_stale(stale_before)
        if reclaimed:
            logger.warning("Worker %s reclaimed %d stale claim(s)", self.worker_id, reclaimed)

        reports = {}
        for lane in self.config.get_lanes():
            if self._shutdown.is_set():
                break
            try:
                reports[lane] = self.process_lane(lane)
            except Exception:
                logger.exception("Worker %s: lane %s failed", self.worker_id, lane)
                reports[lane] = LaneReport(lane=lane)
        return reports

    # ------------------------------------------------------------------ #
    # Lane processing
    # ------------------------------------------------------------------ #

    def process_lane(self, lane: str) -> LaneReport:
        report = LaneReport(lane=lane)
        records = self.outbox.claim_batch(lane, self.config.batch_size, self._now())
        report.claimed = len(records)
        if not records:
            return report

        by_channel: dict[int, list[OutboxRecord]] = {}
        for record in records:
            by_channel.setdefault(record.channel_id, []).append(record)

        for channel_id, channel_records in by_channel.items():
            live = self._collapse(channel_records, report)
            if live:
                self._deliver_channel(lane, channel_id, live, report)

        logger.info(
            "Worker %s %s: claimed=%d delivered=%d skipped=%d superseded=%d "
            "retried=%d failed=%d released=%d",
            self.worker_id,
            lane,
            report.claimed,
            report.delivered,
            report.skipped,
            report.superseded,
            report.retried,
            report.failed,
            report.released,
        )
        return report

    def _now(self) -> str:
        return format_ts(self.clock())

    def _collapse(self, records: list[OutboxRecord], report: LaneReport) -> list[OutboxRecord]:
        """Keep the highest ``seq`` per entity; mark the rest superseded."""
        newest: dict[tuple[str, int], OutboxRecord] = {}
        for record in records:
            key = (record.entity_type, record.entity_id)
            current = newest.get(key)
            if current is None or record.seq > current.seq:
                newest[key] = record

        keep_ids = {r.id for r in newest.values()}
        stale = [r.id for r in records if r.id not in keep_ids]
        live = []
        for record in sorted(newest.values(), key=lambda r: r.seq):
            if self.outbox.has_newer_pending(record):
                stale.append(record.id)
            else:
                live.append(record)

        if stale:
            self.outbox.mark_success(stale, self._now(), note="superseded by a newer record")
            report.superseded += len(stale)
        return live

    def _deliver_channel(
        self, lane: str, channel_id: int, records: list[OutboxRecord], report: LaneReport
    ) -> None:
        channel = self.channels.get(channel_id)
        if channel is None or not channel.is_active:
            state = "unknown" if channel is None else "inactive"
            self._fail_config(records, f"Channel {channel_id} is {state}", report)
            return

        try:
            projector = self.registry.get_syndicator(channel)
            transport = self.registry.get_api_client(channel)
        except ConfigurationError as e:
            self._fail_config(records, str(e), report)
            return

        try:
            if lane == LANE_CONTENT:
                if getattr(channel.settings, "batch_content", False) and len(records) > 1:
                    self._deliver_content_batch(channel, projector, transport, records, report)
                else:
                    self._deliver_content(channel, projector, transport, records, report)
            else:
                self._deliver_aggregated(lane, channel, projector, transport, records, report)
        except _ChannelDown:
            pending = [r.id for r in records if self._is_processing(r.id)]
            if pending:
                self.outbox.release(pending)
                report.released += len(pending)
                logger.warning(
                    "Worker %s: channel %s down, released %d record(s)",
                    self.worker_id,
                    channel.name,
                    len(pending),
                )

    def _is_processing(self, record_id: int) -> bool:
        record = self.outbox.get(record_id)
        return record is not None and record.status == STATUS_PROCESSING

    def _fail_config(self, records: list[OutboxRecord], error: str, report: LaneReport) -> None:
        logger.error("Worker %s: configuration error: %s", self.worker_id, error)
        self.outbox.mark_failed([r.id for r in records], f"Configuration error: {error}", self._now())
        report.failed += len(records)

    def _attempt(self, call: Callable[[], Any]) -> tuple[Any, Optional[DeliveryOutcome]]:
        """Run one projector or transport call; exceptions become outcomes."""
        try:
            return call(), None
        except ChannelUnavailableError as e:
            return None, TransientFailure(
                error=str(e), http_code=e.http_code, retry_after=e.retry_after
            )
        except ChannelValidationError as e:
            return None, ValidationFailure(
                error=str(e), http_code=e.http_code, payload_dump=e.payload_dump
            )
        except Exception as e:
            logger.error("Worker %s: unexpected delivery error: %s", self.worker_id, e, exc_info=True)
            return None, TransientFailure(error=f"Unexpected error: {e}", channel_down=False)

    def _deliver_content(
        self,
        channel: SalesChannel,
        projector: Projector,
        transport: Transport,
        records: list[OutboxRecord],
        report: LaneReport,
    ) -> None:
        for record in records:
            projection, failure = self._attempt(
                lambda: projector.build_projection(record.model_id, channel)
            )
            if failure is None and projection is None:
                self._apply(channel, [record], Skipped("not eligible for channel"), report)
                continue
            if failure is None:
                ok, failure = self._attempt(
                    lambda: transport.push(record.model_id, projection, channel)
                )
                outcome = failure or (
                    Delivered()
                    if ok
                    else TransientFailure("Channel did not accept the product", channel_down=False)
                )
            else:
                outcome = failure
            self._apply(channel, [record], outcome, report)

    def _deliver_content_batch(
        self,
        channel: SalesChannel,
        projector: Projector,
        transport: Transport,
        records: list[OutboxRecord],
        report: LaneReport,
    ) -> None:
        projections: dict[int, Any] = {}
        targets: dict[int, list[OutboxRecord]] = {}
        for record in records:
            projection, failure = self._attempt(
                lambda: projector.build_projection(record.model_id, channel)
            )
            if failure is not None:
                self._apply(channel, [record], failure, report)
            elif projection is None:
                self._apply(channel, [record], Skipped("not eligible for channel"), report)
            else:
                projections[record.model_id] = projection
                targets.setdefault(record.model_id, []).append(record)

        if not projections:
            return

        results, failure = self._attempt(lambda: transport.push_batch(projections, channel))
        if failure is not None:
            batch = [r for model_records in targets.values() for r in model_records]
            self._apply(channel, batch, failure, report)
            return

        for model_id, model_records in targets.items():
            if results.get(model_id, False):
                outcome: DeliveryOutcome = Delivered()
            else:
                outcome = TransientFailure(
                    f"Channel did not accept model {model_id} in batch", channel_down=False
                )
            self._apply(channel, model_records, outcome, report)

    def _deliver_aggregated(
        self,
        lane: str,
        channel: SalesChannel,
        projector: Projector,
        transport: Transport,
        records: list[OutboxRecord],
        report: LaneReport,
    ) -> None:
        if lane == LANE_PRICE:
            build, push = projector.build_price_projection, transport.push_prices
        else:
            build, push = projector.build_stock_projection, transport.push_stocks

        items: list[dict[str, Any]] = []
        included: list[OutboxRecord] = []
        for record in records:
            projection, failure = self._attempt(lambda: build(record.model_id, channel))
            if failure is not None:
                self._apply(channel, [record], failure, report)
            elif not projection or not projection.get("items"):
                self._apply(channel, [record], Skipped("no variants to update"), report)
            else:
                items.extend(projection["items"])
                included.append(record)

        if not included:
            return

        ok, failure = self._attempt(lambda: push(items, channel))
        outcome = failure or (
            Delivered()
            if ok
            else TransientFailure(f"Channel did not accept {lane} batch", channel_down=False)
        )
        self._apply(channel, included, outcome, report)

    # ------------------------------------------------------------------ #
    # Outcome handling
    # ------------------------------------------------------------------ #

    def _apply(
        self,
        channel: SalesChannel,
        records: list[OutboxRecord],
        outcome: DeliveryOutcome,
        report: LaneReport,
    ) -> None:
        ids = [r.id for r in records]
        now = self._now()

        if isinstance(outcome, Delivered):
            self.outbox.mark_success(ids, now)
            report.delivered += len(ids)
        elif isinstance(outcome, Skipped):
            self.outbox.mark_success(ids, now, note=f"skipped: {outcome.reason}")
            report.skipped += len(ids)
        elif isinstance(outcome, ValidationFailure):
            self._dead_letter(channel, records, outcome, now)
            report.failed += len(ids)
            report.dead_lettered += len(records)
        elif isinstance(outcome, TransientFailure):
            self._retry_or_fail(channel, records, outcome, now, report)
            if outcome.channel_down:
                raise _ChannelDown(outcome.error)
        else:
            raise TypeError(f"Unknown delivery outcome: {outcome!r}")

    def _retry_or_fail(
        self,
        channel: SalesChannel,
        records: list[OutboxRecord],
        outcome: TransientFailure,
        now: str,
        report: LaneReport,
    ) -> None:
        error = outcome.error
        if outcome.http_code is not None:
            error = f"HTTP {outcome.http_code}: {error}"

        for record in records:
            attempt = record.retry_count + 1
            if attempt >= self.config.max_attempts:
                self.outbox.mark_failed(
                    [record.id],
                    f"Giving up after {attempt} attempt(s): {error}",
                    now,
                )
                report.failed += 1
                logger.error(
                    "Worker %s: outbox %d to %s failed permanently after %d attempt(s): %s",
                    self.worker_id,
                    record.id,
                    channel.name,
                    attempt,
                    error,
                )
                continue

            delay = backoff_delay(
                record.retry_count,
                base=self.config.backoff_base_sec,
                cap=self.config.backoff_max_sec,
                retry_after=outcome.retry_after,
            )
            next_attempt_at = format_ts(self.clock() + timedelta(seconds=delay))
            self.outbox.mark_error(
                [record.id],
                f"Attempt {attempt}/{self.config.max_attempts}: {error}",
                next_attempt_at=next_attempt_at,
                now=now,
            )
            report.retried += 1
            logger.warning(
                "Worker %s: outbox %d to %s failed (attempt %d/%d), retry in %.1fs: %s",
                self.worker_id,
                record.id,
                channel.name,
                attempt,
                self.config.max_attempts,
                delay,
                error,
            )

    def _dead_letter(
        self,
        channel: SalesChannel,
        records: list[OutboxRecord],
        outcome: ValidationFailure,
        now: str,
    ) -> None:
        ids = [r.id for r in records]
        self.outbox.mark_failed(ids, f"Validation failed (HTTP {outcome.http_code}): {outcome.error}", now)

        by_model: dict[int, list[OutboxRecord]] = {}
        for record in records:
            by_model.setdefault(record.model_id, []).append(record)
        for model_id, model_records in by_model.items():
            self.outbox.add_dead_letter(
                channel_id=channel.id,
                model_id=model_id,
                lane=model_records[0].lane,
                error_code=outcome.http_code,
                error_message=outcome.error,
                payload_dump=outcome.payload_dump,
                outbox_ids=[r.id for r in model_records],
                now=now,
            )
        logger.error(
            "Worker %s: %s rejected %d record(s) (HTTP %s): %s",
            self.worker_id,
            channel.name,
            len(ids),
            outcome.http_code,
            outcome.error,
        )
