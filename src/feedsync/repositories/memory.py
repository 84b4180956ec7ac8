"""In-memory repositories for tests and single-process dry runs."""

from __future__ import annotations

import threading
from dataclasses import replace
from typing import Any, Optional

from feedsync.dimensions import normalize_name
from feedsync.exceptions import ConcurrentUpdateError, DuplicateModelError
from feedsync.models import (
    STATUS_ERROR,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    STATUS_SUCCESS,
    STATUSES,
)
from feedsync.repositories.base import (
    CatalogModel,
    CatalogRepository,
    CatalogVariant,
    DeadLetter,
    ModelInput,
    OutboxRecord,
    OutboxRepository,
    SupplierOffer,
    VariantInput,
    merge_offers,
    offer_from_input,
)


class InMemoryCatalogRepository(CatalogRepository):
    """Thread-safe in-memory catalog storage."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        """Reset all in-memory state (used by tests)."""
        with self._lock:
            self._models: dict[int, CatalogModel] = {}
            self._variants: dict[int, CatalogVariant] = {}
            self._offers: dict[tuple[int, int], SupplierOffer] = {}
            self._model_seq = 1
            self._variant_seq = 1

    def get_model(self, model_id: int) -> Optional[CatalogModel]:
        with self._lock:
            return self._models.get(model_id)

    def get_variant(self, variant_id: int) -> Optional[CatalogVariant]:
        with self._lock:
            return self._variants.get(variant_id)

    def get_variants(self, model_id: int) -> list[CatalogVariant]:
        with self._lock:
            return sorted(
                (v for v in self._variants.values() if v.model_id == model_id),
                key=lambda v: v.id,
            )

    def _find_by_supplier_sku(self, supplier_id: int, supplier_sku: str) -> Optional[CatalogModel]:
        for model in self._models.values():
            if model.supplier_id == supplier_id and model.supplier_sku == supplier_sku:
                return model
        return None

    def find_model_by_supplier_sku(
        self, supplier_id: int, supplier_sku: str
    ) -> Optional[CatalogModel]:
        with self._lock:
            return self._find_by_supplier_sku(supplier_id, supplier_sku)

    def find_variants_by_gtin(self, gtin: str) -> list[CatalogVariant]:
        with self._lock:
            return sorted(
                (v for v in self._variants.values() if v.gtin == gtin),
                key=lambda v: v.id,
            )

    def find_variants_by_mpn(self, mpn: str) -> list[CatalogVariant]:
        wanted = mpn.strip().lower()
        with self._lock:
            return sorted(
                (
                    v
                    for v in self._variants.values()
                    if v.mpn is not None and v.mpn.strip().lower() == wanted
                ),
                key=lambda v: v.id,
            )

    def find_models_by_brand(self, brand: Optional[str]) -> list[CatalogModel]:
        wanted = normalize_name(brand)
        with self._lock:
            return sorted(
                (m for m in self._models.values() if normalize_name(m.brand) == wanted),
                key=lambda m: m.id,
            )

    def _insert_model(self, data: ModelInput) -> CatalogModel:
        if self._find_by_supplier_sku(data.supplier_id, data.supplier_sku) is not None:
            raise DuplicateModelError(data.supplier_id, data.supplier_sku)
        model_id = self._model_seq
        self._model_seq += 1
        model = CatalogModel(
            id=model_id,
            supplier_id=data.supplier_id,
            supplier_sku=data.supplier_sku,
            name=data.name,
            model_name=data.model_name,
            brand=data.brand,
            manufacturer=data.manufacturer,
            category_path=data.category_path,
            description=data.description,
            attributes=dict(data.attributes),
            image_urls=list(data.image_urls),
            checksum=data.checksum,
            version=1,
        )
        self._models[model_id] = model
        return model

    def _insert_variant(self, model_id: int, data: VariantInput) -> CatalogVariant:
        if model_id not in self._models:
            raise KeyError(f"Unknown model_id: {model_id}")
        variant_id = self._variant_seq
        self._variant_seq += 1
        variant = CatalogVariant(
            id=variant_id,
            model_id=model_id,
            supplier_id=data.supplier_id,
            sku=data.sku,
            gtin=data.gtin,
            mpn=data.mpn,
            price=data.price,
            compare_price=data.compare_price,
            in_stock=data.in_stock,
            stock_quantity=data.stock_quantity,
            stock_status=data.stock_status,
            options=dict(data.options),
        )
        self._variants[variant_id] = variant
        self._offers[(variant_id, data.supplier_id)] = offer_from_input(variant_id, data)
        return variant

    def create_model(self, data: ModelInput) -> CatalogModel:
        with self._lock:
            return self._insert_model(data)

    def create_product(
        self, data: ModelInput, variants: list[VariantInput]
    ) -> tuple[CatalogModel, list[CatalogVariant]]:
        with self._lock:
            model = self._insert_model(data)
            return model, [self._insert_variant(model.id, v) for v in variants]

    def update_model(
        self, model_id: int, data: ModelInput, *, expected_version: int
    ) -> CatalogModel:
        with self._lock:
            current = self._models.get(model_id)
            if current is None:
                raise KeyError(f"Unknown model_id: {model_id}")
            if current.version != expected_version:
                raise ConcurrentUpdateError(data.supplier_sku, expected_version)

            model = replace(
                current,
                supplier_id=data.supplier_id,
                supplier_sku=data.supplier_sku,
                name=data.name,
                model_name=data.model_name,
                brand=data.brand,
                manufacturer=data.manufacturer,
                category_path=data.category_path,
                description=data.description,
                attributes=dict(data.attributes),
                image_urls=list(data.image_urls),
                checksum=data.checksum,
                version=current.version + 1,
            )
            self._models[model_id] = model
            return model

    def create_variant(self, model_id: int, data: VariantInput) -> CatalogVariant:
        with self._lock:
            return self._insert_variant(model_id, data)

    def record_offer(
        self, variant_id: int, data: VariantInput
    ) -> tuple[CatalogVariant, CatalogVariant]:
        with self._lock:
            current = self._variants.get(variant_id)
            if current is None:
                raise KeyError(f"Unknown variant_id: {variant_id}")
            self._offers[(variant_id, data.supplier_id)] = offer_from_input(variant_id, data)
            offers = [o for (vid, _), o in self._offers.items() if vid == variant_id]
            content = data if data.supplier_id == current.supplier_id else None
            merged = merge_offers(current, offers, content)
            self._variants[variant_id] = merged
            return current, merged

    def get_offers(self, variant_id: int) -> list[SupplierOffer]:
        with self._lock:
            return sorted(
                (o for (vid, _), o in self._offers.items() if vid == variant_id),
                key=lambda o: o.supplier_id,
            )

    def touch_match(self, model_id: int, matched_at: str) -> None:
        with self._lock:
            current = self._models.get(model_id)
            if current is not None:
                self._models[model_id] = replace(current, last_matched_at=matched_at)

    def get_offers_count(self, supplier_id: int) -> int:
        with self._lock:
            return sum(1 for (_, sid) in self._offers if sid == supplier_id)


class InMemoryOutboxRepository(OutboxRepository):
    """Thread-safe in-memory outbox; one lock makes every claim atomic."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        """Reset all in-memory state (used by tests)."""
        with self._lock:
            self._records: dict[int, OutboxRecord] = {}
            self._dead_letters: dict[int, DeadLetter] = {}
            self._record_seq = 1
            self._event_seq = 1
            self._dead_letter_seq = 1

    def _next_seq(self) -> int:
        seq = self._event_seq
        self._event_seq += 1
        return seq

    def append(
        self,
        *,
        channel_id: int,
        lane: str,
        source_event: str,
        entity_type: str,
        entity_id: int,
        model_id: int,
        now: str,
    ) -> tuple[OutboxRecord, bool]:
        with self._lock:
            for record in self._records.values():
                if (
                    record.status == STATUS_PENDING
                    and record.channel_id == channel_id
                    and record.lane == lane
                    and record.entity_type == entity_type
                    and record.entity_id == entity_id
                ):
                    coalesced = replace(
                        record,
                        seq=self._next_seq(),
                        source_event=source_event,
                        model_id=model_id,
                        created_at=now,
                    )
                    self._records[record.id] = coalesced
                    return coalesced, False

            record_id = self._record_seq
            self._record_seq += 1
            record = OutboxRecord(
                id=record_id,
                seq=self._next_seq(),
                channel_id=channel_id,
                lane=lane,
                source_event=source_event,
                entity_type=entity_type,
                entity_id=entity_id,
                model_id=model_id,
                status=STATUS_PENDING,
                retry_count=0,
                error_log=None,
                created_at=now,
            )
            self._records[record_id] = record
            return record, True

    def get(self, record_id: int) -> Optional[OutboxRecord]:
        with self._lock:
            return self._records.get(record_id)

    def claim_batch(self, lane: str, limit: int, now: str) -> list[OutboxRecord]:
        with self._lock:
            candidates = sorted(
                (
                    r
                    for r in self._records.values()
                    if r.lane == lane and r.status == STATUS_PENDING
                ),
                key=lambda r: r.seq,
            )[:limit]
            claimed = []
            for record in candidates:
                updated = replace(record, status=STATUS_PROCESSING, claimed_at=now)
                self._records[record.id] = updated
                claimed.append(updated)
            return claimed

    def _update(self, ids: list[int], from_statuses: tuple[str, ...], **changes: Any) -> int:
        count = 0
        for record_id in ids:
            record = self._records.get(record_id)
            if record is None or record.status not in from_statuses:
                continue
            values = {
                key: value(record) if callable(value) else value
                for key, value in changes.items()
            }
            self._records[record_id] = replace(record, **values)
            count += 1
        return count

    def mark_success(self, ids: list[int], now: str, note: Optional[str] = None) -> None:
        with self._lock:
            self._update(
                ids,
                (STATUS_PROCESSING,),
                status=STATUS_SUCCESS,
                processed_at=now,
                error_log=note,
                claimed_at=None,
            )

    def mark_error(
        self, ids: list[int], error: str, *, next_attempt_at: str, now: str
    ) -> None:
        with self._lock:
            self._update(
                ids,
                (STATUS_PROCESSING,),
                status=STATUS_ERROR,
                retry_count=lambda r: r.retry_count + 1,
                error_log=error,
                next_attempt_at=next_attempt_at,
                claimed_at=None,
            )

    def mark_failed(self, ids: list[int], error: str, now: str) -> None:
        with self._lock:
            self._update(
                ids,
                (STATUS_PROCESSING,),
                status=STATUS_FAILED,
                error_log=error,
                processed_at=now,
                claimed_at=None,
            )

    def release(self, ids: list[int]) -> None:
        with self._lock:
            self._update(ids, (STATUS_PROCESSING,), status=STATUS_PENDING, claimed_at=None)

    def release_due_errors(self, now: str) -> int:
        with self._lock:
            due = [
                r.id
                for r in self._records.values()
                if r.status == STATUS_ERROR
                and (r.next_attempt_at is None or r.next_attempt_at <= now)
            ]
            return self._update(due, (STATUS_ERROR,), status=STATUS_PENDING)

    def reclaim_stale(self, claimed_before: str) -> int:
        with self._lock:
            stale = [
                r.id
                for r in self._records.values()
                if r.status == STATUS_PROCESSING
                and r.claimed_at is not None
                and r.claimed_at < claimed_before
            ]
            return self._update(stale, (STATUS_PROCESSING,), status=STATUS_PENDING, claimed_at=None)

    def has_newer_pending(self, record: OutboxRecord) -> bool:
        with self._lock:
            return any(
                r.id != record.id
                and r.seq > record.seq
                and r.status in (STATUS_PENDING, STATUS_PROCESSING, STATUS_ERROR)
                and r.channel_id == record.channel_id
                and r.lane == record.lane
                and r.entity_type == record.entity_type
                and r.entity_id == record.entity_id
                for r in self._records.values()
            )

    def retry_failed(self, channel_id: Optional[int] = None) -> list[int]:
        with self._lock:
            ids = [
                r.id
                for r in self._records.values()
                if r.status == STATUS_FAILED
                and (channel_id is None or r.channel_id == channel_id)
            ]
            self._update(
                ids,
                (STATUS_FAILED,),
                status=STATUS_PENDING,
                retry_count=0,
                error_log=None,
                processed_at=None,
                next_attempt_at=None,
            )
            return sorted(ids)

    def stats(self) -> dict[str, int]:
        with self._lock:
            counts = {status: 0 for status in STATUSES}
            for record in self._records.values():
                counts[record.status] += 1
            return counts

    def stats_by_channel(self) -> list[dict[str, Any]]:
        with self._lock:
            grouped: dict[tuple[int, str, str], int] = {}
            for r in self._records.values():
                key = (r.channel_id, r.lane, r.status)
                grouped[key] = grouped.get(key, 0) + 1
            return [
                {"channel_id": channel_id, "lane": lane, "status": status, "count": count}
                for (channel_id, lane, status), count in sorted(grouped.items())
            ]

    def list_records(
        self, status: Optional[str] = None, limit: int = 100, channel_id: Optional[int] = None
    ) -> list[OutboxRecord]:
        with self._lock:
            records = sorted(
                (
                    r
                    for r in self._records.values()
                    if (status is None or r.status == status)
                    and (channel_id is None or r.channel_id == channel_id)
                ),
                key=lambda r: r.id,
                reverse=True,
            )
            return records[:limit]

    def add_dead_letter(
        self,
        *,
        channel_id: int,
        model_id: int,
        lane: str,
        error_code: Optional[int],
        error_message: str,
        payload_dump: Optional[dict[str, Any]],
        outbox_ids: list[int],
        now: str,
    ) -> DeadLetter:
        with self._lock:
            dead_letter_id = self._dead_letter_seq
            self._dead_letter_seq += 1
            entry = DeadLetter(
                id=dead_letter_id,
                channel_id=channel_id,
                model_id=model_id,
                lane=lane,
                error_code=error_code,
                error_message=error_message,
                payload_dump=payload_dump,
                outbox_ids=list(outbox_ids),
                created_at=now,
            )
            self._dead_letters[dead_letter_id] = entry
            return entry

    def list_dead_letters(
        self, channel_id: Optional[int] = None, unresolved_only: bool = True, limit: int = 100
    ) -> list[DeadLetter]:
        with self._lock:
            entries = sorted(
                (
                    d
                    for d in self._dead_letters.values()
                    if (channel_id is None or d.channel_id == channel_id)
                    and (not unresolved_only or d.resolved_at is None)
                ),
                key=lambda d: d.id,
                reverse=True,
            )
            return entries[:limit]

    def resolve_dead_letters(self, outbox_ids: list[int], now: str) -> int:
        wanted = set(outbox_ids)
        with self._lock:
            count = 0
            for entry in list(self._dead_letters.values()):
                if entry.resolved_at is None and wanted.intersection(entry.outbox_ids):
                    self._dead_letters[entry.id] = replace(entry, resolved_at=now)
                    count += 1
            return count
