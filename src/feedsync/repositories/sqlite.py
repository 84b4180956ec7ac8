"""SQLite-backed catalog, outbox and dead-letter storage.

One database file holds all three so separate CLI invocations (``import``,
``drain``, ``worker``) share state. Every write runs inside ``BEGIN IMMEDIATE``
so concurrent processes serialize on SQLite's write lock; claims additionally
use a conditional ``UPDATE ... WHERE status = 'pending'`` and only keep the
rows whose update actually took effect.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Iterator, Optional, Union

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

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS catalog_models (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    supplier_id INTEGER NOT NULL,
    supplier_sku TEXT NOT NULL,
    name TEXT NOT NULL,
    model_name TEXT NOT NULL,
    brand TEXT,
    brand_key TEXT NOT NULL DEFAULT '',
    manufacturer TEXT,
    category_path TEXT NOT NULL DEFAULT '',
    description TEXT,
    attributes TEXT NOT NULL DEFAULT '{}',
    image_urls TEXT NOT NULL DEFAULT '[]',
    checksum TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 1,
    last_matched_at TEXT
);
DROP INDEX IF EXISTS idx_models_supplier_sku;
CREATE UNIQUE INDEX IF NOT EXISTS uq_models_supplier_sku ON catalog_models (supplier_id, supplier_sku);
CREATE INDEX IF NOT EXISTS idx_models_brand ON catalog_models (brand_key);

CREATE TABLE IF NOT EXISTS catalog_variants (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    model_id INTEGER NOT NULL REFERENCES catalog_models (id),
    supplier_id INTEGER NOT NULL,
    sku TEXT,
    gtin TEXT,
    mpn TEXT,
    mpn_key TEXT,
    price REAL NOT NULL DEFAULT 0,
    compare_price REAL,
    in_stock INTEGER NOT NULL DEFAULT 1,
    stock_quantity INTEGER,
    stock_status TEXT NOT NULL DEFAULT 'available',
    options TEXT NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS idx_variants_model ON catalog_variants (model_id);
CREATE INDEX IF NOT EXISTS idx_variants_gtin ON catalog_variants (gtin);
CREATE INDEX IF NOT EXISTS idx_variants_mpn ON catalog_variants (mpn_key);

CREATE TABLE IF NOT EXISTS supplier_offers (
    variant_id INTEGER NOT NULL REFERENCES catalog_variants (id),
    supplier_id INTEGER NOT NULL,
    price REAL NOT NULL DEFAULT 0,
    compare_price REAL,
    in_stock INTEGER NOT NULL DEFAULT 1,
    stock_quantity INTEGER,
    stock_status TEXT NOT NULL DEFAULT 'available',
    PRIMARY KEY (variant_id, supplier_id)
);
CREATE INDEX IF NOT EXISTS idx_offers_supplier ON supplier_offers (supplier_id);

CREATE TABLE IF NOT EXISTS outbox (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    seq INTEGER NOT NULL,
    channel_id INTEGER NOT NULL,
    lane TEXT NOT NULL,
    source_event TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    entity_id INTEGER NOT NULL,
    model_id INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    retry_count INTEGER NOT NULL DEFAULT 0,
    error_log TEXT,
    created_at TEXT NOT NULL,
    processed_at TEXT,
    claimed_at TEXT,
    next_attempt_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_outbox_claim ON outbox (lane, status, seq);
CREATE INDEX IF NOT EXISTS idx_outbox_entity ON outbox (channel_id, lane, entity_type, entity_id);

CREATE TABLE IF NOT EXISTS dead_letters (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    channel_id INTEGER NOT NULL,
    model_id INTEGER NOT NULL,
    lane TEXT NOT NULL,
    error_code INTEGER,
    error_message TEXT NOT NULL,
    payload_dump TEXT,
    outbox_ids TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    resolved_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_dead_letters_channel ON dead_letters (channel_id, resolved_at);
"""

_OUTBOX_COLUMNS = (
    "id, seq, channel_id, lane, source_event, entity_type, entity_id, model_id, "
    "status, retry_count, error_log, created_at, processed_at, claimed_at, next_attempt_at"
)


class SqliteDatabase:
    """Shared SQLite connection guarded by a thread lock."""

    def __init__(self, path: str, *, timeout: float = 30.0) -> None:
        self.path = path
        self._conn = sqlite3.connect(
            path, check_same_thread=False, timeout=timeout, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._db_lock = threading.Lock()
        if path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(SCHEMA)
        logger.debug("Opened SQLite database %s", path)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """Run the block inside BEGIN IMMEDIATE; commit on success, roll back on error."""
        with self._db_lock:
            cursor = self._conn.cursor()
            cursor.execute("BEGIN IMMEDIATE")
            try:
                yield cursor
            except BaseException:
                cursor.execute("ROLLBACK")
                raise
            cursor.execute("COMMIT")

    def query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._db_lock:
            return self._conn.execute(sql, params).fetchall()

    def close(self) -> None:
        with self._db_lock:
            self._conn.close()


def _placeholders(values: list[Any]) -> str:
    return ", ".join("?" for _ in values)


def _row_to_model(row: sqlite3.Row) -> CatalogModel:
    return CatalogModel(
        id=row["id"],
        supplier_id=row["supplier_id"],
        supplier_sku=row["supplier_sku"],
        name=row["name"],
        model_name=row["model_name"],
        brand=row["brand"],
        manufacturer=row["manufacturer"],
        category_path=row["category_path"],
        description=row["description"],
        attributes=json.loads(row["attributes"]),
        image_urls=json.loads(row["image_urls"]),
        checksum=row["checksum"],
        version=row["version"],
        last_matched_at=row["last_matched_at"],
    )


def _row_to_variant(row: sqlite3.Row) -> CatalogVariant:
    return CatalogVariant(
        id=row["id"],
        model_id=row["model_id"],
        supplier_id=row["supplier_id"],
        sku=row["sku"],
        gtin=row["gtin"],
        mpn=row["mpn"],
        price=row["price"],
        compare_price=row["compare_price"],
        in_stock=bool(row["in_stock"]),
        stock_quantity=row["stock_quantity"],
        stock_status=row["stock_status"],
        options=json.loads(row["options"]),
    )


def _row_to_record(row: sqlite3.Row) -> OutboxRecord:
    return OutboxRecord(**{key: row[key] for key in row.keys()})


def _row_to_dead_letter(row: sqlite3.Row) -> DeadLetter:
    payload = row["payload_dump"]
    return DeadLetter(
        id=row["id"],
        channel_id=row["channel_id"],
        model_id=row["model_id"],
        lane=row["lane"],
        error_code=row["error_code"],
        error_message=row["error_message"],
        payload_dump=json.loads(payload) if payload else None,
        outbox_ids=json.loads(row["outbox_ids"]),
        created_at=row["created_at"],
        resolved_at=row["resolved_at"],
    )


def _model_params(data: ModelInput) -> tuple:
    return (
        data.supplier_id,
        data.supplier_sku,
        data.name,
        data.model_name,
        data.brand,
        normalize_name(data.brand),
        data.manufacturer,
        data.category_path,
        data.description,
        json.dumps(data.attributes, ensure_ascii=False),
        json.dumps(data.image_urls, ensure_ascii=False),
        data.checksum,
    )


def _variant_params(data: Union[VariantInput, CatalogVariant]) -> tuple:
    return (
        data.supplier_id,
        data.sku,
        data.gtin,
        data.mpn,
        data.mpn.strip().lower() if data.mpn else None,
        data.price,
        data.compare_price,
        int(data.in_stock),
        data.stock_quantity,
        data.stock_status,
        json.dumps(data.options, ensure_ascii=False),
    )


def _row_to_offer(row: sqlite3.Row) -> SupplierOffer:
    return SupplierOffer(
        variant_id=row["variant_id"],
        supplier_id=row["supplier_id"],
        price=row["price"],
        compare_price=row["compare_price"],
        in_stock=bool(row["in_stock"]),
        stock_quantity=row["stock_quantity"],
        stock_status=row["stock_status"],
    )


def _save_offer(cur: sqlite3.Cursor, offer: SupplierOffer) -> None:
    cur.execute(
        "INSERT INTO supplier_offers (variant_id, supplier_id, price, compare_price, "
        "in_stock, stock_quantity, stock_status) VALUES (?, ?, ?, ?, ?, ?, ?) "
        "ON CONFLICT (variant_id, supplier_id) DO UPDATE SET price = excluded.price, "
        "compare_price = excluded.compare_price, in_stock = excluded.in_stock, "
        "stock_quantity = excluded.stock_quantity, stock_status = excluded.stock_status",
        (
            offer.variant_id,
            offer.supplier_id,
            offer.price,
            offer.compare_price,
            int(offer.in_stock),
            offer.stock_quantity,
            offer.stock_status,
        ),
    )


class SqliteCatalogRepository(CatalogRepository):
    """Catalog storage with optimistic versioning on models."""

    def __init__(self, db: SqliteDatabase) -> None:
        self.db = db

    def get_model(self, model_id: int) -> Optional[CatalogModel]:
        rows = self.db.query("SELECT * FROM catalog_models WHERE id = ?", (model_id,))
        return _row_to_model(rows[0]) if rows else None

    def get_variant(self, variant_id: int) -> Optional[CatalogVariant]:
        rows = self.db.query("SELECT * FROM catalog_variants WHERE id = ?", (variant_id,))
        return _row_to_variant(rows[0]) if rows else None

    def get_variants(self, model_id: int) -> list[CatalogVariant]:
        rows = self.db.query(
            "SELECT * FROM catalog_variants WHERE model_id = ? ORDER BY id", (model_id,)
        )
        return [_row_to_variant(r) for r in rows]

    def find_model_by_supplier_sku(
        self, supplier_id: int, supplier_sku: str
    ) -> Optional[CatalogModel]:
        rows = self.db.query(
            "SELECT * FROM catalog_models WHERE supplier_id = ? AND supplier_sku = ? "
            "ORDER BY id LIMIT 1",
            (supplier_id, supplier_sku),
        )
        return _row_to_model(rows[0]) if rows else None

    def find_variants_by_gtin(self, gtin: str) -> list[CatalogVariant]:
        rows = self.db.query(
            "SELECT * FROM catalog_variants WHERE gtin = ? ORDER BY id", (gtin,)
        )
        return [_row_to_variant(r) for r in rows]

    def find_variants_by_mpn(self, mpn: str) -> list[CatalogVariant]:
        rows = self.db.query(
            "SELECT * FROM catalog_variants WHERE mpn_key = ? ORDER BY id",
            (mpn.strip().lower(),),
        )
        return [_row_to_variant(r) for r in rows]

    def find_models_by_brand(self, brand: Optional[str]) -> list[CatalogModel]:
        rows = self.db.query(
            "SELECT * FROM catalog_models WHERE brand_key = ? ORDER BY id",
            (normalize_name(brand),),
        )
        return [_row_to_model(r) for r in rows]

    @staticmethod
    def _insert_model(cur: sqlite3.Cursor, data: ModelInput) -> int:
        try:
            cur.execute(
                "INSERT INTO catalog_models (supplier_id, supplier_sku, name, model_name, "
                "brand, brand_key, manufacturer, category_path, description, attributes, "
                "image_urls, checksum, version) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1)",
                _model_params(data),
            )
        except sqlite3.IntegrityError as exc:
            raise DuplicateModelError(data.supplier_id, data.supplier_sku) from exc
        return cur.lastrowid

    @staticmethod
    def _insert_variant(cur: sqlite3.Cursor, model_id: int, data: VariantInput) -> CatalogVariant:
        if cur.execute("SELECT 1 FROM catalog_models WHERE id = ?", (model_id,)).fetchone() is None:
            raise KeyError(f"Unknown model_id: {model_id}")
        cur.execute(
            "INSERT INTO catalog_variants (model_id, supplier_id, sku, gtin, mpn, mpn_key, "
            "price, compare_price, in_stock, stock_quantity, stock_status, options) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (model_id,) + _variant_params(data),
        )
        variant_id = cur.lastrowid
        _save_offer(cur, offer_from_input(variant_id, data))
        row = cur.execute("SELECT * FROM catalog_variants WHERE id = ?", (variant_id,)).fetchone()
        return _row_to_variant(row)

    def create_model(self, data: ModelInput) -> CatalogModel:
        with self.db.transaction() as cur:
            model_id = self._insert_model(cur, data)
            row = cur.execute("SELECT * FROM catalog_models WHERE id = ?", (model_id,)).fetchone()
        return _row_to_model(row)

    def create_product(
        self, data: ModelInput, variants: list[VariantInput]
    ) -> tuple[CatalogModel, list[CatalogVariant]]:
        with self.db.transaction() as cur:
            model_id = self._insert_model(cur, data)
            created = [self._insert_variant(cur, model_id, v) for v in variants]
            row = cur.execute("SELECT * FROM catalog_models WHERE id = ?", (model_id,)).fetchone()
        return _row_to_model(row), created

    def update_model(
        self, model_id: int, data: ModelInput, *, expected_version: int
    ) -> CatalogModel:
        with self.db.transaction() as cur:
            cur.execute(
                "UPDATE catalog_models SET supplier_id = ?, supplier_sku = ?, name = ?, "
                "model_name = ?, brand = ?, brand_key = ?, manufacturer = ?, "
                "category_path = ?, description = ?, attributes = ?, image_urls = ?, "
                "checksum = ?, version = version + 1 "
                "WHERE id = ? AND version = ?",
                _model_params(data) + (model_id, expected_version),
            )
            if cur.rowcount == 0:
                exists = cur.execute(
                    "SELECT 1 FROM catalog_models WHERE id = ?", (model_id,)
                ).fetchone()
                if exists is None:
                    raise KeyError(f"Unknown model_id: {model_id}")
                raise ConcurrentUpdateError(data.supplier_sku, expected_version)
            row = cur.execute("SELECT * FROM catalog_models WHERE id = ?", (model_id,)).fetchone()
        return _row_to_model(row)

    def create_variant(self, model_id: int, data: VariantInput) -> CatalogVariant:
        with self.db.transaction() as cur:
            return self._insert_variant(cur, model_id, data)

    def record_offer(
        self, variant_id: int, data: VariantInput
    ) -> tuple[CatalogVariant, CatalogVariant]:
        with self.db.transaction() as cur:
            row = cur.execute(
                "SELECT * FROM catalog_variants WHERE id = ?", (variant_id,)
            ).fetchone()
            if row is None:
                raise KeyError(f"Unknown variant_id: {variant_id}")
            current = _row_to_variant(row)
            _save_offer(cur, offer_from_input(variant_id, data))
            offers = [
                _row_to_offer(r)
                for r in cur.execute(
                    "SELECT * FROM supplier_offers WHERE variant_id = ?", (variant_id,)
                ).fetchall()
            ]
            content = data if data.supplier_id == current.supplier_id else None
            merged = merge_offers(current, offers, content)
            cur.execute(
                "UPDATE catalog_variants SET supplier_id = ?, sku = ?, gtin = ?, mpn = ?, "
                "mpn_key = ?, price = ?, compare_price = ?, in_stock = ?, stock_quantity = ?, "
                "stock_status = ?, options = ? WHERE id = ?",
                _variant_params(merged) + (variant_id,),
            )
        return current, merged

    def get_offers(self, variant_id: int) -> list[SupplierOffer]:
        rows = self.db.query(
            "SELECT * FROM supplier_offers WHERE variant_id = ? ORDER BY supplier_id",
            (variant_id,),
        )
        return [_row_to_offer(r) for r in rows]

    def touch_match(self, model_id: int, matched_at: str) -> None:
        with self.db.transaction() as cur:
            cur.execute(
                "UPDATE catalog_models SET last_matched_at = ? WHERE id = ?",
                (matched_at, model_id),
            )

    def get_offers_count(self, supplier_id: int) -> int:
        rows = self.db.query(
            "SELECT COUNT(*) AS cnt FROM supplier_offers WHERE supplier_id = ?", (supplier_id,)
        )
        return int(rows[0]["cnt"])


class SqliteOutboxRepository(OutboxRepository):
    """Outbox and dead letters; claims are compare-and-swap updates."""

    def __init__(self, db: SqliteDatabase) -> None:
        self.db = db

    @staticmethod
    def _next_seq(cur: sqlite3.Cursor) -> int:
        row = cur.execute("SELECT COALESCE(MAX(seq), 0) + 1 AS seq FROM outbox").fetchone()
        return int(row["seq"])

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
        with self.db.transaction() as cur:
            seq = self._next_seq(cur)
            existing = cur.execute(
                "SELECT id FROM outbox WHERE status = ? AND channel_id = ? AND lane = ? "
                "AND entity_type = ? AND entity_id = ? ORDER BY seq DESC LIMIT 1",
                (STATUS_PENDING, channel_id, lane, entity_type, entity_id),
            ).fetchone()
            if existing is not None:
                record_id = existing["id"]
                cur.execute(
                    "UPDATE outbox SET seq = ?, source_event = ?, model_id = ?, created_at = ? "
                    "WHERE id = ?",
                    (seq, source_event, model_id, now, record_id),
                )
                created = False
            else:
                cur.execute(
                    "INSERT INTO outbox (seq, channel_id, lane, source_event, entity_type, "
                    "entity_id, model_id, status, retry_count, created_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?)",
                    (seq, channel_id, lane, source_event, entity_type, entity_id, model_id,
                     STATUS_PENDING, now),
                )
                record_id = cur.lastrowid
                created = True
            row = cur.execute(
                f"SELECT {_OUTBOX_COLUMNS} FROM outbox WHERE id = ?", (record_id,)
            ).fetchone()
        return _row_to_record(row), created

    def get(self, record_id: int) -> Optional[OutboxRecord]:
        rows = self.db.query(f"SELECT {_OUTBOX_COLUMNS} FROM outbox WHERE id = ?", (record_id,))
        return _row_to_record(rows[0]) if rows else None

    def claim_batch(self, lane: str, limit: int, now: str) -> list[OutboxRecord]:
        with self.db.transaction() as cur:
            candidates = cur.execute(
                "SELECT id FROM outbox WHERE lane = ? AND status = ? ORDER BY seq LIMIT ?",
                (lane, STATUS_PENDING, limit),
            ).fetchall()
            claimed_ids = []
            for row in candidates:
                cur.execute(
                    "UPDATE outbox SET status = ?, claimed_at = ? WHERE id = ? AND status = ?",
                    (STATUS_PROCESSING, now, row["id"], STATUS_PENDING),
                )
                if cur.rowcount == 0:
                    continue
                claimed_ids.append(row["id"])
            if not claimed_ids:
                return []
            rows = cur.execute(
                f"SELECT {_OUTBOX_COLUMNS} FROM outbox WHERE id IN ({_placeholders(claimed_ids)}) "
                "ORDER BY seq",
                tuple(claimed_ids),
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    def _transition(self, sql: str, params: tuple, ids: list[int]) -> int:
        if not ids:
            return 0
        with self.db.transaction() as cur:
            cur.execute(f"{sql} AND id IN ({_placeholders(ids)})", params + tuple(ids))
            return cur.rowcount

    def mark_success(self, ids: list[int], now: str, note: Optional[str] = None) -> None:
        self._transition(
            "UPDATE outbox SET status = ?, processed_at = ?, error_log = ?, claimed_at = NULL "
            "WHERE status = ?",
            (STATUS_SUCCESS, now, note, STATUS_PROCESSING),
            ids,
        )

    def mark_error(
        self, ids: list[int], error: str, *, next_attempt_at: str, now: str
    ) -> None:
        self._transition(
            "UPDATE outbox SET status = ?, retry_count = retry_count + 1, error_log = ?, "
            "next_attempt_at = ?, claimed_at = NULL WHERE status = ?",
            (STATUS_ERROR, error, next_attempt_at, STATUS_PROCESSING),
            ids,
        )

    def mark_failed(self, ids: list[int], error: str, now: str) -> None:
        self._transition(
            "UPDATE outbox SET status = ?, error_log = ?, processed_at = ?, claimed_at = NULL "
            "WHERE status = ?",
            (STATUS_FAILED, error, now, STATUS_PROCESSING),
            ids,
        )

    def release(self, ids: list[int]) -> None:
        self._transition(
            "UPDATE outbox SET status = ?, claimed_at = NULL WHERE status = ?",
            (STATUS_PENDING, STATUS_PROCESSING),
            ids,
        )

    def release_due_errors(self, now: str) -> int:
        with self.db.transaction() as cur:
            cur.execute(
                "UPDATE outbox SET status = ? WHERE status = ? "
                "AND (next_attempt_at IS NULL OR next_attempt_at <= ?)",
                (STATUS_PENDING, STATUS_ERROR, now),
            )
            return cur.rowcount

    def reclaim_stale(self, claimed_before: str) -> int:
        with self.db.transaction() as cur:
            cur.execute(
                "UPDATE outbox SET status = ?, claimed_at = NULL "
                "WHERE status = ? AND claimed_at IS NOT NULL AND claimed_at < ?",
                (STATUS_PENDING, STATUS_PROCESSING, claimed_before),
            )
            return cur.rowcount

    def has_newer_pending(self, record: OutboxRecord) -> bool:
        rows = self.db.query(
            "SELECT 1 FROM outbox WHERE id != ? AND seq > ? AND status IN (?, ?, ?) "
            "AND channel_id = ? AND lane = ? AND entity_type = ? AND entity_id = ? LIMIT 1",
            (
                record.id,
                record.seq,
                STATUS_PENDING,
                STATUS_PROCESSING,
                STATUS_ERROR,
                record.channel_id,
                record.lane,
                record.entity_type,
                record.entity_id,
            ),
        )
        return bool(rows)

    def retry_failed(self, channel_id: Optional[int] = None) -> list[int]:
        with self.db.transaction() as cur:
            if channel_id is None:
                rows = cur.execute(
                    "SELECT id FROM outbox WHERE status = ? ORDER BY id", (STATUS_FAILED,)
                ).fetchall()
            else:
                rows = cur.execute(
                    "SELECT id FROM outbox WHERE status = ? AND channel_id = ? ORDER BY id",
                    (STATUS_FAILED, channel_id),
                ).fetchall()
            ids = [r["id"] for r in rows]
            if ids:
                cur.execute(
                    "UPDATE outbox SET status = ?, retry_count = 0, error_log = NULL, "
                    "processed_at = NULL, next_attempt_at = NULL "
                    f"WHERE id IN ({_placeholders(ids)})",
                    (STATUS_PENDING,) + tuple(ids),
                )
        return ids

    def stats(self) -> dict[str, int]:
        counts = {status: 0 for status in STATUSES}
        for row in self.db.query("SELECT status, COUNT(*) AS cnt FROM outbox GROUP BY status"):
            counts[row["status"]] = int(row["cnt"])
        return counts

    def stats_by_channel(self) -> list[dict[str, Any]]:
        rows = self.db.query(
            "SELECT channel_id, lane, status, COUNT(*) AS cnt FROM outbox "
            "GROUP BY channel_id, lane, status ORDER BY channel_id, lane, status"
        )
        return [
            {
                "channel_id": r["channel_id"],
                "lane": r["lane"],
                "status": r["status"],
                "count": int(r["cnt"]),
            }
            for r in rows
        ]

    def list_records(
        self, status: Optional[str] = None, limit: int = 100, channel_id: Optional[int] = None
    ) -> list[OutboxRecord]:
        clauses = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        if channel_id is not None:
            clauses.append("channel_id = ?")
            params.append(channel_id)
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        rows = self.db.query(
            f"SELECT {_OUTBOX_COLUMNS} FROM outbox {where}ORDER BY id DESC LIMIT ?",
            tuple(params) + (limit,),
        )
        return [_row_to_record(r) for r in rows]

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
        with self.db.transaction() as cur:
            cur.execute(
                "INSERT INTO dead_letters (channel_id, model_id, lane, error_code, "
                "error_message, payload_dump, outbox_ids, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    channel_id,
                    model_id,
                    lane,
                    error_code,
                    error_message,
                    json.dumps(payload_dump, ensure_ascii=False, default=str)
                    if payload_dump is not None
                    else None,
                    json.dumps(list(outbox_ids)),
                    now,
                ),
            )
            row = cur.execute(
                "SELECT * FROM dead_letters WHERE id = ?", (cur.lastrowid,)
            ).fetchone()
        return _row_to_dead_letter(row)

    def list_dead_letters(
        self, channel_id: Optional[int] = None, unresolved_only: bool = True, limit: int = 100
    ) -> list[DeadLetter]:
        clauses = []
        params: list[Any] = []
        if channel_id is not None:
            clauses.append("channel_id = ?")
            params.append(channel_id)
        if unresolved_only:
            clauses.append("resolved_at IS NULL")
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        rows = self.db.query(
            f"SELECT * FROM dead_letters {where}ORDER BY id DESC LIMIT ?",
            tuple(params) + (limit,),
        )
        return [_row_to_dead_letter(r) for r in rows]

    def resolve_dead_letters(self, outbox_ids: list[int], now: str) -> int:
        wanted = set(outbox_ids)
        if not wanted:
            return 0
        with self.db.transaction() as cur:
            rows = cur.execute(
                "SELECT id, outbox_ids FROM dead_letters WHERE resolved_at IS NULL"
            ).fetchall()
            resolve_ids = [
                r["id"] for r in rows if wanted.intersection(json.loads(r["outbox_ids"]))
            ]
            if resolve_ids:
                cur.execute(
                    f"UPDATE dead_letters SET resolved_at = ? "
                    f"WHERE id IN ({_placeholders(resolve_ids)})",
                    (now,) + tuple(resolve_ids),
                )
        return len(resolve_ids)
