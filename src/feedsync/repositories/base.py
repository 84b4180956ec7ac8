"""Repository interfaces for catalog, outbox and dead-letter persistence."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(value: datetime) -> str:
    """Fixed-width UTC timestamp, so stored values compare as strings."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(TS_FORMAT)


def parse_ts(value: str) -> datetime:
    return datetime.strptime(value, TS_FORMAT).replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class CatalogModel:
    """Persisted catalog model (the product card shared by its variants)."""

    id: int
    supplier_id: int
    supplier_sku: str
    name: str
    model_name: str
    brand: Optional[str]
    manufacturer: Optional[str]
    category_path: str
    description: Optional[str]
    attributes: dict[str, str]
    image_urls: list[str]
    checksum: str
    version: int
    last_matched_at: Optional[str] = None


@dataclass(frozen=True)
class CatalogVariant:
    """Persisted sellable variant of a catalog model."""

    id: int
    model_id: int
    supplier_id: int
    sku: Optional[str]
    gtin: Optional[str]
    mpn: Optional[str]
    price: float
    compare_price: Optional[float]
    in_stock: bool
    stock_quantity: Optional[int]
    stock_status: str
    options: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class SupplierOffer:
    """One supplier's latest price and stock for a catalog variant."""

    variant_id: int
    supplier_id: int
    price: float
    compare_price: Optional[float]
    in_stock: bool
    stock_quantity: Optional[int]
    stock_status: str


@dataclass(frozen=True)
class ModelInput:
    """Input payload for create/update model operations."""

    supplier_id: int
    supplier_sku: str
    name: str
    model_name: str
    brand: Optional[str]
    manufacturer: Optional[str]
    category_path: str
    description: Optional[str]
    attributes: dict[str, str]
    image_urls: list[str]
    checksum: str


@dataclass(frozen=True)
class VariantInput:
    """Input payload for create/update variant operations."""

    supplier_id: int
    sku: Optional[str]
    gtin: Optional[str]
    mpn: Optional[str]
    price: float
    compare_price: Optional[float]
    in_stock: bool
    stock_quantity: Optional[int]
    stock_status: str
    options: dict[str, str]


def offer_from_input(variant_id: int, data: VariantInput) -> SupplierOffer:
    return SupplierOffer(
        variant_id=variant_id,
        supplier_id=data.supplier_id,
        price=data.price,
        compare_price=data.compare_price,
        in_stock=data.in_stock,
        stock_quantity=data.stock_quantity,
        stock_status=data.stock_status,
    )


def merge_offers(
    current: CatalogVariant,
    offers: list[SupplierOffer],
    content: Optional[VariantInput] = None,
) -> CatalogVariant:
    """Recompute what channels see for a variant from every supplier's offer.

    The cheapest in-stock offer sets the price (lowest supplier id on ties);
    with nothing in stock the cheapest offer overall does. Known quantities of
    in-stock offers are summed. ``content`` replaces identifiers and options
    and is only passed for the owning supplier.
    """
    if not offers:
        return current
    active = [o for o in offers if o.in_stock and o.price > 0]
    best = min(active or offers, key=lambda o: (o.price, o.supplier_id))
    if active:
        quantities = [o.stock_quantity for o in active if o.stock_quantity is not None]
        stock_quantity = sum(quantities) if quantities else None
    else:
        stock_quantity = best.stock_quantity
    merged = replace(
        current,
        price=best.price,
        compare_price=best.compare_price,
        in_stock=bool(active),
        stock_quantity=stock_quantity,
        stock_status=best.stock_status,
    )
    if content is not None:
        merged = replace(
            merged,
            sku=content.sku,
            gtin=content.gtin,
            mpn=content.mpn,
            options=dict(content.options),
        )
    return merged


@dataclass(frozen=True)
class OutboxRecord:
    """One pending or delivered change for one channel and lane."""

    id: int
    seq: int
    channel_id: int
    lane: str
    source_event: str
    entity_type: str
    entity_id: int
    model_id: int
    status: str
    retry_count: int
    error_log: Optional[str]
    created_at: str
    processed_at: Optional[str] = None
    claimed_at: Optional[str] = None
    next_attempt_at: Optional[str] = None


@dataclass(frozen=True)
class DeadLetter:
    """Payload a channel rejected permanently, kept for operator inspection."""

    id: int
    channel_id: int
    model_id: int
    lane: str
    error_code: Optional[int]
    error_message: str
    payload_dump: Optional[dict[str, Any]]
    outbox_ids: list[int]
    created_at: str
    resolved_at: Optional[str] = None


class CatalogRepository(Protocol):
    """Catalog operations required by matchers, the writer and projectors."""

    def get_model(self, model_id: int) -> Optional[CatalogModel]:
        ...

    def get_variant(self, variant_id: int) -> Optional[CatalogVariant]:
        ...

    def get_variants(self, model_id: int) -> list[CatalogVariant]:
        ...

    def find_model_by_supplier_sku(
        self, supplier_id: int, supplier_sku: str
    ) -> Optional[CatalogModel]:
        ...

    def find_variants_by_gtin(self, gtin: str) -> list[CatalogVariant]:
        ...

    def find_variants_by_mpn(self, mpn: str) -> list[CatalogVariant]:
        ...

    def find_models_by_brand(self, brand: Optional[str]) -> list[CatalogModel]:
        ...

    def create_model(self, data: ModelInput) -> CatalogModel:
        """Raises DuplicateModelError if (supplier_id, supplier_sku) is taken."""
        ...

    def create_product(
        self, data: ModelInput, variants: list[VariantInput]
    ) -> tuple[CatalogModel, list[CatalogVariant]]:
        """Create a model with its variants atomically; raises DuplicateModelError."""
        ...

    def update_model(
        self, model_id: int, data: ModelInput, *, expected_version: int
    ) -> CatalogModel:
        ...

    def create_variant(self, model_id: int, data: VariantInput) -> CatalogVariant:
        """Create a variant owned by ``data.supplier_id`` along with its offer."""
        ...

    def record_offer(
        self, variant_id: int, data: VariantInput
    ) -> tuple[CatalogVariant, CatalogVariant]:
        """Store ``data`` as its supplier's offer and re-merge the variant.

        Identifiers and options are taken from ``data`` only when its supplier
        owns the variant. Returns the variant before and after.
        """
        ...

    def get_offers(self, variant_id: int) -> list[SupplierOffer]:
        ...

    def touch_match(self, model_id: int, matched_at: str) -> None:
        ...

    def get_offers_count(self, supplier_id: int) -> int:
        ...


class OutboxRepository(Protocol):
    """Outbox and dead-letter operations required by the writer and the worker."""

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
        ...

    def get(self, record_id: int) -> Optional[OutboxRecord]:
        ...

    def claim_batch(self, lane: str, limit: int, now: str) -> list[OutboxRecord]:
        ...

    def mark_success(self, ids: list[int], now: str, note: Optional[str] = None) -> None:
        ...

    def mark_error(
        self, ids: list[int], error: str, *, next_attempt_at: str, now: str
    ) -> None:
        ...

    def mark_failed(self, ids: list[int], error: str, now: str) -> None:
        ...

    def release(self, ids: list[int]) -> None:
        ...

    def release_due_errors(self, now: str) -> int:
        ...

    def reclaim_stale(self, claimed_before: str) -> int:
        ...

    def has_newer_pending(self, record: OutboxRecord) -> bool:
        ...

    def retry_failed(self, channel_id: Optional[int] = None) -> list[int]:
        ...

    def stats(self) -> dict[str, int]:
        ...

    def stats_by_channel(self) -> list[dict[str, Any]]:
        ...

    def list_records(
        self, status: Optional[str] = None, limit: int = 100, channel_id: Optional[int] = None
    ) -> list[OutboxRecord]:
        ...

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
        ...

    def list_dead_letters(
        self, channel_id: Optional[int] = None, unresolved_only: bool = True, limit: int = 100
    ) -> list[DeadLetter]:
        ...

    def resolve_dead_letters(self, outbox_ids: list[int], now: str) -> int:
        ...
