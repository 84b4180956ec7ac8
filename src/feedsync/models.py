"""Pydantic data models for normalized feed records and pipeline results."""

import hashlib
import json
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

LANE_CONTENT = "content_updated"
LANE_PRICE = "price_updated"
LANE_STOCK = "stock_updated"
LANES = (LANE_CONTENT, LANE_PRICE, LANE_STOCK)

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_SUCCESS = "success"
STATUS_ERROR = "error"
STATUS_FAILED = "failed"
STATUSES = (STATUS_PENDING, STATUS_PROCESSING, STATUS_SUCCESS, STATUS_ERROR, STATUS_FAILED)

Lane = Literal["content_updated", "price_updated", "stock_updated"]
StockStatus = Literal["available", "on_order", "out_of_stock", "discontinued", "unknown"]


class VariantRecord(BaseModel):
    """One sellable variant observed in a supplier feed."""

    model_config = ConfigDict(frozen=True)

    sku: Optional[str] = Field(None, description="Supplier variant code")
    gtin: Optional[str] = Field(None, description="EAN/UPC barcode if present")
    mpn: Optional[str] = Field(None, description="Manufacturer part number")
    price: float = Field(0.0, ge=0, description="Selling price")
    compare_price: Optional[float] = Field(None, ge=0, description="Compare-at (old) price")
    in_stock: bool = True
    stock_quantity: Optional[int] = Field(None, ge=0)
    stock_status: StockStatus = "available"
    options: Dict[str, str] = Field(
        default_factory=dict, description="Variant-defining options, e.g. Size -> 80x200"
    )
    image_urls: List[str] = Field(default_factory=list)

    def get_option(self, key: str) -> Optional[str]:
        return self.options.get(key)

    @property
    def has_discount(self) -> bool:
        return self.compare_price is not None and self.compare_price > self.price

    @property
    def discount_percent(self) -> Optional[int]:
        """Discount derived from compare-at price, rounded to whole percent."""
        compare_price = self.compare_price
        if compare_price is None or compare_price <= self.price:
            return None
        return int(round(100 - (self.price / compare_price * 100)))


class ProductRecord(BaseModel):
    """Canonical product shape every feed parser emits."""

    model_config = ConfigDict(frozen=True)

    supplier_sku: str = Field(..., min_length=1, description="Unique per supplier")
    name: str = Field(..., min_length=1)
    category_path: str = Field("", description="e.g. 'Mattresses > Spring'")
    manufacturer: Optional[str] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0, description="Price when there are no variants")
    compare_price: Optional[float] = Field(None, ge=0)
    in_stock: bool = True
    stock_quantity: Optional[int] = Field(None, ge=0)
    stock_status: StockStatus = "available"
    attributes: Dict[str, str] = Field(default_factory=dict)
    image_urls: List[str] = Field(default_factory=list)
    variants: List[VariantRecord] = Field(default_factory=list)
    raw_data: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("image_urls")
    @classmethod
    def dedupe_image_urls(cls, v: List[str]) -> List[str]:
        """Image URLs form a set; keep first occurrence order."""
        return list(dict.fromkeys(v))

    @property
    def has_variants(self) -> bool:
        return bool(self.variants)

    def effective_variants(self) -> List[VariantRecord]:
        """Explicit variants, or one implicit variant built from product fields."""
        if self.variants:
            return list(self.variants)
        return [
            VariantRecord(
                sku=self.supplier_sku,
                gtin=self.attributes.get("gtin") or self.attributes.get("ean"),
                mpn=self.attributes.get("mpn"),
                price=self.price or 0.0,
                compare_price=self.compare_price,
                in_stock=self.in_stock,
                stock_quantity=self.stock_quantity,
                stock_status=self.stock_status,
                image_urls=list(self.image_urls),
            )
        ]

    def _positive_prices(self) -> List[float]:
        return [v.price for v in self.variants if v.price > 0]

    def min_price(self) -> Optional[float]:
        prices = self._positive_prices()
        return min(prices) if prices else self.price

    def max_price(self) -> Optional[float]:
        prices = self._positive_prices()
        return max(prices) if prices else self.price

    def get_checksum(self) -> str:
        """Deterministic hash over sku, name, price, attributes and variants."""
        payload = {
            "sku": self.supplier_sku,
            "name": self.name,
            "price": self.price,
            "attributes": self.attributes,
            "variants": [
                {
                    "sku": v.sku,
                    "price": v.price,
                    "compare_price": v.compare_price,
                    "options": v.options,
                    "in_stock": v.in_stock,
                }
                for v in self.variants
            ],
        }
        raw = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class ParseOptions(BaseModel):
    """Options bag handed to a feed parser."""

    max_products: int = Field(0, ge=0, description="0 = unlimited")
    skip_images: bool = False
    max_images_per_product: int = Field(5, ge=0, description="0 = unlimited")


class MatcherName(str, Enum):
    """Closed set of matcher identities."""

    EXACT_IDENTIFIER = "gtin"
    SECONDARY_IDENTIFIER = "mpn"
    COMPOSITE = "composite"
    NEW = "new"


class MatchResult(BaseModel):
    """Immutable outcome of matching one incoming variant."""

    model_config = ConfigDict(frozen=True)

    variant_id: Optional[int] = None
    model_id: Optional[int] = None
    matcher_name: MatcherName
    confidence: float = Field(..., ge=0.0, le=1.0)
    details: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_identity(self) -> "MatchResult":
        if self.variant_id is not None and self.model_id is None:
            raise ValueError("variant_id requires model_id")
        if self.confidence == 1.0 and self.matcher_name != MatcherName.EXACT_IDENTIFIER:
            raise ValueError("confidence 1.0 is reserved for exact identifier matches")
        if self.matcher_name == MatcherName.NEW and (
            self.model_id is not None or self.confidence != 0.0
        ):
            raise ValueError("'new' results carry no ids and zero confidence")
        return self

    @property
    def is_matched(self) -> bool:
        return self.variant_id is not None

    @classmethod
    def not_found(cls, details: Optional[Dict[str, Any]] = None) -> "MatchResult":
        return cls(matcher_name=MatcherName.NEW, confidence=0.0, details=details or {})

    @classmethod
    def found(
        cls,
        *,
        variant_id: Optional[int],
        model_id: int,
        matcher_name: MatcherName,
        confidence: float,
        details: Optional[Dict[str, Any]] = None,
    ) -> "MatchResult":
        return cls(
            variant_id=variant_id,
            model_id=model_id,
            matcher_name=matcher_name,
            confidence=confidence,
            details=details or {},
        )


class SalesChannel(BaseModel):
    """External storefront or marketplace: identity plus driver configuration."""

    id: int
    name: str = Field(..., min_length=1)
    driver: str = Field(..., min_length=1)
    api_config: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    settings: Any = Field(
        default=None,
        exclude=True,
        description="Typed driver settings parsed from api_config at load time",
    )

    def get_config_value(self, key: str, default: Any = None) -> Any:
        return self.api_config.get(key, default)


class MatchStats(BaseModel):
    """Matching counters for one session."""

    total: int = 0
    matched: int = 0
    new: int = 0
    by_matcher: Dict[str, int] = Field(default_factory=dict)


class ImportSummary(BaseModel):
    """Aggregate result of importing one feed file."""

    supplier_code: str
    supplier_id: int
    total_parsed: int
    skipped: int
    errors: int
    products_emitted: int
    duplicates: int = 0
    created_count: int
    updated_count: int
    unchanged_count: int
    product_error_count: int
    outbox_created: int
    outbox_coalesced: int
    offers_count: int = Field(0, description="Variants this supplier holds an offer on")
    match_stats: MatchStats


class OutboxRecordView(BaseModel):
    """Outbox row exposed by the operator API."""

    id: int
    lane: Lane
    source_event: str
    entity_type: str
    entity_id: int
    model_id: int
    channel_id: int
    status: str
    retry_count: int
    error_log: Optional[str]
    created_at: str
    processed_at: Optional[str]


class DeadLetterView(BaseModel):
    """Dead-letter row exposed by the operator API."""

    id: int
    channel_id: int
    model_id: int
    lane: Lane
    error_code: Optional[int]
    error_message: str
    payload_dump: Optional[Dict[str, Any]]
    outbox_ids: List[int]
    created_at: str
    resolved_at: Optional[str]


class FailedOutboxResponse(BaseModel):
    """Failed outbox rows with their dead-letter entries."""

    records: List[OutboxRecordView]
    dead_letters: List[DeadLetterView]


class RetryFailedResponse(BaseModel):
    """Result of an operator retry of failed records."""

    retried: int
    resolved: int


class ChannelView(BaseModel):
    """Sales channel exposed by the operator API (no credentials)."""

    id: int
    name: str
    driver: str
    is_active: bool
