"""Applies match decisions to the catalog and reports which lanes changed."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional, Union

from feedsync.exceptions import ConcurrentUpdateError, DuplicateModelError
from feedsync.matching.matchers import extract_model_name, normalize_gtin
from feedsync.models import (
    LANE_CONTENT,
    LANE_PRICE,
    LANE_STOCK,
    MatchResult,
    ProductRecord,
    VariantRecord,
)
from feedsync.repositories.base import (
    CatalogModel,
    CatalogRepository,
    CatalogVariant,
    ModelInput,
    VariantInput,
    format_ts,
    utcnow,
)

logger = logging.getLogger(__name__)

ACTION_CREATED = "created"
ACTION_UPDATED = "updated"
ACTION_UNCHANGED = "unchanged"


@dataclass(frozen=True)
class UpsertResult:
    """Entity ids touched by one upsert and the lanes changed per model."""

    model_id: int
    variant_ids: list[int]
    action: str
    lanes_by_model: dict[int, set[str]] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return any(self.lanes_by_model.values())


def _model_input(product: ProductRecord, supplier_id: int) -> ModelInput:
    return ModelInput(
        supplier_id=supplier_id,
        supplier_sku=product.supplier_sku,
        name=product.name,
        model_name=extract_model_name(product),
        brand=product.brand,
        manufacturer=product.manufacturer,
        category_path=product.category_path,
        description=product.description,
        attributes=dict(product.attributes),
        image_urls=list(product.image_urls),
        checksum=product.get_checksum(),
    )


def _variant_input(variant: VariantRecord, supplier_id: int) -> VariantInput:
    return VariantInput(
        supplier_id=supplier_id,
        sku=variant.sku,
        gtin=normalize_gtin(variant.gtin),
        mpn=variant.mpn or variant.sku,
        price=variant.price,
        compare_price=variant.compare_price,
        in_stock=variant.in_stock,
        stock_quantity=variant.stock_quantity,
        stock_status=variant.stock_status,
        options=dict(variant.options),
    )


def _model_content_differs(current: CatalogModel, data: ModelInput) -> bool:
    return (
        current.name != data.name
        or current.model_name != data.model_name
        or current.brand != data.brand
        or current.manufacturer != data.manufacturer
        or current.category_path != data.category_path
        or current.description != data.description
        or current.attributes != data.attributes
        or current.image_urls != data.image_urls
    )


def variant_lanes(
    current: CatalogVariant, data: Union[CatalogVariant, VariantInput]
) -> set[str]:
    """Lanes a variant change touches; one write can touch several."""
    lanes: set[str] = set()
    if current.price != data.price or current.compare_price != data.compare_price:
        lanes.add(LANE_PRICE)
    if (
        current.in_stock != data.in_stock
        or current.stock_quantity != data.stock_quantity
        or current.stock_status != data.stock_status
    ):
        lanes.add(LANE_STOCK)
    if (
        current.sku != data.sku
        or current.gtin != data.gtin
        or current.mpn != data.mpn
        or current.options != data.options
    ):
        lanes.add(LANE_CONTENT)
    return lanes


class CatalogWriter:
    """Create/update decisions for one product and its variants.

    Model rows carry a version; a concurrent writer touching the same model
    makes the update fail with :class:`ConcurrentUpdateError`, and the write is
    re-read and retried a bounded number of times.
    """

    def __init__(
        self,
        catalog: CatalogRepository,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        max_conflict_retries: int = 3,
    ) -> None:
        self.catalog = catalog
        self.clock = clock or utcnow
        self.max_conflict_retries = max(1, max_conflict_retries)

    def get_offers_count(self, supplier_id: int) -> int:
        return self.catalog.get_offers_count(supplier_id)

    @staticmethod
    def _choose_model_id(matches: list[MatchResult]) -> Optional[int]:
        best: Optional[MatchResult] = None
        for result in matches:
            if result.model_id is None:
                continue
            if best is None or result.confidence > best.confidence:
                best = result
        return best.model_id if best else None

    def upsert(
        self, product: ProductRecord, matches: list[MatchResult], supplier_id: int
    ) -> UpsertResult:
        """Apply one product; ``matches`` is aligned with ``product.effective_variants()``."""
        variants = product.effective_variants()
        if len(matches) != len(variants):
            raise ValueError(
                f"Expected {len(variants)} match results for {product.supplier_sku}, "
                f"got {len(matches)}"
            )

        model_id = self._choose_model_id(matches)
        if model_id is None:
            existing = self.catalog.find_model_by_supplier_sku(supplier_id, product.supplier_sku)
            model_id = existing.id if existing else None

        if model_id is None:
            try:
                return self._create(product, variants, supplier_id)
            except DuplicateModelError:
                existing = self.catalog.find_model_by_supplier_sku(
                    supplier_id, product.supplier_sku
                )
                if existing is None:
                    raise
                logger.info(
                    "Model for %s was created concurrently (model %d), updating instead",
                    product.supplier_sku,
                    existing.id,
                )
                model_id = existing.id

        now = format_ts(self.clock())
        for result in matches:
            if result.model_id is not None:
                self.catalog.touch_match(result.model_id, now)

        return self._update(model_id, product, variants, matches, supplier_id)

    def _create(
        self, product: ProductRecord, variants: list[VariantRecord], supplier_id: int
    ) -> UpsertResult:
        model, created = self.catalog.create_product(
            _model_input(product, supplier_id),
            [_variant_input(v, supplier_id) for v in variants],
        )
        variant_ids = [v.id for v in created]
        logger.debug(
            "Created model %d for %s with %d variant(s)",
            model.id,
            product.supplier_sku,
            len(variant_ids),
        )
        return UpsertResult(
            model_id=model.id,
            variant_ids=variant_ids,
            action=ACTION_CREATED,
            lanes_by_model={model.id: {LANE_CONTENT}},
        )

    def _update_model(
        self, model_id: int, product: ProductRecord, supplier_id: int
    ) -> bool:
        """Write model content if this supplier owns the model; True if content changed."""
        data = _model_input(product, supplier_id)
        for _attempt in range(self.max_conflict_retries):
            current = self.catalog.get_model(model_id)
            if current is None:
                raise KeyError(f"Unknown model_id: {model_id}")
            if current.supplier_id != supplier_id:
                return False

            content_changed = _model_content_differs(current, data)
            if not content_changed and current.checksum == data.checksum:
                return False
            try:
                self.catalog.update_model(model_id, data, expected_version=current.version)
                return content_changed
            except ConcurrentUpdateError:
                logger.warning(
                    "Concurrent update on model %d (%s), retrying",
                    model_id,
                    product.supplier_sku,
                )
        raise ConcurrentUpdateError(product.supplier_sku, current.version)

    def _update(
        self,
        model_id: int,
        product: ProductRecord,
        variants: list[VariantRecord],
        matches: list[MatchResult],
        supplier_id: int,
    ) -> UpsertResult:
        lanes_by_model: dict[int, set[str]] = {model_id: set()}
        if self._update_model(model_id, product, supplier_id):
            lanes_by_model[model_id].add(LANE_CONTENT)

        siblings_by_sku = {v.sku: v for v in self.catalog.get_variants(model_id) if v.sku}
        variant_ids = []
        for variant, result in zip(variants, matches):
            data = _variant_input(variant, supplier_id)
            existing_id: Optional[int] = None
            if result.variant_id is not None:
                existing_id = result.variant_id
            elif variant.sku and variant.sku in siblings_by_sku:
                existing_id = siblings_by_sku[variant.sku].id

            if existing_id is None:
                created = self.catalog.create_variant(model_id, data)
                variant_ids.append(created.id)
                lanes_by_model[model_id].add(LANE_CONTENT)
                continue

            before, after = self.catalog.record_offer(existing_id, data)
            variant_ids.append(before.id)
            changed = variant_lanes(before, after)
            if changed:
                lanes_by_model.setdefault(before.model_id, set()).update(changed)

        lanes_by_model = {mid: lanes for mid, lanes in lanes_by_model.items() if lanes}
        action = ACTION_UPDATED if lanes_by_model else ACTION_UNCHANGED
        return UpsertResult(
            model_id=model_id,
            variant_ids=variant_ids,
            action=action,
            lanes_by_model=lanes_by_model,
        )
