"""Matching strategies: exact identifier, manufacturer part number, composite."""

from __future__ import annotations

import logging
import re
from difflib import SequenceMatcher
from typing import Optional, Protocol

from feedsync.dimensions import normalize_name, normalize_size, parse_dimensions, strip_dimensions
from feedsync.feeds.base import OPTION_COLOR, OPTION_DECOR, OPTION_SIZE
from feedsync.models import MatcherName, MatchResult, ProductRecord, VariantRecord
from feedsync.repositories.base import CatalogModel, CatalogRepository, CatalogVariant, parse_ts

logger = logging.getLogger(__name__)

_GTIN_SEPARATORS = re.compile(r"[\s\-]")
_GTIN_DIGITS = re.compile(r"^\d{8,14}$")
GTIN_ATTRIBUTE_KEYS = ("gtin", "ean", "ean13", "barcode")
MPN_ATTRIBUTE_KEYS = ("mpn", "article", "artikul")
MIN_MPN_LENGTH = 3
VARIANT_FORMING_OPTIONS = (OPTION_SIZE, OPTION_COLOR, OPTION_DECOR)

MPN_CONFIDENCE = 0.95
MPN_ONLY_CONFIDENCE = 0.80
COMPOSITE_MAX_CONFIDENCE = 0.85


def normalize_gtin(value: Optional[str]) -> Optional[str]:
    """Digits-only GTIN of 8, 13 or 14 digits; UPC-A (12) is padded to EAN-13."""
    if value is None:
        return None
    clean = _GTIN_SEPARATORS.sub("", value.strip())
    if not _GTIN_DIGITS.match(clean):
        return None
    if len(clean) == 12:
        clean = "0" + clean
    if len(clean) not in (8, 13, 14):
        return None
    return clean


class Matcher(Protocol):
    """One link of the matcher chain; ``None`` means no opinion."""

    name: MatcherName
    priority: int

    def match(self, variant: VariantRecord, product: ProductRecord) -> Optional[MatchResult]:
        ...


class GtinMatcher:
    """Exact barcode match. The only matcher allowed to return confidence 1.0."""

    name = MatcherName.EXACT_IDENTIFIER
    priority = 10

    def __init__(self, catalog: CatalogRepository) -> None:
        self.catalog = catalog

    @staticmethod
    def extract_gtin(variant: VariantRecord, product: ProductRecord) -> Optional[str]:
        candidates = [variant.gtin] + [product.attributes.get(k) for k in GTIN_ATTRIBUTE_KEYS]
        for value in candidates:
            gtin = normalize_gtin(value)
            if gtin is not None:
                return gtin
        return None

    def match(self, variant: VariantRecord, product: ProductRecord) -> Optional[MatchResult]:
        gtin = self.extract_gtin(variant, product)
        if gtin is None:
            return None

        rows = self.catalog.find_variants_by_gtin(gtin)
        if not rows:
            return None

        hit = rows[0]
        logger.debug("gtin match gtin=%s -> variant_id=%d model_id=%d", gtin, hit.id, hit.model_id)
        return MatchResult.found(
            variant_id=hit.id,
            model_id=hit.model_id,
            matcher_name=self.name,
            confidence=1.0,
            details={"gtin": gtin},
        )


class MpnMatcher:
    """Manufacturer part number, scoped by brand when the product has one."""

    name = MatcherName.SECONDARY_IDENTIFIER
    priority = 20

    def __init__(self, catalog: CatalogRepository) -> None:
        self.catalog = catalog

    @staticmethod
    def extract_mpn(variant: VariantRecord, product: ProductRecord) -> Optional[str]:
        candidates = [variant.mpn, variant.sku] + [
            product.attributes.get(k) for k in MPN_ATTRIBUTE_KEYS
        ]
        for value in candidates:
            if value and len(value.strip()) >= MIN_MPN_LENGTH:
                return value.strip()
        return None

    def match(self, variant: VariantRecord, product: ProductRecord) -> Optional[MatchResult]:
        mpn = self.extract_mpn(variant, product)
        if mpn is None:
            return None

        rows = self.catalog.find_variants_by_mpn(mpn)
        if not rows:
            return None

        brand = normalize_name(product.brand or product.manufacturer)
        if brand:
            for row in rows:
                model = self.catalog.get_model(row.model_id)
                if model is not None and normalize_name(model.brand or model.manufacturer) == brand:
                    logger.debug("mpn match brand=%s mpn=%s -> variant_id=%d", brand, mpn, row.id)
                    return MatchResult.found(
                        variant_id=row.id,
                        model_id=row.model_id,
                        matcher_name=self.name,
                        confidence=MPN_CONFIDENCE,
                        details={"mpn": mpn, "brand": brand},
                    )
            return None

        # Without a brand the same code may belong to several manufacturers.
        if len(rows) != 1:
            return None
        row = rows[0]
        logger.debug("mpn-only match mpn=%s -> variant_id=%d", mpn, row.id)
        return MatchResult.found(
            variant_id=row.id,
            model_id=row.model_id,
            matcher_name=self.name,
            confidence=MPN_ONLY_CONFIDENCE,
            details={"mpn": mpn, "brand": None, "mpn_only": True},
        )


def extract_model_name(product: ProductRecord) -> str:
    """Model name without size tokens, so every size of a model shares it."""
    raw = product.model or product.name
    return strip_dimensions(raw) or raw


def variant_forming_options(variant: VariantRecord, product: ProductRecord) -> dict[str, str]:
    """Options that distinguish sibling variants; size falls back to the product name."""
    wanted: dict[str, str] = {}
    for key in VARIANT_FORMING_OPTIONS:
        value = variant.options.get(key)
        if value:
            wanted[key] = value
    if OPTION_SIZE not in wanted:
        parsed = parse_dimensions(f"{product.name} {product.model or ''}")
        if parsed.found:
            wanted[OPTION_SIZE] = parsed.size_token
    return wanted


def _option_value(key: str, value: Optional[str]) -> str:
    if key == OPTION_SIZE:
        return normalize_size(value) or ""
    return normalize_name(value)


def options_match(wanted: dict[str, str], existing: dict[str, str]) -> bool:
    if not wanted:
        return not any(existing.get(k) for k in VARIANT_FORMING_OPTIONS)
    return all(_option_value(k, v) == _option_value(k, existing.get(k)) for k, v in wanted.items())


def name_similarity(left: str, right: str) -> float:
    a, b = normalize_name(left), normalize_name(right)
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    return SequenceMatcher(None, a, b).ratio()


class CompositeMatcher:
    """Brand-scoped model name similarity plus variant-forming options.

    ``score = name_weight * name_similarity + (1 - name_weight) * option_match``.
    Candidates scoring below ``min_similarity`` are ignored. Equal scores are
    broken by the most recent previous match, then by the lowest model id.
    A model hit without a matching variant yields a model-only result, so the
    writer adds a new variant to the existing model.
    """

    name = MatcherName.COMPOSITE
    priority = 30

    def __init__(
        self,
        catalog: CatalogRepository,
        *,
        min_similarity: float = 0.6,
        name_weight: float = 0.7,
    ) -> None:
        self.catalog = catalog
        self.min_similarity = min_similarity
        self.name_weight = name_weight

    def _find_variant(
        self, model: CatalogModel, wanted: dict[str, str]
    ) -> Optional[CatalogVariant]:
        for candidate in self.catalog.get_variants(model.id):
            if options_match(wanted, candidate.options):
                return candidate
        return None

    @staticmethod
    def _rank_key(entry: tuple[float, CatalogModel, Optional[CatalogVariant]]) -> tuple:
        score, model, _ = entry
        recency = -parse_ts(model.last_matched_at).timestamp() if model.last_matched_at else 0.0
        return (-round(score, 6), 0 if model.last_matched_at else 1, recency, model.id)

    def match(self, variant: VariantRecord, product: ProductRecord) -> Optional[MatchResult]:
        model_name = extract_model_name(product)
        if not model_name:
            return None

        brand = product.brand or product.manufacturer
        wanted = variant_forming_options(variant, product)

        scored: list[tuple[float, CatalogModel, Optional[CatalogVariant]]] = []
        for model in self.catalog.find_models_by_brand(brand):
            similarity = name_similarity(model_name, model.model_name)
            if similarity <= 0.0:
                continue
            hit = self._find_variant(model, wanted)
            score = self.name_weight * similarity + (1 - self.name_weight) * (1.0 if hit else 0.0)
            if score < self.min_similarity:
                continue
            scored.append((score, model, hit))

        if not scored:
            return None

        scored.sort(key=self._rank_key)
        score, model, hit = scored[0]
        details = {
            "brand": brand,
            "model_name": model_name,
            "attrs": wanted,
            "score": round(score, 4),
            "candidates": len(scored),
        }
        if hit is None:
            details["variant_new"] = True

        logger.debug(
            "composite match model_id=%d variant_id=%s score=%.3f",
            model.id,
            hit.id if hit else None,
            score,
        )
        return MatchResult.found(
            variant_id=hit.id if hit else None,
            model_id=model.id,
            matcher_name=self.name,
            confidence=round(COMPOSITE_MAX_CONFIDENCE * score, 4),
            details=details,
        )
