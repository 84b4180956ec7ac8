"""Tests for matchers and the matching engine."""

import itertools
import sqlite3
from typing import Optional

import pytest
from pydantic import ValidationError

from feedsync.matching.engine import MatchingEngine
from feedsync.matching.matchers import (
    CompositeMatcher,
    GtinMatcher,
    MpnMatcher,
    name_similarity,
    normalize_gtin,
)
from feedsync.models import MatcherName, MatchResult, ProductRecord, VariantRecord
from feedsync.repositories.base import ModelInput, VariantInput
from feedsync.repositories.memory import InMemoryCatalogRepository

_seed_numbers = itertools.count(1)


def seed_model(
    catalog: InMemoryCatalogRepository,
    name: str,
    *,
    brand: Optional[str] = "Ormatek",
    supplier_id: int = 1,
    variants: tuple[dict, ...] = ({"size": "160x200"},),
) -> int:
    model = catalog.create_model(
        ModelInput(
            supplier_id=supplier_id,
            supplier_sku=f"{brand}::{name}::{next(_seed_numbers)}",
            name=name,
            model_name=name,
            brand=brand,
            manufacturer=brand,
            category_path="Mattresses",
            description=None,
            attributes={},
            image_urls=[],
            checksum="seed",
        )
    )
    for spec in variants:
        catalog.create_variant(
            model.id,
            VariantInput(
                supplier_id=supplier_id,
                sku=spec.get("sku"),
                gtin=spec.get("gtin"),
                mpn=spec.get("mpn"),
                price=spec.get("price", 100.0),
                compare_price=None,
                in_stock=True,
                stock_quantity=None,
                stock_status="available",
                options={"Size": spec["size"]} if spec.get("size") else {},
            ),
        )
    return model.id


def incoming(
    name: str = "Flex Standart",
    *,
    brand: Optional[str] = "Ormatek",
    sku: str = "NEW-SKU-1",
    gtin: Optional[str] = None,
    mpn: Optional[str] = None,
    size: Optional[str] = "160x200",
) -> ProductRecord:
    return ProductRecord(
        supplier_sku=f"{brand}::{name}",
        name=name,
        brand=brand,
        manufacturer=brand,
        model=name,
        variants=[
            VariantRecord(
                sku=sku,
                gtin=gtin,
                mpn=mpn,
                price=100,
                options={"Size": size} if size else {},
            )
        ],
    )


@pytest.fixture
def engine(catalog) -> MatchingEngine:
    return MatchingEngine.default(catalog)


def match_one(engine: MatchingEngine, product: ProductRecord) -> MatchResult:
    return engine.match(product.variants[0], product)


def test_exact_identifier_outranks_better_composite(catalog, engine):
    composite_model = seed_model(catalog, "Flex Standart")
    barcode_model = seed_model(
        catalog, "Something Else Entirely", variants=({"size": "90x200", "gtin": "4601234567890"},)
    )

    result = match_one(engine, incoming(gtin="4601234567890"))

    assert result.matcher_name == MatcherName.EXACT_IDENTIFIER
    assert result.model_id == barcode_model
    assert result.model_id != composite_model
    assert result.confidence == 1.0


def test_gtin_normalized_before_lookup(catalog, engine):
    seed_model(catalog, "Flex", variants=({"size": "160x200", "gtin": "0012345678905"},))

    result = match_one(engine, incoming("Other", gtin="012345678905"))

    assert result.matcher_name == MatcherName.EXACT_IDENTIFIER


def test_matching_is_deterministic(catalog, engine):
    seed_model(catalog, "Flex Standart")
    seed_model(catalog, "Flex Standard")
    product = incoming()

    results = [match_one(engine, product) for _ in range(5)]

    assert all(r == results[0] for r in results)


def test_composite_tie_broken_by_lowest_id(catalog, engine):
    first = seed_model(catalog, "Flex Standart")
    seed_model(catalog, "Flex Standart")

    result = match_one(engine, incoming())

    assert result.matcher_name == MatcherName.COMPOSITE
    assert result.model_id == first
    assert result.details["candidates"] == 2


def test_composite_tie_prefers_most_recent_previous_match(catalog, engine):
    first = seed_model(catalog, "Flex Standart")
    second = seed_model(catalog, "Flex Standart")
    catalog.touch_match(first, "2026-01-01T00:00:00.000000Z")
    catalog.touch_match(second, "2026-02-01T00:00:00.000000Z")

    result = match_one(engine, incoming())

    assert result.model_id == second


def test_composite_model_only_match_when_size_is_new(catalog, engine):
    model_id = seed_model(catalog, "Flex Standart", variants=({"size": "160x200"},))

    result = match_one(engine, incoming(size="180x200"))

    assert result.matcher_name == MatcherName.COMPOSITE
    assert result.model_id == model_id
    assert result.variant_id is None
    assert result.details["variant_new"] is True
    assert result.confidence == pytest.approx(0.85 * 0.7, abs=1e-4)


def test_composite_full_match_confidence_below_exact(catalog, engine):
    seed_model(catalog, "Flex Standart")

    result = match_one(engine, incoming())

    assert result.variant_id is not None
    assert 0 < result.confidence < 1.0


def test_composite_requires_same_brand(catalog, engine):
    seed_model(catalog, "Flex Standart", brand="Askona")

    result = match_one(engine, incoming(brand="Ormatek"))

    assert result.matcher_name == MatcherName.NEW


def test_composite_below_threshold_is_new(catalog):
    seed_model(catalog, "Completely Different Name")
    matcher = CompositeMatcher(catalog, min_similarity=0.9)

    product = incoming()
    assert matcher.match(product.variants[0], product) is None


def test_mpn_scoped_by_brand(catalog, engine):
    seed_model(catalog, "A", brand="Askona", variants=({"size": "90x200", "mpn": "ABC-123"},))
    dreamline = seed_model(
        catalog, "B", brand="Dreamline", variants=({"size": "90x200", "mpn": "abc-123"},)
    )

    result = match_one(engine, incoming("Unrelated", brand="Dreamline", mpn="ABC-123"))

    assert result.matcher_name == MatcherName.SECONDARY_IDENTIFIER
    assert result.model_id == dreamline
    assert result.confidence == 0.95


def test_mpn_without_brand_requires_unique_code(catalog):
    seed_model(catalog, "A", brand="Askona", variants=({"mpn": "UNIQUE-1"}, {"mpn": "DUP-1"}))
    seed_model(catalog, "B", brand="Dreamline", variants=({"mpn": "DUP-1"},))
    matcher = MpnMatcher(catalog)

    unique = incoming("X", brand=None, mpn="UNIQUE-1", size=None)
    ambiguous = incoming("X", brand=None, mpn="DUP-1", size=None)

    result = matcher.match(unique.variants[0], unique)
    assert result is not None
    assert result.confidence == 0.80
    assert result.details["mpn_only"] is True
    assert matcher.match(ambiguous.variants[0], ambiguous) is None


def test_short_codes_are_not_used_as_mpn(catalog):
    seed_model(catalog, "A", variants=({"mpn": "AB"},))
    product = incoming(sku="AB", mpn=None)

    assert MpnMatcher(catalog).match(product.variants[0], product) is None


def test_unmatched_variant_is_new_and_counted(catalog, engine):
    seed_model(catalog, "Flex Standart")

    engine.match_product(incoming())
    result = match_one(engine, incoming("Nothing Alike At All", brand="Other"))

    assert result.matcher_name == MatcherName.NEW
    assert result.model_id is None
    assert result.confidence == 0.0
    assert engine.stats.total == 2
    assert engine.stats.matched == 1
    assert engine.stats.new == 1
    assert engine.stats.by_matcher == {"composite": 1}


def test_failing_matcher_does_not_stop_the_chain(catalog):
    class Broken:
        name = MatcherName.EXACT_IDENTIFIER
        priority = 1

        def match(self, variant, product):
            raise ValueError("unparseable size")

    seed_model(catalog, "Flex Standart")
    engine = MatchingEngine([Broken(), CompositeMatcher(catalog)])

    result = match_one(engine, incoming())

    assert result.matcher_name == MatcherName.COMPOSITE


def test_storage_error_in_matcher_propagates(catalog):
    class LockedCatalog:
        def find_variants_by_gtin(self, gtin):
            raise sqlite3.OperationalError("database is locked")

    seed_model(catalog, "Flex Standart")
    engine = MatchingEngine([GtinMatcher(LockedCatalog()), CompositeMatcher(catalog)])

    with pytest.raises(sqlite3.OperationalError):
        match_one(engine, incoming(gtin="4601234567890"))
    assert engine.stats.new == 0


def test_matchers_sorted_by_priority(catalog):
    engine = MatchingEngine([CompositeMatcher(catalog), MpnMatcher(catalog), GtinMatcher(catalog)])

    assert [m.priority for m in engine.matchers] == [10, 20, 30]


def test_normalize_gtin():
    assert normalize_gtin("460-1234 567890") == "4601234567890"
    assert normalize_gtin("012345678905") == "0012345678905"
    assert normalize_gtin("12345678") == "12345678"
    assert normalize_gtin("123456789") is None
    assert normalize_gtin("not-a-code") is None
    assert normalize_gtin(None) is None


def test_name_similarity_bounds():
    assert name_similarity("Flex Standart", "flex  standart") == 1.0
    assert name_similarity("", "Flex") == 0.0
    assert 0 < name_similarity("Flex Standart", "Flex Standard") < 1


def test_match_result_invariants():
    with pytest.raises(ValidationError):
        MatchResult(variant_id=1, model_id=None, matcher_name=MatcherName.COMPOSITE, confidence=0.5)
    with pytest.raises(ValidationError):
        MatchResult(variant_id=1, model_id=1, matcher_name=MatcherName.COMPOSITE, confidence=1.0)
    with pytest.raises(ValidationError):
        MatchResult(model_id=1, matcher_name=MatcherName.NEW, confidence=0.0)
