"""Ordered matcher chain with per-session statistics."""

import logging
from typing import Optional, Sequence

from feedsync.config import SyncConfig
from feedsync.matching.matchers import CompositeMatcher, GtinMatcher, Matcher, MpnMatcher
from feedsync.models import MatchResult, MatchStats, ProductRecord, VariantRecord
from feedsync.repositories.base import CatalogRepository

logger = logging.getLogger(__name__)

# Errors from bad supplier data; storage errors propagate.
MATCHER_DATA_ERRORS = (ValueError, TypeError, ArithmeticError)


class MatchingEngine:
    """Runs matchers from cheapest and most precise to most expensive.

    The first matcher with an opinion wins; if none has one the variant is new.
    """

    def __init__(self, matchers: Sequence[Matcher]) -> None:
        self.matchers = sorted(matchers, key=lambda m: m.priority)
        self.stats = MatchStats()

    @classmethod
    def default(
        cls, catalog: CatalogRepository, config: Optional[SyncConfig] = None
    ) -> "MatchingEngine":
        min_similarity = config.composite_min_similarity if config else 0.6
        name_weight = config.composite_name_weight if config else 0.7
        return cls(
            [
                GtinMatcher(catalog),
                MpnMatcher(catalog),
                CompositeMatcher(
                    catalog, min_similarity=min_similarity, name_weight=name_weight
                ),
            ]
        )

    def reset_stats(self) -> None:
        self.stats = MatchStats()

    def match(self, variant: VariantRecord, product: ProductRecord) -> MatchResult:
        """Match one variant in the context of its parent product."""
        self.stats.total += 1

        for matcher in self.matchers:
            try:
                result = matcher.match(variant, product)
            except MATCHER_DATA_ERRORS as e:
                logger.warning(
                    "Matcher %s failed for %s/%s: %s",
                    matcher.name.value,
                    product.supplier_sku,
                    variant.sku,
                    e,
                    exc_info=True,
                )
                continue

            if result is not None:
                name = result.matcher_name.value
                self.stats.matched += 1
                self.stats.by_matcher[name] = self.stats.by_matcher.get(name, 0) + 1
                logger.debug(
                    "Matched %s/%s via %s (confidence=%.2f)",
                    product.supplier_sku,
                    variant.sku,
                    name,
                    result.confidence,
                )
                return result

        self.stats.new += 1
        return MatchResult.not_found(
            details={"supplier_sku": product.supplier_sku, "sku": variant.sku}
        )

    def match_product(self, product: ProductRecord) -> list[MatchResult]:
        """One result per effective variant, in variant order."""
        return [self.match(variant, product) for variant in product.effective_variants()]
