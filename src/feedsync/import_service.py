"""Feed import orchestration: parse, match, write the catalog, queue outbox records."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Union

from feedsync.config import SyncConfig
from feedsync.exceptions import ConcurrentUpdateError, DuplicateModelError
from feedsync.feeds.base import FeedParser
from feedsync.matching.engine import MatchingEngine
from feedsync.models import ImportSummary, ParseOptions, ProductRecord
from feedsync.services.catalog_writer import ACTION_CREATED, ACTION_UNCHANGED, CatalogWriter
from feedsync.services.outbox import EmitResult, OutboxService

logger = logging.getLogger(__name__)

SOURCE_IMPORT_CREATED = "import:created"
SOURCE_IMPORT_UPDATED = "import:updated"


def parse_options_from_config(config: SyncConfig, max_products: Optional[int] = None) -> ParseOptions:
    return ParseOptions(
        max_products=config.max_products if max_products is None else max_products,
        skip_images=config.skip_images,
        max_images_per_product=config.max_images_per_product,
    )


class ImportService:
    """Runs one supplier feed through the pipeline.

    Products are handled one at a time as the cursor yields them, so memory
    use is bounded by the largest product group. A failure on one product is
    logged and counted; the rest of the feed still imports.
    """

    def __init__(
        self,
        engine: MatchingEngine,
        writer: CatalogWriter,
        outbox: OutboxService,
    ) -> None:
        self.engine = engine
        self.writer = writer
        self.outbox = outbox

    def import_product(self, product: ProductRecord, supplier_id: int) -> tuple[str, EmitResult]:
        """Match and write one product; returns the writer action and queued records."""
        matches = self.engine.match_product(product)
        result = self.writer.upsert(product, matches, supplier_id)

        emitted = EmitResult()
        source_event = (
            SOURCE_IMPORT_CREATED if result.action == ACTION_CREATED else SOURCE_IMPORT_UPDATED
        )
        for model_id, lanes in sorted(result.lanes_by_model.items()):
            emitted.merge(
                self.outbox.emit(model_id=model_id, lanes=lanes, source_event=source_event)
            )
        return result.action, emitted

    def import_feed(
        self,
        path: Union[str, Path],
        parser: FeedParser,
        supplier_id: int,
        options: Optional[ParseOptions] = None,
    ) -> ImportSummary:
        self.engine.reset_stats()
        counts = {"created": 0, "updated": 0, "unchanged": 0}
        product_errors = 0
        outbox_created = 0
        outbox_coalesced = 0

        with parser.open(path, options) as cursor:
            for product in cursor:
                try:
                    action, emitted = self.import_product(product, supplier_id)
                except (ConcurrentUpdateError, DuplicateModelError, ValueError, KeyError) as e:
                    product_errors += 1
                    logger.error("Failed to import %s: %s", product.supplier_sku, e)
                    continue

                if action == ACTION_CREATED:
                    counts["created"] += 1
                elif action == ACTION_UNCHANGED:
                    counts["unchanged"] += 1
                else:
                    counts["updated"] += 1
                outbox_created += emitted.created
                outbox_coalesced += emitted.coalesced
            stats = cursor.stats

        summary = ImportSummary(
            supplier_code=parser.supplier_code,
            supplier_id=supplier_id,
            total_parsed=stats.total_parsed,
            skipped=stats.skipped,
            errors=stats.errors,
            duplicates=stats.duplicates,
            products_emitted=stats.products_emitted,
            created_count=counts["created"],
            updated_count=counts["updated"],
            unchanged_count=counts["unchanged"],
            product_error_count=product_errors,
            outbox_created=outbox_created,
            outbox_coalesced=outbox_coalesced,
            offers_count=self.writer.get_offers_count(supplier_id),
            match_stats=self.engine.stats.model_copy(deep=True),
        )
        logger.info(
            "Imported %s for supplier %d: %d created, %d updated, %d unchanged, "
            "%d error(s), %d outbox record(s) queued (%d coalesced)",
            path,
            supplier_id,
            summary.created_count,
            summary.updated_count,
            summary.unchanged_count,
            summary.product_error_count,
            summary.outbox_created,
            summary.outbox_coalesced,
        )
        return summary
