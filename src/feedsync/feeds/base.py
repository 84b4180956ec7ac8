"""Shared machinery for streaming supplier feed parsers.

A parser only knows how to read flat line items from its file format and how
to turn one group of items into a :class:`ProductRecord`. Grouping, limits,
image selection and counters live in :class:`FeedCursor`, which is the
forward-only handle callers pull products from.
"""

from __future__ import annotations

import logging
import os
import re
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Iterator, Optional, Union
from urllib.parse import urlsplit

from feedsync.models import ParseOptions, ProductRecord

logger = logging.getLogger(__name__)

PROGRESS_EVERY = 5000

OPTION_SIZE = "Size"
OPTION_DECOR = "Decor"
OPTION_DECOR_TYPE = "Decor type"
OPTION_COLOR = "Color"

_WHITESPACE = re.compile(r"\s+")

PathLike = Union[str, os.PathLike]


@dataclass
class FeedItem:
    """One flat line item (one variant observation) read from a feed."""

    group_key: str
    price: float
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class ParseStats:
    """Running counters for one parse pass."""

    total_parsed: int = 0
    skipped: int = 0
    errors: int = 0
    products_emitted: int = 0
    duplicates: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


def clean_string(value: Optional[str]) -> Optional[str]:
    """Trim and collapse whitespace; empty strings become None."""
    if value is None:
        return None
    cleaned = _WHITESPACE.sub(" ", value).strip()
    return cleaned or None


def parse_price(value: Optional[str]) -> float:
    """Parse a decimal price that may use a comma separator; empty means 0."""
    if value is None:
        return 0.0
    text = value.strip().replace(" ", "").replace("\xa0", "").replace(",", ".")
    if not text:
        return 0.0
    return float(text)


def image_key(url: str) -> str:
    """Basename of the URL path; query strings and hosts do not matter."""
    path = urlsplit(url).path or url
    return os.path.basename(path.rstrip("/")) or url


def select_images(
    urls: list[str],
    *,
    max_images: int,
    first_party_hosts: tuple[str, ...] = (),
) -> list[str]:
    """Deduplicate by basename, then cap, preferring first-party hosts on truncation."""
    seen: set[str] = set()
    unique: list[str] = []
    for url in urls:
        key = image_key(url)
        if key in seen:
            continue
        seen.add(key)
        unique.append(url)

    if max_images > 0 and len(unique) > max_images:
        def host_rank(url: str) -> int:
            host = (urlsplit(url).hostname or "").lower()
            return 0 if any(host == h or host.endswith("." + h) for h in first_party_hosts) else 1

        unique = sorted(unique, key=host_rank)[:max_images]

    return unique


class FeedParser(ABC):
    """Base class for one supplier feed format."""

    supplier_code: str = ""
    supplier_name: str = ""
    first_party_image_hosts: tuple[str, ...] = ()

    @abstractmethod
    def accepts(self, path: PathLike) -> bool:
        """Cheap format sniff used by the registry for auto-detection."""

    @abstractmethod
    def read_items(self, path: PathLike) -> Iterator[Optional[FeedItem]]:
        """Yield line items in file order; ``None`` marks a malformed item."""

    @abstractmethod
    def build_product(
        self, items: list[FeedItem], options: ParseOptions
    ) -> Optional[ProductRecord]:
        """Turn one group of consecutive items into a product."""

    def estimate_count(self, path: PathLike) -> Optional[int]:
        """Rough product count for progress display, or None if unknown."""
        return None

    def open(self, path: PathLike, options: Optional[ParseOptions] = None) -> "FeedCursor":
        """Open a forward-only cursor over the products in ``path``."""
        return FeedCursor(self, path, options or ParseOptions())

    def parse(
        self, path: PathLike, options: Optional[ParseOptions] = None
    ) -> Iterator[ProductRecord]:
        """Convenience iterator over :meth:`open`; the cursor is closed on exit."""
        with self.open(path, options) as cursor:
            yield from cursor

    def collect_images(self, items: list[FeedItem], options: ParseOptions) -> list[str]:
        if options.skip_images:
            return []
        urls = [url for item in items for url in item.data.get("images", [])]
        return select_images(
            urls,
            max_images=options.max_images_per_product,
            first_party_hosts=self.first_party_image_hosts,
        )


class FeedCursor:
    """Forward-only, non-restartable cursor over grouped products.

    Holds only the current group in memory. Items with a non-positive price
    are counted as skipped; malformed items are counted as errors. When the
    product limit is reached the cursor stops right after emitting the product
    that hit it.
    """

    def __init__(self, parser: FeedParser, path: PathLike, options: ParseOptions) -> None:
        self.parser = parser
        self.path = Path(path)
        self.options = options
        self.stats = ParseStats()
        self._items = parser.read_items(self.path)
        self._buffer: list[FeedItem] = []
        self._group_key: Optional[str] = None
        self._seen_groups: set[str] = set()
        self._seen_skus: set[str] = set()
        self._done = False
        logger.info("%s: parsing %s", parser.supplier_code, self.path)

    def __enter__(self) -> "FeedCursor":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def __iter__(self) -> "FeedCursor":
        return self

    def __next__(self) -> ProductRecord:
        product = self.next_record()
        if product is None:
            raise StopIteration
        return product

    @property
    def exhausted(self) -> bool:
        return self._done

    def close(self) -> None:
        """Release the underlying file; further calls return None."""
        if not self._done:
            self._done = True
            self._buffer = []
        self._items.close()

    def _limit_reached(self) -> bool:
        limit = self.options.max_products
        return limit > 0 and self.stats.products_emitted >= limit

    def next_record(self) -> Optional[ProductRecord]:
        """Return the next product, or None once the feed is exhausted."""
        while not self._done:
            try:
                item = next(self._items)
            except StopIteration:
                return self._finish()

            if item is None:
                self.stats.errors += 1
                continue

            self.stats.total_parsed += 1
            if self.stats.total_parsed % PROGRESS_EVERY == 0:
                logger.info(
                    "%s: progress items=%d products=%d errors=%d",
                    self.parser.supplier_code,
                    self.stats.total_parsed,
                    self.stats.products_emitted,
                    self.stats.errors,
                )

            if item.price <= 0:
                self.stats.skipped += 1
                continue

            if self._group_key is not None and item.group_key != self._group_key and self._buffer:
                product = self._flush()
                self._group_key = item.group_key
                self._buffer = [item]
                if product is not None:
                    if self._limit_reached():
                        logger.info(
                            "%s: product limit %d reached",
                            self.parser.supplier_code,
                            self.options.max_products,
                        )
                        self._stop()
                    return product
                continue

            self._group_key = item.group_key
            self._buffer.append(item)

        return None

    def _finish(self) -> Optional[ProductRecord]:
        product = None
        if self._buffer and not self._limit_reached():
            product = self._flush()
        self._stop()
        return product

    def _stop(self) -> None:
        self._done = True
        self._buffer = []
        self._items.close()
        logger.info(
            "%s: parse finished items=%d products=%d skipped=%d errors=%d",
            self.parser.supplier_code,
            self.stats.total_parsed,
            self.stats.products_emitted,
            self.stats.skipped,
            self.stats.errors,
        )

    def _flush(self) -> Optional[ProductRecord]:
        items, self._buffer = self._buffer, []
        group_key = self._group_key
        if group_key is not None:
            if group_key in self._seen_groups:
                self.stats.duplicates += 1
                logger.warning(
                    "%s: group %r reappears out of order; skipped",
                    self.parser.supplier_code,
                    group_key,
                )
                return None
            self._seen_groups.add(group_key)

        try:
            product = self.parser.build_product(items, self.options)
        except ValueError as exc:
            self.stats.errors += 1
            logger.warning(
                "%s: could not build product for group %r: %s",
                self.parser.supplier_code,
                self._group_key,
                exc,
            )
            return None

        if product is None:
            return None

        if product.supplier_sku in self._seen_skus:
            self.stats.duplicates += 1
            logger.warning(
                "%s: group %r repeats supplier_sku %s out of order; skipped",
                self.parser.supplier_code,
                self._group_key,
                product.supplier_sku,
            )
            return None

        self._seen_skus.add(product.supplier_sku)
        self.stats.products_emitted += 1
        return product
