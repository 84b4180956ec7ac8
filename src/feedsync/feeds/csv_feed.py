"""Generic flat CSV price list: one row per variant, grouped by brand and model."""

from __future__ import annotations

import csv
import logging
import os
from typing import Iterator, Optional

from feedsync.dimensions import parse_dimensions, strip_dimensions
from feedsync.feeds.base import (
    OPTION_COLOR,
    OPTION_SIZE,
    FeedItem,
    FeedParser,
    PathLike,
    clean_string,
    parse_price,
)
from feedsync.models import ParseOptions, ProductRecord, VariantRecord

logger = logging.getLogger(__name__)

DEFAULT_COLUMNS = {
    "sku": "sku",
    "name": "name",
    "brand": "brand",
    "model": "model",
    "category": "category",
    "description": "description",
    "price": "price",
    "compare_price": "compare_price",
    "gtin": "gtin",
    "mpn": "mpn",
    "size": "size",
    "color": "color",
    "quantity": "quantity",
    "in_stock": "in_stock",
    "images": "images",
}
REQUIRED_COLUMNS = ("sku", "name", "price")
SNIFF_BYTES = 4096
TRUE_VALUES = {"1", "true", "yes", "y", "да", "+"}


class CsvFeedParser(FeedParser):
    """Flat CSV feed with a header row; column names are configurable."""

    supplier_code = "csv"
    supplier_name = "Generic CSV"

    def __init__(
        self,
        columns: Optional[dict[str, str]] = None,
        *,
        delimiter: Optional[str] = None,
        encoding: str = "utf-8-sig",
    ) -> None:
        merged = {**DEFAULT_COLUMNS, **(columns or {})}
        self.columns = {key: header.strip().lower() for key, header in merged.items()}
        self.delimiter = delimiter
        self.encoding = encoding

    @staticmethod
    def _sniff_dialect(sample: str) -> type[csv.Dialect]:
        try:
            return csv.Sniffer().sniff(sample, delimiters=",;\t|")
        except csv.Error:
            return csv.excel

    def _open_reader(self, fh) -> csv.DictReader:
        sample = fh.read(SNIFF_BYTES)
        fh.seek(0)
        if self.delimiter:
            return csv.DictReader(fh, delimiter=self.delimiter)
        return csv.DictReader(fh, dialect=self._sniff_dialect(sample))

    def accepts(self, path: PathLike) -> bool:
        if not os.path.isfile(path) or not str(path).lower().endswith((".csv", ".tsv", ".txt")):
            return False
        try:
            with open(path, encoding=self.encoding, newline="") as fh:
                reader = self._open_reader(fh)
                header = {h.strip().lower() for h in (reader.fieldnames or [])}
        except (OSError, UnicodeDecodeError, csv.Error):
            return False
        return all(self.columns[c] in header for c in REQUIRED_COLUMNS)

    def estimate_count(self, path: PathLike) -> Optional[int]:
        """Upper bound: number of data rows."""
        try:
            with open(path, "rb") as fh:
                lines = sum(chunk.count(b"\n") for chunk in iter(lambda: fh.read(1 << 20), b""))
        except OSError:
            return None
        return max(lines - 1, 0)

    def _get(self, row: dict[str, Optional[str]], key: str) -> Optional[str]:
        return clean_string(row.get(self.columns[key]))

    def read_items(self, path: PathLike) -> Iterator[Optional[FeedItem]]:
        with open(path, encoding=self.encoding, newline="") as fh:
            reader = self._open_reader(fh)
            if reader.fieldnames:
                reader.fieldnames = [h.strip().lower() for h in reader.fieldnames]
            try:
                for row in reader:
                    yield self._parse_row(row)
            except csv.Error as exc:
                logger.error("csv: stream broken in %s at line %d: %s", path, reader.line_num, exc)
                yield None

    def _parse_row(self, row: dict[str, Optional[str]]) -> Optional[FeedItem]:
        sku = self._get(row, "sku")
        name = self._get(row, "name")
        if not sku or not name:
            return None

        try:
            price = parse_price(self._get(row, "price"))
            compare_price = parse_price(self._get(row, "compare_price")) or None
            quantity_raw = self._get(row, "quantity")
            quantity = int(float(quantity_raw.replace(",", "."))) if quantity_raw else None
        except ValueError:
            logger.debug("csv: malformed numbers in row sku=%s", sku)
            return None

        brand = self._get(row, "brand") or ""
        model = self._get(row, "model") or strip_dimensions(name)
        size = self._get(row, "size") or parse_dimensions(name).size_token

        in_stock_raw = self._get(row, "in_stock")
        if in_stock_raw is not None:
            in_stock = in_stock_raw.lower() in TRUE_VALUES
        else:
            in_stock = quantity is None or quantity > 0

        images_raw = self._get(row, "images") or ""
        images = [u.strip() for u in images_raw.replace("|", ",").split(",") if u.strip()]

        return FeedItem(
            group_key=f"{brand}::{model}",
            price=price,
            data={
                "sku": sku,
                "name": name,
                "brand": brand,
                "model": model,
                "category": self._get(row, "category") or "",
                "description": self._get(row, "description"),
                "compare_price": compare_price,
                "gtin": self._get(row, "gtin"),
                "mpn": self._get(row, "mpn"),
                "size": size,
                "color": self._get(row, "color"),
                "quantity": max(quantity, 0) if quantity is not None else None,
                "in_stock": in_stock,
                "images": images,
            },
        )

    def build_product(
        self, items: list[FeedItem], options: ParseOptions
    ) -> Optional[ProductRecord]:
        if not items:
            return None

        first = items[0].data
        variants = []
        for item in items:
            data = item.data
            options_map: dict[str, str] = {}
            if data["size"]:
                options_map[OPTION_SIZE] = data["size"]
            if data["color"]:
                options_map[OPTION_COLOR] = data["color"]
            compare_price = data["compare_price"]
            if compare_price is not None and compare_price <= item.price:
                compare_price = None
            variants.append(
                VariantRecord(
                    sku=data["sku"],
                    gtin=data["gtin"],
                    mpn=data["mpn"],
                    price=item.price,
                    compare_price=compare_price,
                    in_stock=data["in_stock"],
                    stock_quantity=data["quantity"],
                    stock_status="available" if data["in_stock"] else "out_of_stock",
                    options=options_map,
                    image_urls=list(data["images"]),
                )
            )

        in_stock = any(v.in_stock for v in variants)
        model_name = first["model"]
        return ProductRecord(
            supplier_sku=f"{first['brand']}::{model_name}",
            name=model_name or first["name"],
            category_path=first["category"],
            manufacturer=first["brand"] or None,
            brand=first["brand"] or None,
            model=model_name,
            description=first["description"],
            in_stock=in_stock,
            stock_status="available" if in_stock else "out_of_stock",
            image_urls=self.collect_images(items, options),
            variants=variants,
            raw_data={"variant_count": len(variants)},
        )
