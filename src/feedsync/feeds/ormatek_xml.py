"""Streaming parser for the Ormatek XML price list (``<price-item>`` elements).

Each ``<price-item>`` is one variant (size/decor) of a model; consecutive
items sharing ``brand-name::model-name`` form one product. Files run to
gigabytes, so the document is read with ``iterparse`` and every finished item
is cleared before the next one is read.
"""

from __future__ import annotations

import logging
import os
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from typing import Callable, Iterator, Optional

from feedsync.feeds.base import (
    OPTION_DECOR,
    OPTION_DECOR_TYPE,
    OPTION_SIZE,
    FeedItem,
    FeedParser,
    PathLike,
    clean_string,
    parse_price,
)
from feedsync.models import ParseOptions, ProductRecord, VariantRecord

logger = logging.getLogger(__name__)

ITEM_TAG = "price-item"
ROOT_TAGS = ("price-items", "price-item")
SNIFF_ELEMENT_LIMIT = 50


def _text(node: ET.Element, tag: str) -> Optional[str]:
    child = node.find(tag)
    if child is None or child.text is None:
        return None
    return clean_string(child.text)


def _number(node: ET.Element, tag: str) -> float:
    value = _text(node, tag)
    return parse_price(value) if value else 0.0


def _parse_date(value: str) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class OrmatekXmlParser(FeedParser):
    """Ormatek mattress/furniture feed."""

    supplier_code = "ormatek"
    supplier_name = "Ormatek"
    first_party_image_hosts = ("ormatek.com",)

    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def accepts(self, path: PathLike) -> bool:
        if not os.path.isfile(path) or not str(path).lower().endswith(".xml"):
            return False
        seen = 0
        with open(path, "rb") as fh:
            try:
                for _, elem in ET.iterparse(fh, events=("start",)):
                    if elem.tag in ROOT_TAGS:
                        return True
                    seen += 1
                    if seen >= SNIFF_ELEMENT_LIMIT:
                        return False
            except ET.ParseError:
                return False
        return False

    def estimate_count(self, path: PathLike) -> Optional[int]:
        """About 2 KB per item and 20 items per model."""
        try:
            size = os.path.getsize(path)
        except OSError:
            return None
        return int(size / 2048 / 20)

    def read_items(self, path: PathLike) -> Iterator[Optional[FeedItem]]:
        with open(path, "rb") as fh:
            root: Optional[ET.Element] = None
            try:
                for event, elem in ET.iterparse(fh, events=("start", "end")):
                    if event == "start":
                        if root is None:
                            root = elem
                        continue
                    if elem.tag != ITEM_TAG:
                        continue
                    yield self._parse_item(elem)
                    elem.clear()
                    if root is not None and root is not elem:
                        root.clear()
            except ET.ParseError as exc:
                logger.error("ormatek: XML stream broken in %s: %s", path, exc)
                yield None

    def _parse_item(self, node: ET.Element) -> Optional[FeedItem]:
        model_name = _text(node, "model-name")
        product_code = _text(node, "product-code")
        if not model_name or not product_code:
            return None

        brand_name = _text(node, "brand-name") or ""
        try:
            base_price = _number(node, "base-retail-price")
            width = int(_number(node, "width"))
            length = int(_number(node, "length"))
            height = _number(node, "height")
            price, old_price = self._apply_promotions(node, base_price)
        except ValueError:
            logger.debug("ormatek: malformed numbers in item %s", product_code)
            return None

        images = []
        pictures = node.find("pictures")
        if pictures is not None:
            for picture in pictures.findall("picture"):
                url = clean_string(picture.text)
                if url:
                    images.append(url)

        disabled = (_text(node, "disabled") or "false").lower() == "true"

        return FeedItem(
            group_key=f"{brand_name}::{model_name}",
            price=price,
            data={
                "model_name": model_name,
                "brand_name": brand_name,
                "product_line": _text(node, "product-line") or "",
                "description": _text(node, "description"),
                "decor_name": _text(node, "decor-name"),
                "decor_type": _text(node, "decor-type"),
                "product_code": product_code,
                "product_uuid": _text(node, "product-uuid"),
                "barcode": _text(node, "barcode"),
                "size": f"{width}x{length}" if width > 0 and length > 0 else None,
                "height": height,
                "old_price": old_price,
                "disabled": disabled,
                "images": images,
            },
        )

    def _apply_promotions(self, node: ET.Element, base_price: float) -> tuple[float, Optional[float]]:
        """First active promotion wins; the base price becomes the compare-at price."""
        price = base_price
        old_price: Optional[float] = None
        now = self.clock()

        for action in node.findall("actions/action"):
            discounted = _number(action, "discounted-retail-price")
            if discounted <= 0:
                continue
            date_till = _text(action, "date-till")
            if date_till:
                expires = _parse_date(date_till)
                if expires is not None and expires < now:
                    continue
            price = discounted
            old_price = base_price
            break

        if old_price is not None and (abs(price - old_price) < 0.01 or old_price <= 0):
            old_price = None
        return price, old_price

    def build_product(
        self, items: list[FeedItem], options: ParseOptions
    ) -> Optional[ProductRecord]:
        if not items:
            return None

        first = items[0].data
        model_name = first["model_name"]
        brand_name = first["brand_name"]

        attributes: dict[str, str] = {}
        if first["height"] > 0:
            attributes["Height"] = f"{first['height']:g} cm"

        variants = []
        active_count = 0
        for item in items:
            data = item.data
            options_map: dict[str, str] = {}
            if data["size"]:
                options_map[OPTION_SIZE] = data["size"]
            if data["decor_name"]:
                options_map[OPTION_DECOR] = data["decor_name"]
            if data["decor_type"]:
                options_map[OPTION_DECOR_TYPE] = data["decor_type"]

            is_active = not data["disabled"] and item.price > 0
            if is_active:
                active_count += 1
            if is_active:
                stock_status = "available"
            elif data["disabled"]:
                stock_status = "discontinued"
            else:
                stock_status = "out_of_stock"

            variants.append(
                VariantRecord(
                    sku=data["product_code"],
                    gtin=data["barcode"],
                    price=item.price,
                    compare_price=data["old_price"],
                    in_stock=is_active,
                    stock_status=stock_status,
                    options=options_map,
                    image_urls=list(data["images"]),
                )
            )

        in_stock = active_count > 0
        supplier_sku = first["product_uuid"] or f"{brand_name}::{model_name}"

        return ProductRecord(
            supplier_sku=supplier_sku,
            name=model_name,
            category_path=first["product_line"],
            manufacturer=brand_name or self.supplier_name,
            brand=brand_name or None,
            model=model_name,
            description=first["description"],
            in_stock=in_stock,
            stock_status="available" if in_stock else "out_of_stock",
            attributes=attributes,
            image_urls=self.collect_images(items, options),
            variants=variants,
            raw_data={
                "brand": brand_name,
                "product_line": first["product_line"],
                "first_uuid": first["product_uuid"],
                "variant_count": len(variants),
                "active_variants": active_count,
            },
        )
