"""Parse size tokens (e.g. 160x200) out of product names and normalize names."""

import re
from dataclasses import dataclass
from typing import Optional


_DIMENSION_PATTERN = re.compile(r"(?<!\d)(\d{2,4})\s*[xхXХ×*]\s*(\d{2,4})(?!\d)")
_NORMALIZE_PATTERN = re.compile(r"[\W_]+", re.UNICODE)

MIN_DIMENSION_CM = 30
MAX_DIMENSION_CM = 400


@dataclass(frozen=True)
class DimensionParseResult:
    """Parsed width/length pair from a product name."""

    width: Optional[int]
    length: Optional[int]
    size_token: Optional[str]

    @property
    def found(self) -> bool:
        return self.width is not None and self.length is not None


_EMPTY = DimensionParseResult(width=None, length=None, size_token=None)


def parse_dimensions(text: Optional[str]) -> DimensionParseResult:
    """Parse the first plausible WxL token; values outside 30-400 cm are ignored."""
    if not text:
        return _EMPTY

    for match in _DIMENSION_PATTERN.finditer(text):
        width = int(match.group(1))
        length = int(match.group(2))
        if not (MIN_DIMENSION_CM <= width <= MAX_DIMENSION_CM):
            continue
        if not (MIN_DIMENSION_CM <= length <= MAX_DIMENSION_CM):
            continue
        return DimensionParseResult(
            width=width, length=length, size_token=f"{width}x{length}"
        )

    return _EMPTY


def strip_dimensions(text: str) -> str:
    """Remove size tokens so '160x200' and '180x200' share one model name."""
    stripped = _DIMENSION_PATTERN.sub(" ", text)
    return " ".join(stripped.split()).strip(" ,-")


def normalize_name(value: Optional[str]) -> str:
    """Lowercase, drop punctuation and collapse whitespace (Unicode aware)."""
    if not value:
        return ""
    lowered = value.lower().replace("ё", "е").strip()
    normalized = _NORMALIZE_PATTERN.sub(" ", lowered)
    return " ".join(normalized.split())


def normalize_size(value: Optional[str]) -> Optional[str]:
    """Canonical 'WxL' form of a size option, or the trimmed value if unparsable."""
    if value is None:
        return None
    parsed = parse_dimensions(value)
    if parsed.found:
        return parsed.size_token
    return value.strip() or None
