"""Supplier code to feed parser lookup, with format auto-detection."""

import logging
from typing import Optional

from feedsync.exceptions import ConfigurationError
from feedsync.feeds.base import FeedParser, PathLike
from feedsync.feeds.csv_feed import CsvFeedParser
from feedsync.feeds.ormatek_xml import OrmatekXmlParser

logger = logging.getLogger(__name__)


class ParserRegistry:
    """Holds one parser instance per supplier code."""

    def __init__(self) -> None:
        self._parsers: dict[str, FeedParser] = {}

    def register(self, parser: FeedParser) -> None:
        if not parser.supplier_code:
            raise ConfigurationError(f"{type(parser).__name__} has no supplier_code")
        self._parsers[parser.supplier_code] = parser

    def codes(self) -> list[str]:
        return sorted(self._parsers)

    def get(self, supplier_code: str) -> FeedParser:
        try:
            return self._parsers[supplier_code]
        except KeyError:
            raise ConfigurationError(
                f"No parser registered for supplier '{supplier_code}'. "
                f"Known: {', '.join(self.codes()) or 'none'}"
            ) from None

    def detect(self, path: PathLike) -> Optional[FeedParser]:
        """First registered parser whose sniff accepts the file."""
        for code, parser in self._parsers.items():
            if parser.accepts(path):
                logger.debug("Detected feed format %s for %s", code, path)
                return parser
        return None


def default_registry() -> ParserRegistry:
    registry = ParserRegistry()
    registry.register(OrmatekXmlParser())
    registry.register(CsvFeedParser())
    return registry
