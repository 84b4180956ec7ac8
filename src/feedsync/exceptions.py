"""Custom exceptions for configuration, channel delivery and API contract errors."""

from typing import Any, Dict, Optional


class ContractError(Exception):
    """Error that maps to a stable API error payload."""

    def __init__(
        self,
        code: str,
        message: str,
        *,
        status_code: int = 400,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}


class ConfigurationError(Exception):
    """Unregistered driver, missing capability or malformed channel settings."""


class ConcurrentUpdateError(Exception):
    """A catalog model changed between read and write."""

    def __init__(self, supplier_sku: str, expected_version: int) -> None:
        super().__init__(
            f"Catalog model for supplier_sku={supplier_sku!r} changed "
            f"(expected version {expected_version})"
        )
        self.supplier_sku = supplier_sku
        self.expected_version = expected_version


class DuplicateModelError(Exception):
    """A catalog model already exists for this supplier and supplier_sku."""

    def __init__(self, supplier_id: int, supplier_sku: str) -> None:
        super().__init__(
            f"Catalog model for supplier_id={supplier_id} "
            f"supplier_sku={supplier_sku!r} already exists"
        )
        self.supplier_id = supplier_id
        self.supplier_sku = supplier_sku


class ChannelUnavailableError(Exception):
    """Channel temporarily unavailable: timeout, connection error, 5xx or 429."""

    def __init__(
        self,
        message: str = "Channel API is temporarily unavailable",
        *,
        http_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message)
        self.http_code = http_code
        self.retry_after = retry_after


class ChannelValidationError(Exception):
    """Channel rejected the payload as invalid (4xx). Retrying cannot help."""

    def __init__(
        self,
        message: str,
        *,
        http_code: int = 422,
        channel_name: str = "",
        payload_dump: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.http_code = http_code
        self.channel_name = channel_name
        self.payload_dump = payload_dump
