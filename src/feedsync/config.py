"""Configuration management for the feed sync pipeline."""

import logging
from pathlib import Path
from typing import Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from feedsync.models import LANES as KNOWN_LANES

logger = logging.getLogger(__name__)


class SyncConfig(BaseSettings):
    """Configuration for ingestion, matching and syndication."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    db_path: str = Field(
        default="feedsync.db",
        description="SQLite database holding catalog, outbox and dead letters",
    )

    channels_file: Optional[Path] = Field(
        default=None,
        description="JSON file listing sales channels (id, name, driver, api_config, is_active)",
    )

    max_products: int = Field(
        default=0,
        ge=0,
        description="Stop parsing after this many products (0 = unlimited)",
    )

    skip_images: bool = Field(default=False, description="Do not collect image URLs")

    max_images_per_product: int = Field(
        default=5,
        ge=0,
        le=100,
        description="Image cap per product (0 = unlimited)",
    )

    composite_min_similarity: float = Field(
        default=0.6,
        ge=0.0,
        le=1.0,
        description="Minimum composite score for a heuristic match",
    )

    composite_name_weight: float = Field(
        default=0.7,
        ge=0.0,
        le=1.0,
        description="Share of the composite score taken by model-name similarity",
    )

    batch_size: int = Field(
        default=100,
        ge=1,
        le=10000,
        description="Outbox records claimed per lane batch",
    )

    backoff_base_sec: float = Field(
        default=5.0,
        gt=0,
        description="Base delay for exponential backoff",
    )

    backoff_max_sec: float = Field(
        default=300.0,
        gt=0,
        description="Backoff delay cap",
    )

    max_attempts: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Delivery attempts before a record is forced to failed",
    )

    stale_processing_sec: float = Field(
        default=600.0,
        ge=1,
        description="Claims older than this are treated as crashed and reclaimed",
    )

    poll_interval_sec: float = Field(
        default=10.0,
        gt=0,
        le=3600,
        description="Worker sleep between drain cycles",
    )

    lanes: str = Field(
        default=",".join(KNOWN_LANES),
        description="Comma-separated lanes the worker drains",
    )

    connect_timeout_sec: float = Field(
        default=10.0,
        gt=0,
        le=120,
        description="Channel HTTP connect timeout",
    )

    request_timeout_sec: float = Field(
        default=30.0,
        gt=0,
        le=600,
        description="Channel HTTP total request timeout",
    )

    api_host: str = Field(default="0.0.0.0", description="API host address")

    api_port: int = Field(default=8000, description="API port")

    api_keys: str = Field(
        default="",
        description="Comma-separated API keys for authentication",
    )

    dev_bypass_api_key: bool = Field(
        default=False,
        description="Bypass API key verification for local development only",
    )

    allowed_origins: str = Field(
        default="http://localhost:5173",
        description="Comma-separated CORS origins for the operator API",
    )

    @field_validator("lanes")
    @classmethod
    def validate_lanes_format(cls, v: str) -> str:
        """Validate lane names against the known lane set."""
        lanes = [lane.strip() for lane in v.split(",") if lane.strip()]
        if not lanes:
            raise ValueError("LANES cannot be empty")

        unknown = set(lanes) - set(KNOWN_LANES)
        if unknown:
            raise ValueError(
                f"Unknown lanes: {', '.join(sorted(unknown))}. "
                f"Valid: {', '.join(KNOWN_LANES)}"
            )
        return v

    def get_lanes(self) -> list[str]:
        """Parse configured lanes, preserving the canonical lane order."""
        wanted = {lane.strip() for lane in self.lanes.split(",") if lane.strip()}
        return [lane for lane in KNOWN_LANES if lane in wanted]

    def get_api_keys(self) -> set[str]:
        """Parse API keys from comma-separated string."""
        return {k.strip() for k in self.api_keys.split(",") if k.strip()}

    def get_allowed_origins(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]

    def validate_config(self) -> None:
        """Validate configuration at startup. Raises ValueError if invalid."""
        errors = []

        if self.backoff_base_sec > self.backoff_max_sec:
            errors.append("BACKOFF_BASE_SEC must not exceed BACKOFF_MAX_SEC")

        if self.connect_timeout_sec > self.request_timeout_sec:
            errors.append("CONNECT_TIMEOUT_SEC must not exceed REQUEST_TIMEOUT_SEC")

        if not self.get_lanes():
            errors.append("LANES must name at least one lane")

        if self.channels_file is not None and not self.channels_file.exists():
            errors.append(f"CHANNELS_FILE does not exist: {self.channels_file}")

        if not self.db_path:
            errors.append("DB_PATH cannot be empty")

        if errors:
            raise ValueError(
                "Configuration validation failed:\n"
                + "\n".join(f"  - {e}" for e in errors)
            )


_config_instance = None


def get_config() -> SyncConfig:
    """Get or create global configuration instance."""
    global _config_instance
    if _config_instance is None:
        _config_instance = SyncConfig()
        _config_instance.validate_config()
        logger.info("Configuration validated successfully")
    return _config_instance


def get_config_unvalidated() -> SyncConfig:
    """Get or create global configuration instance without validation."""
    global _config_instance
    if _config_instance is None:
        _config_instance = SyncConfig()
    return _config_instance


def reload_config() -> SyncConfig:
    """Reload configuration (useful for testing)."""
    global _config_instance
    _config_instance = SyncConfig()
    return _config_instance
