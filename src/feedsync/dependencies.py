"""Shared resource container used by the CLI and the FastAPI app."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, cast

from fastapi import Depends, HTTPException, Request, status

from feedsync.channels.registry import (
    ChannelDriverRegistry,
    ChannelSet,
    default_registry,
    load_channels,
)
from feedsync.config import SyncConfig
from feedsync.import_service import ImportService
from feedsync.matching.engine import MatchingEngine
from feedsync.repositories.base import CatalogRepository, OutboxRepository
from feedsync.repositories.sqlite import (
    SqliteCatalogRepository,
    SqliteDatabase,
    SqliteOutboxRepository,
)
from feedsync.services.catalog_writer import CatalogWriter
from feedsync.services.outbox import OutboxService
from feedsync.services.syndication_worker import SyndicationWorker


@dataclass
class AppResources:
    """Process-scoped resources built once from config."""

    config: SyncConfig
    catalog: CatalogRepository
    outbox_repository: OutboxRepository
    registry: ChannelDriverRegistry
    channels: ChannelSet
    outbox: OutboxService
    db: Optional[SqliteDatabase] = None

    def import_service(self) -> ImportService:
        return ImportService(
            engine=MatchingEngine.default(self.catalog, self.config),
            writer=CatalogWriter(self.catalog),
            outbox=self.outbox,
        )

    def worker(self, worker_id: Optional[str] = None) -> SyndicationWorker:
        return SyndicationWorker(
            self.outbox_repository,
            self.channels,
            self.registry,
            self.config,
            worker_id=worker_id,
        )

    def close(self) -> None:
        for driver in self.registry.drivers():
            transport = self.registry.transport_for(driver)
            close = getattr(transport, "close", None)
            if callable(close):
                close()
        if self.db is not None:
            self.db.close()


def build_resources(
    config: SyncConfig,
    *,
    catalog: Optional[CatalogRepository] = None,
    outbox_repository: Optional[OutboxRepository] = None,
    registry: Optional[ChannelDriverRegistry] = None,
) -> AppResources:
    """Wire repositories, drivers and channels.

    Repositories default to SQLite at ``config.db_path``. Channel settings are
    validated against their drivers here, so a bad channels file fails before
    any work starts.
    """
    db = None
    if catalog is None or outbox_repository is None:
        db = SqliteDatabase(config.db_path)
        catalog = catalog or SqliteCatalogRepository(db)
        outbox_repository = outbox_repository or SqliteOutboxRepository(db)

    registry = registry or default_registry(catalog, config)
    channels = load_channels(config.channels_file, registry)
    return AppResources(
        config=config,
        catalog=catalog,
        outbox_repository=outbox_repository,
        registry=registry,
        channels=channels,
        outbox=OutboxService(outbox_repository, channels),
        db=db,
    )


def get_app_resources(request: Request) -> AppResources:
    """Return initialized app resources from state."""
    resources = getattr(request.app.state, "feedsync_resources", None)
    if resources is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Application resources are not initialized",
        )
    return cast(AppResources, resources)


def get_app_config(resources: AppResources = Depends(get_app_resources)) -> SyncConfig:
    """Get app-scoped config instance."""
    return resources.config


def get_outbox_service(resources: AppResources = Depends(get_app_resources)) -> OutboxService:
    return resources.outbox
