"""FastAPI operator API: queue stats, failed records, retries and channel health."""

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from feedsync.auth import verify_api_key
from feedsync.config import get_config
from feedsync.dependencies import (
    AppResources,
    build_resources,
    get_app_resources,
    get_outbox_service,
)
from feedsync.exceptions import ConfigurationError, ContractError
from feedsync.models import (
    ChannelView,
    DeadLetterView,
    FailedOutboxResponse,
    OutboxRecordView,
    RetryFailedResponse,
)
from feedsync.services.outbox import OutboxService

logger = logging.getLogger(__name__)

API_VERSION = "0.1.0"


def create_app(resources: Optional[AppResources] = None) -> FastAPI:
    """Build the app; without ``resources`` they are built from config at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = None
        if getattr(app.state, "feedsync_resources", None) is None:
            config = get_config()
            config.validate_config()
            owned = build_resources(config)
            app.state.feedsync_resources = owned
        try:
            yield
        finally:
            if owned is not None:
                owned.close()

    app = FastAPI(
        title="Feed Sync Operator API",
        description="Inspect and maintain the syndication outbox",
        version=API_VERSION,
        lifespan=lifespan,
    )
    if resources is not None:
        app.state.feedsync_resources = resources

    origins = (resources.config if resources else get_config()).get_allowed_origins()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.exception_handler(ContractError)
    async def contract_error_handler(request: Request, exc: ContractError) -> JSONResponse:
        """Map domain contract errors to stable API error payload."""
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": {
                    "code": exc.code,
                    "message": exc.message,
                    "details": exc.details,
                }
            },
        )

    @app.get("/health")
    async def health_check() -> Dict[str, Any]:
        """Health check endpoint for container orchestration."""
        return {
            "status": "healthy",
            "service": "feedsync",
            "version": API_VERSION,
        }

    @app.get("/outbox/stats")
    async def outbox_stats(
        user: dict[str, Any] = Depends(verify_api_key),
        outbox: OutboxService = Depends(get_outbox_service),
    ) -> Dict[str, Any]:
        _ = user
        stats = await run_in_threadpool(outbox.get_queue_stats)
        by_channel = await run_in_threadpool(outbox.get_stats_by_channel)
        return {"by_status": stats, "by_channel": by_channel}

    @app.get("/outbox/failed", response_model=FailedOutboxResponse)
    async def outbox_failed(
        limit: int = Query(100, ge=1, le=1000),
        channel_id: Optional[int] = Query(None),
        user: dict[str, Any] = Depends(verify_api_key),
        outbox: OutboxService = Depends(get_outbox_service),
    ) -> FailedOutboxResponse:
        """Failed records with their last error, plus unresolved dead letters."""
        _ = user
        records = await run_in_threadpool(outbox.list_failed, limit, channel_id)
        dead_letters = await run_in_threadpool(outbox.list_dead_letters, channel_id, limit)
        return FailedOutboxResponse(
            records=[OutboxRecordView.model_validate(asdict(r)) for r in records],
            dead_letters=[DeadLetterView.model_validate(asdict(d)) for d in dead_letters],
        )

    @app.post(
        "/outbox/retry-failed",
        response_model=RetryFailedResponse,
        status_code=status.HTTP_200_OK,
    )
    async def outbox_retry_failed(
        channel_id: Optional[int] = Query(None),
        user: dict[str, Any] = Depends(verify_api_key),
        outbox: OutboxService = Depends(get_outbox_service),
    ) -> RetryFailedResponse:
        _ = user
        result = await run_in_threadpool(outbox.retry_failed, channel_id)
        return RetryFailedResponse(
            retried=len(result.retried_ids),
            resolved=result.resolved_dead_letters,
        )

    @app.get("/channels", response_model=List[ChannelView])
    async def list_channels(
        user: dict[str, Any] = Depends(verify_api_key),
        resources: AppResources = Depends(get_app_resources),
    ) -> List[ChannelView]:
        _ = user
        return [
            ChannelView(id=c.id, name=c.name, driver=c.driver, is_active=c.is_active)
            for c in resources.channels.all()
        ]

    @app.get("/channels/{channel_id}/health")
    async def channel_health(
        channel_id: int,
        user: dict[str, Any] = Depends(verify_api_key),
        resources: AppResources = Depends(get_app_resources),
    ) -> Dict[str, Any]:
        _ = user
        channel = resources.channels.get(channel_id)
        if channel is None:
            raise ContractError(
                "CHANNEL_NOT_FOUND",
                f"Channel {channel_id} does not exist",
                status_code=status.HTTP_404_NOT_FOUND,
            )
        try:
            transport = resources.registry.get_api_client(channel)
        except ConfigurationError as e:
            raise ContractError(
                "CHANNEL_MISCONFIGURED",
                str(e),
                status_code=status.HTTP_409_CONFLICT,
            ) from e

        healthy = await run_in_threadpool(transport.health_check, channel)
        if not healthy:
            logger.warning("Channel %s (%d) failed health check", channel.name, channel.id)
        return {"channel_id": channel.id, "name": channel.name, "healthy": healthy}

    return app


app = create_app()


def main() -> None:
    """Run API server."""
    import uvicorn

    config = get_config()
    uvicorn.run(
        "feedsync.api:app",
        host=config.api_host,
        port=config.api_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
