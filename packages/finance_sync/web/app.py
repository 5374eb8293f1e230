"""FastAPI application factory.

Run with ``finance-sync serve`` or ``uvicorn --factory finance_sync.web.app:create_app``.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from ..errors import SourceError
from ..logging_setup import get_logger
from ..orchestrator import SessionRegistry, SyncOrchestrator
from ..settings import SyncSettings
from ..sources import RawTransactionSource, SourceFactory, replay_source_factory
from .errors import register_error_handlers
from .routes import router

_logger = get_logger("finance_sync.web")


def _unconfigured_source(vendor: str) -> RawTransactionSource:
    raise SourceError(
        f"No transaction source is configured for {vendor}",
        hint="Set FS_REPLAY_DIR to a directory of captures or start the app with a source factory.",
        retryable=False,
    )


def default_source_factory(settings: SyncSettings) -> SourceFactory:
    if settings.replay_dir is not None:
        return replay_source_factory(settings.replay_dir)
    return _unconfigured_source


def create_app(
    settings: SyncSettings | None = None,
    *,
    source_factory: SourceFactory | None = None,
    registry: SessionRegistry | None = None,
) -> FastAPI:
    settings = settings or SyncSettings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        _logger.info("app:starting replay_dir=%s", settings.replay_dir)
        yield
        running = app.state.orchestrator.registry.active()
        if running:
            _logger.warning("app:stopping running_sessions=%d", len(running))
        _logger.info("app:stopped")

    app = FastAPI(
        title="finance-sync",
        description="Transaction sync, categorization and payment-pattern queries.",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.source_factory = source_factory or default_source_factory(settings)
    app.state.orchestrator = SyncOrchestrator(settings=settings, registry=registry)

    register_error_handlers(app)
    app.include_router(router)
    return app


__all__ = ["create_app", "default_source_factory"]
