"""FastAPI application entrypoint and configuration.

This module provides the application factory. It wires the services on
``app.state`` (layer registry, tile, feature and offline package services),
registers the routers, sets up CORS from settings, maps domain errors to
JSON responses, and exposes a health check endpoint.

Store handles and the outbound HTTP client are passed in, or created when
the application starts, so importing this module never opens a database
connection.

Example:
    The application can be run with uvicorn:
        $ uvicorn geolayers.main:app --app-dir backend

    Or built for tests with in-memory repositories:
        >>> from geolayers.db import memory
        >>> from geolayers.main import create_app
        >>> app = create_app(repositories=memory.build_in_memory_repositories())
"""

from __future__ import annotations

import contextlib
import logging
import typing
from typing import TYPE_CHECKING

import fastapi
import httpx
from fastapi import exceptions, responses
from fastapi.middleware import cors

from geolayers.api import layers, offline, tiles
from geolayers.core import config, errors, log
from geolayers.db import database
from geolayers.services import features, packages, registry, storage
from geolayers.services import tiles as tile_services

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

logger = logging.getLogger(__name__)


def install_services(
    app: fastapi.FastAPI,
    settings: config.Settings,
    repositories: database.Repositories,
    http_client: httpx.Client,
    resolve: Callable[[str], list[str]] | None = None,
) -> None:
    """Build the request-facing services and attach them to ``app.state``."""
    layer_storage = storage.LayerStorage(settings)
    layer_registry = registry.LayerRegistry(repositories, settings)
    tile_service = tile_services.TileService(
        layer_registry,
        layer_storage,
        http_client,
        settings,
        resolve=resolve,
    )
    app.state.settings = settings
    app.state.repositories = repositories
    app.state.registry = layer_registry
    app.state.tiles = tile_service
    app.state.features = features.FeatureService(layer_registry, layer_storage)
    app.state.packages = packages.OfflinePackageService(
        repositories,
        layer_registry,
        tile_service,
        layer_storage,
        settings,
    )


def _error_response(
    _request: fastapi.Request,
    exc: Exception,
) -> responses.JSONResponse:
    error = typing.cast(errors.GeoLayersError, exc)
    if error.status_code >= 500:
        logger.error("%s: %s", type(error).__name__, error.message)
    return responses.JSONResponse(
        status_code=error.status_code,
        content=error.to_body(),
    )


def _validation_response(
    _request: fastapi.Request,
    exc: Exception,
) -> responses.JSONResponse:
    problems = [
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
        for error in typing.cast(exceptions.RequestValidationError, exc).errors()
    ]
    return responses.JSONResponse(
        status_code=400,
        content={"error": "Invalid request: " + "; ".join(problems)},
    )


def _unhandled_response(
    _request: fastapi.Request,
    exc: Exception,
) -> responses.JSONResponse:
    logger.error("Unhandled error", exc_info=exc)
    return responses.JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


def create_app(
    settings: config.Settings | None = None,
    repositories: database.Repositories | None = None,
    http_client: httpx.Client | None = None,
    resolve: Callable[[str], list[str]] | None = None,
) -> fastapi.FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Application settings, defaults to ``get_settings()``.
        repositories: Store handle. When omitted, the PostgreSQL
            repositories are created on startup.
        http_client: Client for WMS requests. When omitted, one is created
            and closed with the application.
        resolve: Hostname resolver override for SSRF checks.

    Returns:
        Configured FastAPI application instance ready for ASGI server.
    """
    settings = settings or config.get_settings()
    log.configure_logging(settings.log_level)

    def outbound_client(app: fastapi.FastAPI) -> httpx.Client:
        if http_client is not None:
            return http_client
        # Created here, closed when the application shuts down.
        app.state.owned_client = httpx.Client(follow_redirects=False)
        return app.state.owned_client

    @contextlib.asynccontextmanager
    async def lifespan(app: fastapi.FastAPI) -> AsyncIterator[None]:
        if getattr(app.state, "registry", None) is None:
            install_services(
                app,
                settings,
                database.get_repositories(settings),
                outbound_client(app),
                resolve,
            )
        try:
            yield
        finally:
            owned_client = getattr(app.state, "owned_client", None)
            if owned_client is not None:
                owned_client.close()

    app = fastapi.FastAPI(title="GeoLayers", version="0.1.0", lifespan=lifespan)

    if repositories is not None:
        install_services(
            app,
            settings,
            repositories,
            outbound_client(app),
            resolve,
        )

    app.include_router(layers.router)
    app.include_router(tiles.router)
    app.include_router(offline.router)

    app.add_middleware(
        cors.CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(errors.GeoLayersError, _error_response)
    app.add_exception_handler(
        exceptions.RequestValidationError,
        _validation_response,
    )
    app.add_exception_handler(Exception, _unhandled_response)

    @app.get("/health")
    def health() -> dict[str, str]:
        """Health check endpoint for monitoring and load balancers."""
        return {"status": "ok"}

    return app


app = create_app()
