"""FastAPI dependencies resolving the services built by ``create_app``.

Services live on ``app.state``; routers never construct store handles or
HTTP clients themselves, so tests can hand ``create_app`` in-memory
repositories and a mocked HTTP transport.
"""

from __future__ import annotations

import fastapi

from geolayers.services import features, packages, registry, tiles


def get_registry(request: fastapi.Request) -> registry.LayerRegistry:
    return request.app.state.registry


def get_tile_service(request: fastapi.Request) -> tiles.TileService:
    return request.app.state.tiles


def get_feature_service(request: fastapi.Request) -> features.FeatureService:
    return request.app.state.features


def get_package_service(
    request: fastapi.Request,
) -> packages.OfflinePackageService:
    return request.app.state.packages
