"""Offline package endpoints.

Flow for a client:

1. ``POST /api/offline-package`` with ``layerId``, ``minZoom``, ``maxZoom``
   and ``bbox`` (EPSG:3857) answers 202 with the new package id;
2. ``GET /api/offline-package/{id}`` until the status is ``ready`` (or
   ``error``);
3. ``GET /api/offline-package/{id}/download`` for the MBTiles file. Before
   the package is ready this returns the status document instead.

``geolayers.client.PackagePoller`` implements this flow.
"""

from typing import Any

import fastapi
from fastapi import responses

from geolayers.api import dependencies, schemas
from geolayers.services import packages

router = fastapi.APIRouter(prefix="/api/offline-package", tags=["offline"])

MBTILES_MEDIA_TYPE = "application/x-sqlite3"


@router.post("", status_code=202)
def create_package(
    body: schemas.OfflinePackageCreate,
    service: packages.OfflinePackageService = fastapi.Depends(  # noqa: B008
        dependencies.get_package_service,
    ),
) -> dict[str, Any]:
    """Queue an MBTiles build for a ready layer.

    Raises:
        NotFound: Unknown layer (404).
        NotReady: Layer not ready (503).
        ValidationError: Invalid zoom range or bbox, or too many tiles (400).
    """
    package = service.create_package(
        body.layer_id,
        body.min_zoom,
        body.max_zoom,
        body.bbox,
    )
    return {"packageId": package.id, "status": str(package.status)}


@router.get("/{package_id}")
def get_package_status(
    package_id: int,
    service: packages.OfflinePackageService = fastapi.Depends(  # noqa: B008
        dependencies.get_package_service,
    ),
) -> dict[str, Any]:
    return service.get_package_status(package_id)


@router.get("/{package_id}/download", response_model=None)
def download_package(
    package_id: int,
    service: packages.OfflinePackageService = fastapi.Depends(  # noqa: B008
        dependencies.get_package_service,
    ),
) -> responses.FileResponse | dict[str, Any]:
    """Send the MBTiles archive, or the status document if not ready."""
    result = service.resolve_download(package_id)
    if not isinstance(result, packages.PackageDownload):
        return result

    return responses.FileResponse(
        result.path,
        media_type=MBTILES_MEDIA_TYPE,
        filename=result.filename,
        headers={"Cache-Control": "private, no-cache"},
    )
