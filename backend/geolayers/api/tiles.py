"""XYZ raster tile and GeoJSON feature endpoints.

Tiles come from the layer's tile directory (pre-generated raster pyramids
and the WMS cache) or, for WMS layers, from the upstream server on a cache
miss. Both endpoints only serve layers whose status is ``ready``; other
layers answer 503 with their current status.

Example:
    Request a tile and the features in a viewport:
        >>> client.get("/tiles/3/10/512/340.png").headers["content-type"]
        'image/png'
        >>> client.get("/geojson/4", params={"bbox": "0,0,1000,1000"}).json()
        {'type': 'FeatureCollection', 'features': [...]}
"""

import json

import fastapi
from fastapi import responses

from geolayers.api import dependencies
from geolayers.services import features, tiles, validation

router = fastapi.APIRouter(tags=["tiles"])

TILE_CACHE_CONTROL = "public, max-age=86400"
GEOJSON_CACHE_CONTROL = "public, max-age=3600"


@router.get("/tiles/{layer_id}/{z}/{x}/{y}.png")
def get_tile(
    layer_id: int,
    z: int,
    x: int,
    y: int,
    tile_service: tiles.TileService = fastapi.Depends(  # noqa: B008
        dependencies.get_tile_service,
    ),
) -> responses.Response:
    """Serve one 256x256 PNG tile in XYZ addressing (y=0 at the north).

    Args:
        layer_id: Layer identifier.
        z: Zoom level, 0 to 22.
        x: Tile column, 0 to 2**z - 1.
        y: Tile row, 0 to 2**z - 1.
        tile_service: Tile service (injected via FastAPI Depends).

    Returns:
        PNG bytes cacheable by clients for a day.

    Raises:
        ValidationError: Coordinates out of range (400).
        NotFound: Unknown layer or tile (404).
        NotReady: Layer not ready (503).
        UpstreamFailure: WMS upstream failed (502).
    """
    data = tile_service.get_tile(layer_id, z, x, y)
    return responses.Response(
        content=data,
        media_type="image/png",
        headers={"Cache-Control": TILE_CACHE_CONTROL},
    )


@router.get("/geojson/{layer_id}")
def get_geojson(
    layer_id: int,
    bbox: str | None = None,
    feature_service: features.FeatureService = fastapi.Depends(  # noqa: B008
        dependencies.get_feature_service,
    ),
) -> responses.Response:
    """Serve a vector layer's features, optionally culled to ``bbox``.

    A ``bbox`` that is not four finite, ordered numbers is ignored and the
    whole layer is returned.
    """
    document = feature_service.get_geojson(
        layer_id,
        validation.parse_bbox(bbox),
    )
    return responses.Response(
        content=json.dumps(document),
        media_type="application/geo+json",
        headers={"Cache-Control": GEOJSON_CACHE_CONTROL},
    )
