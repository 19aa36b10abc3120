"""GeoJSON feature serving with an approximate bbox pre-filter.

A feature is kept when at least one coordinate pair anywhere in its
geometry falls inside the bbox (edges inclusive). Geometries are never
clipped; they are included or excluded whole. This is cheap and good
enough for viewport culling on the client.

Coordinate extraction follows the GeoJSON nesting depth of each geometry
type exactly:

========================  ==========================================
Point                     [x, y]
LineString, MultiPoint    [[x, y], ...]
Polygon, MultiLineString  [[[x, y], ...], ...]
MultiPolygon              [[[[x, y], ...], ...], ...]
GeometryCollection        {"geometries": [...]} (recursive)
========================  ==========================================
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from geolayers.core import errors
from geolayers.db import models as db_models

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Iterator

    from geolayers.services import registry, storage

logger = logging.getLogger(__name__)

Coordinate = tuple[float, float]


def _pair(position: Any) -> Coordinate:
    return (float(position[0]), float(position[1]))


def extract_coordinates(geometry: dict[str, Any] | None) -> Iterator[Coordinate]:
    """Yield every (x, y) pair of a GeoJSON geometry.

    Unknown types, null geometries and empty coordinate arrays yield nothing.
    """
    if not geometry:
        return

    geom_type = geometry.get("type")
    coords = geometry.get("coordinates") or []

    if geom_type == "Point":
        if len(coords) >= 2:
            yield _pair(coords)
    elif geom_type in ("LineString", "MultiPoint"):
        for position in coords:
            yield _pair(position)
    elif geom_type in ("Polygon", "MultiLineString"):
        for ring in coords:
            for position in ring:
                yield _pair(position)
    elif geom_type == "MultiPolygon":
        for polygon in coords:
            for ring in polygon:
                for position in ring:
                    yield _pair(position)
    elif geom_type == "GeometryCollection":
        for member in geometry.get("geometries") or []:
            yield from extract_coordinates(member)


def point_in_bbox(point: Coordinate, bbox: db_models.BBox) -> bool:
    minx, miny, maxx, maxy = bbox
    x, y = point
    return minx <= x <= maxx and miny <= y <= maxy


def feature_in_bbox(feature: dict[str, Any], bbox: db_models.BBox) -> bool:
    return any(
        point_in_bbox(point, bbox)
        for point in extract_coordinates(feature.get("geometry"))
    )


def filter_to_bbox(
    document: dict[str, Any],
    bbox: db_models.BBox,
) -> dict[str, Any]:
    """Return a copy of a FeatureCollection with only features in ``bbox``.

    Documents that are not FeatureCollections are returned unchanged.
    """
    if document.get("type") != "FeatureCollection":
        return document

    filtered = dict(document)
    filtered["features"] = [
        feature
        for feature in document.get("features") or []
        if feature_in_bbox(feature, bbox)
    ]
    return filtered


def compute_bounds(document: dict[str, Any]) -> db_models.BBox | None:
    """Extent of all coordinates in a GeoJSON document, None if empty."""
    if document.get("type") == "FeatureCollection":
        geometries = [f.get("geometry") for f in document.get("features") or []]
    elif document.get("type") == "Feature":
        geometries = [document.get("geometry")]
    else:
        geometries = [document]

    xs: list[float] = []
    ys: list[float] = []
    for geometry in geometries:
        for x, y in extract_coordinates(geometry):
            xs.append(x)
            ys.append(y)
    if not xs:
        return None
    return (min(xs), min(ys), max(xs), max(ys))


def load_geojson(path: pathlib.Path) -> dict[str, Any]:
    """Read a stored GeoJSON document.

    Raises:
        NotFound: If the file does not exist.
        InternalError: If it cannot be read or is not a JSON object.
    """
    if not path.is_file():
        raise errors.NotFound("GeoJSON not found for layer")
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise errors.InternalError(f"Failed to read {path}: {exc}") from exc
    if not isinstance(document, dict):
        raise errors.InternalError(f"Invalid GeoJSON stored at {path}")
    return document


class FeatureService:
    """Serves the normalized GeoJSON of ready vector layers."""

    def __init__(
        self,
        layer_registry: registry.LayerRegistry,
        layer_storage: storage.LayerStorage,
    ) -> None:
        self.registry = layer_registry
        self.storage = layer_storage

    def get_geojson(
        self,
        layer_id: int,
        bbox: db_models.BBox | None = None,
    ) -> dict[str, Any]:
        """Return the layer's features, optionally filtered to ``bbox``.

        Raises:
            NotFound: Unknown layer or no GeoJSON output for it.
            NotReady: Layer status is not ready.
            InternalError: Stored output is unreadable.
        """
        layer = self.registry.get_ready_layer(layer_id)
        document = load_geojson(self.storage.geojson_path(layer.id))
        if bbox is None:
            return document
        return filter_to_bbox(document, bbox)
