"""Data models for layers, jobs and offline packages.

This module defines the records persisted by the repositories and the
closed vocabularies (layer types, statuses, job types) that drive the
ingestion state machines. All bounding boxes are (minx, miny, maxx, maxy)
in EPSG:3857 (Web Mercator) metres.

Example:
    Creating a Layer record for a GeoJSON source:
        >>> from geolayers.db.models import Layer, LayerType
        >>> layer = Layer(
        ...     id=0,
        ...     name="Parks",
        ...     type=LayerType.GEOJSON,
        ...     source_url="https://example.org/parks.json",
        ...     min_zoom=0,
        ...     max_zoom=18,
        ... )
        >>> layer.status
        <LayerStatus.PENDING: 'pending'>
"""

from __future__ import annotations

import dataclasses
import datetime
import enum
from typing import Any, NamedTuple

BBox = tuple[float, float, float, float]


class LayerType(enum.StrEnum):
    WMS = "wms"
    WFS = "wfs"
    GEOTIFF = "geotiff"
    GEOPDF = "geopdf"
    SHAPEFILE = "shapefile"
    GEOJSON = "geojson"


class LayerStatus(enum.StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    ERROR = "error"


class JobType(enum.StrEnum):
    PROCESS_LAYER = "process_layer"
    BUILD_MBTILES = "build_mbtiles"


class JobStatus(enum.StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


class PackageStatus(enum.StrEnum):
    PENDING = "pending"
    DOWNLOADING = "downloading"
    READY = "ready"
    ERROR = "error"


VECTOR_TYPES = frozenset(
    {LayerType.WFS, LayerType.SHAPEFILE, LayerType.GEOJSON},
)
RASTER_TYPES = frozenset({LayerType.GEOTIFF, LayerType.GEOPDF})


class IngestResult(NamedTuple):
    """Outcome of a successful ingestion pipeline run."""

    local_path: str | None
    bounds: BBox | None


# Allowed predecessor statuses for each target status.
LAYER_TRANSITIONS: dict[LayerStatus, frozenset[LayerStatus]] = {
    LayerStatus.PENDING: frozenset(),
    LayerStatus.PROCESSING: frozenset({LayerStatus.PENDING}),
    LayerStatus.READY: frozenset({LayerStatus.PROCESSING}),
    LayerStatus.ERROR: frozenset({LayerStatus.PROCESSING}),
}

PACKAGE_TRANSITIONS: dict[PackageStatus, frozenset[PackageStatus]] = {
    PackageStatus.PENDING: frozenset(),
    PackageStatus.DOWNLOADING: frozenset({PackageStatus.PENDING}),
    PackageStatus.READY: frozenset({PackageStatus.DOWNLOADING}),
    PackageStatus.ERROR: frozenset(
        {PackageStatus.PENDING, PackageStatus.DOWNLOADING},
    ),
}


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(tz=datetime.UTC)


@dataclasses.dataclass
class Layer:
    """A registered geospatial source and its ingestion state.

    Attributes:
        id: Numeric identifier assigned by the store (0 before insert).
        name: Human-readable layer name, also used as the WMS LAYERS value.
        type: Source kind, selects the ingestion pipeline.
        source_url: http(s) URL or absolute local path of the source.
        min_zoom: Lowest zoom level to serve, in [0, 22].
        max_zoom: Highest zoom level to serve, in [min_zoom, 22].
        status: Position in the pending -> processing -> ready/error machine.
        local_path: Primary ingestion artifact (warped raster or GeoJSON).
        bounds: Extent in EPSG:3857, None when unknown.
        created_at: Registration timestamp.
    """

    id: int
    name: str
    type: LayerType
    source_url: str
    min_zoom: int
    max_zoom: int
    status: LayerStatus = LayerStatus.PENDING
    local_path: str | None = None
    bounds: BBox | None = None
    created_at: datetime.datetime = dataclasses.field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": str(self.type),
            "source_url": self.source_url,
            "min_zoom": self.min_zoom,
            "max_zoom": self.max_zoom,
            "status": str(self.status),
            "local_path": self.local_path,
            "bounds": list(self.bounds) if self.bounds else None,
            "created_at": self.created_at.isoformat(),
        }


@dataclasses.dataclass
class Job:
    """A unit of work for the dispatcher. ``payload`` never changes."""

    id: int
    type: JobType
    payload: dict[str, Any]
    status: JobStatus = JobStatus.PENDING
    claimed_by: str | None = None
    error: str | None = None
    created_at: datetime.datetime = dataclasses.field(default_factory=_utcnow)
    updated_at: datetime.datetime = dataclasses.field(default_factory=_utcnow)


@dataclasses.dataclass
class OfflinePackage:
    """An MBTiles export request for a ready layer.

    Attributes:
        id: Numeric identifier assigned by the store (0 before insert).
        layer_id: Layer the tiles are taken from.
        min_zoom: Lowest zoom level included.
        max_zoom: Highest zoom level included.
        bbox: "minx,miny,maxx,maxy" in EPSG:3857, as submitted.
        status: pending -> downloading -> ready (or error).
        file_path: Archive location, set only once ready.
        tile_count: Number of tiles written to the archive.
        created_at: Request timestamp.
    """

    id: int
    layer_id: int
    min_zoom: int
    max_zoom: int
    bbox: str
    status: PackageStatus = PackageStatus.PENDING
    file_path: str | None = None
    tile_count: int | None = None
    created_at: datetime.datetime = dataclasses.field(default_factory=_utcnow)
