"""Offline package workflow: request, MBTiles build, status and download.

A package request is validated against the layer (it must exist and be
ready), then stored as ``pending`` together with a ``build_mbtiles`` job.
The dispatcher later calls ``build_package``, which walks every XYZ tile of
the bbox for each zoom level, obtains the tile the same way the tile
endpoint would (cache hit, or a WMS fetch that also warms the cache), and
writes the result to an MBTiles file.

MBTiles stores rows bottom-up (TMS), so ``tile_row = 2**z - 1 - y``.
The archive is assembled in a temporary file and renamed into place, so a
``ready`` package always points at a complete file.

Example:
    >>> service = OfflinePackageService(repositories, layer_registry,
    ...                                 tile_service, layer_storage, settings)
    >>> package = service.create_package(3, 8, 12, "1000,2000,3000,4000")
    >>> service.get_package_status(package.id)
    {'packageId': 1, 'status': 'pending'}
"""

from __future__ import annotations

import contextlib
import logging
import math
import os
import pathlib
import sqlite3
import tempfile
from typing import TYPE_CHECKING, Any, NamedTuple

from geolayers.core import errors
from geolayers.db import models as db_models
from geolayers.services import storage, tiles, validation

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

    from geolayers.core import config
    from geolayers.db import database
    from geolayers.services import registry

logger = logging.getLogger(__name__)

MBTILES_SCHEMA = (
    "CREATE TABLE metadata (name TEXT PRIMARY KEY, value TEXT)",
    """
    CREATE TABLE tiles (
        zoom_level INTEGER,
        tile_column INTEGER,
        tile_row INTEGER,
        tile_data BLOB,
        PRIMARY KEY (zoom_level, tile_column, tile_row)
    )
    """,
)


class PackageDownload(NamedTuple):
    path: pathlib.Path
    filename: str
    size: int


def mercator_to_lonlat(x: float, y: float) -> tuple[float, float]:
    lon = x / tiles.ORIGIN_SHIFT * 180.0
    lat = math.degrees(
        2 * math.atan(math.exp(y / tiles.ORIGIN_SHIFT * math.pi)) - math.pi / 2,
    )
    return lon, lat


def mbtiles_metadata(
    layer: db_models.Layer,
    package: db_models.OfflinePackage,
    bbox: db_models.BBox,
) -> dict[str, str]:
    """MBTiles 1.3 metadata rows. ``bounds`` is in WGS84 as the format needs."""
    west, south = mercator_to_lonlat(bbox[0], bbox[1])
    east, north = mercator_to_lonlat(bbox[2], bbox[3])
    return {
        "name": layer.name,
        "type": "baselayer",
        "version": "1.0",
        "description": f"Offline package {package.id} of layer {layer.id}",
        "format": "png",
        "bounds": f"{west},{south},{east},{north}",
        "center": f"{(west + east) / 2},{(south + north) / 2},{package.min_zoom}",
        "minzoom": str(package.min_zoom),
        "maxzoom": str(package.max_zoom),
    }


def write_mbtiles(
    dest: pathlib.Path,
    metadata: dict[str, str],
    tile_source: Iterable[tuple[int, int, int, bytes]],
) -> int:
    """Write tiles from ``tile_source`` into a new MBTiles file at ``dest``.

    Args:
        dest: Final archive path; replaced atomically when complete.
        metadata: Rows for the metadata table.
        tile_source: Iterable of ``(z, x, y, png_bytes)`` in XYZ addressing.

    Returns:
        Number of tiles written.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=dest.parent, suffix=".part")
    os.close(fd)
    count = 0
    try:
        conn = sqlite3.connect(tmp_name)
        try:
            for statement in MBTILES_SCHEMA:
                conn.execute(statement)
            conn.executemany(
                "INSERT INTO metadata (name, value) VALUES (?, ?)",
                metadata.items(),
            )
            for z, x, y, data in tile_source:
                conn.execute(
                    "INSERT OR REPLACE INTO tiles "
                    "(zoom_level, tile_column, tile_row, tile_data) "
                    "VALUES (?, ?, ?, ?)",
                    (z, x, tiles.xyz_to_tms_row(z, y), sqlite3.Binary(data)),
                )
                count += 1
            conn.commit()
        finally:
            conn.close()
        os.replace(tmp_name, dest)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise
    return count


class OfflinePackageService:
    def __init__(
        self,
        repositories: database.Repositories,
        layer_registry: registry.LayerRegistry,
        tile_service: tiles.TileService,
        layer_storage: storage.LayerStorage,
        settings: config.Settings,
    ) -> None:
        self.packages = repositories.packages
        self.registry = layer_registry
        self.tiles = tile_service
        self.storage = layer_storage
        self.settings = settings

    def create_package(
        self,
        layer_id: int,
        min_zoom: int,
        max_zoom: int,
        bbox: str,
    ) -> db_models.OfflinePackage:
        """Queue an MBTiles build for a bbox and zoom range of a layer.

        Args:
            layer_id: Layer to export.
            min_zoom: Lowest zoom level to include.
            max_zoom: Highest zoom level to include.
            bbox: "minx,miny,maxx,maxy" in EPSG:3857.

        Returns:
            The stored ``pending`` package.

        Raises:
            NotFound: Unknown layer.
            NotReady: The layer is not ready.
            ValidationError: Bad zoom range or bbox, or too many tiles.
        """
        self.registry.get_ready_layer(layer_id)
        validation.validate_zoom_range(min_zoom, max_zoom)
        parsed = validation.require_bbox(bbox)

        total = tiles.count_tiles(parsed, min_zoom, max_zoom)
        if total > self.settings.max_package_tiles:
            raise errors.ValidationError(
                f"Package would contain {total} tiles; the limit is "
                f"{self.settings.max_package_tiles}",
            )

        package = self.packages.create(
            db_models.OfflinePackage(
                id=0,
                layer_id=layer_id,
                min_zoom=min_zoom,
                max_zoom=max_zoom,
                bbox=bbox.strip(),
            ),
        )
        logger.info(
            "Queued offline package %s for layer %s (%d tiles max)",
            package.id,
            layer_id,
            total,
        )
        return package

    def get_package(self, package_id: int) -> db_models.OfflinePackage:
        package = self.packages.get(package_id)
        if package is None:
            raise errors.NotFound("Package not found")
        return package

    def get_package_status(self, package_id: int) -> dict[str, Any]:
        """Status document; adds ``filename`` and ``size`` once ready."""
        package = self.get_package(package_id)
        body: dict[str, Any] = {
            "packageId": package.id,
            "status": str(package.status),
        }
        if package.status is db_models.PackageStatus.READY and package.file_path:
            body["filename"] = storage.package_filename(
                package.layer_id,
                package.id,
            )
            with contextlib.suppress(OSError):
                body["size"] = pathlib.Path(package.file_path).stat().st_size
        return body

    def resolve_download(
        self,
        package_id: int,
    ) -> PackageDownload | dict[str, Any]:
        """Return the archive to send, or the status body if not ready.

        Raises:
            NotFound: Unknown package.
            InternalError: The package is ready but its file is gone.
        """
        package = self.get_package(package_id)
        if package.status is not db_models.PackageStatus.READY:
            return {"packageId": package.id, "status": str(package.status)}

        path = pathlib.Path(package.file_path) if package.file_path else None
        if path is None or not path.is_file():
            raise errors.InternalError(
                f"Package {package.id} file missing: {package.file_path}",
            )
        return PackageDownload(
            path=path,
            filename=storage.package_filename(package.layer_id, package.id),
            size=path.stat().st_size,
        )

    def build_package(self, payload: dict[str, Any]) -> db_models.OfflinePackage:
        """Assemble the MBTiles archive for a ``build_mbtiles`` job.

        Tiles that do not exist (outside a raster pyramid, or a failing WMS
        upstream) are skipped.
        """
        package_id = int(payload["package_id"])
        package = self.packages.update_status(
            package_id,
            db_models.PackageStatus.DOWNLOADING,
        )
        layer = self.registry.get_layer(package.layer_id)
        bbox = validation.require_bbox(package.bbox)

        def tile_source() -> Iterator[tuple[int, int, int, bytes]]:
            for z, x, y in tiles.iter_tiles(bbox, package.min_zoom, package.max_zoom):
                data = self.tiles.tile_for_package(layer, z, x, y)
                if data is not None:
                    yield z, x, y, data

        dest = self.storage.package_path(layer.id, package.id)
        count = write_mbtiles(
            dest,
            mbtiles_metadata(layer, package, bbox),
            tile_source(),
        )
        logger.info(
            "Built offline package %s with %d tiles at %s",
            package.id,
            count,
            dest,
        )
        return self.packages.update_status(
            package.id,
            db_models.PackageStatus.READY,
            file_path=str(dest),
            tile_count=count,
        )
