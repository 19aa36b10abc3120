"""On-disk layout of per-layer artifacts.

Everything a layer produces lives under ``{storage_dir}/layers/{layer_id}/``::

    metadata.json         written when ingestion succeeds
    output.geojson        normalized features (vector types)
    warped.tif            EPSG:3857 raster (raster types)
    tiles/{z}/{x}/{y}.png XYZ pyramid, or the lazily filled WMS cache
    packages/*.mbtiles    offline packages built from the tiles

Paths are derived only from integer ids and tile coordinates, so no request
parameter can steer a path outside the storage root.
"""

from __future__ import annotations

import contextlib
import datetime
import json
import os
import tempfile
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import pathlib

    from geolayers.core import config
    from geolayers.db import models as db_models


class LayerStorage:
    """Resolves artifact paths for layers and packages."""

    def __init__(self, settings: config.Settings) -> None:
        self.root = settings.layers_dir

    def layer_dir(self, layer_id: int) -> pathlib.Path:
        return self.root / str(int(layer_id))

    def tiles_dir(self, layer_id: int) -> pathlib.Path:
        return self.layer_dir(layer_id) / "tiles"

    def tile_path(self, layer_id: int, z: int, x: int, y: int) -> pathlib.Path:
        return self.tiles_dir(layer_id) / str(z) / str(x) / f"{y}.png"

    def geojson_path(self, layer_id: int) -> pathlib.Path:
        return self.layer_dir(layer_id) / "output.geojson"

    def metadata_path(self, layer_id: int) -> pathlib.Path:
        return self.layer_dir(layer_id) / "metadata.json"

    def packages_dir(self, layer_id: int) -> pathlib.Path:
        return self.layer_dir(layer_id) / "packages"

    def package_path(self, layer_id: int, package_id: int) -> pathlib.Path:
        return self.packages_dir(layer_id) / package_filename(
            layer_id,
            package_id,
        )

    def write_metadata(
        self,
        layer: db_models.Layer,
        bounds: db_models.BBox | None,
    ) -> pathlib.Path:
        """Write metadata.json describing a successfully ingested layer."""
        effective = bounds or layer.bounds
        meta = {
            "id": layer.id,
            "name": layer.name,
            "type": str(layer.type),
            "min_zoom": layer.min_zoom,
            "max_zoom": layer.max_zoom,
            "bounds": list(effective) if effective else None,
            "generated": datetime.datetime.now(datetime.UTC).isoformat(),
        }
        path = self.metadata_path(layer.id)
        write_atomic(path, json.dumps(meta, indent=2).encode("utf-8"))
        return path


def package_filename(layer_id: int, package_id: int) -> str:
    return f"offline_layer{int(layer_id)}_pkg{int(package_id)}.mbtiles"


def write_atomic(path: pathlib.Path, data: bytes) -> None:
    """Write ``data`` to ``path`` via a sibling temp file and a rename.

    Concurrent writers of the same path never expose a partial file;
    the last rename wins.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, suffix=".part")
    try:
        with os.fdopen(fd, "wb") as tmp:
            tmp.write(data)
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise
