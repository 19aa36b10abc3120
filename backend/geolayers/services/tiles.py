"""XYZ tile serving: coordinate math, disk cache and the WMS proxy.

Tiles are addressed in the XYZ ("slippy map") scheme where y=0 is the
northern edge. Lookup order for a ready layer:

1. the on-disk tile at ``tiles/{z}/{x}/{y}.png`` (any layer type);
2. for WMS layers, a GetMap request for the tile's EPSG:3857 bbox. The
   response must be a structurally valid PNG before it is cached and
   served, so the cache warms itself under read traffic;
3. otherwise the tile does not exist (pre-generated pyramids are complete
   for their zoom range).

Concurrent first requests for the same uncached WMS tile may each hit the
upstream server; the cache write is an atomic rename, so the last writer
wins and readers never see a partial file.
"""

from __future__ import annotations

import io
import logging
import math
from typing import TYPE_CHECKING

import httpx
import PIL.Image

from geolayers.core import errors
from geolayers.db import models as db_models
from geolayers.services import fetch, storage

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Callable, Iterator

    from geolayers.core import config
    from geolayers.services import registry

logger = logging.getLogger(__name__)

MIN_ZOOM = 0
MAX_ZOOM = 22
# Half the equatorial circumference of the Web Mercator sphere, in metres.
ORIGIN_SHIFT = 20037508.342789244
PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


def validate_tile(z: int, x: int, y: int) -> None:
    """Raise ValidationError unless (z, x, y) addresses an existing tile."""
    if not MIN_ZOOM <= z <= MAX_ZOOM:
        raise errors.ValidationError("Invalid zoom level")
    max_tile = (1 << z) - 1
    if not (0 <= x <= max_tile and 0 <= y <= max_tile):
        raise errors.ValidationError("Tile coordinates out of range")


def tile_to_mercator_bbox(z: int, x: int, y: int) -> db_models.BBox:
    """EPSG:3857 bbox (minx, miny, maxx, maxy) of an XYZ tile.

    XYZ rows grow southwards while Mercator y grows northwards, so row
    ``y`` spans from ``maxY`` (its top edge) down to ``minY``.
    """
    n = 1 << z
    size = 2 * ORIGIN_SHIFT / n
    minx = -ORIGIN_SHIFT + x * size
    maxx = -ORIGIN_SHIFT + (x + 1) * size
    maxy = ORIGIN_SHIFT - y * size
    miny = ORIGIN_SHIFT - (y + 1) * size
    return (minx, miny, maxx, maxy)


def xyz_to_tms_row(z: int, y: int) -> int:
    """Flip an XYZ row into the south-up TMS/MBTiles ``tile_row``."""
    return (1 << z) - 1 - y


def _axis_index(offset: float, z: int, *, upper: bool = False) -> int:
    n = 1 << z
    position = round(offset / (2 * ORIGIN_SHIFT) * n, 9)
    # An upper edge on a tile boundary does not reach into the next tile.
    index = math.ceil(position) - 1 if upper else math.floor(position)
    return min(max(index, 0), n - 1)


def tile_range(
    bbox: db_models.BBox,
    z: int,
) -> tuple[range, range]:
    """Column and row ranges of the XYZ tiles covering an EPSG:3857 bbox.

    The bbox is clamped to the Web Mercator square first.
    """
    minx, miny, maxx, maxy = bbox
    minx = min(max(minx, -ORIGIN_SHIFT), ORIGIN_SHIFT)
    maxx = min(max(maxx, -ORIGIN_SHIFT), ORIGIN_SHIFT)
    miny = min(max(miny, -ORIGIN_SHIFT), ORIGIN_SHIFT)
    maxy = min(max(maxy, -ORIGIN_SHIFT), ORIGIN_SHIFT)

    x0 = _axis_index(minx + ORIGIN_SHIFT, z)
    x1 = _axis_index(maxx + ORIGIN_SHIFT, z, upper=True)
    y0 = _axis_index(ORIGIN_SHIFT - maxy, z)
    y1 = _axis_index(ORIGIN_SHIFT - miny, z, upper=True)
    return range(x0, x1 + 1), range(y0, y1 + 1)


def iter_tiles(
    bbox: db_models.BBox,
    min_zoom: int,
    max_zoom: int,
) -> Iterator[tuple[int, int, int]]:
    for z in range(min_zoom, max_zoom + 1):
        xs, ys = tile_range(bbox, z)
        for x in xs:
            for y in ys:
                yield z, x, y


def count_tiles(bbox: db_models.BBox, min_zoom: int, max_zoom: int) -> int:
    total = 0
    for z in range(min_zoom, max_zoom + 1):
        xs, ys = tile_range(bbox, z)
        total += len(xs) * len(ys)
    return total


def is_valid_png(data: bytes) -> bool:
    """Check the PNG signature, then let Pillow verify the chunk structure."""
    if not data.startswith(PNG_SIGNATURE):
        return False
    try:
        with PIL.Image.open(io.BytesIO(data)) as image:
            image.verify()
            return image.format == "PNG"
    except (OSError, SyntaxError, ValueError, PIL.Image.DecompressionBombError):
        return False


def build_getmap_params(
    layer: db_models.Layer,
    bbox: db_models.BBox,
    tile_size: int,
) -> dict[str, str]:
    """GetMap query parameters for one tile.

    ``LAYERS`` defaults to the layer name unless the source URL already
    names the WMS layers to draw.
    """
    params = {
        "SERVICE": "WMS",
        "VERSION": "1.3.0",
        "REQUEST": "GetMap",
        "STYLES": "",
        "CRS": "EPSG:3857",
        "BBOX": ",".join(repr(v) for v in bbox),
        "WIDTH": str(tile_size),
        "HEIGHT": str(tile_size),
        "FORMAT": "image/png",
        "TRANSPARENT": "TRUE",
    }
    existing = {key.upper() for key in httpx.URL(layer.source_url).params}
    if "LAYERS" not in existing:
        params["LAYERS"] = layer.name
    return params


class TileService:
    """Resolves tile requests against the cache and WMS upstreams."""

    def __init__(
        self,
        layer_registry: registry.LayerRegistry,
        layer_storage: storage.LayerStorage,
        client: httpx.Client,
        settings: config.Settings,
        resolve: Callable[[str], list[str]] | None = None,
    ) -> None:
        self.registry = layer_registry
        self.storage = layer_storage
        self.client = client
        self.settings = settings
        self.resolve = resolve

    def get_tile(self, layer_id: int, z: int, x: int, y: int) -> bytes:
        """Return PNG bytes for a tile of a ready layer.

        Raises:
            ValidationError: Coordinates outside the zoom/tile range.
            NotFound: Unknown layer, or a missing pre-generated tile.
            NotReady: The layer is not ready.
            UpstreamFailure: The WMS request failed or was not a PNG.
            InternalError: The cached tile could not be read.
        """
        validate_tile(z, x, y)
        layer = self.registry.get_ready_layer(layer_id)

        cached = self.read_cached(layer.id, z, x, y)
        if cached is not None:
            return cached

        if layer.type is db_models.LayerType.WMS:
            data = self.fetch_wms_tile(layer, z, x, y)
            storage.write_atomic(self.storage.tile_path(layer.id, z, x, y), data)
            return data

        raise errors.NotFound("Tile not found")

    def tile_for_package(
        self,
        layer: db_models.Layer,
        z: int,
        x: int,
        y: int,
    ) -> bytes | None:
        """Same lookup as get_tile for a known layer, None if unavailable."""
        try:
            cached = self.read_cached(layer.id, z, x, y)
            if cached is not None:
                return cached
            if layer.type is not db_models.LayerType.WMS:
                return None
            data = self.fetch_wms_tile(layer, z, x, y)
        except errors.UpstreamFailure:
            return None
        storage.write_atomic(self.storage.tile_path(layer.id, z, x, y), data)
        return data

    def read_cached(self, layer_id: int, z: int, x: int, y: int) -> bytes | None:
        path: pathlib.Path = self.storage.tile_path(layer_id, z, x, y)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise errors.InternalError(f"Failed to read tile {path}: {exc}") from exc

    def fetch_wms_tile(
        self,
        layer: db_models.Layer,
        z: int,
        x: int,
        y: int,
    ) -> bytes:
        bbox = tile_to_mercator_bbox(z, x, y)
        try:
            params = build_getmap_params(layer, bbox, self.settings.tile_size)
            with fetch.open_stream(
                self.client,
                layer.source_url,
                timeout=self.settings.wms_timeout_seconds,
                params=params,
                resolve=self.resolve,
            ) as response:
                data = fetch.read_capped(
                    response,
                    self.settings.max_wms_tile_bytes,
                )
        except (
            errors.ValidationError,
            fetch.FetchError,
            httpx.HTTPError,
            httpx.InvalidURL,
        ) as exc:
            logger.warning(
                "WMS fetch failed for layer %s tile %s/%s/%s: %s",
                layer.id,
                z,
                x,
                y,
                exc,
            )
            raise errors.UpstreamFailure(
                "Failed to fetch tile from WMS source",
            ) from exc

        if not is_valid_png(data):
            logger.warning(
                "WMS source for layer %s returned a non-PNG body for %s/%s/%s",
                layer.id,
                z,
                x,
                y,
            )
            raise errors.UpstreamFailure("WMS source did not return a PNG")
        return data
