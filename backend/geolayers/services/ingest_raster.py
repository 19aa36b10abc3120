"""Raster ingestion: GeoTIFF and GeoPDF sources to an XYZ tile pyramid.

The pipeline for a ``geotiff`` layer is:

1. obtain the source (download a remote URL or use the local file);
2. ``gdalwarp -t_srs EPSG:3857`` into ``warped.tif``;
3. ``gdaladdo`` to build overview levels 2, 4, 8 and 16;
4. ``gdal2tiles.py --xyz`` to render ``tiles/{z}/{x}/{y}.png`` for the
   layer's zoom range;
5. read the warped raster's extent with rio-tiler.

``geopdf`` layers first go through ``gdal_translate -of GTiff`` and then
follow the same steps.

Example:
    Ingest a registered GeoTIFF layer:
        >>> import httpx
        >>> from geolayers.core.config import get_settings
        >>> from geolayers.services import ingest_raster, storage

        >>> settings = get_settings()
        >>> with httpx.Client() as client:
        ...     result = ingest_raster.ingest_raster(
        ...         layer,
        ...         layer_storage=storage.LayerStorage(settings),
        ...         client=client,
        ...         settings=settings,
        ...     )
        >>> # result.local_path -> ".../layers/7/warped.tif"
        >>> # result.bounds -> (minx, miny, maxx, maxy) in Web Mercator
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import rio_tiler.io as rio_tiler_io

from geolayers.db import models as db_models
from geolayers.services import fetch
from geolayers.utils import gdal_helpers

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Callable

    import httpx

    from geolayers.core import config
    from geolayers.services import storage

logger = logging.getLogger(__name__)

OVERVIEW_LEVELS = ("2", "4", "8", "16")


def translate_pdf(source_path: pathlib.Path, output_dir: pathlib.Path) -> pathlib.Path:
    """Convert a GeoPDF into a GeoTIFF next to the other layer artifacts."""
    output_dir.mkdir(parents=True, exist_ok=True)
    tif_path = output_dir / "source.tif"
    gdal_helpers.run_command(
        ("gdal_translate", "-of", "GTiff", source_path, tif_path),
    )
    return tif_path


def warp_to_web_mercator(
    source_path: pathlib.Path,
    output_dir: pathlib.Path,
) -> pathlib.Path:
    """Reproject a raster to EPSG:3857 and build its overviews.

    Args:
        source_path: Path to the source raster (any GDAL-supported format).
        output_dir: Layer directory; ``warped.tif`` is written there.

    Returns:
        Path to the warped raster.

    Raises:
        CommandError: If gdalwarp or gdaladdo fail.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    warped_path = output_dir / "warped.tif"
    gdal_helpers.run_command(
        (
            "gdalwarp",
            "-overwrite",
            "-t_srs",
            "EPSG:3857",
            "-r",
            "bilinear",
            source_path,
            warped_path,
        ),
    )
    gdal_helpers.run_command(("gdaladdo", warped_path, *OVERVIEW_LEVELS))
    return warped_path


def generate_tiles(
    warped_path: pathlib.Path,
    tiles_dir: pathlib.Path,
    min_zoom: int,
    max_zoom: int,
    processes: int,
) -> None:
    """Render the XYZ (y=0 north) PNG pyramid for ``min_zoom..max_zoom``."""
    tiles_dir.mkdir(parents=True, exist_ok=True)
    gdal_helpers.run_command(
        (
            "gdal2tiles.py",
            "--xyz",
            "-z",
            f"{min_zoom}-{max_zoom}",
            f"--processes={processes}",
            "-w",
            "none",
            warped_path,
            tiles_dir,
        ),
    )


def compute_bounds(raster_path: pathlib.Path) -> db_models.BBox | None:
    """Extent of a warped raster in its own CRS (EPSG:3857)."""
    with rio_tiler_io.Reader(str(raster_path)) as src:
        bounds = src.bounds
    if not bounds:
        return None
    minx, miny, maxx, maxy = (float(v) for v in bounds)
    return (minx, miny, maxx, maxy)


def ingest_raster(
    layer: db_models.Layer,
    *,
    layer_storage: storage.LayerStorage,
    client: httpx.Client,
    settings: config.Settings,
    resolve: Callable[[str], list[str]] | None = None,
) -> db_models.IngestResult:
    """Run the raster pipeline for a ``geotiff`` or ``geopdf`` layer.

    Args:
        layer: The layer being ingested.
        layer_storage: Resolves the layer's artifact directory.
        client: HTTP client for remote sources.
        settings: Download limits and gdal2tiles parallelism.
        resolve: Hostname resolver override for the fetch helper.

    Returns:
        IngestResult with the warped raster path and its bounds.

    Raises:
        ValidationError: The remote source URL is unsafe.
        FetchError: The source could not be obtained.
        CommandError: A toolchain step failed.
    """
    source_path = fetch.obtain_source(
        layer.source_url,
        prefix=str(layer.id),
        client=client,
        settings=settings,
        resolve=resolve,
    )
    layer_dir = layer_storage.layer_dir(layer.id)

    if layer.type is db_models.LayerType.GEOPDF:
        source_path = translate_pdf(source_path, layer_dir)

    warped_path = warp_to_web_mercator(source_path, layer_dir)
    generate_tiles(
        warped_path,
        layer_storage.tiles_dir(layer.id),
        layer.min_zoom,
        layer.max_zoom,
        settings.gdal2tiles_processes,
    )
    bounds = compute_bounds(warped_path)
    logger.info("Raster layer %s tiled into %s", layer.id, warped_path.parent)
    return db_models.IngestResult(local_path=str(warped_path), bounds=bounds)
