"""Vector ingestion: WFS, shapefile and GeoJSON sources to one GeoJSON file.

Every vector layer ends up as ``output.geojson`` in EPSG:3857, written by
``ogr2ogr -f GeoJSON -t_srs EPSG:3857 -simplify 1``. Sources differ only in
how the ogr2ogr input is obtained:

- ``wfs``: the URL is handed to OGR's WFS driver as ``WFS:<url>`` after the
  same SSRF checks as any other remote fetch;
- ``shapefile``: a ``.zip`` archive is extracted into the layer directory
  and the first ``.shp`` by relative path (lexicographic) is used; members
  that would land outside the extraction directory abort the ingestion;
- ``geojson``: the file must parse as a JSON object before OGR sees it.

The layer's bounds are computed from the written GeoJSON, so they are in
Web Mercator like everything else.
"""

from __future__ import annotations

import json
import logging
import pathlib
import shutil
import zipfile
from typing import TYPE_CHECKING

from geolayers.db import models as db_models
from geolayers.services import features, fetch
from geolayers.utils import gdal_helpers

if TYPE_CHECKING:
    from collections.abc import Callable

    import httpx

    from geolayers.core import config
    from geolayers.services import storage

logger = logging.getLogger(__name__)


class ArchiveError(RuntimeError):
    """A shapefile archive is unsafe or holds no ``.shp`` member."""


class InvalidSource(RuntimeError):
    """A source file is not what its layer type claims."""


def convert_to_geojson(source: str | pathlib.Path, output_path: pathlib.Path) -> None:
    """Reproject and simplify any OGR-readable source into GeoJSON.

    Raises:
        CommandError: If ogr2ogr fails.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)
    # The GeoJSON driver cannot overwrite an existing dataset.
    output_path.unlink(missing_ok=True)
    gdal_helpers.run_command(
        (
            "ogr2ogr",
            "-f",
            "GeoJSON",
            "-t_srs",
            "EPSG:3857",
            "-simplify",
            "1",
            output_path,
            source,
        ),
    )


def extract_shapefile(archive_path: pathlib.Path, dest: pathlib.Path) -> pathlib.Path:
    """Safely extract a zipped shapefile and return its ``.shp`` member.

    Args:
        archive_path: The downloaded ``.zip`` file.
        dest: Extraction directory (replaced if it exists).

    Returns:
        Path of the first ``.shp`` file in lexicographic order of the
        members' relative paths.

    Raises:
        ArchiveError: On a corrupt archive, a member escaping ``dest``, or
            an archive without any ``.shp`` file.
    """
    if dest.exists():
        shutil.rmtree(dest)
    dest.mkdir(parents=True)
    root = dest.resolve()

    try:
        with zipfile.ZipFile(archive_path) as archive:
            members = archive.infolist()
            for member in members:
                target = (root / member.filename).resolve()
                if not target.is_relative_to(root):
                    raise ArchiveError(
                        f"Archive member escapes extraction dir: {member.filename}",
                    )
            archive.extractall(root)
    except zipfile.BadZipFile as exc:
        raise ArchiveError(f"Invalid zip archive {archive_path.name}: {exc}") from exc

    shapefiles = sorted(
        member.filename
        for member in members
        if not member.is_dir() and member.filename.lower().endswith(".shp")
    )
    if not shapefiles:
        raise ArchiveError(f"No .shp file found in {archive_path.name}")
    return root / shapefiles[0]


def check_geojson(path: pathlib.Path) -> None:
    """Raise InvalidSource unless ``path`` holds a JSON object."""
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, ValueError) as exc:
        raise InvalidSource(f"Invalid GeoJSON in {path.name}: {exc}") from exc
    if not isinstance(document, dict):
        raise InvalidSource(f"GeoJSON in {path.name} is not an object")


def _bounds_of(output_path: pathlib.Path) -> db_models.BBox | None:
    return features.compute_bounds(features.load_geojson(output_path))


def ingest_vector(
    layer: db_models.Layer,
    *,
    layer_storage: storage.LayerStorage,
    client: httpx.Client,
    settings: config.Settings,
    resolve: Callable[[str], list[str]] | None = None,
) -> db_models.IngestResult:
    """Normalize a ``wfs``, ``shapefile`` or ``geojson`` layer to GeoJSON.

    Args:
        layer: The layer being ingested.
        layer_storage: Resolves output paths for the layer.
        client: HTTP client for remote sources.
        settings: Download limits and allowed extensions.
        resolve: Hostname resolver override for the fetch helper.

    Returns:
        IngestResult with the path of output.geojson and its bounds.

    Raises:
        ValidationError: The remote source URL is unsafe.
        FetchError: The source could not be obtained.
        ArchiveError: The shapefile archive is unusable.
        InvalidSource: The GeoJSON source is not a JSON object.
        CommandError: ogr2ogr failed.
    """
    output_path = layer_storage.geojson_path(layer.id)

    if layer.type is db_models.LayerType.WFS:
        fetch.validate_url(layer.source_url, resolve)
        source: str | pathlib.Path = f"WFS:{layer.source_url}"
    else:
        path = fetch.obtain_source(
            layer.source_url,
            prefix=str(layer.id),
            client=client,
            settings=settings,
            resolve=resolve,
        )
        if layer.type is db_models.LayerType.SHAPEFILE:
            if path.suffix.lower() == ".zip":
                path = extract_shapefile(
                    path,
                    layer_storage.layer_dir(layer.id) / "source",
                )
        else:
            check_geojson(path)
        source = path

    convert_to_geojson(source, output_path)
    bounds = _bounds_of(output_path)
    logger.info("Vector layer %s written to %s", layer.id, output_path)
    return db_models.IngestResult(local_path=str(output_path), bounds=bounds)
