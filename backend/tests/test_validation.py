"""Tests for request validation helpers in geolayers.services.validation."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from geolayers.core import errors
from geolayers.db import models as db_models
from geolayers.services import validation

if TYPE_CHECKING:
    import pathlib


@pytest.mark.parametrize(
    "raw",
    [
        "javascript:alert(1)",
        "data:text/plain,hello",
        "file:///etc/passwd",
        "ftp://example.org/a.tif",
        "relative/path.tif",
        "",
        "   ",
        "https://example.org/" + "a" * 2100,
        "https://[::1/wms",
        "http://maps.example.org:99999/wms",
        "https:///wms",
    ],
)
def test_rejects_unsafe_sources(raw: str, tmp_path: pathlib.Path) -> None:
    with pytest.raises(errors.ValidationError):
        validation.validate_source_url(
            raw,
            db_models.LayerType.GEOTIFF,
            [tmp_path],
        )


def test_accepts_http_and_paths_under_roots(tmp_path: pathlib.Path) -> None:
    roots = [tmp_path]
    assert (
        validation.validate_source_url(
            " https://example.org/a.tif ",
            db_models.LayerType.GEOTIFF,
            roots,
        )
        == "https://example.org/a.tif"
    )
    local = str(tmp_path / "data" / "a.tif")
    assert (
        validation.validate_source_url(local, db_models.LayerType.GEOTIFF, roots)
        == local
    )


def test_rejects_path_escaping_roots(tmp_path: pathlib.Path) -> None:
    root = tmp_path / "uploads"
    escaping = f"{root}/../secrets/a.tif"
    with pytest.raises(errors.ValidationError, match="outside"):
        validation.validate_source_url(
            escaping,
            db_models.LayerType.GEOJSON,
            [root],
        )


@pytest.mark.parametrize(
    "layer_type",
    [db_models.LayerType.WMS, db_models.LayerType.WFS],
)
def test_remote_only_types_need_urls(
    layer_type: db_models.LayerType,
    tmp_path: pathlib.Path,
) -> None:
    with pytest.raises(errors.ValidationError):
        validation.validate_source_url(
            str(tmp_path / "capabilities.xml"),
            layer_type,
            [tmp_path],
        )


def test_layer_type_and_name() -> None:
    assert validation.validate_layer_type("wms") is db_models.LayerType.WMS
    with pytest.raises(errors.ValidationError, match="type must be one of"):
        validation.validate_layer_type("kml")
    assert validation.validate_name("  Parks ") == "Parks"
    with pytest.raises(errors.ValidationError):
        validation.validate_name("   ")


@pytest.mark.parametrize(
    ("min_zoom", "max_zoom"),
    [(-1, 5), (0, 23), (10, 9)],
)
def test_invalid_zoom_ranges(min_zoom: int, max_zoom: int) -> None:
    with pytest.raises(errors.ValidationError):
        validation.validate_zoom_range(min_zoom, max_zoom)


def test_zoom_range_bounds_are_inclusive() -> None:
    assert validation.validate_zoom_range(0, 22) == (0, 22)
    assert validation.validate_zoom_range(7, 7) == (7, 7)


@pytest.mark.parametrize(
    "raw",
    [
        None,
        "",
        "1,2,3",
        "1,2,3,4,5",
        "a,b,c,d",
        "0,0,nan,10",
        "0,0,inf,10",
        "10,0,0,10",
        "0,10,10,10",
    ],
)
def test_parse_bbox_rejects(raw: str | None) -> None:
    assert validation.parse_bbox(raw) is None


def test_parse_bbox_accepts_negative_and_decimal() -> None:
    assert validation.parse_bbox("-20.5,-10,30,40.25") == (-20.5, -10.0, 30.0, 40.25)


def test_require_bbox_raises() -> None:
    with pytest.raises(errors.ValidationError, match="bbox"):
        validation.require_bbox("1,2,3")
