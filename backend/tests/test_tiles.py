"""Tests for tile math, the tile service and the tile/GeoJSON endpoints.

WMS upstreams are httpx.MockTransport handlers (see conftest.py) serving
real PNG bytes produced with Pillow.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx
import pytest

import helpers
from geolayers.core import errors
from geolayers.db import models as db_models
from geolayers.services import registry, storage, tiles

if TYPE_CHECKING:
    from fastapi import testclient

    from geolayers.core import config
    from geolayers.db import database

O = tiles.ORIGIN_SHIFT


def test_world_tile_bbox() -> None:
    assert tiles.tile_to_mercator_bbox(0, 0, 0) == (-O, -O, O, O)


def test_row_zero_is_north() -> None:
    north = tiles.tile_to_mercator_bbox(1, 0, 0)
    south = tiles.tile_to_mercator_bbox(1, 0, 1)
    assert north == (-O, 0.0, 0.0, O)
    assert south == (-O, -O, 0.0, 0.0)


@pytest.mark.parametrize(("z", "x", "y"), [(1, 0, 0), (5, 7, 19), (12, 2048, 1365)])
def test_neighbouring_tiles_share_edges(z: int, x: int, y: int) -> None:
    here = tiles.tile_to_mercator_bbox(z, x, y)
    east = tiles.tile_to_mercator_bbox(z, x + 1, y)
    south = tiles.tile_to_mercator_bbox(z, x, y + 1)
    assert here[2] == east[0]
    assert here[1] == south[3]


@pytest.mark.parametrize(
    ("z", "x", "y"),
    [(-1, 0, 0), (23, 0, 0), (0, 1, 0), (0, 0, 1), (3, 8, 0), (3, 0, -1)],
)
def test_validate_tile_rejects(z: int, x: int, y: int) -> None:
    with pytest.raises(errors.ValidationError):
        tiles.validate_tile(z, x, y)


def test_validate_tile_accepts_corners() -> None:
    tiles.validate_tile(0, 0, 0)
    tiles.validate_tile(22, (1 << 22) - 1, (1 << 22) - 1)


def test_tms_row_flip() -> None:
    assert tiles.xyz_to_tms_row(0, 0) == 0
    assert tiles.xyz_to_tms_row(3, 0) == 7
    assert tiles.xyz_to_tms_row(3, 7) == 0


def test_tile_range_of_a_single_tile() -> None:
    bbox = tiles.tile_to_mercator_bbox(4, 5, 6)
    xs, ys = tiles.tile_range(bbox, 4)
    assert list(xs) == [5]
    assert list(ys) == [6]
    xs, ys = tiles.tile_range(bbox, 5)
    assert list(xs) == [10, 11]
    assert list(ys) == [12, 13]


def test_count_tiles_whole_world() -> None:
    assert tiles.count_tiles((-O, -O, O, O), 0, 2) == 1 + 4 + 16
    assert list(tiles.iter_tiles((-O, -O, O, O), 1, 1)) == [
        (1, 0, 0),
        (1, 0, 1),
        (1, 1, 0),
        (1, 1, 1),
    ]


def test_is_valid_png(png_bytes: bytes) -> None:
    assert tiles.is_valid_png(png_bytes)
    assert not tiles.is_valid_png(b"<ServiceExceptionReport/>")
    assert not tiles.is_valid_png(tiles.PNG_SIGNATURE + b"garbage")


def test_getmap_params_default_layers_to_name() -> None:
    layer = db_models.Layer(
        id=1,
        name="topo",
        type=db_models.LayerType.WMS,
        source_url="https://maps.example.org/wms",
        min_zoom=0,
        max_zoom=18,
    )
    params = tiles.build_getmap_params(layer, (-O, -O, O, O), 256)
    assert params["LAYERS"] == "topo"
    assert params["CRS"] == "EPSG:3857"
    assert params["WIDTH"] == params["HEIGHT"] == "256"
    assert params["FORMAT"] == "image/png"
    assert params["TRANSPARENT"] == "TRUE"

    layer.source_url = "https://maps.example.org/wms?layers=roads"
    assert "LAYERS" not in tiles.build_getmap_params(layer, (0, 0, 1, 1), 256)


@pytest.fixture
def tile_service(
    settings: config.Settings,
    repositories: database.Repositories,
    http_client: httpx.Client,
) -> tiles.TileService:
    return tiles.TileService(
        registry.LayerRegistry(repositories, settings),
        storage.LayerStorage(settings),
        http_client,
        settings,
        resolve=helpers.public_resolver,
    )


def test_wms_tile_is_fetched_once_then_cached(
    tile_service: tiles.TileService,
    repositories: database.Repositories,
    upstream: helpers.UpstreamRecorder,
    png_bytes: bytes,
) -> None:
    helpers.add_layer(repositories, db_models.LayerType.WMS, name="topo")
    upstream.responder = lambda _req: httpx.Response(
        200,
        content=png_bytes,
        headers={"Content-Type": "image/png"},
    )

    first = tile_service.get_tile(1, 3, 2, 1)
    second = tile_service.get_tile(1, 3, 2, 1)

    assert first == second == png_bytes
    assert len(upstream.requests) == 1
    params = upstream.requests[0].url.params
    assert params["REQUEST"] == "GetMap"
    assert params["LAYERS"] == "topo"
    minx, miny, maxx, maxy = (float(v) for v in params["BBOX"].split(","))
    assert (minx, miny, maxx, maxy) == tiles.tile_to_mercator_bbox(3, 2, 1)
    assert tile_service.storage.tile_path(1, 3, 2, 1).read_bytes() == png_bytes


def test_wms_non_png_is_not_cached(
    tile_service: tiles.TileService,
    repositories: database.Repositories,
    upstream: helpers.UpstreamRecorder,
) -> None:
    helpers.add_layer(repositories, db_models.LayerType.WMS)
    upstream.responder = lambda _req: httpx.Response(
        200,
        content=b"<ServiceExceptionReport/>",
        headers={"Content-Type": "image/png"},
    )

    with pytest.raises(errors.UpstreamFailure):
        tile_service.get_tile(1, 0, 0, 0)
    assert not tile_service.storage.tile_path(1, 0, 0, 0).exists()


def test_wms_private_source_is_upstream_failure(
    tile_service: tiles.TileService,
    repositories: database.Repositories,
    upstream: helpers.UpstreamRecorder,
) -> None:
    helpers.add_layer(
        repositories,
        db_models.LayerType.WMS,
        source_url="http://10.0.0.5/wms",
    )
    with pytest.raises(errors.UpstreamFailure):
        tile_service.get_tile(1, 0, 0, 0)
    assert upstream.requests == []


def test_raster_tile_served_from_disk(
    tile_service: tiles.TileService,
    repositories: database.Repositories,
    png_bytes: bytes,
) -> None:
    helpers.add_layer(repositories, db_models.LayerType.GEOTIFF, layer_id=2)
    path = tile_service.storage.tile_path(2, 4, 3, 5)
    path.parent.mkdir(parents=True)
    path.write_bytes(png_bytes)

    assert tile_service.get_tile(2, 4, 3, 5) == png_bytes
    with pytest.raises(errors.NotFound):
        tile_service.get_tile(2, 4, 3, 6)


def test_bad_coordinates_checked_before_lookup(
    tile_service: tiles.TileService,
) -> None:
    # Layer 77 does not exist; the coordinates are rejected first.
    with pytest.raises(errors.ValidationError):
        tile_service.get_tile(77, 25, 0, 0)


def test_tile_endpoint_headers(
    app_client: testclient.TestClient,
    repositories: database.Repositories,
    upstream: helpers.UpstreamRecorder,
    png_bytes: bytes,
) -> None:
    helpers.add_layer(repositories, db_models.LayerType.WMS)
    upstream.responder = lambda _req: httpx.Response(200, content=png_bytes)

    response = app_client.get("/tiles/1/2/1/1.png")

    assert response.status_code == 200
    assert response.headers["content-type"] == "image/png"
    assert response.headers["cache-control"] == "public, max-age=86400"
    assert response.content == png_bytes


def test_tile_endpoint_not_ready(
    app_client: testclient.TestClient,
    repositories: database.Repositories,
) -> None:
    helpers.add_layer(
        repositories,
        db_models.LayerType.GEOTIFF,
        status=db_models.LayerStatus.PROCESSING,
    )
    response = app_client.get("/tiles/1/0/0/0.png")
    assert response.status_code == 503
    assert response.json() == {"error": "Layer not ready", "status": "processing"}


@pytest.mark.parametrize(
    "path",
    ["/tiles/1/23/0/0.png", "/tiles/1/2/4/0.png", "/tiles/1/2/0/-1.png"],
)
def test_tile_endpoint_bad_coordinates(
    app_client: testclient.TestClient,
    path: str,
) -> None:
    response = app_client.get(path)
    assert response.status_code == 400
    assert "error" in response.json()


def test_tile_endpoint_upstream_failure(
    app_client: testclient.TestClient,
    repositories: database.Repositories,
    upstream: helpers.UpstreamRecorder,
) -> None:
    helpers.add_layer(repositories, db_models.LayerType.WMS)
    upstream.responder = lambda _req: httpx.Response(503)
    response = app_client.get("/tiles/1/0/0/0.png")
    assert response.status_code == 502


def test_geojson_endpoint(
    app_client: testclient.TestClient,
    repositories: database.Repositories,
    settings: config.Settings,
) -> None:
    helpers.add_layer(repositories, db_models.LayerType.GEOJSON, layer_id=3)
    helpers.write_feature_collection(
        storage.LayerStorage(settings).geojson_path(3),
        [helpers.point(1, 1, name="a"), helpers.point(50, 50, name="b")],
    )

    response = app_client.get("/geojson/3", params={"bbox": "0,0,10,10"})
    assert response.status_code == 200
    assert response.headers["content-type"] == "application/geo+json"
    assert response.headers["cache-control"] == "public, max-age=3600"
    assert [f["properties"]["name"] for f in response.json()["features"]] == ["a"]

    # An unparseable bbox is ignored.
    response = app_client.get("/geojson/3", params={"bbox": "0,0,nope,10"})
    assert len(response.json()["features"]) == 2

    assert app_client.get("/geojson/404").status_code == 404


def test_malformed_stored_source_is_upstream_failure(
    app_client: testclient.TestClient,
    repositories: database.Repositories,
    upstream: helpers.UpstreamRecorder,
) -> None:
    helpers.add_layer(
        repositories,
        db_models.LayerType.WMS,
        source_url="https://[::1/wms",
    )

    response = app_client.get("/tiles/1/3/2/2.png")

    assert response.status_code == 502
    assert response.json() == {"error": "Failed to fetch tile from WMS source"}
    assert upstream.requests == []


def test_tile_for_package_skips_malformed_source(
    tile_service: tiles.TileService,
    repositories: database.Repositories,
) -> None:
    layer = helpers.add_layer(
        repositories,
        db_models.LayerType.WMS,
        source_url="https://[::1/wms",
    )

    assert tile_service.tile_for_package(layer, 0, 0, 0) is None


def test_oversized_wms_body_is_upstream_failure(
    tile_service: tiles.TileService,
    repositories: database.Repositories,
    upstream: helpers.UpstreamRecorder,
    settings: config.Settings,
    png_bytes: bytes,
) -> None:
    helpers.add_layer(repositories, db_models.LayerType.WMS)
    settings.max_wms_tile_bytes = len(png_bytes) - 1
    upstream.responder = lambda _req: httpx.Response(200, content=png_bytes)

    with pytest.raises(errors.UpstreamFailure):
        tile_service.get_tile(1, 0, 0, 0)
    assert not tile_service.storage.tile_path(1, 0, 0, 0).exists()

    settings.max_wms_tile_bytes = len(png_bytes)
    assert tile_service.get_tile(1, 0, 0, 0) == png_bytes
