"""Test helpers shared by the test modules and fixtures.

Hostnames resolve through ``public_resolver`` to a documentation-range
public address, and upstream HTTP servers are ``httpx.MockTransport``
handlers wrapped in ``UpstreamRecorder``.
"""

from __future__ import annotations

import io
import json
from typing import TYPE_CHECKING, Any

import httpx
import PIL.Image

from geolayers.db import memory
from geolayers.db import models as db_models

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Callable

    from geolayers.db import database

PUBLIC_ADDRESS = "93.184.216.34"


def public_resolver(_host: str) -> list[str]:
    return [PUBLIC_ADDRESS]


def make_png(color: tuple[int, int, int, int] = (255, 0, 0, 255)) -> bytes:
    """Encode a real 256x256 PNG with Pillow."""
    buffer = io.BytesIO()
    PIL.Image.new("RGBA", (256, 256), color).save(buffer, format="PNG")
    return buffer.getvalue()


class UpstreamRecorder:
    """MockTransport handler that records requests and serves a responder."""

    def __init__(
        self,
        responder: Callable[[httpx.Request], httpx.Response] | None = None,
    ) -> None:
        self.requests: list[httpx.Request] = []
        self.responder = responder or (lambda _req: httpx.Response(404))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)


def add_layer(
    repositories: database.Repositories,
    layer_type: db_models.LayerType,
    *,
    layer_id: int = 1,
    name: str = "basemap",
    source_url: str = "https://maps.example.org/wms",
    min_zoom: int = 0,
    max_zoom: int = 18,
    status: db_models.LayerStatus = db_models.LayerStatus.READY,
) -> db_models.Layer:
    """Seed the in-memory store with a layer in the given status."""
    layers = repositories.layers
    assert isinstance(layers, memory.InMemoryLayerRepository)
    return layers.add(
        db_models.Layer(
            id=layer_id,
            name=name,
            type=layer_type,
            source_url=source_url,
            min_zoom=min_zoom,
            max_zoom=max_zoom,
            status=status,
        ),
    )


def write_feature_collection(
    path: pathlib.Path,
    features: list[dict[str, Any]],
) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps({"type": "FeatureCollection", "features": features}),
        encoding="utf-8",
    )


def point(x: float, y: float, **properties: Any) -> dict[str, Any]:
    return {
        "type": "Feature",
        "geometry": {"type": "Point", "coordinates": [x, y]},
        "properties": properties,
    }
