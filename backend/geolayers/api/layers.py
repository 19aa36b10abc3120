"""Layer registration and metadata endpoints.

Registering a layer only validates and queues it; ingestion happens in the
worker process. The response therefore reports ``processing`` and the
client polls ``GET /api/layers/{id}`` until the layer is ``ready`` (or
``error``).

Example:
    Register a GeoJSON layer:
        >>> response = client.post("/api/layers", json={
        ...     "name": "Parks",
        ...     "type": "geojson",
        ...     "source_url": "https://example.org/parks.geojson",
        ... })
        >>> response.status_code, response.json()
        (201, {'layerId': 1, 'status': 'processing'})

    Poll its status:
        >>> client.get("/api/layers/1").json()["status"]
        'ready'
"""

from typing import Any

import fastapi

from geolayers.api import dependencies, schemas
from geolayers.services import registry

router = fastapi.APIRouter(prefix="/api/layers", tags=["layers"])


@router.post("", status_code=201)
def create_layer(
    body: schemas.LayerCreate,
    layers: registry.LayerRegistry = fastapi.Depends(  # noqa: B008
        dependencies.get_registry,
    ),
) -> dict[str, Any]:
    """Register a layer and queue its ingestion.

    Args:
        body: Layer name, type, source URL or path, and zoom range.
        layers: Layer registry (injected via FastAPI Depends).

    Returns:
        ``{"layerId": <id>, "status": "processing"}``.

    Raises:
        ValidationError: On an invalid type, name, source or zoom range
            (HTTP 400).
    """
    layer = layers.create_layer(
        name=body.name,
        layer_type=body.type,
        source_url=body.source_url,
        min_zoom=body.min_zoom,
        max_zoom=body.max_zoom,
    )
    return {"layerId": layer.id, "status": "processing"}


@router.get("")
def list_layers(
    layers: registry.LayerRegistry = fastapi.Depends(  # noqa: B008
        dependencies.get_registry,
    ),
) -> list[dict[str, Any]]:
    """List all layers, newest first."""
    return [layer.to_dict() for layer in layers.list_layers()]


@router.get("/{layer_id}")
def get_layer(
    layer_id: int,
    layers: registry.LayerRegistry = fastapi.Depends(  # noqa: B008
        dependencies.get_registry,
    ),
) -> dict[str, Any]:
    return layers.get_layer(layer_id).to_dict()
