"""Request bodies accepted by the API.

Only shape is checked here (required fields and JSON types); value rules
such as zoom ranges and source URL safety live in the services, so the
worker and the API share them.
"""

import pydantic


class LayerCreate(pydantic.BaseModel):
    """Body of ``POST /api/layers``."""

    name: str
    type: str
    source_url: str
    min_zoom: int = 0
    max_zoom: int = 18


class OfflinePackageCreate(pydantic.BaseModel):
    """Body of ``POST /api/offline-package`` (camelCase on the wire)."""

    model_config = pydantic.ConfigDict(populate_by_name=True)

    layer_id: int = pydantic.Field(alias="layerId")
    min_zoom: int = pydantic.Field(default=0, alias="minZoom")
    max_zoom: int = pydantic.Field(default=14, alias="maxZoom")
    bbox: str
