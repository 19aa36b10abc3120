"""Layer registration and lookup.

Registration validates the request, then stores the layer as ``pending``
together with its ``process_layer`` job in one transaction. The dispatcher
picks the job up later; callers are told "processing" because ingestion is
committed to from that point on.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from geolayers.core import errors
from geolayers.db import models as db_models
from geolayers.services import validation

if TYPE_CHECKING:
    from geolayers.core import config
    from geolayers.db import database


class LayerRegistry:
    def __init__(
        self,
        repositories: database.Repositories,
        settings: config.Settings,
    ) -> None:
        self.layers = repositories.layers
        self.settings = settings

    def create_layer(
        self,
        name: str,
        layer_type: str,
        source_url: str,
        min_zoom: int,
        max_zoom: int,
    ) -> db_models.Layer:
        """Validate and register a new layer, queueing its ingestion.

        Raises:
            ValidationError: On an empty name, unknown type, unacceptable
                source or invalid zoom range.
        """
        clean_name = validation.validate_name(name)
        kind = validation.validate_layer_type(layer_type)
        source = validation.validate_source_url(
            source_url,
            kind,
            self.settings.local_source_roots,
        )
        validation.validate_zoom_range(min_zoom, max_zoom)

        return self.layers.create(
            db_models.Layer(
                id=0,
                name=clean_name,
                type=kind,
                source_url=source,
                min_zoom=min_zoom,
                max_zoom=max_zoom,
            ),
        )

    def list_layers(self) -> list[db_models.Layer]:
        return list(self.layers.all())

    def get_layer(self, layer_id: int) -> db_models.Layer:
        layer = self.layers.get(layer_id)
        if layer is None:
            raise errors.NotFound("Layer not found")
        return layer

    def get_ready_layer(self, layer_id: int) -> db_models.Layer:
        """Return the layer, raising NotReady unless its status is ready."""
        layer = self.get_layer(layer_id)
        if layer.status is not db_models.LayerStatus.READY:
            raise errors.NotReady("Layer not ready", status=str(layer.status))
        return layer
