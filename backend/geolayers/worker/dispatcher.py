"""Job dispatcher: claims queued jobs and runs the matching pipeline.

One Dispatcher runs per worker thread. Each loop iteration claims at most
one job (the claim is atomic in every queue implementation), routes it by
job type and, for ``process_layer`` jobs, by layer type:

=========================  ==============================================
wms                        metadata only; tiles are proxied on demand
geotiff, geopdf            raster pipeline (warp, overviews, gdal2tiles)
wfs, shapefile, geojson    vector pipeline (ogr2ogr to output.geojson)
=========================  ==============================================

A failing job never stops the loop. The error is recorded on the job and
the layer (or package) moves to ``error``, which tells pollers to stop.
"""

from __future__ import annotations

import logging
import typing
from typing import TYPE_CHECKING, Any

from geolayers.core import errors
from geolayers.db import models as db_models
from geolayers.services import (
    ingest_raster,
    ingest_vector,
    packages,
    registry,
    storage,
    tiles,
)

if TYPE_CHECKING:
    import threading
    from collections.abc import Callable

    import httpx

    from geolayers.core import config
    from geolayers.db import database

logger = logging.getLogger(__name__)


def describe_failure(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


class Dispatcher:
    """Processes jobs from the queue until told to stop.

    Args:
        repositories: Store handle shared with the API.
        settings: Application settings.
        client: HTTP client for remote sources and WMS tiles.
        worker_id: Recorded on every claimed job.
        resolve: Hostname resolver override for the fetch helper.
    """

    def __init__(
        self,
        repositories: database.Repositories,
        settings: config.Settings,
        client: httpx.Client,
        worker_id: str,
        resolve: Callable[[str], list[str]] | None = None,
    ) -> None:
        self.repositories = repositories
        self.settings = settings
        self.client = client
        self.worker_id = worker_id
        self.resolve = resolve

        self.storage = storage.LayerStorage(settings)
        self.registry = registry.LayerRegistry(repositories, settings)
        self.tiles = tiles.TileService(
            self.registry,
            self.storage,
            client,
            settings,
            resolve=resolve,
        )
        self.packages = packages.OfflinePackageService(
            repositories,
            self.registry,
            self.tiles,
            self.storage,
            settings,
        )

    def run_forever(self, stop: threading.Event) -> None:
        """Poll the queue until ``stop`` is set."""
        logger.info("Worker %s started", self.worker_id)
        while not stop.is_set():
            try:
                worked = self.run_once()
            except Exception:
                # The queue itself failed (e.g. the database is down).
                logger.exception("Worker %s could not poll jobs", self.worker_id)
                worked = False
            if not worked:
                stop.wait(self.settings.worker_poll_interval_seconds)
        logger.info("Worker %s stopped", self.worker_id)

    def run_once(self) -> bool:
        """Claim and process a single job.

        Returns:
            True if a job was claimed, False if the queue was empty.
        """
        job = self.repositories.jobs.claim_next(self.worker_id)
        if job is None:
            return False

        logger.info("Worker %s claimed job %s (%s)", self.worker_id, job.id, job.type)
        try:
            self.handle(job)
        except Exception as exc:
            logger.exception("Job %s (%s) failed", job.id, job.type)
            self.record_failure(job, exc)
        else:
            self.repositories.jobs.mark_done(job.id)
            logger.info("Job %s done", job.id)
        return True

    def handle(self, job: db_models.Job) -> None:
        match job.type:
            case db_models.JobType.PROCESS_LAYER:
                self.process_layer(int(job.payload["layer_id"]))
            case db_models.JobType.BUILD_MBTILES:
                self.packages.build_package(job.payload)
            case _:
                typing.assert_never(job.type)

    def process_layer(self, layer_id: int) -> db_models.Layer:
        """Run ingestion for one layer and mark it ready."""
        layer = self.repositories.layers.update_status(
            layer_id,
            db_models.LayerStatus.PROCESSING,
        )
        self.storage.layer_dir(layer.id).mkdir(parents=True, exist_ok=True)

        result = self.ingest(layer)
        self.storage.write_metadata(layer, result.bounds)
        return self.repositories.layers.update_status(
            layer.id,
            db_models.LayerStatus.READY,
            local_path=result.local_path,
            bounds=result.bounds,
        )

    def ingest(self, layer: db_models.Layer) -> db_models.IngestResult:
        options: dict[str, Any] = {
            "layer_storage": self.storage,
            "client": self.client,
            "settings": self.settings,
            "resolve": self.resolve,
        }
        match layer.type:
            case db_models.LayerType.WMS:
                return db_models.IngestResult(local_path=None, bounds=None)
            case db_models.LayerType.GEOTIFF | db_models.LayerType.GEOPDF:
                return ingest_raster.ingest_raster(layer, **options)
            case (
                db_models.LayerType.WFS
                | db_models.LayerType.SHAPEFILE
                | db_models.LayerType.GEOJSON
            ):
                return ingest_vector.ingest_vector(layer, **options)
            case _:
                typing.assert_never(layer.type)

    def record_failure(self, job: db_models.Job, exc: Exception) -> None:
        """Move the job's subject to ``error`` and store the diagnostic."""
        message = describe_failure(exc)
        try:
            match job.type:
                case db_models.JobType.PROCESS_LAYER:
                    self.repositories.layers.update_status(
                        int(job.payload["layer_id"]),
                        db_models.LayerStatus.ERROR,
                    )
                case db_models.JobType.BUILD_MBTILES:
                    self.repositories.packages.update_status(
                        int(job.payload["package_id"]),
                        db_models.PackageStatus.ERROR,
                    )
                case _:
                    typing.assert_never(job.type)
        except (errors.GeoLayersError, KeyError, ValueError) as status_exc:
            logger.warning(
                "Could not mark subject of job %s as failed: %s",
                job.id,
                status_exc,
            )
        self.repositories.jobs.mark_error(job.id, message)
