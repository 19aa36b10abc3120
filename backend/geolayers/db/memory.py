"""In-memory repositories for tests and local development.

The three repositories share one re-entrant lock so that creating a layer
(or package) together with its job is atomic, and so that ``claim_next``
hands each pending job to exactly one caller even when several dispatcher
threads poll concurrently. Records are copied on the way in and out, so
callers never mutate stored state by accident.
"""

from __future__ import annotations

import dataclasses
import datetime
import itertools
import threading
from typing import TYPE_CHECKING, Any

from geolayers.core import errors
from geolayers.db import database
from geolayers.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Iterable


class InMemoryJobQueue(database.JobQueueProtocol):
    """FIFO job queue held in a dict keyed by job id.

    Jobs are claimed in id order. ``lock`` is shared with the layer and
    package repositories built by ``build_in_memory_repositories``, so an
    entity and its job appear together.

    Attributes:
        lock: Re-entrant lock guarding every repository of the bundle.
    """

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self._jobs: dict[int, db_models.Job] = {}
        self._ids = itertools.count(1)

    def enqueue(
        self,
        job_type: db_models.JobType,
        payload: dict[str, Any],
    ) -> db_models.Job:
        with self.lock:
            job = db_models.Job(
                id=next(self._ids),
                type=job_type,
                payload=dict(payload),
            )
            self._jobs[job.id] = job
            return dataclasses.replace(job, payload=dict(job.payload))

    def claim_next(self, worker_id: str) -> db_models.Job | None:
        with self.lock:
            for job_id in sorted(self._jobs):
                job = self._jobs[job_id]
                if job.status is db_models.JobStatus.PENDING:
                    job.status = db_models.JobStatus.PROCESSING
                    job.claimed_by = worker_id
                    job.updated_at = datetime.datetime.now(datetime.UTC)
                    return dataclasses.replace(job, payload=dict(job.payload))
        return None

    def mark_done(self, job_id: int) -> None:
        self._finish(job_id, db_models.JobStatus.DONE, None)

    def mark_error(self, job_id: int, message: str) -> None:
        self._finish(job_id, db_models.JobStatus.ERROR, message)

    def _finish(
        self,
        job_id: int,
        status: db_models.JobStatus,
        message: str | None,
    ) -> None:
        with self.lock:
            job = self._jobs.get(job_id)
            if job is None or job.status is not db_models.JobStatus.PROCESSING:
                return
            job.status = status
            job.error = message
            job.updated_at = datetime.datetime.now(datetime.UTC)

    def get(self, job_id: int) -> db_models.Job | None:
        with self.lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            return dataclasses.replace(job, payload=dict(job.payload))

    def all(self) -> list[db_models.Job]:
        with self.lock:
            return [
                dataclasses.replace(job, payload=dict(job.payload))
                for job in self._jobs.values()
            ]


class InMemoryLayerRepository(database.LayerRepositoryProtocol):
    """Layer store kept in memory, with the same state machine as PostgreSQL.

    ``create`` assigns the next id, forces the ``pending`` status and
    enqueues the ``process_layer`` job under the shared lock. Status
    changes are checked against ``LAYER_TRANSITIONS`` and raise
    ``InvalidTransition`` on any other move.
    """

    def __init__(self, jobs: InMemoryJobQueue) -> None:
        """Attach to ``jobs``, whose lock also guards this repository."""
        self._jobs = jobs
        self._store: dict[int, db_models.Layer] = {}
        self._ids = itertools.count(1)

    def create(self, layer: db_models.Layer) -> db_models.Layer:
        with self._jobs.lock:
            created = dataclasses.replace(
                layer,
                id=next(self._ids),
                status=db_models.LayerStatus.PENDING,
            )
            self._store[created.id] = created
            self._jobs.enqueue(
                db_models.JobType.PROCESS_LAYER,
                {"layer_id": created.id},
            )
            return dataclasses.replace(created)

    def add(self, layer: db_models.Layer) -> db_models.Layer:
        """Store a layer as-is, without a job. Used to seed fixtures."""
        with self._jobs.lock:
            self._store[layer.id] = dataclasses.replace(layer)
            return layer

    def get(self, layer_id: int) -> db_models.Layer | None:
        with self._jobs.lock:
            layer = self._store.get(layer_id)
            return dataclasses.replace(layer) if layer else None

    def all(self) -> Iterable[db_models.Layer]:
        with self._jobs.lock:
            layers = [dataclasses.replace(layer) for layer in self._store.values()]
        return sorted(
            layers,
            key=lambda layer: (layer.created_at, layer.id),
            reverse=True,
        )

    def update_status(
        self,
        layer_id: int,
        status: db_models.LayerStatus,
        *,
        local_path: str | None = None,
        bounds: db_models.BBox | None = None,
    ) -> db_models.Layer:
        with self._jobs.lock:
            layer = self._store.get(layer_id)
            if layer is None:
                raise errors.NotFound("Layer not found")
            database.check_transition(
                layer.status,
                status,
                db_models.LAYER_TRANSITIONS[status],
                "Layer",
            )
            layer.status = status
            if local_path is not None:
                layer.local_path = local_path
            if bounds is not None:
                layer.bounds = bounds
            return dataclasses.replace(layer)


class InMemoryPackageRepository(database.PackageRepositoryProtocol):
    """Offline package store that enqueues ``build_mbtiles`` on create."""

    def __init__(self, jobs: InMemoryJobQueue) -> None:
        self._jobs = jobs
        self._store: dict[int, db_models.OfflinePackage] = {}
        self._ids = itertools.count(1)

    def create(
        self,
        package: db_models.OfflinePackage,
    ) -> db_models.OfflinePackage:
        with self._jobs.lock:
            created = dataclasses.replace(
                package,
                id=next(self._ids),
                status=db_models.PackageStatus.PENDING,
            )
            self._store[created.id] = created
            self._jobs.enqueue(
                db_models.JobType.BUILD_MBTILES,
                database.package_job_payload(created),
            )
            return dataclasses.replace(created)

    def get(self, package_id: int) -> db_models.OfflinePackage | None:
        with self._jobs.lock:
            package = self._store.get(package_id)
            return dataclasses.replace(package) if package else None

    def update_status(
        self,
        package_id: int,
        status: db_models.PackageStatus,
        *,
        file_path: str | None = None,
        tile_count: int | None = None,
    ) -> db_models.OfflinePackage:
        with self._jobs.lock:
            package = self._store.get(package_id)
            if package is None:
                raise errors.NotFound("Package not found")
            database.check_transition(
                package.status,
                status,
                db_models.PACKAGE_TRANSITIONS[status],
                "Package",
            )
            package.status = status
            if file_path is not None:
                package.file_path = file_path
            if tile_count is not None:
                package.tile_count = tile_count
            return dataclasses.replace(package)


def build_in_memory_repositories() -> database.Repositories:
    """Create a Repositories bundle backed by process memory."""
    jobs = InMemoryJobQueue()
    return database.Repositories(
        layers=InMemoryLayerRepository(jobs),
        jobs=jobs,
        packages=InMemoryPackageRepository(jobs),
    )
