"""Database helpers and repositories for layers, jobs and offline packages.

The API and the worker depend only on the protocols defined here. The
PostgreSQL implementations are used in production; ``geolayers.db.memory``
provides the same semantics in-process for tests and local development.

Every layer and offline package is inserted in the same transaction as the
job that processes it, so a row never exists without its job (and vice
versa). Jobs are claimed with ``FOR UPDATE SKIP LOCKED`` so that competing
worker processes never receive the same job.
"""

from __future__ import annotations

import contextlib
import dataclasses
import datetime
import logging
from typing import TYPE_CHECKING, Any, Protocol, cast

import psycopg2
import psycopg2.extensions
import psycopg2.extras

from geolayers.core import errors
from geolayers.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

    from geolayers.core import config

logger = logging.getLogger(__name__)


class LayerRepositoryProtocol(Protocol):
    """Persistence for Layer records and their status machine."""

    def create(self, layer: db_models.Layer) -> db_models.Layer:
        """Insert a pending layer and enqueue its process_layer job."""
        ...

    def get(self, layer_id: int) -> db_models.Layer | None: ...

    def all(self) -> Iterable[db_models.Layer]: ...

    def update_status(
        self,
        layer_id: int,
        status: db_models.LayerStatus,
        *,
        local_path: str | None = None,
        bounds: db_models.BBox | None = None,
    ) -> db_models.Layer: ...


class JobQueueProtocol(Protocol):
    """Durable FIFO of typed jobs with an atomic claim."""

    def enqueue(
        self,
        job_type: db_models.JobType,
        payload: dict[str, Any],
    ) -> db_models.Job: ...

    def claim_next(self, worker_id: str) -> db_models.Job | None: ...

    def mark_done(self, job_id: int) -> None: ...

    def mark_error(self, job_id: int, message: str) -> None: ...

    def get(self, job_id: int) -> db_models.Job | None: ...


class PackageRepositoryProtocol(Protocol):
    """Persistence for OfflinePackage records."""

    def create(
        self,
        package: db_models.OfflinePackage,
    ) -> db_models.OfflinePackage:
        """Insert a pending package and enqueue its build_mbtiles job."""
        ...

    def get(self, package_id: int) -> db_models.OfflinePackage | None: ...

    def update_status(
        self,
        package_id: int,
        status: db_models.PackageStatus,
        *,
        file_path: str | None = None,
        tile_count: int | None = None,
    ) -> db_models.OfflinePackage: ...


@dataclasses.dataclass
class Repositories:
    """Store handle injected into the API and the dispatcher."""

    layers: LayerRepositoryProtocol
    jobs: JobQueueProtocol
    packages: PackageRepositoryProtocol


def package_job_payload(package: db_models.OfflinePackage) -> dict[str, Any]:
    return {
        "package_id": package.id,
        "layer_id": package.layer_id,
        "min_zoom": package.min_zoom,
        "max_zoom": package.max_zoom,
        "bbox": package.bbox,
    }


def check_transition(
    current: db_models.LayerStatus | db_models.PackageStatus,
    target: db_models.LayerStatus | db_models.PackageStatus,
    allowed: frozenset[Any],
    entity: str,
) -> None:
    """Raise InvalidTransition unless ``current`` may advance to ``target``."""
    if current not in allowed:
        raise errors.InvalidTransition(
            f"{entity} cannot move from {current} to {target}",
        )


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS layers (
  id BIGSERIAL PRIMARY KEY,
  name TEXT NOT NULL,
  type TEXT NOT NULL,
  source_url TEXT NOT NULL,
  min_zoom INTEGER NOT NULL,
  max_zoom INTEGER NOT NULL,
  status TEXT NOT NULL DEFAULT 'pending',
  local_path TEXT,
  bounds_minx DOUBLE PRECISION,
  bounds_miny DOUBLE PRECISION,
  bounds_maxx DOUBLE PRECISION,
  bounds_maxy DOUBLE PRECISION,
  created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS jobs (
  id BIGSERIAL PRIMARY KEY,
  type TEXT NOT NULL,
  payload JSONB NOT NULL,
  status TEXT NOT NULL DEFAULT 'pending',
  claimed_by TEXT,
  error TEXT,
  created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
  updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS jobs_pending_idx ON jobs (id)
  WHERE status = 'pending';

CREATE TABLE IF NOT EXISTS offline_packages (
  id BIGSERIAL PRIMARY KEY,
  layer_id BIGINT NOT NULL REFERENCES layers (id),
  min_zoom INTEGER NOT NULL,
  max_zoom INTEGER NOT NULL,
  bbox TEXT NOT NULL,
  status TEXT NOT NULL DEFAULT 'pending',
  file_path TEXT,
  tile_count INTEGER,
  created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""


class PostgresStore:
    """Connection handling shared by the PostgreSQL repositories."""

    def __init__(self, settings: config.Settings) -> None:
        self.settings = settings

    @contextlib.contextmanager
    def transaction(self) -> Iterator[psycopg2.extensions.cursor]:
        """Yield a dict cursor inside a transaction, committing on success."""
        conn = psycopg2.connect(
            self.settings.database_url,
            cursor_factory=psycopg2.extras.RealDictCursor,
        )
        try:
            with conn, conn.cursor() as cur:
                yield cur
        finally:
            conn.close()

    def ensure_schema(self) -> None:
        with self.transaction() as cur:
            cur.execute(SCHEMA_SQL)


def _insert_job(
    cur: psycopg2.extensions.cursor,
    job_type: db_models.JobType,
    payload: dict[str, Any],
) -> dict[str, Any]:
    cur.execute(
        """
        INSERT INTO jobs (type, payload, status)
        VALUES (%s, %s, 'pending')
        RETURNING *
        """,
        (str(job_type), psycopg2.extras.Json(payload)),
    )
    return cast(dict[str, Any], cur.fetchone())


class PostgresLayerRepository(LayerRepositoryProtocol):
    """PostgreSQL-backed repository for layers."""

    def __init__(self, store: PostgresStore) -> None:
        self.store = store

    def create(self, layer: db_models.Layer) -> db_models.Layer:
        row = self._to_row(layer)
        with self.store.transaction() as cur:
            cur.execute(
                """
                INSERT INTO layers (
                    name, type, source_url, min_zoom, max_zoom, status,
                    created_at
                ) VALUES (%(name)s, %(type)s, %(source_url)s, %(min_zoom)s,
                    %(max_zoom)s, 'pending', %(created_at)s)
                RETURNING *
                """,
                row,
            )
            created = self._from_row(cast(dict[str, Any], cur.fetchone()))
            _insert_job(
                cur,
                db_models.JobType.PROCESS_LAYER,
                {"layer_id": created.id},
            )
        logger.info("Registered layer %s (%s)", created.id, created.type)
        return created

    def get(self, layer_id: int) -> db_models.Layer | None:
        with self.store.transaction() as cur:
            cur.execute("SELECT * FROM layers WHERE id = %s", (layer_id,))
            row = cur.fetchone()
        if row is None:
            return None
        return self._from_row(cast(dict[str, Any], row))

    def all(self) -> Iterable[db_models.Layer]:
        with self.store.transaction() as cur:
            cur.execute("SELECT * FROM layers ORDER BY created_at DESC, id DESC")
            rows = cur.fetchall()
        return [self._from_row(cast(dict[str, Any], row)) for row in rows]

    def update_status(
        self,
        layer_id: int,
        status: db_models.LayerStatus,
        *,
        local_path: str | None = None,
        bounds: db_models.BBox | None = None,
    ) -> db_models.Layer:
        allowed = db_models.LAYER_TRANSITIONS[status]
        bbox = bounds or (None, None, None, None)
        with self.store.transaction() as cur:
            cur.execute(
                "SELECT * FROM layers WHERE id = %s FOR UPDATE",
                (layer_id,),
            )
            row = cur.fetchone()
            if row is None:
                raise errors.NotFound("Layer not found")
            current = self._from_row(cast(dict[str, Any], row))
            check_transition(current.status, status, allowed, "Layer")
            cur.execute(
                """
                UPDATE layers SET
                    status = %(status)s,
                    local_path = COALESCE(%(local_path)s, local_path),
                    bounds_minx = COALESCE(%(minx)s, bounds_minx),
                    bounds_miny = COALESCE(%(miny)s, bounds_miny),
                    bounds_maxx = COALESCE(%(maxx)s, bounds_maxx),
                    bounds_maxy = COALESCE(%(maxy)s, bounds_maxy)
                WHERE id = %(id)s
                RETURNING *
                """,
                {
                    "id": layer_id,
                    "status": str(status),
                    "local_path": local_path,
                    "minx": bbox[0],
                    "miny": bbox[1],
                    "maxx": bbox[2],
                    "maxy": bbox[3],
                },
            )
            return self._from_row(cast(dict[str, Any], cur.fetchone()))

    @staticmethod
    def _to_row(layer: db_models.Layer) -> dict[str, object]:
        """Convert a Layer to a parameter dictionary for SQL statements."""
        bounds = layer.bounds or (None, None, None, None)
        return {
            "id": layer.id,
            "name": layer.name,
            "type": str(layer.type),
            "source_url": layer.source_url,
            "min_zoom": layer.min_zoom,
            "max_zoom": layer.max_zoom,
            "status": str(layer.status),
            "local_path": layer.local_path,
            "bounds_minx": bounds[0],
            "bounds_miny": bounds[1],
            "bounds_maxx": bounds[2],
            "bounds_maxy": bounds[3],
            "created_at": layer.created_at,
        }

    @staticmethod
    def _from_row(row: dict[str, Any]) -> db_models.Layer:
        """Convert a database row dictionary to a Layer."""
        bounds = (
            row.get("bounds_minx"),
            row.get("bounds_miny"),
            row.get("bounds_maxx"),
            row.get("bounds_maxy"),
        )
        bounds_tuple = (
            None
            if any(v is None for v in bounds)
            else cast(db_models.BBox, tuple(float(v) for v in bounds))
        )
        created_at = row.get("created_at") or datetime.datetime.now(
            datetime.UTC,
        )
        return db_models.Layer(
            id=int(row["id"]),
            name=str(row["name"]),
            type=db_models.LayerType(row["type"]),
            source_url=str(row["source_url"]),
            min_zoom=int(row["min_zoom"]),
            max_zoom=int(row["max_zoom"]),
            status=db_models.LayerStatus(row["status"]),
            local_path=row.get("local_path"),
            bounds=bounds_tuple,
            created_at=created_at,
        )


class PostgresJobQueue(JobQueueProtocol):
    """PostgreSQL-backed job queue with a SKIP LOCKED claim."""

    def __init__(self, store: PostgresStore) -> None:
        self.store = store

    def enqueue(
        self,
        job_type: db_models.JobType,
        payload: dict[str, Any],
    ) -> db_models.Job:
        with self.store.transaction() as cur:
            row = _insert_job(cur, job_type, payload)
        return self._from_row(row)

    def claim_next(self, worker_id: str) -> db_models.Job | None:
        """Atomically claim the oldest pending job and mark it processing.

        The inner SELECT locks one pending row and skips rows already locked
        by other workers, so two workers never receive the same job.
        """
        with self.store.transaction() as cur:
            cur.execute(
                """
                UPDATE jobs SET
                    status = 'processing',
                    claimed_by = %s,
                    updated_at = now()
                WHERE id = (
                    SELECT id FROM jobs
                    WHERE status = 'pending'
                    ORDER BY id
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING *
                """,
                (worker_id,),
            )
            row = cur.fetchone()
        if row is None:
            return None
        return self._from_row(cast(dict[str, Any], row))

    def mark_done(self, job_id: int) -> None:
        with self.store.transaction() as cur:
            cur.execute(
                """
                UPDATE jobs SET status = 'done', updated_at = now()
                WHERE id = %s AND status = 'processing'
                """,
                (job_id,),
            )

    def mark_error(self, job_id: int, message: str) -> None:
        with self.store.transaction() as cur:
            cur.execute(
                """
                UPDATE jobs SET status = 'error', error = %s,
                    updated_at = now()
                WHERE id = %s AND status = 'processing'
                """,
                (message, job_id),
            )

    def get(self, job_id: int) -> db_models.Job | None:
        with self.store.transaction() as cur:
            cur.execute("SELECT * FROM jobs WHERE id = %s", (job_id,))
            row = cur.fetchone()
        if row is None:
            return None
        return self._from_row(cast(dict[str, Any], row))

    @staticmethod
    def _from_row(row: dict[str, Any]) -> db_models.Job:
        return db_models.Job(
            id=int(row["id"]),
            type=db_models.JobType(row["type"]),
            payload=dict(row["payload"]),
            status=db_models.JobStatus(row["status"]),
            claimed_by=row.get("claimed_by"),
            error=row.get("error"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class PostgresPackageRepository(PackageRepositoryProtocol):
    """PostgreSQL-backed repository for offline packages."""

    def __init__(self, store: PostgresStore) -> None:
        self.store = store

    def create(
        self,
        package: db_models.OfflinePackage,
    ) -> db_models.OfflinePackage:
        with self.store.transaction() as cur:
            cur.execute(
                """
                INSERT INTO offline_packages (
                    layer_id, min_zoom, max_zoom, bbox, status, created_at
                ) VALUES (%s, %s, %s, %s, 'pending', %s)
                RETURNING *
                """,
                (
                    package.layer_id,
                    package.min_zoom,
                    package.max_zoom,
                    package.bbox,
                    package.created_at,
                ),
            )
            created = self._from_row(cast(dict[str, Any], cur.fetchone()))
            _insert_job(
                cur,
                db_models.JobType.BUILD_MBTILES,
                package_job_payload(created),
            )
        return created

    def get(self, package_id: int) -> db_models.OfflinePackage | None:
        with self.store.transaction() as cur:
            cur.execute(
                "SELECT * FROM offline_packages WHERE id = %s",
                (package_id,),
            )
            row = cur.fetchone()
        if row is None:
            return None
        return self._from_row(cast(dict[str, Any], row))

    def update_status(
        self,
        package_id: int,
        status: db_models.PackageStatus,
        *,
        file_path: str | None = None,
        tile_count: int | None = None,
    ) -> db_models.OfflinePackage:
        allowed = db_models.PACKAGE_TRANSITIONS[status]
        with self.store.transaction() as cur:
            cur.execute(
                "SELECT * FROM offline_packages WHERE id = %s FOR UPDATE",
                (package_id,),
            )
            row = cur.fetchone()
            if row is None:
                raise errors.NotFound("Package not found")
            current = self._from_row(cast(dict[str, Any], row))
            check_transition(current.status, status, allowed, "Package")
            cur.execute(
                """
                UPDATE offline_packages SET
                    status = %s,
                    file_path = COALESCE(%s, file_path),
                    tile_count = COALESCE(%s, tile_count)
                WHERE id = %s
                RETURNING *
                """,
                (str(status), file_path, tile_count, package_id),
            )
            return self._from_row(cast(dict[str, Any], cur.fetchone()))

    @staticmethod
    def _from_row(row: dict[str, Any]) -> db_models.OfflinePackage:
        return db_models.OfflinePackage(
            id=int(row["id"]),
            layer_id=int(row["layer_id"]),
            min_zoom=int(row["min_zoom"]),
            max_zoom=int(row["max_zoom"]),
            bbox=str(row["bbox"]),
            status=db_models.PackageStatus(row["status"]),
            file_path=row.get("file_path"),
            tile_count=row.get("tile_count"),
            created_at=row["created_at"],
        )


def get_repositories(settings: config.Settings) -> Repositories:
    """Create the PostgreSQL repositories, bootstrapping the schema.

    Args:
        settings: Application settings for the database connection.

    Returns:
        Repositories bundle sharing one PostgresStore.
    """
    store = PostgresStore(settings)
    store.ensure_schema()
    return Repositories(
        layers=PostgresLayerRepository(store),
        jobs=PostgresJobQueue(store),
        packages=PostgresPackageRepository(store),
    )
