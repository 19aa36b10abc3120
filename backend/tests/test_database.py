"""Tests for the repositories in geolayers.db.

Covers the in-memory repositories (atomic create-with-job, status
transitions, concurrent job claims) and the PostgreSQL row converters and
claim query, using a fake cursor instead of a running database.
"""

from __future__ import annotations

import contextlib
import datetime
import threading
from typing import TYPE_CHECKING, Any

import pytest

from geolayers.core import errors
from geolayers.db import database, memory
from geolayers.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Iterator

    from geolayers.core import config


def _layer(**overrides: Any) -> db_models.Layer:
    values: dict[str, Any] = {
        "id": 0,
        "name": "Parks",
        "type": db_models.LayerType.GEOJSON,
        "source_url": "https://example.org/parks.geojson",
        "min_zoom": 0,
        "max_zoom": 18,
    }
    values.update(overrides)
    return db_models.Layer(**values)


def test_create_layer_enqueues_job(repositories: database.Repositories) -> None:
    """A created layer is pending and has exactly one process_layer job."""
    layer = repositories.layers.create(_layer())
    assert layer.id == 1
    assert layer.status is db_models.LayerStatus.PENDING

    jobs = repositories.jobs
    assert isinstance(jobs, memory.InMemoryJobQueue)
    [job] = jobs.all()
    assert job.type is db_models.JobType.PROCESS_LAYER
    assert job.payload == {"layer_id": layer.id}
    assert job.status is db_models.JobStatus.PENDING


def test_get_returns_copies(repositories: database.Repositories) -> None:
    layer = repositories.layers.create(_layer())
    fetched = repositories.layers.get(layer.id)
    assert fetched is not None
    fetched.name = "changed"
    again = repositories.layers.get(layer.id)
    assert again is not None and again.name == "Parks"
    assert repositories.layers.get(999) is None


def test_all_lists_newest_first(repositories: database.Repositories) -> None:
    base = datetime.datetime(2024, 1, 1, tzinfo=datetime.UTC)
    for offset in range(3):
        repositories.layers.create(
            _layer(
                name=f"layer{offset}",
                created_at=base + datetime.timedelta(minutes=offset),
            ),
        )
    names = [layer.name for layer in repositories.layers.all()]
    assert names == ["layer2", "layer1", "layer0"]


def test_layer_status_walks_forward(repositories: database.Repositories) -> None:
    layer = repositories.layers.create(_layer())
    layers = repositories.layers
    layers.update_status(layer.id, db_models.LayerStatus.PROCESSING)
    ready = layers.update_status(
        layer.id,
        db_models.LayerStatus.READY,
        local_path="/tmp/out.geojson",
        bounds=(0.0, 0.0, 1.0, 1.0),
    )
    assert ready.status is db_models.LayerStatus.READY
    assert ready.local_path == "/tmp/out.geojson"
    assert ready.bounds == (0.0, 0.0, 1.0, 1.0)


@pytest.mark.parametrize(
    "target",
    [
        db_models.LayerStatus.PENDING,
        db_models.LayerStatus.PROCESSING,
        db_models.LayerStatus.ERROR,
    ],
)
def test_ready_layer_never_moves(
    repositories: database.Repositories,
    target: db_models.LayerStatus,
) -> None:
    layer = repositories.layers.create(_layer())
    repositories.layers.update_status(layer.id, db_models.LayerStatus.PROCESSING)
    repositories.layers.update_status(layer.id, db_models.LayerStatus.READY)
    with pytest.raises(errors.InvalidTransition):
        repositories.layers.update_status(layer.id, target)


def test_pending_layer_cannot_skip_processing(
    repositories: database.Repositories,
) -> None:
    layer = repositories.layers.create(_layer())
    with pytest.raises(errors.InvalidTransition):
        repositories.layers.update_status(layer.id, db_models.LayerStatus.READY)


def test_update_unknown_layer(repositories: database.Repositories) -> None:
    with pytest.raises(errors.NotFound):
        repositories.layers.update_status(5, db_models.LayerStatus.PROCESSING)


def test_create_package_enqueues_build_job(
    repositories: database.Repositories,
) -> None:
    package = repositories.packages.create(
        db_models.OfflinePackage(
            id=0,
            layer_id=3,
            min_zoom=1,
            max_zoom=4,
            bbox="0,0,10,10",
        ),
    )
    job = repositories.jobs.claim_next("w1")
    assert job is not None
    assert job.type is db_models.JobType.BUILD_MBTILES
    assert job.payload == {
        "package_id": package.id,
        "layer_id": 3,
        "min_zoom": 1,
        "max_zoom": 4,
        "bbox": "0,0,10,10",
    }


def test_claim_marks_processing_and_finishes(
    repositories: database.Repositories,
) -> None:
    jobs = repositories.jobs
    first = jobs.enqueue(db_models.JobType.PROCESS_LAYER, {"layer_id": 1})
    jobs.enqueue(db_models.JobType.PROCESS_LAYER, {"layer_id": 2})

    claimed = jobs.claim_next("worker-a")
    assert claimed is not None
    assert claimed.id == first.id
    assert claimed.status is db_models.JobStatus.PROCESSING
    assert claimed.claimed_by == "worker-a"

    jobs.mark_error(claimed.id, "CommandError: boom")
    stored = jobs.get(claimed.id)
    assert stored is not None
    assert stored.status is db_models.JobStatus.ERROR
    assert stored.error == "CommandError: boom"

    # A finished job is not reopened.
    jobs.mark_done(claimed.id)
    assert jobs.get(claimed.id).status is db_models.JobStatus.ERROR


def test_concurrent_claims_never_share_a_job(
    repositories: database.Repositories,
) -> None:
    jobs = repositories.jobs
    for layer_id in range(50):
        jobs.enqueue(db_models.JobType.PROCESS_LAYER, {"layer_id": layer_id})

    claimed: list[int] = []
    lock = threading.Lock()
    start = threading.Barrier(8)

    def claim_all(worker: str) -> None:
        start.wait()
        while (job := jobs.claim_next(worker)) is not None:
            with lock:
                claimed.append(job.id)

    threads = [
        threading.Thread(target=claim_all, args=(f"w{i}",)) for i in range(8)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(claimed) == list(range(1, 51))


def test_layer_row_round_trip() -> None:
    """_to_row and _from_row agree, including bounds columns."""
    layer = _layer(
        id=4,
        status=db_models.LayerStatus.READY,
        bounds=(1.5, 2.5, 3.5, 4.5),
        local_path="/x/output.geojson",
    )
    row = database.PostgresLayerRepository._to_row(layer)
    assert row["type"] == "geojson"
    assert row["bounds_maxy"] == 4.5
    assert database.PostgresLayerRepository._from_row(row) == layer


def test_layer_from_row_partial_bounds_is_none() -> None:
    row = database.PostgresLayerRepository._to_row(_layer(id=2))
    row["bounds_minx"] = 1.0
    assert database.PostgresLayerRepository._from_row(row).bounds is None


class FakeCursor:
    def __init__(self, row: dict[str, Any] | None) -> None:
        self.row = row
        self.executed: list[tuple[str, Any]] = []

    def execute(self, sql: str, params: Any = None) -> None:
        self.executed.append((sql, params))

    def fetchone(self) -> dict[str, Any] | None:
        return self.row


class FakeStore(database.PostgresStore):
    def __init__(self, settings: config.Settings, cursor: FakeCursor) -> None:
        super().__init__(settings)
        self.cursor = cursor

    @contextlib.contextmanager
    def transaction(self) -> Iterator[Any]:
        yield self.cursor


def test_postgres_claim_uses_skip_locked(settings: config.Settings) -> None:
    now = datetime.datetime.now(datetime.UTC)
    cursor = FakeCursor(
        {
            "id": 9,
            "type": "process_layer",
            "payload": {"layer_id": 3},
            "status": "processing",
            "claimed_by": "w1",
            "error": None,
            "created_at": now,
            "updated_at": now,
        },
    )
    queue = database.PostgresJobQueue(FakeStore(settings, cursor))

    job = queue.claim_next("w1")

    sql, params = cursor.executed[0]
    assert "FOR UPDATE SKIP LOCKED" in sql
    assert params == ("w1",)
    assert job is not None
    assert job.id == 9
    assert job.payload == {"layer_id": 3}


def test_postgres_claim_empty_queue(settings: config.Settings) -> None:
    queue = database.PostgresJobQueue(FakeStore(settings, FakeCursor(None)))
    assert queue.claim_next("w1") is None
