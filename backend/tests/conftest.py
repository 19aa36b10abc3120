"""Shared fixtures: isolated settings, in-memory store, fake upstreams.

Nothing here touches the network, PostgreSQL or the GDAL toolchain.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx
import pytest
from fastapi import testclient

import helpers
from geolayers import main
from geolayers.core import config
from geolayers.db import memory

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Iterator

    from geolayers.db import database


@pytest.fixture
def settings(tmp_path: pathlib.Path) -> config.Settings:
    upload_dir = tmp_path / "uploads"
    sources_dir = tmp_path / "sources"
    result = config.Settings(
        storage_dir=tmp_path / "storage",
        upload_dir=upload_dir,
        local_source_roots=[upload_dir, sources_dir],
        worker_poll_interval_seconds=0.01,
    )
    result.ensure_directories()
    sources_dir.mkdir()
    return result


@pytest.fixture
def sources_dir(settings: config.Settings) -> pathlib.Path:
    return settings.local_source_roots[1]


@pytest.fixture
def repositories() -> database.Repositories:
    return memory.build_in_memory_repositories()


@pytest.fixture
def png_bytes() -> bytes:
    return helpers.make_png()


@pytest.fixture
def upstream() -> helpers.UpstreamRecorder:
    return helpers.UpstreamRecorder()


@pytest.fixture
def http_client(upstream: helpers.UpstreamRecorder) -> Iterator[httpx.Client]:
    with httpx.Client(transport=httpx.MockTransport(upstream)) as client:
        yield client


@pytest.fixture
def app_client(
    settings: config.Settings,
    repositories: database.Repositories,
    http_client: httpx.Client,
) -> testclient.TestClient:
    app = main.create_app(
        settings=settings,
        repositories=repositories,
        http_client=http_client,
        resolve=helpers.public_resolver,
    )
    return testclient.TestClient(app)
