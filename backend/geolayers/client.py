"""Client helper for the offline package workflow.

Requests a package, polls its status until the build finishes and
downloads the archive. Time is injected (``clock`` and ``sleep``) so the
polling contract can be exercised without waiting, and a poll can be
cancelled from another thread between attempts.

With the defaults (5 second interval, 120 attempts) a build gets about
ten minutes before the poller gives up.

Example:
    >>> import httpx
    >>> from geolayers.client import PackagePoller
    >>> with httpx.Client(base_url="http://localhost:8000") as http:
    ...     poller = PackagePoller(http)
    ...     package_id = poller.request_package(3, 8, 12, "0,0,100000,100000")
    ...     poller.wait_until_ready(package_id)
    ...     poller.download(package_id, pathlib.Path("layer3.mbtiles"))
"""

from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Callable

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 5.0
DEFAULT_MAX_ATTEMPTS = 120


class PollError(RuntimeError):
    """Base class for offline package client failures."""


class PackageBuildFailed(PollError):
    """The server reported the package build as failed."""


class PollTimeout(PollError):
    """The package was not ready after the maximum number of attempts."""


class PollCancelled(PollError):
    """``cancel()`` was called while polling."""


class PackagePoller:
    """Polls ``/api/offline-package/{id}`` until the archive is ready.

    Args:
        http_client: Client whose ``base_url`` points at the API server.
        clock: Monotonic time source, used to report elapsed time.
        sleep: Called with ``interval`` between attempts.
        interval: Seconds between status requests.
        max_attempts: Status requests made before giving up.
    """

    def __init__(
        self,
        http_client: httpx.Client,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self.http = http_client
        self.clock = clock
        self.sleep = sleep
        self.interval = interval
        self.max_attempts = max_attempts
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        self._cancelled.set()

    def request_package(
        self,
        layer_id: int,
        min_zoom: int,
        max_zoom: int,
        bbox: str,
    ) -> int:
        """Ask the server to build a package and return its id."""
        response = self.http.post(
            "/api/offline-package",
            json={
                "layerId": layer_id,
                "minZoom": min_zoom,
                "maxZoom": max_zoom,
                "bbox": bbox,
            },
        )
        response.raise_for_status()
        return int(response.json()["packageId"])

    def fetch_status(self, package_id: int) -> dict[str, Any]:
        """GET the package status, retrying once on a network error."""
        url = f"/api/offline-package/{package_id}"
        try:
            response = self.http.get(url)
        except httpx.TransportError as exc:
            logger.warning("Polling package %s failed (%s), retrying", package_id, exc)
            try:
                response = self.http.get(url)
            except httpx.TransportError as retry_exc:
                raise PollError(
                    f"Could not reach server for package {package_id}: {retry_exc}",
                ) from retry_exc

        if response.is_error:
            raise PollError(
                f"Status request for package {package_id} answered "
                f"HTTP {response.status_code}",
            )
        return response.json()

    def wait_until_ready(self, package_id: int) -> dict[str, Any]:
        """Block until the package is ready and return its status document.

        Raises:
            PackageBuildFailed: The build ended in ``error``.
            PollTimeout: Still not ready after ``max_attempts`` polls.
            PollCancelled: ``cancel()`` was called.
            PollError: The server could not be reached or refused.
        """
        started = self.clock()
        for attempt in range(1, self.max_attempts + 1):
            if self._cancelled.is_set():
                raise PollCancelled(f"Polling package {package_id} cancelled")

            status = self.fetch_status(package_id)
            state = status.get("status")
            if state == "ready":
                return status
            if state == "error":
                raise PackageBuildFailed(f"Package {package_id} failed to build")

            logger.debug(
                "Package %s is %s (attempt %d/%d)",
                package_id,
                state,
                attempt,
                self.max_attempts,
            )
            if attempt < self.max_attempts:
                self.sleep(self.interval)

        elapsed = self.clock() - started
        raise PollTimeout(
            f"Package {package_id} not ready after {self.max_attempts} "
            f"attempts ({elapsed:.0f}s)",
        )

    def download(self, package_id: int, dest: pathlib.Path) -> pathlib.Path:
        """Stream the archive of a ready package to ``dest``."""
        dest.parent.mkdir(parents=True, exist_ok=True)
        with self.http.stream(
            "GET",
            f"/api/offline-package/{package_id}/download",
        ) as response:
            if response.is_error:
                raise PollError(
                    f"Download of package {package_id} answered "
                    f"HTTP {response.status_code}",
                )
            content_type = response.headers.get("content-type", "")
            if not content_type.startswith("application/x-sqlite3"):
                raise PollError(f"Package {package_id} is not ready for download")
            with dest.open("wb") as out:
                for chunk in response.iter_bytes():
                    out.write(chunk)
        return dest
