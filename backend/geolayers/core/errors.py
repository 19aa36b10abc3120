"""Domain error taxonomy shared by the API and the services.

Services raise these exceptions; ``geolayers.main`` registers handlers that
translate them into JSON responses with the matching status code. The
worker never lets them escape the dispatch loop; it records them on the
layer, package and job instead.

Example:
    >>> from geolayers.core import errors
    >>> raise errors.NotReady("Layer not ready", status="processing")
    >>> # -> HTTP 503 {"error": "Layer not ready", "status": "processing"}
"""

from __future__ import annotations


class GeoLayersError(Exception):
    """Base class for errors that map onto an HTTP status code."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_body(self) -> dict[str, str]:
        return {"error": self.message}


class ValidationError(GeoLayersError):
    """Malformed or out-of-range input. Never touches storage or network."""

    status_code = 400


class NotFound(GeoLayersError):
    """Unknown id or missing artifact."""

    status_code = 404


class NotReady(GeoLayersError):
    """Entity exists but has not reached the state the request needs.

    Carries the current status so a client can decide whether to poll.
    """

    status_code = 503

    def __init__(self, message: str, status: str) -> None:
        super().__init__(message)
        self.status = status

    def to_body(self) -> dict[str, str]:
        return {"error": self.message, "status": self.status}


class UpstreamFailure(GeoLayersError):
    """A WMS fetch failed or returned something that is not a PNG."""

    status_code = 502


class InternalError(GeoLayersError):
    """Unexpected storage fault. The message is only logged server-side."""

    status_code = 500

    def to_body(self) -> dict[str, str]:
        return {"error": "Internal server error"}


class InvalidTransition(GeoLayersError):
    """A status change that the entity's state machine does not allow."""

    status_code = 409
