"""Input validation for layer registration and offline package requests.

All checks run before anything touches the store, the filesystem or the
network, and raise ``errors.ValidationError`` (HTTP 400).
"""

from __future__ import annotations

import math
import pathlib
import re
from typing import TYPE_CHECKING

import httpx

from geolayers.core import errors
from geolayers.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Iterable

MAX_URL_LENGTH = 2083
MIN_ZOOM = 0
MAX_ZOOM = 22

_HTTP_URL = re.compile(r"^https?://", re.IGNORECASE)

REMOTE_ONLY_TYPES = frozenset({db_models.LayerType.WMS, db_models.LayerType.WFS})


def is_http_url(value: str) -> bool:
    return bool(_HTTP_URL.match(value))


def validate_name(name: str) -> str:
    name = name.strip()
    if not name:
        raise errors.ValidationError("name is required")
    return name


def validate_layer_type(value: str) -> db_models.LayerType:
    try:
        return db_models.LayerType(value.strip())
    except ValueError:
        allowed = ", ".join(t.value for t in db_models.LayerType)
        raise errors.ValidationError(
            f"type must be one of: {allowed}",
        ) from None


def validate_source_url(
    source_url: str,
    layer_type: db_models.LayerType,
    local_roots: Iterable[pathlib.Path],
) -> str:
    """Validate a layer source.

    Accepts an http(s) URL or an absolute path inside one of
    ``local_roots``. Anything else (``javascript:``, ``data:``, ``file:``,
    relative paths, ``..`` escapes) is rejected.

    Args:
        source_url: Raw source string from the request.
        layer_type: Layer type; WMS and WFS sources must be URLs.
        local_roots: Directories local sources must live under.

    Returns:
        The stripped source string.

    Raises:
        ValidationError: If the source is not acceptable.
    """
    source_url = source_url.strip()
    if not source_url or len(source_url) > MAX_URL_LENGTH:
        raise errors.ValidationError(
            "source_url is required and must be <= "
            f"{MAX_URL_LENGTH} characters",
        )

    if is_http_url(source_url):
        try:
            host = httpx.URL(source_url).host
        except httpx.InvalidURL as exc:
            raise errors.ValidationError(
                f"source_url is not a valid URL: {exc}",
            ) from exc
        if not host:
            raise errors.ValidationError("source_url must name a host")
        return source_url

    if not source_url.startswith("/"):
        raise errors.ValidationError(
            "source_url must be an http(s) URL or an absolute file path",
        )

    if layer_type in REMOTE_ONLY_TYPES:
        raise errors.ValidationError(
            f"source_url for {layer_type} layers must be an http(s) URL",
        )

    resolved = pathlib.Path(source_url).resolve()
    for root in local_roots:
        if resolved.is_relative_to(root.resolve()):
            return source_url
    raise errors.ValidationError(
        "source_url path is outside the allowed source directories",
    )


def validate_zoom_range(min_zoom: int, max_zoom: int) -> tuple[int, int]:
    if not (
        MIN_ZOOM <= min_zoom <= MAX_ZOOM
        and MIN_ZOOM <= max_zoom <= MAX_ZOOM
        and min_zoom <= max_zoom
    ):
        raise errors.ValidationError(
            f"min_zoom / max_zoom must be between {MIN_ZOOM} and {MAX_ZOOM}, "
            "min <= max",
        )
    return min_zoom, max_zoom


def parse_bbox(raw: str | None) -> db_models.BBox | None:
    """Parse a "minx,miny,maxx,maxy" string.

    Returns:
        The bbox tuple, or None when the string is empty, does not hold
        exactly four finite numbers, or is not ordered (minx < maxx and
        miny < maxy).
    """
    if not raw:
        return None

    parts = raw.split(",")
    if len(parts) != 4:
        return None

    try:
        values = [float(part) for part in parts]
    except ValueError:
        return None

    if not all(math.isfinite(v) for v in values):
        return None

    minx, miny, maxx, maxy = values
    if minx >= maxx or miny >= maxy:
        return None
    return (minx, miny, maxx, maxy)


def require_bbox(raw: str) -> db_models.BBox:
    bbox = parse_bbox(raw.strip())
    if bbox is None:
        raise errors.ValidationError(
            'bbox must be "minx,miny,maxx,maxy" with minx < maxx and '
            "miny < maxy",
        )
    return bbox
