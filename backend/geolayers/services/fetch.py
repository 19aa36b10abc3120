"""Remote source fetching with SSRF and size protections.

Every URL the server dereferences on behalf of a layer (ingestion sources,
WFS endpoints, WMS GetMap requests) goes through ``validate_url`` first:

- only ``http`` and ``https`` schemes are accepted;
- the host is resolved and rejected if any resulting address is private,
  loopback, link-local, reserved, multicast or unspecified. A host that is
  already an IP literal is checked directly;
- redirects are followed manually (at most ``MAX_REDIRECTS``) and every hop
  is validated again.

``download_source`` additionally rejects disallowed file extensions before
any byte is transferred and aborts (deleting the partial file) once the
configured size cap is exceeded.

Example:
    >>> import httpx
    >>> from geolayers.core.config import get_settings
    >>> from geolayers.services import fetch
    >>> with httpx.Client() as client:
    ...     path = fetch.download_source(
    ...         "https://example.org/parks.geojson",
    ...         prefix="12",
    ...         client=client,
    ...         settings=get_settings(),
    ...     )
"""

from __future__ import annotations

import contextlib
import ipaddress
import logging
import pathlib
import posixpath
import socket
from typing import TYPE_CHECKING

import httpx

from geolayers.core import errors
from geolayers.services import validation

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from geolayers.core import config

logger = logging.getLogger(__name__)

MAX_REDIRECTS = 3
CHUNK_SIZE = 64 * 1024


class FetchError(RuntimeError):
    """A remote source could not be retrieved."""


class SourceTooLarge(FetchError):
    """The remote source exceeded the configured download cap."""


def _resolve_host(host: str) -> list[str]:
    """Resolve a hostname to all of its IP addresses."""
    infos = socket.getaddrinfo(host, None, proto=socket.IPPROTO_TCP)
    return sorted({str(info[4][0]) for info in infos})


def is_public_address(address: str) -> bool:
    """Return True if ``address`` is safe to connect to from the server."""
    ip = ipaddress.ip_address(address.split("%", 1)[0])
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return not (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_reserved
        or ip.is_multicast
        or ip.is_unspecified
        or not ip.is_global
    )


def validate_url(
    url: str | httpx.URL,
    resolve: Callable[[str], list[str]] | None = None,
) -> httpx.URL:
    """Check that ``url`` is an http(s) URL pointing at a public host.

    Args:
        url: URL to check.
        resolve: Hostname resolver, defaults to DNS via getaddrinfo.

    Returns:
        The parsed URL.

    Raises:
        ValidationError: If the scheme, host or resolved addresses are not
            acceptable.
    """
    resolve = resolve or _resolve_host
    raw = str(url)
    if not validation.is_http_url(raw):
        raise errors.ValidationError(f"URL must use http or https: {raw}")

    try:
        parsed = httpx.URL(raw)
    except httpx.InvalidURL as exc:
        raise errors.ValidationError(f"Malformed URL: {raw}") from exc

    host = parsed.host
    if not host:
        raise errors.ValidationError(f"Could not parse host from URL: {raw}")

    try:
        ipaddress.ip_address(host)
        addresses = [host]
    except ValueError:
        try:
            addresses = resolve(host)
        except OSError as exc:
            raise errors.ValidationError(
                f"Could not resolve host {host}",
            ) from exc

    if not addresses or not all(is_public_address(a) for a in addresses):
        raise errors.ValidationError(
            f"URL resolves to a private or reserved address: {raw}",
        )
    return parsed


@contextlib.contextmanager
def open_stream(
    client: httpx.Client,
    url: str | httpx.URL,
    *,
    timeout: float,
    params: dict[str, str] | None = None,
    resolve: Callable[[str], list[str]] | None = None,
) -> Iterator[httpx.Response]:
    """Open a streaming GET, validating the URL and every redirect hop.

    Raises:
        ValidationError: If any hop fails ``validate_url``.
        FetchError: On transport errors, too many redirects or a non-2xx
            final response.
    """
    target = validate_url(url, resolve)
    if params:
        target = target.copy_merge_params(params)

    for _ in range(MAX_REDIRECTS + 1):
        try:
            request = client.build_request("GET", target, timeout=timeout)
            response = client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise FetchError(f"Request to {target.host} failed: {exc}") from exc

        if response.is_redirect:
            location = response.headers.get("location", "")
            response.close()
            target = validate_url(target.join(location), resolve)
            continue

        try:
            if not response.is_success:
                raise FetchError(
                    f"{target.host} answered HTTP {response.status_code}",
                )
            yield response
        finally:
            response.close()
        return

    raise FetchError(f"Too many redirects for {url}")


def read_capped(response: httpx.Response, cap: int) -> bytes:
    """Read a streamed body, raising SourceTooLarge once it passes ``cap``."""
    buffer = bytearray()
    for chunk in response.iter_bytes(CHUNK_SIZE):
        buffer.extend(chunk)
        if len(buffer) > cap:
            raise SourceTooLarge(f"Response exceeds maximum size ({cap} bytes)")
    return bytes(buffer)


def download_source(
    url: str,
    *,
    prefix: str,
    client: httpx.Client,
    settings: config.Settings,
    resolve: Callable[[str], list[str]] | None = None,
) -> pathlib.Path:
    """Download a remote source file into ``settings.upload_dir``.

    Args:
        url: http(s) URL of the source file.
        prefix: Filename prefix (the layer id) to keep downloads apart.
        client: Shared HTTP client.
        settings: Provides the upload directory, size cap, extension
            allow-list and timeout.
        resolve: Hostname resolver override.

    Returns:
        Path of the downloaded file.

    Raises:
        ValidationError: On an unsafe URL or disallowed extension.
        SourceTooLarge: If the body exceeds max_download_size_bytes.
        FetchError: On any other download failure.
    """
    parsed = validate_url(url, resolve)
    basename = posixpath.basename(parsed.path)
    extension = posixpath.splitext(basename)[1].lstrip(".").lower()
    if not basename or extension not in settings.allowed_extensions:
        raise errors.ValidationError(
            f"Disallowed file extension: {extension or '(none)'}",
        )

    settings.upload_dir.mkdir(parents=True, exist_ok=True)
    dest = settings.upload_dir / f"{prefix}_{basename}"
    cap = settings.max_download_size_bytes
    written = 0

    try:
        with (
            open_stream(
                client,
                parsed,
                timeout=settings.download_timeout_seconds,
                resolve=resolve,
            ) as response,
            dest.open("wb") as out,
        ):
            for chunk in response.iter_bytes(CHUNK_SIZE):
                written += len(chunk)
                if written > cap:
                    raise SourceTooLarge(
                        f"Download exceeds maximum size ({cap} bytes)",
                    )
                out.write(chunk)
    except httpx.HTTPError as exc:
        dest.unlink(missing_ok=True)
        raise FetchError(f"Download of {url} failed: {exc}") from exc
    except BaseException:
        dest.unlink(missing_ok=True)
        raise

    logger.info("Downloaded %s (%d bytes) to %s", url, written, dest)
    return dest


def obtain_source(
    source_url: str,
    *,
    prefix: str,
    client: httpx.Client,
    settings: config.Settings,
    resolve: Callable[[str], list[str]] | None = None,
) -> pathlib.Path:
    """Return a local file for a layer source, downloading it if remote."""
    if validation.is_http_url(source_url):
        return download_source(
            source_url,
            prefix=prefix,
            client=client,
            settings=settings,
            resolve=resolve,
        )

    path = pathlib.Path(source_url)
    if not path.is_file():
        raise FetchError(f"Source file not found: {source_url}")
    return path
