"""Safe execution wrapper for the GDAL/OGR command-line toolchain.

Ingestion never reimplements raster warping, tile pyramid generation or
vector reprojection; it shells out to ``gdalwarp``, ``gdaladdo``,
``gdal_translate``, ``gdal2tiles.py`` and ``ogr2ogr``. Commands are always
passed as an argument vector and never go through a shell, so source URLs
and paths cannot inject extra arguments or commands.

A non-zero exit raises CommandError carrying the command's stderr, which the
dispatcher records on the failed job.

Example:
    Reproject a GeoJSON file:
        >>> from geolayers.utils.gdal_helpers import run_command, CommandError

        >>> try:
        ...     run_command([
        ...         "ogr2ogr",
        ...         "-f", "GeoJSON",
        ...         "-t_srs", "EPSG:3857",
        ...         "output.geojson",
        ...         "input.geojson",
        ...     ])
        ... except CommandError as e:
        ...     print(f"Command failed: {e}")
"""

from __future__ import annotations

import logging
import subprocess
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Iterable

logger = logging.getLogger(__name__)


class CommandError(RuntimeError):
    """Exception raised when a toolchain subprocess fails.

    The message is the stderr output of the failed command (or a generic
    message when stderr is empty), prefixed with the program name.
    """


def run_command(
    command: Iterable[str | pathlib.Path],
    workdir: pathlib.Path | None = None,
) -> str:
    """Execute a command and raise on non-zero exit.

    Args:
        command: Iterable arguments to execute (e.g. ["gdalwarp", ...]).
        workdir: Optional working directory for the command execution.

    Returns:
        The captured standard output of the command.

    Raises:
        CommandError: if the program cannot be started or exits with a
            non-zero status code.
    """
    args = [str(part) for part in command]
    logger.debug("Running %s", args)
    try:
        result = subprocess.run(
            args,
            cwd=workdir,
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as exc:
        raise CommandError(f"{args[0]}: {exc}") from exc

    if result.returncode != 0:
        stderr = result.stderr.strip() or "Unknown command failure"
        raise CommandError(
            f"{args[0]} exited with {result.returncode}: {stderr}",
        )
    return result.stdout
