"""
Launch the game (or a loader) from the mod manager.

Some launchers demand administrator rights.  Windows reports that as error
740 (ERROR_ELEVATION_REQUIRED) when spawning; :func:`launch_executable`
turns it into :class:`ElevationError` so the caller can retry through
:func:`launch_elevated`, which goes through the UAC prompt.
"""

from __future__ import annotations

import ctypes
import logging
import subprocess
import sys
from pathlib import Path

from errors import ElevationError, IoError, UserCancelledError, ValidationError

ERROR_ELEVATION_REQUIRED = 740
ERROR_CANCELLED = 1223
SE_ERR_ACCESSDENIED = 5  # ShellExecuteW's code for a declined UAC prompt

_log = logging.getLogger(__name__)


def _check_executable(path: str | Path) -> Path:
    if not str(path).strip():
        raise ValidationError("No executable selected")
    path = Path(path)
    if not path.is_file():
        raise IoError(f"Executable not found: {path}")
    return path


def _needs_elevation(exc: OSError) -> bool:
    return (
        getattr(exc, "winerror", None) == ERROR_ELEVATION_REQUIRED
        or "os error 740" in str(exc)
        or "requires elevation" in str(exc).lower()
    )


def launch_executable(path: str | Path) -> subprocess.Popen:
    """Start *path* detached from the manager and return the process."""
    exe = _check_executable(path)
    try:
        proc = subprocess.Popen([str(exe)], cwd=str(exe.parent))
    except OSError as exc:
        if _needs_elevation(exc):
            raise ElevationError(
                f"'{exe.name}' requires administrator privileges: {exc}"
            ) from exc
        raise IoError(f"Failed to launch '{exe}': {exc}") from exc
    _log.info("Launched %s (pid %s)", exe, proc.pid)
    return proc


def launch_elevated(path: str | Path):
    """Start *path* through the UAC ``runas`` verb (Windows only)."""
    exe = _check_executable(path)
    if sys.platform != "win32":
        raise ElevationError("Elevated launch is only supported on Windows")

    shell32 = ctypes.windll.shell32
    result = shell32.ShellExecuteW(None, "runas", str(exe), None, str(exe.parent), 1)
    if result > 32:
        _log.info("Launched %s elevated", exe)
        return
    last_error = ctypes.GetLastError()
    if last_error == ERROR_CANCELLED or result == SE_ERR_ACCESSDENIED:
        raise UserCancelledError("Elevation prompt was cancelled")
    raise IoError(f"Elevated launch of '{exe}' failed (code {result}, error {last_error})")
