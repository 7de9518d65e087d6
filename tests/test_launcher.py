"""
Tests for launching executables.
"""

import subprocess
import sys

import pytest

import launcher
from errors import ElevationError, IoError, ValidationError


@pytest.fixture
def exe(tmp_path):
    path = tmp_path / "game.exe"
    path.write_bytes(b"MZ")
    return path


def raising(exc):
    def _popen(*args, **kwargs):
        raise exc
    return _popen


def test_missing_executable(tmp_path):
    with pytest.raises(IoError):
        launcher.launch_executable(tmp_path / "nope.exe")
    with pytest.raises(ValidationError):
        launcher.launch_executable("")


def test_error_740_is_elevation(exe, monkeypatch):
    err = OSError("The requested operation requires elevation")
    err.winerror = 740
    monkeypatch.setattr(subprocess, "Popen", raising(err))
    with pytest.raises(ElevationError):
        launcher.launch_executable(exe)


def test_os_error_740_message_is_elevation(exe, monkeypatch):
    monkeypatch.setattr(subprocess, "Popen", raising(OSError("spawn failed (os error 740)")))
    with pytest.raises(ElevationError):
        launcher.launch_executable(exe)


def test_other_os_error_is_io_error(exe, monkeypatch):
    monkeypatch.setattr(subprocess, "Popen", raising(PermissionError("denied")))
    with pytest.raises(IoError):
        launcher.launch_executable(exe)


def test_launch_starts_process_in_exe_folder(exe, monkeypatch):
    seen = {}

    class FakeProc:
        pid = 1234

    def fake_popen(args, cwd=None):
        seen["args"] = args
        seen["cwd"] = cwd
        return FakeProc()

    monkeypatch.setattr(subprocess, "Popen", fake_popen)
    assert launcher.launch_executable(exe).pid == 1234
    assert seen == {"args": [str(exe)], "cwd": str(exe.parent)}


@pytest.mark.skipif(sys.platform == "win32", reason="elevation is available on Windows")
def test_elevated_launch_unsupported_off_windows(exe):
    with pytest.raises(ElevationError):
        launcher.launch_elevated(exe)
