"""
Qt adapter for the presentation layer.

``QtEventBridge`` re-emits event channel traffic as Qt signals; connected
slots on the GUI thread receive them through Qt's queued connections, so
engine code never touches widgets.  ``WorkerThread`` runs a blocking call
off the GUI thread.  The ``select_*`` helpers wrap QFileDialog and return
``None`` when the user cancels.
"""

from __future__ import annotations

import logging
from pathlib import Path

from PySide6.QtCore import QObject, QThread, Signal
from PySide6.QtWidgets import QFileDialog

from event_channel import EventChannel, EventPhase, ProgressEvent

ARCHIVE_FILTER = "Mod archives (*.zip *.7z *.rar)"

_log = logging.getLogger(__name__)


class QtEventBridge(QObject):
    """Forward channel events (optionally of one scope) as signals."""

    event_signal = Signal(str, object)  # event name, payload
    start_signal = Signal(str, int)  # scope, total
    progress_signal = Signal(str, int, int, str)  # scope, processed, total, message
    complete_signal = Signal(str, str)  # scope, summary
    error_signal = Signal(str, str)  # scope, message

    def __init__(self, channel: EventChannel, scope: str | None = None, parent=None):
        super().__init__(parent)
        self._subscription = channel.subscribe(self._forward, scope)

    def _forward(self, event: ProgressEvent):
        self.event_signal.emit(event.name, event.payload)
        if event.phase is EventPhase.START:
            self.start_signal.emit(event.scope, event.total)
        elif event.phase is EventPhase.PROGRESS:
            self.progress_signal.emit(event.scope, event.processed, event.total, event.message)
        elif event.phase is EventPhase.COMPLETE:
            self.complete_signal.emit(event.scope, event.message)
        else:
            self.error_signal.emit(event.scope, event.message)

    def close(self):
        self._subscription.unsubscribe()


class WorkerThread(QThread):
    """Run a blocking operation off the main thread."""

    result_signal = Signal(object)
    finished_signal = Signal(bool, str)  # success, message

    def __init__(self, func, *args, **kwargs):
        super().__init__()
        self.func = func
        self.args = args
        self.kwargs = kwargs

    def run(self):
        try:
            result = self.func(*self.args, **self.kwargs)
        except Exception as e:
            _log.exception("Worker call %r failed", self.func)
            self.finished_signal.emit(False, str(e))
            return
        self.result_signal.emit(result)
        self.finished_signal.emit(True, "Done")


# ── File pickers ──────────────────────────────────────────────────────

def select_archive_file(parent=None, title: str = "Select Mod Archive") -> Path | None:
    path, _ = QFileDialog.getOpenFileName(parent, title, "", ARCHIVE_FILTER)
    return Path(path) if path else None


def select_directory(parent=None, title: str = "Select Mods Directory") -> Path | None:
    path = QFileDialog.getExistingDirectory(parent, title)
    return Path(path) if path else None


def select_file(parent=None, title: str = "Select File",
                file_filter: str = "Executables (*.exe);;All files (*)") -> Path | None:
    path, _ = QFileDialog.getOpenFileName(parent, title, "", file_filter)
    return Path(path) if path else None
