"""
Event Channel - publish/subscribe for multi-step progress.

Long operations (preset apply, bulk toggle, folder scan) report through an
:class:`OperationReporter` obtained from :meth:`EventChannel.begin`.  Every
operation produces exactly one ``start``, any number of ``progress`` events
and exactly one terminal ``complete`` or ``error``.  Operations in the same
scope never interleave: ``begin`` waits until the previous operation of
that scope has finished.

Subscribers are plain callables taking a :class:`ProgressEvent`.  They are
invoked synchronously on the publishing thread; adapters that need to hop
threads (Qt) do so themselves.  A subscriber that raises is logged and the
remaining subscribers still receive the event.

Event names follow ``<scope>://<action>_<phase>``, e.g.
``preset://apply_progress``.  With ``action=None`` the name is just
``<scope>://<phase>``.
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable

_log = logging.getLogger(__name__)


class EventPhase(str, Enum):
    START = "start"
    PROGRESS = "progress"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (EventPhase.COMPLETE, EventPhase.ERROR)


@dataclass(frozen=True)
class ProgressEvent:
    scope: str
    phase: EventPhase
    operation_id: int
    total: int = 0
    processed: int = 0
    message: str = ""
    current_asset_id: int | None = None
    action: str | None = "apply"

    @property
    def name(self) -> str:
        if self.action:
            return f"{self.scope}://{self.action}_{self.phase.value}"
        return f"{self.scope}://{self.phase.value}"

    @property
    def payload(self):
        """Payload in the shape observers expect for this phase."""
        if self.phase is EventPhase.START:
            return self.total
        if self.phase is EventPhase.PROGRESS:
            return {
                "processed": self.processed,
                "total": self.total,
                "current_asset_id": self.current_asset_id,
                "message": self.message,
            }
        return self.message


Subscriber = Callable[[ProgressEvent], None]


class Subscription:
    """Handle returned by :meth:`EventChannel.subscribe`."""

    def __init__(self, channel: EventChannel, token: int):
        self._channel = channel
        self._token = token
        self.active = True

    def unsubscribe(self):
        if self.active:
            self._channel._remove(self._token)
            self.active = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.unsubscribe()
        return False


class EventChannel:
    def __init__(self):
        self._subscribers: dict[int, tuple[Subscriber, str | None]] = {}
        self._tokens = itertools.count(1)
        self._operation_ids = itertools.count(1)
        self._registry_lock = threading.Lock()
        self._delivery_lock = threading.RLock()
        self._scope_locks: dict[str, threading.Lock] = {}

    # ── Subscription ──────────────────────────────────────────────────

    def subscribe(self, callback: Subscriber, scope: str | None = None) -> Subscription:
        """Register *callback* for every event (or only those of *scope*)."""
        with self._registry_lock:
            token = next(self._tokens)
            self._subscribers[token] = (callback, scope)
        return Subscription(self, token)

    def _remove(self, token: int):
        with self._registry_lock:
            self._subscribers.pop(token, None)

    @property
    def subscriber_count(self) -> int:
        with self._registry_lock:
            return len(self._subscribers)

    # ── Publishing ────────────────────────────────────────────────────

    def publish(self, event: ProgressEvent):
        with self._registry_lock:
            targets = list(self._subscribers.values())
        with self._delivery_lock:
            for callback, scope in targets:
                if scope is not None and scope != event.scope:
                    continue
                try:
                    callback(event)
                except Exception:
                    _log.exception("Subscriber %r failed handling %s", callback, event.name)

    def allocate_operation_id(self) -> int:
        return next(self._operation_ids)

    def _scope_lock(self, scope: str) -> threading.Lock:
        with self._registry_lock:
            return self._scope_locks.setdefault(scope, threading.Lock())

    def begin(
        self,
        scope: str,
        total: int,
        action: str | None = "apply",
        operation_id: int | None = None,
    ) -> OperationReporter:
        """Start an operation in *scope*, emitting its ``start`` event."""
        lock = self._scope_lock(scope)
        lock.acquire()
        if operation_id is None:
            operation_id = self.allocate_operation_id()
        reporter = OperationReporter(self, scope, operation_id, total, action, lock)
        try:
            self.publish(reporter._event(EventPhase.START))
        except BaseException:
            lock.release()
            raise
        return reporter


class OperationReporter:
    """Emits the events of one operation and enforces their ordering."""

    def __init__(self, channel, scope, operation_id, total, action, lock):
        self.channel = channel
        self.scope = scope
        self.operation_id = operation_id
        self.total = total
        self.action = action
        self._lock = lock
        self.finished = False
        self.processed = 0

    def _event(self, phase: EventPhase, message: str = "", current_asset_id=None) -> ProgressEvent:
        return ProgressEvent(
            scope=self.scope,
            phase=phase,
            operation_id=self.operation_id,
            total=self.total,
            processed=self.processed,
            message=message,
            current_asset_id=current_asset_id,
            action=self.action,
        )

    def progress(self, processed: int, message: str = "", current_asset_id: int | None = None):
        if self.finished:
            raise RuntimeError(f"Operation {self.operation_id} already finished")
        self.processed = processed
        self.channel.publish(self._event(EventPhase.PROGRESS, message, current_asset_id))

    def _finish(self, phase: EventPhase, message: str):
        if self.finished:
            raise RuntimeError(f"Operation {self.operation_id} already finished")
        self.finished = True
        try:
            self.channel.publish(self._event(phase, message))
        finally:
            self._lock.release()

    def complete(self, message: str = ""):
        self._finish(EventPhase.COMPLETE, message)

    def error(self, message: str):
        self._finish(EventPhase.ERROR, message)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if not self.finished:
            if exc is not None:
                self.error(str(exc) or exc_type.__name__)
            else:
                self.complete()
        return False


class OperationWatcher:
    """Collects the events of a single operation.

    With ``operation_id=None`` the watcher binds to the first ``start`` it
    sees in *scope*.  Events of any other operation are ignored.
    """

    def __init__(self, channel: EventChannel, scope: str | None = None,
                 operation_id: int | None = None):
        self.scope = scope
        self.operation_id = operation_id
        self.events: list[ProgressEvent] = []
        self._done = threading.Event()
        self._subscription = channel.subscribe(self._on_event, scope)

    def _on_event(self, event: ProgressEvent):
        if self.operation_id is None:
            if event.phase is not EventPhase.START:
                return
            self.operation_id = event.operation_id
        if event.operation_id != self.operation_id or self._done.is_set():
            return
        self.events.append(event)
        if event.phase.is_terminal:
            self._done.set()

    @property
    def terminal(self) -> ProgressEvent | None:
        if self.events and self.events[-1].phase.is_terminal:
            return self.events[-1]
        return None

    def wait(self, timeout: float | None = None) -> ProgressEvent | None:
        self._done.wait(timeout)
        return self.terminal

    def close(self):
        self._subscription.unsubscribe()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False
