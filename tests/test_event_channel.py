"""
Tests for the progress event channel.
"""

import threading

import pytest

from event_channel import EventChannel, EventPhase, OperationWatcher, ProgressEvent


def test_event_names_and_payloads():
    start = ProgressEvent("preset", EventPhase.START, 1, total=4)
    progress = ProgressEvent("preset", EventPhase.PROGRESS, 1, total=4, processed=2,
                             message="Processing: A (2/4)", current_asset_id=9)
    done = ProgressEvent("scan", EventPhase.COMPLETE, 2, message="ok", action=None)
    assert start.name == "preset://apply_start"
    assert start.payload == 4
    assert progress.payload == {
        "processed": 2, "total": 4, "current_asset_id": 9, "message": "Processing: A (2/4)",
    }
    assert done.name == "scan://complete"
    assert done.payload == "ok"


def test_scope_filter_and_unsubscribe():
    channel = EventChannel()
    seen_all, seen_scan = [], []
    sub = channel.subscribe(seen_all.append)
    channel.subscribe(seen_scan.append, "scan")

    with channel.begin("bulk", 0) as op:
        op.complete("done")
    sub.unsubscribe()
    with channel.begin("scan", 0, action=None) as op:
        op.complete("done")

    assert [e.scope for e in seen_all] == ["bulk", "bulk"]
    assert [e.scope for e in seen_scan] == ["scan", "scan"]


def test_failing_subscriber_does_not_block_others():
    channel = EventChannel()
    received = []

    def broken(_event):
        raise ValueError("boom")

    channel.subscribe(broken)
    channel.subscribe(received.append)
    with channel.begin("bulk", 1) as op:
        op.progress(1, "x")
    assert [e.phase for e in received] == [EventPhase.START, EventPhase.PROGRESS, EventPhase.COMPLETE]


def test_exactly_one_terminal_event():
    channel = EventChannel()
    op = channel.begin("bulk", 1)
    op.complete("done")
    with pytest.raises(RuntimeError):
        op.error("again")
    with pytest.raises(RuntimeError):
        op.progress(1)


def test_context_exit_with_exception_emits_error():
    channel = EventChannel()
    with OperationWatcher(channel, "bulk") as watcher:
        with pytest.raises(KeyError):
            with channel.begin("bulk", 2):
                raise KeyError("missing")
    assert watcher.terminal.phase is EventPhase.ERROR


def test_operations_in_same_scope_do_not_interleave():
    channel = EventChannel()
    order = []
    channel.subscribe(lambda e: order.append((e.operation_id, e.phase)))

    first = channel.begin("preset", 1)
    started = threading.Event()

    def second():
        started.set()
        with channel.begin("preset", 0) as op:
            op.complete()

    t = threading.Thread(target=second)
    t.start()
    started.wait(5)
    first.progress(1)
    first.complete()
    t.join(5)

    first_events = [p for oid, p in order if oid == first.operation_id]
    assert first_events == [EventPhase.START, EventPhase.PROGRESS, EventPhase.COMPLETE]
    # nothing of the second operation appears before the first one finished
    last_first = max(i for i, (oid, _) in enumerate(order) if oid == first.operation_id)
    assert all(oid == first.operation_id for oid, _ in order[:last_first + 1])


def test_watcher_binds_to_given_operation():
    channel = EventChannel()
    with OperationWatcher(channel, "bulk", operation_id=5) as watcher:
        with channel.begin("bulk", 0) as other:
            other.complete("not mine")
        with channel.begin("bulk", 0, operation_id=5) as mine:
            mine.complete("mine")
    assert watcher.wait(1).message == "mine"
    assert len(watcher.events) == 2
