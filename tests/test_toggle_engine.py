"""
Tests for single and bulk enable/disable.
"""

import pytest

import asset_index
import toggle_engine
from asset_index import AssetIndex
from errors import IoError
from event_channel import EventChannel, EventPhase, OperationWatcher
from tests.conftest import add_mod, make_mod
from toggle_engine import (
    BULK_SCOPE,
    BulkOutcome,
    BulkStatus,
    ItemKind,
    ItemResult,
    ToggleEngine,
)


@pytest.fixture
def channel():
    return EventChannel()


@pytest.fixture
def engine(index, mods_dir, channel):
    return ToggleEngine(index, mods_dir, channel)


# ── single toggle ────────────────────────────────────────────────────────────

def test_toggle_renames_and_updates_index(engine, index, mods_dir):
    asset = add_mod(index, mods_dir, "red-hat", "RedHat")

    assert engine.toggle(asset.id) is False
    assert (mods_dir / "characters/red-hat/DISABLED_RedHat").is_dir()
    assert not (mods_dir / "characters/red-hat/RedHat").exists()
    stored = index.get_asset(asset.id)
    assert stored.is_enabled is False
    assert stored.clean_path == "characters/red-hat/RedHat"

    assert engine.toggle(asset.id) is True
    assert (mods_dir / "characters/red-hat/RedHat").is_dir()
    assert index.get_asset(asset.id).is_enabled is True


def test_toggle_trusts_disk_over_stale_index(engine, index, mods_dir):
    asset = add_mod(index, mods_dir, "red-hat", "RedHat")
    (mods_dir / "characters/red-hat/RedHat").rename(mods_dir / "characters/red-hat/DISABLED_RedHat")

    # index still says enabled; disk says disabled, so a toggle enables
    assert engine.toggle(asset.id) is True
    assert (mods_dir / "characters/red-hat/RedHat").is_dir()


def test_toggle_missing_folder_leaves_index_alone(engine, index):
    entity = index.get_entity_by_slug("red-hat")
    asset = index.add_asset(entity.id, "Ghost", "characters/red-hat/Ghost")
    with pytest.raises(IoError):
        engine.toggle(asset.id)
    assert index.get_asset(asset.id).is_enabled is True


def test_toggle_with_both_forms_present_fails(engine, index, mods_dir):
    asset = add_mod(index, mods_dir, "red-hat", "RedHat")
    make_mod(mods_dir, "characters/red-hat/DISABLED_RedHat")
    with pytest.raises(IoError):
        engine.toggle(asset.id)
    assert (mods_dir / "characters/red-hat/RedHat").is_dir()
    assert (mods_dir / "characters/red-hat/DISABLED_RedHat").is_dir()


def test_set_enabled_skips_when_already_in_state(engine, index, mods_dir):
    asset = add_mod(index, mods_dir, "hu-tao", "Hat")
    result = engine.set_enabled(asset.id, True)
    assert result.kind is ItemKind.SKIPPED
    assert (mods_dir / "characters/hu-tao/Hat").is_dir()


def test_set_enabled_unknown_asset_is_failure(engine):
    result = engine.set_enabled(999, True)
    assert result.kind is ItemKind.FAILED
    assert "999" in result.error


def test_toggle_rename_error_leaves_index_alone(engine, index, mods_dir, monkeypatch):
    asset = add_mod(index, mods_dir, "red-hat", "RedHat")

    def denied(src, dst):
        raise PermissionError(13, "Access is denied", str(src))

    monkeypatch.setattr(toggle_engine.os, "rename", denied)
    with pytest.raises(IoError):
        engine.toggle(asset.id)
    monkeypatch.undo()

    assert index.get_asset(asset.id).is_enabled is True
    assert AssetIndex(index.state_path).get_asset(asset.id).is_enabled is True
    assert (mods_dir / "characters/red-hat/RedHat").is_dir()


def test_toggle_reports_index_write_failure_after_rename(engine, index, mods_dir,
                                                          monkeypatch):
    asset = add_mod(index, mods_dir, "red-hat", "RedHat")

    def read_only(src, dst):
        raise OSError(30, "Read-only file system")

    monkeypatch.setattr(asset_index.os, "replace", read_only)
    with pytest.raises(IoError, match="but could not record it"):
        engine.toggle(asset.id)
    monkeypatch.undo()

    # the folder moved, and the in-memory record follows the disk
    assert (mods_dir / "characters/red-hat/DISABLED_RedHat").is_dir()
    assert index.get_asset(asset.id).is_enabled is False


# ── bulk ─────────────────────────────────────────────────────────────────────

def test_bulk_mixed_outcome(engine, index, mods_dir, channel):
    disabled = add_mod(index, mods_dir, "hu-tao", "One", enabled=False)
    enabled = add_mod(index, mods_dir, "hu-tao", "Two")
    entity = index.get_entity_by_slug("hu-tao")
    missing = index.add_asset(entity.id, "Three", "characters/hu-tao/Three", is_enabled=False)

    with OperationWatcher(channel, BULK_SCOPE) as watcher:
        outcome = engine.bulk_toggle([disabled.id, enabled.id, missing.id], True)

    assert outcome.success_count == 1
    assert outcome.skipped_count == 1
    assert outcome.fail_count == 1
    assert outcome.status is BulkStatus.PARTIAL_FAILURE
    assert (mods_dir / "characters/hu-tao/One").is_dir()

    phases = [e.phase for e in watcher.events]
    assert phases == [EventPhase.START] + [EventPhase.PROGRESS] * 3 + [EventPhase.COMPLETE]
    assert watcher.events[0].payload == 3
    assert watcher.events[1].name == "bulk://apply_progress"
    assert watcher.events[1].payload["processed"] == 1
    assert watcher.events[1].message == "Processing: One (1/3)"
    assert watcher.terminal.message == "1 succeeded, 1 failed, 1 skipped."


def test_bulk_total_failure_emits_error(engine, channel):
    with OperationWatcher(channel, BULK_SCOPE) as watcher:
        outcome = engine.bulk_toggle([41, 42], False)
    assert outcome.status is BulkStatus.TOTAL_FAILURE
    assert watcher.terminal.phase is EventPhase.ERROR
    assert watcher.terminal.name == "bulk://apply_error"


def test_bulk_empty_list(engine, channel):
    with OperationWatcher(channel, BULK_SCOPE) as watcher:
        outcome = engine.bulk_toggle([], True)
    assert outcome.status is BulkStatus.NOTHING_TO_DO
    assert [e.phase for e in watcher.events] == [EventPhase.START, EventPhase.COMPLETE]
    assert watcher.terminal.message == "Nothing to do."


def test_bulk_duplicate_ids_processed_once(engine, index, mods_dir):
    asset = add_mod(index, mods_dir, "hu-tao", "Hat")
    outcome = engine.bulk_toggle([asset.id, asset.id], False)
    assert len(outcome.results) == 1
    assert outcome.success_count == 1


def test_bulk_writes_index_once(engine, index, mods_dir, monkeypatch):
    ids = [add_mod(index, mods_dir, "hu-tao", name).id for name in ("A", "B", "C")]
    writes = []
    real_replace = asset_index.os.replace

    def counting_replace(src, dst):
        writes.append(dst)
        real_replace(src, dst)

    monkeypatch.setattr(asset_index.os, "replace", counting_replace)
    outcome = engine.bulk_toggle(ids, False)
    monkeypatch.undo()

    assert outcome.success_count == 3
    assert writes == [index.state_path]
    reloaded = AssetIndex(index.state_path)
    assert [reloaded.get_asset(i).is_enabled for i in ids] == [False, False, False]


# ── outcome fold ─────────────────────────────────────────────────────────────

def test_outcome_is_immutable_fold():
    empty = BulkOutcome()
    one = empty.with_result(ItemResult(1, ItemKind.SUCCEEDED, new_enabled=True))
    assert empty.results == ()
    assert one.summary() == "Successfully processed 1 mod(s)."
    assert one.with_note("Note.").summary() == "Successfully processed 1 mod(s). Note."


def test_skips_and_failures_only_is_partial():
    outcome = BulkOutcome((
        ItemResult(1, ItemKind.SKIPPED, new_enabled=True),
        ItemResult(2, ItemKind.FAILED, error="boom"),
    ))
    assert outcome.status is BulkStatus.PARTIAL_FAILURE
