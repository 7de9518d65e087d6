"""
Tests for preset CRUD and preset application.
"""

import pytest

from errors import NotFoundError, ValidationError
from event_channel import EventChannel, EventPhase, OperationWatcher
from preset_engine import PRESET_SCOPE, PresetEngine
from tests.conftest import add_mod
from toggle_engine import BulkStatus, ToggleEngine


@pytest.fixture
def channel():
    return EventChannel()


@pytest.fixture
def presets(index, mods_dir, channel):
    return PresetEngine(index, ToggleEngine(index, mods_dir, channel))


def enabled_folders(index):
    return sorted(a.name for a in index.assets() if a.is_enabled)


# ── CRUD ─────────────────────────────────────────────────────────────────────

def test_create_snapshots_enabled_assets(presets, index, mods_dir):
    a = add_mod(index, mods_dir, "hu-tao", "A")
    add_mod(index, mods_dir, "hu-tao", "B", enabled=False)
    c = add_mod(index, mods_dir, "raiden", "C")
    preset = presets.create_preset("Daily")
    assert preset.asset_ids == (a.id, c.id)


def test_overwrite_and_rename(presets, index, mods_dir):
    a = add_mod(index, mods_dir, "hu-tao", "A")
    preset = presets.create_preset("Daily")
    presets.toggles.toggle(a.id)
    assert presets.overwrite_preset(preset.id).asset_ids == ()

    presets.create_preset("Other")
    with pytest.raises(ValidationError):
        presets.rename_preset(preset.id, "other")
    assert presets.rename_preset(preset.id, "Weekend").name == "Weekend"


def test_favorites_limited_to_three(presets):
    for name in ("a", "b", "c", "d"):
        p = presets.create_preset(name)
        presets.set_favorite(p.id, True)
    assert [p.name for p in presets.favorite_presets()] == ["a", "b", "c"]
    assert presets.toggle_favorite(p.id).is_favorite is False


def test_add_asset_to_presets(presets, index, mods_dir):
    p1 = presets.create_preset("one")
    a = add_mod(index, mods_dir, "hu-tao", "A")
    p2 = presets.create_preset("two")
    updated = presets.add_asset_to_presets(a.id, [p1.id, p2.id])
    assert [p.asset_ids for p in updated] == [(a.id,), (a.id,)]
    with pytest.raises(NotFoundError):
        presets.add_asset_to_presets(a.id, [999])


def test_delete_preset(presets):
    p = presets.create_preset("gone")
    presets.delete_preset(p.id)
    with pytest.raises(NotFoundError):
        presets.get_preset(p.id)


# ── apply ────────────────────────────────────────────────────────────────────

def test_apply_reconciles_to_members(presets, index, mods_dir, channel):
    a = add_mod(index, mods_dir, "hu-tao", "A")
    b = add_mod(index, mods_dir, "hu-tao", "B", enabled=False)
    c = add_mod(index, mods_dir, "raiden", "C")
    preset = index.add_preset("target", [b.id, c.id])

    with OperationWatcher(channel, PRESET_SCOPE) as watcher:
        outcome = presets.apply_preset(preset.id)

    assert outcome.status is BulkStatus.ALL_SUCCEEDED
    assert enabled_folders(index) == ["B", "C"]
    assert (mods_dir / "characters/hu-tao/DISABLED_A").is_dir()
    assert (mods_dir / "characters/hu-tao/B").is_dir()
    # disable pass first, then the members in preset order
    progress = [e for e in watcher.events if e.phase is EventPhase.PROGRESS]
    assert [e.current_asset_id for e in progress] == [a.id, b.id, c.id]
    assert watcher.events[0].name == "preset://apply_start"
    assert watcher.terminal.phase is EventPhase.COMPLETE
    assert index.get_preset(preset.id).asset_ids == (b.id, c.id)


def test_apply_twice_is_idempotent(presets, index, mods_dir):
    add_mod(index, mods_dir, "hu-tao", "A")
    b = add_mod(index, mods_dir, "hu-tao", "B", enabled=False)
    preset = index.add_preset("target", [b.id])
    presets.apply_preset(preset.id)
    second = presets.apply_preset(preset.id)
    assert second.success_count == 0
    assert second.fail_count == 0
    assert enabled_folders(index) == ["B"]


def test_apply_skips_deleted_members_with_note(presets, index, mods_dir, channel):
    a = add_mod(index, mods_dir, "hu-tao", "A", enabled=False)
    preset = index.add_preset("target", [a.id, 77])
    with OperationWatcher(channel, PRESET_SCOPE) as watcher:
        outcome = presets.apply_preset(preset.id)
    assert outcome.success_count == 1
    assert "no longer exist" in watcher.terminal.message


def test_apply_with_missing_folder_is_partial(presets, index, mods_dir, channel):
    a = add_mod(index, mods_dir, "hu-tao", "A", enabled=False)
    entity = index.get_entity_by_slug("hu-tao")
    ghost = index.add_asset(entity.id, "Ghost", "characters/hu-tao/Ghost", is_enabled=False)
    preset = index.add_preset("target", [a.id, ghost.id])

    with OperationWatcher(channel, PRESET_SCOPE) as watcher:
        outcome = presets.apply_preset(preset.id)

    assert outcome.status is BulkStatus.PARTIAL_FAILURE
    assert (mods_dir / "characters/hu-tao/A").is_dir()
    assert watcher.terminal.phase is EventPhase.COMPLETE
    assert watcher.terminal.message.startswith("1 succeeded, 1 failed")


def test_apply_disables_non_member_enabled_only_on_disk(presets, index, mods_dir):
    a = add_mod(index, mods_dir, "hu-tao", "A", enabled=False)
    b = add_mod(index, mods_dir, "hu-tao", "B", enabled=False)
    # renamed on disk but the index was never told
    (mods_dir / "characters/hu-tao/DISABLED_A").rename(mods_dir / "characters/hu-tao/A")
    preset = index.add_preset("only B", [b.id])

    outcome = presets.apply_preset(preset.id)

    assert outcome.status is BulkStatus.ALL_SUCCEEDED
    assert not (mods_dir / "characters/hu-tao/A").exists()
    assert (mods_dir / "characters/hu-tao/DISABLED_A").is_dir()
    assert (mods_dir / "characters/hu-tao/B").is_dir()
    assert index.get_asset(a.id).is_enabled is False
    assert enabled_folders(index) == ["B"]


def test_apply_unknown_preset(presets):
    with pytest.raises(NotFoundError):
        presets.apply_preset(123)
