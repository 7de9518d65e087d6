"""
Tests for the mods folder scanner.
"""

import pytest

from errors import IoError
from event_channel import EventChannel, EventPhase, OperationWatcher
from scanner import SCAN_SCOPE, Scanner
from tests.conftest import add_mod, make_mod


@pytest.fixture
def channel():
    return EventChannel()


@pytest.fixture
def scanner(index, mods_dir, channel):
    return Scanner(index, mods_dir, channel)


def by_path(index):
    return {a.clean_path: a for a in index.assets()}


def test_scan_registers_new_folders(scanner, index, mods_dir, channel):
    make_mod(mods_dir, "characters/hu-tao/CoolHat")
    make_mod(mods_dir, "characters/raiden-shogun/DISABLED_Cape")
    make_mod(mods_dir, "weapons/Mystery_v2")

    with OperationWatcher(channel, SCAN_SCOPE) as watcher:
        summary = scanner.scan()

    assert summary.processed == 3
    assert summary.added == 3
    assets = by_path(index)
    assert assets["characters/hu-tao/CoolHat"].is_enabled is True
    cape = assets["characters/raiden-shogun/Cape"]
    assert cape.is_enabled is False
    assert index.get_entity(cape.entity_id).slug == "raiden-shogun"
    mystery = assets["weapons/Mystery_v2"]
    assert index.get_entity(mystery.entity_id).slug == "weapons-other"
    assert mystery.name == "Mystery"

    assert watcher.events[0].name == "scan://start"
    assert watcher.terminal.name == "scan://complete"
    assert watcher.terminal.message == (
        "Scan complete. Processed 3 mod folders. Added 3 new mods. Pruned 0 missing mods."
    )


def test_scan_uses_ini_hints(scanner, index, mods_dir):
    ini = "[Mod]\nname = Festive Outfit\nauthor = someone\ncharacter = Hu Tao\n"
    make_mod(mods_dir, "characters/misc/outfit", ini_text=ini)
    scanner.scan()
    asset = by_path(index)["characters/misc/outfit"]
    assert asset.name == "Festive Outfit"
    assert asset.author == "someone"
    assert index.get_entity(asset.entity_id).slug == "hu-tao"


def test_nested_inis_belong_to_the_mod(scanner, index, mods_dir):
    make_mod(mods_dir, "characters/hu-tao/Hat")
    make_mod(mods_dir, "characters/hu-tao/Hat/Variants/Alt")
    summary = scanner.scan()
    assert summary.processed == 1
    assert list(by_path(index)) == ["characters/hu-tao/Hat"]


def test_scan_prunes_missing_and_repairs_state(scanner, index, mods_dir):
    kept = add_mod(index, mods_dir, "hu-tao", "Kept")
    entity = index.get_entity_by_slug("hu-tao")
    gone = index.add_asset(entity.id, "Gone", "characters/hu-tao/Gone")
    (mods_dir / "characters/hu-tao/Kept").rename(mods_dir / "characters/hu-tao/DISABLED_Kept")

    summary = scanner.scan()

    assert summary.pruned == 1
    assert summary.added == 0
    assert not index.has_asset(gone.id)
    assert index.get_asset(kept.id).is_enabled is False


def test_scan_normalises_legacy_markers(scanner, index, mods_dir):
    make_mod(mods_dir, "characters/hu-tao/DISABLEDHat")
    summary = scanner.scan()
    assert summary.renamed == 1
    assert (mods_dir / "characters/hu-tao/DISABLED_Hat").is_dir()
    asset = by_path(index)["characters/hu-tao/Hat"]
    assert asset.is_enabled is False
    assert "Renamed 1 incorrectly prefixed folders." in summary.message()


def test_scan_leaves_names_starting_with_disabled_word(scanner, index, mods_dir):
    make_mod(mods_dir, "characters/hu-tao/DisabledVeteranOutfit")
    summary = scanner.scan()
    assert summary.renamed == 0
    assert sorted(p.name for p in (mods_dir / "characters/hu-tao").iterdir()) == [
        "DisabledVeteranOutfit"
    ]
    asset = by_path(index)["characters/hu-tao/DisabledVeteranOutfit"]
    assert asset.is_enabled is True


def test_scan_records_undeducible_folders(scanner, index, mods_dir):
    make_mod(mods_dir, "zzzz/qqqq")
    summary = scanner.scan()
    assert summary.added == 0
    assert len(summary.errors) == 1
    assert summary.message().endswith("1 errors occurred.")


def test_scan_skips_hidden_folders(scanner, index, mods_dir):
    make_mod(mods_dir, ".import-abc/mod")
    assert scanner.scan().processed == 0


def test_scan_missing_root(index, tmp_path):
    with pytest.raises(IoError):
        Scanner(index, tmp_path / "nowhere").scan()


def test_scan_twice_adds_nothing(scanner, mods_dir):
    make_mod(mods_dir, "characters/hu-tao/Hat")
    scanner.scan()
    second = scanner.scan()
    assert second.added == 0
    assert second.processed == 1


def test_scan_progress_events(scanner, mods_dir, channel):
    make_mod(mods_dir, "characters/hu-tao/A")
    make_mod(mods_dir, "characters/hu-tao/B")
    with OperationWatcher(channel, SCAN_SCOPE) as watcher:
        scanner.scan()
    progress = [e for e in watcher.events if e.phase is EventPhase.PROGRESS]
    assert [e.processed for e in progress] == [1, 2]
    assert watcher.events[0].payload == 2
