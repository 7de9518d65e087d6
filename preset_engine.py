"""
Preset Engine - named collections of enabled mods.

A preset is a snapshot of which assets were enabled when it was created
(or last overwritten).  Applying a preset reconciles the whole library to
exactly that set: every enabled asset outside the preset is disabled, then
every member is enabled.  Applying is best effort; a failed item is
counted and reported but earlier renames are not rolled back.
"""

from __future__ import annotations

import logging

from asset_index import Asset, AssetIndex, Preset
from errors import IoError, ValidationError
from event_channel import EventChannel
from toggle_engine import BulkOutcome, ToggleEngine, finish_bulk

PRESET_SCOPE = "preset"
FAVORITE_PRESET_LIMIT = 3

_log = logging.getLogger(__name__)


class PresetEngine:
    def __init__(self, index: AssetIndex, toggles: ToggleEngine,
                 channel: EventChannel | None = None):
        self.index = index
        self.toggles = toggles
        self.channel = channel or toggles.channel

    # ── CRUD ──────────────────────────────────────────────────────────

    def _enabled_ids(self) -> list[int]:
        return [a.id for a in self.index.assets() if a.is_enabled]

    def create_preset(self, name: str) -> Preset:
        """Snapshot the currently enabled assets under *name*."""
        preset = self.index.add_preset(name, self._enabled_ids())
        _log.info("Created preset %r with %d asset(s)", preset.name, len(preset.asset_ids))
        return preset

    def overwrite_preset(self, preset_id: int) -> Preset:
        preset = self.index.replace_preset(preset_id, asset_ids=self._enabled_ids())
        _log.info("Overwrote preset %r with %d asset(s)", preset.name, len(preset.asset_ids))
        return preset

    def rename_preset(self, preset_id: int, name: str) -> Preset:
        name = name.strip()
        if not name:
            raise ValidationError("Preset name cannot be empty")
        existing = self.index.find_preset_by_name(name)
        if existing is not None and existing.id != preset_id:
            raise ValidationError(f"A preset named '{name}' already exists")
        return self.index.replace_preset(preset_id, name=name)

    def delete_preset(self, preset_id: int) -> Preset:
        preset = self.index.remove_preset(preset_id)
        _log.info("Deleted preset %r", preset.name)
        return preset

    def set_favorite(self, preset_id: int, is_favorite: bool) -> Preset:
        return self.index.replace_preset(preset_id, is_favorite=is_favorite)

    def toggle_favorite(self, preset_id: int) -> Preset:
        preset = self.index.get_preset(preset_id)
        return self.set_favorite(preset_id, not preset.is_favorite)

    def list_presets(self) -> list[Preset]:
        return self.index.presets()

    def get_preset(self, preset_id: int) -> Preset:
        return self.index.get_preset(preset_id)

    def favorite_presets(self, limit: int = FAVORITE_PRESET_LIMIT) -> list[Preset]:
        return [p for p in self.index.presets() if p.is_favorite][:limit]

    def add_asset_to_presets(self, asset_id: int, preset_ids) -> list[Preset]:
        """Append *asset_id* to each preset in *preset_ids* (already-members untouched)."""
        self.index.get_asset(asset_id)
        updated = []
        for preset_id in dict.fromkeys(preset_ids):
            preset = self.index.get_preset(preset_id)
            if asset_id not in preset.asset_ids:
                preset = self.index.replace_preset(
                    preset_id, asset_ids=preset.asset_ids + (asset_id,)
                )
            updated.append(preset)
        return updated

    # ── Apply ─────────────────────────────────────────────────────────

    def _enabled_on_disk(self, asset: Asset) -> bool:
        # A crash between rename and index update can leave the flag stale.
        # Unreadable folders fall back to the flag so set_enabled reports them.
        try:
            return self.toggles.disk_state(asset)
        except IoError:
            return asset.is_enabled

    def apply_preset(self, preset_id: int, operation_id: int | None = None) -> BulkOutcome:
        """Reconcile the library to exactly the preset's members.

        Disable pass first (index order), then enable pass (member order),
        reported as one operation.  The preset itself is never modified.
        """
        preset = self.index.get_preset(preset_id)
        members = set(preset.asset_ids)
        stale = [i for i in preset.asset_ids if not self.index.has_asset(i)]
        to_enable = [i for i in preset.asset_ids if self.index.has_asset(i)]
        to_disable = [
            a.id for a in self.index.assets()
            if a.id not in members and self._enabled_on_disk(a)
        ]
        plan = [(i, False) for i in to_disable] + [(i, True) for i in to_enable]
        total = len(plan)

        _log.info(
            "Applying preset %r: %d to disable, %d to enable, %d stale member(s)",
            preset.name, len(to_disable), len(to_enable), len(stale),
        )
        outcome = BulkOutcome()
        if stale:
            outcome = outcome.with_note(
                f"{len(stale)} preset member(s) no longer exist and were skipped."
            )
            _log.warning("Preset %r references missing asset(s): %s", preset.name, stale)

        reporter = self.channel.begin(PRESET_SCOPE, total, operation_id=operation_id)
        with reporter:
            with self.index.batch():
                for i, (asset_id, desired) in enumerate(plan, 1):
                    outcome = outcome.with_result(self.toggles.set_enabled(asset_id, desired))
                    reporter.progress(
                        i,
                        f"Processing: {self.toggles.describe(asset_id)} ({i}/{total})",
                        current_asset_id=asset_id,
                    )
            finish_bulk(reporter, outcome)
        _log.info("Preset %r applied: %s", preset.name, outcome.summary())
        return outcome
