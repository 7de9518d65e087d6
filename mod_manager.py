"""
Mod Asset Manager - Core Logic

Command surface over the asset index, toggle/preset engines, archive
inspector and scanner.  One ``ModManager`` serves one mods folder.

Concurrency:
    Bulk operations (preset apply, bulk toggle, scan) run on a single
    background worker and return a Future immediately.  Only one of them
    may be outstanding per mods folder; starting another raises
    ``OperationInProgressError``.  Every mutating command, foreground or
    background, holds the folder's lock, which is shared by all managers
    pointed at the same folder within the process.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
import sys
import threading
import tomllib
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

import pydantic

import launcher
import naming
from archive_inspector import ArchiveAnalysis, ArchiveInspector, ImportMetadata, read_archive_member
from asset_index import Asset, AssetIndex, Category, ConsistencyReport, Entity, EntityWithCounts, Preset
from definitions_schema import GameDefinitions, load_definitions
from errors import (
    ElevationError,
    IoError,
    OperationInProgressError,
    ValidationError,
)
from event_channel import EventChannel
from mod_ini import PREVIEW_IMAGE_FILENAME, KeybindInfo, is_mod_ini_name, parse_keybinds
from preset_engine import PresetEngine
from scanner import Scanner
from settings import AppSettings
from toggle_engine import ToggleEngine

_log = logging.getLogger(__name__)


# ── Per-folder serialization ──────────────────────────────────────────

@dataclass
class _FolderState:
    lock: threading.RLock = field(default_factory=threading.RLock)
    guard: threading.Lock = field(default_factory=threading.Lock)
    busy: bool = False


_FOLDER_STATES: dict[str, _FolderState] = {}
_FOLDER_STATES_GUARD = threading.Lock()


def _folder_state(mods_dir: Path) -> _FolderState:
    key = os.path.normcase(str(mods_dir.resolve()))
    with _FOLDER_STATES_GUARD:
        return _FOLDER_STATES.setdefault(key, _FolderState())


def _open_path(path: Path):
    if sys.platform == "win32":
        os.startfile(str(path))
    elif sys.platform == "darwin":
        subprocess.Popen(["open", str(path)])
    else:
        subprocess.Popen(["xdg-open", str(path)])


class ModManager:
    """
    Main mod manager controller.

    Workflow:
        1. sync_definitions() to load the game's categories/entities
        2. scan_mods() to register folders already in the library
        3. toggle_asset_enabled() / bulk_toggle() / apply_preset() to manage state
        4. analyze_archive() + import_archive() to add new mods
    """

    def __init__(
        self,
        mods_dir: str | Path,
        index_path: str | Path | None = None,
        definitions: GameDefinitions | str | Path | None = None,
        channel: EventChannel | None = None,
        log_callback: Optional[Callable[[str], None]] = None,
    ):
        self.mods_dir = Path(mods_dir)
        self.channel = channel or EventChannel()
        self.index = AssetIndex(index_path)
        self._log_cb = log_callback or print

        self.toggles = ToggleEngine(self.index, self.mods_dir, self.channel)
        self.presets = PresetEngine(self.index, self.toggles, self.channel)
        self.inspector = ArchiveInspector(self.index, self.mods_dir)
        self.scanner = Scanner(self.index, self.mods_dir, self.channel)

        self._state = _folder_state(self.mods_dir)
        self._worker = ThreadPoolExecutor(max_workers=1, thread_name_prefix="mod-worker")
        self._analysis = ThreadPoolExecutor(max_workers=2, thread_name_prefix="archive-analysis")

        if definitions is not None:
            self.sync_definitions(definitions)

    @classmethod
    def from_settings(cls, settings: AppSettings, **kwargs) -> ModManager:
        definitions = settings.definitions_path()
        return cls(
            settings.mods_folder(),
            index_path=settings.index_path(),
            definitions=definitions if definitions.is_file() else None,
            **kwargs,
        )

    # ── Logging ───────────────────────────────────────────────────────

    def log(self, msg: str):
        self._log_cb(msg)

    # ── Serialization helpers ─────────────────────────────────────────

    def _check_idle(self):
        if self._state.busy:
            raise OperationInProgressError(
                "Another bulk operation is still running for this mods folder"
            )

    def _run_locked(self, func, *args, **kwargs):
        with self._state.lock:
            return func(*args, **kwargs)

    def _mutate(self, func, *args, **kwargs):
        """Run a foreground mutation under the folder lock."""
        self._check_idle()
        return self._run_locked(func, *args, **kwargs)

    def _submit_exclusive(self, func, *args, **kwargs) -> Future:
        with self._state.guard:
            self._check_idle()
            self._state.busy = True
        try:
            future = self._worker.submit(self._run_exclusive, func, *args, **kwargs)
        except RuntimeError:
            self._state.busy = False
            raise

        def _release(f):
            # Only reached without running when the future was cancelled
            if f.cancelled():
                self._state.busy = False

        future.add_done_callback(_release)
        return future

    def _run_exclusive(self, func, *args, **kwargs):
        # Cleared before the Future resolves so waiters can start the next operation
        try:
            return self._run_locked(func, *args, **kwargs)
        finally:
            self._state.busy = False

    @property
    def is_busy(self) -> bool:
        return self._state.busy

    def shutdown(self, wait: bool = True):
        self._worker.shutdown(wait=wait)
        self._analysis.shutdown(wait=wait)

    # ── Definitions & consistency ─────────────────────────────────────

    def sync_definitions(self, definitions: GameDefinitions | str | Path):
        if not isinstance(definitions, GameDefinitions):
            try:
                definitions = load_definitions(definitions)
            except (pydantic.ValidationError, tomllib.TOMLDecodeError) as exc:
                raise ValidationError(f"Invalid definitions file {definitions}: {exc}") from exc
            except OSError as exc:
                raise IoError(f"Could not read definitions {definitions}: {exc}") from exc
        self._run_locked(self.index.sync_definitions, definitions)
        self.log(f"Synced {len(definitions.categories())} categories from definitions")

    def verify_consistency(self) -> ConsistencyReport:
        report = self._mutate(self.index.verify_against_disk, self.mods_dir)
        if report.repaired:
            self.log(f"Repaired state of {len(report.repaired)} asset(s) from disk")
        if report.missing:
            self.log(f"Warning: {len(report.missing)} asset folder(s) missing on disk")
        return report

    def scan_mods(self, operation_id: int | None = None) -> Future:
        """Walk the mods folder in the background; Future resolves to ScanSummary."""
        return self._submit_exclusive(self.scanner.scan, operation_id)

    # ── Queries ───────────────────────────────────────────────────────

    def get_categories(self) -> list[Category]:
        return self.index.categories()

    def get_entities_by_category(self, category_slug: str) -> list[Entity]:
        self.index.get_category(category_slug)
        return self.index.entities(category_slug)

    def get_entities_by_category_with_counts(self, category_slug: str) -> list[EntityWithCounts]:
        return self.index.entities_with_counts(category_slug)

    def get_entity_details(self, entity_slug: str) -> Entity:
        return self.index.get_entity_by_slug(entity_slug)

    def get_assets_for_entity(self, entity_slug: str) -> list[Asset]:
        entity = self.index.get_entity_by_slug(entity_slug)
        return self.index.assets_for_entity(entity.id)

    def get_asset(self, asset_id: int) -> Asset:
        return self.index.get_asset(asset_id)

    def _asset_folder(self, asset: Asset) -> Path:
        return asset.disk_path(self.mods_dir, self.toggles.disk_state(asset))

    def get_ini_keybinds(self, asset_id: int) -> list[KeybindInfo]:
        """Keybinds from the first of the mod's inis that declares any."""
        folder = self._asset_folder(self.index.get_asset(asset_id))
        inis = sorted(p for p in folder.rglob("*") if p.is_file() and is_mod_ini_name(p.name))
        for ini in inis:
            try:
                text = ini.read_text(encoding="utf-8", errors="replace")
            except OSError as exc:
                _log.warning("Skipping unreadable ini %s: %s", ini, exc)
                continue
            binds = parse_keybinds(text)
            if binds:
                return binds
        return []

    # ── Toggling ──────────────────────────────────────────────────────

    def toggle_asset_enabled(self, entity_slug: str, asset: Asset | int) -> bool:
        """Flip one asset; returns the new enabled state."""
        asset_id = asset.id if isinstance(asset, Asset) else asset
        entity = self.index.get_entity_by_slug(entity_slug)
        current = self.index.get_asset(asset_id)
        if current.entity_id != entity.id:
            raise ValidationError(
                f"Asset {asset_id} does not belong to entity '{entity_slug}'"
            )
        new_state = self._mutate(self.toggles.toggle, asset_id)
        self.log(f"{'Enabled' if new_state else 'Disabled'}: {current.name}")
        return new_state

    def bulk_toggle(self, asset_ids, enabled: bool, operation_id: int | None = None) -> Future:
        """Future resolves to a BulkOutcome; progress goes to ``bulk://`` events."""
        return self._submit_exclusive(self.toggles.bulk_toggle, list(asset_ids), enabled,
                                      operation_id)

    # ── Presets ───────────────────────────────────────────────────────

    def apply_preset(self, preset_id: int, operation_id: int | None = None) -> Future:
        """Future resolves to a BulkOutcome; progress goes to ``preset://`` events."""
        self.index.get_preset(preset_id)
        return self._submit_exclusive(self.presets.apply_preset, preset_id, operation_id)

    def create_preset(self, name: str) -> Preset:
        return self._mutate(self.presets.create_preset, name)

    def overwrite_preset(self, preset_id: int) -> Preset:
        return self._mutate(self.presets.overwrite_preset, preset_id)

    def delete_preset(self, preset_id: int) -> Preset:
        return self._mutate(self.presets.delete_preset, preset_id)

    def toggle_preset_favorite(self, preset_id: int, is_favorite: bool) -> Preset:
        return self._mutate(self.presets.set_favorite, preset_id, is_favorite)

    def get_presets(self) -> list[Preset]:
        return self.presets.list_presets()

    def get_favorite_presets(self) -> list[Preset]:
        return self.presets.favorite_presets()

    def add_asset_to_presets(self, asset_id: int, preset_ids) -> list[Preset]:
        return self._mutate(self.presets.add_asset_to_presets, asset_id, list(preset_ids))

    # ── Archives ──────────────────────────────────────────────────────

    def analyze_archive(self, file_path: str | Path) -> ArchiveAnalysis:
        return self.inspector.analyze(file_path)

    def analyze_archive_async(self, file_path: str | Path) -> Future:
        return self._analysis.submit(self.inspector.analyze, file_path)

    def read_archive_file_content(self, file_path: str | Path, member: str) -> bytes:
        return read_archive_member(file_path, member)

    def import_archive(
        self,
        archive: ArchiveAnalysis | str | Path,
        target_entity_slug: str,
        metadata: ImportMetadata | dict,
        chosen_root: str | None = None,
        extract_all: bool = False,
        preset_ids=(),
    ) -> Asset:
        asset = self._mutate(
            self.inspector.import_archive,
            archive, target_entity_slug, metadata,
            chosen_root=chosen_root, extract_all=extract_all, preset_ids=tuple(preset_ids),
        )
        self.log(f"Imported: {asset.name}")
        return asset

    # ── Asset maintenance ─────────────────────────────────────────────

    def update_asset_info(
        self,
        asset_id: int,
        name: str | None = None,
        description: str | None = None,
        author: str | None = None,
        category_tag: str | None = None,
        target_entity_slug: str | None = None,
        image_data: bytes | None = None,
        image_path: str | Path | None = None,
    ) -> Asset:
        """Update metadata, optionally relocating the asset to another entity.

        Enabled state is never changed here.
        """
        return self._mutate(
            self._update_asset_info, asset_id, name, description, author, category_tag,
            target_entity_slug, image_data, image_path,
        )

    def _update_asset_info(self, asset_id, name, description, author, category_tag,
                           target_entity_slug, image_data, image_path) -> Asset:
        asset = self.index.get_asset(asset_id)
        enabled = self.toggles.disk_state(asset)
        folder = asset.disk_path(self.mods_dir, enabled)

        if target_entity_slug:
            entity = self.index.get_entity_by_slug(target_entity_slug)
            if entity.id != asset.entity_id:
                basename = asset.clean_path.rsplit("/", 1)[-1]
                new_clean = f"{entity.category_slug}/{entity.slug}/{basename}"
                target = self.mods_dir / naming.with_state(new_clean, enabled)
                if target.exists() or (self.mods_dir / naming.with_state(new_clean, not enabled)).exists():
                    raise ValidationError(f"Cannot relocate: '{new_clean}' already exists")
                try:
                    target.parent.mkdir(parents=True, exist_ok=True)
                    os.rename(folder, target)
                except OSError as exc:
                    raise IoError(f"Failed to move '{folder}' to '{target}': {exc}") from exc
                asset = self.index.move_asset(asset_id, entity.id, new_clean)
                folder = target
                _log.info("Relocated asset %d to %s", asset_id, new_clean)

        changes: dict = {}
        for key, value in (("name", name), ("description", description),
                           ("author", author), ("category_tag", category_tag)):
            if value is not None:
                changes[key] = value.strip() if key == "name" else value

        preview = folder / PREVIEW_IMAGE_FILENAME
        try:
            if image_data:
                preview.write_bytes(image_data)
                changes["image_filename"] = PREVIEW_IMAGE_FILENAME
            elif image_path:
                source = Path(image_path)
                if not source.is_file():
                    raise ValidationError(f"Selected image file does not exist: {source}")
                shutil.copyfile(source, preview)
                changes["image_filename"] = PREVIEW_IMAGE_FILENAME
        except OSError as exc:
            raise IoError(f"Failed to save preview image to '{preview}': {exc}") from exc

        if changes:
            asset = self.index.update_asset_metadata(asset_id, **changes)
        return asset

    def delete_asset(self, asset_id: int) -> Asset:
        """Delete the asset's folder (either form) and its index entry."""
        return self._mutate(self._delete_asset, asset_id)

    def _delete_asset(self, asset_id: int) -> Asset:
        asset = self.index.get_asset(asset_id)
        candidates = [asset.disk_path(self.mods_dir, True), asset.disk_path(self.mods_dir, False)]
        existing = [p for p in candidates if p.is_dir()]
        if not existing:
            _log.warning("Folder for asset %d not found at %s; removing index entry only",
                         asset_id, " or ".join(str(p) for p in candidates))
        for path in existing:
            try:
                shutil.rmtree(path)
            except OSError as exc:
                raise IoError(f"Failed to delete mod folder '{path}': {exc}") from exc
        self.index.remove_asset(asset_id)
        self.log(f"Deleted: {asset.name}")
        return asset

    def open_asset_folder(self, asset_id: int) -> Path:
        folder = self._asset_folder(self.index.get_asset(asset_id))
        try:
            _open_path(folder)
        except OSError as exc:
            raise IoError(f"Failed to open folder '{folder}': {exc}") from exc
        return folder

    def open_mods_folder(self) -> Path:
        if not self.mods_dir.is_dir():
            raise IoError(f"Mods directory does not exist: {self.mods_dir}")
        try:
            _open_path(self.mods_dir)
        except OSError as exc:
            raise IoError(f"Failed to open folder '{self.mods_dir}': {exc}") from exc
        return self.mods_dir

    # ── Launching ─────────────────────────────────────────────────────

    def launch_executable(self, path: str | Path, allow_elevation: bool = True):
        """Launch *path*, retrying once through UAC when elevation is required."""
        try:
            launcher.launch_executable(path)
        except ElevationError as exc:
            if not allow_elevation:
                raise
            self.log(f"{exc}; retrying with administrator rights")
            launcher.launch_elevated(path)

    # ── Misc ──────────────────────────────────────────────────────────

    def export_state(self) -> str:
        """JSON snapshot of the library for diagnostics."""
        return json.dumps(
            {
                "mods_dir": str(self.mods_dir),
                "assets": [
                    {"id": a.id, "name": a.name, "folder": a.folder_name, "enabled": a.is_enabled}
                    for a in self.index.assets()
                ],
                "presets": [
                    {"id": p.id, "name": p.name, "asset_ids": list(p.asset_ids),
                     "is_favorite": p.is_favorite}
                    for p in self.index.presets()
                ],
            },
            indent=2,
            ensure_ascii=False,
        )

