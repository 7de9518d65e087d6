"""
Mods folder scanner.

Walks ``<mods>`` looking for mod folders (folders that directly hold a
marker ``.ini``), registers the ones the index does not know yet and prunes
index entries whose folder is gone.  A mod folder's children are never
scanned; nested inis belong to the mod.

Folders disabled by hand with a non-canonical marker (``DISABLEDHat``,
``DISABLED Hat``) are renamed to the canonical ``DISABLED_`` form first.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

import naming
from asset_index import AssetIndex, Entity
from definitions_schema import other_entity_slug
from errors import IoError, ModManagerError, NotFoundError
from event_channel import EventChannel
from mod_ini import (
    EntityMatcher,
    IniHints,
    clean_mod_name,
    find_preview_image,
    has_mod_ini,
    match_category,
    match_category_from_stem,
    mod_ini_files,
    parse_ini_hints,
)

SCAN_SCOPE = "scan"

_log = logging.getLogger(__name__)


@dataclass
class ScanSummary:
    processed: int = 0
    added: int = 0
    pruned: int = 0
    renamed: int = 0
    errors: list[str] = field(default_factory=list)

    def message(self) -> str:
        text = (
            f"Scan complete. Processed {self.processed} mod folders. "
            f"Added {self.added} new mods. Pruned {self.pruned} missing mods."
        )
        if self.renamed:
            text += f" Renamed {self.renamed} incorrectly prefixed folders."
        if self.errors:
            text += f" {len(self.errors)} errors occurred."
        return text


class Scanner:
    def __init__(self, index: AssetIndex, mods_root: str | Path,
                 channel: EventChannel | None = None):
        self.index = index
        self.mods_root = Path(mods_root)
        self.channel = channel or EventChannel()

    # ── Discovery ─────────────────────────────────────────────────────

    def _discover(self, summary: ScanSummary) -> list[Path]:
        found: list[Path] = []
        for dirpath, dirnames, _files in os.walk(self.mods_root):
            current = Path(dirpath)
            if current != self.mods_root and has_mod_ini(current):
                found.append(current)
                dirnames[:] = []
                continue
            kept = []
            for name in sorted(dirnames):
                if name.startswith("."):
                    continue
                canonical = naming.normalize_legacy_marker(name)
                if canonical is not None:
                    try:
                        self._rename_legacy(current / name, current / canonical)
                    except IoError as exc:
                        summary.errors.append(str(exc))
                        continue
                    summary.renamed += 1
                    name = canonical
                kept.append(name)
            dirnames[:] = kept
        return found

    @staticmethod
    def _rename_legacy(source: Path, target: Path):
        if target.exists():
            raise IoError(f"Cannot normalise '{source.name}': '{target.name}' already exists")
        try:
            os.rename(source, target)
        except OSError as exc:
            raise IoError(f"Failed to rename '{source}' to '{target}': {exc}") from exc
        _log.info("Normalised disabled folder %s -> %s", source.name, target.name)

    # ── Deduction ─────────────────────────────────────────────────────

    def _deduce_entity(self, folder: Path, rel: str, matcher: EntityMatcher,
                       hints) -> Entity:
        clean_rel = naming.to_enabled(rel)
        parts = clean_rel.split("/")
        categories = [(c.slug, c.name) for c in self.index.categories()]

        slug = matcher.match(parts[-1])
        if slug is None:
            # Parent folders below the category level, nearest first
            for part in reversed(parts[1:-1]):
                slug = matcher.match(part)
                if slug:
                    break
        if slug is None and hints.target:
            slug = matcher.match(hints.target)
        if slug is None:
            for child in sorted(folder.iterdir()):
                if child.is_file() and child.stem:
                    slug = matcher.match(child.stem)
                    if slug:
                        break
        if slug is not None:
            return self.index.get_entity_by_slug(slug)

        category = None
        for part in reversed(parts[:-1]):
            category = match_category_from_stem(categories, part)
            if category:
                break
        if category is None:
            category = match_category(categories, hints.type or "")
        if category is None:
            raise NotFoundError(f"Could not determine a category for '{clean_rel}'")
        return self.index.get_entity_by_slug(other_entity_slug(category))

    def _register(self, folder: Path, matcher: EntityMatcher) -> int:
        rel = folder.relative_to(self.mods_root).as_posix()
        clean_rel, enabled = naming.split_state(rel)

        existing = self.index.find_asset_by_path(clean_rel)
        if existing is not None:
            if existing.is_enabled != enabled:
                _log.warning("Repairing stale state of %s from disk", clean_rel)
                self.index.set_asset_enabled(existing.id, enabled)
            return existing.id

        inis = mod_ini_files(folder)
        hints = IniHints()
        if inis:
            hints = parse_ini_hints(inis[0].read_text(encoding="utf-8", errors="replace"))

        entity = self._deduce_entity(folder, rel, matcher, hints)
        folder_stem = PurePosixPath(clean_rel).name
        name = clean_mod_name(hints.name) if hints.name else clean_mod_name(folder_stem)
        preview = find_preview_image(p.name for p in folder.iterdir() if p.is_file())
        asset = self.index.add_asset(
            entity_id=entity.id,
            name=name or folder_stem,
            clean_path=clean_rel,
            is_enabled=enabled,
            description=hints.description,
            author=hints.author,
            category_tag=hints.type,
            image_filename=preview,
        )
        _log.info("Registered %s as asset %d under %s", clean_rel, asset.id, entity.slug)
        return asset.id

    # ── Scan ──────────────────────────────────────────────────────────

    def scan(self, operation_id: int | None = None) -> ScanSummary:
        if not self.mods_root.is_dir():
            raise IoError(f"Mods directory is not a valid directory: {self.mods_root}")

        summary = ScanSummary()
        before = {a.id for a in self.index.assets()}
        folders = self._discover(summary)
        matcher = self.index.matcher()
        found_ids: set[int] = set()

        reporter = self.channel.begin(SCAN_SCOPE, len(folders), action=None,
                                      operation_id=operation_id)
        with reporter:
            for i, folder in enumerate(folders, 1):
                summary.processed += 1
                try:
                    asset_id = self._register(folder, matcher)
                except (ModManagerError, OSError) as exc:
                    _log.warning("Could not register %s: %s", folder, exc)
                    summary.errors.append(f"{folder.name}: {exc}")
                else:
                    found_ids.add(asset_id)
                    if asset_id not in before:
                        summary.added += 1
                reporter.progress(i, f"Processing: {folder.name}")

            missing = before - found_ids
            summary.pruned = self.index.remove_assets(sorted(missing))
            if missing:
                _log.info("Pruned %d asset(s) missing on disk", summary.pruned)
            reporter.complete(summary.message())
        _log.info(summary.message())
        return summary
