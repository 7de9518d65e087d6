"""
Asset Index - the persistent catalogue of categories, entities, assets and presets.

The index never looks at a folder name to decide whether an asset is
enabled: each record stores its clean relative path plus an explicit
``is_enabled`` flag, and the on-disk folder name is derived from the two via
:mod:`naming`.  The only way to change enabled state is
:meth:`AssetIndex.set_asset_enabled`, which callers invoke after the rename
on disk has succeeded.

Records are frozen dataclasses; readers always get snapshots and updates
swap whole records under the index lock.  The catalogue is persisted as a
JSON state file, rewritten atomically after every mutation.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path

import naming
from definitions_schema import (
    OTHER_ENTITY_DESCRIPTION,
    OTHER_ENTITY_NAME,
    OTHER_ENTITY_SUFFIX,
    GameDefinitions,
    other_entity_slug,
)
from errors import IoError, NotFoundError, ValidationError
from mod_ini import EntityMatcher

STATE_VERSION = 1

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Category:
    slug: str
    name: str


@dataclass(frozen=True)
class Entity:
    id: int
    category_slug: str
    name: str
    slug: str
    description: str | None = None
    details: dict = field(default_factory=dict)
    base_image: str | None = None

    @property
    def is_other(self) -> bool:
        return self.slug.endswith(OTHER_ENTITY_SUFFIX)


@dataclass(frozen=True)
class EntityWithCounts:
    entity: Entity
    total_mods: int
    enabled_mods: int


@dataclass(frozen=True)
class Asset:
    """One mod folder.  ``clean_path`` is relative to the mods root."""

    id: int
    entity_id: int
    name: str
    clean_path: str
    is_enabled: bool = True
    description: str | None = None
    author: str | None = None
    category_tag: str | None = None
    image_filename: str | None = None
    details: dict = field(default_factory=dict)

    @property
    def folder_name(self) -> str:
        """Relative on-disk path for the current state."""
        return naming.with_state(self.clean_path, self.is_enabled)

    def disk_path(self, mods_root: Path, enabled: bool | None = None) -> Path:
        state = self.is_enabled if enabled is None else enabled
        return mods_root / naming.with_state(self.clean_path, state)


@dataclass(frozen=True)
class Preset:
    id: int
    name: str
    asset_ids: tuple[int, ...] = ()
    is_favorite: bool = False


@dataclass
class ConsistencyReport:
    repaired: list[int] = field(default_factory=list)  # index flag corrected from disk
    missing: list[int] = field(default_factory=list)  # folder absent in both forms
    conflicting: list[int] = field(default_factory=list)  # both forms exist


def _dedupe(ids) -> tuple[int, ...]:
    seen: set[int] = set()
    out = []
    for i in ids:
        if i not in seen:
            seen.add(i)
            out.append(i)
    return tuple(out)


class AssetIndex:
    """Thread-safe in-memory catalogue backed by a JSON state file.

    Pass ``state_path=None`` for a purely in-memory index.
    """

    def __init__(self, state_path: str | Path | None = None):
        self.state_path = Path(state_path) if state_path else None
        self._lock = threading.RLock()
        self._categories: dict[str, Category] = {}
        self._entities: dict[int, Entity] = {}
        self._assets: dict[int, Asset] = {}
        self._presets: dict[int, Preset] = {}
        self._next_ids = {"entity": 1, "asset": 1, "preset": 1}
        self._batch_depth = 0
        self._dirty = False
        if self.state_path and self.state_path.exists():
            self.load()

    # ── Persistence ───────────────────────────────────────────────────

    def load(self):
        try:
            data = json.loads(self.state_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise IoError(f"Could not load asset index {self.state_path}: {exc}") from exc

        with self._lock:
            self._categories = {
                c["slug"]: Category(**c) for c in data.get("categories", [])
            }
            self._entities = {e["id"]: Entity(**e) for e in data.get("entities", [])}
            self._assets = {a["id"]: Asset(**a) for a in data.get("assets", [])}
            self._presets = {}
            for p in data.get("presets", []):
                p = dict(p)
                p["asset_ids"] = tuple(p.get("asset_ids", ()))
                self._presets[p["id"]] = Preset(**p)
            self._next_ids.update(data.get("next_ids", {}))
        _log.info(
            "Loaded asset index: %d categories, %d entities, %d assets, %d presets",
            len(self._categories), len(self._entities), len(self._assets), len(self._presets),
        )

    def _save(self):
        if self.state_path is None:
            return
        if self._batch_depth:
            self._dirty = True
            return
        data = {
            "version": STATE_VERSION,
            "next_ids": dict(self._next_ids),
            "categories": [asdict(c) for c in self._categories.values()],
            "entities": [asdict(e) for e in self._entities.values()],
            "assets": [asdict(a) for a in self._assets.values()],
            "presets": [asdict(p) for p in self._presets.values()],
        }
        tmp = self.state_path.with_suffix(self.state_path.suffix + ".tmp")
        try:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp, self.state_path)
        except OSError as exc:
            raise IoError(f"Could not save asset index {self.state_path}: {exc}") from exc
        self._dirty = False

    @contextmanager
    def batch(self):
        """Defer state-file writes until the outermost batch exits.

        Bulk toggles wrap their loop in a batch so a thousand renames cost
        one write.  The in-memory records are updated immediately.
        """
        with self._lock:
            self._batch_depth += 1
        try:
            yield self
        finally:
            with self._lock:
                self._batch_depth -= 1
                if self._batch_depth == 0 and self._dirty:
                    self._save()

    def _alloc(self, kind: str) -> int:
        value = self._next_ids[kind]
        self._next_ids[kind] = value + 1
        return value

    # ── Definitions ───────────────────────────────────────────────────

    def sync_definitions(self, definitions: GameDefinitions):
        """Upsert categories/entities from *definitions*.

        Existing entity ids are kept.  Entities that vanished from the
        definitions are dropped and their assets moved to the category's
        ``-other`` entity.
        """
        with self._lock:
            by_slug = {e.slug: e for e in self._entities.values()}
            for cat_slug, cat_def in definitions.categories().items():
                self._categories[cat_slug] = Category(slug=cat_slug, name=cat_def.name)
                wanted = [(other_entity_slug(cat_slug), OTHER_ENTITY_NAME,
                           OTHER_ENTITY_DESCRIPTION, {}, None)]
                wanted += [
                    (e.slug, e.name, e.description, e.details, e.base_image)
                    for e in cat_def.entities
                ]
                keep: set[str] = set()
                for slug, name, description, details, base_image in wanted:
                    existing = by_slug.get(slug)
                    entity_id = existing.id if existing else self._alloc("entity")
                    entity = Entity(
                        id=entity_id, category_slug=cat_slug, name=name, slug=slug,
                        description=description, details=dict(details), base_image=base_image,
                    )
                    self._entities[entity_id] = entity
                    by_slug[slug] = entity
                    keep.add(slug)

                other_id = by_slug[other_entity_slug(cat_slug)].id
                for entity in list(self._entities.values()):
                    if entity.category_slug != cat_slug or entity.slug in keep:
                        continue
                    _log.info("Pruning orphaned entity %r from %r", entity.slug, cat_slug)
                    for asset in list(self._assets.values()):
                        if asset.entity_id == entity.id:
                            self._assets[asset.id] = replace(asset, entity_id=other_id)
                    del self._entities[entity.id]
            self._save()

    # ── Categories / entities ─────────────────────────────────────────

    def categories(self) -> list[Category]:
        with self._lock:
            return sorted(self._categories.values(), key=lambda c: c.name)

    def get_category(self, slug: str) -> Category:
        with self._lock:
            try:
                return self._categories[slug]
            except KeyError:
                raise NotFoundError(f"Category '{slug}' not found") from None

    def entities(self, category_slug: str | None = None) -> list[Entity]:
        with self._lock:
            items = [
                e for e in self._entities.values()
                if category_slug is None or e.category_slug == category_slug
            ]
        return sorted(items, key=lambda e: (not e.is_other, e.name))

    def get_entity(self, entity_id: int) -> Entity:
        with self._lock:
            try:
                return self._entities[entity_id]
            except KeyError:
                raise NotFoundError(f"Entity {entity_id} not found") from None

    def get_entity_by_slug(self, slug: str) -> Entity:
        with self._lock:
            for entity in self._entities.values():
                if entity.slug == slug:
                    return entity
        raise NotFoundError(f"Entity '{slug}' not found")

    def entities_with_counts(self, category_slug: str) -> list[EntityWithCounts]:
        """Entities of a category, ``-other`` first then by name."""
        self.get_category(category_slug)
        with self._lock:
            totals: dict[int, int] = {}
            enabled: dict[int, int] = {}
            for asset in self._assets.values():
                totals[asset.entity_id] = totals.get(asset.entity_id, 0) + 1
                if asset.is_enabled:
                    enabled[asset.entity_id] = enabled.get(asset.entity_id, 0) + 1
            return [
                EntityWithCounts(e, totals.get(e.id, 0), enabled.get(e.id, 0))
                for e in self.entities(category_slug)
            ]

    def matcher(self) -> EntityMatcher:
        with self._lock:
            return EntityMatcher(
                (e.name, e.slug) for e in self._entities.values() if not e.is_other
            )

    def find_entity_slug_from_hint(self, hint: str) -> str | None:
        return self.matcher().match(hint)

    # ── Assets ────────────────────────────────────────────────────────

    def assets(self) -> list[Asset]:
        """All assets in index order (ascending id)."""
        with self._lock:
            return [self._assets[k] for k in sorted(self._assets)]

    def get_asset(self, asset_id: int) -> Asset:
        with self._lock:
            try:
                return self._assets[asset_id]
            except KeyError:
                raise NotFoundError(f"Asset {asset_id} not found") from None

    def has_asset(self, asset_id: int) -> bool:
        with self._lock:
            return asset_id in self._assets

    def assets_for_entity(self, entity_id: int) -> list[Asset]:
        with self._lock:
            items = [a for a in self._assets.values() if a.entity_id == entity_id]
        return sorted(items, key=lambda a: a.name.lower())

    def find_asset_by_path(self, clean_path: str) -> Asset | None:
        clean_path = naming.to_enabled(clean_path)
        with self._lock:
            for asset in self._assets.values():
                if asset.clean_path == clean_path:
                    return asset
        return None

    def add_asset(
        self,
        entity_id: int,
        name: str,
        clean_path: str,
        is_enabled: bool = True,
        description: str | None = None,
        author: str | None = None,
        category_tag: str | None = None,
        image_filename: str | None = None,
        details: dict | None = None,
    ) -> Asset:
        clean_path = naming.to_enabled(clean_path)
        with self._lock:
            self.get_entity(entity_id)
            if self.find_asset_by_path(clean_path) is not None:
                raise ValidationError(f"An asset is already registered at '{clean_path}'")
            asset = Asset(
                id=self._alloc("asset"),
                entity_id=entity_id,
                name=name,
                clean_path=clean_path,
                is_enabled=is_enabled,
                description=description,
                author=author,
                category_tag=category_tag,
                image_filename=image_filename,
                details=dict(details or {}),
            )
            self._assets[asset.id] = asset
            self._save()
            return asset

    def set_asset_enabled(self, asset_id: int, is_enabled: bool) -> Asset:
        """Record a completed rename.  The only enabled-state mutator."""
        with self._lock:
            asset = replace(self.get_asset(asset_id), is_enabled=is_enabled)
            self._assets[asset_id] = asset
            self._save()
            return asset

    def update_asset_metadata(self, asset_id: int, **changes) -> Asset:
        allowed = {"name", "description", "author", "category_tag", "image_filename",
                   "details", "entity_id"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValidationError(f"Cannot update asset field(s): {', '.join(sorted(unknown))}")
        if "name" in changes and not (changes["name"] or "").strip():
            raise ValidationError("Asset name cannot be empty")
        with self._lock:
            if "entity_id" in changes:
                self.get_entity(changes["entity_id"])
            asset = replace(self.get_asset(asset_id), **changes)
            self._assets[asset_id] = asset
            self._save()
            return asset

    def move_asset(self, asset_id: int, entity_id: int, clean_path: str) -> Asset:
        with self._lock:
            self.get_entity(entity_id)
            asset = replace(
                self.get_asset(asset_id),
                entity_id=entity_id,
                clean_path=naming.to_enabled(clean_path),
            )
            self._assets[asset_id] = asset
            self._save()
            return asset

    def remove_asset(self, asset_id: int) -> Asset:
        """Remove an asset and drop it from every preset."""
        with self._lock:
            asset = self.get_asset(asset_id)
            del self._assets[asset_id]
            for preset in list(self._presets.values()):
                if asset_id in preset.asset_ids:
                    self._presets[preset.id] = replace(
                        preset, asset_ids=tuple(i for i in preset.asset_ids if i != asset_id)
                    )
            self._save()
            return asset

    def remove_assets(self, asset_ids) -> int:
        removed = 0
        with self._lock:
            for asset_id in list(asset_ids):
                if asset_id in self._assets:
                    self.remove_asset(asset_id)
                    removed += 1
        return removed

    # ── Presets ───────────────────────────────────────────────────────

    def presets(self) -> list[Preset]:
        with self._lock:
            return sorted(self._presets.values(), key=lambda p: p.name.lower())

    def get_preset(self, preset_id: int) -> Preset:
        with self._lock:
            try:
                return self._presets[preset_id]
            except KeyError:
                raise NotFoundError(f"Preset {preset_id} not found") from None

    def find_preset_by_name(self, name: str) -> Preset | None:
        key = name.strip().lower()
        with self._lock:
            for preset in self._presets.values():
                if preset.name.lower() == key:
                    return preset
        return None

    def add_preset(self, name: str, asset_ids) -> Preset:
        name = name.strip()
        if not name:
            raise ValidationError("Preset name cannot be empty")
        with self._lock:
            if self.find_preset_by_name(name) is not None:
                raise ValidationError(f"A preset named '{name}' already exists")
            preset = Preset(id=self._alloc("preset"), name=name, asset_ids=_dedupe(asset_ids))
            self._presets[preset.id] = preset
            self._save()
            return preset

    def replace_preset(self, preset_id: int, **changes) -> Preset:
        with self._lock:
            preset = self.get_preset(preset_id)
            if "asset_ids" in changes:
                changes["asset_ids"] = _dedupe(changes["asset_ids"])
            preset = replace(preset, **changes)
            self._presets[preset_id] = preset
            self._save()
            return preset

    def remove_preset(self, preset_id: int) -> Preset:
        with self._lock:
            preset = self.get_preset(preset_id)
            del self._presets[preset_id]
            self._save()
            return preset

    # ── Consistency ───────────────────────────────────────────────────

    def verify_against_disk(self, mods_root: Path) -> ConsistencyReport:
        """Correct ``is_enabled`` flags that disagree with the disk.

        A crash between a rename and the index update leaves the flag
        stale; the folder name on disk wins.
        """
        report = ConsistencyReport()
        with self._lock:
            for asset in self.assets():
                enabled_exists = asset.disk_path(mods_root, True).is_dir()
                disabled_exists = asset.disk_path(mods_root, False).is_dir()
                if enabled_exists and disabled_exists:
                    _log.warning(
                        "Asset %d has both enabled and disabled folders on disk: %s",
                        asset.id, asset.clean_path,
                    )
                    report.conflicting.append(asset.id)
                elif not enabled_exists and not disabled_exists:
                    report.missing.append(asset.id)
                elif enabled_exists != asset.is_enabled:
                    _log.warning(
                        "Repairing stale state of asset %d (%s): index=%s disk=%s",
                        asset.id, asset.clean_path, asset.is_enabled, enabled_exists,
                    )
                    self._assets[asset.id] = replace(asset, is_enabled=enabled_exists)
                    report.repaired.append(asset.id)
            if report.repaired:
                self._save()
        return report
