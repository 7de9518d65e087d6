"""
Archive Inspector - look inside mod archives before importing them.

Supports ``.zip``, ``.7z`` and ``.rar``.  Analysis lists the entries
without extracting anything, finds the folders that look like a mod root
(they directly contain a marker ``.ini``), reads metadata hints from that
ini and tries to deduce which entity/category the mod belongs to.

Import extracts the chosen root into a staging folder next to the
library, moves it into ``<mods>/<category>/<entity>/<name>`` and only then
registers it in the asset index.
"""

from __future__ import annotations

import lzma
import logging
import shutil
import sys
import tempfile
import zipfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

import py7zr
import py7zr.exceptions
import pydantic
import rarfile
from pydantic import BaseModel, field_validator

import naming
from asset_index import Asset, AssetIndex
from errors import ArchiveError, IoError, ModManagerError, NotFoundError, ValidationError
from mod_ini import (
    PREVIEW_CANDIDATES,
    PREVIEW_IMAGE_FILENAME,
    IniHints,
    clean_mod_name,
    is_mod_ini_name,
    match_category,
    match_category_from_stem,
    parse_ini_hints,
    sanitize_folder_name,
)

# Point rarfile at a bundled UnRAR.exe when present (frozen exe uses _MEIPASS)
if getattr(sys, "frozen", False):
    _unrar = Path(sys._MEIPASS) / "UnRAR.exe"
else:
    _unrar = Path(__file__).parent / "assets" / "UnRAR.exe"
if _unrar.exists():
    rarfile.UNRAR_TOOL = str(_unrar)

SUPPORTED_EXTENSIONS = {".zip", ".7z", ".rar"}
STAGING_PREFIX = ".import-"

_ARCHIVE_FAILURES = (
    zipfile.BadZipFile,
    py7zr.exceptions.ArchiveError,
    rarfile.Error,
    lzma.LZMAError,
    EOFError,
    NotImplementedError,
)

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ArchiveEntry:
    path: str  # "/"-separated, no trailing slash
    is_dir: bool
    is_likely_mod_root: bool = False


@dataclass
class ArchiveAnalysis:
    """Result of :meth:`ArchiveInspector.analyze`.  Never persisted.

    ``suggested_root`` is ``None`` when no folder looks like a mod root and
    ``""`` when the marker ini sits at the top of the archive.
    """

    file_path: str
    entries: list[ArchiveEntry] = field(default_factory=list)
    suggested_root: str | None = None
    deduced_mod_name: str | None = None
    deduced_author: str | None = None
    deduced_category_slug: str | None = None
    deduced_entity_slug: str | None = None
    raw_ini_type: str | None = None
    raw_ini_target: str | None = None
    detected_preview_internal_path: str | None = None

    @property
    def likely_roots(self) -> list[str]:
        return [e.path for e in self.entries if e.is_likely_mod_root]

    @property
    def files(self) -> list[str]:
        return [e.path for e in self.entries if not e.is_dir]


class ImportMetadata(BaseModel):
    """User-confirmed details for an import."""

    name: str
    description: str | None = None
    author: str | None = None
    category_tag: str | None = None
    image_data: bytes | None = None
    preview_path: str | None = None

    @field_validator("name")
    @classmethod
    def _check_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Mod name cannot be empty")
        if not sanitize_folder_name(v):
            raise ValueError(f"Mod name {v!r} results in an invalid folder name")
        return v


# ── Low-level archive access ──────────────────────────────────────────

def _extension(filepath: Path) -> str:
    ext = filepath.suffix.lower()
    if ext not in SUPPORTED_EXTENSIONS:
        raise ArchiveError(f"Unsupported archive format: {ext or filepath.name}")
    return ext


@contextmanager
def _archive_errors(filepath: Path):
    """Translate library failures into ArchiveError / IoError."""
    try:
        yield
    except ModManagerError:
        raise
    except _ARCHIVE_FAILURES as exc:
        raise ArchiveError(f"Failed to read archive {filepath.name}: {exc}") from exc
    except OSError as exc:
        raise IoError(f"Failed to access {filepath}: {exc}") from exc


def _check_file(filepath: Path):
    if not filepath.is_file():
        raise IoError(f"Archive file not found: {filepath}")


def _normalize_member(name: str) -> str:
    return name.replace("\\", "/").strip("/")


def list_archive_entries(filepath: str | Path) -> list[tuple[str, bool]]:
    """Return ``(path, is_dir)`` for every stored entry."""
    filepath = Path(filepath)
    _check_file(filepath)
    ext = _extension(filepath)
    raw: list[tuple[str, bool]] = []
    with _archive_errors(filepath):
        if ext == ".zip":
            with zipfile.ZipFile(filepath, "r") as zf:
                raw = [(i.filename, i.is_dir()) for i in zf.infolist()]
        elif ext == ".7z":
            with py7zr.SevenZipFile(filepath, "r") as sz:
                raw = [(i.filename, i.is_directory) for i in sz.list()]
        elif ext == ".rar":
            with rarfile.RarFile(filepath, "r") as rf:
                raw = [(i.filename, i.is_dir()) for i in rf.infolist()]
    out = []
    for name, is_dir in raw:
        name = _normalize_member(name)
        if name:
            out.append((name, is_dir))
    return out


def read_archive_members(filepath: str | Path, members: list[str]) -> dict[str, bytes]:
    """Read several members into memory without touching the library."""
    filepath = Path(filepath)
    _check_file(filepath)
    ext = _extension(filepath)
    if not members:
        return {}
    result: dict[str, bytes] = {}
    with _archive_errors(filepath):
        if ext == ".zip":
            with zipfile.ZipFile(filepath, "r") as zf:
                stored = {_normalize_member(n): n for n in zf.namelist()}
                for m in members:
                    if m not in stored:
                        raise NotFoundError(f"'{m}' not found in {filepath.name}")
                    result[m] = zf.read(stored[m])
        elif ext == ".7z":
            with py7zr.SevenZipFile(filepath, "r") as sz:
                stored = {_normalize_member(n): n for n in sz.getnames()}
            missing = [m for m in members if m not in stored]
            if missing:
                raise NotFoundError(f"'{missing[0]}' not found in {filepath.name}")
            with tempfile.TemporaryDirectory() as tmp:
                # A fresh handle per extract; py7zr handles are single-pass
                with py7zr.SevenZipFile(filepath, "r") as sz:
                    sz.extract(path=tmp, targets=[stored[m] for m in members])
                for m in members:
                    result[m] = (Path(tmp) / m).read_bytes()
        elif ext == ".rar":
            with rarfile.RarFile(filepath, "r") as rf:
                stored = {_normalize_member(i.filename): i for i in rf.infolist()}
                for m in members:
                    if m not in stored:
                        raise NotFoundError(f"'{m}' not found in {filepath.name}")
                    result[m] = rf.read(stored[m])
    return result


def read_archive_member(filepath: str | Path, member: str) -> bytes:
    """Read a single member from an archive into bytes without extracting."""
    member = _normalize_member(member)
    return read_archive_members(filepath, [member])[member]


def _extract_all_to(filepath: Path, members: list[str], dest: Path):
    ext = _extension(filepath)
    with _archive_errors(filepath):
        if ext == ".zip":
            with zipfile.ZipFile(filepath, "r") as zf:
                stored = {_normalize_member(n): n for n in zf.namelist()}
                for m in members:
                    zf.extract(stored[m], dest)
        elif ext == ".7z":
            with py7zr.SevenZipFile(filepath, "r") as sz:
                stored = {_normalize_member(n): n for n in sz.getnames()}
            with py7zr.SevenZipFile(filepath, "r") as sz:
                sz.extract(path=dest, targets=[stored[m] for m in members])
        elif ext == ".rar":
            with rarfile.RarFile(filepath, "r") as rf:
                stored = {_normalize_member(i.filename): i for i in rf.infolist()}
                for m in members:
                    rf.extract(stored[m], dest)


def _is_safe_member(path: str) -> bool:
    parts = PurePosixPath(path).parts
    if not parts or PurePosixPath(path).is_absolute():
        return False
    if ":" in parts[0]:
        return False
    return ".." not in parts


# ── Analysis helpers ──────────────────────────────────────────────────

def _build_entries(raw: list[tuple[str, bool]]) -> list[ArchiveEntry]:
    """Deduplicate and add directory entries implied by file paths."""
    kinds: dict[str, bool] = {}
    for path, is_dir in raw:
        kinds[path] = kinds.get(path, False) or is_dir
        parts = path.split("/")
        for depth in range(1, len(parts)):
            kinds["/".join(parts[:depth])] = True
    return [ArchiveEntry(p, kinds[p]) for p in sorted(kinds)]


def _parent(path: str) -> str:
    return path.rpartition("/")[0]


def _depth(path: str) -> int:
    return 0 if not path else path.count("/") + 1


def _direct_children(files: list[str], root: str) -> list[str]:
    return [f for f in files if _parent(f) == root]


class ArchiveInspector:
    """Analyse archives and import them into the library.

    *index* is optional for analysis (no entity deduction without it) but
    required for import, together with *mods_root*.
    """

    def __init__(self, index: AssetIndex | None = None, mods_root: str | Path | None = None):
        self.index = index
        self.mods_root = Path(mods_root) if mods_root else None

    # ── Analysis ──────────────────────────────────────────────────────

    def analyze(self, file_path: str | Path) -> ArchiveAnalysis:
        filepath = Path(file_path)
        _log.info("Analyzing archive %s", filepath)
        entries = _build_entries(list_archive_entries(filepath))
        analysis = ArchiveAnalysis(file_path=str(filepath))
        files = [e.path for e in entries if not e.is_dir]

        roots = {_parent(f) for f in files if is_mod_ini_name(f.rsplit("/", 1)[-1])}
        analysis.entries = [
            ArchiveEntry(e.path, e.is_dir, e.is_dir and e.path in roots) for e in entries
        ]
        if roots:
            analysis.suggested_root = min(roots, key=lambda r: (_depth(r), r))

        hints = IniHints()
        root = analysis.suggested_root
        if root is not None:
            hints = self._read_hints(filepath, files, root)
            children = _direct_children(files, root)
            by_lower = {c.rsplit("/", 1)[-1].lower(): c for c in children}
            for candidate in PREVIEW_CANDIDATES:
                if candidate in by_lower:
                    analysis.detected_preview_internal_path = by_lower[candidate]
                    break

        analysis.raw_ini_target = hints.target
        analysis.raw_ini_type = hints.type
        analysis.deduced_author = hints.author

        stem = filepath.stem
        name = clean_mod_name(hints.name) if hints.name else ""
        if not name:
            name = clean_mod_name(stem)
        analysis.deduced_mod_name = name or stem

        if self.index is not None:
            self._deduce(analysis, files, stem)

        _log.info(
            "Analysis of %s: root=%r entity=%r category=%r name=%r",
            filepath.name, analysis.suggested_root, analysis.deduced_entity_slug,
            analysis.deduced_category_slug, analysis.deduced_mod_name,
        )
        return analysis

    def _read_hints(self, filepath: Path, files: list[str], root: str) -> IniHints:
        inis = sorted(
            f for f in _direct_children(files, root) if is_mod_ini_name(f.rsplit("/", 1)[-1])
        )
        for ini_path in inis:
            data = read_archive_member(filepath, ini_path)
            hints = parse_ini_hints(data.decode("utf-8", errors="replace"))
            if not hints.is_empty():
                return hints
        return IniHints()

    def _deduce(self, analysis: ArchiveAnalysis, files: list[str], stem: str):
        matcher = self.index.matcher()
        categories = [(c.slug, c.name) for c in self.index.categories()]

        entity = matcher.match(analysis.raw_ini_target) if analysis.raw_ini_target else None
        category = match_category(categories, analysis.raw_ini_type or "")
        if entity is None:
            for f in files:
                file_stem = PurePosixPath(f).stem
                if file_stem:
                    entity = matcher.match(file_stem)
                    if entity:
                        break
        if entity is None:
            entity = matcher.match(stem)
        if category is None:
            category = match_category_from_stem(categories, stem)
        if entity is not None and category is None:
            category = self.index.get_entity_by_slug(entity).category_slug

        analysis.deduced_entity_slug = entity
        analysis.deduced_category_slug = category

    # ── Import ────────────────────────────────────────────────────────

    def import_archive(
        self,
        archive: ArchiveAnalysis | str | Path,
        target_entity_slug: str,
        metadata: ImportMetadata | dict,
        chosen_root: str | None = None,
        extract_all: bool = False,
        preset_ids=(),
    ) -> Asset:
        """Extract *chosen_root* (or everything) and register the new asset.

        Nothing is registered unless the files are fully in place; a
        failure after extraction removes the new folder again.
        """
        if self.index is None or self.mods_root is None:
            raise ValidationError("Importing requires an asset index and a mods folder")
        try:
            if isinstance(metadata, dict):
                metadata = ImportMetadata(**metadata)
        except pydantic.ValidationError as exc:
            raise ValidationError(str(exc.errors()[0]["msg"])) from exc

        if chosen_root is None and not extract_all:
            raise ValidationError("Select a mod root folder or choose to extract everything")

        if not isinstance(archive, ArchiveAnalysis):
            archive = self.analyze(archive)
        filepath = Path(archive.file_path)

        entity = self.index.get_entity_by_slug(target_entity_slug)
        for preset_id in preset_ids:
            self.index.get_preset(preset_id)

        folder_name = sanitize_folder_name(metadata.name)
        clean_path = f"{entity.category_slug}/{entity.slug}/{folder_name}"
        dest = self.mods_root / clean_path
        if dest.exists() or (self.mods_root / naming.to_disabled(clean_path)).exists():
            raise ValidationError(f"A mod folder already exists at '{clean_path}'")
        if self.index.find_asset_by_path(clean_path) is not None:
            raise ValidationError(f"An asset is already registered at '{clean_path}'")

        root = "" if extract_all else _normalize_member(chosen_root)
        prefix = f"{root}/" if root else ""
        members = [f for f in archive.files if f.startswith(prefix)]
        if not members:
            raise ValidationError(f"Nothing to extract under '{root or '/'}'")
        unsafe = [m for m in members if not _is_safe_member(m)]
        if unsafe:
            raise ArchiveError(f"Archive member escapes the destination: {unsafe[0]}")

        _log.info("Importing %s (%s) into %s", filepath.name, root or "all", clean_path)
        self.mods_root.mkdir(parents=True, exist_ok=True)
        created = False
        try:
            with tempfile.TemporaryDirectory(prefix=STAGING_PREFIX, dir=self.mods_root) as tmp:
                staging = Path(tmp)
                _extract_all_to(filepath, members, staging)
                source = staging / root if root else staging
                dest.parent.mkdir(parents=True, exist_ok=True)
                dest.mkdir()
                created = True
                for child in source.iterdir():
                    shutil.move(str(child), str(dest / child.name))
        except FileExistsError as exc:
            if not created:
                raise ValidationError(f"A mod folder already exists at '{clean_path}'") from exc
            shutil.rmtree(dest, ignore_errors=True)
            raise IoError(f"Failed to extract {filepath.name}: {exc}") from exc
        except OSError as exc:
            if created:
                shutil.rmtree(dest, ignore_errors=True)
            raise IoError(f"Failed to extract {filepath.name}: {exc}") from exc
        except ModManagerError:
            if created:
                shutil.rmtree(dest, ignore_errors=True)
            raise

        try:
            image_filename = self._install_preview(dest, metadata, archive, prefix)
            asset = self.index.add_asset(
                entity_id=entity.id,
                name=metadata.name,
                clean_path=clean_path,
                is_enabled=True,
                description=metadata.description,
                author=metadata.author,
                category_tag=metadata.category_tag,
                image_filename=image_filename,
            )
        except (ModManagerError, OSError):
            shutil.rmtree(dest, ignore_errors=True)
            raise

        for preset_id in preset_ids:
            preset = self.index.get_preset(preset_id)
            if asset.id not in preset.asset_ids:
                self.index.replace_preset(preset_id, asset_ids=preset.asset_ids + (asset.id,))

        _log.info("Imported '%s' as asset %d (%d file(s))", asset.name, asset.id, len(members))
        return asset

    @staticmethod
    def _install_preview(dest: Path, metadata: ImportMetadata, archive: ArchiveAnalysis,
                         prefix: str) -> str | None:
        target = dest / PREVIEW_IMAGE_FILENAME
        if metadata.image_data:
            target.write_bytes(metadata.image_data)
            return PREVIEW_IMAGE_FILENAME
        if metadata.preview_path:
            source = Path(metadata.preview_path)
            if source.is_file():
                shutil.copyfile(source, target)
                return PREVIEW_IMAGE_FILENAME
            _log.warning("Selected preview %s does not exist; ignoring", source)
        if target.is_file():
            return PREVIEW_IMAGE_FILENAME
        detected = archive.detected_preview_internal_path
        if detected and detected.startswith(prefix):
            relative = detected[len(prefix):]
            if (dest / relative).is_file():
                return relative
        return None
