"""
Helpers for mod ``.ini`` files.

A folder is treated as a mod when it directly contains at least one ``.ini``
file that is not a shared helper (``orfix.ini``, ``region.ini``, ...).  The
first such ini of a mod can carry metadata hints in a ``[Mod]``-style
section, and ``[Key...]`` sections after a ``; Constants`` comment describe
the mod's keybinds.

Also home to name cleanup and entity hint matching, used both when
analysing archives and when scanning the mods folder.
"""

from __future__ import annotations

import configparser
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from pydantic import BaseModel

from naming import DISABLED_PREFIX

EXCLUDED_INI_FILENAMES = frozenset({
    "orfix.ini",
    "region.ini",
    "offset.ini",
    "water.ini",
    "fixdash.ini",
    "deltatime.ini",
    "object.ini",
    "timer.ini",
})

PREVIEW_IMAGE_FILENAME = "preview.png"
PREVIEW_CANDIDATES = (
    "preview.png", "icon.png", "thumbnail.png",
    "preview.jpg", "icon.jpg", "thumbnail.jpg",
)

HINT_SECTIONS = ("Mod", "Settings", "Info", "General")

_MOD_NAME_CLEANUP_RE = re.compile(
    r"(_v\d+(\.\d+)*|_DISABLED|DISABLED_|\(disabled\)|^DISABLED_)", re.IGNORECASE
)
_NAME_CLEANUP_RE = re.compile(
    r"[_\-.\s]+|(_v\d+(\.\d+)*)|(_af)|(_nsfw)|(\(disabled\))|(\(.*\))|(\[.*\])|(^DISABLED_)",
    re.IGNORECASE,
)
_NAME_PART_RE = re.compile(r"^[a-zA-Z\s]+")

_log = logging.getLogger(__name__)


# ── Marker files ──────────────────────────────────────────────────────

def is_mod_ini_name(filename: str) -> bool:
    """True for an ``.ini`` filename that marks a mod folder."""
    lower = filename.lower()
    if not lower.endswith(".ini"):
        return False
    prefix = DISABLED_PREFIX.lower()
    if lower.startswith(prefix):
        lower = lower[len(prefix):]
    return lower not in EXCLUDED_INI_FILENAMES


def mod_ini_files(folder: Path) -> list[Path]:
    """Marker ini files directly inside *folder*, sorted by name."""
    if not folder.is_dir():
        return []
    return sorted(
        p for p in folder.iterdir() if p.is_file() and is_mod_ini_name(p.name)
    )


def has_mod_ini(folder: Path) -> bool:
    return bool(mod_ini_files(folder))


def find_preview_image(names: Iterable[str]) -> str | None:
    """Pick the preferred preview image among *names* (basename match)."""
    by_base: dict[str, str] = {}
    for name in names:
        base = name.rsplit("/", 1)[-1].lower()
        by_base.setdefault(base, name)
    for candidate in PREVIEW_CANDIDATES:
        if candidate in by_base:
            return by_base[candidate]
    return None


# ── Name cleanup ──────────────────────────────────────────────────────

def clean_mod_name(raw: str) -> str:
    """Turn an archive or folder stem into a display name."""
    cleaned = _MOD_NAME_CLEANUP_RE.sub("", raw)
    cleaned = cleaned.replace("_", " ").replace("-", " ")
    return " ".join(cleaned.split())


def clean_and_extract_name(raw: str) -> str:
    """Reduce a hint to its lowercase leading alphabetic part."""
    trimmed = _NAME_CLEANUP_RE.sub(" ", raw).strip()
    match = _NAME_PART_RE.match(trimmed)
    if match:
        return match.group(0).strip().lower()
    return trimmed.lower()


def sanitize_folder_name(name: str) -> str:
    """Folder name used for an imported mod."""
    return name.strip().replace(" ", "_").replace(".", "_").replace('"', "").replace("'", "")


# ── Metadata hints ────────────────────────────────────────────────────

class IniHints(BaseModel):
    """Metadata an author left in a mod's ini."""

    name: str | None = None
    author: str | None = None
    description: str | None = None
    target: str | None = None
    type: str | None = None

    def is_empty(self) -> bool:
        return not any((self.name, self.author, self.description, self.target, self.type))


def _new_parser() -> configparser.ConfigParser:
    parser = configparser.ConfigParser(
        strict=False,
        allow_no_value=True,
        interpolation=None,
        inline_comment_prefixes=(";",),
    )
    parser.optionxform = str.lower
    return parser


def parse_ini_hints(text: str) -> IniHints:
    """Extract name/author/target/type hints from ini text.

    Unparseable ini files yield empty hints; mod inis are frequently not
    valid for ``configparser`` and a missing hint is never fatal.
    """
    parser = _new_parser()
    try:
        parser.read_string(text)
    except configparser.Error as exc:
        _log.warning("Could not parse ini for hints: %s", exc)
        return IniHints()

    sections = {s.lower(): s for s in parser.sections()}
    found: dict[str, str] = {}
    keys = {
        "name": ("name", "modname"),
        "author": ("author",),
        "description": ("description",),
        "target": ("target", "entity", "character"),
        "type": ("type", "category"),
    }
    for wanted in HINT_SECTIONS:
        section = sections.get(wanted.lower())
        if section is None:
            continue
        for field_name, options in keys.items():
            if field_name in found:
                continue
            for option in options:
                value = parser.get(section, option, fallback=None)
                if value and value.strip():
                    found[field_name] = value.strip().strip('"')
                    break
    return IniHints(**found)


# ── Keybinds ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class KeybindInfo:
    title: str
    key: str


def parse_keybinds(text: str) -> list[KeybindInfo]:
    """Collect ``key =`` values from ``[Key...]`` sections after ``; Constants``."""
    binds: list[KeybindInfo] = []
    past_constants = False
    section: str | None = None
    for raw in text.splitlines():
        line = raw.strip()
        if not past_constants:
            if line.startswith(";") and "constants" in line[1:].strip().lower():
                past_constants = True
            continue
        if line.startswith("[") and line.endswith("]"):
            name = line[1:-1].strip()
            section = name if name.lower().startswith("key") else None
        elif section and line.lower().startswith("key") and "=" in line:
            value = line.split("=", 1)[1].strip()
            if value:
                binds.append(KeybindInfo(title=section, key=value))
    return binds


# ── Category / entity hint matching ───────────────────────────────────

def match_category(categories, hint: str) -> str | None:
    """Match a free-form type hint against ``(slug, name)`` pairs."""
    lower = (hint or "").lower().strip()
    if not lower:
        return None
    by_name = {name.lower(): slug for slug, name in categories}
    if hint in {slug for slug, _ in categories}:
        return hint
    if lower in by_name:
        return by_name[lower]
    for name, slug in by_name.items():
        if name.startswith(lower):
            return slug
    if len(lower) > 2:
        for name, slug in by_name.items():
            if lower in name:
                return slug
    return None


def match_category_from_stem(categories, stem: str) -> str | None:
    """Match a file or folder stem against ``(slug, name)`` pairs."""
    if stem in {slug for slug, _ in categories}:
        return stem
    cleaned = clean_and_extract_name(stem)
    by_name = {name.lower(): slug for slug, name in categories}
    if cleaned in by_name:
        return by_name[cleaned]
    words = [w for w in cleaned.split() if len(w) > 2]
    for name, slug in by_name.items():
        if any(w in name for w in words):
            return slug
    return None


class EntityMatcher:
    """Map free-form hints (ini targets, file stems) to entity slugs.

    Strategies are tried from most to least specific; the first hit wins.
    Loose strategies check longer names first so that "Raiden Shogun" wins
    over "Raiden".
    """

    def __init__(self, entities: Iterable[tuple[str, str]]):
        # (name, slug) pairs
        self.slugs: set[str] = set()
        self.by_name: dict[str, str] = {}
        self.by_two_words: dict[str, str] = {}
        self.by_first_name: dict[str, str] = {}
        for name, slug in entities:
            self.slugs.add(slug)
            lower = name.lower().strip()
            if not lower:
                continue
            self.by_name.setdefault(lower, slug)
            words = lower.split()
            if len(words) >= 2:
                self.by_two_words.setdefault(" ".join(words[:2]), slug)
            self.by_first_name.setdefault(words[0], slug)

    @staticmethod
    def _longest_first(table: dict[str, str]) -> list[tuple[str, str]]:
        return sorted(table.items(), key=lambda kv: (-len(kv[0]), kv[0]))

    def match(self, hint: str) -> str | None:
        if not hint:
            return None
        if hint in self.slugs:
            return hint
        lower = hint.lower()
        if lower in self.by_name:
            return self.by_name[lower]

        cleaned = clean_and_extract_name(hint)
        for table in (self.by_name, self.by_two_words, self.by_first_name):
            if cleaned in table:
                return table[cleaned]

        first_word = cleaned.split()[0] if cleaned.split() else ""
        if len(first_word) > 1 and first_word in self.by_first_name:
            return self.by_first_name[first_word]

        for name, slug in self._longest_first(self.by_name):
            if len(name) > 2 and cleaned.startswith(name):
                return slug
        for words, slug in self._longest_first(self.by_two_words):
            if cleaned.startswith(words):
                return slug
        for first, slug in self._longest_first(self.by_first_name):
            if len(first) > 1 and cleaned.startswith(first):
                return slug

        if len(cleaned) > 3:
            for name, slug in self._longest_first(self.by_name):
                if name in cleaned:
                    return slug
            for words, slug in self._longest_first(self.by_two_words):
                if words in cleaned:
                    return slug
        if len(cleaned) > 2:
            for first, slug in self._longest_first(self.by_first_name):
                if first in cleaned:
                    return slug
        return None
