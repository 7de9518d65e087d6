"""
Shared fixtures and helpers for the Mod Asset Manager test suite.
"""

import zipfile
from pathlib import Path

import py7zr
import pytest

from asset_index import AssetIndex
from definitions_schema import GameDefinitions

DEFINITIONS = {
    "characters": {
        "name": "Characters",
        "entities": [
            {"name": "Raiden Shogun", "slug": "raiden-shogun", "details": '{"element": "Electro"}'},
            {"name": "Raiden", "slug": "raiden"},
            {"name": "Hu Tao", "slug": "hu-tao"},
            {"name": "Red Hat", "slug": "red-hat"},
        ],
    },
    "weapons": {
        "name": "Weapons",
        "entities": [
            {"name": "Staff of Homa", "slug": "staff-of-homa"},
        ],
    },
}

MOD_INI = "[TextureOverrideBody]\nhash = 1234abcd\n"


def make_zip(path: Path, members: dict) -> Path:
    """Write a zip whose members map archive path -> str/bytes content."""
    with zipfile.ZipFile(path, "w") as zf:
        for member, data in members.items():
            zf.writestr(member, data)
    return path


def make_7z(path: Path, members: dict) -> Path:
    """Write a 7z archive with the same member mapping as :func:`make_zip`."""
    staging = path.parent / f"{path.stem}_src"
    for member, data in members.items():
        target = staging / member
        target.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(data, str):
            data = data.encode("utf-8")
        target.write_bytes(data)
    with py7zr.SevenZipFile(path, "w") as sz:
        for member in members:
            sz.write(staging / member, member)
    return path


def make_mod(mods_dir: Path, rel: str, ini_name: str = "mod.ini", ini_text: str = MOD_INI) -> Path:
    """Create a mod folder at *rel* (on-disk form) holding one marker ini."""
    folder = mods_dir / rel
    folder.mkdir(parents=True, exist_ok=True)
    (folder / ini_name).write_text(ini_text, encoding="utf-8")
    return folder


@pytest.fixture
def definitions():
    return GameDefinitions.model_validate(DEFINITIONS)


@pytest.fixture
def mods_dir(tmp_path):
    mods = tmp_path / "mods"
    mods.mkdir()
    return mods


@pytest.fixture
def index(tmp_path, definitions):
    idx = AssetIndex(tmp_path / "state" / "asset_index.json")
    idx.sync_definitions(definitions)
    return idx


def add_mod(index: AssetIndex, mods_dir: Path, entity_slug: str, folder: str,
            enabled: bool = True, name: str | None = None):
    """Register a mod in *index* and create its folder in the matching form."""
    entity = index.get_entity_by_slug(entity_slug)
    clean = f"{entity.category_slug}/{entity.slug}/{folder}"
    asset = index.add_asset(entity.id, name or folder, clean, is_enabled=enabled)
    make_mod(mods_dir, asset.folder_name)
    return asset
