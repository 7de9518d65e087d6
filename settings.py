"""
Persistent application settings, stored with QSettings.

Keys:
    mods_folder_path       - root of the mods library
    active_game            - game whose definitions/index are loaded
    requested_active_game  - game to switch to on next start
    data_dir               - where the asset index and logs live
"""

from __future__ import annotations

import os
from pathlib import Path

from PySide6.QtCore import QSettings

from errors import ValidationError

SUPPORTED_GAMES = ("genshin", "wuwa", "zzz")
DEFAULT_GAME = "genshin"
DEFAULT_DATA_DIR = Path(os.environ.get("APPDATA", "~")).expanduser() / "ModAssetManager"
DEFINITIONS_DIR = Path(__file__).parent / "definitions"

KEY_MODS_FOLDER = "mods_folder_path"
KEY_ACTIVE_GAME = "active_game"
KEY_REQUESTED_GAME = "requested_active_game"
KEY_DATA_DIR = "data_dir"


class AppSettings:
    """Thin typed wrapper over QSettings.

    With ``persist=False`` writes stay in memory for the session only.
    Passing *path* stores settings in an ini file instead of the platform
    default location.
    """

    def __init__(
        self,
        settings_org: str = "ModAssetManager",
        settings_app: str = "ModAssetManager",
        persist: bool = True,
        path: str | Path | None = None,
    ):
        if path is not None:
            self._qs = QSettings(str(path), QSettings.Format.IniFormat)
        else:
            self._qs = QSettings(settings_org, settings_app)
        self._persist = persist
        self._overrides: dict[str, str] = {}

    def _get(self, key: str, default: str = "") -> str:
        if key in self._overrides:
            return self._overrides[key]
        return self._qs.value(key, default, type=str)

    def _set(self, key: str, value: str):
        if self._persist:
            self._qs.setValue(key, value)
        else:
            self._overrides[key] = value

    def sync(self):
        if self._persist:
            self._qs.sync()

    # ── Mods folder ───────────────────────────────────────────────────

    @property
    def mods_folder_path(self) -> str:
        return self._get(KEY_MODS_FOLDER)

    @mods_folder_path.setter
    def mods_folder_path(self, value: str | Path):
        self._set(KEY_MODS_FOLDER, str(value))

    def mods_folder(self) -> Path:
        """The configured mods folder; ``ValidationError`` when unset."""
        value = self.mods_folder_path
        if not value:
            raise ValidationError("Mods folder path is not set")
        return Path(value)

    # ── Games ─────────────────────────────────────────────────────────

    @property
    def active_game(self) -> str:
        return self._get(KEY_ACTIVE_GAME, DEFAULT_GAME) or DEFAULT_GAME

    @active_game.setter
    def active_game(self, game: str):
        self._set(KEY_ACTIVE_GAME, _check_game(game))

    @property
    def requested_active_game(self) -> str | None:
        return self._get(KEY_REQUESTED_GAME) or None

    def request_game_switch(self, game: str):
        """Record *game* to become active on the next start."""
        self._set(KEY_REQUESTED_GAME, _check_game(game))

    def apply_requested_game(self) -> str:
        """Promote a pending switch request; returns the active game."""
        requested = self.requested_active_game
        if requested and requested != self.active_game:
            self.active_game = requested
        self._set(KEY_REQUESTED_GAME, "")
        return self.active_game

    # ── Data ──────────────────────────────────────────────────────────

    @property
    def data_dir(self) -> Path:
        value = self._get(KEY_DATA_DIR)
        return Path(value) if value else DEFAULT_DATA_DIR

    @data_dir.setter
    def data_dir(self, value: str | Path):
        self._set(KEY_DATA_DIR, str(value))

    def index_path(self, game: str | None = None) -> Path:
        return self.data_dir / f"asset_index_{game or self.active_game}.json"

    def definitions_path(self, game: str | None = None) -> Path:
        return DEFINITIONS_DIR / f"{game or self.active_game}.toml"


def _check_game(game: str) -> str:
    if game not in SUPPORTED_GAMES:
        raise ValidationError(
            f"Unsupported game {game!r} (expected one of: {', '.join(SUPPORTED_GAMES)})"
        )
    return game
