"""Default install locations of Cursor per operating system.

Explicit settings always win over detection.
"""

import os
import shutil
import sys
from pathlib import Path
from typing import Optional

from switchboard.config import Settings

STATE_DB_NAME = "state.vscdb"


def _platform(platform: Optional[str]) -> str:
    return platform or sys.platform


def user_data_root(platform: Optional[str] = None) -> Path:
    """Per-OS parent of the ``Cursor`` user data directory.

    >>> user_data_root("linux") == Path.home() / ".config"
    True
    """
    platform = _platform(platform)
    if platform == "win32":
        appdata = os.environ.get("APPDATA")
        return Path(appdata) if appdata else Path.home() / "AppData" / "Roaming"
    if platform == "darwin":
        return Path.home() / "Library" / "Application Support"
    return Path.home() / ".config"


def default_state_db_path(platform: Optional[str] = None) -> Path:
    """``<root>/Cursor/User/globalStorage/state.vscdb``.

    >>> default_state_db_path("linux").parts[-4:]
    ('Cursor', 'User', 'globalStorage', 'state.vscdb')
    """
    return user_data_root(platform) / "Cursor" / "User" / "globalStorage" / STATE_DB_NAME


def candidate_app_paths(platform: Optional[str] = None) -> list[Path]:
    """Where the Cursor executable usually lives."""
    platform = _platform(platform)
    if platform == "win32":
        paths = []
        local = os.environ.get("LOCALAPPDATA")
        if local:
            paths.append(Path(local) / "Programs" / "cursor" / "Cursor.exe")
        paths.append(Path("C:/Program Files/Cursor/Cursor.exe"))
        return paths
    if platform == "darwin":
        return [
            Path("/Applications/Cursor.app"),
            Path.home() / "Applications" / "Cursor.app",
        ]
    paths = []
    on_path = shutil.which("cursor")
    if on_path:
        paths.append(Path(on_path))
    paths.extend(
        [
            Path("/usr/bin/cursor"),
            Path("/opt/Cursor/cursor"),
            Path.home() / "Applications" / "cursor.AppImage",
        ]
    )
    return paths


def resolve_state_db_path(settings: Optional[Settings] = None, platform: Optional[str] = None) -> Path:
    """Configured state store path, else the OS default.

    >>> resolve_state_db_path(Settings(cursor_db_path="/tmp/x/state.vscdb")).as_posix()
    '/tmp/x/state.vscdb'
    """
    if settings and settings.cursor_db_path:
        return Path(settings.cursor_db_path).expanduser()
    return default_state_db_path(platform)


def find_app_path(settings: Optional[Settings] = None, platform: Optional[str] = None) -> Optional[Path]:
    """Configured executable if set, else the first existing candidate."""
    if settings and settings.cursor_app_path:
        return Path(settings.cursor_app_path).expanduser()
    for path in candidate_app_paths(platform):
        if path.exists():
            return path
    return None


def scan(settings: Optional[Settings] = None, platform: Optional[str] = None) -> dict:
    """Report what was detected, for the settings screen and `switchboard scan`."""
    db_path = resolve_state_db_path(settings, platform)
    app_path = find_app_path(settings, platform)
    return {
        "platform": _platform(platform),
        "db_path": str(db_path),
        "db_exists": db_path.exists(),
        "global_storage_exists": db_path.parent.is_dir(),
        "app_path": str(app_path) if app_path else None,
    }
