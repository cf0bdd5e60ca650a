"""Runtime settings for switchboard.

Settings live in the registry database's ``settings`` table as JSON values,
one row per field. Missing rows fall back to the defaults below.

>>> Settings().batch_refresh_size
5
>>> Settings().switch_clear_history
False
"""

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

APP_DIR_ENV = "SWITCHBOARD_HOME"
DB_PATH_ENV = "SWITCHBOARD_DB"

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8420


class Settings(BaseModel):
    """User-editable settings.

    ``cursor_db_path`` and ``cursor_app_path`` override auto-detection when
    non-empty.
    """

    cursor_db_path: str = ""
    cursor_app_path: str = ""
    batch_refresh_size: int = Field(default=5, ge=1, le=50)
    switch_reset_machine_id: bool = True
    switch_clear_history: bool = False


def app_dir() -> Path:
    """Directory holding the registry database.

    >>> app_dir().name != ""
    True
    """
    override = os.environ.get(APP_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".cursor-switchboard"


def default_db_path(override: Optional[str] = None) -> str:
    """Registry database path: explicit argument, then env, then app dir."""
    if override:
        return override
    env = os.environ.get(DB_PATH_ENV)
    if env:
        return str(Path(env).expanduser())
    return str(app_dir() / "switchboard.db")
