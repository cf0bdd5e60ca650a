"""Atomic file writes for Cursor's on-disk JSON documents."""

import json
import logging
import os
import sys
import tempfile
import time
from pathlib import Path

logger = logging.getLogger(__name__)


def _safe_replace(src: str, dst: str, *, retries: int = 3, delay: float = 0.1):
    """os.replace() with retry for Windows PermissionError.

    Cursor may still hold storage.json open for a moment after it was asked to
    quit. On macOS/Linux, this is equivalent to a single os.replace() call.
    """
    for attempt in range(retries):
        try:
            os.replace(src, dst)
            return
        except PermissionError:
            if sys.platform != "win32" or attempt == retries - 1:
                raise
            time.sleep(delay * (2 ** attempt))


def read_json_object(path: Path) -> dict:
    """Read a JSON object, returning {} for a missing or unreadable file.

    >>> read_json_object(Path("/nonexistent/storage.json"))
    {}
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as exc:
        logger.warning("Ignoring unreadable %s: %s", path, exc)
        return {}
    return data if isinstance(data, dict) else {}


def write_json_atomic(path: Path, data: dict, *, indent: int = 4) -> None:
    """Write ``data`` to ``path`` via a temp file in the same directory.

    Keeps the existing file's permission bits. Raises on failure.
    """
    if path.is_symlink():
        raise OSError(f"Refusing to write through symlink {path}")
    mode = None
    try:
        mode = path.stat().st_mode & 0o777
    except OSError:
        pass
    fd, tmp = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.stem}_tmp_",
        suffix=path.suffix,
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=indent)
        if mode is not None:
            try:
                os.chmod(tmp, mode)
            except OSError:
                pass
        _safe_replace(tmp, str(path))
    except Exception:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise
