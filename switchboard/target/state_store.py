"""Mutations of Cursor's persisted state.

Cursor keeps its preferences in ``state.vscdb``, a SQLite file with a single
``ItemTable(key, value)`` table, and its telemetry identifiers in
``storage.json`` next to it. Three operations touch them:

- reset_identity: fresh telemetry ids merged into storage.json
- purge_history: remove session history, workspace storage and the store file
- swap_credentials: in one transaction, delete stale cache/session/telemetry
  keys and write the new account's auth keys

The key lists below are a compatibility contract with Cursor and must match
byte for byte.
"""

import logging
import secrets
import shutil
import sqlite3
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, ContextManager, Iterator, Optional, Union
from urllib.request import pathname2url

from switchboard import tokens
from switchboard.errors import DecodeError, FormatError, StateStoreError, TargetNotInstalled
from switchboard.target.files import read_json_object, write_json_atomic

logger = logging.getLogger("switchboard.state_store")

PathLike = Union[str, Path]

ITEM_TABLE = "ItemTable"
STORAGE_JSON = "storage.json"

KEY_SIGN_UP_TYPE = "cursorAuth/cachedSignUpType"
KEY_EMAIL = "cursorAuth/cachedEmail"
KEY_ACCESS_TOKEN = "cursorAuth/accessToken"
KEY_REFRESH_TOKEN = "cursorAuth/refreshToken"
KEY_USER_ID = "cursorAuth/userId"
SIGN_UP_TYPE_VALUE = "Auth_0"

DELETED_KEYS = (
    "telemetry.currentSessionDate",
    "telemetry.sessionCount",
    "telemetry.lastSessionDate",
    "telemetry.machineId",
    "telemetry.macMachineId",
    "telemetry.devDeviceId",
    "telemetry.sqmId",
    "cursorai/serverConfig",
    "cursorai/cachedServerConfig",
    "cursorai/lastServerConfigUpdate",
    "cursorai/serverConfigVersion",
    "cursorAuth/oldAccessToken",
    "cursorAuth/oldRefreshToken",
    "cursorAuth/oldEmail",
    "cache/completionCache",
    "cache/suggestionCache",
    "cache/diagnosticsCache",
    "session/lastActiveFile",
    "session/lastOpenedFiles",
    "session/workspaceState",
    "workbench.activity.pinnedViewlets",
    "workbench.panel.markers.hidden",
    "workbench.panel.output.hidden",
)

TELEMETRY_MACHINE_ID = "telemetry.machineId"
TELEMETRY_MAC_MACHINE_ID = "telemetry.macMachineId"
TELEMETRY_DEV_DEVICE_ID = "telemetry.devDeviceId"
TELEMETRY_SQM_ID = "telemetry.sqmId"

HISTORY_DIRS = ("History", "workspaceStorage")


# ---------------------------------------------------------------------------
# Repository over ItemTable
# ---------------------------------------------------------------------------


class StateStore:
    """Key/value access to ``ItemTable``.

    Values are stored as text; BLOB values written by Cursor are decoded as
    UTF-8 on read.
    """

    def __init__(self, conn: sqlite3.Connection, readonly: bool = False):
        self._conn = conn
        self.readonly = readonly

    @classmethod
    def open(cls, path: PathLike, readonly: bool = False) -> "StateStore":
        path = Path(path)
        try:
            if readonly:
                uri = f"file:{pathname2url(str(path))}?mode=ro"
                conn = sqlite3.connect(uri, uri=True, timeout=10.0, isolation_level=None)
            else:
                conn = sqlite3.connect(str(path), timeout=10.0, isolation_level=None)
                conn.execute(
                    f"CREATE TABLE IF NOT EXISTS {ITEM_TABLE} "
                    "(key TEXT UNIQUE ON CONFLICT REPLACE, value BLOB)"
                )
        except sqlite3.Error as e:
            raise StateStoreError(f"Cannot open Cursor state store {path}: {e}") from e
        return cls(conn, readonly=readonly)

    def get(self, key: str) -> Optional[str]:
        try:
            row = self._conn.execute(
                f"SELECT value FROM {ITEM_TABLE} WHERE key = ?", (key,)
            ).fetchone()
        except sqlite3.OperationalError as e:
            if "no such table" in str(e):
                return None
            raise
        if row is None or row[0] is None:
            return None
        value = row[0]
        if isinstance(value, bytes):
            return value.decode("utf-8", errors="replace")
        return str(value)

    def set(self, key: str, value: str) -> None:
        self._conn.execute(
            f"INSERT OR REPLACE INTO {ITEM_TABLE} (key, value) VALUES (?, ?)",
            (key, value),
        )

    def delete(self, key: str) -> bool:
        cursor = self._conn.execute(f"DELETE FROM {ITEM_TABLE} WHERE key = ?", (key,))
        return cursor.rowcount > 0

    @contextmanager
    def transaction(self) -> Iterator["StateStore"]:
        """All statements inside commit together or not at all."""
        self._conn.execute("BEGIN IMMEDIATE")
        try:
            yield self
            self._conn.execute("COMMIT")
        except BaseException:
            self._conn.execute("ROLLBACK")
            raise

    def close(self) -> None:
        self._conn.close()


@contextmanager
def open_state_store(path: PathLike, readonly: bool = False) -> Iterator[StateStore]:
    """Open the store and always close it, whatever happens inside."""
    store = StateStore.open(path, readonly=readonly)
    try:
        yield store
    finally:
        store.close()


StoreOpener = Callable[..., ContextManager[StateStore]]


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


def generate_telemetry_ids() -> dict[str, str]:
    """Fresh device identifiers in the shapes Cursor writes.

    >>> ids = generate_telemetry_ids()
    >>> len(ids["telemetry.machineId"]), ids["telemetry.sqmId"][0]
    (64, '{')
    """
    return {
        TELEMETRY_MACHINE_ID: secrets.token_hex(32),
        TELEMETRY_MAC_MACHINE_ID: secrets.token_hex(32),
        TELEMETRY_DEV_DEVICE_ID: str(uuid.uuid4()),
        TELEMETRY_SQM_ID: "{" + str(uuid.uuid4()).upper() + "}",
    }


def storage_json_path(db_path: PathLike) -> Path:
    return Path(db_path).parent / STORAGE_JSON


def reset_identity(db_path: PathLike) -> dict[str, str]:
    """Merge fresh telemetry ids into storage.json, keeping unrelated keys.

    Does not open the state store. Returns the new ids.
    """
    storage = storage_json_path(db_path)
    if not storage.parent.is_dir():
        raise TargetNotInstalled(f"Cursor globalStorage not found at {storage.parent}")

    data = read_json_object(storage)
    ids = generate_telemetry_ids()
    data.update(ids)
    try:
        write_json_atomic(storage, data, indent=4)
    except OSError as e:
        raise StateStoreError(f"Cannot write {storage}: {e}") from e
    logger.info(f"Telemetry identifiers reset in {storage}")
    return ids


def purge_history(db_path: PathLike) -> list[str]:
    """Delete history, workspace storage and the store file. Best effort.

    Returns the paths actually removed.
    """
    db_path = Path(db_path)
    user_dir = db_path.parent.parent
    removed: list[str] = []

    for name in HISTORY_DIRS:
        directory = user_dir / name
        if not directory.is_dir():
            continue
        for child in directory.iterdir():
            try:
                if child.is_dir() and not child.is_symlink():
                    shutil.rmtree(child)
                else:
                    child.unlink()
                removed.append(str(child))
            except OSError as e:
                logger.warning(f"Could not remove {child}: {e}")

    for path in (db_path, db_path.with_name(db_path.name + ".backup")):
        try:
            path.unlink()
            removed.append(str(path))
        except FileNotFoundError:
            continue
        except OSError as e:
            logger.warning(f"Could not remove {path}: {e}")

    logger.info(f"History purge removed {len(removed)} path(s)")
    return removed


def _subject_from_access_token(access_token: str) -> Optional[str]:
    try:
        return tokens.subject_from_payload(tokens.decode_payload(access_token))
    except (FormatError, DecodeError):
        return None


def swap_credentials(
    db_path: PathLike,
    *,
    email: str,
    access_token: str,
    refresh_token: str,
    subject_id: Optional[str] = None,
    opener: StoreOpener = open_state_store,
) -> list[str]:
    """Replace Cursor's auth keys atomically. Returns the keys written.

    Raises StateStoreError when the transaction fails; nothing is changed in
    that case.
    """
    if not subject_id:
        subject_id = _subject_from_access_token(access_token)

    auth_keys = [
        (KEY_SIGN_UP_TYPE, SIGN_UP_TYPE_VALUE),
        (KEY_EMAIL, email or ""),
        (KEY_ACCESS_TOKEN, access_token),
        (KEY_REFRESH_TOKEN, refresh_token),
    ]
    if subject_id:
        auth_keys.append((KEY_USER_ID, subject_id))

    try:
        with opener(db_path, readonly=False) as store:
            with store.transaction():
                for key in DELETED_KEYS:
                    store.delete(key)
                for key, value in auth_keys:
                    store.set(key, value)
    except sqlite3.Error as e:
        raise StateStoreError(f"Updating Cursor state store failed: {e}") from e

    logger.info(f"Wrote {len(auth_keys)} auth keys to {db_path}")
    return [key for key, _ in auth_keys]


def read_local_auth(db_path: PathLike, opener: StoreOpener = open_state_store) -> dict:
    """Read the credentials Cursor is currently signed in with (read-only)."""
    if not Path(db_path).exists():
        raise TargetNotInstalled(f"Cursor state store not found at {db_path}")
    try:
        with opener(db_path, readonly=True) as store:
            return {
                "access_token": store.get(KEY_ACCESS_TOKEN),
                "refresh_token": store.get(KEY_REFRESH_TOKEN),
                "email": store.get(KEY_EMAIL),
                "subject_id": store.get(KEY_USER_ID),
            }
    except sqlite3.Error as e:
        raise StateStoreError(f"Reading Cursor state store failed: {e}") from e
