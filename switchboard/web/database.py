"""SQLite database layer for the switchboard account registry.

Two tables:
- accounts: one row per Cursor identity, profile snapshot stored as JSON
- settings: key -> JSON value, read through the Settings model

WAL mode for concurrent reads, single writer lock for atomic writes. A partial
unique index guarantees at most one active account.
"""

import json
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from pydantic import BaseModel

from switchboard.config import Settings, default_db_path


# ---------------------------------------------------------------------------
# Pydantic v2 Models
# ---------------------------------------------------------------------------


class Quota(BaseModel):
    """Premium request quota for the current billing cycle."""

    used: Optional[int] = None
    limit: Optional[int] = None
    remaining: Optional[int] = None
    enabled: Optional[bool] = None

    @property
    def percent_used(self) -> Optional[float]:
        """Share of the limit already used, 0-100.

        >>> Quota(used=25, limit=50).percent_used
        50.0
        >>> Quota(used=3).percent_used is None
        True
        """
        if self.used is None or not self.limit:
            return None
        return round(self.used / self.limit * 100, 1)


class ProfileSnapshot(BaseModel):
    """Identity, plan and quota resolved from cursor.com."""

    subject_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    plan_name: Optional[str] = None
    subscription_status: Optional[str] = None
    is_trial: bool = False
    trial_days_remaining: Optional[int] = None
    trial_expiry: Optional[str] = None
    quota: Optional[Quota] = None
    billing_cycle_start: Optional[str] = None
    billing_cycle_end: Optional[str] = None
    is_unlimited: Optional[bool] = None
    long_lived_credential: Optional[str] = None
    composite_cookie_token: Optional[str] = None
    resolved_at: Optional[str] = None


# ---------------------------------------------------------------------------
# Schema SQL
# ---------------------------------------------------------------------------

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS accounts (
    id TEXT PRIMARY KEY,
    display_name TEXT,
    email TEXT,
    raw_credential TEXT NOT NULL,
    is_active BOOLEAN NOT NULL DEFAULT 0,
    profile TEXT,
    last_error TEXT,
    last_error_at TEXT,
    last_refreshed_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT
);
"""

INDEXES_SQL = """
CREATE INDEX IF NOT EXISTS idx_accounts_email ON accounts(email);
CREATE UNIQUE INDEX IF NOT EXISTS idx_accounts_single_active
    ON accounts(is_active) WHERE is_active = 1;
"""


# Fields reported together by one remote endpoint
PROFILE_FIELD_GROUPS = (
    frozenset({"plan_name", "subscription_status", "is_trial", "trial_days_remaining", "trial_expiry"}),
    frozenset({"quota", "billing_cycle_start", "billing_cycle_end", "is_unlimited"}),
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _row_to_dict(row: sqlite3.Row) -> dict:
    data = dict(row)
    data["is_active"] = bool(data.get("is_active"))
    profile = data.get("profile")
    if profile:
        try:
            data["profile"] = json.loads(profile)
        except ValueError:
            data["profile"] = None
    else:
        data["profile"] = None
    return data


class Database:
    """SQLite database manager with WAL mode and thread-safe writes.

    >>> db = Database(":memory:")
    >>> db.db_path
    ':memory:'
    """

    def __init__(self, db_path: Optional[str] = None):
        db_path = default_db_path(db_path)

        self.db_path = db_path
        self._write_lock = threading.Lock()
        self._local = threading.local()

        # Create parent dir + file if needed (skip for :memory:)
        if db_path != ":memory:" and not Path(db_path).exists():
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
            Path(db_path).touch()

        self._init_schema()

    # ------------------------------------------------------------------
    # Connection helpers
    # ------------------------------------------------------------------

    def _get_connection(self) -> sqlite3.Connection:
        if not hasattr(self._local, "connection") or self._local.connection is None:
            conn = sqlite3.connect(self.db_path, timeout=30.0, check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL")
            conn.row_factory = sqlite3.Row
            self._local.connection = conn
        return self._local.connection

    @contextmanager
    def _writer(self) -> Iterator[sqlite3.Connection]:
        with self._write_lock:
            conn = self._get_connection()
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        yield self._get_connection()

    def _init_schema(self) -> None:
        with self._writer() as conn:
            conn.executescript(SCHEMA_SQL)
            conn.executescript(INDEXES_SQL)

    def close(self) -> None:
        if hasattr(self._local, "connection") and self._local.connection:
            self._local.connection.close()
            self._local.connection = None

    # ==================================================================
    # Account CRUD
    # ==================================================================

    def create_account(
        self,
        raw_credential: str,
        display_name: Optional[str] = None,
        profile: Optional[dict] = None,
        is_active: bool = False,
    ) -> dict:
        """Insert a new account with a fresh id.

        >>> db = Database(":memory:")
        >>> acct = db.create_account("user_1%3A%3AeyJx.y.z", display_name="a@b.c")
        >>> acct["display_name"], acct["is_active"]
        ('a@b.c', False)
        """
        now = _now()
        account_id = uuid.uuid4().hex
        email = (profile or {}).get("email")
        with self._writer() as conn:
            if is_active:
                conn.execute("UPDATE accounts SET is_active = 0 WHERE is_active = 1")
            conn.execute(
                """INSERT INTO accounts (
                    id, display_name, email, raw_credential, is_active,
                    profile, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    account_id,
                    display_name or email,
                    email,
                    raw_credential,
                    1 if is_active else 0,
                    json.dumps(profile) if profile else None,
                    now,
                    now,
                ),
            )
            row = conn.execute(
                "SELECT * FROM accounts WHERE id = ?", (account_id,)
            ).fetchone()
            return _row_to_dict(row)

    def get_account(self, account_id: str) -> Optional[dict]:
        """Get an account by ID.

        >>> db = Database(":memory:")
        >>> db.get_account("missing") is None
        True
        """
        with self._reader() as conn:
            row = conn.execute(
                "SELECT * FROM accounts WHERE id = ?", (account_id,)
            ).fetchone()
            return _row_to_dict(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[dict]:
        """Get an account by email, case-insensitive."""
        with self._reader() as conn:
            row = conn.execute(
                "SELECT * FROM accounts WHERE LOWER(email) = LOWER(?) "
                "ORDER BY created_at ASC LIMIT 1",
                (email,),
            ).fetchone()
            return _row_to_dict(row) if row else None

    def get_active_account(self) -> Optional[dict]:
        with self._reader() as conn:
            row = conn.execute(
                "SELECT * FROM accounts WHERE is_active = 1"
            ).fetchone()
            return _row_to_dict(row) if row else None

    def list_accounts(self) -> list[dict]:
        """List accounts in creation order.

        >>> Database(":memory:").list_accounts()
        []
        """
        with self._reader() as conn:
            cursor = conn.execute("SELECT * FROM accounts ORDER BY created_at ASC, rowid ASC")
            return [_row_to_dict(row) for row in cursor.fetchall()]

    # Whitelist of columns allowed in update_account
    _ACCOUNT_UPDATE_COLS = frozenset(
        {
            "display_name",
            "email",
            "raw_credential",
            "last_error",
            "last_error_at",
            "last_refreshed_at",
        }
    )

    def update_account(self, account_id: str, **kwargs: Any) -> bool:
        """Update whitelisted columns of an account.

        ``is_active`` is not updatable here; use :meth:`set_active_account`.
        """
        if not kwargs:
            return False

        invalid_cols = set(kwargs.keys()) - self._ACCOUNT_UPDATE_COLS
        if invalid_cols:
            raise ValueError(f"Invalid columns for account update: {invalid_cols}")

        kwargs["updated_at"] = _now()
        set_clause = ", ".join(f"{k} = ?" for k in kwargs.keys())
        values = list(kwargs.values()) + [account_id]

        with self._writer() as conn:
            cursor = conn.execute(
                f"UPDATE accounts SET {set_clause} WHERE id = ?",
                values,
            )
            return cursor.rowcount > 0

    def update_profile(self, account_id: str, profile: dict) -> Optional[dict]:
        """Store a new profile snapshot over the previous one.

        A plan or usage field present in ``profile`` replaces that whole group,
        so a trial that ended leaves no trial fields behind. Other fields keep
        their previous value when missing or None, and a known subject id is
        never replaced by an empty one. Returns the stored profile, or None
        when the account does not exist.

        >>> db = Database(":memory:")
        >>> acct = db.create_account("x", profile={"plan_name": "Pro Trial", "trial_days_remaining": 3})
        >>> db.update_profile(acct["id"], {"plan_name": "pro"})
        {'plan_name': 'pro'}
        """
        now = _now()
        with self._writer() as conn:
            row = conn.execute(
                "SELECT profile, email FROM accounts WHERE id = ?", (account_id,)
            ).fetchone()
            if row is None:
                return None
            merged = json.loads(row["profile"]) if row["profile"] else {}
            for group in PROFILE_FIELD_GROUPS:
                if group & profile.keys():
                    for key in group:
                        merged.pop(key, None)
            for key, value in profile.items():
                if value is None:
                    continue
                if key == "subject_id" and not value:
                    continue
                merged[key] = value
            email = merged.get("email") or row["email"]
            conn.execute(
                """UPDATE accounts SET profile = ?, email = ?,
                       last_refreshed_at = ?, updated_at = ?
                   WHERE id = ?""",
                (json.dumps(merged), email, now, now, account_id),
            )
            return merged

    def set_active_account(self, account_id: str) -> bool:
        """Mark one account active and every other inactive, atomically.

        >>> db = Database(":memory:")
        >>> a = db.create_account("x", is_active=True)
        >>> b = db.create_account("y")
        >>> db.set_active_account(b["id"])
        True
        >>> [acct["is_active"] for acct in db.list_accounts()]
        [False, True]
        """
        with self._writer() as conn:
            exists = conn.execute(
                "SELECT 1 FROM accounts WHERE id = ?", (account_id,)
            ).fetchone()
            if not exists:
                return False
            now = _now()
            conn.execute(
                "UPDATE accounts SET is_active = 0, updated_at = ? "
                "WHERE is_active = 1 AND id != ?",
                (now, account_id),
            )
            conn.execute(
                "UPDATE accounts SET is_active = 1, updated_at = ? WHERE id = ?",
                (now, account_id),
            )
            return True

    def delete_account(self, account_id: str) -> bool:
        """Delete an account.

        >>> db = Database(":memory:")
        >>> acct = db.create_account("tok")
        >>> db.delete_account(acct["id"])
        True
        >>> db.get_account(acct["id"]) is None
        True
        """
        with self._writer() as conn:
            cursor = conn.execute("DELETE FROM accounts WHERE id = ?", (account_id,))
            return cursor.rowcount > 0

    def delete_accounts(self, account_ids: list[str]) -> int:
        """Delete several accounts in one transaction. Returns rows removed."""
        if not account_ids:
            return 0
        placeholders = ", ".join("?" for _ in account_ids)
        with self._writer() as conn:
            cursor = conn.execute(
                f"DELETE FROM accounts WHERE id IN ({placeholders})",
                list(account_ids),
            )
            return cursor.rowcount

    def record_account_error(self, account_id: str, error_message: str) -> bool:
        """Record the last refresh failure for an account.

        >>> db = Database(":memory:")
        >>> acct = db.create_account("tok")
        >>> db.record_account_error(acct["id"], "HTTP 500")
        True
        >>> db.get_account(acct["id"])["last_error"]
        'HTTP 500'
        """
        return self.update_account(
            account_id, last_error=error_message, last_error_at=_now()
        )

    def clear_account_error(self, account_id: str) -> bool:
        return self.update_account(account_id, last_error=None, last_error_at=None)

    # ==================================================================
    # Settings CRUD
    # ==================================================================

    def get_setting(self, key: str) -> Optional[str]:
        """Get a setting value by key.

        >>> db = Database(":memory:")
        >>> db.get_setting("nonexistent") is None
        True
        """
        with self._reader() as conn:
            cursor = conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
            row = cursor.fetchone()
            return row["value"] if row else None

    def set_setting(self, key: str, value: str) -> None:
        """Set a setting value (upsert).

        >>> db = Database(":memory:")
        >>> db.set_setting("cursor_db_path", '"/tmp/state.vscdb"')
        >>> db.get_setting("cursor_db_path")
        '"/tmp/state.vscdb"'
        """
        with self._writer() as conn:
            conn.execute(
                """INSERT INTO settings (key, value, updated_at)
                   VALUES (?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at""",
                (key, value, _now()),
            )

    def list_settings(self) -> list[dict]:
        with self._reader() as conn:
            cursor = conn.execute("SELECT * FROM settings ORDER BY key ASC")
            return [dict(row) for row in cursor.fetchall()]

    def load_settings(self) -> Settings:
        """Build Settings from stored rows, defaulting missing or bad values.

        >>> Database(":memory:").load_settings().switch_reset_machine_id
        True
        """
        values: dict = {}
        for row in self.list_settings():
            key = row["key"]
            if key not in Settings.model_fields:
                continue
            try:
                value = json.loads(row["value"])
                Settings.model_validate({key: value})
            except ValueError:
                continue
            values[key] = value
        return Settings.model_validate(values)

    def save_settings(self, **changes: Any) -> Settings:
        """Validate and persist a partial settings update."""
        current = self.load_settings().model_dump()
        unknown = set(changes) - set(current)
        if unknown:
            raise ValueError(f"Unknown settings: {sorted(unknown)}")
        current.update({k: v for k, v in changes.items() if v is not None})
        settings = Settings.model_validate(current)
        for key in changes:
            self.set_setting(key, json.dumps(getattr(settings, key)))
        return settings
