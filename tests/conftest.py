"""Shared fixtures for switchboard tests."""

import asyncio
import base64
import heapq
import itertools
import json
import sqlite3

import pytest

from switchboard.web.database import Database


def _b64url(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


def build_jwt(payload: dict) -> str:
    """Unsigned three-segment JWT; signatures are never checked."""
    return f"{_b64url({'alg': 'HS256', 'typ': 'JWT'})}.{_b64url(payload)}.sig"


class FakeClock:
    """Virtual time. ``sleep`` parks the caller until :meth:`drive` advances.

    ``drive(coro)`` runs a coroutine to completion, letting every runnable
    task settle before jumping to the next pending wake-up time.
    """

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []
        self._waiters: list = []
        self._seq = itertools.count()

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        fut = asyncio.get_running_loop().create_future()
        heapq.heappush(self._waiters, (self.now + seconds, next(self._seq), fut))
        await fut

    @property
    def pending(self) -> int:
        return sum(1 for _, _, fut in self._waiters if not fut.done())

    async def _settle(self, task):
        for _ in range(50):
            if task.done():
                return
            await asyncio.sleep(0)

    async def _drive(self, coro):
        task = asyncio.ensure_future(coro)
        idle_rounds = 0
        while True:
            await self._settle(task)
            if task.done():
                return task.result()
            while self._waiters and self._waiters[0][2].done():
                heapq.heappop(self._waiters)
            if not self._waiters:
                idle_rounds += 1
                if idle_rounds > 200:
                    task.cancel()
                    raise RuntimeError("coroutine stalled outside the fake clock")
                continue
            idle_rounds = 0
            wake, _, fut = heapq.heappop(self._waiters)
            self.now = max(self.now, wake)
            fut.set_result(None)

    def drive(self, coro):
        return asyncio.new_event_loop().run_until_complete(self._drive(coro))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_jwt():
    """Factory: ``make_jwt(sub="auth0|user_1", email=...)``."""
    def _make(**claims):
        claims.setdefault("sub", "auth0|user_01TEST")
        claims.setdefault("exp", 4102444800)
        return build_jwt({k: v for k, v in claims.items() if v is not None})
    return _make


@pytest.fixture
def db(tmp_path):
    """Registry database in a temp dir."""
    database = Database(str(tmp_path / "switchboard.db"))
    yield database
    database.close()


@pytest.fixture
def cursor_store(tmp_path):
    """Fake Cursor user dir with globalStorage/state.vscdb and storage.json."""
    global_storage = tmp_path / "Cursor" / "User" / "globalStorage"
    global_storage.mkdir(parents=True)
    db_path = global_storage / "state.vscdb"
    conn = sqlite3.connect(str(db_path))
    conn.execute("CREATE TABLE ItemTable (key TEXT UNIQUE ON CONFLICT REPLACE, value BLOB)")
    conn.commit()
    conn.close()
    (global_storage / "storage.json").write_text(
        json.dumps({"theme": "dark", "telemetry.machineId": "old"}), encoding="utf-8"
    )
    return db_path

