"""Tests for registry operations with a stubbed profile resolver."""

import asyncio

import pytest

from switchboard import accounts
from switchboard.errors import FormatError, NotAuthenticated, ResolutionError
from switchboard.target.state_store import KEY_ACCESS_TOKEN, KEY_EMAIL
from switchboard.web.database import ProfileSnapshot, Quota


def _run(coro):
    """Run an async coroutine synchronously."""
    return asyncio.new_event_loop().run_until_complete(coro)


def _resolver(**fields):
    """Resolver stub returning a fixed profile and recording calls."""
    calls = []

    async def resolve(token):
        calls.append(token)
        return ProfileSnapshot(**fields)

    resolve.calls = calls
    return resolve


def _failing_resolver(error):
    async def resolve(token):
        raise error
    return resolve


# ---------------------------------------------------------------------------
# add_account
# ---------------------------------------------------------------------------


def test_add_account_stores_composite_and_profile(db, make_jwt):
    jwt = make_jwt(sub="auth0|user_1")
    resolver = _resolver(email="a@x.y", plan_name="pro", subject_id="user_1")

    account, created = _run(accounts.add_account(db, jwt, resolver=resolver))

    assert created is True
    assert account["raw_credential"] == f"user_1%3A%3A{jwt}"
    assert account["email"] == "a@x.y"
    assert account["display_name"] == "a@x.y"
    assert account["profile"]["plan_name"] == "pro"
    assert resolver.calls == [f"user_1%3A%3A{jwt}"]


def test_add_malformed_token_persists_nothing(db):
    resolver = _resolver(email="x@y.z")
    with pytest.raises(FormatError):
        _run(accounts.add_account(db, "definitely not a token", resolver=resolver))
    assert db.list_accounts() == []
    assert resolver.calls == []


def test_add_rejected_token_persists_nothing(db, make_jwt):
    with pytest.raises(NotAuthenticated):
        _run(accounts.add_account(db, make_jwt(), resolver=_failing_resolver(NotAuthenticated("401"))))
    assert db.list_accounts() == []


def test_add_same_credential_twice_refreshes(db, make_jwt):
    jwt = make_jwt(sub="auth0|user_1")
    first, _ = _run(accounts.add_account(db, jwt, resolver=_resolver(plan_name="free", email="a@x.y")))
    second, created = _run(accounts.add_account(
        db, f"WorkosCursorSessionToken=user_1%3A%3A{jwt}", "Renamed",
        resolver=_resolver(plan_name="pro"),
    ))

    assert created is False
    assert second["id"] == first["id"]
    assert second["display_name"] == "Renamed"
    assert second["profile"]["plan_name"] == "pro"
    assert second["profile"]["email"] == "a@x.y"
    assert len(db.list_accounts()) == 1


# ---------------------------------------------------------------------------
# refresh
# ---------------------------------------------------------------------------


def test_refresh_failure_recorded_not_raised(db):
    acct = db.create_account("tok", profile={"plan_name": "pro"})
    ok = _run(accounts.refresh_account(db, acct["id"], resolver=_failing_resolver(ResolutionError("HTTP 500"))))

    assert ok is False
    row = db.get_account(acct["id"])
    assert row["last_error"] == "HTTP 500"
    assert row["profile"]["plan_name"] == "pro"


def test_refresh_success_clears_error(db):
    acct = db.create_account("tok")
    db.record_account_error(acct["id"], "old failure")
    ok = _run(accounts.refresh_account(
        db, acct["id"], resolver=_resolver(quota=Quota(used=3, limit=50))
    ))
    row = db.get_account(acct["id"])
    assert ok is True
    assert row["last_error"] is None
    assert row["profile"]["quota"]["used"] == 3


def test_refresh_after_trial_ends_clears_trial_fields(db):
    acct = db.create_account("tok")
    _run(accounts.refresh_account(db, acct["id"], resolver=_resolver(
        plan_name="Pro Trial", is_trial=True, trial_days_remaining=3,
        trial_expiry="2026-10-22T00:00:00+00:00", subscription_status="trialing",
    )))

    _run(accounts.refresh_account(db, acct["id"], resolver=_resolver(plan_name="pro", is_trial=False)))

    profile = db.get_account(acct["id"])["profile"]
    assert profile["plan_name"] == "pro"
    assert profile["is_trial"] is False
    assert "trial_days_remaining" not in profile
    assert "trial_expiry" not in profile
    assert "subscription_status" not in profile


def test_refresh_keeps_groups_the_resolver_did_not_report(db):
    acct = db.create_account("tok", profile={
        "email": "a@x.y", "plan_name": "pro", "quota": {"used": 1, "limit": 500},
    })

    _run(accounts.refresh_account(db, acct["id"], resolver=_resolver(quota=Quota(used=7, limit=500))))

    profile = db.get_account(acct["id"])["profile"]
    assert profile["plan_name"] == "pro"
    assert profile["email"] == "a@x.y"
    assert profile["quota"] == {"used": 7, "limit": 500}


def test_refresh_unknown_account(db):
    from switchboard.errors import AccountNotFound

    with pytest.raises(AccountNotFound):
        _run(accounts.refresh_account(db, "missing", resolver=_resolver()))


def test_refresh_all_isolates_failures(db):
    ids = [db.create_account(f"tok{i}")["id"] for i in range(5)]
    seen_batches = []

    async def resolver(token):
        seen_batches.append(token)
        if token == "tok2":
            raise ResolutionError("boom")
        if token == "tok3":
            raise RuntimeError("unexpected")
        return ProfileSnapshot(plan_name="pro")

    results = []
    summary = _run(accounts.refresh_all(
        db, batch_size=2, pause=0, resolver=resolver, on_result=results.append
    ))

    assert summary["refreshed"] == 3
    assert summary["failed"] == 2
    assert [r["account_id"] for r in results] == ids
    assert db.get_account(ids[2])["last_error"] == "boom"
    assert db.get_account(ids[3])["last_error"] == "unexpected"
    assert db.get_account(ids[4])["profile"]["plan_name"] == "pro"


def test_refresh_all_uses_batch_setting(db, monkeypatch):
    for i in range(3):
        db.create_account(f"tok{i}")
    db.save_settings(batch_refresh_size=1)
    pauses = []

    async def fake_sleep(seconds):
        pauses.append(seconds)

    monkeypatch.setattr(accounts.asyncio, "sleep", fake_sleep)
    _run(accounts.refresh_all(db, resolver=_resolver()))
    assert pauses == [accounts.BATCH_PAUSE, accounts.BATCH_PAUSE]


# ---------------------------------------------------------------------------
# delete by plan
# ---------------------------------------------------------------------------


def test_delete_free_accounts(db):
    free = db.create_account("a", profile={"plan_name": "free"})
    free_status = db.create_account("b", profile={"subscription_status": "FREE"})
    pro = db.create_account("c", profile={"plan_name": "pro"})
    unknown = db.create_account("d")

    assert accounts.delete_accounts_by_plan(db) == 2
    remaining = {a["id"] for a in db.list_accounts()}
    assert remaining == {pro["id"], unknown["id"]}
    assert free["id"] not in remaining and free_status["id"] not in remaining


# ---------------------------------------------------------------------------
# sync_local_account
# ---------------------------------------------------------------------------


def _seed_local(db_path, **items):
    import sqlite3

    conn = sqlite3.connect(str(db_path))
    conn.executemany("INSERT INTO ItemTable (key, value) VALUES (?, ?)", items.items())
    conn.commit()
    conn.close()


def test_sync_local_imports_and_activates(db, cursor_store, make_jwt):
    access = make_jwt(sub="auth0|local_user")
    _seed_local(cursor_store, **{KEY_ACCESS_TOKEN: access, KEY_EMAIL: "local@x.y"})
    other = db.create_account("other", is_active=True)

    account, created = _run(accounts.sync_local_account(
        db, cursor_store, resolver=_resolver(plan_name="pro", email="local@x.y")
    ))

    assert created is True
    assert account["is_active"] is True
    assert account["raw_credential"] == f"local_user%3A%3A{access}"
    assert account["profile"]["plan_name"] == "pro"
    assert db.get_account(other["id"])["is_active"] is False


def test_sync_local_matches_existing_by_email(db, cursor_store, make_jwt):
    existing = db.create_account("old-token", profile={"email": "local@x.y"})
    _seed_local(cursor_store, **{KEY_ACCESS_TOKEN: make_jwt(), KEY_EMAIL: "local@x.y"})

    account, created = _run(accounts.sync_local_account(
        db, cursor_store, resolver=_failing_resolver(ResolutionError("offline"))
    ))

    assert created is False
    assert account["id"] == existing["id"]
    assert account["is_active"] is True
    assert account["last_error"] == "offline"


def test_sync_local_signed_out(db, cursor_store):
    with pytest.raises(FormatError):
        _run(accounts.sync_local_account(db, cursor_store, resolver=_resolver()))
