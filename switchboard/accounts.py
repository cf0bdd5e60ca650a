"""Account registry operations: add, sync, refresh, bulk delete.

These sit between the outer surfaces (CLI, HTTP API) and the Database. Bad
input and rejected credentials raise before anything is persisted; refresh
failures are recorded on the account itself and never propagate out of a
batch.
"""

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional, Union

from switchboard import tokens
from switchboard.errors import AccountNotFound, FormatError, SwitchboardError
from switchboard.target.state_store import read_local_auth
from switchboard.web.database import Database, ProfileSnapshot
from switchboard.web.identity import resolve_profile

logger = logging.getLogger("switchboard.accounts")

Resolver = Callable[[str], Awaitable[ProfileSnapshot]]

BATCH_PAUSE = 0.2
FREE_PLAN = "free"


def _profile_dict(profile: ProfileSnapshot) -> dict:
    """Only the fields the resolver reported, so unreached endpoints keep old data."""
    return profile.model_dump(mode="json", exclude_unset=True)


def find_account_by_credential(db: Database, token: str) -> Optional[dict]:
    """Existing account holding the same long-lived credential, if any."""
    target = tokens.extract_long_lived(token)
    for account in db.list_accounts():
        try:
            if tokens.extract_long_lived(account["raw_credential"]) == target:
                return account
        except FormatError:
            continue
    return None


async def add_account(
    db: Database,
    token_input: str,
    display_name: Optional[str] = None,
    *,
    resolver: Optional[Resolver] = None,
) -> tuple[dict, bool]:
    """Register an account from any supported token shape.

    Returns ``(account, created)``. An already-known credential refreshes the
    existing record instead of creating a duplicate. FormatError,
    DecodeError and NotAuthenticated propagate with nothing persisted.
    """
    tokens.parse_token(token_input)
    composite = tokens.to_composite(token_input)
    existing = find_account_by_credential(db, composite)

    profile = await (resolver or resolve_profile)(composite)

    if existing:
        db.update_profile(existing["id"], _profile_dict(profile))
        updates: dict = {"raw_credential": composite}
        if display_name:
            updates["display_name"] = display_name
        db.update_account(existing["id"], **updates)
        db.clear_account_error(existing["id"])
        logger.info(f"Account {existing['id']} already registered; profile refreshed")
        return db.get_account(existing["id"]), False

    account = db.create_account(
        composite,
        display_name=display_name or profile.email,
        profile={k: v for k, v in _profile_dict(profile).items() if v is not None},
    )
    logger.info(f"Added account {account['id']} ({profile.email})")
    return account, True


async def sync_local_account(
    db: Database,
    state_db_path: Union[str, Path],
    *,
    resolver: Optional[Resolver] = None,
) -> tuple[dict, bool]:
    """Import the account Cursor is currently signed in with and mark it active.

    The state store is opened read-only. Profile resolution is best effort:
    a failure is recorded on the account rather than raised.
    """
    auth = await asyncio.to_thread(read_local_auth, state_db_path)
    access_token = auth.get("access_token")
    if not access_token:
        raise FormatError("Cursor is not signed in; no access token in its state store")

    composite = tokens.to_composite(access_token, subject_id=auth.get("subject_id"))
    email = auth.get("email")

    existing = find_account_by_credential(db, composite)
    if existing is None and email:
        existing = db.get_account_by_email(email)

    if existing:
        account_id = existing["id"]
        db.update_account(account_id, raw_credential=composite)
        created = False
    else:
        seed = {"email": email, "subject_id": tokens.extract_subject(composite)}
        account_id = db.create_account(
            composite,
            display_name=email,
            profile={k: v for k, v in seed.items() if v},
        )["id"]
        created = True

    db.set_active_account(account_id)

    try:
        profile = await (resolver or resolve_profile)(composite)
    except SwitchboardError as e:
        logger.warning(f"Profile lookup for synced account {account_id} failed: {e}")
        db.record_account_error(account_id, e.message)
    else:
        db.update_profile(account_id, _profile_dict(profile))
        db.clear_account_error(account_id)

    return db.get_account(account_id), created


async def refresh_account(
    db: Database,
    account_id: str,
    *,
    resolver: Optional[Resolver] = None,
) -> bool:
    """Re-resolve one account's profile and quota.

    On failure the message lands in ``last_error`` and False is returned.
    """
    account = db.get_account(account_id)
    if account is None:
        raise AccountNotFound(f"No account with id={account_id}")

    try:
        profile = await (resolver or resolve_profile)(account["raw_credential"])
    except SwitchboardError as e:
        logger.warning(f"Refresh of account {account_id} failed: {e}")
        db.record_account_error(account_id, e.message)
        return False

    db.update_profile(account_id, _profile_dict(profile))
    if profile.composite_cookie_token and profile.composite_cookie_token != account["raw_credential"]:
        db.update_account(account_id, raw_credential=profile.composite_cookie_token)
    db.clear_account_error(account_id)
    return True


async def _refresh_isolated(db: Database, account_id: str, resolver: Optional[Resolver]) -> dict:
    try:
        ok = await refresh_account(db, account_id, resolver=resolver)
    except Exception as e:
        logger.warning(f"Unexpected refresh failure for account {account_id}: {e}")
        db.record_account_error(account_id, str(e) or type(e).__name__)
        ok = False
    error = None
    if not ok:
        account = db.get_account(account_id)
        error = account.get("last_error") if account else "Account disappeared"
    return {"account_id": account_id, "success": ok, "error": error}


async def refresh_all(
    db: Database,
    *,
    batch_size: Optional[int] = None,
    pause: float = BATCH_PAUSE,
    resolver: Optional[Resolver] = None,
    on_result: Optional[Callable[[dict], None]] = None,
) -> dict:
    """Refresh every account, ``batch_size`` at a time.

    Returns ``{"refreshed": n, "failed": m, "results": [...]}``.
    """
    accounts = db.list_accounts()
    if batch_size is None:
        batch_size = db.load_settings().batch_refresh_size
    batch_size = max(1, batch_size)

    results: list[dict] = []
    for start in range(0, len(accounts), batch_size):
        batch = accounts[start:start + batch_size]
        outcomes = await asyncio.gather(
            *(_refresh_isolated(db, account["id"], resolver) for account in batch)
        )
        for outcome in outcomes:
            results.append(outcome)
            if on_result is not None:
                on_result(outcome)
        if start + batch_size < len(accounts):
            await asyncio.sleep(pause)

    refreshed = sum(1 for r in results if r["success"])
    logger.info(f"Batch refresh: {refreshed} ok, {len(results) - refreshed} failed")
    return {
        "refreshed": refreshed,
        "failed": len(results) - refreshed,
        "results": results,
    }


def account_plan_matches(account: dict, plan: str) -> bool:
    """True when the account's plan or subscription status equals ``plan``.

    >>> account_plan_matches({"profile": {"plan_name": "Free"}}, "free")
    True
    >>> account_plan_matches({"profile": {"subscription_status": "active"}}, "free")
    False
    >>> account_plan_matches({"profile": None}, "free")
    False
    """
    profile = account.get("profile") or {}
    target = plan.lower()
    for field in ("plan_name", "subscription_status"):
        value = profile.get(field)
        if isinstance(value, str) and value.lower() == target:
            return True
    return False


def delete_accounts_by_plan(db: Database, plan: str = FREE_PLAN) -> int:
    """Delete every account on the given plan tier. Returns how many."""
    ids = [a["id"] for a in db.list_accounts() if account_plan_matches(a, plan)]
    deleted = db.delete_accounts(ids)
    logger.info(f"Deleted {deleted} account(s) on plan {plan!r}")
    return deleted
