"""Account routes -- registry CRUD, refresh, token tools, and switching."""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from switchboard import accounts as registry
from switchboard import tokens
from switchboard.api.websocket import (
    TOPIC_ACCOUNTS_CHANGED,
    TOPIC_REFRESH_RESULT,
    WebSocketRegistry,
)
from switchboard.errors import SwitchboardError
from switchboard.switch import SwitchOptions
from switchboard.target.locator import resolve_state_db_path
from switchboard.web.database import Quota

router = APIRouter()
logger = logging.getLogger(__name__)

# Never sent to clients
_SECRET_PROFILE_FIELDS = ("long_lived_credential", "composite_cookie_token")


# --- Pydantic v2 request/response models ---


class ProfileResponse(BaseModel):
    subject_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    plan_name: Optional[str] = None
    subscription_status: Optional[str] = None
    is_trial: bool = False
    trial_days_remaining: Optional[int] = None
    trial_expiry: Optional[str] = None
    quota: Optional[Quota] = None
    quota_percent_used: Optional[float] = None
    billing_cycle_start: Optional[str] = None
    billing_cycle_end: Optional[str] = None
    is_unlimited: Optional[bool] = None
    resolved_at: Optional[str] = None


class AccountResponse(BaseModel):
    """Account data for API responses (credentials stripped)."""

    id: str
    display_name: Optional[str] = None
    email: Optional[str] = None
    is_active: bool = False
    profile: Optional[ProfileResponse] = None
    last_error: Optional[str] = None
    last_error_at: Optional[str] = None
    last_refreshed_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class AddAccountRequest(BaseModel):
    token: str
    display_name: Optional[str] = None


class AddAccountResponse(BaseModel):
    created: bool
    account: AccountResponse


class AccountPatchRequest(BaseModel):
    display_name: Optional[str] = None


class TokenRequest(BaseModel):
    token: str


class ConvertResponse(BaseModel):
    composite: str
    cookie_header: str
    subject_id: Optional[str] = None


class RefreshResponse(BaseModel):
    success: bool
    account_id: str
    error: Optional[str] = None


class BulkRefreshResponse(BaseModel):
    refreshed: int
    failed: int
    results: list[dict] = []


class DeleteByPlanRequest(BaseModel):
    plan: str = registry.FREE_PLAN


class SwitchRequest(BaseModel):
    reset_identity: Optional[bool] = None
    purge_history: Optional[bool] = None


# --- Helpers ---


def _get_db(request: Request):
    """Get database from app state."""
    return getattr(request.app.state, "db", None)


def _db_unavailable():
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"error": {"message": "Database unavailable", "code": "db_unavailable"}},
    )


def _not_found(account_id: str):
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={
            "error": {
                "message": "Account not found",
                "code": "not_found",
                "detail": f"No account with id={account_id}",
            }
        },
    )


def _account_to_response(row: dict) -> AccountResponse:
    """Convert a DB account row to an API response without credentials.

    >>> r = _account_to_response({"id": "a1", "raw_credential": "secret",
    ...     "profile": {"plan_name": "pro", "composite_cookie_token": "secret",
    ...                 "quota": {"used": 5, "limit": 10}}})
    >>> r.profile.plan_name, r.profile.quota_percent_used
    ('pro', 50.0)
    """
    profile = None
    raw_profile = row.get("profile")
    if raw_profile:
        data = {k: v for k, v in raw_profile.items() if k not in _SECRET_PROFILE_FIELDS}
        profile = ProfileResponse.model_validate(data)
        if profile.quota is not None:
            profile.quota_percent_used = profile.quota.percent_used
    return AccountResponse(
        id=row["id"],
        display_name=row.get("display_name"),
        email=row.get("email"),
        is_active=bool(row.get("is_active", False)),
        profile=profile,
        last_error=row.get("last_error"),
        last_error_at=row.get("last_error_at"),
        last_refreshed_at=row.get("last_refreshed_at"),
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


async def _notify(request: Request, topic: str, payload: Optional[dict] = None):
    ws: Optional[WebSocketRegistry] = getattr(request.app.state, "ws_registry", None)
    if ws is not None and ws.client_count > 0:
        await ws.broadcast(topic, payload)


# --- Routes ---


@router.get("/accounts", response_model=list[AccountResponse])
async def list_accounts(request: Request):
    db = _get_db(request)
    if db is None:
        return _db_unavailable()
    return [_account_to_response(row) for row in db.list_accounts()]


@router.post("/accounts", response_model=AddAccountResponse)
async def add_account(body: AddAccountRequest, request: Request):
    """Register an account from a pasted session token."""
    db = _get_db(request)
    if db is None:
        return _db_unavailable()

    account, created = await registry.add_account(db, body.token, body.display_name)
    await _notify(request, TOPIC_ACCOUNTS_CHANGED, {"account_id": account["id"]})
    return JSONResponse(
        status_code=status.HTTP_201_CREATED if created else status.HTTP_200_OK,
        content=AddAccountResponse(
            created=created, account=_account_to_response(account)
        ).model_dump(mode="json"),
    )


@router.get("/accounts/{account_id}", response_model=AccountResponse)
async def get_account(account_id: str, request: Request):
    db = _get_db(request)
    if db is None:
        return _db_unavailable()
    account = db.get_account(account_id)
    if not account:
        return _not_found(account_id)
    return _account_to_response(account)


@router.patch("/accounts/{account_id}", response_model=AccountResponse)
async def update_account(account_id: str, body: AccountPatchRequest, request: Request):
    db = _get_db(request)
    if db is None:
        return _db_unavailable()
    if not db.get_account(account_id):
        return _not_found(account_id)
    if body.display_name is None:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": {"message": "No fields to update", "code": "bad_input"}},
        )
    db.update_account(account_id, display_name=body.display_name)
    return _account_to_response(db.get_account(account_id))


@router.delete("/accounts/{account_id}")
async def delete_account(account_id: str, request: Request):
    db = _get_db(request)
    if db is None:
        return _db_unavailable()
    if not db.delete_account(account_id):
        return _not_found(account_id)
    await _notify(request, TOPIC_ACCOUNTS_CHANGED, {"account_id": account_id})
    return {"deleted": True, "account_id": account_id}


@router.post("/accounts/delete-by-plan")
async def delete_by_plan(body: DeleteByPlanRequest, request: Request):
    """Bulk-delete accounts on a plan tier (free by default)."""
    db = _get_db(request)
    if db is None:
        return _db_unavailable()
    deleted = registry.delete_accounts_by_plan(db, body.plan)
    if deleted:
        await _notify(request, TOPIC_ACCOUNTS_CHANGED)
    return {"deleted": deleted, "plan": body.plan}


@router.post("/accounts/{account_id}/refresh", response_model=RefreshResponse)
async def refresh_account(account_id: str, request: Request):
    db = _get_db(request)
    if db is None:
        return _db_unavailable()
    if not db.get_account(account_id):
        return _not_found(account_id)
    ok = await registry.refresh_account(db, account_id)
    error = None if ok else db.get_account(account_id).get("last_error")
    return RefreshResponse(success=ok, account_id=account_id, error=error)


@router.post("/accounts/refresh-all", response_model=BulkRefreshResponse)
async def refresh_all(request: Request, batch_size: Optional[int] = None):
    db = _get_db(request)
    if db is None:
        return _db_unavailable()

    ws: Optional[WebSocketRegistry] = getattr(request.app.state, "ws_registry", None)
    pending: list[asyncio.Task] = []

    def _on_result(outcome: dict) -> None:
        if ws is not None and ws.client_count > 0:
            pending.append(asyncio.ensure_future(ws.broadcast(TOPIC_REFRESH_RESULT, outcome)))

    summary = await registry.refresh_all(db, batch_size=batch_size, on_result=_on_result)
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
    return BulkRefreshResponse(**summary)


@router.post("/accounts/sync-local", response_model=AddAccountResponse)
async def sync_local(request: Request):
    """Import the account Cursor is signed in with right now."""
    db = _get_db(request)
    if db is None:
        return _db_unavailable()
    db_path = resolve_state_db_path(db.load_settings())
    account, created = await registry.sync_local_account(db, db_path)
    await _notify(request, TOPIC_ACCOUNTS_CHANGED, {"account_id": account["id"]})
    return AddAccountResponse(created=created, account=_account_to_response(account))


@router.post("/accounts/{account_id}/switch")
async def switch_account(
    account_id: str,
    request: Request,
    body: Optional[SwitchRequest] = None,
    wait: bool = False,
):
    """Start switching Cursor to this account.

    Progress streams over the ``switch_progress`` WebSocket topic. With
    ``wait=true`` the call blocks and returns the final result.
    """
    db = _get_db(request)
    if db is None:
        return _db_unavailable()
    if not db.get_account(account_id):
        return _not_found(account_id)

    session = request.app.state.session
    orchestrator = request.app.state.orchestrator

    options = SwitchOptions.from_settings(session.settings)
    if body is not None:
        if body.reset_identity is not None:
            options.reset_identity = body.reset_identity
        if body.purge_history is not None:
            options.purge_history = body.purge_history

    if session.switch_lock.locked():
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"error": {"message": "A switch is already running", "code": "busy"}},
        )
    # Released by whichever path runs the switch
    await session.switch_lock.acquire()

    if wait:
        try:
            result = await orchestrator.switch_to(account_id, options)
        finally:
            session.switch_lock.release()
        await _notify(request, TOPIC_ACCOUNTS_CHANGED, {"account_id": account_id})
        return result.model_dump(mode="json")

    async def _run_switch():
        try:
            await orchestrator.switch_to(account_id, options)
        except SwitchboardError:
            return  # already reported as an ERROR progress event
        finally:
            session.switch_lock.release()
        await _notify(request, TOPIC_ACCOUNTS_CHANGED, {"account_id": account_id})

    task = asyncio.create_task(_run_switch())
    tasks: set = request.app.state.background_tasks
    tasks.add(task)
    task.add_done_callback(tasks.discard)
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content={"started": True, "account_id": account_id},
    )


@router.post("/tokens/parse")
async def parse_token(body: TokenRequest):
    """Decode a token locally (no network, no signature check)."""
    parsed = tokens.parse_token(body.token)
    return parsed.model_dump(mode="json", exclude={"long_lived_credential", "composite_cookie_token"})


@router.post("/tokens/convert", response_model=ConvertResponse)
async def convert_token(body: TokenRequest):
    composite = tokens.to_composite(body.token)
    return ConvertResponse(
        composite=composite,
        cookie_header=f"{tokens.COOKIE_NAME}={composite}",
        subject_id=tokens.extract_subject(composite),
    )
