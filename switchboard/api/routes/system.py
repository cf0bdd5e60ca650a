"""System routes -- health, settings, Cursor installation maintenance."""

import asyncio
from typing import Optional

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from switchboard import __version__
from switchboard.config import Settings
from switchboard.target import state_store
from switchboard.target.locator import resolve_state_db_path, scan
from switchboard.target.process import ProcessController

router = APIRouter()


# --- Pydantic v2 response models ---

class HealthResponse(BaseModel):
    status: str
    db: bool
    version: str


class SettingsUpdateRequest(BaseModel):
    cursor_db_path: Optional[str] = None
    cursor_app_path: Optional[str] = None
    batch_refresh_size: Optional[int] = None
    switch_reset_machine_id: Optional[bool] = None
    switch_clear_history: Optional[bool] = None


class ScanResponse(BaseModel):
    platform: str
    db_path: str
    db_exists: bool
    global_storage_exists: bool
    app_path: Optional[str] = None


class ResetIdentityResponse(BaseModel):
    storage_json: str
    identifiers: dict[str, str]


class ClearHistoryResponse(BaseModel):
    removed: list[str]


def _db_unavailable():
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"error": {"message": "Database unavailable", "code": "db_unavailable"}},
    )


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """Health check. Returns DB connectivity status."""
    db = getattr(request.app.state, "db", None)
    return HealthResponse(status="ok", db=db is not None, version=__version__)


@router.get("/settings", response_model=Settings)
async def get_settings(request: Request):
    db = getattr(request.app.state, "db", None)
    if db is None:
        return _db_unavailable()
    return db.load_settings()


@router.put("/settings", response_model=Settings)
async def update_settings(body: SettingsUpdateRequest, request: Request):
    """Partial update; omitted fields keep their stored value."""
    db = getattr(request.app.state, "db", None)
    if db is None:
        return _db_unavailable()
    changes = body.model_dump(exclude_none=True)
    return db.save_settings(**changes)


@router.get("/target/scan", response_model=ScanResponse)
async def scan_target(request: Request):
    """Detected Cursor state store and executable."""
    db = getattr(request.app.state, "db", None)
    settings = db.load_settings() if db is not None else Settings()
    return ScanResponse(**await asyncio.to_thread(scan, settings))


@router.post("/target/reset-identity", response_model=ResetIdentityResponse)
async def reset_identity(request: Request):
    """Regenerate Cursor's telemetry identifiers without switching accounts."""
    db = getattr(request.app.state, "db", None)
    settings = db.load_settings() if db is not None else Settings()
    db_path = resolve_state_db_path(settings)
    ids = await asyncio.to_thread(state_store.reset_identity, db_path)
    return ResetIdentityResponse(
        storage_json=str(state_store.storage_json_path(db_path)), identifiers=ids
    )


@router.post("/target/clear-history", response_model=ClearHistoryResponse)
async def clear_history(request: Request):
    """Quit Cursor, then delete its history and state store."""
    db = getattr(request.app.state, "db", None)
    settings = db.load_settings() if db is not None else Settings()
    db_path = resolve_state_db_path(settings)
    orchestrator = getattr(request.app.state, "orchestrator", None)
    process = orchestrator.process if orchestrator is not None else ProcessController()
    await process.terminate()
    removed = await asyncio.to_thread(state_store.purge_history, db_path)
    return ClearHistoryResponse(removed=removed)
