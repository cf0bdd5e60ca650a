"""HTTP API tests against the real app with a temporary registry.

The lifespan runs (TestClient as a context manager) with SWITCHBOARD_DB
pointed at tmp_path. Remote profile lookups and the switch pipeline are
replaced with stubs.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from switchboard.errors import NotAuthenticated, TargetNotInstalled
from switchboard.switch import SwitchResult
from switchboard.web.database import ProfileSnapshot, Quota


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("SWITCHBOARD_DB", str(tmp_path / "api.db"))
    monkeypatch.delenv("SWITCHBOARD_HOST", raising=False)
    monkeypatch.delenv("SWITCHBOARD_PORT", raising=False)
    from switchboard.api.main import app

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def profile_stub(monkeypatch):
    """Replace the remote profile lookup; returns the list of tokens seen."""
    seen = []

    async def fake_resolve(token):
        seen.append(token)
        return ProfileSnapshot(
            email="api@example.com",
            plan_name="pro",
            subject_id="user_01TEST",
            composite_cookie_token=token,
            quota=Quota(used=25, limit=100),
        )

    monkeypatch.setattr("switchboard.accounts.resolve_profile", fake_resolve)
    return seen


def _add(client, make_jwt, **body):
    body.setdefault("token", make_jwt())
    return client.post("/api/accounts", json=body)


# ---------------------------------------------------------------------------
# Health and settings
# ---------------------------------------------------------------------------


def test_health(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["db"] is True
    assert data["version"]


def test_settings_round_trip(client):
    assert client.get("/api/settings").json()["batch_refresh_size"] == 5

    resp = client.put("/api/settings", json={"batch_refresh_size": 8, "cursor_app_path": "/opt/cursor"})
    assert resp.status_code == 200
    assert resp.json()["batch_refresh_size"] == 8

    data = client.get("/api/settings").json()
    assert data["batch_refresh_size"] == 8
    assert data["cursor_app_path"] == "/opt/cursor"
    assert data["switch_reset_machine_id"] is True


def test_settings_validation_error_is_400(client):
    resp = client.put("/api/settings", json={"batch_refresh_size": 0})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "bad_input"
    assert client.get("/api/settings").json()["batch_refresh_size"] == 5


# ---------------------------------------------------------------------------
# Token tools
# ---------------------------------------------------------------------------


def test_parse_token_hides_credentials(client, make_jwt):
    resp = client.post("/api/tokens/parse", json={"token": make_jwt(email="p@x.y")})
    assert resp.status_code == 200
    data = resp.json()
    assert data["subject_id"] == "user_01TEST"
    assert data["exp"] == 4102444800
    assert "long_lived_credential" not in data
    assert "composite_cookie_token" not in data


def test_parse_token_with_unrepresentable_exp(client, make_jwt):
    resp = client.post("/api/tokens/parse", json={"token": make_jwt(exp=10**20)})
    assert resp.status_code == 200
    assert resp.json()["expiry_date"] is None


def test_parse_token_with_nan_exp_is_bad_input(client, make_jwt):
    resp = client.post("/api/tokens/parse", json={"token": make_jwt(exp=float("nan"))})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "bad_input"


def test_convert_token(client, make_jwt):
    jwt = make_jwt()
    data = client.post("/api/tokens/convert", json={"token": jwt}).json()
    assert data["composite"] == f"user_01TEST%3A%3A{jwt}"
    assert data["cookie_header"] == f"WorkosCursorSessionToken=user_01TEST%3A%3A{jwt}"
    assert data["subject_id"] == "user_01TEST"


def test_bad_token_uses_error_envelope(client):
    resp = client.post("/api/tokens/parse", json={"token": "not a token at all"})
    assert resp.status_code == 400
    error = resp.json()["error"]
    assert error["code"] == "bad_input"
    assert "WorkosCursorSessionToken" in error["hint"]


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


def test_add_account_then_list(client, make_jwt, profile_stub):
    resp = _add(client, make_jwt, display_name="Work")
    assert resp.status_code == 201
    body = resp.json()
    assert body["created"] is True
    account = body["account"]
    assert account["display_name"] == "Work"
    assert account["email"] == "api@example.com"
    assert account["profile"]["plan_name"] == "pro"
    assert account["profile"]["quota_percent_used"] == 25.0
    assert "raw_credential" not in account
    assert "composite_cookie_token" not in account["profile"]

    listed = client.get("/api/accounts").json()
    assert [a["id"] for a in listed] == [account["id"]]


def test_add_same_token_twice_is_200(client, make_jwt, profile_stub):
    jwt = make_jwt()
    first = _add(client, make_jwt, token=jwt)
    second = _add(client, make_jwt, token=f"user_01TEST::{jwt}")
    assert first.status_code == 201
    assert second.status_code == 200
    assert second.json()["created"] is False
    assert len(client.get("/api/accounts").json()) == 1


def test_add_rejected_token_is_401(client, make_jwt, monkeypatch):
    async def reject(token):
        raise NotAuthenticated("Cursor rejected the token (HTTP 401)")

    monkeypatch.setattr("switchboard.accounts.resolve_profile", reject)
    resp = _add(client, make_jwt)
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "not_authorized"
    assert client.get("/api/accounts").json() == []


def test_unknown_account_is_404(client):
    resp = client.get("/api/accounts/nope")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"
    assert client.delete("/api/accounts/nope").status_code == 404


def test_patch_and_delete(client, make_jwt, profile_stub):
    account_id = _add(client, make_jwt).json()["account"]["id"]

    assert client.patch(f"/api/accounts/{account_id}", json={}).status_code == 400
    resp = client.patch(f"/api/accounts/{account_id}", json={"display_name": "Renamed"})
    assert resp.json()["display_name"] == "Renamed"

    resp = client.delete(f"/api/accounts/{account_id}")
    assert resp.json() == {"deleted": True, "account_id": account_id}
    assert client.get(f"/api/accounts/{account_id}").status_code == 404


def test_refresh_records_failure(client, make_jwt, profile_stub, monkeypatch):
    from switchboard.errors import ResolutionError

    account_id = _add(client, make_jwt).json()["account"]["id"]

    async def down(token):
        raise ResolutionError("All profile endpoints failed")

    monkeypatch.setattr("switchboard.accounts.resolve_profile", down)
    resp = client.post(f"/api/accounts/{account_id}/refresh")
    assert resp.json() == {
        "success": False,
        "account_id": account_id,
        "error": "All profile endpoints failed",
    }
    assert client.get(f"/api/accounts/{account_id}").json()["last_error"] == "All profile endpoints failed"


def test_refresh_all(client, make_jwt, profile_stub):
    _add(client, make_jwt, token=make_jwt(sub="auth0|user_a"))
    _add(client, make_jwt, token=make_jwt(sub="auth0|user_b"))
    data = client.post("/api/accounts/refresh-all?batch_size=1").json()
    assert data["refreshed"] == 2
    assert data["failed"] == 0


def test_delete_by_plan(client, make_jwt, monkeypatch):
    plans = iter(["free", "pro"])

    async def resolve(token):
        return ProfileSnapshot(plan_name=next(plans))

    monkeypatch.setattr("switchboard.accounts.resolve_profile", resolve)
    _add(client, make_jwt, token=make_jwt(sub="auth0|user_a"))
    _add(client, make_jwt, token=make_jwt(sub="auth0|user_b"))

    resp = client.post("/api/accounts/delete-by-plan", json={})
    assert resp.json() == {"deleted": 1, "plan": "free"}
    remaining = client.get("/api/accounts").json()
    assert [a["profile"]["plan_name"] for a in remaining] == ["pro"]


# ---------------------------------------------------------------------------
# Switching
# ---------------------------------------------------------------------------


def _fake_orchestrator(client, **kwargs):
    orchestrator = MagicMock()
    orchestrator.switch_to = AsyncMock(**kwargs)
    client.app.state.orchestrator = orchestrator
    return orchestrator


def test_switch_wait_returns_result(client, make_jwt, profile_stub):
    account_id = _add(client, make_jwt).json()["account"]["id"]
    result = SwitchResult(account_id=account_id, db_path="/tmp/state.vscdb", keys_written=["a"])
    orchestrator = _fake_orchestrator(client, return_value=result)

    resp = client.post(f"/api/accounts/{account_id}/switch?wait=true", json={"purge_history": True})

    assert resp.status_code == 200
    assert resp.json()["account_id"] == account_id
    called_id, options = orchestrator.switch_to.await_args.args
    assert called_id == account_id
    assert options.purge_history is True
    assert options.reset_identity is True


def test_switch_wait_maps_error_codes(client, make_jwt, profile_stub):
    account_id = _add(client, make_jwt).json()["account"]["id"]
    _fake_orchestrator(client, side_effect=TargetNotInstalled("globalStorage missing"))

    resp = client.post(f"/api/accounts/{account_id}/switch?wait=true")

    assert resp.status_code == 409
    error = resp.json()["error"]
    assert error["code"] == "target_not_found"
    assert error["hint"]


def test_switch_in_background_is_accepted(client, make_jwt, profile_stub):
    account_id = _add(client, make_jwt).json()["account"]["id"]
    _fake_orchestrator(
        client,
        return_value=SwitchResult(account_id=account_id, db_path="x", keys_written=[]),
    )

    resp = client.post(f"/api/accounts/{account_id}/switch")

    assert resp.status_code == 202
    assert resp.json() == {"started": True, "account_id": account_id}


def test_switch_while_busy_is_409(client, make_jwt, profile_stub):
    account_id = _add(client, make_jwt).json()["account"]["id"]
    orchestrator = _fake_orchestrator(client)
    busy = MagicMock()
    busy.locked.return_value = True
    client.app.state.session.switch_lock = busy

    resp = client.post(f"/api/accounts/{account_id}/switch")

    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "busy"
    orchestrator.switch_to.assert_not_awaited()


def test_back_to_back_switches_start_only_one(client, make_jwt, profile_stub):
    account_id = _add(client, make_jwt).json()["account"]["id"]

    async def never_finishes(*args):
        await asyncio.sleep(3600)

    orchestrator = _fake_orchestrator(client, side_effect=never_finishes)

    first = client.post(f"/api/accounts/{account_id}/switch")
    second = client.post(f"/api/accounts/{account_id}/switch")

    assert first.status_code == 202
    assert second.status_code == 409
    assert second.json()["error"]["code"] == "busy"
    assert orchestrator.switch_to.await_count <= 1


def test_switch_lock_released_after_failed_wait(client, make_jwt, profile_stub):
    account_id = _add(client, make_jwt).json()["account"]["id"]
    _fake_orchestrator(client, side_effect=TargetNotInstalled("globalStorage missing"))

    client.post(f"/api/accounts/{account_id}/switch?wait=true")

    assert client.app.state.session.switch_lock.locked() is False


def test_switch_unknown_account_is_404(client):
    assert client.post("/api/accounts/nope/switch").status_code == 404


# ---------------------------------------------------------------------------
# WebSocket
# ---------------------------------------------------------------------------


def test_websocket_rejects_foreign_origin(client):
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect("/api/ws", headers={"origin": "http://evil.example"}):
            pass
    assert exc_info.value.code == 4003


def test_websocket_accepts_local_origin(client):
    with client.websocket_connect("/api/ws?topics=switch_progress", headers={"origin": "http://localhost:8420"}):
        assert client.app.state.ws_registry.client_count == 1
