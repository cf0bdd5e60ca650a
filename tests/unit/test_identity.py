"""Tests for profile resolution against mocked cursor.com endpoints."""

import asyncio

import httpx
import pytest

from switchboard.errors import FormatError, NotAuthenticated, ResolutionError
from switchboard.web import identity
from switchboard.web.identity import interpret_plan, resolve_profile


def _run(coro):
    """Run an async coroutine synchronously."""
    return asyncio.new_event_loop().run_until_complete(coro)


def _client(routes: dict, seen: list = None):
    """AsyncClient whose responses come from ``routes[path]``.

    A route value is ``(status, json_body)`` or an exception to raise.
    """
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        outcome = routes.get(request.url.path, (404, {}))
        if isinstance(outcome, Exception):
            raise outcome
        status, body = outcome
        return httpx.Response(status, json=body)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


ME = "/api/auth/me"
STRIPE = "/api/auth/stripe"
USAGE = "/api/usage-summary"


def test_merges_all_three_endpoints(make_jwt):
    jwt = make_jwt(sub="auth0|user_1")
    routes = {
        ME: (200, {"email": "dev@example.com", "name": "Dev"}),
        STRIPE: (200, {"membershipType": "pro", "subscriptionStatus": "active"}),
        USAGE: (200, {
            "billingCycleStart": "2026-10-01",
            "billingCycleEnd": "2026-11-01",
            "individualUsage": {"plan": {"used": 120, "limit": 500, "remaining": 380}},
        }),
    }
    seen: list = []
    profile = _run(resolve_profile(jwt, client=_client(routes, seen)))

    assert profile.email == "dev@example.com"
    assert profile.name == "Dev"
    assert profile.subject_id == "user_1"
    assert profile.plan_name == "pro"
    assert profile.subscription_status == "active"
    assert profile.quota.used == 120
    assert profile.quota.limit == 500
    assert profile.billing_cycle_end == "2026-11-01"
    assert profile.composite_cookie_token == f"user_1%3A%3A{jwt}"
    assert profile.long_lived_credential == jwt

    # Every request carries the composite cookie
    assert len(seen) == 3
    for request in seen:
        assert request.headers["Cookie"] == f"WorkosCursorSessionToken=user_1%3A%3A{jwt}"


def test_401_from_identity_is_not_authenticated(make_jwt):
    routes = {
        ME: (401, {"error": "unauthorized"}),
        STRIPE: (200, {"membershipType": "pro"}),
        USAGE: (200, {}),
    }
    with pytest.raises(NotAuthenticated) as exc_info:
        _run(resolve_profile(make_jwt(), client=_client(routes)))
    assert exc_info.value.code == "not_authorized"


def test_401_from_subscription_is_not_authenticated(make_jwt):
    routes = {
        ME: (200, {"email": "a@b.c"}),
        STRIPE: (401, {}),
        USAGE: (200, {}),
    }
    with pytest.raises(NotAuthenticated):
        _run(resolve_profile(make_jwt(), client=_client(routes)))


def test_401_from_usage_is_not_authoritative(make_jwt):
    """Usage failing alone leaves quota unknown instead of failing the lookup."""
    routes = {
        ME: (200, {"email": "a@b.c"}),
        STRIPE: (200, {"membershipType": "free"}),
        USAGE: (401, {}),
    }
    profile = _run(resolve_profile(make_jwt(), client=_client(routes)))
    assert profile.plan_name == "free"
    assert profile.quota is None


def test_partial_failure_keeps_what_answered(make_jwt):
    routes = {
        ME: httpx.ConnectError("down"),
        STRIPE: (500, {}),
        USAGE: (200, {"individualUsage": {"plan": {"used": 1, "limit": 50}}}),
    }
    profile = _run(resolve_profile(make_jwt(sub="auth0|u2"), client=_client(routes)))
    assert profile.quota.used == 1
    assert profile.subject_id == "u2"
    assert profile.plan_name is None


def test_nothing_answered_is_resolution_error(make_jwt):
    routes = {
        ME: httpx.ConnectError("down"),
        STRIPE: httpx.ConnectError("down"),
        USAGE: httpx.ConnectError("down"),
    }
    with pytest.raises(ResolutionError):
        _run(resolve_profile(make_jwt(), client=_client(routes)))


def test_malformed_token_never_hits_network():
    seen: list = []
    with pytest.raises(FormatError):
        _run(resolve_profile("garbage", client=_client({}, seen)))
    assert seen == []


def test_trial_plan_overrides_membership(make_jwt):
    routes = {
        ME: (200, {"email": "t@example.com"}),
        STRIPE: (200, {"membershipType": "pro", "daysRemainingOnTrial": 7}),
        USAGE: (200, {}),
    }
    profile = _run(resolve_profile(make_jwt(), client=_client(routes)))
    assert profile.plan_name == identity.TRIAL_PLAN_NAME
    assert profile.is_trial is True
    assert profile.trial_days_remaining == 7
    assert profile.trial_expiry


def test_plan_alias_priority():
    data = {"tier": "team", "subscription": {"plan": "business"}}
    assert interpret_plan(data)["plan_name"] == "business"
    assert interpret_plan({"individualMembershipType": "ultra", "membershipType": "pro"})["plan_name"] == "ultra"
