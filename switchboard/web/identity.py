"""Profile resolution against cursor.com.

Three independent GETs share one cookie header:
- identity      /api/auth/me          email, name, subject
- subscription  /api/auth/stripe      plan, trial, status
- usage         /api/usage-summary    premium request quota

Any endpoint may fail on its own; whatever succeeded is merged into one
ProfileSnapshot. A 401 from identity or subscription fails the whole
resolution with NotAuthenticated.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx

from switchboard import tokens
from switchboard.errors import NotAuthenticated, ResolutionError
from switchboard.web.database import ProfileSnapshot, Quota

logger = logging.getLogger("switchboard.identity")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

IDENTITY_URL = "https://cursor.com/api/auth/me"
SUBSCRIPTION_URL = "https://cursor.com/api/auth/stripe"
USAGE_URL = "https://cursor.com/api/usage-summary"

REQUEST_TIMEOUT = 15.0
USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
TRIAL_PLAN_NAME = "Pro Trial"

# Priority order: the first populated alias names the plan
PLAN_ALIASES = (
    ("individualMembershipType",),
    ("membershipType",),
    ("subscription", "tier"),
    ("subscription", "plan"),
    ("tier",),
    ("plan",),
)


class _Unauthorized(Exception):
    pass


def build_headers(token: str) -> dict[str, str]:
    """Shared headers for the profile endpoints.

    >>> build_headers("user_1::eyJx.y.z")["Cookie"]
    'WorkosCursorSessionToken=user_1%3A%3AeyJx.y.z'
    """
    return {
        "Cookie": tokens.cookie_header(token),
        "Content-Type": "application/json",
        "User-Agent": USER_AGENT,
        "Accept": "application/json",
        "Referer": "https://cursor.com/",
    }


def _dig(data: dict, path: tuple[str, ...]) -> Any:
    value: Any = data
    for key in path:
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value


def interpret_plan(data: dict, now: Optional[datetime] = None) -> dict:
    """Derive plan fields from a subscription response.

    >>> interpret_plan({"membershipType": "pro"})["plan_name"]
    'pro'
    >>> interpret_plan({"membershipType": "pro", "daysRemainingOnTrial": 3})["plan_name"]
    'Pro Trial'
    >>> interpret_plan({})["plan_name"] is None
    True
    """
    now = now or datetime.now(timezone.utc)
    result: dict = {
        "plan_name": None,
        "is_trial": False,
        "trial_days_remaining": None,
        "trial_expiry": None,
        "subscription_status": data.get("subscriptionStatus"),
    }

    days = data.get("daysRemainingOnTrial")
    if isinstance(days, (int, float)) and days > 0:
        result["plan_name"] = TRIAL_PLAN_NAME
        result["is_trial"] = True
        result["trial_days_remaining"] = int(days)
        result["trial_expiry"] = (now + timedelta(days=days)).isoformat()
        return result

    for path in PLAN_ALIASES:
        value = _dig(data, path)
        if isinstance(value, str) and value:
            result["plan_name"] = value
            break
    return result


def interpret_usage(data: dict) -> dict:
    """Extract quota and billing cycle from a usage-summary response.

    >>> interpret_usage({"individualUsage": {"plan": {"used": 10, "limit": 500}}})["quota"].used
    10
    """
    plan = _dig(data, ("individualUsage", "plan")) or {}
    quota = None
    if plan:
        quota = Quota(
            used=plan.get("used"),
            limit=plan.get("limit"),
            remaining=plan.get("remaining"),
            enabled=plan.get("enabled"),
        )
    return {
        "quota": quota,
        "billing_cycle_start": data.get("billingCycleStart"),
        "billing_cycle_end": data.get("billingCycleEnd"),
        "is_unlimited": data.get("isUnlimited"),
    }


async def _get_json(
    client: httpx.AsyncClient,
    url: str,
    headers: dict[str, str],
    *,
    auth_authoritative: bool,
) -> Optional[dict]:
    """GET one endpoint. Returns None when it contributed nothing."""
    try:
        resp = await client.get(url, headers=headers)
    except httpx.HTTPError as e:
        logger.warning(f"GET {url} failed: {e}")
        return None

    if resp.status_code == 401 and auth_authoritative:
        raise _Unauthorized(url)

    if resp.status_code != 200:
        logger.warning(f"GET {url} returned HTTP {resp.status_code}")
        return None

    try:
        data = resp.json()
    except ValueError:
        logger.warning(f"GET {url} returned a non-JSON body")
        return None
    return data if isinstance(data, dict) else None


async def resolve_profile(
    token: str,
    *,
    client: Optional[httpx.AsyncClient] = None,
) -> ProfileSnapshot:
    """Resolve identity, plan and quota for a token.

    Raises FormatError/DecodeError for unusable input, NotAuthenticated on a
    401 from identity or subscription, ResolutionError when no endpoint
    produced anything usable.
    """
    parsed = tokens.parse_token(token)
    composite = tokens.to_composite(token)
    headers = build_headers(composite)

    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(timeout=REQUEST_TIMEOUT)

    try:
        results = await asyncio.gather(
            _get_json(client, IDENTITY_URL, headers, auth_authoritative=True),
            _get_json(client, SUBSCRIPTION_URL, headers, auth_authoritative=True),
            _get_json(client, USAGE_URL, headers, auth_authoritative=False),
            return_exceptions=True,
        )
    finally:
        if owns_client:
            await client.aclose()

    for result in results:
        if isinstance(result, _Unauthorized):
            raise NotAuthenticated(f"Cursor rejected the token (HTTP 401 from {result})")
    for result in results:
        if isinstance(result, BaseException):
            raise result

    identity, subscription, usage = results

    snapshot = ProfileSnapshot(
        subject_id=parsed.subject_id,
        email=parsed.email,
        long_lived_credential=parsed.long_lived_credential,
        composite_cookie_token=composite,
        resolved_at=datetime.now(timezone.utc).isoformat(),
    )

    if identity:
        snapshot.email = identity.get("email") or snapshot.email
        snapshot.name = identity.get("name")
        if not snapshot.subject_id and isinstance(identity.get("sub"), str):
            snapshot.subject_id = tokens.subject_from_payload({"sub": identity["sub"]})

    if subscription:
        for key, value in interpret_plan(subscription).items():
            setattr(snapshot, key, value)

    if usage:
        for key, value in interpret_usage(usage).items():
            setattr(snapshot, key, value)

    if identity is None and subscription is None and usage is None:
        raise ResolutionError("No profile endpoint answered; check the network")
    if not (snapshot.email or snapshot.subject_id or snapshot.plan_name or snapshot.quota):
        raise ResolutionError("Profile endpoints returned no usable data")

    logger.info(
        f"Resolved profile for {snapshot.email or snapshot.subject_id}: "
        f"plan={snapshot.plan_name}"
    )
    return snapshot
