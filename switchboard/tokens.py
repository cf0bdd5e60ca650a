"""Token parsing and conversion for Cursor session credentials.

Three shapes show up in practice:

- a cookie header fragment, ``WorkosCursorSessionToken=<url-encoded value>``
- a composite token, ``<subjectId>%3A%3A<jwt>`` (``::`` when decoded)
- a bare long-lived credential, a three-segment JWT starting with ``eyJ``

The JWT payload is decoded for introspection only; signatures are never
checked. The canonical stored form is the composite token.
"""

import base64
import binascii
import json
import logging
import math
import re
import time
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import unquote

from pydantic import BaseModel, computed_field

from switchboard.errors import DecodeError, FormatError

logger = logging.getLogger("switchboard.tokens")

COOKIE_NAME = "WorkosCursorSessionToken"
SEPARATOR = "::"
ENCODED_SEPARATOR = "%3A%3A"
JWT_PREFIX = "eyJ"

_ENCODED_SEPARATOR_RE = re.compile(re.escape(ENCODED_SEPARATOR), re.IGNORECASE)


class ParsedToken(BaseModel):
    """Everything derivable from a token string without the network."""

    long_lived_credential: str
    subject_id: Optional[str] = None
    composite_cookie_token: Optional[str] = None
    email: Optional[str] = None
    scope: Optional[str] = None
    exp: Optional[int] = None
    iat: Optional[int] = None
    issuer: Optional[str] = None
    audience: Optional[Any] = None

    @computed_field
    @property
    def expiry_date(self) -> Optional[str]:
        """ISO date for ``exp``, or None when the platform cannot represent it.

        >>> ParsedToken(long_lived_credential="x", exp=10**20).expiry_date is None
        True
        """
        if not self.exp:
            return None
        try:
            return datetime.fromtimestamp(self.exp, tz=timezone.utc).isoformat()
        except (OverflowError, OSError, ValueError):
            return None

    @computed_field
    @property
    def is_expired(self) -> bool:
        """A token without ``exp`` never counts as expired."""
        return bool(self.exp) and time.time() >= self.exp


def extract_cookie_value(text: str) -> Optional[str]:
    """Pull the URL-decoded session cookie value out of a cookie header.

    >>> extract_cookie_value("a=1; WorkosCursorSessionToken=user_1%3A%3AeyJx.y.z; b=2")
    'user_1::eyJx.y.z'
    >>> extract_cookie_value("eyJx.y.z") is None
    True
    """
    marker = f"{COOKIE_NAME}="
    idx = text.find(marker)
    if idx < 0:
        return None
    value = text[idx + len(marker):].split(";", 1)[0].strip()
    return unquote(value)


def split_composite(value: str) -> Optional[tuple[str, str]]:
    """Split a composite token into ``(subject_id, jwt)``.

    Both separator encodings are accepted.

    >>> split_composite("user_1%3A%3AeyJx.y.z")
    ('user_1', 'eyJx.y.z')
    >>> split_composite("user_1::eyJx.y.z")
    ('user_1', 'eyJx.y.z')
    >>> split_composite("eyJx.y.z") is None
    True
    """
    decoded = _ENCODED_SEPARATOR_RE.sub(SEPARATOR, value)
    if SEPARATOR not in decoded:
        return None
    subject, _, credential = decoded.partition(SEPARATOR)
    subject = subject.strip()
    credential = credential.strip()
    if not subject or not credential.startswith(JWT_PREFIX):
        return None
    return subject, credential


def compose(subject_id: str, credential: str) -> str:
    """Build the composite form from a subject id and a long-lived credential.

    >>> compose("user_1", "eyJx.y.z")
    'user_1%3A%3AeyJx.y.z'
    """
    if not subject_id:
        raise FormatError("Cannot build a composite token without a subject id")
    return f"{subject_id}{ENCODED_SEPARATOR}{credential}"


def decode_payload(credential: str) -> dict:
    """Decode the middle JWT segment. No signature verification."""
    segments = credential.split(".")
    if len(segments) != 3:
        raise FormatError(
            f"Expected 3 dot-separated segments, found {len(segments)}"
        )
    segment = segments[1]
    padded = segment + "=" * (-len(segment) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("ascii"))
        payload = json.loads(raw.decode("utf-8"))
    except (binascii.Error, ValueError, UnicodeError) as e:
        raise DecodeError(f"Token payload is not valid base64url JSON: {e}") from e
    if not isinstance(payload, dict):
        raise DecodeError("Token payload is not a JSON object")
    return payload


def subject_from_payload(payload: dict) -> Optional[str]:
    """Recover the subject id from a compound ``sub`` claim.

    >>> subject_from_payload({"sub": "auth0|user_01ABC"})
    'user_01ABC'
    >>> subject_from_payload({"sub": "user_plain"})
    'user_plain'
    >>> subject_from_payload({}) is None
    True
    """
    sub = payload.get("sub")
    if not isinstance(sub, str) or not sub:
        return None
    parts = sub.split("|")
    if len(parts) > 1 and parts[1]:
        return parts[1]
    return sub


def _locate_credential(text: str) -> tuple[Optional[str], str]:
    """Return ``(subject_hint, jwt)`` for any recognised shape."""
    stripped = text.strip()
    if not stripped:
        raise FormatError("Empty token")

    cookie = extract_cookie_value(stripped)
    candidate = cookie if cookie is not None else unquote(stripped)

    composite = split_composite(candidate)
    if composite:
        return composite

    if candidate.startswith(JWT_PREFIX) and candidate.count(".") >= 2:
        return None, candidate

    raise FormatError("No recognizable Cursor token in input")


def _time_claim(payload: dict, name: str) -> Optional[int]:
    """Integer seconds for a numeric time claim; non-numeric values are ignored.

    >>> _time_claim({"exp": 1700000000.5}, "exp")
    1700000000
    >>> _time_claim({"exp": "soon"}, "exp") is None
    True
    """
    value = payload.get(name)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        raise DecodeError(f"Token claim {name!r} is not a finite number")
    return int(value)


def parse_token(text: str) -> ParsedToken:
    """Parse any supported shape into a :class:`ParsedToken`.

    Raises FormatError or DecodeError. When a composite prefix and the payload
    disagree on the subject id, the composite prefix wins.
    """
    subject_hint, credential = _locate_credential(text)
    payload = decode_payload(credential)
    payload_subject = subject_from_payload(payload)

    subject = subject_hint or payload_subject
    if subject_hint and payload_subject and subject_hint != payload_subject:
        logger.warning(
            f"Composite subject {subject_hint!r} differs from token subject "
            f"{payload_subject!r}; using the composite one"
        )

    exp = _time_claim(payload, "exp")
    iat = _time_claim(payload, "iat")
    return ParsedToken(
        long_lived_credential=credential,
        subject_id=subject,
        composite_cookie_token=compose(subject, credential) if subject else None,
        email=payload.get("email") if isinstance(payload.get("email"), str) else None,
        scope=payload.get("scope") if isinstance(payload.get("scope"), str) else None,
        exp=exp,
        iat=iat,
        issuer=payload.get("iss"),
        audience=payload.get("aud"),
    )


def to_composite(text: str, subject_id: Optional[str] = None) -> str:
    """Convert any supported shape to the composite form.

    A composite input keeps its own subject id. A bare credential uses
    ``subject_id`` if given, otherwise the one decoded from its payload.
    """
    subject_hint, credential = _locate_credential(text)
    subject = subject_hint or subject_id
    if not subject:
        subject = subject_from_payload(decode_payload(credential))
    if not subject:
        raise FormatError("Token carries no subject id; cannot build composite form")
    return compose(subject, credential)


def normalize(text: str) -> str:
    """Canonical stored form of a token (the composite form).

    Idempotent; ``::`` and ``%3A%3A`` separators normalize to ``%3A%3A``.

    >>> normalize("user_1::eyJx.y.z")
    'user_1%3A%3AeyJx.y.z'
    >>> normalize(normalize("user_1::eyJx.y.z"))
    'user_1%3A%3AeyJx.y.z'
    """
    return to_composite(text)


def extract_subject(text: str) -> Optional[str]:
    """Subject id carried by a token, from its composite prefix or payload."""
    subject_hint, credential = _locate_credential(text)
    if subject_hint:
        return subject_hint
    return subject_from_payload(decode_payload(credential))


def extract_long_lived(text: str) -> str:
    """The bare JWT inside any supported shape.

    >>> extract_long_lived("WorkosCursorSessionToken=user_1%3A%3AeyJx.y.z")
    'eyJx.y.z'
    """
    return _locate_credential(text)[1]


def cookie_header(text: str) -> str:
    """Full ``Cookie`` header value for authenticated cursor.com requests.

    >>> cookie_header("user_1::eyJx.y.z")
    'WorkosCursorSessionToken=user_1%3A%3AeyJx.y.z'
    """
    return f"{COOKIE_NAME}={normalize(text)}"
