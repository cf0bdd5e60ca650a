"""Upgrade a cursor.com session token into a long-lived credential pair.

Cursor's desktop login works by deep-link consent:
1. Generate a PKCE verifier + challenge and a correlation uuid
2. Open a hidden browser with the session cookie injected
3. Load the loginDeepControl consent page for that challenge/uuid
4. Click the "Yes, log in" control (bounded retries, several click strategies)
5. Meanwhile poll api2.cursor.sh/auth/poll with uuid + verifier until it
   hands back accessToken/refreshToken (400/404 mean "not yet")

Timers run on an injectable clock so the two loops can be driven
deterministically. Closing the browser surface cancels both loops.
"""

import asyncio
import base64
import hashlib
import json
import logging
import secrets
import uuid
from enum import Enum
from typing import Any, Callable, Optional, Protocol
from urllib.parse import urlencode

import httpx
from playwright.async_api import async_playwright
from pydantic import BaseModel

from switchboard import tokens
from switchboard.errors import (
    DecodeError,
    FormatError,
    NegotiationError,
    NegotiationTimeout,
)

logger = logging.getLogger("switchboard.negotiator")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

CONSENT_URL = "https://cursor.com/cn/loginDeepControl"
POLL_URL = "https://api2.cursor.sh/auth/poll"
COOKIE_URL = "https://cursor.com"

CURSOR_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Cursor/1.2.2 Chrome/132.0.6834.210 "
    "Electron/34.5.1 Safari/537.36"
)

ACCESS_ALIASES = ("accessToken", "access_token", "token")
REFRESH_ALIASES = ("refreshToken", "refresh_token", "refresh")


class NegotiationTimings(BaseModel):
    """Delays and attempt budgets, in seconds."""

    click_initial_delay: float = 2.0
    click_interval: float = 1.0
    click_max_attempts: int = 10
    poll_initial_delay: float = 5.0
    poll_interval: float = 2.0
    poll_max_attempts: int = 10
    success_close_delay: float = 1.5
    timeout_close_delay: float = 2.0
    page_load_timeout: float = 30.0


class CredentialPair(BaseModel):
    access_token: str
    refresh_token: str


class Clock:
    """Real clock. Tests substitute one with virtual time."""

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


def generate_pkce() -> tuple[str, str]:
    """Generate PKCE verifier and challenge.

    >>> v, c = generate_pkce()
    >>> len(v) > 20
    True
    >>> '=' not in c
    True
    """
    verifier = secrets.token_urlsafe(32)
    challenge = base64.urlsafe_b64encode(
        hashlib.sha256(verifier.encode()).digest()
    ).rstrip(b"=").decode()
    return verifier, challenge


def traceparent() -> str:
    """Fresh W3C trace-context header value.

    >>> parts = traceparent().split("-")
    >>> [len(p) for p in parts]
    [2, 32, 16, 2]
    """
    return f"00-{secrets.token_hex(16)}-{secrets.token_hex(8)}-00"


def poll_headers() -> dict[str, str]:
    """Headers the embedded Cursor browser sends to the poll endpoint."""
    return {
        "Origin": "vscode-file://vscode-app",
        "User-Agent": CURSOR_USER_AGENT,
        "accept": "*/*",
        "accept-language": "zh-CN",
        "sec-ch-ua": '"Not-A.Brand";v="99", "Chromium";v="132"',
        "sec-ch-ua-mobile": "?0",
        "sec-ch-ua-platform": '"macOS"',
        "sec-fetch-dest": "empty",
        "sec-fetch-mode": "cors",
        "sec-fetch-site": "cross-site",
        "traceparent": traceparent(),
        "x-ghost-mode": "true",
        "x-new-onboarding-completed": "false",
    }


def extract_credentials(data: Any) -> CredentialPair:
    """Pull the credential pair from a poll response.

    >>> extract_credentials({"accessToken": "a", "refresh_token": "r"}).refresh_token
    'r'
    >>> extract_credentials({"accessToken": "a"})
    Traceback (most recent call last):
    ...
    switchboard.errors.NegotiationError: Poll response is missing credentials: {"accessToken": "a"}
    """
    access = refresh = None
    if isinstance(data, dict):
        access = next((data[k] for k in ACCESS_ALIASES if data.get(k)), None)
        refresh = next((data[k] for k in REFRESH_ALIASES if data.get(k)), None)
    if not access or not refresh:
        raise NegotiationError(
            f"Poll response is missing credentials: {json.dumps(data)}"
        )
    return CredentialPair(access_token=access, refresh_token=refresh)


def session_cookie(session_token: str) -> dict:
    """Browser cookie carrying the session token for cursor.com."""
    try:
        value = tokens.normalize(session_token)
    except (FormatError, DecodeError):
        value = session_token.strip()
    return {
        "name": tokens.COOKIE_NAME,
        "value": value,
        "url": COOKIE_URL,
        "secure": True,
        "httpOnly": True,
        "sameSite": "Lax",
    }


# ---------------------------------------------------------------------------
# Consent confirmation
# ---------------------------------------------------------------------------


class ConfirmResult(str, Enum):
    CLICKED = "clicked"
    NOT_FOUND = "not_found"
    ERROR = "error"


class KeywordRule(BaseModel):
    """Match a clickable element when ``field`` contains all of ``all_of``
    and at least one of ``any_of`` (empty lists always match)."""

    field: str = "text"
    all_of: tuple[str, ...] = ()
    any_of: tuple[str, ...] = ()


# Tried in order; the first rule that matches any element wins
KEYWORD_RULES: tuple[KeywordRule, ...] = (
    KeywordRule(all_of=("yes",), any_of=("log in", "login")),
    KeywordRule(any_of=("yes", "log in", "login", "授权", "确认", "allow", "approve")),
    KeywordRule(field="testid", any_of=("confirm", "authorize")),
    KeywordRule(field="cls", any_of=("primary", "confirm")),
)

CONFIRM_SCRIPT = """
({rules, strategyOffset}) => {
  const candidates = Array.from(document.querySelectorAll(
    'button, [role="button"], a, input[type="submit"], input[type="button"]'
  ));
  const describe = (el) => ({
    text: String(el.innerText || el.textContent || el.value || '').trim().toLowerCase(),
    testid: String(el.getAttribute('data-testid') || '').toLowerCase(),
    cls: (typeof el.className === 'string' ? el.className : '').toLowerCase(),
  });
  const matches = (info, rule) => {
    const value = info[rule.field] || '';
    if (rule.all_of.length && !rule.all_of.every((k) => value.includes(k))) return false;
    if (rule.any_of.length && !rule.any_of.some((k) => value.includes(k))) return false;
    return true;
  };
  let target = null;
  for (const rule of rules) {
    target = candidates.find((el) => !el.disabled && matches(describe(el), rule));
    if (target) break;
  }
  if (!target) return 'not_found';
  const strategies = [
    (el) => el.click(),
    (el) => el.dispatchEvent(new MouseEvent('click', {bubbles: true, cancelable: true, view: window})),
    (el) => el.dispatchEvent(new Event('click', {bubbles: true})),
  ];
  for (let i = 0; i < strategies.length; i++) {
    try {
      strategies[(i + strategyOffset) % strategies.length](target);
      return 'clicked';
    } catch (e) {}
  }
  return 'error';
}
"""

CLICK_STRATEGY_COUNT = 3


class ConsentSurface(Protocol):
    """A browser page the negotiator can drive."""

    async def open(self) -> None: ...

    async def add_cookie(self, cookie: dict) -> None: ...

    async def load(self, url: str) -> None: ...

    async def evaluate(self, script: str, arg: Any = None) -> Any: ...

    def on_close(self, callback: Callable[[], None]) -> None: ...

    async def close(self) -> None: ...


class ConsentConfirmer:
    """Find and click the consent control using ordered keyword rules."""

    def __init__(self, rules: tuple[KeywordRule, ...] = KEYWORD_RULES):
        self.rules = rules

    async def confirm(self, surface: ConsentSurface, attempt: int = 0) -> ConfirmResult:
        arg = {
            "rules": [rule.model_dump(mode="json") for rule in self.rules],
            "strategyOffset": attempt % CLICK_STRATEGY_COUNT,
        }
        try:
            raw = await surface.evaluate(CONFIRM_SCRIPT, arg)
        except Exception as e:
            logger.debug(f"Consent click attempt {attempt + 1} failed: {e}")
            return ConfirmResult.ERROR
        try:
            return ConfirmResult(raw)
        except ValueError:
            return ConfirmResult.ERROR


class PlaywrightSurface:
    """Headless Chromium page driven through Playwright."""

    def __init__(self, headless: bool = True, load_timeout: float = 30.0):
        self.headless = headless
        self.load_timeout = load_timeout
        self._playwright = None
        self._browser = None
        self._context = None
        self._page = None
        self._close_callbacks: list[Callable[[], None]] = []
        self._closed = False

    async def open(self) -> None:
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(headless=self.headless)
        self._context = await self._browser.new_context(
            viewport={"width": 900, "height": 700},
        )
        self._page = await self._context.new_page()
        self._page.on("close", lambda _page: self._notify_closed())

    async def add_cookie(self, cookie: dict) -> None:
        await self._context.add_cookies([cookie])

    async def load(self, url: str) -> None:
        await self._page.goto(url, wait_until="load", timeout=self.load_timeout * 1000)

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        return await self._page.evaluate(script, arg)

    def on_close(self, callback: Callable[[], None]) -> None:
        self._close_callbacks.append(callback)

    def _notify_closed(self) -> None:
        if self._closed:
            return
        self._closed = True
        for callback in self._close_callbacks:
            callback()

    async def close(self) -> None:
        """Tear down page, browser and driver. Safe to call twice."""
        self._notify_closed()
        if self._browser:
            await self._browser.close()
        if self._playwright:
            await self._playwright.stop()
        self._page = None
        self._context = None
        self._browser = None
        self._playwright = None


# ---------------------------------------------------------------------------
# Negotiation
# ---------------------------------------------------------------------------


class NegotiationState(str, Enum):
    GENERATE_PROOF = "generate_proof"
    INJECT_COOKIE = "inject_cookie"
    LOAD_CONSENT_PAGE = "load_consent_page"
    AUTO_CONFIRM = "auto_confirm"
    RESOLVED = "resolved"
    TIMEOUT = "timeout"
    FAILED = "failed"


class NegotiationSession:
    """In-memory state of one upgrade attempt. Never persisted."""

    def __init__(self):
        self.proof_secret, self.proof_challenge = generate_pkce()
        self.session_id = str(uuid.uuid4())
        self.click_attempts = 0
        self.poll_attempts = 0
        self.state = NegotiationState.GENERATE_PROOF

    @property
    def consent_url(self) -> str:
        params = {
            "challenge": self.proof_challenge,
            "uuid": self.session_id,
            "mode": "login",
        }
        return f"{CONSENT_URL}?{urlencode(params)}"


class CredentialNegotiator:
    """Drives one consent + poll exchange per :meth:`upgrade` call."""

    def __init__(
        self,
        surface_factory: Optional[Callable[[], ConsentSurface]] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Clock] = None,
        confirmer: Optional[ConsentConfirmer] = None,
        timings: Optional[NegotiationTimings] = None,
    ):
        self.client = client
        self.clock = clock or Clock()
        self.confirmer = confirmer or ConsentConfirmer()
        self.timings = timings or NegotiationTimings()
        self.surface_factory = surface_factory or (
            lambda: PlaywrightSurface(load_timeout=self.timings.page_load_timeout)
        )

    async def upgrade(self, session_token: str) -> CredentialPair:
        """Exchange a session token for an access/refresh credential pair.

        Raises NegotiationTimeout when the poll budget runs out and
        NegotiationError for every other failure.
        """
        session = NegotiationSession()
        surface = self.surface_factory()
        tasks: list[asyncio.Task] = []

        def _cancel_timers() -> None:
            for task in tasks:
                if not task.done():
                    task.cancel()

        surface.on_close(_cancel_timers)

        client = self.client
        owns_client = client is None
        if owns_client:
            client = httpx.AsyncClient(timeout=10.0)

        try:
            await surface.open()

            session.state = NegotiationState.INJECT_COOKIE
            await surface.add_cookie(session_cookie(session_token))

            session.state = NegotiationState.LOAD_CONSENT_PAGE
            poll_task = asyncio.ensure_future(self._poll_loop(client, session))
            tasks.append(poll_task)
            await surface.load(session.consent_url)

            session.state = NegotiationState.AUTO_CONFIRM
            tasks.append(asyncio.ensure_future(self._confirm_loop(surface, session)))

            await asyncio.wait({poll_task})
            if poll_task.cancelled():
                raise NegotiationError("Consent window closed before authorization")
            pair = poll_task.result()

            session.state = NegotiationState.RESOLVED
            logger.info(
                f"Credential negotiated after {session.poll_attempts} poll(s), "
                f"{session.click_attempts} click attempt(s)"
            )
            await self.clock.sleep(self.timings.success_close_delay)
            return pair
        except NegotiationTimeout:
            session.state = NegotiationState.TIMEOUT
            logger.warning(
                f"No credential after {session.poll_attempts} poll attempts"
            )
            await self.clock.sleep(self.timings.timeout_close_delay)
            raise
        except NegotiationError:
            session.state = NegotiationState.FAILED
            raise
        except Exception as e:
            session.state = NegotiationState.FAILED
            raise NegotiationError(f"Credential negotiation failed: {e}") from e
        finally:
            _cancel_timers()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            try:
                await surface.close()
            except Exception as e:
                logger.debug(f"Consent surface close failed: {e}")
            if owns_client:
                await client.aclose()

    async def _confirm_loop(self, surface: ConsentSurface, session: NegotiationSession) -> bool:
        t = self.timings
        await self.clock.sleep(t.click_initial_delay)
        for attempt in range(1, t.click_max_attempts + 1):
            session.click_attempts = attempt
            result = await self.confirmer.confirm(surface, attempt - 1)
            if result is ConfirmResult.CLICKED:
                logger.info(f"Consent confirmed on click attempt {attempt}")
                return True
            if attempt < t.click_max_attempts:
                await self.clock.sleep(t.click_interval)
        logger.warning(
            "Consent control not found; waiting for manual confirmation"
        )
        return False

    async def _poll_loop(
        self, client: httpx.AsyncClient, session: NegotiationSession
    ) -> CredentialPair:
        t = self.timings
        await self.clock.sleep(t.poll_initial_delay)
        for attempt in range(1, t.poll_max_attempts + 1):
            session.poll_attempts = attempt
            pair = await self._poll_once(client, session)
            if pair is not None:
                return pair
            if attempt < t.poll_max_attempts:
                await self.clock.sleep(t.poll_interval)
        raise NegotiationTimeout(
            f"Login was not confirmed after {t.poll_max_attempts} poll attempts"
        )

    async def _poll_once(
        self, client: httpx.AsyncClient, session: NegotiationSession
    ) -> Optional[CredentialPair]:
        params = {"uuid": session.session_id, "verifier": session.proof_secret}
        try:
            resp = await client.get(POLL_URL, params=params, headers=poll_headers())
        except httpx.HTTPError as e:
            logger.warning(f"Poll attempt {session.poll_attempts} failed: {e}")
            return None

        if resp.status_code in (400, 404):
            logger.debug(f"Poll attempt {session.poll_attempts}: not authorized yet")
            return None
        if not 200 <= resp.status_code < 300:
            logger.warning(
                f"Poll attempt {session.poll_attempts} returned HTTP {resp.status_code}"
            )
            return None

        try:
            data = resp.json()
        except ValueError:
            logger.warning(f"Poll attempt {session.poll_attempts} returned non-JSON body")
            return None
        return extract_credentials(data)
