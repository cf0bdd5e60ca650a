"""Switch the installed Cursor IDE to a stored account.

Stages run strictly in order and each emits a ProgressEvent first:

    RESOLVE_CREDENTIAL  pick the stored token to negotiate with
    GET_TOKEN           session token -> access/refresh pair (consent flow)
    LOCATE_TARGET       state store path (settings override detection)
    KILL_TARGET         quit Cursor, best effort
    CLEAR_HISTORY       optional history purge
    RESET_IDENTITY      optional telemetry id reset
    VERIFY_TARGET       globalStorage must exist
    UPDATE_DB           transactional auth key swap
    RESTART             settle, then relaunch Cursor
    DONE

A failed negotiation leaves everything untouched. The account only becomes
active after the swap committed.
"""

import asyncio
import inspect
import logging
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Optional, Union

from pydantic import BaseModel

from switchboard import tokens
from switchboard.config import Settings
from switchboard.errors import (
    AccountNotFound,
    DecodeError,
    FormatError,
    StateStoreError,
    SwitchboardError,
    TargetNotInstalled,
)
from switchboard.target import state_store
from switchboard.target.locator import resolve_state_db_path
from switchboard.target.process import ProcessController
from switchboard.web.database import Database
from switchboard.web.negotiator import Clock, CredentialNegotiator

logger = logging.getLogger("switchboard.switch")

SETTLE_DELAY = 0.8


class SwitchStep(str, Enum):
    RESOLVE_CREDENTIAL = "RESOLVE_CREDENTIAL"
    GET_TOKEN = "GET_TOKEN"
    LOCATE_TARGET = "LOCATE_TARGET"
    KILL_TARGET = "KILL_TARGET"
    CLEAR_HISTORY = "CLEAR_HISTORY"
    RESET_IDENTITY = "RESET_IDENTITY"
    VERIFY_TARGET = "VERIFY_TARGET"
    UPDATE_DB = "UPDATE_DB"
    RESTART = "RESTART"
    DONE = "DONE"
    ERROR = "ERROR"


STEP_PROGRESS = {
    SwitchStep.RESOLVE_CREDENTIAL: 5,
    SwitchStep.GET_TOKEN: 10,
    SwitchStep.LOCATE_TARGET: 20,
    SwitchStep.KILL_TARGET: 30,
    SwitchStep.CLEAR_HISTORY: 40,
    SwitchStep.RESET_IDENTITY: 50,
    SwitchStep.VERIFY_TARGET: 55,
    SwitchStep.UPDATE_DB: 60,
    SwitchStep.RESTART: 90,
    SwitchStep.DONE: 100,
    SwitchStep.ERROR: 0,
}


class ProgressEvent(BaseModel):
    step: SwitchStep
    progress: int
    message: str
    account_id: Optional[str] = None
    error_code: Optional[str] = None
    hint: Optional[str] = None


class SwitchOptions(BaseModel):
    reset_identity: bool = True
    purge_history: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "SwitchOptions":
        """
        >>> SwitchOptions.from_settings(Settings()).purge_history
        False
        """
        return cls(
            reset_identity=settings.switch_reset_machine_id,
            purge_history=settings.switch_clear_history,
        )


class SwitchResult(BaseModel):
    account_id: str
    email: Optional[str] = None
    db_path: str
    keys_written: list[str]
    history_removed: int = 0
    identity_reset: bool = False


ProgressSink = Callable[[ProgressEvent], Union[None, Awaitable[None]]]


class AppSession:
    """State owned by one running switchboard instance.

    Holds the registry, the progress listeners, and the lock that keeps
    switches one at a time.
    """

    def __init__(self, db: Database):
        self.db = db
        self._sinks: list[ProgressSink] = []
        self.switch_lock = asyncio.Lock()

    @property
    def settings(self) -> Settings:
        return self.db.load_settings()

    def subscribe(self, sink: ProgressSink) -> Callable[[], None]:
        """Register a progress listener; returns an unsubscribe function."""
        self._sinks.append(sink)

        def _unsubscribe() -> None:
            if sink in self._sinks:
                self._sinks.remove(sink)

        return _unsubscribe

    async def emit(self, event: ProgressEvent) -> None:
        for sink in list(self._sinks):
            try:
                result = sink(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Progress listener failed: {e}")


class SwitchOrchestrator:
    """Runs the switch stages against injectable collaborators."""

    def __init__(
        self,
        session: AppSession,
        *,
        negotiator: Optional[CredentialNegotiator] = None,
        process: Optional[ProcessController] = None,
        clock: Optional[Clock] = None,
        locate_db: Callable[[Settings], Path] = resolve_state_db_path,
        reset_identity: Callable[..., dict] = state_store.reset_identity,
        purge_history: Callable[..., list] = state_store.purge_history,
        swap_credentials: Callable[..., list] = state_store.swap_credentials,
        settle_delay: float = SETTLE_DELAY,
    ):
        self.session = session
        self.negotiator = negotiator or CredentialNegotiator()
        self.process = process or ProcessController()
        self.clock = clock or Clock()
        self.locate_db = locate_db
        self.reset_identity = reset_identity
        self.purge_history = purge_history
        self.swap_credentials = swap_credentials
        self.settle_delay = settle_delay

    async def _emit(self, step: SwitchStep, message: str, account_id: str, **extra) -> None:
        await self.session.emit(
            ProgressEvent(
                step=step,
                progress=STEP_PROGRESS[step],
                message=message,
                account_id=account_id,
                **extra,
            )
        )

    @staticmethod
    def best_credential(account: dict) -> str:
        """Composite form if known, else long-lived, else derived from raw.

        >>> SwitchOrchestrator.best_credential(
        ...     {"raw_credential": "x", "profile": {"composite_cookie_token": "u%3A%3AeyJa.b.c"}})
        'u%3A%3AeyJa.b.c'
        >>> SwitchOrchestrator.best_credential({"raw_credential": "u::eyJa.b.c", "profile": None})
        'u%3A%3AeyJa.b.c'
        """
        profile = account.get("profile") or {}
        composite = profile.get("composite_cookie_token")
        long_lived = profile.get("long_lived_credential")

        if composite and long_lived:
            try:
                if tokens.extract_long_lived(composite) != long_lived:
                    logger.warning(
                        f"Stored credential forms disagree for account "
                        f"{account.get('id')}; using the composite one"
                    )
            except FormatError:
                pass

        if composite:
            return composite
        if long_lived:
            return long_lived
        raw = account["raw_credential"]
        try:
            return tokens.normalize(raw)
        except (FormatError, DecodeError):
            return raw.strip()

    async def switch_to(
        self, account_id: str, options: Optional[SwitchOptions] = None
    ) -> SwitchResult:
        """Make ``account_id`` the signed-in Cursor account.

        Raises a SwitchboardError subclass on abort, after emitting an ERROR
        progress event carrying its code.
        """
        db = self.session.db
        settings = self.session.settings
        if options is None:
            options = SwitchOptions.from_settings(settings)

        try:
            account = db.get_account(account_id)
            if account is None:
                raise AccountNotFound(f"No account with id={account_id}")
            return await self._run(account, settings, options)
        except SwitchboardError as e:
            logger.warning(f"Switch to {account_id} aborted: {e}")
            await self._emit(
                SwitchStep.ERROR, e.message, account_id, error_code=e.code, hint=e.hint
            )
            raise
        except Exception as e:
            logger.exception(f"Switch to {account_id} failed unexpectedly")
            await self._emit(
                SwitchStep.ERROR, f"Unexpected error: {e}", account_id, error_code="unexpected"
            )
            raise SwitchboardError(f"Unexpected error during switch: {e}") from e

    async def _run(
        self, account: dict, settings: Settings, options: SwitchOptions
    ) -> SwitchResult:
        account_id = account["id"]
        profile = account.get("profile") or {}
        db = self.session.db

        await self._emit(SwitchStep.RESOLVE_CREDENTIAL, "Reading stored credential", account_id)
        session_token = self.best_credential(account)

        await self._emit(SwitchStep.GET_TOKEN, "Requesting long-lived credential", account_id)
        pair = await self.negotiator.upgrade(session_token)

        await self._emit(SwitchStep.LOCATE_TARGET, "Locating Cursor state store", account_id)
        db_path = Path(self.locate_db(settings))

        await self._emit(SwitchStep.KILL_TARGET, "Closing Cursor", account_id)
        await self.process.terminate()

        history_removed = 0
        if options.purge_history:
            await self._emit(SwitchStep.CLEAR_HISTORY, "Clearing Cursor history", account_id)
            history_removed = len(await asyncio.to_thread(self.purge_history, db_path))

        identity_reset = False
        if options.reset_identity:
            await self._emit(SwitchStep.RESET_IDENTITY, "Resetting machine identifiers", account_id)
            try:
                await asyncio.to_thread(self.reset_identity, db_path)
                identity_reset = True
            except StateStoreError as e:
                logger.warning(f"Identity reset skipped: {e}")

        await self._emit(SwitchStep.VERIFY_TARGET, "Checking Cursor installation", account_id)
        if not db_path.parent.is_dir():
            raise TargetNotInstalled(
                f"Cursor globalStorage directory not found: {db_path.parent}"
            )

        await self._emit(SwitchStep.UPDATE_DB, "Writing credentials to Cursor", account_id)
        subject_id = profile.get("subject_id")
        if not subject_id:
            try:
                subject_id = tokens.extract_subject(session_token)
            except (FormatError, DecodeError):
                subject_id = None
        email = profile.get("email") or account.get("email") or ""
        keys_written = await asyncio.to_thread(
            self.swap_credentials,
            db_path,
            email=email,
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            subject_id=subject_id,
        )

        db.set_active_account(account_id)
        db.clear_account_error(account_id)

        await self._emit(SwitchStep.RESTART, "Restarting Cursor", account_id)
        await self.clock.sleep(self.settle_delay)
        await self.process.relaunch(settings.cursor_app_path or None)

        await self._emit(SwitchStep.DONE, f"Switched to {email or account_id}", account_id)
        logger.info(f"Switched Cursor to account {account_id}")
        return SwitchResult(
            account_id=account_id,
            email=email or None,
            db_path=str(db_path),
            keys_written=list(keys_written),
            history_removed=history_removed,
            identity_reset=identity_reset,
        )
