"""Error taxonomy shared by the CLI, the HTTP API and the switch pipeline.

Every error carries a stable ``code`` so outer surfaces can tell the user
which remedy applies:

- ``bad_input``         re-enter the token
- ``not_authorized``    the remote side rejected the credential
- ``negotiation_failed`` / ``negotiation_timeout``  confirm the consent page manually
- ``target_not_found``  configure the Cursor state store path
- ``unexpected``        anything else

>>> FormatError("nope").code
'bad_input'
>>> isinstance(NegotiationTimeout("late"), NegotiationError)
True
"""

from typing import Optional


class SwitchboardError(Exception):
    """Base class for all switchboard errors."""

    code = "unexpected"
    hint: Optional[str] = None

    def __init__(self, message: str, *, hint: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if hint is not None:
            self.hint = hint

    def to_dict(self) -> dict:
        """Error envelope body used by the HTTP API.

        >>> TargetNotInstalled("missing").to_dict()["code"]
        'target_not_found'
        """
        body = {"message": self.message, "code": self.code}
        if self.hint:
            body["hint"] = self.hint
        return body


class FormatError(SwitchboardError):
    """No recognizable token segment in the input."""

    code = "bad_input"
    hint = "Paste the WorkosCursorSessionToken cookie value or an eyJ... token."


class DecodeError(SwitchboardError):
    """Token segment found but its payload is not valid base64url JSON."""

    code = "bad_input"
    hint = FormatError.hint


class NotAuthenticated(SwitchboardError):
    """Cursor rejected the credential (HTTP 401)."""

    code = "not_authorized"
    hint = "Log in to cursor.com again and copy a fresh session token."


class ResolutionError(SwitchboardError):
    """Profile endpoints answered but nothing usable came back."""

    code = "unexpected"


class NegotiationError(SwitchboardError):
    """The long-lived credential exchange failed."""

    code = "negotiation_failed"


class NegotiationTimeout(NegotiationError):
    """Poll budget exhausted before the consent was confirmed."""

    code = "negotiation_timeout"
    hint = "Confirm the login request manually in the browser and retry."


class TargetNotInstalled(SwitchboardError):
    """Cursor's globalStorage directory does not exist."""

    code = "target_not_found"
    hint = "Set the Cursor state store path with `switchboard settings --db-path`."


class StateStoreError(SwitchboardError):
    """Reading or writing Cursor's state store failed."""

    code = "unexpected"


class AccountNotFound(SwitchboardError):
    code = "not_found"
