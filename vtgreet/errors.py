"""
Exceptions raised by vtgreet.

AuthError and its subclasses are scoped to one login attempt: the worker
thread catches them and reports a failed attempt to the UI.

GreeterFatal and its subclasses are operational failures (display server,
process spawn, account lookup, configuration). main() logs them and exits.
"""


class GreeterError(Exception):
    """Base class for all vtgreet errors."""


# ---------------------------------------------------------------------------
# Authentication (recoverable)
# ---------------------------------------------------------------------------

class AuthError(GreeterError):
    """Raised when a PAM step fails.

    Attributes:
        code: PAM return code of the failing call, if any.
    """

    def __init__(self, message: str, code: int | None = None) -> None:
        self.code = code
        super().__init__(message)


class AuthRejected(AuthError):
    """Bad credentials. The UI goes back to input with a flash cue."""


class AccountInvalid(AuthRejected):
    """pam_acct_mgmt refused the account (expired, locked, ...)."""


class PartialCredentialFailure(AuthRejected):
    """pam_open_session failed after credentials were established.

    Attributes:
        rollback_code: return code of the PAM_DELETE_CRED rollback call.
    """

    def __init__(self, message: str, code: int | None = None,
                 rollback_code: int | None = None) -> None:
        self.rollback_code = rollback_code
        super().__init__(message, code)


class ConversationError(AuthError):
    """The PAM conversation was aborted (error message, bad prompt, no memory)."""


# ---------------------------------------------------------------------------
# Orchestration (fatal)
# ---------------------------------------------------------------------------

class GreeterFatal(GreeterError):
    """Unrecoverable failure. The greeter exits with a diagnostic."""


class ConfigError(GreeterFatal):
    """The configuration file could not be read or validated."""


class DisplayServerTimeout(GreeterFatal):
    """The X server did not accept a connection within the readiness window.

    Attributes:
        display: display name that was polled.
        timeout: readiness window in seconds.
    """

    def __init__(self, display: str, timeout: float, reason: str = "") -> None:
        self.display = display
        self.timeout = timeout
        message = f"X server on {display} not reachable after {timeout:.1f}s"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class ChildSpawnFailure(GreeterFatal):
    """The X server or the session process could not be started."""


class AccountLookupFailure(GreeterFatal):
    """No OS account exists for the configured login name."""

    def __init__(self, username: str) -> None:
        self.username = username
        super().__init__(f"No such user: {username}")
