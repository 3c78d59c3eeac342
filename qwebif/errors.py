"""Error taxonomy for the restore control path."""

from __future__ import annotations


class RestoreControlError(Exception):
    """Base class for errors raised while handling a restore request."""


class AuthorizationError(RestoreControlError):
    """Session lacks the privilege required for the requested page or action."""

    def __init__(self, required: str, actual: str) -> None:
        super().__init__(f"privilege {actual!r} below required {required!r}")
        self.required = required
        self.actual = actual


class CsrfMismatchError(RestoreControlError):
    """Presented anti-forgery token is absent or differs from the session token."""


class ExternalOperationError(RestoreControlError):
    """The restore operation could not be started or exited abnormally."""

    def __init__(self, action: str, returncode: int, output: str = "") -> None:
        super().__init__(f"{action} failed with exit status {returncode}")
        self.action = action
        self.returncode = returncode
        self.output = output


class RestoreInProgressError(RestoreControlError):
    """Another restore invocation is already running."""
