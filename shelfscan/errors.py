"""Failures raised by the sync client."""
from typing import Optional


class SyncError(Exception):
    """Base class for remote sync failures."""


class Unauthenticated(SyncError):
    """No credential, or the refresh-and-retry was exhausted.

    Callers route the user to an explicit sign-in.
    """


class RequestFailed(SyncError):
    """Any other HTTP or transport failure; safe to retry manually."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

    def __str__(self):
        base = super().__str__()
        if self.status is None:
            return base
        return f"{base} (status {self.status})"


class ParseFailed(RequestFailed):
    """The server answered 2xx with a payload we could not read."""

    def __init__(self, message: str, body: str = "", status: Optional[int] = None):
        super().__init__(message, status)
        self.body = body
