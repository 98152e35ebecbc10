"""Exceptions shared by the Pitchroom components and the HTTP layer."""
from __future__ import annotations


class PreconditionError(Exception):
    """An authenticated action was attempted with inputs that make it invalid.

    Raised before any write is attempted.
    """


class NotSignedInError(PreconditionError):
    """The action needs a session and there is none; callers send users to sign-in."""

    def __init__(self, message: str = "You need to sign in first"):
        super().__init__(message)
