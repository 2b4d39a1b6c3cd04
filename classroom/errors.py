"""
Errors raised by the backend adapter.

Callers branch on the class, never on the message. `code` mirrors the codes a
hosted Postgres/REST backend reports so log lines look the same either way.
"""
from __future__ import annotations


class BackendError(Exception):
    code = "backend_error"

    def __init__(self, message: str = "", code: str | None = None) -> None:
        super().__init__(message or self.__class__.__name__)
        if code:
            self.code = code

class TransientNetworkError(BackendError):
    """The backend call itself failed (connection dropped, database unavailable)."""
    code = "transient"

class NotFoundError(BackendError):
    """A single row was asked for and there is none."""
    code = "PGRST116"

class DuplicateKeyError(BackendError):
    """Insert hit a unique constraint, the row is already there."""
    code = "23505"

class AuthError(BackendError):
    code = "invalid_credentials"
