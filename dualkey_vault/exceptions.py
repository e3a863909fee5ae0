"""
Vault exception hierarchy.

Every error raised by the vault derives from :class:`VaultError`, so callers
can catch the library as a whole or a single failure mode:

- ValidationError: a required field is missing or empty (no state change).
- DecryptionError: authentication failed or the plaintext is malformed.
- StorageError: a persisted record is unreadable or the backend failed.
- PreconditionError: the session is in the wrong state for the operation.
"""
from typing import Optional

UNLOCK_FAILED = "Unlock failed: wrong key or corrupt data."


class VaultError(Exception):
    """Base exception for all vault errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} (details: {self.details})"
        return self.message


class ValidationError(VaultError):
    """A required input is missing or empty.

    ``field`` names the offending input so it can be reported per field.
    """

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        super().__init__(message, kwargs)
        self.field = field


class DecryptionError(VaultError):
    """Integrity tag did not verify, or plaintext did not parse."""


class StorageError(VaultError):
    """Persisted record is malformed or the storage backend failed."""

    def __init__(self, message: str, key: Optional[str] = None, **kwargs):
        super().__init__(message, kwargs)
        self.key = key


class PreconditionError(VaultError):
    """Operation attempted in a session state that does not allow it."""
