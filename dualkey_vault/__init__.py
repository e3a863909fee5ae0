"""DualKey Vault.

Per-account credential vaults encrypted at rest with a key derived from a
master password and a second secret, with idle auto-locking sessions.
"""
from .version import __version__
from .data import SessionState, VaultData, VaultItem, VaultSession
from .exceptions import (
    VaultError,
    ValidationError,
    DecryptionError,
    StorageError,
    PreconditionError,
)
from .storage import AbstractStorage, FileStorage, MemoryStorage

__all__ = [
    "__version__",
    "SessionState",
    "VaultData",
    "VaultItem",
    "VaultSession",
    "VaultError",
    "ValidationError",
    "DecryptionError",
    "StorageError",
    "PreconditionError",
    "AbstractStorage",
    "FileStorage",
    "MemoryStorage",
]
