"""Vault — encrypted credential envelopes and the session state machine.

Security Note (Threat Model):
    Decrypted items and the derived key live in process memory while a
    session is unlocked. Locking zeroes the key buffer and empties the item
    list, but Python strings are immutable and copies made by the runtime
    cannot be scrubbed. A memory dump of an unlocked process can expose
    plaintext; this is an accepted limitation.
"""

from .config import VaultConfig
from .crypto import derive_key, decrypt_json, encrypt_json, generate_password
from .envelope import DualSecretEnvelope, LegacyEnvelope, parse_envelope
from .store import VaultIndex, VaultEnvelopeStore, storage_key_for
from .autolock import IdleAutoLock
from .manager import SessionManager
from .mutations import VaultMutationService
from .key_rotation import rotate_vault_key

__all__ = [
    "VaultConfig",
    "derive_key",
    "encrypt_json",
    "decrypt_json",
    "generate_password",
    "LegacyEnvelope",
    "DualSecretEnvelope",
    "parse_envelope",
    "VaultIndex",
    "VaultEnvelopeStore",
    "storage_key_for",
    "IdleAutoLock",
    "SessionManager",
    "VaultMutationService",
    "rotate_vault_key",
]
