"""
Vault Crypto Core — Key derivation, payload encryption and serialization.

- Key derivation: PBKDF2-HMAC-SHA256(escape(master) "::" second, salt) → 32 bytes
- Payload layer: AES-256-GCM, fresh 96-bit nonce per call, orjson plaintext

Security Note:
    Never log secrets, derived keys, plaintext or ciphertext values.
    Nonces are random 96-bit; collision probability negligible under normal usage.
"""
import os
import base64
import secrets
import binascii
import logging
from typing import Any, NamedTuple, Union

import orjson
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..exceptions import DecryptionError

logger = logging.getLogger("dualkey.vault")

NONCE_SIZE = 12  # 96-bit nonce
SALT_SIZE = 16
KEY_LENGTH = 32  # AES-256
TAG_SIZE = 16
DEFAULT_ITERATIONS = 210_000

SECRET_SEPARATOR = "::"

PASSWORD_ALPHABET = (
    "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
    "!@#$%^&*()-_=+[]{};:,.?"
)


class Payload(NamedTuple):
    """Encrypted item set: nonce plus ciphertext with its GCM tag."""
    iv: bytes
    ciphertext: bytes


# ---------------------------------------------------------------------------
# Base64 helpers
# ---------------------------------------------------------------------------

def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(text: str) -> bytes:
    """Decode standard base64 text, rejecting non-alphabet characters.

    Raises:
        ValueError: If text is not a string or not valid base64.
    """
    if not isinstance(text, str):
        raise ValueError("base64 value must be a string")
    try:
        return base64.b64decode(text, validate=True)
    except binascii.Error as err:
        raise ValueError(f"invalid base64 value: {err}") from err


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def combine_secrets(master_secret: str, second_secret: str) -> str:
    """Join both secrets into the derivation input.

    ``\\`` and ``:`` are escaped in the master secret, so the first bare
    separator always marks where it ends and no two pairs share an input.
    Secrets without those characters combine as ``master::second``.
    """
    escaped = master_secret.replace("\\", "\\\\").replace(":", "\\:")
    return f"{escaped}{SECRET_SEPARATOR}{second_secret}"


def derive_key(
    master_secret: str,
    second_secret: str,
    salt: bytes,
    iterations: int = DEFAULT_ITERATIONS,
) -> bytes:
    """Derive a 32-byte AES key with PBKDF2-HMAC-SHA256.

    Args:
        master_secret: Master password.
        second_secret: Second secret, empty for legacy envelopes.
        salt: 16-byte salt stored in the envelope.
        iterations: PBKDF2 work factor stored in the envelope.

    Returns:
        32-byte derived key.

    Raises:
        ValueError: If salt is not 16 bytes or iterations is not positive.
    """
    if len(salt) != SALT_SIZE:
        raise ValueError(
            f"salt must be exactly {SALT_SIZE} bytes, got {len(salt)}"
        )
    if iterations < 1:
        raise ValueError("iterations must be a positive integer")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(
        combine_secrets(master_secret, second_secret).encode("utf-8")
    )


def generate_salt() -> bytes:
    return os.urandom(SALT_SIZE)


# ---------------------------------------------------------------------------
# Payload encryption
# ---------------------------------------------------------------------------

def encrypt_json(key: Union[bytes, bytearray], value: Any) -> Payload:
    """Serialize value with orjson and encrypt it under key.

    A fresh random nonce is drawn for every call.

    Args:
        key: 32-byte derived key.
        value: JSON-serializable object.

    Returns:
        Payload with the nonce and ciphertext+tag.
    """
    plaintext = orjson.dumps(value)
    cipher = AESGCM(bytes(key))
    nonce = os.urandom(NONCE_SIZE)
    ct = cipher.encrypt(nonce, plaintext, None)
    return Payload(iv=nonce, ciphertext=ct)


def decrypt_json(key: Union[bytes, bytearray], payload: Payload) -> Any:
    """Decrypt and parse a payload produced by :func:`encrypt_json`.

    Raises:
        DecryptionError: If the tag does not verify (wrong key, corrupted
            or tampered data) or the plaintext is not valid JSON.
    """
    if len(payload.iv) != NONCE_SIZE or len(payload.ciphertext) < TAG_SIZE:
        raise DecryptionError("payload is truncated or malformed")
    cipher = AESGCM(bytes(key))
    try:
        plaintext = cipher.decrypt(payload.iv, payload.ciphertext, None)
    except InvalidTag:
        raise DecryptionError("payload failed authentication") from None
    try:
        return orjson.loads(plaintext)
    except orjson.JSONDecodeError:
        raise DecryptionError("decrypted payload is not valid JSON") from None


# ---------------------------------------------------------------------------
# Utilities
# ---------------------------------------------------------------------------

def generate_password(length: int = 22) -> str:
    """Generate a random password over the vault's password alphabet."""
    if length < 1:
        raise ValueError("password length must be positive")
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))
