"""
Vault envelopes: the persisted container of one vault.

Two variants exist. ``LegacyEnvelope`` keys were derived from the master
secret alone; ``DualSecretEnvelope`` keys combine the master secret with a
labelled second secret. Both carry the salt, work factor and encrypted
payload, and are persisted as::

    {"version": 1, "kdf_version": 2, "k2_label": "...", "salt_b64": "...",
     "iterations": 210000, "payload": {"iv": "...", "ct": "..."}}
"""
from dataclasses import dataclass, replace
from typing import Any, Optional, Union

from .crypto import (
    DEFAULT_ITERATIONS,
    NONCE_SIZE,
    SALT_SIZE,
    Payload,
    b64decode,
    b64encode,
)

PAYLOAD_VERSION = 1
KDF_LEGACY = 1
KDF_DUAL_SECRET = 2


@dataclass(frozen=True)
class LegacyEnvelope:
    salt: bytes
    iterations: int
    payload: Payload
    version: int = PAYLOAD_VERSION

    kdf_version = KDF_LEGACY

    @property
    def requires_second_secret(self) -> bool:
        return False

    def with_payload(self, payload: Payload) -> "LegacyEnvelope":
        return replace(self, payload=payload, version=PAYLOAD_VERSION)


@dataclass(frozen=True)
class DualSecretEnvelope:
    salt: bytes
    iterations: int
    payload: Payload
    k2_label: str
    version: int = PAYLOAD_VERSION

    kdf_version = KDF_DUAL_SECRET

    def __post_init__(self):
        if not self.k2_label:
            raise ValueError("dual-secret envelopes require a k2_label")

    @property
    def requires_second_secret(self) -> bool:
        return True

    def with_payload(self, payload: Payload) -> "DualSecretEnvelope":
        return replace(self, payload=payload, version=PAYLOAD_VERSION)


Envelope = Union[LegacyEnvelope, DualSecretEnvelope]


def _parse_payload(raw: Any) -> Payload:
    if not isinstance(raw, dict):
        raise ValueError("payload must be an object")
    if not raw.get("iv") or not raw.get("ct"):
        raise ValueError("payload requires 'iv' and 'ct'")
    iv = b64decode(raw["iv"])
    if len(iv) != NONCE_SIZE:
        raise ValueError(f"payload iv must be {NONCE_SIZE} bytes")
    return Payload(iv=iv, ciphertext=b64decode(raw["ct"]))


def _int_tag(value: Any, name: str) -> Optional[int]:
    """Integer format tag; None when absent. Booleans are not integers here."""
    if value is None:
        return None
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError(f"'{name}' must be an integer, got {value!r}")
    return value


def parse_envelope(record: Any) -> Envelope:
    """Build an envelope variant from its persisted JSON object.

    Raises:
        ValueError: If a required field is missing or malformed.
    """
    if not isinstance(record, dict):
        raise ValueError("envelope must be a JSON object")
    if not record.get("salt_b64"):
        raise ValueError("envelope requires 'salt_b64'")
    payload = _parse_payload(record.get("payload"))
    salt = b64decode(record["salt_b64"])
    if len(salt) != SALT_SIZE:
        raise ValueError(f"salt must be {SALT_SIZE} bytes, got {len(salt)}")
    iterations = record.get("iterations") or DEFAULT_ITERATIONS
    if not isinstance(iterations, int) or isinstance(iterations, bool) or iterations < 1:
        raise ValueError("iterations must be a positive integer")
    version = _int_tag(record.get("version"), "version") or PAYLOAD_VERSION

    match _int_tag(record.get("kdf_version"), "kdf_version"):
        case 2:
            label = record.get("k2_label")
            if not isinstance(label, str) or not label.strip():
                raise ValueError("kdf_version 2 requires a non-empty 'k2_label'")
            return DualSecretEnvelope(
                salt=salt,
                iterations=iterations,
                payload=payload,
                k2_label=label,
                version=version,
            )
        case 1 | None:
            return LegacyEnvelope(
                salt=salt, iterations=iterations, payload=payload, version=version
            )
        case other:
            raise ValueError(f"unsupported kdf_version: {other!r}")


def envelope_to_record(envelope: Envelope) -> dict:
    """Serialize an envelope to its persisted JSON object."""
    record: dict[str, Any] = {"version": envelope.version}
    match envelope:
        case DualSecretEnvelope(k2_label=label):
            record["kdf_version"] = KDF_DUAL_SECRET
            record["k2_label"] = label
        case LegacyEnvelope():
            pass
    record["salt_b64"] = b64encode(envelope.salt)
    record["iterations"] = envelope.iterations
    record["payload"] = {
        "iv": b64encode(envelope.payload.iv),
        "ct": b64encode(envelope.payload.ciphertext),
    }
    return record
