"""
Vault Index and Envelope Store — persistence of vault names and envelopes.

The index is a JSON array of vault names at ``INDEX_KEY``. Each vault's
envelope lives at ``STORAGE_PREFIX + <trimmed, lower-cased name>``, so names
that differ only by case or surrounding whitespace address the same record.
"""
import logging
from typing import Optional

import orjson

from ..exceptions import StorageError, ValidationError
from ..storage import AbstractStorage
from .envelope import Envelope, envelope_to_record, parse_envelope

logger = logging.getLogger("dualkey.vault")

INDEX_KEY = "vault_index_v1"
STORAGE_PREFIX = "vault_user_v1:"
DEFAULT_VAULT_NAME = "Default"


def normalize_name(name: str) -> str:
    """Comparison form of a vault name: trimmed and case-folded."""
    return str(name or "").strip().lower()


def storage_key_for(vault_name: str) -> str:
    return STORAGE_PREFIX + normalize_name(vault_name)


class VaultIndex:
    """Ordered registry of known vault names."""

    def __init__(self, storage: AbstractStorage):
        self._storage = storage

    def load(self) -> list[str]:
        """Return the stored names; empty when absent or unreadable."""
        raw = self._storage.get(INDEX_KEY)
        if not raw:
            return []
        try:
            names = orjson.loads(raw)
        except orjson.JSONDecodeError:
            logger.warning("Vault index record is malformed; treating as empty")
            return []
        if not isinstance(names, list):
            return []
        return [name for name in names if isinstance(name, str)]

    def save(self, names: list[str]) -> None:
        self._storage.set(INDEX_KEY, orjson.dumps(list(names)).decode("utf-8"))

    def ensure_default(self) -> list[str]:
        names = self.load()
        if not names:
            names = [DEFAULT_VAULT_NAME]
            self.save(names)
            logger.info("Vault index initialized with %r", DEFAULT_VAULT_NAME)
        return names

    def contains(self, name: str) -> bool:
        wanted = normalize_name(name)
        return any(normalize_name(n) == wanted for n in self.load())

    def add(self, name: str) -> list[str]:
        """Append a vault name unless an equivalent one is indexed.

        Raises:
            ValidationError: If the trimmed name is empty.
        """
        cleaned = str(name or "").strip()
        if not cleaned:
            raise ValidationError("Vault name is required", field="vault_name")
        names = self.ensure_default()
        if any(normalize_name(n) == normalize_name(cleaned) for n in names):
            return names
        names.append(cleaned)
        self.save(names)
        logger.info("Vault name added to index: %s", cleaned)
        return names

    def pick(self, prefer: Optional[str] = None) -> str:
        """Return the indexed spelling of ``prefer``, or the first name."""
        names = self.ensure_default()
        if prefer:
            wanted = normalize_name(prefer)
            for name in names:
                if normalize_name(name) == wanted:
                    return name
        return names[0]


class VaultEnvelopeStore:
    """One encrypted envelope per vault name."""

    def __init__(self, storage: AbstractStorage):
        self._storage = storage

    def load_raw(self, vault_name: str) -> Optional[str]:
        """Return the stored record text exactly as persisted."""
        return self._storage.get(storage_key_for(vault_name))

    def exists(self, vault_name: str) -> bool:
        return self.load_raw(vault_name) is not None

    def load(self, vault_name: str) -> Optional[Envelope]:
        """Load the envelope for a vault, or None if none exists yet.

        Raises:
            StorageError: If a record exists but is not a valid envelope.
        """
        key = storage_key_for(vault_name)
        raw = self._storage.get(key)
        if raw is None:
            return None
        try:
            return parse_envelope(orjson.loads(raw))
        except ValueError as err:
            # orjson.JSONDecodeError is a ValueError too
            raise StorageError(f"Corrupt envelope record: {err}", key=key) from err

    def save(self, vault_name: str, envelope: Envelope) -> None:
        record = orjson.dumps(envelope_to_record(envelope)).decode("utf-8")
        self._storage.set(storage_key_for(vault_name), record)
        logger.debug("Envelope saved for vault %s", vault_name)
