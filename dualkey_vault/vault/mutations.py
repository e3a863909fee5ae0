"""
VaultMutationService — item CRUD on an unlocked session.

Every change re-encrypts the whole item set under the session key and
rewrites the envelope; a failed write rolls the in-memory change back.
All operations count as user activity for the idle auto-lock.
"""
import logging
from typing import Union

import orjson

from ..data import VaultItem, VaultSession
from ..exceptions import PreconditionError, StorageError, ValidationError
from .crypto import encrypt_json
from .envelope import parse_envelope
from .manager import SessionManager

logger = logging.getLogger("dualkey.vault")

IMPORT_REASON = "import complete; unlock again"
ITEM_FIELDS = ("label", "site", "username", "password")


def _require_unlocked(session: VaultSession) -> None:
    if not session.is_unlocked:
        raise PreconditionError("Vault is locked. Unlock it first.")


class VaultMutationService:
    def __init__(self, manager: SessionManager):
        self.manager = manager

    @property
    def store(self):
        return self.manager.store

    def _persist(self, session: VaultSession) -> None:
        """Re-encrypt the full item set and replace the stored payload."""
        envelope = self.store.load(session.vault_name)
        if envelope is None:
            raise StorageError(
                f"No envelope for vault {session.vault_name!r}",
                key=session.vault_name,
            )
        payload = encrypt_json(session.key, session.data.model_dump())
        self.store.save(session.vault_name, envelope.with_payload(payload))

    def add_item(
        self,
        session: VaultSession,
        label: str,
        site: str,
        username: str,
        password: str,
    ) -> VaultItem:
        """Append a credential and persist the vault.

        ``label``, ``site`` and ``username`` are trimmed; ``password`` is
        stored verbatim. All four must be non-empty.

        Raises:
            PreconditionError: If the session is locked.
            ValidationError: If a field is empty.
        """
        _require_unlocked(session)
        for field, value in zip(ITEM_FIELDS, (label, site, username, password)):
            if value is not None and not isinstance(value, str):
                raise ValidationError(f"{field} must be a string", field=field)
        values = {
            "label": (label or "").strip(),
            "site": (site or "").strip(),
            "username": (username or "").strip(),
            "password": password or "",
        }
        for field in ITEM_FIELDS:
            if not values[field]:
                raise ValidationError("All fields are required", field=field)
        item = VaultItem(**values)
        items = session.items
        items.append(item)
        try:
            self._persist(session)
        except Exception:
            items.pop()
            raise
        session.touch()
        logger.debug(
            "Item added to vault %s (%d item(s))", session.vault_name, len(items)
        )
        return item

    def delete_item(self, session: VaultSession, index: int) -> VaultItem:
        """Remove the item at ``index`` and persist the vault.

        Raises:
            PreconditionError: If the session is locked.
            ValidationError: If ``index`` is not a valid position.
        """
        _require_unlocked(session)
        items = session.items
        if (
            not isinstance(index, int)
            or isinstance(index, bool)
            or not 0 <= index < len(items)
        ):
            raise ValidationError(f"No item at position {index!r}", field="index")
        removed = items.pop(index)
        try:
            self._persist(session)
        except Exception:
            items.insert(index, removed)
            raise
        session.touch()
        logger.debug(
            "Item deleted from vault %s (%d item(s))", session.vault_name, len(items)
        )
        return removed

    def search(self, session: VaultSession, query: str = "") -> list[tuple[int, VaultItem]]:
        """Items whose label, site or username contain ``query``.

        Positions refer to the unfiltered item list, so they can be passed
        to :meth:`delete_item`.
        """
        _require_unlocked(session)
        session.touch()
        needle = (query or "").strip().lower()
        return [
            (pos, item)
            for pos, item in enumerate(session.items)
            if not needle or item.matches(needle)
        ]

    def export_envelope(self, session: VaultSession) -> tuple[str, str]:
        """Return ``(filename, record)`` for the still-encrypted envelope."""
        _require_unlocked(session)
        raw = self.store.load_raw(session.vault_name)
        if raw is None:
            raise StorageError(
                f"No envelope for vault {session.vault_name!r}",
                key=session.vault_name,
            )
        session.touch()
        logger.info("Vault %s exported", session.vault_name)
        return f"vault-export-{session.vault_name}.json", raw

    def import_envelope(self, session: VaultSession, content: Union[str, bytes]) -> None:
        """Replace the active vault's envelope with an exported one.

        The session is locked afterwards; the imported envelope must be
        unlocked explicitly.

        Raises:
            PreconditionError: If the session is locked.
            ValidationError: If the content is not a valid envelope.
        """
        _require_unlocked(session)
        session.touch()
        try:
            envelope = parse_envelope(orjson.loads(content))
        except ValueError as err:
            logger.warning("Rejected import for vault %s: %s", session.vault_name, err)
            raise ValidationError(
                "Import file is not a valid vault envelope", field="file"
            ) from err
        self.store.save(session.vault_name, envelope)
        logger.info("Vault %s imported", session.vault_name)
        self.manager.lock(session, IMPORT_REASON)
