"""
Vault data model and the per-user vault session.

``VaultSession`` is the single owner of the ephemeral state of an unlocked
vault: the derived key, the decrypted item set and the idle timer. It is
created by the caller and passed explicitly to every vault operation.
"""
import uuid
from enum import Enum
from typing import Optional, TYPE_CHECKING
from datetime import datetime, timezone

from pydantic import BaseModel, Field

from .exceptions import PreconditionError

if TYPE_CHECKING:
    from .vault.autolock import IdleAutoLock


class VaultItem(BaseModel):
    """One stored credential."""

    label: str
    site: str
    username: str
    password: str

    model_config = {"extra": "ignore"}

    def __repr__(self) -> str:
        # never render the password
        return f"<VaultItem label={self.label!r} site={self.site!r}>"

    __str__ = __repr__

    def matches(self, query: str) -> bool:
        haystack = f"{self.label} {self.site} {self.username}".lower()
        return query in haystack


class VaultData(BaseModel):
    """Decrypted item set of one vault."""

    items: list[VaultItem] = Field(default_factory=list)

    def wipe(self) -> None:
        """Drop every item from the underlying list in place."""
        self.items.clear()


class SessionState(str, Enum):
    LOCKED = "locked"
    UNLOCKED = "unlocked"


class VaultSession:
    """Locked/unlocked state of one user's vault session.

    At most one vault is open per session: opening a vault always starts
    from the locked state, and locking zeroes the key buffer and empties
    the item list before the references are dropped.
    """

    def __init__(
        self,
        vault_name: Optional[str] = None,
        id: Optional[str] = None,
        idle_minutes: Optional[int] = None,
    ) -> None:
        self._id_ = id or uuid.uuid4().hex
        self.__created__ = datetime.now(timezone.utc)
        self._created = int(self.__created__.timestamp())
        self._vault_name = vault_name
        self._state = SessionState.LOCKED
        self._key: Optional[bytearray] = None
        self._data: Optional[VaultData] = None
        self._unlocking = False
        self.idle_minutes = idle_minutes
        self.autolock: Optional["IdleAutoLock"] = None
        self.last_reason: Optional[str] = None

    def __repr__(self) -> str:
        return (
            f'<Vault-Session [{self._id_}] vault={self._vault_name!r}, '
            f'state={self._state.value}>'
        )

    # --- Properties ---

    @property
    def session_id(self) -> str:
        return self._id_

    @property
    def created(self) -> int:
        return self._created

    @property
    def logon_time(self) -> datetime:
        return self.__created__

    @property
    def vault_name(self) -> Optional[str]:
        return self._vault_name

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_unlocked(self) -> bool:
        return self._state is SessionState.UNLOCKED

    @property
    def unlocking(self) -> bool:
        return self._unlocking

    @property
    def key(self) -> bytearray:
        if not self.is_unlocked or self._key is None:
            raise PreconditionError("Vault is locked. Unlock it first.")
        return self._key

    @property
    def data(self) -> VaultData:
        if not self.is_unlocked or self._data is None:
            raise PreconditionError("Vault is locked. Unlock it first.")
        return self._data

    @property
    def items(self) -> list[VaultItem]:
        return self.data.items

    # --- Transitions ---

    def select(self, vault_name: str) -> None:
        if self.is_unlocked:
            raise PreconditionError("Lock the session before switching vaults")
        self._vault_name = vault_name

    def begin_unlock(self) -> None:
        if self._unlocking:
            raise PreconditionError("An unlock attempt is already in progress")
        self._unlocking = True

    def end_unlock(self) -> None:
        self._unlocking = False

    def open(self, key: bytearray, data: VaultData) -> None:
        """Locked → Unlocked, taking ownership of key and data."""
        if self.is_unlocked:
            raise PreconditionError("Session is already unlocked")
        self._key = key
        self._data = data
        self._state = SessionState.UNLOCKED
        self.last_reason = None

    def replace_key(self, key: bytearray) -> None:
        old = self.key
        self._key = key
        wipe_buffer(old)

    def touch(self) -> None:
        """Record user activity, pushing the idle deadline forward."""
        if self.is_unlocked and self.autolock is not None:
            self.autolock.touch()

    def invalidate(self, reason: Optional[str] = None) -> None:
        """Unlocked → Locked. Idempotent.

        The idle timer is disarmed first so a pending expiry check sees a
        disarmed timer rather than a half-cleared session.
        """
        if self.autolock is not None:
            self.autolock.disarm()
        if self._key is not None:
            wipe_buffer(self._key)
        if self._data is not None:
            self._data.wipe()
        self._key = None
        self._data = None
        self._state = SessionState.LOCKED
        self.last_reason = reason


def wipe_buffer(buf: Optional[bytearray]) -> None:
    """Overwrite a key buffer with zeros in place."""
    if buf is None:
        return
    for i in range(len(buf)):
        buf[i] = 0
