"""
SessionManager — the locked/unlocked state machine of a vault session.

- ``unlock_or_create(session, ...)`` — create a new dual-secret vault, or
  derive the key for an existing envelope and decrypt its items
- ``lock(session, reason)`` — wipe key and items, disarm the idle timer
- ``select_vault(session, name)`` — lock, then switch the active vault

Key derivation and decryption run in the default executor; at most one
unlock attempt per session can be in flight, and an attempt, once started,
always runs to completion (there is no cancellation).

Security Note:
    Unlock failures are reported with one generic message; wrong master
    secret, wrong second secret and corrupt data are indistinguishable
    to the caller and in the logs.
"""
import time
import asyncio
import logging
from functools import partial
from typing import Any, Callable, Optional

from pydantic import ValidationError as PydanticValidationError

from ..data import VaultData, VaultSession, wipe_buffer
from ..exceptions import (
    UNLOCK_FAILED,
    DecryptionError,
    PreconditionError,
    StorageError,
    ValidationError,
)
from ..storage import AbstractStorage
from .autolock import WARNING_SECONDS, IdleAutoLock, clamp_minutes
from .config import VaultConfig
from .crypto import decrypt_json, derive_key, encrypt_json, generate_salt
from .envelope import DualSecretEnvelope, Envelope, LegacyEnvelope
from .store import VaultEnvelopeStore, VaultIndex

logger = logging.getLogger("dualkey.vault")

LOCKED_REASON = "locked"
SWITCH_REASON = "vault switched"


async def run_blocking(func: Callable[..., Any], *args: Any) -> Any:
    """Run a CPU-bound call in the default executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, partial(func, *args))


def _open_envelope(
    envelope: Envelope, master_secret: str, second_secret: str
) -> tuple[bytearray, VaultData]:
    key = bytearray(
        derive_key(master_secret, second_secret, envelope.salt, envelope.iterations)
    )
    try:
        data = VaultData.model_validate(decrypt_json(key, envelope.payload))
    except (DecryptionError, PydanticValidationError):
        wipe_buffer(key)
        raise
    return key, data


def _require_text(**fields: Any) -> None:
    """Reject non-string inputs before they reach key derivation."""
    for field, value in fields.items():
        if value is not None and not isinstance(value, str):
            raise ValidationError(f"{field} must be a string", field=field)


class SessionManager:
    """Drives :class:`VaultSession` objects through their lifecycle."""

    def __init__(
        self,
        index: VaultIndex,
        store: VaultEnvelopeStore,
        config: Optional[VaultConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.index = index
        self.store = store
        self.config = config or VaultConfig()
        self._clock = clock

    @classmethod
    def from_storage(
        cls,
        storage: AbstractStorage,
        config: Optional[VaultConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> "SessionManager":
        return cls(
            VaultIndex(storage), VaultEnvelopeStore(storage), config=config, clock=clock
        )

    # ------------------------------------------------------------------
    # Idle timer
    # ------------------------------------------------------------------

    def _arm(self, session: VaultSession) -> None:
        if session.autolock is None:
            session.autolock = IdleAutoLock(
                on_expire=partial(self.lock, session),
                timeout_minutes=session.idle_minutes or self.config.idle_minutes,
                tick=self.config.tick_interval,
                clock=self._clock,
            )
        session.autolock.arm()

    def set_idle_minutes(self, session: VaultSession, minutes: Any) -> float:
        """Change the idle timeout; resets the deadline while unlocked."""
        value = clamp_minutes(minutes)
        session.idle_minutes = value
        if session.autolock is not None:
            session.autolock.set_timeout(value)
        return value

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def lock(self, session: VaultSession, reason: str = LOCKED_REASON) -> None:
        """Unlocked → Locked. Always succeeds, also when already locked."""
        was_unlocked = session.is_unlocked
        session.invalidate(reason)
        if was_unlocked:
            logger.info("Vault %s locked: %s", session.vault_name, reason)

    def _select(self, session: VaultSession, vault_name: str) -> str:
        cleaned = str(vault_name or "").strip()
        if not cleaned or not self.index.contains(cleaned):
            raise ValidationError(
                f"Unknown vault name: {cleaned!r}", field="vault_name"
            )
        name = self.index.pick(cleaned)
        if session.is_unlocked:
            self.lock(session, SWITCH_REASON)
        session.select(name)
        return name

    def select_vault(self, session: VaultSession, vault_name: str) -> str:
        """Lock the session and make ``vault_name`` the active vault.

        Returns:
            The vault name as spelled in the index.
        """
        if session.unlocking:
            raise PreconditionError("An unlock attempt is already in progress")
        return self._select(session, vault_name)

    async def unlock_or_create(
        self,
        session: VaultSession,
        vault_name: str,
        master_secret: str,
        second_secret: str = "",
        second_secret_label: str = "",
    ) -> VaultData:
        """Open the named vault, creating it when it has no envelope yet.

        Raises:
            PreconditionError: If another unlock is in flight for the session.
            ValidationError: If a required secret or label is empty.
            DecryptionError: On any unlock failure, with a generic message.
        """
        session.begin_unlock()
        try:
            name = self._select(session, vault_name)
            _require_text(
                master_secret=master_secret,
                second_secret=second_secret,
                second_secret_label=second_secret_label,
            )
            if not master_secret:
                raise ValidationError(
                    "Master password is required", field="master_secret"
                )
            try:
                envelope = self.store.load(name)
            except StorageError:
                logger.warning("Unlock failed for vault %s", name)
                raise DecryptionError(UNLOCK_FAILED) from None
            if envelope is None:
                await self._create(
                    session, name, master_secret, second_secret, second_secret_label
                )
            else:
                await self._unlock(session, name, envelope, master_secret, second_secret)
            self._arm(session)
            return session.data
        finally:
            session.end_unlock()

    async def _create(
        self,
        session: VaultSession,
        name: str,
        master_secret: str,
        second_secret: str,
        label: str,
    ) -> None:
        label = (label or "").strip()
        if not label:
            raise ValidationError(
                "Second secret name is required", field="second_secret_label"
            )
        if not second_secret:
            raise ValidationError(
                "Second secret is required", field="second_secret"
            )
        salt = generate_salt()
        iterations = self.config.iterations
        key = bytearray(
            await run_blocking(derive_key, master_secret, second_secret, salt, iterations)
        )
        data = VaultData()
        try:
            payload = await run_blocking(encrypt_json, key, data.model_dump())
            envelope = DualSecretEnvelope(
                salt=salt, iterations=iterations, payload=payload, k2_label=label
            )
            self.store.save(name, envelope)
        except BaseException:
            wipe_buffer(key)
            raise
        session.open(key, data)
        logger.info("Vault %s created (kdf_version=2)", name)

    async def _unlock(
        self,
        session: VaultSession,
        name: str,
        envelope: Envelope,
        master_secret: str,
        second_secret: str,
    ) -> None:
        match envelope:
            case DualSecretEnvelope():
                if not second_secret:
                    raise ValidationError(
                        "This vault requires its second secret",
                        field="second_secret",
                    )
                secret = second_secret
            case LegacyEnvelope():
                secret = ""
        try:
            key, data = await run_blocking(
                _open_envelope, envelope, master_secret, secret
            )
        except (DecryptionError, PydanticValidationError, ValueError):
            logger.warning("Unlock failed for vault %s", name)
            raise DecryptionError(UNLOCK_FAILED) from None
        session.open(key, data)
        logger.info(
            "Vault %s unlocked: %d item(s)", name, len(data.items)
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def describe(self, session: VaultSession) -> dict:
        """Status of the session and of its selected vault's envelope."""
        status: dict[str, Any] = {
            "vault_name": session.vault_name,
            "state": session.state.value,
            "exists": False,
            "kdf_version": None,
            "k2_label": None,
            "corrupt": False,
            "idle_minutes": clamp_minutes(session.idle_minutes or self.config.idle_minutes),
            "remaining": None,
            "warning": False,
            "reason": session.last_reason,
        }
        if session.vault_name:
            try:
                envelope = self.store.load(session.vault_name)
            except StorageError:
                status["exists"] = True
                status["corrupt"] = True
                envelope = None
            if envelope is not None:
                status["exists"] = True
                status["kdf_version"] = envelope.kdf_version
                if isinstance(envelope, DualSecretEnvelope):
                    status["k2_label"] = envelope.k2_label
        if session.autolock is not None:
            status["idle_minutes"] = session.autolock.minutes
        if session.is_unlocked and session.autolock is not None:
            remaining = session.autolock.remaining()
            status["remaining"] = remaining
            status["warning"] = remaining is not None and remaining < WARNING_SECONDS
        return status
