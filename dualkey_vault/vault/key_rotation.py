"""
Vault Key Rotation — re-encrypt an unlocked vault under new secrets.

The vault's salt is kept; only the secrets and, optionally, the work
factor change. Legacy single-secret vaults are upgraded to the
dual-secret format and therefore need a label for the second secret.

Security Note:
    Plaintext exists only in the session's item set during rotation.
    Never log secrets, keys, plaintext or ciphertext values.
"""
import logging
from typing import Optional

from ..data import VaultSession, wipe_buffer
from ..exceptions import PreconditionError, StorageError, ValidationError
from .crypto import derive_key, encrypt_json
from .envelope import DualSecretEnvelope
from .manager import SessionManager, _require_text, run_blocking

logger = logging.getLogger("dualkey.vault")


async def rotate_vault_key(
    manager: SessionManager,
    session: VaultSession,
    master_secret: str,
    second_secret: str,
    second_secret_label: Optional[str] = None,
    iterations: Optional[int] = None,
) -> DualSecretEnvelope:
    """Re-key the session's vault.

    Args:
        manager: Manager owning the vault store.
        session: Unlocked session of the vault to re-key.
        master_secret: New master secret.
        second_secret: New second secret.
        second_secret_label: New label; defaults to the current one.
        iterations: New work factor; defaults to the current one.

    Returns:
        The rewritten envelope.

    Raises:
        PreconditionError: If the session is locked, or gets locked while
            the new key is being derived.
        ValidationError: If a secret or the label is missing.
    """
    if not session.is_unlocked:
        raise PreconditionError("Vault is locked. Unlock it first.")
    vault_name = session.vault_name
    envelope = manager.store.load(vault_name)
    if envelope is None:
        raise StorageError(f"No envelope for vault {vault_name!r}", key=vault_name)

    _require_text(
        master_secret=master_secret,
        second_secret=second_secret,
        second_secret_label=second_secret_label,
    )
    label = (second_secret_label or "").strip()
    if not label and isinstance(envelope, DualSecretEnvelope):
        label = envelope.k2_label
    if not master_secret:
        raise ValidationError("Master password is required", field="master_secret")
    if not label:
        raise ValidationError(
            "Second secret name is required", field="second_secret_label"
        )
    if not second_secret:
        raise ValidationError("Second secret is required", field="second_secret")
    work = iterations or envelope.iterations
    if work < 1:
        raise ValidationError("Iterations must be positive", field="iterations")

    session.touch()
    new_key = bytearray(
        await run_blocking(derive_key, master_secret, second_secret, envelope.salt, work)
    )
    if not session.is_unlocked or session.vault_name != vault_name:
        wipe_buffer(new_key)
        raise PreconditionError("Vault was locked during key rotation")

    try:
        payload = encrypt_json(new_key, session.data.model_dump())
        rotated = DualSecretEnvelope(
            salt=envelope.salt,
            iterations=work,
            payload=payload,
            k2_label=label,
        )
        manager.store.save(vault_name, rotated)
    except Exception:
        wipe_buffer(new_key)
        raise
    session.replace_key(new_key)
    session.touch()
    logger.info(
        "Vault %s re-keyed (kdf v%d -> v2, iterations=%d)",
        vault_name, envelope.kdf_version, work,
    )
    return rotated
