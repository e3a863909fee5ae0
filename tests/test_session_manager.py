"""
Tests for the vault session state machine.

Tests cover:
- Vault creation (dual-secret) and its validation
- Unlocking dual-secret and legacy envelopes
- Generic failure on wrong secrets and corrupt data
- Locking, key wiping and vault switching
- At most one unlock attempt in flight
- Status reporting
"""
import asyncio

import orjson
import pytest

from dualkey_vault import SessionState, VaultData, VaultSession
from dualkey_vault.exceptions import (
    UNLOCK_FAILED,
    DecryptionError,
    PreconditionError,
    ValidationError,
)
from dualkey_vault.vault.crypto import derive_key, encrypt_json, generate_salt
from dualkey_vault.vault.envelope import DualSecretEnvelope, LegacyEnvelope
from dualkey_vault.vault.store import storage_key_for

ITEM = {"label": "Mail", "site": "mail.example", "username": "andi", "password": "pw"}


def make_legacy(manager, name, master, items=()):
    salt = generate_salt()
    key = derive_key(master, "", salt, 1000)
    payload = encrypt_json(key, {"items": list(items)})
    manager.store.save(
        name, LegacyEnvelope(salt=salt, iterations=1000, payload=payload)
    )


class TestCreate:
    """Creating a vault on first unlock."""

    @pytest.mark.asyncio
    async def test_create_unlocks_empty_vault(self, manager, session):
        data = await manager.unlock_or_create(
            session, "Default", "master", "second", "PIN"
        )
        assert data.items == []
        assert session.state is SessionState.UNLOCKED
        assert len(session.key) == 32

    @pytest.mark.asyncio
    async def test_create_persists_dual_secret_envelope(self, manager, session, config):
        await manager.unlock_or_create(session, "Default", "master", "second", " PIN ")
        env = manager.store.load("Default")
        assert isinstance(env, DualSecretEnvelope)
        assert env.k2_label == "PIN"
        assert env.iterations == config.iterations
        assert len(env.salt) == 16

    @pytest.mark.asyncio
    async def test_create_requires_label(self, manager, session):
        with pytest.raises(ValidationError) as exc:
            await manager.unlock_or_create(session, "Default", "master", "second", "")
        assert exc.value.field == "second_secret_label"
        assert manager.store.load("Default") is None
        assert not session.is_unlocked

    @pytest.mark.asyncio
    async def test_create_requires_second_secret(self, manager, session):
        with pytest.raises(ValidationError) as exc:
            await manager.unlock_or_create(session, "Default", "master", "", "PIN")
        assert exc.value.field == "second_secret"
        assert manager.store.load("Default") is None

    @pytest.mark.asyncio
    async def test_master_required(self, manager, session):
        with pytest.raises(ValidationError) as exc:
            await manager.unlock_or_create(session, "Default", "", "second", "PIN")
        assert exc.value.field == "master_secret"

    @pytest.mark.asyncio
    async def test_unknown_vault_name(self, manager, session):
        with pytest.raises(ValidationError):
            await manager.unlock_or_create(session, "Nobody", "m", "s", "PIN")
        assert manager.store.load("Nobody") is None


class TestUnlock:
    """Unlocking existing envelopes."""

    @pytest.mark.asyncio
    async def test_unlock_round_trip(self, manager, session, service):
        await manager.unlock_or_create(session, "Default", "master", "second", "PIN")
        service.add_item(session, **ITEM)
        manager.lock(session)
        data = await manager.unlock_or_create(session, "Default", "master", "second")
        assert [i.label for i in data.items] == ["Mail"]
        assert manager.store.load("Default").k2_label == "PIN"

    @pytest.mark.asyncio
    async def test_second_secret_required_for_dual(self, manager, session):
        await manager.unlock_or_create(session, "Default", "master", "second", "PIN")
        manager.lock(session)
        with pytest.raises(ValidationError) as exc:
            await manager.unlock_or_create(session, "Default", "master", "")
        assert exc.value.field == "second_secret"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "master,second", [("wrong", "second"), ("master", "wrong"), ("wrong", "wrong")]
    )
    async def test_wrong_secrets_fail_generically(self, manager, session, master, second):
        await manager.unlock_or_create(session, "Default", "master", "second", "PIN")
        manager.lock(session)
        with pytest.raises(DecryptionError) as exc:
            await manager.unlock_or_create(session, "Default", master, second)
        assert str(exc.value) == UNLOCK_FAILED
        assert exc.value.__cause__ is None
        assert session.state is SessionState.LOCKED
        with pytest.raises(PreconditionError):
            session.key

    @pytest.mark.asyncio
    async def test_corrupt_payload_fails_generically(self, manager, session, storage):
        await manager.unlock_or_create(session, "Default", "master", "second", "PIN")
        manager.lock(session)
        key = storage_key_for("Default")
        record = orjson.loads(storage.get(key))
        record["payload"]["ct"] = record["payload"]["ct"][::-1]
        storage.set(key, orjson.dumps(record).decode())
        with pytest.raises(DecryptionError) as exc:
            await manager.unlock_or_create(session, "Default", "master", "second")
        assert str(exc.value) == UNLOCK_FAILED

    @pytest.mark.asyncio
    async def test_unparseable_record_is_not_overwritten(self, manager, session, storage):
        storage.set(storage_key_for("Default"), "{garbage")
        with pytest.raises(DecryptionError) as exc:
            await manager.unlock_or_create(session, "Default", "m", "s", "PIN")
        assert str(exc.value) == UNLOCK_FAILED
        assert storage.get(storage_key_for("Default")) == "{garbage"

    @pytest.mark.asyncio
    async def test_legacy_envelope_ignores_second_secret(self, manager, session):
        make_legacy(manager, "Default", "old-master", [ITEM])
        data = await manager.unlock_or_create(session, "Default", "old-master", "")
        assert data.items[0].username == "andi"
        manager.lock(session)
        data = await manager.unlock_or_create(session, "Default", "old-master", "anything")
        assert len(data.items) == 1

    @pytest.mark.asyncio
    async def test_legacy_wrong_master(self, manager, session):
        make_legacy(manager, "Default", "old-master")
        with pytest.raises(DecryptionError):
            await manager.unlock_or_create(session, "Default", "nope", "")

    @pytest.mark.asyncio
    async def test_malformed_plaintext_fails(self, manager, session):
        salt = generate_salt()
        key = derive_key("m", "s", salt, 1000)
        payload = encrypt_json(key, {"items": [{"label": "only"}]})
        manager.store.save(
            "Default",
            DualSecretEnvelope(salt=salt, iterations=1000, payload=payload, k2_label="PIN"),
        )
        with pytest.raises(DecryptionError):
            await manager.unlock_or_create(session, "Default", "m", "s")
        assert not session.is_unlocked


class TestLock:
    """Locking and switching vaults."""

    @pytest.mark.asyncio
    async def test_lock_wipes_key_and_items(self, manager, unlocked, service):
        service.add_item(unlocked, **ITEM)
        key = unlocked.key
        items = unlocked.items
        manager.lock(unlocked, "bye")
        assert unlocked.state is SessionState.LOCKED
        assert unlocked.last_reason == "bye"
        assert all(b == 0 for b in key)
        assert items == []
        with pytest.raises(PreconditionError):
            unlocked.data

    def test_lock_is_idempotent(self, manager, session):
        manager.lock(session)
        manager.lock(session)
        assert session.state is SessionState.LOCKED

    @pytest.mark.asyncio
    async def test_lock_disarms_timer(self, manager, unlocked):
        assert unlocked.autolock.armed
        manager.lock(unlocked)
        assert not unlocked.autolock.armed

    @pytest.mark.asyncio
    async def test_switching_vault_locks(self, manager, unlocked):
        manager.index.add("Kerja")
        key = unlocked.key
        name = manager.select_vault(unlocked, "kerja ")
        assert name == "Kerja"
        assert unlocked.vault_name == "Kerja"
        assert not unlocked.is_unlocked
        assert all(b == 0 for b in key)

    @pytest.mark.asyncio
    async def test_unlock_other_vault_locks_first(self, manager, unlocked):
        manager.index.add("Kerja")
        first_key = unlocked.key
        await manager.unlock_or_create(unlocked, "Kerja", "m2", "s2", "Token")
        assert unlocked.vault_name == "Kerja"
        assert all(b == 0 for b in first_key)
        assert manager.store.load("Default") is not None
        assert manager.store.load("Kerja").k2_label == "Token"

    def test_session_refuses_switch_while_unlocked(self):
        sess = VaultSession(vault_name="Default")
        sess.open(bytearray(32), VaultData())
        with pytest.raises(PreconditionError):
            sess.select("Other")
        sess.invalidate()


class TestSingleFlight:
    """At most one unlock attempt per session."""

    @pytest.mark.asyncio
    async def test_concurrent_unlock_rejected(self, manager, session):
        results = await asyncio.gather(
            manager.unlock_or_create(session, "Default", "master", "second", "PIN"),
            manager.unlock_or_create(session, "Default", "master", "second", "PIN"),
            return_exceptions=True,
        )
        assert not isinstance(results[0], Exception)
        assert isinstance(results[1], PreconditionError)
        assert session.is_unlocked
        assert not session.unlocking

    @pytest.mark.asyncio
    async def test_select_rejected_while_unlocking(self, manager, session):
        manager.index.add("Kerja")
        task = asyncio.ensure_future(
            manager.unlock_or_create(session, "Default", "master", "second", "PIN")
        )
        await asyncio.sleep(0)
        with pytest.raises(PreconditionError):
            manager.select_vault(session, "Kerja")
        await task
        assert session.vault_name == "Default"

    @pytest.mark.asyncio
    async def test_flag_cleared_after_failure(self, manager, session):
        with pytest.raises(ValidationError):
            await manager.unlock_or_create(session, "Default", "master", "", "")
        assert not session.unlocking


class TestDescribe:
    """Status reporting."""

    def test_describe_no_envelope(self, manager, session):
        status = manager.describe(session)
        assert status["vault_name"] == "Default"
        assert status["state"] == "locked"
        assert status["exists"] is False
        assert status["remaining"] is None

    @pytest.mark.asyncio
    async def test_describe_unlocked(self, manager, unlocked, clock):
        clock.advance(290)
        status = manager.describe(unlocked)
        assert status["state"] == "unlocked"
        assert status["exists"] is True
        assert status["kdf_version"] == 2
        assert status["k2_label"] == "PIN"
        assert status["remaining"] == pytest.approx(10)
        assert status["warning"] is True

    def test_describe_legacy(self, manager, session):
        make_legacy(manager, "Default", "m")
        status = manager.describe(session)
        assert status["kdf_version"] == 1
        assert status["k2_label"] is None

    def test_describe_corrupt(self, manager, session, storage):
        storage.set(storage_key_for("Default"), "nope")
        status = manager.describe(session)
        assert status["exists"] is True
        assert status["corrupt"] is True


class TestInputTypes:
    """Secrets of the wrong type are validation errors, not crashes."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs,field",
        [
            ({"master_secret": ["x"]}, "master_secret"),
            ({"second_secret": 42}, "second_secret"),
            ({"second_secret_label": 7}, "second_secret_label"),
        ],
    )
    async def test_non_string_secrets(self, manager, session, kwargs, field):
        await manager.unlock_or_create(session, "Default", "master", "second", "PIN")
        manager.lock(session)
        args = {
            "master_secret": "master",
            "second_secret": "second",
            "second_secret_label": "",
            **kwargs,
        }
        with pytest.raises(ValidationError) as exc:
            await manager.unlock_or_create(session, "Default", **args)
        assert exc.value.field == field
        assert not session.is_unlocked
        assert not session.unlocking

    def test_describe_reports_idle_minutes(self, manager, session):
        assert manager.describe(session)["idle_minutes"] == 5
        manager.set_idle_minutes(session, 2)
        assert manager.describe(session)["idle_minutes"] == 2
