"""
Tests for the key rotation protocol.

Tests cover:
- Full migration of a vault to the new key
- Aborts before the commit step leave everything untouched
- Commit failures roll back and surface as MigrationError
- Session checks and per-user serialization
"""
import asyncio
import gc
import threading

import orjson
import pytest

from navigator_keychain.data import VaultSession
from navigator_keychain.exceptions import (
    AuthenticationError,
    DecryptionError,
    IntegrityError,
    MigrationError,
    SessionStateError,
    ValidationError,
)
from navigator_keychain.storage import MemoryStore
from navigator_keychain.vault import PasswordVault, decrypt_from_storage
from navigator_keychain.vault import key_rotation
from navigator_keychain.vault.hashing import verify_password
from navigator_keychain.vault.key_rotation import KeyRotation, password_policy_violations

LOGIN_PASSWORD = "Tr0ub4dor&3-horse"
NEW_PASSWORD = "C0rrect-Battery-Staple!"

PLAINTEXTS = {
    "github.com": "gh-secret-1",
    "mail.com": "m@il-secret-2",
    "bank.com": "B4nk-secret-3",
}


def tamper(envelope: str) -> str:
    stored = orjson.loads(envelope)
    tag = bytearray(bytes.fromhex(stored["authTag"]))
    tag[0] ^= 0x01
    stored["authTag"] = tag.hex()
    return orjson.dumps(stored).decode()


async def fill(vault, session):
    return [
        await vault.create_secret(session, site, "ada", password)
        for site, password in PLAINTEXTS.items()
    ]


async def snapshot(store, user_id):
    user = await store.find_user_by_id(user_id)
    secrets = await store.find_secrets_by_owner(user_id)
    return user, {s.id: s.envelope for s in secrets}


class FailingCommitStore(MemoryStore):
    """Fails the second secret write inside a transaction."""

    def __init__(self):
        super().__init__()
        self.tx_writes = 0

    async def update_secret(self, secret_id, patch, tx=None):
        if tx is not None:
            self.tx_writes += 1
            if self.tx_writes == 2:
                raise RuntimeError("connection lost")
        return await super().update_secret(secret_id, patch, tx=tx)


# --- Successful rotation ---

class TestRotate:
    """Tests for a committed rotation."""

    @pytest.mark.asyncio
    async def test_migrates_every_secret(self, vault, store, account):
        user, session = account
        secrets = await fill(vault, session)
        old_key = session.master_key

        result = await vault.change_password(
            session, LOGIN_PASSWORD, NEW_PASSWORD, NEW_PASSWORD
        )

        assert result.migrated_count == 3
        assert result.committed is True
        new_key = session.master_key
        assert new_key != old_key
        for secret in secrets:
            stored = await store.find_secret(secret.id, user.id)
            assert decrypt_from_storage(stored.envelope, new_key) == PLAINTEXTS[secret.site]
            with pytest.raises(IntegrityError):
                decrypt_from_storage(stored.envelope, old_key)

    @pytest.mark.asyncio
    async def test_user_record_rotated(self, vault, store, account):
        user, session = account
        before = await store.find_user_by_id(user.id)

        await vault.change_password(session, LOGIN_PASSWORD, NEW_PASSWORD, NEW_PASSWORD)

        after = await store.find_user_by_id(user.id)
        assert verify_password(after.password_hash, NEW_PASSWORD)
        assert not verify_password(after.password_hash, LOGIN_PASSWORD)
        assert after.master_key == session.master_key.hex()
        assert after.previous_key_salt == before.key_salt
        assert after.key_salt != before.key_salt

    @pytest.mark.asyncio
    async def test_login_after_rotation(self, vault, account):
        _, session = account
        secrets = await fill(vault, session)
        await vault.change_password(session, LOGIN_PASSWORD, NEW_PASSWORD, NEW_PASSWORD)

        with pytest.raises(AuthenticationError):
            await vault.login("ada@example.com", LOGIN_PASSWORD)
        fresh = await vault.login("ada@example.com", NEW_PASSWORD)
        results = await vault.list_secrets(fresh)
        assert len(results) == len(secrets)
        assert all(r.ok for r in results)

    @pytest.mark.asyncio
    async def test_recomputes_strength(self, vault, store, account):
        user, session = account
        secret = await vault.create_secret(session, "a.com", "ada", "x")
        await store.update_secret(secret.id, {"strength": 5})
        await vault.change_password(session, LOGIN_PASSWORD, NEW_PASSWORD, NEW_PASSWORD)
        assert (await store.find_secret(secret.id, user.id)).strength == 0

    @pytest.mark.asyncio
    async def test_empty_vault(self, vault, account):
        _, session = account
        result = await vault.rotate(session, LOGIN_PASSWORD, NEW_PASSWORD)
        assert result.migrated_count == 0


# --- Aborted rotation ---

class TestRotateAbort:
    """Failures before or during the commit leave the vault untouched."""

    @pytest.mark.asyncio
    async def test_wrong_old_password(self, vault, store, account):
        user, session = account
        await fill(vault, session)
        before = await snapshot(store, user.id)

        with pytest.raises(AuthenticationError) as exc:
            await vault.rotate(session, "not-my-password", NEW_PASSWORD)

        assert exc.value.step == "authenticate"
        assert exc.value.committed is False
        assert await snapshot(store, user.id) == before

    @pytest.mark.asyncio
    async def test_new_password_too_short(self, vault, account):
        _, session = account
        with pytest.raises(ValidationError) as exc:
            await vault.rotate(session, LOGIN_PASSWORD, "short")
        assert exc.value.step == "validate"

    @pytest.mark.asyncio
    async def test_unencodable_new_password(self, vault, store, account):
        user, session = account
        await fill(vault, session)
        before = await snapshot(store, user.id)

        with pytest.raises(ValidationError) as exc:
            await vault.rotate(session, LOGIN_PASSWORD, "New-Passw0rd\ud800")

        assert exc.value.step == "validate"
        assert "Password contains invalid characters" in exc.value.errors
        assert await snapshot(store, user.id) == before

    @pytest.mark.asyncio
    async def test_confirmation_mismatch(self, vault, account):
        _, session = account
        with pytest.raises(ValidationError):
            await vault.change_password(
                session, LOGIN_PASSWORD, NEW_PASSWORD, NEW_PASSWORD + "x"
            )

    @pytest.mark.asyncio
    async def test_tampered_secret_aborts(self, vault, store, account):
        user, session = account
        secrets = await fill(vault, session)
        broken = secrets[1]
        await store.update_secret(broken.id, {"envelope": tamper(broken.envelope)})
        before = await snapshot(store, user.id)
        old_key = session.master_key

        with pytest.raises(DecryptionError) as exc:
            await vault.rotate(session, LOGIN_PASSWORD, NEW_PASSWORD)

        assert exc.value.secret_id == broken.id
        assert exc.value.step == "decrypt"
        assert await snapshot(store, user.id) == before
        assert session.master_key == old_key
        user_after = await store.find_user_by_id(user.id)
        assert verify_password(user_after.password_hash, LOGIN_PASSWORD)

    @pytest.mark.asyncio
    async def test_commit_failure_rolls_back(self, config):
        store = FailingCommitStore()
        vault = PasswordVault(store, config)
        user = await vault.register(
            "Ada Lovelace", "ada@example.com", LOGIN_PASSWORD, LOGIN_PASSWORD
        )
        session = await vault.login("ada@example.com", LOGIN_PASSWORD)
        await fill(vault, session)
        before = await snapshot(store, user.id)
        old_key = session.master_key

        with pytest.raises(MigrationError) as exc:
            await vault.rotate(session, LOGIN_PASSWORD, NEW_PASSWORD)

        assert exc.value.step == "commit"
        assert isinstance(exc.value.__cause__, RuntimeError)
        assert await snapshot(store, user.id) == before
        assert session.master_key == old_key
        # the vault is still fully readable with the old password
        results = await vault.list_secrets(
            await vault.login("ada@example.com", LOGIN_PASSWORD)
        )
        assert all(r.ok for r in results)


# --- Session checks ---

class TestRotateSession:

    @pytest.mark.asyncio
    async def test_session_without_key(self, store, config, account):
        user, _ = account
        rotation = KeyRotation(store, config)
        with pytest.raises(SessionStateError) as exc:
            await rotation.rotate(
                VaultSession(identity=user.id), user.id, LOGIN_PASSWORD, NEW_PASSWORD
            )
        assert exc.value.step == "authenticate"

    @pytest.mark.asyncio
    async def test_foreign_session(self, store, config, account):
        user, session = account
        rotation = KeyRotation(store, config)
        other = VaultSession(identity=user.id + 1, master_key=session.master_key)
        with pytest.raises(SessionStateError):
            await rotation.rotate(other, user.id, LOGIN_PASSWORD, NEW_PASSWORD)

    @pytest.mark.asyncio
    async def test_anonymous_session(self, vault):
        with pytest.raises(SessionStateError):
            await vault.rotate(VaultSession(), LOGIN_PASSWORD, NEW_PASSWORD)

    @pytest.mark.asyncio
    async def test_rotations_are_serialized(self, vault, account):
        _, session = account
        await fill(vault, session)

        first, second = await asyncio.gather(
            vault.rotate(session, LOGIN_PASSWORD, NEW_PASSWORD),
            vault.rotate(session, LOGIN_PASSWORD, "Another-Passw0rd!"),
            return_exceptions=True,
        )

        assert first.migrated_count == 3
        assert isinstance(second, AuthenticationError)
        results = await vault.list_secrets(session)
        assert all(r.ok for r in results)

    @pytest.mark.asyncio
    async def test_idle_locks_are_released(self, store, config, account):
        user, session = account
        rotation = KeyRotation(store, config)
        assert rotation.user_lock(user.id) is rotation.user_lock(user.id)

        await rotation.rotate(session, user.id, LOGIN_PASSWORD, NEW_PASSWORD)
        gc.collect()

        assert user.id not in rotation._locks

    @pytest.mark.asyncio
    async def test_password_check_runs_off_the_loop(
        self, vault, account, monkeypatch
    ):
        _, session = account
        loop_thread = threading.get_ident()
        callers = []

        def recording_verify(password_hash, password):
            callers.append(threading.get_ident())
            return verify_password(password_hash, password)

        monkeypatch.setattr(key_rotation, "verify_password", recording_verify)
        await vault.rotate(session, LOGIN_PASSWORD, NEW_PASSWORD)

        assert callers and loop_thread not in callers


class TestPasswordPolicy:

    def test_valid(self, config):
        assert password_policy_violations(NEW_PASSWORD, config) == []

    def test_required(self, config):
        assert password_policy_violations("", config) == ["Password is required"]

    def test_whitespace_only(self, config):
        errors = password_policy_violations(" " * 10, config)
        assert errors == ["Password cannot be only whitespace"]

    def test_too_long(self, config):
        assert len(password_policy_violations("x" * 200, config)) == 1

    def test_unencodable(self, config):
        errors = password_policy_violations("Passw0rd-\udc80", config)
        assert errors == ["Password contains invalid characters"]
