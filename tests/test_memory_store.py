import pytest

from navigator_keychain.exceptions import ConflictError
from navigator_keychain.storage import MemoryStore


def user_data(email="ada@example.com"):
    return {"name": "Ada", "email": email, "password_hash": "$argon2id$x"}


def secret_data(owner_id, site, **extra):
    return {
        "owner_id": owner_id,
        "site": site,
        "login_name": "ada",
        "envelope": "{}",
        **extra,
    }


class TestUsers:

    @pytest.mark.asyncio
    async def test_create_and_find(self, store):
        user = await store.create_user(user_data("Ada@Example.com "))
        assert user.id == 1
        assert (await store.find_user_by_id(1)).email == "ada@example.com"
        assert (await store.find_user_by_email(" ADA@example.com")).id == 1
        assert await store.find_user_by_email("nobody@example.com") is None

    @pytest.mark.asyncio
    async def test_duplicate_email(self, store):
        await store.create_user(user_data())
        with pytest.raises(ConflictError):
            await store.create_user(user_data("ADA@example.com"))

    @pytest.mark.asyncio
    async def test_update_user(self, store):
        user = await store.create_user(user_data())
        updated = await store.update_user(user.id, {"master_key": "ab" * 32})
        assert updated.master_key == "ab" * 32
        assert updated.updated_at >= user.updated_at

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_fields(self, store):
        user = await store.create_user(user_data())
        with pytest.raises(ValueError):
            await store.update_user(user.id, {"id": 99})

    @pytest.mark.asyncio
    async def test_update_missing_user(self, store):
        with pytest.raises(KeyError):
            await store.update_user(42, {"name": "Nobody"})

    @pytest.mark.asyncio
    async def test_returns_copies(self, store):
        user = await store.create_user(user_data())
        user.name = "Changed"
        assert (await store.find_user_by_id(user.id)).name == "Ada"


class TestSecrets:

    @pytest.mark.asyncio
    async def test_scoped_by_owner(self, store):
        secret = await store.create_secret(secret_data(1, "github.com"))
        assert await store.find_secret(secret.id, 1) is not None
        assert await store.find_secret(secret.id, 2) is None
        assert await store.find_secrets_by_owner(2) == []

    @pytest.mark.asyncio
    async def test_default_order_newest_first(self, store):
        for site in ("b.com", "a.com", "c.com"):
            await store.create_secret(secret_data(1, site))
        rows = await store.find_secrets_by_owner(1)
        assert [s.id for s in rows] == [3, 2, 1]

    @pytest.mark.asyncio
    async def test_filters_order_by_site(self, store):
        await store.create_secret(secret_data(1, "mail.com", category="email"))
        await store.create_secret(secret_data(1, "bank.com", category="financial",
                                              is_favorite=True))
        await store.create_secret(secret_data(1, "amail.com", category="email"))

        emails = await store.find_secrets_by_owner(1, category="email")
        assert [s.site for s in emails] == ["amail.com", "mail.com"]
        favorites = await store.find_secrets_by_owner(1, favorites_only=True)
        assert [s.site for s in favorites] == ["bank.com"]
        found = await store.find_secrets_by_owner(1, search="MAIL")
        assert [s.site for s in found] == ["amail.com", "mail.com"]

    @pytest.mark.asyncio
    async def test_delete_scoped(self, store):
        first = await store.create_secret(secret_data(1, "a.com"))
        second = await store.create_secret(secret_data(2, "b.com"))
        assert await store.delete_secrets([first.id, second.id], 1) == 1
        assert await store.find_secret(second.id, 2) is not None


class TestTransaction:

    @pytest.mark.asyncio
    async def test_commit(self, store):
        secret = await store.create_secret(secret_data(1, "a.com"))
        async with store.transaction() as tx:
            await store.update_secret(secret.id, {"notes": "kept"}, tx=tx)
        assert tx.active is False
        assert (await store.find_secret(secret.id, 1)).notes == "kept"

    @pytest.mark.asyncio
    async def test_rollback_on_error(self, store):
        user = await store.create_user(user_data())
        secret = await store.create_secret(secret_data(user.id, "a.com"))
        with pytest.raises(RuntimeError):
            async with store.transaction() as tx:
                await store.update_user(user.id, {"name": "Changed"}, tx=tx)
                await store.update_secret(secret.id, {"notes": "lost"}, tx=tx)
                raise RuntimeError("boom")
        assert (await store.find_user_by_id(user.id)).name == "Ada"
        assert (await store.find_secret(secret.id, user.id)).notes == ""


def test_memory_store_is_a_store():
    from navigator_keychain.storage import AbstractStore
    assert isinstance(MemoryStore(), AbstractStore)
