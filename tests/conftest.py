import pytest
import pytest_asyncio

from navigator_keychain.storage import MemoryStore
from navigator_keychain.vault import PasswordVault, VaultConfig, derive_key

LOGIN_PASSWORD = "Tr0ub4dor&3-horse"
NEW_PASSWORD = "C0rrect-Battery-Staple!"


@pytest.fixture
def config():
    """Cheapest configuration the policy allows."""
    return VaultConfig(scrypt_n=16384)


@pytest.fixture
def key(config):
    return derive_key("a-login-password", b"\x01" * 32, config).key


@pytest.fixture
def other_key(config):
    return derive_key("another-password", b"\x02" * 32, config).key


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def vault(store, config):
    return PasswordVault(store, config)


@pytest_asyncio.fixture
async def account(vault):
    """Registered user and its logged-in session."""
    user = await vault.register(
        "Ada Lovelace", "Ada@Example.com", LOGIN_PASSWORD, LOGIN_PASSWORD
    )
    session = await vault.login("ada@example.com", LOGIN_PASSWORD)
    return user, session
