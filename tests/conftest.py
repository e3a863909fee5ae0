import pytest
import pytest_asyncio

from dualkey_vault import MemoryStorage, VaultSession
from dualkey_vault.vault import SessionManager, VaultConfig, VaultMutationService

FAST_ITERATIONS = 1000


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def config():
    return VaultConfig(iterations=FAST_ITERATIONS, idle_minutes=5, tick_interval=0.01)


@pytest.fixture
def manager(storage, config, clock):
    mgr = SessionManager.from_storage(storage, config=config, clock=clock)
    mgr.index.ensure_default()
    return mgr


@pytest.fixture
def service(manager):
    return VaultMutationService(manager)


@pytest.fixture
def session(manager):
    sess = VaultSession(vault_name=manager.index.pick())
    yield sess
    sess.invalidate("teardown")


@pytest_asyncio.fixture
async def unlocked(manager, session):
    """Session with a freshly created, unlocked 'Default' vault."""
    await manager.unlock_or_create(
        session, "Default", "master-pw", "second-pw", "PIN"
    )
    yield session
    manager.lock(session, "teardown")
