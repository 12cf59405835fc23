from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio

from synccounter import state
from synccounter.api_client import CounterApi
from synccounter.local_store import LocalChangeStore, MemoryBackend
from synccounter.main import app
from synccounter.models import Counter


class FakeClock:
    """Millisecond clock the test moves by hand."""

    def __init__(self, now: int = 1_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return MemoryBackend()


@pytest.fixture
def store(backend, clock):
    return LocalChangeStore(backend, clock=clock)


@pytest.fixture
def mock_api():
    """CounterApi double: every coroutine method is an AsyncMock."""
    return AsyncMock(spec=CounterApi)


@pytest.fixture(autouse=True)
def clean_server_state():
    state.clear()
    yield
    state.clear()


@pytest_asyncio.fixture
async def live_api():
    """CounterApi talking to the real FastAPI app in-process."""
    client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")
    yield CounterApi(client=client)
    await client.aclose()


def make_counter(counter_id: str = "c1", **fields) -> Counter:
    fields.setdefault("name", f"Counter {counter_id}")
    return Counter(id=counter_id, **fields)
