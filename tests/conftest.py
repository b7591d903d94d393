import httpx
import pytest

from wallet_client.response_cache import ResponseCache
from wallet_client.services.transport import Transport
from wallet_client.session_store import SessionStore

from support import ImmediateTimer, ScriptedBackend, VirtualTimer

BASE_URL = "http://testserver"


@pytest.fixture
def backend():
    return ScriptedBackend()


@pytest.fixture
def timer():
    return VirtualTimer()


@pytest.fixture
def fast_timer():
    return ImmediateTimer()


@pytest.fixture
def cache(timer):
    return ResponseCache(clock=timer.now)


@pytest.fixture
async def transport(backend, timer):
    client = Transport(BASE_URL, timer=timer, transport=httpx.MockTransport(backend))
    yield client
    await client.aclose()


@pytest.fixture
async def fast_transport(backend, fast_timer):
    client = Transport(BASE_URL, timer=fast_timer, transport=httpx.MockTransport(backend))
    yield client
    await client.aclose()


@pytest.fixture
def session_store(transport):
    return SessionStore(transport)
