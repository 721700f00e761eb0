import pytest
from fastapi.testclient import TestClient

from config import RegistrySettings, RelaySettings
import registry
import relay

ROOM_TTL_MS = 60000
SESSION_TTL_MS = 120000


class FakeClock:
    """Millisecond clock that only moves when told to"""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int):
        self.now += ms


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def registry_settings():
    return RegistrySettings(
        host="127.0.0.1",
        port=0,
        room_ttl_ms=ROOM_TTL_MS,
        max_rooms_per_host=3,
        cleanup_interval=3600,
        max_body_bytes=4096,
    )


@pytest.fixture()
def relay_settings():
    return RelaySettings(
        host="127.0.0.1",
        api_port=0,
        udp_port=0,
        session_ttl_ms=SESSION_TTL_MS,
        cleanup_interval=3600,
        max_body_bytes=4096,
    )


@pytest.fixture()
def registry_app(registry_settings, clock):
    return registry.create_app(registry_settings, clock=clock)


@pytest.fixture()
def relay_app(relay_settings, clock):
    return relay.create_app(relay_settings, clock=clock)


@pytest.fixture()
def registry_client(registry_app):
    with TestClient(registry_app) as test_client:
        yield test_client


@pytest.fixture()
def relay_client(relay_app):
    with TestClient(relay_app) as test_client:
        yield test_client
