"""
Pytest configuration and shared fixtures for Zuno tests.
"""

import pytest
from typing import AsyncGenerator, Callable, List

from zuno.client import Zuno
from zuno.core.universe import Universe
from zuno.server.engine import ApplyEngine
from zuno.sync.versions import VersionTable
from zuno.transport.memory import InMemoryPeerHub, InMemoryRealtimeTransport, InMemorySyncTransport
from zuno.utils.config import ClientConfig, ServerConfig
from zuno.utils.logging import setup_logging


# Test configuration
TEST_SERVER_CONFIG = {
    "log_capacity": 50,
    "max_body_bytes": 4096,
    "heartbeat_interval": 0.05,
    "route_prefix": "/zuno",
}


@pytest.fixture(scope="session", autouse=True)
def configure_logging():
    """Route structlog through stdlib without console noise."""
    setup_logging("zuno-tests", log_level="DEBUG", enable_console=False)


@pytest.fixture
def server_config() -> ServerConfig:
    return ServerConfig(**TEST_SERVER_CONFIG)


@pytest.fixture
def engine(server_config: ServerConfig) -> ApplyEngine:
    """Create a fresh apply engine."""
    return ApplyEngine(server_config, clock=lambda: 1700000000.0)


@pytest.fixture
def universe() -> Universe:
    return Universe()


@pytest.fixture
def versions() -> VersionTable:
    return VersionTable()


@pytest.fixture
def sync_transport(engine: ApplyEngine) -> InMemorySyncTransport:
    return InMemorySyncTransport(engine)


@pytest.fixture
def realtime_transport(engine: ApplyEngine) -> InMemoryRealtimeTransport:
    return InMemoryRealtimeTransport(engine)


@pytest.fixture
def peer_hub() -> InMemoryPeerHub:
    return InMemoryPeerHub()


@pytest.fixture
async def make_client(engine: ApplyEngine, peer_hub: InMemoryPeerHub) -> AsyncGenerator[Callable[..., Zuno], None]:
    """
    Factory for clients wired to the shared engine and peer hub.

    Clients are not started; started ones are stopped at teardown.
    """
    clients: List[Zuno] = []

    def factory(
        client_id: str,
        realtime: bool = False,
        sync: bool = True,
        channel: bool = False,
        **kwargs,
    ) -> Zuno:
        config_fields = {k: kwargs.pop(k) for k in list(kwargs) if k in ClientConfig.model_fields}
        if channel:
            config_fields.setdefault("channel_name", "zuno-test")
        config = ClientConfig(client_id=client_id, **config_fields)
        client = Zuno(
            config,
            realtime=InMemoryRealtimeTransport(engine) if realtime else None,
            sync=InMemorySyncTransport(engine) if sync else None,
            peer_hub=peer_hub,
            **kwargs,
        )
        clients.append(client)
        return client

    yield factory

    for client in clients:
        await client.stop()
