"""
Pytest configuration and shared fixtures for all tests.
"""
import pytest
import pytest_asyncio

from client.gateway_client import GatewayClient
from shared.config import Settings
from tests.fakes import FakeGateway


@pytest.fixture
def test_settings():
    """Settings with every delay squeezed down for tests."""
    return Settings(
        TOKEN="test-token",
        ENDPOINT_URL="wss://gateway.test",
        IDENTIFY_MIN_INTERVAL_S=0.0,
        INVALID_SESSION_DELAY_MIN_S=0.0,
        INVALID_SESSION_DELAY_MAX_S=0.01,
        DISCOVERY_BASE_DELAY_S=0.0,
    )


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest_asyncio.fixture
async def gateway_client(test_settings, fake_gateway):
    client = GatewayClient(test_settings, client_id="test", transport_factory=fake_gateway)
    yield client
    await client.close()
