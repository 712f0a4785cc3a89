import httpx
import pytest

from shared.client_utils import discover_gateway_url, jittered_backoff, make_client_stats
from shared.config import Settings
from shared.errors import DiscoveryError


def settings(**overrides):
    return Settings(DISCOVERY_URL="https://discovery.test/api/gateway", DISCOVERY_BASE_DELAY_S=0.0, **overrides)


def mock_client(responses):
    requests = []

    def handler(request):
        requests.append(request)
        return responses.pop(0)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler)), requests


def test_stats_start_zeroed():
    stats = make_client_stats()
    assert stats["reconnect_count"] == 0
    assert stats["heartbeats_sent"] == 0
    assert stats["last_heartbeat_latency_ms"] is None
    assert stats["started_at"]


def test_jittered_backoff_is_capped():
    assert 1.0 <= jittered_backoff(0) <= 1.1
    assert 32.0 <= jittered_backoff(20) <= 35.2


@pytest.mark.asyncio
async def test_discovery_returns_url_and_sends_user_agent():
    client, requests = mock_client([httpx.Response(200, json={"url": "wss://gw.test"})])
    async with client:
        url = await discover_gateway_url(settings(USER_AGENT="agent/1.0"), client)
    assert url == "wss://gw.test"
    assert requests[0].headers["User-Agent"] == "agent/1.0"


@pytest.mark.asyncio
async def test_discovery_retries_transient_failure():
    client, requests = mock_client([
        httpx.Response(502),
        httpx.Response(200, json={"url": "wss://gw.test"}),
    ])
    async with client:
        assert await discover_gateway_url(settings(), client) == "wss://gw.test"
    assert len(requests) == 2


@pytest.mark.asyncio
async def test_discovery_gives_up():
    client, requests = mock_client([httpx.Response(200, json={"nope": 1}) for _ in range(3)])
    async with client:
        with pytest.raises(DiscoveryError):
            await discover_gateway_url(settings(DISCOVERY_RETRIES=3), client)
    assert len(requests) == 3
