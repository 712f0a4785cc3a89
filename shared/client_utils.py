import asyncio
import random
from datetime import datetime, timezone

import httpx
from loguru import logger

from shared.config import Settings
from shared.errors import DiscoveryError
from shared.models import DiscoveryResponse


def make_client_stats() -> dict:
    """
    Returns a fresh stats dictionary with zeroed counters.
    The gateway client calls this once in __init__.
    Keys: dispatches_received, heartbeats_sent, heartbeat_acks, identifies_sent,
          resumes_sent, reconnect_count, decode_errors, last_heartbeat_latency_ms,
          last_event_at, started_at.
    """
    return {
        "dispatches_received": 0,
        "heartbeats_sent": 0,
        "heartbeat_acks": 0,
        "identifies_sent": 0,
        "resumes_sent": 0,
        "reconnect_count": 0,
        "decode_errors": 0,
        "last_heartbeat_latency_ms": None,
        "last_event_at": None,
        "started_at": datetime.now(timezone.utc).isoformat()
    }


def jittered_backoff(attempt: int, base_delay_s: float = 1.0, max_delay_s: float = 32.0) -> float:
    delay = min(base_delay_s * (2 ** attempt), max_delay_s)
    return delay + random.uniform(0, delay * 0.1)


async def discover_gateway_url(
    settings: Settings,
    http_client: httpx.AsyncClient | None = None,
) -> str:
    """
    One-shot GET against the discovery endpoint, returning the websocket base URL.

    Retries transient failures with exponential backoff up to
    `settings.DISCOVERY_RETRIES` attempts, then raises DiscoveryError. This is the
    only retry discovery gets; the gateway state machine never re-runs it.
    """
    owns_client = http_client is None
    client = http_client or httpx.AsyncClient()
    headers = {"User-Agent": settings.USER_AGENT, "Content-Type": "application/json"}
    last_error: Exception | None = None
    try:
        for attempt in range(1, settings.DISCOVERY_RETRIES + 1):
            try:
                resp = await client.get(settings.DISCOVERY_URL, headers=headers)
                logger.info(f"discovery status={resp.status_code} {resp.reason_phrase}")
                resp.raise_for_status()
                url = DiscoveryResponse.model_validate(resp.json()).url
                if not url:
                    raise DiscoveryError("discovery returned an empty url")
                logger.debug(f"discovery url={url}")
                return url
            except (httpx.HTTPError, ValueError) as e:
                last_error = e
                if attempt == settings.DISCOVERY_RETRIES:
                    break
                delay = jittered_backoff(attempt - 1, settings.DISCOVERY_BASE_DELAY_S)
                logger.warning(
                    f"discovery attempt={attempt} delay={delay:.2f}s error={e!r}"
                )
                await asyncio.sleep(delay)
    finally:
        if owns_client:
            await client.aclose()
    raise DiscoveryError(
        f"discovery failed after {settings.DISCOVERY_RETRIES} attempts: {last_error!r}"
    ) from last_error
