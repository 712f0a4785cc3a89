"""
MODULE OVERVIEW:
The liveness loop for one connection cycle.

WHAT IS HAPPENING HERE:
HELLO tells us how often to heartbeat. Every tick we check whether the previous
heartbeat was acknowledged: if it was, we send the next one carrying the last sequence
number; if it was not, the connection is a zombie and we hand it to `on_ack_timeout`,
which closes it with a non-1000 code so the session stays resumable.

The ack flag starts out as "acknowledged" so the first tick sends right away instead
of waiting a whole interval and then tripping over an ack we never asked for.

A monitor is bound to exactly one transport. Once `stop()` returns it never sends
again, even if its task has not been scheduled yet to observe the cancellation.
"""
import asyncio
import time
from typing import Any, Awaitable, Callable

import websockets
from loguru import logger

from client.session import SessionState
from shared.codec import heartbeat_frame


class HeartbeatMonitor:
    def __init__(
        self,
        transport: Any,
        interval_ms: int,
        session: SessionState,
        on_ack_timeout: Callable[[], Awaitable[None]],
        stats: dict | None = None,
        log=logger,
    ):
        self.transport = transport
        self.interval_s = interval_ms / 1000.0
        self.session = session
        self.on_ack_timeout = on_ack_timeout
        self.stats = stats if stats is not None else {}
        self.log = log

        self._ack_received = True
        self._sent_at: float | None = None
        self._stopped = False
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._stopped

    @property
    def ack_pending(self) -> bool:
        return not self._ack_received

    def start(self) -> None:
        if self._task is not None:
            raise RuntimeError("heartbeat monitor already started")
        self._ack_received = True
        self._task = asyncio.create_task(self._run(), name="gateway-heartbeat")
        self.log.info(f"heartbeat event=start interval_s={self.interval_s:.3f}")

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self.log.debug("heartbeat event=stop")

    def ack(self) -> None:
        self._ack_received = True
        self.stats["heartbeat_acks"] = self.stats.get("heartbeat_acks", 0) + 1
        if self._sent_at is not None:
            latency_ms = (time.monotonic() - self._sent_at) * 1000
            self.stats["last_heartbeat_latency_ms"] = round(latency_ms, 2)
            self.log.debug(f"heartbeat event=ack latency_ms={latency_ms:.2f}")

    async def beat_now(self) -> None:
        """Server asked for a heartbeat (op 1): send one outside the schedule."""
        await self._send(scheduled=False)

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        try:
            while not self._stopped:
                if not self._ack_received:
                    self.log.warning("heartbeat event=ack_timeout reason='no ack since last heartbeat'")
                    self._stopped = True
                    await self.on_ack_timeout()
                    return
                await self._send(scheduled=True)
                next_tick += self.interval_s
                await asyncio.sleep(max(0.0, next_tick - loop.time()))
        except asyncio.CancelledError:
            pass

    async def _send(self, scheduled: bool) -> None:
        if self._stopped:
            return
        frame = heartbeat_frame(self.session.last_sequence)
        if scheduled:
            self._ack_received = False
            self._sent_at = time.monotonic()
        try:
            await self.transport.send(frame)
        except (websockets.ConnectionClosed, OSError) as e:
            # the reader task owns disconnect handling
            self.log.debug(f"heartbeat event=send_failed reason='{e}'")
            self.stop()
            return
        self.stats["heartbeats_sent"] = self.stats.get("heartbeats_sent", 0) + 1
        self.log.debug(f"heartbeat event=sent scheduled={scheduled} frame={frame}")
