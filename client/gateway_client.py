"""
MODULE OVERVIEW:
The gateway connection lifecycle: connect -> HELLO -> IDENTIFY/RESUME -> CONNECTED ->
disconnect -> backoff -> connect again.

WHAT IS HAPPENING HERE:
Three things run concurrently on the event loop for every connection cycle:
  1. the reader task, pulling frames off the websocket and feeding the dispatcher,
  2. the heartbeat task (HeartbeatMonitor), started when HELLO arrives,
  3. the reconnect timer, armed when a cycle ends.
A short-lived handshake task sends IDENTIFY/RESUME so that waiting on the IDENTIFY
rate limit never stalls frame delivery.

Everything that belongs to one websocket lives in a `_ConnectionCycle`. When a cycle
ends, or a newer one supersedes it, all of its tasks are cancelled before anything
new is armed, and every callback checks that its cycle is still the current one. That
is what keeps a stale heartbeat from writing to a dead socket and a late close from
scheduling a second reconnect.
"""
import asyncio
import functools
from typing import Any, Awaitable, Callable

import httpx
import websockets
from loguru import logger

from client.dispatcher import OpcodeDispatcher
from client.heartbeat import HeartbeatMonitor
from client.reconnect import NORMAL_CLOSE, IdentifyRateLimiter, ReconnectPolicy
from client.session import SessionState
from shared.client_utils import discover_gateway_url, make_client_stats
from shared.codec import build_identify, heartbeat_frame, identify_frame, inflate, resume_frame
from shared.config import Settings
from shared.errors import DiscoveryError, GatewayError, PayloadDecodeError
from shared.models import ConnectionState, Disconnect, SessionSnapshot

# Any code other than 1000/1001 keeps the session resumable on the server side
RESUMABLE_CLOSE_CODE = 4000
ACK_TIMEOUT_CLOSE_CODE = 4000

TransportFactory = Callable[[str], Awaitable[Any]]

CONNECT_ERRORS = (OSError, asyncio.TimeoutError, websockets.WebSocketException, httpx.InvalidURL, ValueError)


def open_websocket(uri: str):
    return websockets.connect(uri, ping_interval=None, max_size=None)


class _ConnectionCycle:
    """Everything tied to one transport handle."""

    def __init__(self, generation: int, transport: Any):
        self.generation = generation
        self.transport = transport
        self.heartbeat: HeartbeatMonitor | None = None
        self.reader: asyncio.Task | None = None
        self.handshake: asyncio.Task | None = None
        self.disconnect: Disconnect | None = None
        self.established = False

    def cancel_timers(self) -> None:
        if self.heartbeat is not None:
            self.heartbeat.stop()
        current = asyncio.current_task()
        for task in (self.handshake, self.reader):
            if task is not None and not task.done() and task is not current:
                task.cancel()


class GatewayClient:
    def __init__(
        self,
        settings: Settings,
        client_id: str = "gateway",
        *,
        transport_factory: TransportFactory | None = None,
        http_client: httpx.AsyncClient | None = None,
        policy: ReconnectPolicy | None = None,
        rate_limiter: IdentifyRateLimiter | None = None,
        session: SessionState | None = None,
    ):
        self.settings = settings
        self.client_id = client_id
        self.log = logger.bind(client_id=client_id)

        self.session = session or SessionState()
        self.policy = policy or ReconnectPolicy(settings)
        self.rate_limiter = rate_limiter or IdentifyRateLimiter(settings.IDENTIFY_MIN_INTERVAL_S)
        self.stats = make_client_stats()
        self.dispatcher = OpcodeDispatcher(self.session, self.policy, self, self.stats, self.log)

        self.endpoint: str | None = settings.ENDPOINT_URL
        self.state = ConnectionState.DISCONNECTED
        self.on_status_change_callback: Callable[[ConnectionState], Awaitable[None]] | None = None

        self._transport_factory = transport_factory or open_websocket
        self._http_client = http_client
        self._cycle: _ConnectionCycle | None = None
        self._generation = 0
        self._reconnect_task: asyncio.Task | None = None
        self._last_disconnect_resumable = False
        self._should_reconnect = True
        self._closed = asyncio.Event()
        self._background: set[asyncio.Task] = set()

    # ==========================
    # PUBLIC SURFACE
    # ==========================
    @property
    def reconnect_count(self) -> int:
        return self.stats["reconnect_count"]

    @property
    def connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def transport(self) -> Any:
        return self._cycle.transport if self._cycle else None

    @property
    def heartbeat(self) -> HeartbeatMonitor | None:
        return self._cycle.heartbeat if self._cycle else None

    def snapshot(self) -> SessionSnapshot:
        return self.session.snapshot()

    def set_callbacks(self, on_status_change: Callable[[ConnectionState], Awaitable[None]] | None) -> None:
        self.on_status_change_callback = on_status_change

    def gateway_uri(self) -> str:
        if not self.endpoint:
            raise GatewayError("no gateway endpoint; call start() or set ENDPOINT_URL")
        url = httpx.URL(self.endpoint)
        url = url.copy_with(path=url.path or "/")
        return str(url.copy_merge_params({
            "v": str(self.settings.PROTOCOL_VERSION),
            "encoding": self.settings.ENCODING,
        }))

    async def start(self) -> None:
        self._should_reconnect = True
        self._closed.clear()
        if not self.endpoint:
            try:
                self.endpoint = await discover_gateway_url(self.settings, self._http_client)
            except DiscoveryError as e:
                self.log.critical(f"event=discovery_failed reason='{e}'")
                raise
        await self.connect()

    async def connect(self) -> None:
        """
        Open a new connection cycle. Never raises on transport failure: the failure is
        counted and a retry is scheduled instead.
        """
        if not self._should_reconnect:
            return
        self._cancel_reconnect_timer()
        self._supersede()
        await self._set_state(ConnectionState.CONNECTING)

        try:
            uri = self.gateway_uri()
            self.log.debug(f"event=connect uri={uri}")
            transport = await self._transport_factory(uri)
        except CONNECT_ERRORS as e:
            attempts = self.session.record_failure()
            delay = self.policy.delay(attempts)
            self.log.warning(f"event=connect_failed attempt={attempts} delay={delay}s error={e!r}")
            await self._set_state(ConnectionState.DISCONNECTED)
            self._schedule_reconnect(delay)
            return

        if not self._should_reconnect:
            # close() ran while the socket was opening
            await self._close_quietly(transport, NORMAL_CLOSE, "client shutdown")
            return

        self._generation += 1
        cycle = _ConnectionCycle(self._generation, transport)
        self._cycle = cycle
        cycle.reader = asyncio.create_task(self._read_loop(cycle), name=f"gateway-reader-{cycle.generation}")
        await self._set_state(ConnectionState.AWAITING_HELLO)

    async def close(self) -> None:
        """Deliberate shutdown: no further reconnects."""
        self._should_reconnect = False
        self._cancel_reconnect_timer()
        cycle, self._cycle = self._cycle, None
        if cycle is not None:
            cycle.cancel_timers()
            await self._close_quietly(cycle.transport, NORMAL_CLOSE, "client shutdown")
            # a 1000 close ends the session on the server as well
            self.session.invalidate()
        await self._set_state(ConnectionState.DISCONNECTED)
        self._closed.set()
        self.log.info("event=closed reason='client shutdown'")

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def run(self, duration_s: float | None = None) -> None:
        try:
            await self.start()
            await asyncio.wait_for(self._closed.wait(), timeout=duration_s)
        except asyncio.TimeoutError:
            pass
        finally:
            await self.close()

    # ==========================
    # ACTIONS (called by the dispatcher)
    # ==========================
    async def on_hello(self, heartbeat_interval_ms: int) -> None:
        cycle = self._cycle
        if cycle is None:
            return
        if cycle.handshake is not None:
            # one IDENTIFY/RESUME per socket; a repeated HELLO changes nothing
            self.log.warning(f"event=duplicate_hello generation={cycle.generation} interval_ms={heartbeat_interval_ms}")
            return
        cycle.heartbeat = HeartbeatMonitor(
            cycle.transport,
            heartbeat_interval_ms,
            self.session,
            on_ack_timeout=functools.partial(self._on_ack_timeout, cycle),
            stats=self.stats,
            log=self.log,
        )
        cycle.heartbeat.start()

        snapshot = self.session.snapshot()
        resume = self.policy.should_resume(
            snapshot.reconnect_attempts, self._last_disconnect_resumable, snapshot.has_session
        )
        cycle.handshake = asyncio.create_task(
            self._handshake(cycle, resume), name=f"gateway-handshake-{cycle.generation}"
        )

    async def send_heartbeat(self) -> None:
        cycle = self._cycle
        if cycle is None:
            return
        if cycle.heartbeat is not None:
            await cycle.heartbeat.beat_now()
        else:
            await self._send(cycle, heartbeat_frame(self.session.last_sequence))

    def heartbeat_acked(self) -> None:
        cycle = self._cycle
        if cycle is not None and cycle.heartbeat is not None:
            cycle.heartbeat.ack()

    async def on_session_established(self, resumed: bool) -> None:
        cycle = self._cycle
        if cycle is None:
            return
        cycle.established = True
        self.log.info(f"event=established resumed={resumed} session_id={self.session.session_id}")
        await self._set_state(ConnectionState.CONNECTED)

    async def request_reconnect(self, disconnect: Disconnect) -> None:
        cycle = self._cycle
        if cycle is not None:
            await self._abort(cycle, disconnect)

    # ==========================
    # CYCLE INTERNALS
    # ==========================
    async def _handshake(self, cycle: _ConnectionCycle, resume: bool) -> None:
        if resume:
            await self._set_state(ConnectionState.RESUMING)
            snapshot = self.session.snapshot()
            frame = resume_frame(self.settings.TOKEN, snapshot.session_id, snapshot.last_sequence)
            if await self._send(cycle, frame):
                self.stats["resumes_sent"] += 1
                self.log.info(f"event=resume session_id={snapshot.session_id} seq={snapshot.last_sequence}")
            return

        await self._set_state(ConnectionState.IDENTIFYING)
        body = build_identify(
            self.settings.TOKEN,
            self.settings.CLIENT_NAME,
            compress=self.settings.COMPRESS,
            large_threshold=self.settings.LARGE_THRESHOLD,
        )
        async with self.rate_limiter.slot():
            if cycle is not self._cycle:
                return
            sent = await self._send(cycle, identify_frame(body))
        if sent:
            self.stats["identifies_sent"] += 1
            self.log.info("event=identify")

    async def _send(self, cycle: _ConnectionCycle, frame: str) -> bool:
        if cycle is not self._cycle or cycle.disconnect is not None:
            return False
        try:
            await cycle.transport.send(frame)
        except (websockets.ConnectionClosed, OSError) as e:
            self.log.debug(f"event=send_failed reason='{e}'")
            return False
        return True

    async def _read_loop(self, cycle: _ConnectionCycle) -> None:
        error: Exception | None = None
        try:
            while True:
                message = await cycle.transport.recv()
                if isinstance(message, (bytes, bytearray)):
                    try:
                        message = inflate(message)
                    except PayloadDecodeError as e:
                        self.stats["decode_errors"] += 1
                        self.log.error(f"event=decode_error reason='{e}'")
                        continue
                try:
                    await self.dispatcher.handle_frame(message)
                except websockets.ConnectionClosed:
                    raise
                except Exception:
                    self.log.exception("event=handler_error reason='frame dropped'")
        except (websockets.ConnectionClosed, OSError) as e:
            error = e
        except asyncio.CancelledError:
            # superseded or shut down; whoever cancelled us owns the teardown
            return
        await self._on_connection_lost(cycle, error)

    async def _on_connection_lost(self, cycle: _ConnectionCycle, error: Exception | None) -> None:
        if cycle is not self._cycle:
            return
        self._cycle = None
        cycle.cancel_timers()

        disconnect = cycle.disconnect or self._classify(error)
        if disconnect.counts_as_failure or not cycle.established:
            self.session.record_failure()
        self._last_disconnect_resumable = disconnect.resumable
        if not disconnect.resumable and self.session.has_session:
            self.log.info(f"event=session_invalidated session_id={self.session.session_id}")
            self.session.invalidate()

        self.log.warning(
            f"event=disconnect code={disconnect.close_code} reason='{disconnect.reason}' "
            f"resumable={disconnect.resumable} attempts={self.session.reconnect_attempts}"
        )
        await self._set_state(ConnectionState.DISCONNECTED)

        if not self._should_reconnect:
            self._closed.set()
            return
        if disconnect.delay_s is not None:
            delay = disconnect.delay_s
        else:
            delay = self.policy.delay(self.session.reconnect_attempts)
        self._schedule_reconnect(delay)

    def _classify(self, error: Exception | None) -> Disconnect:
        code, reason = None, ""
        if isinstance(error, websockets.ConnectionClosed) and error.rcvd is not None:
            code, reason = error.rcvd.code, error.rcvd.reason
        return Disconnect(
            reason=reason or (repr(error) if error else "connection closed"),
            close_code=code,
            resumable=self.policy.is_resumable_close(code),
        )

    async def _abort(self, cycle: _ConnectionCycle, disconnect: Disconnect) -> None:
        """Close this cycle's socket ourselves; the reader task then runs the disconnect path."""
        if cycle.disconnect is not None:
            return
        cycle.disconnect = disconnect
        if cycle.heartbeat is not None:
            cycle.heartbeat.stop()
        code = disconnect.close_code or (RESUMABLE_CLOSE_CODE if disconnect.resumable else NORMAL_CLOSE)
        self.log.info(f"event=abort code={code} reason='{disconnect.reason}'")
        await self._close_quietly(cycle.transport, code, disconnect.reason)

    async def _on_ack_timeout(self, cycle: _ConnectionCycle) -> None:
        await self._abort(cycle, Disconnect(
            reason="Heartbeat ACK not received.",
            close_code=ACK_TIMEOUT_CLOSE_CODE,
            resumable=True,
            counts_as_failure=True,
        ))

    def _supersede(self) -> None:
        old, self._cycle = self._cycle, None
        if old is None:
            return
        old.cancel_timers()
        task = asyncio.create_task(self._close_quietly(old.transport, RESUMABLE_CLOSE_CODE, "superseded"))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _schedule_reconnect(self, delay: float) -> None:
        self._cancel_reconnect_timer()
        self.stats["reconnect_count"] += 1
        self.log.info(f"event=reconnect_scheduled delay={delay}s")
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay), name="gateway-reconnect")

    def _cancel_reconnect_timer(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _reconnect_after(self, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        await self.connect()

    async def _close_quietly(self, transport: Any, code: int, reason: str) -> None:
        try:
            await transport.close(code=code, reason=reason)
        except (websockets.WebSocketException, OSError) as e:
            self.log.debug(f"event=close_failed reason='{e}'")

    async def _set_state(self, state: ConnectionState) -> None:
        if state == self.state:
            return
        self.log.debug(f"event=state from={self.state.value} to={state.value}")
        self.state = state
        if self.on_status_change_callback:
            try:
                await self.on_status_change_callback(state)
            except Exception:
                self.log.exception("event=status_callback_error")
