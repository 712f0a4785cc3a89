"""
MODULE OVERVIEW:
Inbound payload routing.

WHAT IS HAPPENING HERE:
Each text frame is decoded into a `GatewayPayload` and routed on its opcode. Handlers
may update the SessionState directly (sequence numbers, session id) but anything with
a side effect on the connection (sending, closing, reconnecting) goes back through the
`GatewayActions` interface, which the GatewayClient implements.

Nothing that arrives here is allowed to be fatal: a frame that does not decode, an
opcode we have never heard of, or an opcode that only ever flows client -> server is
logged and dropped, and the connection carries on.
"""
from datetime import datetime, timezone
from typing import Awaitable, Callable, Protocol

from loguru import logger

from client.reconnect import ReconnectPolicy
from client.session import SessionState
from shared.codec import decode_payload
from shared.errors import PayloadDecodeError
from shared.models import OUTBOUND_ONLY, Disconnect, GatewayEvent, GatewayPayload, Opcode


class GatewayActions(Protocol):
    async def on_hello(self, heartbeat_interval_ms: int) -> None: ...

    async def send_heartbeat(self) -> None: ...

    def heartbeat_acked(self) -> None: ...

    async def on_session_established(self, resumed: bool) -> None: ...

    async def request_reconnect(self, disconnect: Disconnect) -> None: ...


class OpcodeDispatcher:
    def __init__(
        self,
        session: SessionState,
        policy: ReconnectPolicy,
        actions: GatewayActions,
        stats: dict | None = None,
        log=logger,
    ):
        self.session = session
        self.policy = policy
        self.actions = actions
        self.stats = stats if stats is not None else {}
        self.log = log
        self._handlers: dict[Opcode, Callable[[GatewayPayload], Awaitable[None]]] = {
            Opcode.DISPATCH: self._on_dispatch,
            Opcode.HEARTBEAT: self._on_heartbeat_request,
            Opcode.RECONNECT: self._on_reconnect,
            Opcode.INVALID_SESSION: self._on_invalid_session,
            Opcode.HELLO: self._on_hello,
            Opcode.HEARTBEAT_ACK: self._on_heartbeat_ack,
        }

    async def handle_frame(self, raw: str) -> GatewayPayload | None:
        """Decode and route one text frame. Returns the payload, or None if it was dropped."""
        try:
            payload = decode_payload(raw)
        except PayloadDecodeError as e:
            self.stats["decode_errors"] = self.stats.get("decode_errors", 0) + 1
            self.log.error(f"event=decode_error reason='{e}'")
            return None
        await self.dispatch(payload)
        return payload

    async def dispatch(self, payload: GatewayPayload) -> None:
        try:
            opcode = Opcode(payload.opcode)
        except ValueError:
            self.log.error(f"Received an unknown payload. op={payload.opcode} does not exist.")
            return

        if opcode in OUTBOUND_ONLY:
            self.log.info(f"event=ignored op={opcode.name} reason='outbound-only opcode received'")
            return

        await self._handlers[opcode](payload)

    async def _on_dispatch(self, payload: GatewayPayload) -> None:
        self.stats["dispatches_received"] = self.stats.get("dispatches_received", 0) + 1
        self.stats["last_event_at"] = datetime.now(timezone.utc).isoformat()

        if payload.event_name == GatewayEvent.READY.value:
            self.session.on_ready(payload.body.session_id, payload.sequence)
            self.log.info(f"event=READY session_id={payload.body.session_id} seq={payload.sequence}")
            await self.actions.on_session_established(resumed=False)
        elif payload.event_name == GatewayEvent.RESUMED.value:
            self.log.info(f"event=RESUMED seq={self.session.last_sequence}")
            await self.actions.on_session_established(resumed=True)
        else:
            self.session.record_sequence(payload.sequence)
            self.log.debug(f"event=dispatch t={payload.event_name} seq={payload.sequence}")

    async def _on_heartbeat_request(self, payload: GatewayPayload) -> None:
        self.log.debug("event=heartbeat_requested")
        await self.actions.send_heartbeat()

    async def _on_reconnect(self, payload: GatewayPayload) -> None:
        self.log.info("event=reconnect_requested")
        await self.actions.request_reconnect(
            Disconnect(reason="server requested reconnect", resumable=True, delay_s=0.0)
        )

    async def _on_invalid_session(self, payload: GatewayPayload) -> None:
        resumable: bool = payload.body
        if not resumable:
            self.session.invalidate()
        delay = self.policy.invalid_session_delay()
        self.log.warning(f"event=invalid_session resumable={resumable} delay={delay:.2f}s")
        await self.actions.request_reconnect(
            Disconnect(reason="invalid session", resumable=resumable, delay_s=delay)
        )

    async def _on_hello(self, payload: GatewayPayload) -> None:
        interval = payload.body.heartbeat_interval
        self.log.info(f"event=hello heartbeat_interval={interval}")
        await self.actions.on_hello(interval)

    async def _on_heartbeat_ack(self, payload: GatewayPayload) -> None:
        self.actions.heartbeat_acked()
