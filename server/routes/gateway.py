"""
MODULE OVERVIEW:
The dev gateway: discovery endpoint plus the websocket that speaks the gateway protocol.

WHAT IS HAPPENING HERE:
The server side of the handshake, in order:
  1. accept and send HELLO with the heartbeat interval,
  2. wait for IDENTIFY (new session -> READY) or RESUME (replay missed dispatches ->
     RESUMED, or INVALID_SESSION if the session is unknown),
  3. then run two loops over the same socket: one answering heartbeats with
     HEARTBEAT_ACK, one pushing DISPATCH events.
Heartbeats are accepted at any point, including before IDENTIFY, since a client's
first heartbeat goes out the moment HELLO arrives.

The chaos knobs (`DEV_ACK_DROP_RATE`, `DEV_CHAOS_RATE`) make the server misbehave on
purpose so the client's recovery paths can be watched live.
"""
import asyncio
import random

from fastapi import APIRouter, Query, Request, WebSocket, WebSocketDisconnect
from loguru import logger

from server.connection_manager import ServerSession, SessionRegistry
from server.dummy_data import dispatch_event_generator, guild_create
from shared.codec import decode_payload, encode_payload
from shared.config import Settings
from shared.errors import PayloadDecodeError
from shared.models import DiscoveryResponse, IdentifyBody, Opcode, ResumeBody

router = APIRouter()

CLOSE_UNKNOWN_OPCODE = 4001
CLOSE_DECODE_ERROR = 4002
CLOSE_NOT_AUTHENTICATED = 4003
CLOSE_AUTHENTICATION_FAILED = 4004
CLOSE_SESSION_TIMED_OUT = 4009
CLOSE_INVALID_VERSION = 4012

KNOWN_OPCODES = frozenset(int(op) for op in Opcode)


class _Close(Exception):
    def __init__(self, code: int, reason: str):
        super().__init__(reason)
        self.code = code
        self.reason = reason


@router.get("/api/gateway")
async def discover(request: Request) -> DiscoveryResponse:
    base = str(request.base_url).rstrip("/")
    ws_base = base.replace("https://", "wss://").replace("http://", "ws://")
    return DiscoveryResponse(url=f"{ws_base}/gateway")


@router.websocket("/gateway")
async def gateway_endpoint(
    websocket: WebSocket,
    v: int | None = Query(None),
    encoding: str = Query("json"),
):
    settings: Settings = websocket.app.state.settings
    registry: SessionRegistry = websocket.app.state.registry

    await websocket.accept()
    registry.connection_opened()
    session: ServerSession | None = None
    push_task: asyncio.Task | None = None
    try:
        if v != settings.PROTOCOL_VERSION or encoding != "json":
            raise _Close(CLOSE_INVALID_VERSION, f"unsupported v={v} encoding={encoding}")

        await websocket.send_text(
            encode_payload(Opcode.HELLO, {"heartbeat_interval": settings.DEV_HEARTBEAT_INTERVAL_MS})
        )
        session = await _handshake(websocket, registry, settings)
        push_task = asyncio.create_task(_push_dispatches(websocket, registry, session, settings))
        await _receive_loop(websocket, registry, session, settings)
    except _Close as c:
        logger.info(f"protocol=gateway event=close code={c.code} reason='{c.reason}'")
        await websocket.close(code=c.code, reason=c.reason)
    except WebSocketDisconnect:
        pass
    finally:
        if push_task is not None:
            push_task.cancel()
        registry.connection_closed(session)


async def _next_payload(websocket: WebSocket, settings: Settings):
    # A client that misses ~1.5 heartbeat intervals is considered gone
    timeout_s = settings.DEV_HEARTBEAT_INTERVAL_MS * 1.5 / 1000.0
    try:
        text = await asyncio.wait_for(websocket.receive_text(), timeout=timeout_s)
    except asyncio.TimeoutError:
        raise _Close(CLOSE_SESSION_TIMED_OUT, "session timed out")
    try:
        return decode_payload(text)
    except PayloadDecodeError as e:
        raise _Close(CLOSE_DECODE_ERROR, f"decode error: {e}")


async def _ack(websocket: WebSocket, settings: Settings) -> None:
    if random.random() < settings.DEV_ACK_DROP_RATE:
        logger.warning("protocol=gateway event=chaos action=drop_ack")
        return
    await websocket.send_text(encode_payload(Opcode.HEARTBEAT_ACK))


async def _handshake(websocket: WebSocket, registry: SessionRegistry, settings: Settings) -> ServerSession:
    while True:
        payload = await _next_payload(websocket, settings)

        if payload.opcode == Opcode.HEARTBEAT:
            await _ack(websocket, settings)
            continue

        if payload.opcode == Opcode.IDENTIFY:
            try:
                identify = IdentifyBody.model_validate(payload.body)
            except ValueError:
                raise _Close(CLOSE_DECODE_ERROR, "invalid IDENTIFY body")
            if not identify.token:
                raise _Close(CLOSE_AUTHENTICATION_FAILED, "authentication failed")
            session = registry.create_session(identify.token)
            ready = {"v": settings.PROTOCOL_VERSION, "session_id": session.session_id, "user": {"username": "dev-bot", "bot": True}}
            await websocket.send_text(registry.dispatch_frame(session, "READY", ready))
            await websocket.send_text(registry.dispatch_frame(session, *guild_create(session.session_id)))
            return session

        if payload.opcode == Opcode.RESUME:
            try:
                resume = ResumeBody.model_validate(payload.body)
            except ValueError:
                raise _Close(CLOSE_DECODE_ERROR, "invalid RESUME body")
            session = registry.resume_session(resume.session_id, resume.token)
            if session is None:
                logger.info(f"session_id={resume.session_id} protocol=gateway event=invalid_session")
                await websocket.send_text(encode_payload(Opcode.INVALID_SESSION, False))
                continue
            for frame in registry.replay_after(session, resume.seq):
                await websocket.send_text(frame)
            await websocket.send_text(registry.dispatch_frame(session, "RESUMED", {}))
            return session

        raise _Close(CLOSE_NOT_AUTHENTICATED, f"op={payload.opcode} before IDENTIFY")


async def _receive_loop(websocket: WebSocket, registry: SessionRegistry, session: ServerSession, settings: Settings) -> None:
    while True:
        payload = await _next_payload(websocket, settings)
        if payload.opcode == Opcode.HEARTBEAT:
            await _ack(websocket, settings)
        elif payload.opcode in KNOWN_OPCODES:
            logger.debug(f"session_id={session.session_id} protocol=gateway event=ignored op={payload.opcode}")
        else:
            raise _Close(CLOSE_UNKNOWN_OPCODE, f"unknown opcode {payload.opcode}")


async def _push_dispatches(websocket: WebSocket, registry: SessionRegistry, session: ServerSession, settings: Settings) -> None:
    try:
        async for event_name, body in dispatch_event_generator(settings.DEV_EVENT_INTERVAL_S):
            if random.random() < settings.DEV_CHAOS_RATE:
                await _inject_chaos(websocket, registry, session)
                return
            await websocket.send_text(registry.dispatch_frame(session, event_name, body))
    except asyncio.CancelledError:
        pass
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.debug(f"session_id={session.session_id} protocol=gateway event=push_stopped reason='{e}'")


async def _inject_chaos(websocket: WebSocket, registry: SessionRegistry, session: ServerSession) -> None:
    if random.random() < 0.5:
        logger.warning(f"session_id={session.session_id} protocol=gateway event=chaos action=reconnect")
        await websocket.send_text(encode_payload(Opcode.RECONNECT))
    else:
        resumable = random.random() < 0.5
        if not resumable:
            registry.invalidate(session)
        logger.warning(f"session_id={session.session_id} protocol=gateway event=chaos action=invalid_session resumable={resumable}")
        await websocket.send_text(encode_payload(Opcode.INVALID_SESSION, resumable))
