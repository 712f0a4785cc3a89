"""
MODULE OVERVIEW:
The dev gateway's session registry.

WHAT IS HAPPENING HERE:
A gateway session outlives the websocket it was created on: a client that drops can
come back with RESUME and its session id, and expects every dispatch it missed to be
replayed in order before RESUMED. So the registry keeps, per session, the sequence
counter and a bounded backlog of already-encoded dispatch frames.
"""
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict
from uuid import uuid4

from loguru import logger

from shared.codec import encode_payload
from shared.models import Opcode, ServerStats


@dataclass
class ServerSession:
    session_id: str
    token: str
    sequence: int = 0
    attached: bool = False
    backlog: deque = field(default_factory=lambda: deque(maxlen=500))


class SessionRegistry:
    def __init__(self):
        self.sessions: Dict[str, ServerSession] = {}
        self.active_connections = 0
        self.total_dispatches = 0
        self.startup_time = datetime.now(timezone.utc)

    def connection_opened(self) -> None:
        self.active_connections += 1

    def connection_closed(self, session: ServerSession | None) -> None:
        self.active_connections -= 1
        if session is not None:
            session.attached = False
            logger.info(f"session_id={session.session_id} protocol=gateway event=detach seq={session.sequence}")

    def create_session(self, token: str) -> ServerSession:
        session = ServerSession(session_id=uuid4().hex, token=token, attached=True)
        self.sessions[session.session_id] = session
        logger.info(f"session_id={session.session_id} protocol=gateway event=identify")
        return session

    def resume_session(self, session_id: str, token: str) -> ServerSession | None:
        session = self.sessions.get(session_id)
        if session is None or session.token != token:
            return None
        session.attached = True
        logger.info(f"session_id={session_id} protocol=gateway event=resume seq={session.sequence}")
        return session

    def invalidate(self, session: ServerSession) -> None:
        self.sessions.pop(session.session_id, None)

    def dispatch_frame(self, session: ServerSession, event_name: str, body: dict) -> str:
        """Assign the next sequence number to an event and remember it for replay."""
        session.sequence += 1
        frame = encode_payload(Opcode.DISPATCH, body, sequence=session.sequence, event_name=event_name)
        session.backlog.append((session.sequence, frame))
        self.total_dispatches += 1
        return frame

    def replay_after(self, session: ServerSession, sequence: int | None) -> list[str]:
        last = sequence if sequence is not None else 0
        return [frame for seq, frame in session.backlog if seq > last]

    def get_stats(self) -> ServerStats:
        return ServerStats(
            active_connections=self.active_connections,
            sessions=len(self.sessions),
            total_dispatches=self.total_dispatches,
            uptime_s=(datetime.now(timezone.utc) - self.startup_time).total_seconds(),
        )
