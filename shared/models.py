"""
MODULE OVERVIEW:
The strictly typed data structures shared by the gateway client and the dev gateway
server, powered by Pydantic v2.

WHAT IS HAPPENING HERE:
Every frame on the wire is the same JSON envelope: `{op, d, s, t}`. We model the
envelope once (`GatewayPayload`) and validate the opcode-specific body at decode time,
so a HELLO without `heartbeat_interval` or a READY without `session_id` is rejected at
the edge instead of blowing up deep in a handler.
"""
from enum import Enum, IntEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator


class Opcode(IntEnum):
    DISPATCH = 0
    HEARTBEAT = 1
    IDENTIFY = 2
    STATUS_UPDATE = 3
    VOICE_STATE_UPDATE = 4
    VOICE_SERVER_PING = 5
    RESUME = 6
    RECONNECT = 7
    REQUEST_GUILD_MEMBERS = 8
    INVALID_SESSION = 9
    HELLO = 10
    HEARTBEAT_ACK = 11


# Opcodes this client only ever sends. Receiving one is odd but harmless.
OUTBOUND_ONLY = frozenset({
    Opcode.IDENTIFY,
    Opcode.STATUS_UPDATE,
    Opcode.VOICE_STATE_UPDATE,
    Opcode.VOICE_SERVER_PING,
    Opcode.RESUME,
    Opcode.REQUEST_GUILD_MEMBERS,
})


class GatewayEvent(str, Enum):
    READY = "READY"
    RESUMED = "RESUMED"
    GUILD_CREATE = "GUILD_CREATE"


class ConnectionState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    AWAITING_HELLO = "AWAITING_HELLO"
    IDENTIFYING = "IDENTIFYING"
    RESUMING = "RESUMING"
    CONNECTED = "CONNECTED"


class HelloBody(BaseModel):
    heartbeat_interval: int = Field(gt=0)


class ReadyBody(BaseModel):
    session_id: str = Field(min_length=1)


# WHAT IS HAPPENING HERE:
# The envelope. Field names are the readable python names; the aliases are the
# one-letter keys used on the wire. `body` is re-typed per opcode in the validator.
class GatewayPayload(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    # "10" is rejected rather than coerced, so the body check below sees the real opcode
    opcode: int = Field(alias="op", strict=True)
    body: Any = Field(default=None, alias="d")
    sequence: int | None = Field(default=None, alias="s")
    event_name: str | None = Field(default=None, alias="t")

    @model_validator(mode="before")
    @classmethod
    def _validate_body(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        op_key = "op" if "op" in data else "opcode"
        body_key = "body" if "body" in data and "d" not in data else "d"
        event_key = "event_name" if "event_name" in data and "t" not in data else "t"
        opcode, body = data.get(op_key), data.get(body_key)
        try:
            if opcode == Opcode.HELLO:
                body = HelloBody.model_validate(body)
            elif opcode == Opcode.DISPATCH and data.get(event_key) == GatewayEvent.READY.value:
                body = ReadyBody.model_validate(body)
            elif opcode == Opcode.INVALID_SESSION:
                if body is not None and not isinstance(body, bool):
                    raise ValueError("INVALID_SESSION body must be a boolean")
                body = bool(body)
        except ValidationError as exc:
            raise ValueError(f"op={opcode} body rejected: {exc.errors()}") from exc
        return {**data, body_key: body}


class IdentifyProperties(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    os: str = Field(alias="$os")
    browser: str = Field(alias="$browser")
    device: str = Field(alias="$device")


class IdentifyBody(BaseModel):
    token: str
    properties: IdentifyProperties
    compress: bool = True
    large_threshold: int = 250


class ResumeBody(BaseModel):
    token: str
    session_id: str
    seq: int | None


class DiscoveryResponse(BaseModel):
    url: str


class SessionSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str | None
    last_sequence: int
    reconnect_attempts: int

    @property
    def has_session(self) -> bool:
        return bool(self.session_id)


class Disconnect(BaseModel):
    """Why one connection cycle ended, and what the next cycle should do about it."""
    model_config = ConfigDict(frozen=True)

    reason: str
    close_code: int | None = None
    resumable: bool = True
    # Overrides the backoff when set (RECONNECT: 0, INVALID_SESSION: jitter)
    delay_s: float | None = None
    counts_as_failure: bool = False


class ServerStats(BaseModel):
    active_connections: int
    sessions: int
    total_dispatches: int
    uptime_s: float
