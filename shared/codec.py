"""
MODULE OVERVIEW:
Frame <-> payload conversion for the gateway wire format.

WHAT IS HAPPENING HERE:
Inbound frames arrive either as JSON text or as zlib-compressed binary. Both end up
as a validated `GatewayPayload`; anything that cannot get there raises
`PayloadDecodeError` so the caller can log it and drop the frame. Outbound helpers
build the handshake and heartbeat frames the client sends.
"""
import json
import platform
import zlib
from typing import Any

from pydantic import ValidationError

from shared.errors import PayloadDecodeError
from shared.models import (
    GatewayPayload,
    IdentifyBody,
    IdentifyProperties,
    Opcode,
    ResumeBody,
)


def inflate(data: bytes) -> str:
    try:
        return zlib.decompress(data).decode("utf-8")
    except (zlib.error, UnicodeDecodeError) as e:
        raise PayloadDecodeError(f"could not inflate binary frame: {e}", data) from e


def decode_payload(raw: str | bytes) -> GatewayPayload:
    """Parse one frame into a payload. Binary frames are inflated first."""
    text = inflate(raw) if isinstance(raw, (bytes, bytearray)) else raw
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise PayloadDecodeError(f"malformed JSON: {e}", raw) from e
    if not isinstance(data, dict) or "op" not in data:
        raise PayloadDecodeError("frame is not a gateway envelope", raw)
    try:
        return GatewayPayload.model_validate(data)
    except ValidationError as e:
        raise PayloadDecodeError(f"invalid payload: {e.errors()}", raw) from e


def encode_payload(
    opcode: int,
    body: Any = None,
    sequence: int | None = None,
    event_name: str | None = None,
) -> str:
    if hasattr(body, "model_dump"):
        body = body.model_dump(by_alias=True)
    envelope: dict[str, Any] = {"op": int(opcode), "d": body}
    if opcode == Opcode.DISPATCH:
        envelope["s"] = sequence
        envelope["t"] = event_name
    return json.dumps(envelope)


def build_identify(
    token: str,
    client_name: str,
    compress: bool = True,
    large_threshold: int = 250,
) -> IdentifyBody:
    return IdentifyBody(
        token=token,
        properties=IdentifyProperties(os=platform.system(), browser=client_name, device=client_name),
        compress=compress,
        large_threshold=large_threshold,
    )


def identify_frame(body: IdentifyBody) -> str:
    return encode_payload(Opcode.IDENTIFY, body)


def decode_identify(raw: str) -> IdentifyBody:
    payload = decode_payload(raw)
    if payload.opcode != Opcode.IDENTIFY:
        raise PayloadDecodeError(f"expected IDENTIFY, got op={payload.opcode}", raw)
    try:
        return IdentifyBody.model_validate(payload.body)
    except ValidationError as e:
        raise PayloadDecodeError(f"invalid IDENTIFY body: {e.errors()}", raw) from e


def resume_frame(token: str, session_id: str, last_sequence: int) -> str:
    seq = last_sequence if last_sequence >= 0 else None
    return encode_payload(Opcode.RESUME, ResumeBody(token=token, session_id=session_id, seq=seq))


def heartbeat_frame(last_sequence: int) -> str:
    return encode_payload(Opcode.HEARTBEAT, last_sequence if last_sequence >= 0 else None)
