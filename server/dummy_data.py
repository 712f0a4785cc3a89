"""
MODULE OVERVIEW:
Fake DISPATCH traffic for the dev gateway.

WHAT IS HAPPENING HERE:
A real gateway streams guild, message and presence events. We only need a steady
trickle of named events with bodies so that clients see sequence numbers advance and
have something to replay on RESUME.
"""
import asyncio
import random
from datetime import datetime, timezone
from typing import AsyncGenerator
from uuid import uuid4

USERS = ["alice", "bob", "charlie", "dave"]
CHANNELS = ["general", "random", "bot-stuff"]


def message_create() -> tuple[str, dict]:
    return "MESSAGE_CREATE", {
        "id": str(uuid4().int)[:18],
        "channel": random.choice(CHANNELS),
        "author": random.choice(USERS),
        "content": random.choice(["hi", "ping", "anyone here?", "gg"]),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def presence_update() -> tuple[str, dict]:
    return "PRESENCE_UPDATE", {
        "user": random.choice(USERS),
        "status": random.choice(["online", "idle", "dnd", "offline"]),
    }


def typing_start() -> tuple[str, dict]:
    return "TYPING_START", {
        "user": random.choice(USERS),
        "channel": random.choice(CHANNELS),
    }


def guild_create(session_id: str) -> tuple[str, dict]:
    return "GUILD_CREATE", {
        "id": session_id[:8],
        "name": "Dev Guild",
        "member_count": len(USERS),
        "unavailable": False,
    }


async def dispatch_event_generator(interval_s: float) -> AsyncGenerator[tuple[str, dict], None]:
    """Yields (event_name, body) forever, roughly every `interval_s` seconds."""
    builders = [message_create, presence_update, typing_start]
    while True:
        await asyncio.sleep(random.uniform(0.5, 1.5) * interval_s)
        yield random.choice(builders)()
