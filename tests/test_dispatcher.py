"""
Unit tests for OpcodeDispatcher
===============================
Routing by opcode, SessionState mutations, and the guarantee that nothing inbound is
ever fatal (unknown opcodes, outbound-only opcodes, malformed frames).
"""
import json
from unittest.mock import AsyncMock, Mock

import pytest

from client.dispatcher import OpcodeDispatcher
from client.reconnect import ReconnectPolicy
from client.session import SessionState
from shared.config import Settings


def frame(op, d=None, s=None, t=None):
    return json.dumps({"op": op, "d": d, "s": s, "t": t})


def make_actions():
    actions = Mock()
    actions.on_hello = AsyncMock()
    actions.send_heartbeat = AsyncMock()
    actions.on_session_established = AsyncMock()
    actions.request_reconnect = AsyncMock()
    actions.heartbeat_acked = Mock()
    return actions


@pytest.fixture
def session():
    return SessionState()


@pytest.fixture
def actions():
    return make_actions()


@pytest.fixture
def dispatcher(session, actions):
    policy = ReconnectPolicy(Settings(INVALID_SESSION_DELAY_MIN_S=1.0, INVALID_SESSION_DELAY_MAX_S=5.0))
    return OpcodeDispatcher(session, policy, actions, stats={})


def assert_no_actions(actions):
    actions.on_hello.assert_not_awaited()
    actions.send_heartbeat.assert_not_awaited()
    actions.on_session_established.assert_not_awaited()
    actions.request_reconnect.assert_not_awaited()
    actions.heartbeat_acked.assert_not_called()


class TestDispatch:
    @pytest.mark.asyncio
    async def test_ready_captures_session_and_resets_attempts(self, dispatcher, session, actions):
        session.on_ready("OLD", 90)
        session.record_failure()
        session.record_failure()

        await dispatcher.handle_frame(frame(0, {"session_id": "S", "v": 6}, s=1, t="READY"))

        assert session.session_id == "S"
        assert session.reconnect_attempts == 0
        assert session.last_sequence == 1
        actions.on_session_established.assert_awaited_once_with(resumed=False)

    @pytest.mark.asyncio
    async def test_resumed_leaves_session_untouched(self, dispatcher, session, actions):
        session.on_ready("S", 10)
        session.record_failure()

        await dispatcher.handle_frame(frame(0, {}, s=11, t="RESUMED"))

        assert session.session_id == "S"
        assert session.last_sequence == 10
        assert session.reconnect_attempts == 1
        actions.on_session_established.assert_awaited_once_with(resumed=True)

    @pytest.mark.asyncio
    async def test_other_events_only_advance_sequence(self, dispatcher, session, actions):
        await dispatcher.handle_frame(frame(0, {"id": "1"}, s=5, t="GUILD_CREATE"))
        await dispatcher.handle_frame(frame(0, {"id": "2"}, s=4, t="MESSAGE_CREATE"))

        assert session.last_sequence == 5
        assert session.session_id is None
        assert dispatcher.stats["dispatches_received"] == 2
        actions.on_session_established.assert_not_awaited()


class TestControlOpcodes:
    @pytest.mark.asyncio
    async def test_heartbeat_request_sends_immediately(self, dispatcher, actions):
        await dispatcher.handle_frame(frame(1))
        actions.send_heartbeat.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_hello_hands_interval_to_client(self, dispatcher, actions):
        await dispatcher.handle_frame(frame(10, {"heartbeat_interval": 41250}))
        actions.on_hello.assert_awaited_once_with(41250)

    @pytest.mark.asyncio
    async def test_heartbeat_ack(self, dispatcher, actions):
        await dispatcher.handle_frame(frame(11))
        actions.heartbeat_acked.assert_called_once()

    @pytest.mark.asyncio
    async def test_reconnect_is_immediate_and_resumable(self, dispatcher, session, actions):
        session.on_ready("S", 3)
        await dispatcher.handle_frame(frame(7))

        disconnect = actions.request_reconnect.await_args.args[0]
        assert disconnect.resumable is True
        assert disconnect.delay_s == 0.0
        assert session.session_id == "S"

    @pytest.mark.asyncio
    async def test_invalid_session_not_resumable_clears_session(self, dispatcher, session, actions):
        session.on_ready("S", 3)
        await dispatcher.handle_frame(frame(9, False))

        assert session.session_id is None
        disconnect = actions.request_reconnect.await_args.args[0]
        assert disconnect.resumable is False
        assert 1.0 <= disconnect.delay_s <= 5.0

    @pytest.mark.asyncio
    async def test_invalid_session_resumable_keeps_session(self, dispatcher, session, actions):
        session.on_ready("S", 3)
        await dispatcher.handle_frame(frame(9, True))

        assert session.session_id == "S"
        disconnect = actions.request_reconnect.await_args.args[0]
        assert disconnect.resumable is True
        assert 1.0 <= disconnect.delay_s <= 5.0


class TestNeverFatal:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("op", [2, 3, 4, 5, 6, 8])
    async def test_outbound_only_opcodes_are_ignored(self, dispatcher, session, actions, op):
        payload = await dispatcher.handle_frame(frame(op, {"anything": True}))
        assert payload is not None
        assert_no_actions(actions)
        assert session.snapshot().reconnect_attempts == 0

    @pytest.mark.asyncio
    async def test_unknown_opcode_is_dropped(self, dispatcher, session, actions):
        session.on_ready("S", 3)
        before = session.snapshot()

        await dispatcher.handle_frame(frame(99, {"x": 1}, s=50))

        assert session.snapshot() == before
        assert_no_actions(actions)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", [
        "{oops",
        '{"op": 10, "d": {}}',
        '{"op": 0, "s": 1, "t": "READY", "d": {}}',
        '{"op": "10", "d": {}}',
        '{"op": "0", "s": 1, "t": "READY", "d": {}}',
    ])
    async def test_malformed_frames_are_dropped(self, dispatcher, session, actions, raw):
        assert await dispatcher.handle_frame(raw) is None
        assert dispatcher.stats["decode_errors"] == 1
        assert session.session_id is None
        assert_no_actions(actions)
