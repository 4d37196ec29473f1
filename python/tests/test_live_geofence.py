"""Tests for LiveGeofence against a scripted local server

Tests cover:
- Frames written on open: AUTH (only with a password) then the command
- Reply handling: OK suppressed, JSON parsed, other replies forwarded
- Error frames: recoverable errors keep the connection, fatal errors close it
- Close notification: explicit close vs. server hangup vs. refused connection
- Lifecycle guards: double open, close before connect, idempotent close
"""

import asyncio
import logging
import socket

import pytest

from tile38live import ChannelState, LiveGeofence


COMMAND = "NEARBY fleet FENCE POINT 33.46 -112.26 6000"

OK = b"+OK\r\n"
FATAL = b"@garbage\r\n"


def bulk(text: str) -> bytes:
    """Encode *text* as a RESP bulk string."""
    data = text.encode("utf-8")
    return b"$%d\r\n%s\r\n" % (len(data), data)


class Recorder:
    """Collects callback invocations and signals when enough have arrived"""

    def __init__(self):
        self.events: list[tuple] = []
        self.closes: list[bool] = []
        self._changed = asyncio.Event()

    def on_event(self, error, payload):
        self.events.append((error, payload))
        self._changed.set()

    def on_close(self, explicit):
        self.closes.append(explicit)

    async def wait_for(self, count: int, timeout: float = 2.0):
        async def wait():
            while len(self.events) < count:
                self._changed.clear()
                await self._changed.wait()

        await asyncio.wait_for(wait(), timeout)


def _unused_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


# ============================================================================
# OUTBOUND FRAMES
# ============================================================================

class TestOutboundFrames:
    """What the server receives"""

    @pytest.mark.asyncio
    async def test_command_without_password(self, scripted_server):
        server = await scripted_server(OK)
        rec = Recorder()

        fence = LiveGeofence().open("127.0.0.1", server.port, None, COMMAND, rec.on_event)
        lines = await server.received_lines(1)
        fence.close()
        await fence.wait_closed()

        assert lines == [COMMAND.encode()]
        assert not server.received.startswith(b"AUTH")

    @pytest.mark.asyncio
    async def test_empty_password_sends_no_auth(self, scripted_server):
        server = await scripted_server(OK)
        rec = Recorder()

        fence = LiveGeofence().open("127.0.0.1", server.port, "", COMMAND, rec.on_event)
        await server.received_lines(1)
        fence.close()
        await fence.wait_closed()

        assert server.received == COMMAND.encode() + b"\r\n"

    @pytest.mark.asyncio
    async def test_auth_is_sent_before_command(self, scripted_server):
        server = await scripted_server(OK, OK, expect_lines=2)
        rec = Recorder()

        fence = LiveGeofence().open("127.0.0.1", server.port, "s3cret", COMMAND, rec.on_event)
        lines = await server.received_lines(2)
        fence.close()
        await fence.wait_closed()

        assert lines == [b"AUTH s3cret", COMMAND.encode()]

    @pytest.mark.asyncio
    async def test_auth_state_does_not_linger(self, scripted_server):
        server = await scripted_server(OK, OK, expect_lines=2)
        rec = Recorder()

        fence = LiveGeofence().open("127.0.0.1", server.port, "s3cret", COMMAND, rec.on_event)
        await server.received_lines(2)
        state = fence.state
        fence.close()
        await fence.wait_closed()

        assert state in (ChannelState.COMMAND_SENT, ChannelState.STREAMING)


# ============================================================================
# REPLIES
# ============================================================================

class TestReplies:
    """Decoded replies reach the callback"""

    @pytest.mark.asyncio
    async def test_ok_is_suppressed_and_json_parsed(self, scripted_server):
        event = '{"command":"set","detect":"enter","id":"truck1"}'
        server = await scripted_server(OK, bulk(event))
        rec = Recorder()

        fence = LiveGeofence().open("127.0.0.1", server.port, None, COMMAND, rec.on_event)
        await rec.wait_for(1)
        fence.close()
        await fence.wait_closed()

        assert rec.events == [(None, {"command": "set", "detect": "enter", "id": "truck1"})]

    @pytest.mark.asyncio
    async def test_json_array_parsed(self, scripted_server):
        server = await scripted_server(bulk("[1,2,3]"))
        rec = Recorder()

        fence = LiveGeofence().open("127.0.0.1", server.port, None, COMMAND, rec.on_event)
        await rec.wait_for(1)
        fence.close()

        assert rec.events == [(None, [1, 2, 3])]

    @pytest.mark.asyncio
    async def test_plain_text_forwarded(self, scripted_server):
        server = await scripted_server(b"+PONG\r\n", b":42\r\n")
        rec = Recorder()

        fence = LiveGeofence().open("127.0.0.1", server.port, None, COMMAND, rec.on_event)
        await rec.wait_for(2)
        fence.close()

        assert rec.events == [(None, "PONG"), (None, 42)]

    @pytest.mark.asyncio
    async def test_malformed_json_forwarded_as_text(self, scripted_server, caplog):
        server = await scripted_server(bulk("{not json"))
        rec = Recorder()

        with caplog.at_level(logging.WARNING, logger="tile38live.live_geofence"):
            fence = LiveGeofence().open("127.0.0.1", server.port, None, COMMAND, rec.on_event)
            await rec.wait_for(1)
            fence.close()
            await fence.wait_closed()

        assert rec.events == [(None, "{not json")]
        assert "Unable to parse server response" in caplog.text

    @pytest.mark.asyncio
    async def test_invalid_utf8_does_not_stop_stream(self, scripted_server):
        server = await scripted_server(b"$2\r\n\xff\xfe\r\n", bulk('{"id":"after"}'))
        rec = Recorder()

        fence = LiveGeofence().open("127.0.0.1", server.port, None, COMMAND, rec.on_event)
        fence.on_close(rec.on_close)
        await rec.wait_for(2)

        assert rec.events == [(None, "\ufffd\ufffd"), (None, {"id": "after"})]
        assert not fence.closed

        fence.close()
        await fence.wait_closed()
        assert rec.closes == []

    @pytest.mark.asyncio
    async def test_replies_split_across_chunks(self, scripted_server):
        frame = bulk('{"id":"truck1"}')
        server = await scripted_server(frame[:5], frame[5:], bulk('{"id":"truck2"}'))
        rec = Recorder()

        fence = LiveGeofence().open("127.0.0.1", server.port, None, COMMAND, rec.on_event)
        await rec.wait_for(2)
        fence.close()

        assert rec.events == [(None, {"id": "truck1"}), (None, {"id": "truck2"})]

    @pytest.mark.asyncio
    async def test_state_is_streaming(self, scripted_server):
        server = await scripted_server(bulk('{"id":"truck1"}'))
        rec = Recorder()

        fence = LiveGeofence().open("127.0.0.1", server.port, None, COMMAND, rec.on_event)
        assert fence.state is ChannelState.CONNECTING
        await rec.wait_for(1)
        assert fence.state is ChannelState.STREAMING
        fence.close()
        assert fence.state is ChannelState.CLOSED

    @pytest.mark.asyncio
    async def test_callback_exception_does_not_stop_stream(self, scripted_server, caplog):
        server = await scripted_server(bulk('{"id":1}'), bulk('{"id":2}'))
        rec = Recorder()

        def flaky(error, payload):
            rec.on_event(error, payload)
            if payload == {"id": 1}:
                raise RuntimeError("handler bug")

        fence = LiveGeofence().open("127.0.0.1", server.port, None, COMMAND, flaky)
        await rec.wait_for(2)
        fence.close()

        assert [payload for _, payload in rec.events] == [{"id": 1}, {"id": 2}]
        assert "callback failed" in caplog.text


# ============================================================================
# ERROR FRAMES
# ============================================================================

class TestErrorFrames:
    """Recoverable and fatal server errors"""

    @pytest.mark.asyncio
    async def test_error_keeps_connection_open(self, scripted_server):
        server = await scripted_server(b"-ERR key not found\r\n", bulk('{"id":"truck1"}'))
        rec = Recorder()

        fence = LiveGeofence().open("127.0.0.1", server.port, None, COMMAND, rec.on_event)
        fence.on_close(rec.on_close)
        await rec.wait_for(2)

        assert rec.events == [("ERR key not found", None), (None, {"id": "truck1"})]
        assert not fence.closed

        fence.close()
        await fence.wait_closed()
        assert rec.closes == []

    @pytest.mark.asyncio
    async def test_fatal_error_closes_connection(self, scripted_server):
        server = await scripted_server(
            OK + bulk('{"detect":"enter","id":"truck1"}') + FATAL + bulk('{"id":"late"}')
        )
        rec = Recorder()

        fence = LiveGeofence().open("127.0.0.1", server.port, None, COMMAND, rec.on_event)
        fence.on_close(rec.on_close)
        await asyncio.wait_for(fence.wait_closed(), 2.0)

        assert len(rec.events) == 2
        assert rec.events[0] == (None, {"detect": "enter", "id": "truck1"})
        error, payload = rec.events[1]
        assert error and payload is None
        assert fence.state is ChannelState.CLOSED
        assert rec.closes == [False]

    @pytest.mark.asyncio
    async def test_nothing_delivered_after_fatal(self, scripted_server):
        server = await scripted_server(FATAL, bulk('{"id":"late"}'))
        rec = Recorder()

        fence = LiveGeofence().open("127.0.0.1", server.port, None, COMMAND, rec.on_event)
        await asyncio.wait_for(fence.wait_closed(), 2.0)
        await asyncio.sleep(0.05)

        assert len(rec.events) == 1
        assert rec.events[0][1] is None


# ============================================================================
# CLOSE NOTIFICATION
# ============================================================================

class TestCloseNotification:
    """on_close fires only when the connection was not closed by close()"""

    @pytest.mark.asyncio
    async def test_explicit_close_does_not_notify(self, scripted_server):
        server = await scripted_server(bulk('{"id":"truck1"}'))
        rec = Recorder()

        fence = LiveGeofence().open("127.0.0.1", server.port, None, COMMAND, rec.on_event)
        fence.on_close(rec.on_close)
        await rec.wait_for(1)
        fence.close()
        await fence.wait_closed()

        assert rec.closes == []

    @pytest.mark.asyncio
    async def test_server_hangup_notifies_once(self, scripted_server):
        server = await scripted_server(OK, hangup=True)
        rec = Recorder()

        fence = LiveGeofence().open("127.0.0.1", server.port, None, COMMAND, rec.on_event)
        fence.on_close(rec.on_close)
        await asyncio.wait_for(fence.wait_closed(), 2.0)
        fence.close()

        assert rec.closes == [False]
        assert rec.events == []
        assert fence.closed

    @pytest.mark.asyncio
    async def test_on_close_replaces_previous_handler(self, scripted_server):
        server = await scripted_server(hangup=True)
        first, second = Recorder(), Recorder()

        fence = LiveGeofence().open("127.0.0.1", server.port, None, COMMAND, first.on_event)
        fence.on_close(first.on_close)
        fence.on_close(second.on_close)
        await asyncio.wait_for(fence.wait_closed(), 2.0)

        assert first.closes == []
        assert second.closes == [False]

    @pytest.mark.asyncio
    async def test_connection_refused_notifies(self):
        rec = Recorder()

        fence = LiveGeofence().open("127.0.0.1", _unused_port(), None, COMMAND, rec.on_event)
        fence.on_close(rec.on_close)
        await asyncio.wait_for(fence.wait_closed(), 2.0)

        assert rec.closes == [False]
        assert rec.events == []
        assert fence.closed


# ============================================================================
# LIFECYCLE
# ============================================================================

class TestLifecycle:
    """Guards around open() and close()"""

    def test_new_fence_is_idle(self):
        assert LiveGeofence().state is ChannelState.IDLE

    def test_open_requires_running_loop(self):
        with pytest.raises(RuntimeError):
            LiveGeofence().open("127.0.0.1", 9851, None, COMMAND, lambda e, p: None)

    def test_close_idle_fence(self):
        fence = LiveGeofence()
        fence.close()
        fence.close()
        assert fence.closed

    @pytest.mark.asyncio
    async def test_open_twice_fails(self, scripted_server):
        server = await scripted_server()
        fence = LiveGeofence().open("127.0.0.1", server.port, None, COMMAND, lambda e, p: None)
        with pytest.raises(RuntimeError, match="cannot open"):
            fence.open("127.0.0.1", server.port, None, COMMAND, lambda e, p: None)
        fence.close()
        await fence.wait_closed()

    @pytest.mark.asyncio
    async def test_close_before_connected(self, scripted_server):
        server = await scripted_server()
        rec = Recorder()

        fence = LiveGeofence().open("127.0.0.1", server.port, None, COMMAND, rec.on_event)
        fence.on_close(rec.on_close)
        fence.close()
        await asyncio.wait_for(fence.wait_closed(), 2.0)

        assert fence.closed
        assert rec.closes == []

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, scripted_server):
        server = await scripted_server(bulk('{"id":"truck1"}'))
        rec = Recorder()

        fence = LiveGeofence().open("127.0.0.1", server.port, None, COMMAND, rec.on_event)
        fence.on_close(rec.on_close)
        await rec.wait_for(1)
        fence.close()
        fence.close()
        await fence.wait_closed()
        fence.close()

        assert rec.closes == []

    @pytest.mark.asyncio
    async def test_async_context_manager(self, scripted_server):
        server = await scripted_server(bulk('{"id":"truck1"}'))
        rec = Recorder()

        async with LiveGeofence() as fence:
            fence.open("127.0.0.1", server.port, None, COMMAND, rec.on_event)
            await rec.wait_for(1)

        assert fence.closed
        assert rec.events == [(None, {"id": "truck1"})]

    @pytest.mark.asyncio
    async def test_custom_logger(self, scripted_server, caplog):
        server = await scripted_server(bulk("{not json"))
        rec = Recorder()
        log = logging.getLogger("fleet.fences")

        with caplog.at_level(logging.WARNING, logger="fleet.fences"):
            fence = LiveGeofence(log=log).open("127.0.0.1", server.port, None, COMMAND, rec.on_event)
            await rec.wait_for(1)
            fence.close()

        assert any(r.name == "fleet.fences" for r in caplog.records)
