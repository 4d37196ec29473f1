"""Live geofence connection

Keeps one socket open to the Tile38 server for a FENCE search: the
command is sent once, then every notification the server pushes is
decoded and handed to a callback until the fence is closed.

Example:
    async def main():
        def on_event(err, event):
            if err:
                print("error:", err)
            else:
                print(event["detect"], event["id"])

        fence = LiveGeofence().open(
            "localhost", 9851, None,
            "NEARBY fleet FENCE POINT 33.46 -112.26 6000",
            on_event,
        )
        fence.on_close(lambda explicit: print("server went away"))
        ...
        fence.close()
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import hiredis

from .errors import FatalServerError, ServerError
from .protocols import ChannelState, CloseCallback, ReplyCallback


logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024

# First reply of a fence command; not a notification
_ACK_REPLY = "OK"


class LiveGeofence:
    """Streaming connection for one live geofence

    Lifecycle:
        IDLE -> CONNECTING -> AUTHENTICATING (only with a password, transient)
             -> COMMAND_SENT -> STREAMING -> CLOSED

    CLOSED is reached through ``close()`` (no close callback) or because
    the server dropped the connection, sent a fatal error, or could not be
    reached (close callback called once with ``False``).  Nothing is
    retried.
    """

    def __init__(self, log: logging.Logger | None = None):
        """Create an idle live geofence

        Args:
            log: Logger for connection events (default: this module's logger)
        """
        self._log: logging.Logger = log or logger
        self._state: ChannelState = ChannelState.IDLE
        self._decoder: hiredis.Reader = hiredis.Reader(
            protocolError=FatalServerError,
            replyError=ServerError,
            encoding="utf-8",
            errors="replace",
        )
        self._writer: asyncio.StreamWriter | None = None
        self._task: asyncio.Task[None] | None = None
        self._callback: ReplyCallback | None = None
        self._on_close: CloseCallback | None = None
        self._closed_by_caller: bool = False
        self._close_notified: bool = False

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._state is ChannelState.CLOSED

    # ------------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------------

    def open(
        self,
        host: str,
        port: int,
        password: str | None,
        command: str,
        callback: ReplyCallback,
    ) -> LiveGeofence:
        """Connect, send *command* and start delivering notifications

        Returns immediately; the connection is made by a task on the
        running event loop.  With a password, ``AUTH`` is written right
        before the command without waiting for its reply.

        Args:
            host: Server host
            port: Server port
            password: Server password, or None/"" for no AUTH
            command: Full command line without line ending
            callback: Called as ``callback(error, payload)`` per notification

        Returns:
            self, so that ``on_close()`` can be chained

        Raises:
            RuntimeError: If the fence was already opened or closed, or no
                event loop is running
        """
        if self._state is not ChannelState.IDLE:
            raise RuntimeError(f"Live geofence is {self._state.value}, cannot open it")

        loop = asyncio.get_running_loop()
        self._callback = callback
        self._state = ChannelState.CONNECTING
        self._task = loop.create_task(self._run(host, port, password, command))
        return self

    def on_close(self, callback: CloseCallback) -> LiveGeofence:
        """Register the handler for an unexpected close (replaces any previous one)

        The handler receives ``False``: the connection was not closed by
        ``close()``.
        """
        self._on_close = callback
        return self

    def close(self) -> None:
        """Close the connection; safe to call more than once

        Does not call the close callback.
        """
        self._closed_by_caller = True
        if self._state is ChannelState.CLOSED:
            return

        connecting = self._writer is None
        self._state = ChannelState.CLOSED
        self._destroy()
        if connecting and self._task is not None:
            self._task.cancel()

    async def wait_closed(self) -> None:
        """Wait until the connection task has finished"""
        if self._task is not None:
            await asyncio.wait([self._task])

    async def __aenter__(self) -> LiveGeofence:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.close()
        await self.wait_closed()

    # ------------------------------------------------------------------------
    # Connection task
    # ------------------------------------------------------------------------

    async def _run(self, host: str, port: int, password: str | None, command: str) -> None:
        try:
            try:
                reader, writer = await asyncio.open_connection(host, port)
            except OSError as e:
                self._log.error("live socket could not connect to %s:%s: %s", host, port, e)
                return

            self._writer = writer
            self._log.info("live socket connected to %s:%s", host, port)

            if password:
                self._state = ChannelState.AUTHENTICATING
                writer.write(f"AUTH {password}\r\n".encode("utf-8"))
            writer.write(f"{command}\r\n".encode("utf-8"))
            self._state = ChannelState.COMMAND_SENT

            await self._stream(reader)
        finally:
            self._finish()

    async def _stream(self, reader: asyncio.StreamReader) -> None:
        """Feed inbound bytes to the decoder until the connection ends"""
        while self._state is not ChannelState.CLOSED:
            try:
                data = await reader.read(READ_CHUNK_SIZE)
            except ConnectionError as e:
                self._log.warning("live socket connection lost: %s", e)
                return

            if not data:
                if self._state is not ChannelState.CLOSED:
                    self._log.warning("live socket closed by server")
                return

            if self._state is ChannelState.COMMAND_SENT:
                self._state = ChannelState.STREAMING
            self._decoder.feed(data)
            self._dispatch()

    def _dispatch(self) -> None:
        """Deliver every complete reply currently held by the decoder"""
        while self._state is not ChannelState.CLOSED:
            try:
                reply = self._decoder.gets()
            except FatalServerError as e:
                self._fatal(str(e))
                return

            if reply is False:
                return
            if isinstance(reply, ServerError):
                self._log.error("live socket error: %s", reply)
                self._deliver(str(reply), None)
            else:
                self._reply(reply)

    def _reply(self, reply: Any) -> None:
        self._log.debug("live socket reply: %r", reply)
        if reply == _ACK_REPLY:
            return

        payload = reply
        if isinstance(reply, str) and reply[:1] in ("{", "["):
            try:
                payload = json.loads(reply)
            except json.JSONDecodeError:
                self._log.warning("Unable to parse server response: %s", reply)
        self._deliver(None, payload)

    def _fatal(self, message: str) -> None:
        self._log.error("fatal live socket error: %s", message)
        self._state = ChannelState.CLOSED
        self._destroy()
        self._deliver(message, None)

    def _deliver(self, error: str | None, payload: Any) -> None:
        if self._callback is None:
            return
        try:
            self._callback(error, payload)
        except Exception:
            self._log.exception("live geofence callback failed")

    # ------------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------------

    def _destroy(self) -> None:
        if self._writer is not None:
            self._writer.transport.abort()
            self._writer = None

    def _finish(self) -> None:
        """Final state change; reports the close unless the caller asked for it"""
        self._state = ChannelState.CLOSED
        self._destroy()

        if self._closed_by_caller or self._close_notified:
            return
        self._close_notified = True
        self._log.info("live socket closed")
        if self._on_close is not None:
            try:
                self._on_close(False)
            except Exception:
                self._log.exception("live geofence close callback failed")
