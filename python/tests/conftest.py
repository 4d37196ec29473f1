"""Shared test fixtures for all test modules

Provides a scripted local TCP server standing in for Tile38, and common
query definitions.
"""

from __future__ import annotations

import asyncio
import textwrap

import pytest
import pytest_asyncio


class ScriptedServer:
    """Local server that records what a client sends and replies from a script

    Once *expect_lines* command lines have arrived, every chunk of the
    script is written.  With ``hangup`` the connection is then closed by
    the server; otherwise it stays open until the client goes away.
    """

    def __init__(self, script: list[bytes], hangup: bool, expect_lines: int):
        self.script = script
        self.hangup = hangup
        self.expect_lines = expect_lines
        self.received = b""
        self.connections = 0
        self.port = 0
        self._data = asyncio.Event()
        self._server: asyncio.Server | None = None
        self._writers: list[asyncio.StreamWriter] = []

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        for writer in self._writers:
            writer.transport.abort()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()

    async def received_lines(self, count: int, timeout: float = 2.0) -> list[bytes]:
        """Wait until *count* CRLF-terminated lines have been received"""
        async def wait() -> None:
            while self.received.count(b"\r\n") < count:
                self._data.clear()
                await self._data.wait()

        await asyncio.wait_for(wait(), timeout)
        return self.received.split(b"\r\n")[:count]

    async def _record(self, reader: asyncio.StreamReader) -> None:
        while True:
            try:
                data = await reader.read(1024)
            except ConnectionError:
                break
            if not data:
                break
            self.received += data
            self._data.set()
        self._data.set()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.connections += 1
        self._writers.append(writer)
        recording = asyncio.create_task(self._record(reader))

        try:
            await self.received_lines(self.expect_lines)
            for chunk in self.script:
                writer.write(chunk)
            await writer.drain()
            if not self.hangup:
                await recording
        except (ConnectionError, asyncio.TimeoutError):
            pass
        finally:
            recording.cancel()
            writer.close()


@pytest_asyncio.fixture
async def scripted_server():
    """Factory: ``server = await scripted_server(b"+OK\\r\\n", hangup=True)``"""
    servers: list[ScriptedServer] = []

    async def start(*script: bytes, hangup: bool = False, expect_lines: int = 1) -> ScriptedServer:
        server = ScriptedServer(list(script), hangup, expect_lines)
        await server.start()
        servers.append(server)
        return server

    yield start

    for server in servers:
        await server.stop()


@pytest.fixture
def queries_yaml() -> str:
    """YAML document with two search definitions"""
    return textwrap.dedent("""\
        queries:
          - name: trucks near depot
            command: nearby
            key: fleet
            match: truck*
            detect: [enter, exit]
            point: [33.46, -112.26, 6000]
          - name: inside downtown
            command: within
            key: fleet
            nofields: true
            output: ids
            bounds: [33.4, -112.3, 33.5, -112.2]
    """)
