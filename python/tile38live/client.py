"""Tile38 client

Ties the query builder to a server: queries created here can be run once
through a request/response executor, or turned into live geofences.

The request/response transport is not part of this package; any object
with an ``execute_command(*args)`` method works, for example a
``redis.Redis`` or ``redis.asyncio.Redis`` connected to Tile38.

Example:
    import redis
    from tile38live import Tile38, Tile38Config

    tile38 = Tile38(Tile38Config(port=9851), executor=redis.Redis(port=9851))

    # One-shot search
    ids = tile38.nearby_query("fleet").point(33.46, -112.26, 6000).ids().execute()

    # Live geofence (inside a running event loop)
    fence = tile38.nearby_query("fleet").detect("enter", "exit") \\
        .point(33.46, -112.26, 6000).execute_fence(on_event)
    ...
    fence.close()
"""

from __future__ import annotations

import logging
from typing import Any

from .config import Tile38Config
from .errors import Tile38Error
from .live_geofence import LiveGeofence
from .protocols import Arg, CommandExecutor, ReplyCallback, SearchType
from .query import Query


logger = logging.getLogger(__name__)


class Tile38:
    """Entry point for building and running Tile38 searches"""

    def __init__(
        self,
        config: Tile38Config | None = None,
        executor: CommandExecutor | None = None,
    ):
        """Create a client (no connection is made here)

        Args:
            config: Server settings for live geofences (default: from environment)
            executor: Request/response transport used by ``execute()``
        """
        self.config: Tile38Config = config or Tile38Config.from_env()
        self.executor: CommandExecutor | None = executor
        self._fences: list[LiveGeofence] = []

    # ------------------------------------------------------------------------
    # Query factories
    # ------------------------------------------------------------------------

    def intersects_query(self, key: str) -> Query:
        return Query(SearchType.INTERSECTS, key, self)

    def search_query(self, key: str) -> Query:
        return Query(SearchType.SEARCH, key, self)

    def nearby_query(self, key: str) -> Query:
        return Query(SearchType.NEARBY, key, self)

    def scan_query(self, key: str) -> Query:
        return Query(SearchType.SCAN, key, self)

    def within_query(self, key: str) -> Query:
        return Query(SearchType.WITHIN, key, self)

    # ------------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------------

    def execute(self, command: str, args: list[Arg]) -> Any:
        """Run one command through the executor

        Returns:
            The executor's result, unchanged

        Raises:
            Tile38Error: If no executor was configured
        """
        if self.executor is None:
            raise Tile38Error("No command executor configured for request/response commands")
        logger.debug("executing %s %s", command, args)
        return self.executor.execute_command(command, *args)

    def open_live_fence(
        self,
        command: str,
        args: list[Arg],
        callback: ReplyCallback,
    ) -> LiveGeofence:
        """Open a live geofence for ``command`` with the given arguments

        A new connection is opened for every fence, using ``self.config``.
        Must be called from a running event loop.  Fences that have
        already closed are forgotten here.
        """
        line = " ".join([command, *(str(a) for a in args)])
        fence = LiveGeofence().open(
            self.config.host,
            self.config.port,
            self.config.password,
            line,
            callback,
        )
        self._fences = [f for f in self._fences if not f.closed]
        self._fences.append(fence)
        return fence

    def close(self) -> None:
        """Close every live geofence opened through this client"""
        for fence in self._fences:
            fence.close()
        self._fences.clear()
