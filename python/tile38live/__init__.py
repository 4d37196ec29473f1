"""tile38live - Tile38 query builder and live geofence client

Query Builder
=============

Build search commands with chainable methods; clauses are always
written in the order the server expects:

    from tile38live import Query

    query = Query.nearby("fleet").match("truck*").where("speed", 0, 70) \\
        .point(33.46, -112.26, 6000)
    query.serialize()     # ["fleet", "MATCH", "truck*", "WHERE", "speed", 0, 70, "POINT", ...]
    query.command_str()   # "NEARBY fleet MATCH truck* WHERE speed 0 70 POINT ..."

Live Geofences
==============

Queries created by a Tile38 client can be opened as live geofences; every
notification pushed by the server is passed to a callback:

    from tile38live import Tile38

    async def main():
        tile38 = Tile38()
        fence = tile38.nearby_query("fleet").detect("enter", "exit") \\
            .point(33.46, -112.26, 6000).execute_fence(on_event)
        fence.on_close(lambda explicit: print("connection lost"))
        ...
        fence.close()
"""

from tile38live.errors import (
    Tile38Error,
    ValidationError,
    ConfigError,
    ServerError,
    FatalServerError,
)
from tile38live.protocols import (
    SearchType,
    OrderType,
    DetectType,
    CommandType,
    OutputType,
    ChannelState,
    Clause,
)
from tile38live.query import Query
from tile38live.live_geofence import LiveGeofence
from tile38live.config import Tile38Config, load_config
from tile38live.client import Tile38
from tile38live.yaml_loader import NamedQuery, load_queries

__version__ = "0.1.0"
__all__ = [
    "Tile38Error",
    "ValidationError",
    "ConfigError",
    "ServerError",
    "FatalServerError",
    "SearchType",
    "OrderType",
    "DetectType",
    "CommandType",
    "OutputType",
    "ChannelState",
    "Clause",
    "Query",
    "LiveGeofence",
    "Tile38Config",
    "load_config",
    "Tile38",
    "NamedQuery",
    "load_queries",
]
