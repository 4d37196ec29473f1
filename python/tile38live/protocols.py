"""Type definitions for Tile38 commands and replies

Defines the Enums for the fixed keyword sets of the Tile38 search
commands, the clause kinds the query builder knows about, and the
callback signatures used by live geofences.
"""

from __future__ import annotations

from collections.abc import Callable
from enum import Enum
from typing import Any, Literal, NotRequired, Protocol, TypedDict


class SearchType(str, Enum):
    """Tile38 search verbs"""
    INTERSECTS = "INTERSECTS"
    NEARBY = "NEARBY"
    SCAN = "SCAN"
    SEARCH = "SEARCH"
    WITHIN = "WITHIN"


class OrderType(str, Enum):
    """Sort order for SCAN and SEARCH results"""
    ASC = "ASC"
    DESC = "DESC"


class DetectType(str, Enum):
    """Geofence events that can be requested with DETECT"""
    INSIDE = "inside"
    OUTSIDE = "outside"
    ENTER = "enter"
    EXIT = "exit"
    CROSS = "cross"


class CommandType(str, Enum):
    """Change events that can be requested with COMMANDS"""
    DEL = "del"
    DROP = "drop"
    SET = "set"


class OutputType(str, Enum):
    """Result shapes for the output clause"""
    COUNT = "count"
    IDS = "ids"
    OBJECTS = "objects"
    POINTS = "points"
    BOUNDS = "bounds"
    HASHES = "hashes"


class ChannelState(str, Enum):
    """Lifecycle of a live geofence connection

    AUTHENTICATING is transient: AUTH and the command are written in the
    same step, so the state moves on to COMMAND_SENT before any caller
    can observe it.
    """
    IDLE = "idle"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    COMMAND_SENT = "command_sent"
    STREAMING = "streaming"
    CLOSED = "closed"


# ============================================================================
# Clause kinds
# ============================================================================

class Clause(str, Enum):
    """Clause kinds of a search command.

    Declaration order is the order in which clauses are written to the
    server, whatever order the builder methods were called in.
    """
    CURSOR = "cursor"
    LIMIT = "limit"
    SPARSE = "sparse"
    MATCH = "match"
    ORDER = "order"
    DISTANCE = "distance"
    WHERE = "where"
    WHERE_IN = "where_in"
    WHERE_EVAL = "where_eval"
    WHERE_EVAL_SHA = "where_eval_sha"
    CLIP = "clip"
    NOFIELDS = "nofields"
    FENCE = "fence"
    DETECT = "detect"
    COMMANDS = "commands"
    OUTPUT = "output"
    GET_OBJECT = "get_object"
    BOUNDS = "bounds"
    OBJECT = "object"
    TILE = "tile"
    QUAD_KEY = "quad_key"
    HASH = "hash"
    POINT = "point"
    CIRCLE = "circle"
    ROAM = "roam"

    @property
    def repeatable(self) -> bool:
        """True if the clause accumulates instead of being replaced"""
        return self in _REPEATABLE_CLAUSES


_REPEATABLE_CLAUSES = frozenset({
    Clause.MATCH,
    Clause.WHERE,
    Clause.WHERE_IN,
    Clause.WHERE_EVAL,
    Clause.WHERE_EVAL_SHA,
})


# ============================================================================
# Values
# ============================================================================

# A single command argument as handed to the server
Arg = str | int | float

# Geometry payloads are passed through untouched
GeoJSONType = Literal[
    "Point",
    "MultiPoint",
    "LineString",
    "MultiLineString",
    "Polygon",
    "MultiPolygon",
    "GeometryCollection",
    "Feature",
    "FeatureCollection",
]


class GeoJSONObject(TypedDict):
    """Minimal shape of a GeoJSON object (not validated)"""
    type: GeoJSONType
    coordinates: NotRequired[list[Any]]
    properties: NotRequired[dict[str, Any]]


# ============================================================================
# Callbacks
# ============================================================================

# (error, payload): exactly one of the two is None
ReplyCallback = Callable[[str | None, Any], None]

# (was_explicit): False when the server or network dropped the connection
CloseCallback = Callable[[bool], None]


class CommandExecutor(Protocol):
    """Anything that can run one request/response command, e.g. ``redis.Redis``"""

    def execute_command(self, *args: Any) -> Any: ...
