"""Fluent query builder for Tile38 search commands

Builds the argument list of INTERSECTS, NEARBY, SCAN, SEARCH and WITHIN
commands through chainable methods:

    Query.nearby("fleet").match("truck*").where("speed", 0, 70).point(33.46, -112.26, 6000)

Clauses are written in a fixed order (see ``Clause``) regardless of the
order the methods were called in.  Nothing is validated except the
geohash precision of ``hashes()``; the server is the authority on what
makes a valid command.

Usage with a client:
    from tile38live import Tile38

    tile38 = Tile38(executor=redis.Redis(port=9851))
    tile38.within_query("fleet").bounds(33.4, -112.3, 33.5, -112.2).ids().execute()
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from enum import Enum
from typing import TYPE_CHECKING, Any

from .errors import ValidationError
from .protocols import (
    Arg,
    Clause,
    CommandType,
    DetectType,
    GeoJSONObject,
    OrderType,
    OutputType,
    ReplyCallback,
    SearchType,
)

if TYPE_CHECKING:
    from .client import Tile38
    from .live_geofence import LiveGeofence


MIN_HASH_PRECISION = 1
MAX_HASH_PRECISION = 22


def _token(value: Any) -> Any:
    """Unwrap Enum members to the value the server expects."""
    if isinstance(value, Enum):
        return value.value
    return value


class Query:
    """Builder for a single Tile38 search command

    Singular clauses keep only the value of the most recent call.
    Repeatable clauses (MATCH, WHERE, WHEREIN, WHEREEVAL, WHEREEVALSHA)
    accumulate in call order.
    """

    def __init__(
        self,
        search_type: SearchType | str,
        key: str,
        client: Tile38 | None = None,
    ) -> None:
        """Create a query (prefer ``Tile38.<verb>_query()`` or the factory classmethods)

        Args:
            search_type: Search verb, e.g. ``SearchType.NEARBY`` or ``"NEARBY"``
            key: Collection key to search
            client: Client used by ``execute()`` and ``execute_fence()``
        """
        self._search_type: str = str(_token(search_type)).upper()
        self._key: str = key
        self._client: Tile38 | None = client
        self._singular: dict[Clause, list[Arg]] = {}
        self._repeated: dict[Clause, list[list[Arg]]] = {}

    @property
    def search_type(self) -> str:
        return self._search_type

    @property
    def key(self) -> str:
        return self._key

    # -- clause storage ------------------------------------------------------

    def _set(self, clause: Clause, *fragment: Arg) -> Query:
        self._singular[clause] = list(fragment)
        return self

    def _append(self, clause: Clause, *fragment: Arg) -> Query:
        self._repeated.setdefault(clause, []).append(list(fragment))
        return self

    # -- paging --------------------------------------------------------------

    def cursor(self, start: int) -> Query:
        """Skip the first *start* results"""
        return self._set(Clause.CURSOR, "CURSOR", start)

    def limit(self, count: int) -> Query:
        """Return at most *count* results"""
        return self._set(Clause.LIMIT, "LIMIT", count)

    def sparse(self, spread: int) -> Query:
        """Spread results evenly across the search area (SPARSE)"""
        return self._set(Clause.SPARSE, "SPARSE", spread)

    # -- filters -------------------------------------------------------------

    def match(self, pattern: str) -> Query:
        """Filter object ids with a glob pattern

        May be called several times; every pattern is sent.

        Example:
            Query.scan("fleet").match("truck*").match("van*")
        """
        return self._append(Clause.MATCH, "MATCH", pattern)

    def where(self, field: str, *criteria: Arg) -> Query:
        """Filter on a field value, e.g. ``where("speed", 70, "+inf")``

        May be called several times.
        """
        return self._append(Clause.WHERE, "WHERE", field, *criteria)

    def where_in(self, field: str, *values: Arg) -> Query:
        """Filter on a field being one of *values*

        The server expects the number of values before the values
        themselves; it is derived here:

            where_in("doors", 2, 5)  ->  WHEREIN doors 2 2 5
        """
        return self._append(Clause.WHERE_IN, "WHEREIN", field, len(values), *values)

    def where_eval(self, script: str, *args: Arg) -> Query:
        """Filter with a Lua script; the script body is sent quoted"""
        return self._append(Clause.WHERE_EVAL, "WHEREEVAL", f'"{script}"', len(args), *args)

    def where_eval_sha(self, sha: str, *args: Arg) -> Query:
        """Filter with a Lua script previously loaded on the server"""
        return self._append(Clause.WHERE_EVAL_SHA, "WHEREEVALSHA", sha, len(args), *args)

    # -- ordering and flags --------------------------------------------------

    def order(self, value: OrderType | str) -> Query:
        """Sort order for SCAN and SEARCH (``OrderType.ASC`` / ``OrderType.DESC``)"""
        return self._set(Clause.ORDER, _token(value))

    def asc(self) -> Query:
        return self.order(OrderType.ASC)

    def desc(self) -> Query:
        return self.order(OrderType.DESC)

    def distance(self) -> Query:
        """Include the distance to each result (NEARBY)"""
        return self._set(Clause.DISTANCE, "DISTANCE")

    def clip(self) -> Query:
        """Clip intersecting objects to the search area"""
        return self._set(Clause.CLIP, "CLIP")

    def nofields(self) -> Query:
        """Leave field values out of the results"""
        return self._set(Clause.NOFIELDS, "NOFIELDS")

    def fence(self) -> Query:
        """Turn the search into a live geofence (set by ``execute_fence()``)"""
        return self._set(Clause.FENCE, "FENCE")

    def detect(self, *values: DetectType | str) -> Query:
        """Geofence events to report

        Values may be passed separately or pre-joined:

            detect(DetectType.ENTER, DetectType.EXIT)
            detect("enter,exit")
        """
        return self._set(Clause.DETECT, "DETECT", ",".join(_token(v) for v in values))

    def commands(self, *values: CommandType | str) -> Query:
        """Change events (del, drop, set) that trigger a geofence notification"""
        return self._set(Clause.COMMANDS, "COMMANDS", ",".join(_token(v) for v in values))

    # -- output --------------------------------------------------------------

    def output(self, kind: OutputType | str, precision: int | None = None) -> Query:
        """Set the result shape

        Args:
            kind: count, ids, objects, points, bounds or hashes
            precision: Geohash precision; only used with ``hashes``

        Example:
            query.output("hashes", 6)   # same as query.hashes(6)
        """
        kind = _token(kind)
        if kind == OutputType.HASHES.value and precision is not None:
            return self._set(Clause.OUTPUT, kind, precision)
        return self._set(Clause.OUTPUT, kind)

    def ids(self) -> Query:
        return self.output(OutputType.IDS)

    def count(self) -> Query:
        return self.output(OutputType.COUNT)

    def objects(self) -> Query:
        return self.output(OutputType.OBJECTS)

    def points(self) -> Query:
        return self.output(OutputType.POINTS)

    def hashes(self, precision: int) -> Query:
        """Return geohashes of the given precision

        Raises:
            ValidationError: If precision is not an integer in [1, 22]
        """
        if (
            not isinstance(precision, int)
            or isinstance(precision, bool)
            or not MIN_HASH_PRECISION <= precision <= MAX_HASH_PRECISION
        ):
            raise ValidationError(
                "for the hashes output type, precision must be an integer "
                f"between {MIN_HASH_PRECISION} and {MAX_HASH_PRECISION} inclusive, "
                f"got {precision!r}"
            )
        return self.output(OutputType.HASHES, precision)

    # -- search area ---------------------------------------------------------

    def get_object(self, key: str, id: str) -> Query:  # pylint: disable=redefined-builtin
        """Search with the shape of an object already stored on the server"""
        return self._set(Clause.GET_OBJECT, "GET", key, id)

    def bounds(self, min_lat: float, min_lon: float, max_lat: float, max_lon: float) -> Query:
        return self._set(Clause.BOUNDS, "BOUNDS", min_lat, min_lon, max_lat, max_lon)

    def object(self, geojson: GeoJSONObject | Mapping[str, Any] | str) -> Query:
        """Search with a GeoJSON object

        Mappings are JSON-encoded; strings are assumed to be GeoJSON text
        already and are sent unchanged.
        """
        text = geojson if isinstance(geojson, str) else json.dumps(geojson)
        return self._set(Clause.OBJECT, "OBJECT", text)

    def tile(self, x: int, y: int, z: int) -> Query:
        return self._set(Clause.TILE, "TILE", x, y, z)

    def quad_key(self, key: str) -> Query:
        return self._set(Clause.QUAD_KEY, "QUADKEY", key)

    def hash(self, geohash: str) -> Query:
        return self._set(Clause.HASH, "HASH", geohash)

    def circle(self, lat: float, lon: float, meters: float) -> Query:
        """Search area for WITHIN / INTERSECTS"""
        return self._set(Clause.CIRCLE, "CIRCLE", lat, lon, meters)

    def point(self, lat: float, lon: float, meters: float | None = None) -> Query:
        """Center point for NEARBY; *meters* is omitted from the command when None"""
        if meters is None:
            return self._set(Clause.POINT, "POINT", lat, lon)
        return self._set(Clause.POINT, "POINT", lat, lon, meters)

    def roam(self, key: str, pattern: str, meters: float) -> Query:
        """Roaming geofence for NEARBY: objects in *key* matching *pattern* within *meters*"""
        return self._set(Clause.ROAM, "ROAM", key, pattern, meters)

    # -- serialization -------------------------------------------------------

    def serialize(self) -> list[Arg]:
        """Return all arguments of the command, key first

        Safe to call any number of times; the builder is not modified.

        Returns:
            Flat argument list, e.g. ``["fleet", "MATCH", "truck*", "POINT", 33.4, -112.2]``
        """
        args: list[Arg] = [self._key]
        for clause in Clause:
            if clause.repeatable:
                for fragment in self._repeated.get(clause, ()):
                    args.extend(fragment)
            elif clause in self._singular:
                args.extend(self._singular[clause])
        return args

    def command_str(self) -> str:
        """The command exactly as it is sent to the server (without line ending)"""
        return " ".join([self._search_type, *(str(a) for a in self.serialize())])

    def __repr__(self) -> str:
        return f"Query({self.command_str()!r})"

    # -- execution -----------------------------------------------------------

    def _require_client(self) -> Tile38:
        if self._client is None:
            raise RuntimeError(
                "Query is not bound to a client; create it with Tile38."
                f"{self._search_type.lower()}_query()"
            )
        return self._client

    def execute(self) -> Any:
        """Run the search once through the client's executor

        Returns:
            Whatever the executor returns (an awaitable for async executors)

        Raises:
            RuntimeError: If the query is not bound to a client
        """
        return self._require_client().execute(self._search_type, self.serialize())

    def execute_fence(self, callback: ReplyCallback) -> LiveGeofence:
        """Open a live geofence for this search

        *callback* is called as ``callback(error, payload)`` for every
        notification until the returned ``LiveGeofence`` is closed.
        Must be called from a running event loop.
        """
        client = self._require_client()
        self.fence()
        return client.open_live_fence(self._search_type, self.serialize(), callback)

    # -- factories for unbound queries ---------------------------------------

    @classmethod
    def intersects(cls, key: str) -> Query:
        return cls(SearchType.INTERSECTS, key)

    @classmethod
    def search(cls, key: str) -> Query:
        return cls(SearchType.SEARCH, key)

    @classmethod
    def nearby(cls, key: str) -> Query:
        return cls(SearchType.NEARBY, key)

    @classmethod
    def scan(cls, key: str) -> Query:
        return cls(SearchType.SCAN, key)

    @classmethod
    def within(cls, key: str) -> Query:
        return cls(SearchType.WITHIN, key)
