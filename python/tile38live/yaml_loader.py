"""YAML loader for declarative Tile38 searches

Loads search definitions from YAML files or strings and builds them
through the ``Query`` builder.

Usage:
    from tile38live import load_queries

    queries = load_queries('''
    queries:
      - name: trucks near depot
        command: nearby
        key: fleet
        match: truck*
        detect: [enter, exit]
        point: [33.46, -112.26, 6000]
    ''')

    for named in queries:
        print(named.name, named.query.command_str())

YAML Schema
============

Every entry needs ``command`` (intersects|nearby|scan|search|within) and
``key``; ``name`` is optional.  The remaining keys are builder clauses::

    cursor: 10                    # cursor / limit / sparse: integer
    match: truck*                 # string or list of strings
    where:                        # list of [field, criteria...]
      - [speed, 0, 70]
    where_in:                     # mapping field -> list of values
      doors: [2, 4]
    where_eval:                   # list of [script, args...]
      - ["return FIELDS.speed > tonumber(ARGV[1])", 50]
    where_eval_sha:               # list of [sha, args...]
      - [a1b2c3, 50]
    order: desc                   # asc|desc
    distance: true                # distance / clip / nofields / fence: flags
    detect: [enter, exit]         # list or comma separated string
    commands: set,del             # list or comma separated string
    output: ids                   # count|ids|objects|points|bounds, or [hashes, 6]
    get_object: [fleet, truck1]
    bounds: [33.4, -112.3, 33.5, -112.2]
    object: {type: Point, coordinates: [-112.26, 33.46]}
    tile: [10, 20, 5]
    quad_key: "0231"
    hash: 9tbnthxzr
    circle: [33.46, -112.26, 500]
    point: [33.46, -112.26, 6000] # meters optional
    roam: [fleet, "truck*", 500]
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TypeGuard

from .config import is_str_dict, load_yaml
from .errors import ConfigError, ValidationError
from .protocols import Arg, OutputType, SearchType
from .query import Query


@dataclass(frozen=True)
class NamedQuery:
    """A query loaded from YAML, with the name used for reporting"""
    name: str
    query: Query


# ============================================================================
# Type guards and field accessors
# ============================================================================

def _is_object_list(val: object) -> TypeGuard[list[object]]:
    """Narrow an unknown value to ``list[object]``."""
    return isinstance(val, list)


def _is_arg(val: object) -> TypeGuard[Arg]:
    return isinstance(val, (str, int, float)) and not isinstance(val, bool)


def _args(val: object, clause: str, name: str, count: int | None = None) -> list[Arg]:
    """A list of scalar arguments, optionally of an exact length."""
    if not _is_object_list(val) or not all(_is_arg(v) for v in val):
        raise ConfigError(f"Query '{name}': '{clause}' must be a list of scalars")
    if count is not None and len(val) != count:
        raise ConfigError(f"Query '{name}': '{clause}' expects {count} values, got {len(val)}")
    return [v for v in val if _is_arg(v)]


def _int(val: object, clause: str, name: str) -> int:
    if isinstance(val, int) and not isinstance(val, bool):
        return val
    raise ConfigError(f"Query '{name}': '{clause}' must be an integer")


def _str(val: object, clause: str, name: str) -> str:
    if isinstance(val, str):
        return val
    raise ConfigError(f"Query '{name}': '{clause}' must be a string")


def _str_list(val: object, clause: str, name: str) -> list[str]:
    """A string, or a list of strings."""
    if isinstance(val, str):
        return [val]
    if _is_object_list(val) and all(isinstance(v, str) for v in val):
        return [str(v) for v in val]
    raise ConfigError(f"Query '{name}': '{clause}' must be a string or a list of strings")


def _fragments(val: object, clause: str, name: str) -> list[list[Arg]]:
    """A list of non-empty argument lists."""
    if not _is_object_list(val):
        raise ConfigError(f"Query '{name}': '{clause}' must be a list of lists")
    fragments = [_args(v, clause, name) for v in val]
    if not all(fragments):
        raise ConfigError(f"Query '{name}': '{clause}' entries must not be empty")
    return fragments


def _flag(val: object, clause: str, name: str) -> bool:
    if isinstance(val, bool):
        return val
    raise ConfigError(f"Query '{name}': '{clause}' must be true or false")


# ============================================================================
# Clause appliers
# ============================================================================

def _apply_match(q: Query, val: object, name: str) -> None:
    for pattern in _str_list(val, "match", name):
        q.match(pattern)


def _apply_where(q: Query, val: object, name: str) -> None:
    for field, *criteria in _fragments(val, "where", name):
        q.where(str(field), *criteria)


def _apply_where_in(q: Query, val: object, name: str) -> None:
    if not is_str_dict(val):
        raise ConfigError(f"Query '{name}': 'where_in' must be a mapping of field to values")
    for field, values in val.items():
        q.where_in(field, *_args(values, "where_in", name))


def _apply_where_eval(q: Query, val: object, name: str) -> None:
    for script, *args in _fragments(val, "where_eval", name):
        q.where_eval(str(script), *args)


def _apply_where_eval_sha(q: Query, val: object, name: str) -> None:
    for sha, *args in _fragments(val, "where_eval_sha", name):
        q.where_eval_sha(str(sha), *args)


def _apply_order(q: Query, val: object, name: str) -> None:
    order = _str(val, "order", name).lower()
    if order == "asc":
        q.asc()
    elif order == "desc":
        q.desc()
    else:
        raise ConfigError(f"Query '{name}': 'order' must be asc or desc, got '{val}'")


def _apply_output(q: Query, val: object, name: str) -> None:
    if isinstance(val, str):
        if val == OutputType.HASHES.value:
            raise ConfigError(f"Query '{name}': output 'hashes' requires a precision, e.g. [hashes, 6]")
        if val not in {t.value for t in OutputType}:
            raise ConfigError(f"Query '{name}': unknown output '{val}'")
        q.output(val)
        return

    args = _args(val, "output", name, count=2)
    if args[0] != OutputType.HASHES.value:
        raise ConfigError(f"Query '{name}': only 'hashes' output takes a precision")
    try:
        q.hashes(_int(args[1], "output", name))
    except ValidationError as e:
        raise ConfigError(f"Query '{name}': {e}") from e


def _apply_flag(clause: str, setter: Callable[[Query], Query]) -> Callable[[Query, object, str], None]:
    def apply(q: Query, val: object, name: str) -> None:
        if _flag(val, clause, name):
            setter(q)
    return apply


def _apply_point(q: Query, val: object, name: str) -> None:
    args = _args(val, "point", name)
    if len(args) not in (2, 3):
        raise ConfigError(f"Query '{name}': 'point' expects [lat, lon] or [lat, lon, meters]")
    q.point(*args)  # type: ignore[arg-type]


def _apply_object(q: Query, val: object, name: str) -> None:
    if isinstance(val, str) or is_str_dict(val):
        q.object(val)
        return
    raise ConfigError(f"Query '{name}': 'object' must be a GeoJSON mapping or string")


_APPLIERS: dict[str, Callable[[Query, object, str], object]] = {
    "cursor": lambda q, v, n: q.cursor(_int(v, "cursor", n)),
    "limit": lambda q, v, n: q.limit(_int(v, "limit", n)),
    "sparse": lambda q, v, n: q.sparse(_int(v, "sparse", n)),
    "match": _apply_match,
    "order": _apply_order,
    "distance": _apply_flag("distance", Query.distance),
    "where": _apply_where,
    "where_in": _apply_where_in,
    "where_eval": _apply_where_eval,
    "where_eval_sha": _apply_where_eval_sha,
    "clip": _apply_flag("clip", Query.clip),
    "nofields": _apply_flag("nofields", Query.nofields),
    "fence": _apply_flag("fence", Query.fence),
    "detect": lambda q, v, n: q.detect(*_str_list(v, "detect", n)),
    "commands": lambda q, v, n: q.commands(*_str_list(v, "commands", n)),
    "output": _apply_output,
    "get_object": lambda q, v, n: q.get_object(*map(str, _args(v, "get_object", n, count=2))),
    "bounds": lambda q, v, n: q.bounds(*_args(v, "bounds", n, count=4)),  # type: ignore[arg-type]
    "object": _apply_object,
    "tile": lambda q, v, n: q.tile(*_args(v, "tile", n, count=3)),  # type: ignore[arg-type]
    "quad_key": lambda q, v, n: q.quad_key(_str(v, "quad_key", n)),
    "hash": lambda q, v, n: q.hash(_str(v, "hash", n)),
    "point": _apply_point,
    "circle": lambda q, v, n: q.circle(*_args(v, "circle", n, count=3)),  # type: ignore[arg-type]
    "roam": lambda q, v, n: q.roam(*_args(v, "roam", n, count=3)),  # type: ignore[arg-type]
}

_RESERVED_KEYS = frozenset({"name", "command", "key"})


# ============================================================================
# Public API
# ============================================================================

def load_queries(source: str | Path) -> list[NamedQuery]:
    """Load search definitions from a YAML file or YAML string.

    Args:
        source: Path to .yaml/.yml file, or a YAML string

    Returns:
        List of NamedQuery objects; queries are not bound to a client

    Raises:
        ConfigError: Invalid query definition (unknown command or clause, bad values)
        FileNotFoundError: File path doesn't exist
    """
    raw = load_yaml(source, "queries:")

    if not is_str_dict(raw) or "queries" not in raw:
        raise ConfigError("YAML must contain a 'queries' list")

    entries = raw["queries"]
    if not _is_object_list(entries):
        raise ConfigError("YAML must contain a 'queries' list")

    queries: list[NamedQuery] = []
    for index, entry in enumerate(entries, 1):
        if not is_str_dict(entry):
            raise ConfigError("Each query must be a YAML mapping")
        queries.append(_parse_query(entry, index))
    return queries


def _parse_query(entry: dict[str, object], index: int) -> NamedQuery:
    """Parse a single query entry from the YAML."""
    raw_name = entry.get("name")
    name = raw_name if isinstance(raw_name, str) else f"query-{index}"

    command = _str(entry.get("command"), "command", name).upper()
    if command not in {t.value for t in SearchType}:
        raise ConfigError(f"Query '{name}': unknown command '{command}'")
    key = _str(entry.get("key"), "key", name)

    query = Query(SearchType(command), key)
    for clause, value in entry.items():
        if clause in _RESERVED_KEYS:
            continue
        apply = _APPLIERS.get(clause)
        if apply is None:
            raise ConfigError(f"Query '{name}': unknown clause '{clause}'")
        apply(query, value, name)

    return NamedQuery(name=name, query=query)
