"""Command-line interface for tile38live

Subcommands:
    command  print the command lines built from a YAML query file
    fence    open a live geofence per query and print every notification

Usage:
    python -m tile38live command queries.yaml
    python -m tile38live fence queries.yaml --host geo.internal --port 9851
    python -m tile38live fence queries.yaml --config tile38.yaml --log-level debug

Notifications are printed one JSON object per line:

    {"query": "trucks near depot", "error": null, "payload": {...}}
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, NoReturn

from .client import Tile38
from .config import Tile38Config, load_config
from .errors import ConfigError
from .live_geofence import LiveGeofence
from .yaml_loader import NamedQuery, load_queries


logger = logging.getLogger(__name__)


# ============================================================================
# Exit codes
# ============================================================================

_EXIT_OK = 0
_EXIT_DISCONNECTED = 1
_EXIT_ERROR = 2


# ============================================================================
# Helpers
# ============================================================================

def _die(msg: str) -> NoReturn:
    """Print error to stderr and exit with code 2."""
    print(f"Error: {msg}", file=sys.stderr)
    sys.exit(_EXIT_ERROR)


def _load_queries_from_args(args: argparse.Namespace) -> list[NamedQuery]:
    queries = load_queries(args.queries)
    if not queries:
        _die(f"no queries defined in {args.queries}")
    return queries


def _server_config(args: argparse.Namespace) -> Tile38Config:
    """Environment, then --config, then individual flags."""
    config = Tile38Config.from_env()
    config_path: str | None = getattr(args, "config", None)
    if config_path:
        config = load_config(config_path, base=config)
    return config.with_overrides(
        host=getattr(args, "host", None),
        port=getattr(args, "port", None),
        password=getattr(args, "password", None),
    )


def format_event(name: str, error: str | None, payload: Any) -> str:
    """One output line for a live geofence notification."""
    return json.dumps({"query": name, "error": error, "payload": payload})


# ============================================================================
# Subcommands
# ============================================================================

def _cmd_command(args: argparse.Namespace) -> int:
    """Print the command line of every query."""
    queries = _load_queries_from_args(args)

    if getattr(args, "json", False):
        out = [
            {
                "name": named.name,
                "command": named.query.search_type,
                "args": named.query.serialize(),
            }
            for named in queries
        ]
        print(json.dumps(out, indent=2))
    else:
        for named in queries:
            print(f"{named.name}: {named.query.command_str()}")

    return _EXIT_OK


async def _run_fences(config: Tile38Config, queries: list[NamedQuery]) -> int:
    """Open every fence and wait until all are closed.

    Returns the number of fences closed by the server or the network.
    """
    client = Tile38(config)
    fences: list[LiveGeofence] = []
    lost: list[str] = []

    def printer(name: str):
        def on_event(error: str | None, payload: Any) -> None:
            print(format_event(name, error, payload), flush=True)
        return on_event

    def on_lost(name: str):
        def on_close(explicit: bool) -> None:
            logger.warning("live geofence '%s' closed (explicit=%s)", name, explicit)
            lost.append(name)
        return on_close

    try:
        for named in queries:
            query = named.query.fence()
            fence = client.open_live_fence(
                query.search_type,
                query.serialize(),
                printer(named.name),
            )
            fence.on_close(on_lost(named.name))
            fences.append(fence)
            logger.info("opened live geofence '%s': %s", named.name, query.command_str())

        await asyncio.gather(*(fence.wait_closed() for fence in fences))
    finally:
        client.close()

    return len(lost)


def _cmd_fence(args: argparse.Namespace) -> int:
    """Stream live geofence notifications until every fence is closed."""
    queries = _load_queries_from_args(args)
    config = _server_config(args)

    try:
        lost = asyncio.run(_run_fences(config, queries))
    except KeyboardInterrupt:
        return _EXIT_OK

    return _EXIT_DISCONNECTED if lost else _EXIT_OK


# ============================================================================
# Argument parser
# ============================================================================

def _build_parser() -> argparse.ArgumentParser:
    """Build the top-level argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="tile38live",
        description="Tile38 query builder and live geofence client",
    )
    parser.add_argument(
        "--log-level",
        default="warning",
        choices=["debug", "info", "warning", "error"],
        help="logging level (default: warning)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # -- command -------------------------------------------------------------
    p_command = subparsers.add_parser(
        "command",
        help="print the commands built from a YAML query file",
    )
    p_command.add_argument("queries", help=".yaml file with query definitions")
    p_command.add_argument("--json", action="store_true", help="output as JSON")

    # -- fence ---------------------------------------------------------------
    p_fence = subparsers.add_parser(
        "fence",
        help="open live geofences and print notifications as JSON lines",
    )
    p_fence.add_argument("queries", help=".yaml file with query definitions")
    p_fence.add_argument("--config", help=".yaml file with a 'server' section")
    p_fence.add_argument("--host", help="server host (default: $TILE38_HOST or localhost)")
    p_fence.add_argument("--port", type=int, help="server port (default: $TILE38_PORT or 9851)")
    p_fence.add_argument("--password", help="server password (default: $TILE38_PASSWORD)")

    return parser


# ============================================================================
# Entry point
# ============================================================================

_COMMANDS = {
    "command": _cmd_command,
    "fence": _cmd_fence,
}


def main(argv: list[str] | None = None) -> int:
    """CLI entry point. Returns exit code."""
    parser = _build_parser()

    try:
        args = parser.parse_args(argv)
        logging.basicConfig(
            level=args.log_level.upper(),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            stream=sys.stderr,
        )
        handler = _COMMANDS[args.command]
        return handler(args)
    except SystemExit as e:
        return e.code if isinstance(e.code, int) else _EXIT_ERROR
    except (FileNotFoundError, ConfigError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return _EXIT_ERROR
