"""Connection settings for the Tile38 server

Settings come from keyword arguments, the environment or a YAML document:

    config = Tile38Config.from_env()              # TILE38_HOST / TILE38_PORT / TILE38_PASSWORD
    config = load_config("tile38.yaml")           # server: {host, port, password}
    config = load_config('''
    server:
      host: geo.internal
      port: 9851
    ''')
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, replace
from pathlib import Path
from typing import TypeGuard

import yaml  # type: ignore[import-untyped]

from .errors import ConfigError


DEFAULT_HOST = "localhost"
DEFAULT_PORT = 9851

ENV_HOST = "TILE38_HOST"
ENV_PORT = "TILE38_PORT"
ENV_PASSWORD = "TILE38_PASSWORD"


@dataclass(frozen=True)
class Tile38Config:
    """Where and how to connect to a Tile38 server"""
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    password: str | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Tile38Config:
        """Build a config from ``TILE38_*`` environment variables

        Unset variables keep their defaults.

        Raises:
            ConfigError: If TILE38_PORT is not an integer
        """
        env = os.environ if environ is None else environ
        port_text = env.get(ENV_PORT)
        try:
            port = int(port_text) if port_text else DEFAULT_PORT
        except ValueError as e:
            raise ConfigError(f"{ENV_PORT} must be an integer, got {port_text!r}") from e
        return cls(
            host=env.get(ENV_HOST) or DEFAULT_HOST,
            port=port,
            password=env.get(ENV_PASSWORD) or None,
        )

    def with_overrides(
        self,
        host: str | None = None,
        port: int | None = None,
        password: str | None = None,
    ) -> Tile38Config:
        """Copy with the given non-None fields replaced"""
        changes: dict[str, object] = {}
        if host is not None:
            changes["host"] = host
        if port is not None:
            changes["port"] = port
        if password is not None:
            changes["password"] = password
        return replace(self, **changes)  # type: ignore[arg-type]


# ============================================================================
# YAML loading
# ============================================================================

def is_str_dict(val: object) -> TypeGuard[dict[str, object]]:
    """Narrow an unknown value to ``dict[str, object]``.

    YAML ``safe_load`` always produces dicts with string keys, so an
    ``isinstance(val, dict)`` check is sufficient at runtime.
    """
    return isinstance(val, dict)


def load_yaml(source: str | Path, inline_marker: str) -> object:
    """Load YAML from a file path or string.

    A string containing a newline, or starting with *inline_marker*, is
    parsed as YAML; any other string is treated as a file path.

    Raises:
        FileNotFoundError: File path doesn't exist
        ConfigError: Malformed YAML
    """
    try:
        if isinstance(source, Path):
            with open(source, encoding="utf-8") as f:
                return yaml.safe_load(f)  # type: ignore[no-any-return]

        if "\n" in source or source.lstrip().startswith(inline_marker):
            return yaml.safe_load(source)  # type: ignore[no-any-return]

        path = Path(source)
        if not path.exists():
            raise FileNotFoundError(f"YAML file not found: {source}")
        with open(path, encoding="utf-8") as f:
            return yaml.safe_load(f)  # type: ignore[no-any-return]
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML: {e}") from e


def load_config(source: str | Path, base: Tile38Config | None = None) -> Tile38Config:
    """Load connection settings from the ``server`` section of a YAML document

    Args:
        source: Path to a .yaml/.yml file, or a YAML string
        base: Settings to start from (default: ``Tile38Config()``)

    Returns:
        *base* with the values found in the document applied

    Raises:
        ConfigError: Invalid or mistyped settings
        FileNotFoundError: File path doesn't exist
    """
    raw = load_yaml(source, "server:")
    config = base or Tile38Config()

    if raw is None:
        return config
    if not is_str_dict(raw):
        raise ConfigError("YAML document must be a mapping")

    server = raw.get("server")
    if server is None:
        return config
    if not is_str_dict(server):
        raise ConfigError("'server' must be a mapping")

    host = server.get("host")
    if host is not None and not isinstance(host, str):
        raise ConfigError("'server.host' must be a string")

    port = server.get("port")
    if port is not None and (not isinstance(port, int) or isinstance(port, bool)):
        raise ConfigError("'server.port' must be an integer")

    password = server.get("password")
    if password is not None and not isinstance(password, (str, int)):
        raise ConfigError("'server.password' must be a string")

    return config.with_overrides(
        host=host,
        port=port,
        password=str(password) if password is not None else None,
    )
