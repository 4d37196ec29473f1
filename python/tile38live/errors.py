"""Exception hierarchy for tile38live

Errors raised synchronously by the builder and the loaders derive from
``Tile38Error``.  ``ServerError`` and ``FatalServerError`` are handed to
the RESP decoder as its reply/protocol error classes, so decoded error
frames arrive already classified.
"""


class Tile38Error(Exception):
    """Base exception for all tile38live errors"""


class ValidationError(Tile38Error, ValueError):
    """Builder argument rejected before any command is sent"""


class ConfigError(Tile38Error, ValueError):
    """Invalid configuration or query definition (YAML, environment)"""


class ServerError(Tile38Error):
    """Error reply from the server; the connection stays usable"""


class FatalServerError(Tile38Error):
    """Unrecoverable protocol error; the connection must be dropped"""
