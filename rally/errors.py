from __future__ import annotations


class RallyError(Exception):
    """Base class for errors raised by the terrain/streaming/pathing core."""


class ConfigError(RallyError, ValueError):
    """An option is missing or out of range.

    Raised by builders; orchestration code catches it, logs it and disables
    the dependent feature instead of crashing the process.
    """
