#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
A duplicate post is deliberately absent: the post store reports it as a
``None`` result rather than raising.
"""

from typing import Optional


class GatorError(Exception):
    """Base class for errors the CLI reports as ``Error: <message>``."""


class FetchError(GatorError):
    """Raised when a feed cannot be retrieved or parsed.

    Attributes:
        url: The feed URL that failed.
    """

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class StoreError(GatorError):
    """Raised for persistence failures other than the duplicate-URL outcome.

    Attributes:
        operation: Name of the store operation that failed.
    """

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation


class ConfigError(GatorError):
    """Raised when configuration is missing or malformed."""


class UsageError(GatorError):
    """Raised when a command is invoked with bad arguments."""


class CommandError(GatorError):
    """Raised when a command's preconditions are not met (unknown user, etc.)."""


__all__ = ["GatorError", "FetchError", "StoreError", "ConfigError", "UsageError", "CommandError"]
