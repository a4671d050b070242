"""
Error types raised by the k3sfn controller.

Every error carries a ``retryable`` flag that the worker loop consults to decide
between re-queueing a key with backoff and dropping it outright.
"""

from typing import Optional


class ControllerError(Exception):
    """Base class for controller errors."""

    retryable = True


class InvalidKeyError(ControllerError):
    """Queue item is not a valid ``namespace/name`` key."""

    retryable = False


class InvalidFunctionError(ControllerError):
    """Function declaration cannot be decoded or is missing required fields."""

    retryable = False


class NotFoundError(ControllerError):
    """Platform object does not exist."""


class TransientAPIError(ControllerError):
    """Any other platform API failure, including deadline expiry."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ConfigParseError(ControllerError):
    """Malformed controller configuration (deployment defaults, runtime images)."""


class DiscoveryError(ControllerError):
    """API group/version lookup failed."""
