"""
Error kinds for routing and resolution.

Each exception carries the ErrorKind that decides how it propagates.
"""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Failure categories used by the router and the controller."""
    CONFIG_CONFLICT = "config_conflict"    # Mutually exclusive params both set
    TRANSIENT = "transient"                # Timeout, rate limit, 5xx
    FATAL = "fatal"                        # Auth, malformed request
    BUDGET_EXHAUSTED = "budget_exhausted"  # Forces direct mode, never raised
    UNKNOWN_RATE = "unknown_rate"          # Cost recorded as 0, never raised


class RoutingError(Exception):
    """Base class for failures raised by the model router."""
    kind: ErrorKind = ErrorKind.FATAL

    def __init__(self, message: str, family: Optional[str] = None):
        super().__init__(message)
        self.family = family


class ConfigConflictError(RoutingError, ValueError):
    """Raised when reasoning effort and temperature are both requested."""
    kind = ErrorKind.CONFIG_CONFLICT


class TransientError(RoutingError):
    """Retryable failure: timeout, rate limit or transient upstream error."""
    kind = ErrorKind.TRANSIENT


class FatalError(RoutingError):
    """Non-retryable failure: authentication or malformed request."""
    kind = ErrorKind.FATAL


class FallbackExhaustedError(TransientError):
    """Raised when every tier failed transiently."""

    def __init__(self, message: str, family: Optional[str] = None, attempts: int = 0):
        super().__init__(message, family)
        self.attempts = attempts


class ResolutionError(Exception):
    """Raised when the root query of a resolution fails."""

    def __init__(self, message: str, node_id: Optional[str] = None):
        super().__init__(message)
        self.node_id = node_id


class ResolutionCancelled(ResolutionError):
    """Raised when a resolution is cancelled before the root completes."""


class ResolutionTimeout(ResolutionError):
    """Raised when a resolution exceeds its deadline."""
