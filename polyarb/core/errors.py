"""Exception hierarchy and execution error classification."""

from __future__ import annotations

from enum import StrEnum


class ArbError(Exception):
    """Base class for engine errors."""


class ConnectorError(ArbError):
    """An exchange connector failed to quote, build or read pool state."""


class OracleError(ArbError):
    """The price oracle could not produce a price or impact estimate."""


class ChainError(ArbError):
    """The chain client rejected or failed a call."""


class ErrorKind(StrEnum):
    """Execution failure classes. Everything but TERMINAL is retried."""

    NONCE_TOO_LOW = "nonce_too_low"
    UNDERPRICED = "underpriced"
    TIMEOUT = "timeout"
    NETWORK = "network"
    TERMINAL = "terminal"


# Order matters: "replacement transaction underpriced" must match before
# the generic network markers.
_RETRYABLE_MARKERS: tuple[tuple[str, ErrorKind], ...] = (
    ("nonce too low", ErrorKind.NONCE_TOO_LOW),
    ("replacement transaction underpriced", ErrorKind.UNDERPRICED),
    ("transaction underpriced", ErrorKind.UNDERPRICED),
    ("timeout", ErrorKind.TIMEOUT),
    ("timed out", ErrorKind.TIMEOUT),
    ("network error", ErrorKind.NETWORK),
    ("connection", ErrorKind.NETWORK),
)


def classify_error(exc: BaseException) -> ErrorKind:
    """Map an exception raised during submission to an ErrorKind.

    Args:
        exc: Exception raised by the chain client or a helper

    Returns:
        Matching ErrorKind, TERMINAL when nothing matches
    """
    if isinstance(exc, ExecutionError):
        return exc.kind
    if isinstance(exc, TimeoutError):
        return ErrorKind.TIMEOUT
    if isinstance(exc, ConnectionError):
        return ErrorKind.NETWORK

    message = str(exc).lower()
    for marker, kind in _RETRYABLE_MARKERS:
        if marker in message:
            return kind
    return ErrorKind.TERMINAL


class ExecutionError(ArbError):
    """Failure while building, submitting or confirming a transaction."""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.TERMINAL) -> None:
        super().__init__(message)
        self.kind = kind

    @property
    def retryable(self) -> bool:
        return self.kind is not ErrorKind.TERMINAL
