"""Error types and connection-loss classification for Postgres queries."""
import errno
import re
import socket
from typing import Optional


class QueryRouterError(Exception):
    """Base class for all query router errors."""


class RejectedQueryError(QueryRouterError):
    """Query violates the read-only / row-limit policy."""


class DatabaseConnectionError(QueryRouterError):
    """No usable connection could be negotiated."""


class ExecutionError(QueryRouterError):
    """A query failed while running against the database."""

    def __init__(self, message: str, original: Optional[BaseException] = None):
        super().__init__(message)
        self.original = original


class TransientConnectionError(ExecutionError):
    """Execution failed because the transport dropped; safe to retry once."""


class UnclassifiedExecutionError(ExecutionError):
    """Execution failed for any other reason; never retried."""


class SuggestionError(QueryRouterError):
    """The AI suggestion call failed."""


class SuggestionParseError(SuggestionError):
    """The AI response could not be read as a suggestion."""


class ConnectionLossClassifier:
    """Recognizes errors that mean the database transport went away."""

    CONNECTION_LOSS_CODES = frozenset({
        "ECONNRESET",
        "ENOTFOUND",
        "EHOSTUNREACH",
    })

    CONNECTION_LOSS_PATTERNS = [
        r"connection terminated",
        r"connection was closed in the middle of operation",
        r"connection is closed",
    ]

    @classmethod
    def error_code(cls, error: BaseException) -> Optional[str]:
        """
        Machine code of an error, in the errno-name form.

        Args:
            error: Exception raised by the driver or the socket layer

        Returns:
            Code such as "ECONNRESET", or None when the error carries none
        """
        # getaddrinfo failures are the "host not found" case
        if isinstance(error, socket.gaierror):
            return "ENOTFOUND"

        if isinstance(error, OSError) and error.errno is not None:
            return errno.errorcode.get(error.errno)

        if isinstance(error, ConnectionResetError):
            return "ECONNRESET"

        code = getattr(error, "code", None)
        if isinstance(code, str):
            return code

        return None

    @classmethod
    def is_connection_loss(cls, error: BaseException) -> bool:
        """
        Determine if an error matches a connection-loss signature.

        Args:
            error: Exception to check

        Returns:
            True if the transport dropped, False for query-semantic errors
        """
        if cls.error_code(error) in cls.CONNECTION_LOSS_CODES:
            return True

        message = str(error)
        for pattern in cls.CONNECTION_LOSS_PATTERNS:
            if re.search(pattern, message, re.IGNORECASE):
                return True

        return False


def error_message(error: BaseException) -> str:
    """Human-readable description of an error, never empty."""
    message = str(error).strip()
    return message or error.__class__.__name__


def is_connection_loss(error: BaseException) -> bool:
    """
    Convenience function to check if an error is a connection loss.

    Args:
        error: Exception to check

    Returns:
        True if the error matches a connection-loss signature
    """
    return ConnectionLossClassifier.is_connection_loss(error)


def classify_error(error: BaseException) -> ExecutionError:
    """Wrap a raw execution failure in the matching ExecutionError subclass."""
    if is_connection_loss(error):
        return TransientConnectionError(error_message(error), original=error)
    return UnclassifiedExecutionError(error_message(error), original=error)
