"""Error taxonomy for requests against the Hardcover API."""
from enum import Enum


class ErrorKind(str, Enum):
    AUTH_FAILED = "AUTH_FAILED"
    RATE_LIMITED = "RATE_LIMITED"
    SERVER_ERROR = "SERVER_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    GRAPHQL_ERROR = "GRAPHQL_ERROR"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    INVALID_LINK = "INVALID_LINK"


class HardcoverError(Exception):
    """Base exception for everything the client classifies."""
    kind = ErrorKind.GRAPHQL_ERROR

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind.value)
        # Set when an update hit a finished/missing read and the create fallback failed too
        self.session_invalidated = False


class AuthFailedError(HardcoverError):
    """Missing or rejected API token. Needs user action, never retried."""
    kind = ErrorKind.AUTH_FAILED


class RateLimitedError(HardcoverError):
    kind = ErrorKind.RATE_LIMITED


class ServerError(HardcoverError):
    kind = ErrorKind.SERVER_ERROR


class NetworkError(HardcoverError):
    kind = ErrorKind.NETWORK_ERROR


class GraphQLError(HardcoverError):
    kind = ErrorKind.GRAPHQL_ERROR


class CircuitOpenError(HardcoverError):
    """Rejected locally by the failure gate; the network was not touched."""
    kind = ErrorKind.CIRCUIT_OPEN

    def __init__(self, message: str = "", retry_after: float = 0.0):
        super().__init__(message)
        self.retry_after = retry_after


class InvalidLinkError(HardcoverError):
    """The stored user_book no longer exists on Hardcover."""
    kind = ErrorKind.INVALID_LINK
