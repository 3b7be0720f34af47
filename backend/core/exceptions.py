"""Custom exceptions for the speed monitor."""

from typing import Optional


class SpeedMonitorError(Exception):
    """Base exception for the speed monitor."""

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code.

        Args:
            message: Exception message (safe to return to the client)
            status_code: HTTP status code
        """
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class BadRequestError(SpeedMonitorError):
    """Malformed or incomplete request."""

    def __init__(self, message: str = "Bad request"):
        super().__init__(message, 400)


class UnauthenticatedError(SpeedMonitorError):
    """No credential was supplied at all."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message, 401)


class InvalidCredentialError(SpeedMonitorError):
    """A supplied credential failed verification."""

    def __init__(self, message: str = "Invalid credentials", status_code: int = 401):
        super().__init__(message, status_code)


class InvalidCredentialsError(InvalidCredentialError):
    """Username/password login failed. Never says which half was wrong."""

    def __init__(self):
        super().__init__("Invalid credentials", 401)


class TokenExpiredError(InvalidCredentialError):
    """Bearer token is past its expiry."""

    def __init__(self):
        super().__init__("Token expired", 401)


class InvalidTokenError(InvalidCredentialError):
    """Bearer token signature or structure is invalid."""

    def __init__(self):
        super().__init__("Invalid token", 403)


class InvalidApiKeyError(InvalidCredentialError):
    """No active, unexpired key matched. Deliberately generic."""

    def __init__(self):
        super().__init__("Invalid API key", 403)


class ForbiddenError(SpeedMonitorError):
    """Credential is valid but the role or permission is insufficient."""

    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(message, 403)


class NotFoundError(SpeedMonitorError):
    """Resource not found exception."""

    def __init__(self, message: str = "Resource not found"):
        super().__init__(message, 404)


class RateLimitedError(SpeedMonitorError):
    """Request volume ceiling exceeded for a route class."""

    def __init__(self, retry_after: int, route_class: Optional[str] = None):
        self.retry_after = retry_after
        self.route_class = route_class
        super().__init__("Too many requests", 429)


class StoreUnavailableError(SpeedMonitorError):
    """The credential or results database could not be reached in time."""

    def __init__(self, message: str = "Store unavailable"):
        super().__init__(message, 500)


class AuthenticationError(StoreUnavailableError):
    """Transient failure while looking up credentials."""

    def __init__(self, message: str = "Authentication error"):
        super().__init__(message)


class ConflictError(SpeedMonitorError):
    """Resource conflict exception."""

    def __init__(self, message: str = "Resource conflict"):
        super().__init__(message, 409)


class SpeedtestError(SpeedMonitorError):
    """The measurement tool failed or produced unusable output."""

    def __init__(self, message: str = "Speed test failed"):
        super().__init__(message, 502)
