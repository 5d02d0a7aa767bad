"""Error taxonomy for the auth core.

Every error carries the HTTP status it maps to, so the request boundary in
``auth_service.main`` can translate it without knowing the concrete class.
"""

__all__ = [
    "AuthError",
    "ValidationError",
    "NotFound",
    "Unauthenticated",
    "InvalidToken",
    "Forbidden",
    "InvalidOrExpired",
    "DeliveryError",
    "ChannelAuthError",
    "TransientDeliveryError",
    "ConfigError",
]


class AuthError(Exception):
    """Base class for all auth-core errors."""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class ValidationError(AuthError):
    """Malformed or missing input."""

    status_code = 400
    default_message = "Invalid input"


class NotFound(AuthError):
    status_code = 404
    default_message = "Resource not found"


class Unauthenticated(AuthError):
    status_code = 401
    default_message = "Authentication required. Please log in."


class InvalidToken(Unauthenticated):
    """Bad signature, expired, or structurally broken session token.

    Raised with the same message whichever check failed.
    """

    default_message = "Invalid token. Please log in again."


class Forbidden(AuthError):
    status_code = 403
    default_message = "You do not have permission to perform this action"


class InvalidOrExpired(AuthError):
    """A recovery token or OTP failed its checks."""

    status_code = 400
    default_message = "Token is invalid or has expired"


class DeliveryError(AuthError):
    """Notification could not be delivered."""

    status_code = 500
    default_message = "Failed to deliver notification"


class ChannelAuthError(DeliveryError):
    """Channel rejected our credentials or is misconfigured. Never retried."""


class TransientDeliveryError(DeliveryError):
    """Network or server hiccup. Safe to retry."""


class ConfigError(AuthError):
    status_code = 500
    default_message = "Server is not configured"
