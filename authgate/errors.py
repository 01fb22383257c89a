"""
Exception hierarchy for the authentication gateway.

Routes translate these into short status texts; no internal detail is
returned to the client.
"""

from typing import Optional


class AuthGatewayError(Exception):
    """Base exception for gateway errors"""
    pass


class ConfigurationError(AuthGatewayError):
    """Unsupported mode or missing mode-specific settings. Fatal at setup."""
    pass


class MissingParameterError(AuthGatewayError):
    """A required request parameter (code, logout_token, refresh_token) is absent."""

    def __init__(self, parameter: str, message: Optional[str] = None):
        self.parameter = parameter
        super().__init__(message or f"Missing {parameter}")


class UpstreamError(AuthGatewayError):
    """The identity provider answered with a non-success status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


# =============================================================================
# Token Verification
# =============================================================================

class TokenVerificationError(AuthGatewayError):
    """Base exception for JWT verification failures"""
    pass


class UnknownKeyError(TokenVerificationError):
    """The token's kid is missing or absent from the provider key set."""
    pass


class SignatureError(TokenVerificationError):
    """Signature mismatch, malformed token or rejected claims."""
    pass


class ExpiredTokenError(TokenVerificationError):
    pass


__all__ = [
    "AuthGatewayError",
    "ConfigurationError",
    "MissingParameterError",
    "UpstreamError",
    "TokenVerificationError",
    "UnknownKeyError",
    "SignatureError",
    "ExpiredTokenError",
]
