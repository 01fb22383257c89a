"""
Configuration module for the authentication gateway.

This module uses Pydantic Settings to load and validate environment variables
for the selected authentication mode (OIDC, CAS or NONE), the session cookie,
the outbound proxy and the protected application surface.

Environment variables are loaded from .env file or system environment.
"""

from enum import Enum
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from authgate.errors import ConfigurationError


DEFAULT_SESSION_SECRET = "LONG_SECRET_KEY"


class AuthMode(str, Enum):
    """Process-wide authentication mode. Exactly one adapter is active."""

    NONE = "NONE"
    OIDC = "OIDC"
    CAS = "CAS"


def _split_csv(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """
    Gateway settings loaded from environment variables.

    Common session/routing options, OIDC and CAS provider options and the
    outbound proxy are all defined here. Only the block belonging to the
    active AUTH_MODE has to be filled in.
    """

    # =========================================================================
    # Common
    # =========================================================================

    AUTH_MODE: str = Field(
        default="OIDC",
        description="Authentication mode: NONE, OIDC or CAS (case-insensitive)",
    )

    SESSION_NAME: str = Field(
        default="NSESSIONID",
        description="Name of the session cookie",
        min_length=1,
    )

    SESSION_SECRET: str = Field(
        default=DEFAULT_SESSION_SECRET,
        description="Secret used to sign the session cookie",
        min_length=1,
    )

    SESSION_MAX_AGE_SECONDS: int = Field(
        default=14 * 24 * 60 * 60,
        description="Lifetime of a session record and its cookie",
        ge=60,
    )

    ENVIRONMENT: str = Field(
        default="PRODUCTION",
        description="Deployment environment; DEVELOPMENT disables the secure cookie flag",
    )

    APP_BASE_PATH: str = Field(
        default="/app",
        description="Base path every gateway route is mounted under",
    )

    ME_ENDPOINT_CONTEXT: str = Field(
        default="/me",
        description="Path (relative to APP_BASE_PATH) of the user info endpoint",
    )

    POST_LOGOUT_REDIRECT_URI: Optional[str] = Field(
        None,
        description="Where the identity provider sends the browser after logout",
    )

    EXCLUDE_PATH_FROM_PROTECT: Optional[str] = Field(
        None,
        description="Comma-separated list of paths the access gate never challenges",
    )

    ALLOWED_ORIGINS: Optional[str] = Field(
        None,
        description="Comma-separated list of allowed CORS origins (leave empty for no CORS)",
    )

    LOG_LEVEL: str = Field(default="INFO", description="Logging level")

    HOST: str = Field(default="0.0.0.0", description="Host to bind the gateway server")

    PORT: int = Field(default=8080, description="Port to bind the gateway server", ge=1, le=65535)

    HTTP_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Timeout for every call to the identity provider",
        gt=0,
    )

    # =========================================================================
    # OpenID Connect
    # =========================================================================

    OIDC_ISSUER: Optional[str] = Field(
        None,
        description="Issuer base URL (e.g., https://sso.example.com/realms/main)",
    )

    OIDC_CLIENT_ID: Optional[str] = Field(None, description="OIDC client ID")

    OIDC_CLIENT_SECRET: Optional[str] = Field(
        None,
        description="OIDC client secret (optional for public clients)",
    )

    OIDC_REDIRECT_URI: Optional[str] = Field(
        None,
        description="Redirect URI registered with the provider (…/callback)",
    )

    OIDC_SCOPE: str = Field(default="openid profile email", description="Requested scopes")

    OIDC_ENABLE_PKCE: bool = Field(default=False, description="Send a PKCE challenge")

    OIDC_CODE_CHALLENGE_METHOD: str = Field(default="S256", description="S256 or plain")

    OIDC_BACKCHANNEL_STRICT: bool = Field(
        default=False,
        description="Validate events/nonce/sub claims of back-channel logout tokens",
    )

    JWKS_CACHE_SECONDS: int = Field(
        default=0,
        description="Time to cache the provider JWKS in seconds (0 = fetch on every verification)",
        ge=0,
        le=86400,
    )

    # =========================================================================
    # CAS
    # =========================================================================

    CAS_DNS_NAME: Optional[str] = Field(
        None,
        description="CAS server origin (e.g., https://cas.example.com)",
    )

    CAS_LOGIN_PATH: str = Field(default="/cas/login")

    CAS_LOGOUT_PATH: str = Field(default="/cas/logout")

    CAS_SERVER_PATH: str = Field(
        default="/cas/",
        description="Path of the CAS server root handed to the ticket validator",
    )

    CAS_VERSION: int = Field(default=3, description="CAS protocol version", ge=1, le=3)

    CAS_SLO: bool = Field(default=True, description="Honour CAS single logout requests")

    CAS_IGNORE: Optional[str] = Field(None, description="Comma-separated path prefixes never challenged")

    CAS_MATCH: Optional[str] = Field(None, description="Comma-separated path prefixes that are challenged")

    # =========================================================================
    # Outbound proxy
    # =========================================================================

    PROXY_ENABLED: bool = Field(default=False)

    PROXY_HOST: Optional[str] = Field(None, description="Proxy host, with or without scheme")

    PROXY_PORT: Optional[int] = Field(None, ge=1, le=65535)

    PROXY_AUTH: Optional[str] = Field(None, description="Proxy credentials as user:password")

    # =========================================================================
    # Pydantic Settings Configuration
    # =========================================================================

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def auth_mode(self) -> AuthMode:
        """
        Resolve AUTH_MODE to the AuthMode enum.

        Raises:
            ConfigurationError: If the mode is not one of NONE, OIDC, CAS
        """
        try:
            return AuthMode(self.AUTH_MODE)
        except ValueError:
            raise ConfigurationError(f"Unsupported authMode: {self.AUTH_MODE}")

    @property
    def cookie_secure(self) -> bool:
        return self.ENVIRONMENT.upper() != "DEVELOPMENT"

    @property
    def exclude_paths_list(self) -> List[str]:
        return _split_csv(self.EXCLUDE_PATH_FROM_PROTECT)

    @property
    def allowed_origins_list(self) -> List[str]:
        return _split_csv(self.ALLOWED_ORIGINS)

    @property
    def cas_ignore_list(self) -> List[str]:
        return _split_csv(self.CAS_IGNORE)

    @property
    def cas_match_list(self) -> List[str]:
        return _split_csv(self.CAS_MATCH)

    @property
    def me_path(self) -> str:
        return f"{self.APP_BASE_PATH}{self.ME_ENDPOINT_CONTEXT or '/me'}"

    @property
    def oidc_authorization_endpoint(self) -> str:
        return f"{self.OIDC_ISSUER}/protocol/openid-connect/auth"

    @property
    def oidc_token_endpoint(self) -> str:
        return f"{self.OIDC_ISSUER}/protocol/openid-connect/token"

    @property
    def oidc_jwks_uri(self) -> str:
        return f"{self.OIDC_ISSUER}/protocol/openid-connect/certs"

    @property
    def oidc_end_session_endpoint(self) -> str:
        return f"{self.OIDC_ISSUER}/protocol/openid-connect/logout"

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("AUTH_MODE")
    @classmethod
    def normalize_upper(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("APP_BASE_PATH")
    @classmethod
    def validate_base_path(cls, v: str) -> str:
        """
        Normalize the base path to either "" or "/segment" without trailing slash.

        Raises:
            ValueError: If the path is not absolute
        """
        v = v.strip().rstrip("/")
        if v and not v.startswith("/"):
            raise ValueError(f"APP_BASE_PATH must start with '/', got: {v}")
        return v

    @field_validator("OIDC_ISSUER", "CAS_DNS_NAME")
    @classmethod
    def strip_trailing_slash(cls, v: Optional[str]) -> Optional[str]:
        return v.rstrip("/") if v else v

    @field_validator("OIDC_CODE_CHALLENGE_METHOD")
    @classmethod
    def validate_challenge_method(cls, v: str) -> str:
        if v.strip().lower() == "plain":
            return "plain"
        v = v.strip().upper()
        if v != "S256":
            raise ValueError(f"Code challenge method must be S256 or plain, got: {v}")
        return v


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    Returns:
        Settings instance with all configuration loaded and validated.

    Raises:
        ValidationError: If environment variables are invalid.
    """
    return Settings()


# =============================================================================
# Configuration Helpers
# =============================================================================

def validate_configuration(settings: Settings) -> dict:
    """
    Validate the settings required by the active mode and return a status report.

    Called by setup_auth before any middleware is installed.

    Returns:
        Dictionary with validation status, errors and warnings.

    Example:
        >>> status = validate_configuration(Settings(AUTH_MODE="NONE"))
        >>> status["valid"]
        True
    """
    errors = []
    warnings = []

    try:
        mode = settings.auth_mode
    except ConfigurationError as e:
        return {"valid": False, "errors": [str(e)], "warnings": [], "mode": settings.AUTH_MODE}

    if mode is AuthMode.OIDC:
        for name in ("OIDC_ISSUER", "OIDC_CLIENT_ID", "OIDC_REDIRECT_URI"):
            if not getattr(settings, name):
                errors.append(f"{name} is required when AUTH_MODE=OIDC")
        if not settings.OIDC_CLIENT_SECRET and not settings.OIDC_ENABLE_PKCE:
            warnings.append("Public OIDC client without PKCE")

    if mode is AuthMode.CAS and not settings.CAS_DNS_NAME:
        errors.append("CAS_DNS_NAME is required when AUTH_MODE=CAS")

    if mode is not AuthMode.NONE and settings.SESSION_SECRET == DEFAULT_SESSION_SECRET:
        warnings.append("SESSION_SECRET is left at its default value")

    if settings.PROXY_ENABLED and not (settings.PROXY_HOST and settings.PROXY_PORT):
        errors.append("PROXY_HOST and PROXY_PORT are required when PROXY_ENABLED")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "mode": mode.value,
    }
