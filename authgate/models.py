"""
Data Models Module

This module defines the Pydantic models for the session record and the normalized user.

Models are organized by functional area:
- Identity models (the normalized user shared by every protocol)
- Session models (protocol-specific authentication state, session record)
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


# ============================================================================
# Identity Models
# ============================================================================

class User(BaseModel):
    """Normalized identity, the same shape for OIDC and CAS."""
    username: str = Field(..., min_length=1, description="preferred_username/sub (OIDC) or CAS user")
    email: Optional[str] = Field(None, description="Email address if the provider supplies one")
    roles: Optional[List[str]] = Field(None, description="Roles passed through from the provider")
    raw: Dict[str, Any] = Field(default_factory=dict, description="Provider-specific claims or attributes")


# ============================================================================
# Session Models
# ============================================================================

class Unauthenticated(BaseModel):
    """No protocol state yet."""
    kind: Literal["none"] = "none"


class OidcAuth(BaseModel):
    """OIDC protocol state: token endpoint response and the pending PKCE verifier."""
    kind: Literal["oidc"] = "oidc"
    tokens: Dict[str, Any] = Field(default_factory=dict, description="Raw token endpoint response")
    pkce_verifier: Optional[str] = Field(None, description="Verifier of the in-flight authorization request")


class CasAuth(BaseModel):
    """CAS protocol state: the validated user and the raw CAS attributes."""
    kind: Literal["cas"] = "cas"
    attributes: Dict[str, Any] = Field(default_factory=dict, description="{'user': ..., **cas attributes}")
    ticket: Optional[str] = Field(None, description="Service ticket the session was created from (for SLO)")


SessionAuth = Annotated[
    Union[Unauthenticated, OidcAuth, CasAuth],
    Field(discriminator="kind"),
]


class SessionData(BaseModel):
    """Server-side session record."""
    user: Optional[User] = None
    auth: SessionAuth = Field(default_factory=Unauthenticated)
    enriched: bool = Field(default=False, description="Set once the enrichment hook has run")
    extras: Dict[str, Any] = Field(default_factory=dict, description="Free-form data written by enrichment hooks")

