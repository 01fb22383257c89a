"""
Authentication utilities for OIDC token verification and JWKS management.

This module handles:
- Fetching the identity provider JWKS (JSON Web Key Set)
- Locating the signing key of a token by its key id
- Verifying token signatures and time claims

By default the key set is fetched fresh for every verification so key
rotation on the provider side is picked up immediately. A positive
JWKS_CACHE_SECONDS enables a per-issuer cache.
"""

import logging
import time
from typing import Any, Dict, Optional, Tuple

from jose import JWTError, jwk, jwt
from jose.exceptions import ExpiredSignatureError

from authgate.config import Settings
from authgate.errors import (
    ExpiredTokenError,
    SignatureError,
    UnknownKeyError,
    UpstreamError,
)
from authgate.proxy import create_http_client

logger = logging.getLogger(__name__)

DEFAULT_ALGORITHM = "RS256"


# =============================================================================
# JWKS Fetcher
# =============================================================================

# issuer -> (fetched_at, jwks)
_jwks_cache: Dict[str, Tuple[float, Dict[str, Any]]] = {}


def clear_jwks_cache() -> None:
    _jwks_cache.clear()


async def fetch_jwks(settings: Settings, force_refresh: bool = False) -> Dict[str, Any]:
    """
    Fetch the provider JWKS.

    Args:
        settings: Gateway settings (issuer, timeout, proxy, cache TTL)
        force_refresh: If True, bypass the cache

    Returns:
        JWKS document containing keys

    Raises:
        UpstreamError: If the endpoint answers with a non-success status
                       or the document has no 'keys' field
        httpx.HTTPError: If the endpoint is unreachable
    """
    issuer = settings.OIDC_ISSUER or ""
    cache_ttl = settings.JWKS_CACHE_SECONDS

    if cache_ttl and not force_refresh:
        cached = _jwks_cache.get(issuer)
        if cached and (time.time() - cached[0]) < cache_ttl:
            return cached[1]

    async with create_http_client(settings) as client:
        response = await client.get(settings.oidc_jwks_uri)

    if not response.is_success:
        raise UpstreamError(
            f"Failed to fetch JWKS: {response.status_code}",
            status_code=response.status_code,
        )

    jwks_data = response.json()
    if "keys" not in jwks_data:
        raise UpstreamError("Invalid JWKS response: missing 'keys' field")

    logger.debug("Fetched JWKS from %s (%d keys)", settings.oidc_jwks_uri, len(jwks_data["keys"]))

    if cache_ttl:
        _jwks_cache[issuer] = (time.time(), jwks_data)

    return jwks_data


# =============================================================================
# Token Verifier
# =============================================================================

def get_signing_key(token: str, jwks: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Return the key from JWKS that matches the token's kid.

    Raises:
        SignatureError: If the token header cannot be decoded
        UnknownKeyError: If the header carries no kid
    """
    try:
        unverified_header = jwt.get_unverified_header(token)
    except JWTError as e:
        raise SignatureError(f"Failed to decode token header: {e}")

    kid = unverified_header.get("kid")
    if not kid:
        raise UnknownKeyError("Token header missing 'kid' (Key ID)")

    for key in jwks.get("keys", []):
        if key.get("kid") == kid:
            return key

    return None


def verify_token(
    token: str,
    jwks: Dict[str, Any],
    access_token: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Verify a compact signed JWT against a key set and return its claims.

    The algorithm is taken from the matched key, then from the token
    header, defaulting to RS256. Signature and time claims (exp, nbf, iat)
    are checked; audience and issuer are not. When access_token is given
    the at_hash claim is checked against it.

    Raises:
        UnknownKeyError: No key in the set matches the token's kid
        SignatureError: Signature mismatch or otherwise invalid token
        ExpiredTokenError: Token has expired
    """
    if not token:
        raise SignatureError("Empty token")

    signing_key = get_signing_key(token, jwks)
    if signing_key is None:
        raise UnknownKeyError("No matching JWK found")

    header = jwt.get_unverified_header(token)
    algorithm = signing_key.get("alg") or header.get("alg") or DEFAULT_ALGORITHM

    try:
        public_key = jwk.construct(signing_key, algorithm)
        pem = public_key.to_pem().decode("utf-8")
    except Exception as e:
        raise SignatureError(f"Failed to construct public key from JWK: {e}")

    try:
        return jwt.decode(
            token,
            pem,
            algorithms=[algorithm],
            access_token=access_token,
            options={
                "verify_signature": True,
                "verify_aud": False,
                "verify_iat": True,
                "verify_exp": True,
                "verify_nbf": True,
                "verify_at_hash": access_token is not None,
            },
        )
    except ExpiredSignatureError:
        raise ExpiredTokenError("Token has expired")
    except JWTError as e:
        raise SignatureError(f"Token verification failed: {e}")


async def verify_with_provider_keys(
    settings: Settings,
    token: str,
    access_token: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Fetch the provider key set and verify a token against it.

    With caching enabled an unknown kid triggers one forced refetch, in
    case the provider rotated its keys since the set was cached.
    """
    jwks = await fetch_jwks(settings)
    try:
        return verify_token(token, jwks, access_token=access_token)
    except UnknownKeyError:
        if not settings.JWKS_CACHE_SECONDS:
            raise
        jwks = await fetch_jwks(settings, force_refresh=True)
        return verify_token(token, jwks, access_token=access_token)
