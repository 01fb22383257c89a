"""
Outbound Dialer - Identity Provider HTTP Client
================================================

All traffic to the identity provider (JWKS, token endpoint) goes through a
client built here, so the proxy and timeout settings apply uniformly.

Proxy settings:
---------------
PROXY_ENABLED=true
PROXY_HOST=http://proxy.internal   (scheme optional, defaults to http://)
PROXY_PORT=3128
PROXY_AUTH=user:password           (optional)
"""

import logging
from typing import Optional
from urllib.parse import quote, urlsplit

import httpx

from ..config import Settings

logger = logging.getLogger(__name__)


def build_proxy_url(settings: Settings) -> Optional[str]:
    """
    Build the proxy URL from settings.

    Returns:
        Proxy URL string, or None when the proxy is disabled
    """
    if not settings.PROXY_ENABLED:
        return None

    host = settings.PROXY_HOST or ""
    if "://" not in host:
        host = f"http://{host}"
    parts = urlsplit(host)

    credentials = ""
    if settings.PROXY_AUTH:
        user, _, password = settings.PROXY_AUTH.partition(":")
        credentials = quote(user, safe="")
        if password:
            credentials += ":" + quote(password, safe="")
        credentials += "@"

    return f"{parts.scheme}://{credentials}{parts.hostname}:{settings.PROXY_PORT}"


def create_http_client(settings: Settings) -> httpx.AsyncClient:
    """
    Create an AsyncClient for identity provider calls.

    Usage:
        async with create_http_client(settings) as client:
            response = await client.get(settings.oidc_jwks_uri)
    """
    proxy_url = build_proxy_url(settings)
    if proxy_url:
        logger.debug("Routing identity provider traffic through proxy %s", urlsplit(proxy_url).hostname)
    return httpx.AsyncClient(
        proxy=proxy_url,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
    )
