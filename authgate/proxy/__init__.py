"""
Outbound Dialer Package

Builds the httpx client used for every call to the identity provider,
routing through the configured egress proxy when one is enabled.
"""

from .dialer import build_proxy_url, create_http_client

__all__ = [
    "build_proxy_url",
    "create_http_client",
]
