"""
authgate - OIDC / CAS authentication gateway for FastAPI applications.

Usage:
    from fastapi import FastAPI
    from authgate import setup_auth

    app = FastAPI()
    setup_auth(app, enrich_session=load_profile, enrich_me=extra_fields)
"""

from authgate.config import AuthMode, Settings, get_settings
from authgate.errors import ConfigurationError
from authgate.gateway import setup_auth

__all__ = [
    "AuthMode",
    "ConfigurationError",
    "Settings",
    "get_settings",
    "setup_auth",
]
