import pytest

from authgate.auth.store import MemorySessionStore
from authgate.auth.utils import clear_jwks_cache

from .helpers import build_client, build_settings


@pytest.fixture(autouse=True)
def reset_jwks_cache():
    clear_jwks_cache()
    yield
    clear_jwks_cache()


@pytest.fixture
def store():
    return MemorySessionStore()


@pytest.fixture
def oidc_settings():
    return build_settings()


@pytest.fixture
def oidc_client(oidc_settings, store):
    return build_client(oidc_settings, store)


@pytest.fixture
def cas_settings():
    return build_settings(AUTH_MODE="CAS")


@pytest.fixture
def cas_client(cas_settings, store):
    return build_client(cas_settings, store)
