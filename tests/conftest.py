import os
import sys
from pathlib import Path

# Set before any authcore import so settings and logging pick them up
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import httpx  # noqa: E402
import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from authcore.config import Settings  # noqa: E402
from authcore.service.auth import AuthGateway  # noqa: E402
from authcore.service.oauth import (  # noqa: E402
    GOOGLE_TOKEN_URL,
    GOOGLE_USERINFO_URL,
    IdentityBroker,
    MemoryOAuthStateStore,
)
from authcore.service.tokens import TokenService  # noqa: E402
from authcore.storage.memory import MemoryCredentialStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"
START_TIME = 1_700_000_000


class FakeClock:
    """Settable epoch clock shared by the token service and the broker."""

    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeGoogle:
    """Scripted token and userinfo endpoints behind ``httpx.MockTransport``."""

    def __init__(self):
        self.token_response = httpx.Response(200, json={"access_token": "google-access-token"})
        self.userinfo = {
            "sub": "google-sub-1",
            "email": "alice@example.com",
            "email_verified": True,
            "name": "Alice Example",
            "picture": "https://images.example.com/alice.png",
        }
        self.userinfo_status = 200
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if url.startswith(GOOGLE_TOKEN_URL):
            return self.token_response
        if url.startswith(GOOGLE_USERINFO_URL):
            return httpx.Response(self.userinfo_status, json=self.userinfo)
        return httpx.Response(404)

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    """Settings with Google configured and short lifetimes."""
    return Settings(
        jwt_secret=TEST_SECRET,
        use_memory_store=True,
        access_token_ttl_seconds=900,
        refresh_token_ttl_seconds=7 * 24 * 60 * 60,
        google_client_id="client-id-1234567890.apps.googleusercontent.com",
        google_client_secret="client-secret",
        oauth_state_ttl_seconds=600,
    )


@pytest.fixture
def fast_hasher():
    """argon2id with minimal cost so tests stay quick."""
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)


@pytest.fixture
def memory_store():
    return MemoryCredentialStore()


@pytest.fixture
def tokens(clock):
    return TokenService(
        TEST_SECRET, access_ttl_seconds=900, refresh_ttl_seconds=7 * 24 * 60 * 60, clock=clock
    )


@pytest.fixture
def google():
    return FakeGoogle()


@pytest.fixture
def broker(memory_store, settings, google, clock):
    broker = IdentityBroker(
        memory_store,
        settings,
        states=MemoryOAuthStateStore(),
        http_client=google.client(),
        clock=clock,
    )
    yield broker
    broker.http.close()


@pytest.fixture
def gateway(memory_store, tokens, broker, fast_hasher):
    return AuthGateway(memory_store, tokens, broker, hasher=fast_hasher)
