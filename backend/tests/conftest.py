"""
Pytest configuration and fixtures for backend tests.

This module is automatically loaded by pytest and provides:
- TESTING environment flag to disable .env loading
- Provider credentials and an encryption key for test isolation
- Shared fixtures for database sessions, a stubbed provider, the token
  service and the API test client
"""

import os

# Set TESTING flag BEFORE any oauth_core imports
# This prevents loading .env file during tests, ensuring test isolation
os.environ["TESTING"] = "1"

# In-memory SQLite instead of PostgreSQL
os.environ["DATABASE_URL"] = "sqlite://"

# Generate a proper Fernet key for tests
from cryptography.fernet import Fernet
os.environ["TOKEN_ENCRYPTION_KEY"] = Fernet.generate_key().decode()

# OAuth test credentials - explicit values for test isolation
os.environ["GITHUB_CLIENT_ID"] = "test-github-client-id"
os.environ["GITHUB_CLIENT_SECRET"] = "test-github-client-secret"
os.environ["GOOGLE_CLIENT_ID"] = "test-google-client-id"
os.environ["GOOGLE_CLIENT_SECRET"] = "test-google-client-secret"
os.environ["ATLASSIAN_CLIENT_ID"] = "test-atlassian-client-id"
os.environ["ATLASSIAN_CLIENT_SECRET"] = "test-atlassian-client-secret"
os.environ["MICROSOFT_CLIENT_ID"] = "test-microsoft-client-id"
os.environ["MICROSOFT_CLIENT_SECRET"] = "test-microsoft-client-secret"
os.environ["SLACK_CLIENT_ID"] = "test-slack-client-id"
os.environ["SLACK_CLIENT_SECRET"] = "test-slack-client-secret"
os.environ["ZOOM_CLIENT_ID"] = "test-zoom-client-id"
os.environ["ZOOM_CLIENT_SECRET"] = "test-zoom-client-secret"
# Figma is deliberately left unconfigured

# Backend and frontend hosts for redirect tests
os.environ["BACKEND_URL"] = "http://localhost:8000"
os.environ["FRONTEND_HOST"] = "http://localhost:8080"

import random
from contextlib import contextmanager

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel, create_engine
from sqlmodel.pool import StaticPool

from oauth_core.api.deps import get_db, get_token_service
from oauth_core.core.config import settings
from oauth_core.core.encryption import get_vault
from oauth_core.main import app
from oauth_core.services.providers import build_provider_registry
from oauth_core.services.refresh_locks import LocalRefreshLock
from oauth_core.services.token_service import TokenService


class ProviderStub:
    """
    Fake OAuth provider served through httpx.MockTransport.

    Responses are queued per endpoint (scheme, host and path) and served in
    order; the last queued response keeps being served. Unqueued endpoints
    answer 404.
    """

    def __init__(self):
        self._queued: dict[str, list[tuple[int, object, dict]]] = {}
        self.requests: list[httpx.Request] = []

    def queue(
        self,
        url: str,
        status_code: int = 200,
        json: object = None,
        headers: dict | None = None,
    ) -> None:
        self._queued.setdefault(url, []).append((status_code, json, headers or {}))

    def calls_to(self, url: str) -> list[httpx.Request]:
        return [r for r in self.requests if _endpoint(r) == url]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queued = self._queued.get(_endpoint(request))
        if not queued:
            return httpx.Response(404, json={"error": "not_found"})
        status_code, body, headers = queued.pop(0) if len(queued) > 1 else queued[0]
        if isinstance(body, (dict, list)):
            return httpx.Response(status_code, json=body, headers=headers)
        return httpx.Response(status_code, text=body or "", headers=headers)


def _endpoint(request: httpx.Request) -> str:
    return f"{request.url.scheme}://{request.url.host}{request.url.path}"


@pytest.fixture(name="session")
def session_fixture():
    """Create a new in-memory database session for each test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        yield session


@pytest.fixture(name="session_factory")
def session_factory_fixture(session: Session):
    """Session factory handing out the per-test session."""

    @contextmanager
    def factory():
        yield session

    return factory


@pytest.fixture(name="provider")
def provider_fixture() -> ProviderStub:
    return ProviderStub()


@pytest.fixture(name="sleeps")
def sleeps_fixture() -> list[float]:
    """Delays requested by the code under test; nothing actually sleeps."""
    return []


@pytest.fixture(name="make_service")
def make_service_fixture(session_factory, provider: ProviderStub, sleeps: list[float]):
    """Factory for token services backed by the test database and provider stub."""

    def make(handler=None, lock_backend=None, sleep=None, **overrides) -> TokenService:
        async def fake_sleep(delay: float) -> None:
            sleeps.append(delay)

        app_settings = settings.model_copy(update=overrides) if overrides else settings
        return TokenService(
            settings=app_settings,
            registry=build_provider_registry(app_settings),
            session_factory=session_factory,
            lock_backend=lock_backend or LocalRefreshLock(),
            vault=get_vault(),
            http_client=httpx.AsyncClient(
                transport=httpx.MockTransport(handler or provider.handler)
            ),
            sleep=sleep or fake_sleep,
            rng=random.Random(0),
        )

    return make


@pytest.fixture(name="token_service")
def token_service_fixture(make_service) -> TokenService:
    return make_service()


@pytest.fixture(name="client")
def client_fixture(session: Session, token_service: TokenService):
    """Create a test client with database session and token service overrides."""

    def get_session_override():
        return session

    app.dependency_overrides[get_db] = get_session_override
    app.dependency_overrides[get_token_service] = lambda: token_service
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()
