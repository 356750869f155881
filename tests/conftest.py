"""Shared fixtures and utilities for HelloJohn auth tests."""

import base64
import json
from typing import Any, Callable
from unittest.mock import AsyncMock

import httpx
import pytest

from hellojohn.client import AuthClient
from hellojohn.events import AuthEvent, AuthEventEmitter
from hellojohn.storage import MemoryStorageAdapter
from hellojohn.tokens import AuthSession, TokenSet

DOMAIN = "https://auth.example.com"
CLIENT_ID = "test-client"
NOW = 1_700_000_000.0


# ============================================================================
# Token Helpers
# ============================================================================


def _b64url(data: dict[str, Any]) -> str:
    raw = json.dumps(data).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def make_jwt(exp: float | None = None, **claims: Any) -> str:
    """Build an unsigned JWT with the given claims."""
    payload: dict[str, Any] = {"sub": "user-123", "email": "user@example.com", "name": "Test User"}
    if exp is not None:
        payload["exp"] = exp
    payload.update(claims)
    return f"{_b64url({'alg': 'RS256', 'typ': 'JWT'})}.{_b64url(payload)}.signature"


def token_response(
    expires_in: int = 3600,
    refresh_token: str | None = "refresh-1",
    now: float = NOW,
    **claims: Any,
) -> dict[str, Any]:
    """Build a token endpoint response body."""
    body: dict[str, Any] = {
        "access_token": make_jwt(exp=now + expires_in, **claims),
        "token_type": "Bearer",
        "expires_in": expires_in,
        "scope": "openid profile email",
    }
    if refresh_token:
        body["refresh_token"] = refresh_token
    return body


def json_response(status: int, body: Any = None, headers: dict[str, str] | None = None) -> httpx.Response:
    """Build a real httpx response with a JSON body."""
    if body is None:
        return httpx.Response(status, headers=headers)
    return httpx.Response(status, json=body, headers=headers)


# ============================================================================
# Capability Doubles
# ============================================================================


class FakeClock:
    """Wall clock under test control."""

    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTimer:
    def __init__(self, delay: float, callback: Callable[[], Any]):
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """Records scheduled callbacks instead of running them."""

    def __init__(self) -> None:
        self.timers: list[FakeTimer] = []

    def call_later(self, delay: float, callback: Callable[[], Any]) -> FakeTimer:
        timer = FakeTimer(delay, callback)
        self.timers.append(timer)
        return timer

    @property
    def active(self) -> list[FakeTimer]:
        return [t for t in self.timers if not t.cancelled]

    def fire(self, timer: FakeTimer) -> None:
        timer.cancelled = True
        timer.callback()


class RecordingNavigator:
    def __init__(self) -> None:
        self.urls: list[str] = []

    def navigate(self, url: str) -> None:
        self.urls.append(url)


class EventRecorder:
    """Listener that keeps every event it receives."""

    def __init__(self) -> None:
        self.events: list[tuple[AuthEvent, AuthSession | None]] = []

    def __call__(self, event: AuthEvent, session: AuthSession | None) -> None:
        self.events.append((event, session))

    @property
    def names(self) -> list[AuthEvent]:
        return [event for event, _ in self.events]

    def count(self, event: AuthEvent) -> int:
        return self.names.count(event)


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def navigator() -> RecordingNavigator:
    return RecordingNavigator()


@pytest.fixture
def storage() -> MemoryStorageAdapter:
    return MemoryStorageAdapter()


@pytest.fixture
def session_storage() -> MemoryStorageAdapter:
    return MemoryStorageAdapter()


@pytest.fixture
def emitter() -> AuthEventEmitter:
    return AuthEventEmitter()


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def mock_http() -> AsyncMock:
    """Mock httpx.AsyncClient; configure .get/.post/.request per test."""
    client = AsyncMock()
    client.aclose = AsyncMock()
    return client


@pytest.fixture
def make_client(
    storage: MemoryStorageAdapter,
    session_storage: MemoryStorageAdapter,
    navigator: RecordingNavigator,
    mock_http: AsyncMock,
    scheduler: FakeScheduler,
    clock: FakeClock,
    recorder: EventRecorder,
) -> Callable[..., AuthClient]:
    """Factory for an AuthClient wired to test doubles."""

    def factory(**kwargs: Any) -> AuthClient:
        options: dict[str, Any] = {
            "domain": DOMAIN,
            "client_id": CLIENT_ID,
            "tenant_id": "acme",
            "storage": storage,
            "session_storage": session_storage,
            "navigator": navigator,
            "http_client": mock_http,
            "scheduler": scheduler,
            "clock": clock,
        }
        options.update(kwargs)
        client = AuthClient(**options)
        client.on_auth_state_change(recorder)
        return client

    return factory


def store_tokens(storage: MemoryStorageAdapter, tokens: TokenSet) -> None:
    storage.set("token", tokens.to_json())
