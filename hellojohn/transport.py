"""Shared httpx helpers for talking to the identity provider."""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0

FORM_HEADERS = {"Content-Type": "application/x-www-form-urlencoded"}
JSON_HEADERS = {"Content-Type": "application/json"}


@asynccontextmanager
async def http_session(
    http_client: httpx.AsyncClient | None,
) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Yield the shared client, or a short-lived one closed on exit."""
    client = http_client or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)
    should_close = http_client is None

    try:
        yield client
    finally:
        if should_close:
            await client.aclose()


def is_ok(response: httpx.Response) -> bool:
    """True for 2xx responses."""
    return 200 <= response.status_code < 300


def is_redirect(response: httpx.Response) -> bool:
    """True for 3xx responses."""
    return 300 <= response.status_code < 400


def read_json(response: httpx.Response) -> Any:
    """Parse a response body as JSON, returning {} if it is not JSON.

    Raw bodies are never surfaced because they may carry tokens.
    """
    try:
        return response.json()
    except ValueError:
        return {}


def bearer_headers(access_token: str, extra: dict[str, str] | None = None) -> dict[str, str]:
    headers = dict(extra or {})
    headers["Authorization"] = f"Bearer {access_token}"
    return headers
