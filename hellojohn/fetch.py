"""Authenticated HTTP requests.

    fetch = client.create_fetch_wrapper()
    response = await fetch("GET", "https://api.example.com/me")

Each call asks for a valid access token first, so expired tokens are
refreshed before the request goes out.
"""

from typing import Any, Awaitable, Callable, Protocol

import httpx

from .transport import http_session


class AuthenticatedFetch(Protocol):
    def __call__(self, method: str, url: str, **kwargs: Any) -> Awaitable[httpx.Response]: ...


def create_fetch_wrapper(
    get_access_token: Callable[[], Awaitable[str]],
    http_client: httpx.AsyncClient | None = None,
) -> AuthenticatedFetch:
    """Create a request function that injects the current Bearer token.

    Args:
        get_access_token: Coroutine returning a valid access token
        http_client: Optional shared HTTP client

    Returns:
        ``async fetch(method, url, **kwargs) -> httpx.Response``; kwargs are
        passed through to ``httpx.AsyncClient.request``
    """

    async def authed_fetch(method: str, url: str, **kwargs: Any) -> httpx.Response:
        token = await get_access_token()

        headers = httpx.Headers(kwargs.pop("headers", None))
        headers["Authorization"] = f"Bearer {token}"

        async with http_session(http_client) as client:
            return await client.request(method, url, headers=headers, **kwargs)

    return authed_fetch
