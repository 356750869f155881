"""Loopback receiver for redirect callbacks.

Native and command-line apps register a loopback redirect URI such as
``http://127.0.0.1:8765/callback``. The LocalhostCallbackServer listens on
that exact host, port and path, answers the browser with a short HTML page
and hands the full callback URL to AuthClient.handle_redirect_callback or
AuthClient.handle_social_callback.
"""

import asyncio
import html
import logging
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any
from urllib.parse import parse_qs, urlparse

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120  # seconds


class CallbackError(Exception):
    """The callback could not be received."""

    pass


class CallbackTimeoutError(CallbackError):
    """No callback arrived in time."""

    pass


@dataclass
class CallbackResult:
    """Query parameters of a redirect callback."""

    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None

    def is_success(self) -> bool:
        return self.code is not None and self.error is None


PAGE_HTML = """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>{title}</title>
<style>
body {{ font-family: system-ui, sans-serif; background: #f4f5f7; margin: 0; }}
main {{ max-width: 420px; margin: 18vh auto; background: #fff; padding: 32px 40px;
        border-radius: 12px; box-shadow: 0 4px 24px rgba(0,0,0,0.08); text-align: center; }}
h1 {{ font-size: 22px; margin: 0 0 12px 0; color: {color}; }}
p {{ color: #555; margin: 0; }}
code {{ display: block; margin-top: 16px; padding: 10px; background: #fbeaea;
        border-radius: 6px; color: #a12626; }}
</style>
</head>
<body>
<main>
<h1>{title}</h1>
<p>{message}</p>
{detail}
</main>
</body>
</html>"""


def render_page(result: CallbackResult) -> str:
    """Render the page shown in the browser after the redirect."""
    if result.is_success():
        return PAGE_HTML.format(
            title="Signed in",
            color="#1d7a3a",
            message="You can close this window and return to the application.",
            detail="",
        )

    # Escape provider-supplied text
    detail = "<code>{}: {}</code>".format(
        html.escape(result.error or "unknown_error"),
        html.escape(result.error_description or "No description provided"),
    )
    return PAGE_HTML.format(
        title="Sign-in failed",
        color="#a12626",
        message="The identity provider reported an error.",
        detail=detail,
    )


def parse_callback_url(url: str) -> CallbackResult:
    """Parse the query parameters of a callback URL."""
    params = parse_qs(urlparse(url).query)

    def get_param(name: str) -> str | None:
        values = params.get(name, [])
        return values[0] if values else None

    return CallbackResult(
        code=get_param("code"),
        state=get_param("state"),
        error=get_param("error"),
        error_description=get_param("error_description"),
    )


class LocalhostCallbackServer:
    """One-shot HTTP listener bound to a loopback redirect URI.

    Usage:
        async with LocalhostCallbackServer("http://127.0.0.1:8765/callback") as server:
            await client.login_with_redirect()
            callback_url = await server.wait_for_callback()
        await client.handle_redirect_callback(callback_url)
    """

    def __init__(self, redirect_uri: str, timeout: float = DEFAULT_TIMEOUT):
        """Initialize the callback server.

        Args:
            redirect_uri: Loopback redirect URI registered with the provider
            timeout: Seconds to wait for the browser to come back

        Raises:
            CallbackError: If the redirect URI is not an http loopback URI
        """
        parsed = urlparse(redirect_uri)
        if parsed.scheme != "http" or not parsed.hostname:
            raise CallbackError(f"Redirect URI must be an http loopback URI: {redirect_uri}")

        self.redirect_uri = redirect_uri
        self.host = parsed.hostname
        self.port = parsed.port if parsed.port is not None else 80
        self.path = parsed.path or "/"
        self.timeout = timeout

        self._server: asyncio.Server | None = None
        self._callback_url: str | None = None
        self._received: asyncio.Event | None = None

    async def start(self) -> None:
        """Start listening on the redirect URI's host and port."""
        self._received = asyncio.Event()
        try:
            self._server = await asyncio.start_server(
                self._handle_connection, self.host, self.port
            )
        except OSError as e:
            raise CallbackError(f"Cannot listen on {self.host}:{self.port}: {e}") from e

        sockets = self._server.sockets
        if sockets and self.port == 0:
            self.port = sockets[0].getsockname()[1]

        logger.debug(f"Callback server listening on {self.host}:{self.port}{self.path}")

    async def stop(self) -> None:
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.debug("Callback server stopped")

    @property
    def callback_base(self) -> str:
        return f"http://{self.host}:{self.port}"

    async def wait_for_callback(self) -> str:
        """Wait for the browser redirect.

        Returns:
            The full callback URL including its query string

        Raises:
            CallbackTimeoutError: If no callback arrives before the timeout
        """
        if self._received is None:
            raise CallbackError("Server not started")

        try:
            await asyncio.wait_for(self._received.wait(), timeout=self.timeout)
        except TimeoutError:
            raise CallbackTimeoutError(
                f"Timed out after {self.timeout} seconds waiting for the browser"
            ) from None

        if self._callback_url is None:
            raise CallbackError("No callback received")
        return self._callback_url

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        try:
            request_line = (await reader.readline()).decode("utf-8", errors="replace")
            parts = request_line.strip().split(" ")
            if len(parts) < 2:
                await self._send(writer, HTTPStatus.BAD_REQUEST, "Invalid request")
                return

            method, target = parts[0], parts[1]

            # Drain headers
            while True:
                line = await reader.readline()
                if line in (b"\r\n", b"\n", b""):
                    break

            if method != "GET":
                await self._send(writer, HTTPStatus.METHOD_NOT_ALLOWED, "Method not allowed")
                return

            if urlparse(target).path != self.path:
                # favicon.ico and friends
                await self._send(writer, HTTPStatus.NOT_FOUND, "Not found")
                return

            result = parse_callback_url(target)
            await self._send(
                writer, HTTPStatus.OK, render_page(result), content_type="text/html; charset=utf-8"
            )

            if self._callback_url is None:
                self._callback_url = f"{self.callback_base}{target}"
                if self._received:
                    self._received.set()

        except (OSError, asyncio.IncompleteReadError, UnicodeError) as e:
            logger.warning(f"Error handling callback request: {e}")

        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

    async def _send(
        self,
        writer: asyncio.StreamWriter,
        status: HTTPStatus,
        body: str,
        content_type: str = "text/plain",
    ) -> None:
        payload = body.encode("utf-8")
        head = (
            f"HTTP/1.1 {status.value} {status.phrase}\r\n"
            f"Content-Type: {content_type}\r\n"
            f"Content-Length: {len(payload)}\r\n"
            "X-Content-Type-Options: nosniff\r\n"
            "X-Frame-Options: DENY\r\n"
            "Content-Security-Policy: default-src 'none'; style-src 'unsafe-inline'\r\n"
            "Connection: close\r\n"
            "\r\n"
        )
        writer.write(head.encode("utf-8") + payload)
        await writer.drain()

    async def __aenter__(self) -> "LocalhostCallbackServer":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()
