"""Host capabilities injected into the auth client.

The client never touches the random source, digest function, navigation,
timers or the wall clock directly. Each is a small protocol with a default
implementation, so the whole state machine can run under test doubles.
"""

import asyncio
import hashlib
import logging
import secrets
import time
import webbrowser
from typing import Any, Callable, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class RandomSource(Protocol):
    """Returns ``n`` cryptographically secure random bytes."""

    def __call__(self, n: int) -> bytes: ...


@runtime_checkable
class DigestFunction(Protocol):
    """Returns the SHA-256 digest of ``data``."""

    def __call__(self, data: bytes) -> bytes: ...


@runtime_checkable
class Clock(Protocol):
    """Returns seconds since the UNIX epoch."""

    def __call__(self) -> float: ...


class Navigator(Protocol):
    """Sends the user agent to another URL."""

    def navigate(self, url: str) -> None: ...


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Runs a callback once after ``delay`` seconds."""

    def call_later(self, delay: float, callback: Callable[[], Any]) -> TimerHandle: ...


def default_random_source(n: int) -> bytes:
    return secrets.token_bytes(n)


def sha256_digest(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def default_clock() -> float:
    return time.time()


class WebBrowserNavigator:
    """Opens URLs in the system browser.

    If no browser can be launched the URL is logged so the user can open it
    by hand.
    """

    def __init__(self, on_fallback: Callable[[str], None] | None = None):
        self.on_fallback = on_fallback

    def navigate(self, url: str) -> None:
        if webbrowser.open(url):
            return
        logger.warning(f"Could not open browser. Please open this URL manually: {url}")
        if self.on_fallback:
            self.on_fallback(url)


class AsyncioScheduler:
    """Schedules callbacks on the running asyncio event loop."""

    def call_later(self, delay: float, callback: Callable[[], Any]) -> TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(delay, callback)
