"""Auth state change notifications.

Subscribers register a callback and get an unsubscribe function back:

    unsubscribe = emitter.on(lambda event, session: print(event))
    ...
    unsubscribe()
"""

import logging
from enum import Enum
from typing import Callable

from .tokens import AuthSession

logger = logging.getLogger(__name__)


class AuthEvent(str, Enum):
    """Kinds of auth state transitions."""

    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    MFA_REQUIRED = "MFA_REQUIRED"


AuthEventCallback = Callable[[AuthEvent, AuthSession | None], None]


class AuthEventEmitter:
    """Fan-out of auth events to subscribed callbacks.

    Listeners are keyed by identity: subscribing the same callable twice
    registers it once. Delivery is synchronous and in subscription order.
    """

    def __init__(self) -> None:
        # dict keeps insertion order and gives set semantics on the keys
        self._listeners: dict[AuthEventCallback, None] = {}

    def on(self, callback: AuthEventCallback) -> Callable[[], None]:
        """Subscribe to auth state changes.

        Returns:
            An unsubscribe function; calling it more than once is a no-op
        """
        self._listeners.setdefault(callback, None)

        def unsubscribe() -> None:
            self._listeners.pop(callback, None)

        return unsubscribe

    def emit(self, event: AuthEvent, session: AuthSession | None) -> None:
        """Deliver an event to every listener.

        A listener that raises is logged and skipped; the remaining listeners
        still run and the publisher never sees the error.
        """
        for listener in list(self._listeners):
            try:
                listener(event, session)
            except Exception:
                logger.exception(f"Auth state listener failed handling {event.value}")

    def clear(self) -> None:
        """Remove all listeners."""
        self._listeners.clear()

    def __len__(self) -> int:
        return len(self._listeners)
