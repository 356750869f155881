"""Token lifecycle management.

The TokenManager owns the persisted TokenSet and the proactive refresh timer:
- tokens are refreshed in the background at 75% of their remaining lifetime
- expired tokens are refreshed on demand when a caller asks for one
- every refresh entry point shares one in-flight request, so concurrent
  callers never hit the token endpoint twice
- a refresh the provider rejects ends the session (SESSION_EXPIRED)
"""

import asyncio
import logging

import httpx

from .errors import StorageError, TokenError
from .events import AuthEvent, AuthEventEmitter
from .jwt import decode_claims, get_token_expires_in, is_token_expired
from .platform import AsyncioScheduler, Clock, Scheduler, TimerHandle, default_clock
from .storage import StorageAdapter
from .tokens import AuthSession, TokenSet
from .transport import FORM_HEADERS, http_session, is_ok, read_json

logger = logging.getLogger(__name__)

TOKEN_STORAGE_KEY = "token"

# Refresh at 75% of remaining lifetime, but never sooner than 5 seconds
REFRESH_THRESHOLD = 0.75
MIN_REFRESH_DELAY_MS = 5000


class TokenManager:
    """Stores tokens, detects expiry and keeps the access token fresh.

    Usage:
        manager = TokenManager(
            domain="https://auth.example.com",
            client_id="my-app",
            storage=MemoryStorageAdapter(),
            emitter=AuthEventEmitter(),
        )
        manager.set_tokens(tokens)
        token = await manager.get_access_token()
    """

    def __init__(
        self,
        domain: str,
        client_id: str,
        storage: StorageAdapter,
        emitter: AuthEventEmitter,
        auto_refresh: bool = True,
        http_client: httpx.AsyncClient | None = None,
        scheduler: Scheduler | None = None,
        clock: Clock | None = None,
    ):
        """Initialize the token manager.

        Args:
            domain: Identity provider base URL (no trailing slash)
            client_id: OAuth client ID
            storage: Adapter holding the persisted token set
            emitter: Event bus for session notifications
            auto_refresh: Schedule proactive background refreshes
            http_client: Optional shared HTTP client
            scheduler: Timer capability (default: running asyncio loop)
            clock: Wall clock returning epoch seconds
        """
        self.domain = domain
        self.client_id = client_id
        self.storage = storage
        self.emitter = emitter
        self.auto_refresh = auto_refresh

        self._http = http_client
        self._scheduler = scheduler or AsyncioScheduler()
        self._clock = clock or default_clock

        self._refresh_timer: TimerHandle | None = None
        self._refresh_task: asyncio.Task[TokenSet] | None = None
        # Bumped whenever the session is cleared
        self._generation = 0

    @property
    def pending_refresh(self) -> asyncio.Task[TokenSet] | None:
        """The in-flight refresh, if one is running."""
        return self._refresh_task

    # Storage

    def get_stored_tokens(self) -> TokenSet | None:
        """Get the stored token set, or None if absent or unreadable."""
        try:
            raw = self.storage.get(TOKEN_STORAGE_KEY)
        except (StorageError, OSError) as e:
            logger.warning(f"Could not read stored tokens: {e}")
            return None

        if not raw:
            return None

        try:
            return TokenSet.from_json(raw)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring unparseable stored token set: {e}")
            return None

    def set_tokens(self, tokens: TokenSet) -> None:
        """Persist a token set and (re)schedule the proactive refresh."""
        self.storage.set(TOKEN_STORAGE_KEY, tokens.to_json())
        if self.auto_refresh:
            self._schedule_refresh(tokens)

    def clear_tokens(self) -> None:
        """Cancel the refresh timer and delete the stored token set."""
        self._generation += 1
        self._cancel_scheduled_refresh()
        self.storage.remove(TOKEN_STORAGE_KEY)

    # Queries

    def is_authenticated(self) -> bool:
        """Check if a stored access token exists and is not expired."""
        tokens = self.get_stored_tokens()
        if tokens is None:
            return False
        return not is_token_expired(tokens.access_token, now=self._clock())

    def build_session(self) -> AuthSession | None:
        """Build an AuthSession from the stored tokens."""
        tokens = self.get_stored_tokens()
        if tokens is None:
            return None

        claims = decode_claims(tokens.access_token)
        if claims is None:
            return None

        return AuthSession(
            access_token=tokens.access_token,
            id_token=tokens.id_token,
            refresh_token=tokens.refresh_token,
            user=claims.as_dict(),
            expires_at=claims.exp,
        )

    # Token access

    async def get_access_token(self) -> str:
        """Get a valid access token, refreshing it if necessary.

        Raises:
            TokenError: no_token if nothing is stored, session_expired if the
                token expired without a refresh token, or the refresh error
        """
        tokens = self.get_stored_tokens()
        if tokens is None:
            raise TokenError("No access token available", "no_token")

        if not is_token_expired(tokens.access_token, now=self._clock()):
            return tokens.access_token

        if not tokens.has_refresh_token():
            logger.info("Access token expired and no refresh token is available")
            self.clear_tokens()
            self.emitter.emit(AuthEvent.SESSION_EXPIRED, None)
            raise TokenError(
                "Session expired and no refresh token available", "session_expired"
            )

        refreshed = await asyncio.shield(self._refresh_tokens(tokens.refresh_token))  # type: ignore[arg-type]
        return refreshed.access_token

    async def refresh_session(self) -> TokenSet:
        """Force a token refresh (joins one already in flight).

        Raises:
            TokenError: no_refresh_token if no refresh token is stored
        """
        tokens = self.get_stored_tokens()
        if tokens is None or not tokens.has_refresh_token():
            raise TokenError("No refresh token available", "no_refresh_token")
        return await asyncio.shield(self._refresh_tokens(tokens.refresh_token))  # type: ignore[arg-type]

    # Lifecycle

    def initialize(self) -> None:
        """Check stored tokens at startup.

        Expired tokens without a refresh token are cleared. Refreshable ones
        are refreshed in the background, or on first use when auto-refresh is
        off or no event loop is running. Valid tokens get their proactive
        refresh scheduled.
        """
        tokens = self.get_stored_tokens()
        if tokens is None:
            return

        if not is_token_expired(tokens.access_token, now=self._clock()):
            if self.auto_refresh:
                self._schedule_refresh(tokens)
            return

        if not tokens.has_refresh_token():
            logger.info("Stored session has expired")
            self.clear_tokens()
            self.emitter.emit(AuthEvent.SESSION_EXPIRED, None)
            return

        if not self.auto_refresh:
            logger.debug("Auto-refresh is off; expired token will refresh on first use")
            return

        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; expired token will refresh on first use")
            return

        task = self._refresh_tokens(tokens.refresh_token)  # type: ignore[arg-type]
        task.add_done_callback(self._on_background_refresh_done)

    def destroy(self) -> None:
        """Cancel the refresh timer. Stored tokens are kept."""
        self._cancel_scheduled_refresh()

    # Private

    def _schedule_refresh(self, tokens: TokenSet) -> None:
        self._cancel_scheduled_refresh()

        expires_in_ms = get_token_expires_in(tokens.access_token, now=self._clock())
        if expires_in_ms <= 0:
            return

        delay_ms = max(expires_in_ms * REFRESH_THRESHOLD, MIN_REFRESH_DELAY_MS)
        try:
            self._refresh_timer = self._scheduler.call_later(
                delay_ms / 1000, self._on_refresh_timer
            )
        except RuntimeError:
            logger.debug("No running event loop; proactive refresh not scheduled")
            return

        logger.debug(f"Token refresh scheduled in {delay_ms / 1000:.1f}s")

    def _cancel_scheduled_refresh(self) -> None:
        if self._refresh_timer is not None:
            self._refresh_timer.cancel()
            self._refresh_timer = None

    def _on_refresh_timer(self) -> None:
        self._refresh_timer = None

        # Storage may have changed since the timer was set
        current = self.get_stored_tokens()
        if current is None or not current.has_refresh_token():
            return

        task = self._refresh_tokens(current.refresh_token)  # type: ignore[arg-type]
        task.add_done_callback(self._on_background_refresh_done)

    def _on_background_refresh_done(self, task: "asyncio.Task[TokenSet]") -> None:
        if task.cancelled():
            return

        error = task.exception()
        if error is None:
            return

        if isinstance(error, TokenError) and error.code == "session_ended":
            return

        logger.warning(f"Background token refresh failed: {error}")
        # A rejected refresh has already cleared state and announced it
        if self.get_stored_tokens() is not None:
            self.clear_tokens()
            self.emitter.emit(AuthEvent.SESSION_EXPIRED, None)

    def _refresh_tokens(self, refresh_token: str) -> "asyncio.Task[TokenSet]":
        """Return the in-flight refresh, starting one if none is running."""
        if self._refresh_task is not None and not self._refresh_task.done():
            return self._refresh_task

        task = asyncio.get_running_loop().create_task(
            self._do_refresh(refresh_token, self._generation)
        )
        self._refresh_task = task
        task.add_done_callback(self._release_refresh_slot)
        return task

    def _release_refresh_slot(self, task: "asyncio.Task[TokenSet]") -> None:
        if self._refresh_task is task:
            self._refresh_task = None

    async def _do_refresh(self, refresh_token: str, generation: int) -> TokenSet:
        """Call the token endpoint with the refresh_token grant.

        The result is discarded if the session was cleared after
        ``generation`` was taken.
        """
        token_request = {
            "grant_type": "refresh_token",
            "client_id": self.client_id,
            "refresh_token": refresh_token,
        }

        logger.debug("Refreshing access token")
        try:
            async with http_session(self._http) as client:
                response = await client.post(
                    f"{self.domain}/oauth2/token",
                    data=token_request,
                    headers=FORM_HEADERS,
                )
        except httpx.RequestError as e:
            raise TokenError(
                "Network error during token refresh", "refresh_network_error"
            ) from e

        if self._generation != generation:
            # Signed out while the request was in flight
            logger.debug("Discarding token refresh result for an ended session")
            raise TokenError("Session ended during token refresh", "session_ended")

        tokens: TokenSet | None = None
        if is_ok(response):
            try:
                tokens = TokenSet.from_token_response(read_json(response))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Token refresh returned an unusable body: {e}")
        else:
            logger.warning(f"Token refresh failed (HTTP {response.status_code})")

        if tokens is None:
            # The session cannot be recovered; the user must sign in again
            self.clear_tokens()
            self.emitter.emit(AuthEvent.SESSION_EXPIRED, None)
            raise TokenError("Token refresh failed", "refresh_failed")

        # Providers that do not rotate refresh tokens omit it
        if not tokens.has_refresh_token():
            tokens = tokens.with_refresh_token(refresh_token)

        self.set_tokens(tokens)
        logger.info("Access token refreshed")
        self.emitter.emit(AuthEvent.TOKEN_REFRESHED, self.build_session())

        return tokens
