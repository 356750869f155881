"""HelloJohn auth client.

This module orchestrates every sign-in flow the provider supports:
1. OAuth2 Authorization Code + PKCE (redirect and callback)
2. Social provider redirect login
3. Direct email/password login, surfacing MFA challenges
4. Registration, password recovery and profile completion
5. Logout, logout from all devices and token revocation

Token storage and refresh are delegated to the TokenManager; state changes
are published on the AuthEventEmitter.
"""

import hmac
import logging
from pathlib import Path
from typing import Any, Callable
from urllib.parse import parse_qs, quote, urlencode, urlparse

import httpx

from .config import DEFAULT_ORIGIN, ClientOptions
from .errors import (
    HelloJohnError,
    MFARequiredError,
    NetworkError,
    TokenError,
    parse_api_error,
    parse_social_start_error,
)
from .events import AuthEvent, AuthEventCallback, AuthEventEmitter
from .fetch import AuthenticatedFetch, create_fetch_wrapper
from .jwt import decode_claims
from .mfa import MFAClient
from .pkce import generate_nonce, generate_pkce_pair, generate_state
from .platform import (
    Clock,
    DigestFunction,
    Navigator,
    RandomSource,
    Scheduler,
    WebBrowserNavigator,
)
from .storage import EncryptedFileStorageAdapter, MemoryStorageAdapter, StorageAdapter
from .token_manager import TokenManager
from .tokens import AuthSession, PendingFlowState, TokenSet
from .transport import (
    FORM_HEADERS,
    JSON_HEADERS,
    bearer_headers,
    http_session,
    is_ok,
    is_redirect,
    read_json,
)

logger = logging.getLogger(__name__)

# Transient keys in the flow-state storage
CACHE_KEY_VERIFIER = "verifier"
CACHE_KEY_STATE = "state"
CACHE_KEY_NONCE = "nonce"
CACHE_KEY_SOCIAL_LOGIN = "social_login"


def _query_params(url: str) -> dict[str, str]:
    """First value of each query parameter in a URL."""
    params = parse_qs(urlparse(url).query)
    return {name: values[0] for name, values in params.items() if values}


def _states_match(received: str | None, expected: str | None) -> bool:
    if not received or not expected:
        return False
    # Constant-time comparison to prevent timing attacks
    return hmac.compare_digest(received.encode("utf-8"), expected.encode("utf-8"))


def _error_from_body(
    body: Any, default_message: str, default_code: str, status_code: int | None
) -> HelloJohnError:
    if not isinstance(body, dict):
        body = {}
    message = body.get("error_description") or body.get("message") or default_message
    code = body.get("error") or body.get("code") or default_code
    return HelloJohnError(str(message), str(code), status_code)


class AuthClient:
    """Client-side authentication against a HelloJohn identity provider.

    Usage:
        client = AuthClient(domain="https://auth.example.com", client_id="my-app")
        client.on_auth_state_change(lambda event, session: print(event))

        await client.login_with_redirect()
        # ... browser returns to the redirect URI ...
        await client.handle_redirect_callback(callback_url)

        token = await client.get_access_token()
    """

    def __init__(
        self,
        domain: str,
        client_id: str,
        tenant_id: str | None = None,
        redirect_uri: str | None = None,
        scope: str | None = None,
        auto_refresh: bool = True,
        storage: StorageAdapter | None = None,
        session_storage: StorageAdapter | None = None,
        navigator: Navigator | None = None,
        http_client: httpx.AsyncClient | None = None,
        scheduler: Scheduler | None = None,
        clock: Clock | None = None,
        random_source: RandomSource | None = None,
        digest: DigestFunction | None = None,
        origin: str = DEFAULT_ORIGIN,
        store_dir: Path | None = None,
    ):
        """Initialize the auth client.

        Args:
            domain: Identity provider base URL
            client_id: OAuth client ID
            tenant_id: Tenant ID or slug
            redirect_uri: Redirect URI (default: origin + "/callback")
            scope: Requested scopes (default: "openid profile email")
            auto_refresh: Refresh tokens before they expire
            storage: Persistent token storage (default: encrypted file store)
            session_storage: Short-lived storage for PKCE artifacts
            navigator: Sends the user to the provider (default: system browser)
            http_client: Optional shared HTTP client
            scheduler: Timer capability for proactive refresh
            clock: Wall clock returning epoch seconds
            random_source: Source of secure random bytes
            digest: SHA-256 implementation
            origin: Application origin
            store_dir: Directory for the default encrypted store
        """
        options = ClientOptions(
            domain=domain,
            client_id=client_id,
            tenant_id=tenant_id,
            redirect_uri=redirect_uri,
            scope=scope or "",
            auto_refresh=auto_refresh,
            origin=origin,
            store_dir=store_dir,
        )
        self.domain = options.domain
        self.client_id = options.client_id
        self.tenant_id = options.tenant_id
        self.redirect_uri: str = options.redirect_uri  # type: ignore[assignment]
        self.scope = options.scope
        self.origin = options.origin

        self.storage = storage or EncryptedFileStorageAdapter(options.store_dir)
        self.session_storage = session_storage or MemoryStorageAdapter()
        self.navigator = navigator or WebBrowserNavigator()

        self._http = http_client
        self._random_source = random_source
        self._digest = digest
        self._cached_config: dict[str, Any] | None = None

        self.emitter = AuthEventEmitter()
        self.token_manager = TokenManager(
            domain=self.domain,
            client_id=self.client_id,
            storage=self.storage,
            emitter=self.emitter,
            auto_refresh=options.auto_refresh,
            http_client=http_client,
            scheduler=scheduler,
            clock=clock,
        )

        # Schedule refresh for tokens persisted by an earlier run
        self.token_manager.initialize()

        self.mfa = MFAClient(self.domain, self.get_access_token, http_client)

    @classmethod
    def from_options(cls, options: ClientOptions, **kwargs: Any) -> "AuthClient":
        """Create a client from ClientOptions plus capability overrides."""
        return cls(
            domain=options.domain,
            client_id=options.client_id,
            tenant_id=options.tenant_id,
            redirect_uri=options.redirect_uri,
            scope=options.scope,
            auto_refresh=options.auto_refresh,
            origin=options.origin,
            store_dir=options.store_dir,
            **kwargs,
        )

    # Events

    def on_auth_state_change(self, callback: AuthEventCallback) -> Callable[[], None]:
        """Subscribe to auth state changes.

        Fires on SIGNED_IN, SIGNED_OUT, TOKEN_REFRESHED, SESSION_EXPIRED,
        USER_UPDATED and MFA_REQUIRED.

        Returns:
            An unsubscribe function
        """
        return self.emitter.on(callback)

    # Token access

    async def get_access_token(self) -> str:
        """Get a valid access token, refreshing if expired.

        Raises:
            TokenError: If no session exists or it cannot be refreshed
        """
        return await self.token_manager.get_access_token()

    def get_stored_tokens(self) -> TokenSet | None:
        """Get the stored token set (may be expired)."""
        return self.token_manager.get_stored_tokens()

    async def refresh_session(self) -> TokenSet:
        """Force a token refresh."""
        return await self.token_manager.refresh_session()

    def is_authenticated(self) -> bool:
        """Check if the user holds a non-expired access token."""
        return self.token_manager.is_authenticated()

    def get_session(self) -> AuthSession | None:
        """Current session view, or None when signed out."""
        return self.token_manager.build_session()

    # Tenant config

    async def get_tenant_config(self) -> dict[str, Any]:
        """Fetch (once) the public tenant/client configuration."""
        if self._cached_config is not None:
            return self._cached_config

        try:
            async with http_session(self._http) as client:
                response = await client.get(
                    f"{self.domain}/v2/auth/config",
                    params={"client_id": self.client_id},
                )
        except httpx.RequestError as e:
            raise NetworkError() from e

        if not is_ok(response):
            raise HelloJohnError(
                "Failed to load tenant config", "config_failed", response.status_code
            )

        config = read_json(response)
        self._cached_config = config if isinstance(config, dict) else {}
        return self._cached_config

    async def _resolve_tenant(self) -> str | None:
        if self.tenant_id:
            return self.tenant_id
        config = await self.get_tenant_config()
        return config.get("tenant_slug") or None

    # OAuth2 PKCE flow

    def build_authorization_url(
        self, code_challenge: str, state: str, nonce: str, scope: str | None = None
    ) -> str:
        """Build the /oauth2/authorize URL for a PKCE login."""
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": scope or self.scope,
            "state": state,
            "nonce": nonce,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        return f"{self.domain}/oauth2/authorize?{urlencode(params)}"

    async def login_with_redirect(self, scope: str | None = None) -> str:
        """Start a PKCE login and send the user to the provider.

        The verifier, state and nonce are persisted in session storage
        before navigating away.

        Returns:
            The authorization URL the navigator was sent to
        """
        pkce = generate_pkce_pair(self._random_source, self._digest)
        flow = PendingFlowState(
            code_verifier=pkce.verifier,
            state=generate_state(self._random_source),
            nonce=generate_nonce(self._random_source),
        )

        self.session_storage.set(CACHE_KEY_VERIFIER, flow.code_verifier)  # type: ignore[arg-type]
        self.session_storage.set(CACHE_KEY_STATE, flow.state)  # type: ignore[arg-type]
        self.session_storage.set(CACHE_KEY_NONCE, flow.nonce)  # type: ignore[arg-type]

        auth_url = self.build_authorization_url(
            pkce.challenge,
            flow.state,  # type: ignore[arg-type]
            flow.nonce,  # type: ignore[arg-type]
            scope,
        )
        logger.debug("Redirecting to authorization endpoint")
        self.navigator.navigate(auth_url)
        return auth_url

    def get_pending_flow(self) -> PendingFlowState:
        """Read the artifacts of the redirect flow in progress."""
        return PendingFlowState(
            code_verifier=self.session_storage.get(CACHE_KEY_VERIFIER),
            state=self.session_storage.get(CACHE_KEY_STATE),
            nonce=self.session_storage.get(CACHE_KEY_NONCE),
            social_login=self.session_storage.get(CACHE_KEY_SOCIAL_LOGIN) == "true",
        )

    def _clear_pending_flow(self) -> None:
        self.session_storage.remove(CACHE_KEY_VERIFIER)
        self.session_storage.remove(CACHE_KEY_STATE)
        self.session_storage.remove(CACHE_KEY_NONCE)

    async def handle_redirect_callback(self, url: str) -> AuthSession | None:
        """Complete a PKCE login from the callback URL.

        Args:
            url: The full redirect URL the provider sent the user back to

        Returns:
            The new session, or None if the callback was already handled
            and the user is signed in

        Raises:
            HelloJohnError: authorization_error, missing_code,
                missing_verifier, invalid_state or token_exchange_failed
            NetworkError: If the token endpoint cannot be reached
        """
        params = _query_params(url)
        code = params.get("code")
        state = params.get("state")
        error = params.get("error")

        if error:
            self._clear_pending_flow()
            description = params.get("error_description") or "No description provided"
            raise HelloJohnError(f"Authorization failed: {error} - {description}", "authorization_error")

        if not code:
            raise HelloJohnError("No authorization code in callback URL", "missing_code")

        flow = self.get_pending_flow()
        if not flow.code_verifier:
            # A callback handled twice finds its verifier already consumed
            if self.is_authenticated():
                logger.debug("Callback already handled; session is active")
                return None
            raise HelloJohnError("No PKCE verifier found for this callback", "missing_verifier")

        try:
            if not _states_match(state, flow.state):
                raise HelloJohnError(
                    "State mismatch in callback - possible CSRF attack", "invalid_state"
                )

            tokens = await self._exchange_code(code, flow.code_verifier)
            self.token_manager.set_tokens(tokens)
            session = self.token_manager.build_session()
            logger.info("Signed in with authorization code")
            self.emitter.emit(AuthEvent.SIGNED_IN, session)
            return session
        finally:
            # The verifier is single-use whatever the outcome
            self._clear_pending_flow()

    async def _exchange_code(self, code: str, code_verifier: str) -> TokenSet:
        token_request = {
            "grant_type": "authorization_code",
            "client_id": self.client_id,
            "code": code,
            "redirect_uri": self.redirect_uri,
            "code_verifier": code_verifier,
        }

        try:
            async with http_session(self._http) as client:
                response = await client.post(
                    f"{self.domain}/oauth2/token",
                    data=token_request,
                    headers=FORM_HEADERS,
                )
        except httpx.RequestError as e:
            raise NetworkError("Network error during token exchange") from e

        if not is_ok(response):
            raise _error_from_body(
                read_json(response),
                "Token exchange failed",
                "token_exchange_failed",
                response.status_code,
            )

        return self._parse_tokens(read_json(response))

    def _parse_tokens(self, body: Any) -> TokenSet:
        try:
            return TokenSet.from_token_response(body)
        except (KeyError, TypeError, ValueError) as e:
            raise HelloJohnError(
                "Provider returned an invalid token response", "invalid_token_response"
            ) from e

    # Social login

    def _navigate_social(self, url: str) -> str:
        self.session_storage.set(CACHE_KEY_SOCIAL_LOGIN, "true")
        self.navigator.navigate(url)
        return url

    async def login_with_social_provider(self, provider: str) -> str:
        """Start a social login (e.g. "google", "github").

        The start endpoint is requested without following redirects so that
        configuration errors surface as typed errors instead of an error page.

        Returns:
            The URL the navigator was sent to

        Raises:
            HelloJohnError: missing_tenant, redirect_uri_not_allowed or the
                provider's error
        """
        tenant = await self._resolve_tenant()
        if not tenant:
            raise HelloJohnError("Could not determine tenant for social login", "missing_tenant")

        params = urlencode(
            {
                "client_id": self.client_id,
                "redirect_uri": self.redirect_uri,
                "tenant_id": tenant,
            }
        )
        start_url = f"{self.domain}/v2/auth/social/{quote(provider, safe='')}/start?{params}"

        try:
            async with http_session(self._http) as client:
                response = await client.get(start_url, follow_redirects=False)
        except httpx.RequestError as e:
            # Probe blocked; fall back to plain navigation
            logger.debug(f"Social start request failed ({e}); navigating directly")
            return self._navigate_social(start_url)

        if is_redirect(response):
            location = response.headers.get("Location")
            return self._navigate_social(location or start_url)

        if not is_ok(response):
            raise parse_social_start_error(response.status_code, read_json(response))

        return self._navigate_social(start_url)

    def is_social_callback(self, url: str) -> bool:
        """Check whether a callback URL belongs to a social login."""
        params = _query_params(url)
        has_code = "code" in params
        has_error = "error" in params
        has_verifier = bool(self.session_storage.get(CACHE_KEY_VERIFIER))

        is_social = (
            self.session_storage.get(CACHE_KEY_SOCIAL_LOGIN) == "true"
            or params.get("social") == "true"
        )

        return (has_code or (has_error and is_social)) and not has_verifier

    async def handle_social_callback(self, url: str) -> AuthSession | None:
        """Exchange the social login code for tokens.

        Raises:
            HelloJohnError: The provider's error, missing_code or exchange_failed
            NetworkError: If the exchange endpoint cannot be reached
        """
        params = _query_params(url)

        error = params.get("error")
        if error:
            self.session_storage.remove(CACHE_KEY_SOCIAL_LOGIN)
            raise HelloJohnError(params.get("error_description") or "Social login failed", error)

        code = params.get("code")
        if not code:
            raise HelloJohnError("No code found in URL for social callback", "missing_code")

        try:
            async with http_session(self._http) as client:
                response = await client.post(
                    f"{self.domain}/v2/auth/social/exchange",
                    json={"code": code, "client_id": self.client_id},
                    headers=JSON_HEADERS,
                )
        except httpx.RequestError as e:
            raise NetworkError() from e

        if not is_ok(response):
            raise _error_from_body(
                read_json(response),
                "Social login exchange failed",
                "exchange_failed",
                response.status_code,
            )

        tokens = self._parse_tokens(read_json(response))
        self.token_manager.set_tokens(tokens)
        session = self.token_manager.build_session()
        logger.info("Signed in with social provider")
        self.emitter.emit(AuthEvent.SIGNED_IN, session)

        self.session_storage.remove(CACHE_KEY_SOCIAL_LOGIN)
        return session

    # Credential login

    async def login_with_credentials(self, email: str, password: str) -> dict[str, Any]:
        """Sign in with email and password.

        Returns:
            The user profile from /userinfo

        Raises:
            MFARequiredError: A second factor is needed (MFA_REQUIRED is
                published first)
            AuthenticationError: Credentials were rejected
            NetworkError: The provider could not be reached
        """
        body = {
            "tenant_id": self.tenant_id,
            "client_id": self.client_id,
            "email": email,
            "password": password,
        }

        try:
            async with http_session(self._http) as client:
                response = await client.post(
                    f"{self.domain}/v2/auth/login", json=body, headers=JSON_HEADERS
                )
        except httpx.RequestError as e:
            raise NetworkError() from e

        if not is_ok(response):
            error = parse_api_error(response.status_code, read_json(response))
            if isinstance(error, MFARequiredError):
                logger.info("Login requires MFA verification")
                self.emitter.emit(AuthEvent.MFA_REQUIRED, None)
            raise error

        tokens = self._parse_tokens(read_json(response))
        self.token_manager.set_tokens(tokens)

        try:
            user = await self.get_user()
        except NetworkError:
            self.token_manager.clear_tokens()
            raise

        if user is None:
            self.token_manager.clear_tokens()
            raise HelloJohnError("Failed to fetch user profile after login", "profile_failed")

        logger.info("Signed in with credentials")
        self.emitter.emit(AuthEvent.SIGNED_IN, self.token_manager.build_session())
        return user

    # Registration

    async def register(
        self,
        email: str,
        password: str,
        name: str | None = None,
        custom_fields: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Register a new user.

        When the provider signs the user in right away (the response carries
        an access token) the tokens are stored and SIGNED_IN is published.
        """
        fields = dict(custom_fields or {})
        if name:
            fields["name"] = name

        body = {
            "tenant_id": self.tenant_id,
            "client_id": self.client_id,
            "email": email,
            "password": password,
            "custom_fields": fields,
        }

        try:
            async with http_session(self._http) as client:
                response = await client.post(
                    f"{self.domain}/v2/auth/register", json=body, headers=JSON_HEADERS
                )
        except httpx.RequestError as e:
            raise NetworkError() from e

        if not is_ok(response):
            raise parse_api_error(response.status_code, read_json(response))

        result = read_json(response)
        if not isinstance(result, dict):
            result = {}

        if result.get("access_token"):
            self.token_manager.set_tokens(
                TokenSet(
                    access_token=result["access_token"],
                    expires_in=result.get("expires_in") or 3600,
                    token_type="Bearer",
                    scope=self.scope,
                )
            )
            self.emitter.emit(AuthEvent.SIGNED_IN, self.token_manager.build_session())

        return result

    # User info

    async def get_user(self) -> dict[str, Any] | None:
        """Fetch the user profile, or None without a session or on error."""
        try:
            token = await self.get_access_token()
        except TokenError:
            return None

        try:
            async with http_session(self._http) as client:
                response = await client.get(
                    f"{self.domain}/userinfo", headers=bearer_headers(token)
                )
        except httpx.RequestError as e:
            raise NetworkError() from e

        if not is_ok(response):
            logger.debug(f"userinfo returned HTTP {response.status_code}")
            return None

        profile = read_json(response)
        return profile if isinstance(profile, dict) else None

    # Logout

    def _sign_out_locally(self) -> None:
        self.token_manager.clear_tokens()
        logger.info("Signed out")
        self.emitter.emit(AuthEvent.SIGNED_OUT, None)

    async def logout(self, return_to: str | None = None) -> None:
        """Sign out locally, then end the provider session (best effort)."""
        self._sign_out_locally()

        try:
            async with http_session(self._http) as client:
                await client.post(
                    f"{self.domain}/v2/session/logout",
                    params={"return_to": return_to or self.origin},
                )
        except httpx.HTTPError as e:
            logger.debug(f"Provider session logout failed: {e}")

    async def logout_all(self) -> None:
        """Sign out of every session and device.

        Local state is cleared even if the provider cannot be reached.
        """
        try:
            token = await self.get_access_token()
        except TokenError:
            self._sign_out_locally()
            return

        try:
            async with http_session(self._http) as client:
                await client.post(
                    f"{self.domain}/v2/auth/logout-all", headers=bearer_headers(token)
                )
        except httpx.HTTPError as e:
            logger.warning(f"Logout from all devices failed on the provider: {e}")
        finally:
            self._sign_out_locally()

    async def revoke_token(self) -> None:
        """Revoke the current access token (RFC 7009) and sign out locally."""
        tokens = self.token_manager.get_stored_tokens()
        if tokens is None:
            return

        try:
            async with http_session(self._http) as client:
                response = await client.post(
                    f"{self.domain}/oauth2/revoke",
                    data={"token": tokens.access_token, "client_id": self.client_id},
                    headers=FORM_HEADERS,
                )
            if not is_ok(response):
                logger.warning(f"Token revocation returned HTTP {response.status_code}")
        except httpx.HTTPError as e:
            logger.warning(f"Network error during token revocation: {e}")
        finally:
            self._sign_out_locally()

    # Providers

    async def get_providers(self) -> list[str]:
        """List the social providers enabled for the tenant."""
        params = {"client_id": self.client_id}
        tenant = await self._resolve_tenant()
        if tenant:
            params["tenant_id"] = tenant

        try:
            async with http_session(self._http) as client:
                response = await client.get(f"{self.domain}/v2/auth/providers", params=params)
        except httpx.RequestError as e:
            logger.debug(f"Could not list providers: {e}")
            return []

        if not is_ok(response):
            return []
        data = read_json(response)
        if not isinstance(data, dict):
            return []
        return list(data.get("providers") or [])

    # Password recovery and verification

    async def _post_public(
        self, path: str, body: dict[str, Any], default_message: str, default_code: str
    ) -> None:
        try:
            async with http_session(self._http) as client:
                response = await client.post(
                    f"{self.domain}{path}", json=body, headers=JSON_HEADERS
                )
        except httpx.RequestError as e:
            raise NetworkError() from e

        if not is_ok(response):
            raise _error_from_body(
                read_json(response), default_message, default_code, response.status_code
            )

    async def forgot_password(self, email: str) -> None:
        """Send a password reset email."""
        await self._post_public(
            "/v2/auth/forgot",
            {
                "tenant_id": await self._resolve_tenant(),
                "client_id": self.client_id,
                "email": email,
                "redirect_uri": self.redirect_uri,
            },
            "Failed to send password reset email",
            "forgot_password_failed",
        )

    async def reset_password(self, token: str, new_password: str) -> None:
        """Set a new password using the token from the reset email."""
        await self._post_public(
            "/v2/auth/reset",
            {
                "tenant_id": await self._resolve_tenant(),
                "client_id": self.client_id,
                "token": token,
                "new_password": new_password,
            },
            "Failed to reset password",
            "reset_password_failed",
        )

    async def resend_verification_email(self, email: str | None = None) -> None:
        """Resend the email verification link.

        Without an explicit email the address is read from the stored
        access token.
        """
        if not email:
            tokens = self.token_manager.get_stored_tokens()
            claims = decode_claims(tokens.access_token) if tokens else None
            email = (claims.email if claims else None) or ""

        await self._post_public(
            "/v2/auth/verify-email/start",
            {
                "tenant_id": await self._resolve_tenant(),
                "client_id": self.client_id,
                "email": email,
                "redirect_uri": self.redirect_uri,
            },
            "Failed to resend verification email",
            "verification_email_failed",
        )

    # Profile

    async def complete_profile(self, fields: dict[str, str]) -> None:
        """Submit missing custom profile fields; publishes USER_UPDATED."""
        token = await self.get_access_token()

        try:
            async with http_session(self._http) as client:
                response = await client.post(
                    f"{self.domain}/v2/auth/complete-profile",
                    json={"custom_fields": fields},
                    headers=bearer_headers(token, JSON_HEADERS),
                )
        except httpx.RequestError as e:
            raise NetworkError() from e

        if not is_ok(response):
            raise _error_from_body(
                read_json(response),
                "Profile update failed",
                "profile_update_failed",
                response.status_code,
            )

        self.emitter.emit(AuthEvent.USER_UPDATED, self.token_manager.build_session())

    # HTTP helper

    def create_fetch_wrapper(self) -> AuthenticatedFetch:
        """Create a request function that injects the Bearer token."""
        return create_fetch_wrapper(self.get_access_token, self._http)

    # Cleanup

    def destroy(self) -> None:
        """Cancel timers and drop all listeners. Stored tokens are kept."""
        self.token_manager.destroy()
        self.emitter.clear()
