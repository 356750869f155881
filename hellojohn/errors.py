"""Typed errors raised by the HelloJohn auth client.

Every error carries a machine-readable ``code`` so callers can branch on the
kind of failure without matching on message text.
"""

from typing import Any


class HelloJohnError(Exception):
    """Base error for all auth client failures.

    Attributes:
        message: Human-readable description
        code: Machine-readable error code (e.g. "invalid_state")
        status_code: HTTP status returned by the provider, if any
    """

    def __init__(self, message: str, code: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code


class AuthenticationError(HelloJohnError):
    """Credentials rejected (bad password, disabled or unverified user)."""

    def __init__(
        self,
        message: str,
        code: str = "authentication_error",
        status_code: int | None = 401,
    ):
        super().__init__(message, code, status_code)


class TokenError(HelloJohnError):
    """No usable token: nothing stored, session expired or refresh failed."""

    def __init__(self, message: str, code: str = "token_error"):
        super().__init__(message, code)


class MFARequiredError(HelloJohnError):
    """Login needs a second factor before tokens are issued."""

    def __init__(self, challenge_id: str):
        super().__init__("MFA verification required", "mfa_required", 403)
        self.challenge_id = challenge_id


class NetworkError(HelloJohnError):
    """The request could not be sent or the response could not be read."""

    def __init__(self, message: str = "Network request failed"):
        super().__init__(message, "network_error")


class PKCEError(HelloJohnError):
    """The random source could not produce PKCE material."""

    def __init__(self, message: str):
        super().__init__(message, "pkce_unavailable")


class StorageError(HelloJohnError):
    """A storage adapter could not read or write its backing store."""

    def __init__(self, message: str):
        super().__init__(message, "storage_error")


def _as_str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def parse_api_error(status: int, body: Any) -> HelloJohnError:
    """Map a provider error response into a typed error.

    Args:
        status: HTTP status code
        body: Parsed JSON body, or anything else if the body was unusable

    Returns:
        MFARequiredError, AuthenticationError or HelloJohnError
    """
    if not isinstance(body, dict):
        body = {}

    message = (
        _as_str(body.get("error_description"))
        or _as_str(body.get("message"))
        or _as_str(body.get("error"))
        or "Unknown error"
    )
    code = _as_str(body.get("error")) or "api_error"

    challenge_id = _as_str(body.get("challenge_id"))
    if code == "mfa_required" and challenge_id:
        return MFARequiredError(challenge_id)

    if status == 401:
        return AuthenticationError(message, code, status)
    return HelloJohnError(message, code, status)


REDIRECT_NOT_ALLOWED_MESSAGE = (
    "The callback URL is not allowed for this client. "
    "Add it to the client's redirect_uris and try again."
)


def parse_social_start_error(status: int, body: Any) -> HelloJohnError:
    """Map an error from the social login start endpoint.

    Providers report a rejected redirect URI in several ways (dedicated codes,
    a generic 500 with a detail string, or only a message). All of them are
    folded into the single ``redirect_uri_not_allowed`` code.
    """
    if not isinstance(body, dict):
        body = {}

    code = _as_str(body.get("code")) or _as_str(body.get("error")) or "social_start_failed"
    lower_code = code.lower()

    message = (
        _as_str(body.get("error_description"))
        or _as_str(body.get("message"))
        or _as_str(body.get("detail"))
        or "Social login could not be started"
    )
    lower_message = message.lower()
    detail = (_as_str(body.get("detail")) or "").lower()

    redirect_issue = (
        lower_code in ("redirect_uri_not_allowed", "invalid_redirect_uri")
        or "redirect_uri" in detail
        or "redirect_uri not allowed" in lower_message
        or "redirect uri not allowed" in lower_message
    )
    if redirect_issue:
        return HelloJohnError(REDIRECT_NOT_ALLOWED_MESSAGE, "redirect_uri_not_allowed", status)

    return HelloJohnError(message, code, status)
