"""Token and session data structures.

TokenSet is the persisted credential bundle. AuthSession is the view handed
to event subscribers, rebuilt from the stored TokenSet for every event.
PendingFlowState holds the one-time artifacts of an in-flight redirect.
"""

import json
from dataclasses import dataclass, replace
from typing import Any


@dataclass(frozen=True)
class TokenSet:
    """OAuth token set as returned by the provider.

    Frozen: a stored token set is only ever replaced as a whole.

    Attributes:
        access_token: The bearer access token (a JWT)
        refresh_token: Optional refresh token
        id_token: Optional OIDC ID token
        scope: Space-separated list of granted scopes
        expires_in: Lifetime in seconds as reported by the provider.
            Informational only; expiry is read from the access token itself.
        token_type: Token type (typically "Bearer")
    """

    access_token: str
    refresh_token: str | None = None
    id_token: str | None = None
    scope: str = ""
    expires_in: int | None = None
    token_type: str = "Bearer"

    def has_refresh_token(self) -> bool:
        """Check if this token set has a refresh token."""
        return self.refresh_token is not None and len(self.refresh_token) > 0

    def with_refresh_token(self, refresh_token: str | None) -> "TokenSet":
        """Return a copy carrying the given refresh token."""
        return replace(self, refresh_token=refresh_token)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the provider's wire names for storage."""
        data: dict[str, Any] = {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "scope": self.scope,
        }

        if self.refresh_token is not None:
            data["refresh_token"] = self.refresh_token

        if self.id_token is not None:
            data["id_token"] = self.id_token

        if self.expires_in is not None:
            data["expires_in"] = self.expires_in

        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TokenSet":
        """Deserialize a token set.

        Raises:
            KeyError: If access_token is missing
            ValueError: If a field has the wrong type
        """
        access_token = data["access_token"]
        if not isinstance(access_token, str) or not access_token:
            raise ValueError("access_token must be a non-empty string")

        expires_in = data.get("expires_in")
        if expires_in is not None:
            expires_in = int(expires_in)

        return cls(
            access_token=access_token,
            refresh_token=data.get("refresh_token"),
            id_token=data.get("id_token"),
            scope=data.get("scope") or "",
            expires_in=expires_in,
            token_type=data.get("token_type") or "Bearer",
        )

    @classmethod
    def from_token_response(cls, response: dict[str, Any]) -> "TokenSet":
        """Create TokenSet from a token endpoint (or login) response."""
        return cls.from_dict(response)

    @classmethod
    def from_json(cls, raw: str) -> "TokenSet":
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("stored token set is not a JSON object")
        return cls.from_dict(data)

    def get_auth_header(self) -> str:
        """Get the Authorization header value for this token."""
        # Always "Bearer" per RFC 6750, whatever casing the server returned
        return f"Bearer {self.access_token}"


@dataclass
class AuthSession:
    """Session view passed to auth state subscribers.

    Attributes:
        access_token: Current access token
        id_token: OIDC ID token, if any
        refresh_token: Refresh token, if any
        user: Claim map from the access token (sub, email, name, and the rest)
        expires_at: Access token expiry, epoch seconds
    """

    access_token: str
    user: dict[str, Any]
    expires_at: float | None
    id_token: str | None = None
    refresh_token: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "id_token": self.id_token,
            "refresh_token": self.refresh_token,
            "user": dict(self.user),
            "expires_at": self.expires_at,
        }


@dataclass
class PendingFlowState:
    """One-time artifacts of a redirect flow in progress."""

    code_verifier: str | None = None
    state: str | None = None
    nonce: str | None = None
    social_login: bool = False
