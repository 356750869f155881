"""JWT payload decoding for the client side.

Nothing here verifies a signature. The payload is only read to learn the
subject and expiry of tokens the client already holds; signature checks
belong to the resource server.
"""

import base64
import binascii
import json
import time
from dataclasses import dataclass, field
from typing import Any

DEFAULT_CLOCK_SKEW_SECONDS = 30

_KNOWN_CLAIMS = ("sub", "exp", "iat", "email", "name", "tid")


@dataclass
class DecodedClaims:
    """Typed view of a JWT payload.

    Attributes:
        sub: Subject identifier
        exp: Expiry (epoch seconds), None if absent or not numeric
        iat: Issued-at (epoch seconds)
        email: User email claim
        name: User display name claim
        tid: Tenant identifier claim
        extra: Every other claim, untouched
    """

    sub: str | None = None
    exp: float | None = None
    iat: float | None = None
    email: str | None = None
    name: str | None = None
    tid: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "DecodedClaims":
        return cls(
            sub=payload.get("sub"),
            exp=_numeric(payload.get("exp")),
            iat=_numeric(payload.get("iat")),
            email=payload.get("email"),
            name=payload.get("name"),
            tid=payload.get("tid"),
            extra={k: v for k, v in payload.items() if k not in _KNOWN_CLAIMS},
        )

    def as_dict(self) -> dict[str, Any]:
        """Flatten back into a claim map (known claims first)."""
        data: dict[str, Any] = {
            "sub": self.sub,
            "email": self.email,
            "name": self.name,
        }
        for key in ("exp", "iat", "tid"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        data.update(self.extra)
        return data


def _numeric(value: Any) -> float | None:
    # bool is an int subclass but never a valid timestamp
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def decode_payload(token: str) -> dict[str, Any] | None:
    """Decode a JWT payload without verification.

    Args:
        token: Compact-serialized JWT (header.payload.signature)

    Returns:
        The payload as a dict, or None if the token is malformed
    """
    if not isinstance(token, str):
        return None

    parts = token.split(".")
    if len(parts) != 3 or not all(parts):
        return None

    segment = parts[1]
    padded = segment + "=" * (-len(segment) % 4)
    try:
        raw = base64.b64decode(padded.encode("ascii"), altchars=b"-_", validate=True)
        payload = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError):
        return None

    if not isinstance(payload, dict):
        return None
    return payload


def decode_claims(token: str) -> DecodedClaims | None:
    """Decode a JWT into a DecodedClaims view, or None if undecodable."""
    payload = decode_payload(token)
    if payload is None:
        return None
    return DecodedClaims.from_payload(payload)


def is_token_expired(
    token: str,
    clock_skew_seconds: float = DEFAULT_CLOCK_SKEW_SECONDS,
    now: float | None = None,
) -> bool:
    """Check if a JWT is expired or inside the clock skew window.

    Undecodable tokens and tokens without a numeric ``exp`` count as expired.
    The boundary is inclusive: ``exp == now + skew`` is expired.

    Args:
        token: The JWT
        clock_skew_seconds: Buffer for clock drift between client and server
        now: Current epoch seconds (default: time.time())
    """
    claims = decode_claims(token)
    if claims is None or claims.exp is None:
        return True

    current = int(time.time() if now is None else now)
    return claims.exp <= current + clock_skew_seconds


def get_token_expires_in(token: str, now: float | None = None) -> int:
    """Milliseconds until a JWT expires; 0 if already expired or undecodable."""
    claims = decode_claims(token)
    if claims is None or claims.exp is None:
        return 0

    now_ms = (time.time() if now is None else now) * 1000
    return max(0, int(claims.exp * 1000 - now_ms))
