"""PKCE (Proof Key for Code Exchange) implementation per RFC 7636.

Verifiers, state and nonce values all come from the same primitive: 32 random
bytes, base64url-encoded without padding (43 characters).
"""

import base64
from dataclasses import dataclass

from .errors import PKCEError
from .platform import DigestFunction, RandomSource, default_random_source, sha256_digest

# Entropy per generated value, in bytes
RANDOM_BYTES = 32


@dataclass
class PKCEPair:
    """PKCE code verifier and challenge pair.

    The verifier is a cryptographically random string sent in the token request.
    The challenge is a SHA256 hash of the verifier sent in the authorization request.
    """

    verifier: str
    challenge: str
    method: str = "S256"


def base64url_encode(data: bytes) -> str:
    """Base64URL encode without padding (per RFC 7636 Appendix A)."""
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _random_token(random_source: RandomSource | None) -> str:
    source = random_source or default_random_source
    try:
        data = source(RANDOM_BYTES)
    except (NotImplementedError, OSError) as e:
        raise PKCEError(f"Secure random source unavailable: {e}") from e

    if len(data) != RANDOM_BYTES:
        raise PKCEError(
            f"Secure random source returned {len(data)} bytes, expected {RANDOM_BYTES}"
        )
    return base64url_encode(data)


def generate_code_verifier(random_source: RandomSource | None = None) -> str:
    """Generate a cryptographically random code verifier.

    Args:
        random_source: Optional source of random bytes (default: secrets)

    Returns:
        43-character base64url string

    Raises:
        PKCEError: If the random source cannot deliver
    """
    return _random_token(random_source)


def generate_code_challenge(verifier: str, digest: DigestFunction | None = None) -> str:
    """Generate S256 code challenge from verifier.

    Per RFC 7636 Section 4.2:
    code_challenge = BASE64URL(SHA256(code_verifier))

    Args:
        verifier: The code verifier string
        digest: Optional SHA-256 implementation

    Returns:
        Base64URL-encoded SHA256 hash of the verifier
    """
    digest = digest or sha256_digest
    return base64url_encode(digest(verifier.encode("ascii")))


def generate_pkce_pair(
    random_source: RandomSource | None = None,
    digest: DigestFunction | None = None,
) -> PKCEPair:
    """Generate a complete PKCE pair (verifier + challenge)."""
    verifier = generate_code_verifier(random_source)
    challenge = generate_code_challenge(verifier, digest)

    return PKCEPair(verifier=verifier, challenge=challenge, method="S256")


def generate_state(random_source: RandomSource | None = None) -> str:
    """Generate a cryptographically random state parameter.

    The state parameter protects against CSRF attacks by ensuring
    the authorization response came from a request we initiated.
    """
    return _random_token(random_source)


def generate_nonce(random_source: RandomSource | None = None) -> str:
    """Generate a single-use OIDC nonce for replay protection."""
    return _random_token(random_source)
