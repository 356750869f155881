"""HelloJohn auth - client-side authentication for HelloJohn identity providers."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("hellojohn-auth")
except PackageNotFoundError:
    __version__ = "0.1.0"  # Fallback for development

__all__ = [
    "__version__",
    # Client
    "AuthClient",
    "ClientOptions",
    "load_options",
    # Tokens and events
    "TokenSet",
    "AuthSession",
    "AuthEvent",
    # Storage
    "MemoryStorageAdapter",
    "EncryptedFileStorageAdapter",
    # Errors
    "HelloJohnError",
    "AuthenticationError",
    "TokenError",
    "MFARequiredError",
    "NetworkError",
    # PKCE / token helpers
    "generate_pkce_pair",
    "decode_claims",
    "is_token_expired",
]


# Lazy imports keep `import hellojohn` light for the CLI
def __getattr__(name: str) -> object:
    """Lazy import module components."""
    if name == "AuthClient":
        from .client import AuthClient
        return AuthClient
    elif name in ("ClientOptions", "load_options"):
        from .config import ClientOptions, load_options
        return {"ClientOptions": ClientOptions, "load_options": load_options}[name]
    elif name in ("TokenSet", "AuthSession"):
        from .tokens import AuthSession, TokenSet
        return {"TokenSet": TokenSet, "AuthSession": AuthSession}[name]
    elif name == "AuthEvent":
        from .events import AuthEvent
        return AuthEvent
    elif name in ("MemoryStorageAdapter", "EncryptedFileStorageAdapter"):
        from . import storage
        return getattr(storage, name)
    elif name in ("HelloJohnError", "AuthenticationError", "TokenError", "MFARequiredError", "NetworkError"):
        from . import errors
        return getattr(errors, name)
    elif name == "generate_pkce_pair":
        from .pkce import generate_pkce_pair
        return generate_pkce_pair
    elif name in ("decode_claims", "is_token_expired"):
        from .jwt import decode_claims, is_token_expired
        return {"decode_claims": decode_claims, "is_token_expired": is_token_expired}[name]
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
