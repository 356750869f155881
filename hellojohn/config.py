"""Client configuration from keyword arguments, environment and .env files."""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_SCOPE = "openid profile email"
DEFAULT_ORIGIN = "http://localhost:3000"

# Env file search paths in priority order
ENV_SEARCH_PATHS = [
    Path(".env"),
    Path.home() / ".hellojohn" / ".env",
]

ENV_PREFIX = "HELLOJOHN_"


class ConfigError(ValueError):
    """Required configuration is missing or invalid."""

    pass


@dataclass
class ClientOptions:
    """Auth client configuration.

    Attributes:
        domain: Identity provider base URL (trailing slash stripped)
        client_id: OAuth client ID
        tenant_id: Tenant ID or slug, if the client is tenant-scoped
        redirect_uri: OAuth redirect URI (default: origin + "/callback")
        scope: Requested scopes
        auto_refresh: Refresh tokens in the background before expiry
        origin: Application origin used to derive the default redirect URI
        store_dir: Directory for the encrypted token store
    """

    domain: str
    client_id: str
    tenant_id: str | None = None
    redirect_uri: str | None = None
    scope: str = DEFAULT_SCOPE
    auto_refresh: bool = True
    origin: str = DEFAULT_ORIGIN
    store_dir: Path | None = None

    def __post_init__(self) -> None:
        if not self.domain:
            raise ConfigError("domain is required")
        if not self.client_id:
            raise ConfigError("client_id is required")

        self.domain = self.domain.rstrip("/")
        self.origin = self.origin.rstrip("/")
        if not self.redirect_uri:
            self.redirect_uri = f"{self.origin}/callback"
        if not self.scope:
            self.scope = DEFAULT_SCOPE


def _parse_bool(value: str) -> bool:
    return value.strip().lower() not in ("0", "false", "no", "off", "")


def find_env_file(explicit_path: Path | None = None) -> Path | None:
    """Find the .env file, checking project then user level."""
    if explicit_path:
        if explicit_path.exists():
            return explicit_path
        return None

    for path in ENV_SEARCH_PATHS:
        if path.exists():
            return path
    return None


def load_options(env_path: Path | None = None, **overrides: object) -> ClientOptions:
    """Build ClientOptions from HELLOJOHN_* environment variables.

    A .env file is loaded first (without overriding variables already set).
    Keyword overrides that are not None take precedence over the environment.

    Raises:
        ConfigError: If domain or client_id cannot be determined
    """
    env_file = find_env_file(env_path)
    if env_file:
        load_dotenv(env_file)

    def setting(name: str) -> str | None:
        value = overrides.get(name)
        if value is not None:
            return str(value)
        return os.environ.get(f"{ENV_PREFIX}{name.upper()}") or None

    domain = setting("domain")
    client_id = setting("client_id")
    if not domain or not client_id:
        raise ConfigError(
            "HelloJohn client is not configured.\n\n"
            "Set HELLOJOHN_DOMAIN and HELLOJOHN_CLIENT_ID in the environment or in a .env file:\n\n"
            "  HELLOJOHN_DOMAIN=https://auth.example.com\n"
            "  HELLOJOHN_CLIENT_ID=my-app"
        )

    auto_refresh = overrides.get("auto_refresh")
    if auto_refresh is None:
        raw = os.environ.get(f"{ENV_PREFIX}AUTO_REFRESH")
        auto_refresh = _parse_bool(raw) if raw is not None else True

    store_dir = setting("store_dir")

    return ClientOptions(
        domain=domain,
        client_id=client_id,
        tenant_id=setting("tenant_id"),
        redirect_uri=setting("redirect_uri"),
        scope=setting("scope") or DEFAULT_SCOPE,
        auto_refresh=bool(auto_refresh),
        origin=setting("origin") or DEFAULT_ORIGIN,
        store_dir=Path(store_dir).expanduser() if store_dir else None,
    )
