"""Tests for the CLI commands."""

import json
import time
from collections.abc import Generator
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner
from conftest import NOW, json_response, make_jwt, store_tokens, token_response

from hellojohn.cli import main
from hellojohn.client import AuthClient
from hellojohn.errors import AuthenticationError, HelloJohnError, MFARequiredError, TokenError
from hellojohn.storage import MemoryStorageAdapter
from hellojohn.tokens import AuthSession, TokenSet

ENV = {
    "HELLOJOHN_DOMAIN": "https://auth.example.com",
    "HELLOJOHN_CLIENT_ID": "cli-app",
    "HELLOJOHN_REDIRECT_URI": "http://127.0.0.1:8765/callback",
}


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture(autouse=True)
def no_env_files(tmp_path: Path) -> Generator[None, None, None]:
    """Keep .env discovery away from the developer's files."""
    with patch("hellojohn.config.ENV_SEARCH_PATHS", [tmp_path / ".env"]):
        yield


@pytest.fixture
def session() -> AuthSession:
    return AuthSession(
        access_token=make_jwt(exp=NOW + 3600),
        user={"sub": "user-123", "email": "user@example.com", "name": "Test User"},
        expires_at=NOW + 3600,
        refresh_token="refresh-1",
    )


@pytest.fixture
def mock_client(session: AuthSession) -> Generator[MagicMock, None, None]:
    """AuthClient stand-in returned by build_client."""
    client = MagicMock()
    client.redirect_uri = ENV["HELLOJOHN_REDIRECT_URI"]
    client.get_access_token = AsyncMock(return_value=session.access_token)
    client.get_user = AsyncMock(return_value=dict(session.user))
    client.login_with_redirect = AsyncMock()
    client.handle_redirect_callback = AsyncMock(return_value=session)
    client.login_with_credentials = AsyncMock(return_value=dict(session.user))
    client.refresh_session = AsyncMock()
    client.logout = AsyncMock()
    client.logout_all = AsyncMock()
    client.revoke_token = AsyncMock()
    client.get_session.return_value = session
    client.get_stored_tokens.return_value = TokenSet(
        access_token=session.access_token, refresh_token="refresh-1", scope="openid"
    )
    client.is_authenticated.return_value = True

    with patch("hellojohn.cli.build_client", return_value=client):
        yield client


class TestMainGroup:
    """Tests for the top-level group."""

    def test_help(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "login" in result.output
        assert "logout-all" in result.output

    def test_missing_configuration(self, runner: CliRunner) -> None:
        env = {key: None for key in ENV}
        result = runner.invoke(main, ["status"], env=env)  # type: ignore[arg-type]
        assert result.exit_code == 1
        assert "HELLOJOHN_DOMAIN" in result.output

    def test_missing_configuration_json(self, runner: CliRunner) -> None:
        env = {key: None for key in ENV}
        result = runner.invoke(main, ["--json", "status"], env=env)  # type: ignore[arg-type]
        assert result.exit_code == 1
        data = json.loads(result.output)
        assert data["success"] is False
        assert data["error"]["type"] == "ConfigError"


class TestLoginCommand:
    """Tests for the browser login command."""

    def test_login(self, runner: CliRunner, mock_client: MagicMock) -> None:
        callback_url = "http://127.0.0.1:8765/callback?code=abc&state=xyz"

        with patch("hellojohn.cli.LocalhostCallbackServer") as server_cls:
            server = server_cls.return_value
            server.__aenter__.return_value = server
            server.wait_for_callback = AsyncMock(return_value=callback_url)

            result = runner.invoke(main, ["login", "--timeout", "30"])

        assert result.exit_code == 0, result.output
        assert "Signed in as user@example.com" in result.output
        server_cls.assert_called_once_with(ENV["HELLOJOHN_REDIRECT_URI"], timeout=30)
        mock_client.login_with_redirect.assert_awaited_once_with(None)
        mock_client.handle_redirect_callback.assert_awaited_once_with(callback_url)
        mock_client.destroy.assert_called_once()

    def test_login_provider_error(self, runner: CliRunner, mock_client: MagicMock) -> None:
        mock_client.handle_redirect_callback.side_effect = HelloJohnError(
            "Authorization failed: access_denied - denied", "authorization_error"
        )

        with patch("hellojohn.cli.LocalhostCallbackServer") as server_cls:
            server = server_cls.return_value
            server.__aenter__.return_value = server
            server.wait_for_callback = AsyncMock(return_value="http://127.0.0.1:8765/callback?error=x")

            result = runner.invoke(main, ["--json", "login"])

        assert result.exit_code == 1
        data = json.loads(result.output)
        assert data["error"]["code"] == "authorization_error"


class TestLoginPasswordCommand:
    """Tests for the credential login command."""

    def test_login_password(self, runner: CliRunner, mock_client: MagicMock) -> None:
        result = runner.invoke(
            main, ["login-password", "--email", "user@example.com", "--password", "hunter2"]
        )

        assert result.exit_code == 0, result.output
        mock_client.login_with_credentials.assert_awaited_once_with("user@example.com", "hunter2")
        assert "Signed in as user@example.com" in result.output

    def test_mfa_required(self, runner: CliRunner, mock_client: MagicMock) -> None:
        mock_client.login_with_credentials.side_effect = MFARequiredError("ch-9")

        result = runner.invoke(
            main, ["login-password", "--email", "user@example.com", "--password", "hunter2"]
        )

        assert result.exit_code == 1
        assert "ch-9" in result.output

    def test_bad_credentials_json(self, runner: CliRunner, mock_client: MagicMock) -> None:
        mock_client.login_with_credentials.side_effect = AuthenticationError(
            "Invalid email or password", "invalid_credentials"
        )

        result = runner.invoke(
            main,
            ["--json", "login-password", "--email", "user@example.com", "--password", "wrong"],
        )

        assert result.exit_code == 1
        assert json.loads(result.output)["error"]["code"] == "invalid_credentials"


class TestSessionCommands:
    """Tests for status, token, whoami and refresh."""

    def test_status(self, runner: CliRunner, mock_client: MagicMock) -> None:
        result = runner.invoke(main, ["--json", "status"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)["data"]
        assert data["authenticated"] is True
        assert data["email"] == "user@example.com"
        assert data["refresh_token"] is True
        assert data["scope"] == "openid"

    def test_status_signed_out(self, runner: CliRunner, mock_client: MagicMock) -> None:
        mock_client.get_session.return_value = None
        mock_client.get_stored_tokens.return_value = None
        mock_client.is_authenticated.return_value = False

        result = runner.invoke(main, ["status"])

        assert result.exit_code == 0
        assert "False" in result.output

    def test_token(self, runner: CliRunner, mock_client: MagicMock, session: AuthSession) -> None:
        result = runner.invoke(main, ["token"])
        assert result.exit_code == 0
        assert result.output.strip() == session.access_token

    def test_token_not_signed_in(self, runner: CliRunner, mock_client: MagicMock) -> None:
        mock_client.get_access_token.side_effect = TokenError("No access token available", "no_token")

        result = runner.invoke(main, ["token"])

        assert result.exit_code == 1
        assert "hellojohn login" in result.output

    def test_whoami(self, runner: CliRunner, mock_client: MagicMock) -> None:
        result = runner.invoke(main, ["--json", "whoami"])
        assert result.exit_code == 0
        assert json.loads(result.output)["data"]["sub"] == "user-123"

    def test_whoami_signed_out(self, runner: CliRunner, mock_client: MagicMock) -> None:
        mock_client.get_user.return_value = None
        result = runner.invoke(main, ["whoami"])
        assert result.exit_code == 1

    def test_refresh(self, runner: CliRunner, mock_client: MagicMock) -> None:
        result = runner.invoke(main, ["--json", "refresh"])

        assert result.exit_code == 0, result.output
        mock_client.refresh_session.assert_awaited_once()
        assert json.loads(result.output)["data"]["refreshed"] is True


class TestSignOutCommands:
    """Tests for logout, logout-all and revoke."""

    def test_logout(self, runner: CliRunner, mock_client: MagicMock) -> None:
        result = runner.invoke(main, ["logout", "--return-to", "https://app.example.com"])

        assert result.exit_code == 0
        mock_client.logout.assert_awaited_once_with("https://app.example.com")
        assert "Signed out" in result.output

    def test_logout_all(self, runner: CliRunner, mock_client: MagicMock) -> None:
        result = runner.invoke(main, ["logout-all"])
        assert result.exit_code == 0
        mock_client.logout_all.assert_awaited_once()

    def test_revoke(self, runner: CliRunner, mock_client: MagicMock) -> None:
        result = runner.invoke(main, ["--json", "revoke"])

        assert result.exit_code == 0
        mock_client.revoke_token.assert_awaited_once()
        assert json.loads(result.output)["data"] == {"revoked": True}

    def test_revoke_without_tokens(self, runner: CliRunner, mock_client: MagicMock) -> None:
        mock_client.get_stored_tokens.return_value = None

        result = runner.invoke(main, ["revoke"])

        assert result.exit_code == 0
        assert "No stored tokens" in result.output


class TestStoredSession:
    """Commands run against a real AuthClient and stored tokens."""

    @pytest.fixture
    def storage(self) -> MemoryStorageAdapter:
        storage = MemoryStorageAdapter()
        store_tokens(
            storage, TokenSet(access_token=make_jwt(exp=1000), refresh_token="stored-refresh")
        )
        return storage

    @pytest.fixture
    def http(self) -> AsyncMock:
        http = AsyncMock()
        http.post.return_value = json_response(200, token_response(now=time.time()))
        return http

    @pytest.fixture(autouse=True)
    def real_client(
        self, storage: MemoryStorageAdapter, http: AsyncMock
    ) -> Generator[None, None, None]:
        from_options = AuthClient.from_options

        def build(options: Any, **kwargs: Any) -> AuthClient:
            return from_options(options, storage=storage, http_client=http, **kwargs)

        with patch("hellojohn.cli.AuthClient.from_options", side_effect=build):
            yield

    def test_token_refreshes_expired_session(
        self, runner: CliRunner, storage: MemoryStorageAdapter, http: AsyncMock
    ) -> None:
        result = runner.invoke(main, ["--json", "token"], env=ENV)

        assert result.exit_code == 0, result.output
        stored = TokenSet.from_json(storage.get("token"))  # type: ignore[arg-type]
        assert json.loads(result.output)["data"]["access_token"] == stored.access_token
        assert stored.refresh_token == "refresh-1"

        args, kwargs = http.post.call_args
        assert args[0] == f"{ENV['HELLOJOHN_DOMAIN']}/oauth2/token"
        assert kwargs["data"]["refresh_token"] == "stored-refresh"

    def test_refresh_uses_stored_refresh_token(
        self, runner: CliRunner, storage: MemoryStorageAdapter, http: AsyncMock
    ) -> None:
        result = runner.invoke(main, ["--json", "refresh"], env=ENV)

        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["data"]["refreshed"] is True
        http.post.assert_awaited_once()
        assert storage.get("token") is not None
