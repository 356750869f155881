"""Tests for error types and provider error parsing."""

from hellojohn.errors import (
    REDIRECT_NOT_ALLOWED_MESSAGE,
    AuthenticationError,
    HelloJohnError,
    MFARequiredError,
    NetworkError,
    TokenError,
    parse_api_error,
    parse_social_start_error,
)


class TestErrorTypes:
    """Tests for the error hierarchy."""

    def test_all_errors_are_hellojohn_errors(self) -> None:
        for error in (
            AuthenticationError("bad password"),
            TokenError("no token", "no_token"),
            MFARequiredError("challenge-1"),
            NetworkError(),
        ):
            assert isinstance(error, HelloJohnError)

    def test_mfa_required_carries_challenge(self) -> None:
        error = MFARequiredError("challenge-1")
        assert error.challenge_id == "challenge-1"
        assert error.code == "mfa_required"
        assert error.status_code == 403

    def test_network_error_defaults(self) -> None:
        error = NetworkError()
        assert error.code == "network_error"
        assert str(error) == "Network request failed"


class TestParseApiError:
    """Tests for parse_api_error."""

    def test_mfa_required(self) -> None:
        error = parse_api_error(403, {"error": "mfa_required", "challenge_id": "ch-1"})
        assert isinstance(error, MFARequiredError)
        assert error.challenge_id == "ch-1"

    def test_mfa_code_without_challenge_is_generic(self) -> None:
        error = parse_api_error(403, {"error": "mfa_required"})
        assert not isinstance(error, MFARequiredError)
        assert error.code == "mfa_required"

    def test_401_is_authentication_error(self) -> None:
        error = parse_api_error(
            401, {"error": "invalid_credentials", "error_description": "Wrong email or password"}
        )
        assert isinstance(error, AuthenticationError)
        assert error.code == "invalid_credentials"
        assert error.message == "Wrong email or password"
        assert error.status_code == 401

    def test_message_fallback_order(self) -> None:
        assert parse_api_error(400, {"message": "from message"}).message == "from message"
        assert parse_api_error(400, {"error": "only_code"}).message == "only_code"
        assert parse_api_error(400, {}).message == "Unknown error"

    def test_non_dict_body(self) -> None:
        error = parse_api_error(500, "<html>oops</html>")
        assert error.code == "api_error"
        assert error.message == "Unknown error"
        assert error.status_code == 500


class TestParseSocialStartError:
    """Tests for parse_social_start_error."""

    def test_redirect_code(self) -> None:
        for code in ("redirect_uri_not_allowed", "invalid_redirect_uri"):
            error = parse_social_start_error(400, {"code": code})
            assert error.code == "redirect_uri_not_allowed"
            assert error.message == REDIRECT_NOT_ALLOWED_MESSAGE

    def test_redirect_in_detail(self) -> None:
        error = parse_social_start_error(500, {"detail": "redirect_uri does not match"})
        assert error.code == "redirect_uri_not_allowed"
        assert error.status_code == 500

    def test_redirect_in_message(self) -> None:
        error = parse_social_start_error(400, {"message": "Redirect URI not allowed"})
        assert error.code == "redirect_uri_not_allowed"

    def test_other_errors_pass_through(self) -> None:
        error = parse_social_start_error(
            400, {"error": "provider_disabled", "error_description": "Google is disabled"}
        )
        assert error.code == "provider_disabled"
        assert error.message == "Google is disabled"

    def test_empty_body_defaults(self) -> None:
        error = parse_social_start_error(502, None)
        assert error.code == "social_start_failed"
        assert error.message == "Social login could not be started"
