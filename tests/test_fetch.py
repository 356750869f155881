"""Tests for the authenticated fetch wrapper."""

from unittest.mock import AsyncMock, patch

import pytest
from conftest import json_response

from hellojohn.errors import TokenError
from hellojohn.fetch import create_fetch_wrapper


class TestCreateFetchWrapper:
    """Tests for create_fetch_wrapper."""

    @pytest.mark.asyncio
    async def test_fresh_token_per_call(self, mock_http: AsyncMock) -> None:
        get_token = AsyncMock(side_effect=["token-1", "token-2"])
        mock_http.request.return_value = json_response(200, {})
        fetch = create_fetch_wrapper(get_token, mock_http)

        await fetch("GET", "https://api.example.com/a")
        first = mock_http.request.call_args.kwargs["headers"]["Authorization"]
        await fetch("POST", "https://api.example.com/b", json={"x": 1})
        second_call = mock_http.request.call_args

        assert first == "Bearer token-1"
        assert second_call.kwargs["headers"]["Authorization"] == "Bearer token-2"
        assert second_call.kwargs["json"] == {"x": 1}

    @pytest.mark.asyncio
    async def test_caller_authorization_is_replaced(self, mock_http: AsyncMock) -> None:
        mock_http.request.return_value = json_response(200, {})
        fetch = create_fetch_wrapper(AsyncMock(return_value="fresh"), mock_http)

        await fetch("GET", "https://api.example.com", headers={"Authorization": "Bearer stale"})

        assert mock_http.request.call_args.kwargs["headers"]["Authorization"] == "Bearer fresh"

    @pytest.mark.asyncio
    async def test_token_error_propagates(self, mock_http: AsyncMock) -> None:
        fetch = create_fetch_wrapper(
            AsyncMock(side_effect=TokenError("No access token available", "no_token")), mock_http
        )

        with pytest.raises(TokenError):
            await fetch("GET", "https://api.example.com")
        mock_http.request.assert_not_called()

    @pytest.mark.asyncio
    async def test_temporary_client_is_closed(self) -> None:
        temp_client = AsyncMock()
        temp_client.request.return_value = json_response(204)

        with patch("hellojohn.transport.httpx.AsyncClient", return_value=temp_client):
            fetch = create_fetch_wrapper(AsyncMock(return_value="t"))
            response = await fetch("DELETE", "https://api.example.com/x")

        assert response.status_code == 204
        temp_client.aclose.assert_awaited_once()
