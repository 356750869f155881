"""TOTP multi-factor operations.

Covers enrollment, verification, login challenges, disabling and recovery
code rotation. Every call is authenticated with the current access token.
"""

import logging
from typing import Any, Awaitable, Callable

import httpx

from .errors import NetworkError, parse_api_error
from .transport import JSON_HEADERS, bearer_headers, http_session, is_ok, read_json

logger = logging.getLogger(__name__)


class MFAClient:
    """TOTP MFA sub-client.

    Args:
        domain: Identity provider base URL
        get_access_token: Coroutine returning a valid access token
        http_client: Optional shared HTTP client
    """

    def __init__(
        self,
        domain: str,
        get_access_token: Callable[[], Awaitable[str]],
        http_client: httpx.AsyncClient | None = None,
    ):
        self.domain = domain
        self._get_access_token = get_access_token
        self._http = http_client

    async def _post(self, path: str, body: dict[str, Any] | None = None) -> Any:
        token = await self._get_access_token()
        try:
            async with http_session(self._http) as client:
                response = await client.post(
                    f"{self.domain}{path}",
                    json=body,
                    headers=bearer_headers(token, JSON_HEADERS),
                )
        except httpx.RequestError as e:
            raise NetworkError() from e

        if not is_ok(response):
            raise parse_api_error(response.status_code, read_json(response))

        return read_json(response)

    async def enroll_totp(self) -> dict[str, Any]:
        """Enroll a new TOTP device. Returns secret, qr_uri and recovery_codes."""
        return await self._post("/v2/mfa/totp/enroll")

    async def verify_totp(self, code: str) -> dict[str, Any]:
        """Verify a TOTP code during enrollment, activating MFA."""
        return await self._post("/v2/mfa/totp/verify", {"code": code})

    async def challenge_totp(self) -> dict[str, Any]:
        """Start a TOTP challenge. Returns a challenge_id."""
        return await self._post("/v2/mfa/totp/challenge")

    async def solve_totp(self, challenge_id: str, code: str) -> dict[str, Any]:
        """Answer a TOTP challenge. Returns the token endpoint response."""
        return await self._post(
            "/v2/mfa/totp/challenge", {"challenge_id": challenge_id, "code": code}
        )

    async def disable_totp(self, code: str) -> None:
        """Disable TOTP MFA. Requires a current TOTP code."""
        await self._post("/v2/mfa/totp/disable", {"code": code})
        logger.info("TOTP MFA disabled")

    async def rotate_recovery_codes(self) -> dict[str, Any]:
        """Replace the recovery codes. Returns the new codes."""
        return await self._post("/v2/mfa/recovery/rotate")
