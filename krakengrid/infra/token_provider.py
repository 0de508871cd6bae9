"""
Async client for the private GetWebSocketsToken REST endpoint.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from krakengrid.errors import AuthError, ConfigError
from krakengrid.infra.logging_cfg import log_event
from krakengrid.infra.nonce import NonceGenerator
from krakengrid.infra.signer import Signer, format_post_data

log = logging.getLogger("krakengrid")

TOKEN_PATH = "/0/private/GetWebSocketsToken"


class TokenProvider:
    """
    Exchanges a signed POST for a short-lived WebSocket token.

    No retry here; the session retries by reconnecting the private channel.
    """

    def __init__(
        self,
        rest_url: str,
        signer: Signer,
        nonce: Optional[NonceGenerator] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.rest_url = rest_url.rstrip("/")
        self.signer = signer
        self.nonce = nonce or NonceGenerator()
        # If a shared client is passed in, we won't close it in close(); otherwise we own the client.
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(base_url=self.rest_url, timeout=timeout)
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def fetch_token(self) -> str:
        if not (self.signer.api_key and self.signer.api_secret):
            raise AuthError("API credentials are not configured")

        nonce = self.nonce.next()
        post_data = format_post_data({"nonce": nonce})
        try:
            headers = self.signer.auth_headers(TOKEN_PATH, post_data, nonce)
        except ConfigError as exc:
            raise AuthError(str(exc)) from exc

        try:
            resp = await self.client.post(f"{self.rest_url}{TOKEN_PATH}", content=post_data, headers=headers)
        except httpx.HTTPError as exc:
            log_event(log, "token_fetch_failed", level=logging.WARNING, err=str(exc))
            raise AuthError(f"Failed to get WebSocket token: {exc}") from exc

        if not resp.is_success:
            log_event(log, "token_fetch_failed", level=logging.WARNING, status=resp.status_code)
            raise AuthError(f"Failed to get WebSocket token: HTTP {resp.status_code} {resp.reason_phrase}")

        try:
            data: Any = resp.json()
        except ValueError as exc:
            raise AuthError(f"Failed to get WebSocket token: invalid JSON ({exc})") from exc

        errors = data.get("error") if isinstance(data, dict) else None
        if errors:
            raise AuthError(f"Kraken API error: {', '.join(str(e) for e in errors)}")

        result = data.get("result") if isinstance(data, dict) else None
        token = result.get("token") if isinstance(result, dict) else None
        if not token:
            raise AuthError("No token in response")

        log_event(log, "token_fetched", level=logging.DEBUG, expires=result.get("expires"))
        return str(token)
