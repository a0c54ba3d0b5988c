"""Authorization code exchange against the identity provider's token endpoint."""

import asyncio
from dataclasses import dataclass, field
import json
import logging
from typing import Any, Dict, Optional
import aiohttp
from aiohttp import ClientSession

from kitchen.larder.gate.auth.errors import AuthError

logger = logging.getLogger(__name__)


@dataclass(repr=False)
class ExchangeResult:
    """
    Tokens returned by a successful exchange.

    `raw` holds the decoded provider response for logging and debugging. It is never returned to
    clients.
    """

    id_token: str
    access_token: Optional[str] = None
    expires_in: Optional[int] = None
    refresh_token: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class AuthorizationCodeExchanger:
    def __init__(
        self,
        http_session: ClientSession,
        token_endpoint: str,
        client_id: Optional[str],
        client_secret: Optional[str],
        timeout: float = 10,
    ) -> None:
        self.http_session = http_session
        self.token_endpoint = token_endpoint
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout

    async def exchange(self, code: str, redirect_uri: str) -> ExchangeResult:
        """
        Trade an authorization code for provider tokens.

        Raises:
            AuthError: `invalid_request` when the code, redirect URI or client credentials are
                missing, `exchange_failed` for any transport failure, non-success status or a
                response without an `id_token`.
        """
        if not code or not redirect_uri:
            raise AuthError.invalid_request("code and redirect_uri are required")
        if not self.client_id or not self.client_secret:
            raise AuthError.invalid_request(
                "Identity provider client credentials are not configured"
            )

        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }

        try:
            async with self.http_session.post(
                self.token_endpoint,
                data=form,
                headers={"Accept": "application/json"},
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                status = response.status
                body = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise AuthError.exchange_failed(
                detail={"error": f"{type(e).__name__}: {e}"}
            ) from e

        try:
            payload = json.loads(body) if body else {}
        except ValueError:
            payload = {"body": body}

        if status != 200:
            logger.warning("Token endpoint returned %s: %s", status, payload)
            raise AuthError.exchange_failed(detail={"status": status, "response": payload})

        if not isinstance(payload, dict) or not isinstance(payload.get("id_token"), str):
            raise AuthError.exchange_failed(
                "Token response did not include an id_token",
                detail={"status": status, "response": payload},
            )

        expires_in = payload.get("expires_in")
        return ExchangeResult(
            id_token=payload["id_token"],
            access_token=payload.get("access_token"),
            expires_in=int(expires_in) if isinstance(expires_in, (int, float)) else None,
            refresh_token=payload.get("refresh_token"),
            raw=payload,
        )
