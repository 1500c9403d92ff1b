from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx

from qbo_sync.core.config import Settings
from qbo_sync.core.http import get_async_client, request_with_retry_and_backoff


class OAuthGrantError(RuntimeError):
    def __init__(self, message: str, *, status_code: Optional[int] = None, body: Optional[str] = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message)

    @property
    def provider_error(self) -> str:
        """The OAuth ``error`` field (e.g. ``invalid_grant``) when the body carries one."""
        if self.body:
            try:
                payload = json.loads(self.body)
            except json.JSONDecodeError:
                payload = None
            if isinstance(payload, dict) and payload.get("error"):
                return str(payload["error"])
        return str(self)


@dataclass
class TokenBundle:
    access_token: str
    refresh_token: Optional[str]
    access_expires_at: datetime
    refresh_expires_at: Optional[datetime]
    scopes: list[str]
    token_type: str


def _now() -> datetime:
    return datetime.now(timezone.utc)


class QuickBooksOAuthClient:
    AUTH_URL = "https://appcenter.intuit.com/connect/oauth2"
    TOKEN_URL = "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"
    SCOPES = ["com.intuit.quickbooks.accounting"]

    def __init__(self, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings
        self.transport = transport
        self.logger = logging.getLogger("qbo_sync.services.oauth")

    def build_authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.settings.qbo_client_id,
            "redirect_uri": str(self.settings.qbo_redirect_uri),
            "response_type": "code",
            "scope": " ".join(self.SCOPES),
            "state": state,
        }
        url = httpx.URL(self.AUTH_URL, params=params)
        self.logger.info(
            "oauth_authorization_url_generated",
            extra={"environment": self.settings.environment},
        )
        return str(url)

    async def exchange_authorization_code(
        self,
        *,
        code: str,
        redirect_uri: Optional[str] = None,
    ) -> TokenBundle:
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri or str(self.settings.qbo_redirect_uri),
        }
        payload = await self._token_request(data)
        bundle = self._parse_token_response(payload)
        if not bundle.refresh_token:
            raise OAuthGrantError("Authorization response did not include a refresh token")
        return bundle

    async def refresh_tokens(self, *, refresh_token: str) -> TokenBundle:
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }
        payload = await self._token_request(data)
        return self._parse_token_response(payload)

    async def _token_request(self, data: dict[str, str]) -> dict:
        headers = {
            "Authorization": self._basic_auth_header(),
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        }
        try:
            async with get_async_client(self.settings, self.transport) as client:
                response = await request_with_retry_and_backoff(
                    client,
                    "POST",
                    self.TOKEN_URL,
                    data=data,
                    headers=headers,
                    settings=self.settings,
                )
        except httpx.HTTPError as exc:
            self.logger.error(
                "oauth_token_transport_error",
                extra={"grant_type": data["grant_type"], "error": str(exc)},
            )
            raise OAuthGrantError(f"Token endpoint unreachable: {exc}") from exc

        if response.status_code >= 400:
            self.logger.error(
                "oauth_token_error",
                extra={
                    "grant_type": data["grant_type"],
                    "status": response.status_code,
                    "body": response.text,
                },
            )
            raise OAuthGrantError(
                f"Failed to obtain tokens from Intuit (status {response.status_code})",
                status_code=response.status_code,
                body=response.text,
            )
        return response.json()

    def _parse_token_response(self, payload: dict) -> TokenBundle:
        now = _now()
        try:
            access_expires_in = int(payload["expires_in"])
            access_token = payload["access_token"]
        except (KeyError, TypeError, ValueError) as exc:
            raise OAuthGrantError("Incomplete token response") from exc

        refresh_expires_in = payload.get("x_refresh_token_expires_in")
        scopes = [scope for scope in payload.get("scope", "").split() if scope]

        return TokenBundle(
            access_token=access_token,
            refresh_token=payload.get("refresh_token"),
            access_expires_at=now + timedelta(seconds=access_expires_in),
            refresh_expires_at=(
                now + timedelta(seconds=int(refresh_expires_in)) if refresh_expires_in else None
            ),
            scopes=scopes,
            token_type=payload.get("token_type", "Bearer"),
        )

    def _basic_auth_header(self) -> str:
        credentials = f"{self.settings.qbo_client_id}:{self.settings.qbo_client_secret}"
        encoded = base64.b64encode(credentials.encode("utf-8")).decode("utf-8")
        return f"Basic {encoded}"
