"""Client for the external OpenID-Connect provider.

Builds the authorization redirect, exchanges authorization codes at the token
endpoint and reads the identity claims out of the returned access token.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urlencode

import httpx
import jwt  # PyJWT

from lockgate.config import Settings
from lockgate.logging import get_logger
from lockgate.service.errors import ServerError, UpstreamError

logger = get_logger(__name__)


@dataclass
class TokenSet:
    access_token: str
    refresh_token: Optional[str] = None


@dataclass
class Identity:
    user_id: str
    user_name: Optional[str]
    tokens: TokenSet


class OIDCClient:
    def __init__(
        self,
        *,
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: Optional[str],
        authorize_url: str,
        token_url: str,
        scope: str = "locks",
        timeout: float = 10.0,
        jwks_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.authorize_url = authorize_url
        self.token_url = token_url
        self.scope = scope
        self.timeout = timeout
        self.jwks_url = jwks_url
        self.transport = transport
        self._jwks_client: Optional[jwt.PyJWKClient] = (
            jwt.PyJWKClient(jwks_url) if jwks_url else None
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "OIDCClient":
        return cls(
            client_id=settings.oidc_client_id,
            client_secret=settings.oidc_client_secret,
            redirect_uri=settings.oidc_redirect_uri,
            authorize_url=settings.oidc_authorize_url,
            token_url=settings.oidc_token_url,
            scope=settings.oidc_scope,
            timeout=settings.oidc_http_timeout_seconds,
            jwks_url=settings.oidc_jwks_url,
            transport=transport,
        )

    def _require_configured(self) -> None:
        if not (self.client_id and self.client_secret and self.redirect_uri):
            logger.error("oidc_not_configured")
            raise ServerError("identity provider is not configured")

    def build_authorization_url(self, state: str) -> str:
        self._require_configured()
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": self.scope,
            "state": state,
        }
        return f"{self.authorize_url}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenSet:
        """Trade an authorization code for tokens at the provider's token endpoint."""
        self._require_configured()
        form = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=False,
                transport=self.transport,
            ) as client:
                response = await client.post(
                    self.token_url,
                    data=form,
                    headers={"Accept": "application/json"},
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oidc_token_http_error",
                status_code=exc.response.status_code,
            )
            raise UpstreamError(
                "token endpoint rejected the code",
                detail={"status_code": exc.response.status_code},
            ) from exc
        except httpx.HTTPError as exc:
            logger.error(
                "oidc_token_transport_error",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise UpstreamError("token endpoint unreachable") from exc

        try:
            payload = response.json()
        except ValueError as exc:
            logger.error("oidc_token_parse_error", error=str(exc))
            raise UpstreamError("token endpoint returned invalid JSON") from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token:
            logger.error("oidc_no_access_token")
            raise UpstreamError("token response has no access_token")
        refresh_token = payload.get("refresh_token")
        return TokenSet(
            access_token=access_token,
            refresh_token=refresh_token if isinstance(refresh_token, str) else None,
        )

    async def _claims(self, token: str) -> dict[str, Any]:
        if self._jwks_client is None:
            # Trust rests on the TLS channel the token arrived over
            return jwt.decode(token, options={"verify_signature": False})
        signing_key = await asyncio.to_thread(
            self._jwks_client.get_signing_key_from_jwt, token
        )
        return jwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256", "ES256"],
            options={"verify_aud": False},
        )

    async def decode_identity(self, tokens: TokenSet) -> Identity:
        try:
            claims = await self._claims(tokens.access_token)
        except jwt.PyJWTError as exc:
            logger.error(
                "oidc_token_decode_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise UpstreamError("access token could not be decoded") from exc

        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            logger.error("oidc_token_missing_sub")
            raise UpstreamError("access token has no subject")
        user_name = claims.get("preferred_username")
        return Identity(
            user_id=subject,
            user_name=user_name if isinstance(user_name, str) else None,
            tokens=tokens,
        )
