from __future__ import annotations

import hmac
import uuid
from typing import Any, Mapping, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from lockgate.logging import get_logger
from lockgate.service.errors import AuthenticationError, BadRequestError
from lockgate.service.oidc import Identity, OIDCClient
from lockgate.service.sessions import RequestSession


class CredentialStore(Protocol):
    async def upsert_user_credential(
        self, user_id: str, access_token: str, refresh_token: Optional[str]
    ) -> None: ...


class OAuthCallbackQuery(BaseModel):
    """Query parameters the provider appends to the redirect URI."""

    model_config = ConfigDict(extra="ignore")

    state: str = Field(..., min_length=1)
    code: str = Field(..., min_length=1)


class AuthService:
    """Authorization Code handshake against a single OIDC provider.

    ``begin_login`` parks a one-time anti-forgery state on the caller's
    session; ``complete_login`` checks it, exchanges the code, records the
    provider credential and rotates the session id before binding the user.
    Each step only runs if every earlier step succeeded.
    """

    def __init__(self, store: CredentialStore, provider: OIDCClient) -> None:
        self.store = store
        self.provider = provider
        self.logger = get_logger(__name__)

    def begin_login(self, session: RequestSession) -> str:
        state = uuid.uuid4().hex
        session.data.oauth2state = state
        return self.provider.build_authorization_url(state)

    @staticmethod
    def _parse_callback(query: Mapping[str, Any]) -> OAuthCallbackQuery:
        try:
            return OAuthCallbackQuery.model_validate(dict(query))
        except PydanticValidationError as exc:
            fields = sorted({str(err["loc"][0]) for err in exc.errors() if err.get("loc")})
            raise BadRequestError("invalid callback query", detail={"fields": fields}) from exc

    async def complete_login(
        self, session: RequestSession, query: Mapping[str, Any]
    ) -> Identity:
        callback = self._parse_callback(query)

        expected = session.data.oauth2state
        if not expected or not hmac.compare_digest(
            expected.encode(), callback.state.encode()
        ):
            self.logger.warning("oauth_state_mismatch", state_present=bool(expected))
            raise AuthenticationError("state mismatch")

        tokens = await self.provider.exchange_code(callback.code)
        identity = await self.provider.decode_identity(tokens)

        await self.store.upsert_user_credential(
            identity.user_id,
            identity.tokens.access_token,
            identity.tokens.refresh_token,
        )

        await session.regenerate()
        session.data.user_id = identity.user_id
        if identity.user_name is not None:
            session.data.user_name = identity.user_name

        self.logger.info("oauth_login_completed", user_id=identity.user_id)
        return identity

    async def logout(self, session: RequestSession) -> None:
        user_id = session.data.user_id
        await session.destroy()
        self.logger.info("session_logged_out", user_id=user_id)
