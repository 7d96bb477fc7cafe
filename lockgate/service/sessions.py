"""Session lifecycle adapter.

Translates between the typed session payload used by the request layer and
the opaque ``content``/``expires`` pair kept by the record store.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from lockgate.logging import get_logger
from lockgate.storage.errors import SessionPayloadError
from lockgate.storage.models import TouchResult

logger = get_logger(__name__)

SESSION_ID_BYTES = 24


class SessionStore(Protocol):
    def clock(self) -> datetime: ...

    async def load_session(self, session_id: str) -> Optional[str]: ...

    async def save_session(
        self, session_id: str, content: str, expires_at: datetime
    ) -> None: ...

    async def touch_session(self, session_id: str, expires_at: datetime) -> TouchResult: ...

    async def destroy_session(self, session_id: str) -> None: ...


class CookieOptions(BaseModel):
    """Cookie metadata stored alongside the session payload."""

    model_config = ConfigDict(populate_by_name=True)

    original_max_age: Optional[int] = Field(None, alias="originalMaxAge")  # milliseconds
    http_only: bool = Field(True, alias="httpOnly")
    secure: bool = False
    same_site: str = Field("strict", alias="sameSite")
    path: str = "/"


class SessionData(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    cookie: CookieOptions = Field(default_factory=CookieOptions)
    oauth2state: Optional[str] = None
    user_id: Optional[str] = Field(None, alias="userId")
    user_name: Optional[str] = Field(None, alias="userName")

    def serialize(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @property
    def authenticated(self) -> bool:
        return self.user_id is not None


class SessionAdapter:
    """Maps get/set/touch/destroy onto the record store."""

    def __init__(
        self,
        store: SessionStore,
        *,
        cookie_max_age_seconds: Optional[int] = None,
        cookie_secure: bool = False,
        default_ttl_seconds: int = 60 * 60 * 60,
    ) -> None:
        self.store = store
        self.cookie_max_age_seconds = cookie_max_age_seconds
        self.cookie_secure = cookie_secure
        self.default_ttl = timedelta(seconds=default_ttl_seconds)

    @staticmethod
    def generate_id() -> str:
        return secrets.token_urlsafe(SESSION_ID_BYTES)

    def new_session(self) -> SessionData:
        max_age_ms = (
            self.cookie_max_age_seconds * 1000
            if self.cookie_max_age_seconds is not None
            else None
        )
        return SessionData(
            cookie=CookieOptions(
                original_max_age=max_age_ms,
                secure=self.cookie_secure,
            )
        )

    def expires_for(self, data: SessionData) -> datetime:
        """Absolute expiry: cookie max-age when present, else the default TTL."""
        now = self.store.clock()
        max_age_ms = data.cookie.original_max_age
        if max_age_ms is not None:
            return now + timedelta(milliseconds=max_age_ms)
        return now + self.default_ttl

    async def get(self, session_id: str) -> Optional[SessionData]:
        content = await self.store.load_session(session_id)
        if content is None:
            return None
        try:
            return SessionData.model_validate_json(content)
        except PydanticValidationError as exc:
            raise SessionPayloadError(
                "stored session payload is not valid",
                {"errors": exc.error_count()},
            ) from exc

    async def set(self, session_id: str, data: SessionData) -> None:
        await self.store.save_session(session_id, data.serialize(), self.expires_for(data))

    async def touch(self, session_id: str, data: SessionData) -> TouchResult:
        return await self.store.touch_session(session_id, self.expires_for(data))

    async def destroy(self, session_id: str) -> None:
        await self.store.destroy_session(session_id)


class RequestSession:
    """The session bound to one HTTP request.

    Tracks whether the payload changed so the response phase knows whether to
    write it back or only extend its expiry.
    """

    def __init__(
        self,
        adapter: SessionAdapter,
        session_id: str,
        data: SessionData,
        *,
        is_new: bool,
    ) -> None:
        self.adapter = adapter
        self.id = session_id
        self.data = data
        self.is_new = is_new
        self.destroyed = False
        self._snapshot = data.serialize()

    @classmethod
    async def load(cls, adapter: SessionAdapter, session_id: Optional[str]) -> "RequestSession":
        if session_id:
            data = await adapter.get(session_id)
            if data is not None:
                return cls(adapter, session_id, data, is_new=False)
        return cls(adapter, adapter.generate_id(), adapter.new_session(), is_new=True)

    @property
    def modified(self) -> bool:
        return self.data.serialize() != self._snapshot

    async def regenerate(self) -> None:
        """Discard the current record and continue under a fresh id and empty payload."""
        old_id = self.id
        await self.adapter.destroy(old_id)
        self.id = self.adapter.generate_id()
        self.data = self.adapter.new_session()
        self.is_new = True
        self.destroyed = False
        logger.info("session_regenerated")

    async def destroy(self) -> None:
        await self.adapter.destroy(self.id)
        self.destroyed = True

    async def commit(self) -> Optional[TouchResult]:
        """Persist at the end of the request.

        New or modified payloads are written in full; unchanged ones only have
        their expiry extended. Returns the touch outcome when a touch was used.
        """
        if self.destroyed:
            return None
        if self.is_new or self.modified:
            await self.adapter.set(self.id, self.data)
            self.is_new = False
            self._snapshot = self.data.serialize()
            return None
        result = await self.adapter.touch(self.id, self.data)
        if result is TouchResult.MISSING:
            logger.info("session_touch_missing")
        return result
