"""Binds a server-side session to every request through a signed cookie."""

from __future__ import annotations

from typing import Optional

from fastapi import Request
from itsdangerous import BadSignature, Signer

from lockgate.api.error_handling import _error_response
from lockgate.config import Settings
from lockgate.logging import get_logger
from lockgate.service.runtime import get_runtime
from lockgate.service.sessions import RequestSession
from lockgate.storage.errors import SessionPayloadError

logger = get_logger(__name__)

SESSION_SALT = "lockgate-session-v1"

# Probes must not mint a session record per call
SESSIONLESS_PATHS = frozenset({"/healthz"})


def _signer(settings: Settings) -> Signer:
    return Signer(secret_key=settings.session_secret, salt=SESSION_SALT)


def sign_session_id(settings: Settings, session_id: str) -> str:
    return _signer(settings).sign(session_id).decode()


def unsign_session_id(settings: Settings, value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    try:
        return _signer(settings).unsign(value).decode()
    except BadSignature:
        logger.warning("session_cookie_bad_signature")
        return None


def session_cookie_kwargs(settings: Settings, value: str) -> dict:
    return {
        "key": settings.session_cookie_name,
        "value": value,
        "max_age": settings.session_max_age_seconds,
        "httponly": True,
        "secure": settings.session_cookie_secure,
        "samesite": "strict",
        "path": "/",
    }


def clear_session_cookie_kwargs(settings: Settings) -> dict:
    return {
        "key": settings.session_cookie_name,
        "value": "",
        "max_age": 0,
        "httponly": True,
        "secure": settings.session_cookie_secure,
        "samesite": "strict",
        "path": "/",
    }


def get_request_session(request: Request) -> RequestSession:
    """Route dependency returning the session bound by the middleware."""
    return request.state.session


async def bind_session(request: Request, call_next):
    """Load the caller's session before the handler and persist it afterwards.

    A cookie that fails verification or points at no live record starts a
    fresh session. After the handler, changed sessions are saved while
    unchanged ones only have their expiry extended. The cookie is re-issued on
    every response so its lifetime rolls forward.
    """
    if request.url.path in SESSIONLESS_PATHS:
        return await call_next(request)

    runtime = get_runtime()
    settings = runtime.settings
    session_id = unsign_session_id(
        settings, request.cookies.get(settings.session_cookie_name)
    )
    try:
        session = await RequestSession.load(runtime.sessions, session_id)
    except SessionPayloadError as exc:
        # Raised outside the app's exception middleware, so render it here
        logger.error(
            "session_payload_invalid",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(500, "internal server error", code="server_error")
    request.state.session = session

    response = await call_next(request)

    if session.destroyed:
        response.set_cookie(**clear_session_cookie_kwargs(settings))
        return response
    await session.commit()
    response.set_cookie(**session_cookie_kwargs(settings, sign_session_id(settings, session.id)))
    return response
