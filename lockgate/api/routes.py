from __future__ import annotations

import html

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from lockgate.api.schemas import Envelope, HealthView, LoginView
from lockgate.api.session_middleware import get_request_session
from lockgate.logging import get_logger
from lockgate.service.runtime import get_runtime
from lockgate.service.sessions import RequestSession

logger = get_logger(__name__)

router = APIRouter()

_LANDING_TEMPLATE = """<!doctype html>
<html>
  <head><meta charset="utf-8"><title>lockgate</title></head>
  <body>
    {greeting}
    <p><a href="{url}">Log in</a></p>
    {logout}
  </body>
</html>
"""


def _wants_json(request: Request) -> bool:
    return "application/json" in request.headers.get("accept", "")


def _render_landing(view: LoginView) -> str:
    if view.user_name:
        greeting = f"<p>Hello, {html.escape(view.user_name)}</p>"
    elif view.user_id:
        greeting = "<p>You are logged in.</p>"
    else:
        greeting = "<p>You are not logged in.</p>"
    logout = '<p><a href="/logout">Log out</a></p>' if view.user_id else ""
    return _LANDING_TEMPLATE.format(
        greeting=greeting,
        url=html.escape(view.authorization_url, quote=True),
        logout=logout,
    )


@router.get("/", response_model=None)
async def landing(
    request: Request, session: RequestSession = Depends(get_request_session)
) -> HTMLResponse | JSONResponse:
    runtime = get_runtime()
    url = runtime.auth.begin_login(session)
    view = LoginView(
        authorization_url=url,
        user_id=session.data.user_id,
        user_name=session.data.user_name,
    )
    if _wants_json(request):
        envelope = Envelope(status="ok", data=view.model_dump())
        return JSONResponse(envelope.model_dump())
    return HTMLResponse(_render_landing(view))


@router.get("/oidc")
async def oidc_callback(
    request: Request, session: RequestSession = Depends(get_request_session)
) -> RedirectResponse:
    runtime = get_runtime()
    await runtime.auth.complete_login(session, request.query_params)
    return RedirectResponse("/", status_code=302)


@router.get("/logout")
async def logout(session: RequestSession = Depends(get_request_session)) -> RedirectResponse:
    runtime = get_runtime()
    await runtime.auth.logout(session)
    return RedirectResponse("/", status_code=302)


@router.get("/healthz", response_model=None)
async def health() -> JSONResponse:
    runtime = get_runtime()
    store_type = "memory" if runtime.settings.use_memory_store else "postgres"
    healthy = await runtime.store.ping()
    view = HealthView(status="healthy" if healthy else "unhealthy", store=store_type)
    return JSONResponse(view.model_dump(), status_code=200 if healthy else 503)
