"""Integration tests for the login flow over HTTP.

Tests the complete flow including:
- Landing page and session cookie issuance
- Callback validation and generic failure responses
- Code exchange against a mocked token endpoint
- Session rotation and logout
"""

import re
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from lockgate import app as app_module
from lockgate.api.session_middleware import sign_session_id
from lockgate.service.runtime import get_runtime
from lockgate.storage.models import SessionRecord

COOKIE_NAME = "lockgate.sid"


@pytest.fixture
def client(token_endpoint):
    """Create a test client whose provider talks to the fake token endpoint."""
    with TestClient(app_module.app) as test_client:
        get_runtime().oidc.transport = token_endpoint.transport
        yield test_client


def _landing(client) -> dict:
    response = client.get("/", headers={"Accept": "application/json"})
    assert response.status_code == 200
    return response.json()["data"]


def _state_from(url: str) -> str:
    match = re.search(r"[?&]state=([0-9a-f]+)", url)
    assert match
    return match.group(1)


class TestLanding:
    def test_landing_renders_login_link(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/html")
        assert "https://sso.example.test/auth?" in response.text
        assert "response_type=code" in response.text
        assert "You are not logged in." in response.text

    def test_session_cookie_attributes(self, client):
        response = client.get("/")
        cookie = response.headers["set-cookie"]
        assert cookie.startswith(f"{COOKIE_NAME}=")
        lowered = cookie.lower()
        assert "httponly" in lowered
        assert "samesite=strict" in lowered
        assert "max-age=86400" in lowered
        assert "path=/" in lowered
        assert "; secure" not in lowered

    def test_cookie_is_reissued_on_every_response(self, client):
        client.get("/")
        response = client.get("/")
        assert COOKIE_NAME in response.headers.get("set-cookie", "")

    def test_json_landing_view(self, client):
        data = _landing(client)
        assert data["user_id"] is None
        assert data["user_name"] is None
        assert "scope=locks" in data["authorization_url"]

    def test_html_escapes_user_name(self, client, token_endpoint):
        token_endpoint.respond_with(sub="u9", preferred_username="<b>mallory</b>")
        state = _state_from(_landing(client)["authorization_url"])
        client.get(f"/oidc?state={state}&code=abc", follow_redirects=False)
        response = client.get("/")
        assert "&lt;b&gt;mallory&lt;/b&gt;" in response.text
        assert "<b>mallory</b>" not in response.text


class TestCallback:
    def test_successful_login_redirects_and_greets(self, client, token_endpoint):
        state = _state_from(_landing(client)["authorization_url"])
        pre_login_cookie = client.cookies.get(COOKIE_NAME)

        response = client.get(f"/oidc?state={state}&code=abc", follow_redirects=False)
        assert response.status_code == 302
        assert response.headers["location"] == "/"
        assert client.cookies.get(COOKIE_NAME) != pre_login_cookie

        data = _landing(client)
        assert data["user_id"] == "u1"
        assert data["user_name"] == "alice"
        assert token_endpoint.last_form()["code"] == "abc"

        page = client.get("/")
        assert "Hello, alice" in page.text
        assert 'href="/logout"' in page.text

    def test_pre_login_session_id_is_dead_after_login(self, client):
        state = _state_from(_landing(client)["authorization_url"])
        pre_login_cookie = client.cookies.get(COOKIE_NAME)
        client.get(f"/oidc?state={state}&code=abc", follow_redirects=False)

        client.cookies.clear()
        response = client.get(
            "/",
            headers={"Accept": "application/json", "Cookie": f"{COOKIE_NAME}={pre_login_cookie}"},
        )
        assert response.json()["data"]["user_id"] is None
        assert response.cookies.get(COOKIE_NAME) != pre_login_cookie

    def test_state_mismatch_is_generic_401(self, client, token_endpoint):
        _landing(client)
        response = client.get("/oidc?state=deadbeef&code=abc", follow_redirects=False)
        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "unauthorized",
            "message": "login failed",
            "details": None,
        }
        assert token_endpoint.requests == []

    def test_missing_parameters_are_generic_400(self, client):
        _landing(client)
        response = client.get("/oidc?state=abc", follow_redirects=False)
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "login failed"

    def test_upstream_failure_is_generic_502(self, client, token_endpoint):
        token_endpoint.status_code = 500
        state = _state_from(_landing(client)["authorization_url"])
        response = client.get(f"/oidc?state={state}&code=abc", follow_redirects=False)
        assert response.status_code == 502
        assert response.json()["error"] == {
            "code": "upstream_error",
            "message": "login failed",
            "details": None,
        }
        assert get_runtime().store.users == {}

    def test_callback_without_session_fails(self, client):
        response = client.get("/oidc?state=abc&code=def", follow_redirects=False)
        assert response.status_code == 401


class TestSessionCookieHandling:
    def test_tampered_cookie_starts_fresh_session(self, client):
        _landing(client)
        original = client.cookies.get(COOKIE_NAME)
        client.cookies.clear()
        response = client.get("/", headers={"Cookie": f"{COOKIE_NAME}={original[:-2]}xx"})
        reissued = response.cookies.get(COOKIE_NAME)
        assert reissued
        assert reissued != original

    def test_signed_unknown_id_starts_fresh_session(self, client):
        settings = get_runtime().settings
        forged = sign_session_id(settings, "attacker-chosen-id")
        response = client.get("/", headers={"Cookie": f"{COOKIE_NAME}={forged}"})
        assert response.cookies.get(COOKIE_NAME) != forged
        assert "attacker-chosen-id" not in get_runtime().store.sessions


class TestLogout:
    def test_logout_clears_session(self, client):
        state = _state_from(_landing(client)["authorization_url"])
        client.get(f"/oidc?state={state}&code=abc", follow_redirects=False)
        session_count = len(get_runtime().store.sessions)

        response = client.get("/logout", follow_redirects=False)
        assert response.status_code == 302
        assert "max-age=0" in response.headers["set-cookie"].lower()
        assert len(get_runtime().store.sessions) == session_count - 1

        assert _landing(client)["user_id"] is None


class TestHealthAndFailures:
    def test_healthz_does_not_create_sessions(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "store": "memory"}
        assert "set-cookie" not in response.headers
        assert get_runtime().store.sessions == {}

    def test_storage_failure_during_login_is_500(self, token_endpoint):
        async def broken_upsert(*args, **kwargs):
            raise RuntimeError("database unavailable")

        with TestClient(app_module.app, raise_server_exceptions=False) as client:
            runtime = get_runtime()
            runtime.oidc.transport = token_endpoint.transport
            runtime.store.upsert_user_credential = broken_upsert
            state = _state_from(_landing(client)["authorization_url"])
            response = client.get(f"/oidc?state={state}&code=abc", follow_redirects=False)

        assert response.status_code == 500
        assert response.json()["error"] == {
            "code": "server_error",
            "message": "internal server error",
            "details": None,
        }

    def test_corrupt_stored_payload_is_500(self, client):
        store = get_runtime().store
        store.sessions["corrupt-id"] = SessionRecord(
            session_id="corrupt-id",
            content="{oops",
            expires=datetime(2999, 1, 1, tzinfo=timezone.utc),
        )
        forged = sign_session_id(get_runtime().settings, "corrupt-id")

        response = client.get("/", headers={"Cookie": f"{COOKIE_NAME}={forged}"})

        assert response.status_code == 500
        assert response.json()["error"] == {
            "code": "server_error",
            "message": "internal server error",
            "details": None,
        }
        assert "set-cookie" not in response.headers
        assert store.sessions["corrupt-id"].content == "{oops"

    def test_wrong_method_is_client_error(self, client):
        response = client.post("/")
        assert response.status_code == 405
        assert response.json()["error"]["code"] == "validation_error"

    def test_request_id_is_echoed(self, client):
        response = client.get("/", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
