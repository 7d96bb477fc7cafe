import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from urllib.parse import parse_qs

# Configure the environment before any imports that might initialize runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("SESSION_SECRET", "test-session-secret-for-testing-only")
os.environ.setdefault("OIDC_CLIENT_ID", "lockgate-test")
os.environ.setdefault("OIDC_CLIENT_SECRET", "lockgate-test-secret")
os.environ.setdefault("OIDC_REDIRECT_URI", "http://testserver/oidc")
os.environ.setdefault("OIDC_AUTHORIZE_URL", "https://sso.example.test/auth")
os.environ.setdefault("OIDC_TOKEN_URL", "https://sso.example.test/token")

import httpx  # noqa: E402
import jwt  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from lockgate.service.runtime import reset_runtime_for_tests  # noqa: E402

SIGNING_KEY = "provider-signing-key-used-only-in-tests"


class FakeClock:
    """Deterministic, manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeTokenEndpoint:
    """httpx transport standing in for the provider's token endpoint."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.status_code = 200
        self.payload: dict | None = None
        self.raw_body: bytes | None = None
        self.error: Exception | None = None
        self.respond_with(sub="u1", preferred_username="alice")

    def respond_with(self, *, refresh_token: str | None = "refresh-1", **claims) -> None:
        self.payload = {
            "access_token": make_access_token(**claims),
            "token_type": "Bearer",
        }
        if refresh_token is not None:
            self.payload["refresh_token"] = refresh_token

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if self.raw_body is not None:
            return httpx.Response(self.status_code, content=self.raw_body)
        return httpx.Response(self.status_code, json=self.payload)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def last_form(self) -> dict[str, str]:
        form = parse_qs(self.requests[-1].content.decode())
        return {key: values[0] for key, values in form.items()}


def make_access_token(**claims) -> str:
    return jwt.encode(claims, SIGNING_KEY, algorithm="HS256")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def token_endpoint():
    return FakeTokenEndpoint()


@pytest.fixture
def make_token():
    return make_access_token


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
