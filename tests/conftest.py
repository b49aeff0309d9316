# ==== SHARED TEST FIXTURES AND CONFIGURATION ==== #

"""
Shared test fixtures for the Feishu relay.

Provides a mocked Feishu open platform (respx), application fixtures that
run the real lifespan against it, and small fakes for the resilience unit
tests.
"""

import os
from typing import Any, Dict

import httpx
import pytest
import pytest_asyncio
import respx
from httpx import ASGITransport, AsyncClient


# ==== FORCE ENVIRONMENT SETUP BEFORE ANY IMPORTS ==== #

# Set environment variables BEFORE importing any relay modules
os.environ.update({
    "APP_ENV": "test",
    "APP_ID": "cli_test_app",
    "APP_SECRET": "test-secret",
    "OPEN_CHAT_ID": "oc_test_chat",
    "FEISHU_BASE_URL": "http://feishu.test/open-apis",
    "HTTP_TIMEOUT_SECONDS": "2",
    "LOG_LEVEL": "WARNING",
    "LOG_DIR": "",
})

# Now import relay modules after environment is set
from relay.main import create_app
from relay.settings import Settings


FEISHU_BASE_URL = "http://feishu.test/open-apis"


# ==== FAKES ==== #


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


# ==== FEISHU API MOCKS ==== #


def token_response(token: str = "tenant-token-secret", expire: int = 7200) -> httpx.Response:
    return httpx.Response(
        200,
        json={"code": 0, "msg": "ok", "tenant_access_token": token, "expire": expire},
    )


def ok_response(data: Dict[str, Any] | None = None) -> httpx.Response:
    body: Dict[str, Any] = {"code": 0, "msg": "success"}
    if data is not None:
        body["data"] = data
    return httpx.Response(200, json=body)


@pytest.fixture
def feishu_api():
    """
    Mocked Feishu open platform.

    Routes are named "token", "send" and "image" so tests can inspect calls
    or replace responses, e.g. feishu_api["send"].side_effect = [...].
    """
    with respx.mock(base_url=FEISHU_BASE_URL, assert_all_called=False) as mock:
        mock.post("/auth/v3/tenant_access_token/internal", name="token").mock(
            return_value=token_response()
        )
        mock.post("/message/v3/send", name="send").mock(return_value=ok_response())
        mock.post("/im/v1/images", name="image").mock(
            return_value=ok_response({"image_key": "img_v2_test"})
        )
        yield mock


# ==== APPLICATION FIXTURES ==== #


@pytest.fixture
def upload_dir(tmp_path):
    return tmp_path / "uploads"


@pytest.fixture
def settings_overrides() -> Dict[str, Any]:
    """Override in a test module to tune the application settings."""
    return {}


@pytest.fixture
def test_settings(upload_dir, settings_overrides) -> Settings:
    values: Dict[str, Any] = {
        "UPLOAD_DIR": str(upload_dir),
        "DISPATCH_PACING_MS": 0,
        "DISPATCH_SHUTDOWN_TIMEOUT_SECONDS": 5.0,
    }
    values.update(settings_overrides)
    return Settings(**values)


@pytest_asyncio.fixture
async def app(test_settings, feishu_api):
    """Application with its lifespan running against the mocked platform."""
    application = create_app(test_settings)
    async with application.router.lifespan_context(application):
        yield application


@pytest_asyncio.fixture
async def client(app):
    """HTTP client bound to the application."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
