"""Configure pytest fixtures for Residence Manager tests."""

import inspect
import json
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest
import pytest_asyncio
import structlog

from residence.core.config import ApiConfig, reset_settings
from residence.core.models import Session, UserRole
from residence.data.api_client import ApiClient

BASE_URL = "http://testserver"

ENV_VARS = (
    "RESIDENCE_API_URL",
    "RESIDENCE_API_TOKEN",
    "REQUEST_TIMEOUT",
    "API_RETRY_ATTEMPTS",
    "PAGE_SIZE",
    "MAX_CONCURRENCY",
    "FALLBACK_LABEL",
    "USER_ID",
    "RESIDENT_ID",
    "RESIDENCE_USERNAME",
    "USER_ROLE",
    "ENVIRONMENT",
    "DEBUG",
)

class FakeApi:
    """
    In-memory stand-in for the building API.

    Routes map ``(method, path)`` to a JSON body, an ``httpx.Response`` or a
    callable (sync or async) receiving the request. Every request is recorded.
    """

    def __init__(self):
        self.routes: Dict[Tuple[str, str], Any] = {}
        self.requests: List[httpx.Request] = []

    def route(self, method: str, path: str, body: Any = None, status: int = 200) -> None:
        if callable(body) or isinstance(body, httpx.Response):
            self.routes[(method, path)] = body
        else:
            self.routes[(method, path)] = httpx.Response(status, json=body)

    def calls(self, method: Optional[str] = None, path: Optional[str] = None) -> List[httpx.Request]:
        return [
            r
            for r in self.requests
            if (method is None or r.method == method) and (path is None or r.url.path == path)
        ]

    def json_body(self, request: httpx.Request) -> Any:
        return json.loads(request.content)

    async def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        target = self.routes.get((request.method, request.url.path))
        if target is None:
            return httpx.Response(404, json={"detail": "Not found."})
        if isinstance(target, httpx.Response):
            return httpx.Response(
                target.status_code, content=target.content, headers=target.headers
            )
        result = target(request)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, httpx.Response):
            return result
        return httpx.Response(200, json=result)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)


@pytest.fixture(autouse=True)
def clean_settings(monkeypatch, tmp_path):
    """Keep cached settings, a local .env and the host environment out of each test."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    reset_settings()
    yield
    reset_settings()
    structlog.contextvars.clear_contextvars()


@pytest.fixture
def api():
    return FakeApi()


@pytest.fixture
def admin_session():
    return Session(token="admin-token", user_id=1, username="admin", role=UserRole.ADMIN)


@pytest.fixture
def resident_session():
    return Session(token="resident-token", user_id=7, resident_id=42, username="lan")


@pytest.fixture
def api_config():
    return ApiConfig(RESIDENCE_API_URL=BASE_URL, RESIDENCE_API_TOKEN="admin-token")


@pytest_asyncio.fixture
async def client(api, api_config, admin_session):
    async with ApiClient(api_config, admin_session, transport=api.transport) as c:
        yield c


@pytest_asyncio.fixture
async def resident_client(api, api_config, resident_session):
    async with ApiClient(api_config, resident_session, transport=api.transport) as c:
        yield c
