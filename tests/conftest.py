"""
Shared fixtures: configuration, storage and a scripted identity provider double.
"""

from collections.abc import Callable
from typing import Any, Union

import httpx
import pytest

from sso_web_app.config import AppConfig
from sso_web_app.providers import build_registry
from sso_web_app.storage import InMemoryStorage

GITHUB_TOKEN_URL = "https://github.com/login/oauth/access_token"
GITHUB_USER_URL = "https://api.github.com/user"
GITHUB_EMAILS_URL = "https://api.github.com/user/emails"
MICROSOFT_TOKEN_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
MICROSOFT_USER_URL = "https://graph.microsoft.com/v1.0/me"

Reply = Union[httpx.Response, Exception, Callable[[httpx.Request], httpx.Response]]


class FakeProvider:
    """Scripted provider endpoints served through httpx.MockTransport.

    Each URL maps to a list of replies consumed in order; the last reply
    repeats. A reply is a Response, an exception to raise, or a callable.
    """

    def __init__(self):
        self.routes: dict[str, list[Reply]] = {}
        self.requests: list[httpx.Request] = []

    def on(self, url: str, *replies: Reply) -> "FakeProvider":
        self.routes[url] = list(replies)
        return self

    def json(self, url: str, body: Any, status: int = 200) -> "FakeProvider":
        return self.on(url, httpx.Response(status, json=body))

    def calls(self, url: str) -> int:
        return sum(1 for r in self.requests if str(r.url).split("?")[0] == url)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url).split("?")[0]
        replies = self.routes.get(url)
        if not replies:
            return httpx.Response(404, json={"message": "Not Found"})
        reply = replies.pop(0) if len(replies) > 1 else replies[0]
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(request)
        return reply

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


async def no_sleep(_delay: float) -> None:
    return None


@pytest.fixture
def app_config():
    """Fully configured, non-production configuration."""
    return AppConfig(
        host="127.0.0.1",
        port=8000,
        base_url="http://testserver",
        app_env="test",
        database_url="memory://",
        session_secret="s" * 48,
        session_ttl_hours=24,
        session_cleanup_interval=3600,
        cookie_secure=False,
        csrf_test_bypass=None,
        microsoft_client_id="ms-client",
        microsoft_client_secret="ms-secret",
        github_client_id="gh-client",
        github_client_secret="gh-secret",
        retry_max_attempts=3,
        retry_base_delay=0.0,
        breaker_failure_threshold=5,
        breaker_reset_timeout=60,
        login_rate_limit=30,
    )


@pytest.fixture
def registry(app_config):
    return build_registry(app_config)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def fake_provider():
    return FakeProvider()
