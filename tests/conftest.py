import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Set up a throwaway environment before anything reads settings
_test_tmp_dir = tempfile.mkdtemp(prefix="zust_test_")
os.environ.setdefault("RESOURCE_PATH", _test_tmp_dir)
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_DEV_MODE", "true")

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from zust.app import create_app  # noqa: E402
from zust.config import Settings  # noqa: E402
from zust.service.email import EmailService  # noqa: E402
from zust.service.runtime import Runtime  # noqa: E402
from zust.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "test-secret-key-for-testing-only-do-not-use-in-production"
# PNG signature plus padding; served as avatars and uploaded as thumbnails
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 56


class RecordingEmailService(EmailService):
    """Captures verification tokens instead of sending mail."""

    def __init__(self) -> None:
        super().__init__(base_url="http://testserver")
        self.sent: list[dict] = []
        self.fail = False

    def send_email_verification(self, to_email: str, username: str, token: str) -> bool:
        if self.fail:
            return False
        self.sent.append({"to": to_email, "username": username, "token": token})
        return True

    def last_token_for(self, email: str) -> str:
        for message in reversed(self.sent):
            if message["to"] == email:
                return message["token"]
        raise AssertionError(f"no verification mail sent to {email}")


class FakeOAuthUpstream:
    """GitHub and Google endpoints served through ``httpx.MockTransport``.

    ``users`` maps an authorization code to the profile the userinfo endpoint
    returns for it.
    """

    def __init__(self) -> None:
        self.users: dict[str, dict] = {}
        self.emails: dict[str, list] = {}
        self.token_status = 200
        self.userinfo_status = 200
        self.avatar_status = 200
        self.requests: list[httpx.Request] = []
        self.transport = httpx.MockTransport(self.handle)

    def add_user(self, code: str, profile: dict, emails: list | None = None) -> None:
        self.users[code] = profile
        if emails is not None:
            self.emails[f"token-{code}"] = emails

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host, path = request.url.host, request.url.path
        if path in ("/login/oauth/access_token", "/token"):
            if self.token_status != 200:
                return httpx.Response(self.token_status, text="upstream exploded")
            form = dict(httpx.QueryParams(request.content.decode()))
            code = form.get("code")
            if code not in self.users:
                return httpx.Response(200, json={"error": "bad_verification_code"})
            return httpx.Response(200, json={"access_token": f"token-{code}"})

        access_token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        code = access_token.removeprefix("token-")
        if path in ("/user", "/oauth2/v2/userinfo"):
            if self.userinfo_status != 200 or code not in self.users:
                return httpx.Response(self.userinfo_status if self.userinfo_status != 200 else 401)
            return httpx.Response(200, json=self.users[code])
        if path == "/user/emails":
            return httpx.Response(200, json=self.emails.get(access_token, []))
        if host == "avatars.example.com":
            if self.avatar_status != 200:
                return httpx.Response(self.avatar_status)
            return httpx.Response(200, content=PNG_BYTES, headers={"Content-Type": "image/png"})
        return httpx.Response(404)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        secret_key=TEST_SECRET,
        use_memory_store=True,
        resource_path=str(tmp_path / "resources"),
        app_base_url="http://testserver",
        oauth_github_client_id="gh-client",
        oauth_github_client_secret="gh-secret",
        oauth_google_client_id="google-client",
        oauth_google_client_secret="google-secret",
        oauth_redirect_uri="http://testserver/oauth2/callback",
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def email_outbox():
    return RecordingEmailService()


@pytest.fixture
def oauth_upstream():
    return FakeOAuthUpstream()


@pytest.fixture
def runtime(settings, store, email_outbox, oauth_upstream):
    return Runtime(
        settings,
        store=store,
        email=email_outbox,
        http_transport=oauth_upstream.transport,
    )


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime=runtime)) as test_client:
        yield test_client


def register_and_login(
    client, email_outbox, *, email="viewer@example.com", username="viewer", password="CorrectHorse1!"
):
    """Register, follow the verification link, log in; returns the login payload."""
    response = client.post(
        "/auth/register",
        json={"email": email, "username": username, "password": password},
    )
    assert response.status_code == 200, response.json()
    token = email_outbox.last_token_for(email)
    assert client.get("/auth/verification", params={"token": token}).status_code == 200
    response = client.post("/auth/login", json={"username": username, "password": password})
    assert response.status_code == 200, response.json()
    return response.json()["data"]


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def active_user(client, email_outbox):
    return register_and_login(client, email_outbox)


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
