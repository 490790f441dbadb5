"""Integration tests for the password account and session flow.

Covers:
- Registration and email verification
- Login by username or email
- Single-use refresh token rotation
- Logout and account lock burning outstanding tokens
- Bearer-token middleware errors
"""

import base64
import json

from conftest import PNG_BYTES, bearer, register_and_login
from zust.service.media import MediaKind
from zust.storage.models import AccountStatus

PASSWORD = "CorrectHorse1!"


def _register(client, email="alice@example.com", username="alice", password=PASSWORD):
    return client.post(
        "/auth/register",
        json={"email": email, "username": username, "password": password},
    )


class TestRegistration:
    def test_register_creates_inactive_account_and_sends_mail(self, client, email_outbox, store):
        response = _register(client, email="Alice@Example.com")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["message"] == "Account created successfully"
        assert body["data"]["status"] == "inactive"
        assert body["data"]["email"] == "alice@example.com"
        assert email_outbox.sent[-1]["to"] == "alice@example.com"
        account = store.get_account(body["data"]["id"])
        assert account.password_hash.startswith("$argon2id$")

    def test_register_creates_media_repository(self, client, runtime):
        account_id = _register(client).json()["data"]["id"]
        assert (runtime.media.user_dir(account_id) / "avatar.png").is_file()

    def test_duplicate_email(self, client):
        _register(client)
        response = _register(client, username="alice2")
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Email is already taken"

    def test_duplicate_username(self, client):
        _register(client)
        response = _register(client, email="other@example.com")
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Username is already taken"

    def test_request_validation(self, client):
        assert _register(client, email="not-an-email").status_code == 422
        assert _register(client, username="has spaces").status_code == 422
        assert _register(client, username="x" * 21).status_code == 422
        assert _register(client, password="").status_code == 422
        assert _register(client, email=("a" * 35) + "@example.com").status_code == 422

    def test_mail_failure_is_reported(self, client, email_outbox):
        email_outbox.fail = True
        response = _register(client)
        assert response.status_code == 500
        assert "failed to send verification email" in response.json()["error"]["message"]


class TestVerification:
    def test_login_before_verification_is_forbidden(self, client):
        assert _register(client, email="a@x.com", username="a", password="pw").status_code == 200
        response = client.post("/auth/login", json={"username": "a", "password": "pw"})
        assert response.status_code == 403
        assert response.json()["error"]["message"] == "Account is not active"

    def test_verification_activates(self, client, email_outbox):
        _register(client)
        token = email_outbox.last_token_for("alice@example.com")
        response = client.get("/auth/verification", params={"token": token})
        assert response.status_code == 200
        assert response.json()["data"]["message"] == "Account verified successfully"
        assert response.json()["data"]["status"] == "active"

    def test_bad_and_missing_tokens(self, client):
        assert client.get("/auth/verification", params={"token": "nope"}).json()["error"]["message"] == "Invalid token"
        assert client.get("/auth/verification").json()["error"]["message"] == "Missing token"

    def test_resend(self, client, email_outbox):
        _register(client)
        response = client.post("/auth/verification/resend", params={"email": "alice@example.com"})
        assert response.status_code == 200
        assert len(email_outbox.sent) == 2

    def test_resend_for_active_account(self, client, email_outbox):
        register_and_login(client, email_outbox, email="alice@example.com", username="alice")
        response = client.post("/auth/verification/resend", params={"email": "alice@example.com"})
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Account is active"

    def test_resend_unknown_email(self, client):
        response = client.post("/auth/verification/resend", params={"email": "ghost@example.com"})
        assert response.json()["error"]["message"] == "Account with this email does not exist"


class TestLogin:
    def test_login_returns_profile_and_tokens(self, client, email_outbox):
        data = register_and_login(client, email_outbox, email="alice@example.com", username="alice")
        assert data["username"] == "alice"
        assert data["email"] == "alice@example.com"
        assert data["avatar"].startswith("http://testserver/media/")
        assert data["access_token"] and data["refresh_token"]

    def test_login_by_email(self, client, email_outbox):
        register_and_login(client, email_outbox, email="alice@example.com", username="alice")
        response = client.post(
            "/auth/login", json={"username": "Alice@Example.com", "password": PASSWORD}
        )
        assert response.status_code == 200

    def test_wrong_password_and_unknown_user_look_the_same(self, client, email_outbox):
        register_and_login(client, email_outbox, email="alice@example.com", username="alice")
        wrong = client.post("/auth/login", json={"username": "alice", "password": "nope-nope"})
        unknown = client.post("/auth/login", json={"username": "bob", "password": "nope-nope"})
        assert wrong.status_code == unknown.status_code == 400
        assert wrong.json()["error"] == unknown.json()["error"]
        assert wrong.json()["error"]["message"] == "Invalid username or password"

    def test_oauth_only_account_cannot_use_password(self, client, store):
        store.create_account_with_oauth("octo@example.com", "octo", "github", "1")
        response = client.post("/auth/login", json={"username": "octo", "password": PASSWORD})
        assert response.status_code == 400
        assert "login with OAuth provider" in response.json()["error"]["message"]


class TestSessionLifecycle:
    def test_refresh_rotates_and_old_refresh_token_is_dead(self, client, active_user):
        old_refresh = active_user["refresh_token"]
        response = client.post("/auth/token/refresh", headers=bearer(old_refresh))
        assert response.status_code == 200
        rotated = response.json()["data"]

        # New access token works, the whole old pair does not
        assert client.post("/auth/logout", headers=bearer(active_user["access_token"])).status_code == 401
        replay = client.post("/auth/token/refresh", headers=bearer(old_refresh))
        assert replay.status_code == 401
        assert client.post("/auth/token/refresh", headers=bearer(rotated["refresh_token"])).status_code == 200

    def test_logout_burns_tokens(self, client, active_user):
        headers = bearer(active_user["access_token"])
        response = client.post("/auth/logout", headers=headers)
        assert response.status_code == 200
        assert response.json()["data"]["message"] == "Logged out successfully"

        again = client.post("/auth/logout", headers=headers)
        assert again.status_code == 401
        stale = client.post("/auth/token/refresh", headers=bearer(active_user["refresh_token"]))
        assert stale.status_code == 401

    def test_lock_own_account(self, client, active_user):
        response = client.post(
            f"/accounts/{active_user['id']}/lock", headers=bearer(active_user["access_token"])
        )
        assert response.status_code == 201
        assert response.json()["data"]["message"] == f"Account with ID {active_user['id']} locked successfully"
        assert client.post("/auth/logout", headers=bearer(active_user["access_token"])).status_code == 401
        login = client.post("/auth/login", json={"username": "viewer", "password": PASSWORD})
        assert login.status_code == 403

    def test_cannot_lock_someone_else(self, client, email_outbox, active_user):
        other = register_and_login(client, email_outbox, email="bob@example.com", username="bob")
        response = client.post(
            f"/accounts/{other['id']}/lock", headers=bearer(active_user["access_token"])
        )
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Account ID not match with the ID from access token"


class TestBearerMiddleware:
    def test_missing_header(self, client):
        response = client.post("/auth/logout")
        assert response.status_code == 401
        assert response.json()["error"] == {
            "code": "unauthorized",
            "message": "Missing request header",
            "details": {},
        }

    def test_non_bearer_scheme(self, client, active_user):
        response = client.post("/auth/logout", headers={"Authorization": f"Basic {active_user['access_token']}"})
        assert response.status_code == 401

    def test_malformed_token(self, client):
        response = client.post("/auth/logout", headers=bearer("not-a-token"))
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Invalid access token: token is malformed"

    def test_refresh_token_on_normal_route(self, client, active_user):
        response = client.post("/auth/logout", headers=bearer(active_user["refresh_token"]))
        assert response.status_code == 400
        assert "unsuitable token type" in response.json()["error"]["message"]

    def test_access_token_on_refresh_route(self, client, active_user):
        response = client.post("/auth/token/refresh", headers=bearer(active_user["access_token"]))
        assert response.status_code == 400
        assert "unsuitable token type" in response.json()["error"]["message"]

    def test_expired_token(self, client, runtime, active_user):
        token = runtime.codec.issue(active_user["id"], "access", 1, 1)
        runtime.codec._clock = lambda: 10_000_000_000
        response = client.post("/auth/logout", headers=bearer(token))
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Access token expired"

    def test_foreign_signature(self, client, active_user):
        header, payload, _ = active_user["access_token"].split(".")
        response = client.post("/auth/logout", headers=bearer(f"{header}.{payload}.AAAA"))
        assert response.status_code == 400
        assert response.json()["error"]["message"].startswith("Invalid access token: ")

    def test_list_algorithm_header(self, client):
        header = base64.urlsafe_b64encode(json.dumps({"alg": ["HS256"]}).encode()).decode().rstrip("=")
        token = f"{header}.e30.x"
        response = client.post("/auth/logout", headers=bearer(token))
        assert response.status_code == 400


class TestAdminBan:
    def test_ban_requires_admin(self, client, email_outbox, active_user):
        other = register_and_login(client, email_outbox, email="bob@example.com", username="bob")
        response = client.post(
            f"/accounts/{other['id']}/ban", headers=bearer(active_user["access_token"])
        )
        assert response.status_code == 403

    def test_admin_bans_account(self, client, runtime, email_outbox, active_user):
        admin = runtime.store.create_account_with_password(
            "root@example.com", "root", runtime.hasher.hash(PASSWORD), role="admin", status=AccountStatus.ACTIVE
        )
        admin_tokens = runtime.sessions.issue(admin)
        response = client.post(
            f"/accounts/{active_user['id']}/ban", headers=bearer(admin_tokens.access_token)
        )
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "banned"
        assert client.post("/auth/logout", headers=bearer(active_user["access_token"])).status_code == 401


class TestOAuthFlow:
    def _octocat(self, oauth_upstream, code="code-1"):
        oauth_upstream.add_user(
            code,
            {
                "id": 583231,
                "login": "octocat",
                "avatar_url": "https://avatars.example.com/u/583231",
                "email": "Octocat@GitHub.com",
            },
        )

    def test_authorize_returns_consent_url(self, client):
        response = client.get("/oauth2/github/authorize")
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["provider"] == "github"
        assert data["authorization_url"].startswith("https://github.com/login/oauth/authorize?")
        assert "state=github" in data["authorization_url"]
        assert "client_id=gh-client" in data["authorization_url"]

    def test_unknown_provider(self, client):
        assert client.get("/oauth2/myspace/authorize").status_code == 400
        response = client.get("/oauth2/callback", params={"code": "x", "state": "myspace"})
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Unknown provider"

    def test_missing_code(self, client):
        response = client.get("/oauth2/callback", params={"state": "github"})
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Missing authorization code"

    def test_callback_creates_active_account_once(self, client, oauth_upstream, runtime, store):
        self._octocat(oauth_upstream)

        first = client.get("/oauth2/callback", params={"code": "code-1", "state": "github"})
        assert first.status_code == 200
        data = first.json()["data"]
        assert data["created"] is True
        assert data["username"] == "octocat"
        assert data["email"] == "octocat@github.com"

        account = store.get_account(data["id"])
        assert account.status == AccountStatus.ACTIVE
        assert (account.oauth_provider, account.oauth_provider_id) == ("github", "583231")
        # Background task ran after the response: repository exists with the provider avatar
        avatar = runtime.media.path_for(account.id, MediaKind.AVATAR)
        assert avatar.read_bytes() == PNG_BYTES

        second = client.get("/oauth2/callback", params={"code": "code-1", "state": "github"})
        assert second.status_code == 200
        assert second.json()["data"]["created"] is False
        assert second.json()["data"]["id"] == account.id
        assert len(store.accounts) == 1

    def test_oauth_tokens_authenticate(self, client, oauth_upstream):
        self._octocat(oauth_upstream)
        data = client.get("/oauth2/callback", params={"code": "code-1", "state": "github"}).json()["data"]
        assert client.post("/auth/logout", headers=bearer(data["access_token"])).status_code == 200

    def test_bad_code_is_a_server_error_without_upstream_body(self, client, oauth_upstream):
        response = client.get("/oauth2/callback", params={"code": "unknown", "state": "github"})
        assert response.status_code == 500
        assert response.json()["error"]["message"] == "Failed to exchange token"
        assert "bad_verification_code" not in response.text

    def test_userinfo_failure(self, client, oauth_upstream):
        self._octocat(oauth_upstream)
        oauth_upstream.userinfo_status = 502
        response = client.get("/oauth2/callback", params={"code": "code-1", "state": "github"})
        assert response.status_code == 500
        assert response.json()["error"]["message"] == "Failed to fetch user data"

    def test_banned_oauth_account_cannot_log_in(self, client, oauth_upstream, store):
        self._octocat(oauth_upstream)
        data = client.get("/oauth2/callback", params={"code": "code-1", "state": "github"}).json()["data"]
        store.set_account_status(data["id"], AccountStatus.BANNED)
        response = client.get("/oauth2/callback", params={"code": "code-1", "state": "github"})
        assert response.status_code == 403
