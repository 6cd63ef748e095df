"""Tests for session evaluation and the login providers."""

import httpx
import pytest

from clawgate.auth import (
    SESSION_COOKIE,
    AuthManager,
    SessionPrincipal,
    classify_path,
)


SECRET = "test-session-secret"


def cookie(auth: AuthManager, principal: SessionPrincipal) -> str:
    return f"other=1; {SESSION_COOKIE}={auth.issue_session(principal)}"


OCTOCAT = SessionPrincipal(id="1", name="The Octocat", login="octocat")


@pytest.mark.parametrize(
    "path, accept, expected",
    [
        ("/auth/login", "", "public"),
        ("/auth/github/callback", "", "public"),
        ("/setup/healthz", "", "public"),
        ("/setup/api/status", "", "api"),
        ("/openclaw", "application/json", "api"),
        ("/setup", "text/html", "page"),
        ("/openclaw/chat", "", "page"),
    ],
)
def test_classify_path(path, accept, expected):
    assert classify_path(path, accept) == expected


def test_fail_open_without_providers():
    auth = AuthManager({}, SECRET)
    verdict = auth.evaluate_session(None)
    assert verdict.authenticated is True
    assert verdict.principal is None


class TestSessions:
    def test_missing_cookie(self):
        auth = AuthManager({"setup_password": "pw"}, SECRET)
        verdict = auth.evaluate_session("")
        assert not verdict.authenticated
        assert verdict.reason == "no session"

    def test_password_session_round_trip(self):
        auth = AuthManager({"setup_password": "pw"}, SECRET)
        principal = auth.verify_password("pw")
        assert principal is not None
        assert auth.verify_password("wrong") is None

        verdict = auth.evaluate_session(cookie(auth, principal))
        assert verdict.authenticated
        assert verdict.principal.login == "admin"
        assert verdict.principal.provider == "password"

    def test_token_signed_with_other_secret_is_rejected(self):
        auth = AuthManager({"setup_password": "pw"}, SECRET)
        forged = AuthManager({"setup_password": "pw"}, "another-secret")
        verdict = auth.evaluate_session(cookie(forged, OCTOCAT))
        assert not verdict.authenticated
        assert verdict.reason == "invalid session"

    def test_allowlist_is_applied_to_valid_sessions(self):
        settings = {
            "github_client_id": "id",
            "github_client_secret": "secret",
            "allowed_users": ["OctoCat"],
        }
        auth = AuthManager(settings, SECRET)

        assert auth.evaluate_session(cookie(auth, OCTOCAT)).authenticated

        stranger = SessionPrincipal(id="2", name="Stranger", login="stranger")
        verdict = auth.evaluate_session(cookie(auth, stranger))
        assert not verdict.authenticated
        assert verdict.principal is None

    def test_oauth_state_token_is_not_a_session(self):
        auth = AuthManager({"github_client_id": "id", "github_client_secret": "s"}, SECRET)
        _, state_token = auth.begin_oauth("https://example.test/auth/github/callback")
        assert auth.decode_session(state_token) is None


class TestGitHub:
    def test_begin_oauth_and_check_state(self):
        auth = AuthManager({"github_client_id": "cid", "github_client_secret": "s"}, SECRET)
        url, state_token = auth.begin_oauth("https://example.test/auth/github/callback")

        assert url.startswith("https://github.com/login/oauth/authorize?")
        assert "client_id=cid" in url
        assert "scope=read%3Auser" in url

        state = httpx.URL(url).params["state"]
        assert auth.check_oauth_state(state, state_token)
        assert not auth.check_oauth_state("tampered", state_token)
        assert not auth.check_oauth_state(state, None)

    @pytest.mark.asyncio
    async def test_exchange_code(self):
        def github(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/login/oauth/access_token":
                return httpx.Response(200, json={"access_token": "gho_token"})
            assert request.headers["authorization"] == "Bearer gho_token"
            return httpx.Response(
                200,
                json={"id": 583231, "login": "octocat", "name": None, "avatar_url": "https://a"},
            )

        auth = AuthManager(
            {"github_client_id": "cid", "github_client_secret": "s"},
            SECRET,
            transport=httpx.MockTransport(github),
        )
        principal = await auth.exchange_github_code("code123")
        assert principal == SessionPrincipal(
            id="583231", name="octocat", login="octocat", avatar="https://a", provider="github"
        )

    @pytest.mark.asyncio
    async def test_exchange_code_without_token(self):
        auth = AuthManager(
            {"github_client_id": "cid", "github_client_secret": "s"},
            SECRET,
            transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"error": "bad"})),
        )
        with pytest.raises(ValueError):
            await auth.exchange_github_code("code123")
