"""
Clawgate - Authentication Gate
================================
Decides whether an inbound connection carries a valid session.

Security model:
- Sessions are HS256-signed JWTs stored in the 'clawgate.sid' cookie.
  The token itself carries the principal (id, name, login, avatar), so no
  server-side session store is needed.
- Two optional providers issue sessions:
    * GitHub OAuth (GITHUB_CLIENT_ID + GITHUB_CLIENT_SECRET)
    * A shared setup password (SETUP_PASSWORD), bcrypt-hashed in memory
- If neither provider is configured, every request is authenticated
  (fail-open) so a fresh deployment can still reach the setup page.
- An optional allowlist of login handles (GITHUB_ALLOWED_USERS) restricts
  access further: a valid session for a login outside the list counts as
  no session at all.

Path classes:
    public -> login entry, OAuth callback, health check: never gated
    api    -> /setup/api/* or JSON requests: 401 JSON when unauthenticated
    page   -> everything else: redirect to /auth/login when unauthenticated

WebSocket upgrades bypass the HTTP middleware entirely, so the proxy calls
evaluate_session() directly with the upgrade request's Cookie header.
"""

import secrets
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode

import bcrypt
import httpx
from fastapi import Request
from fastapi.responses import JSONResponse, RedirectResponse
from jose import JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import cookie_parser
from starlette.responses import Response


JWT_ALGORITHM = "HS256"
SESSION_COOKIE = "clawgate.sid"
OAUTH_STATE_COOKIE = "clawgate.oauth"
OAUTH_STATE_MINUTES = 10

GITHUB_AUTHORIZE_URL = "https://github.com/login/oauth/authorize"
GITHUB_TOKEN_URL = "https://github.com/login/oauth/access_token"
GITHUB_USER_URL = "https://api.github.com/user"

# Routes that are reachable without a session
PUBLIC_PATHS = frozenset({
    "/auth/login",
    "/auth/github",
    "/auth/github/callback",
    "/auth/logout",
    "/auth/me",
    "/setup/healthz",
})


@dataclass(frozen=True)
class SessionPrincipal:
    """Authenticated identity carried by a session token."""
    id: str
    name: str
    login: str
    avatar: str = ""
    provider: str = "github"

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class AuthVerdict:
    """Outcome of evaluating a connection's session."""
    authenticated: bool
    principal: SessionPrincipal | None = None
    reason: str = ""


def classify_path(path: str, accept: str = "") -> str:
    """
    Classify a request target as "public", "api" or "page".

    Args:
        path:   URL path of the request.
        accept: Value of the Accept header ("" if absent).
    """
    if path in PUBLIC_PATHS:
        return "public"
    if path.startswith("/setup/api/") or "application/json" in accept:
        return "api"
    return "page"


class AuthManager:
    """
    Session issuing and verification for the wrapper.

    Attributes:
        client_id:     GitHub OAuth client id ("" when not configured).
        allowed_users: Lower-cased login allowlist (empty = any login).
        max_age:       Session lifetime in seconds.
        cookie_secure: Whether cookies are marked Secure.
    """

    def __init__(
        self,
        settings: dict,
        session_secret: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the auth manager.

        Args:
            settings:       The 'auth' settings section.
            session_secret: Key used to sign session and OAuth state tokens.
            transport:      httpx transport for GitHub calls (tests).
        """
        self.client_id = str(settings.get("github_client_id") or "").strip()
        self._client_secret = str(settings.get("github_client_secret") or "").strip()
        self.allowed_users = [
            str(u).strip().lower() for u in settings.get("allowed_users") or [] if str(u).strip()
        ]
        self.max_age = int(settings.get("session_max_age_days", 30)) * 24 * 60 * 60
        self.cookie_secure = bool(settings.get("cookie_secure"))
        self._secret = session_secret
        self._transport = transport

        # Keep only a hash of the setup password in memory
        self._password_hash: bytes | None = None
        password = str(settings.get("setup_password") or "")
        password_hash = str(settings.get("setup_password_hash") or "").strip()
        if password:
            self._password_hash = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
        elif password_hash:
            self._password_hash = password_hash.encode("utf-8")

    # -- Provider state -------------------------------------------------------

    def is_github_configured(self) -> bool:
        return bool(self.client_id and self._client_secret)

    def is_password_configured(self) -> bool:
        return self._password_hash is not None

    def is_configured(self) -> bool:
        """True if at least one authentication provider is configured."""
        return self.is_github_configured() or self.is_password_configured()

    def is_allowed(self, login: str) -> bool:
        """Check a login handle against the allowlist (empty list allows all)."""
        if not self.allowed_users:
            return True
        return login.strip().lower() in self.allowed_users

    # -- Session evaluation ---------------------------------------------------

    def evaluate_session(self, cookie_header: str | None) -> AuthVerdict:
        """
        Evaluate the session carried by a raw Cookie header.

        Pure with respect to the connection: it needs only the header value,
        which makes it usable both from the HTTP middleware and on a raw
        WebSocket upgrade request.

        Args:
            cookie_header: The Cookie header value, or None.

        Returns:
            AuthVerdict (authenticated=True with principal=None when no
            provider is configured).
        """
        if not self.is_configured():
            return AuthVerdict(True, reason="auth not configured")

        token = cookie_parser(cookie_header or "").get(SESSION_COOKIE)
        if not token:
            return AuthVerdict(False, reason="no session")

        principal = self.decode_session(token)
        if principal is None:
            return AuthVerdict(False, reason="invalid session")

        if not self.is_allowed(principal.login):
            return AuthVerdict(False, reason=f"login '{principal.login}' not allowed")

        return AuthVerdict(True, principal=principal)

    def issue_session(self, principal: SessionPrincipal) -> str:
        """Create a signed session token for a principal."""
        now = datetime.now(timezone.utc)
        payload = {
            "typ": "session",
            "sub": principal.id,
            "name": principal.name,
            "login": principal.login,
            "avatar": principal.avatar,
            "prv": principal.provider,
            "iat": now,
            "exp": now + timedelta(seconds=self.max_age),
        }
        return jwt.encode(payload, self._secret, algorithm=JWT_ALGORITHM)

    def decode_session(self, token: str) -> SessionPrincipal | None:
        """Verify a session token; None if invalid, expired or not a session."""
        try:
            payload = jwt.decode(token, self._secret, algorithms=[JWT_ALGORITHM])
        except JWTError:
            return None
        if payload.get("typ") != "session" or not payload.get("login"):
            return None
        return SessionPrincipal(
            id=str(payload.get("sub", "")),
            name=str(payload.get("name") or payload["login"]),
            login=str(payload["login"]),
            avatar=str(payload.get("avatar", "")),
            provider=str(payload.get("prv", "github")),
        )

    def set_session_cookie(self, response: Response, principal: SessionPrincipal) -> None:
        response.set_cookie(
            SESSION_COOKIE,
            self.issue_session(principal),
            max_age=self.max_age,
            httponly=True,
            secure=self.cookie_secure,
            samesite="lax",
        )

    def clear_session_cookie(self, response: Response) -> None:
        response.delete_cookie(SESSION_COOKIE)

    # -- Password provider ----------------------------------------------------

    def verify_password(self, password: str) -> SessionPrincipal | None:
        """
        Verify the shared setup password.

        Returns:
            The 'admin' principal on success, None otherwise.
        """
        if self._password_hash is None or not password:
            return None
        if not bcrypt.checkpw(password.encode("utf-8"), self._password_hash):
            return None
        return SessionPrincipal(id="admin", name="Administrator", login="admin", provider="password")

    # -- GitHub OAuth provider ------------------------------------------------

    def begin_oauth(self, redirect_uri: str) -> tuple[str, str]:
        """
        Start a GitHub authorization-code flow.

        Returns:
            Tuple of (authorize URL, signed state token for the state cookie).
        """
        state = secrets.token_hex(16)
        now = datetime.now(timezone.utc)
        state_token = jwt.encode(
            {
                "typ": "oauth_state",
                "state": state,
                "exp": now + timedelta(minutes=OAUTH_STATE_MINUTES),
            },
            self._secret,
            algorithm=JWT_ALGORITHM,
        )
        params = urlencode({
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "scope": "read:user",
            "state": state,
        })
        return f"{GITHUB_AUTHORIZE_URL}?{params}", state_token

    def check_oauth_state(self, state: str, state_token: str | None) -> bool:
        """Compare the callback's state with the one stored in the state cookie."""
        if not state or not state_token:
            return False
        try:
            payload = jwt.decode(state_token, self._secret, algorithms=[JWT_ALGORITHM])
        except JWTError:
            return False
        if payload.get("typ") != "oauth_state":
            return False
        return secrets.compare_digest(str(payload.get("state", "")), state)

    async def exchange_github_code(self, code: str) -> SessionPrincipal:
        """
        Exchange an authorization code for the GitHub user's identity.

        Raises:
            httpx.HTTPError: GitHub API call failed.
            ValueError:      GitHub did not return an access token.
        """
        async with httpx.AsyncClient(
            transport=self._transport,
            timeout=10.0,
            headers={"accept": "application/json"},
        ) as client:
            resp = await client.post(
                GITHUB_TOKEN_URL,
                json={
                    "client_id": self.client_id,
                    "client_secret": self._client_secret,
                    "code": code,
                },
            )
            resp.raise_for_status()
            access_token = resp.json().get("access_token")
            if not access_token:
                raise ValueError("Failed to get access token from GitHub.")

            resp = await client.get(
                GITHUB_USER_URL,
                headers={"authorization": f"Bearer {access_token}"},
            )
            resp.raise_for_status()
            user = resp.json()

        login = str(user.get("login") or "")
        return SessionPrincipal(
            id=str(user.get("id", "")),
            name=str(user.get("name") or login),
            login=login,
            avatar=str(user.get("avatar_url") or ""),
            provider="github",
        )


class AuthMiddleware(BaseHTTPMiddleware):
    """
    Gate every HTTP request (including proxied ones) behind a session.

    WebSocket scopes are not HTTP requests and pass through untouched; the
    upgrade path does its own check (see proxy.py).
    """

    def __init__(self, app, auth_manager: AuthManager):
        super().__init__(app)
        self.auth = auth_manager

    async def dispatch(self, request: Request, call_next):
        kind = classify_path(request.url.path, request.headers.get("accept", ""))
        if kind == "public":
            return await call_next(request)

        verdict = self.auth.evaluate_session(request.headers.get("cookie"))
        if verdict.authenticated:
            request.state.principal = verdict.principal
            return await call_next(request)

        if kind == "api":
            return JSONResponse({"error": "Not authenticated"}, status_code=401)
        return RedirectResponse("/auth/login", status_code=302)
