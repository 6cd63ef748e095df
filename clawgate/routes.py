"""
Clawgate - HTTP Routes
========================
Wrapper-owned endpoints. Everything not matched here falls through to the
reverse proxy (registered last in main.py).

Route groups:
    /auth/*              - Login providers, logout, current principal
    /setup/healthz       - Public health check
    /setup/api/status    - Configured flag, gateway version and state
    /setup/api/debug     - Wrapper and gateway diagnostics
    /setup/api/run       - Onboarding
    /setup/api/console/* - Allowlisted console commands
    /setup/api/config/*  - Raw gateway configuration editor
    /setup/api/pairing/* - Channel pairing approval
    /setup/api/reset     - Delete the gateway configuration
    /setup/api/logs      - Wrapper event log tail
    /setup/export        - Backup download (streamed)
    /setup/import        - Backup restore

Every /setup route requires a session; AuthMiddleware enforces this before
the handlers run. Domain errors are turned into HTTP responses here.
"""

import platform
from urllib.parse import quote

import httpx
from fastapi import APIRouter, Form, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse
from pydantic import BaseModel, Field
from starlette.responses import StreamingResponse

from clawgate.auth import OAUTH_STATE_COOKIE, AuthManager
from clawgate.backup import BackupManager
from clawgate.config import ConfigManager
from clawgate.console import Console, ConsoleRejected, Onboarding, run_command
from clawgate.errors import ClawgateError, GatewayHeld, ImportRootMismatch, ImportTooLarge
from clawgate.log import EventLog
from clawgate.manager import GatewayManager


# =============================================================================
# Request/Response Models (Pydantic)
# =============================================================================

class StatusResponse(BaseModel):
    """Setup status shown on the landing page."""
    configured: bool = Field(description="Whether the gateway configuration exists")
    gateway_version: str = Field(description="Output of the gateway CLI --version")
    gateway: dict = Field(description="Supervisor status snapshot")

class OnboardRequest(BaseModel):
    """Onboarding form. Field names follow the setup page's form ids."""
    flow: str = "quickstart"
    authChoice: str = ""
    authSecret: str = ""
    model: str = ""
    telegramToken: str = ""
    discordToken: str = ""
    slackBotToken: str = ""
    slackAppToken: str = ""

class ConsoleRequest(BaseModel):
    """One console command with its optional argument."""
    cmd: str = Field("", description="Command name from the allowlist")
    arg: str = Field("", description="Command argument")

class RawConfigRequest(BaseModel):
    """Replacement content for the gateway configuration file."""
    content: str = ""

class PairingRequest(BaseModel):
    """Approve a pending channel pairing."""
    channel: str = ""
    code: str = ""


# =============================================================================
# Router Factory
# =============================================================================

def create_router(
    config_manager: ConfigManager,
    auth_manager: AuthManager,
    gateway_manager: GatewayManager,
    backup_manager: BackupManager,
    event_log: EventLog,
) -> APIRouter:
    """
    Create the router with all wrapper endpoints.

    Args:
        config_manager:  Settings and gateway configuration artifact.
        auth_manager:    Session issuing and verification.
        gateway_manager: Gateway process supervisor.
        backup_manager:  Export / import of persisted state.
        event_log:       Shared event log.

    Returns:
        Configured APIRouter.
    """
    router = APIRouter()
    console = Console(config_manager, gateway_manager, event_log)
    onboarding = Onboarding(config_manager, gateway_manager, event_log)

    def login_error(message: str) -> RedirectResponse:
        return RedirectResponse(f"/auth/login?error={quote(message)}", status_code=303)

    # =========================================================================
    # AUTH ROUTES - Public
    # =========================================================================

    @router.post("/auth/login")
    async def password_login(password: str = Form("")):
        """Shared setup password login. Issues the 'admin' session."""
        if not auth_manager.is_password_configured():
            return login_error("Password login is not configured. Set SETUP_PASSWORD.")

        principal = auth_manager.verify_password(password)
        if principal is None or not auth_manager.is_allowed(principal.login):
            event_log.log("AUTH", "password login rejected")
            return login_error("Invalid password")

        event_log.log("AUTH", "password login ok")
        response = RedirectResponse("/setup", status_code=303)
        auth_manager.set_session_cookie(response, principal)
        return response

    @router.get("/auth/github")
    async def github_login(request: Request):
        """Start the GitHub OAuth flow."""
        if not auth_manager.is_github_configured():
            return login_error(
                "GitHub OAuth not configured. Set GITHUB_CLIENT_ID and GITHUB_CLIENT_SECRET."
            )

        url, state_token = auth_manager.begin_oauth(
            f"{_base_url(request)}/auth/github/callback"
        )
        response = RedirectResponse(url, status_code=302)
        response.set_cookie(
            OAUTH_STATE_COOKIE,
            state_token,
            max_age=600,
            httponly=True,
            secure=auth_manager.cookie_secure,
            samesite="lax",
        )
        return response

    @router.get("/auth/github/callback")
    async def github_callback(request: Request, code: str = "", state: str = ""):
        """
        OAuth callback: validate state, exchange the code, apply the
        allowlist and issue the session cookie.
        """
        if not code or not auth_manager.check_oauth_state(
            state, request.cookies.get(OAUTH_STATE_COOKIE)
        ):
            return login_error("Invalid OAuth state. Please try again.")

        try:
            principal = await auth_manager.exchange_github_code(code)
        except (httpx.HTTPError, ValueError) as e:
            event_log.log("AUTH", f"GitHub OAuth error: {e}")
            return login_error("Authentication failed. Please try again.")

        if not auth_manager.is_allowed(principal.login):
            event_log.log("AUTH", f"GitHub login '{principal.login}' not allowed")
            return login_error(
                f'Access denied. User "{principal.login}" is not in the allowed users list.'
            )

        event_log.log("AUTH", f"GitHub login ok: {principal.login}")
        response = RedirectResponse("/setup", status_code=302)
        response.delete_cookie(OAUTH_STATE_COOKIE)
        auth_manager.set_session_cookie(response, principal)
        return response

    @router.get("/auth/logout")
    async def logout():
        response = RedirectResponse("/auth/login", status_code=302)
        auth_manager.clear_session_cookie(response)
        return response

    @router.get("/auth/me")
    async def me(request: Request):
        """Current principal, or 401 without a session."""
        verdict = auth_manager.evaluate_session(request.headers.get("cookie"))
        if verdict.principal is None:
            return JSONResponse({"error": "Not authenticated"}, status_code=401)
        return {"user": verdict.principal.to_dict()}

    @router.get("/setup/healthz")
    async def healthz():
        return {"ok": True}

    # =========================================================================
    # SETUP API - Requires authentication
    # =========================================================================

    @router.get("/setup/api/status", response_model=StatusResponse)
    async def setup_status():
        """Configured flag, gateway CLI version and supervisor state."""
        version = await run_command(config_manager, ["--version"])
        return StatusResponse(
            configured=config_manager.is_configured(),
            gateway_version=version.output.strip(),
            gateway=gateway_manager.status,
        )

    @router.get("/setup/api/debug")
    async def setup_debug(request: Request):
        """Diagnostics for support: paths, token source, gateway CLI."""
        settings = config_manager.settings
        version = await run_command(config_manager, ["--version"])
        channels_help = await run_command(config_manager, ["channels", "add", "--help"])
        return {
            "wrapper": {
                "python": platform.python_version(),
                "port": settings["web"]["port"],
                "state_dir": settings["paths"]["state_dir"],
                "workspace_dir": settings["paths"]["workspace_dir"],
                "config_path": config_manager.artifact_path,
                "storage_root": settings["paths"]["storage_root"],
                "gateway_token_source": request.app.state.gateway_token_source,
                "session_secret_source": request.app.state.session_secret_source,
                "auth": {
                    "github": auth_manager.is_github_configured(),
                    "password": auth_manager.is_password_configured(),
                    "allowed_users": auth_manager.allowed_users,
                },
                "config_error": settings.get("_config_error"),
            },
            "gateway": {
                "entry": settings["gateway"]["entry"],
                "node": settings["gateway"]["node"],
                "version": version.output.strip(),
                "channels_add_help_includes_telegram": "telegram" in channels_help.output,
                "status": gateway_manager.status,
            },
        }

    @router.post("/setup/api/run")
    async def setup_run(req: OnboardRequest):
        """Run onboarding; only ensures the gateway runs if already configured."""
        try:
            reply = await onboarding.run(req.model_dump())
        except ClawgateError as e:
            return JSONResponse(
                {"ok": False, "output": f"Internal error: {e.message}\n"}, status_code=500
            )
        return JSONResponse(reply.to_dict(), status_code=reply.status_code)

    @router.post("/setup/api/console/run")
    async def console_run(req: ConsoleRequest):
        """Execute one allowlisted console command."""
        try:
            reply = await console.run(req.cmd, req.arg)
        except ConsoleRejected as e:
            return JSONResponse({"ok": False, "error": e.message}, status_code=400)
        except ClawgateError as e:
            return JSONResponse({"ok": False, "error": e.message}, status_code=500)
        return JSONResponse(reply.to_dict(), status_code=reply.status_code)

    @router.get("/setup/api/config/raw")
    async def get_raw_config():
        """Current gateway configuration file content."""
        try:
            return {"ok": True, **config_manager.read_raw()}
        except OSError as e:
            return JSONResponse({"ok": False, "error": str(e)}, status_code=500)

    @router.post("/setup/api/config/raw")
    async def put_raw_config(req: RawConfigRequest):
        """
        Replace the gateway configuration file.
        The previous file is kept as '<path>.bak-<timestamp>'; the gateway
        is restarted when the result counts as configured.
        """
        try:
            backup_path = config_manager.write_raw(req.content)
        except ValueError as e:
            return JSONResponse({"ok": False, "error": str(e)}, status_code=413)
        except OSError as e:
            return JSONResponse({"ok": False, "error": str(e)}, status_code=500)

        event_log.log("CONSOLE", f"config replaced (backup: {backup_path or 'none'})")

        if config_manager.is_configured():
            try:
                await gateway_manager.restart()
            except ClawgateError as e:
                return JSONResponse(
                    {"ok": False, "path": config_manager.artifact_path, "error": e.message},
                    status_code=500,
                )

        return {"ok": True, "path": config_manager.artifact_path, "backup": backup_path}

    @router.post("/setup/api/pairing/approve")
    async def approve_pairing(req: PairingRequest):
        if not req.channel or not req.code:
            return JSONResponse(
                {"ok": False, "error": "Missing channel or code"}, status_code=400
            )
        result = await run_command(
            config_manager, ["pairing", "approve", req.channel, req.code]
        )
        return JSONResponse(
            {"ok": result.ok, "output": result.output},
            status_code=200 if result.ok else 500,
        )

    @router.post("/setup/api/reset")
    async def reset_setup():
        """Delete the gateway configuration file only (credentials and workspace stay)."""
        try:
            config_manager.reset()
        except OSError as e:
            return PlainTextResponse(str(e), status_code=500)
        event_log.log("CONSOLE", "configuration reset")
        return PlainTextResponse("OK - deleted config file. You can rerun setup now.")

    @router.get("/setup/api/logs")
    async def get_logs(lines: int = Query(200, ge=1, le=2000)):
        """Most recent lines of the wrapper's own event log."""
        return event_log.tail(lines)

    # =========================================================================
    # BACKUP ROUTES - Requires authentication
    # =========================================================================

    @router.get("/setup/export")
    async def export_backup():
        """Stream a gzip tar of the state and workspace directories."""
        filename = backup_manager.export_filename()
        try:
            chunks = backup_manager.iter_export()
        except OSError as e:
            raise HTTPException(status_code=500, detail=str(e))
        return StreamingResponse(
            chunks,
            media_type="application/gzip",
            headers={"content-disposition": f'attachment; filename="{filename}"'},
        )

    @router.post("/setup/import")
    async def import_backup(request: Request):
        """Restore a backup archive into the storage root."""
        declared = request.headers.get("content-length")
        try:
            declared_size = int(declared) if declared else None
        except ValueError:
            declared_size = None

        try:
            result = await backup_manager.import_archive(request.stream(), declared_size)
        except ImportRootMismatch as e:
            return PlainTextResponse(e.message, status_code=400)
        except ImportTooLarge as e:
            event_log.log("BACKUP", f"import rejected: {e}")
            return PlainTextResponse(e.message, status_code=413)
        except GatewayHeld as e:
            return PlainTextResponse(f"Import refused: {e.message}", status_code=409)
        except ValueError as e:
            return PlainTextResponse(str(e), status_code=400)
        except OSError as e:
            return PlainTextResponse(f"Import failed: {e}", status_code=500)

        return PlainTextResponse(result.summary())

    return router


def _base_url(request: Request) -> str:
    """External base URL, honouring X-Forwarded-Proto/-Host from the edge."""
    proto = request.headers.get("x-forwarded-proto") or request.url.scheme or "https"
    host = request.headers.get("x-forwarded-host") or request.headers.get("host") or ""
    return f"{proto}://{host}"
