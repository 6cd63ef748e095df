"""
Clawgate - FastAPI Application
================================
Creates the edge application that fronts the OpenClaw gateway.

Responsibilities:
    - Load settings and resolve the persisted secrets (session key, gateway
      token)
    - Initialize the managers (config, auth, gateway, proxy, backup, feed)
    - Install the auth gate in front of every HTTP route
    - Register the setup pages, the setup API and the console feed (/setup/ws)
    - Register the reverse proxy catch-all routes LAST, so that wrapper routes
      always win

Request flow:
    HTTP:      AuthMiddleware -> wrapper route | ReverseProxy.forward
    WebSocket: /setup/ws (console feed) | ReverseProxy.forward_upgrade
"""

import os
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import RedirectResponse
from fastapi.templating import Jinja2Templates

from clawgate.auth import AuthManager, AuthMiddleware
from clawgate.backup import BackupManager
from clawgate.config import ConfigManager
from clawgate.log import EventLog
from clawgate.manager import GatewayManager
from clawgate.proxy import ReverseProxy
from clawgate.routes import create_router
from clawgate.websocket import WebSocketManager


PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


def create_app(
    project_dir: str | None = None,
    config_manager: ConfigManager | None = None,
    gateway_manager: GatewayManager | None = None,
    http_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """
    Application factory: create and configure the FastAPI instance.

    This factory pattern allows flexible initialization for both
    production use and testing.

    Args:
        project_dir:     Root directory of the Clawgate project.
                         If None, auto-detected from this file's location.
        config_manager:  Pre-built ConfigManager (tests); loaded if needed.
        gateway_manager: Pre-built GatewayManager (tests).
        http_transport:  httpx transport for all outbound HTTP (tests).

    Returns:
        Configured FastAPI application ready to run with uvicorn.
    """
    # -- Resolve directories ---------------------------------------------------
    if project_dir is None:
        project_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

    data_dir = os.path.join(project_dir, "data")
    log_dir = os.path.join(data_dir, "logs")
    templates_dir = os.path.join(os.path.dirname(os.path.abspath(__file__)), "templates")
    os.makedirs(data_dir, exist_ok=True)

    # -- Settings and secrets --------------------------------------------------
    if config_manager is None:
        config_manager = ConfigManager(project_dir)
    if not config_manager.settings:
        config_manager.load()
    settings = config_manager.settings

    session_secret, session_source = config_manager.resolve_secret(
        "auth", "session_secret", "session.secret"
    )
    gateway_token, token_source = config_manager.resolve_secret(
        "gateway", "token", "gateway.token"
    )
    settings["gateway"]["token"] = gateway_token

    # -- Initialize managers ---------------------------------------------------
    ws_manager = WebSocketManager()
    event_log = EventLog(log_dir, ws_manager)
    auth_manager = AuthManager(settings["auth"], session_secret, transport=http_transport)
    if gateway_manager is None:
        gateway_manager = GatewayManager(config_manager, event_log, transport=http_transport)
    proxy = ReverseProxy(
        config_manager, auth_manager, gateway_manager, event_log, transport=http_transport
    )
    backup_manager = BackupManager(config_manager, gateway_manager, event_log)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        event_log.log(
            "WRAPPER",
            f"listening on :{settings['web']['port']}, gateway target {gateway_manager.target}",
        )
        event_log.log("WRAPPER", f"state dir {settings['paths']['state_dir']}")
        event_log.log("WRAPPER", f"gateway token source: {token_source}")
        if not auth_manager.is_configured():
            event_log.log("AUTH", "no auth provider configured, all requests are allowed")
        elif auth_manager.allowed_users:
            event_log.log("AUTH", "allowed users: " + ", ".join(auth_manager.allowed_users))
        if settings.get("_config_error"):
            event_log.log("WRAPPER", f"config.yaml ignored: {settings['_config_error']}")
        yield
        event_log.log("WRAPPER", "shutting down")
        gateway_manager.shutdown()
        await proxy.aclose()

    # -- Create FastAPI app ----------------------------------------------------
    # No docs routes: every unclaimed path belongs to the gateway
    app = FastAPI(
        title="Clawgate",
        description="Authenticated edge service for the OpenClaw gateway",
        version="1.0.0",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )

    # -- Auth gate -------------------------------------------------------------
    app.add_middleware(AuthMiddleware, auth_manager=auth_manager)

    # -- Jinja2 template engine ------------------------------------------------
    templates = Jinja2Templates(directory=templates_dir)

    # -- Store managers on app state -------------------------------------------
    app.state.config_manager = config_manager
    app.state.auth_manager = auth_manager
    app.state.gateway_manager = gateway_manager
    app.state.backup_manager = backup_manager
    app.state.proxy = proxy
    app.state.ws_manager = ws_manager
    app.state.event_log = event_log
    app.state.templates = templates
    app.state.session_secret_source = session_source
    app.state.gateway_token_source = token_source

    # -- Page routes (Jinja2 template rendering) -------------------------------

    @app.get("/auth/login")
    async def login_page(request: Request, error: str = ""):
        """Login page: provider buttons and the last error, if any."""
        verdict = auth_manager.evaluate_session(request.headers.get("cookie"))
        if verdict.principal is not None:
            return RedirectResponse("/setup", status_code=302)
        return templates.TemplateResponse(
            request,
            "login.html",
            {
                "error": error,
                "github_configured": auth_manager.is_github_configured(),
                "password_configured": auth_manager.is_password_configured(),
            },
        )

    @app.get("/setup")
    async def setup_page(request: Request):
        """Setup landing page: status, onboarding form, backup links."""
        return templates.TemplateResponse(
            request,
            "setup.html",
            {
                "configured": config_manager.is_configured(),
                "gateway": gateway_manager.status,
                "principal": getattr(request.state, "principal", None),
                "auth_configured": auth_manager.is_configured(),
                "storage_root": settings["paths"]["storage_root"],
                "import_supported": backup_manager.under_storage_root(),
            },
        )

    # -- Register wrapper routes -----------------------------------------------
    app.include_router(
        create_router(
            config_manager=config_manager,
            auth_manager=auth_manager,
            gateway_manager=gateway_manager,
            backup_manager=backup_manager,
            event_log=event_log,
        )
    )

    # -- Console feed ----------------------------------------------------------
    @app.websocket("/setup/ws")
    async def console_feed(websocket: WebSocket):
        """
        Live feed of wrapper log lines and gateway state changes.
        Requires the same session as the setup pages.
        """
        verdict = auth_manager.evaluate_session(websocket.headers.get("cookie"))
        if not verdict.authenticated:
            await websocket.close()
            return

        await ws_manager.connect(websocket)
        status = gateway_manager.status
        await ws_manager.send_status(status.pop("state"), status)
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            ws_manager.disconnect(websocket)

    # -- Reverse proxy (must stay last) ----------------------------------------
    @app.api_route("/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
    async def proxy_http(request: Request, path: str):
        return await proxy.forward(request)

    @app.websocket("/{path:path}")
    async def proxy_websocket(websocket: WebSocket, path: str):
        await proxy.forward_upgrade(websocket)

    return app
