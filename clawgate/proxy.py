"""
Clawgate - Reverse Proxy
==========================
Forwards everything that is not a wrapper route to the gateway's internal
listener: plain HTTP requests and WebSocket upgrades.

Checks run strictly before any byte reaches the gateway:

    HTTP:      auth middleware -> configured? -> ensure_running() -> forward
    WebSocket: configured? -> session (Cookie header) -> ensure_running()
               -> open upstream -> accept client -> pump frames

Failures:
    - Not configured, HTTP:        302 to /setup (no gateway contact)
    - Start failure, HTTP:         503 "Gateway not ready: <reason>"
    - Gateway unreachable, HTTP:   502 plain text
    - Any failure, WebSocket:      closed before accept. The ASGI server
                                   answers the handshake with HTTP 403; no
                                   WebSocket frame is exchanged and nothing
                                   reaches the gateway.
"""

import asyncio

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException
from fastapi import Request, WebSocket
from fastapi.responses import PlainTextResponse, RedirectResponse
from starlette.background import BackgroundTask
from starlette.responses import Response, StreamingResponse
from starlette.websockets import WebSocketDisconnect

from clawgate.auth import AuthManager
from clawgate.config import ConfigManager
from clawgate.errors import ClawgateError, UpgradeUnauthorized
from clawgate.log import EventLog
from clawgate.manager import GatewayManager


# Headers that describe a single hop and must not be forwarded
HOP_BY_HOP = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
})

# Handshake headers the upstream WebSocket client generates itself
WS_HANDSHAKE = frozenset({
    "host",
    "origin",
    "user-agent",
    "content-length",
    "sec-websocket-key",
    "sec-websocket-version",
    "sec-websocket-extensions",
    "sec-websocket-accept",
    "sec-websocket-protocol",
})

SETUP_PREFIX = "/setup"


class ReverseProxy:
    """
    HTTP and WebSocket forwarding to the supervised gateway.

    Attributes:
        config:  ConfigManager (configuration artifact check).
        auth:    AuthManager (upgrade session check).
        gateway: GatewayManager (ensure_running, target address).
        client:  Shared httpx client for forwarded requests.
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        auth_manager: AuthManager,
        gateway_manager: GatewayManager,
        event_log: EventLog | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config_manager
        self.auth = auth_manager
        self.gateway = gateway_manager
        self.log = event_log
        # No timeout: proxied requests may be long-polls or streams
        self.client = httpx.AsyncClient(
            transport=transport,
            timeout=httpx.Timeout(None, connect=10.0),
            follow_redirects=False,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    # -- HTTP -----------------------------------------------------------------

    async def forward(self, request: Request) -> Response:
        """
        Forward one HTTP request to the gateway and relay its response.

        Args:
            request: The incoming request (already authenticated by the
                     auth middleware).

        Returns:
            A streaming response mirroring the gateway's status, headers and
            body, or a redirect / plain-text error.
        """
        path = request.url.path

        if not self.config.is_configured():
            if not path.startswith(SETUP_PREFIX):
                return RedirectResponse("/setup", status_code=302)
            return PlainTextResponse("Gateway not ready: not configured", status_code=503)

        try:
            await self.gateway.ensure_running()
        except ClawgateError as e:
            return PlainTextResponse(f"Gateway not ready: {e.message}", status_code=503)

        url = self.gateway.target + _raw_target(request)
        headers = _forward_headers(request.headers.raw, request)

        has_body = "content-length" in request.headers or "transfer-encoding" in request.headers
        upstream_request = self.client.build_request(
            request.method,
            url,
            headers=headers,
            content=request.stream() if has_body else None,
        )
        try:
            upstream = await self.client.send(upstream_request, stream=True)
        except httpx.HTTPError as e:
            self._log(f"{request.method} {path} failed: {e!r}")
            return PlainTextResponse(f"Bad gateway: {e}", status_code=502)

        response = StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        # Raw header list keeps duplicates such as multiple Set-Cookie
        response.raw_headers = [
            (k, v) for k, v in upstream.headers.raw
            if k.decode("latin-1").lower() not in HOP_BY_HOP
        ]
        return response

    # -- WebSocket ------------------------------------------------------------

    async def forward_upgrade(self, websocket: WebSocket) -> None:
        """
        Proxy a WebSocket upgrade to the gateway.

        The client is accepted only after the upstream connection is open,
        so every failure before that closes the connection without
        completing the handshake.

        Closing before accept is the only rejection ASGI offers: uvicorn
        turns it into an HTTP 403 response to the upgrade request.
        """
        path = websocket.url.path

        if not self.config.is_configured():
            self._log(f"upgrade {path} refused: not configured")
            await websocket.close()
            return

        try:
            self.authorize_upgrade(websocket)
        except UpgradeUnauthorized as e:
            self._log(str(e))
            await websocket.close()
            return

        try:
            await self.gateway.ensure_running()
        except ClawgateError as e:
            self._log(f"upgrade {path} refused: {e.message}")
            await websocket.close()
            return

        target = self.gateway.target.replace("http://", "ws://", 1) + _raw_target(websocket)

        headers = [
            (k, v) for k, v in _forward_headers(websocket.headers.raw, websocket)
            if k.lower() not in WS_HANDSHAKE
        ]
        subprotocols = [
            p.strip()
            for p in websocket.headers.get("sec-websocket-protocol", "").split(",")
            if p.strip()
        ]

        try:
            upstream = await websockets.connect(
                target,
                additional_headers=headers,
                subprotocols=subprotocols or None,
                origin=websocket.headers.get("origin"),
                user_agent_header=websocket.headers.get("user-agent"),
                max_size=None,
                open_timeout=10,
            )
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            self._log(f"upgrade {path} upstream failed: {e!r}")
            await websocket.close()
            return

        try:
            await websocket.accept(subprotocol=upstream.subprotocol)
            await _pump(websocket, upstream)
        finally:
            await upstream.close()

    def authorize_upgrade(self, websocket: WebSocket):
        """
        Evaluate the session of a raw upgrade request.

        Returns:
            The principal (None when auth is not configured).

        Raises:
            UpgradeUnauthorized: No valid, allowed session.
        """
        verdict = self.auth.evaluate_session(websocket.headers.get("cookie"))
        if not verdict.authenticated:
            raise UpgradeUnauthorized(websocket.url.path, verdict.reason)
        return verdict.principal

    def _log(self, text: str) -> None:
        if self.log:
            self.log.log("PROXY", text)


def _raw_target(conn) -> str:
    """Path and query exactly as the client sent them (still percent-encoded)."""
    raw_path = conn.scope.get("raw_path")
    target = raw_path.decode("latin-1") if raw_path else conn.url.path
    query = conn.scope.get("query_string", b"")
    if query:
        target += "?" + query.decode("latin-1")
    return target


def _forward_headers(raw_headers, conn) -> list[tuple[str, str]]:
    """
    Copy request headers for the upstream hop and add X-Forwarded-* fields.

    The Host header is kept as sent by the client.
    """
    headers = []
    for key, value in raw_headers:
        name = key.decode("latin-1")
        if name.lower() in HOP_BY_HOP:
            continue
        headers.append((name, value.decode("latin-1")))

    client_ip = conn.client.host if conn.client else ""
    prior = conn.headers.get("x-forwarded-for")
    forwarded_for = f"{prior}, {client_ip}" if prior and client_ip else (prior or client_ip)
    proto = conn.url.scheme
    if proto in ("ws", "wss"):
        proto = "https" if proto == "wss" else "http"
    port = conn.url.port or (443 if proto == "https" else 80)

    headers = [
        (k, v) for k, v in headers
        if k.lower() not in ("x-forwarded-for", "x-forwarded-proto", "x-forwarded-port", "x-forwarded-host")
    ]
    if forwarded_for:
        headers.append(("x-forwarded-for", forwarded_for))
    headers.append(("x-forwarded-proto", conn.headers.get("x-forwarded-proto") or proto))
    headers.append(("x-forwarded-port", conn.headers.get("x-forwarded-port") or str(port)))
    host = conn.headers.get("x-forwarded-host") or conn.headers.get("host")
    if host:
        headers.append(("x-forwarded-host", host))
    return headers


async def _pump(client: WebSocket, upstream) -> None:
    """Relay frames in both directions until either side closes."""

    async def client_to_upstream():
        while True:
            message = await client.receive()
            if message["type"] == "websocket.disconnect":
                await upstream.close(code=_close_code(message.get("code")))
                return
            if message.get("text") is not None:
                await upstream.send(message["text"])
            elif message.get("bytes") is not None:
                await upstream.send(message["bytes"])

    async def upstream_to_client():
        try:
            async for message in upstream:
                if isinstance(message, str):
                    await client.send_text(message)
                else:
                    await client.send_bytes(message)
        except ConnectionClosed:
            pass
        try:
            await client.close(code=_close_code(upstream.close_code))
        except RuntimeError:
            pass  # client already gone

    tasks = [
        asyncio.create_task(client_to_upstream()),
        asyncio.create_task(upstream_to_client()),
    ]
    done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)
    for task in done:
        exc = task.exception()
        if exc and not isinstance(exc, (WebSocketDisconnect, ConnectionClosed)):
            raise exc


def _close_code(code: int | None) -> int:
    """Map a received close code to one that may be sent (1005/1006/1015 are reserved)."""
    if code is None:
        return 1000
    if 1000 <= code <= 1003 or 1007 <= code <= 1014 or 3000 <= code <= 4999:
        return code
    return 1000
