"""Pytest configuration and shared fixtures."""

import os
import socket
import sys
from contextlib import asynccontextmanager

import httpx
import pytest
from fastapi.testclient import TestClient

from clawgate.config import ENV_OVERRIDES, ConfigManager
from clawgate.errors import GatewayHeld
from clawgate.main import create_app


FAKE_GATEWAY = os.path.join(os.path.dirname(os.path.abspath(__file__)), "fake_gateway.py")

# Variables that would leak deployment settings into the tests
_ENV_NAMES = {name for _, _, names, _ in ENV_OVERRIDES for name in names} | {
    "FAKE_GATEWAY_MODE",
    "FAKE_ONBOARD_FAIL",
    "HTTP_PROXY",
    "HTTPS_PROXY",
    "ALL_PROXY",
    "http_proxy",
    "https_proxy",
    "all_proxy",
}


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


# ============================================================================
# Configuration
# ============================================================================

@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def storage_root(tmp_path):
    root = tmp_path / "data"
    root.mkdir()
    return root


@pytest.fixture
def make_config(tmp_path, storage_root):
    """
    Factory for loaded ConfigManagers rooted in tmp_path.

    State lives in <storage_root>/.openclaw and the gateway is the fake CLI
    in tests/fake_gateway.py.
    """
    project_dir = tmp_path / "project"
    project_dir.mkdir(exist_ok=True)

    def _make(auth=None, gateway=None, paths=None, backup=None) -> ConfigManager:
        overrides = {
            "paths": {
                "state_dir": str(storage_root / ".openclaw"),
                "storage_root": str(storage_root),
                **(paths or {}),
            },
            "gateway": {
                "node": sys.executable,
                "entry": FAKE_GATEWAY,
                "port": free_port(),
                "ready_timeout": 10.0,
                "probe_interval": 0.05,
                "probe_paths": ["/"],
                "stop_grace": 0.2,
                **(gateway or {}),
            },
            "auth": {
                "github_client_id": "",
                "github_client_secret": "",
                "setup_password": "",
                "allowed_users": [],
                **(auth or {}),
            },
        }
        if backup:
            overrides["backup"] = backup
        config = ConfigManager(str(project_dir), overrides=overrides)
        config.load()
        return config

    return _make


def mark_configured(config: ConfigManager, content: str = "{}") -> None:
    """Create the gateway configuration artifact."""
    os.makedirs(os.path.dirname(config.artifact_path), exist_ok=True)
    with open(config.artifact_path, "w", encoding="utf-8") as f:
        f.write(content)


# ============================================================================
# Gateway and upstream doubles
# ============================================================================

class StubGateway:
    """GatewayManager double: records lifecycle calls, never spawns."""

    def __init__(self, error=None, target="http://127.0.0.1:18789"):
        self.error = error
        self.target = target
        self.state = "stopped"
        self.ensure_calls = 0
        self.stop_calls = 0
        self.restart_calls = 0
        self.shutdown_calls = 0
        self.held = None

    @property
    def is_running(self):
        return self.state == "running"

    @property
    def status(self):
        return {"state": self.state, "pid": None, "last_error": "", "target": self.target}

    async def ensure_running(self):
        self.ensure_calls += 1
        if self.held is not None:
            raise GatewayHeld(self.held)
        if self.error is not None:
            raise self.error
        self.state = "running"

    async def stop(self):
        self.stop_calls += 1
        self.state = "stopped"

    @asynccontextmanager
    async def hold(self, reason="restore in progress"):
        if self.held is not None:
            raise GatewayHeld(self.held)
        self.held = reason
        try:
            await self.stop()
            yield
        finally:
            self.held = None

    async def restart(self):
        self.restart_calls += 1
        await self.ensure_running()

    def shutdown(self):
        self.shutdown_calls += 1


def streamed_response(status_code=200, body=b"", headers=None) -> httpx.Response:
    """
    Upstream response with an unread body stream, like a real transport
    returns. Responses built with content= are read eagerly by httpx and
    cannot be relayed with aiter_raw().
    """
    return httpx.Response(status_code, headers=headers, stream=httpx.ByteStream(body))


class Upstream:
    """httpx MockTransport handler that records every request it receives."""

    def __init__(self, responder=None):
        self.requests: list[httpx.Request] = []
        self.responder = responder

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.responder is not None:
            return self.responder(request)
        return streamed_response(200, b"upstream", [("content-type", "text/plain")])


@pytest.fixture
def make_client():
    """
    Factory for TestClients around create_app().

    Returns (client, upstream). Clients are entered (lifespan runs) and
    closed after the test.
    """
    clients = []

    def _make(config, gateway=None, responder=None):
        upstream = Upstream(responder)
        app = create_app(
            project_dir=config.project_dir,
            config_manager=config,
            gateway_manager=gateway if gateway is not None else StubGateway(),
            http_transport=httpx.MockTransport(upstream),
        )
        client = TestClient(app, follow_redirects=False)
        client.__enter__()
        clients.append(client)
        return client, upstream

    yield _make

    for client in clients:
        client.__exit__(None, None, None)
