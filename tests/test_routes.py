"""Tests for the wrapper's own HTTP endpoints."""

import io
import os
import tarfile

import pytest
from starlette.websockets import WebSocketDisconnect

from clawgate.config import MAX_RAW_CONFIG_CHARS

from conftest import StubGateway, mark_configured


@pytest.fixture
def logged_in(make_config, make_client):
    """Client with password auth configured and an admin session."""
    config = make_config(auth={"setup_password": "pw"})
    gateway = StubGateway()
    client, upstream = make_client(config, gateway)
    resp = client.post("/auth/login", data={"password": "pw"})
    assert resp.status_code == 303
    return client, config, gateway


class TestAuthRoutes:
    def test_healthz_is_public(self, make_config, make_client):
        client, _ = make_client(make_config(auth={"setup_password": "pw"}))
        resp = client.get("/setup/healthz")
        assert resp.status_code == 200
        assert resp.json() == {"ok": True}

    def test_login_page_renders(self, make_config, make_client):
        client, _ = make_client(make_config(auth={"setup_password": "pw"}))
        resp = client.get("/auth/login?error=Nope")
        assert resp.status_code == 200
        assert "Nope" in resp.text
        assert 'name="password"' in resp.text

    def test_wrong_password(self, make_config, make_client):
        client, _ = make_client(make_config(auth={"setup_password": "pw"}))
        resp = client.post("/auth/login", data={"password": "nope"})
        assert resp.status_code == 303
        assert resp.headers["location"].startswith("/auth/login?error=")
        assert client.get("/auth/me").status_code == 401

    def test_me_and_logout(self, logged_in):
        client, _, _ = logged_in
        me = client.get("/auth/me")
        assert me.status_code == 200
        assert me.json()["user"]["login"] == "admin"

        resp = client.get("/auth/logout")
        assert resp.status_code == 302
        assert client.get("/auth/me").status_code == 401

    def test_setup_api_requires_session(self, make_config, make_client):
        client, _ = make_client(make_config(auth={"setup_password": "pw"}))
        resp = client.get("/setup/api/status")
        assert resp.status_code == 401
        assert resp.json() == {"error": "Not authenticated"}

    def test_github_not_configured(self, make_config, make_client):
        client, _ = make_client(make_config(auth={"setup_password": "pw"}))
        resp = client.get("/auth/github")
        assert resp.status_code == 303
        assert "GitHub%20OAuth%20not%20configured" in resp.headers["location"]

    def test_github_redirect_sets_state_cookie(self, make_config, make_client):
        config = make_config(auth={"github_client_id": "cid", "github_client_secret": "s"})
        client, _ = make_client(config)
        resp = client.get("/auth/github")
        assert resp.status_code == 302
        assert resp.headers["location"].startswith("https://github.com/login/oauth/authorize?")
        assert "clawgate.oauth=" in resp.headers["set-cookie"]

    def test_github_callback_with_bad_state(self, make_config, make_client):
        config = make_config(auth={"github_client_id": "cid", "github_client_secret": "s"})
        client, upstream = make_client(config)
        resp = client.get("/auth/github/callback?code=abc&state=forged")
        assert resp.status_code == 303
        assert "Invalid%20OAuth%20state" in resp.headers["location"]
        assert upstream.requests == []


class TestSetupApi:
    def test_setup_page(self, logged_in):
        client, _, _ = logged_in
        resp = client.get("/setup")
        assert resp.status_code == 200
        assert "Onboarding" in resp.text
        assert "Administrator (admin)" in resp.text

    def test_status(self, logged_in):
        client, _, _ = logged_in
        data = client.get("/setup/api/status").json()
        assert data["configured"] is False
        assert data["gateway_version"] == "openclaw 2026.1.0-fake"
        assert data["gateway"]["state"] == "stopped"

    def test_debug(self, logged_in):
        client, config, _ = logged_in
        data = client.get("/setup/api/debug").json()
        assert data["wrapper"]["config_path"] == config.artifact_path
        assert data["wrapper"]["gateway_token_source"] == "generated"
        assert data["gateway"]["channels_add_help_includes_telegram"] is True

    def test_console_rejects_unknown_command(self, logged_in):
        client, _, _ = logged_in
        resp = client.post("/setup/api/console/run", json={"cmd": "shell.exec", "arg": "id"})
        assert resp.status_code == 400
        assert resp.json() == {"ok": False, "error": "Command not allowed"}

    def test_console_runs_allowed_command(self, logged_in):
        client, _, _ = logged_in
        resp = client.post("/setup/api/console/run", json={"cmd": "openclaw.version"})
        assert resp.status_code == 200
        assert resp.json() == {"ok": True, "output": "openclaw 2026.1.0-fake\n"}

    def test_onboarding(self, logged_in):
        client, config, gateway = logged_in
        resp = client.post("/setup/api/run", json={"authChoice": "apiKey", "authSecret": "k"})
        assert resp.status_code == 200
        assert resp.json()["ok"] is True
        assert config.is_configured()
        assert gateway.restart_calls == 1

    def test_raw_config_round_trip(self, logged_in):
        client, config, gateway = logged_in
        assert client.get("/setup/api/config/raw").json()["exists"] is False

        first = client.post("/setup/api/config/raw", json={"content": '{"v": 1}'})
        assert first.status_code == 200
        assert first.json()["backup"] is None
        assert gateway.restart_calls == 1

        second = client.post("/setup/api/config/raw", json={"content": '{"v": 2}'})
        backup = second.json()["backup"]
        assert backup.startswith(config.artifact_path + ".bak-")
        with open(backup, encoding="utf-8") as f:
            assert f.read() == '{"v": 1}'

        raw = client.get("/setup/api/config/raw").json()
        assert raw == {"ok": True, "path": config.artifact_path, "exists": True, "content": '{"v": 2}'}

    def test_raw_config_too_large(self, logged_in):
        client, config, gateway = logged_in
        resp = client.post(
            "/setup/api/config/raw", json={"content": "x" * (MAX_RAW_CONFIG_CHARS + 1)}
        )
        assert resp.status_code == 413
        assert resp.json() == {"ok": False, "error": "Config too large"}
        assert not config.is_configured()
        assert gateway.restart_calls == 0

    def test_pairing_requires_channel_and_code(self, logged_in):
        client, _, _ = logged_in
        resp = client.post("/setup/api/pairing/approve", json={"channel": "telegram"})
        assert resp.status_code == 400

    def test_pairing_approve(self, logged_in):
        client, _, _ = logged_in
        resp = client.post(
            "/setup/api/pairing/approve", json={"channel": "telegram", "code": "ABC123"}
        )
        assert resp.json() == {"ok": True, "output": "pairing approve telegram ABC123\n"}

    def test_reset(self, logged_in):
        client, config, _ = logged_in
        mark_configured(config)
        resp = client.post("/setup/api/reset")
        assert resp.status_code == 200
        assert resp.text.startswith("OK - deleted config file")
        assert not config.is_configured()

    def test_logs(self, logged_in):
        client, _, _ = logged_in
        data = client.get("/setup/api/logs?lines=5").json()
        assert 0 < len(data["lines"]) <= 5
        assert any("[AUTH] password login ok" in line for line in data["lines"])


class TestBackupRoutes:
    def test_export(self, logged_in):
        client, config, _ = logged_in
        mark_configured(config)

        resp = client.get("/setup/export")

        assert resp.status_code == 200
        assert resp.headers["content-type"] == "application/gzip"
        disposition = resp.headers["content-disposition"]
        assert disposition.startswith('attachment; filename="openclaw-backup-')
        with tarfile.open(fileobj=io.BytesIO(resp.content), mode="r:gz") as tar:
            assert ".openclaw/openclaw.json" in tar.getnames()

    def test_import_too_large(self, make_config, make_client):
        config = make_config(backup={"max_import_bytes": 10})
        gateway = StubGateway()
        client, _ = make_client(config, gateway)

        resp = client.post("/setup/import", content=b"x" * 100)

        assert resp.status_code == 413
        assert resp.text == "payload too large"
        assert gateway.stop_calls == 0

    def test_import_while_restore_in_progress(self, make_config, make_client):
        gateway = StubGateway()
        gateway.held = "restore in progress"
        client, _ = make_client(make_config(), gateway)

        resp = client.post("/setup/import", content=b"x" * 100)

        assert resp.status_code == 409
        assert resp.text == "Import refused: restore in progress"
        assert gateway.stop_calls == 0

    def test_import_root_mismatch(self, make_config, make_client, tmp_path):
        config = make_config(paths={"state_dir": str(tmp_path / "elsewhere")})
        client, _ = make_client(config)

        resp = client.post("/setup/import", content=b"x" * 100)

        assert resp.status_code == 400
        assert "are under" in resp.text

    def test_import_empty_body(self, make_config, make_client):
        client, _ = make_client(make_config())
        resp = client.post("/setup/import", content=b"")
        assert resp.status_code == 400

    def test_import_restores_and_resumes(self, logged_in, storage_root):
        client, config, gateway = logged_in
        mark_configured(config, '{"v": "exported"}')
        archive = client.get("/setup/export").content
        config.write_raw('{"v": "changed"}')

        resp = client.post("/setup/import", content=archive)

        assert resp.status_code == 200
        assert resp.text.startswith(f"OK - imported backup into {storage_root}")
        assert config.read_raw()["content"] == '{"v": "exported"}'
        assert gateway.stop_calls == 1
        assert os.path.exists(config.artifact_path)


class TestConsoleFeed:
    def test_requires_session(self, make_config, make_client):
        client, _ = make_client(make_config(auth={"setup_password": "pw"}))
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/setup/ws") as ws:
                ws.receive_json()

    def test_sends_gateway_status_on_connect(self, logged_in):
        client, _, _ = logged_in
        with client.websocket_connect("/setup/ws") as ws:
            message = ws.receive_json()
        assert message["type"] == "status"
        assert message["data"]["status"] == "stopped"
