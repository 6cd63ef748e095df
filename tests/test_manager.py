"""
Tests for the gateway supervisor, run against tests/fake_gateway.py as the
gateway process.
"""

import asyncio
import os
import signal

import pytest

from clawgate.errors import (
    ConfigurationMissing,
    GatewayHeld,
    ProcessReadinessTimeout,
    ProcessSpawnError,
)
from clawgate.manager import GatewayManager, gateway_env

from conftest import mark_configured


@pytest.fixture
def spawn_counter(monkeypatch):
    """Count calls to asyncio.create_subprocess_exec."""
    calls = []
    real = asyncio.create_subprocess_exec

    async def counting(*args, **kwargs):
        calls.append(args)
        return await real(*args, **kwargs)

    monkeypatch.setattr(asyncio, "create_subprocess_exec", counting)
    return calls


async def wait_for_state(manager, state, timeout=5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while manager.state != state:
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"state is {manager.state!r}, expected {state!r}")
        await asyncio.sleep(0.02)


async def kill_leftover(manager):
    if manager._proc is not None and manager._proc.returncode is None:
        manager._proc.kill()
        await manager._proc.wait()


def test_gateway_env(make_config):
    config = make_config(gateway={"token": "tok"})
    env = gateway_env(config.settings)
    assert env["OPENCLAW_STATE_DIR"] == config.settings["paths"]["state_dir"]
    assert env["OPENCLAW_WORKSPACE_DIR"] == config.settings["paths"]["workspace_dir"]
    assert env["CLAWDBOT_STATE_DIR"] == env["OPENCLAW_STATE_DIR"]
    assert env["OPENCLAW_GATEWAY_TOKEN"] == "tok"
    assert env["CLAWDBOT_GATEWAY_TOKEN"] == "tok"


@pytest.mark.asyncio
async def test_not_configured_spawns_nothing(make_config, spawn_counter):
    manager = GatewayManager(make_config())
    with pytest.raises(ConfigurationMissing):
        await manager.ensure_running()
    assert spawn_counter == []
    assert manager.state == "stopped"
    assert manager.status["starting"] is False


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_spawn(make_config, spawn_counter):
    config = make_config()
    mark_configured(config)
    manager = GatewayManager(config)

    try:
        await asyncio.gather(*(manager.ensure_running() for _ in range(8)))
        assert len(spawn_counter) == 1
        assert manager.state == "running"
        assert manager.is_running

        # Already running: returns without touching the process
        await manager.ensure_running()
        assert len(spawn_counter) == 1

        args = spawn_counter[0]
        assert list(args[2:]) == [
            "gateway", "run", "--bind", "loopback",
            "--port", str(config.settings["gateway"]["port"]), "--auth", "none",
        ]
    finally:
        await manager.stop()

    assert manager.state == "stopped"
    assert manager.status["pid"] is None


@pytest.mark.asyncio
async def test_cancelled_caller_does_not_cancel_the_start(make_config, spawn_counter):
    config = make_config()
    mark_configured(config)
    manager = GatewayManager(config)

    try:
        first = asyncio.create_task(manager.ensure_running())
        await asyncio.sleep(0)
        second = asyncio.create_task(manager.ensure_running())
        await asyncio.sleep(0.01)
        first.cancel()

        await second
        assert manager.state == "running"
        assert len(spawn_counter) == 1
    finally:
        await manager.stop()


@pytest.mark.asyncio
async def test_spawn_error(make_config):
    config = make_config(gateway={"node": "/nonexistent/node-binary"})
    mark_configured(config)
    manager = GatewayManager(config)

    with pytest.raises(ProcessSpawnError):
        await manager.ensure_running()
    assert manager.state == "crashed"
    assert manager.status["pid"] is None
    assert manager.status["starting"] is False


@pytest.mark.asyncio
async def test_exit_during_startup(make_config, monkeypatch):
    monkeypatch.setenv("FAKE_GATEWAY_MODE", "exit")
    config = make_config()
    mark_configured(config)
    manager = GatewayManager(config)

    with pytest.raises(ProcessSpawnError) as info:
        await manager.ensure_running()
    assert info.value.exit_code == 3

    await wait_for_state(manager, "crashed")
    assert manager.last_exit_code == 3
    assert manager.status["pid"] is None


@pytest.mark.asyncio
async def test_readiness_timeout_keeps_process(make_config, monkeypatch, spawn_counter):
    monkeypatch.setenv("FAKE_GATEWAY_MODE", "silent")
    config = make_config(gateway={"ready_timeout": 0.5})
    mark_configured(config)
    manager = GatewayManager(config)

    try:
        with pytest.raises(ProcessReadinessTimeout):
            await manager.ensure_running()
        assert manager.state == "crashed"
        proc = manager._proc
        assert proc is not None and proc.returncode is None

        # The retry probes the same process instead of spawning another one
        with pytest.raises(ProcessReadinessTimeout):
            await manager.ensure_running()
        assert len(spawn_counter) == 1
        assert manager._proc is proc
    finally:
        await kill_leftover(manager)


@pytest.mark.asyncio
async def test_unexpected_exit_then_restart(make_config, spawn_counter):
    config = make_config()
    mark_configured(config)
    manager = GatewayManager(config)

    try:
        await manager.ensure_running()
        first_pid = manager.status["pid"]

        os.kill(first_pid, signal.SIGKILL)
        await wait_for_state(manager, "crashed")
        assert manager.status["pid"] is None
        assert manager.last_exit_code == -signal.SIGKILL

        await manager.ensure_running()
        assert manager.state == "running"
        assert manager.status["pid"] != first_pid
        assert len(spawn_counter) == 2
    finally:
        await manager.stop()


@pytest.mark.asyncio
async def test_restart_replaces_process(make_config):
    config = make_config()
    mark_configured(config)
    manager = GatewayManager(config)

    try:
        await manager.ensure_running()
        first_pid = manager.status["pid"]

        await manager.restart()
        assert manager.state == "running"
        assert manager.status["pid"] != first_pid
    finally:
        await manager.stop()


@pytest.mark.asyncio
async def test_stop_without_process_is_noop(make_config):
    manager = GatewayManager(make_config())
    await manager.stop()
    assert manager.state == "stopped"


@pytest.mark.asyncio
async def test_stop_kills_process_ignoring_sigterm(make_config, monkeypatch):
    monkeypatch.setenv("FAKE_GATEWAY_MODE", "stubborn")
    config = make_config()
    mark_configured(config)
    manager = GatewayManager(config)

    try:
        await manager.ensure_running()
        proc = manager._proc

        await manager.stop()

        assert proc.returncode == -signal.SIGKILL
        assert manager.state == "stopped"
        assert manager.status["pid"] is None
    finally:
        await kill_leftover(manager)


@pytest.mark.asyncio
async def test_hold_keeps_gateway_stopped(make_config, spawn_counter):
    config = make_config()
    mark_configured(config)
    manager = GatewayManager(config)

    try:
        await manager.ensure_running()
        assert len(spawn_counter) == 1

        async with manager.hold("restore in progress"):
            assert manager.state == "stopped"
            assert manager.status["held"] is True
            with pytest.raises(GatewayHeld) as info:
                await manager.ensure_running()
            assert info.value.message == "restore in progress"
            with pytest.raises(GatewayHeld):
                async with manager.hold():
                    pass
            assert len(spawn_counter) == 1

        assert manager.status["held"] is False
        await manager.ensure_running()
        assert manager.state == "running"
        assert len(spawn_counter) == 2
    finally:
        await manager.stop()


@pytest.mark.asyncio
async def test_hold_waits_for_start_in_flight(make_config):
    config = make_config()
    mark_configured(config)
    manager = GatewayManager(config)

    try:
        start = asyncio.create_task(manager.ensure_running())
        await asyncio.sleep(0)
        assert manager.status["starting"] is True

        async with manager.hold():
            assert manager.status["starting"] is False
            assert manager.status["pid"] is None
            assert manager.state == "stopped"

        await start
    finally:
        await kill_leftover(manager)
