"""
Clawgate - Gateway Process Manager
====================================
Owns the lifecycle of the single OpenClaw gateway process that the wrapper
supervises and proxies to.

The gateway runs as a separate OS process bound to loopback on an internal
port, with its own authentication disabled: the wrapper's auth gate is the
only authentication boundary, since WebSocket traffic cannot be
re-authenticated at the application layer once it is proxied.

States:
    - "stopped"  : No process (never started, or stopped on request)
    - "starting" : Process spawned, waiting for a readiness probe to answer
    - "running"  : Process answered a readiness probe
    - "crashed"  : Spawn failed, process exited unexpectedly, or readiness
                   timed out (in which case the process is left alive)

Start coordination:
    ensure_running() is single-flight. The first caller creates one start
    task; concurrent callers await the same task, so no two spawns are ever
    in flight. The task is dropped once it settles and the next caller may
    retry.

Restore hold:
    hold() keeps the gateway stopped for the duration of a block (a backup
    restore writing under the storage root). While held, ensure_running()
    raises GatewayHeld instead of spawning.

Usage:
    manager = GatewayManager(config_manager, event_log)
    await manager.ensure_running()   # Start if needed, wait until ready
    await manager.restart()          # Stop (if running), then ensure_running
    await manager.stop()             # SIGTERM, grace period, SIGKILL if alive
    manager.status                   # Snapshot dict for the API
"""

import asyncio
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import httpx

from clawgate.config import ConfigManager
from clawgate.errors import (
    ConfigurationMissing,
    GatewayHeld,
    ProcessReadinessTimeout,
    ProcessSpawnError,
)
from clawgate.log import EventLog


def gateway_env(settings: dict) -> dict[str, str]:
    """
    Build the environment for any gateway process (service or CLI call).

    The gateway learns its state and workspace directories from
    OPENCLAW_STATE_DIR / OPENCLAW_WORKSPACE_DIR. The CLAWDBOT_* aliases are
    set for older builds unless the deployment already provides them.
    """
    paths = settings["paths"]
    env = dict(os.environ)
    env["OPENCLAW_STATE_DIR"] = paths["state_dir"]
    env["OPENCLAW_WORKSPACE_DIR"] = paths["workspace_dir"]
    env["CLAWDBOT_STATE_DIR"] = os.environ.get("CLAWDBOT_STATE_DIR") or paths["state_dir"]
    env["CLAWDBOT_WORKSPACE_DIR"] = (
        os.environ.get("CLAWDBOT_WORKSPACE_DIR") or paths["workspace_dir"]
    )
    token = settings["gateway"].get("token")
    if token:
        env["OPENCLAW_GATEWAY_TOKEN"] = token
        env["CLAWDBOT_GATEWAY_TOKEN"] = os.environ.get("CLAWDBOT_GATEWAY_TOKEN") or token
    return env


class GatewayManager:
    """
    Supervisor for the one gateway process.

    Only this class mutates the process handle and the state; other
    components read the `status` snapshot or `target`.

    Attributes:
        config:         ConfigManager (settings + configuration artifact check).
        log:            EventLog for state transitions (may be None).
        state:          Current state string (see module docstring).
        started_at:     ISO timestamp of the last successful start.
        last_exit_code: Exit code of the last process that exited.
        last_error:     Reason of the last failed start.
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        event_log: EventLog | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the gateway manager.

        Args:
            config_manager: Loaded ConfigManager.
            event_log:      Shared event log.
            transport:      httpx transport for readiness probes (tests).
        """
        self.config = config_manager
        self.log = event_log
        self._transport = transport

        self.state: str = "stopped"
        self.started_at: str | None = None
        self.last_exit_code: int | None = None
        self.last_error: str = ""

        # Process handle and start coordination
        self._proc: asyncio.subprocess.Process | None = None
        self._starting: asyncio.Task | None = None
        self._stopping: asyncio.subprocess.Process | None = None
        self._watchers: set[asyncio.Task] = set()
        self._held: str | None = None

    @property
    def settings(self) -> dict:
        return self.config.settings["gateway"]

    @property
    def target(self) -> str:
        """Base URL of the gateway's internal HTTP listener."""
        return f"http://{self.settings['host']}:{self.settings['port']}"

    @property
    def is_running(self) -> bool:
        return self.state == "running" and self._proc is not None

    @property
    def status(self) -> dict[str, Any]:
        """
        Get a status snapshot.

        Returns:
            A new dict; mutating it does not affect the manager.
        """
        return {
            "state": self.state,
            "pid": self._proc.pid if self._proc is not None else None,
            "is_running": self.is_running,
            "starting": self._starting is not None,
            "held": self._held is not None,
            "started_at": self.started_at,
            "last_exit_code": self.last_exit_code,
            "last_error": self.last_error,
            "target": self.target,
        }

    # -- Public lifecycle -----------------------------------------------------

    async def ensure_running(self) -> None:
        """
        Make sure the gateway is running and ready.

        Returns immediately when already running. Otherwise starts the
        gateway, or joins the start already in flight.

        Raises:
            ConfigurationMissing:    No configuration artifact.
            ProcessSpawnError:       Spawn failed or process exited while starting.
            ProcessReadinessTimeout: No readiness probe answered in time.
            GatewayHeld:             A restore holds the gateway stopped.
        """
        if self._held is not None:
            raise GatewayHeld(self._held)

        if self.is_running:
            return

        if self._starting is None:
            task = asyncio.get_running_loop().create_task(self._start())
            task.add_done_callback(self._start_settled)
            self._starting = task

        # Shield: a cancelled caller must not cancel the start for the others
        await asyncio.shield(self._starting)

    async def stop(self) -> None:
        """
        Stop the gateway: SIGTERM, wait the grace period, clear the handle.

        The grace period gives the process time to exit and release its
        port. A process still alive afterwards is killed and reaped, so the
        next start never finds the port taken. Does not start the gateway
        again.
        """
        proc = self._proc
        if proc is None:
            return

        self._stopping = proc
        try:
            proc.terminate()
        except ProcessLookupError:
            pass
        self._log(f"sent SIGTERM to pid={proc.pid}")

        await asyncio.sleep(float(self.settings["stop_grace"]))

        if proc.returncode is None:
            try:
                proc.kill()
                self._log(f"pid={proc.pid} still alive after SIGTERM, sent SIGKILL")
            except ProcessLookupError:
                pass
            await proc.wait()

        if self._proc is proc:
            self._proc = None
            self._set_state("stopped", {"pid": proc.pid})
        self._stopping = None

    @asynccontextmanager
    async def hold(self, reason: str = "restore in progress"):
        """
        Keep the gateway stopped for the duration of the block.

        Waits for a start already in flight, then stops the gateway. Until
        the block exits, ensure_running() raises GatewayHeld. Nothing is
        restarted on exit; the caller decides.

        Raises:
            GatewayHeld: Another hold is already in place.
        """
        if self._held is not None:
            raise GatewayHeld(self._held)

        self._held = reason
        self._log(f"held: {reason}")
        try:
            starting = self._starting
            if starting is not None:
                await asyncio.gather(starting, return_exceptions=True)
            await self.stop()
            yield
        finally:
            self._held = None
            self._log("hold released")

    async def restart(self) -> None:
        """Stop the gateway if it has a handle, then ensure it is running."""
        if self._proc is not None:
            await self.stop()
        await self.ensure_running()

    def shutdown(self) -> None:
        """Best-effort termination on wrapper shutdown (no waiting)."""
        proc = self._proc
        if proc is None:
            return
        self._stopping = proc
        try:
            proc.terminate()
        except ProcessLookupError:
            pass

    # -- Start task -----------------------------------------------------------

    async def _start(self) -> None:
        """Start task body: configuration check, spawn, readiness wait."""
        if not self.config.is_configured():
            raise ConfigurationMissing(self.config.artifact_path)

        proc = self._proc
        if proc is None or proc.returncode is not None:
            proc = await self._spawn()
        else:
            # A previous start timed out but the process never exited
            self._log(f"re-probing existing pid={proc.pid}")

        self._set_state("starting", {"pid": proc.pid})
        timeout = float(self.settings["ready_timeout"])

        try:
            await asyncio.wait_for(self._wait_ready(proc), timeout=timeout)
        except asyncio.TimeoutError:
            self.last_error = f"not ready after {timeout:g}s"
            if self._proc is proc:
                self._set_state("crashed", {"pid": proc.pid, "reason": "readiness timeout"})
            raise ProcessReadinessTimeout(timeout) from None
        except ProcessSpawnError as e:
            self.last_error = str(e)
            raise

        if self._proc is not proc:
            self.last_error = "gateway stopped while starting"
            raise ProcessSpawnError(self.last_error)

        self.last_error = ""
        self.started_at = datetime.now(timezone.utc).isoformat()
        self._set_state("running", {"pid": proc.pid})

    def _start_settled(self, task: asyncio.Task) -> None:
        """Done-callback: discard the finished start task."""
        if self._starting is task:
            self._starting = None
        if not task.cancelled():
            # Mark the exception retrieved; callers received it via shield()
            task.exception()

    async def _spawn(self) -> asyncio.subprocess.Process:
        """
        Spawn the gateway service process and attach its exit watcher.

        Raises:
            ProcessSpawnError: If the executable cannot be started.
        """
        paths = self.config.settings["paths"]
        os.makedirs(paths["state_dir"], exist_ok=True)
        os.makedirs(paths["workspace_dir"], exist_ok=True)

        args = [
            self.settings["node"],
            self.settings["entry"],
            "gateway",
            "run",
            "--bind",
            "loopback",
            "--port",
            str(self.settings["port"]),
            "--auth",
            "none",
        ]

        try:
            proc = await asyncio.create_subprocess_exec(
                *args, env=gateway_env(self.config.settings)
            )
        except OSError as e:
            self._proc = None
            self.last_error = f"spawn error: {e}"
            self._set_state("crashed", {"error": str(e)})
            raise ProcessSpawnError(str(e)) from e

        self._proc = proc
        self.last_exit_code = None
        self._log(f"spawned pid={proc.pid} port={self.settings['port']}")

        watcher = asyncio.get_running_loop().create_task(self._watch(proc))
        self._watchers.add(watcher)
        watcher.add_done_callback(self._watchers.discard)
        return proc

    async def _wait_ready(self, proc: asyncio.subprocess.Process) -> None:
        """
        Poll the candidate paths until any HTTP response arrives.

        Any status code counts, including errors: an answer means the port
        is open. Raises ProcessSpawnError if the process exits meanwhile.
        """
        paths = list(self.settings["probe_paths"])
        interval = float(self.settings["probe_interval"])

        async with httpx.AsyncClient(transport=self._transport, timeout=2.0) as client:
            while True:
                if proc.returncode is not None:
                    raise ProcessSpawnError(
                        "gateway exited during startup", exit_code=proc.returncode
                    )
                for path in paths:
                    try:
                        await client.get(f"{self.target}{path}")
                        return
                    except httpx.HTTPError:
                        continue
                await asyncio.sleep(interval)

    # -- Exit notification ----------------------------------------------------

    async def _watch(self, proc: asyncio.subprocess.Process) -> None:
        code = await proc.wait()
        self._handle_exit(proc, code)

    def _handle_exit(self, proc: asyncio.subprocess.Process, code: int | None) -> None:
        """
        Process exit notification: clear the handle synchronously.

        Exits requested by stop() end in "stopped", anything else in
        "crashed". Exits of a handle that was already replaced or cleared
        are only logged.
        """
        if proc is not self._proc:
            self._log(f"previous pid={proc.pid} exited code={code}")
            return

        expected = proc is self._stopping
        self._proc = None
        self.last_exit_code = code
        self._set_state(
            "stopped" if expected else "crashed",
            {"pid": proc.pid, "exit_code": code},
        )

    # -- Helpers --------------------------------------------------------------

    def _set_state(self, new: str, details: dict | None = None) -> None:
        old = self.state
        self.state = new
        if self.log:
            self.log.state(old, new, details)

    def _log(self, text: str) -> None:
        if self.log:
            self.log.log("GATEWAY", text)
