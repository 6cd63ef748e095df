"""
Clawgate - Event Log
======================
Dual-output logger for the wrapper: every line goes to the terminal, to a
per-day log file, and to console feed clients over WebSocket.

Log files are stored in data/logs/ with names like 2026-02-09.log. Lines are
tagged by subsystem:

    [08:15:02] [GATEWAY] spawned pid=4242 port=18789
    [08:15:03] [GATEWAY] state starting -> running
    [08:20:11] [BACKUP] skipped unsafe entry '../../etc/passwd'

Tags in use: WRAPPER, GATEWAY, PROXY, AUTH, BACKUP, CONSOLE.
"""

import asyncio
import os
from datetime import datetime
from typing import Any


class EventLog:
    """
    Tagged event logger shared by all wrapper components.

    Attributes:
        log_dir:    Directory for log files (data/logs/).
        ws_manager: Console feed manager for broadcasting (may be None).
    """

    def __init__(self, log_dir: str, ws_manager: Any = None):
        self.log_dir = log_dir
        self.ws_manager = ws_manager
        # Strong references to pending broadcast tasks
        self._pending: set[asyncio.Task] = set()

        os.makedirs(log_dir, exist_ok=True)

    def _get_log_path(self) -> str:
        """Get today's log file path."""
        today = datetime.now().strftime("%Y-%m-%d")
        return os.path.join(self.log_dir, f"{today}.log")

    def _write(self, text: str) -> None:
        """Append a line to today's log file."""
        try:
            with open(self._get_log_path(), "a", encoding="utf-8") as f:
                f.write(text + "\n")
        except OSError:
            pass

    def _broadcast(self, msg_type: str, data: dict) -> None:
        """
        Schedule a feed broadcast on the running event loop.

        Fire-and-forget: logging never waits on slow feed clients. Outside
        an event loop (startup, threads) the broadcast is skipped.
        """
        if not self.ws_manager:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return

        task = loop.create_task(
            self.ws_manager.broadcast({"type": msg_type, "data": data})
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def log(self, tag: str, text: str) -> None:
        """Log a tagged line to terminal, file and feed."""
        ts = datetime.now().strftime("%H:%M:%S")
        line = f"[{ts}] [{tag}] {text}"
        self._write(line)
        print(line, flush=True)
        self._broadcast("log", {"text": line})

    def state(self, old: str, new: str, details: dict | None = None) -> None:
        """
        Log a gateway state transition and push it to the feed.

        Args:
            old:     Previous state name.
            new:     New state name.
            details: Extra fields for the status message (pid, exit code...).
        """
        suffix = ""
        if details:
            suffix = " " + " ".join(f"{k}={v}" for k, v in details.items())
        self.log("GATEWAY", f"state {old} -> {new}{suffix}")

        data = {"status": new}
        if details:
            data.update(details)
        self._broadcast("status", data)

    def tail(self, lines: int) -> dict:
        """
        Return the most recent lines of the newest log file.

        Args:
            lines: Number of lines to return.

        Returns:
            Dict with 'lines', 'total' and (when a file exists) 'file'.
        """
        if not os.path.isdir(self.log_dir):
            return {"lines": [], "total": 0}

        log_files = sorted(
            [f for f in os.listdir(self.log_dir) if f.endswith(".log")],
            reverse=True,
        )
        if not log_files:
            return {"lines": [], "total": 0}

        log_path = os.path.join(self.log_dir, log_files[0])
        try:
            with open(log_path, "r", encoding="utf-8", errors="replace") as f:
                all_lines = f.readlines()
        except OSError:
            return {"lines": [], "total": 0}

        return {
            "lines": [l.rstrip() for l in all_lines[-lines:]],
            "total": len(all_lines),
            "file": log_files[0],
        }
