"""
Clawgate - Gateway CLI and Setup Console
==========================================
Runs the gateway's command-line interface on behalf of the setup API.

Two consumers:
    - The debug console (/setup/api/console/run) executes exactly one
      command from a fixed table. Anything outside the table is rejected
      before a process is spawned.
    - Onboarding (/setup/api/run) runs `onboard` non-interactively and then
      pins the gateway's network settings with `config set`.

CLI output shown to operators is passed through redact_secrets() first.
"""

import asyncio
import json
import os
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from clawgate.config import ConfigManager
from clawgate.errors import ClawgateError
from clawgate.log import EventLog
from clawgate.manager import GatewayManager, gateway_env


@dataclass
class CommandResult:
    """Exit code and combined stdout/stderr of one CLI call."""
    code: int
    output: str

    @property
    def ok(self) -> bool:
        return self.code == 0


async def run_command(config_manager: ConfigManager, args: list[str]) -> CommandResult:
    """
    Run `<node> <entry> *args` with the gateway environment.

    Args:
        config_manager: Loaded ConfigManager (node, entry and paths).
        args:           CLI arguments after the entry script.

    Returns:
        CommandResult. A spawn failure yields code 127 and a
        '[spawn error]' line instead of raising.
    """
    settings = config_manager.settings
    gateway = settings["gateway"]
    try:
        proc = await asyncio.create_subprocess_exec(
            gateway["node"],
            gateway["entry"],
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=gateway_env(settings),
        )
    except OSError as e:
        return CommandResult(127, f"\n[spawn error] {e}\n")

    stdout, _ = await proc.communicate()
    output = stdout.decode("utf-8", errors="replace") if stdout else ""
    return CommandResult(proc.returncode or 0, output)


# -- Secret redaction ----------------------------------------------------------

_SECRET_PATTERNS = [
    re.compile(r"sk-[A-Za-z0-9_-]{10,}"),
    re.compile(r"gho_[A-Za-z0-9_]{10,}"),
    re.compile(r"xox[baprs]-[A-Za-z0-9-]{10,}"),
    re.compile(r"AA[A-Za-z0-9_-]{10,}:\S{10,}"),
]


def redact_secrets(text: str) -> str:
    """Best-effort masking of API keys and bot tokens in CLI output."""
    if not text:
        return text
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub("[REDACTED]", text)
    return text


# -- Console command table -----------------------------------------------------

class ConsoleRejected(ClawgateError):
    """A console request named an unknown command or lacked its argument."""


@dataclass
class ConsoleReply:
    """Result of one console command, ready to serialize."""
    ok: bool
    output: str
    status_code: int = 200

    def to_dict(self) -> dict:
        return {"ok": self.ok, "output": self.output}


Handler = Callable[["Console", str], Awaitable[ConsoleReply]]


class Console:
    """
    Allowlisted console commands.

    The command table is the COMMANDS dict below: one handler per name.
    Names outside it raise ConsoleRejected and spawn nothing.
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        gateway_manager: GatewayManager,
        event_log: EventLog | None = None,
    ):
        self.config = config_manager
        self.gateway = gateway_manager
        self.log = event_log

    async def run(self, cmd: str, arg: str = "") -> ConsoleReply:
        """
        Execute one console command.

        Raises:
            ConsoleRejected: Command not in the table, or missing argument.
        """
        cmd = (cmd or "").strip()
        arg = (arg or "").strip()
        handler = COMMANDS.get(cmd)
        if handler is None:
            raise ConsoleRejected("Command not allowed", context={"cmd": cmd})
        if self.log:
            self.log.log("CONSOLE", f"{cmd} {arg}".rstrip())
        return await handler(self, arg)

    async def _cli(self, *args: str) -> ConsoleReply:
        result = await run_command(self.config, list(args))
        return ConsoleReply(
            ok=result.ok,
            output=redact_secrets(result.output),
            status_code=200 if result.ok else 500,
        )

    # -- Wrapper-managed lifecycle --

    async def gateway_restart(self, arg: str) -> ConsoleReply:
        await self.gateway.restart()
        return ConsoleReply(True, "Gateway restarted (wrapper-managed).\n")

    async def gateway_stop(self, arg: str) -> ConsoleReply:
        await self.gateway.stop()
        return ConsoleReply(True, "Gateway stopped (wrapper-managed).\n")

    async def gateway_start(self, arg: str) -> ConsoleReply:
        try:
            await self.gateway.ensure_running()
        except ClawgateError as e:
            return ConsoleReply(False, f"Gateway not started: {e.message}\n")
        return ConsoleReply(True, "Gateway started.\n")

    # -- Gateway CLI helpers --

    async def version(self, arg: str) -> ConsoleReply:
        return await self._cli("--version")

    async def status(self, arg: str) -> ConsoleReply:
        return await self._cli("status")

    async def health(self, arg: str) -> ConsoleReply:
        return await self._cli("health")

    async def doctor(self, arg: str) -> ConsoleReply:
        return await self._cli("doctor")

    async def logs_tail(self, arg: str) -> ConsoleReply:
        return await self._cli("logs", "--tail", str(clamp_tail(arg)))

    async def config_get(self, arg: str) -> ConsoleReply:
        if not arg:
            raise ConsoleRejected("Missing config path")
        return await self._cli("config", "get", arg)


COMMANDS: dict[str, Handler] = {
    "gateway.restart": Console.gateway_restart,
    "gateway.stop": Console.gateway_stop,
    "gateway.start": Console.gateway_start,
    "openclaw.version": Console.version,
    "openclaw.status": Console.status,
    "openclaw.health": Console.health,
    "openclaw.doctor": Console.doctor,
    "openclaw.logs.tail": Console.logs_tail,
    "openclaw.config.get": Console.config_get,
}


def clamp_tail(arg: str, default: int = 200) -> int:
    """Parse the logs.tail line count and clamp it to 50..1000."""
    try:
        lines = int(arg) if arg else default
    except ValueError:
        lines = default
    if lines == 0:
        lines = default
    return max(50, min(1000, lines))


# -- Onboarding ----------------------------------------------------------------

# Auth choice -> CLI flag carrying the provider secret
AUTH_SECRET_FLAGS = {
    "openai-api-key": "--openai-api-key",
    "apiKey": "--anthropic-api-key",
    "openrouter-api-key": "--openrouter-api-key",
    "ai-gateway-api-key": "--ai-gateway-api-key",
    "moonshot-api-key": "--moonshot-api-key",
    "kimi-code-api-key": "--kimi-code-api-key",
    "gemini-api-key": "--gemini-api-key",
    "zai-api-key": "--zai-api-key",
    "minimax-api": "--minimax-api-key",
    "minimax-api-lightning": "--minimax-api-key",
    "synthetic-api-key": "--synthetic-api-key",
    "opencode-zen": "--opencode-zen-api-key",
}


def build_onboard_args(payload: dict[str, Any], settings: dict) -> list[str]:
    """
    Build the non-interactive `onboard` argument list.

    The gateway is onboarded onto loopback with token auth; the wrapper
    switches its auth off afterwards (see Onboarding.run).

    Args:
        payload:  Setup form fields (flow, authChoice, authSecret, ...).
        settings: Full wrapper settings.
    """
    gateway = settings["gateway"]
    args = [
        "onboard",
        "--non-interactive",
        "--accept-risk",
        "--json",
        "--no-install-daemon",
        "--skip-health",
        "--workspace",
        settings["paths"]["workspace_dir"],
        "--gateway-bind",
        "loopback",
        "--gateway-port",
        str(gateway["port"]),
        "--gateway-auth",
        "token",
        "--gateway-token",
        str(gateway.get("token") or ""),
        "--flow",
        str(payload.get("flow") or "quickstart"),
    ]

    choice = str(payload.get("authChoice") or "")
    if choice:
        args += ["--auth-choice", choice]
        secret = str(payload.get("authSecret") or "").strip()
        flag = AUTH_SECRET_FLAGS.get(choice)
        if flag and secret:
            args += [flag, secret]
        if choice == "token" and secret:
            # Anthropic setup-token flow
            args += ["--token-provider", "anthropic", "--token", secret]

    return args


def channel_configs(payload: dict[str, Any]) -> dict[str, dict]:
    """
    Channel blocks to write with `config set --json channels.<name>`.

    Only channels with a token in the payload are returned.
    """
    channels = {}

    telegram = str(payload.get("telegramToken") or "").strip()
    if telegram:
        channels["telegram"] = {
            "enabled": True,
            "dmPolicy": "pairing",
            "botToken": telegram,
            "groupPolicy": "allowlist",
            "streamMode": "partial",
        }

    discord = str(payload.get("discordToken") or "").strip()
    if discord:
        channels["discord"] = {
            "enabled": True,
            "token": discord,
            "groupPolicy": "allowlist",
            "dm": {"policy": "pairing"},
        }

    slack_bot = str(payload.get("slackBotToken") or "").strip()
    slack_app = str(payload.get("slackAppToken") or "").strip()
    if slack_bot or slack_app:
        block = {"enabled": True}
        if slack_bot:
            block["botToken"] = slack_bot
        if slack_app:
            block["appToken"] = slack_app
        channels["slack"] = block

    return channels


class Onboarding:
    """First-run setup: `onboard`, network pinning, channels, restart."""

    def __init__(
        self,
        config_manager: ConfigManager,
        gateway_manager: GatewayManager,
        event_log: EventLog | None = None,
    ):
        self.config = config_manager
        self.gateway = gateway_manager
        self.log = event_log

    async def run(self, payload: dict[str, Any]) -> ConsoleReply:
        """
        Run onboarding, or only ensure the gateway runs if already configured.

        Returns:
            ConsoleReply with status 500 when `onboard` failed or did not
            produce the configuration artifact.
        """
        if self.config.is_configured():
            await self.gateway.ensure_running()
            return ConsoleReply(
                True,
                "Already configured.\nUse Reset setup if you want to rerun onboarding.\n",
            )

        paths = self.config.settings["paths"]
        os.makedirs(paths["state_dir"], exist_ok=True)
        os.makedirs(paths["workspace_dir"], exist_ok=True)

        self._log("running onboard")
        onboard = await run_command(
            self.config, build_onboard_args(payload, self.config.settings)
        )
        ok = onboard.ok and self.config.is_configured()
        if not ok:
            self._log(f"onboard failed (exit={onboard.code})")
            return ConsoleReply(False, onboard.output, status_code=500)

        extra = ""
        port = str(self.config.settings["gateway"]["port"])
        for key, value in (
            ("gateway.auth.mode", "none"),
            ("gateway.bind", "loopback"),
            ("gateway.port", port),
        ):
            await run_command(self.config, ["config", "set", key, value])

        model = str(payload.get("model") or "").strip()
        if model:
            result = await run_command(self.config, ["config", "set", "model", model])
            extra += f"\n[model] set to {model} (exit={result.code})\n"

        channels = channel_configs(payload)
        if channels:
            help_text = (await run_command(self.config, ["channels", "add", "--help"])).output
            for name, block in channels.items():
                if name not in help_text:
                    extra += (
                        f"\n[{name}] skipped (this openclaw build does not list "
                        f"{name} in `channels add --help`)\n"
                    )
                    continue
                result = await run_command(
                    self.config,
                    ["config", "set", "--json", f"channels.{name}", json.dumps(block)],
                )
                extra += f"\n[{name} config] exit={result.code}\n{redact_secrets(result.output) or '(no output)'}"

        await self.gateway.restart()
        self._log("onboard complete")
        return ConsoleReply(True, onboard.output + extra)

    def _log(self, text: str) -> None:
        if self.log:
            self.log.log("CONSOLE", text)
