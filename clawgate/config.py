"""
Clawgate - Configuration Manager
==================================
Handles loading of wrapper settings and access to the gateway's own
configuration artifact.

Settings come from three layers, later layers winning:

1. DEFAULTS     - Built-in values so the wrapper always has a complete config
2. config.yaml  - Optional project-level overrides
3. Environment  - Deployment variables (OPENCLAW_*, GITHUB_*, ...), usually
                  injected by the platform or loaded from .env by app.py

The gateway configuration artifact (openclaw.json) is opaque to the wrapper:
it only checks whether it exists, and lets operators read, replace or delete
it through the setup API.

Usage:
    config = ConfigManager(project_dir="/app")
    settings = config.load()       # Merged settings dict
    config.is_configured()         # Does the gateway config artifact exist?
    config.write_raw("{...}")      # Replace artifact (backup copy first)
"""

import os
import secrets
import shutil
from datetime import datetime, timezone
from typing import Any, Callable

import yaml


# Default configuration values used when config.yaml is missing or incomplete.
# Empty path values are derived in load() from the state directory.
DEFAULTS = {
    "web": {
        "host": "0.0.0.0",
        "port": 8080,
    },
    "paths": {
        "state_dir": "~/.openclaw",
        "workspace_dir": "",
        "config_path": "",
        "storage_root": "/data",
    },
    "gateway": {
        "host": "127.0.0.1",
        "port": 18789,
        "node": "node",
        "entry": "/openclaw/dist/entry.js",
        "token": "",
        "ready_timeout": 20.0,
        "probe_interval": 0.25,
        "probe_paths": ["/openclaw", "/clawdbot", "/"],
        "stop_grace": 0.75,
    },
    "auth": {
        "github_client_id": "",
        "github_client_secret": "",
        "allowed_users": [],
        "setup_password": "",
        "setup_password_hash": "",
        "session_secret": "",
        "session_max_age_days": 30,
        "cookie_secure": False,
    },
    "backup": {
        "max_import_bytes": 250 * 1024 * 1024,
    },
}

# Largest raw config payload accepted by write_raw().
MAX_RAW_CONFIG_CHARS = 500_000


def _split_users(value: str) -> list[str]:
    return [u.strip().lower() for u in value.split(",") if u.strip()]


def _is_production(value: str) -> bool:
    return value.strip().lower() == "production"


# Environment overrides: (section, key, env names in priority order, caster).
# The CLAWDBOT_* names are kept as backward-compatible aliases.
ENV_OVERRIDES: list[tuple[str, str, tuple[str, ...], Callable[[str], Any]]] = [
    ("web", "host", ("CLAWGATE_HOST",), str),
    ("web", "port", ("OPENCLAW_PUBLIC_PORT", "CLAWDBOT_PUBLIC_PORT", "PORT"), int),
    ("paths", "state_dir", ("OPENCLAW_STATE_DIR", "CLAWDBOT_STATE_DIR"), str),
    ("paths", "workspace_dir", ("OPENCLAW_WORKSPACE_DIR", "CLAWDBOT_WORKSPACE_DIR"), str),
    ("paths", "config_path", ("OPENCLAW_CONFIG_PATH", "CLAWDBOT_CONFIG_PATH"), str),
    ("paths", "storage_root", ("CLAWGATE_STORAGE_ROOT",), str),
    ("gateway", "host", ("INTERNAL_GATEWAY_HOST",), str),
    ("gateway", "port", ("INTERNAL_GATEWAY_PORT",), int),
    ("gateway", "node", ("OPENCLAW_NODE",), str),
    ("gateway", "entry", ("OPENCLAW_ENTRY",), str),
    ("gateway", "token", ("OPENCLAW_GATEWAY_TOKEN", "CLAWDBOT_GATEWAY_TOKEN"), str),
    ("auth", "github_client_id", ("GITHUB_CLIENT_ID",), str),
    ("auth", "github_client_secret", ("GITHUB_CLIENT_SECRET",), str),
    ("auth", "allowed_users", ("GITHUB_ALLOWED_USERS",), _split_users),
    ("auth", "setup_password", ("SETUP_PASSWORD",), str),
    ("auth", "session_secret", ("SESSION_SECRET",), str),
    ("auth", "cookie_secure", ("CLAWGATE_ENV", "NODE_ENV"), _is_production),
    ("backup", "max_import_bytes", ("CLAWGATE_MAX_IMPORT_BYTES",), int),
]


class ConfigManager:
    """
    Settings loader and gateway configuration artifact store.

    Attributes:
        project_dir: Root directory of the Clawgate project.
        config_path: Full path to config.yaml (wrapper settings).
        settings:    Merged settings dict from the last load().
    """

    def __init__(self, project_dir: str, overrides: dict | None = None):
        """
        Initialize the config manager.

        Args:
            project_dir: Absolute path to the Clawgate project root directory.
            overrides:   Settings merged on top of everything else (tests,
                         command-line flags).
        """
        self.project_dir = project_dir
        self.config_path = os.path.join(project_dir, "config.yaml")
        self.overrides = overrides or {}
        self.settings: dict = {}

    def load(self) -> dict:
        """
        Load and merge settings from defaults, config.yaml and environment.

        Path values are expanded and made absolute. The workspace directory
        and the gateway config path default to locations inside the state
        directory.

        Returns:
            A dictionary containing the full configuration.
        """
        config = _deep_copy(DEFAULTS)

        if os.path.exists(self.config_path):
            try:
                with open(self.config_path, "r", encoding="utf-8") as f:
                    user_config = yaml.safe_load(f) or {}
                _deep_merge(config, user_config)
            except (yaml.YAMLError, OSError) as e:
                # Corrupted settings file: keep defaults, surface the error
                config["_config_error"] = str(e)

        _apply_env(config, os.environ)
        _deep_merge(config, self.overrides)

        paths = config["paths"]
        paths["state_dir"] = _abs(paths["state_dir"])
        paths["workspace_dir"] = _abs(
            paths["workspace_dir"] or os.path.join(paths["state_dir"], "workspace")
        )
        paths["config_path"] = _abs(
            paths["config_path"] or os.path.join(paths["state_dir"], "openclaw.json")
        )
        paths["storage_root"] = _abs(paths["storage_root"])

        self.settings = config
        return config

    # -- Gateway configuration artifact ---------------------------------------

    @property
    def artifact_path(self) -> str:
        """Absolute path of the gateway configuration artifact."""
        return self.settings["paths"]["config_path"]

    def is_configured(self) -> bool:
        """
        Check whether the gateway configuration artifact exists.

        Never cached: the artifact can be created by onboarding, restored by
        an import, or deleted by a reset at any time.
        """
        try:
            return os.path.exists(self.artifact_path)
        except OSError:
            return False

    def read_raw(self) -> dict:
        """
        Read the configuration artifact as text.

        Returns:
            Dict with 'path', 'exists' and 'content' ("" when missing).
        """
        path = self.artifact_path
        exists = os.path.exists(path)
        content = ""
        if exists:
            with open(path, "r", encoding="utf-8") as f:
                content = f.read()
        return {"path": path, "exists": exists, "content": content}

    def write_raw(self, content: str) -> str | None:
        """
        Replace the configuration artifact.

        An existing artifact is first copied to '<path>.bak-<timestamp>'.

        Args:
            content: New artifact content (written verbatim, mode 0600).

        Returns:
            The backup path, or None if there was nothing to back up.

        Raises:
            ValueError: If the content exceeds MAX_RAW_CONFIG_CHARS.
        """
        if len(content) > MAX_RAW_CONFIG_CHARS:
            raise ValueError("Config too large")

        os.makedirs(self.settings["paths"]["state_dir"], exist_ok=True)
        path = self.artifact_path
        os.makedirs(os.path.dirname(path), exist_ok=True)

        backup_path = None
        if os.path.exists(path):
            backup_path = f"{path}.bak-{file_timestamp()}"
            shutil.copy2(path, backup_path)

        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        return backup_path

    def reset(self) -> bool:
        """
        Delete the configuration artifact so onboarding can run again.

        Credentials, sessions and the workspace are left untouched.

        Returns:
            True if a file was removed.
        """
        try:
            os.remove(self.artifact_path)
            return True
        except FileNotFoundError:
            return False

    # -- Persisted secrets ----------------------------------------------------

    def resolve_secret(self, section: str, key: str, filename: str) -> tuple[str, str]:
        """
        Resolve a secret that must stay stable across restarts.

        Order: explicit setting (config.yaml or environment), then a value
        persisted in the state directory, then a freshly generated value
        which is persisted (mode 0600) on a best-effort basis.

        Args:
            section:  Settings section holding the explicit value.
            key:      Settings key holding the explicit value.
            filename: File name inside the state directory.

        Returns:
            Tuple of (secret, source) where source is "config", "persisted"
            or "generated".
        """
        explicit = str(self.settings.get(section, {}).get(key) or "").strip()
        if explicit:
            return explicit, "config"

        state_dir = self.settings["paths"]["state_dir"]
        secret_path = os.path.join(state_dir, filename)
        try:
            with open(secret_path, "r", encoding="utf-8") as f:
                existing = f.read().strip()
            if existing:
                return existing, "persisted"
        except OSError:
            pass  # first run

        generated = secrets.token_hex(32)
        try:
            os.makedirs(state_dir, exist_ok=True)
            fd = os.open(secret_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(generated)
        except OSError:
            pass  # keep the in-memory value for this run
        return generated, "generated"


# -- Helper Functions ---------------------------------------------------------

def _abs(path: str) -> str:
    return os.path.abspath(os.path.expanduser(str(path)))


def file_timestamp() -> str:
    """ISO timestamp safe for file names (no ':' or '.')."""
    return (
        datetime.now(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace(":", "-")
        .replace(".", "-")
        .replace("+00-00", "Z")
    )


def _apply_env(config: dict, environ) -> None:
    """Apply ENV_OVERRIDES in place; the first non-empty variable wins."""
    for section, key, names, cast in ENV_OVERRIDES:
        for name in names:
            raw = (environ.get(name) or "").strip()
            if raw:
                config[section][key] = cast(raw)
                break


def _deep_copy(d: dict) -> dict:
    """Create a deep copy of a nested dictionary."""
    result = {}
    for key, value in d.items():
        if isinstance(value, dict):
            result[key] = _deep_copy(value)
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _deep_merge(base: dict, override: dict) -> None:
    """
    Recursively merge 'override' into 'base' (in-place).

    For nested dicts, values are merged recursively.
    For all other types, override replaces base.
    """
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
