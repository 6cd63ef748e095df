"""
Clawgate - Error Taxonomy
===========================
Domain exceptions raised by the supervisor, the proxy and the backup
subsystem. Route handlers translate them into HTTP responses at the
route boundary; see routes.py and proxy.py.

Hierarchy:
    ClawgateError
    ├── ConfigurationMissing      -> 503 on proxied requests
    ├── ProcessSpawnError         -> 503 on proxied requests
    ├── ProcessReadinessTimeout   -> 503 on proxied requests
    ├── GatewayHeld               -> 503 while a restore holds the gateway
    ├── UpgradeUnauthorized       -> WebSocket closed before accept
    ├── ImportRootMismatch        -> 400, nothing extracted
    ├── ImportTooLarge            -> 413, nothing extracted
    └── ImportPathUnsafe          -> single archive entry skipped
"""

from typing import Any


class ClawgateError(Exception):
    """
    Base exception for all Clawgate errors.

    Attributes:
        message: Human-readable error message (safe to show to operators).
        context: Additional key/value details for logs.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} ({context_str})"
        return self.message


# -- Gateway lifecycle ---------------------------------------------------------

class ConfigurationMissing(ClawgateError):
    """The gateway configuration artifact does not exist."""

    def __init__(self, config_path: str):
        super().__init__("not configured", context={"config_path": config_path})
        self.config_path = config_path


class ProcessSpawnError(ClawgateError):
    """The gateway process could not be spawned, or exited while starting."""

    def __init__(self, reason: str, exit_code: int | None = None):
        context = {"exit_code": exit_code} if exit_code is not None else None
        super().__init__(f"gateway failed to start: {reason}", context=context)
        self.reason = reason
        self.exit_code = exit_code


class ProcessReadinessTimeout(ClawgateError):
    """The gateway process did not answer any readiness probe in time."""

    def __init__(self, timeout_seconds: float):
        super().__init__(
            "Gateway did not become ready in time",
            context={"timeout": timeout_seconds},
        )
        self.timeout_seconds = timeout_seconds


class GatewayHeld(ClawgateError):
    """A start was requested while a backup restore keeps the gateway stopped."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


# -- Authentication ------------------------------------------------------------

class UpgradeUnauthorized(ClawgateError):
    """A WebSocket upgrade arrived without a valid session."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"upgrade rejected: {reason}", context={"path": path})
        self.path = path
        self.reason = reason


# -- Backup import -------------------------------------------------------------

class ImportRootMismatch(ClawgateError):
    """State or workspace directory lies outside the storage root."""

    def __init__(self, storage_root: str):
        super().__init__(
            "Import is only supported when OPENCLAW_STATE_DIR and "
            f"OPENCLAW_WORKSPACE_DIR are under {storage_root}.",
            context={"storage_root": storage_root},
        )
        self.storage_root = storage_root


class ImportTooLarge(ClawgateError):
    """The uploaded archive exceeds the configured size ceiling."""

    def __init__(self, max_bytes: int):
        super().__init__("payload too large", context={"max_bytes": max_bytes})
        self.max_bytes = max_bytes


class ImportPathUnsafe(ClawgateError):
    """An archive entry path is absolute, drive-qualified or escapes the root."""

    def __init__(self, entry: str):
        super().__init__(f"unsafe archive entry: {entry!r}")
        self.entry = entry
