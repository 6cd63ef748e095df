"""
Clawgate - Server Package
=========================
Authenticated edge service for a single OpenClaw gateway process.

This package provides:
- Supervision of the gateway process (single-flight start, readiness probe)
- An auth gate (GitHub OAuth or setup password) in front of all traffic
- A reverse proxy for HTTP requests and WebSocket upgrades
- Backup export and import of the gateway's persisted state
- A setup console: onboarding, allowlisted CLI commands, raw config editor

Architecture:
    main.py      -> FastAPI app creation, page routes, proxy catch-all
    config.py    -> Settings (DEFAULTS, config.yaml, environment), config artifact
    errors.py    -> Domain exceptions
    log.py       -> Tagged event log (terminal, per-day files, console feed)
    manager.py   -> Gateway process lifecycle (ensure_running/stop/restart)
    auth.py      -> Session cookies, login providers, auth middleware
    proxy.py     -> HTTP and WebSocket forwarding to the gateway
    backup.py    -> Streaming tar export and safe import
    console.py   -> Gateway CLI runner, console command table, onboarding
    routes.py    -> Setup API and auth endpoint handlers
    websocket.py -> Console feed connection manager and broadcasting
"""
