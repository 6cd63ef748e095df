#!/usr/bin/env python3
"""
Clawgate - Entry Point
========================
One-command startup for the OpenClaw edge service.

Usage:
    python app.py              # Start with default settings
    python app.py --port 9000  # Start on custom port

This script:
    1. Loads environment variables from .env
    2. Loads configuration (config.yaml + environment)
    3. Creates the FastAPI web application
    4. Starts the uvicorn server

The gateway itself is started lazily by the first request that needs it.
"""

import os
import argparse
import uvicorn
from dotenv import load_dotenv


def main():
    """Parse arguments, load config, and start the web server."""

    # -- Parse command-line arguments ------------------------------------------
    parser = argparse.ArgumentParser(
        description="Clawgate - Authenticated edge service for OpenClaw",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--port", type=int, default=None,
        help="Public port (overrides config.yaml and PORT)",
    )
    parser.add_argument(
        "--host", type=str, default=None,
        help="Host binding address (overrides config.yaml)",
    )
    args = parser.parse_args()

    # -- Resolve project directory ---------------------------------------------
    project_dir = os.path.dirname(os.path.abspath(__file__))

    # -- Load environment variables from .env ----------------------------------
    env_path = os.path.join(project_dir, ".env")
    if os.path.exists(env_path):
        load_dotenv(env_path)

    # -- Load configuration to get web server settings -------------------------
    from clawgate.config import ConfigManager, DEFAULTS
    config_manager = ConfigManager(project_dir)
    config = config_manager.load()

    # Command-line args override config file and environment
    host = args.host or config["web"].get("host", DEFAULTS["web"]["host"])
    port = args.port or config["web"].get("port", DEFAULTS["web"]["port"])
    if args.host:
        os.environ["CLAWGATE_HOST"] = args.host
    if args.port:
        os.environ["OPENCLAW_PUBLIC_PORT"] = str(args.port)

    # -- Print startup banner --------------------------------------------------
    gateway = config["gateway"]
    print()
    print("  Clawgate - OpenClaw edge service")
    print()
    print(f"  Public  : http://{host}:{port}")
    print(f"  Setup   : http://{host}:{port}/setup")
    print(f"  Gateway : http://{gateway['host']}:{gateway['port']} (internal)")
    print(f"  State   : {config['paths']['state_dir']}")
    print()

    # -- Start the web server --------------------------------------------------
    uvicorn.run(
        "clawgate.main:create_app",
        factory=True,
        host=host,
        port=port,
        reload=False,
        log_level="info",
    )


if __name__ == "__main__":
    main()
