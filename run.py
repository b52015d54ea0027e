#!/usr/bin/env python3
"""
Run the extraction orchestrator server.

Host, port and TLS come from the ``orchestrator.server`` config section
(or ORCHESTRATOR_HOST / ORCHESTRATOR_PORT / ORCHESTRATOR_SSL_CERT /
ORCHESTRATOR_SSL_KEY).

Usage:
    python run.py
"""

from pathlib import Path

import uvicorn

from src.core.config import load_settings


def main():
    server = load_settings().server

    ssl_options = {}
    if server.ssl_certfile or server.ssl_keyfile:
        if not Path(server.ssl_certfile).exists() or not Path(server.ssl_keyfile).exists():
            print("ERROR: SSL certificates not found!")
            print(f"Expected: {server.ssl_certfile}")
            print(f"Expected: {server.ssl_keyfile}")
            return
        ssl_options = {"ssl_certfile": server.ssl_certfile, "ssl_keyfile": server.ssl_keyfile}

    scheme = "https" if ssl_options else "http"
    print("Starting extraction orchestrator...")
    print(f"URL: {scheme}://{server.host}:{server.port}")

    uvicorn.run(
        "src.api.main:app",
        host=server.host,
        port=server.port,
        log_level=server.log_level,
        **ssl_options
    )


if __name__ == "__main__":
    main()
