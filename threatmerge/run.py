"""Programmatic uvicorn entry point for threatmerge.

Reads host and port from the loaded config (127.0.0.1:4300 by default).

Usage:
    python -m threatmerge.run
    threatmerge                  # via pyproject.toml [project.scripts]
"""

from __future__ import annotations

import uvicorn

from threatmerge.config import load_config

# Maximum number of concurrent connections accepted by uvicorn.
UVICORN_LIMIT_CONCURRENCY: int = 100

# HTTP keep-alive timeout in seconds.
UVICORN_TIMEOUT_KEEP_ALIVE: int = 5


def main() -> None:
    """Start the threatmerge HTTP trigger.

    Raises:
        SystemExit: Propagated from load_config() on config parse errors.
    """
    config = load_config()

    uvicorn.run(
        "threatmerge.main:app",
        host=config.server.host,
        port=config.server.port,
        limit_concurrency=UVICORN_LIMIT_CONCURRENCY,
        timeout_keep_alive=UVICORN_TIMEOUT_KEEP_ALIVE,
    )


if __name__ == "__main__":
    main()
