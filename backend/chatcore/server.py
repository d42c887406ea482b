from __future__ import annotations

import argparse
import os
from pathlib import Path

import uvicorn

from chatcore.core.config import get_settings


def main() -> None:
    """Run the chat backend with uvicorn.

    Relative paths (``.env`` and the default SQLite file) resolve against the
    backend directory unless ``--workdir`` says otherwise.
    """

    parser = argparse.ArgumentParser(description="Run the chatcore backend.")
    parser.add_argument("--host", default=None, help="Bind address (default: APP_HOST)")
    parser.add_argument("--port", type=int, default=None, help="Bind port (default: APP_PORT)")
    parser.add_argument("--workdir", type=Path, default=None, help="Directory holding .env and the database")
    args = parser.parse_args()

    workdir = args.workdir or _config_dir()
    os.chdir(workdir)
    get_settings.cache_clear()
    settings = get_settings()

    uvicorn.run(
        "chatcore.main:app",
        host=args.host or settings.app_host,
        port=args.port or settings.app_port,
        log_level=settings.log_level.lower(),
    )


def _config_dir() -> Path:
    return Path(__file__).resolve().parents[1]


if __name__ == "__main__":
    main()
