"""
Entrypoint for the Mailing Workshop service.
This file exposes the FastAPI application built in ``core.app_state`` and
starts it with gunicorn (Linux/WSL) or uvicorn (elsewhere).
"""

from __future__ import annotations

import argparse
import os
import platform
import sys

from core.app_state import app, config, logger  # noqa: F401


def is_wsl_or_linux() -> bool:
    """Detect if running in WSL or native Linux environment."""
    if platform.system() != "Linux":
        return False

    try:
        with open("/proc/version", "r", encoding="utf-8") as version_file:
            version_info = version_file.read().lower()
            if "microsoft" in version_info or "wsl" in version_info:
                logger.info("Detected WSL environment")
                return True
    except OSError:
        pass

    logger.info("Detected native Linux environment")
    return True


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Mailing Workshop API")
    parser.add_argument(
        "--workers",
        type=int,
        default=int(os.environ.get("APP_WORKERS", "1")),
        help="Number of gunicorn workers (Linux only). The bundled JSON mailing store only locks within one process",
    )
    parser.add_argument(
        "--uvicorn",
        action="store_true",
        help="Run a single uvicorn process even on Linux",
    )
    args = parser.parse_args()

    if is_wsl_or_linux() and not args.uvicorn:
        import subprocess

        cmd = [
            sys.executable,
            "-m",
            "gunicorn",
            "main:app",
            "--workers",
            str(args.workers),
            "--worker-class",
            "uvicorn.workers.UvicornWorker",
            "--bind",
            f"{config.APP_HOST}:{config.APP_PORT}",
        ]

        if config.APP_RELOAD:
            cmd.append("--reload")

        logger.info("Starting with gunicorn - %d workers", args.workers)
        logger.info("Command: %s", " ".join(cmd))
        subprocess.run(cmd, check=False)
    else:
        import uvicorn

        logger.info("Starting with uvicorn")
        uvicorn.run(
            "main:app",
            host=config.APP_HOST,
            port=config.APP_PORT,
            reload=config.APP_RELOAD,
        )
