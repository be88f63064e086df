#!/usr/bin/env python3
"""
Production startup script.

1. Runs migrations + seed (release.py)
2. Starts gunicorn (replaces this process via os.execvp)

Usage:
    python scripts/start.py
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

logger = logging.getLogger("eservices.start")


def _port() -> str:
    port = os.environ.get("PORT", "").strip()
    if not port:
        logger.warning("PORT not set, using default 8080")
        return "8080"
    try:
        port_int = int(port)
    except ValueError:
        port_int = 0
    if not 1 <= port_int <= 65535:
        logger.error("Invalid PORT value %r. Must be integer 1-65535.", port)
        sys.exit(1)
    return port


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    port = _port()

    from scripts.release import run_release

    try:
        run_release()
    except Exception:
        logger.exception("Release failed")
        sys.exit(1)

    logger.info("Starting gunicorn on 0.0.0.0:%s (liveness probe: /healthz)", port)
    os.execvp(
        "gunicorn",
        [
            "gunicorn",
            "app.wsgi:app",
            "--bind", f"0.0.0.0:{port}",
            "--workers", "2",
            "--timeout", "60",
            "--preload",
            "--access-logfile", "-",
            "--error-logfile", "-",
        ],
    )


if __name__ == "__main__":
    main()
