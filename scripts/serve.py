#!/usr/bin/env python3
from __future__ import annotations

import logging
import os
import sys
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))


def main() -> int:
    host = os.getenv("BOOKFLOW_HOST", "127.0.0.1")
    port = int(os.getenv("BOOKFLOW_PORT", "8000"))
    reload = os.getenv("BOOKFLOW_RELOAD", "0").strip().lower() in {"1", "true", "yes", "y", "on"}
    log_level = os.getenv("BOOKFLOW_LOG_LEVEL", "info").lower()

    # Application loggers (bookflow.*) share uvicorn's level.
    logging.basicConfig(level=log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    import uvicorn

    uvicorn.run(
        "bookflow.api.app:app",
        host=host,
        port=port,
        reload=reload,
        log_level=log_level,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
