"""
gitcity.api.__main__ — Entry point for ``python -m gitcity.api``
==================================================================

Wiring:
1. Load .env (secrets).
2. Create the SQLAlchemy engine and ensure tables + catalog exist.
3. Serve the FastAPI app with uvicorn.
"""

from __future__ import annotations

import logging
import os

import uvicorn
from dotenv import load_dotenv

from gitcity.database.engine import create_db_engine, init_db

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)-8s] %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("gitcity")


def main() -> None:
    load_dotenv()

    engine = create_db_engine()
    init_db(engine)
    engine.dispose()

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    logger.info("Starting Git City API on %s:%d", host, port)
    uvicorn.run("gitcity.api.main:app", host=host, port=port, log_config=None)


if __name__ == "__main__":
    main()
