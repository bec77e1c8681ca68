"""Entry point for running the MiniGames development backend via ``python -m minigames``."""

from __future__ import annotations

import logging
import os

import uvicorn


def main() -> None:
    """Start the FastAPI-powered match backend."""

    host = os.environ.get("MINIGAMES_HOST", "0.0.0.0")
    port = int(os.environ.get("MINIGAMES_PORT", "8000"))
    level = os.environ.get("MINIGAMES_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    uvicorn.run("minigames.server:app", host=host, port=port, reload=False, log_level=level.lower())


if __name__ == "__main__":
    main()
