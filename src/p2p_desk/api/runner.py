#!/usr/bin/env python3
"""FastAPI server runner."""

import argparse

import structlog
import uvicorn

from p2p_desk.api.app import create_app
from p2p_desk.config.loader import load_config
from p2p_desk.db.engine import get_session_factory, init_engine
from p2p_desk.logging.setup import setup_logging

logger = structlog.get_logger("api")


def main():
    """Run the FastAPI server."""
    parser = argparse.ArgumentParser(description="P2P desk query API")
    parser.add_argument("--config", default=None, help="Path to config.yaml")
    args = parser.parse_args()

    config = load_config(args.config)
    setup_logging(level=config.logging.level, log_format=config.logging.format)
    init_engine(config.database.url)
    app = create_app(get_session_factory())

    logger.info("Starting FastAPI server", port=config.api.port)

    try:
        uvicorn.run(
            app,
            host=config.api.host,
            port=config.api.port,
            log_config=None  # Use our structlog setup
        )
    except Exception as e:
        logger.error("Failed to start server", error=str(e))
        raise


if __name__ == "__main__":
    main()
