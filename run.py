#!/usr/bin/env python3
"""
Run the settlement API server.
"""

import logging

import uvicorn

from utils.config import Config
from utils.logging_setup import setup_logging


def main():
    """Start the web server."""
    config = Config.load()
    setup_logging(config.log_level, config.log_format)

    logger = logging.getLogger(__name__)
    logger.info("Starting settlement API on http://%s:%s", config.host, config.port)
    logger.debug("Config: %s", config.to_dict())

    uvicorn.run(
        "web.app:create_app",
        factory=True,
        host=config.host,
        port=config.port,
        reload=config.debug and not config.production,
        log_config=None,
    )


if __name__ == "__main__":
    main()
