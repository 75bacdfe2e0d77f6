#!/usr/bin/env python3
"""
Transaction Core Entry Point

Starts the FastAPI server with the transaction core, configured from
TXCORE_* environment variables.
"""

import sys

from transaction_core.api import run_server
from transaction_core.config import get_config
from transaction_core.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level, log_format=config.log_format)
    logger.info(
        f"Starting Transaction Core on {config.api_host}:{config.api_port} "
        f"(accounts: {config.account_service_mode} {config.account_service_url})"
    )

    try:
        run_server(host=config.api_host, port=config.api_port, debug=False)
    except KeyboardInterrupt:
        logger.info("Shutting down Transaction Core")
    except Exception as e:
        logger.critical(f"Error starting server: {e}")
        sys.exit(1)
