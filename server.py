"""
Gacha storefront backend.

This is the main entrypoint for the HTTP server.
"""

import logging
import os
import sys
from dataclasses import replace

from aiohttp import web
from dotenv import load_dotenv

from gacha_core import Database, load_config
from gacha_core.logger import setup_logger
from gacha_core.web import create_app

# Load environment variables from .env file
load_dotenv()

logger = setup_logger(level=logging.INFO)


async def build_app() -> web.Application:
    config_path = os.environ.get("CONFIG_PATH", "config.json")

    try:
        config = load_config(config_path)
    except FileNotFoundError as e:
        logger.error(str(e))
        sys.exit(1)
    except ValueError as e:
        logger.error("Configuration validation failed: %s", e)
        sys.exit(1)

    database_path = os.environ.get("DATABASE_PATH")
    if database_path:
        config = replace(config, database_path=database_path)
        logger.info("Using database path from environment variable")

    setup_logger(
        level=logging.getLevelName(config.logging.level),
        webhook_url=os.environ.get("LOG_WEBHOOK_URL") or config.logging.webhook_url,
    )

    db = Database(config.database_path)
    await db.connect()
    logger.info(f"Database ready at {config.database_path}")

    return create_app(config, db, close_database=True)


def main() -> None:
    port = os.environ.get("PORT")
    host = os.environ.get("HOST")
    config_path = os.environ.get("CONFIG_PATH", "config.json")

    try:
        server_settings = load_config(config_path).server
    except (FileNotFoundError, ValueError) as e:
        logger.error(str(e))
        sys.exit(1)

    web.run_app(
        build_app(),
        host=host or server_settings.host,
        port=int(port) if port else server_settings.port,
        print=None,
    )


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        logger.info("Server shut down by user.")
