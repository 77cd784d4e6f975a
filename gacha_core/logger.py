"""
Logging module for the gacha backend.

Provides the shared ``gacha_core`` logger with console output and an
optional webhook handler that forwards errors to an alerting endpoint.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Optional

import aiohttp

# Global logger instance
logger: Optional[logging.Logger] = None

LOG_FORMAT = "[%(asctime)s] %(levelname)s:%(name)s: %(message)s"
WEBHOOK_MESSAGE_LIMIT = 2000


class WebhookHandler(logging.Handler):
    """Logging handler that posts records to an HTTP webhook."""

    def __init__(self, url: Optional[str] = None, timeout: float = 5.0):
        super().__init__()
        self.url = url
        self.timeout = timeout
        # Pending deliveries, held until each task finishes.
        self._tasks: set[asyncio.Task] = set()

    def emit(self, record: logging.LogRecord) -> None:
        """Emit a log record to the webhook if one is configured."""
        if not self.url:
            return

        try:
            base_msg = f"**{record.levelname}**: {record.getMessage()}"
            if record.exc_info:
                formatted_trace = self.format(record)
                if len(formatted_trace) > WEBHOOK_MESSAGE_LIMIT - 150:
                    formatted_trace = formatted_trace[: WEBHOOK_MESSAGE_LIMIT - 150] + "... (truncated)"
                msg = f"{base_msg}\n```{formatted_trace}```"
            else:
                msg = base_msg
        except Exception:
            msg = f"**{record.levelname}**: {record.getMessage()}"

        if len(msg) > WEBHOOK_MESSAGE_LIMIT:
            msg = msg[: WEBHOOK_MESSAGE_LIMIT - 3] + "..."

        self._schedule_send(msg)

    def _schedule_send(self, message: str) -> None:
        """Schedule delivery on the running loop; records emitted outside a loop are dropped."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return

        try:
            task = loop.create_task(self._post(message))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        except Exception as e:
            # stderr, so a broken webhook cannot recurse into logging
            print(f"WebhookHandler: Failed to schedule message: {e}", file=sys.stderr)

    async def _post(self, message: str) -> None:
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.url, json={"content": message}) as resp:
                    if resp.status >= 400:
                        print(f"WebhookHandler: webhook returned HTTP {resp.status}", file=sys.stderr)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            print(f"WebhookHandler: Failed to send message: {e}", file=sys.stderr)


def setup_logger(level: int = logging.INFO, webhook_url: Optional[str] = None) -> logging.Logger:
    """
    Set up the logger with a console handler and an optional webhook handler.

    Args:
        level: Logging level (default: INFO)
        webhook_url: Endpoint that receives ERROR records

    Returns:
        Configured logger instance
    """
    global logger

    logger = logging.getLogger("gacha_core")
    logger.setLevel(level)

    # Remove existing handlers to avoid duplicates
    logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    logger.addHandler(console_handler)

    if webhook_url:
        webhook_handler = WebhookHandler(webhook_url)
        webhook_handler.setLevel(logging.ERROR)
        logger.addHandler(webhook_handler)

    logger.propagate = False

    return logger


def get_logger() -> logging.Logger:
    """
    Get the global logger instance.

    Returns:
        Logger instance or creates a basic one if not initialized
    """
    global logger
    if logger is None:
        logger = logging.getLogger("gacha_core")
        logger.setLevel(logging.INFO)

        if not logger.handlers:
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
            logger.addHandler(handler)
            logger.propagate = False

    return logger


# Initialize a basic logger for immediate use
logger = get_logger()
