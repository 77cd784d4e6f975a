"""
Automatic conversion of drawn cards whose selection deadline has passed.

Runs on demand through the admin endpoint and, when
``auto_convert.interval_seconds`` is non-zero, as a periodic background task.
"""

from __future__ import annotations

import asyncio
import contextlib

from aiohttp import web

from gacha_core.config import AutoConvertSettings
from gacha_core.database import Database
from gacha_core.logger import get_logger
from gacha_core.utils.errors import GachaError
from gacha_core.web import CONFIG_KEY, DB_KEY, json_response, read_json, require_admin

logger = get_logger()


async def auto_convert_expired_slots(request: web.Request) -> web.Response:
    admin_id = await require_admin(request)
    payload = await read_json(request, allow_empty=True)
    settings = request.app[CONFIG_KEY].auto_convert

    limit = payload.get("limit", settings.batch_limit)
    if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
        raise GachaError("invalid_request")

    logger.info(f"Admin {admin_id} triggered auto-conversion (limit {limit})")
    report = await request.app[DB_KEY].auto_convert_expired_slots(limit=limit)
    return json_response(report.to_dict())


async def _auto_convert_loop(db: Database, settings: AutoConvertSettings) -> None:
    while True:
        await asyncio.sleep(settings.interval_seconds)
        try:
            await db.auto_convert_expired_slots(limit=settings.batch_limit)
        except Exception as error:
            logger.error(f"Auto-conversion run failed: {error}", exc_info=True)


async def _auto_convert_ctx(app: web.Application):
    settings = app[CONFIG_KEY].auto_convert
    if settings.interval_seconds <= 0:
        yield
        return

    task = asyncio.create_task(_auto_convert_loop(app[DB_KEY], settings))
    logger.info(f"Started auto-conversion task (every {settings.interval_seconds}s)")
    yield
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


def setup(app: web.Application) -> None:
    app.router.add_post("/functions/auto-convert-expired-slots", auto_convert_expired_slots)
    app.cleanup_ctx.append(_auto_convert_ctx)
