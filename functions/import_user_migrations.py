"""Stage customers exported from the previous store for account creation."""

from __future__ import annotations

import asyncio

from aiohttp import web

from gacha_core.constants import IMPORT_ERROR_PREVIEW_LIMIT
from gacha_core.imports import parse_user_migrations
from gacha_core.logger import get_logger
from gacha_core.web import DB_KEY, json_response, read_import_payload

logger = get_logger()


async def import_user_migrations(request: web.Request) -> web.Response:
    admin_id, tenant_id, csv_data, file_name = await read_import_payload(request)

    parsed = await asyncio.to_thread(parse_user_migrations, csv_data)
    report = await request.app[DB_KEY].stage_user_migrations(
        tenant_id,
        parsed,
        file_name=file_name,
        imported_by=admin_id,
    )
    logger.info(
        f"Admin {admin_id} staged customers for tenant {tenant_id} from {file_name or 'upload'}: "
        f"{report.inserted} new, {report.updated} updated, {len(report.errors)} rejected"
    )
    payload = report.to_dict(error_limit=IMPORT_ERROR_PREVIEW_LIMIT)
    payload["duplicates"] = parsed.duplicates
    return json_response(payload)


def setup(app: web.Application) -> None:
    app.router.add_post("/functions/import-user-migrations", import_user_migrations)
