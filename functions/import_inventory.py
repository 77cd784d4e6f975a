from __future__ import annotations

import asyncio

from aiohttp import web

from gacha_core.constants import IMPORT_ERROR_PREVIEW_LIMIT
from gacha_core.imports import parse_inventory
from gacha_core.logger import get_logger
from gacha_core.web import DB_KEY, json_response, read_import_payload

logger = get_logger()


async def import_inventory(request: web.Request) -> web.Response:
    """Load historical shipping requests and point conversions."""
    admin_id, tenant_id, csv_data, file_name = await read_import_payload(request)

    parsed = await asyncio.to_thread(parse_inventory, csv_data)
    report = await request.app[DB_KEY].import_inventory_actions(
        tenant_id,
        parsed,
        file_name=file_name,
        imported_by=admin_id,
    )
    logger.info(f"Admin {admin_id} imported {report.inserted} inventory actions for tenant {tenant_id}")
    return json_response(report.to_dict(error_limit=IMPORT_ERROR_PREVIEW_LIMIT))


def setup(app: web.Application) -> None:
    app.router.add_post("/functions/import-inventory", import_inventory)
