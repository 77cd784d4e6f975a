"""Admin view of past CSV imports, and removal of an import with the rows it loaded."""

from __future__ import annotations

from aiohttp import web

from gacha_core.constants import DEFAULT_PAGE_SIZE, IMPORT_DATA_TYPES, MAX_PAGE_SIZE
from gacha_core.logger import get_logger
from gacha_core.utils.errors import GachaError
from gacha_core.web import DB_KEY, camelize, json_response, query_int, read_json, require_admin

logger = get_logger()


async def list_import_history(request: web.Request) -> web.Response:
    await require_admin(request)
    data_type = request.query.get("dataType") or None
    if data_type is not None and data_type not in IMPORT_DATA_TYPES:
        raise GachaError("invalid_request")

    history = await request.app[DB_KEY].list_import_history(
        tenant_id=request.query.get("tenantId") or None,
        data_type=data_type,
        limit=query_int(request, "limit", DEFAULT_PAGE_SIZE, maximum=MAX_PAGE_SIZE),
        offset=query_int(request, "offset", 0),
    )
    return json_response({"history": [camelize(row) for row in history]})


async def delete_import_history(request: web.Request) -> web.Response:
    admin_id = await require_admin(request)
    payload = await read_json(request)

    history_id = payload.get("historyId")
    if not isinstance(history_id, str) or not history_id.strip():
        raise GachaError("invalid_request")

    data_type, deleted = await request.app[DB_KEY].delete_import_history(history_id.strip())
    logger.info(f"Admin {admin_id} deleted {data_type} import {history_id} ({deleted} rows)")
    return json_response({"success": True, "dataType": data_type, "deletedRecords": deleted})


def setup(app: web.Application) -> None:
    app.router.add_get("/admin/import-history", list_import_history)
    app.router.add_post("/functions/delete-import-history", delete_import_history)
