from __future__ import annotations

import json
from typing import Any, Mapping

from aiohttp import web

from gacha_core.constants import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from gacha_core.utils.errors import GachaError, NotFoundError
from gacha_core.web import DB_KEY, camelize, json_response, query_int, read_json, require_user


def _serialize_ledger_entry(row: Mapping[str, Any]) -> dict[str, Any]:
    entry = camelize(row, exclude=("metadata",))
    entry["metadata"] = json.loads(row["metadata"]) if row["metadata"] else None
    return entry


async def get_inventory(request: web.Request) -> web.Response:
    """Cards awaiting a shipping or conversion decision."""
    user_id = await require_user(request)
    items = await request.app[DB_KEY].get_user_inventory(user_id)
    return json_response({"items": [camelize(item) for item in items]})


async def request_shipping(request: web.Request) -> web.Response:
    user_id = await require_user(request)
    payload = await read_json(request)

    slot_ids = payload.get("slotIds")
    if not isinstance(slot_ids, list) or not slot_ids:
        raise GachaError("no_items")
    if not all(isinstance(slot_id, str) and slot_id for slot_id in slot_ids):
        raise GachaError("invalid_request")

    action_ids = await request.app[DB_KEY].request_shipping(user_id, slot_ids)
    return json_response({"success": True, "requestedCount": len(action_ids), "actionIds": action_ids})


async def get_history(request: web.Request) -> web.Response:
    user_id = await require_user(request)
    transactions = await request.app[DB_KEY].get_user_transactions(
        user_id,
        limit=query_int(request, "limit", DEFAULT_PAGE_SIZE, maximum=MAX_PAGE_SIZE),
        offset=query_int(request, "offset", 0),
    )
    return json_response({"transactions": [camelize(t) for t in transactions]})


async def get_points(request: web.Request) -> web.Response:
    user_id = await require_user(request)
    db = request.app[DB_KEY]
    profile = await db.get_profile(user_id)
    if profile is None:
        raise NotFoundError("profile_not_found")

    entries = await db.get_point_transactions(
        user_id,
        limit=query_int(request, "limit", DEFAULT_PAGE_SIZE, maximum=MAX_PAGE_SIZE),
        offset=query_int(request, "offset", 0),
    )
    return json_response(
        {
            "balance": profile["points_balance"],
            "total": await db.count_point_transactions(user_id),
            "transactions": [_serialize_ledger_entry(entry) for entry in entries],
        }
    )


def setup(app: web.Application) -> None:
    app.router.add_get("/inventory", get_inventory)
    app.router.add_post("/inventory/ship", request_shipping)
    app.router.add_get("/history", get_history)
    app.router.add_get("/points", get_points)
