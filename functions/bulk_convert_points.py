from __future__ import annotations

from typing import Any

from aiohttp import web

from gacha_core.utils.errors import GachaError
from gacha_core.web import DB_KEY, json_response, read_json, require_user


def extract_slot_ids(raw_items: Any) -> list[str]:
    """Slot ids from ``[{slotId, ...}]``; any client-sent point values are ignored."""
    if not isinstance(raw_items, list) or not raw_items:
        raise GachaError("no_items")

    slot_ids: list[str] = []
    for entry in raw_items:
        slot_id = entry.get("slotId") if isinstance(entry, dict) else None
        if not isinstance(slot_id, str) or not slot_id:
            raise GachaError("invalid_request")
        slot_ids.append(slot_id)
    return slot_ids


async def bulk_convert_points(request: web.Request) -> web.Response:
    user_id = await require_user(request)
    payload = await read_json(request)
    slot_ids = extract_slot_ids(payload.get("items"))

    result = await request.app[DB_KEY].convert_slots_to_points(user_id, slot_ids)
    return json_response(result.to_dict())


def setup(app: web.Application) -> None:
    app.router.add_post("/functions/bulk-convert-points", bulk_convert_points)
