from __future__ import annotations

from typing import Any

from aiohttp import web

from gacha_core.logger import get_logger
from gacha_core.models import SlotItem
from gacha_core.utils.errors import GachaError
from gacha_core.web import CONFIG_KEY, DB_KEY, json_response, read_json, require_admin

logger = get_logger()


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def parse_slot_items(raw_items: Any) -> list[SlotItem]:
    """Turn the request's ``items`` array into slot items, rejecting malformed entries."""
    if not isinstance(raw_items, list) or not raw_items:
        raise GachaError("missing_gacha_items")

    items: list[SlotItem] = []
    for index, entry in enumerate(raw_items):
        if not isinstance(entry, dict):
            raise GachaError("invalid_slot_item", index=index, reason="item must be an object")

        quantity = entry.get("quantity", 1)
        if not _is_int(quantity):
            raise GachaError("invalid_slot_item", index=index, reason="quantity must be an integer")
        conversion_points = entry.get("conversionPoints", 0)
        if not _is_int(conversion_points):
            raise GachaError("invalid_slot_item", index=index, reason="conversionPoints must be an integer")

        items.append(
            SlotItem(
                name=str(entry.get("name") or "").strip(),
                quantity=quantity,
                prize_tier=str(entry.get("prizeTier") or "miss"),
                conversion_points=conversion_points,
                image_url=entry.get("imageUrl") or None,
                category=entry.get("category") or None,
            )
        )
    return items


async def create_gacha_slots(request: web.Request) -> web.Response:
    admin_id = await require_admin(request)
    payload = await read_json(request)

    gacha_id = payload.get("gachaId")
    if not isinstance(gacha_id, str) or not gacha_id:
        raise GachaError("missing_gacha_items")
    items = parse_slot_items(payload.get("items"))

    result = await request.app[DB_KEY].create_gacha_slots(
        gacha_id,
        items,
        append_mode=bool(payload.get("appendMode", False)),
        batch_size=request.app[CONFIG_KEY].batch_size,
    )
    logger.info(f"Admin {admin_id} filled gacha {gacha_id}: {result.added_slots} slots")
    return json_response(result.to_dict())


def setup(app: web.Application) -> None:
    app.router.add_post("/functions/create-gacha-slots", create_gacha_slots)
