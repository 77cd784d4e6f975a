from __future__ import annotations

from aiohttp import web

from gacha_core.constants import CARD_CATEGORIES
from gacha_core.logger import get_logger
from gacha_core.utils.errors import GachaError
from gacha_core.web import DB_KEY, json_response, read_json, require_admin

logger = get_logger()


async def bulk_delete_cards(request: web.Request) -> web.Response:
    """Delete every unassigned master card in a category."""
    admin_id = await require_admin(request)
    payload = await read_json(request)

    category = payload.get("category")
    if not category:
        raise GachaError("category_required")
    if category not in CARD_CATEGORIES:
        raise GachaError("invalid_category", category=category)

    deleted_count = await request.app[DB_KEY].bulk_delete_unassigned_cards(category)
    logger.info(f"Admin {admin_id} deleted {deleted_count} {category} cards")
    return json_response({"success": True, "deletedCount": deleted_count})


def setup(app: web.Application) -> None:
    app.router.add_post("/functions/bulk-delete-cards", bulk_delete_cards)
