"""Public gacha catalog and the admin card list."""

from __future__ import annotations

from typing import Any, Mapping, Optional

from aiohttp import web

from gacha_core.constants import CARD_CATEGORIES, DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, PUBLIC_GACHA_STATUSES
from gacha_core.utils.errors import GachaError, NotFoundError
from gacha_core.web import DB_KEY, camelize, json_response, query_int, require_admin


def serialize_gacha(gacha: Mapping[str, Any]) -> dict[str, Any]:
    return camelize(gacha)


def _category_filter(request: web.Request) -> Optional[str]:
    category = request.query.get("category") or None
    if category is not None and category not in CARD_CATEGORIES:
        raise GachaError("invalid_category", category=category)
    return category


async def list_gachas(request: web.Request) -> web.Response:
    db = request.app[DB_KEY]
    tenant_id = None
    tenant_slug = request.query.get("tenant")
    if tenant_slug:
        tenant = await db.get_active_tenant_by_slug(tenant_slug)
        if tenant is None:
            return json_response({"gachas": []})
        tenant_id = tenant["id"]

    gachas = await db.list_gachas(
        category=_category_filter(request),
        tag=request.query.get("tag") or None,
        tenant_id=tenant_id,
    )
    return json_response({"gachas": [serialize_gacha(g) for g in gachas]})


async def get_gacha(request: web.Request) -> web.Response:
    db = request.app[DB_KEY]
    gacha_id = request.match_info["gacha_id"]
    gacha = await db.get_gacha(gacha_id)
    # Drafts and archived gachas are only visible through the admin listing.
    if gacha is None or gacha["status"] not in PUBLIC_GACHA_STATUSES:
        raise NotFoundError("gacha_not_found")

    prizes = await db.get_gacha_prize_summary(gacha_id)
    return json_response({"gacha": serialize_gacha(gacha), "prizes": [camelize(p) for p in prizes]})


async def list_cards(request: web.Request) -> web.Response:
    await require_admin(request)
    cards = await request.app[DB_KEY].list_cards(
        category=_category_filter(request),
        gacha_id=request.query.get("gachaId") or None,
        unassigned_only=request.query.get("unassigned") in ("1", "true"),
        limit=query_int(request, "limit", DEFAULT_PAGE_SIZE, maximum=MAX_PAGE_SIZE),
        offset=query_int(request, "offset", 0),
    )
    return json_response({"cards": [camelize(card) for card in cards]})


def setup(app: web.Application) -> None:
    app.router.add_get("/gachas", list_gachas)
    app.router.add_get("/gachas/{gacha_id}", get_gacha)
    app.router.add_get("/cards", list_cards)
