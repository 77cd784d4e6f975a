"""Admin endpoints: gacha lifecycle, points, shipping queue, master cards and tenants."""

from __future__ import annotations

from typing import Any, Optional

from aiohttp import web

from gacha_core.constants import APP_ROLES, DEFAULT_PAGE_SIZE, GACHA_STATUSES, MAX_PAGE_SIZE
from gacha_core.logger import get_logger
from gacha_core.utils.errors import ForbiddenError, GachaError, NotFoundError
from gacha_core.web import DB_KEY, camelize, json_response, query_int, read_json, require_admin

from .catalog import serialize_gacha

logger = get_logger()


def _required_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise GachaError("invalid_request")
    return value.strip()


def _optional_str(payload: dict[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise GachaError("invalid_request")
    return value


def _allowed_ips(payload: dict[str, Any]) -> Optional[list[str]]:
    allowed_ips = payload.get("allowedIps")
    if allowed_ips is not None and (
        not isinstance(allowed_ips, list) or not all(isinstance(ip, str) for ip in allowed_ips)
    ):
        raise GachaError("invalid_request")
    return allowed_ips


def _int_field(payload: dict[str, Any], key: str, default: int) -> int:
    value = payload.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise GachaError("invalid_request")
    return value


async def list_gachas(request: web.Request) -> web.Response:
    await require_admin(request)
    status = request.query.get("status")
    if status and status not in GACHA_STATUSES:
        raise GachaError("invalid_status", status=status)
    gachas = await request.app[DB_KEY].list_gachas(statuses=(status,) if status else GACHA_STATUSES)
    return json_response({"gachas": [serialize_gacha(g) for g in gachas]})


async def create_gacha(request: web.Request) -> web.Response:
    admin_id = await require_admin(request)
    payload = await read_json(request)

    display_tags = payload.get("displayTags") or []
    if not isinstance(display_tags, list) or not all(isinstance(tag, str) for tag in display_tags):
        raise GachaError("invalid_request")

    gacha_id = await request.app[DB_KEY].create_gacha(
        title=_required_str(payload, "title"),
        price_per_play=_int_field(payload, "pricePerPlay", 0),
        category=_optional_str(payload, "category"),
        display_tags=display_tags,
        status=_optional_str(payload, "status") or "draft",
        banner_url=_optional_str(payload, "bannerUrl"),
        pop_image_url=_optional_str(payload, "popImageUrl"),
        notice_text=_optional_str(payload, "noticeText"),
        animation_type=_optional_str(payload, "animationType") or "default",
        fake_s_tier_chance=_int_field(payload, "fakeSTierChance", 15),
        tenant_id=_optional_str(payload, "tenantId"),
    )
    logger.info(f"Admin {admin_id} created gacha {gacha_id}")
    return json_response({"success": True, "gachaId": gacha_id}, status=201)


async def update_gacha_status(request: web.Request) -> web.Response:
    await require_admin(request)
    payload = await read_json(request)
    gacha = await request.app[DB_KEY].update_gacha_status(
        request.match_info["gacha_id"],
        _required_str(payload, "status"),
    )
    return json_response({"success": True, "gacha": serialize_gacha(gacha)})


async def adjust_points(request: web.Request) -> web.Response:
    admin_id = await require_admin(request)
    payload = await read_json(request)

    amount = payload.get("amount")
    if isinstance(amount, bool) or not isinstance(amount, int) or amount == 0:
        raise GachaError("invalid_amount")

    new_balance, ledger_id = await request.app[DB_KEY].credit_points(
        user_id=_required_str(payload, "userId"),
        amount=amount,
        staff_user_id=admin_id,
        reason=_optional_str(payload, "reason"),
    )
    return json_response({"success": True, "newBalance": new_balance, "ledgerId": ledger_id})


async def list_inventory_actions(request: web.Request) -> web.Response:
    await require_admin(request)
    actions = await request.app[DB_KEY].list_inventory_actions(
        action_type=request.query.get("type") or None,
        status=request.query.get("status") or None,
        limit=query_int(request, "limit", DEFAULT_PAGE_SIZE, maximum=MAX_PAGE_SIZE),
        offset=query_int(request, "offset", 0),
    )
    return json_response({"actions": [camelize(action) for action in actions]})


async def update_inventory_action(request: web.Request) -> web.Response:
    admin_id = await require_admin(request)
    payload = await read_json(request)
    action = await request.app[DB_KEY].update_inventory_action_status(
        request.match_info["action_id"],
        _required_str(payload, "status"),
        tracking_number=_optional_str(payload, "trackingNumber"),
    )
    logger.info(f"Admin {admin_id} updated inventory action {action['id']} to {action['status']}")
    return json_response({"success": True, "action": camelize(action)})


async def create_card(request: web.Request) -> web.Response:
    await require_admin(request)
    payload = await read_json(request)
    card_id = await request.app[DB_KEY].create_card(
        name=_required_str(payload, "name"),
        prize_tier=_optional_str(payload, "prizeTier") or "miss",
        conversion_points=_int_field(payload, "conversionPoints", 0),
        category=_optional_str(payload, "category"),
        rarity=_optional_str(payload, "rarity") or "D",
        image_url=_optional_str(payload, "imageUrl"),
        tenant_id=_optional_str(payload, "tenantId"),
        admin_note=_optional_str(payload, "adminNote"),
    )
    return json_response({"success": True, "cardId": card_id}, status=201)


async def create_tenant(request: web.Request) -> web.Response:
    admin_id = await require_admin(request)
    payload = await read_json(request)
    allowed_ips = _allowed_ips(payload)
    tenant_id = await request.app[DB_KEY].create_tenant(
        slug=_required_str(payload, "slug"),
        name=_required_str(payload, "name"),
        allowed_ips=allowed_ips,
    )
    logger.info(f"Admin {admin_id} created tenant {tenant_id}")
    return json_response({"success": True, "tenantId": tenant_id}, status=201)


async def update_tenant(request: web.Request) -> web.Response:
    """Replace a tenant's IP allow-list; ``allowedIps: null`` opens the storefront to everyone."""
    admin_id = await require_admin(request)
    payload = await read_json(request)
    if "allowedIps" not in payload:
        raise GachaError("invalid_request")

    tenant_id = request.match_info["tenant_id"]
    allowed_ips = _allowed_ips(payload)
    if not await request.app[DB_KEY].update_tenant_allowed_ips(tenant_id, allowed_ips):
        raise NotFoundError("tenant_not_found")

    logger.info(f"Admin {admin_id} set allowed IPs for tenant {tenant_id}: {allowed_ips}")
    return json_response({"success": True, "tenantId": tenant_id, "allowedIps": allowed_ips})


async def _role_change(request: web.Request) -> tuple[str, str, str]:
    admin_id = await require_admin(request)
    if not await request.app[DB_KEY].is_super_admin(admin_id):
        raise ForbiddenError("admin_required")

    payload = await read_json(request)
    user_id = _required_str(payload, "userId")
    role = _required_str(payload, "role")
    if role not in APP_ROLES:
        raise GachaError("invalid_role", role=role)
    if await request.app[DB_KEY].get_user(user_id) is None:
        raise NotFoundError("user_not_found")
    return admin_id, user_id, role


async def grant_role(request: web.Request) -> web.Response:
    admin_id, user_id, role = await _role_change(request)
    db = request.app[DB_KEY]
    await db.add_role(user_id, role)
    logger.info(f"Super admin {admin_id} granted {role} to {user_id}")
    return json_response({"success": True, "roles": await db.get_roles(user_id)})


async def revoke_role(request: web.Request) -> web.Response:
    admin_id, user_id, role = await _role_change(request)
    db = request.app[DB_KEY]
    removed = await db.remove_role(user_id, role)
    if removed:
        logger.info(f"Super admin {admin_id} revoked {role} from {user_id}")
    return json_response({"success": True, "removed": removed, "roles": await db.get_roles(user_id)})


def setup(app: web.Application) -> None:
    app.router.add_get("/admin/gachas", list_gachas)
    app.router.add_post("/admin/gachas", create_gacha)
    app.router.add_patch("/admin/gachas/{gacha_id}/status", update_gacha_status)
    app.router.add_post("/admin/points", adjust_points)
    app.router.add_get("/admin/inventory-actions", list_inventory_actions)
    app.router.add_patch("/admin/inventory-actions/{action_id}", update_inventory_action)
    app.router.add_post("/admin/cards", create_card)
    app.router.add_post("/admin/tenants", create_tenant)
    app.router.add_patch("/admin/tenants/{tenant_id}", update_tenant)
    app.router.add_post("/admin/roles", grant_role)
    app.router.add_delete("/admin/roles", revoke_role)
