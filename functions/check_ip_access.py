"""Tenant IP allow-list check used by the storefront before rendering."""

from __future__ import annotations

from typing import Any, Mapping, Optional

import aiosqlite
from aiohttp import web

from gacha_core.logger import get_logger
from gacha_core.web import DB_KEY, client_ip, json_response, read_json

logger = get_logger()


def evaluate_access(ip: str, tenant: Optional[Mapping[str, Any]]) -> dict[str, Any]:
    """
    Decide whether ``ip`` may use the tenant's storefront.

    A missing tenant or a NULL allow-list leaves access open; an empty list
    blocks everyone.
    """
    if tenant is None:
        return {"allowed": True, "ip": ip, "reason": "tenant_not_found"}

    allowed_ips = tenant.get("allowed_ips")
    if allowed_ips is None:
        return {"allowed": True, "ip": ip}
    if len(allowed_ips) == 0:
        return {"allowed": False, "ip": ip, "reason": "all_blocked"}

    if ip in allowed_ips:
        return {"allowed": True, "ip": ip}
    return {"allowed": False, "ip": ip, "reason": "ip_not_allowed"}


async def check_ip_access(request: web.Request) -> web.Response:
    ip = client_ip(request)
    try:
        payload = await read_json(request, allow_empty=True)
        tenant_slug = payload.get("tenantSlug")
        if not tenant_slug:
            return json_response({"allowed": True, "ip": ip})

        try:
            tenant = await request.app[DB_KEY].get_active_tenant_by_slug(str(tenant_slug))
        except (aiosqlite.Error, RuntimeError) as e:
            # Fail open so a database outage does not lock tenants out.
            logger.error(f"Tenant lookup failed for {tenant_slug}: {e}")
            return json_response({"allowed": True, "ip": ip, "error": "DB error"})

        decision = evaluate_access(ip, tenant)
        if not decision["allowed"]:
            logger.info(f"IP access denied | tenant={tenant_slug} ip={ip} reason={decision['reason']}")
        return json_response(decision)

    except Exception:
        logger.exception("check-ip-access failed")
        return json_response({"allowed": True, "error": "Internal error"}, status=500)


def setup(app: web.Application) -> None:
    app.router.add_post("/functions/check-ip-access", check_ip_access)
