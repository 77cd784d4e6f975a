from __future__ import annotations

from aiohttp import web

from gacha_core.constants import IMPORT_ERROR_PREVIEW_LIMIT, PROFILE_MIGRATION_BATCH_LIMIT
from gacha_core.logger import get_logger
from gacha_core.utils.errors import GachaError
from gacha_core.web import DB_KEY, json_response, read_json, require_admin

logger = get_logger()


async def bulk_create_profiles(request: web.Request) -> web.Response:
    """Create accounts for the next batch of staged customers; call again while ``hasMore``."""
    admin_id = await require_admin(request)
    payload = await read_json(request)

    tenant_id = payload.get("tenantId")
    if not isinstance(tenant_id, str) or not tenant_id.strip():
        raise GachaError("tenant_required")
    limit = payload.get("limit", PROFILE_MIGRATION_BATCH_LIMIT)
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
        raise GachaError("invalid_request")

    report = await request.app[DB_KEY].apply_user_migrations(
        tenant_id.strip(),
        limit=min(limit, PROFILE_MIGRATION_BATCH_LIMIT),
    )
    logger.info(
        f"Admin {admin_id} created {report.profiles_created} profiles for tenant {tenant_id} "
        f"({report.total_remaining} remaining)"
    )
    return json_response(report.to_dict(error_limit=IMPORT_ERROR_PREVIEW_LIMIT))


def setup(app: web.Application) -> None:
    app.router.add_post("/functions/bulk-create-profiles", bulk_create_profiles)
