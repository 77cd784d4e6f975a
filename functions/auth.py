from __future__ import annotations

import asyncio
import contextlib

from aiohttp import web

from gacha_core.constants import (
    EMAIL_PATTERN,
    LOGIN_COOLDOWN_SECONDS,
    LOGIN_MAX_USES,
    MIN_PASSWORD_LENGTH,
    SESSION_CLEANUP_INTERVAL_SECONDS,
    SIGNUP_COOLDOWN_SECONDS,
    SIGNUP_MAX_USES,
)
from gacha_core.database import Database
from gacha_core.logger import get_logger
from gacha_core.utils.errors import AuthError, GachaError, NotFoundError
from gacha_core.web import (
    CONFIG_KEY,
    DB_KEY,
    apply_rate_limit,
    bearer_token,
    json_response,
    read_json,
    require_user,
)

logger = get_logger()


def _validate_credentials(email: str, password: object) -> None:
    if not EMAIL_PATTERN.match(email):
        raise GachaError("invalid_email")
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        raise GachaError("weak_password", min_length=MIN_PASSWORD_LENGTH)


async def signup(request: web.Request) -> web.Response:
    await apply_rate_limit(
        request,
        "signup",
        user_id=None,
        default_cooldown=SIGNUP_COOLDOWN_SECONDS,
        default_max_uses=SIGNUP_MAX_USES,
    )
    payload = await read_json(request)
    db = request.app[DB_KEY]

    email = str(payload.get("email") or "").strip().lower()
    password = payload.get("password")
    _validate_credentials(email, password)

    tenant_id = None
    tenant_slug = payload.get("tenantSlug")
    if tenant_slug:
        tenant = await db.get_active_tenant_by_slug(str(tenant_slug))
        if tenant is None:
            raise NotFoundError("tenant_not_found")
        tenant_id = tenant["id"]

    display_name = payload.get("displayName")
    user_id = await db.create_user(
        email,
        password,
        display_name=str(display_name) if display_name else None,
        tenant_id=tenant_id,
    )
    token = await db.create_session(user_id, ttl_hours=request.app[CONFIG_KEY].sessions.ttl_hours)
    return json_response({"success": True, "userId": user_id, "token": token}, status=201)


async def login(request: web.Request) -> web.Response:
    await apply_rate_limit(
        request,
        "login",
        user_id=None,
        default_cooldown=LOGIN_COOLDOWN_SECONDS,
        default_max_uses=LOGIN_MAX_USES,
    )
    payload = await read_json(request)
    db = request.app[DB_KEY]

    email = str(payload.get("email") or "")
    password = payload.get("password")
    if not email or not isinstance(password, str):
        raise AuthError("invalid_credentials")

    user_id = await db.authenticate(email, password)
    if user_id is None:
        logger.info("Failed login attempt for %s", email.strip().lower())
        raise AuthError("invalid_credentials")

    token = await db.create_session(user_id, ttl_hours=request.app[CONFIG_KEY].sessions.ttl_hours)
    return json_response({"success": True, "userId": user_id, "token": token})


async def logout(request: web.Request) -> web.Response:
    await require_user(request)
    await request.app[DB_KEY].delete_session(bearer_token(request) or "")
    return json_response({"success": True})


async def me(request: web.Request) -> web.Response:
    user_id = await require_user(request)
    db = request.app[DB_KEY]
    profile = await db.get_profile(user_id)
    if profile is None:
        raise NotFoundError("profile_not_found")

    return json_response(
        {
            "user": {
                "id": user_id,
                "email": profile["email"],
                "displayName": profile["display_name"],
                "tenantId": profile["tenant_id"],
                "pointsBalance": profile["points_balance"],
                "lastLoginAt": profile["last_login_at"],
                "roles": await db.get_roles(user_id),
            }
        }
    )


async def _session_cleanup_loop(db: Database) -> None:
    while True:
        await asyncio.sleep(SESSION_CLEANUP_INTERVAL_SECONDS)
        try:
            await db.cleanup_expired_sessions()
        except Exception as error:
            logger.error(f"Failed to clean up expired sessions: {error}", exc_info=True)


async def _session_cleanup_ctx(app: web.Application):
    task = asyncio.create_task(_session_cleanup_loop(app[DB_KEY]))
    yield
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


def setup(app: web.Application) -> None:
    app.router.add_post("/auth/signup", signup)
    app.router.add_post("/auth/login", login)
    app.router.add_post("/auth/logout", logout)
    app.router.add_get("/auth/me", me)
    app.cleanup_ctx.append(_session_cleanup_ctx)
