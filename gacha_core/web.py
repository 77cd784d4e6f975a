"""aiohttp application factory and request helpers shared by the function modules."""

from __future__ import annotations

import importlib
import json
from typing import Any, Mapping, Optional

from aiohttp import web

from .config import Config
from .constants import MAX_IMPORT_FILE_SIZE_BYTES
from .database import Database
from .logger import get_logger
from .rate_limiter import RateLimiter, enforce_rate_limit, resolve_settings
from .utils.error_messages import get_error_message
from .utils.errors import AuthError, ForbiddenError, GachaError, RateLimitedError
from .utils.network import is_trusted_proxy, resolve_client_ip

logger = get_logger()

CONFIG_KEY = web.AppKey("config", Config)
DB_KEY = web.AppKey("db", Database)
LIMITER_KEY = web.AppKey("limiter", RateLimiter)

FUNCTION_MODULES = (
    "functions.auth",
    "functions.catalog",
    "functions.play_gacha",
    "functions.check_ip_access",
    "functions.bulk_delete_cards",
    "functions.create_gacha_slots",
    "functions.bulk_convert_points",
    "functions.auto_convert_expired_slots",
    "functions.inventory",
    "functions.admin",
    "functions.import_user_migrations",
    "functions.bulk_create_profiles",
    "functions.import_transactions",
    "functions.import_inventory",
    "functions.import_history",
)

ALLOWED_METHODS = "GET, POST, PATCH, DELETE, OPTIONS"


def json_response(payload: Any, *, status: int = 200, headers: Optional[dict[str, str]] = None) -> web.Response:
    return web.json_response(payload, status=status, headers=headers)


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def camelize(record: Mapping[str, Any], *, exclude: tuple[str, ...] = ()) -> dict[str, Any]:
    """Row or dict with snake_case keys as a camelCase JSON object."""
    return {_camel(key): record[key] for key in record.keys() if key not in exclude}


def error_response(error_type: str, *, status: int = 400, **context: Any) -> web.Response:
    return json_response({"error": get_error_message(error_type, **context)}, status=status)


async def read_json(request: web.Request, *, allow_empty: bool = False) -> dict[str, Any]:
    """Decode a JSON object body or raise ``GachaError('invalid_json')``."""
    if not request.can_read_body:
        if allow_empty:
            return {}
        raise GachaError("invalid_json")

    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise GachaError("invalid_json") from exc

    if not isinstance(payload, dict):
        raise GachaError("invalid_json")
    return payload


def client_ip(request: web.Request) -> str:
    return resolve_client_ip(request.headers, request.remote)


def rate_limit_ip(request: web.Request) -> str:
    """Socket peer, or the forwarded client address when the peer is a trusted proxy."""
    remote = request.remote
    if is_trusted_proxy(remote, request.app[CONFIG_KEY].trusted_proxies):
        return resolve_client_ip(request.headers, remote)
    return remote or "unknown"


def bearer_token(request: web.Request) -> Optional[str]:
    header = request.headers.get("Authorization", "").strip()
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()


async def require_user(request: web.Request) -> str:
    """User id behind the request's bearer token."""
    token = bearer_token(request)
    if token is None:
        raise AuthError("auth_required")
    if not token:
        raise AuthError("auth_failed")

    user_id = await request.app[DB_KEY].get_session_user(token)
    if user_id is None:
        raise AuthError("auth_failed")
    return user_id


async def require_admin(request: web.Request) -> str:
    user_id = await require_user(request)
    if not await request.app[DB_KEY].is_admin(user_id):
        logger.warning("Admin endpoint denied | user=%s path=%s", user_id, request.path)
        raise ForbiddenError("admin_required")
    return user_id


async def read_import_payload(request: web.Request) -> tuple[str, str, str, Optional[str]]:
    """Admin id, tenant id, CSV text and file name of a CSV import request."""
    admin_id = await require_admin(request)
    payload = await read_json(request)
    tenant_id = payload.get("tenantId")
    if not isinstance(tenant_id, str) or not tenant_id.strip():
        raise GachaError("tenant_required")
    csv_data = payload.get("csvData")
    if not isinstance(csv_data, str) or not csv_data.strip():
        raise GachaError("csv_required")
    if len(csv_data.encode("utf-8")) > MAX_IMPORT_FILE_SIZE_BYTES:
        raise GachaError("import_too_large", status=413, limit_mb=MAX_IMPORT_FILE_SIZE_BYTES // (1024 * 1024))

    file_name = payload.get("fileName")
    if not isinstance(file_name, str) or not file_name.strip():
        file_name = None
    return admin_id, tenant_id.strip(), csv_data, file_name


async def apply_rate_limit(
    request: web.Request,
    key: str,
    *,
    user_id: Optional[str],
    default_cooldown: int,
    default_max_uses: int,
) -> int:
    settings = resolve_settings(
        request.app[CONFIG_KEY].rate_limits,
        key,
        default_cooldown=default_cooldown,
        default_max_uses=default_max_uses,
    )
    return await enforce_rate_limit(
        request.app[LIMITER_KEY],
        settings,
        user_id=user_id,
        client_ip=rate_limit_ip(request),
    )


def query_int(request: web.Request, name: str, default: int, *, maximum: Optional[int] = None) -> int:
    raw = request.query.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise GachaError("invalid_request") from exc
    if value < 0:
        raise GachaError("invalid_request")
    if maximum is not None:
        value = min(value, maximum)
    return value


def _add_cors_headers(headers, cors) -> None:
    headers["Access-Control-Allow-Origin"] = cors.allow_origin
    headers["Access-Control-Allow-Headers"] = ", ".join(cors.allow_headers)
    headers["Access-Control-Allow-Methods"] = ALLOWED_METHODS


@web.middleware
async def cors_middleware(request: web.Request, handler):
    cors = request.app[CONFIG_KEY].cors
    if request.method == "OPTIONS":
        response = web.Response(status=200, text="ok")
    else:
        try:
            response = await handler(request)
        except web.HTTPException as e:
            # Router 404/405 responses are raised rather than returned.
            _add_cors_headers(e.headers, cors)
            raise
    _add_cors_headers(response.headers, cors)
    return response


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except RateLimitedError as e:
        return json_response(
            {"error": e.message},
            status=e.status,
            headers={"Retry-After": str(e.retry_after)},
        )
    except GachaError as e:
        return json_response({"error": e.message}, status=e.status)
    except Exception:
        logger.exception("Unhandled error | %s %s", request.method, request.path)
        return error_response("internal_error", status=500)


def create_app(
    config: Config,
    db: Database,
    *,
    limiter: Optional[RateLimiter] = None,
    close_database: bool = False,
) -> web.Application:
    """Build the application and register every function module's routes."""
    # JSON string escaping can roughly double the size of a CSV upload.
    app = web.Application(
        middlewares=[cors_middleware, error_middleware],
        client_max_size=2 * MAX_IMPORT_FILE_SIZE_BYTES,
    )
    app[CONFIG_KEY] = config
    app[DB_KEY] = db
    app[LIMITER_KEY] = limiter or RateLimiter()

    for module_name in FUNCTION_MODULES:
        try:
            module = importlib.import_module(module_name)
            module.setup(app)
            logger.debug(f"Loaded function module: {module_name}")
        except Exception as e:
            logger.error(f"Failed to load function module {module_name}: {e}", exc_info=True)
            raise

    if close_database:
        app.on_cleanup.append(_close_database)

    return app


async def _close_database(app: web.Application) -> None:
    await app[DB_KEY].close()
    logger.info("Database connection closed.")
