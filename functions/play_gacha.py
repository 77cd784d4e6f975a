from __future__ import annotations

from aiohttp import web

from gacha_core.constants import PLAY_GACHA_COOLDOWN_SECONDS, PLAY_GACHA_MAX_USES
from gacha_core.logger import get_logger
from gacha_core.utils.errors import GachaError
from gacha_core.web import CONFIG_KEY, DB_KEY, apply_rate_limit, json_response, read_json, require_user

logger = get_logger()


async def play_gacha(request: web.Request) -> web.Response:
    """Draw one, ten or a hundred slots from an active gacha."""
    user_id = await require_user(request)
    await apply_rate_limit(
        request,
        "play_gacha",
        user_id=user_id,
        default_cooldown=PLAY_GACHA_COOLDOWN_SECONDS,
        default_max_uses=PLAY_GACHA_MAX_USES,
    )

    payload = await read_json(request)
    draw_settings = request.app[CONFIG_KEY].draw

    gacha_id = payload.get("gachaId")
    if not isinstance(gacha_id, str) or not gacha_id:
        raise GachaError("invalid_request")

    play_count = payload.get("playCount")
    allowed = draw_settings.allowed_play_counts
    if isinstance(play_count, bool) or not isinstance(play_count, int) or play_count not in allowed:
        raise GachaError("invalid_play_count", allowed=", ".join(str(count) for count in allowed))

    result = await request.app[DB_KEY].play_gacha_atomic(
        gacha_id=gacha_id,
        play_count=play_count,
        user_id=user_id,
        selection_deadline_days=draw_settings.selection_deadline_days,
    )
    return json_response(result.to_dict())


def setup(app: web.Application) -> None:
    app.router.add_post("/functions/play-gacha", play_gacha)
