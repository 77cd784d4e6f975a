"""Configuration management for the gacha backend."""

from __future__ import annotations

import ipaddress
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

from .constants import (
    AUTO_CONVERT_BATCH_LIMIT,
    DEFAULT_ALLOWED_PLAY_COUNTS,
    DEFAULT_SELECTION_DEADLINE_DAYS,
    INSERT_BATCH_SIZE,
    SESSION_TTL_HOURS,
)

CONFIG_PATH = Path("config.json")

VALID_RATE_LIMIT_SCOPES = {"user", "ip", "global"}

DEFAULT_CORS_HEADERS = ("authorization", "x-client-info", "apikey", "content-type")


@dataclass(frozen=True)
class ServerSettings:
    host: str = "0.0.0.0"
    port: int = 8080


@dataclass(frozen=True)
class CorsSettings:
    allow_origin: str = "*"
    allow_headers: tuple[str, ...] = DEFAULT_CORS_HEADERS


@dataclass(frozen=True)
class DrawSettings:
    allowed_play_counts: tuple[int, ...] = DEFAULT_ALLOWED_PLAY_COUNTS
    selection_deadline_days: int = DEFAULT_SELECTION_DEADLINE_DAYS


@dataclass(frozen=True)
class AutoConvertSettings:
    """Background conversion of drawn cards whose selection deadline passed."""
    interval_seconds: int = 0  # 0 disables the background loop
    batch_limit: int = AUTO_CONVERT_BATCH_LIMIT


@dataclass(frozen=True)
class SessionSettings:
    ttl_hours: int = SESSION_TTL_HOURS


@dataclass(frozen=True)
class LoggingSettings:
    level: str = "INFO"
    webhook_url: str | None = None


@dataclass(frozen=True)
class RateLimitRule:
    cooldown: int
    max_uses: int
    per: str


@dataclass
class Config:
    database_path: str = "gacha.db"
    server: ServerSettings = field(default_factory=ServerSettings)
    cors: CorsSettings = field(default_factory=CorsSettings)
    draw: DrawSettings = field(default_factory=DrawSettings)
    auto_convert: AutoConvertSettings = field(default_factory=AutoConvertSettings)
    sessions: SessionSettings = field(default_factory=SessionSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    rate_limits: dict[str, RateLimitRule] = field(default_factory=dict)
    # Peers whose forwarding headers are believed when rate limiting by IP.
    trusted_proxies: tuple[str, ...] = ()
    batch_size: int = INSERT_BATCH_SIZE


def _coerce_positive_int(value: Any, *, field_name: str, allow_zero: bool = False) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{field_name} must be an integer (got {value!r})") from exc
    minimum = 0 if allow_zero else 1
    if number < minimum:
        qualifier = "non-negative" if allow_zero else "positive"
        raise ValueError(f"{field_name} must be {qualifier} (got {number})")
    return number


def _parse_server_settings(payload: dict[str, Any] | None) -> ServerSettings:
    if not payload:
        return ServerSettings()
    if not isinstance(payload, dict):
        raise ValueError("server must be an object")

    port = _coerce_positive_int(payload.get("port", 8080), field_name="server.port")
    if port > 65535:
        raise ValueError(f"server.port must be between 1 and 65535 (got {port})")
    return ServerSettings(host=str(payload.get("host", "0.0.0.0")), port=port)


def _parse_cors_settings(payload: dict[str, Any] | None) -> CorsSettings:
    if not payload:
        return CorsSettings()
    if not isinstance(payload, dict):
        raise ValueError("cors must be an object")

    headers = payload.get("allow_headers", DEFAULT_CORS_HEADERS)
    if isinstance(headers, str) or not isinstance(headers, Iterable):
        raise ValueError("cors.allow_headers must be a list of header names")
    return CorsSettings(
        allow_origin=str(payload.get("allow_origin", "*")),
        allow_headers=tuple(str(h).lower() for h in headers),
    )


def _parse_draw_settings(payload: dict[str, Any] | None) -> DrawSettings:
    """Parse draw settings from config payload."""
    if not payload:
        return DrawSettings()
    if not isinstance(payload, dict):
        raise ValueError("draw must be an object")

    raw_counts = payload.get("allowed_play_counts", list(DEFAULT_ALLOWED_PLAY_COUNTS))
    if not isinstance(raw_counts, list) or not raw_counts:
        raise ValueError("draw.allowed_play_counts must be a non-empty list of integers")
    counts = tuple(
        sorted({_coerce_positive_int(c, field_name="draw.allowed_play_counts") for c in raw_counts})
    )

    deadline_days = _coerce_positive_int(
        payload.get("selection_deadline_days", DEFAULT_SELECTION_DEADLINE_DAYS),
        field_name="draw.selection_deadline_days",
    )
    if deadline_days > 365:
        raise ValueError(f"draw.selection_deadline_days must be at most 365 (got {deadline_days})")

    return DrawSettings(allowed_play_counts=counts, selection_deadline_days=deadline_days)


def _parse_auto_convert_settings(payload: dict[str, Any] | None) -> AutoConvertSettings:
    if not payload:
        return AutoConvertSettings()
    if not isinstance(payload, dict):
        raise ValueError("auto_convert must be an object")

    return AutoConvertSettings(
        interval_seconds=_coerce_positive_int(
            payload.get("interval_seconds", 0),
            field_name="auto_convert.interval_seconds",
            allow_zero=True,
        ),
        batch_limit=_coerce_positive_int(
            payload.get("batch_limit", AUTO_CONVERT_BATCH_LIMIT),
            field_name="auto_convert.batch_limit",
        ),
    )


def _parse_session_settings(payload: dict[str, Any] | None) -> SessionSettings:
    if not payload:
        return SessionSettings()
    if not isinstance(payload, dict):
        raise ValueError("sessions must be an object")
    return SessionSettings(
        ttl_hours=_coerce_positive_int(payload.get("ttl_hours", SESSION_TTL_HOURS), field_name="sessions.ttl_hours")
    )


def _parse_logging_settings(payload: dict[str, Any] | None) -> LoggingSettings:
    if not payload:
        return LoggingSettings()
    if not isinstance(payload, dict):
        raise ValueError("logging must be an object")

    level = str(payload.get("level", "INFO")).upper()
    if not isinstance(logging.getLevelName(level), int):
        raise ValueError(f"logging.level must be a standard logging level name (got {level!r})")
    webhook_url = payload.get("webhook_url") or None
    return LoggingSettings(level=level, webhook_url=webhook_url)


def _parse_rate_limits(payload: dict[str, Any] | None) -> dict[str, RateLimitRule]:
    """Parse rate limit definitions from configuration."""
    if not payload:
        return {}
    if not isinstance(payload, dict):
        raise ValueError("rate_limits must be an object mapping endpoint keys to settings")

    limits: dict[str, RateLimitRule] = {}
    for key, value in payload.items():
        if not isinstance(value, dict):
            raise ValueError(f"rate_limits entry for '{key}' must be an object")
        try:
            cooldown = int(value["cooldown"])
            max_uses = int(value["max_uses"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"rate_limits entry for '{key}' must include integer cooldown and max_uses") from exc
        if cooldown <= 0 or max_uses <= 0:
            raise ValueError(f"rate_limits entry for '{key}' must use positive cooldown and max_uses")
        per = str(value.get("per", "user")).lower()
        if per not in VALID_RATE_LIMIT_SCOPES:
            raise ValueError(
                f"rate_limits entry for '{key}': per must be one of {sorted(VALID_RATE_LIMIT_SCOPES)} (got {per!r})"
            )
        limits[key] = RateLimitRule(cooldown=cooldown, max_uses=max_uses, per=per)
    return limits


def _parse_trusted_proxies(payload: Any) -> tuple[str, ...]:
    if not payload:
        return ()
    if isinstance(payload, str) or not isinstance(payload, Iterable):
        raise ValueError("trusted_proxies must be a list of IP addresses or networks")

    proxies = []
    for entry in payload:
        try:
            proxies.append(str(ipaddress.ip_network(str(entry).strip(), strict=False)))
        except ValueError as exc:
            raise ValueError(f"trusted_proxies entry {entry!r} is not an IP address or network") from exc
    return tuple(proxies)


def load_config(config_path: str | Path = CONFIG_PATH) -> Config:
    """Load and parse configuration from JSON file."""
    path = Path(config_path)

    if not path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {path}\n"
            "Please copy config.example.json to config.json and fill in your values."
        )

    with path.open("r", encoding="utf-8") as file:
        data: dict[str, Any] = json.load(file)

    return Config(
        database_path=str(data.get("database_path", "gacha.db")),
        server=_parse_server_settings(data.get("server")),
        cors=_parse_cors_settings(data.get("cors")),
        draw=_parse_draw_settings(data.get("draw")),
        auto_convert=_parse_auto_convert_settings(data.get("auto_convert")),
        sessions=_parse_session_settings(data.get("sessions")),
        logging=_parse_logging_settings(data.get("logging")),
        rate_limits=_parse_rate_limits(data.get("rate_limits")),
        trusted_proxies=_parse_trusted_proxies(data.get("trusted_proxies")),
        batch_size=_coerce_positive_int(data.get("batch_size", INSERT_BATCH_SIZE), field_name="batch_size"),
    )
