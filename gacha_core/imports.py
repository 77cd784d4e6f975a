"""CSV parsing for legacy data imports.

Parsers are synchronous and meant to run in a worker thread. Each returns the
validated rows plus per-row error strings; nothing here touches the database.
"""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from .constants import ACTION_STATUSES, EMAIL_PATTERN, TRANSACTION_STATUSES
from .logger import get_logger
from .utils.errors import GachaError

logger = get_logger()

NULL_MARKERS = {"", "null", "none"}

USER_COLUMN_ALIASES = {
    "email": "email",
    "mail": "email",
    "メールアドレス": "email",
    "name": "display_name",
    "display_name": "display_name",
    "表示名": "display_name",
    "last_name": "last_name",
    "lastname": "last_name",
    "姓": "last_name",
    "first_name": "first_name",
    "firstname": "first_name",
    "名": "first_name",
    "points": "points_balance",
    "points_balance": "points_balance",
    "availablepoint": "points_balance",
    "ポイント": "points_balance",
    "ポイント残高": "points_balance",
    "phone": "phone_number",
    "tel": "phone_number",
    "phone_number": "phone_number",
    "電話番号": "phone_number",
    "zip": "postal_code",
    "zipcode": "postal_code",
    "postal_code": "postal_code",
    "郵便番号": "postal_code",
    "prefecture": "prefecture",
    "都道府県": "prefecture",
    "city": "city",
    "市区町村": "city",
    "address": "address_line1",
    "address_line1": "address_line1",
    "住所1": "address_line1",
    "building": "address_line2",
    "address_line2": "address_line2",
    "住所2": "address_line2",
    "id": "legacy_user_id",
    "user_id": "legacy_user_id",
    "legacy_user_id": "legacy_user_id",
    "旧id": "legacy_user_id",
}

TRANSACTION_COLUMN_ALIASES = {
    "email": "user_email",
    "mail": "user_email",
    "user_email": "user_email",
    "メールアドレス": "user_email",
    "user_id": "legacy_user_id",
    "legacy_user_id": "legacy_user_id",
    "gacha": "gacha_title",
    "gacha_title": "gacha_title",
    "pack": "gacha_title",
    "ガチャ": "gacha_title",
    "play_count": "play_count",
    "plays": "play_count",
    "回数": "play_count",
    "point": "total_spent_points",
    "points": "total_spent_points",
    "spent": "total_spent_points",
    "total_spent_points": "total_spent_points",
    "ポイント": "total_spent_points",
    "status": "status",
    "created": "created_at",
    "created_at": "created_at",
    "date": "created_at",
    "日時": "created_at",
}

INVENTORY_COLUMN_ALIASES = {
    "email": "user_email",
    "mail": "user_email",
    "user_email": "user_email",
    "メールアドレス": "user_email",
    "user_id": "legacy_user_id",
    "legacy_user_id": "legacy_user_id",
    "card": "card_name",
    "card_name": "card_name",
    "item": "card_name",
    "カード": "card_name",
    "action": "action_type",
    "action_type": "action_type",
    "type": "action_type",
    "status": "status",
    "ステータス": "status",
    "tracking": "tracking_number",
    "tracking_number": "tracking_number",
    "追跡番号": "tracking_number",
    "points": "converted_points",
    "converted_points": "converted_points",
    "redemption_point": "converted_points",
    "ポイント": "converted_points",
    "requested_at": "requested_at",
    "created": "requested_at",
    "date": "requested_at",
    "processed_at": "processed_at",
    "modified": "processed_at",
    "id": "legacy_id",
    "legacy_id": "legacy_id",
}

INVENTORY_STATUS_ALIASES = {
    "pending": "pending",
    "processing": "processing",
    "completed": "completed",
    "shipped": "shipped",
    "未処理": "pending",
    "処理中": "processing",
    "完了": "completed",
    "発送済": "shipped",
}


@dataclass(slots=True)
class ParsedImport:
    """Validated rows of one CSV file."""

    rows: list[dict[str, Any]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    total_lines: int = 0
    duplicates: int = 0


def clean_value(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = value.strip()
    if cleaned.lower() in NULL_MARKERS:
        return None
    return cleaned


def parse_int(value: Optional[str], name: str, default: Optional[int] = None) -> Optional[int]:
    """Integer from a CSV cell; thousands separators and trailing decimals are accepted."""
    if value is None:
        return default
    try:
        return int(float(value.replace(",", "")))
    except (ValueError, OverflowError):
        raise ValueError(f"invalid {name} {value!r}") from None


def parse_timestamp(value: str) -> str:
    """Normalise a CSV date to the fixed-width UTC ISO form the schema stores."""
    text = value.strip().replace("/", "-")
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValueError(f"invalid date {value!r}") from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _read_rows(csv_data: str, aliases: dict[str, str]) -> tuple[set[str], list[tuple[int, dict[str, Optional[str]]]]]:
    """Map header cells through ``aliases`` and return the recognised columns and rows."""
    reader = csv.reader(io.StringIO(csv_data.lstrip("\ufeff").strip()))
    try:
        header = next(reader, None)
        if not header or not any(cell.strip() for cell in header):
            raise GachaError("invalid_csv", reason="missing header row")

        columns = [aliases.get(cell.strip().lower()) for cell in header]
        recognised = {column for column in columns if column}
        if not recognised:
            raise GachaError("invalid_csv", reason="no recognised columns")

        rows: list[tuple[int, dict[str, Optional[str]]]] = []
        for row_num, values in enumerate(reader, start=2):
            if not any(value.strip() for value in values):
                continue
            record: dict[str, Optional[str]] = {}
            for column, value in zip(columns, values):
                if column and record.get(column) is None:
                    record[column] = clean_value(value)
            rows.append((row_num, record))
    except csv.Error as e:
        raise GachaError("invalid_csv", reason=str(e)) from e

    return recognised, rows


def parse_user_migrations(csv_data: str) -> ParsedImport:
    """Customer rows keyed by email; a later row for the same email replaces an earlier one."""
    columns, rows = _read_rows(csv_data, USER_COLUMN_ALIASES)
    if "email" not in columns:
        raise GachaError("invalid_csv", reason="an email column is required")

    result = ParsedImport(total_lines=len(rows))
    by_email: dict[str, dict[str, Any]] = {}
    for row_num, record in rows:
        email = (record.get("email") or "").lower()
        if not EMAIL_PATTERN.match(email):
            result.errors.append(f"Row {row_num}: invalid email {record.get('email')!r}")
            continue

        try:
            points = parse_int(record.get("points_balance"), "points", default=0)
            legacy_user_id = parse_int(record.get("legacy_user_id"), "user id")
        except ValueError as e:
            result.errors.append(f"Row {row_num}: {e}")
            continue
        if points < 0:
            result.errors.append(f"Row {row_num}: points cannot be negative")
            continue

        last_name = record.get("last_name")
        first_name = record.get("first_name")
        display_name = record.get("display_name") or " ".join(filter(None, (last_name, first_name))) or None

        if email in by_email:
            result.duplicates += 1
        by_email[email] = {
            "email": email,
            "legacy_user_id": legacy_user_id,
            "display_name": display_name,
            "first_name": first_name,
            "last_name": last_name,
            "phone_number": record.get("phone_number"),
            "postal_code": record.get("postal_code"),
            "prefecture": record.get("prefecture"),
            "city": record.get("city"),
            "address_line1": record.get("address_line1"),
            "address_line2": record.get("address_line2"),
            "points_balance": points,
        }

    result.rows = list(by_email.values())
    logger.info(
        f"Parsed {len(result.rows)} customer rows ({result.duplicates} duplicates, "
        f"{len(result.errors)} rejected) from {result.total_lines} lines"
    )
    return result


def parse_transactions(csv_data: str) -> ParsedImport:
    """Historical draw purchases, referenced by email or by legacy user id."""
    columns, rows = _read_rows(csv_data, TRANSACTION_COLUMN_ALIASES)
    if not columns & {"user_email", "legacy_user_id"}:
        raise GachaError("invalid_csv", reason="an email or user_id column is required")

    result = ParsedImport(total_lines=len(rows))
    for row_num, record in rows:
        try:
            legacy_user_id = parse_int(record.get("legacy_user_id"), "user id")
            play_count = parse_int(record.get("play_count"), "play count", default=1)
            spent = parse_int(record.get("total_spent_points"), "points", default=0)
            created_at = parse_timestamp(record["created_at"]) if record.get("created_at") else None
        except ValueError as e:
            result.errors.append(f"Row {row_num}: {e}")
            continue

        email = (record.get("user_email") or "").lower() or None
        if email is None and not legacy_user_id:
            result.errors.append(f"Row {row_num}: no user reference")
            continue
        if play_count < 1 or spent < 0:
            result.errors.append(f"Row {row_num}: play count and points must be positive")
            continue
        status = (record.get("status") or "completed").lower()
        if status not in TRANSACTION_STATUSES:
            result.errors.append(f"Row {row_num}: unknown status {status!r}")
            continue

        result.rows.append(
            {
                "user_email": email,
                "legacy_user_id": legacy_user_id or None,
                "gacha_title": record.get("gacha_title"),
                "play_count": play_count,
                "total_spent_points": spent,
                "status": status,
                "created_at": created_at,
            }
        )
    return result


def parse_inventory(csv_data: str) -> ParsedImport:
    """Historical shipping requests and point conversions."""
    columns, rows = _read_rows(csv_data, INVENTORY_COLUMN_ALIASES)
    if not columns & {"user_email", "legacy_user_id"}:
        raise GachaError("invalid_csv", reason="an email or user_id column is required")

    result = ParsedImport(total_lines=len(rows))
    for row_num, record in rows:
        raw_action = (record.get("action_type") or "").lower()
        action_type = "shipping" if "ship" in raw_action or "発送" in raw_action else "conversion"

        raw_status = record.get("status")
        if raw_status is None:
            status = "completed" if action_type == "conversion" else "pending"
        else:
            status = INVENTORY_STATUS_ALIASES.get(raw_status.lower())
            if status not in ACTION_STATUSES:
                result.errors.append(f"Row {row_num}: unknown status {raw_status!r}")
                continue

        try:
            legacy_user_id = parse_int(record.get("legacy_user_id"), "user id")
            legacy_id = parse_int(record.get("legacy_id"), "id")
            points = parse_int(record.get("converted_points"), "points", default=0)
            requested_at = parse_timestamp(record["requested_at"]) if record.get("requested_at") else None
            processed_at = parse_timestamp(record["processed_at"]) if record.get("processed_at") else None
        except ValueError as e:
            result.errors.append(f"Row {row_num}: {e}")
            continue

        email = (record.get("user_email") or "").lower() or None
        if email is None and not legacy_user_id:
            result.errors.append(f"Row {row_num}: no user reference")
            continue
        if points < 0:
            result.errors.append(f"Row {row_num}: points cannot be negative")
            continue

        result.rows.append(
            {
                "user_email": email,
                "legacy_user_id": legacy_user_id or None,
                "legacy_id": legacy_id,
                "card_name": record.get("card_name"),
                "action_type": action_type,
                "status": status,
                "converted_points": points if action_type == "conversion" else None,
                "tracking_number": record.get("tracking_number"),
                "requested_at": requested_at,
                "processed_at": processed_at,
            }
        )
    return result


__all__ = [
    "ParsedImport",
    "clean_value",
    "parse_int",
    "parse_timestamp",
    "parse_user_migrations",
    "parse_transactions",
    "parse_inventory",
]
