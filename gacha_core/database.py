"""Async SQLite data layer for the gacha backend."""

from __future__ import annotations

import asyncio
import json
import os
import secrets
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from random import SystemRandom
from typing import Any, Iterable, Optional, Sequence

import aiosqlite

from .constants import (
    ACTION_STATUSES,
    ACTION_TYPES,
    ADMIN_ROLES,
    APP_ROLES,
    AUTO_CONVERT_BATCH_LIMIT,
    CARD_CATEGORIES,
    CARD_RARITIES,
    DATABASE_MAX_RETRIES,
    DATABASE_RETRY_BASE_DELAY_SECONDS,
    DEFAULT_SELECTION_DEADLINE_DAYS,
    GACHA_STATUSES,
    INSERT_BATCH_SIZE,
    PRIZE_TIERS,
    PROFILE_MIGRATION_BATCH_LIMIT,
    PUBLIC_GACHA_STATUSES,
    SESSION_TOKEN_BYTES,
    SESSION_TTL_HOURS,
    UNKNOWN_CARD_NAME,
    UNUSABLE_PASSWORD_HASH,
)
from .imports import ParsedImport
from .logger import get_logger
from .models import (
    AutoConvertReport,
    ConversionResult,
    DrawnCard,
    DrawResult,
    ImportReport,
    ProfileMigrationReport,
    SlotCreationResult,
    SlotItem,
)
from .utils.errors import ConflictError, GachaError, NotFoundError
from .utils.passwords import hash_password, verify_password

logger = get_logger()

_rng = SystemRandom()

_PROFILE_IMPORT_COLUMNS = (
    "display_name",
    "first_name",
    "last_name",
    "phone_number",
    "postal_code",
    "prefecture",
    "city",
    "address_line1",
    "address_line2",
    "legacy_user_id",
)
_MIGRATION_COLUMNS = ("email", *_PROFILE_IMPORT_COLUMNS, "points_balance")
_IMPORT_TABLES = {
    "users": "user_migrations",
    "transactions": "user_transactions",
    "inventory": "inventory_actions",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime) -> str:
    # Fixed-width so that stored timestamps compare correctly as strings.
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _new_id() -> str:
    return str(uuid.uuid4())


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


def _decode_json(value: Any, default: Any) -> Any:
    if value is None:
        return default
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        logger.warning(f"Discarding malformed JSON column value: {value!r}")
        return default


def _unique(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for value in values:
        if value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered


class Database:
    """Async database handler using SQLite."""

    def __init__(self, db_path: str | Path = "gacha.db", connect_timeout: float | None = None) -> None:
        self.db_path = Path(db_path) if str(db_path) != ":memory:" else db_path
        self._connection: Optional[aiosqlite.Connection] = None
        # Serialises write transactions and reads on the shared connection.
        self._points_lock = asyncio.Lock()
        self.target_schema_version = 5

        if connect_timeout is None:
            connect_timeout = float(os.getenv("DB_CONNECT_TIMEOUT", "5.0"))
        self.connect_timeout = connect_timeout

    async def connect(self) -> None:
        """Connect to the database with timeout protection and retry logic."""
        if self._connection is not None:
            return

        for attempt in range(DATABASE_MAX_RETRIES + 1):
            try:
                self._connection = await asyncio.wait_for(
                    aiosqlite.connect(str(self.db_path)),
                    timeout=self.connect_timeout,
                )

                try:
                    self._connection.row_factory = aiosqlite.Row
                    await self._connection.execute("PRAGMA foreign_keys = ON;")
                    await self._connection.commit()
                    await self._initialize_schema()
                except Exception as init_error:
                    if self._connection:
                        await self._connection.close()
                    self._connection = None
                    logger.error(
                        f"Failed to initialize database after connection: {init_error}. "
                        f"Database path: {self.db_path}"
                    )
                    raise

                return

            except asyncio.TimeoutError:
                self._connection = None
                timeout_msg = (
                    f"Database connection timed out after {self.connect_timeout}s "
                    f"(attempt {attempt + 1}/{DATABASE_MAX_RETRIES + 1}). Database path: {self.db_path}"
                )
                if attempt < DATABASE_MAX_RETRIES:
                    wait_seconds = DATABASE_RETRY_BASE_DELAY_SECONDS * 2 ** attempt
                    logger.warning(f"{timeout_msg}. Waiting {wait_seconds}s before retry...")
                    await asyncio.sleep(wait_seconds)
                else:
                    logger.error(f"{timeout_msg}. Max retries exhausted.")
                    raise TimeoutError(timeout_msg) from None

            except Exception as conn_error:
                self._connection = None
                error_msg = (
                    f"Failed to connect to database (attempt {attempt + 1}/{DATABASE_MAX_RETRIES + 1}): "
                    f"{conn_error}. Database path: {self.db_path}"
                )
                if attempt < DATABASE_MAX_RETRIES:
                    wait_seconds = DATABASE_RETRY_BASE_DELAY_SECONDS * 2 ** attempt
                    logger.warning(f"{error_msg}. Waiting {wait_seconds}s before retry...")
                    await asyncio.sleep(wait_seconds)
                else:
                    logger.error(f"{error_msg}. Max retries exhausted.")
                    raise RuntimeError(error_msg) from conn_error

    async def close(self) -> None:
        if self._connection:
            await self._connection.close()
            self._connection = None

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    async def _initialize_schema(self) -> None:
        """Initialize the database schema with versioning support."""
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        await self._connection.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL UNIQUE,
                applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
        await self._connection.commit()

        current_version = await self._get_current_schema_version()
        logger.info(f"Current database schema version: {current_version}")

        await self._apply_pending_migrations(current_version)

        final_version = await self._get_current_schema_version()
        if final_version != self.target_schema_version:
            raise RuntimeError(
                f"Database schema is at v{final_version}, expected v{self.target_schema_version}. "
                f"Database path: {self.db_path}"
            )
        logger.info(f"Database schema migration complete. Final version: {final_version}")

    async def _get_current_schema_version(self) -> int:
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        cursor = await self._connection.execute(
            "SELECT MAX(version) as version FROM schema_migrations"
        )
        row = await cursor.fetchone()
        return row["version"] if row and row["version"] else 0

    async def _apply_pending_migrations(self, current_version: int) -> None:
        """Apply all pending migrations after the current version."""
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        migrations = {
            1: ("accounts_schema", self._migration_v1),
            2: ("catalog_schema", self._migration_v2),
            3: ("ledger_schema", self._migration_v3),
            4: ("draw_indexes", self._migration_v4),
            5: ("import_schema", self._migration_v5),
        }

        for version in sorted(migrations.keys()):
            if version > current_version:
                name, migration_fn = migrations[version]
                logger.info(f"Applying migration v{version}: {name}")
                try:
                    await migration_fn()
                    await self._record_migration(version, name)
                    logger.info(f"Migration v{version}: {name} applied successfully")
                except Exception as e:
                    logger.exception(f"Failed to apply migration v{version} ({name}): {e}")
                    raise RuntimeError(f"Migration v{version} ({name}) failed: {e}") from e

    async def _record_migration(self, version: int, name: str) -> None:
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        await self._connection.execute(
            "INSERT INTO schema_migrations (version, name) VALUES (?, ?)",
            (version, name),
        )
        await self._connection.commit()

    async def _migration_v1(self) -> None:
        """Migration v1: tenants, users, sessions, roles and profiles."""
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        await self._connection.executescript(
            """
            CREATE TABLE IF NOT EXISTS tenants (
                id TEXT PRIMARY KEY,
                slug TEXT NOT NULL UNIQUE,
                name TEXT NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                allowed_ips TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                email TEXT NOT NULL UNIQUE,
                password_hash TEXT NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS sessions (
                token TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                created_at TEXT NOT NULL,
                expires_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS user_roles (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                role TEXT NOT NULL DEFAULT 'user'
                    CHECK (role IN ('admin', 'user', 'super_admin')),
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                UNIQUE (user_id, role)
            );

            CREATE TABLE IF NOT EXISTS profiles (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL UNIQUE REFERENCES users(id) ON DELETE CASCADE,
                tenant_id TEXT REFERENCES tenants(id),
                display_name TEXT,
                email TEXT,
                points_balance INTEGER NOT NULL DEFAULT 0 CHECK (points_balance >= 0),
                last_login_at TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_sessions_user ON sessions(user_id);
            """
        )
        await self._connection.commit()

    async def _migration_v2(self) -> None:
        """Migration v2: gacha masters, cards and the slot pool."""
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        await self._connection.executescript(
            """
            CREATE TABLE IF NOT EXISTS gacha_masters (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                category TEXT
                    CHECK (category IS NULL OR category IN ('yugioh', 'pokemon', 'weiss', 'onepiece')),
                display_tags TEXT NOT NULL DEFAULT '[]',
                price_per_play INTEGER NOT NULL DEFAULT 0 CHECK (price_per_play >= 0),
                total_slots INTEGER NOT NULL DEFAULT 0,
                remaining_slots INTEGER NOT NULL DEFAULT 0 CHECK (remaining_slots >= 0),
                status TEXT NOT NULL DEFAULT 'draft'
                    CHECK (status IN ('draft', 'active', 'sold_out', 'archived')),
                banner_url TEXT,
                pop_image_url TEXT,
                notice_text TEXT,
                animation_type TEXT NOT NULL DEFAULT 'default',
                fake_s_tier_chance INTEGER NOT NULL DEFAULT 15,
                tenant_id TEXT REFERENCES tenants(id),
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS cards (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                image_url TEXT,
                category TEXT
                    CHECK (category IS NULL OR category IN ('yugioh', 'pokemon', 'weiss', 'onepiece')),
                rarity TEXT NOT NULL DEFAULT 'D' CHECK (rarity IN ('S', 'A', 'B', 'C', 'D')),
                prize_tier TEXT NOT NULL DEFAULT 'miss' CHECK (prize_tier IN ('S', 'A', 'B', 'miss')),
                conversion_points INTEGER NOT NULL DEFAULT 0 CHECK (conversion_points >= 0),
                gacha_id TEXT REFERENCES gacha_masters(id) ON DELETE CASCADE,
                tenant_id TEXT REFERENCES tenants(id),
                admin_note TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS gacha_slots (
                id TEXT PRIMARY KEY,
                gacha_id TEXT NOT NULL REFERENCES gacha_masters(id) ON DELETE CASCADE,
                card_id TEXT REFERENCES cards(id) ON DELETE SET NULL,
                slot_number INTEGER NOT NULL,
                is_drawn INTEGER NOT NULL DEFAULT 0,
                user_id TEXT REFERENCES users(id),
                drawn_at TEXT,
                transaction_id TEXT,
                selection_deadline TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                UNIQUE (gacha_id, slot_number)
            );

            CREATE INDEX IF NOT EXISTS idx_cards_category_gacha ON cards(category, gacha_id);
            CREATE INDEX IF NOT EXISTS idx_gacha_masters_status ON gacha_masters(status);
            """
        )
        await self._connection.commit()

    async def _migration_v3(self) -> None:
        """Migration v3: draw transactions, inventory actions and the points ledger."""
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        await self._connection.executescript(
            """
            CREATE TABLE IF NOT EXISTS user_transactions (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES users(id),
                gacha_id TEXT REFERENCES gacha_masters(id) ON DELETE SET NULL,
                play_count INTEGER NOT NULL DEFAULT 1,
                total_spent_points INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'completed', 'error')),
                result_items TEXT NOT NULL DEFAULT '[]',
                tenant_id TEXT REFERENCES tenants(id),
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS inventory_actions (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES users(id),
                slot_id TEXT UNIQUE REFERENCES gacha_slots(id) ON DELETE SET NULL,
                card_id TEXT REFERENCES cards(id) ON DELETE SET NULL,
                action_type TEXT NOT NULL CHECK (action_type IN ('shipping', 'conversion')),
                status TEXT NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'processing', 'completed', 'shipped')),
                converted_points INTEGER,
                tracking_number TEXT,
                tenant_id TEXT REFERENCES tenants(id),
                requested_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                processed_at TEXT
            );

            CREATE TABLE IF NOT EXISTS point_transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL REFERENCES users(id),
                amount INTEGER NOT NULL,
                balance_after INTEGER NOT NULL,
                transaction_type TEXT NOT NULL,
                description TEXT,
                reference_id TEXT,
                staff_user_id TEXT,
                metadata TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );
            """
        )
        await self._connection.commit()

    async def _migration_v4(self) -> None:
        """Migration v4: indexes for the draw path and history lookups."""
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        await self._connection.executescript(
            """
            CREATE INDEX IF NOT EXISTS idx_gacha_slots_pool ON gacha_slots(gacha_id, is_drawn);
            CREATE INDEX IF NOT EXISTS idx_gacha_slots_owner ON gacha_slots(user_id, is_drawn);
            CREATE INDEX IF NOT EXISTS idx_gacha_slots_deadline ON gacha_slots(selection_deadline);
            CREATE INDEX IF NOT EXISTS idx_user_transactions_user ON user_transactions(user_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_inventory_actions_queue ON inventory_actions(action_type, status);
            CREATE INDEX IF NOT EXISTS idx_point_transactions_user ON point_transactions(user_id, created_at);
            """
        )
        await self._connection.commit()

    async def _migration_v5(self) -> None:
        """Migration v5: staged customer migrations, import history and import tags."""
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        await self._connection.executescript(
            """
            CREATE TABLE IF NOT EXISTS user_migrations (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
                email TEXT NOT NULL,
                legacy_user_id INTEGER,
                display_name TEXT,
                first_name TEXT,
                last_name TEXT,
                phone_number TEXT,
                postal_code TEXT,
                prefecture TEXT,
                city TEXT,
                address_line1 TEXT,
                address_line2 TEXT,
                points_balance INTEGER NOT NULL DEFAULT 0 CHECK (points_balance >= 0),
                is_applied INTEGER NOT NULL DEFAULT 0,
                applied_user_id TEXT REFERENCES users(id) ON DELETE SET NULL,
                import_id TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                UNIQUE (tenant_id, email)
            );

            CREATE TABLE IF NOT EXISTS import_history (
                id TEXT PRIMARY KEY,
                tenant_id TEXT REFERENCES tenants(id) ON DELETE CASCADE,
                data_type TEXT NOT NULL CHECK (data_type IN ('users', 'transactions', 'inventory')),
                file_name TEXT,
                total_records INTEGER NOT NULL DEFAULT 0,
                inserted INTEGER NOT NULL DEFAULT 0,
                skipped INTEGER NOT NULL DEFAULT 0,
                error_count INTEGER NOT NULL DEFAULT 0,
                imported_by TEXT,
                imported_at TEXT NOT NULL
            );

            ALTER TABLE profiles ADD COLUMN first_name TEXT;
            ALTER TABLE profiles ADD COLUMN last_name TEXT;
            ALTER TABLE profiles ADD COLUMN phone_number TEXT;
            ALTER TABLE profiles ADD COLUMN postal_code TEXT;
            ALTER TABLE profiles ADD COLUMN prefecture TEXT;
            ALTER TABLE profiles ADD COLUMN city TEXT;
            ALTER TABLE profiles ADD COLUMN address_line1 TEXT;
            ALTER TABLE profiles ADD COLUMN address_line2 TEXT;
            ALTER TABLE profiles ADD COLUMN legacy_user_id INTEGER;

            ALTER TABLE user_transactions ADD COLUMN import_id TEXT;
            ALTER TABLE inventory_actions ADD COLUMN import_id TEXT;
            ALTER TABLE inventory_actions ADD COLUMN legacy_id INTEGER;

            CREATE INDEX IF NOT EXISTS idx_user_migrations_pending ON user_migrations(tenant_id, is_applied);
            CREATE INDEX IF NOT EXISTS idx_import_history_tenant ON import_history(tenant_id, imported_at);
            CREATE INDEX IF NOT EXISTS idx_user_transactions_import ON user_transactions(import_id);
            CREATE INDEX IF NOT EXISTS idx_inventory_actions_import ON inventory_actions(import_id);
            CREATE UNIQUE INDEX IF NOT EXISTS idx_inventory_actions_legacy
                ON inventory_actions(tenant_id, legacy_id) WHERE legacy_id IS NOT NULL;
            """
        )
        await self._connection.commit()

    @asynccontextmanager
    async def transaction(self):
        """Context manager for atomic write transactions.

        Takes the write lock, opens ``BEGIN IMMEDIATE`` so concurrent
        processes wait on SQLite's reserved lock, commits on a clean exit and
        rolls back on any exception.

        Example:
            async with self.db.transaction() as conn:
                await conn.execute("UPDATE ...")
        """
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        async with self._points_lock:
            connection = self._connection
            await connection.execute("BEGIN IMMEDIATE;")
            try:
                yield connection
            except BaseException as e:
                try:
                    await connection.rollback()
                    logger.debug(f"Database transaction rolled back due to: {e!r}")
                except Exception as rollback_error:
                    logger.error(f"Failed to rollback transaction: {rollback_error}")
                raise
            await connection.commit()

    async def _fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[aiosqlite.Row]:
        """Run a read once no write transaction is open on the shared connection."""
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        async with self._points_lock:
            cursor = await self._connection.execute(sql, params)
            return await cursor.fetchone()

    async def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> list[aiosqlite.Row]:
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")

        async with self._points_lock:
            cursor = await self._connection.execute(sql, params)
            return list(await cursor.fetchall())

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def create_user(
        self,
        email: str,
        password: str,
        *,
        display_name: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> str:
        normalized = email.strip().lower()
        password_hash = await asyncio.to_thread(hash_password, password)
        user_id = _new_id()

        async with self.transaction() as conn:
            cursor = await conn.execute("SELECT 1 FROM users WHERE email = ?", (normalized,))
            if await cursor.fetchone():
                raise ConflictError("email_taken", email=normalized)

            await conn.execute(
                "INSERT INTO users (id, email, password_hash) VALUES (?, ?, ?)",
                (user_id, normalized, password_hash),
            )
            await conn.execute(
                """
                INSERT INTO profiles (id, user_id, tenant_id, display_name, email, points_balance)
                VALUES (?, ?, ?, ?, ?, 0)
                """,
                (_new_id(), user_id, tenant_id, display_name, normalized),
            )
            await conn.execute(
                "INSERT INTO user_roles (id, user_id, role) VALUES (?, ?, 'user')",
                (_new_id(), user_id),
            )

        logger.info(f"Created user {user_id} ({normalized})")
        return user_id

    async def get_user(self, user_id: str) -> Optional[aiosqlite.Row]:
        return await self._fetchone(
            "SELECT id, email, created_at FROM users WHERE id = ?",
            (user_id,),
        )

    async def authenticate(self, email: str, password: str) -> Optional[str]:
        """Return the user id for valid credentials, otherwise None."""
        row = await self._fetchone(
            "SELECT id, password_hash FROM users WHERE email = ?",
            (email.strip().lower(),),
        )
        if row is None or not await asyncio.to_thread(verify_password, password, row["password_hash"]):
            return None

        async with self.transaction() as conn:
            await conn.execute(
                "UPDATE profiles SET last_login_at = ?, updated_at = CURRENT_TIMESTAMP WHERE user_id = ?",
                (_iso(_utcnow()), row["id"]),
            )
        return row["id"]

    async def get_profile(self, user_id: str) -> Optional[aiosqlite.Row]:
        return await self._fetchone("SELECT * FROM profiles WHERE user_id = ?", (user_id,))

    async def create_session(self, user_id: str, *, ttl_hours: int = SESSION_TTL_HOURS) -> str:
        token = secrets.token_urlsafe(SESSION_TOKEN_BYTES)
        now = _utcnow()
        async with self.transaction() as conn:
            await conn.execute(
                "INSERT INTO sessions (token, user_id, created_at, expires_at) VALUES (?, ?, ?, ?)",
                (token, user_id, _iso(now), _iso(now + timedelta(hours=ttl_hours))),
            )
        return token

    async def get_session_user(self, token: str) -> Optional[str]:
        """User id behind a live session token."""
        row = await self._fetchone(
            "SELECT user_id FROM sessions WHERE token = ? AND expires_at > ?",
            (token, _iso(_utcnow())),
        )
        return row["user_id"] if row else None

    async def delete_session(self, token: str) -> bool:
        async with self.transaction() as conn:
            cursor = await conn.execute("DELETE FROM sessions WHERE token = ?", (token,))
            return cursor.rowcount > 0

    async def cleanup_expired_sessions(self) -> int:
        async with self.transaction() as conn:
            cursor = await conn.execute(
                "DELETE FROM sessions WHERE expires_at <= ?",
                (_iso(_utcnow()),),
            )
            removed = cursor.rowcount
        if removed:
            logger.info(f"Removed {removed} expired sessions")
        return removed

    async def add_role(self, user_id: str, role: str) -> None:
        if role not in APP_ROLES:
            raise GachaError("invalid_role", role=role)
        async with self.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO user_roles (id, user_id, role) VALUES (?, ?, ?)
                ON CONFLICT(user_id, role) DO NOTHING
                """,
                (_new_id(), user_id, role),
            )

    async def remove_role(self, user_id: str, role: str) -> bool:
        async with self.transaction() as conn:
            cursor = await conn.execute(
                "DELETE FROM user_roles WHERE user_id = ? AND role = ?",
                (user_id, role),
            )
            return cursor.rowcount > 0

    async def get_roles(self, user_id: str) -> list[str]:
        rows = await self._fetchall(
            "SELECT role FROM user_roles WHERE user_id = ? ORDER BY role",
            (user_id,),
        )
        return [row["role"] for row in rows]

    async def has_role(self, user_id: str, role: str) -> bool:
        return role in await self.get_roles(user_id)

    async def is_admin(self, user_id: str) -> bool:
        roles = await self.get_roles(user_id)
        return any(role in ADMIN_ROLES for role in roles)

    async def is_super_admin(self, user_id: str) -> bool:
        return await self.has_role(user_id, "super_admin")

    # ------------------------------------------------------------------
    # Tenants
    # ------------------------------------------------------------------

    async def create_tenant(
        self,
        *,
        slug: str,
        name: str,
        allowed_ips: Optional[Sequence[str]] = None,
        is_active: bool = True,
    ) -> str:
        tenant_id = _new_id()
        encoded_ips = json.dumps(list(allowed_ips)) if allowed_ips is not None else None
        async with self.transaction() as conn:
            cursor = await conn.execute("SELECT 1 FROM tenants WHERE slug = ?", (slug,))
            if await cursor.fetchone():
                raise ConflictError("tenant_exists", slug=slug)
            await conn.execute(
                "INSERT INTO tenants (id, slug, name, is_active, allowed_ips) VALUES (?, ?, ?, ?, ?)",
                (tenant_id, slug, name, 1 if is_active else 0, encoded_ips),
            )
        return tenant_id

    async def get_active_tenant_by_slug(self, slug: str) -> Optional[dict]:
        """Active tenant with ``allowed_ips`` decoded (None means unrestricted)."""
        row = await self._fetchone(
            "SELECT id, slug, name, allowed_ips FROM tenants WHERE slug = ? AND is_active = 1",
            (slug,),
        )
        if row is None:
            return None
        tenant = dict(row)
        tenant["allowed_ips"] = _decode_json(row["allowed_ips"], None)
        return tenant

    async def update_tenant_allowed_ips(self, tenant_id: str, allowed_ips: Optional[Sequence[str]]) -> bool:
        encoded_ips = json.dumps(list(allowed_ips)) if allowed_ips is not None else None
        async with self.transaction() as conn:
            cursor = await conn.execute(
                "UPDATE tenants SET allowed_ips = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (encoded_ips, tenant_id),
            )
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Cards
    # ------------------------------------------------------------------

    async def create_card(
        self,
        *,
        name: str,
        prize_tier: str = "miss",
        conversion_points: int = 0,
        category: Optional[str] = None,
        rarity: str = "D",
        image_url: Optional[str] = None,
        gacha_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        admin_note: Optional[str] = None,
    ) -> str:
        if category is not None and category not in CARD_CATEGORIES:
            raise GachaError("invalid_category", category=category)
        if prize_tier not in PRIZE_TIERS:
            raise GachaError("invalid_slot_item", index=0, reason=f"unknown prize tier {prize_tier!r}")
        if rarity not in CARD_RARITIES:
            raise GachaError("invalid_slot_item", index=0, reason=f"unknown rarity {rarity!r}")

        card_id = _new_id()
        async with self.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO cards (
                    id, name, image_url, category, rarity, prize_tier,
                    conversion_points, gacha_id, tenant_id, admin_note
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    card_id,
                    name,
                    image_url,
                    category,
                    rarity,
                    prize_tier,
                    int(conversion_points),
                    gacha_id,
                    tenant_id,
                    admin_note,
                ),
            )
        return card_id

    async def list_cards(
        self,
        *,
        category: Optional[str] = None,
        gacha_id: Optional[str] = None,
        unassigned_only: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[aiosqlite.Row]:
        clauses: list[str] = []
        params: list[Any] = []
        if category is not None:
            clauses.append("category = ?")
            params.append(category)
        if gacha_id is not None:
            clauses.append("gacha_id = ?")
            params.append(gacha_id)
        elif unassigned_only:
            clauses.append("gacha_id IS NULL")

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return await self._fetchall(
            f"""
            SELECT * FROM cards
            {where}
            ORDER BY created_at DESC, rowid DESC
            LIMIT ? OFFSET ?
            """,
            (*params, limit, offset),
        )

    async def count_unassigned_cards(self, category: str) -> int:
        row = await self._fetchone(
            "SELECT COUNT(*) AS count FROM cards WHERE category = ? AND gacha_id IS NULL",
            (category,),
        )
        return row["count"] if row else 0

    async def bulk_delete_unassigned_cards(self, category: str) -> int:
        """Delete every master card of ``category`` not bound to a gacha."""
        async with self.transaction() as conn:
            cursor = await conn.execute(
                "SELECT COUNT(*) AS count FROM cards WHERE category = ? AND gacha_id IS NULL",
                (category,),
            )
            row = await cursor.fetchone()
            before_count = row["count"] if row else 0

            await conn.execute(
                "DELETE FROM cards WHERE category = ? AND gacha_id IS NULL",
                (category,),
            )

        logger.info(f"Bulk deleted {before_count} unassigned cards in category {category}")
        return before_count

    # ------------------------------------------------------------------
    # Gachas
    # ------------------------------------------------------------------

    def _gacha_from_row(self, row: aiosqlite.Row) -> dict:
        gacha = dict(row)
        gacha["display_tags"] = _decode_json(row["display_tags"], [])
        return gacha

    async def create_gacha(
        self,
        *,
        title: str,
        price_per_play: int,
        category: Optional[str] = None,
        display_tags: Optional[Sequence[str]] = None,
        status: str = "draft",
        banner_url: Optional[str] = None,
        pop_image_url: Optional[str] = None,
        notice_text: Optional[str] = None,
        animation_type: str = "default",
        fake_s_tier_chance: int = 15,
        tenant_id: Optional[str] = None,
    ) -> str:
        if category is not None and category not in CARD_CATEGORIES:
            raise GachaError("invalid_category", category=category)
        if status not in GACHA_STATUSES:
            raise GachaError("invalid_status", status=status)
        if int(price_per_play) < 0:
            raise GachaError("invalid_amount")

        gacha_id = _new_id()
        async with self.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO gacha_masters (
                    id, title, category, display_tags, price_per_play, status,
                    banner_url, pop_image_url, notice_text, animation_type,
                    fake_s_tier_chance, tenant_id
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    gacha_id,
                    title,
                    category,
                    json.dumps(list(display_tags or [])),
                    int(price_per_play),
                    status,
                    banner_url,
                    pop_image_url,
                    notice_text,
                    animation_type,
                    int(fake_s_tier_chance),
                    tenant_id,
                ),
            )
        return gacha_id

    async def get_gacha(self, gacha_id: str) -> Optional[dict]:
        row = await self._fetchone("SELECT * FROM gacha_masters WHERE id = ?", (gacha_id,))
        return self._gacha_from_row(row) if row else None

    async def list_gachas(
        self,
        *,
        category: Optional[str] = None,
        tag: Optional[str] = None,
        statuses: Sequence[str] = PUBLIC_GACHA_STATUSES,
        tenant_id: Optional[str] = None,
    ) -> list[dict]:
        """Catalog listing, newest first, filtered by category and display tag."""
        clauses = [f"status IN ({_placeholders(len(statuses))})"]
        params: list[Any] = list(statuses)
        if category is not None:
            clauses.append("category = ?")
            params.append(category)
        if tag is not None:
            clauses.append("EXISTS (SELECT 1 FROM json_each(gacha_masters.display_tags) WHERE value = ?)")
            params.append(tag)
        if tenant_id is not None:
            clauses.append("tenant_id = ?")
            params.append(tenant_id)

        rows = await self._fetchall(
            f"""
            SELECT * FROM gacha_masters
            WHERE {' AND '.join(clauses)}
            ORDER BY created_at DESC, rowid DESC
            """,
            params,
        )
        return [self._gacha_from_row(row) for row in rows]

    async def get_gacha_prize_summary(self, gacha_id: str) -> list[dict]:
        """Total and remaining slot counts per prize tier."""
        summary = await self._fetchall(
            """
            SELECT COALESCE(c.prize_tier, 'miss') AS prize_tier,
                   COUNT(*) AS total,
                   SUM(CASE WHEN s.is_drawn = 0 THEN 1 ELSE 0 END) AS remaining
            FROM gacha_slots s
            LEFT JOIN cards c ON c.id = s.card_id
            WHERE s.gacha_id = ?
            GROUP BY COALESCE(c.prize_tier, 'miss')
            """,
            (gacha_id,),
        )
        rows = {row["prize_tier"]: row for row in summary}
        return [
            {
                "prize_tier": tier,
                "total": rows[tier]["total"],
                "remaining": rows[tier]["remaining"] or 0,
            }
            for tier in PRIZE_TIERS
            if tier in rows
        ]

    async def update_gacha_status(self, gacha_id: str, status: str) -> dict:
        if status not in GACHA_STATUSES:
            raise GachaError("invalid_status", status=status)

        async with self.transaction() as conn:
            cursor = await conn.execute(
                "SELECT remaining_slots FROM gacha_masters WHERE id = ?",
                (gacha_id,),
            )
            row = await cursor.fetchone()
            if row is None:
                raise NotFoundError("gacha_not_found")
            if status == "active" and row["remaining_slots"] <= 0:
                raise GachaError("gacha_not_activatable")

            await conn.execute(
                "UPDATE gacha_masters SET status = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (status, gacha_id),
            )

        logger.info(f"Gacha {gacha_id} status set to {status}")
        gacha = await self.get_gacha(gacha_id)
        if gacha is None:
            raise NotFoundError("gacha_not_found")
        return gacha

    async def create_gacha_slots(
        self,
        gacha_id: str,
        items: Sequence[SlotItem],
        *,
        append_mode: bool = False,
        batch_size: int = INSERT_BATCH_SIZE,
    ) -> SlotCreationResult:
        """
        Fill a gacha's slot pool with one card row per physical prize.

        Slot numbers are a shuffled run starting after the current maximum in
        append mode, or at 1 when the pool is (re)built.
        """
        if not items:
            raise GachaError("missing_gacha_items")
        for index, item in enumerate(items):
            if not item.name:
                raise GachaError("invalid_slot_item", index=index, reason="name is required")
            if int(item.quantity) < 1:
                raise GachaError("invalid_slot_item", index=index, reason="quantity must be at least 1")
            if item.prize_tier not in PRIZE_TIERS:
                raise GachaError("invalid_slot_item", index=index, reason=f"unknown prize tier {item.prize_tier!r}")
            if int(item.conversion_points) < 0:
                raise GachaError("invalid_slot_item", index=index, reason="conversionPoints must be non-negative")
            if item.category is not None and item.category not in CARD_CATEGORIES:
                raise GachaError("invalid_slot_item", index=index, reason=f"unknown category {item.category!r}")

        added = sum(int(item.quantity) for item in items)

        async with self.transaction() as conn:
            cursor = await conn.execute(
                "SELECT status, total_slots, remaining_slots, tenant_id FROM gacha_masters WHERE id = ?",
                (gacha_id,),
            )
            gacha = await cursor.fetchone()
            if gacha is None:
                raise NotFoundError("gacha_not_found")

            if append_mode:
                if gacha["status"] != "draft":
                    raise GachaError("gacha_not_draft")
                cursor = await conn.execute(
                    "SELECT COALESCE(MAX(slot_number), 0) AS max_number FROM gacha_slots WHERE gacha_id = ?",
                    (gacha_id,),
                )
                start_number = (await cursor.fetchone())["max_number"] + 1
            else:
                cursor = await conn.execute(
                    "SELECT COUNT(*) AS drawn FROM gacha_slots WHERE gacha_id = ? AND is_drawn = 1",
                    (gacha_id,),
                )
                if (await cursor.fetchone())["drawn"]:
                    raise GachaError("slots_already_drawn")
                await conn.execute("DELETE FROM gacha_slots WHERE gacha_id = ?", (gacha_id,))
                await conn.execute("DELETE FROM cards WHERE gacha_id = ?", (gacha_id,))
                start_number = 1

            card_rows: list[tuple] = []
            for item in items:
                for _ in range(int(item.quantity)):
                    card_rows.append(
                        (
                            _new_id(),
                            item.name,
                            item.image_url,
                            item.category,
                            item.prize_tier,
                            int(item.conversion_points),
                            gacha_id,
                            gacha["tenant_id"],
                        )
                    )

            for i in range(0, len(card_rows), batch_size):
                await conn.executemany(
                    """
                    INSERT INTO cards (
                        id, name, image_url, category, prize_tier,
                        conversion_points, gacha_id, tenant_id
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    card_rows[i : i + batch_size],
                )

            slot_numbers = list(range(start_number, start_number + len(card_rows)))
            _rng.shuffle(slot_numbers)
            slot_rows = [
                (_new_id(), gacha_id, card_row[0], slot_number)
                for card_row, slot_number in zip(card_rows, slot_numbers)
            ]
            for i in range(0, len(slot_rows), batch_size):
                await conn.executemany(
                    "INSERT INTO gacha_slots (id, gacha_id, card_id, slot_number) VALUES (?, ?, ?, ?)",
                    slot_rows[i : i + batch_size],
                )

            if append_mode:
                total_slots = gacha["total_slots"] + added
                remaining_slots = gacha["remaining_slots"] + added
            else:
                total_slots = remaining_slots = added

            await conn.execute(
                """
                UPDATE gacha_masters
                SET total_slots = ?, remaining_slots = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
                """,
                (total_slots, remaining_slots, gacha_id),
            )

        logger.info(
            f"{'Appended' if append_mode else 'Created'} {added} slots for gacha {gacha_id} "
            f"({len(items)} card types, total {total_slots})"
        )
        return SlotCreationResult(
            total_slots=total_slots,
            added_slots=added,
            card_count=len(card_rows),
            append_mode=append_mode,
        )

    # ------------------------------------------------------------------
    # Draws
    # ------------------------------------------------------------------

    async def play_gacha_atomic(
        self,
        *,
        gacha_id: str,
        play_count: int,
        user_id: str,
        selection_deadline_days: int = DEFAULT_SELECTION_DEADLINE_DAYS,
    ) -> DrawResult:
        """
        Draw ``play_count`` slots for ``user_id`` in a single transaction.

        Balance check and debit, slot allocation, the remaining-slot counter,
        the transaction record and the ledger entry either all apply or none
        do. Slots are sampled uniformly from the undrawn pool and claimed with
        a conditional update, so a slot can never be allocated twice.
        """
        if play_count <= 0:
            raise GachaError("invalid_request")

        async with self.transaction() as conn:
            cursor = await conn.execute(
                "SELECT status, price_per_play, remaining_slots, tenant_id FROM gacha_masters WHERE id = ?",
                (gacha_id,),
            )
            gacha = await cursor.fetchone()
            if gacha is None:
                raise NotFoundError("gacha_not_found")
            if gacha["status"] != "active":
                raise GachaError("gacha_unavailable")
            if gacha["remaining_slots"] < play_count:
                raise GachaError("insufficient_slots", remaining=gacha["remaining_slots"])

            cursor = await conn.execute(
                "SELECT points_balance FROM profiles WHERE user_id = ?",
                (user_id,),
            )
            profile = await cursor.fetchone()
            if profile is None:
                raise NotFoundError("profile_not_found")

            total_cost = gacha["price_per_play"] * play_count
            balance = profile["points_balance"]
            if balance < total_cost:
                raise GachaError("insufficient_points", required=total_cost, balance=balance)

            cursor = await conn.execute(
                "SELECT id, card_id FROM gacha_slots WHERE gacha_id = ? AND is_drawn = 0",
                (gacha_id,),
            )
            available = await cursor.fetchall()
            if len(available) < play_count:
                raise GachaError("no_slots")

            chosen = _rng.sample(list(available), play_count)
            slot_ids = [slot["id"] for slot in chosen]

            now = _utcnow()
            deadline = now + timedelta(days=selection_deadline_days)
            transaction_id = _new_id()

            await conn.execute(
                """
                INSERT INTO user_transactions (
                    id, user_id, gacha_id, play_count, total_spent_points,
                    status, result_items, tenant_id
                ) VALUES (?, ?, ?, ?, ?, 'completed', ?, ?)
                """,
                (
                    transaction_id,
                    user_id,
                    gacha_id,
                    play_count,
                    total_cost,
                    json.dumps(slot_ids),
                    gacha["tenant_id"],
                ),
            )

            for slot_id in slot_ids:
                cursor = await conn.execute(
                    """
                    UPDATE gacha_slots
                    SET is_drawn = 1, user_id = ?, drawn_at = ?,
                        transaction_id = ?, selection_deadline = ?
                    WHERE id = ? AND is_drawn = 0
                    """,
                    (user_id, _iso(now), transaction_id, _iso(deadline), slot_id),
                )
                if cursor.rowcount != 1:
                    raise ConflictError("slot_conflict")

            cursor = await conn.execute(
                """
                UPDATE profiles
                SET points_balance = points_balance - ?, updated_at = CURRENT_TIMESTAMP
                WHERE user_id = ? AND points_balance >= ?
                """,
                (total_cost, user_id, total_cost),
            )
            if cursor.rowcount != 1:
                raise GachaError("insufficient_points", required=total_cost, balance=balance)
            new_balance = balance - total_cost

            remaining_slots = gacha["remaining_slots"] - play_count
            await conn.execute(
                """
                UPDATE gacha_masters
                SET remaining_slots = ?,
                    status = CASE WHEN ? = 0 THEN 'sold_out' ELSE status END,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
                """,
                (remaining_slots, remaining_slots, gacha_id),
            )

            await self._insert_point_transaction(
                conn,
                user_id=user_id,
                amount=-total_cost,
                balance_after=new_balance,
                transaction_type="gacha_play",
                description=f"Gacha play x{play_count}",
                reference_id=transaction_id,
                metadata={"gacha_id": gacha_id, "play_count": play_count},
            )

            card_ids = _unique(slot["card_id"] for slot in chosen if slot["card_id"])
            cards: dict[str, aiosqlite.Row] = {}
            if card_ids:
                cursor = await conn.execute(
                    f"""
                    SELECT id, name, image_url, prize_tier, conversion_points
                    FROM cards WHERE id IN ({_placeholders(len(card_ids))})
                    """,
                    card_ids,
                )
                cards = {row["id"]: row for row in await cursor.fetchall()}

        drawn_cards: list[DrawnCard] = []
        for slot in chosen:
            card = cards.get(slot["card_id"]) if slot["card_id"] else None
            drawn_cards.append(
                DrawnCard(
                    slot_id=slot["id"],
                    card_id=slot["card_id"] or "",
                    name=card["name"] if card else UNKNOWN_CARD_NAME,
                    image_url=card["image_url"] if card else None,
                    prize_tier=card["prize_tier"] if card else "miss",
                    conversion_points=card["conversion_points"] if card else 0,
                )
            )

        logger.info(
            f"User {user_id} played gacha {gacha_id} x{play_count}, "
            f"got {len(drawn_cards)} cards ({remaining_slots} slots left)"
        )
        return DrawResult(
            transaction_id=transaction_id,
            drawn_cards=drawn_cards,
            total_cost=total_cost,
            new_balance=new_balance,
            remaining_slots=remaining_slots,
        )

    async def get_user_transactions(
        self,
        user_id: str,
        *,
        limit: int = 20,
        offset: int = 0,
    ) -> list[dict]:
        rows = await self._fetchall(
            """
            SELECT t.*, g.title AS gacha_title
            FROM user_transactions t
            LEFT JOIN gacha_masters g ON g.id = t.gacha_id
            WHERE t.user_id = ?
            ORDER BY t.created_at DESC, t.rowid DESC
            LIMIT ? OFFSET ?
            """,
            (user_id, limit, offset),
        )
        transactions = []
        for row in rows:
            record = dict(row)
            record["result_items"] = _decode_json(row["result_items"], [])
            transactions.append(record)
        return transactions

    # ------------------------------------------------------------------
    # Points ledger
    # ------------------------------------------------------------------

    async def _insert_point_transaction(
        self,
        conn: aiosqlite.Connection,
        *,
        user_id: str,
        amount: int,
        balance_after: int,
        transaction_type: str,
        description: Optional[str] = None,
        reference_id: Optional[str] = None,
        staff_user_id: Optional[str] = None,
        metadata: Optional[str | dict] = None,
    ) -> int:
        validated_metadata = None
        if metadata is not None:
            if isinstance(metadata, dict):
                try:
                    validated_metadata = json.dumps(metadata)
                except (TypeError, ValueError) as e:
                    logger.warning(f"Failed to serialize metadata dict for user {user_id}: {e}")
            else:
                try:
                    json.loads(metadata)
                    validated_metadata = metadata
                except (json.JSONDecodeError, TypeError) as e:
                    logger.warning(f"Invalid JSON metadata for user {user_id}: {e}")

        cursor = await conn.execute(
            """
            INSERT INTO point_transactions (
                user_id, amount, balance_after, transaction_type,
                description, reference_id, staff_user_id, metadata
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                amount,
                balance_after,
                transaction_type,
                description,
                reference_id,
                staff_user_id,
                validated_metadata,
            ),
        )
        return cursor.lastrowid

    async def _apply_points_delta(self, conn: aiosqlite.Connection, user_id: str, delta: int) -> int:
        cursor = await conn.execute(
            "SELECT points_balance FROM profiles WHERE user_id = ?",
            (user_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            raise NotFoundError("user_not_found")

        new_balance = row["points_balance"] + delta
        if new_balance < 0:
            raise GachaError("insufficient_points", required=-delta, balance=row["points_balance"])

        await conn.execute(
            "UPDATE profiles SET points_balance = ?, updated_at = CURRENT_TIMESTAMP WHERE user_id = ?",
            (new_balance, user_id),
        )
        return new_balance

    async def update_points_balance(self, user_id: str, delta: int) -> int:
        """Apply ``delta`` to the balance without a ledger entry; returns the new balance."""
        try:
            async with self.transaction() as conn:
                return await self._apply_points_delta(conn, user_id, delta)
        except GachaError:
            raise
        except Exception as e:
            logger.error(f"Failed to update points balance for user {user_id}: delta={delta}, error={e}")
            raise RuntimeError(f"Failed to update points balance for user {user_id}: {e}") from e

    async def credit_points(
        self,
        *,
        user_id: str,
        amount: int,
        staff_user_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> tuple[int, int]:
        """Admin credit (or debit when negative). Returns ``(new_balance, ledger_id)``."""
        if not isinstance(amount, int) or isinstance(amount, bool) or amount == 0:
            raise GachaError("invalid_amount")

        async with self.transaction() as conn:
            new_balance = await self._apply_points_delta(conn, user_id, amount)
            ledger_id = await self._insert_point_transaction(
                conn,
                user_id=user_id,
                amount=amount,
                balance_after=new_balance,
                transaction_type="admin_credit" if amount > 0 else "admin_debit",
                description=reason,
                staff_user_id=staff_user_id,
            )

        logger.info(f"Staff {staff_user_id} adjusted points for {user_id} by {amount} (balance {new_balance})")
        return new_balance, ledger_id

    async def get_point_transactions(
        self,
        user_id: str,
        *,
        limit: int = 10,
        offset: int = 0,
    ) -> list[aiosqlite.Row]:
        return await self._fetchall(
            """
            SELECT * FROM point_transactions
            WHERE user_id = ?
            ORDER BY created_at DESC, id DESC
            LIMIT ? OFFSET ?
            """,
            (user_id, limit, offset),
        )

    async def count_point_transactions(self, user_id: str) -> int:
        row = await self._fetchone(
            "SELECT COUNT(*) AS count FROM point_transactions WHERE user_id = ?",
            (user_id,),
        )
        return row["count"] if row else 0

    # ------------------------------------------------------------------
    # Inventory
    # ------------------------------------------------------------------

    async def get_user_inventory(self, user_id: str) -> list[aiosqlite.Row]:
        """Drawn cards still awaiting a shipping or conversion choice."""
        return await self._fetchall(
            """
            SELECT s.id AS slot_id, s.card_id, s.gacha_id, s.drawn_at, s.selection_deadline,
                   c.name, c.image_url, c.prize_tier, c.conversion_points,
                   g.title AS gacha_title
            FROM gacha_slots s
            LEFT JOIN cards c ON c.id = s.card_id
            LEFT JOIN gacha_masters g ON g.id = s.gacha_id
            LEFT JOIN inventory_actions a ON a.slot_id = s.id
            WHERE s.user_id = ? AND s.is_drawn = 1 AND a.id IS NULL
            ORDER BY s.drawn_at DESC, s.slot_number
            """,
            (user_id,),
        )

    async def _fetch_actionable_slots(
        self,
        conn: aiosqlite.Connection,
        user_id: str,
        slot_ids: Sequence[str],
    ) -> list[aiosqlite.Row]:
        """Slots drawn by ``user_id`` that have no inventory action, in request order."""
        cursor = await conn.execute(
            f"""
            SELECT s.id AS slot_id, s.card_id, COALESCE(c.conversion_points, 0) AS conversion_points
            FROM gacha_slots s
            LEFT JOIN cards c ON c.id = s.card_id
            LEFT JOIN inventory_actions a ON a.slot_id = s.id
            WHERE s.id IN ({_placeholders(len(slot_ids))})
              AND s.user_id = ? AND s.is_drawn = 1 AND a.id IS NULL
            """,
            (*slot_ids, user_id),
        )
        found = {row["slot_id"]: row for row in await cursor.fetchall()}
        for slot_id in slot_ids:
            if slot_id not in found:
                raise GachaError("slot_not_convertible", slot_id=slot_id)
        return [found[slot_id] for slot_id in slot_ids]

    async def _convert_slots(
        self,
        conn: aiosqlite.Connection,
        user_id: str,
        slots: Sequence[aiosqlite.Row],
        *,
        transaction_type: str,
        description: str,
    ) -> ConversionResult:
        processed_at = _iso(_utcnow())
        await conn.executemany(
            """
            INSERT INTO inventory_actions (
                id, user_id, slot_id, card_id, action_type, status,
                converted_points, processed_at
            ) VALUES (?, ?, ?, ?, 'conversion', 'completed', ?, ?)
            """,
            [
                (_new_id(), user_id, slot["slot_id"], slot["card_id"], slot["conversion_points"], processed_at)
                for slot in slots
            ],
        )

        total_points = sum(slot["conversion_points"] for slot in slots)
        new_balance = await self._apply_points_delta(conn, user_id, total_points)
        await self._insert_point_transaction(
            conn,
            user_id=user_id,
            amount=total_points,
            balance_after=new_balance,
            transaction_type=transaction_type,
            description=description,
            metadata={"slot_ids": [slot["slot_id"] for slot in slots]},
        )
        return ConversionResult(
            converted_count=len(slots),
            total_points=total_points,
            new_balance=new_balance,
        )

    async def convert_slots_to_points(self, user_id: str, slot_ids: Sequence[str]) -> ConversionResult:
        """Convert drawn cards into points at each card's own conversion rate."""
        unique_ids = _unique(slot_ids)
        if not unique_ids:
            raise GachaError("no_items")

        async with self.transaction() as conn:
            slots = await self._fetch_actionable_slots(conn, user_id, unique_ids)
            result = await self._convert_slots(
                conn,
                user_id,
                slots,
                transaction_type="conversion",
                description=f"Converted {len(slots)} cards",
            )

        logger.info(
            f"Converted {result.converted_count} items for user {user_id}, "
            f"added {result.total_points} points. New balance: {result.new_balance}"
        )
        return result

    async def request_shipping(self, user_id: str, slot_ids: Sequence[str]) -> list[str]:
        """Queue drawn cards for physical shipment; returns the new action ids."""
        unique_ids = _unique(slot_ids)
        if not unique_ids:
            raise GachaError("no_items")

        async with self.transaction() as conn:
            slots = await self._fetch_actionable_slots(conn, user_id, unique_ids)
            action_rows = [
                (_new_id(), user_id, slot["slot_id"], slot["card_id"]) for slot in slots
            ]
            await conn.executemany(
                """
                INSERT INTO inventory_actions (id, user_id, slot_id, card_id, action_type, status)
                VALUES (?, ?, ?, ?, 'shipping', 'pending')
                """,
                action_rows,
            )

        logger.info(f"User {user_id} requested shipping for {len(action_rows)} cards")
        return [row[0] for row in action_rows]

    async def auto_convert_expired_slots(
        self,
        *,
        now: Optional[datetime] = None,
        limit: int = AUTO_CONVERT_BATCH_LIMIT,
    ) -> AutoConvertReport:
        """
        Convert drawn cards whose selection deadline has passed.

        Each user's batch commits independently; a failing user is reported
        and the remaining users are still processed.
        """
        cutoff = _iso(now or _utcnow())
        expired = await self._fetchall(
            """
            SELECT s.id AS slot_id, s.user_id
            FROM gacha_slots s
            LEFT JOIN inventory_actions a ON a.slot_id = s.id
            WHERE s.is_drawn = 1
              AND s.user_id IS NOT NULL
              AND s.card_id IS NOT NULL
              AND s.selection_deadline < ?
              AND a.id IS NULL
            ORDER BY s.selection_deadline
            LIMIT ?
            """,
            (cutoff, limit),
        )

        report = AutoConvertReport()
        if not expired:
            logger.info("No expired slots found.")
            return report

        per_user: dict[str, list[str]] = defaultdict(list)
        for row in expired:
            per_user[row["user_id"]].append(row["slot_id"])

        logger.info(f"Found {len(expired)} expired slots across {len(per_user)} users")
        for user_id, slot_ids in per_user.items():
            try:
                async with self.transaction() as conn:
                    slots = await self._fetch_actionable_slots(conn, user_id, slot_ids)
                    result = await self._convert_slots(
                        conn,
                        user_id,
                        slots,
                        transaction_type="auto_conversion",
                        description=f"Auto-converted {len(slots)} cards after selection deadline",
                    )
            except Exception as e:
                logger.exception(f"Error auto-converting slots for user {user_id}: {e}")
                report.errors.append(f"User {user_id}: {e}")
                continue

            report.processed += result.converted_count
            report.users += 1
            logger.info(
                f"Processed {result.converted_count} slots for user {user_id}, added {result.total_points} points"
            )

        logger.info(f"Auto-conversion complete. Processed: {report.processed}, Errors: {len(report.errors)}")
        return report

    async def list_inventory_actions(
        self,
        *,
        action_type: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[aiosqlite.Row]:
        if action_type is not None and action_type not in ACTION_TYPES:
            raise GachaError("invalid_status", status=action_type)
        if status is not None and status not in ACTION_STATUSES:
            raise GachaError("invalid_status", status=status)

        clauses: list[str] = []
        params: list[Any] = []
        if action_type is not None:
            clauses.append("a.action_type = ?")
            params.append(action_type)
        if status is not None:
            clauses.append("a.status = ?")
            params.append(status)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return await self._fetchall(
            f"""
            SELECT a.*, c.name AS card_name, p.display_name, p.email
            FROM inventory_actions a
            LEFT JOIN cards c ON c.id = a.card_id
            LEFT JOIN profiles p ON p.user_id = a.user_id
            {where}
            ORDER BY a.requested_at DESC, a.rowid DESC
            LIMIT ? OFFSET ?
            """,
            (*params, limit, offset),
        )

    async def update_inventory_action_status(
        self,
        action_id: str,
        status: str,
        *,
        tracking_number: Optional[str] = None,
    ) -> aiosqlite.Row:
        if status not in ACTION_STATUSES:
            raise GachaError("invalid_status", status=status)

        processed_at = _iso(_utcnow()) if status in ("completed", "shipped") else None
        async with self.transaction() as conn:
            cursor = await conn.execute(
                """
                UPDATE inventory_actions
                SET status = ?,
                    tracking_number = COALESCE(?, tracking_number),
                    processed_at = COALESCE(?, processed_at)
                WHERE id = ?
                """,
                (status, tracking_number, processed_at, action_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("action_not_found")
            cursor = await conn.execute("SELECT * FROM inventory_actions WHERE id = ?", (action_id,))
            row = await cursor.fetchone()

        logger.info(f"Inventory action {action_id} set to {status}")
        return row

    # ------------------------------------------------------------------
    # Data imports
    # ------------------------------------------------------------------

    async def _require_tenant(self, conn: aiosqlite.Connection, tenant_id: str) -> None:
        cursor = await conn.execute("SELECT 1 FROM tenants WHERE id = ?", (tenant_id,))
        if await cursor.fetchone() is None:
            raise NotFoundError("tenant_not_found")

    async def _record_import(
        self,
        conn: aiosqlite.Connection,
        report: ImportReport,
        *,
        tenant_id: str,
        file_name: Optional[str],
        imported_by: Optional[str],
    ) -> None:
        await conn.execute(
            """
            INSERT INTO import_history (
                id, tenant_id, data_type, file_name, total_records,
                inserted, skipped, error_count, imported_by, imported_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                report.history_id,
                tenant_id,
                report.data_type,
                file_name,
                report.total_records,
                report.inserted + report.updated,
                report.skipped + report.user_not_found,
                len(report.errors),
                imported_by,
                _iso(_utcnow()),
            ),
        )

    async def _import_user_lookup(
        self,
        conn: aiosqlite.Connection,
        tenant_id: str,
    ) -> tuple[dict[str, str], dict[int, str]]:
        """Tenant customers by email and by the id they had in the legacy system."""
        cursor = await conn.execute(
            "SELECT user_id, email FROM profiles WHERE tenant_id = ? AND email IS NOT NULL",
            (tenant_id,),
        )
        by_email = {row["email"].lower(): row["user_id"] for row in await cursor.fetchall()}

        cursor = await conn.execute(
            """
            SELECT legacy_user_id, applied_user_id FROM user_migrations
            WHERE tenant_id = ? AND is_applied = 1
              AND legacy_user_id IS NOT NULL AND applied_user_id IS NOT NULL
            """,
            (tenant_id,),
        )
        by_legacy = {row["legacy_user_id"]: row["applied_user_id"] for row in await cursor.fetchall()}
        return by_email, by_legacy

    @staticmethod
    def _resolve_import_user(
        row: dict[str, Any],
        by_email: dict[str, str],
        by_legacy: dict[int, str],
    ) -> Optional[str]:
        if row.get("user_email") and row["user_email"] in by_email:
            return by_email[row["user_email"]]
        if row.get("legacy_user_id") is not None:
            return by_legacy.get(row["legacy_user_id"])
        return None

    async def stage_user_migrations(
        self,
        tenant_id: str,
        parsed: ParsedImport,
        *,
        file_name: Optional[str] = None,
        imported_by: Optional[str] = None,
        batch_size: int = INSERT_BATCH_SIZE,
    ) -> ImportReport:
        """
        Stage legacy customers for ``apply_user_migrations``.

        Rows are upserted on (tenant, email). Customers whose profile has
        already been created are left untouched and counted as skipped.
        """
        report = ImportReport(
            history_id=_new_id(),
            data_type="users",
            total_records=parsed.total_lines,
            errors=list(parsed.errors),
        )
        columns = _MIGRATION_COLUMNS
        upsert = f"""
            INSERT INTO user_migrations (id, tenant_id, {', '.join(columns)}, import_id)
            VALUES ({_placeholders(len(columns) + 3)})
            ON CONFLICT(tenant_id, email) DO UPDATE SET
                {', '.join(f'{column} = excluded.{column}' for column in columns[1:])},
                import_id = excluded.import_id
        """

        async with self.transaction() as conn:
            await self._require_tenant(conn, tenant_id)
            cursor = await conn.execute(
                "SELECT email, is_applied FROM user_migrations WHERE tenant_id = ?",
                (tenant_id,),
            )
            existing = {row["email"]: row["is_applied"] for row in await cursor.fetchall()}

            params: list[tuple] = []
            for record in parsed.rows:
                state = existing.get(record["email"])
                if state:
                    report.skipped += 1
                    continue
                if state is None:
                    report.inserted += 1
                else:
                    report.updated += 1
                params.append(
                    (_new_id(), tenant_id, *(record.get(column) for column in columns), report.history_id)
                )

            for i in range(0, len(params), batch_size):
                await conn.executemany(upsert, params[i : i + batch_size])

            await self._record_import(conn, report, tenant_id=tenant_id, file_name=file_name, imported_by=imported_by)

        logger.info(
            f"Staged {report.inserted} new and {report.updated} updated customer migrations "
            f"for tenant {tenant_id} ({report.skipped} already applied, {len(report.errors)} rejected)"
        )
        return report

    async def _apply_user_migration(
        self,
        conn: aiosqlite.Connection,
        tenant_id: str,
        migration: aiosqlite.Row,
    ) -> tuple[str, bool]:
        """Create the account for one staged customer. Returns ``(user_id, created)``."""
        cursor = await conn.execute("SELECT id FROM users WHERE email = ?", (migration["email"],))
        existing = await cursor.fetchone()
        if existing is not None:
            user_id, created = existing["id"], False
        else:
            user_id, created = _new_id(), True
            points = migration["points_balance"]
            await conn.execute(
                "INSERT INTO users (id, email, password_hash) VALUES (?, ?, ?)",
                (user_id, migration["email"], UNUSABLE_PASSWORD_HASH),
            )
            await conn.execute(
                f"""
                INSERT INTO profiles (
                    id, user_id, tenant_id, email, points_balance, {', '.join(_PROFILE_IMPORT_COLUMNS)}
                ) VALUES ({_placeholders(len(_PROFILE_IMPORT_COLUMNS) + 5)})
                """,
                (
                    _new_id(),
                    user_id,
                    tenant_id,
                    migration["email"],
                    points,
                    *(migration[column] for column in _PROFILE_IMPORT_COLUMNS),
                ),
            )
            await conn.execute(
                "INSERT INTO user_roles (id, user_id, role) VALUES (?, ?, 'user')",
                (_new_id(), user_id),
            )
            if points:
                await self._insert_point_transaction(
                    conn,
                    user_id=user_id,
                    amount=points,
                    balance_after=points,
                    transaction_type="migration",
                    description="Balance carried over from the previous store",
                    reference_id=migration["id"],
                    metadata={"legacy_user_id": migration["legacy_user_id"]},
                )

        await conn.execute(
            "UPDATE user_migrations SET is_applied = 1, applied_user_id = ? WHERE id = ?",
            (user_id, migration["id"]),
        )
        return user_id, created

    async def apply_user_migrations(
        self,
        tenant_id: str,
        *,
        limit: int = PROFILE_MIGRATION_BATCH_LIMIT,
    ) -> ProfileMigrationReport:
        """
        Create accounts and profiles for the oldest ``limit`` staged customers.

        Customers whose email already has an account are marked applied without
        changes. Each customer runs in its own savepoint, so one bad row is
        reported without undoing the rest of the batch.
        """
        report = ProfileMigrationReport()
        async with self.transaction() as conn:
            await self._require_tenant(conn, tenant_id)
            cursor = await conn.execute(
                """
                SELECT * FROM user_migrations
                WHERE tenant_id = ? AND is_applied = 0
                ORDER BY created_at, rowid
                LIMIT ?
                """,
                (tenant_id, limit),
            )
            pending = await cursor.fetchall()

            for migration in pending:
                report.processed += 1
                await conn.execute("SAVEPOINT apply_migration")
                try:
                    _, created = await self._apply_user_migration(conn, tenant_id, migration)
                except aiosqlite.Error as e:
                    await conn.execute("ROLLBACK TO apply_migration")
                    await conn.execute("RELEASE apply_migration")
                    logger.warning(f"Failed to migrate customer {migration['email']}: {e}")
                    report.errors.append(f"{migration['email']}: {e}")
                    continue
                await conn.execute("RELEASE apply_migration")

                report.marked_applied += 1
                if created:
                    report.profiles_created += 1
                else:
                    report.skipped_existing += 1

            cursor = await conn.execute(
                "SELECT COUNT(*) AS count FROM user_migrations WHERE tenant_id = ? AND is_applied = 0",
                (tenant_id,),
            )
            report.total_remaining = (await cursor.fetchone())["count"]

        logger.info(
            f"Applied {report.marked_applied}/{report.processed} customer migrations for tenant {tenant_id} "
            f"({report.profiles_created} created, {report.total_remaining} remaining)"
        )
        return report

    async def import_transactions(
        self,
        tenant_id: str,
        parsed: ParsedImport,
        *,
        file_name: Optional[str] = None,
        imported_by: Optional[str] = None,
        batch_size: int = INSERT_BATCH_SIZE,
    ) -> ImportReport:
        """
        Load historical draw purchases into ``user_transactions``.

        Balances are not touched. A row matching an existing purchase on
        (user, points spent, timestamp) is skipped.
        """
        report = ImportReport(
            history_id=_new_id(),
            data_type="transactions",
            total_records=parsed.total_lines,
            errors=list(parsed.errors),
        )
        async with self.transaction() as conn:
            await self._require_tenant(conn, tenant_id)
            by_email, by_legacy = await self._import_user_lookup(conn, tenant_id)

            cursor = await conn.execute("SELECT id, title FROM gacha_masters WHERE tenant_id = ?", (tenant_id,))
            gachas = {row["title"].lower(): row["id"] for row in await cursor.fetchall()}

            cursor = await conn.execute(
                "SELECT user_id, total_spent_points, created_at FROM user_transactions WHERE tenant_id = ?",
                (tenant_id,),
            )
            seen = {
                (row["user_id"], row["total_spent_points"], row["created_at"]) for row in await cursor.fetchall()
            }

            now = _iso(_utcnow())
            params: list[tuple] = []
            for row in parsed.rows:
                user_id = self._resolve_import_user(row, by_email, by_legacy)
                if user_id is None:
                    report.user_not_found += 1
                    continue

                created_at = row["created_at"] or now
                key = (user_id, row["total_spent_points"], created_at)
                if key in seen:
                    report.skipped += 1
                    continue
                seen.add(key)

                gacha_id = gachas.get(row["gacha_title"].lower()) if row.get("gacha_title") else None
                params.append(
                    (
                        _new_id(),
                        user_id,
                        gacha_id,
                        row["play_count"],
                        row["total_spent_points"],
                        row["status"],
                        tenant_id,
                        created_at,
                        report.history_id,
                    )
                )

            for i in range(0, len(params), batch_size):
                await conn.executemany(
                    """
                    INSERT INTO user_transactions (
                        id, user_id, gacha_id, play_count, total_spent_points,
                        status, result_items, tenant_id, created_at, import_id
                    ) VALUES (?, ?, ?, ?, ?, ?, '[]', ?, ?, ?)
                    """,
                    params[i : i + batch_size],
                )
            report.inserted = len(params)

            await self._record_import(conn, report, tenant_id=tenant_id, file_name=file_name, imported_by=imported_by)

        logger.info(
            f"Imported {report.inserted} transactions for tenant {tenant_id} "
            f"({report.skipped} duplicates, {report.user_not_found} unknown users)"
        )
        return report

    async def import_inventory_actions(
        self,
        tenant_id: str,
        parsed: ParsedImport,
        *,
        file_name: Optional[str] = None,
        imported_by: Optional[str] = None,
        batch_size: int = INSERT_BATCH_SIZE,
    ) -> ImportReport:
        """
        Load historical shipping requests and point conversions.

        Imported rows have no slot. Pending shipments join the admin shipping
        queue. Rows carrying a legacy id already imported for the tenant are
        skipped.
        """
        report = ImportReport(
            history_id=_new_id(),
            data_type="inventory",
            total_records=parsed.total_lines,
            errors=list(parsed.errors),
        )
        async with self.transaction() as conn:
            await self._require_tenant(conn, tenant_id)
            by_email, by_legacy = await self._import_user_lookup(conn, tenant_id)

            cursor = await conn.execute("SELECT id, name FROM cards WHERE tenant_id = ?", (tenant_id,))
            cards: dict[str, str] = {}
            for row in await cursor.fetchall():
                cards.setdefault(row["name"].lower(), row["id"])

            cursor = await conn.execute(
                "SELECT legacy_id FROM inventory_actions WHERE tenant_id = ? AND legacy_id IS NOT NULL",
                (tenant_id,),
            )
            seen_legacy = {row["legacy_id"] for row in await cursor.fetchall()}

            now = _iso(_utcnow())
            params: list[tuple] = []
            for row in parsed.rows:
                user_id = self._resolve_import_user(row, by_email, by_legacy)
                if user_id is None:
                    report.user_not_found += 1
                    continue

                legacy_id = row.get("legacy_id")
                if legacy_id is not None:
                    if legacy_id in seen_legacy:
                        report.skipped += 1
                        continue
                    seen_legacy.add(legacy_id)

                requested_at = row["requested_at"] or now
                processed_at = row["processed_at"]
                if processed_at is None and row["status"] in ("completed", "shipped"):
                    processed_at = requested_at
                card_id = cards.get(row["card_name"].lower()) if row.get("card_name") else None
                params.append(
                    (
                        _new_id(),
                        user_id,
                        card_id,
                        row["action_type"],
                        row["status"],
                        row["converted_points"],
                        row["tracking_number"],
                        tenant_id,
                        requested_at,
                        processed_at,
                        legacy_id,
                        report.history_id,
                    )
                )

            for i in range(0, len(params), batch_size):
                await conn.executemany(
                    """
                    INSERT INTO inventory_actions (
                        id, user_id, card_id, action_type, status, converted_points,
                        tracking_number, tenant_id, requested_at, processed_at, legacy_id, import_id
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    params[i : i + batch_size],
                )
            report.inserted = len(params)

            await self._record_import(conn, report, tenant_id=tenant_id, file_name=file_name, imported_by=imported_by)

        logger.info(
            f"Imported {report.inserted} inventory actions for tenant {tenant_id} "
            f"({report.skipped} duplicates, {report.user_not_found} unknown users)"
        )
        return report

    async def list_import_history(
        self,
        *,
        tenant_id: Optional[str] = None,
        data_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[aiosqlite.Row]:
        clauses: list[str] = []
        params: list[Any] = []
        if tenant_id is not None:
            clauses.append("tenant_id = ?")
            params.append(tenant_id)
        if data_type is not None:
            clauses.append("data_type = ?")
            params.append(data_type)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return await self._fetchall(
            f"""
            SELECT * FROM import_history
            {where}
            ORDER BY imported_at DESC, rowid DESC
            LIMIT ? OFFSET ?
            """,
            (*params, limit, offset),
        )

    async def delete_import_history(self, history_id: str) -> tuple[str, int]:
        """
        Remove one import and the rows it loaded. Returns ``(data_type, deleted_rows)``.

        Accounts already created from a customer import are kept; only the
        staged customer rows are removed.
        """
        async with self.transaction() as conn:
            cursor = await conn.execute(
                "SELECT data_type, tenant_id FROM import_history WHERE id = ?",
                (history_id,),
            )
            history = await cursor.fetchone()
            if history is None:
                raise NotFoundError("import_not_found")

            table = _IMPORT_TABLES[history["data_type"]]
            cursor = await conn.execute(f"DELETE FROM {table} WHERE import_id = ?", (history_id,))
            deleted = cursor.rowcount
            await conn.execute("DELETE FROM import_history WHERE id = ?", (history_id,))

        logger.info(
            f"Deleted {history['data_type']} import {history_id} for tenant {history['tenant_id']} "
            f"({deleted} rows removed)"
        )
        return history["data_type"], deleted


__all__ = ["Database"]
