"""Global constants for the gacha backend."""

from __future__ import annotations

import re

# ============================================================================
# Database
# ============================================================================

DATABASE_MAX_RETRIES = 5
DATABASE_RETRY_BASE_DELAY_SECONDS = 1

# ============================================================================
# Enumerations (mirrors the CHECK constraints in the schema)
# ============================================================================

APP_ROLES = ("admin", "user", "super_admin")
ADMIN_ROLES = ("admin", "super_admin")

CARD_CATEGORIES = ("yugioh", "pokemon", "weiss", "onepiece")
CARD_RARITIES = ("S", "A", "B", "C", "D")
PRIZE_TIERS = ("S", "A", "B", "miss")

GACHA_STATUSES = ("draft", "active", "sold_out", "archived")
PUBLIC_GACHA_STATUSES = ("active", "sold_out")

TRANSACTION_STATUSES = ("pending", "completed", "error")
ACTION_TYPES = ("shipping", "conversion")
ACTION_STATUSES = ("pending", "processing", "completed", "shipped")

# ============================================================================
# Draws
# ============================================================================

DEFAULT_ALLOWED_PLAY_COUNTS = (1, 10, 100)
DEFAULT_SELECTION_DEADLINE_DAYS = 14
UNKNOWN_CARD_NAME = "Unknown card"

# ============================================================================
# Batching
# ============================================================================

INSERT_BATCH_SIZE = 500
AUTO_CONVERT_BATCH_LIMIT = 100

# ============================================================================
# Sessions
# ============================================================================

SESSION_TTL_HOURS = 24 * 7
SESSION_TOKEN_BYTES = 32
SESSION_CLEANUP_INTERVAL_SECONDS = 3600
MIN_PASSWORD_LENGTH = 8
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# ============================================================================
# Rate Limiting
# ============================================================================

RATE_LIMIT_ALERT_THRESHOLD = 3  # violations before logging an alert
RATE_LIMIT_ALERT_WINDOW_SECONDS = 300  # 5 minutes
RATE_LIMIT_ALERT_COOLDOWN_SECONDS = 600  # 10 minutes between alerts
RATE_LIMIT_SWEEP_INTERVAL_SECONDS = 60  # how often idle buckets are dropped

# Defaults when config.json has no rule for the endpoint
PLAY_GACHA_COOLDOWN_SECONDS = 10
PLAY_GACHA_MAX_USES = 5
LOGIN_COOLDOWN_SECONDS = 60
LOGIN_MAX_USES = 10
SIGNUP_COOLDOWN_SECONDS = 3600
SIGNUP_MAX_USES = 5

# ============================================================================
# Pagination
# ============================================================================

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

# ============================================================================
# Data imports
# ============================================================================

MAX_IMPORT_FILE_SIZE_BYTES = 10 * 1024 * 1024
IMPORT_DATA_TYPES = ("users", "transactions", "inventory")
IMPORT_ERROR_PREVIEW_LIMIT = 20
PROFILE_MIGRATION_BATCH_LIMIT = 100
# Never matches a PBKDF2 hash, so migrated accounts cannot log in until a password is set.
UNUSABLE_PASSWORD_HASH = "!"
