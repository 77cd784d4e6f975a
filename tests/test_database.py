import pytest

from gacha_core import database as database_module
from gacha_core.database import Database
from gacha_core.models import SlotItem
from gacha_core.utils.errors import ConflictError, GachaError, NotFoundError


@pytest.mark.asyncio
async def test_migrations_are_recorded(db):
    cursor = await db._connection.execute("SELECT version, name FROM schema_migrations ORDER BY version")
    rows = await cursor.fetchall()

    assert [row["version"] for row in rows] == [1, 2, 3, 4, 5]
    assert rows[0]["name"] == "accounts_schema"


@pytest.mark.asyncio
async def test_migrations_create_core_tables(db):
    cursor = await db._connection.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
    tables = {row["name"] for row in await cursor.fetchall()}

    for table in (
        "tenants",
        "users",
        "sessions",
        "user_roles",
        "profiles",
        "cards",
        "gacha_masters",
        "gacha_slots",
        "user_transactions",
        "inventory_actions",
        "point_transactions",
        "user_migrations",
        "import_history",
    ):
        assert table in tables


@pytest.mark.asyncio
async def test_reconnect_does_not_reapply_migrations(tmp_path):
    path = tmp_path / "gacha.db"
    first = Database(path)
    await first.connect()
    await first.close()

    second = Database(path)
    await second.connect()
    assert await second._get_current_schema_version() == 5
    await second.close()


@pytest.mark.asyncio
async def test_connect_fails_when_schema_lags_expected_version(monkeypatch):
    monkeypatch.setattr(database_module, "DATABASE_MAX_RETRIES", 0)
    database = Database(":memory:")
    database.target_schema_version = 6

    with pytest.raises(RuntimeError, match="expected v6"):
        await database.connect()
    assert database._connection is None


@pytest.mark.asyncio
async def test_operations_require_connection():
    database = Database(":memory:")
    with pytest.raises(RuntimeError):
        await database.get_gacha("missing")


@pytest.mark.asyncio
async def test_create_user_sets_up_profile_and_role(db):
    user_id = await db.create_user("  Player@Example.com ", "correct-horse", display_name="Player")

    profile = await db.get_profile(user_id)
    assert profile["email"] == "player@example.com"
    assert profile["display_name"] == "Player"
    assert profile["points_balance"] == 0
    assert await db.get_roles(user_id) == ["user"]


@pytest.mark.asyncio
async def test_create_user_rejects_duplicate_email(db):
    await db.create_user("dup@example.com", "correct-horse")

    with pytest.raises(ConflictError) as exc_info:
        await db.create_user("DUP@example.com", "another-pass")
    assert exc_info.value.error_type == "email_taken"


@pytest.mark.asyncio
async def test_authenticate(db):
    user_id = await db.create_user("login@example.com", "correct-horse")

    assert await db.authenticate("login@example.com", "correct-horse") == user_id
    assert await db.authenticate("login@example.com", "wrong-horse") is None
    assert await db.authenticate("nobody@example.com", "correct-horse") is None

    profile = await db.get_profile(user_id)
    assert profile["last_login_at"] is not None


@pytest.mark.asyncio
async def test_sessions_expire_and_are_cleaned_up(db, user_factory):
    user_id = await user_factory()
    live = await db.create_session(user_id)
    expired = await db.create_session(user_id, ttl_hours=0)

    assert await db.get_session_user(live) == user_id
    assert await db.get_session_user(expired) is None
    assert await db.cleanup_expired_sessions() == 1

    assert await db.delete_session(live) is True
    assert await db.get_session_user(live) is None


@pytest.mark.asyncio
async def test_roles(db, user_factory):
    user_id = await user_factory()
    assert await db.is_admin(user_id) is False

    await db.add_role(user_id, "admin")
    await db.add_role(user_id, "admin")
    assert await db.get_roles(user_id) == ["admin", "user"]
    assert await db.is_admin(user_id) is True
    assert await db.is_super_admin(user_id) is False

    assert await db.remove_role(user_id, "admin") is True
    assert await db.is_admin(user_id) is False

    with pytest.raises(GachaError) as exc_info:
        await db.add_role(user_id, "owner")
    assert exc_info.value.error_type == "invalid_role"


@pytest.mark.asyncio
async def test_super_admin_counts_as_admin(db, user_factory):
    user_id = await user_factory(roles=("super_admin",))
    assert await db.is_admin(user_id) is True
    assert await db.is_super_admin(user_id) is True


@pytest.mark.asyncio
async def test_tenant_allowed_ips_round_trip(db):
    open_id = await db.create_tenant(slug="open", name="Open shop")
    await db.create_tenant(slug="closed", name="Closed shop", allowed_ips=[])
    await db.create_tenant(slug="inactive", name="Gone", is_active=False)

    assert (await db.get_active_tenant_by_slug("open"))["allowed_ips"] is None
    assert (await db.get_active_tenant_by_slug("closed"))["allowed_ips"] == []
    assert await db.get_active_tenant_by_slug("inactive") is None

    await db.update_tenant_allowed_ips(open_id, ["203.0.113.7"])
    assert (await db.get_active_tenant_by_slug("open"))["allowed_ips"] == ["203.0.113.7"]

    with pytest.raises(ConflictError):
        await db.create_tenant(slug="open", name="Again")


@pytest.mark.asyncio
async def test_list_gachas_filters(db, gacha_factory):
    pokemon = await gacha_factory(category="pokemon", tags=("new", "hot"))
    yugioh = await gacha_factory(category="yugioh", tags=("hot",))
    await gacha_factory(category="pokemon", status="draft")

    public = await db.list_gachas()
    assert {g["id"] for g in public} == {pokemon, yugioh}

    assert [g["id"] for g in await db.list_gachas(category="yugioh")] == [yugioh]
    assert [g["id"] for g in await db.list_gachas(tag="new")] == [pokemon]
    assert {g["id"] for g in await db.list_gachas(tag="hot")} == {pokemon, yugioh}

    drafts = await db.list_gachas(statuses=("draft",))
    assert len(drafts) == 1
    assert drafts[0]["display_tags"] == []


@pytest.mark.asyncio
async def test_prize_summary_tracks_remaining(db, gacha_factory, user_factory):
    gacha_id = await gacha_factory(price=0)
    user_id = await user_factory()

    summary = await db.get_gacha_prize_summary(gacha_id)
    assert [row["prize_tier"] for row in summary] == ["S", "A", "miss"]
    assert sum(row["total"] for row in summary) == 10

    await db.play_gacha_atomic(gacha_id=gacha_id, play_count=4, user_id=user_id)
    summary = await db.get_gacha_prize_summary(gacha_id)
    assert sum(row["remaining"] for row in summary) == 6


@pytest.mark.asyncio
async def test_update_gacha_status(db, gacha_factory):
    empty = await gacha_factory(items=[], status="draft")
    with pytest.raises(GachaError) as exc_info:
        await db.update_gacha_status(empty, "active")
    assert exc_info.value.error_type == "gacha_not_activatable"

    with pytest.raises(GachaError):
        await db.update_gacha_status(empty, "paused")
    with pytest.raises(NotFoundError):
        await db.update_gacha_status("missing", "archived")

    archived = await db.update_gacha_status(empty, "archived")
    assert archived["status"] == "archived"


@pytest.mark.asyncio
async def test_update_gacha_status_reports_gacha_removed_mid_update(db, gacha_factory, monkeypatch):
    gacha_id = await gacha_factory(status="draft")

    async def vanished(gacha_id):
        return None

    monkeypatch.setattr(db, "get_gacha", vanished)
    with pytest.raises(NotFoundError) as exc_info:
        await db.update_gacha_status(gacha_id, "archived")
    assert exc_info.value.error_type == "gacha_not_found"


@pytest.mark.asyncio
async def test_bulk_delete_only_removes_unassigned_cards(db, gacha_factory):
    gacha_id = await gacha_factory(
        items=[SlotItem(name="Bound card", quantity=2, prize_tier="A", category="pokemon")]
    )
    for name in ("Loose 1", "Loose 2", "Loose 3"):
        await db.create_card(name=name, category="pokemon")
    await db.create_card(name="Other", category="yugioh")

    assert await db.count_unassigned_cards("pokemon") == 3
    assert await db.bulk_delete_unassigned_cards("pokemon") == 3
    assert await db.count_unassigned_cards("pokemon") == 0
    assert await db.count_unassigned_cards("yugioh") == 1
    assert len(await db.list_cards(gacha_id=gacha_id)) == 2


@pytest.mark.asyncio
async def test_create_card_validates_enums(db):
    with pytest.raises(GachaError):
        await db.create_card(name="Bad", category="mtg")
    with pytest.raises(GachaError):
        await db.create_card(name="Bad", prize_tier="SSR")


@pytest.mark.asyncio
async def test_credit_points_writes_ledger(db, user_factory):
    user_id = await user_factory()
    admin_id = await user_factory(roles=("admin",))

    balance, ledger_id = await db.credit_points(user_id=user_id, amount=1500, staff_user_id=admin_id, reason="Promo")
    assert balance == 1500

    cursor = await db._connection.execute("SELECT * FROM point_transactions WHERE id = ?", (ledger_id,))
    entry = await cursor.fetchone()
    assert entry["transaction_type"] == "admin_credit"
    assert entry["balance_after"] == 1500
    assert entry["staff_user_id"] == admin_id

    balance, _ = await db.credit_points(user_id=user_id, amount=-500, staff_user_id=admin_id)
    assert balance == 1000
    assert (await db.get_point_transactions(user_id))[0]["transaction_type"] == "admin_debit"
    assert await db.count_point_transactions(user_id) == 2


@pytest.mark.asyncio
async def test_debit_cannot_go_negative(db, user_factory):
    user_id = await user_factory(points=100)

    with pytest.raises(GachaError) as exc_info:
        await db.credit_points(user_id=user_id, amount=-101)
    assert exc_info.value.error_type == "insufficient_points"
    assert (await db.get_profile(user_id))["points_balance"] == 100
    assert await db.count_point_transactions(user_id) == 0


@pytest.mark.asyncio
async def test_credit_points_rejects_unknown_user_and_zero(db):
    with pytest.raises(NotFoundError):
        await db.credit_points(user_id="missing", amount=10)
    with pytest.raises(GachaError):
        await db.credit_points(user_id="missing", amount=0)


@pytest.mark.asyncio
async def test_ledger_entry_drops_malformed_metadata(db, user_factory):
    user_id = await user_factory()

    async with db.transaction() as conn:
        entry_id = await db._insert_point_transaction(
            conn,
            user_id=user_id,
            amount=10,
            balance_after=10,
            transaction_type="test",
            metadata="{not json",
        )
    cursor = await db._connection.execute("SELECT metadata FROM point_transactions WHERE id = ?", (entry_id,))
    assert (await cursor.fetchone())["metadata"] is None
