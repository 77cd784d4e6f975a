import aiosqlite
import pytest

from gacha_core.imports import parse_inventory, parse_timestamp, parse_transactions, parse_user_migrations
from gacha_core.utils.errors import GachaError, NotFoundError

CUSTOMERS_CSV = (
    "\ufeffメールアドレス,姓,名,ポイント,id\n"
    'Hanako@Example.com,山田,花子,"1,500",101\n'
    "taro@example.com,,,0,102\n"
    "not-an-email,,,,103\n"
    "jiro@example.com,,,-5,104\n"
    "hanako@example.com,山田,花子,1200,101\n"
)

TRANSACTIONS_CSV = (
    "email,gacha,plays,points,date\n"
    'hanako@example.com,Summer Box,10,"3,000",2024-01-05T10:00:00\n'
    ",,1,100,\n"
    "ghost@example.com,,1,100,2024-01-06T00:00:00\n"
)

INVENTORY_CSV = (
    "id,email,card,type,status,tracking,points,date\n"
    "9001,hanako@example.com,Charizard ex,shipping,発送済,TRK-9,,2024-02-01T09:00:00\n"
    "9002,hanako@example.com,Energy pack,conversion,,,30,2024-02-02T09:00:00\n"
    "9003,hanako@example.com,Pikachu promo,発送,,,,2024-02-03T09:00:00\n"
    "9004,hanako@example.com,Energy pack,conversion,lost,,,\n"
)


async def _migrated_user(db, email: str) -> str:
    row = await db._fetchone("SELECT applied_user_id FROM user_migrations WHERE email = ?", (email,))
    return row["applied_user_id"]


async def _tenant_with_customers(db) -> str:
    tenant_id = await db.create_tenant(slug="osaka", name="Osaka")
    await db.stage_user_migrations(tenant_id, parse_user_migrations(CUSTOMERS_CSV))
    await db.apply_user_migrations(tenant_id)
    return tenant_id


def test_parse_user_migrations_maps_headers_and_collects_row_errors():
    parsed = parse_user_migrations(CUSTOMERS_CSV)

    assert parsed.total_lines == 5
    assert parsed.duplicates == 1
    assert parsed.errors == [
        "Row 4: invalid email 'not-an-email'",
        "Row 5: points cannot be negative",
    ]
    assert [row["email"] for row in parsed.rows] == ["hanako@example.com", "taro@example.com"]

    hanako = parsed.rows[0]
    assert hanako["points_balance"] == 1200
    assert hanako["legacy_user_id"] == 101
    assert hanako["display_name"] == "山田 花子"
    assert parsed.rows[1]["display_name"] is None


def test_parse_user_migrations_requires_email_column():
    with pytest.raises(GachaError) as exc_info:
        parse_user_migrations("name,points\nHanako,10\n")
    assert exc_info.value.error_type == "invalid_csv"
    assert exc_info.value.message == "Invalid CSV: an email column is required."

    with pytest.raises(GachaError) as exc_info:
        parse_user_migrations("")
    assert exc_info.value.message == "Invalid CSV: missing header row."


def test_parse_transactions():
    parsed = parse_transactions(TRANSACTIONS_CSV)

    assert parsed.errors == ["Row 3: no user reference"]
    assert len(parsed.rows) == 2
    first = parsed.rows[0]
    assert first["gacha_title"] == "Summer Box"
    assert first["play_count"] == 10
    assert first["total_spent_points"] == 3000
    assert first["status"] == "completed"
    assert first["created_at"] == "2024-01-05T10:00:00.000000+00:00"

    with pytest.raises(GachaError) as exc_info:
        parse_transactions("gacha,points\nBox,100\n")
    assert exc_info.value.message == "Invalid CSV: an email or user_id column is required."

    parsed = parse_transactions("email,points,status\na@example.com,abc,completed\nb@example.com,1,refunded\n")
    assert parsed.errors == ["Row 2: invalid points 'abc'", "Row 3: unknown status 'refunded'"]


def test_parse_inventory_infers_action_and_status():
    parsed = parse_inventory(INVENTORY_CSV)

    assert parsed.errors == ["Row 5: unknown status 'lost'"]
    shipped, converted, pending = parsed.rows
    assert (shipped["action_type"], shipped["status"], shipped["tracking_number"]) == ("shipping", "shipped", "TRK-9")
    assert shipped["converted_points"] is None
    assert (converted["action_type"], converted["status"], converted["converted_points"]) == ("conversion", "completed", 30)
    assert (pending["action_type"], pending["status"], pending["legacy_id"]) == ("shipping", "pending", 9003)


def test_parse_timestamp_normalises_to_utc():
    assert parse_timestamp("2024/03/01 09:30:00") == "2024-03-01T09:30:00.000000+00:00"
    assert parse_timestamp("2024-03-01T18:30:00+09:00") == "2024-03-01T09:30:00.000000+00:00"
    assert parse_timestamp("2024-03-01T09:30:00Z") == "2024-03-01T09:30:00.000000+00:00"
    with pytest.raises(ValueError):
        parse_timestamp("yesterday")


@pytest.mark.asyncio
async def test_stage_user_migrations_upserts_until_applied(db):
    tenant_id = await db.create_tenant(slug="osaka", name="Osaka")

    report = await db.stage_user_migrations(
        tenant_id,
        parse_user_migrations(CUSTOMERS_CSV),
        file_name="customers.csv",
        imported_by="admin-1",
    )
    assert (report.inserted, report.updated, report.skipped) == (2, 0, 0)
    assert report.to_dict()["errorCount"] == 2

    await db.apply_user_migrations(tenant_id, limit=1)

    report = await db.stage_user_migrations(
        tenant_id,
        parse_user_migrations("email,points\nhanako@example.com,9999\ntaro@example.com,50\n"),
    )
    assert (report.inserted, report.updated, report.skipped) == (0, 1, 1)

    row = await db._fetchone("SELECT points_balance FROM user_migrations WHERE email = ?", ("taro@example.com",))
    assert row["points_balance"] == 50

    history = await db.list_import_history(tenant_id=tenant_id)
    assert [entry["inserted"] for entry in history] == [1, 2]
    assert history[1]["file_name"] == "customers.csv"
    assert history[1]["error_count"] == 2


@pytest.mark.asyncio
async def test_stage_user_migrations_requires_existing_tenant(db):
    with pytest.raises(NotFoundError):
        await db.stage_user_migrations("missing", parse_user_migrations(CUSTOMERS_CSV))


@pytest.mark.asyncio
async def test_apply_user_migrations_creates_accounts_in_batches(db, user_factory):
    tenant_id = await db.create_tenant(slug="osaka", name="Osaka")
    existing_id = await user_factory()
    existing_email = (await db.get_user(existing_id))["email"]
    await db.stage_user_migrations(
        tenant_id,
        parse_user_migrations(CUSTOMERS_CSV + f"{existing_email},,,300,105\n"),
    )

    report = await db.apply_user_migrations(tenant_id, limit=2)
    assert report.to_dict() == {
        "success": True,
        "processed": 2,
        "profilesCreated": 2,
        "skippedExisting": 0,
        "markedApplied": 2,
        "totalRemaining": 1,
        "hasMore": True,
        "errorCount": 0,
    }

    hanako = await _migrated_user(db, "hanako@example.com")
    profile = await db.get_profile(hanako)
    assert profile["tenant_id"] == tenant_id
    assert profile["points_balance"] == 1200
    assert (profile["last_name"], profile["first_name"]) == ("山田", "花子")
    assert profile["legacy_user_id"] == 101
    assert await db.get_roles(hanako) == ["user"]
    assert await db.authenticate("hanako@example.com", "anything at all") is None

    ledger = await db.get_point_transactions(hanako)
    assert [(entry["amount"], entry["transaction_type"]) for entry in ledger] == [(1200, "migration")]
    assert await db.get_point_transactions(await _migrated_user(db, "taro@example.com")) == []

    report = await db.apply_user_migrations(tenant_id)
    assert (report.processed, report.skipped_existing, report.total_remaining) == (1, 1, 0)
    assert await _migrated_user(db, existing_email) == existing_id
    assert (await db.get_profile(existing_id))["points_balance"] == 0


@pytest.mark.asyncio
async def test_apply_user_migrations_isolates_failing_customer(db, monkeypatch):
    tenant_id = await db.create_tenant(slug="osaka", name="Osaka")
    await db.stage_user_migrations(tenant_id, parse_user_migrations(CUSTOMERS_CSV))

    async def failing_ledger(conn, **kwargs):
        raise aiosqlite.IntegrityError("ledger rejected")

    monkeypatch.setattr(db, "_insert_point_transaction", failing_ledger)
    report = await db.apply_user_migrations(tenant_id)

    assert (report.processed, report.marked_applied, report.total_remaining) == (2, 1, 1)
    assert report.errors == ["hanako@example.com: ledger rejected"]
    cursor = await db._connection.execute("SELECT 1 FROM users WHERE email = ?", ("hanako@example.com",))
    assert await cursor.fetchone() is None
    assert await _migrated_user(db, "taro@example.com") is not None


@pytest.mark.asyncio
async def test_import_transactions_resolves_customers_and_skips_duplicates(db):
    tenant_id = await _tenant_with_customers(db)
    gacha_id = await db.create_gacha(title="Summer Box", price_per_play=300, tenant_id=tenant_id)

    report = await db.import_transactions(tenant_id, parse_transactions(TRANSACTIONS_CSV))
    assert (report.inserted, report.skipped, report.user_not_found) == (1, 0, 1)
    assert report.to_dict()["errors"] == ["Row 3: no user reference"]

    hanako = await _migrated_user(db, "hanako@example.com")
    [transaction] = await db.get_user_transactions(hanako)
    assert transaction["gacha_id"] == gacha_id
    assert transaction["total_spent_points"] == 3000
    assert transaction["result_items"] == []
    assert (await db.get_profile(hanako))["points_balance"] == 1200

    by_legacy_id = "user_id,points,date\n102,500,2024-01-07T00:00:00\n"
    report = await db.import_transactions(tenant_id, parse_transactions(by_legacy_id))
    assert report.inserted == 1
    assert len(await db.get_user_transactions(await _migrated_user(db, "taro@example.com"))) == 1

    report = await db.import_transactions(tenant_id, parse_transactions(TRANSACTIONS_CSV))
    assert (report.inserted, report.skipped, report.user_not_found) == (0, 1, 1)


@pytest.mark.asyncio
async def test_import_inventory_feeds_shipping_queue(db):
    tenant_id = await _tenant_with_customers(db)
    await db.create_card(name="Pikachu promo", tenant_id=tenant_id)

    report = await db.import_inventory_actions(tenant_id, parse_inventory(INVENTORY_CSV))
    assert (report.inserted, report.skipped) == (3, 0)

    [pending] = await db.list_inventory_actions(action_type="shipping", status="pending")
    assert pending["card_name"] == "Pikachu promo"
    assert pending["legacy_id"] == 9003
    assert pending["slot_id"] is None

    [shipped] = await db.list_inventory_actions(status="shipped")
    assert shipped["processed_at"] == shipped["requested_at"] == "2024-02-01T09:00:00.000000+00:00"

    hanako = await _migrated_user(db, "hanako@example.com")
    assert (await db.get_profile(hanako))["points_balance"] == 1200

    report = await db.import_inventory_actions(tenant_id, parse_inventory(INVENTORY_CSV))
    assert (report.inserted, report.skipped) == (0, 3)


@pytest.mark.asyncio
async def test_delete_import_history_removes_loaded_rows(db):
    tenant_id = await _tenant_with_customers(db)
    report = await db.import_transactions(tenant_id, parse_transactions(TRANSACTIONS_CSV))

    assert await db.delete_import_history(report.history_id) == ("transactions", 1)
    assert await db.get_user_transactions(await _migrated_user(db, "hanako@example.com")) == []
    assert await db.list_import_history(tenant_id=tenant_id, data_type="transactions") == []
    assert len(await db.list_import_history(tenant_id=tenant_id, data_type="users")) == 1

    with pytest.raises(NotFoundError) as exc_info:
        await db.delete_import_history(report.history_id)
    assert exc_info.value.error_type == "import_not_found"


@pytest.mark.asyncio
async def test_import_endpoints_require_admin(client, user_factory, auth_headers):
    player = await user_factory()
    for path in (
        "/functions/import-user-migrations",
        "/functions/bulk-create-profiles",
        "/functions/import-transactions",
        "/functions/import-inventory",
        "/functions/delete-import-history",
    ):
        resp = await client.post(path, json={}, headers=await auth_headers(player))
        assert resp.status == 403, path

    resp = await client.get("/admin/import-history")
    assert resp.status == 401


@pytest.mark.asyncio
async def test_import_endpoints_validate_payload(client, db, user_factory, auth_headers):
    headers = await auth_headers(await user_factory(roles=("admin",)))
    tenant_id = await db.create_tenant(slug="osaka", name="Osaka")

    resp = await client.post("/functions/import-user-migrations", json={"csvData": CUSTOMERS_CSV}, headers=headers)
    assert resp.status == 400
    assert (await resp.json())["error"] == "tenantId is required."

    resp = await client.post("/functions/import-transactions", json={"tenantId": tenant_id, "csvData": "  "}, headers=headers)
    assert resp.status == 400
    assert (await resp.json())["error"] == "csvData is required."

    resp = await client.post(
        "/functions/import-inventory",
        json={"tenantId": tenant_id, "csvData": "foo,bar\n1,2\n"},
        headers=headers,
    )
    assert resp.status == 400
    assert (await resp.json())["error"] == "Invalid CSV: no recognised columns."

    resp = await client.post(
        "/functions/import-user-migrations",
        json={"tenantId": "missing", "csvData": CUSTOMERS_CSV},
        headers=headers,
    )
    assert resp.status == 404

    resp = await client.get("/admin/import-history?dataType=orders", headers=headers)
    assert resp.status == 400


@pytest.mark.asyncio
async def test_customer_migration_flow_over_http(client, db, user_factory, auth_headers):
    admin = await user_factory(roles=("admin",))
    headers = await auth_headers(admin)
    tenant_id = await db.create_tenant(slug="osaka", name="Osaka")

    resp = await client.post(
        "/functions/import-user-migrations",
        json={"tenantId": tenant_id, "csvData": CUSTOMERS_CSV, "fileName": "customers.csv"},
        headers=headers,
    )
    assert resp.status == 200
    body = await resp.json()
    assert (body["inserted"], body["duplicates"], body["errorCount"]) == (2, 1, 2)
    assert body["errors"][0] == "Row 4: invalid email 'not-an-email'"

    resp = await client.post("/functions/bulk-create-profiles", json={"tenantId": tenant_id, "limit": 1}, headers=headers)
    assert resp.status == 200
    assert (await resp.json())["hasMore"] is True
    resp = await client.post("/functions/bulk-create-profiles", json={"tenantId": tenant_id}, headers=headers)
    assert (await resp.json())["hasMore"] is False

    resp = await client.post(
        "/functions/import-transactions",
        json={"tenantId": tenant_id, "csvData": TRANSACTIONS_CSV},
        headers=headers,
    )
    assert resp.status == 200
    assert (await resp.json())["userNotFound"] == 1

    resp = await client.post(
        "/functions/import-inventory",
        json={"tenantId": tenant_id, "csvData": INVENTORY_CSV},
        headers=headers,
    )
    inventory_history_id = (await resp.json())["historyId"]

    resp = await client.get(f"/admin/import-history?tenantId={tenant_id}", headers=headers)
    history = (await resp.json())["history"]
    assert [entry["dataType"] for entry in history] == ["inventory", "transactions", "users"]
    assert history[2]["fileName"] == "customers.csv"
    assert history[2]["importedBy"] == admin

    resp = await client.post(
        "/functions/delete-import-history",
        json={"historyId": inventory_history_id},
        headers=headers,
    )
    assert await resp.json() == {"success": True, "dataType": "inventory", "deletedRecords": 3}

    resp = await client.post("/functions/delete-import-history", json={"historyId": inventory_history_id}, headers=headers)
    assert resp.status == 404
    assert (await resp.json())["error"] == "Import history not found."
