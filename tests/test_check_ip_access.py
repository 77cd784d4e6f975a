import aiosqlite
import pytest

from functions.check_ip_access import evaluate_access

URL = "/functions/check-ip-access"


def test_evaluate_access_decision_table():
    assert evaluate_access("1.1.1.1", None) == {"allowed": True, "ip": "1.1.1.1", "reason": "tenant_not_found"}
    assert evaluate_access("1.1.1.1", {"allowed_ips": None}) == {"allowed": True, "ip": "1.1.1.1"}
    assert evaluate_access("1.1.1.1", {"allowed_ips": []}) == {"allowed": False, "ip": "1.1.1.1", "reason": "all_blocked"}
    assert evaluate_access("1.1.1.1", {"allowed_ips": ["1.1.1.1"]}) == {"allowed": True, "ip": "1.1.1.1"}
    assert evaluate_access("2.2.2.2", {"allowed_ips": ["1.1.1.1"]}) == {
        "allowed": False,
        "ip": "2.2.2.2",
        "reason": "ip_not_allowed",
    }


@pytest.mark.asyncio
async def test_no_tenant_slug_is_allowed(client):
    resp = await client.post(URL, json={}, headers={"cf-connecting-ip": "198.51.100.4"})
    assert resp.status == 200
    assert await resp.json() == {"allowed": True, "ip": "198.51.100.4"}


@pytest.mark.asyncio
async def test_empty_body_is_allowed(client):
    resp = await client.post(URL)
    assert resp.status == 200
    assert (await resp.json())["allowed"] is True


@pytest.mark.asyncio
async def test_unknown_tenant(client):
    resp = await client.post(URL, json={"tenantSlug": "ghost"})
    assert await resp.json() == {"allowed": True, "ip": "127.0.0.1", "reason": "tenant_not_found"}


@pytest.mark.asyncio
async def test_allow_list_checks_forwarded_ip(client, db):
    await db.create_tenant(slug="shop", name="Shop", allowed_ips=["203.0.113.9"])

    allowed = await client.post(
        URL,
        json={"tenantSlug": "shop"},
        headers={"x-forwarded-for": "203.0.113.9, 10.0.0.1"},
    )
    assert await allowed.json() == {"allowed": True, "ip": "203.0.113.9"}

    denied = await client.post(URL, json={"tenantSlug": "shop"}, headers={"x-real-ip": "192.0.2.1"})
    assert await denied.json() == {"allowed": False, "ip": "192.0.2.1", "reason": "ip_not_allowed"}


@pytest.mark.asyncio
async def test_empty_allow_list_blocks_everyone(client, db):
    await db.create_tenant(slug="locked", name="Locked", allowed_ips=[])
    resp = await client.post(URL, json={"tenantSlug": "locked"})
    assert (await resp.json())["reason"] == "all_blocked"


@pytest.mark.asyncio
async def test_database_error_fails_open(client, db, monkeypatch):
    async def broken_lookup(slug):
        raise aiosqlite.OperationalError("database is locked")

    monkeypatch.setattr(db, "get_active_tenant_by_slug", broken_lookup)

    resp = await client.post(URL, json={"tenantSlug": "shop"})
    assert resp.status == 200
    assert await resp.json() == {"allowed": True, "ip": "127.0.0.1", "error": "DB error"}


@pytest.mark.asyncio
async def test_malformed_body_fails_open_with_500(client):
    resp = await client.post(URL, data="not json")
    assert resp.status == 500
    assert await resp.json() == {"allowed": True, "error": "Internal error"}
