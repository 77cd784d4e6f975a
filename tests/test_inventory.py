from datetime import datetime, timedelta, timezone

import pytest

from gacha_core.models import SlotItem
from gacha_core.utils.errors import GachaError

FIXED_ITEMS = [SlotItem(name="Rare", quantity=4, prize_tier="A", conversion_points=250)]


async def _draw(db, gacha_factory, user_id, count=2):
    gacha_id = await gacha_factory(price=0, items=FIXED_ITEMS)
    result = await db.play_gacha_atomic(gacha_id=gacha_id, play_count=count, user_id=user_id)
    return [card.slot_id for card in result.drawn_cards]


@pytest.mark.asyncio
async def test_inventory_lists_unactioned_draws(db, gacha_factory, user_factory):
    user_id = await user_factory()
    slot_ids = await _draw(db, gacha_factory, user_id, count=3)

    inventory = await db.get_user_inventory(user_id)
    assert {item["slot_id"] for item in inventory} == set(slot_ids)
    assert inventory[0]["name"] == "Rare"
    assert inventory[0]["gacha_title"] == "Test Gacha"
    assert inventory[0]["selection_deadline"] is not None


@pytest.mark.asyncio
async def test_convert_uses_card_points(db, gacha_factory, user_factory):
    user_id = await user_factory(points=5)
    slot_ids = await _draw(db, gacha_factory, user_id)

    result = await db.convert_slots_to_points(user_id, slot_ids)

    assert result.converted_count == 2
    assert result.total_points == 500
    assert result.new_balance == 505
    assert await db.get_user_inventory(user_id) == []

    cursor = await db._connection.execute(
        "SELECT action_type, status, converted_points FROM inventory_actions WHERE user_id = ?",
        (user_id,),
    )
    actions = await cursor.fetchall()
    assert len(actions) == 2
    assert all(a["action_type"] == "conversion" and a["status"] == "completed" for a in actions)
    assert all(a["converted_points"] == 250 for a in actions)

    ledger = await db.get_point_transactions(user_id)
    assert ledger[0]["transaction_type"] == "conversion"
    assert ledger[0]["amount"] == 500


@pytest.mark.asyncio
async def test_convert_rejects_repeat_and_foreign_slots(db, gacha_factory, user_factory):
    owner = await user_factory()
    other = await user_factory()
    slot_ids = await _draw(db, gacha_factory, owner)

    with pytest.raises(GachaError) as exc_info:
        await db.convert_slots_to_points(other, slot_ids)
    assert exc_info.value.error_type == "slot_not_convertible"

    await db.convert_slots_to_points(owner, slot_ids[:1])
    with pytest.raises(GachaError):
        await db.convert_slots_to_points(owner, slot_ids)

    # The failed batch must not have converted the still-valid slot.
    assert [item["slot_id"] for item in await db.get_user_inventory(owner)] == slot_ids[1:]


@pytest.mark.asyncio
async def test_convert_requires_items(db, user_factory):
    user_id = await user_factory()
    with pytest.raises(GachaError) as exc_info:
        await db.convert_slots_to_points(user_id, [])
    assert exc_info.value.error_type == "no_items"


@pytest.mark.asyncio
async def test_shipping_request_removes_from_inventory(db, gacha_factory, user_factory):
    user_id = await user_factory()
    slot_ids = await _draw(db, gacha_factory, user_id)

    action_ids = await db.request_shipping(user_id, slot_ids[:1])
    assert len(action_ids) == 1

    queue = await db.list_inventory_actions(action_type="shipping", status="pending")
    assert [action["id"] for action in queue] == action_ids
    assert queue[0]["card_name"] == "Rare"

    with pytest.raises(GachaError):
        await db.convert_slots_to_points(user_id, slot_ids[:1])

    shipped = await db.update_inventory_action_status(action_ids[0], "shipped", tracking_number="JP123")
    assert shipped["status"] == "shipped"
    assert shipped["tracking_number"] == "JP123"
    assert shipped["processed_at"] is not None


@pytest.mark.asyncio
async def test_inventory_action_status_validation(db):
    with pytest.raises(GachaError):
        await db.update_inventory_action_status("missing", "lost")
    with pytest.raises(GachaError) as exc_info:
        await db.update_inventory_action_status("missing", "processing")
    assert exc_info.value.error_type == "action_not_found"


@pytest.mark.asyncio
async def test_auto_convert_only_touches_expired_slots(db, gacha_factory, user_factory):
    user_id = await user_factory()
    await _draw(db, gacha_factory, user_id, count=3)

    report = await db.auto_convert_expired_slots()
    assert report.processed == 0
    assert report.to_dict() == {"success": True, "processed": 0}

    later = datetime.now(timezone.utc) + timedelta(days=15)
    report = await db.auto_convert_expired_slots(now=later)

    assert report.processed == 3
    assert report.users == 1
    assert report.errors == []
    assert (await db.get_profile(user_id))["points_balance"] == 750
    assert (await db.get_point_transactions(user_id))[0]["transaction_type"] == "auto_conversion"
    assert await db.get_user_inventory(user_id) == []


@pytest.mark.asyncio
async def test_auto_convert_respects_limit(db, gacha_factory, user_factory):
    user_id = await user_factory()
    await _draw(db, gacha_factory, user_id, count=4)

    later = datetime.now(timezone.utc) + timedelta(days=15)
    report = await db.auto_convert_expired_slots(now=later, limit=3)

    assert report.processed == 3
    assert len(await db.get_user_inventory(user_id)) == 1


@pytest.mark.asyncio
async def test_auto_convert_isolates_user_failures(db, gacha_factory, user_factory, monkeypatch):
    healthy = await user_factory()
    broken = await user_factory()
    gacha_id = await gacha_factory(price=0, items=FIXED_ITEMS)
    await db.play_gacha_atomic(gacha_id=gacha_id, play_count=2, user_id=healthy)
    await db.play_gacha_atomic(gacha_id=gacha_id, play_count=2, user_id=broken)

    original = db._convert_slots

    async def flaky_convert(conn, user_id, slots, **kwargs):
        if user_id == broken:
            raise RuntimeError("boom")
        return await original(conn, user_id, slots, **kwargs)

    monkeypatch.setattr(db, "_convert_slots", flaky_convert)

    later = datetime.now(timezone.utc) + timedelta(days=15)
    report = await db.auto_convert_expired_slots(now=later)

    assert report.processed == 2
    assert len(report.errors) == 1
    assert broken in report.errors[0]
    assert report.to_dict()["errors"] == report.errors
    assert (await db.get_profile(healthy))["points_balance"] == 500
    assert len(await db.get_user_inventory(broken)) == 2
