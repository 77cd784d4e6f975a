import uuid

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from gacha_core.config import Config, RateLimitRule
from gacha_core.database import Database
from gacha_core.models import SlotItem
from gacha_core.web import create_app

DEFAULT_ITEMS = [
    SlotItem(name="Charizard ex", quantity=1, prize_tier="S", conversion_points=5000),
    SlotItem(name="Pikachu promo", quantity=2, prize_tier="A", conversion_points=800),
    SlotItem(name="Energy pack", quantity=7, prize_tier="miss", conversion_points=30),
]


@pytest_asyncio.fixture
async def db():
    database = Database(":memory:")
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def sample_config() -> Config:
    return Config(
        database_path=":memory:",
        rate_limits={
            "play_gacha": RateLimitRule(cooldown=60, max_uses=100, per="user"),
            "login": RateLimitRule(cooldown=60, max_uses=100, per="ip"),
            "signup": RateLimitRule(cooldown=60, max_uses=100, per="ip"),
        },
    )


@pytest.fixture
def user_factory(db: Database):
    async def factory(*, points: int = 0, roles: tuple[str, ...] = (), password: str = "correct-horse") -> str:
        email = f"player-{uuid.uuid4().hex[:10]}@example.com"
        user_id = await db.create_user(email, password)
        if points:
            await db.update_points_balance(user_id, points)
        for role in roles:
            await db.add_role(user_id, role)
        return user_id

    return factory


@pytest.fixture
def gacha_factory(db: Database):
    async def factory(
        *,
        price: int = 100,
        items: list[SlotItem] | None = None,
        status: str = "active",
        category: str = "pokemon",
        tags: tuple[str, ...] = (),
        title: str = "Test Gacha",
    ) -> str:
        gacha_id = await db.create_gacha(
            title=title,
            price_per_play=price,
            category=category,
            display_tags=list(tags),
        )
        slot_items = DEFAULT_ITEMS if items is None else items
        if slot_items:
            await db.create_gacha_slots(gacha_id, slot_items)
        if status != "draft":
            await db.update_gacha_status(gacha_id, status)
        return gacha_id

    return factory


@pytest.fixture
def auth_headers(db: Database):
    async def factory(user_id: str) -> dict[str, str]:
        token = await db.create_session(user_id)
        return {"Authorization": f"Bearer {token}"}

    return factory


@pytest_asyncio.fixture
async def client(db: Database, sample_config: Config):
    app = create_app(sample_config, db)
    async with TestClient(TestServer(app)) as test_client:
        yield test_client
