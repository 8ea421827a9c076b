import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

from decimal import Decimal

import fakeredis
import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from services.order.app import commands, schema
from services.order.app.aggregate import LineItem
from services.order.app.config import Settings
from services.order.app.pricing import PriceUpdate
from services.order.app.repository import OrderRepository
from services.order.app.states import PaymentStatus


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    await schema.create_schema(engine)
    async with engine.begin() as conn:
        await conn.execute(text("""
            INSERT INTO catalog_items (id, item_name, description, unit, is_active)
            VALUES
                ('A', 'Diesel', 'Bulk diesel', 'litre', 1),
                ('B', 'Engine oil', '20W-50', 'drum', 1),
                ('RETIRED', 'Kerosene', 'No longer sold', 'litre', 0)
        """))
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def redis():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def settings():
    return Settings(max_retries=3, persistence_timeout=5.0)


@pytest.fixture
def create_inquiry(session, redis, settings):
    async def _create(items=None, **kwargs):
        items = items or [LineItem(item_id="A", quantity=2)]
        kwargs.setdefault("settings", settings)
        return await commands.create_order(session, redis, "client-1", items, "CLIENT", **kwargs)
    return _create


@pytest.fixture
def priced_order(create_inquiry, session, redis, settings):
    """WAITING_CLIENT_APPROVAL の注文"""
    async def _create(**kwargs):
        order = await create_inquiry(**kwargs)
        return await commands.apply_pricing(
            session, redis, order.id, [PriceUpdate(item_id="A", unit_price=Decimal("10"))],
            "ADMIN", settings=settings,
        )
    return _create


@pytest.fixture
def paid_order(priced_order, session, redis, settings):
    """PAYMENT_CLEARED の注文"""
    async def _create(**kwargs):
        order = await priced_order(**kwargs)
        result = await commands.update_payment_status(
            session, redis, order.id, PaymentStatus.PAID, "ADMIN", settings=settings
        )
        return result.order
    return _create


@pytest.fixture
def reload(session_factory):
    """別セッションで読み直し、コミット済みの状態を確認する"""
    async def _reload(order_id):
        async with session_factory() as other:
            return await OrderRepository(other).find_order(order_id)
    return _reload
