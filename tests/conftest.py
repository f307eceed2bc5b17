import json
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import func, insert, select, update

from app.catalog import CatalogStore
from app.commands import OrderCommands
from app.config import Settings
from app.db import Database, products
from app.main import create_app
from app.publisher import EventPublisher
from app.queries import OrderQueries
from app.validation import parse_order_request

ADDRESS = {"method": "delivery", "address": "12 rue des Lilas, Lyon"}


class FakeRedis:
    """publish された内容を記録するだけの Redis クライアント"""

    def __init__(self):
        self.messages = []
        self.closed = False

    async def publish(self, channel, message):
        self.messages.append((channel, json.loads(message)))
        return 1

    async def aclose(self):
        self.closed = True

    def event_types(self):
        return [m["event_type"] for _, m in self.messages]


class Shop:
    """テスト用にカタログを直接操作するヘルパー"""

    def __init__(self, db: Database):
        self.db = db

    async def add_product(self, name="Widget", price="10.00", stock=5) -> int:
        async with self.db.transaction() as session:
            result = await session.execute(
                insert(products).values(name=name, price=Decimal(price), stock=stock)
            )
            return result.inserted_primary_key[0]

    async def stock(self, product_id: int) -> int:
        async with self.db.snapshot() as session:
            result = await session.execute(
                select(products.c.stock).where(products.c.id == product_id)
            )
            return result.scalar_one()

    async def set_stock(self, product_id: int, stock: int) -> None:
        async with self.db.transaction() as session:
            await session.execute(
                update(products).where(products.c.id == product_id).values(stock=stock)
            )

    async def set_price(self, product_id: int, price: str) -> None:
        async with self.db.transaction() as session:
            await session.execute(
                update(products)
                .where(products.c.id == product_id)
                .values(price=Decimal(price))
            )

    async def count(self, table) -> int:
        async with self.db.snapshot() as session:
            result = await session.execute(select(func.count()).select_from(table))
            return result.scalar_one()


def order_request(*lines, delivery=ADDRESS):
    """order_request((product_id, quantity), ...) で検証済みリクエストを作る"""
    return parse_order_request(
        [{"productId": pid, "quantity": qty} for pid, qty in lines], delivery
    )


@pytest.fixture
async def db(tmp_path):
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    await database.create_schema()
    yield database
    await database.close()


@pytest.fixture
def shop(db):
    return Shop(db)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def publisher(fake_redis):
    return EventPublisher(fake_redis, channel="order_events")


@pytest.fixture
def commands(db, publisher):
    return OrderCommands(db, CatalogStore(), publisher)


@pytest.fixture
def queries(db):
    return OrderQueries(db)


@pytest.fixture
async def client(db, publisher):
    app = create_app(Settings(database_url="sqlite+aiosqlite://"), db=db, publisher=publisher)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


def as_user(user_id: int) -> dict:
    return {"X-User-Id": str(user_id), "X-User-Role": "user"}


def as_admin(user_id: int = 1000) -> dict:
    return {"X-User-Id": str(user_id), "X-User-Role": "admin"}
