import os
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import text

# storefront.main はインポート時に DATABASE_URL を読む
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from storefront import db  # noqa: E402
from storefront.auth import CurrentUser  # noqa: E402
from storefront.validation import ShippingAddress  # noqa: E402


class FakeNotifier:
    """送信内容を記録するだけの通知チャネル"""

    def __init__(self, channel: str, fail: bool = False) -> None:
        self.channel = channel
        self.fail = fail
        self.sent = []

    async def send_order_confirmation(self, order) -> None:
        if self.fail:
            raise RuntimeError(f"{self.channel} is down")
        self.sent.append(order)


class FakeRedis:
    def __init__(self) -> None:
        self.published: list[tuple[str, str]] = []

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        return 1


class Store:
    """テスト用のデータ投入・確認ヘルパー"""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory
        self._clock = datetime(2026, 1, 1, tzinfo=timezone.utc)

    async def add_product(self, name: str, price: float, stock: int, description: str = "") -> str:
        product_id = str(uuid4())
        now = datetime.now(timezone.utc)
        async with self.session_factory() as session, session.begin():
            await session.execute(
                text("""
                    INSERT INTO products (id, name, description, price, stock, created_at, updated_at)
                    VALUES (:id, :name, :description, :price, :stock, :now, :now)
                """),
                {"id": product_id, "name": name, "description": description,
                 "price": price, "stock": stock, "now": now},
            )
        return product_id

    async def add_cart_line(self, user_id: str, product_id: str, quantity: int) -> str:
        cart_item_id = str(uuid4())
        # 追加順を安定させる
        self._clock += timedelta(seconds=1)
        async with self.session_factory() as session, session.begin():
            await session.execute(
                text("""
                    INSERT INTO cart_items (id, user_id, product_id, quantity, added_at)
                    VALUES (:id, :user_id, :product_id, :quantity, :added_at)
                """),
                {"id": cart_item_id, "user_id": user_id, "product_id": product_id,
                 "quantity": quantity, "added_at": self._clock},
            )
        return cart_item_id

    async def delete_product(self, product_id: str) -> None:
        async with self.session_factory() as session, session.begin():
            await session.execute(text("DELETE FROM products WHERE id = :id"), {"id": product_id})

    async def set_price(self, product_id: str, price: float) -> None:
        async with self.session_factory() as session, session.begin():
            await session.execute(
                text("UPDATE products SET price = :price WHERE id = :id"),
                {"price": price, "id": product_id},
            )

    async def set_stock(self, product_id: str, stock: int) -> None:
        async with self.session_factory() as session, session.begin():
            await session.execute(
                text("UPDATE products SET stock = :stock WHERE id = :id"),
                {"stock": stock, "id": product_id},
            )

    async def stock(self, product_id: str) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                text("SELECT stock FROM products WHERE id = :id"), {"id": product_id}
            )
            return result.scalar_one()

    async def count(self, table: str, **where) -> int:
        sql = f"SELECT COUNT(*) FROM {table}"
        if where:
            sql += " WHERE " + " AND ".join(f"{k} = :{k}" for k in where)
        async with self.session_factory() as session:
            result = await session.execute(text(sql), where)
            return result.scalar_one()

    async def rows(self, table: str, **where) -> list:
        sql = f"SELECT * FROM {table}"
        if where:
            sql += " WHERE " + " AND ".join(f"{k} = :{k}" for k in where)
        async with self.session_factory() as session:
            result = await session.execute(text(sql), where)
            return result.fetchall()


@pytest.fixture
async def engine(tmp_path):
    engine = db.create_engine(f"sqlite+aiosqlite:///{tmp_path / 'storefront.db'}")
    await db.create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return db.create_session_factory(engine)


@pytest.fixture
def store(session_factory):
    return Store(session_factory)


@pytest.fixture
def user():
    return CurrentUser(id="user-1", username="asha", email="asha@example.com")


@pytest.fixture
def address():
    return ShippingAddress(
        full_name="Asha Rao",
        phone="919800000001",
        address_line1="12 MG Road",
        city="Bengaluru",
        state="Karnataka",
        postal_code="560001",
    )


@pytest.fixture
def address_payload():
    return {
        "fullName": "Asha Rao",
        "phone": "919800000001",
        "addressLine1": "12 MG Road",
        "city": "Bengaluru",
        "state": "Karnataka",
        "postalCode": "560001",
        "country": "India",
    }


@pytest.fixture
def fake_email():
    return FakeNotifier("email")


@pytest.fixture
def fake_messaging():
    return FakeNotifier("whatsapp")
