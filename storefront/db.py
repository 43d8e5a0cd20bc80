"""
Storefront — データベース接続とスキーマ

本番は PostgreSQL (asyncpg)、テストは SQLite (aiosqlite)。
クエリはすべて text() の生 SQL で書き、両方で動く型だけを使う。

SQLite では行ロックがないため、トランザクションを BEGIN IMMEDIATE で
開始して書き込みを直列化する（PostgreSQL の行ロック待ちに相当）。

注文確定は在庫行を商品 ID 順に UPDATE する。ロック順がカートの追加順だと
商品 A, B を逆順に持つ 2 つの注文がデッドロックする。

orders.payment_id は UNIQUE。同じ決済での二重注文を DB 側でも拒否する
(NULL の代金引換注文は何件でも入る)。
"""

from datetime import datetime

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS products (
        id VARCHAR(36) PRIMARY KEY,
        name VARCHAR(255) NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        price NUMERIC(12, 2) NOT NULL,
        stock INTEGER NOT NULL CHECK (stock >= 0),
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS cart_items (
        id VARCHAR(36) PRIMARY KEY,
        user_id VARCHAR(64) NOT NULL,
        product_id VARCHAR(36) NOT NULL,
        quantity INTEGER NOT NULL CHECK (quantity > 0),
        added_at TIMESTAMP NOT NULL,
        UNIQUE (user_id, product_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id VARCHAR(36) PRIMARY KEY,
        user_id VARCHAR(64) NOT NULL,
        total_amount NUMERIC(12, 2) NOT NULL,
        payment_status VARCHAR(16) NOT NULL,
        payment_method VARCHAR(16) NOT NULL,
        payment_id VARCHAR(64) UNIQUE,
        gateway_order_id VARCHAR(64),
        order_status VARCHAR(16) NOT NULL,
        shipping_address TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_items (
        id VARCHAR(36) PRIMARY KEY,
        order_id VARCHAR(36) NOT NULL REFERENCES orders (id),
        product_id VARCHAR(36) NOT NULL,
        quantity INTEGER NOT NULL CHECK (quantity > 0),
        price NUMERIC(12, 2) NOT NULL,
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sales_events (
        id VARCHAR(36) PRIMARY KEY,
        order_id VARCHAR(36) NOT NULL REFERENCES orders (id),
        region VARCHAR(128) NOT NULL,
        product_id VARCHAR(36) NOT NULL,
        quantity INTEGER NOT NULL,
        amount NUMERIC(12, 2) NOT NULL,
        timestamp TIMESTAMP NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_cart_items_user ON cart_items (user_id)",
    "CREATE INDEX IF NOT EXISTS ix_orders_user ON orders (user_id)",
    "CREATE INDEX IF NOT EXISTS ix_order_items_order ON order_items (order_id)",
]


def create_engine(database_url: str, **kwargs) -> AsyncEngine:
    """非同期エンジンを作る。SQLite の場合は BEGIN IMMEDIATE フックを付ける。"""
    if database_url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"timeout": 30})
    engine = create_async_engine(database_url, echo=False, **kwargs)

    if engine.dialect.name == "sqlite":

        @event.listens_for(engine.sync_engine, "connect")
        def _disable_driver_begin(dbapi_connection, connection_record):
            # ドライバ独自の BEGIN を止め、下の begin フックに任せる
            dbapi_connection.isolation_level = None

        @event.listens_for(engine.sync_engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def create_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        for statement in SCHEMA:
            await conn.execute(text(statement))


def iso(value) -> str | None:
    """TIMESTAMP 列を ISO 文字列にする（SQLite は文字列のまま返ってくる）。"""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)
