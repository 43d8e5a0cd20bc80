"""
Storefront — コマンドハンドラ (Write 側)

注文確定 (place_order) はカート読み出しからカート削除までを
1 つの DB トランザクションで実行する。

  1. カートスナップショットを読む（空なら EmptyCart）
  2. 在庫を検証し合計金額を計算（不足なら InsufficientStock）
  3. orders に 1 行 INSERT
  4. 各行 (商品 ID 順): order_items INSERT → 条件付き在庫減算 → sales_events INSERT
  5. カートを削除

在庫減算は `stock >= :qty` を条件にした UPDATE で行う。
同時注文に負けて 0 行更新になった場合はトランザクション全体を
ロールバックするので、注文・明細・在庫・カートのどれも中途半端に残らない。
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from . import queries
from .auth import CurrentUser
from .errors import (
    CartItemNotFound,
    DuplicatePayment,
    EmptyCart,
    InsufficientStock,
    OrderNotFound,
    PersistenceFailure,
    ProductNotFound,
)
from .events import OrderConfirmation, OrderLineItem
from .snapshot import read_cart_snapshot
from .validation import ShippingAddress, validate_snapshot

logger = logging.getLogger(__name__)

DEFAULT_COMMIT_TIMEOUT = 10.0

# 支払い方法 → (payment_status, order_status)
PAYMENT_POLICY = {
    "cod": ("pending", "processing"),
    "razorpay": ("completed", "processing"),
}

ORDER_STATUSES = ("pending", "processing", "shipped", "delivered", "cancelled")
PAYMENT_STATUSES = ("pending", "completed", "failed", "refunded")


@dataclass(frozen=True)
class PlacedOrder:
    order_id: str
    total_amount: float
    confirmation: OrderConfirmation


async def place_order(
    session: AsyncSession,
    user: CurrentUser,
    shipping_address: ShippingAddress,
    payment_method: str = "cod",
    payment_details: dict | None = None,
    timeout: float = DEFAULT_COMMIT_TIMEOUT,
) -> PlacedOrder:
    """
    注文確定コマンド

    EmptyCart / InsufficientStock / DuplicatePayment はそのまま呼び出し元へ。
    DB エラーとタイムアウトは PersistenceFailure にまとめ、原因はログに残す。
    """
    if payment_method not in PAYMENT_POLICY:
        raise ValueError(f"Unsupported payment method: {payment_method}")

    try:
        placed = await asyncio.wait_for(
            _commit_order(session, user, shipping_address, payment_method, payment_details or {}),
            timeout,
        )
    except asyncio.TimeoutError as exc:
        logger.error("Order commit for user %s timed out after %.1fs", user.id, timeout)
        raise PersistenceFailure() from exc
    except IntegrityError as exc:
        # 同じ payment_id の注文が先にコミットされた
        if payment_details and payment_details.get("payment_id"):
            logger.warning(
                "Payment %s already used; order for user %s rejected",
                payment_details["payment_id"], user.id,
            )
            raise DuplicatePayment() from exc
        logger.exception("Order commit for user %s failed", user.id)
        raise PersistenceFailure() from exc
    except SQLAlchemyError as exc:
        logger.exception("Order commit for user %s failed", user.id)
        raise PersistenceFailure() from exc

    logger.info(
        "Order %s placed by user %s: %d line(s), total %.2f (%s)",
        placed.order_id, user.id, len(placed.confirmation.items),
        placed.total_amount, payment_method,
    )
    return placed


async def _commit_order(
    session: AsyncSession,
    user: CurrentUser,
    shipping_address: ShippingAddress,
    payment_method: str,
    payment_details: dict,
) -> PlacedOrder:
    payment_status, order_status = PAYMENT_POLICY[payment_method]
    order_id = str(uuid4())
    now = datetime.now(timezone.utc)

    async with session.begin():
        # 1. カートスナップショット
        lines = await read_cart_snapshot(session, user.id)
        if not lines:
            raise EmptyCart()

        # 2. 在庫検証（ここで使った価格をそのまま明細に保存する）
        cart = validate_snapshot(lines)

        payment_id = payment_details.get("payment_id")
        if payment_id and await _payment_already_used(session, payment_id):
            raise DuplicatePayment()

        # 3. 注文ヘッダ
        await session.execute(
            text("""
                INSERT INTO orders
                    (id, user_id, total_amount, payment_status, payment_method,
                     payment_id, gateway_order_id, order_status, shipping_address,
                     created_at, updated_at)
                VALUES
                    (:id, :user_id, :total_amount, :payment_status, :payment_method,
                     :payment_id, :gateway_order_id, :order_status, :shipping_address,
                     :now, :now)
            """),
            {
                "id": order_id,
                "user_id": user.id,
                "total_amount": cart.total_amount,
                "payment_status": payment_status,
                "payment_method": payment_method,
                "payment_id": payment_id,
                "gateway_order_id": payment_details.get("gateway_order_id"),
                "order_status": order_status,
                "shipping_address": shipping_address.model_dump_json(),
                "now": now,
            },
        )

        # 4. 明細・在庫減算・売上イベント（在庫行のロック順を商品 ID 順に固定）
        for line in sorted(cart.lines, key=lambda l: l.product_id):
            await session.execute(
                text("""
                    INSERT INTO order_items
                        (id, order_id, product_id, quantity, price, created_at)
                    VALUES
                        (:id, :order_id, :product_id, :quantity, :price, :now)
                """),
                {
                    "id": str(uuid4()),
                    "order_id": order_id,
                    "product_id": line.product_id,
                    "quantity": line.quantity,
                    "price": line.price,
                    "now": now,
                },
            )

            await _decrement_stock(session, line.product_id, line.product_name, line.quantity, now)

            await session.execute(
                text("""
                    INSERT INTO sales_events
                        (id, order_id, region, product_id, quantity, amount, timestamp)
                    VALUES
                        (:id, :order_id, :region, :product_id, :quantity, :amount, :now)
                """),
                {
                    "id": str(uuid4()),
                    "order_id": order_id,
                    "region": shipping_address.region,
                    "product_id": line.product_id,
                    "quantity": line.quantity,
                    "amount": line.line_total,
                    "now": now,
                },
            )

        # 5. カートを空にする
        await session.execute(
            text("DELETE FROM cart_items WHERE user_id = :user_id"),
            {"user_id": user.id},
        )

    confirmation = OrderConfirmation(
        order_id=order_id,
        customer_id=user.id,
        customer_name=shipping_address.full_name or user.username or "Customer",
        customer_email=user.email,
        customer_phone=shipping_address.phone,
        order_date=now,
        items=[
            OrderLineItem(
                product_id=line.product_id,
                name=line.product_name,
                quantity=line.quantity,
                price=line.price,
                description=line.description or "No description available",
            )
            for line in cart.lines
        ],
        total_amount=cart.total_amount,
        payment_method=payment_method,
        payment_status=payment_status,
        shipping_address=shipping_address,
    )
    return PlacedOrder(order_id=order_id, total_amount=cart.total_amount, confirmation=confirmation)


async def _decrement_stock(
    session: AsyncSession,
    product_id: str,
    product_name: str,
    quantity: int,
    now: datetime,
) -> None:
    """在庫が足りる場合だけ減算する。0 行更新なら同時注文に負けている。"""
    result = await session.execute(
        text("""
            UPDATE products
            SET stock = stock - :qty, updated_at = :now
            WHERE id = :id AND stock >= :qty
        """),
        {"qty": quantity, "now": now, "id": product_id},
    )
    if result.rowcount == 1:
        return

    row = (
        await session.execute(
            text("SELECT stock FROM products WHERE id = :id"),
            {"id": product_id},
        )
    ).fetchone()
    available = row.stock if row else 0
    logger.warning(
        "Stock decrement lost a race for product %s: requested=%d, available=%d",
        product_id, quantity, available,
    )
    raise InsufficientStock(product_name, available)


async def _payment_already_used(session: AsyncSession, payment_id: str) -> bool:
    result = await session.execute(
        text("SELECT 1 FROM orders WHERE payment_id = :payment_id"),
        {"payment_id": payment_id},
    )
    return result.first() is not None


# ── カート操作 ───────────────────────────────────


async def _get_product(session: AsyncSession, product_id: str):
    result = await session.execute(
        text("SELECT id, name, stock FROM products WHERE id = :id"),
        {"id": product_id},
    )
    row = result.fetchone()
    if not row:
        raise ProductNotFound()
    return row


async def add_to_cart(
    session: AsyncSession,
    user_id: str,
    product_id: str,
    quantity: int,
) -> None:
    """カートに商品を追加する。既にあれば数量を加算する。"""
    async with session.begin():
        product = await _get_product(session, product_id)
        result = await session.execute(
            text("""
                SELECT id, quantity FROM cart_items
                WHERE user_id = :user_id AND product_id = :product_id
            """),
            {"user_id": user_id, "product_id": product_id},
        )
        existing = result.fetchone()
        new_quantity = quantity + (existing.quantity if existing else 0)
        if new_quantity > product.stock:
            raise InsufficientStock(product.name, product.stock)

        if existing:
            await session.execute(
                text("UPDATE cart_items SET quantity = :qty WHERE id = :id"),
                {"qty": new_quantity, "id": existing.id},
            )
        else:
            await session.execute(
                text("""
                    INSERT INTO cart_items (id, user_id, product_id, quantity, added_at)
                    VALUES (:id, :user_id, :product_id, :qty, :now)
                """),
                {
                    "id": str(uuid4()),
                    "user_id": user_id,
                    "product_id": product_id,
                    "qty": quantity,
                    "now": datetime.now(timezone.utc),
                },
            )


async def update_cart_item(
    session: AsyncSession,
    user_id: str,
    cart_item_id: str,
    quantity: int,
) -> None:
    async with session.begin():
        result = await session.execute(
            text("SELECT product_id FROM cart_items WHERE id = :id AND user_id = :user_id"),
            {"id": cart_item_id, "user_id": user_id},
        )
        item = result.fetchone()
        if not item:
            raise CartItemNotFound()

        product = await _get_product(session, str(item.product_id))
        if product.stock < quantity:
            raise InsufficientStock(product.name, product.stock)

        await session.execute(
            text("UPDATE cart_items SET quantity = :qty WHERE id = :id"),
            {"qty": quantity, "id": cart_item_id},
        )


async def remove_cart_item(session: AsyncSession, user_id: str, cart_item_id: str) -> None:
    async with session.begin():
        result = await session.execute(
            text("DELETE FROM cart_items WHERE id = :id AND user_id = :user_id"),
            {"id": cart_item_id, "user_id": user_id},
        )
        if result.rowcount == 0:
            raise CartItemNotFound()


async def clear_cart(session: AsyncSession, user_id: str) -> None:
    async with session.begin():
        await session.execute(
            text("DELETE FROM cart_items WHERE user_id = :user_id"),
            {"user_id": user_id},
        )


# ── 管理者操作 ───────────────────────────────────


async def update_order_status(
    session: AsyncSession,
    order_id: str,
    order_status: str | None = None,
    payment_status: str | None = None,
) -> dict:
    """注文ステータス / 支払いステータスを更新する（管理者のみ）。"""
    if order_status is not None and order_status not in ORDER_STATUSES:
        raise ValueError(f"Invalid order status: {order_status}")
    if payment_status is not None and payment_status not in PAYMENT_STATUSES:
        raise ValueError(f"Invalid payment status: {payment_status}")

    async with session.begin():
        result = await session.execute(
            text("""
                UPDATE orders
                SET order_status = COALESCE(:order_status, order_status),
                    payment_status = COALESCE(:payment_status, payment_status),
                    updated_at = :now
                WHERE id = :id
            """),
            {
                "order_status": order_status,
                "payment_status": payment_status,
                "now": datetime.now(timezone.utc),
                "id": order_id,
            },
        )
        if result.rowcount == 0:
            raise OrderNotFound()
        order = await queries.get_order(session, order_id)

    logger.info(
        "Order %s updated: order_status=%s payment_status=%s",
        order_id, order_status, payment_status,
    )
    return order
