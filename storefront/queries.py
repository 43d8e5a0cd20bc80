"""
Storefront — クエリハンドラ (Read 側)
"""

import json

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .db import iso
from .snapshot import read_cart_snapshot


async def get_cart(session: AsyncSession, user_id: str) -> list[dict]:
    """カートを商品情報付きで返す（削除済み商品の行は含まない）。"""
    lines = await read_cart_snapshot(session, user_id)
    return [
        {
            "id": line.cart_item_id,
            "product_id": line.product_id,
            "quantity": line.quantity,
            "product": {
                "id": line.product_id,
                "name": line.product_name,
                "price": line.price,
                "stock": line.stock,
            },
        }
        for line in lines
    ]


async def _order_items(session: AsyncSession, order_id: str) -> list[dict]:
    result = await session.execute(
        text("""
            SELECT i.id, i.product_id, i.quantity, i.price, p.name
            FROM order_items i
            LEFT JOIN products p ON p.id = i.product_id
            WHERE i.order_id = :order_id
            ORDER BY i.created_at ASC, i.id ASC
        """),
        {"order_id": order_id},
    )
    return [
        {
            "id": str(row.id),
            "product_id": str(row.product_id),
            "quantity": row.quantity,
            "price": float(row.price),
            "product": {"id": str(row.product_id), "name": row.name},
        }
        for row in result.fetchall()
    ]


def _order_row(row) -> dict:
    shipping = row.shipping_address
    return {
        "id": str(row.id),
        "user_id": str(row.user_id),
        "total_amount": float(row.total_amount),
        "payment_status": row.payment_status,
        "payment_method": row.payment_method,
        "payment_id": row.payment_id,
        "order_status": row.order_status,
        "shipping_address": json.loads(shipping) if isinstance(shipping, str) else shipping,
        "created_at": iso(row.created_at),
        "updated_at": iso(row.updated_at),
    }


async def get_order(
    session: AsyncSession,
    order_id: str,
    user_id: str | None = None,
) -> dict | None:
    """注文を明細付きで返す。user_id を渡すとそのユーザーの注文に限定する。"""
    sql = "SELECT * FROM orders WHERE id = :id"
    params = {"id": order_id}
    if user_id is not None:
        sql += " AND user_id = :user_id"
        params["user_id"] = user_id

    result = await session.execute(text(sql), params)
    row = result.fetchone()
    if not row:
        return None
    order = _order_row(row)
    order["items"] = await _order_items(session, order["id"])
    return order


async def list_orders(session: AsyncSession, user_id: str) -> list[dict]:
    """ユーザーの注文一覧（新しい順）"""
    result = await session.execute(
        text("""
            SELECT * FROM orders
            WHERE user_id = :user_id
            ORDER BY created_at DESC
        """),
        {"user_id": user_id},
    )
    orders = [_order_row(row) for row in result.fetchall()]
    for order in orders:
        order["items"] = await _order_items(session, order["id"])
    return orders


async def list_sales_events(session: AsyncSession, order_id: str) -> list[dict]:
    result = await session.execute(
        text("""
            SELECT * FROM sales_events
            WHERE order_id = :order_id
            ORDER BY timestamp ASC, id ASC
        """),
        {"order_id": order_id},
    )
    return [
        {
            "order_id": str(row.order_id),
            "region": row.region,
            "product_id": str(row.product_id),
            "quantity": row.quantity,
            "amount": float(row.amount),
            "timestamp": iso(row.timestamp),
        }
        for row in result.fetchall()
    ]
