"""
Storefront — カートスナップショット

ユーザーのカート行を現在の商品レコードと結合して読み出す。
商品が削除済みのカート行は INNER JOIN により黙って除外される。
"""

from dataclasses import dataclass

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession


@dataclass(frozen=True)
class CartSnapshotLine:
    cart_item_id: str
    product_id: str
    quantity: int
    product_name: str
    description: str
    price: float
    stock: int

    @property
    def line_total(self) -> float:
        return round(self.price * self.quantity, 2)


async def read_cart_snapshot(session: AsyncSession, user_id: str) -> list[CartSnapshotLine]:
    result = await session.execute(
        text("""
            SELECT c.id AS cart_item_id, c.product_id, c.quantity,
                   p.name, p.description, p.price, p.stock
            FROM cart_items c
            JOIN products p ON p.id = c.product_id
            WHERE c.user_id = :user_id
            ORDER BY c.added_at ASC, c.id ASC
        """),
        {"user_id": user_id},
    )
    return [
        CartSnapshotLine(
            cart_item_id=str(row.cart_item_id),
            product_id=str(row.product_id),
            quantity=row.quantity,
            product_name=row.name,
            description=row.description or "",
            price=float(row.price),
            stock=row.stock,
        )
        for row in result.fetchall()
    ]
