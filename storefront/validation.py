"""
Storefront — 注文バリデーション

在庫チェックは fail-fast: 1 行でも在庫を超えていれば注文全体を拒否する。
合計金額はカートではなく現在の商品価格から計算する。
"""

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from .errors import InsufficientStock, InvalidShippingAddress
from .snapshot import CartSnapshotLine

UNKNOWN_REGION = "Unknown"


@dataclass(frozen=True)
class ValidatedCart:
    lines: list[CartSnapshotLine]
    total_amount: float


def validate_snapshot(lines: list[CartSnapshotLine]) -> ValidatedCart:
    total_amount = 0.0
    for line in lines:
        if line.stock < line.quantity:
            raise InsufficientStock(line.product_name, line.stock)
        total_amount += line.line_total
    # float の誤差を NUMERIC(12, 2) の精度に揃える
    return ValidatedCart(lines=list(lines), total_amount=round(total_amount, 2))


class ShippingAddress(BaseModel):
    full_name: str
    phone: str
    address_line1: str
    address_line2: str | None = None
    city: str
    state: str = ""
    postal_code: str
    country: str = "India"

    @property
    def region(self) -> str:
        return self.state.strip() or UNKNOWN_REGION


# (フィールド名, 受け付けるキー, 必須)
_ADDRESS_FIELDS = [
    ("full_name", ("fullName", "full_name"), True),
    ("phone", ("phone",), True),
    ("address_line1", ("addressLine1", "address_line1"), True),
    ("address_line2", ("addressLine2", "address_line2"), False),
    ("city", ("city",), True),
    ("state", ("state",), False),
    ("postal_code", ("postalCode", "postal_code"), True),
    ("country", ("country",), False),
]


def validate_shipping_address(raw: Any) -> ShippingAddress:
    """
    フロントエンドは camelCase、古いクライアントは snake_case で送ってくるので
    両方を受け付ける。必須項目が空なら InvalidShippingAddress。
    """
    if not isinstance(raw, dict) or not raw:
        raise InvalidShippingAddress("shippingAddress")

    values: dict[str, str] = {}
    for field, keys, required in _ADDRESS_FIELDS:
        value = next((raw[k] for k in keys if raw.get(k) not in (None, "")), None)
        if value is None:
            if required:
                raise InvalidShippingAddress(keys[0])
            continue
        values[field] = str(value).strip()
        if required and not values[field]:
            raise InvalidShippingAddress(keys[0])
    return ShippingAddress(**values)
