"""
Storefront — イベント / 通知ペイロード定義

注文確定後に外へ出ていくデータ。過去形で命名し、不変として扱う。
"""

from datetime import datetime

from pydantic import BaseModel

from .validation import ShippingAddress


class OrderLineItem(BaseModel):
    product_id: str
    name: str
    quantity: int
    price: float
    description: str = ""


class OrderConfirmation(BaseModel):
    """メール / WhatsApp 通知に渡す注文確定内容"""
    order_id: str
    customer_id: str
    customer_name: str
    customer_email: str
    customer_phone: str
    order_date: datetime
    items: list[OrderLineItem]
    total_amount: float
    payment_method: str
    payment_status: str
    shipping_address: ShippingAddress


class OrderPlaced(BaseModel):
    """注文が確定された（order_events チャネルに発行）"""
    order_id: str
    user_id: str
    total_amount: float
    payment_method: str
    region: str
    items: list[OrderLineItem]
    timestamp: datetime
