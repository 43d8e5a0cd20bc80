"""
Storefront — エラー定義

注文確定フローで発生しうる失敗の分類。
HTTP ステータスとユーザー向けメッセージを持ち、main.py の
例外ハンドラがそのまま JSON レスポンスに変換する。
"""


class StorefrontError(Exception):
    status_code: int = 500
    message: str = "Server error"

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


class EmptyCart(StorefrontError):
    """カートが空（または参照先商品がすべて削除済み）"""
    status_code = 400
    message = "Cart is empty"


class InsufficientStock(StorefrontError):
    """在庫不足 — 注文全体を拒否する"""
    status_code = 400

    def __init__(self, product_name: str, available: int) -> None:
        self.product_name = product_name
        self.available = available
        super().__init__(
            f"Insufficient stock for {product_name}. Available: {available}"
        )


class InvalidShippingAddress(StorefrontError):
    """配送先住所の必須項目が欠けている"""
    status_code = 400

    def __init__(self, field: str) -> None:
        self.field = field
        super().__init__(f"Shipping address is missing required field: {field}")


class InvalidPaymentSignature(StorefrontError):
    status_code = 400
    message = "Invalid payment signature"


class DuplicatePayment(StorefrontError):
    """同じ決済 ID で 2 件目の注文を作ろうとした"""
    status_code = 400
    message = "Payment has already been used for another order"


class OrderNotFound(StorefrontError):
    status_code = 404
    message = "Order not found"


class ProductNotFound(StorefrontError):
    status_code = 404
    message = "Product not found"


class CartItemNotFound(StorefrontError):
    status_code = 404
    message = "Cart item not found"


class PaymentGatewayError(StorefrontError):
    status_code = 502
    message = "Server error while creating Razorpay order"


class PersistenceFailure(StorefrontError):
    """DB への書き込みが確定できなかった。原因はサーバーログにのみ残す。"""
    status_code = 500
    message = "Server error while creating order"


class NotificationFailure(StorefrontError):
    """通知の送信失敗。ログに記録するだけで呼び出し元には返さない。"""

    def __init__(self, channel: str, order_id: str) -> None:
        self.channel = channel
        self.order_id = order_id
        super().__init__(f"{channel} notification failed for order {order_id}")
