"""
Storefront — Razorpay 決済

署名検証 (PaymentVerifier) と決済ゲートウェイ側の注文作成だけを扱う。
検証に通った後の注文確定は COD と同じ commands.place_order を使う。
"""

import hashlib
import hmac
import logging
import time

import httpx

logger = logging.getLogger(__name__)

RAZORPAY_API_BASE = "https://api.razorpay.com/v1"


class RazorpayVerifier:
    def __init__(self, key_secret: str | None) -> None:
        self.key_secret = key_secret or ""

    def expected_signature(self, gateway_order_id: str, payment_id: str) -> str:
        body = f"{gateway_order_id}|{payment_id}".encode()
        return hmac.new(self.key_secret.encode(), body, hashlib.sha256).hexdigest()

    def verify(self, gateway_order_id: str, payment_id: str, signature: str) -> bool:
        if not self.key_secret:
            logger.error("RAZORPAY_KEY_SECRET not configured; rejecting payment %s", payment_id)
            return False
        return hmac.compare_digest(
            self.expected_signature(gateway_order_id, payment_id), signature
        )


class RazorpayClient:
    def __init__(
        self,
        client: httpx.AsyncClient,
        key_id: str | None,
        key_secret: str | None,
        base_url: str = RAZORPAY_API_BASE,
    ) -> None:
        self.client = client
        self.key_id = key_id or ""
        self.key_secret = key_secret or ""
        self.base_url = base_url

    async def create_order(self, amount: float, currency: str = "INR") -> dict:
        """ゲートウェイ側の注文を作る。amount はルピー、API にはパイサで渡す。"""
        payload = {
            "amount": round(amount * 100),
            "currency": currency,
            "receipt": f"receipt_order_{int(time.time() * 1000)}",
        }
        logger.info("Creating Razorpay order: %s", payload)
        resp = await self.client.post(
            f"{self.base_url}/orders",
            json=payload,
            auth=(self.key_id, self.key_secret),
            timeout=30.0,
        )
        resp.raise_for_status()
        order = resp.json()
        return {"id": order["id"], "amount": order["amount"], "currency": order["currency"]}
