"""
Storefront — FastAPI エントリーポイント

注文確定 API と、それを支えるカート / 注文照会 / Razorpay 決済の API。

  POST /api/orders                       → 代金引換 (COD) で注文確定
  POST /api/payment/razorpay/verify      → 署名検証後に同じ注文確定処理

注文確定はコミットまでを同期的に行い、通知はバックグラウンドに
切り離してからレスポンスを返す。
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Literal

import httpx
import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import commands, db, queries
from .auth import CurrentUser, get_current_user, require_admin
from .errors import (
    EmptyCart,
    InvalidPaymentSignature,
    OrderNotFound,
    PaymentGatewayError,
    StorefrontError,
)
from .notifications import EmailNotifier, NotificationDispatcher, WhatsAppNotifier
from .payment import RazorpayClient, RazorpayVerifier
from .snapshot import read_cart_snapshot
from .validation import validate_shipping_address

logger = logging.getLogger(__name__)

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
ORDER_COMMIT_TIMEOUT = float(os.environ.get("ORDER_COMMIT_TIMEOUT", "10"))

EMAIL_HOST = os.environ.get("EMAIL_HOST")
EMAIL_PORT = int(os.environ.get("EMAIL_PORT") or 587)
EMAIL_USER = os.environ.get("EMAIL_USER")
EMAIL_PASSWORD = os.environ.get("EMAIL_PASSWORD")
EMAIL_FROM = os.environ.get("EMAIL_FROM")
ADMIN_EMAIL = os.environ.get("ADMIN_EMAIL")

WHATSAPP_PHONE_NUMBER_ID = os.environ.get("WHATSAPP_PHONE_NUMBER_ID")
WHATSAPP_ACCESS_TOKEN = os.environ.get("WHATSAPP_ACCESS_TOKEN")
ADMIN_WHATSAPP = os.environ.get("ADMIN_WHATSAPP")

RAZORPAY_KEY_ID = os.environ.get("RAZORPAY_KEY_ID")
RAZORPAY_KEY_SECRET = os.environ.get("RAZORPAY_KEY_SECRET")

engine = db.create_engine(DATABASE_URL)
async_session = db.create_session_factory(engine)
redis_pool: aioredis.Redis | None = None
http_client: httpx.AsyncClient | None = None
dispatcher: NotificationDispatcher | None = None
razorpay_client: RazorpayClient | None = None
payment_verifier = RazorpayVerifier(RAZORPAY_KEY_SECRET)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool, http_client, dispatcher, razorpay_client
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    http_client = httpx.AsyncClient(timeout=10.0)
    razorpay_client = RazorpayClient(http_client, RAZORPAY_KEY_ID, RAZORPAY_KEY_SECRET)
    dispatcher = NotificationDispatcher(
        EmailNotifier(
            EMAIL_HOST, EMAIL_PORT, EMAIL_USER, EMAIL_PASSWORD,
            sender=EMAIL_FROM, admin_email=ADMIN_EMAIL,
        ),
        WhatsAppNotifier(
            http_client, WHATSAPP_PHONE_NUMBER_ID, WHATSAPP_ACCESS_TOKEN,
            admin_number=ADMIN_WHATSAPP,
        ),
        redis_pool,
    )
    yield
    await dispatcher.drain()
    await http_client.aclose()
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Storefront Order Service", lifespan=lifespan)


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request, exc: StorefrontError):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.detail})


# ── Request Models ───────────────────────────────


class PlaceOrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    shipping_address: dict[str, Any] | None = Field(default=None, alias="shippingAddress")
    payment_method: Literal["cod", "razorpay"] = Field(default="cod", alias="paymentMethod")


class VerifyPaymentRequest(BaseModel):
    razorpay_order_id: str = ""
    razorpay_payment_id: str = ""
    razorpay_signature: str = ""
    shipping_address: dict[str, Any] | None = Field(default=None, alias="shippingAddress")


class AddToCartRequest(BaseModel):
    product_id: str = Field(alias="productId")
    quantity: int = Field(default=1, gt=0)


class UpdateCartItemRequest(BaseModel):
    quantity: int = Field(gt=0)


class UpdateOrderRequest(BaseModel):
    order_status: Literal["pending", "processing", "shipped", "delivered", "cancelled"] | None = None
    payment_status: Literal["pending", "completed", "failed", "refunded"] | None = None


# ── 注文確定 ─────────────────────────────────────


async def _commit_and_notify(
    user: CurrentUser,
    raw_address: dict | None,
    payment_method: str,
    payment_details: dict | None = None,
) -> commands.PlacedOrder:
    shipping_address = validate_shipping_address(raw_address)
    async with async_session() as session:
        placed = await commands.place_order(
            session, user, shipping_address, payment_method,
            payment_details, timeout=ORDER_COMMIT_TIMEOUT,
        )
    # コミット済み。ここから先の失敗は注文に影響させない
    if dispatcher is not None:
        dispatcher.dispatch(placed.confirmation)
    else:
        logger.warning("Notification dispatcher not running; order %s not announced", placed.order_id)
    return placed


@app.post("/api/orders", status_code=201)
async def create_order(req: PlaceOrderRequest, user: CurrentUser = Depends(get_current_user)):
    """カートから注文を作成する（代金引換）"""
    if req.payment_method != "cod":
        raise HTTPException(400, "Razorpay orders are placed via /api/payment/razorpay/verify")
    placed = await _commit_and_notify(user, req.shipping_address, "cod")
    return {
        "message": "Order created successfully",
        "orderId": placed.order_id,
        "totalAmount": placed.total_amount,
    }


@app.post("/api/payment/razorpay/create-order")
async def create_razorpay_order(user: CurrentUser = Depends(get_current_user)):
    """カート合計でゲートウェイ側の注文を作る（決済画面を開く前）"""
    async with async_session() as session:
        lines = await read_cart_snapshot(session, user.id)
    if not lines:
        raise EmptyCart()

    total_amount = round(sum(line.line_total for line in lines), 2)
    try:
        return await razorpay_client.create_order(total_amount)
    except httpx.HTTPError as exc:
        logger.exception("Error creating Razorpay order for user %s", user.id)
        raise PaymentGatewayError() from exc


@app.post("/api/payment/razorpay/verify", status_code=201)
async def verify_razorpay_payment(
    req: VerifyPaymentRequest,
    user: CurrentUser = Depends(get_current_user),
):
    """決済署名を検証し、通れば注文を確定する"""
    if not (req.razorpay_order_id and req.razorpay_payment_id
            and req.razorpay_signature and req.shipping_address):
        raise HTTPException(400, "Missing payment verification details")

    if not payment_verifier.verify(
        req.razorpay_order_id, req.razorpay_payment_id, req.razorpay_signature,
    ):
        logger.warning("Invalid Razorpay signature for payment %s", req.razorpay_payment_id)
        raise InvalidPaymentSignature()

    placed = await _commit_and_notify(
        user, req.shipping_address, "razorpay",
        {"payment_id": req.razorpay_payment_id, "gateway_order_id": req.razorpay_order_id},
    )
    return {
        "message": "Order created successfully",
        "orderId": placed.order_id,
        "totalAmount": placed.total_amount,
    }


# ── 注文照会 / 管理 ──────────────────────────────


@app.get("/api/orders")
async def list_orders(user: CurrentUser = Depends(get_current_user)):
    async with async_session() as session:
        return await queries.list_orders(session, user.id)


@app.get("/api/orders/{order_id}")
async def get_order(order_id: str, user: CurrentUser = Depends(get_current_user)):
    async with async_session() as session:
        order = await queries.get_order(session, order_id, user_id=user.id)
    if not order:
        raise OrderNotFound()
    return order


@app.put("/api/orders/{order_id}")
async def update_order(
    order_id: str,
    req: UpdateOrderRequest,
    admin: CurrentUser = Depends(require_admin),
):
    """注文ステータス更新（管理者のみ）"""
    async with async_session() as session:
        return await commands.update_order_status(
            session, order_id, req.order_status, req.payment_status,
        )


@app.get("/api/orders/{order_id}/sales-events")
async def get_order_sales_events(order_id: str, admin: CurrentUser = Depends(require_admin)):
    async with async_session() as session:
        return await queries.list_sales_events(session, order_id)


# ── カート ───────────────────────────────────────


@app.get("/api/cart")
async def get_cart(user: CurrentUser = Depends(get_current_user)):
    async with async_session() as session:
        return await queries.get_cart(session, user.id)


@app.post("/api/cart", status_code=201)
async def add_to_cart(req: AddToCartRequest, user: CurrentUser = Depends(get_current_user)):
    async with async_session() as session:
        await commands.add_to_cart(session, user.id, req.product_id, req.quantity)
    return {"message": "Item added to cart successfully"}


@app.put("/api/cart/{cart_item_id}")
async def update_cart_item(
    cart_item_id: str,
    req: UpdateCartItemRequest,
    user: CurrentUser = Depends(get_current_user),
):
    async with async_session() as session:
        await commands.update_cart_item(session, user.id, cart_item_id, req.quantity)
    return {"message": "Cart item updated successfully"}


@app.delete("/api/cart/{cart_item_id}")
async def remove_cart_item(cart_item_id: str, user: CurrentUser = Depends(get_current_user)):
    async with async_session() as session:
        await commands.remove_cart_item(session, user.id, cart_item_id)
    return {"message": "Item removed from cart successfully"}


@app.delete("/api/cart")
async def clear_cart(user: CurrentUser = Depends(get_current_user)):
    async with async_session() as session:
        await commands.clear_cart(session, user.id)
    return {"message": "Cart cleared successfully"}


@app.get("/health")
async def health():
    return {"status": "ok", "service": "storefront"}
