"""
Storefront — 注文確定通知

注文がコミットされた後に、メールと WhatsApp の通知を
バックグラウンドタスクとして並行に送る（fire-and-forget）。

  ┌──────────────┐  commit  ┌─────────────────────────┐
  │ place_order  │ ───────▶ │ NotificationDispatcher  │──▶ Email (SMTP)
  │ (HTTP 201)   │          │  asyncio.create_task()  │──▶ WhatsApp Cloud API
  └──────────────┘          └─────────────────────────┘──▶ Redis order_events

送信結果はログに残すだけ。失敗しても注文には一切影響しない。
リトライキューや outbox は持たない（最大 1 回の送信試行）。
"""

import asyncio
import json
import logging
from email.message import EmailMessage

import aiosmtplib
import httpx
import redis.asyncio as aioredis

from .errors import NotificationFailure
from .events import OrderConfirmation, OrderPlaced

logger = logging.getLogger(__name__)

GRAPH_API_BASE = "https://graph.facebook.com/v16.0"


def summarize_items(order: OrderConfirmation, limit: int = 5) -> str:
    lines = [
        f"{item.quantity}x {item.name} (₹{item.price:.2f})"
        for item in order.items[:limit]
    ]
    if len(order.items) > limit:
        lines.append(f"+ {len(order.items) - limit} more items")
    return "\n".join(lines)


class EmailNotifier:
    """SMTP で管理者と購入者に注文確定メールを送る。"""

    channel = "email"

    def __init__(
        self,
        host: str | None,
        port: int = 587,
        username: str | None = None,
        password: str | None = None,
        sender: str | None = None,
        admin_email: str | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender or username
        self.admin_email = admin_email
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.host and self.username and self.password)

    def build_messages(self, order: OrderConfirmation) -> list[EmailMessage]:
        address = order.shipping_address
        ship_to = ", ".join(
            part for part in (
                address.address_line1, address.address_line2, address.city,
                address.state, address.postal_code, address.country,
            ) if part
        )
        details = (
            f"Order #{order.order_id}\n"
            f"Date: {order.order_date:%Y-%m-%d %H:%M} UTC\n\n"
            f"{summarize_items(order, limit=len(order.items))}\n\n"
            f"Total: ₹{order.total_amount:.2f}\n"
            f"Payment: {order.payment_method} ({order.payment_status})\n"
            f"Ship to: {address.full_name}, {ship_to} (phone {address.phone})\n"
        )

        messages = []
        if self.admin_email:
            admin = EmailMessage()
            admin["From"] = self.sender
            admin["To"] = self.admin_email
            admin["Subject"] = f"New order #{order.order_id} from {order.customer_name}"
            admin.set_content(
                f"Customer: {order.customer_name} <{order.customer_email or 'N/A'}>\n\n" + details
            )
            messages.append(admin)
        else:
            logger.warning("ADMIN_EMAIL not configured; skipping admin order email")

        if order.customer_email:
            customer = EmailMessage()
            customer["From"] = self.sender
            customer["To"] = order.customer_email
            customer["Subject"] = f"Order #{order.order_id} confirmed"
            customer.set_content(
                f"Hi {order.customer_name}, thanks for your order!\n\n" + details
                + "\nWe'll let you know when your order ships.\n"
            )
            messages.append(customer)
        return messages

    async def send_order_confirmation(self, order: OrderConfirmation) -> None:
        if not self.configured:
            logger.warning("Email configuration missing; skipping order %s", order.order_id)
            return
        for message in self.build_messages(order):
            await aiosmtplib.send(
                message,
                hostname=self.host,
                port=self.port,
                username=self.username,
                password=self.password,
                use_tls=self.port == 465,
                timeout=self.timeout,
            )
            logger.info("Order email sent to %s for order %s", message["To"], order.order_id)


class WhatsAppNotifier:
    """WhatsApp Cloud API でテキストメッセージを送る。"""

    channel = "whatsapp"

    def __init__(
        self,
        client: httpx.AsyncClient,
        phone_number_id: str | None,
        access_token: str | None,
        admin_number: str | None = None,
        base_url: str = GRAPH_API_BASE,
        timeout: float = 10.0,
    ) -> None:
        self.client = client
        self.phone_number_id = phone_number_id
        self.access_token = access_token
        self.admin_number = admin_number
        self.base_url = base_url
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.phone_number_id and self.access_token)

    async def send_text(self, to: str, body: str) -> None:
        resp = await self.client.post(
            f"{self.base_url}/{self.phone_number_id}/messages",
            json={
                "messaging_product": "whatsapp",
                "to": to,
                "type": "text",
                "text": {"body": body},
            },
            headers={"Authorization": f"Bearer {self.access_token}"},
            timeout=self.timeout,
        )
        resp.raise_for_status()
        logger.info("WhatsApp message sent to %s", to)

    async def send_order_confirmation(self, order: OrderConfirmation) -> None:
        if not self.configured:
            logger.warning("WhatsApp configuration missing; skipping order %s", order.order_id)
            return

        if self.admin_number:
            await self.send_text(
                self.admin_number,
                f"New order received\n"
                f"Order: #{order.order_id}\n"
                f"Customer: {order.customer_name}\n"
                f"Phone: {order.customer_phone or 'N/A'}\n"
                f"Amount: ₹{order.total_amount:.2f}\n"
                f"Payment: {order.payment_method} ({order.payment_status})\n"
                f"Items:\n{summarize_items(order)}",
            )
        else:
            logger.warning("ADMIN_WHATSAPP not configured; skipping admin WhatsApp")

        if order.customer_phone:
            await self.send_text(
                order.customer_phone,
                f"Hi {order.customer_name}, thanks for your order!\n"
                f"Order #: {order.order_id}\n"
                f"Total: ₹{order.total_amount:.2f}\n"
                f"We'll update you when your order ships.",
            )


class NotificationDispatcher:
    """
    注文確定後の副作用をまとめて切り離す。

    dispatch() はタスクを作って即座に返る。呼び出し元（HTTP ハンドラ）は
    その完了を待たずにレスポンスを返してよい。
    """

    def __init__(
        self,
        email: EmailNotifier,
        messaging: WhatsAppNotifier,
        redis: aioredis.Redis | None = None,
    ) -> None:
        self.email = email
        self.messaging = messaging
        self.redis = redis
        self._tasks: set[asyncio.Task] = set()

    def dispatch(self, order: OrderConfirmation) -> asyncio.Task:
        task = asyncio.create_task(self._deliver(order), name=f"notify-order-{order.order_id}")
        # タスクが GC されないよう完了まで参照を持つ
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _deliver(self, order: OrderConfirmation) -> None:
        channels = (self.email.channel, self.messaging.channel, "order_events")
        results = await asyncio.gather(
            self.email.send_order_confirmation(order),
            self.messaging.send_order_confirmation(order),
            self._publish_order_placed(order),
            return_exceptions=True,
        )
        for channel, result in zip(channels, results):
            if isinstance(result, BaseException):
                failure = NotificationFailure(channel, order.order_id)
                logger.error("%s", failure, exc_info=result)
            else:
                logger.info("%s notification processed for order %s", channel, order.order_id)

    async def _publish_order_placed(self, order: OrderConfirmation) -> None:
        if self.redis is None:
            return
        event = OrderPlaced(
            order_id=order.order_id,
            user_id=order.customer_id,
            total_amount=order.total_amount,
            payment_method=order.payment_method,
            region=order.shipping_address.region,
            items=order.items,
            timestamp=order.order_date,
        )
        await self.redis.publish("order_events", json.dumps({
            "event_type": "OrderPlaced",
            "data": event.model_dump(mode="json"),
        }, default=str))

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """未完了の通知タスクを待つ（シャットダウン時・テスト用）。"""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
