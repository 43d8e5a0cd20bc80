"""注文確定 (commands.place_order) のテスト"""

import asyncio
import dataclasses
from datetime import datetime, timezone

import pytest
from sqlalchemy import text

from storefront import commands
from storefront.auth import CurrentUser
from storefront.errors import DuplicatePayment, EmptyCart, InsufficientStock, PersistenceFailure
from storefront.validation import ShippingAddress


async def _place(session_factory, user, address, **kwargs):
    async with session_factory() as session:
        return await commands.place_order(session, user, address, **kwargs)


async def test_single_line_order_commits(session_factory, store, user, address):
    widget = await store.add_product("Widget", price=100, stock=5)
    await store.add_cart_line(user.id, widget, 2)

    placed = await _place(session_factory, user, address)

    assert placed.total_amount == 200
    assert await store.stock(widget) == 3
    assert await store.count("cart_items", user_id=user.id) == 0

    [order] = await store.rows("orders", id=placed.order_id)
    assert float(order.total_amount) == 200
    assert order.payment_status == "pending"
    assert order.order_status == "processing"
    assert order.payment_method == "cod"

    [item] = await store.rows("order_items", order_id=placed.order_id)
    assert item.quantity == 2
    assert float(item.price) == 100


async def test_insufficient_stock_rejects_and_leaves_state(session_factory, store, user, address):
    gadget = await store.add_product("Gadget", price=50, stock=1)
    await store.add_cart_line(user.id, gadget, 3)

    with pytest.raises(InsufficientStock) as exc_info:
        await _place(session_factory, user, address)

    assert exc_info.value.product_name == "Gadget"
    assert exc_info.value.available == 1
    assert "Insufficient stock for Gadget. Available: 1" in str(exc_info.value)
    assert await store.stock(gadget) == 1
    assert await store.count("cart_items", user_id=user.id) == 1


async def test_empty_cart_is_rejected(session_factory, store, user, address):
    with pytest.raises(EmptyCart):
        await _place(session_factory, user, address)

    assert await store.count("orders") == 0
    assert await store.count("order_items") == 0
    assert await store.count("sales_events") == 0


async def test_cart_with_only_deleted_products_counts_as_empty(session_factory, store, user, address):
    gone = await store.add_product("Discontinued", price=10, stock=10)
    await store.add_cart_line(user.id, gone, 1)
    await store.delete_product(gone)

    with pytest.raises(EmptyCart):
        await _place(session_factory, user, address)
    assert await store.count("orders") == 0


async def test_orphaned_cart_line_is_dropped_from_order(session_factory, store, user, address):
    kept = await store.add_product("Cable", price=20, stock=4)
    gone = await store.add_product("Discontinued", price=999, stock=1)
    await store.add_cart_line(user.id, kept, 1)
    await store.add_cart_line(user.id, gone, 1)
    await store.delete_product(gone)

    placed = await _place(session_factory, user, address)

    assert placed.total_amount == 20
    assert await store.count("order_items", order_id=placed.order_id) == 1
    # 削除済み商品の行もカートごと消える
    assert await store.count("cart_items", user_id=user.id) == 0


async def test_one_bad_line_rejects_whole_order(session_factory, store, user, address):
    ok = await store.add_product("Charger", price=30, stock=10)
    short = await store.add_product("Screen", price=200, stock=1)
    await store.add_cart_line(user.id, ok, 2)
    await store.add_cart_line(user.id, short, 2)

    with pytest.raises(InsufficientStock) as exc_info:
        await _place(session_factory, user, address)

    assert exc_info.value.product_name == "Screen"
    assert await store.stock(ok) == 10
    assert await store.stock(short) == 1
    assert await store.count("orders") == 0
    assert await store.count("order_items") == 0
    assert await store.count("sales_events") == 0
    assert await store.count("cart_items", user_id=user.id) == 2


async def test_total_matches_order_lines(session_factory, store, user, address):
    a = await store.add_product("Case", price=15.5, stock=10)
    b = await store.add_product("Battery", price=42, stock=10)
    await store.add_cart_line(user.id, a, 3)
    await store.add_cart_line(user.id, b, 2)

    placed = await _place(session_factory, user, address)

    items = await store.rows("order_items", order_id=placed.order_id)
    assert sum(float(i.price) * i.quantity for i in items) == pytest.approx(placed.total_amount)
    [order] = await store.rows("orders", id=placed.order_id)
    assert float(order.total_amount) == pytest.approx(130.5)


async def test_sales_events_use_region_and_line_amount(session_factory, store, user, address):
    a = await store.add_product("Case", price=15, stock=10)
    b = await store.add_product("Battery", price=40, stock=10)
    await store.add_cart_line(user.id, a, 2)
    await store.add_cart_line(user.id, b, 1)

    placed = await _place(session_factory, user, address)

    events = {e.product_id: e for e in await store.rows("sales_events", order_id=placed.order_id)}
    assert len(events) == 2
    assert events[a].region == "Karnataka"
    assert float(events[a].amount) == 30
    assert events[b].quantity == 1


async def test_blank_state_records_unknown_region(session_factory, store, user, address):
    p = await store.add_product("Case", price=15, stock=10)
    await store.add_cart_line(user.id, p, 1)

    placed = await _place(session_factory, user, address.model_copy(update={"state": "  "}))

    [event] = await store.rows("sales_events", order_id=placed.order_id)
    assert event.region == "Unknown"


async def test_gateway_payment_is_marked_completed(session_factory, store, user, address):
    p = await store.add_product("Phone", price=500, stock=2)
    await store.add_cart_line(user.id, p, 1)

    placed = await _place(
        session_factory, user, address,
        payment_method="razorpay",
        payment_details={"payment_id": "pay_123", "gateway_order_id": "order_abc"},
    )

    [order] = await store.rows("orders", id=placed.order_id)
    assert order.payment_status == "completed"
    assert order.order_status == "processing"
    assert order.payment_id == "pay_123"
    assert order.gateway_order_id == "order_abc"
    assert placed.confirmation.payment_status == "completed"


async def test_confirmation_carries_committed_lines(session_factory, store, user, address):
    p = await store.add_product("Phone", price=500, stock=2, description="Dual SIM")
    await store.add_cart_line(user.id, p, 2)

    placed = await _place(session_factory, user, address)

    confirmation = placed.confirmation
    assert confirmation.order_id == placed.order_id
    assert confirmation.customer_email == "asha@example.com"
    assert confirmation.customer_name == "Asha Rao"
    assert confirmation.customer_phone == "919800000001"
    assert [(i.name, i.quantity, i.price, i.description) for i in confirmation.items] == [
        ("Phone", 2, 500, "Dual SIM")
    ]
    assert confirmation.total_amount == 1000


async def test_unsupported_payment_method(session_factory, user, address):
    with pytest.raises(ValueError):
        await _place(session_factory, user, address, payment_method="stripe")


async def test_total_is_kept_to_two_decimals(session_factory, store, user, address):
    p = await store.add_product("Sticker", price=0.1, stock=10)
    await store.add_cart_line(user.id, p, 3)

    placed = await _place(session_factory, user, address)

    assert placed.total_amount == 0.3
    assert placed.confirmation.total_amount == 0.3
    [order] = await store.rows("orders", id=placed.order_id)
    assert float(order.total_amount) == 0.3


async def test_payment_id_cannot_be_reused(session_factory, store, user, address):
    p = await store.add_product("Phone", price=500, stock=5)
    payment = {"payment_id": "pay_123", "gateway_order_id": "order_abc"}
    await store.add_cart_line(user.id, p, 1)
    await _place(session_factory, user, address, payment_method="razorpay", payment_details=payment)

    await store.add_cart_line(user.id, p, 1)
    with pytest.raises(DuplicatePayment):
        await _place(session_factory, user, address, payment_method="razorpay", payment_details=payment)

    assert await store.count("orders") == 1
    assert await store.stock(p) == 4
    assert await store.count("cart_items", user_id=user.id) == 1


async def test_payment_id_unique_constraint_maps_to_duplicate_payment(
    monkeypatch, session_factory, store, user, address,
):
    p = await store.add_product("Phone", price=500, stock=5)
    payment = {"payment_id": "pay_123", "gateway_order_id": "order_abc"}
    await store.add_cart_line(user.id, p, 1)
    await _place(session_factory, user, address, payment_method="razorpay", payment_details=payment)

    # 事前チェックをすり抜けた同時リクエスト相当
    async def not_used(session, payment_id):
        return False

    monkeypatch.setattr(commands, "_payment_already_used", not_used)
    await store.add_cart_line(user.id, p, 1)
    with pytest.raises(DuplicatePayment):
        await _place(session_factory, user, address, payment_method="razorpay", payment_details=payment)

    assert await store.count("orders") == 1
    assert await store.count("order_items") == 1
    assert await store.stock(p) == 4


async def test_cod_orders_share_empty_payment_id(session_factory, store, user, address):
    p = await store.add_product("Widget", price=10, stock=5)
    for _ in range(2):
        await store.add_cart_line(user.id, p, 1)
        await _place(session_factory, user, address)

    assert await store.count("orders") == 2


async def test_storage_error_becomes_persistence_failure_without_partial_writes(
    engine, session_factory, store, user, address,
):
    p = await store.add_product("Widget", price=100, stock=5)
    await store.add_cart_line(user.id, p, 2)
    async with engine.begin() as conn:
        await conn.execute(text("DROP TABLE sales_events"))

    with pytest.raises(PersistenceFailure):
        await _place(session_factory, user, address)

    assert await store.count("orders") == 0
    assert await store.count("order_items") == 0
    assert await store.stock(p) == 5
    assert await store.count("cart_items", user_id=user.id) == 1


async def test_slow_storage_times_out(monkeypatch, session_factory, store, user, address):
    p = await store.add_product("Widget", price=100, stock=5)
    await store.add_cart_line(user.id, p, 1)

    async def slow_snapshot(session, user_id):
        await asyncio.sleep(5)
        return []

    monkeypatch.setattr(commands, "read_cart_snapshot", slow_snapshot)

    with pytest.raises(PersistenceFailure):
        await _place(session_factory, user, address, timeout=0.05)

    assert await store.stock(p) == 5
    assert await store.count("cart_items", user_id=user.id) == 1


# ── 同時注文 ─────────────────────────────────────


async def test_last_unit_race_has_exactly_one_winner(session_factory, store, address):
    p = await store.add_product("Gadget", price=50, stock=1)
    alice = CurrentUser(id="alice", email="alice@example.com")
    bob = CurrentUser(id="bob", email="bob@example.com")
    await store.add_cart_line(alice.id, p, 1)
    await store.add_cart_line(bob.id, p, 1)

    results = await asyncio.gather(
        _place(session_factory, alice, address),
        _place(session_factory, bob, address),
        return_exceptions=True,
    )

    winners = [r for r in results if isinstance(r, commands.PlacedOrder)]
    losers = [r for r in results if isinstance(r, InsufficientStock)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert losers[0].available == 0
    assert await store.stock(p) == 0
    assert await store.count("orders") == 1


async def test_concurrent_orders_never_oversell(session_factory, store):
    p = await store.add_product("Limited", price=10, stock=3)
    users = [CurrentUser(id=f"buyer-{n}") for n in range(6)]
    for u in users:
        await store.add_cart_line(u.id, p, 1)
    address = ShippingAddress(
        full_name="Buyer", phone="1", address_line1="x", city="y", postal_code="z",
    )

    results = await asyncio.gather(
        *(_place(session_factory, u, address) for u in users),
        return_exceptions=True,
    )

    succeeded = [r for r in results if isinstance(r, commands.PlacedOrder)]
    rejected = [r for r in results if isinstance(r, InsufficientStock)]
    assert len(succeeded) == 3
    assert len(rejected) == 3
    assert await store.stock(p) == 0
    assert await store.count("orders") == 3
    # 拒否されたユーザーのカートはそのまま
    for u in users:
        remaining = await store.count("cart_items", user_id=u.id)
        placed = any(r.confirmation.customer_id == u.id for r in succeeded)
        assert remaining == (0 if placed else 1)


async def test_conditional_decrement_refuses_to_go_negative(session_factory, store):
    p = await store.add_product("Gadget", price=50, stock=1)

    async with session_factory() as session:
        async with session.begin():
            await commands._decrement_stock(session, p, "Gadget", 1, datetime.now(timezone.utc))

    async with session_factory() as session:
        with pytest.raises(InsufficientStock) as exc_info:
            async with session.begin():
                await commands._decrement_stock(session, p, "Gadget", 1, datetime.now(timezone.utc))

    assert exc_info.value.available == 0
    assert await store.stock(p) == 0


async def test_stock_rows_are_locked_in_product_id_order(monkeypatch, session_factory, store, user, address):
    products = [await store.add_product(f"Item {n}", price=10, stock=5) for n in range(4)]
    for p in products:
        await store.add_cart_line(user.id, p, 1)

    locked = []
    decrement = commands._decrement_stock

    async def recording_decrement(session, product_id, *args):
        locked.append(product_id)
        await decrement(session, product_id, *args)

    monkeypatch.setattr(commands, "_decrement_stock", recording_decrement)

    placed = await _place(session_factory, user, address)

    assert locked == sorted(products)
    # 確認メッセージの明細はカートの追加順のまま
    assert [i.product_id for i in placed.confirmation.items] == products


async def test_decrement_lost_on_later_line_rolls_back_earlier_lines(
    monkeypatch, session_factory, store, user, address,
):
    first, last = sorted([
        await store.add_product("Cable", price=20, stock=5),
        await store.add_product("Cable", price=20, stock=5),
    ])
    await store.add_cart_line(user.id, last, 1)
    await store.add_cart_line(user.id, first, 2)
    # 読み出し後に別の注文が最後の在庫を持っていった状態
    await store.set_stock(last, 0)
    read_snapshot = commands.read_cart_snapshot

    async def stale_snapshot(session, user_id):
        lines = await read_snapshot(session, user_id)
        return [dataclasses.replace(l, stock=1) if l.product_id == last else l for l in lines]

    monkeypatch.setattr(commands, "read_cart_snapshot", stale_snapshot)

    with pytest.raises(InsufficientStock) as exc_info:
        await _place(session_factory, user, address)

    assert exc_info.value.available == 0
    assert await store.stock(first) == 5
    assert await store.stock(last) == 0
    assert await store.count("orders") == 0
    assert await store.count("order_items") == 0
    assert await store.count("sales_events") == 0
    assert await store.count("cart_items", user_id=user.id) == 2
