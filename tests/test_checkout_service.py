import pytest

from schemas import CreateOrderRequest
from services import checkout_service, voucher_service
from services.checkout_service import CheckoutError, OrderNotFoundError

USER_ID = "user-1"
EMAIL = "Owner@Example.com"


def _request(items, **overrides) -> CreateOrderRequest:
    payload = {
        "items": [{"product_id": pid, "quantity": qty} for pid, qty in items],
        "shipping_name": "Aisyah",
        "shipping_address": "12 Jalan Kucing, Ipoh",
        "shipping_phone": "012-3456789",
        "shipping_state": "Perak",
        "payment_method": "FPX",
    }
    payload.update(overrides)
    return CreateOrderRequest.model_validate(payload)


@pytest.mark.asyncio
async def test_order_with_voucher(order_store, voucher_store) -> None:
    order_store.add_product(1, "Kibble 2kg", 60.0, stock=10, weight_kg=0.5)
    voucher = voucher_store.add(code="WOOF10", discount_type="fixed", discount_amount=10)

    order = await checkout_service.place_order(USER_ID, EMAIL, _request([(1, 2)], voucher_code="woof10"))

    assert order.total_amount == pytest.approx(110.0)
    assert order.discount_amount == pytest.approx(10.0)
    assert order.voucher_code == "WOOF10"
    assert order.delivery_fee == pytest.approx(6.89)
    assert order.status == "pending"
    assert order.payment_status == "pending"
    assert order.financials.orderTotal == pytest.approx(116.89)
    assert order.financials.senangPayFee == pytest.approx(1.75)
    assert order.financials.netEarnings == pytest.approx(115.14)
    assert [item.quantity for item in order.items] == [2]

    assert voucher_store.vouchers[voucher["id"]]["times_used"] == 1
    assert voucher_store.usage == [
        {"voucher_id": voucher["id"], "user_email": "owner@example.com", "order_id": order.id}
    ]
    assert order_store.products[1]["stock"] == 8


@pytest.mark.asyncio
async def test_exhausted_voucher_is_ignored(order_store, voucher_store) -> None:
    order_store.add_product(1, "Cat Litter", 30.0)
    voucher_store.add(code="GONE", usage_limit=1, times_used=1)

    order = await checkout_service.place_order(USER_ID, EMAIL, _request([(1, 1)], voucher_code="GONE"))

    assert order.discount_amount == 0
    assert order.voucher_code is None
    assert order.total_amount == pytest.approx(30.0)
    assert voucher_store.usage == []


@pytest.mark.asyncio
async def test_voucher_lost_to_concurrent_checkout(order_store, voucher_store, monkeypatch) -> None:
    order_store.add_product(1, "Cat Litter", 30.0)
    voucher_store.add(code="LAST", usage_limit=1)

    async def already_taken(voucher_id):
        return False

    monkeypatch.setattr(checkout_service, "reserve_voucher_use", already_taken)
    order = await checkout_service.place_order(USER_ID, EMAIL, _request([(1, 1)], voucher_code="LAST"))

    assert order.voucher_code is None
    assert order.total_amount == pytest.approx(30.0)
    assert voucher_store.usage == []


@pytest.mark.asyncio
async def test_insufficient_stock(order_store, voucher_store) -> None:
    order_store.add_product(1, "Bird Seed", 12.0, stock=1)
    with pytest.raises(CheckoutError, match="Not enough stock for Bird Seed. Available: 1"):
        await checkout_service.place_order(USER_ID, EMAIL, _request([(1, 2)]))
    assert order_store.orders == {}


@pytest.mark.asyncio
async def test_duplicate_lines_are_merged_before_stock_check(order_store, voucher_store) -> None:
    order_store.add_product(1, "Bird Seed", 12.0, stock=2)
    with pytest.raises(CheckoutError):
        await checkout_service.place_order(USER_ID, EMAIL, _request([(1, 1), (1, 2)]))


@pytest.mark.asyncio
async def test_inactive_product_is_rejected(order_store, voucher_store) -> None:
    order_store.add_product(1, "Old Toy", 5.0, is_active=False)
    with pytest.raises(CheckoutError, match="not available"):
        await checkout_service.place_order(USER_ID, EMAIL, _request([(1, 1)]))


@pytest.mark.asyncio
async def test_free_shipping_uses_discounted_subtotal(order_store, voucher_store) -> None:
    order_store.add_product(1, "Aquarium Filter", 75.0, weight_kg=0.5)
    voucher_store.add(code="FISH10", discount_type="fixed", discount_amount=10)

    free = await checkout_service.place_order(USER_ID, EMAIL, _request([(1, 2)]))
    assert free.delivery_fee == 0
    assert free.financials.deliveryFee == 0
    assert free.financials.orderTotal == pytest.approx(150.0)

    charged = await checkout_service.place_order(USER_ID, EMAIL, _request([(1, 2)], voucher_code="FISH10"))
    assert charged.total_amount == pytest.approx(140.0)
    assert charged.delivery_fee == pytest.approx(6.89)


@pytest.mark.asyncio
async def test_heavy_order_uses_weight_tiers(order_store, voucher_store) -> None:
    order_store.add_product(1, "Dog Food 5kg", 40.0, weight_kg=5.0)
    order = await checkout_service.place_order(USER_ID, EMAIL, _request([(1, 1)]))
    assert order.delivery_fee == pytest.approx(11.00)


@pytest.mark.asyncio
async def test_failed_order_insert_releases_voucher(order_store, voucher_store) -> None:
    order_store.add_product(1, "Hamster Wheel", 25.0, stock=3)
    voucher = voucher_store.add(code="SPIN5", discount_type="fixed", discount_amount=5, usage_limit=10)
    order_store.fail_order_insert = True

    with pytest.raises(RuntimeError):
        await checkout_service.place_order(USER_ID, EMAIL, _request([(1, 1)], voucher_code="SPIN5"))

    assert voucher_store.vouchers[voucher["id"]]["times_used"] == 0
    assert voucher_store.usage == []
    assert order_store.products[1]["stock"] == 3


@pytest.mark.asyncio
async def test_user_can_only_see_own_orders(order_store, voucher_store) -> None:
    order_store.add_order(id=1, user_id=USER_ID, total_amount=84, delivery_fee=8, payment_method="tng")
    order_store.add_order(id=2, user_id="someone-else", total_amount=20, delivery_fee=8)
    order_store.items.append(
        {"order_id": 1, "product_id": 9, "product_name": "Catnip", "product_price": 42.0, "quantity": 2}
    )

    orders = await checkout_service.list_user_orders(USER_ID)
    assert [order.id for order in orders] == [1]
    assert orders[0].items[0].product_name == "Catnip"
    assert orders[0].financials.netEarnings == pytest.approx(90.62)

    mine = await checkout_service.get_user_order(USER_ID, 1)
    assert mine.id == 1
    with pytest.raises(OrderNotFoundError):
        await checkout_service.get_user_order(USER_ID, 2)


@pytest.mark.asyncio
async def test_stock_decrement_retries_after_concurrent_sale(order_store, voucher_store, monkeypatch) -> None:
    order_store.add_product(1, "Chew Toy", 8.0, stock=10)
    original = order_store.compare_and_set_stock
    calls = {"count": 0}

    def racing(product_id, expected, new_value):
        calls["count"] += 1
        if calls["count"] == 1:
            # another checkout sells one unit between our read and write
            order_store.products[product_id]["stock"] -= 1
        return original(product_id, expected, new_value)

    monkeypatch.setattr(checkout_service, "compare_and_set_stock", racing)
    await checkout_service.place_order(USER_ID, EMAIL, _request([(1, 3)]))

    assert order_store.products[1]["stock"] == 6
    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_stock_sold_out_meanwhile_rolls_back(order_store, voucher_store, monkeypatch) -> None:
    order_store.add_product(1, "Collar", 20.0, stock=5)
    order_store.add_product(2, "Leash", 30.0, stock=2)
    voucher = voucher_store.add(code="WALK5", discount_type="fixed", discount_amount=5, usage_limit=1)
    original = order_store.fetch_stock

    def sold_out_leash(product_id):
        if product_id == 2:
            order_store.products[2]["stock"] = 0
        return original(product_id)

    monkeypatch.setattr(checkout_service, "fetch_stock", sold_out_leash)
    with pytest.raises(CheckoutError, match="Not enough stock for Leash. Available: 0"):
        await checkout_service.place_order(USER_ID, EMAIL, _request([(1, 2), (2, 1)], voucher_code="WALK5"))

    assert order_store.products[1]["stock"] == 5
    assert order_store.orders == {}
    assert voucher_store.vouchers[voucher["id"]]["times_used"] == 0
    assert voucher_store.usage == []


@pytest.mark.asyncio
async def test_failed_items_insert_rolls_back_order(order_store, voucher_store) -> None:
    order_store.add_product(1, "Fish Flakes", 15.0, stock=4)
    voucher = voucher_store.add(code="ONLY1", discount_type="fixed", discount_amount=3, usage_limit=1)
    order_store.fail_items_insert = True

    with pytest.raises(RuntimeError):
        await checkout_service.place_order(USER_ID, EMAIL, _request([(1, 2)], voucher_code="ONLY1"))

    assert order_store.orders == {}
    assert order_store.items == []
    assert order_store.products[1]["stock"] == 4
    assert voucher_store.vouchers[voucher["id"]]["times_used"] == 0
    assert voucher_store.usage == []


@pytest.mark.asyncio
async def test_same_customer_racing_checkouts_get_one_discount(order_store, voucher_store, monkeypatch) -> None:
    order_store.add_product(1, "Cat Tree", 90.0)
    voucher = voucher_store.add(code="FIRSTBUY", discount_type="fixed", discount_amount=20)

    # both checkouts passed the eligibility check before either claimed the voucher
    monkeypatch.setattr(voucher_service, "repo_has_usage", lambda voucher_id, email: False)
    assert await voucher_service.claim_voucher_for_user(voucher["id"], EMAIL)

    order = await checkout_service.place_order(USER_ID, EMAIL, _request([(1, 1)], voucher_code="FIRSTBUY"))

    assert order.discount_amount == 0
    assert order.voucher_code is None
    assert voucher_store.vouchers[voucher["id"]]["times_used"] == 0
    assert len(voucher_store.usage) == 1
