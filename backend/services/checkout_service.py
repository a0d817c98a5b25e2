import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional, Tuple

from fees import default_calculator, round2
from repositories.order_repository import (
    delete_order,
    fetch_items,
    fetch_order,
    fetch_user_orders,
    insert_items,
    insert_order,
)
from repositories.product_repository import (
    compare_and_set_stock,
    fetch_active_products,
    fetch_stock,
)
from schemas import CreateOrderRequest, Order, Voucher
from services.financials_service import attach_financials
from services.voucher_service import (
    apply_voucher_for_checkout,
    claim_voucher_for_user,
    record_voucher_usage,
    release_voucher_claim,
    release_voucher_use,
    reserve_voucher_use,
)

logger = logging.getLogger("petshop-api")

MAX_STOCK_ATTEMPTS = 5


class CheckoutError(ValueError):
    pass


class OrderNotFoundError(LookupError):
    pass


def _merge_quantities(payload: CreateOrderRequest) -> Dict[Any, int]:
    quantities: Dict[Any, int] = defaultdict(int)
    for item in payload.items:
        quantities[item.product_id] += item.quantity
    return dict(quantities)


def _build_lines(
    quantities: Dict[Any, int],
    products: List[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    by_id = {str(product["id"]): product for product in products}
    lines = []
    for product_id, quantity in quantities.items():
        product = by_id.get(str(product_id))
        if product is None:
            raise CheckoutError(f"Product {product_id} is not available.")
        stock = int(product.get("stock") or 0)
        if quantity > stock:
            raise CheckoutError(f"Not enough stock for {product['name']}. Available: {stock}")
        lines.append(
            {
                "product": product,
                "quantity": quantity,
                "price": float(product.get("price") or 0),
                "weight": float(product.get("weight_kg") or 0),
            }
        )
    return lines


def _take_stock(product_id: Any, quantity: int) -> Tuple[bool, int]:
    """Compare-and-swap decrement; re-reads and re-checks after a lost race."""
    stock = 0
    for _ in range(MAX_STOCK_ATTEMPTS):
        current = fetch_stock(product_id)
        stock = current or 0
        if current is None or quantity > stock:
            return False, stock
        if compare_and_set_stock(product_id, stock, stock - quantity):
            return True, stock - quantity
    logger.warning("Stock update for product=%s gave up after %s attempts", product_id, MAX_STOCK_ATTEMPTS)
    return False, stock


def _restore_stock(product_id: Any, quantity: int) -> None:
    for _ in range(MAX_STOCK_ATTEMPTS):
        current = fetch_stock(product_id)
        if current is None:
            return
        if compare_and_set_stock(product_id, current, current + quantity):
            return
    logger.error("Could not restore %s units of product=%s", quantity, product_id)


async def _reserve_voucher(
    code: str,
    subtotal: float,
    user_email: str,
) -> Tuple[Optional[Voucher], float]:
    resolution = await apply_voucher_for_checkout(code, subtotal, user_email)
    if not resolution.eligible or resolution.voucher is None:
        return None, 0.0
    voucher = resolution.voucher
    if not await reserve_voucher_use(voucher.id):
        logger.info("Voucher %s exhausted during checkout", voucher.code)
        return None, 0.0
    if voucher.once_per_user and not await claim_voucher_for_user(voucher.id, user_email):
        logger.info("Voucher %s already redeemed by %s in another checkout", voucher.code, user_email)
        await release_voucher_use(voucher.id)
        return None, 0.0
    return voucher, resolution.discount


async def _release_voucher(voucher: Optional[Voucher], user_email: str) -> None:
    if voucher is None:
        return
    await release_voucher_use(voucher.id)
    if voucher.once_per_user:
        await release_voucher_claim(voucher.id, user_email)


async def _restore_lines(taken: List[Dict[str, Any]]) -> None:
    for line in taken:
        await asyncio.to_thread(_restore_stock, line["product"]["id"], line["quantity"])


def _decorate(order: Dict[str, Any], items: List[Dict[str, Any]]) -> Order:
    row = attach_financials(order)
    row["items"] = items
    return Order.model_validate(row)


async def place_order(user_id: str, user_email: str, payload: CreateOrderRequest) -> Order:
    quantities = _merge_quantities(payload)
    products = await asyncio.to_thread(fetch_active_products, quantities.keys())
    lines = _build_lines(quantities, products)

    subtotal = round2(sum(line["price"] * line["quantity"] for line in lines))
    total_weight = sum(line["weight"] * line["quantity"] for line in lines)

    voucher, discount = None, 0.0
    if payload.voucher_code:
        voucher, discount = await _reserve_voucher(payload.voucher_code, subtotal, user_email)

    taken: List[Dict[str, Any]] = []
    for line in lines:
        product = line["product"]
        ok, available = await asyncio.to_thread(_take_stock, product["id"], line["quantity"])
        if not ok:
            await _restore_lines(taken)
            await _release_voucher(voucher, user_email)
            raise CheckoutError(f"Not enough stock for {product['name']}. Available: {available}")
        taken.append(line)

    product_total = round2(subtotal - discount)
    record = {
        "user_id": user_id,
        "total_amount": product_total,
        "delivery_fee": default_calculator.calculate_delivery_fee(total_weight, product_total),
        "discount_amount": discount,
        "voucher_code": voucher.code if voucher else None,
        "payment_method": payload.payment_method,
        "shipping_name": payload.shipping_name,
        "shipping_address": payload.shipping_address,
        "shipping_phone": payload.shipping_phone,
        "shipping_state": payload.shipping_state,
        "status": "pending",
        "payment_status": "pending",
    }

    order = None
    try:
        order = await asyncio.to_thread(insert_order, record)
        items = [
            {
                "order_id": order["id"],
                "product_id": line["product"]["id"],
                "product_name": line["product"]["name"],
                "product_price": line["price"],
                "quantity": line["quantity"],
            }
            for line in lines
        ]
        items = await asyncio.to_thread(insert_items, items)
    except Exception:
        logger.exception("Storing order failed; rolling back checkout for user=%s", user_id)
        if order is not None:
            await asyncio.to_thread(delete_order, order["id"])
        await _restore_lines(taken)
        await _release_voucher(voucher, user_email)
        raise

    if voucher is not None:
        try:
            await record_voucher_usage(voucher.id, user_email, order["id"])
        except Exception as exc:
            logger.exception("Recording voucher usage failed order=%s: %s", order["id"], exc)

    logger.info(
        "Order created id=%s subtotal=%.2f discount=%.2f voucher=%s",
        order["id"],
        subtotal,
        discount,
        voucher.code if voucher else None,
    )
    return _decorate(order, items)


async def list_user_orders(user_id: str) -> List[Order]:
    orders = await asyncio.to_thread(fetch_user_orders, user_id)
    items = await asyncio.to_thread(fetch_items, [order["id"] for order in orders])
    grouped: Dict[Any, List[Dict[str, Any]]] = defaultdict(list)
    for item in items:
        grouped[item["order_id"]].append(item)
    return [_decorate(order, grouped.get(order["id"], [])) for order in orders]


async def get_user_order(user_id: str, order_id: Any) -> Order:
    order = await asyncio.to_thread(fetch_order, order_id, user_id)
    if not order:
        raise OrderNotFoundError("Order not found.")
    items = await asyncio.to_thread(fetch_items, [order["id"]])
    return _decorate(order, items)
