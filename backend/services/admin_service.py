import asyncio
import csv
import io
import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo

from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill
from pydantic import TypeAdapter, ValidationError

from config import settings
from fees import default_calculator
from repositories.order_repository import fetch_items, fetch_order, fetch_orders, update_order
from schemas import (
    DashboardResponse,
    DashboardTotals,
    DrilldownResponse,
    FeeConfigResponse,
    Order,
    OrderListResponse,
    PeriodStats,
    PeriodStatsResponse,
)
from services.financials_service import (
    attach_financials,
    calculate_order_financials,
    summarize_financials,
)
from services.checkout_service import OrderNotFoundError

logger = logging.getLogger("petshop-api")

ORDER_PAGE_SIZE = 1000
GRANULARITIES = ("daily", "weekly", "monthly", "yearly")
DRILLDOWN_METRICS = ("total_orders", "total_revenue", "net_earnings", "total_fees")
SORT_KEYS = {
    "date": lambda order: _parse_datetime(order.get("created_at")) or datetime.min.replace(tzinfo=timezone.utc),
    "amount": lambda order: order["financials"]["orderTotal"],
    "net": lambda order: order["financials"]["netEarnings"],
    "fee": lambda order: order["financials"]["totalFees"],
}
EXPORT_COLUMNS = [
    ("Order ID", lambda o: o.get("id")),
    ("Date", lambda o: o.get("created_at") or ""),
    ("Customer", lambda o: o.get("shipping_name") or ""),
    ("Phone", lambda o: o.get("shipping_phone") or ""),
    ("State", lambda o: o.get("shipping_state") or ""),
    ("Status", lambda o: o.get("status") or ""),
    ("Payment Status", lambda o: o.get("payment_status") or ""),
    ("Payment Method", lambda o: o.get("payment_method") or ""),
    ("Voucher", lambda o: o.get("voucher_code") or ""),
    ("Discount (RM)", lambda o: float(o.get("discount_amount") or 0)),
    ("Product Total (RM)", lambda o: o["financials"]["productTotal"]),
    ("Delivery Fee (RM)", lambda o: o["financials"]["deliveryFee"]),
    ("Order Total (RM)", lambda o: o["financials"]["orderTotal"]),
    ("SenangPay Fee (RM)", lambda o: o["financials"]["senangPayFee"]),
    ("Fee Type", lambda o: o["financials"]["senangPayFeeType"]),
    ("Total Fees (RM)", lambda o: o["financials"]["totalFees"]),
    ("Net Earnings (RM)", lambda o: o["financials"]["netEarnings"]),
]
HEADER_FILL = PatternFill(start_color="FFE699", end_color="FFE699", fill_type="solid")
_DATETIME = TypeAdapter(datetime)


def _tz() -> ZoneInfo:
    return ZoneInfo(settings.timezone)


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or not isinstance(value, (datetime, str)):
        return None
    # Postgres trims trailing zeros from fractional seconds
    try:
        parsed = _DATETIME.validate_python(value)
    except ValidationError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _local_now(now: Optional[datetime]) -> datetime:
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(_tz())


def _start_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def _shift_months(moment: datetime, months: int) -> datetime:
    index = moment.year * 12 + (moment.month - 1) + months
    return moment.replace(year=index // 12, month=index % 12 + 1, day=1)


def _bucket_bounds(granularity: str, now: datetime, count: int) -> List[Tuple[str, datetime, datetime]]:
    today = _start_of_day(now)
    bounds = []
    for offset in range(count):
        if granularity == "daily":
            start = today - timedelta(days=offset)
            end = start + timedelta(days=1)
            label = start.strftime("%Y-%m-%d")
        elif granularity == "weekly":
            monday = today - timedelta(days=today.weekday())
            start = monday - timedelta(weeks=offset)
            end = start + timedelta(weeks=1)
            label = f"Week of {start.strftime('%Y-%m-%d')}"
        elif granularity == "monthly":
            start = _shift_months(today, -offset)
            end = _shift_months(start, 1)
            label = start.strftime("%Y-%m")
        else:
            start = today.replace(year=today.year - offset, month=1, day=1)
            end = start.replace(year=start.year + 1)
            label = str(start.year)
        bounds.append((label, start, end))
    return bounds


def _is_paid(order: Dict[str, Any]) -> bool:
    return order.get("payment_status") == "paid"


def _period_stats(
    label: str,
    start: datetime,
    end: datetime,
    orders: Iterable[Dict[str, Any]],
) -> PeriodStats:
    in_window = []
    for order in orders:
        created = _parse_datetime(order.get("created_at"))
        if created is not None and start <= created < end:
            in_window.append(calculate_order_financials(order))
    totals = summarize_financials(in_window)
    return PeriodStats(
        label=label,
        start=start,
        end=end,
        orderCount=totals.orderCount,
        revenue=totals.totalRevenue,
        netEarnings=totals.totalNetEarnings,
        fees=totals.totalFees,
    )


def _fetch_pages(**filters: Any) -> List[Dict[str, Any]]:
    # PostgREST caps every select at max-rows, which may be below the page size
    rows: List[Dict[str, Any]] = []
    while True:
        page, _ = fetch_orders(limit=ORDER_PAGE_SIZE, offset=len(rows), **filters)
        if not page:
            return rows
        rows.extend(page)


async def _fetch_all(**filters: Any) -> List[Dict[str, Any]]:
    return await asyncio.to_thread(_fetch_pages, **filters)


async def get_dashboard_summary(now: Optional[datetime] = None) -> DashboardResponse:
    local_now = _local_now(now)
    orders = await _fetch_all()
    paid = [order for order in orders if _is_paid(order)]
    totals = summarize_financials(calculate_order_financials(order) for order in paid)

    today = _start_of_day(local_now)
    windows = [
        ("Today", today, today + timedelta(days=1)),
        ("Last 7 days", today - timedelta(days=6), today + timedelta(days=1)),
        ("This month", today.replace(day=1), _shift_months(today, 1)),
    ]
    return DashboardResponse(
        summary=DashboardTotals(
            totalOrders=len(orders),
            paidOrders=len(paid),
            unpaidOrders=len(orders) - len(paid),
            totalRevenue=totals.totalRevenue,
            totalNetEarnings=totals.totalNetEarnings,
            totalSenangPayFees=totals.totalFees,
            totalDeliveryFees=totals.totalDeliveryFees,
        ),
        periods=[_period_stats(label, start, end, paid) for label, start, end in windows],
    )


async def get_period_stats(
    granularity: str,
    count: int = 7,
    now: Optional[datetime] = None,
) -> PeriodStatsResponse:
    if granularity not in GRANULARITIES:
        raise ValueError(f"Unknown granularity: {granularity}")
    if count < 1:
        raise ValueError("count must be at least 1")
    bounds = _bucket_bounds(granularity, _local_now(now), count)
    earliest = min(start for _, start, _ in bounds)
    orders = await _fetch_all(payment_status="paid", since=earliest)
    return PeriodStatsResponse(
        granularity=granularity,
        stats=[_period_stats(label, start, end, orders) for label, start, end in bounds],
    )


async def _with_items(orders: List[Dict[str, Any]]) -> List[Order]:
    items = await asyncio.to_thread(fetch_items, [order["id"] for order in orders])
    grouped: Dict[Any, List[Dict[str, Any]]] = defaultdict(list)
    for item in items:
        grouped[item["order_id"]].append(item)
    result = []
    for order in orders:
        row = dict(order)
        row["items"] = grouped.get(order["id"], [])
        result.append(Order.model_validate(row))
    return result


async def get_drilldown(
    metric: str = "total_orders",
    payment_status: Optional[str] = None,
    sort_by: str = "date",
    sort_order: str = "desc",
) -> DrilldownResponse:
    if metric not in DRILLDOWN_METRICS:
        raise ValueError(f"Unknown metric: {metric}")
    if sort_by not in SORT_KEYS:
        raise ValueError(f"Unknown sort field: {sort_by}")

    if metric == "total_orders":
        orders = await _fetch_all(payment_status=payment_status or None)
    else:
        orders = await _fetch_all(payment_status="paid")
    decorated = [attach_financials(order) for order in orders]
    decorated.sort(key=SORT_KEYS[sort_by], reverse=sort_order != "asc")

    if metric == "total_orders":
        paid_count = sum(1 for order in decorated if _is_paid(order))
        summary: Dict[str, Any] = {
            "totalCount": len(decorated),
            "paidCount": paid_count,
            "unpaidCount": len(decorated) - paid_count,
        }
    else:
        breakdowns = [calculate_order_financials(order) for order in orders]
        summary = summarize_financials(breakdowns).model_dump()

    return DrilldownResponse(
        metric=metric,
        summary=summary,
        orders=await _with_items(decorated),
    )


async def list_orders(
    status: Optional[str] = None,
    payment_status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> OrderListResponse:
    rows, total = await asyncio.to_thread(
        lambda: fetch_orders(
            status=status,
            payment_status=payment_status,
            limit=limit,
            offset=offset,
        )
    )
    orders = await _with_items([attach_financials(row) for row in rows])
    return OrderListResponse(orders=orders, total=total)


async def get_order(order_id: Any) -> Order:
    row = await asyncio.to_thread(fetch_order, order_id)
    if not row:
        raise OrderNotFoundError("Order not found.")
    orders = await _with_items([attach_financials(row)])
    return orders[0]


async def update_order_status(order_id: Any, status: str) -> Order:
    row = await asyncio.to_thread(update_order, order_id, {"status": status})
    if not row:
        raise OrderNotFoundError("Order not found.")
    logger.info("Order %s status -> %s", order_id, status)
    return (await _with_items([attach_financials(row)]))[0]


async def update_order_delivery_fee(order_id: Any, delivery_fee: float) -> Order:
    if delivery_fee < 0:
        raise ValueError("Delivery fee cannot be negative.")
    row = await asyncio.to_thread(update_order, order_id, {"delivery_fee": delivery_fee})
    if not row:
        raise OrderNotFoundError("Order not found.")
    logger.info("Order %s delivery fee -> %.2f", order_id, delivery_fee)
    return (await _with_items([attach_financials(row)]))[0]


async def _export_rows(
    status: Optional[str],
    payment_status: Optional[str],
) -> List[List[Any]]:
    orders = await _fetch_all(status=status, payment_status=payment_status)
    return [
        [getter(order) for _, getter in EXPORT_COLUMNS]
        for order in (attach_financials(row) for row in orders)
    ]


async def export_orders_csv(
    status: Optional[str] = None,
    payment_status: Optional[str] = None,
) -> str:
    rows = await _export_rows(status, payment_status)
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow([title for title, _ in EXPORT_COLUMNS])
    writer.writerows(rows)
    return buffer.getvalue()


async def export_orders_xlsx(
    status: Optional[str] = None,
    payment_status: Optional[str] = None,
) -> bytes:
    rows = await _export_rows(status, payment_status)
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = "Orders"
    sheet.append([title for title, _ in EXPORT_COLUMNS])
    for cell in sheet[1]:
        cell.font = Font(bold=True)
        cell.fill = HEADER_FILL
    for row in rows:
        sheet.append(row)
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def get_fee_config() -> FeeConfigResponse:
    return FeeConfigResponse(**default_calculator.describe())
