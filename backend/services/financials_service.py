"""Per-order financial breakdown.

Every view that shows money for an order (dashboard, drill-down, exports,
order list and detail) must go through ``calculate_order_financials`` so a
given order reports the same net earnings everywhere.
"""
import math
from typing import Any, Dict, Iterable, Mapping, Optional

from fees import FeeCalculator, default_calculator, map_payment_method_to_fee_type, round2
from schemas import FinancialsSummary, OrderFinancials

OTHER_FEES = 0.0


def _field(order: Any, name: str) -> Any:
    if isinstance(order, Mapping):
        return order.get(name)
    return getattr(order, name, None)


def _parse_amount(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(amount) or amount < 0:
        return None
    return amount


def calculate_order_financials(
    order: Any,
    calculator: Optional[FeeCalculator] = None,
) -> OrderFinancials:
    calculator = calculator or default_calculator

    product_total = _parse_amount(_field(order, "total_amount"))
    if product_total is None:
        product_total = 0.0
    delivery_fee = _parse_amount(_field(order, "delivery_fee"))
    if delivery_fee is None:
        delivery_fee = calculator.default_delivery_fee
    order_total = product_total + delivery_fee

    # gateway charges on the full paid amount, delivery included
    fee_type = map_payment_method_to_fee_type(_field(order, "payment_method"))
    fee_info = calculator.calculate_fee(order_total, fee_type)

    total_fees = fee_info.fee + OTHER_FEES
    net_earnings = order_total - total_fees

    return OrderFinancials(
        productTotal=round2(product_total),
        deliveryFee=round2(delivery_fee),
        orderTotal=round2(order_total),
        senangPayFee=fee_info.fee,
        senangPayFeeType=fee_info.fee_type,
        senangPayFeePercentage=fee_info.percentage,
        senangPayFeeMinimum=fee_info.minimum,
        senangPayFeeCalculatedFrom=fee_info.calculated_from,
        otherFees=OTHER_FEES,
        totalFees=round2(total_fees),
        netEarnings=round2(net_earnings),
    )


def attach_financials(
    order: Mapping[str, Any],
    calculator: Optional[FeeCalculator] = None,
) -> Dict[str, Any]:
    decorated = dict(order)
    decorated["financials"] = calculate_order_financials(order, calculator).model_dump()
    return decorated


def summarize_financials(breakdowns: Iterable[OrderFinancials]) -> FinancialsSummary:
    """Sum already-rounded per-order figures; each total is rounded once more."""
    count = 0
    product_total = delivery = revenue = fees = net = 0.0
    for item in breakdowns:
        count += 1
        product_total += item.productTotal
        delivery += item.deliveryFee
        revenue += item.orderTotal
        fees += item.totalFees
        net += item.netEarnings

    return FinancialsSummary(
        orderCount=count,
        productTotal=round2(product_total),
        totalDeliveryFees=round2(delivery),
        totalRevenue=round2(revenue),
        totalFees=round2(fees),
        totalNetEarnings=round2(net),
        averageOrderValue=round2(revenue / count) if count else 0.0,
        feePercentage=round2(fees / revenue * 100) if revenue else 0.0,
    )
