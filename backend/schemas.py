from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

DiscountType = Literal["fixed", "percentage"]
OrderStatus = Literal["pending", "confirmed", "processing", "shipped", "delivered", "cancelled"]


class OrderFinancials(BaseModel):
    productTotal: float
    deliveryFee: float
    orderTotal: float
    senangPayFee: float
    senangPayFeeType: str
    senangPayFeePercentage: float
    senangPayFeeMinimum: float
    senangPayFeeCalculatedFrom: str
    otherFees: float
    totalFees: float
    netEarnings: float


class FinancialsSummary(BaseModel):
    orderCount: int
    productTotal: float
    totalDeliveryFees: float
    totalRevenue: float
    totalFees: float
    totalNetEarnings: float
    averageOrderValue: float
    feePercentage: float


class Voucher(BaseModel):
    id: Any
    code: str
    discount_type: DiscountType
    discount_amount: float
    max_discount: Optional[float] = None
    min_order_amount: Optional[float] = None
    start_date: Optional[datetime] = None
    expiry_date: Optional[datetime] = None
    usage_limit: Optional[int] = None
    times_used: int = 0
    once_per_user: bool = True
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class VoucherListResponse(BaseModel):
    vouchers: List[Voucher]


class VoucherMessageResponse(BaseModel):
    message: str
    voucher: Optional[Voucher] = None


class VoucherCreate(BaseModel):
    code: str = Field(..., description="Voucher code, stored upper-cased")
    discount_type: DiscountType
    discount_amount: float
    max_discount: Optional[float] = None
    min_order_amount: Optional[float] = None
    start_date: Optional[datetime] = None
    expiry_date: Optional[datetime] = None
    usage_limit: Optional[int] = None
    once_per_user: bool = True
    is_active: bool = True


class VoucherUpdate(BaseModel):
    code: Optional[str] = None
    discount_type: Optional[DiscountType] = None
    discount_amount: Optional[float] = None
    max_discount: Optional[float] = None
    min_order_amount: Optional[float] = None
    start_date: Optional[datetime] = None
    expiry_date: Optional[datetime] = None
    usage_limit: Optional[int] = None
    once_per_user: Optional[bool] = None
    is_active: Optional[bool] = None


class VoucherValidateRequest(BaseModel):
    code: str
    subtotal: Optional[float] = None
    email: Optional[str] = None


class VoucherSummary(BaseModel):
    id: Any
    code: str
    discount_type: DiscountType
    discount_amount: float
    max_discount: Optional[float] = None
    min_order_amount: Optional[float] = None


class VoucherValidateResponse(BaseModel):
    valid: bool
    voucher: VoucherSummary
    calculated_discount: float


class OrderItemRequest(BaseModel):
    product_id: Any
    quantity: int = Field(..., gt=0)


class CreateOrderRequest(BaseModel):
    items: List[OrderItemRequest] = Field(..., min_length=1)
    shipping_name: str
    shipping_address: str
    shipping_phone: str
    shipping_state: Optional[str] = None
    payment_method: Optional[str] = None
    voucher_code: Optional[str] = None


class OrderItem(BaseModel):
    product_id: Any
    product_name: str
    product_price: float
    quantity: int


class Order(BaseModel):
    id: Any
    user_id: Optional[str] = None
    status: Optional[str] = None
    payment_status: Optional[str] = None
    total_amount: Optional[float] = None
    delivery_fee: Optional[float] = None
    discount_amount: Optional[float] = None
    voucher_code: Optional[str] = None
    payment_method: Optional[str] = None
    shipping_name: Optional[str] = None
    shipping_address: Optional[str] = None
    shipping_phone: Optional[str] = None
    shipping_state: Optional[str] = None
    created_at: Optional[datetime] = None
    items: List[OrderItem] = []
    financials: OrderFinancials


class OrderListResponse(BaseModel):
    orders: List[Order]
    total: Optional[int] = None


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class DeliveryFeeUpdate(BaseModel):
    delivery_fee: float = Field(..., ge=0)


class DashboardTotals(BaseModel):
    totalOrders: int
    paidOrders: int
    unpaidOrders: int
    totalRevenue: float
    totalNetEarnings: float
    totalSenangPayFees: float
    totalDeliveryFees: float


class PeriodStats(BaseModel):
    label: str
    start: datetime
    end: datetime
    orderCount: int
    revenue: float
    netEarnings: float
    fees: float


class DashboardResponse(BaseModel):
    summary: DashboardTotals
    periods: List[PeriodStats]


class PeriodStatsResponse(BaseModel):
    granularity: str
    stats: List[PeriodStats]


class DrilldownResponse(BaseModel):
    metric: str
    summary: Dict[str, Any]
    orders: List[Order]


class FeeScheduleItem(BaseModel):
    name: str
    percentage: float
    minimum: float


class FeeConfigResponse(BaseModel):
    senangPayFees: Dict[str, FeeScheduleItem]
    defaultDeliveryFee: float
    freeShippingThreshold: float
    stateDeliveryFees: Dict[str, float]
