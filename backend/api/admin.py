from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from auth import require_admin
from schemas import (
    DashboardResponse,
    DeliveryFeeUpdate,
    DrilldownResponse,
    FeeConfigResponse,
    Order,
    OrderListResponse,
    OrderStatusUpdate,
    PeriodStatsResponse,
)
from services import admin_service
from services.checkout_service import OrderNotFoundError

router = APIRouter(
    prefix="/api/admin",
    tags=["admin"],
    dependencies=[Depends(require_admin)],
)

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@router.get("/dashboard", response_model=DashboardResponse)
async def read_dashboard() -> DashboardResponse:
    return await admin_service.get_dashboard_summary()


@router.get("/dashboard/drilldown", response_model=DrilldownResponse)
async def read_drilldown(
    metric: str = "total_orders",
    payment_status: Optional[str] = None,
    sort_by: str = "date",
    sort_order: str = "desc",
) -> DrilldownResponse:
    try:
        return await admin_service.get_drilldown(metric, payment_status, sort_by, sort_order)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.get("/stats/{granularity}", response_model=PeriodStatsResponse)
async def read_stats(
    granularity: str,
    count: int = Query(default=7, ge=1, le=366),
) -> PeriodStatsResponse:
    try:
        return await admin_service.get_period_stats(granularity, count)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.get("/orders", response_model=OrderListResponse)
async def read_orders(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    payment_status: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> OrderListResponse:
    return await admin_service.list_orders(status_filter, payment_status, limit, offset)


@router.get("/orders/export")
async def export_orders(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    payment_status: Optional[str] = None,
) -> Response:
    content = await admin_service.export_orders_csv(status_filter, payment_status)
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="orders.csv"'},
    )


@router.get("/orders/export.xlsx")
async def export_orders_xlsx(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    payment_status: Optional[str] = None,
) -> Response:
    content = await admin_service.export_orders_xlsx(status_filter, payment_status)
    return Response(
        content=content,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": 'attachment; filename="orders.xlsx"'},
    )


@router.get("/orders/{order_id}", response_model=Order)
async def read_order(order_id: str) -> Order:
    try:
        return await admin_service.get_order(order_id)
    except OrderNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.patch("/orders/{order_id}/status", response_model=Order)
async def patch_order_status(order_id: str, payload: OrderStatusUpdate) -> Order:
    try:
        return await admin_service.update_order_status(order_id, payload.status)
    except OrderNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.patch("/orders/{order_id}/delivery-fee", response_model=Order)
async def patch_delivery_fee(order_id: str, payload: DeliveryFeeUpdate) -> Order:
    try:
        return await admin_service.update_order_delivery_fee(order_id, payload.delivery_fee)
    except OrderNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.get("/config/fees", response_model=FeeConfigResponse)
async def read_fee_config() -> FeeConfigResponse:
    return admin_service.get_fee_config()
