from fastapi import APIRouter, Depends, HTTPException, status

from auth import CurrentUser, get_current_user
from schemas import CreateOrderRequest, Order, OrderListResponse
from services.checkout_service import (
    CheckoutError,
    OrderNotFoundError,
    get_user_order,
    list_user_orders,
    place_order,
)

router = APIRouter(prefix="/api/orders", tags=["orders"])


@router.get("", response_model=OrderListResponse)
async def read_orders(user: CurrentUser = Depends(get_current_user)) -> OrderListResponse:
    orders = await list_user_orders(user.id)
    return OrderListResponse(orders=orders)


@router.post("", response_model=Order, status_code=status.HTTP_201_CREATED)
async def create_order(
    payload: CreateOrderRequest,
    user: CurrentUser = Depends(get_current_user),
) -> Order:
    try:
        return await place_order(user.id, user.email, payload)
    except CheckoutError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.get("/{order_id}", response_model=Order)
async def read_order(
    order_id: str,
    user: CurrentUser = Depends(get_current_user),
) -> Order:
    try:
        return await get_user_order(user.id, order_id)
    except OrderNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
