from fastapi import APIRouter, Depends, HTTPException, status

from auth import require_admin
from schemas import (
    VoucherCreate,
    VoucherListResponse,
    VoucherMessageResponse,
    VoucherUpdate,
)
from services import voucher_service
from services.voucher_service import VoucherConflictError, VoucherError, VoucherNotFoundError

router = APIRouter(
    prefix="/api/admin/vouchers",
    tags=["admin-vouchers"],
    dependencies=[Depends(require_admin)],
)


def _to_http(exc: Exception) -> HTTPException:
    if isinstance(exc, VoucherNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, VoucherConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


@router.get("", response_model=VoucherListResponse)
async def list_vouchers() -> VoucherListResponse:
    return VoucherListResponse(vouchers=await voucher_service.list_vouchers())


@router.get("/{voucher_id}", response_model=VoucherMessageResponse)
async def read_voucher(voucher_id: str) -> VoucherMessageResponse:
    try:
        voucher = await voucher_service.get_voucher(voucher_id)
    except VoucherNotFoundError as exc:
        raise _to_http(exc) from exc
    return VoucherMessageResponse(message="ok", voucher=voucher)


@router.post("", response_model=VoucherMessageResponse, status_code=status.HTTP_201_CREATED)
async def create_voucher(payload: VoucherCreate) -> VoucherMessageResponse:
    try:
        voucher = await voucher_service.create_voucher(payload)
    except VoucherError as exc:
        raise _to_http(exc) from exc
    return VoucherMessageResponse(message="Voucher created successfully.", voucher=voucher)


@router.put("/{voucher_id}", response_model=VoucherMessageResponse)
async def update_voucher(voucher_id: str, payload: VoucherUpdate) -> VoucherMessageResponse:
    try:
        voucher = await voucher_service.update_voucher(voucher_id, payload)
    except (VoucherError, VoucherNotFoundError) as exc:
        raise _to_http(exc) from exc
    return VoucherMessageResponse(message="Voucher updated successfully.", voucher=voucher)


@router.patch("/{voucher_id}/toggle", response_model=VoucherMessageResponse)
async def toggle_voucher(voucher_id: str) -> VoucherMessageResponse:
    try:
        voucher = await voucher_service.toggle_voucher(voucher_id)
    except VoucherNotFoundError as exc:
        raise _to_http(exc) from exc
    state = "activated" if voucher.is_active else "deactivated"
    return VoucherMessageResponse(message=f"Voucher {state} successfully.", voucher=voucher)


@router.delete("/{voucher_id}", response_model=VoucherMessageResponse)
async def delete_voucher(voucher_id: str) -> VoucherMessageResponse:
    try:
        await voucher_service.delete_voucher(voucher_id)
    except (VoucherError, VoucherNotFoundError) as exc:
        raise _to_http(exc) from exc
    return VoucherMessageResponse(message="Voucher deleted successfully.")
