from fastapi import APIRouter, HTTPException, status

from schemas import VoucherValidateRequest, VoucherValidateResponse
from services.voucher_service import INVALID_CODE, summarize_voucher, validate_voucher

router = APIRouter(prefix="/api/vouchers", tags=["vouchers"])


@router.post("/validate", response_model=VoucherValidateResponse)
async def validate(payload: VoucherValidateRequest) -> VoucherValidateResponse:
    if not payload.code.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Voucher code is required.",
        )
    resolution = await validate_voucher(payload.code, payload.subtotal, payload.email)
    if not resolution.eligible:
        code = (
            status.HTTP_404_NOT_FOUND
            if resolution.reason == INVALID_CODE
            else status.HTTP_400_BAD_REQUEST
        )
        raise HTTPException(status_code=code, detail=resolution.reason)
    return VoucherValidateResponse(
        valid=True,
        voucher=summarize_voucher(resolution.voucher),
        calculated_discount=resolution.discount,
    )
