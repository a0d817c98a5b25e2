import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from postgrest.exceptions import APIError

from fees import round2
from repositories.voucher_repository import (
    attach_usage_order,
    compare_and_set_times_used,
    delete_usage,
    delete_voucher as repo_delete_voucher,
    fetch_all as repo_fetch_all,
    fetch_by_code as repo_fetch_by_code,
    fetch_by_id as repo_fetch_by_id,
    has_usage as repo_has_usage,
    insert_usage,
    insert_voucher,
    update_voucher as repo_update_voucher,
)
from schemas import Voucher, VoucherCreate, VoucherSummary, VoucherUpdate

logger = logging.getLogger("petshop-api")

UNIQUE_VIOLATION = "23505"
MAX_RESERVE_ATTEMPTS = 5

INVALID_CODE = "Invalid voucher code."
NOT_ACTIVE = "This voucher is no longer active."
NOT_YET_VALID = "This voucher is not yet valid."
EXPIRED = "This voucher has expired."
LIMIT_REACHED = "This voucher has reached its usage limit."
ALREADY_USED = "You have already used this voucher."
MIN_ORDER_NOT_MET = "Minimum order amount of RM{amount:.2f} required for this voucher."


class VoucherError(ValueError):
    """Invalid voucher definition submitted by an admin."""


class VoucherConflictError(VoucherError):
    pass


class VoucherNotFoundError(LookupError):
    pass


@dataclass(frozen=True)
class VoucherResolution:
    eligible: bool
    discount: float
    reason: Optional[str] = None
    voucher: Optional[Voucher] = None


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _to_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _reject(reason: str, voucher: Optional[Voucher] = None) -> VoucherResolution:
    return VoucherResolution(eligible=False, discount=0.0, reason=reason, voucher=voucher)


def compute_discount(voucher: Voucher, subtotal: float) -> float:
    if voucher.discount_type == "fixed":
        discount = voucher.discount_amount
    else:
        discount = subtotal * voucher.discount_amount / 100
        if voucher.max_discount and discount > voucher.max_discount:
            discount = voucher.max_discount
    return min(round2(discount), subtotal)


def resolve_voucher(
    voucher: Optional[Voucher],
    subtotal: Any,
    user_email: Optional[str],
    *,
    usage_lookup: Callable[[Any, str], bool],
    now: Optional[datetime] = None,
) -> VoucherResolution:
    """Run the eligibility chain; stops at the first failing rule."""
    if voucher is None:
        return _reject(INVALID_CODE)
    if not voucher.is_active:
        return _reject(NOT_ACTIVE, voucher)

    now = _aware(now or datetime.now(timezone.utc))
    if voucher.start_date and _aware(voucher.start_date) > now:
        return _reject(NOT_YET_VALID, voucher)
    if voucher.expiry_date and _aware(voucher.expiry_date) < now:
        return _reject(EXPIRED, voucher)
    if voucher.usage_limit is not None and voucher.times_used >= voucher.usage_limit:
        return _reject(LIMIT_REACHED, voucher)

    email = (user_email or "").strip()
    if email and voucher.once_per_user and usage_lookup(voucher.id, email):
        return _reject(ALREADY_USED, voucher)

    amount = max(_to_float(subtotal), 0.0)
    if voucher.min_order_amount and amount < voucher.min_order_amount:
        return _reject(MIN_ORDER_NOT_MET.format(amount=voucher.min_order_amount), voucher)

    return VoucherResolution(
        eligible=True,
        discount=compute_discount(voucher, amount),
        voucher=voucher,
    )


def _lookup_and_resolve(code: str, subtotal: Any, email: Optional[str]) -> VoucherResolution:
    row = repo_fetch_by_code(code.strip())
    voucher = Voucher.model_validate(row) if row else None
    return resolve_voucher(voucher, subtotal, email, usage_lookup=repo_has_usage)


def summarize_voucher(voucher: Voucher) -> VoucherSummary:
    return VoucherSummary(
        id=voucher.id,
        code=voucher.code,
        discount_type=voucher.discount_type,
        discount_amount=voucher.discount_amount,
        max_discount=voucher.max_discount or None,
        min_order_amount=voucher.min_order_amount or None,
    )


async def validate_voucher(code: str, subtotal: Any, email: Optional[str]) -> VoucherResolution:
    return await asyncio.to_thread(_lookup_and_resolve, code, subtotal, email)


async def apply_voucher_for_checkout(
    code: Optional[str],
    subtotal: float,
    email: Optional[str],
) -> VoucherResolution:
    """Checkout never fails because of a voucher; it is simply not applied."""
    if not code or not code.strip():
        return _reject(INVALID_CODE)
    try:
        resolution = await asyncio.to_thread(_lookup_and_resolve, code, subtotal, email)
    except Exception as exc:
        logger.exception("Voucher lookup failed code=%s: %s", code, exc)
        return _reject(INVALID_CODE)
    if not resolution.eligible:
        logger.info("Voucher not applied code=%s reason=%s", code, resolution.reason)
    return resolution


def _reserve_use(voucher_id: Any) -> bool:
    for _ in range(MAX_RESERVE_ATTEMPTS):
        row = repo_fetch_by_id(voucher_id)
        if row is None:
            return False
        used = int(row.get("times_used") or 0)
        limit = row.get("usage_limit")
        if limit is not None and used >= int(limit):
            logger.info("Voucher %s usage limit reached (%s/%s)", voucher_id, used, limit)
            return False
        if compare_and_set_times_used(voucher_id, used, used + 1):
            return True
    logger.warning("Voucher %s reservation gave up after %s attempts", voucher_id, MAX_RESERVE_ATTEMPTS)
    return False


def _release_use(voucher_id: Any) -> None:
    for _ in range(MAX_RESERVE_ATTEMPTS):
        row = repo_fetch_by_id(voucher_id)
        used = int((row or {}).get("times_used") or 0)
        if used <= 0:
            return
        if compare_and_set_times_used(voucher_id, used, used - 1):
            return


async def reserve_voucher_use(voucher_id: Any) -> bool:
    """Atomically take one use; never lets times_used pass usage_limit."""
    return await asyncio.to_thread(_reserve_use, voucher_id)


async def release_voucher_use(voucher_id: Any) -> None:
    await asyncio.to_thread(_release_use, voucher_id)


def _claim(voucher_id: Any, user_email: str) -> bool:
    try:
        insert_usage(voucher_id, user_email, None)
    except APIError as exc:
        if exc.code != UNIQUE_VIOLATION:
            raise
        logger.info("Voucher %s already claimed by %s", voucher_id, user_email)
        return False
    return True


async def claim_voucher_for_user(voucher_id: Any, user_email: Optional[str]) -> bool:
    """Write the per-user usage row before the order exists.

    The unique (voucher_id, user_email) constraint lets only one of several
    concurrent checkouts by the same customer win. The row has no order_id
    until ``record_voucher_usage`` attaches it.
    """
    email = (user_email or "").strip().lower()
    if not email:
        return True
    return await asyncio.to_thread(_claim, voucher_id, email)


async def release_voucher_claim(voucher_id: Any, user_email: Optional[str]) -> None:
    email = (user_email or "").strip().lower()
    if email:
        await asyncio.to_thread(delete_usage, voucher_id, email)


def _insert_usage(voucher_id: Any, user_email: str, order_id: Any) -> bool:
    try:
        insert_usage(voucher_id, user_email, order_id)
    except APIError as exc:
        if exc.code != UNIQUE_VIOLATION:
            raise
        if not attach_usage_order(voucher_id, user_email, order_id):
            logger.info("Voucher usage already recorded voucher=%s email=%s", voucher_id, user_email)
    return True


async def record_voucher_usage(voucher_id: Any, user_email: Optional[str], order_id: Any) -> bool:
    """Store the per-user usage row; an existing row counts as success."""
    email = (user_email or "").strip().lower()
    if not email:
        return False
    return await asyncio.to_thread(_insert_usage, voucher_id, email, order_id)


def _validate_definition(discount_type: str, discount_amount: Optional[float]) -> None:
    if discount_amount is None:
        return
    if discount_amount <= 0:
        raise VoucherError("Discount amount must be greater than 0.")
    if discount_type == "percentage" and discount_amount > 100:
        raise VoucherError("Percentage discount cannot exceed 100%.")


def _ensure_unique_code(code: str, current_id: Any = None) -> None:
    existing = repo_fetch_by_code(code)
    if existing and existing.get("id") != current_id:
        raise VoucherConflictError("A voucher with this code already exists.")


async def list_vouchers() -> List[Voucher]:
    rows = await asyncio.to_thread(repo_fetch_all)
    return [Voucher.model_validate(row) for row in rows]


async def get_voucher(voucher_id: Any) -> Voucher:
    row = await asyncio.to_thread(repo_fetch_by_id, voucher_id)
    if not row:
        raise VoucherNotFoundError("Voucher not found.")
    return Voucher.model_validate(row)


def _create(payload: VoucherCreate) -> Dict[str, Any]:
    code = payload.code.strip()
    if not code:
        raise VoucherError("Voucher code is required.")
    _validate_definition(payload.discount_type, payload.discount_amount)
    _ensure_unique_code(code)
    record = payload.model_dump(mode="json")
    record["code"] = code.upper()
    for key in ("max_discount", "min_order_amount", "usage_limit"):
        record[key] = record[key] or None
    record["times_used"] = 0
    try:
        return insert_voucher(record)
    except APIError as exc:
        if exc.code == UNIQUE_VIOLATION:
            raise VoucherConflictError("A voucher with this code already exists.") from exc
        raise


async def create_voucher(payload: VoucherCreate) -> Voucher:
    row = await asyncio.to_thread(_create, payload)
    logger.info("Voucher created code=%s", row.get("code"))
    return Voucher.model_validate(row)


def _update(voucher_id: Any, payload: VoucherUpdate) -> Dict[str, Any]:
    existing = repo_fetch_by_id(voucher_id)
    if not existing:
        raise VoucherNotFoundError("Voucher not found.")

    changes = payload.model_dump(mode="json", exclude_unset=True)
    # these columns keep their value when sent as null
    for key in ("code", "discount_type", "discount_amount", "once_per_user", "is_active"):
        if key in changes and changes[key] is None:
            del changes[key]

    if "code" in changes:
        code = changes["code"].strip()
        if not code:
            raise VoucherError("Voucher code cannot be empty.")
        _ensure_unique_code(code, current_id=existing.get("id"))
        changes["code"] = code.upper()

    discount_type = changes.get("discount_type") or existing.get("discount_type")
    _validate_definition(discount_type, changes.get("discount_amount"))

    if not changes:
        return existing
    row = repo_update_voucher(voucher_id, changes)
    if not row:
        raise VoucherNotFoundError("Voucher not found.")
    return row


async def update_voucher(voucher_id: Any, payload: VoucherUpdate) -> Voucher:
    row = await asyncio.to_thread(_update, voucher_id, payload)
    return Voucher.model_validate(row)


async def toggle_voucher(voucher_id: Any) -> Voucher:
    voucher = await get_voucher(voucher_id)
    row = await asyncio.to_thread(
        repo_update_voucher, voucher_id, {"is_active": not voucher.is_active}
    )
    if not row:
        raise VoucherNotFoundError("Voucher not found.")
    return Voucher.model_validate(row)


async def delete_voucher(voucher_id: Any) -> None:
    voucher = await get_voucher(voucher_id)
    if voucher.times_used > 0:
        raise VoucherConflictError(
            "This voucher has already been redeemed; deactivate it instead."
        )
    deleted = await asyncio.to_thread(repo_delete_voucher, voucher_id)
    if not deleted:
        raise VoucherNotFoundError("Voucher not found.")
