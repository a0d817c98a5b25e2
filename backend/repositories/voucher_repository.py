from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from supabase_client import get_supabase

VOUCHER_TABLE = "vouchers"
VOUCHER_USAGE_TABLE = "voucher_usage"


def _exact_ilike(value: str) -> str:
    # ilike without wildcards = case-insensitive equality
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def fetch_by_code(code: str) -> Optional[Dict[str, Any]]:
    response = (
        get_supabase()
        .table(VOUCHER_TABLE)
        .select("*")
        .ilike("code", _exact_ilike(code))
        .limit(1)
        .execute()
    )
    items = response.data or []
    return items[0] if items else None


def fetch_by_id(voucher_id: Any) -> Optional[Dict[str, Any]]:
    response = (
        get_supabase()
        .table(VOUCHER_TABLE)
        .select("*")
        .eq("id", voucher_id)
        .limit(1)
        .execute()
    )
    items = response.data or []
    return items[0] if items else None


def fetch_all() -> List[Dict[str, Any]]:
    response = (
        get_supabase()
        .table(VOUCHER_TABLE)
        .select("*")
        .order("created_at", desc=True)
        .execute()
    )
    return response.data or []


def insert_voucher(record: Dict[str, Any]) -> Dict[str, Any]:
    response = get_supabase().table(VOUCHER_TABLE).insert(record).execute()
    if not response.data:
        raise RuntimeError("Failed to store voucher")
    return response.data[0]


def update_voucher(voucher_id: Any, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    payload = dict(changes)
    payload["updated_at"] = datetime.now(timezone.utc).isoformat()
    response = (
        get_supabase().table(VOUCHER_TABLE).update(payload).eq("id", voucher_id).execute()
    )
    items = response.data or []
    return items[0] if items else None


def delete_voucher(voucher_id: Any) -> bool:
    response = get_supabase().table(VOUCHER_TABLE).delete().eq("id", voucher_id).execute()
    return bool(response.data)


def compare_and_set_times_used(voucher_id: Any, expected: int, new_value: int) -> bool:
    """Single conditional UPDATE; False when another redemption got there first."""
    response = (
        get_supabase()
        .table(VOUCHER_TABLE)
        .update(
            {
                "times_used": new_value,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            }
        )
        .eq("id", voucher_id)
        .eq("times_used", expected)
        .execute()
    )
    return bool(response.data)


def has_usage(voucher_id: Any, user_email: str) -> bool:
    response = (
        get_supabase()
        .table(VOUCHER_USAGE_TABLE)
        .select("id")
        .eq("voucher_id", voucher_id)
        .ilike("user_email", _exact_ilike(user_email))
        .limit(1)
        .execute()
    )
    return bool(response.data)


def attach_usage_order(voucher_id: Any, user_email: str, order_id: Any) -> bool:
    response = (
        get_supabase()
        .table(VOUCHER_USAGE_TABLE)
        .update({"order_id": order_id})
        .eq("voucher_id", voucher_id)
        .eq("user_email", user_email)
        .is_("order_id", "null")
        .execute()
    )
    return bool(response.data)


def delete_usage(voucher_id: Any, user_email: str) -> None:
    (
        get_supabase()
        .table(VOUCHER_USAGE_TABLE)
        .delete()
        .eq("voucher_id", voucher_id)
        .eq("user_email", user_email)
        .is_("order_id", "null")
        .execute()
    )


def insert_usage(voucher_id: Any, user_email: str, order_id: Any) -> Dict[str, Any]:
    record = {
        "voucher_id": voucher_id,
        "user_email": user_email,
        "order_id": order_id,
    }
    response = get_supabase().table(VOUCHER_USAGE_TABLE).insert(record).execute()
    data = response.data or []
    return data[0] if data else record
