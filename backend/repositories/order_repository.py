from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from supabase_client import get_supabase

ORDER_TABLE = "orders"
ORDER_ITEMS_TABLE = "order_items"


def insert_order(record: Dict[str, Any]) -> Dict[str, Any]:
    response = get_supabase().table(ORDER_TABLE).insert(record).execute()
    if not response.data:
        raise RuntimeError("Failed to store order")
    return response.data[0]


def insert_items(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if not items:
        return []
    response = get_supabase().table(ORDER_ITEMS_TABLE).insert(items).execute()
    return response.data or items


def fetch_items(order_ids: Iterable[Any]) -> List[Dict[str, Any]]:
    ids = list(order_ids)
    if not ids:
        return []
    response = (
        get_supabase().table(ORDER_ITEMS_TABLE).select("*").in_("order_id", ids).execute()
    )
    return response.data or []


def fetch_user_orders(user_id: str) -> List[Dict[str, Any]]:
    response = (
        get_supabase()
        .table(ORDER_TABLE)
        .select("*")
        .eq("user_id", user_id)
        .order("created_at", desc=True)
        .execute()
    )
    return response.data or []


def fetch_order(order_id: Any, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
    query = get_supabase().table(ORDER_TABLE).select("*").eq("id", order_id)
    if user_id is not None:
        query = query.eq("user_id", user_id)
    response = query.limit(1).execute()
    items = response.data or []
    return items[0] if items else None


def fetch_orders(
    *,
    status: Optional[str] = None,
    payment_status: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: Optional[int] = None,
    offset: int = 0,
) -> Tuple[List[Dict[str, Any]], Optional[int]]:
    query = get_supabase().table(ORDER_TABLE).select("*", count="exact")
    if status:
        query = query.eq("status", status)
    if payment_status:
        query = query.eq("payment_status", payment_status)
    if since is not None:
        query = query.gte("created_at", since.isoformat())
    if until is not None:
        query = query.lt("created_at", until.isoformat())
    # id breaks created_at ties so consecutive pages never overlap
    query = query.order("created_at", desc=True).order("id", desc=True)
    if limit is not None:
        query = query.range(offset, offset + limit - 1)
    response = query.execute()
    return response.data or [], response.count


def update_order(order_id: Any, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    response = get_supabase().table(ORDER_TABLE).update(changes).eq("id", order_id).execute()
    items = response.data or []
    return items[0] if items else None


def delete_order(order_id: Any) -> None:
    client = get_supabase()
    client.table(ORDER_ITEMS_TABLE).delete().eq("order_id", order_id).execute()
    client.table(ORDER_TABLE).delete().eq("id", order_id).execute()
