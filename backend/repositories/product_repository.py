from typing import Any, Dict, Iterable, List, Optional

from supabase_client import get_supabase

PRODUCT_TABLE = "products"


def fetch_active_products(product_ids: Iterable[Any]) -> List[Dict[str, Any]]:
    ids = list(product_ids)
    if not ids:
        return []
    response = (
        get_supabase()
        .table(PRODUCT_TABLE)
        .select("id, name, price, stock, weight_kg")
        .in_("id", ids)
        .eq("is_active", True)
        .execute()
    )
    return response.data or []


def fetch_stock(product_id: Any) -> Optional[int]:
    response = (
        get_supabase()
        .table(PRODUCT_TABLE)
        .select("stock")
        .eq("id", product_id)
        .limit(1)
        .execute()
    )
    items = response.data or []
    if not items:
        return None
    return int(items[0].get("stock") or 0)


def compare_and_set_stock(product_id: Any, expected: int, new_value: int) -> bool:
    """Single conditional UPDATE; False when another sale changed the stock first."""
    response = (
        get_supabase()
        .table(PRODUCT_TABLE)
        .update({"stock": new_value})
        .eq("id", product_id)
        .eq("stock", expected)
        .execute()
    )
    return bool(response.data)
