"""
Laburandik Seller Ops - Inventory Analytics
===========================================
Sales velocity and stock coverage computed from recent MercadoLibre
orders.

Two views are produced:
    item analytics   per item+variation velocity with days of stock left
    inventory        7d/30d quantities per item, broken down by variation
"""

import asyncio
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from exceptions import MeliAPIError
from logging_config import get_logger
from services.meli_client import MeliClient
from services.table_format import round_to

logger = get_logger(__name__)

NO_SALES_DAYS = 999
PICTURE_URL = "https://http2.mlstatic.com/D_NQ_NP_{picture_id}-O.jpg"


def parse_order_date(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_meli_datetime(value: datetime) -> str:
    """Timestamp format accepted by /orders/search date filters."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000-00:00")


def stock_status(available: float, days_left: int) -> str:
    if available == 0:
        return "out_of_stock"
    if days_left <= 7:
        return "low_stock"
    if days_left <= 30:
        return "moderate_stock"
    return "good"


def _attr_value(attributes: Optional[Iterable[Dict[str, Any]]], attr_id: str) -> Optional[str]:
    for attr in attributes or []:
        if attr.get("id") == attr_id:
            return attr.get("value_name")
    return None


# =============================================================================
# Per-variation velocity
# =============================================================================

def group_order_items(orders: Iterable[Dict[str, Any]]) -> Dict[Tuple[str, Any], Dict[str, Any]]:
    """Bucket order lines by (item_id, variation_id)."""
    stats: Dict[Tuple[str, Any], Dict[str, Any]] = {}
    for order in orders:
        for line in order.get("order_items") or []:
            item = line.get("item") or {}
            item_id = item.get("id")
            if not item_id:
                continue
            key = (item_id, item.get("variation_id"))
            bucket = stats.setdefault(key, {
                "item_id": item_id,
                "variation_id": item.get("variation_id"),
                "dates": [],
                "total_quantity": 0,
            })
            quantity = line.get("quantity") or 0
            bucket["dates"].append(order.get("date_created"))
            bucket["total_quantity"] += quantity
    return stats


def calculate_item_analytics(
    orders: Sequence[Dict[str, Any]],
    item_details: Dict[str, Dict[str, Any]],
    days_back: int,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """
    Velocity and stock coverage per item variation.

    Args:
        orders: Raw /orders/search results
        item_details: item_id -> {"item": {...}, "variations": [...]}
        days_back: Length of the order window in days
        now: Reference time (defaults to current UTC time)

    Returns:
        Rows sorted by avg_orders_per_day, highest first
    """
    now = now or datetime.now(timezone.utc)
    analytics = []

    for stats in group_order_items(orders).values():
        details = item_details.get(stats["item_id"]) or {}
        item = details.get("item")
        if not item:
            continue
        variations = details.get("variations") or []
        variation = None
        if stats["variation_id"] is not None:
            variation = next((v for v in variations if v.get("id") == stats["variation_id"]), None)

        avg_per_day = stats["total_quantity"] / days_back if days_back else 0
        available = (variation or {}).get("available_quantity") or item.get("available_quantity") or 0
        days_left = math.floor(available / avg_per_day) if avg_per_day > 0 else NO_SALES_DAYS

        attributes = (variation or {}).get("attributes") or item.get("attributes") or []
        combinations = (variation or {}).get("attribute_combinations") or []

        dates = [parse_order_date(d) for d in stats["dates"] if d]
        last_sale = max(dates) if dates else None

        picture_ids = (variation or {}).get("picture_ids") or []
        thumbnail = (
            PICTURE_URL.format(picture_id=picture_ids[0]) if picture_ids else item.get("thumbnail")
        )

        analytics.append({
            "item_id": stats["item_id"],
            "variation_id": stats["variation_id"],
            "seller_sku": _attr_value(attributes, "SELLER_SKU"),
            "title": item.get("title"),
            "color": _attr_value(combinations, "COLOR"),
            "size": _attr_value(combinations, "SIZE"),
            "thumbnail": thumbnail,
            "category": item.get("category_id"),
            "condition": item.get("condition"),
            "listing_status": item.get("status"),
            "available_quantity": available,
            "total_sales_quantity": stats["total_quantity"],
            "avg_orders_per_day": round_to(avg_per_day, 2),
            "days_left_inventory": days_left,
            "stock_status": stock_status(available, days_left),
            "last_sale_date": last_sale.isoformat() if last_sale else None,
            "days_since_last_sale": (now - last_sale).days if last_sale else None,
        })

    analytics.sort(key=lambda row: row["avg_orders_per_day"], reverse=True)
    return analytics


# =============================================================================
# 7d / 30d inventory view
# =============================================================================

def flatten_orders(orders: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """One row per order line with the fields the inventory view needs."""
    flat = []
    for order in orders:
        for line in order.get("order_items") or []:
            item = line.get("item") or {}
            if not item.get("id"):
                continue
            flat.append({
                "id": order.get("id"),
                "date_created": order.get("date_created"),
                "status": order.get("status"),
                "item_id": item["id"],
                "variation_id": item.get("variation_id"),
                "seller_sku": item.get("seller_sku"),
                "title": item.get("title"),
                "quantity": line.get("quantity") or 0,
            })
    return flat


def _within(orders: Iterable[Dict[str, Any]], now: datetime, days: int) -> List[Dict[str, Any]]:
    window = timedelta(days=days)
    return [o for o in orders if now - parse_order_date(o["date_created"]) <= window]


def generate_inventory_analytics(
    orders: Sequence[Dict[str, Any]],
    items: Dict[str, Dict[str, Any]],
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """Per-item 7d/30d quantities and days of stock at the 30d pace."""
    now = now or datetime.now(timezone.utc)
    orders_30d = _within(orders, now, 30)
    orders_7d = _within(orders, now, 7)

    per_item: Dict[str, Dict[str, Any]] = {}
    for order in orders_30d:
        entry = per_item.setdefault(order["item_id"], {"qty_30d": 0, "qty_7d": 0})
        entry["qty_30d"] += order["quantity"]
    for order in orders_7d:
        if order["item_id"] in per_item:
            per_item[order["item_id"]]["qty_7d"] += order["quantity"]

    results = []
    for item_id, qty in per_item.items():
        item = items.get(item_id) or {}
        available = item.get("available_quantity") or 0
        avg_30d = qty["qty_30d"] / 30
        avg_7d = qty["qty_7d"] / 7
        days_in_stock = available / avg_30d if avg_30d > 0 else NO_SALES_DAYS
        results.append({
            "item_id": item_id,
            "title": item.get("title") or "Unknown Item",
            "metrics": {
                "qty_30d": qty["qty_30d"],
                "qty_7d": qty["qty_7d"],
                "avg_per_day_30d": round_to(avg_30d, 2),
                "avg_per_day_7d": round_to(avg_7d, 2),
                "available_qty": available,
                "days_in_stock": int(round_to(days_in_stock, 0)),
            },
        })

    results.sort(key=lambda r: r["metrics"]["qty_30d"], reverse=True)
    return results


def _variation_key(order: Dict[str, Any]) -> Any:
    return order.get("variation_id") or order.get("seller_sku") or "no_variation"


def group_by_variations(
    analytics: Sequence[Dict[str, Any]],
    orders: Sequence[Dict[str, Any]],
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """Attach per-variation children (keyed by variation, SKU or none) to each item."""
    now = now or datetime.now(timezone.utc)
    orders_30d = _within(orders, now, 30)
    orders_7d = _within(orders, now, 7)

    grouped = []
    for entry in analytics:
        item_id = entry["item_id"]
        groups: Dict[Any, Dict[str, Any]] = {}
        for order in orders_30d:
            if order["item_id"] != item_id:
                continue
            group = groups.setdefault(_variation_key(order), {
                "variation_id": order.get("variation_id"),
                "seller_sku": order.get("seller_sku"),
                "qty_30d": 0,
                "qty_7d": 0,
            })
            group["qty_30d"] += order["quantity"]
        for order in orders_7d:
            key = _variation_key(order)
            if order["item_id"] == item_id and key in groups:
                groups[key]["qty_7d"] += order["quantity"]

        children = []
        total_7d = total_30d = 0
        for group in groups.values():
            children.append({
                **group,
                "avg_per_day_7d": round_to(group["qty_7d"] / 7, 2),
                "avg_per_day_30d": round_to(group["qty_30d"] / 30, 2),
            })
            total_7d += group["qty_7d"]
            total_30d += group["qty_30d"]
        children.sort(key=lambda c: c["qty_30d"], reverse=True)

        available = entry["metrics"]["available_qty"]
        avg_30d = round_to(total_30d / 30, 2)
        grouped.append({
            "item_id": item_id,
            "title": entry["title"],
            "totals": {
                "qty_7d": total_7d,
                "avg_per_day_7d": round_to(total_7d / 7, 2),
                "qty_30d": total_30d,
                "avg_per_day_30d": avg_30d,
                "available_qty": available,
                "days_in_stock": int(round_to(available / avg_30d, 0)) if avg_30d > 0 else NO_SALES_DAYS,
            },
            "children": children,
        })
    return grouped


class InventoryService:
    """Order-driven analytics for the connected seller account."""

    def __init__(self, meli: MeliClient):
        self.meli = meli

    async def fetch_orders(
        self,
        access_token: str,
        days_back: int,
        now: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        now = now or datetime.now(timezone.utc)
        seller = await self.meli.get_me(access_token)
        date_from = format_meli_datetime(now - timedelta(days=days_back))
        date_to = format_meli_datetime(now)

        orders = [
            order async for order in self.meli.iter_orders(
                access_token, seller["id"], date_from, date_to
            )
        ]
        logger.info("Fetched orders", count=len(orders), days_back=days_back)
        return orders

    async def _item_with_variations(self, access_token: str, item_id: str) -> Dict[str, Any]:
        try:
            item, variations = await asyncio.gather(
                self.meli.get_item(access_token, item_id),
                self.meli.get_item_variations(access_token, item_id),
            )
        except MeliAPIError as e:
            logger.warning("Could not load item", item_id=item_id, error=e.message)
            return {"item": None, "variations": []}
        return {"item": item, "variations": variations}

    async def order_analytics(self, access_token: str, days_back: int = 30) -> Dict[str, Any]:
        orders = await self.fetch_orders(access_token, days_back)
        item_ids = sorted({key[0] for key in group_order_items(orders)})
        details = await asyncio.gather(
            *(self._item_with_variations(access_token, item_id) for item_id in item_ids)
        )
        analytics = calculate_item_analytics(orders, dict(zip(item_ids, details)), days_back)
        return {
            "data": analytics,
            "meta": {
                "total_items": len(analytics),
                "days_analyzed": days_back,
                "total_orders": len(orders),
                "generated_at": datetime.now(timezone.utc).isoformat(),
            },
        }

    async def inventory_analytics(self, access_token: str) -> Dict[str, Any]:
        orders = flatten_orders(await self.fetch_orders(access_token, 30))
        now = datetime.now(timezone.utc)
        item_ids = sorted({o["item_id"] for o in _within(orders, now, 30)})
        items = await self.meli.get_items(access_token, item_ids)
        analytics = generate_inventory_analytics(orders, items, now)
        grouped = group_by_variations(analytics, orders, now)
        return {
            "data": grouped,
            "meta": {
                "total_items": len(grouped),
                "days_analyzed": 30,
                "generated_at": now.isoformat(),
            },
        }
