"""
Laburandik Seller Ops - Catalog
===============================
Category tree and product listings synced from MercadoLibre.
"""

from typing import Any, Dict, List, Optional, Sequence

from logging_config import get_logger
from services.database import DatabaseClient

logger = get_logger(__name__)

PRODUCTS_LIMIT = 1000


def build_category_tree(
    main_categories: Sequence[Dict[str, Any]],
    all_categories: Sequence[Dict[str, Any]],
) -> Dict[str, Any]:
    """Attach subcategories to their parent and count both levels."""
    children: Dict[Any, List[Dict[str, Any]]] = {}
    for category in all_categories:
        parent = category.get("parent_category_id")
        if parent is not None:
            children.setdefault(parent, []).append(category)

    tree = [
        {**category, "children": children.get(category.get("category_id"), [])}
        for category in main_categories
    ]
    return {
        "categories": tree,
        "summary": {
            "main_count": len(main_categories),
            "sub_count": sum(len(c["children"]) for c in tree),
        },
    }


def _variation_row(variation: Dict[str, Any]) -> Dict[str, Any]:
    return {
        **variation,
        "id": (
            variation.get("user_product_id")
            or variation.get("variation_id")
            or f"{variation.get('item_id')}_{variation.get('id')}"
        ),
        "is_variation": True,
        "type": "variation",
    }


def group_products(
    products: Sequence[Dict[str, Any]],
    variations: Sequence[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    """
    Nest variations under their product.

    Products sharing a family_name collapse into the oldest one; the others
    are listed among its variations as `family_item` rows.
    """
    by_item: Dict[Any, List[Dict[str, Any]]] = {}
    for variation in variations:
        by_item.setdefault(variation.get("item_id"), []).append(_variation_row(variation))

    families: Dict[str, List[Dict[str, Any]]] = {}
    standalone: List[Dict[str, Any]] = []
    for product in products:
        if product.get("family_name"):
            families.setdefault(product["family_name"], []).append(product)
        else:
            standalone.append(product)

    grouped = []
    for members in families.values():
        members = sorted(members, key=lambda p: p.get("created_at") or "")
        main, siblings = members[0], members[1:]
        rows: List[Dict[str, Any]] = []
        for member in members:
            rows.extend(by_item.get(member.get("id"), []))
        for sibling in siblings:
            rows.append({
                **sibling,
                "is_variation": True,
                "type": "family_item",
                "item_id": sibling.get("id"),
                "seller_sku": f"ITEM-{sibling.get('id')}",
                "picture_url": sibling.get("thumbnail"),
            })
        grouped.append({
            **main,
            "variations": rows,
            "variations_count": len(rows),
            "family_size": len(members),
        })

    for product in standalone:
        rows = by_item.get(product.get("id"), [])
        grouped.append({
            **product,
            "variations": rows,
            "variations_count": len(rows),
            "family_size": 1,
        })

    grouped.sort(key=lambda p: p.get("created_at") or "", reverse=True)
    return grouped


class CatalogService:
    def __init__(self, db: DatabaseClient):
        self.db = db

    async def get_categories_tree(self) -> Dict[str, Any]:
        main_categories = await (
            self.db.table("meli_categories")
            .select("*")
            .is_("parent_category_id", None)
            .order("name")
            .execute()
        )
        all_categories = await self.db.table("meli_categories").select("*").order("name").execute()
        return build_category_tree(main_categories or [], all_categories or [])

    async def list_products(
        self, organization_id: str, meli_user_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """
        Listings of the organization's seller accounts with their variations.

        Restricted to `meli_user_id` when given, otherwise every account
        connected to the organization. Accounts of other organizations are
        never returned.
        """
        accounts = await (
            self.db.table("meli_accounts")
            .select("meli_user_id")
            .eq("organization_id", organization_id)
            .execute()
        )
        seller_ids = [str(a["meli_user_id"]) for a in accounts or []]
        if meli_user_id:
            seller_ids = [s for s in seller_ids if s == str(meli_user_id)]
        if not seller_ids:
            return []

        products = await (
            self.db.table("meli_items")
            .select("*")
            .in_("meli_user_id", seller_ids)
            .order("created_at", desc=True)
            .limit(PRODUCTS_LIMIT)
            .execute()
        ) or []

        variations: List[Dict[str, Any]] = []
        product_ids = [p["id"] for p in products if p.get("id") is not None]
        if product_ids:
            variations = await (
                self.db.table("meli_variations")
                .select("*")
                .in_("item_id", product_ids)
                .execute()
            ) or []

        logger.info("Products loaded", products=len(products), variations=len(variations))
        return group_products(products, variations)
