"""
Catalog Router
==============
Category tree and synced product listings.
"""

from typing import Optional

from fastapi import APIRouter, Depends

from dependencies import OrgContext, get_database, get_org_context
from services.catalog_service import CatalogService
from services.database import DatabaseClient

router = APIRouter()


@router.get("/categories")
async def categories(
    ctx: OrgContext = Depends(get_org_context),
    db: DatabaseClient = Depends(get_database),
):
    return await CatalogService(db).get_categories_tree()


@router.get("/products")
async def products(
    all_accounts: bool = False,
    meli_user_id: Optional[str] = None,
    ctx: OrgContext = Depends(get_org_context),
    db: DatabaseClient = Depends(get_database),
):
    """Listings of the current seller account, or of every connected account."""
    seller = None if all_accounts else (meli_user_id or ctx.current_meli_user_id)
    items = await CatalogService(db).list_products(ctx.organization_id, seller)
    return {"products": items, "total": len(items)}
