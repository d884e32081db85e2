"""
MercadoLibre Router
===================
Seller profile, connected accounts, shipment lookup and order-driven
inventory analytics.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from dependencies import OrgContext, get_database, get_meli, get_org_context, get_token_manager
from exceptions import ValidationError
from logging_config import get_logger
from schemas import CurrentAccountRequest, MeliAccountRequest
from services.database import DatabaseClient
from services.inventory_service import InventoryService
from services.meli_client import MeliClient
from services.organization_service import OrganizationService
from services.shipment_service import ShipmentService
from services.token_store import TokenManager

logger = get_logger(__name__)

router = APIRouter()


def shape_user_profile(data: Dict[str, Any]) -> Dict[str, Any]:
    """The /users/me fields shown on the settings screen."""
    thumbnail = data.get("thumbnail")
    reputation = data.get("seller_reputation")
    return {
        "id": data.get("id"),
        "nickname": data.get("nickname"),
        "permalink": data.get("permalink"),
        "thumbnail": {
            "picture_id": thumbnail.get("picture_id"),
            "picture_url": thumbnail.get("picture_url"),
        } if thumbnail else None,
        "first_name": data.get("first_name"),
        "last_name": data.get("last_name"),
        "country_id": data.get("country_id"),
        "site_id": data.get("site_id"),
        "user_type": data.get("user_type"),
        "seller_reputation": {
            "level_id": reputation.get("level_id"),
            "power_seller_status": reputation.get("power_seller_status"),
        } if reputation else None,
    }


@router.get("/user")
async def get_user(
    ctx: OrgContext = Depends(get_org_context),
    tokens: TokenManager = Depends(get_token_manager),
    meli: MeliClient = Depends(get_meli),
):
    access_token = await tokens.get_valid_access_token(ctx.token_owner)
    return shape_user_profile(await meli.get_me(access_token))


@router.post("/account")
async def store_account(
    request: MeliAccountRequest,
    ctx: OrgContext = Depends(get_org_context),
    db: DatabaseClient = Depends(get_database),
):
    account = await OrganizationService(db).store_meli_account(
        ctx.organization_id, request.model_dump()
    )
    return {"success": True, "data": account}


@router.get("/accounts")
async def list_accounts(
    ctx: OrgContext = Depends(get_org_context),
    db: DatabaseClient = Depends(get_database),
):
    accounts = await OrganizationService(db).list_meli_accounts(ctx.organization_id)
    return {"accounts": accounts, "current_meli_user_id": ctx.current_meli_user_id}


@router.put("/current")
async def set_current_account(
    request: CurrentAccountRequest,
    ctx: OrgContext = Depends(get_org_context),
    db: DatabaseClient = Depends(get_database),
):
    orgs = OrganizationService(db)
    accounts = await orgs.list_meli_accounts(ctx.organization_id)
    if request.meli_user_id not in {str(a.get("meli_user_id")) for a in accounts}:
        raise ValidationError(
            "Account is not connected to this organization",
            field="meli_user_id",
            value=request.meli_user_id,
        )
    await orgs.set_current_account(ctx.user_id, request.meli_user_id)
    return {"success": True, "current_meli_user_id": request.meli_user_id}


@router.get("/shipment/{shipment_id}")
async def get_shipment(
    shipment_id: str,
    ctx: OrgContext = Depends(get_org_context),
    tokens: TokenManager = Depends(get_token_manager),
    meli: MeliClient = Depends(get_meli),
):
    if not shipment_id.strip():
        raise ValidationError("Shipment ID is required", field="shipment_id")
    access_token = await tokens.get_valid_access_token(ctx.token_owner)
    return await ShipmentService(meli).extract_shipment_info(shipment_id.strip(), access_token)


@router.get("/orders")
async def order_analytics(
    days: Optional[int] = Query(default=30, ge=1, le=365),
    ctx: OrgContext = Depends(get_org_context),
    tokens: TokenManager = Depends(get_token_manager),
    meli: MeliClient = Depends(get_meli),
):
    access_token = await tokens.get_valid_access_token(ctx.token_owner)
    logger.info("Generating order analytics", days_back=days)
    return await InventoryService(meli).order_analytics(access_token, days or 30)


@router.get("/inventory")
async def inventory_analytics(
    ctx: OrgContext = Depends(get_org_context),
    tokens: TokenManager = Depends(get_token_manager),
    meli: MeliClient = Depends(get_meli),
):
    access_token = await tokens.get_valid_access_token(ctx.token_owner)
    return await InventoryService(meli).inventory_analytics(access_token)
