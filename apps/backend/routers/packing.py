"""
Packing Router
==============
Warehouse scanner endpoints: scan, pack, repack, status, scan sessions,
shipment list and per-packer metrics.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from dependencies import (
    OrgContext,
    get_database,
    get_debouncer,
    get_meli,
    get_org_context,
    get_token_manager,
    packer_from_user,
)
from exceptions import ValidationError
from logging_config import get_logger
from schemas import BulkPackRequest, PackRequest, ScanRequest, ScanSessionRequest
from services.database import DatabaseClient
from services.meli_client import MeliClient
from services.packing_service import PackingService
from services.sales_service import SalesService, get_metrics_for_period
from services.scan_utils import VIBRATION_PATTERNS, ScanDebouncer, normalize_scan
from services.shipment_service import ShipmentService
from services.token_store import TokenManager
import metrics as app_metrics

logger = get_logger(__name__)

router = APIRouter()


def _split_ids(raw: Optional[str]) -> List[str]:
    return [part.strip() for part in (raw or "").split(",") if part.strip()]


@router.post("/scan")
async def scan(
    request: ScanRequest,
    ctx: OrgContext = Depends(get_org_context),
    db: DatabaseClient = Depends(get_database),
    meli: MeliClient = Depends(get_meli),
    tokens: TokenManager = Depends(get_token_manager),
    debouncer: ScanDebouncer = Depends(get_debouncer),
):
    """
    Resolve a scanned label to its shipment lines and packing status.

    Repeat reads of the same code inside the debounce window return
    `debounced: true` without touching the database.
    """
    shipment_id = normalize_scan(request.code)

    if not debouncer.accept(ctx.user_id, shipment_id):
        app_metrics.scans_total.labels(result="debounced").inc()
        return {"shipment_id": shipment_id, "debounced": True}
    app_metrics.scans_total.labels(result="accepted").inc()

    packer = packer_from_user(ctx.user)
    service = PackingService(db, ctx.organization_id, ShipmentService(meli))

    if request.track_session:
        await service.track_scan_session(shipment_id, packer)

    async def access_token() -> str:
        return await tokens.get_valid_access_token(ctx.token_owner)

    data = await service.get_shipment_data(shipment_id, access_token)
    packing = await service.get_packing(shipment_id)

    logger.info("Shipment scanned", shipment_id=shipment_id, source=data["source"],
                items=len(data["items"]))
    return {
        "shipment_id": shipment_id,
        "debounced": False,
        **data,
        "packing": packing,
        "is_packed": packing is not None,
        "vibration": VIBRATION_PATTERNS["success"],
    }


@router.post("/pack")
async def pack(
    request: PackRequest,
    ctx: OrgContext = Depends(get_org_context),
    db: DatabaseClient = Depends(get_database),
):
    service = PackingService(db, ctx.organization_id)
    row = await service.pack_shipment(request.shipment_id, packer_from_user(ctx.user))
    return {"success": True, "data": row}


@router.post("/pack/bulk")
async def pack_bulk(
    request: BulkPackRequest,
    ctx: OrgContext = Depends(get_org_context),
    db: DatabaseClient = Depends(get_database),
):
    rows = await PackingService(db, ctx.organization_id).pack_multiple_shipments(
        request.shipment_ids, packer_from_user(ctx.user)
    )
    return {"success": True, "data": rows, "count": len(rows)}


@router.post("/repack")
async def repack(
    request: PackRequest,
    ctx: OrgContext = Depends(get_org_context),
    db: DatabaseClient = Depends(get_database),
):
    service = PackingService(db, ctx.organization_id)
    row = await service.repack_shipment(request.shipment_id, packer_from_user(ctx.user))
    return {"success": True, "data": row}


@router.get("/status/{shipment_id}")
async def packing_status(
    shipment_id: str,
    ctx: OrgContext = Depends(get_org_context),
    db: DatabaseClient = Depends(get_database),
):
    packing = await PackingService(db, ctx.organization_id).get_packing(shipment_id)
    return {"shipment_id": shipment_id, "is_packed": packing is not None, "packing": packing}


@router.get("/status")
async def packing_statuses(
    ids: str = Query(..., description="Comma-separated shipment ids"),
    ctx: OrgContext = Depends(get_org_context),
    db: DatabaseClient = Depends(get_database),
):
    shipment_ids = _split_ids(ids)
    if not shipment_ids:
        raise ValidationError("At least one shipment id is required", field="ids")
    packing = await PackingService(db, ctx.organization_id).get_multiple_packing(shipment_ids)
    return {"packing": packing}


@router.get("/sessions")
async def scan_sessions(
    mine: bool = True,
    ctx: OrgContext = Depends(get_org_context),
    db: DatabaseClient = Depends(get_database),
):
    service = PackingService(db, ctx.organization_id)
    sessions = await service.get_scan_sessions(ctx.user_id if mine else None)
    return {"sessions": sessions}


@router.post("/sessions")
async def track_sessions(
    request: ScanSessionRequest,
    ctx: OrgContext = Depends(get_org_context),
    db: DatabaseClient = Depends(get_database),
):
    rows = await PackingService(db, ctx.organization_id).track_multiple_scan_sessions(
        request.shipment_ids, packer_from_user(ctx.user)
    )
    return {"success": rows is not None, "data": rows or []}


@router.get("/shipments")
async def shipments(
    ctx: OrgContext = Depends(get_org_context),
    db: DatabaseClient = Depends(get_database),
):
    rows = await PackingService(db, ctx.organization_id).list_shipments()
    return {"shipments": rows, "total": len(rows)}


@router.get("/metrics")
async def packer_metrics(
    days: int = Query(default=7, ge=1, le=30),
    ctx: OrgContext = Depends(get_org_context),
    db: DatabaseClient = Depends(get_database),
):
    """Packages packed by the current user over the last `days` days."""
    email = ctx.user.get("email")
    if not email:
        raise ValidationError("User has no email on file", field="email")
    rows = await SalesService(db).fetch_packing_metrics(email)
    return {"metrics": get_metrics_for_period(rows, days), "daily": rows}
