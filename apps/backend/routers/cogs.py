"""
COGS Router
===========
Unit-cost management: list, edit, bulk upsert, spreadsheet upload and
CSV template/export.
"""

from fastapi import APIRouter, Depends, File, UploadFile
from fastapi.responses import Response

from config import Settings, get_settings
from dependencies import OrgContext, get_database, get_org_context
from logging_config import get_logger
from schemas import BulkCogsRequest, BulkCogsResult, CogsUpdate
from services.cogs_service import (
    CogsService,
    export_items_csv,
    generate_csv_template,
    handle_upload,
)
from services.database import DatabaseClient
from services.table_format import csv_filename

logger = get_logger(__name__)

router = APIRouter()


def _csv_response(content: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("")
async def list_items(
    ctx: OrgContext = Depends(get_org_context),
    db: DatabaseClient = Depends(get_database),
):
    items = await CogsService(db).fetch_all_items(ctx.organization_id)
    return {"items": items, "total": len(items)}


@router.get("/template")
async def template():
    return _csv_response(generate_csv_template(), "cogs_template.csv")


@router.get("/export")
async def export(
    ctx: OrgContext = Depends(get_org_context),
    db: DatabaseClient = Depends(get_database),
):
    items = await CogsService(db).fetch_all_items(ctx.organization_id)
    return _csv_response(export_items_csv(items), csv_filename("cogs_export"))


@router.post("/bulk", response_model=BulkCogsResult)
async def bulk_update(
    request: BulkCogsRequest,
    ctx: OrgContext = Depends(get_org_context),
    db: DatabaseClient = Depends(get_database),
    settings: Settings = Depends(get_settings),
):
    return await CogsService(db, settings).bulk_update_item_cogs(ctx.organization_id, request.items)


@router.post("/upload", response_model=BulkCogsResult)
async def upload(
    file: UploadFile = File(...),
    ctx: OrgContext = Depends(get_org_context),
    db: DatabaseClient = Depends(get_database),
    settings: Settings = Depends(get_settings),
):
    """Parse a CSV or Excel sheet and upsert every row."""
    content = await file.read()
    rows = handle_upload(file.filename or "", content)
    logger.info("COGS file parsed", filename=file.filename, rows=len(rows))
    return await CogsService(db, settings).bulk_update_item_cogs(ctx.organization_id, rows)


@router.patch("/{item_id}")
async def update_cogs(
    item_id: str,
    request: CogsUpdate,
    ctx: OrgContext = Depends(get_org_context),
    db: DatabaseClient = Depends(get_database),
):
    value = await CogsService(db).update_single_cogs(ctx.organization_id, item_id, request.cogs)
    return {"item_id": item_id, "cogs": value}
