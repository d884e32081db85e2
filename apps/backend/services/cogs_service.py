"""
Laburandik Seller Ops - COGS Management
=======================================
Per-item cost of goods: listing, single edits, bulk upserts and
spreadsheet import/export.
"""

import asyncio
import csv
import io
import math
import re
from typing import Any, Dict, List, Optional, Sequence

from openpyxl import load_workbook

from config import Settings, get_settings
from exceptions import DatabaseError, ValidationError
from logging_config import get_logger
from schemas import BulkCogsResult
from services.database import DatabaseClient
from services.table_format import export_to_csv

logger = get_logger(__name__)

COGS_TABLE = "cogs"
ON_CONFLICT = "organization_id,item_id"

CSV_ALIASES = {
    "item_id": ("item_id", "Item ID", "SKU"),
    "title": ("title", "Title", "Product Name"),
    "cogs": ("cogs", "COGS", "Cost"),
    "tags": ("tags", "Tags"),
}

EXCEL_HEADER_PATTERNS = {
    "item_id": re.compile(r"item[_\s]?id|sku", re.IGNORECASE),
    "title": re.compile(r"title|product[_\s]?name|name", re.IGNORECASE),
    "cogs": re.compile(r"cogs|cost", re.IGNORECASE),
    "tags": re.compile(r"tags|categories", re.IGNORECASE),
}

TEMPLATE_ROWS = [
    {"item_id": "MLB123456789", "title": "Sample Product 1", "cogs": "100.50",
     "tags": "electronics,imported"},
    {"item_id": "MLB987654321", "title": "Sample Product 2", "cogs": "50.25",
     "tags": "clothing,seasonal"},
]

EXPORT_COLUMNS = ["item_id", "title", "cogs", "tags", "available_quantity", "status"]


def to_cogs(value: Any) -> float:
    """Non-negative float; anything unparseable counts as zero."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(number) or math.isinf(number):
        return 0.0
    return max(0.0, number)


def split_tags(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        raw = [str(t) for t in value if t is not None]
    else:
        raw = str(value).split(",")
    return [t.strip() for t in raw if t.strip()]


def validate_item_data(item: Dict[str, Any], organization_id: str) -> Dict[str, Any]:
    """
    Normalize one upload row into a `cogs` table record.

    Raises:
        ValidationError: If item_id is missing
    """
    item_id = item.get("item_id")
    if item_id is None or str(item_id).strip() == "":
        raise ValidationError("Invalid item: missing item_id", field="item_id")

    return {
        "organization_id": organization_id,
        "item_id": str(item_id).strip(),
        "title": str(item.get("title") or "").strip(),
        "cogs": to_cogs(item.get("cogs")),
        "tags": split_tags(item.get("tags")),
        "notes": str(item.get("notes") or "").strip(),
    }


# =============================================================================
# Spreadsheet parsing
# =============================================================================

def _first_present(row: Dict[str, Any], aliases: Sequence[str]) -> Any:
    for alias in aliases:
        value = row.get(alias)
        if value not in (None, ""):
            return value
    return None


def parse_csv(text: str) -> List[Dict[str, Any]]:
    """Rows from a CSV export, accepting common header spellings."""
    reader = csv.DictReader(io.StringIO(text.lstrip("\ufeff")))
    parsed = []
    for row in reader:
        if not any((v or "").strip() for v in row.values() if isinstance(v, str)):
            continue
        parsed.append({
            "item_id": str(_first_present(row, CSV_ALIASES["item_id"]) or ""),
            "title": str(_first_present(row, CSV_ALIASES["title"]) or ""),
            "cogs": to_cogs(_first_present(row, CSV_ALIASES["cogs"])),
            "tags": split_tags(_first_present(row, CSV_ALIASES["tags"])),
        })
    return parsed


def parse_excel(content: bytes) -> List[Dict[str, Any]]:
    """
    Rows from the first worksheet of an Excel workbook.

    Columns are located by matching header text; rows without an item id
    are dropped.
    """
    try:
        workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except Exception as e:
        raise ValidationError(f"Could not read Excel file: {e}", field="file") from e

    try:
        sheet = workbook.worksheets[0]
        rows = [list(r) for r in sheet.iter_rows(values_only=True)]
    finally:
        workbook.close()

    if not rows:
        raise ValidationError("Empty file", field="file")

    headers = ["" if h is None else str(h) for h in rows[0]]
    index = {
        field: next((i for i, h in enumerate(headers) if pattern.search(h)), None)
        for field, pattern in EXCEL_HEADER_PATTERNS.items()
    }

    def cell(row: List[Any], field: str) -> Any:
        i = index[field]
        return row[i] if i is not None and i < len(row) else None

    parsed = []
    for row in rows[1:]:
        item_id = cell(row, "item_id")
        if item_id in (None, ""):
            continue
        parsed.append({
            "item_id": str(item_id).strip(),
            "title": str(cell(row, "title") or ""),
            "cogs": to_cogs(cell(row, "cogs")),
            "tags": split_tags(cell(row, "tags")),
        })
    return parsed


def handle_upload(filename: str, content: bytes) -> List[Dict[str, Any]]:
    name = (filename or "").lower()
    if name.endswith(".csv"):
        return parse_csv(content.decode("utf-8-sig", errors="replace"))
    if name.endswith(".xlsx"):
        return parse_excel(content)
    if name.endswith(".xls"):
        raise ValidationError(
            "Legacy .xls workbooks are not supported. Save the file as .xlsx or CSV.",
            field="file",
            value=filename,
        )
    raise ValidationError(
        "Unsupported file format. Please upload CSV or Excel file.",
        field="file",
        value=filename,
    )


def generate_csv_template() -> str:
    columns = [{"id": c, "label": c} for c in ("item_id", "title", "cogs", "tags")]
    return export_to_csv(TEMPLATE_ROWS, columns)


def export_items_csv(items: Sequence[Dict[str, Any]]) -> str:
    rows = [
        {
            "item_id": item.get("item_id"),
            "title": item.get("title"),
            "cogs": item.get("cogs") or 0,
            "tags": ",".join(item.get("tags") or []),
            "available_quantity": item.get("available_quantity") or 0,
            "status": item.get("status") or "",
        }
        for item in items
    ]
    return export_to_csv(rows, [{"id": c, "label": c} for c in EXPORT_COLUMNS])


# =============================================================================
# Persistence
# =============================================================================

class CogsService:
    """COGS records of one organization."""

    def __init__(self, db: DatabaseClient, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()

    async def fetch_all_items(self, organization_id: str) -> List[Dict[str, Any]]:
        return await (
            self.db.table(COGS_TABLE)
            .select("*")
            .eq("organization_id", organization_id)
            .order("title")
            .execute()
        )

    async def update_single_cogs(self, organization_id: str, item_id: str, value: Any) -> float:
        """Set one item's unit cost; returns the stored value."""
        row = await (
            self.db.table(COGS_TABLE)
            .update({"cogs": to_cogs(value)})
            .eq("organization_id", organization_id)
            .eq("item_id", item_id)
            .single()
            .execute()
        )
        return to_cogs(row.get("cogs"))

    async def _upsert(self, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return await self.db.table(COGS_TABLE).upsert(rows, on_conflict=ON_CONFLICT).execute() or []

    async def bulk_update_item_cogs(
        self, organization_id: str, items: Sequence[Dict[str, Any]]
    ) -> BulkCogsResult:
        """
        Validate and upsert many items in batches.

        A failing batch is retried one item at a time so a single bad row
        only loses itself.

        Raises:
            ValidationError: If no item survives validation
        """
        if not items:
            return BulkCogsResult(success=True, processed=0, total=0, valid_items=0)

        valid: List[Dict[str, Any]] = []
        errors: List[Dict[str, Any]] = []
        for index, item in enumerate(items):
            try:
                valid.append(validate_item_data(item, organization_id))
            except ValidationError as e:
                errors.append({"index": index, "item_id": item.get("item_id"), "error": e.message})

        if errors:
            logger.warning("COGS rows failed validation", count=len(errors))
        if not valid:
            raise ValidationError("No valid items to update")

        batch_size = self.settings.cogs_batch_size
        results: List[Dict[str, Any]] = []

        for start in range(0, len(valid), batch_size):
            batch = valid[start:start + batch_size]
            try:
                results.extend(await self._upsert(batch))
            except DatabaseError as e:
                logger.error(
                    "COGS batch failed, retrying per item",
                    batch_start=start,
                    size=len(batch),
                    code=e.code,
                    sample=[row["item_id"] for row in batch[:3]],
                )
                for row in batch:
                    try:
                        results.extend(await self._upsert([row]))
                    except DatabaseError as item_error:
                        logger.error("COGS item failed", item_id=row["item_id"], error=item_error.message)

            if start + batch_size < len(valid):
                await asyncio.sleep(self.settings.cogs_batch_delay_seconds)

        logger.info("COGS bulk update finished", processed=len(results), valid=len(valid))
        return BulkCogsResult(
            success=True,
            processed=len(results),
            total=len(items),
            valid_items=len(valid),
            errors=errors,
            data=results,
        )
