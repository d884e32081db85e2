"""
Laburandik Seller Ops - Packing Service
=======================================
Scan-session tracking and packing status for warehouse shipments.

Tables (both carry organization_id):
    scan_sessions      one row per (shipment, scan) - unique on shipment
    shipment_packing   who packed a shipment and when
Views / RPCs:
    shipments_packing_view           shipment lines joined with packing info
    get_shipment_packing_with_org    organization-wide shipment list
"""

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from exceptions import DatabaseError, SellerOpsError
from logging_config import get_logger
from schemas import PackerInfo
from services.database import DatabaseClient, TableQuery
from services.scan_utils import COLOR_ATTRIBUTE_NAMES, SIZE_ATTRIBUTE_NAMES, find_attribute
from services.shipment_service import ShipmentService
import metrics as app_metrics

logger = get_logger(__name__)


class PackingError(SellerOpsError):
    """A packing write failed for a reason other than a duplicate."""

    reason = "PACKING_FAILED"
    status_code = 500


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def group_shipment_data(rows: Sequence[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    """
    Fold shipments_packing_view rows into shipment summaries and item lines.

    Returns:
        {"shipments": [...], "items": [...]}
    """
    shipments: Dict[Any, Dict[str, Any]] = {}
    items: List[Dict[str, Any]] = []

    for row in rows:
        shipment_id = row.get("shipment_id")
        sku = row.get("seller_sku")

        if shipment_id not in shipments:
            packing = (row.get("shipment_packing") or [None])[0]
            shipments[shipment_id] = {
                "shipment_id": shipment_id,
                "shipment_status": row.get("shipment_status"),
                "shipment_updated": row.get("shipment_last_updated"),
                "account": row.get("nickname"),
                "total_orders": row.get("total_orders"),
                "total_items": row.get("total_items"),
                "category": row.get("name"),
                "shipment_created": row.get("shipment_created"),
                "sku_list": [sku],
                "packed_by_name": (packing or {}).get("packed_by_name"),
                "packed_at": (packing or {}).get("created_at"),
                "is_packed": packing is not None,
            }
        elif sku not in shipments[shipment_id]["sku_list"]:
            shipments[shipment_id]["sku_list"].append(sku)

        attributes = row.get("variation_attributes")
        items.append({
            "sku": sku,
            "seller_sku": sku,
            "shipment_id": shipment_id,
            "order_id": row.get("order_id"),
            "item_id": row.get("item_id"),
            "variation_id": row.get("variation_id"),
            "quantity": row.get("quantity"),
            "available_quantity": row.get("available_quantity"),
            "unit_price": row.get("unit_price"),
            "currency_id": row.get("currency_id"),
            "title": row.get("item_title"),
            "item_full_title": row.get("item_full_title"),
            "thumbnail": row.get("picture_url"),
            "variation_attributes": attributes,
            "talle": find_attribute(attributes, SIZE_ATTRIBUTE_NAMES),
            "color": find_attribute(attributes, COLOR_ATTRIBUTE_NAMES),
            "order_notes": row.get("order_notes"),
            "notes_count": row.get("notes_count") or 0,
            "latest_note_date": row.get("latest_note_date"),
            "user_product_id": row.get("user_product_id"),
        })

    return {"shipments": list(shipments.values()), "items": items}


class PackingService:
    """
    Reads and writes packing state within one organization.

    Queries run with the service-role key, so every read and write is
    filtered on, or stamped with, `organization_id`.
    """

    def __init__(
        self,
        db: DatabaseClient,
        organization_id: str,
        shipments: Optional[ShipmentService] = None,
    ):
        self.db = db
        self.organization_id = organization_id
        self.shipments = shipments

    def _scoped(self, table: str, columns: str = "*") -> TableQuery:
        return self.db.table(table).select(columns).eq("organization_id", self.organization_id)

    def _packer_row(self, shipment_id: str, user: PackerInfo) -> Dict[str, Any]:
        return {
            "organization_id": self.organization_id,
            "shipment_id": shipment_id,
            "packed_by_user_id": user.id,
            "packed_by_name": user.name,
            "packed_by_email": user.email,
        }

    def _session_row(self, shipment_id: str, user: PackerInfo) -> Dict[str, Any]:
        return {
            "organization_id": self.organization_id,
            "shipment_id": shipment_id,
            "user_id": user.id,
            "name": user.name,
            "email": user.email,
        }

    # =========================================================================
    # Scan sessions
    # =========================================================================

    async def track_scan_session(self, shipment_id: str, user: PackerInfo) -> Optional[Dict[str, Any]]:
        """
        Record that a shipment was scanned.

        Never raises: a duplicate scan returns None and other failures are
        logged, so tracking cannot break the scan flow.
        """
        try:
            return await self.db.table("scan_sessions").insert(
                self._session_row(shipment_id, user)
            ).single().execute()
        except DatabaseError as e:
            if e.is_unique_violation:
                logger.info("Shipment already scanned", shipment_id=shipment_id)
            else:
                logger.error("Scan session tracking failed", shipment_id=shipment_id, error=e.message)
            return None

    async def track_multiple_scan_sessions(
        self, shipment_ids: Sequence[str], user: PackerInfo
    ) -> Optional[List[Dict[str, Any]]]:
        rows = [self._session_row(sid, user) for sid in shipment_ids]
        try:
            return await self.db.table("scan_sessions").insert(rows).execute()
        except DatabaseError as e:
            logger.error("Bulk scan session tracking failed", count=len(rows), error=e.message)
            return None

    async def get_scan_sessions(self, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        query = self._scoped("scan_sessions")
        if user_id:
            query = query.eq("user_id", user_id)
        try:
            return await query.order("created_at", desc=True).execute()
        except DatabaseError as e:
            logger.error("Could not load scan sessions", error=e.message)
            return []

    # =========================================================================
    # Packing status
    # =========================================================================

    async def get_packing(self, shipment_id: str) -> Optional[Dict[str, Any]]:
        """Latest packing record for a shipment, or None."""
        try:
            return await (
                self._scoped("shipment_packing")
                .eq("shipment_id", shipment_id)
                .order("created_at", desc=True)
                .limit(1)
                .maybe_single()
                .execute()
            )
        except DatabaseError as e:
            logger.error("Could not load packing status", shipment_id=shipment_id, error=e.message)
            return None

    async def get_multiple_packing(self, shipment_ids: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        """shipment_id -> latest packing record, for shipments that have one."""
        if not shipment_ids:
            return {}
        try:
            rows = await (
                self._scoped("shipment_packing")
                .in_("shipment_id", shipment_ids)
                .order("created_at", desc=True)
                .execute()
            )
        except DatabaseError as e:
            logger.error("Could not load packing statuses", count=len(shipment_ids), error=e.message)
            return {}

        packing: Dict[str, Dict[str, Any]] = {}
        for row in rows:
            packing.setdefault(str(row["shipment_id"]), row)
        return packing

    async def pack_shipment(self, shipment_id: str, user: PackerInfo) -> Optional[Dict[str, Any]]:
        """
        Mark a shipment as packed by `user`.

        Packing twice is not an error: the existing record is returned.
        """
        try:
            row = await self.db.table("shipment_packing").insert(
                self._packer_row(shipment_id, user)
            ).single().execute()
        except DatabaseError as e:
            if e.is_unique_violation:
                app_metrics.packs_total.labels(result="already_packed").inc()
                return await self.get_packing(shipment_id)
            app_metrics.packs_total.labels(result="error").inc()
            raise PackingError(f"Error al empacar: {e.message}", original_error=e) from e

        app_metrics.packs_total.labels(result="packed").inc()
        logger.info("Shipment packed", shipment_id=shipment_id, packed_by=user.email)
        return row

    async def pack_multiple_shipments(
        self, shipment_ids: Sequence[str], user: PackerInfo
    ) -> List[Dict[str, Any]]:
        rows = [self._packer_row(sid, user) for sid in shipment_ids]
        try:
            result = await self.db.table("shipment_packing").insert(rows).execute()
        except DatabaseError as e:
            app_metrics.packs_total.labels(result="error").inc()
            raise PackingError(
                f"Error al empacar múltiples envíos: {e.message}", original_error=e
            ) from e

        app_metrics.packs_total.labels(result="packed").inc(len(result or []))
        return result or []

    async def repack_shipment(self, shipment_id: str, user: PackerInfo) -> Dict[str, Any]:
        """Reassign an already-packed shipment to `user`."""
        try:
            rows = await (
                self.db.table("shipment_packing")
                .update({
                    "packed_by_user_id": user.id,
                    "packed_by_name": user.name,
                    "packed_by_email": user.email,
                    "updated_at": _utcnow(),
                })
                .eq("organization_id", self.organization_id)
                .eq("shipment_id", shipment_id)
                .execute()
            )
            if rows:
                row = rows[0]
            else:
                row = await (
                    self._scoped("shipment_packing")
                    .eq("shipment_id", shipment_id)
                    .single()
                    .execute()
                )
        except DatabaseError as e:
            app_metrics.packs_total.labels(result="error").inc()
            raise PackingError(f"Error al reempacar: {e.message}", original_error=e) from e

        app_metrics.packs_total.labels(result="repacked").inc()
        return row

    # =========================================================================
    # Shipment data
    # =========================================================================

    async def get_shipment_data(
        self,
        shipment_id: str,
        access_token_supplier: Callable[[], Awaitable[str]],
    ) -> Dict[str, Any]:
        """
        Shipment lines for the scanner, from the database view when present.

        Falls back to the MercadoLibre API (source "api") when the view has
        no rows or cannot be queried. The access token is only requested on
        fallback.
        """
        try:
            rows = await (
                self._scoped("shipments_packing_view")
                .eq("shipment_id", shipment_id)
                .execute()
            )
        except DatabaseError as e:
            logger.warning("Packing view query failed", shipment_id=shipment_id, error=e.message)
            rows = []

        if rows:
            grouped = group_shipment_data(rows)
            return {
                "source": "database",
                "items": grouped["items"],
                "shipment_info": grouped["shipments"][0] if grouped["shipments"] else None,
            }

        if self.shipments is None:
            raise PackingError("Shipment not found in database and API lookup is unavailable")

        logger.info("Falling back to API for shipment", shipment_id=shipment_id)
        access_token = await access_token_supplier()
        items = await self.shipments.extract_shipment_info(shipment_id, access_token)
        return {"source": "api", "items": items, "shipment_info": None}

    async def list_shipments(self) -> List[Dict[str, Any]]:
        return await self.db.rpc(
            "get_shipment_packing_with_org", {"org_id": self.organization_id}
        ) or []
