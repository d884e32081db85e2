"""
Laburandik Seller Ops - Shipment Lookup
=======================================
Builds the packer's view of a shipment straight from the MercadoLibre API
(used when the shipment is not yet in the database view).
"""

import asyncio
from typing import Any, Dict, List, Optional

from exceptions import InvalidTokenError, MeliAPIError, NotFoundError
from logging_config import get_logger
from services.meli_client import MeliClient

logger = get_logger(__name__)

WRONG_ACCOUNT_MESSAGE = (
    "Autenticación fallida: El token puede estar expirado, el ID de envío puede ser "
    "incorrecto o el envío puede pertenecer a una cuenta de Mercado Libre diferente "
    "a la actualmente autenticada."
)


def _attr(source: Optional[Dict[str, Any]], key: str, attr_id: str) -> Optional[str]:
    for attr in (source or {}).get(key) or []:
        if isinstance(attr, dict) and attr.get("id") == attr_id and attr.get("value_name"):
            return attr["value_name"]
    return None


def _lookup(variation: Optional[Dict[str, Any]], item: Optional[Dict[str, Any]], attr_id: str):
    return (
        _attr(variation, "attribute_combinations", attr_id)
        or _attr(variation, "attributes", attr_id)
        or _attr(item, "attributes", attr_id)
    )


def _thumbnail(variation: Optional[Dict[str, Any]], item: Optional[Dict[str, Any]]) -> Optional[str]:
    picture_ids = (variation or {}).get("picture_ids") or []
    pictures = (item or {}).get("pictures")
    if variation and picture_ids and isinstance(pictures, list):
        first = picture_ids[0]
        return next((p.get("url") for p in pictures if p.get("id") == first), None)
    return (item or {}).get("thumbnail")


def build_shipment_item(
    shipment_item: Dict[str, Any],
    variation: Optional[Dict[str, Any]],
    item: Optional[Dict[str, Any]],
) -> Dict[str, Any]:
    """Flatten one shipment line with its variation and item details."""
    if variation:
        variation_id = shipment_item.get("variation_id")
    else:
        variation_id = (item or {}).get("user_product_id")

    if variation and variation.get("available_quantity") is not None:
        available = variation["available_quantity"]
    else:
        available = (item or {}).get("available_quantity")

    seller_sku = _attr(variation, "attributes", "SELLER_SKU") or _attr(item, "attributes", "SELLER_SKU")

    return {
        "order_id": shipment_item.get("order_id"),
        "item_id": shipment_item.get("item_id"),
        "variation_id": variation_id,
        "seller_sku": seller_sku,
        "color": _lookup(variation, item, "COLOR"),
        "talle": _lookup(variation, item, "SIZE"),
        "fabric_type": _lookup(variation, item, "FABRIC_DESIGN"),
        "available_quantity": available if available is not None else 0,
        "thumbnail": _thumbnail(variation, item),
        "title": (item or {}).get("title") or shipment_item.get("description"),
        "quantity": shipment_item.get("quantity"),
    }


class ShipmentService:
    """Shipment details sourced from the MercadoLibre API."""

    def __init__(self, meli: MeliClient):
        self.meli = meli

    async def _enrich(self, access_token: str, shipment_item: Dict[str, Any]) -> Dict[str, Any]:
        item_id = shipment_item.get("item_id")
        variation_id = shipment_item.get("variation_id")
        try:
            if variation_id:
                variation, item = await asyncio.gather(
                    self.meli.get_item_variation(access_token, item_id, variation_id),
                    self.meli.get_item(access_token, item_id),
                )
            else:
                variation, item = None, await self.meli.get_item(access_token, item_id)
        except MeliAPIError as e:
            logger.warning("Could not load item details", item_id=item_id, error=e.message)
            variation, item = None, None
        return build_shipment_item(shipment_item, variation, item)

    async def extract_shipment_info(self, shipment_id: str, access_token: str) -> List[Dict[str, Any]]:
        """
        Items of a shipment, each enriched with SKU, color, size and picture.

        Raises:
            NotFoundError: Unknown shipment
            InvalidTokenError: Token rejected or shipment owned by another account
            RateLimitedError: MercadoLibre throttled the request
        """
        try:
            shipment_items = await self.meli.get_shipment_items(access_token, shipment_id)
        except NotFoundError as e:
            raise NotFoundError("Shipment not found", e.context.get("endpoint"), 404) from e
        except InvalidTokenError as e:
            raise InvalidTokenError(WRONG_ACCOUNT_MESSAGE, context=e.context) from e

        return list(await asyncio.gather(
            *(self._enrich(access_token, si) for si in shipment_items)
        ))
