"""
Laburandik Seller Ops - MercadoLibre API Client
===============================================
OAuth token exchange plus the read endpoints the dashboards and
warehouse screens depend on.
"""

import asyncio
import time
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional
from urllib.parse import urlencode

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from config import Settings, get_settings
from exceptions import (
    InsufficientPermissionsError,
    InvalidTokenError,
    MeliAPIError,
    MissingCredentialsError,
    NotFoundError,
    RateLimitedError,
    RefreshFailedError,
)
from logging_config import get_logger
from schemas import TokenSet
import metrics as app_metrics

logger = get_logger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


def raise_for_meli_status(response: httpx.Response, endpoint: str) -> None:
    """Map a failed MercadoLibre response onto the error hierarchy."""
    status = response.status_code
    if status < 400:
        return
    body = response.text[:300]
    if status == 401:
        raise InvalidTokenError(
            "MercadoLibre rejected the access token",
            context={"endpoint": endpoint, "upstream_status": status},
        )
    if status == 403:
        raise InsufficientPermissionsError(
            "Insufficient permissions for this MercadoLibre resource",
            context={"endpoint": endpoint, "upstream_status": status},
        )
    if status == 404:
        raise NotFoundError(f"Resource not found: {endpoint}", endpoint, status)
    if status == 429:
        raise RateLimitedError("MercadoLibre rate limit exceeded", endpoint, status)
    raise MeliAPIError(f"MercadoLibre API error {status}: {body}", endpoint, status)


class MeliClient:
    """
    Async client for api.mercadolibre.com.

    Connection errors and timeouts are retried (3 attempts, exponential
    wait). HTTP error statuses are mapped to typed errors and never retried.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=self.settings.meli_api_base_url,
            timeout=httpx.Timeout(self.settings.http_timeout_seconds, connect=10.0),
        )

    async def __aenter__(self) -> "MeliClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        if self._owns_client:
            await self._client.aclose()

    # =========================================================================
    # OAuth
    # =========================================================================

    def build_authorization_url(self, state: Optional[str] = None) -> str:
        """Authorization URL the seller is redirected to."""
        if not self.settings.meli_client_id:
            raise MissingCredentialsError("CLIENT_ID is not configured")
        params = {
            "response_type": "code",
            "client_id": self.settings.meli_client_id,
            "redirect_uri": self.settings.meli_redirect_uri,
        }
        if state:
            params["state"] = state
        return f"{self.settings.meli_auth_url}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenSet:
        """Exchange an authorization code for a token set."""
        data = await self._token_request({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.settings.meli_redirect_uri,
        })
        return TokenSet.from_response(data, now_ms())

    async def refresh(self, refresh_token: str) -> TokenSet:
        """
        Refresh an access token.

        MercadoLibre may omit refresh_token in the response, in which case
        the previous one stays valid and is carried over.
        """
        data = await self._token_request({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })
        return TokenSet.from_response(data, now_ms(), previous_refresh_token=refresh_token)

    async def _token_request(self, form: Dict[str, str]) -> Dict[str, Any]:
        if not self.settings.meli_configured:
            raise MissingCredentialsError()

        grant = form["grant_type"]
        payload = {
            **form,
            "client_id": self.settings.meli_client_id,
            "client_secret": self.settings.meli_client_secret,
        }
        try:
            response = await self._client.post(
                "/oauth/token",
                data=payload,
                headers={"Accept": "application/json"},
            )
        except httpx.RequestError as e:
            logger.error("Token endpoint unreachable", grant_type=grant, error=str(e))
            raise RefreshFailedError(f"Token endpoint unreachable: {e}", original_error=e) from e

        app_metrics.meli_requests_total.labels(
            endpoint="/oauth/token", status=response.status_code
        ).inc()

        if response.status_code >= 400:
            logger.warning(
                "Token request rejected",
                grant_type=grant,
                status=response.status_code,
            )
            raise RefreshFailedError(
                f"Token request failed: {response.status_code} {response.text[:300]}",
                upstream_status=response.status_code,
            )

        data = response.json()
        if not data.get("access_token"):
            raise RefreshFailedError("Token response did not include an access_token")
        return data

    # =========================================================================
    # Read endpoints
    # =========================================================================

    @retry(
        retry=retry_if_exception_type((httpx.ConnectError, httpx.TimeoutException)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def _send(
        self,
        path: str,
        access_token: str,
        params: Optional[Dict[str, Any]],
        label: str,
    ) -> httpx.Response:
        start = time.time()
        response = await self._client.get(
            path,
            params=params,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        app_metrics.meli_request_duration_seconds.labels(endpoint=label).observe(
            time.time() - start
        )
        app_metrics.meli_requests_total.labels(
            endpoint=label, status=response.status_code
        ).inc()
        return response

    async def _get(
        self,
        path: str,
        access_token: str,
        params: Optional[Dict[str, Any]] = None,
        endpoint: Optional[str] = None,
    ) -> Any:
        label = endpoint or path
        try:
            response = await self._send(path, access_token, params, label)
        except httpx.RequestError as e:
            logger.error("MercadoLibre unreachable", endpoint=label, error=str(e))
            raise MeliAPIError(
                f"MercadoLibre unreachable: {e}", endpoint=path, original_error=e
            ) from e
        raise_for_meli_status(response, path)
        return response.json()

    async def get_me(self, access_token: str) -> Dict[str, Any]:
        return await self._get("/users/me", access_token)

    async def get_item(self, access_token: str, item_id: str) -> Dict[str, Any]:
        return await self._get(f"/items/{item_id}", access_token, endpoint="/items/{id}")

    async def get_item_variations(self, access_token: str, item_id: str) -> List[Dict[str, Any]]:
        data = await self._get(
            f"/items/{item_id}/variations", access_token, endpoint="/items/{id}/variations"
        )
        return data or []

    async def get_item_variation(
        self, access_token: str, item_id: str, variation_id: Any
    ) -> Dict[str, Any]:
        return await self._get(
            f"/items/{item_id}/variations/{variation_id}",
            access_token,
            endpoint="/items/{id}/variations/{vid}",
        )

    async def get_shipment_items(self, access_token: str, shipment_id: str) -> List[Dict[str, Any]]:
        data = await self._get(
            f"/shipments/{shipment_id}/items", access_token, endpoint="/shipments/{id}/items"
        )
        return data or []

    async def get_category(self, access_token: str, category_id: str) -> Dict[str, Any]:
        return await self._get(
            f"/categories/{category_id}", access_token, endpoint="/categories/{id}"
        )

    async def get_items(
        self,
        access_token: str,
        item_ids: Iterable[str],
        attributes: Optional[str] = "id,title,available_quantity,status",
    ) -> Dict[str, Dict[str, Any]]:
        """
        Multi-get items in batches.

        A failing batch is logged and skipped so one bad id does not hide
        the rest of the catalog.

        Returns:
            Mapping item_id -> item body
        """
        ids = [str(i).strip() for i in item_ids if i and str(i).strip()]
        batch_size = self.settings.meli_items_batch_size
        result: Dict[str, Dict[str, Any]] = {}

        for offset in range(0, len(ids), batch_size):
            batch = ids[offset:offset + batch_size]
            params = {"ids": ",".join(batch)}
            if attributes:
                params["attributes"] = attributes
            try:
                data = await self._get("/items", access_token, params=params, endpoint="/items")
            except MeliAPIError as e:
                logger.warning("Item batch failed", offset=offset, size=len(batch), error=e.message)
                continue

            entries = data if isinstance(data, list) else [data]
            for entry in entries:
                body = entry.get("body", entry) if isinstance(entry, dict) else None
                if isinstance(body, dict) and body.get("id"):
                    result[body["id"]] = body

            if offset + batch_size < len(ids):
                await asyncio.sleep(self.settings.meli_request_delay_seconds * 2)

        return result

    async def search_orders(
        self,
        access_token: str,
        seller_id: Any,
        date_from: str,
        date_to: str,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        params = {
            "seller": seller_id,
            "order.date_created.from": date_from,
            "order.date_created.to": date_to,
            "offset": offset,
            "limit": limit or self.settings.meli_page_limit,
        }
        return await self._get("/orders/search", access_token, params=params)

    async def iter_orders(
        self,
        access_token: str,
        seller_id: Any,
        date_from: str,
        date_to: str,
    ) -> AsyncIterator[Dict[str, Any]]:
        """
        Yield orders page by page.

        Stops on an empty page, when offset reaches paging.total, or once
        meli_max_orders orders have been yielded.
        """
        limit = self.settings.meli_page_limit
        offset = 0
        yielded = 0

        while True:
            page = await self.search_orders(
                access_token, seller_id, date_from, date_to, offset=offset, limit=limit
            )
            results = page.get("results") or []
            if not results:
                break

            for order in results:
                yield order
                yielded += 1
                if yielded >= self.settings.meli_max_orders:
                    logger.info("Order limit reached", limit=self.settings.meli_max_orders)
                    return

            offset += limit
            total = (page.get("paging") or {}).get("total")
            if total is not None and offset >= total:
                break

            await asyncio.sleep(self.settings.meli_request_delay_seconds)
