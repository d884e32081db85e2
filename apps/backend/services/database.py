"""
Laburandik Seller Ops - Hosted Database Client
==============================================
Async PostgREST client for the hosted Postgres (tables, RPCs, auth).

Example:
    ```python
    db = DatabaseClient(settings)
    rows = await (
        db.table("shipment_packing")
        .select("*")
        .eq("shipment_id", "4321")
        .order("created_at", desc=True)
        .limit(1)
        .execute()
    )
    totals = await db.rpc("get_total_sales_aggregated", {"org_id": org_id, ...})
    ```
"""

import json
import time
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import httpx

from config import Settings, get_settings
from exceptions import DatabaseError
from logging_config import get_logger
import metrics as app_metrics

logger = get_logger(__name__)

Row = Dict[str, Any]


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


def _format_in_list(values: Iterable[Any]) -> str:
    parts = []
    for value in values:
        if isinstance(value, str):
            escaped = value.replace("\\", "\\\\").replace('"', '\\"')
            parts.append(f'"{escaped}"')
        else:
            parts.append(_format_value(value))
    return "(" + ",".join(parts) + ")"


class TableQuery:
    """
    Chainable query against one table or view.

    Filters apply to select, update and delete. Nothing is sent until
    execute() is awaited.
    """

    def __init__(self, client: "DatabaseClient", table: str):
        self._client = client
        self._table = table
        self._method = "GET"
        self._select: Optional[str] = None
        self._filters: List[Tuple[str, str]] = []
        self._order: List[str] = []
        self._limit: Optional[int] = None
        self._body: Any = None
        self._prefer: List[str] = []
        self._on_conflict: Optional[str] = None
        self._single = False
        self._maybe_single = False

    # -- operations ---------------------------------------------------------

    def select(self, columns: str = "*") -> "TableQuery":
        self._select = columns
        return self

    def insert(self, rows: Union[Row, List[Row]]) -> "TableQuery":
        self._method = "POST"
        self._body = rows
        self._prefer.append("return=representation")
        return self

    def upsert(
        self,
        rows: Union[Row, List[Row]],
        on_conflict: Optional[str] = None,
    ) -> "TableQuery":
        self._method = "POST"
        self._body = rows
        self._on_conflict = on_conflict
        self._prefer.extend(["resolution=merge-duplicates", "return=representation"])
        return self

    def update(self, values: Row) -> "TableQuery":
        self._method = "PATCH"
        self._body = values
        self._prefer.append("return=representation")
        return self

    def delete(self) -> "TableQuery":
        self._method = "DELETE"
        self._prefer.append("return=representation")
        return self

    # -- filters ------------------------------------------------------------

    def eq(self, column: str, value: Any) -> "TableQuery":
        self._filters.append((column, f"eq.{_format_value(value)}"))
        return self

    def gte(self, column: str, value: Any) -> "TableQuery":
        self._filters.append((column, f"gte.{_format_value(value)}"))
        return self

    def lte(self, column: str, value: Any) -> "TableQuery":
        self._filters.append((column, f"lte.{_format_value(value)}"))
        return self

    def in_(self, column: str, values: Iterable[Any]) -> "TableQuery":
        self._filters.append((column, f"in.{_format_in_list(values)}"))
        return self

    def is_(self, column: str, value: Optional[bool]) -> "TableQuery":
        self._filters.append((column, f"is.{_format_value(value)}"))
        return self

    # -- modifiers ----------------------------------------------------------

    def order(self, column: str, desc: bool = False) -> "TableQuery":
        self._order.append(f"{column}.{'desc' if desc else 'asc'}")
        return self

    def limit(self, count: int) -> "TableQuery":
        self._limit = count
        return self

    def single(self) -> "TableQuery":
        """Require exactly one row; execute() returns a dict."""
        self._single = True
        return self

    def maybe_single(self) -> "TableQuery":
        """Allow zero or one row; execute() returns a dict or None."""
        self._maybe_single = True
        return self

    # -- execution ----------------------------------------------------------

    def build_params(self) -> List[Tuple[str, str]]:
        params: List[Tuple[str, str]] = []
        if self._select is not None:
            params.append(("select", self._select))
        params.extend(self._filters)
        if self._order:
            params.append(("order", ",".join(self._order)))
        if self._limit is not None:
            params.append(("limit", str(self._limit)))
        if self._on_conflict:
            params.append(("on_conflict", self._on_conflict))
        return params

    async def execute(self) -> Any:
        headers = {}
        if self._prefer:
            headers["Prefer"] = ",".join(self._prefer)

        data = await self._client.request(
            self._method,
            f"/rest/v1/{self._table}",
            params=self.build_params(),
            json_body=self._body,
            headers=headers,
            kind="table",
            relation=self._table,
        )
        rows = data if isinstance(data, list) else ([data] if data else [])

        if self._single:
            if len(rows) != 1:
                raise DatabaseError(
                    f"Expected a single row from {self._table}, got {len(rows)}",
                    code="PGRST116",
                    relation=self._table,
                )
            return rows[0]
        if self._maybe_single:
            if len(rows) > 1:
                raise DatabaseError(
                    f"Expected at most one row from {self._table}, got {len(rows)}",
                    code="PGRST116",
                    relation=self._table,
                )
            return rows[0] if rows else None
        return rows


class DatabaseClient:
    """
    Thin async client for the hosted database REST surface.

    Authenticates server-side with the service-role key. Pass an existing
    httpx.AsyncClient to share a connection pool (or a mock transport in
    tests).
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=self.settings.supabase_url,
            timeout=httpx.Timeout(self.settings.http_timeout_seconds, connect=10.0),
        )
        key = self.settings.supabase_service_role_key
        self._headers = {
            "apikey": key,
            "Authorization": f"Bearer {key}",
            "Content-Type": "application/json",
        }

    async def __aenter__(self) -> "DatabaseClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def table(self, name: str) -> TableQuery:
        return TableQuery(self, name)

    async def rpc(self, function: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Call a stored procedure and return its decoded JSON result."""
        return await self.request(
            "POST",
            f"/rest/v1/rpc/{function}",
            json_body=params or {},
            kind="rpc",
            relation=function,
        )

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[List[Tuple[str, str]]] = None,
        json_body: Any = None,
        headers: Optional[Dict[str, str]] = None,
        kind: str = "table",
        relation: Optional[str] = None,
    ) -> Any:
        start = time.time()
        try:
            response = await self._client.request(
                method,
                path,
                params=params,
                json=json_body,
                headers={**self._headers, **(headers or {})},
            )
        except httpx.RequestError as e:
            app_metrics.database_requests_total.labels(kind=kind, outcome="network_error").inc()
            logger.error("Database request failed", relation=relation, error=str(e))
            raise DatabaseError(
                f"Database unreachable: {e}", relation=relation, original_error=e
            ) from e
        finally:
            app_metrics.database_request_duration_seconds.labels(kind=kind).observe(
                time.time() - start
            )

        if response.status_code >= 400:
            app_metrics.database_requests_total.labels(kind=kind, outcome="error").inc()
            payload = self._error_payload(response)
            logger.warning(
                "Database request rejected",
                relation=relation,
                status=response.status_code,
                code=payload.get("code"),
            )
            raise DatabaseError(
                payload.get("message") or f"Database returned {response.status_code}",
                code=payload.get("code"),
                details=payload.get("details"),
                hint=payload.get("hint"),
                relation=relation,
            )

        app_metrics.database_requests_total.labels(kind=kind, outcome="ok").inc()
        if not response.content:
            return None
        return response.json()

    @staticmethod
    def _error_payload(response: httpx.Response) -> Dict[str, Any]:
        try:
            payload = response.json()
        except (json.JSONDecodeError, ValueError):
            return {"message": response.text}
        return payload if isinstance(payload, dict) else {"message": str(payload)}

    async def get_user(self, access_token: str) -> Optional[Row]:
        """
        Resolve an app-user session token.

        Returns:
            The auth user record, or None if the token is invalid/expired
        """
        apikey = self.settings.supabase_anon_key or self.settings.supabase_service_role_key
        try:
            response = await self._client.get(
                "/auth/v1/user",
                headers={"apikey": apikey, "Authorization": f"Bearer {access_token}"},
            )
        except httpx.RequestError as e:
            raise DatabaseError(f"Auth service unreachable: {e}", original_error=e) from e

        if response.status_code in (401, 403):
            return None
        if response.status_code >= 400:
            raise DatabaseError(f"Auth service returned {response.status_code}")
        return response.json()

    async def health_check(self) -> str:
        try:
            response = await self._client.get("/rest/v1/", headers=self._headers)
            return "healthy" if response.status_code < 500 else "unhealthy"
        except httpx.RequestError as e:
            logger.warning("Database health check failed", error=str(e))
            return "unhealthy"

    async def close(self):
        if self._owns_client:
            await self._client.aclose()
