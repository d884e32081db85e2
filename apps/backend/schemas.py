"""
Laburandik Seller Ops - Data Schemas
====================================
Pydantic models shared by services and routers.
"""

from datetime import date
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

Period = Literal["day", "week", "month"]
ComparisonType = Literal[
    "previous_period",
    "year_over_year",
    "month_over_month",
    "same_last_year",
    "month_before",
]
Role = Literal["admin", "manager"]


# =============================================================================
# OAuth
# =============================================================================

class TokenSet(BaseModel):
    """MercadoLibre OAuth tokens with an absolute expiry (epoch millis)."""

    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    expires_in: int = 3600
    expires_at: int = Field(..., description="Epoch milliseconds")
    user_id: Optional[str] = None
    scope: Optional[str] = None

    @classmethod
    def from_response(
        cls,
        data: Dict[str, Any],
        now_ms: int,
        previous_refresh_token: Optional[str] = None,
    ) -> "TokenSet":
        expires_in = int(data.get("expires_in") or 3600)
        user_id = data.get("user_id")
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or previous_refresh_token,
            token_type=data.get("token_type") or "Bearer",
            expires_in=expires_in,
            expires_at=now_ms + expires_in * 1000,
            user_id=str(user_id) if user_id is not None else None,
            scope=data.get("scope"),
        )


class TokenStatus(BaseModel):
    authenticated: bool
    needs_auth: bool
    reason: str
    expires_in_minutes: Optional[int] = None
    error: Optional[str] = None
    status_code: int = Field(default=200, exclude=True)


# =============================================================================
# Sales Analytics
# =============================================================================

class DateRange(BaseModel):
    """Inclusive date range; either end may be open."""

    start: Optional[date] = None
    end: Optional[date] = None

    @property
    def is_open(self) -> bool:
        return self.start is None or self.end is None


class DashboardRow(BaseModel):
    """Item-level aggregate returned by get_item_sales_aggregated."""

    model_config = ConfigDict(extra="allow")

    item_id: str
    item_orders: float = 0
    item_units: float = 0
    item_sales: float = 0
    item_discount: float = 0
    item_fee: float = 0
    item_cogs: float = 0
    item_shipping_cost: float = 0
    net_profit: float = 0
    ad_cost: float = 0
    refund_amount: float = 0
    refund_units: float = 0
    profit_margin: float = 0
    tacos: float = 0
    fees_percent: float = 0
    cogs_percent: float = 0
    shipping_percent: float = 0
    title: Optional[str] = None
    price: Optional[float] = None
    stock: Optional[float] = None
    available_quantity: Optional[float] = None
    thumbnail: Optional[str] = None
    permalink: Optional[str] = None
    status: Optional[str] = None
    sub_status: Optional[Any] = None
    unit_cogs: float = 0


class DailySalesRow(BaseModel):
    """Period-level aggregate returned by get_total_sales_aggregated."""

    model_config = ConfigDict(extra="allow")

    date: Optional[str] = None
    total_orders: float = 0
    total_units: float = 0
    total_sales: float = 0
    total_discount: float = 0
    total_fee: float = 0
    total_cogs: float = 0
    total_shipping_cost: float = 0
    gross_profit: float = 0
    net_profit: float = 0
    ad_cost: float = 0
    refund_amount: float = 0
    refund_units: float = 0
    profit_margin: float = 0
    tacos: float = 0
    fees_percent: float = 0
    cogs_percent: float = 0
    shipping_percent: float = 0


class ComparisonData(BaseModel):
    base_table_data: List[DashboardRow]
    comparison_table_data: List[DashboardRow]
    base_chart_data: List[DailySalesRow]
    comparison_chart_data: List[DailySalesRow]


# =============================================================================
# Packing
# =============================================================================

class PackerInfo(BaseModel):
    """Identity stamped on packing rows."""

    id: Optional[str] = None
    name: str = "Usuario"
    email: Optional[str] = None


class ScanRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=2000)
    track_session: bool = True


class PackRequest(BaseModel):
    shipment_id: str = Field(..., min_length=1)


class BulkPackRequest(BaseModel):
    shipment_ids: List[str] = Field(..., min_length=1)


class ScanSessionRequest(BaseModel):
    shipment_ids: List[str] = Field(..., min_length=1)


# =============================================================================
# COGS
# =============================================================================

class CogsUpdate(BaseModel):
    cogs: Any = 0


class BulkCogsRequest(BaseModel):
    """Rows as uploaded; each is validated individually so one bad row does not reject the batch."""

    items: List[Dict[str, Any]] = Field(..., min_length=1)


class BulkCogsResult(BaseModel):
    success: bool
    processed: int
    total: int
    valid_items: int
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    data: List[Dict[str, Any]] = Field(default_factory=list)


# =============================================================================
# Organizations
# =============================================================================

class CreateOrganizationRequest(BaseModel):
    organization_name: str = Field(..., min_length=1)
    admin_user_id: str = Field(..., min_length=1)


class AutoAssignRequest(BaseModel):
    user_id: str = Field(..., min_length=1)


class AllowedEmailRequest(BaseModel):
    email: str = Field(..., min_length=3)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        v = v.strip().lower()
        if "@" not in v:
            raise ValueError("email must contain '@'")
        return v


class RoleUpdateRequest(BaseModel):
    role: Role


class CurrentAccountRequest(BaseModel):
    meli_user_id: str = Field(..., min_length=1)


class MeliAccountRequest(BaseModel):
    """Subset of /users/me persisted per organization."""

    model_config = ConfigDict(extra="allow")

    id: Any
    nickname: Optional[str] = None
    permalink: Optional[str] = None
    thumbnail: Optional[Dict[str, Any]] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    country_id: Optional[str] = None
    site_id: Optional[str] = None
