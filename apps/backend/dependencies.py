"""
Laburandik Seller Ops - Request Dependencies
============================================
FastAPI dependencies resolving the calling user, their organization and
the service clients a route needs.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Depends, Header

from config import Settings, get_settings
from connection_pool import ConnectionPool
from exceptions import ForbiddenError, UnauthorizedError
from logging_config import get_logger
from schemas import PackerInfo
from services.database import DatabaseClient
from services.meli_client import MeliClient
from services.organization_service import OrganizationService
from services.scan_utils import ScanDebouncer
from services.token_store import TokenManager, TokenOwner, get_token_store

logger = get_logger(__name__)


@dataclass
class OrgContext:
    """Authenticated user plus their organization membership."""

    user: Dict[str, Any]
    organization_id: str
    role: str
    current_meli_user_id: Optional[str] = None

    @property
    def user_id(self) -> str:
        return self.user["id"]

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def token_owner(self) -> TokenOwner:
        return TokenOwner(
            organization_id=self.organization_id,
            meli_user_id=self.current_meli_user_id,
            user_id=self.user_id,
        )


def packer_from_user(user: Dict[str, Any]) -> PackerInfo:
    metadata = user.get("user_metadata") or {}
    return PackerInfo(
        id=user.get("id"),
        name=metadata.get("name") or metadata.get("full_name") or "Usuario",
        email=user.get("email"),
    )


# =============================================================================
# Clients
# =============================================================================

async def get_pool() -> ConnectionPool:
    return await ConnectionPool.get_instance()


async def get_database(pool: ConnectionPool = Depends(get_pool)) -> DatabaseClient:
    return pool.database


async def get_meli(pool: ConnectionPool = Depends(get_pool)) -> MeliClient:
    return pool.meli


async def get_token_manager(
    pool: ConnectionPool = Depends(get_pool),
    settings: Settings = Depends(get_settings),
) -> TokenManager:
    store = get_token_store(settings, db=pool.database, redis=pool.redis)
    return TokenManager(store, pool.meli, settings)


_debouncer: Optional[ScanDebouncer] = None


def get_debouncer() -> ScanDebouncer:
    global _debouncer
    if _debouncer is None:
        _debouncer = ScanDebouncer(get_settings().scan_debounce_seconds)
    return _debouncer


# =============================================================================
# Authentication
# =============================================================================

def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise UnauthorizedError()
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise UnauthorizedError("Malformed Authorization header")
    return token.strip()


async def get_current_user(
    authorization: Optional[str] = Header(default=None),
    db: DatabaseClient = Depends(get_database),
) -> Dict[str, Any]:
    """
    Resolve the bearer session token to an auth user.

    Raises:
        UnauthorizedError: Missing, malformed or rejected token
    """
    user = await db.get_user(_bearer_token(authorization))
    if not user or not user.get("id"):
        raise UnauthorizedError("Invalid or expired session")
    return user


async def get_org_context(
    user: Dict[str, Any] = Depends(get_current_user),
    db: DatabaseClient = Depends(get_database),
) -> OrgContext:
    """
    Raises:
        OrganizationRequiredError: The user has not joined an organization yet
    """
    membership = await OrganizationService(db).require_membership(user["id"])
    current = membership.get("current_meli_user_id")
    return OrgContext(
        user=user,
        organization_id=membership["organization_id"],
        role=membership.get("role") or "manager",
        current_meli_user_id=str(current) if current is not None else None,
    )


async def require_admin(ctx: OrgContext = Depends(get_org_context)) -> OrgContext:
    if not ctx.is_admin:
        logger.warning("Admin route denied", user_id=ctx.user_id, role=ctx.role)
        raise ForbiddenError()
    return ctx
