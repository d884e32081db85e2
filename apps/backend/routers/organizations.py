"""
Organizations Router
====================
Onboarding (create / auto-assign) and admin management of members and
allow-listed emails.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends

from dependencies import OrgContext, get_current_user, get_database, require_admin
from exceptions import ForbiddenError, ValidationError
from logging_config import get_logger
from schemas import (
    AllowedEmailRequest,
    AutoAssignRequest,
    CreateOrganizationRequest,
    RoleUpdateRequest,
)
from services.database import DatabaseClient
from services.organization_service import OrganizationService

logger = get_logger(__name__)

# Mounted under /db: onboarding calls made before the user has an organization.
onboarding_router = APIRouter()

# Mounted under /api/organization: admin management.
router = APIRouter()


@onboarding_router.post("/organization/create")
async def create_organization(
    request: CreateOrganizationRequest,
    user: Dict[str, Any] = Depends(get_current_user),
    db: DatabaseClient = Depends(get_database),
):
    if user["id"] != request.admin_user_id:
        raise ForbiddenError("Only the requesting user can become the admin")
    return await OrganizationService(db).create_organization(
        request.organization_name, request.admin_user_id
    )


@onboarding_router.post("/user/auto-assign")
async def auto_assign(
    request: AutoAssignRequest,
    user: Dict[str, Any] = Depends(get_current_user),
    db: DatabaseClient = Depends(get_database),
):
    if user["id"] != request.user_id:
        raise ForbiddenError("Users can only assign themselves")
    return await OrganizationService(db).auto_assign_user(request.user_id)


@router.get("/users")
async def list_users(
    ctx: OrgContext = Depends(require_admin),
    db: DatabaseClient = Depends(get_database),
):
    return {"users": await OrganizationService(db).list_users(ctx.organization_id)}


@router.patch("/users/{membership_id}")
async def update_user_role(
    membership_id: str,
    request: RoleUpdateRequest,
    ctx: OrgContext = Depends(require_admin),
    db: DatabaseClient = Depends(get_database),
):
    row = await OrganizationService(db).update_user_role(
        membership_id, request.role, organization_id=ctx.organization_id
    )
    logger.info("Role updated", membership_id=membership_id, role=request.role)
    return {"success": True, "data": row}


@router.delete("/users/{membership_id}")
async def delete_user(
    membership_id: str,
    ctx: OrgContext = Depends(require_admin),
    db: DatabaseClient = Depends(get_database),
):
    orgs = OrganizationService(db)
    members = await orgs.list_users(ctx.organization_id)
    target = next((m for m in members if str(m.get("id")) == membership_id), None)
    if target is None:
        raise ValidationError("User is not a member of this organization", field="id",
                              value=membership_id)
    if target.get("user_id") == ctx.user_id:
        raise ValidationError("Admins cannot remove themselves", field="id")
    await orgs.delete_user(membership_id, organization_id=ctx.organization_id)
    return {"success": True}


@router.get("/allowed-emails")
async def list_allowed_emails(
    ctx: OrgContext = Depends(require_admin),
    db: DatabaseClient = Depends(get_database),
):
    return {"emails": await OrganizationService(db).list_allowed_emails(ctx.organization_id)}


@router.post("/allowed-emails", status_code=201)
async def add_allowed_email(
    request: AllowedEmailRequest,
    ctx: OrgContext = Depends(require_admin),
    db: DatabaseClient = Depends(get_database),
):
    row = await OrganizationService(db).add_allowed_email(
        ctx.organization_id, request.email, ctx.user_id
    )
    return {"success": True, "data": row}


@router.delete("/allowed-emails/{email_id}")
async def delete_allowed_email(
    email_id: str,
    ctx: OrgContext = Depends(require_admin),
    db: DatabaseClient = Depends(get_database),
):
    await OrganizationService(db).delete_allowed_email(
        email_id, organization_id=ctx.organization_id
    )
    return {"success": True}
