"""
Laburandik Seller Ops - Organizations
=====================================
Membership, invitations and connected MercadoLibre accounts of an
organization.
"""

from typing import Any, Dict, List, Optional

from exceptions import OrganizationRequiredError, ValidationError
from logging_config import get_logger
from services.database import DatabaseClient

logger = get_logger(__name__)

ROLES = ("admin", "manager")
INVITED_ROLE = "manager"


class OrganizationService:
    """Reads and writes organization membership data."""

    def __init__(self, db: DatabaseClient):
        self.db = db

    # =========================================================================
    # Membership
    # =========================================================================

    async def get_membership(self, user_id: str) -> Optional[Dict[str, Any]]:
        """organization_id, role and current_meli_user_id of a user, or None."""
        return await (
            self.db.table("organization_users")
            .select("organization_id,role,current_meli_user_id")
            .eq("user_id", user_id)
            .limit(1)
            .maybe_single()
            .execute()
        )

    async def require_membership(self, user_id: str) -> Dict[str, Any]:
        membership = await self.get_membership(user_id)
        if not membership or not membership.get("organization_id"):
            raise OrganizationRequiredError(context={"user_id": user_id})
        return membership

    async def create_organization(self, name: str, admin_user_id: str) -> Any:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Organization name is required", field="organization_name")

        result = await self.db.rpc(
            "create_organization", {"org_name": name, "admin_uuid": admin_user_id}
        )
        logger.info("Organization created", name=name, admin_user_id=admin_user_id)
        return result

    async def auto_assign_user(self, user_id: str) -> Any:
        """Attach a user to the organization that allow-listed their email."""
        result = await self.db.rpc("auto_assign_user_to_organization", {"user_uuid": user_id})
        logger.info("Auto-assign attempted", user_id=user_id, result=result)
        return result

    async def list_users(self, organization_id: str) -> List[Dict[str, Any]]:
        return await (
            self.db.table("organization_users_with_emails")
            .select("*")
            .eq("organization_id", organization_id)
            .order("invited_at", desc=True)
            .execute()
        )

    async def update_user_role(
        self, membership_id: str, role: str, organization_id: Optional[str] = None
    ) -> Dict[str, Any]:
        if role not in ROLES:
            raise ValidationError("Role must be admin or manager", field="role", value=role)
        query = self.db.table("organization_users").update({"role": role}).eq("id", membership_id)
        if organization_id:
            query = query.eq("organization_id", organization_id)
        return await query.single().execute()

    async def delete_user(self, membership_id: str, organization_id: Optional[str] = None) -> None:
        query = self.db.table("organization_users").delete().eq("id", membership_id)
        if organization_id:
            query = query.eq("organization_id", organization_id)
        await query.execute()
        logger.info("Organization user removed", membership_id=membership_id)

    # =========================================================================
    # Allowed emails
    # =========================================================================

    async def list_allowed_emails(self, organization_id: str) -> List[Dict[str, Any]]:
        return await (
            self.db.table("allowed_emails")
            .select("*")
            .eq("organization_id", organization_id)
            .order("added_at", desc=True)
            .execute()
        )

    async def add_allowed_email(
        self, organization_id: str, email: str, added_by: Optional[str]
    ) -> Dict[str, Any]:
        email = (email or "").strip().lower()
        if "@" not in email:
            raise ValidationError("Invalid email", field="email", value=email)
        return await self.db.table("allowed_emails").insert({
            "organization_id": organization_id,
            "email": email,
            "role": INVITED_ROLE,
            "added_by": added_by,
        }).single().execute()

    async def delete_allowed_email(self, email_id: str, organization_id: Optional[str] = None) -> None:
        query = self.db.table("allowed_emails").delete().eq("id", email_id)
        if organization_id:
            query = query.eq("organization_id", organization_id)
        await query.execute()

    # =========================================================================
    # MercadoLibre accounts
    # =========================================================================

    async def list_meli_accounts(self, organization_id: str) -> List[Dict[str, Any]]:
        return await (
            self.db.table("meli_accounts")
            .select("*")
            .eq("organization_id", organization_id)
            .execute()
        )

    async def store_meli_account(
        self, organization_id: str, user_info: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Upsert the /users/me profile of a connected seller account."""
        meli_user_id = user_info.get("id")
        if meli_user_id is None:
            raise ValidationError("MercadoLibre user id is required", field="id")

        record = {
            "organization_id": organization_id,
            "meli_user_id": str(meli_user_id),
            "nickname": user_info.get("nickname"),
            "permalink": user_info.get("permalink"),
            "thumbnail_url": (user_info.get("thumbnail") or {}).get("picture_url"),
            "first_name": user_info.get("first_name"),
            "last_name": user_info.get("last_name"),
            "country_id": user_info.get("country_id"),
            "site_id": user_info.get("site_id"),
        }
        rows = await (
            self.db.table("meli_accounts")
            .upsert(record, on_conflict="organization_id,meli_user_id")
            .execute()
        )
        logger.info("MercadoLibre account stored", meli_user_id=record["meli_user_id"])
        return rows[0] if rows else record

    async def set_current_account(self, user_id: str, meli_user_id: str) -> List[Dict[str, Any]]:
        return await (
            self.db.table("organization_users")
            .update({"current_meli_user_id": meli_user_id})
            .eq("user_id", user_id)
            .execute()
        )
