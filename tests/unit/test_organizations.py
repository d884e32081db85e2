"""
Unit Tests - Organizations & Catalog
====================================
Membership lookups, invitations, connected accounts, category tree and
product grouping.
"""

import httpx
import pytest

from conftest import MockUpstream
from exceptions import OrganizationRequiredError, ValidationError
from services.catalog_service import CatalogService, build_category_tree, group_products
from services.organization_service import OrganizationService


class TestOrganizationService:
    """Org-scoped reads and writes."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_membership_required(self, db, db_upstream):
        db_upstream.respond("GET", "/rest/v1/organization_users", [])
        with pytest.raises(OrganizationRequiredError) as exc:
            await OrganizationService(db).require_membership("user-1")
        assert exc.value.status_code == 403
        assert exc.value.reason == "ORGANIZATION_REQUIRED"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_organization(self, db, db_upstream):
        db_upstream.respond("POST", "/rest/v1/rpc/create_organization", "org-1")

        result = await OrganizationService(db).create_organization("  Laburandik  ", "user-1")

        assert result == "org-1"
        assert MockUpstream.body(db_upstream.requests[0]) == {
            "org_name": "Laburandik", "admin_uuid": "user-1",
        }

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_blank_organization_name(self, db, db_upstream):
        with pytest.raises(ValidationError):
            await OrganizationService(db).create_organization("   ", "user-1")
        assert db_upstream.requests == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_role_update_scoped_to_org(self, db, db_upstream):
        db_upstream.respond("PATCH", "/rest/v1/organization_users", [{"id": "m-2", "role": "admin"}])

        row = await OrganizationService(db).update_user_role("m-2", "admin", organization_id="org-1")

        assert row["role"] == "admin"
        params = MockUpstream.params(db_upstream.requests[0])
        assert ("id", "eq.m-2") in params
        assert ("organization_id", "eq.org-1") in params

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_role(self, db):
        with pytest.raises(ValidationError):
            await OrganizationService(db).update_user_role("m-2", "owner")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_allowed_email_normalized(self, db, db_upstream):
        db_upstream.handle("POST", "/rest/v1/allowed_emails",
                           lambda r: httpx.Response(201, json=[MockUpstream.body(r)]))

        row = await OrganizationService(db).add_allowed_email("org-1", " Packer@Shop.COM ", "user-1")

        assert row["email"] == "packer@shop.com"
        assert row["role"] == "manager"
        assert row["added_by"] == "user-1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_store_meli_account(self, db, db_upstream):
        db_upstream.handle("POST", "/rest/v1/meli_accounts",
                           lambda r: httpx.Response(201, json=[MockUpstream.body(r)]))

        account = await OrganizationService(db).store_meli_account("org-1", {
            "id": 777,
            "nickname": "LABURANDIK",
            "thumbnail": {"picture_url": "https://img/me.jpg"},
            "site_id": "MLA",
        })

        assert account["meli_user_id"] == "777"
        assert account["thumbnail_url"] == "https://img/me.jpg"
        params = MockUpstream.params(db_upstream.requests[0])
        assert ("on_conflict", "organization_id,meli_user_id") in params

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_store_meli_account_requires_id(self, db):
        with pytest.raises(ValidationError):
            await OrganizationService(db).store_meli_account("org-1", {"nickname": "x"})


class TestCategoryTree:

    @pytest.mark.unit
    def test_children_attached_by_category_id(self):
        main = [{"category_id": "MLA1", "name": "Ropa"}, {"category_id": "MLA2", "name": "Hogar"}]
        everything = main + [
            {"category_id": "MLA11", "name": "Remeras", "parent_category_id": "MLA1"},
            {"category_id": "MLA12", "name": "Gorras", "parent_category_id": "MLA1"},
        ]

        tree = build_category_tree(main, everything)

        assert [c["name"] for c in tree["categories"][0]["children"]] == ["Remeras", "Gorras"]
        assert tree["categories"][1]["children"] == []
        assert tree["summary"] == {"main_count": 2, "sub_count": 2}


class TestProductGrouping:
    """Variations nested under products; families collapse into the oldest listing."""

    @pytest.mark.unit
    def test_variations_nested(self):
        products = [{"id": "MLA1", "created_at": "2026-01-01"}]
        variations = [
            {"item_id": "MLA1", "id": 11, "user_product_id": "UP11"},
            {"item_id": "MLA1", "id": 12},
        ]

        grouped = group_products(products, variations)

        assert grouped[0]["variations_count"] == 2
        assert [v["id"] for v in grouped[0]["variations"]] == ["UP11", "MLA1_12"]
        assert all(v["type"] == "variation" for v in grouped[0]["variations"])
        assert grouped[0]["family_size"] == 1

    @pytest.mark.unit
    def test_family_collapses_into_oldest(self):
        products = [
            {"id": "MLA2", "family_name": "Remera", "created_at": "2026-02-01",
             "thumbnail": "t2.jpg"},
            {"id": "MLA1", "family_name": "Remera", "created_at": "2026-01-01"},
            {"id": "MLA9", "created_at": "2026-03-01"},
        ]

        grouped = group_products(products, [])

        assert [p["id"] for p in grouped] == ["MLA9", "MLA1"]
        family = grouped[1]
        assert family["family_size"] == 2
        sibling = family["variations"][0]
        assert sibling["type"] == "family_item"
        assert sibling["seller_sku"] == "ITEM-MLA2"
        assert sibling["picture_url"] == "t2.jpg"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_foreign_account_not_listed(self, db, db_upstream):
        db_upstream.respond("GET", "/rest/v1/meli_accounts", [{"meli_user_id": 777}])

        products = await CatalogService(db).list_products("org-1", meli_user_id="999")

        assert products == []
        assert db_upstream.calls("GET", "/rest/v1/meli_items") == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_products_of_all_accounts(self, db, db_upstream):
        db_upstream.respond("GET", "/rest/v1/meli_accounts",
                            [{"meli_user_id": 777}, {"meli_user_id": 888}])
        db_upstream.respond("GET", "/rest/v1/meli_items", [{"id": "MLA1", "created_at": "2026-01-01"}])
        db_upstream.respond("GET", "/rest/v1/meli_variations", [{"item_id": "MLA1", "id": 11}])

        products = await CatalogService(db).list_products("org-1")

        assert products[0]["variations_count"] == 1
        items_query = MockUpstream.params(db_upstream.calls("GET", "/rest/v1/meli_items")[0])
        assert ("meli_user_id", 'in.("777","888")') in items_query
        assert ("limit", "1000") in items_query
