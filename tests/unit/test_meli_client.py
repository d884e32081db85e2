"""
Unit Tests - MercadoLibre Client
================================
OAuth calls, status mapping, batching and order paging.
"""

import time
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from exceptions import (
    InsufficientPermissionsError,
    InvalidTokenError,
    MeliAPIError,
    MissingCredentialsError,
    NotFoundError,
    RateLimitedError,
    RefreshFailedError,
)
from services.meli_client import MeliClient, raise_for_meli_status


class TestOAuth:

    @pytest.mark.unit
    def test_authorization_url(self, meli):
        url = meli.build_authorization_url(state="org-1:user-1")
        query = parse_qs(urlparse(url).query)

        assert url.startswith("https://auth.mercadolibre.com.ar/authorization?")
        assert query["client_id"] == ["test-client-id"]
        assert query["response_type"] == ["code"]
        assert query["state"] == ["org-1:user-1"]

    @pytest.mark.unit
    def test_authorization_url_requires_client_id(self, mock_settings):
        client = MeliClient(mock_settings.model_copy(update={"meli_client_id": ""}))
        with pytest.raises(MissingCredentialsError):
            client.build_authorization_url()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_exchange_code(self, meli, meli_upstream):
        meli_upstream.respond("POST", "/oauth/token", {
            "access_token": "AT", "refresh_token": "RT", "expires_in": 21600, "user_id": 777,
        })
        before = int(time.time() * 1000)

        tokens = await meli.exchange_code("TG-code")

        assert tokens.access_token == "AT"
        assert tokens.user_id == "777"
        assert before + 21600 * 1000 <= tokens.expires_at <= int(time.time() * 1000) + 21600 * 1000
        form = meli_upstream.requests[0].content.decode()
        assert "grant_type=authorization_code" in form
        assert "code=TG-code" in form

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_token_without_access_token(self, meli, meli_upstream):
        meli_upstream.respond("POST", "/oauth/token", {"token_type": "bearer"})
        with pytest.raises(RefreshFailedError):
            await meli.refresh("RT")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unconfigured_credentials(self, mock_settings, meli_upstream):
        settings = mock_settings.model_copy(update={"meli_client_secret": ""})
        client = MeliClient(settings, http_client=httpx.AsyncClient(
            transport=httpx.MockTransport(meli_upstream), base_url="https://api.meli.test"))
        with pytest.raises(MissingCredentialsError):
            await client.exchange_code("code")
        assert meli_upstream.requests == []


class TestStatusMapping:

    @pytest.mark.unit
    @pytest.mark.parametrize("status,error", [
        (401, InvalidTokenError),
        (403, InsufficientPermissionsError),
        (404, NotFoundError),
        (429, RateLimitedError),
        (500, MeliAPIError),
    ])
    def test_error_statuses(self, status, error):
        with pytest.raises(error):
            raise_for_meli_status(httpx.Response(status, text="nope"), "/items/MLA1")

    @pytest.mark.unit
    def test_success_passes(self):
        raise_for_meli_status(httpx.Response(200, json={}), "/items/MLA1")

    @pytest.mark.unit
    def test_auth_errors_flag_reconnect(self):
        with pytest.raises(InvalidTokenError) as exc:
            raise_for_meli_status(httpx.Response(401), "/users/me")
        assert exc.value.to_dict()["needs_auth"] is True


class TestReads:
    """Batched item lookups and order paging."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_items_batches_and_skips_failures(self, meli, meli_upstream):
        def responder(request: httpx.Request) -> httpx.Response:
            ids = request.url.params["ids"].split(",")
            if "C" in ids:
                return httpx.Response(500, text="boom")
            return httpx.Response(200, json=[
                {"code": 200, "body": {"id": i, "title": f"Item {i}"}} for i in ids
            ])

        meli_upstream.handle("GET", "/items", responder)

        items = await meli.get_items("AT", ["A", "B", " ", "C"])

        assert sorted(items) == ["A", "B"]
        batches = [r.url.params["ids"] for r in meli_upstream.calls("GET", "/items")]
        assert batches == ["A,B", "C"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_iter_orders_pages_until_total(self, meli, meli_upstream):
        def responder(request: httpx.Request) -> httpx.Response:
            offset = int(request.url.params["offset"])
            ids = [n for n in range(offset, min(offset + 2, 3))]
            return httpx.Response(200, json={
                "results": [{"id": n} for n in ids],
                "paging": {"total": 3, "offset": offset},
            })

        meli_upstream.handle("GET", "/orders/search", responder)

        orders = [o async for o in meli.iter_orders("AT", 777, "from", "to")]

        assert [o["id"] for o in orders] == [0, 1, 2]
        offsets = [r.url.params["offset"] for r in meli_upstream.calls("GET", "/orders/search")]
        assert offsets == ["0", "2"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_iter_orders_stops_at_cap(self, mock_settings, meli_upstream):
        settings = mock_settings.model_copy(update={"meli_max_orders": 3})
        client = MeliClient(settings, http_client=httpx.AsyncClient(
            transport=httpx.MockTransport(meli_upstream), base_url="https://api.meli.test"))
        meli_upstream.respond("GET", "/orders/search", {
            "results": [{"id": 1}, {"id": 2}], "paging": {"total": 100},
        })

        orders = [o async for o in client.iter_orders("AT", 777, "from", "to")]

        assert len(orders) == 3
        assert len(meli_upstream.calls("GET", "/orders/search")) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_connection_errors_retried_then_mapped(self, mock_settings):
        attempts = []

        def unreachable(request):
            attempts.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        client = MeliClient(mock_settings, http_client=httpx.AsyncClient(
            transport=httpx.MockTransport(unreachable), base_url="https://api.meli.test"))

        with pytest.raises(MeliAPIError) as exc:
            await client.get_me("AT")

        assert len(attempts) == 3
        assert exc.value.context["endpoint"] == "/users/me"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_http_errors_not_retried(self, meli, meli_upstream):
        meli_upstream.respond("GET", "/items/MLA1", {"message": "not found"}, status=404)

        with pytest.raises(NotFoundError):
            await meli.get_item("AT", "MLA1")

        assert len(meli_upstream.requests) == 1
