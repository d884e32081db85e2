"""
Unit Tests - OAuth Token Storage
================================
Expiry parsing, refresh-on-read and the status report.
"""

import time

import httpx
import pytest

from conftest import MockUpstream
from exceptions import (
    DatabaseError,
    NoAuthenticationError,
    RefreshFailedError,
    SessionExpiredError,
)
from schemas import TokenSet
from services.token_store import (
    DatabaseTokenStore,
    KVTokenStore,
    TokenOwner,
    get_token_store,
    parse_expires_at,
)

OWNER = TokenOwner("org-1", meli_user_id="777", user_id="user-1")


def _ms(offset_seconds: int) -> int:
    return int(time.time() * 1000) + offset_seconds * 1000


class FakeRedis:
    """Records the hash and string commands the KV store issues."""

    def __init__(self):
        self.hashes = {}
        self.strings = {}
        self.ttls = {}

    async def get(self, key):
        return self.strings.get(key)

    async def set(self, key, value, ex=None):
        self.strings[key] = value
        self.ttls[key] = ex

    async def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    async def hset(self, key, mapping):
        self.hashes.setdefault(key, {}).update(mapping)

    async def expire(self, key, ttl):
        self.ttls[key] = ttl

    async def delete(self, key):
        self.hashes.pop(key, None)
        self.strings.pop(key, None)


class TestExpiryParsing:

    @pytest.mark.unit
    def test_numeric(self):
        assert parse_expires_at(1700000000000) == 1700000000000
        assert parse_expires_at("1700000000000") == 1700000000000

    @pytest.mark.unit
    def test_iso(self):
        assert parse_expires_at("2023-11-14T22:13:20Z") == 1700000000000
        assert parse_expires_at("2023-11-14T22:13:20") == 1700000000000

    @pytest.mark.unit
    @pytest.mark.parametrize("value", [None, True, "soon"])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_expires_at(value)

    @pytest.mark.unit
    def test_owner_key(self):
        assert OWNER.key == "org-1:777"
        assert TokenOwner("org-1").key == "org-1"


class TestTokenManager:
    """get_valid_access_token refreshes expired tokens on read."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_nothing_stored(self, token_manager):
        with pytest.raises(NoAuthenticationError):
            await token_manager.get_valid_access_token(OWNER)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_valid_token_returned_without_refresh(self, token_manager, token_store, meli_upstream):
        token_store.records[OWNER.key] = {"access_token": "AT", "refresh_token": "RT",
                                          "expires_at": _ms(600)}

        assert await token_manager.get_valid_access_token(OWNER) == "AT"
        assert meli_upstream.requests == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expired_token_refreshed(self, token_manager, token_store, meli_upstream):
        token_store.records[OWNER.key] = {"access_token": "OLD", "refresh_token": "RT",
                                          "expires_at": _ms(-60)}
        meli_upstream.respond("POST", "/oauth/token", {"access_token": "NEW", "expires_in": 21600})

        assert await token_manager.get_valid_access_token(OWNER) == "NEW"

        stored = token_store.records[OWNER.key]
        assert stored["access_token"] == "NEW"
        assert stored["refresh_token"] == "RT"
        assert stored["user_id"] == "777"
        form = meli_upstream.calls("POST", "/oauth/token")[0].content.decode()
        assert "grant_type=refresh_token" in form
        assert "refresh_token=RT" in form
        assert "client_secret=test-client-secret" in form

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unreadable_expiry_forces_refresh(self, token_manager, token_store, meli_upstream):
        token_store.records[OWNER.key] = {"access_token": "OLD", "refresh_token": "RT",
                                          "expires_at": "someday"}
        meli_upstream.respond("POST", "/oauth/token", {"access_token": "NEW", "expires_in": 60})

        assert await token_manager.get_valid_access_token(OWNER) == "NEW"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expired_without_refresh_token(self, token_manager, token_store):
        token_store.records[OWNER.key] = {"access_token": "OLD", "expires_at": _ms(-60)}
        with pytest.raises(SessionExpiredError):
            await token_manager.get_valid_access_token(OWNER)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refresh_rejected(self, token_manager, token_store, meli_upstream):
        token_store.records[OWNER.key] = {"access_token": "OLD", "refresh_token": "RT",
                                          "expires_at": _ms(-60)}
        meli_upstream.respond("POST", "/oauth/token", {"error": "invalid_grant"}, status=400)

        with pytest.raises(RefreshFailedError) as exc:
            await token_manager.get_valid_access_token(OWNER)

        assert exc.value.upstream_status == 400
        assert exc.value.needs_reauth is True
        assert token_store.records[OWNER.key]["access_token"] == "OLD"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_forced_refresh_needs_refresh_token(self, token_manager, token_store):
        token_store.records[OWNER.key] = {"access_token": "AT", "expires_at": _ms(600)}
        with pytest.raises(SessionExpiredError):
            await token_manager.refresh(OWNER)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_disconnect(self, token_manager, token_store):
        token_store.records[OWNER.key] = {"access_token": "AT"}
        await token_manager.disconnect(OWNER)
        assert OWNER.key not in token_store.records


class TestTokenStatus:
    """Status report for the settings screen."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_no_tokens(self, token_manager):
        status = await token_manager.status(OWNER)
        assert status.authenticated is False
        assert status.reason == "no_tokens"
        assert status.status_code == 200

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_valid(self, token_manager, token_store):
        token_store.records[OWNER.key] = {"access_token": "AT", "expires_at": _ms(3600)}
        status = await token_manager.status(OWNER)
        assert status.authenticated is True
        assert status.reason == "valid_token"
        assert 58 <= status.expires_in_minutes <= 60

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_storage_error(self, token_manager, token_store):
        token_store.fail_with = DatabaseError("relation meli_tokens does not exist")
        status = await token_manager.status(OWNER)
        assert status.reason == "token_storage_error"
        assert status.status_code == 500

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalid_expiry(self, token_manager, token_store):
        token_store.records[OWNER.key] = {"access_token": "AT", "expires_at": "never"}
        status = await token_manager.status(OWNER)
        assert status.reason == "invalid_token_expiry"
        assert status.status_code == 500

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_no_refresh_token(self, token_manager, token_store):
        token_store.records[OWNER.key] = {"access_token": "AT", "expires_at": _ms(-1)}
        status = await token_manager.status(OWNER)
        assert status.reason == "no_refresh_token"
        assert status.needs_auth is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refreshed(self, token_manager, token_store, meli_upstream):
        token_store.records[OWNER.key] = {"access_token": "AT", "refresh_token": "RT",
                                          "expires_at": _ms(-1)}
        meli_upstream.respond("POST", "/oauth/token", {"access_token": "NEW", "expires_in": 21600})

        status = await token_manager.status(OWNER)

        assert status.authenticated is True
        assert status.reason == "refreshed_token"
        assert status.expires_in_minutes == 360

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refresh_failed(self, token_manager, token_store, meli_upstream):
        token_store.records[OWNER.key] = {"access_token": "AT", "refresh_token": "RT",
                                          "expires_at": _ms(-1)}
        meli_upstream.respond("POST", "/oauth/token", {"error": "invalid_grant"}, status=400)

        status = await token_manager.status(OWNER)

        assert status.reason == "refresh_failed"
        assert status.status_code == 401
        assert status.model_dump(exclude_none=True)["needs_auth"] is True
        assert "status_code" not in status.model_dump()


class TestStores:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_database_store_get(self, db, db_upstream):
        db_upstream.respond("GET", "/rest/v1/meli_tokens", [{"access_token": "AT"}])

        record = await DatabaseTokenStore(db).get(OWNER)

        assert record == {"access_token": "AT"}
        params = MockUpstream.params(db_upstream.requests[0])
        assert ("organization_id", "eq.org-1") in params
        assert ("meli_user_id", "eq.777") in params
        assert ("order", "updated_at.desc") in params
        assert ("limit", "1") in params

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_database_store_save_upserts(self, db, db_upstream):
        db_upstream.handle("POST", "/rest/v1/meli_tokens",
                           lambda r: httpx.Response(201, json=[MockUpstream.body(r)]))
        tokens = TokenSet(access_token="AT", refresh_token="RT", expires_at=_ms(3600))

        await DatabaseTokenStore(db).save(OWNER, tokens)

        request = db_upstream.requests[0]
        body = MockUpstream.body(request)
        assert body["meli_user_id"] == "777"
        assert body["user_id"] == "user-1"
        assert body["refresh_token"] == "RT"
        assert ("on_conflict", "organization_id,meli_user_id") in MockUpstream.params(request)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_kv_store_ttl(self):
        redis = FakeRedis()
        store = KVTokenStore(redis, ttl_buffer_seconds=300)
        tokens = TokenSet(access_token="AT", expires_at=_ms(3600), user_id="777")

        await store.save(OWNER, tokens)

        key = "oauth_tokens:org-1:777"
        assert redis.hashes[key]["access_token"] == "AT"
        assert "refresh_token" not in redis.hashes[key]
        assert 3890 <= redis.ttls[key] <= 3900
        assert (await store.get(OWNER))["user_id"] == "777"

        await store.delete(OWNER)
        assert await store.get(OWNER) is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_kv_current_account_lookup(self):
        redis = FakeRedis()
        store = KVTokenStore(redis)
        await store.save(OWNER, TokenSet(access_token="AT", expires_at=_ms(3600), user_id="777"))

        assert redis.strings["oauth_tokens:org-1:current"] == "777"
        stored = await store.get(TokenOwner("org-1"))
        assert stored["access_token"] == "AT"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_kv_latest_account_is_current(self):
        store = KVTokenStore(FakeRedis())
        await store.save(OWNER, TokenSet(access_token="AT-777", expires_at=_ms(3600)))
        other = TokenOwner("org-1", meli_user_id="888")
        await store.save(other, TokenSet(access_token="AT-888", expires_at=_ms(3600)))

        assert (await store.get(TokenOwner("org-1")))["access_token"] == "AT-888"
        assert (await store.get(OWNER))["access_token"] == "AT-777"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_kv_refresh_through_current_account(self):
        redis = FakeRedis()
        store = KVTokenStore(redis)
        await store.save(OWNER, TokenSet(access_token="AT", expires_at=_ms(3600)))

        await store.save(TokenOwner("org-1"), TokenSet(access_token="NEW", expires_at=_ms(3600)))

        assert redis.hashes["oauth_tokens:org-1:777"]["access_token"] == "NEW"
        assert "oauth_tokens:org-1" not in redis.hashes

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_kv_disconnect_current_account(self):
        redis = FakeRedis()
        store = KVTokenStore(redis)
        await store.save(OWNER, TokenSet(access_token="AT", expires_at=_ms(3600)))

        await store.delete(TokenOwner("org-1"))

        assert redis.hashes == {}
        assert redis.strings == {}
        assert await store.get(TokenOwner("org-1")) is None

    @pytest.mark.unit
    def test_store_selection(self, mock_settings, db):
        assert isinstance(get_token_store(mock_settings, db=db), DatabaseTokenStore)

        kv_settings = mock_settings.model_copy(update={"token_storage": "kv"})
        assert isinstance(get_token_store(kv_settings, redis=FakeRedis()), KVTokenStore)
        with pytest.raises(ValueError):
            get_token_store(kv_settings)
