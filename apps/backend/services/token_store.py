"""
Laburandik Seller Ops - OAuth Token Storage
===========================================
Persistence and lifecycle of MercadoLibre OAuth tokens.

Tokens live either in the `meli_tokens` table of the hosted database or in
a Redis hash with a TTL slightly longer than the token itself. The
TokenManager hides which one is configured and refreshes expired tokens on
read.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from redis.exceptions import RedisError

from config import Settings, get_settings
from exceptions import (
    DatabaseError,
    NoAuthenticationError,
    RefreshFailedError,
    SessionExpiredError,
)
from logging_config import get_logger
from schemas import TokenSet, TokenStatus
from services.database import DatabaseClient
from services.meli_client import MeliClient, now_ms
import metrics as app_metrics

logger = get_logger(__name__)


@dataclass(frozen=True)
class TokenOwner:
    """Organization (and optionally a specific MercadoLibre account) owning tokens."""

    organization_id: str
    meli_user_id: Optional[str] = None
    user_id: Optional[str] = None

    @property
    def key(self) -> str:
        if self.meli_user_id:
            return f"{self.organization_id}:{self.meli_user_id}"
        return self.organization_id


def parse_expires_at(value: Any) -> int:
    """
    Normalize a stored expiry to epoch milliseconds.

    Accepts integers, numeric strings and ISO-8601 timestamps.

    Raises:
        ValueError: If the value cannot be interpreted
    """
    if value is None or isinstance(value, bool):
        raise ValueError("expires_at is missing")
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value).strip()
    if text.lstrip("-").isdigit():
        return int(text)
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError as e:
        raise ValueError(f"expires_at is not a timestamp: {text!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


# =============================================================================
# Stores
# =============================================================================

class TokenStore(ABC):
    """Raw token records keyed by owner."""

    @abstractmethod
    async def get(self, owner: TokenOwner) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def save(self, owner: TokenOwner, tokens: TokenSet) -> None:
        ...

    @abstractmethod
    async def delete(self, owner: TokenOwner) -> None:
        ...


class DatabaseTokenStore(TokenStore):
    """`meli_tokens` table, one row per (organization_id, meli_user_id)."""

    table = "meli_tokens"

    def __init__(self, db: DatabaseClient):
        self.db = db

    async def get(self, owner: TokenOwner) -> Optional[Dict[str, Any]]:
        query = self.db.table(self.table).select("*").eq("organization_id", owner.organization_id)
        if owner.meli_user_id:
            query = query.eq("meli_user_id", owner.meli_user_id)
        rows = await query.order("updated_at", desc=True).limit(1).execute()
        return rows[0] if rows else None

    async def save(self, owner: TokenOwner, tokens: TokenSet) -> None:
        await self.db.table(self.table).upsert(
            {
                "organization_id": owner.organization_id,
                "user_id": owner.user_id,
                "meli_user_id": tokens.user_id or owner.meli_user_id,
                "access_token": tokens.access_token,
                "refresh_token": tokens.refresh_token,
                "token_type": tokens.token_type,
                "expires_at": tokens.expires_at,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            },
            on_conflict="organization_id,meli_user_id",
        ).execute()

    async def delete(self, owner: TokenOwner) -> None:
        query = self.db.table(self.table).delete().eq("organization_id", owner.organization_id)
        if owner.meli_user_id:
            query = query.eq("meli_user_id", owner.meli_user_id)
        await query.execute()


class KVTokenStore(TokenStore):
    """
    Redis hash `oauth_tokens:<owner>` expiring shortly after the token.

    `oauth_tokens:<org>:current` points at the account saved last, so an
    owner without a MercadoLibre user id resolves the same way the
    database store does.
    """

    def __init__(self, redis, ttl_buffer_seconds: int = 300):
        self.redis = redis
        self.ttl_buffer_seconds = ttl_buffer_seconds

    @staticmethod
    def key_for(owner: TokenOwner) -> str:
        return f"oauth_tokens:{owner.key}"

    @staticmethod
    def current_key(organization_id: str) -> str:
        return f"oauth_tokens:{organization_id}:current"

    async def _resolve(self, owner: TokenOwner) -> TokenOwner:
        if owner.meli_user_id:
            return owner
        meli_user_id = await self.redis.get(self.current_key(owner.organization_id))
        if not meli_user_id:
            return owner
        return TokenOwner(owner.organization_id, meli_user_id=meli_user_id, user_id=owner.user_id)

    async def get(self, owner: TokenOwner) -> Optional[Dict[str, Any]]:
        target = await self._resolve(owner)
        data = await self.redis.hgetall(self.key_for(target))
        return data or None

    async def save(self, owner: TokenOwner, tokens: TokenSet) -> None:
        target = owner
        if not owner.meli_user_id:
            if tokens.user_id:
                target = TokenOwner(owner.organization_id, meli_user_id=tokens.user_id,
                                    user_id=owner.user_id)
            else:
                target = await self._resolve(owner)

        key = self.key_for(target)
        mapping = {
            "access_token": tokens.access_token,
            "expires_at": str(tokens.expires_at),
            "token_type": tokens.token_type,
        }
        if tokens.refresh_token:
            mapping["refresh_token"] = tokens.refresh_token
        if tokens.user_id:
            mapping["user_id"] = tokens.user_id
        await self.redis.hset(key, mapping=mapping)

        ttl = max((tokens.expires_at - now_ms()) // 1000, 0) + self.ttl_buffer_seconds
        await self.redis.expire(key, ttl)
        if target.meli_user_id:
            await self.redis.set(
                self.current_key(target.organization_id), target.meli_user_id, ex=ttl or None
            )

    async def delete(self, owner: TokenOwner) -> None:
        target = await self._resolve(owner)
        await self.redis.delete(self.key_for(target))

        pointer = self.current_key(owner.organization_id)
        if target.meli_user_id and await self.redis.get(pointer) == target.meli_user_id:
            await self.redis.delete(pointer)


def get_token_store(
    settings: Settings,
    db: Optional[DatabaseClient] = None,
    redis=None,
) -> TokenStore:
    """Pick the store configured by TOKEN_STORAGE."""
    if settings.token_storage == "kv":
        if redis is None:
            raise ValueError("token_storage=kv requires a Redis connection")
        return KVTokenStore(redis, settings.kv_ttl_buffer_seconds)
    if db is None:
        raise ValueError("token_storage=database requires a database client")
    return DatabaseTokenStore(db)


# =============================================================================
# Lifecycle
# =============================================================================

class TokenManager:
    """Reads, refreshes and reports on stored tokens."""

    def __init__(
        self,
        store: TokenStore,
        meli: MeliClient,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.meli = meli
        self.settings = settings or get_settings()

    async def save(self, owner: TokenOwner, tokens: TokenSet) -> None:
        await self.store.save(owner, tokens)
        logger.info("Stored MercadoLibre tokens", organization_id=owner.organization_id,
                    meli_user_id=tokens.user_id or owner.meli_user_id)

    async def disconnect(self, owner: TokenOwner) -> None:
        await self.store.delete(owner)
        logger.info("Disconnected MercadoLibre account", organization_id=owner.organization_id)

    async def _refresh_and_store(self, owner: TokenOwner, refresh_token: str) -> TokenSet:
        try:
            tokens = await self.meli.refresh(refresh_token)
        except RefreshFailedError:
            app_metrics.token_refresh_total.labels(outcome="failed").inc()
            raise
        app_metrics.token_refresh_total.labels(outcome="ok").inc()

        if not tokens.user_id and owner.meli_user_id:
            tokens = tokens.model_copy(update={"user_id": owner.meli_user_id})
        await self.store.save(owner, tokens)
        logger.info("Refreshed MercadoLibre token", organization_id=owner.organization_id)
        return tokens

    async def get_valid_access_token(self, owner: TokenOwner) -> str:
        """
        Return a usable access token, refreshing it if it has expired.

        Raises:
            NoAuthenticationError: Nothing stored for this owner
            SessionExpiredError: Expired and no refresh token on file
            RefreshFailedError: The token endpoint rejected the refresh
        """
        record = await self.store.get(owner)
        if not record or not record.get("access_token"):
            raise NoAuthenticationError()

        try:
            expires_at = parse_expires_at(record.get("expires_at"))
        except ValueError:
            logger.warning("Unreadable token expiry, forcing refresh",
                           organization_id=owner.organization_id)
            expires_at = 0

        if now_ms() < expires_at:
            return record["access_token"]

        refresh_token = record.get("refresh_token")
        if not refresh_token:
            raise SessionExpiredError()

        tokens = await self._refresh_and_store(owner, refresh_token)
        return tokens.access_token

    async def refresh(self, owner: TokenOwner) -> TokenSet:
        """Force a refresh regardless of expiry."""
        record = await self.store.get(owner)
        if not record or not record.get("refresh_token"):
            raise SessionExpiredError("No refresh token available")
        return await self._refresh_and_store(owner, record["refresh_token"])

    async def status(self, owner: TokenOwner) -> TokenStatus:
        """Connection status for the settings screen."""
        try:
            record = await self.store.get(owner)
        except (DatabaseError, RedisError) as e:
            logger.error("Token storage unavailable", error=str(e))
            return TokenStatus(
                authenticated=False, needs_auth=True, reason="token_storage_error",
                error="Failed to fetch tokens from storage", status_code=500,
            )

        if not record or not record.get("access_token"):
            return TokenStatus(authenticated=False, needs_auth=True, reason="no_tokens")

        try:
            expires_at = parse_expires_at(record.get("expires_at"))
        except ValueError:
            return TokenStatus(
                authenticated=False, needs_auth=True, reason="invalid_token_expiry",
                error="Token expiry is invalid", status_code=500,
            )

        current = now_ms()
        if current < expires_at:
            return TokenStatus(
                authenticated=True, needs_auth=False, reason="valid_token",
                expires_in_minutes=(expires_at - current) // 60000,
            )

        refresh_token = record.get("refresh_token")
        if not refresh_token:
            return TokenStatus(authenticated=False, needs_auth=True, reason="no_refresh_token")

        try:
            tokens = await self._refresh_and_store(owner, refresh_token)
        except RefreshFailedError as e:
            return TokenStatus(
                authenticated=False, needs_auth=True, reason="refresh_failed",
                error=e.message, status_code=401,
            )
        return TokenStatus(
            authenticated=True, needs_auth=False, reason="refreshed_token",
            expires_in_minutes=tokens.expires_in // 60,
        )
