"""
MercadoLibre OAuth Router
=========================
Connect, inspect, refresh and disconnect the organization's seller account.
"""

import base64
import hashlib
import hmac
import json
import secrets
import time
from typing import Optional, Tuple
from urllib.parse import urlencode

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, RedirectResponse

from config import Settings, get_settings
from dependencies import (
    OrgContext,
    get_database,
    get_meli,
    get_org_context,
    get_token_manager,
)
from exceptions import DatabaseError, MeliAPIError, MeliAuthError, MissingCredentialsError
from logging_config import get_logger
from services.database import DatabaseClient
from services.meli_client import MeliClient
from services.organization_service import OrganizationService
from services.token_store import TokenManager, TokenOwner

logger = get_logger(__name__)

router = APIRouter()


STATE_TTL_SECONDS = 600


def _sign(payload: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()


def encode_state(ctx: OrgContext, settings: Settings, now: Optional[float] = None) -> str:
    """
    Signed `<payload>.<signature>` carried through the authorization round trip.

    The payload holds the organization, the user who started the flow, a
    nonce and an expiry; the signature is an HMAC keyed on the client secret.
    """
    issued = time.time() if now is None else now
    body = json.dumps({
        "org": ctx.organization_id,
        "user": ctx.user_id,
        "nonce": secrets.token_urlsafe(16),
        "exp": int(issued) + STATE_TTL_SECONDS,
    }, separators=(",", ":"))
    payload = base64.urlsafe_b64encode(body.encode("utf-8")).decode("ascii").rstrip("=")
    return f"{payload}.{_sign(payload, settings.meli_client_secret)}"


def decode_state(
    state: Optional[str], settings: Settings, now: Optional[float] = None
) -> Tuple[Optional[str], Optional[str]]:
    """(organization_id, user_id) from a signed state, or (None, None) if it cannot be trusted."""
    if not state or not settings.meli_client_secret:
        return None, None
    payload, _, signature = state.rpartition(".")
    expected = _sign(payload, settings.meli_client_secret)
    if not payload or not hmac.compare_digest(signature.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("OAuth state signature mismatch")
        return None, None
    try:
        padded = payload + "=" * (-len(payload) % 4)
        data = json.loads(base64.urlsafe_b64decode(padded.encode("utf-8")))
        expires_at = int(data["exp"])
    except (ValueError, KeyError, TypeError):
        logger.warning("OAuth state payload unreadable")
        return None, None
    if (time.time() if now is None else now) > expires_at:
        logger.warning("OAuth state expired", organization_id=data.get("org"))
        return None, None
    return data.get("org") or None, data.get("user") or None


def _redirect(settings: Settings, path: str, **params) -> RedirectResponse:
    query = f"?{urlencode(params)}" if params else ""
    return RedirectResponse(f"{settings.app_base_url}{path}{query}", status_code=307)


@router.get("/initiate")
async def initiate(
    ctx: OrgContext = Depends(get_org_context),
    meli: MeliClient = Depends(get_meli),
    settings: Settings = Depends(get_settings),
):
    """Redirect the seller to the MercadoLibre authorization page."""
    try:
        url = meli.build_authorization_url(state=encode_state(ctx, settings))
    except MissingCredentialsError:
        logger.error("CLIENT_ID is not configured")
        return _redirect(settings, "/", error="missing_config")

    logger.info("Redirecting to MercadoLibre OAuth", organization_id=ctx.organization_id)
    return RedirectResponse(url, status_code=307)


@router.get("/callback")
async def callback(
    code: Optional[str] = None,
    error: Optional[str] = None,
    state: Optional[str] = None,
    meli: MeliClient = Depends(get_meli),
    tokens: TokenManager = Depends(get_token_manager),
    db: DatabaseClient = Depends(get_database),
    settings: Settings = Depends(get_settings),
):
    """
    OAuth redirect target.

    Exchanges the code, stores the tokens for the organization in `state`
    and makes the new account current for the user who started the flow.
    """
    if error:
        logger.info("OAuth authorization denied", error=error)
        return _redirect(settings, "/", error="access_denied")
    if not code:
        logger.info("No authorization code received")
        return _redirect(settings, "/", error="no_code")

    organization_id, user_id = decode_state(state, settings)
    if not organization_id:
        logger.warning("OAuth callback without a valid state")
        return _redirect(settings, "/settings", error="oauth_failed")

    try:
        token_set = await meli.exchange_code(code)
        profile = await meli.get_me(token_set.access_token)
        meli_user_id = str(profile["id"])
        if not token_set.user_id:
            token_set = token_set.model_copy(update={"user_id": meli_user_id})

        owner = TokenOwner(organization_id, meli_user_id=meli_user_id, user_id=user_id)
        await tokens.save(owner, token_set)

        orgs = OrganizationService(db)
        await orgs.store_meli_account(organization_id, profile)
        if user_id:
            await orgs.set_current_account(user_id, meli_user_id)
    except (MeliAuthError, MeliAPIError, MissingCredentialsError, DatabaseError) as e:
        logger.error("OAuth callback failed", error=e.message, reason=e.reason)
        return _redirect(settings, "/settings", error="oauth_failed")

    logger.info("Tokens stored successfully", organization_id=organization_id,
                meli_user_id=meli_user_id)
    return _redirect(settings, "/settings", auth="success")


@router.get("/status")
async def status(
    ctx: OrgContext = Depends(get_org_context),
    tokens: TokenManager = Depends(get_token_manager),
):
    """Whether a usable MercadoLibre token is on file, refreshing if needed."""
    result = await tokens.status(ctx.token_owner)
    return JSONResponse(result.model_dump(exclude_none=True), status_code=result.status_code)


@router.post("/refresh")
async def refresh(
    ctx: OrgContext = Depends(get_org_context),
    tokens: TokenManager = Depends(get_token_manager),
):
    token_set = await tokens.refresh(ctx.token_owner)
    return {"success": True, "expires_in": token_set.expires_in}


@router.post("/disconnect")
async def disconnect(
    ctx: OrgContext = Depends(get_org_context),
    tokens: TokenManager = Depends(get_token_manager),
):
    await tokens.disconnect(ctx.token_owner)
    return {"success": True}
