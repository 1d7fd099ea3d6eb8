"""Channel connection admin.

WHAT:
    Per-provider connection state, the OAuth connect/callback flow for
    Google Ads, Microsoft Advertising and Salesforce, disconnect, account
    selection, and the credential forms for Salesforce (client app) and Meta
    (pixel + system user token). Also a live connection test per provider and
    the manual Salesforce push (one lead, or the newest unpushed batch).

WHY:
    Dispatch reads every credential from `provider_configs`. This router is
    the only place an operator changes those rows; tokens are encrypted by
    the token service before they are stored.

OAUTH STATE:
    `state` is a short-lived JWT bound to the provider, so a callback cannot
    be replayed against another provider or forged without JWT_SECRET.

REFERENCES:
    - leadflow/services/token_managers.py (authorize URL, code exchange)
    - leadflow/services/token_service.py (encrypted persistence)
"""

import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..deps import get_app_settings, get_dispatcher, get_lead_service, get_token_managers, require_admin
from ..models import ProviderConfig, ProviderEnum, User
from ..security import create_oauth_state, verify_oauth_state
from ..services.channels.google_ads import normalize_customer_id
from ..services.token_managers import OAuthError
from ..services.token_service import (
    clear_provider_tokens,
    get_or_create_provider_config,
    get_provider_config,
    store_client_secret,
    store_provider_tokens,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/channels", tags=["Channels"])

OAUTH_PROVIDERS = (ProviderEnum.google_ads, ProviderEnum.bing_ads, ProviderEnum.salesforce)


def _serialize_status(provider: ProviderEnum, config: Optional[ProviderConfig]) -> dict:
    if config is None:
        return {"provider": provider.value, "connected": False, "enabled": False}
    return {
        "provider": provider.value,
        "connected": config.is_connected,
        "enabled": config.is_enabled,
        "connected_at": config.connected_at.isoformat() if config.connected_at else None,
        "token_expires_at": config.token_expires_at.isoformat() if config.token_expires_at else None,
        "account_id": config.account_id,
        "customer_id": config.customer_id,
        "login_customer_id": config.login_customer_id,
        "account_name": config.account_name,
        "instance_url": config.instance_url,
        "has_client_secret": bool(config.client_secret_enc),
    }


def _settings_redirect(
    settings, provider: ProviderEnum, outcome: str, message: Optional[str] = None
) -> RedirectResponse:
    query = {f"{provider.value}_oauth": outcome}
    if message:
        query["message"] = message
    base = settings.ADMIN_APP_URL.rstrip("/")
    return RedirectResponse(url=f"{base}/settings?{urlencode(query)}")


def _require_oauth_provider(provider: ProviderEnum) -> None:
    if provider not in OAUTH_PROVIDERS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{provider.value} is connected with credentials, not OAuth",
        )


@router.get("/{provider}/status", response_model=schemas.ChannelStatus)
def channel_status(
    provider: ProviderEnum,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    return _serialize_status(provider, get_provider_config(db, provider))


@router.get("/{provider}/connect")
def connect(
    provider: ProviderEnum,
    current_user: User = Depends(require_admin),
    token_managers=Depends(get_token_managers),
):
    """Return the provider consent URL for the admin UI to open."""
    _require_oauth_provider(provider)
    state = create_oauth_state(provider.value, current_user.email)
    auth_url = token_managers[provider].authorization_url(state)
    if not auth_url:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{provider.value} OAuth is not configured",
        )
    logger.info("[CHANNELS] %s connect started by %s", provider.value, current_user.email)
    return {"auth_url": auth_url}


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: ProviderEnum,
    code: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    token_managers=Depends(get_token_managers),
    settings=Depends(get_app_settings),
):
    """Exchange the authorization code, then send the browser back to settings."""
    if provider not in OAUTH_PROVIDERS:
        return _settings_redirect(settings, provider, "error", "unsupported_provider")
    if error:
        logger.error("[CHANNELS] %s OAuth error: %s", provider.value, error)
        return _settings_redirect(settings, provider, "error", error)
    if not code:
        return _settings_redirect(settings, provider, "error", "missing_code")
    if not verify_oauth_state(state, provider.value):
        logger.warning("[CHANNELS] %s callback with invalid state", provider.value)
        return _settings_redirect(settings, provider, "error", "invalid_state")

    try:
        await token_managers[provider].exchange_code(code)
    except OAuthError as e:
        logger.error("[CHANNELS] %s code exchange failed: %s", provider.value, e)
        return _settings_redirect(settings, provider, "error", "token_exchange_failed")

    return _settings_redirect(settings, provider, "success")


@router.post("/{provider}/disconnect")
def disconnect(
    provider: ProviderEnum,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    config = get_provider_config(db, provider)
    if config:
        clear_provider_tokens(db, config)
        db.commit()
    logger.info("[CHANNELS] %s disconnected by %s", provider.value, current_user.email)
    return {"success": True}


@router.post("/{provider}/account", response_model=schemas.ChannelStatus)
def update_account(
    provider: ProviderEnum,
    payload: schemas.ChannelAccountUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    """Select the customer/account dispatch sends to."""
    config = get_or_create_provider_config(db, provider)
    changes = payload.model_dump(exclude_unset=True)

    if provider == ProviderEnum.google_ads:
        for key in ("customer_id", "login_customer_id"):
            if changes.get(key):
                changes[key] = normalize_customer_id(changes[key])

    for key, value in changes.items():
        if key == "is_enabled" and value is None:
            continue
        setattr(config, key, value)
    db.add(config)
    db.commit()
    db.refresh(config)
    return _serialize_status(provider, config)


@router.post("/salesforce/credentials", response_model=schemas.ChannelStatus)
def save_salesforce_credentials(
    payload: schemas.SalesforceCredentials,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    """Store the connected app's client id and (encrypted) secret."""
    config = get_or_create_provider_config(db, ProviderEnum.salesforce)
    if not payload.client_secret and not config.client_secret_enc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="client_secret is required")

    store_client_secret(db, config, payload.client_id.strip(), payload.client_secret)
    config.is_enabled = payload.is_enabled
    db.commit()
    db.refresh(config)
    return _serialize_status(ProviderEnum.salesforce, config)


@router.post("/meta/credentials", response_model=schemas.ChannelStatus)
def save_meta_credentials(
    payload: schemas.MetaCredentials,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    """Store the pixel id, the (encrypted) access token and the test event code."""
    config = get_or_create_provider_config(db, ProviderEnum.meta)
    if not payload.access_token and not config.access_token_enc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="access_token is required")

    if payload.access_token:
        store_provider_tokens(db, config, access_token=payload.access_token, mark_connected=True)
    config.account_id = payload.pixel_id.strip()
    extra = dict(config.settings or {})
    if payload.test_event_code:
        extra["test_event_code"] = payload.test_event_code.strip()
    else:
        extra.pop("test_event_code", None)
    config.settings = extra
    config.is_enabled = payload.is_enabled
    db.commit()
    db.refresh(config)
    return _serialize_status(ProviderEnum.meta, config)


@router.post("/{provider}/test")
async def check_connection(
    provider: ProviderEnum,
    current_user: User = Depends(require_admin),
    dispatcher=Depends(get_dispatcher),
):
    """Make one read-only call to the provider with the stored credentials."""
    adapter = next((a for a in dispatcher.adapters.values() if a.provider == provider), None)
    if adapter is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"{provider.value} has no channel")

    check = await adapter.check_connection()
    if not check.connected:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=check.message)
    if not check.ok:
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={"success": False, "error": check.message},
        )
    return {"success": True, "message": check.message}


@router.post("/salesforce/push-all")
async def push_all_to_salesforce(
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
    service=Depends(get_lead_service),
):
    """Push the newest leads that have no Salesforce id and are not blocked."""
    outcome = await service.push_all_to_crm(db, limit=limit)
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)


@router.post("/salesforce/push/{lead_id}")
async def push_to_salesforce(
    lead_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
    service=Depends(get_lead_service),
):
    outcome = await service.push_to_crm(db, lead_id)
    logger.info("[CHANNELS] Salesforce push of lead %s by %s: %s", lead_id, current_user.email, outcome.status_code)
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)
