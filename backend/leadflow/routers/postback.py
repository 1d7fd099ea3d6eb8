"""Postback endpoints.

WHAT:
    - Public conversion postback (GET or POST) called by the CRM.
    - Admin routing config CRUD, ledger listing and single-event retry.

WHY:
    The CRM only knows our click id and its own event names. The routing
    config decides which ad channels each event name reaches; the ledger
    shows what happened per channel and lets an operator re-send failures.

REFERENCES:
    - leadflow/services/postback_service.py (ingest pipeline)
    - leadflow/services/dispatcher.py (fan-out, retry)
    - leadflow/services/ledger.py (listing)
"""

import logging
import math
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..deps import get_app_settings, get_dispatcher, get_postback_service, require_admin
from ..models import EventSourceEnum, EventStatusEnum, PostbackConfig, User
from ..services import ledger
from ..services.field_mapping import CLICK_ID_KEYS
from ..services.postback_service import (
    ConfigConflictError,
    create_config,
    serialize_config,
    update_config,
)
from ..utils.params import collect_params

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/postback", tags=["Postback"])


# =============================================================================
# PUBLIC POSTBACK
# =============================================================================

@router.api_route(
    "/conversion",
    methods=["GET", "POST"],
    summary="Report a conversion",
    description="""
    Called by the CRM when a lead reaches a pipeline stage.

    Required: `eli_clickid` (or `click_id`) and `event`. Optional values:
    `value`, `debt_amount`, `revenue`, `currency`, `transaction_id` and the
    CRM pipeline fields. Repeats with the same `transaction_id` inside the
    dedup window are acknowledged without side effects.
    """,
)
async def receive_postback(
    request: Request,
    db: Session = Depends(get_db),
    service=Depends(get_postback_service),
):
    params = await collect_params(request)
    result = await service.process(db, params)
    if result.status_code >= 400:
        logger.info("[POSTBACK] Rejected (%s): %s", result.status_code, result.body.get("error"))
    return JSONResponse(status_code=result.status_code, content=result.body)


# =============================================================================
# ADMIN
# =============================================================================

@router.get("/url")
def postback_url(
    settings=Depends(get_app_settings),
    current_user: User = Depends(require_admin),
):
    """Postback URL and parameters to paste into the CRM."""
    url = f"{settings.BASE_URL.rstrip('/')}/api/postback/conversion"
    return {
        "postback_url": url,
        "methods": ["GET", "POST"],
        "example": f"{url}?eli_clickid={{click_id}}&event=qualified&debt_amount={{debt}}&transaction_id={{txn}}",
        "parameters": {
            "eli_clickid": "Required. Click id captured on the landing page (aliases: "
                           + ", ".join(CLICK_ID_KEYS[1:]) + ")",
            "event": "Required. Event name routed by the postback config",
            "value": "Optional conversion value",
            "debt_amount": "Optional enrolled debt amount (preferred value for ad networks)",
            "revenue": "Optional revenue (preferred value for Meta)",
            "currency": "Optional ISO currency code, default USD",
            "transaction_id": "Optional. Enables duplicate suppression",
        },
    }


@router.get("/config", response_model=list[schemas.PostbackConfigOut])
def list_configs(
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    configs = db.query(PostbackConfig).order_by(PostbackConfig.id.asc()).all()
    return [serialize_config(c) for c in configs]


@router.post("/config", response_model=schemas.PostbackConfigOut, status_code=status.HTTP_201_CREATED)
def create_postback_config(
    payload: schemas.PostbackConfigCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    try:
        config = create_config(db, payload.model_dump())
    except ConfigConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return serialize_config(config)


@router.put("/config/{config_id}", response_model=schemas.PostbackConfigOut)
def update_postback_config(
    config_id: int,
    payload: schemas.PostbackConfigUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    config = db.get(PostbackConfig, config_id)
    if not config:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Config not found")

    changes = payload.model_dump(exclude_unset=True)
    for key in ("name", "event_name"):
        if key in changes and not (changes[key] or "").strip():
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"{key} must not be blank")

    try:
        config = update_config(db, config, changes)
    except ConfigConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return serialize_config(config)


@router.delete("/config/{config_id}")
def delete_postback_config(
    config_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    config = db.get(PostbackConfig, config_id)
    if not config:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Config not found")
    db.delete(config)
    db.commit()
    logger.info("[POSTBACK] Deleted config %s", config_id)
    return {"success": True}


@router.get("/events", response_model=schemas.EventListResponse)
def list_events(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    status_filter: Optional[EventStatusEnum] = Query(None, alias="status"),
    source: Optional[EventSourceEnum] = Query(None),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    rows, total = ledger.list_events(db, page=page, limit=limit, status=status_filter, source=source)
    return {
        "events": [ledger.serialize_event(row) for row in rows],
        "total": total,
        "page": page,
        "limit": limit,
        "pages": math.ceil(total / limit) if total else 0,
    }


@router.post("/events/{event_id}/retry")
async def retry_event(
    event_id: int,
    current_user: User = Depends(require_admin),
    dispatcher=Depends(get_dispatcher),
):
    """Re-send a failed channel row and wait for the provider's answer."""
    outcome = await dispatcher.retry_event(event_id)
    if outcome.status_code != 200:
        raise HTTPException(status_code=outcome.status_code, detail=outcome.error)
    return {"success": True, "event": outcome.event}
