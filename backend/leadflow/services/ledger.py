"""Conversion event ledger.

WHAT:
    Writes and queries `conversion_events`: the ingest row of every postback,
    the auto row of every lead, and one row per channel send.

WHY:
    Channel outcomes are only observable here. Every dispatch task must end
    in a ledger write, and admin retry works row by row.

LIFECYCLE:
    pending -> sent | failed
    failed  -> sent | failed        (admin retry)
    auto    -> logged | blocked     (lead-created row)
    logged, blocked, sent           terminal

REFERENCES:
    - leadflow/services/dispatcher.py (status transitions)
    - leadflow/routers/postback.py (listing / retry endpoints)
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session, joinedload

from leadflow.models import (
    ConversionEvent,
    EventSourceEnum,
    EventStatusEnum,
    ResolutionEnum,
    utcnow,
)

logger = logging.getLogger(__name__)

STALE_DETAIL = "Dispatch did not complete"


def record_event(
    db: Session,
    *,
    source: EventSourceEnum,
    status: EventStatusEnum,
    event_name: Optional[str],
    click_id: Optional[str] = None,
    lead_id: Optional[int] = None,
    click_ids: Optional[Dict[str, Optional[str]]] = None,
    conversion_action_id: Optional[str] = None,
    outbound_event_name: Optional[str] = None,
    value: Optional[Decimal] = None,
    debt_amount: Optional[Decimal] = None,
    revenue: Optional[Decimal] = None,
    currency: str = "USD",
    transaction_id: Optional[str] = None,
    resolution: Optional[ResolutionEnum] = None,
    error_message: Optional[str] = None,
) -> ConversionEvent:
    """Append a ledger row (flushed, not committed)."""
    click_ids = click_ids or {}
    event = ConversionEvent(
        lead_id=lead_id,
        click_id=click_id,
        gclid=click_ids.get("gclid"),
        msclkid=click_ids.get("msclkid"),
        fbclid=click_ids.get("fbclid"),
        fbc=click_ids.get("fbc"),
        conversion_action_id=conversion_action_id,
        conversion_action_name=event_name,
        outbound_event_name=outbound_event_name,
        conversion_value=value,
        debt_amount=debt_amount,
        revenue=revenue,
        currency=currency or "USD",
        transaction_id=transaction_id,
        source=source,
        resolution=resolution,
        status=status,
        error_message=error_message,
    )
    db.add(event)
    db.flush()
    logger.debug("[LEDGER] Recorded %s/%s row %s", source.value, status.value, event.id)
    return event


def apply_send_result(db: Session, event: ConversionEvent, result) -> ConversionEvent:
    """Record one adapter outcome on a channel row."""
    event.attempts = (event.attempts or 0) + 1
    if result.payload is not None:
        event.capi_payload = result.payload
    if result.success:
        event.status = EventStatusEnum.sent
        event.error_message = None
        event.sent_at = utcnow()
    else:
        event.status = EventStatusEnum.failed
        event.error_message = result.error or "Unknown error"
    db.add(event)
    return event


def find_recent_duplicate(
    db: Session,
    click_id: str,
    event_name: str,
    window_hours: int,
    now: Optional[datetime] = None,
) -> Optional[ConversionEvent]:
    """Earliest lead-resolved ingest row for (click id, event) inside the window.

    Uncorrelated and visitor-only rows never count: the CRM retries those
    once the lead exists, and the retry has to be processed.
    """
    cutoff = (now or utcnow()) - timedelta(hours=window_hours)
    return (
        db.query(ConversionEvent)
        .filter(
            ConversionEvent.click_id == click_id,
            ConversionEvent.conversion_action_name == event_name,
            ConversionEvent.source == EventSourceEnum.postback,
            ConversionEvent.resolution == ResolutionEnum.lead,
            ConversionEvent.created_at > cutoff,
        )
        .order_by(ConversionEvent.id.asc())
        .first()
    )


def get_event(db: Session, event_id: int) -> Optional[ConversionEvent]:
    return db.get(ConversionEvent, event_id)


def list_events(
    db: Session,
    *,
    page: int = 1,
    limit: int = 50,
    status: Optional[EventStatusEnum] = None,
    source: Optional[EventSourceEnum] = None,
) -> Tuple[List[ConversionEvent], int]:
    """Newest first, with the owning lead eagerly loaded."""
    query = db.query(ConversionEvent)
    if status is not None:
        query = query.filter(ConversionEvent.status == status)
    if source is not None:
        query = query.filter(ConversionEvent.source == source)

    total = query.count()
    rows = (
        query.options(joinedload(ConversionEvent.lead))
        .order_by(ConversionEvent.created_at.desc(), ConversionEvent.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return rows, total


def _money(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


def serialize_event(event: ConversionEvent) -> Dict[str, Any]:
    lead = event.lead
    return {
        "id": event.id,
        "lead_id": event.lead_id,
        "click_id": event.click_id,
        "gclid": event.gclid,
        "msclkid": event.msclkid,
        "fbclid": event.fbclid,
        "conversion_action_id": event.conversion_action_id,
        "conversion_action_name": event.conversion_action_name,
        "outbound_event_name": event.outbound_event_name,
        "conversion_value": _money(event.conversion_value),
        "debt_amount": _money(event.debt_amount),
        "revenue": _money(event.revenue),
        "currency": event.currency,
        "transaction_id": event.transaction_id,
        "source": event.source.value,
        "resolution": event.resolution.value if event.resolution else None,
        "status": event.status.value,
        "error_message": event.error_message,
        "capi_payload": event.capi_payload,
        "attempts": event.attempts,
        "created_at": event.created_at.isoformat() if event.created_at else None,
        "sent_at": event.sent_at.isoformat() if event.sent_at else None,
        "lead_name": lead.display_name if lead else None,
        "lead_email": lead.email if lead else None,
        "lead_company": lead.company_name if lead else None,
    }


def sweep_stale_events(db: Session, older_than_minutes: int, now: Optional[datetime] = None) -> Dict[str, int]:
    """Move rows stuck in pending/auto to a terminal state.

    pending channel rows become failed (so they can be retried); auto rows
    become logged. Ingest rows left pending for visitor-only postbacks are
    informational and are not touched.
    """
    cutoff = (now or utcnow()) - timedelta(minutes=older_than_minutes)

    failed = (
        db.query(ConversionEvent)
        .filter(
            ConversionEvent.status == EventStatusEnum.pending,
            ConversionEvent.source.notin_([EventSourceEnum.postback, EventSourceEnum.auto]),
            ConversionEvent.created_at < cutoff,
        )
        .update(
            {ConversionEvent.status: EventStatusEnum.failed, ConversionEvent.error_message: STALE_DETAIL},
            synchronize_session=False,
        )
    )
    logged = (
        db.query(ConversionEvent)
        .filter(
            ConversionEvent.status == EventStatusEnum.auto,
            ConversionEvent.created_at < cutoff,
        )
        .update(
            {ConversionEvent.status: EventStatusEnum.logged, ConversionEvent.error_message: STALE_DETAIL},
            synchronize_session=False,
        )
    )
    db.commit()

    if failed or logged:
        logger.warning("[LEDGER] Swept stale rows: %d failed, %d logged", failed, logged)
    return {"failed": failed, "logged": logged}
