"""Postback ingest, dedup and routing configuration.

WHAT:
    Handles server-to-server conversion reports from the CRM: validates the
    parameters, suppresses duplicates, resolves the identity, merges the CRM
    pipeline fields onto the lead, writes the ingest ledger row and hands the
    event to the Dispatcher.

WHY:
    The CRM retries on errors and knows nothing about ad networks. Only
    missing required fields are client errors; everything downstream is
    observable through the ledger instead of the response status.

FLOW:
    params -> POSTBACK_FIELDS -> validate -> dedup -> resolve
      uncorrelated  -> logged row, UNKNOWN_IDENTITY_STATUS_CODE
      visitor only  -> pending row, 200 + warning
      blocked lead  -> blocked row, no sends
      lead          -> logged ingest row + pending channel rows -> fan-out

REFERENCES:
    - leadflow/routers/postback.py
    - leadflow/services/dispatcher.py
    - leadflow/services/field_mapping.py (POSTBACK_FIELDS)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.orm import Session

from leadflow.models import (
    EventSourceEnum,
    EventStatusEnum,
    Lead,
    PostbackConfig,
    ResolutionEnum,
    utcnow,
)
from leadflow.services import ledger
from leadflow.services.channels.base import LeadContact
from leadflow.services.dispatcher import DispatchContext, Dispatcher, PreparedSend, channel_report
from leadflow.services.field_mapping import POSTBACK_FIELDS
from leadflow.services.identity_resolver import IdentityResolver

logger = logging.getLogger(__name__)

UNKNOWN_IDENTITY_ERROR = "No lead or visitor found with this click id"
VISITOR_ONLY_WARNING = "Visitor found but no lead associated"
VISITOR_ONLY_DETAIL = "No lead found, visitor only"
DUPLICATE_WARNING = "Duplicate event ignored"

CRM_FIELDS = ("transfer_status", "disposition", "stage", "contract_sign_date", "total_debt_sign")


class ConfigConflictError(Exception):
    """Another active config already routes this event name."""
    pass


@dataclass
class IngestResult:
    status_code: int
    body: Dict[str, Any]
    prepared: List[PreparedSend] = field(default_factory=list)
    tasks: List[asyncio.Task] = field(default_factory=list)


def _money(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


# =============================================================================
# POSTBACK CONFIG
# =============================================================================

def get_active_config(db: Session, event_name: str) -> Optional[PostbackConfig]:
    return (
        db.query(PostbackConfig)
        .filter(
            PostbackConfig.event_name == event_name.strip().lower(),
            PostbackConfig.is_active.is_(True),
        )
        .order_by(PostbackConfig.id.desc())
        .first()
    )


def _ensure_unique_active(db: Session, event_name: str, exclude_id: Optional[int] = None) -> None:
    query = db.query(PostbackConfig).filter(
        PostbackConfig.event_name == event_name,
        PostbackConfig.is_active.is_(True),
    )
    if exclude_id is not None:
        query = query.filter(PostbackConfig.id != exclude_id)
    if query.first() is not None:
        raise ConfigConflictError(f"An active config already exists for event '{event_name}'")


def create_config(db: Session, data: Dict[str, Any]) -> PostbackConfig:
    """Create a routing config; event names are stored lower-cased."""
    data = dict(data)
    data["event_name"] = data["event_name"].strip().lower()
    if data.get("is_active", True):
        _ensure_unique_active(db, data["event_name"])

    config = PostbackConfig(**data)
    db.add(config)
    db.commit()
    db.refresh(config)
    logger.info("[POSTBACK] Created config %s for event '%s'", config.id, config.event_name)
    return config


def update_config(db: Session, config: PostbackConfig, changes: Dict[str, Any]) -> PostbackConfig:
    """Partial update; re-checks uniqueness when the result is active."""
    if "event_name" in changes and changes["event_name"] is not None:
        changes["event_name"] = changes["event_name"].strip().lower()

    event_name = changes.get("event_name") or config.event_name
    is_active = changes.get("is_active", config.is_active)
    if is_active:
        _ensure_unique_active(db, event_name, exclude_id=config.id)

    for key, value in changes.items():
        setattr(config, key, value)
    db.add(config)
    db.commit()
    db.refresh(config)
    return config


def serialize_config(config: PostbackConfig) -> Dict[str, Any]:
    return {
        "id": config.id,
        "name": config.name,
        "event_name": config.event_name,
        "conversion_action_id": config.conversion_action_id,
        "google_ads_event_name": config.google_ads_event_name,
        "send_to_bing": config.send_to_bing,
        "bing_conversion_name": config.bing_conversion_name,
        "send_to_meta": config.send_to_meta,
        "meta_event_name": config.meta_event_name,
        "is_active": config.is_active,
        "created_at": config.created_at.isoformat() if config.created_at else None,
    }


# =============================================================================
# INGEST
# =============================================================================

def merge_lead_fields(lead: Lead, mapped: Mapping[str, Any], event_name: str) -> None:
    """Per-field merge: only supplied values overwrite, nothing is cleared."""
    for name in CRM_FIELDS:
        if mapped.get(name) is not None:
            setattr(lead, name, mapped[name])
    if mapped.get("revenue") is not None:
        lead.revenue = mapped["revenue"]

    # Reassign so the JSON column is flagged dirty
    hidden = dict(lead.hidden_fields or {})
    hidden["last_event"] = event_name
    hidden["last_event_time"] = utcnow().isoformat()
    lead.hidden_fields = hidden


class PostbackService:
    """Ingest pipeline for one postback request."""

    def __init__(self, dispatcher: Dispatcher, resolver: IdentityResolver, settings):
        self.dispatcher = dispatcher
        self.resolver = resolver
        self.settings = settings

    def ingest(self, db: Session, params: Mapping[str, Any]) -> IngestResult:
        """Synchronous part: validation, ledger writes, task launch.

        Must be called from a running event loop (tasks are created here).
        """
        mapped = POSTBACK_FIELDS.extract(params)
        click_id = mapped.get("click_id")
        event_name = mapped.get("event_name")

        if not click_id:
            return IngestResult(400, {"success": False, "error": "eli_clickid is required"})
        if not event_name:
            return IngestResult(400, {"success": False, "error": "event is required"})

        currency = mapped.get("currency") or "USD"
        transaction_id = mapped.get("transaction_id")

        if transaction_id:
            duplicate = ledger.find_recent_duplicate(
                db, click_id, event_name, self.settings.DEDUP_WINDOW_HOURS
            )
            if duplicate is not None:
                logger.info(
                    "[POSTBACK] Duplicate '%s' for %s ignored (prior event %s)",
                    event_name, click_id[:20], duplicate.id,
                )
                return IngestResult(200, {
                    "success": True,
                    "duplicate": True,
                    "warning": DUPLICATE_WARNING,
                    "event_id": duplicate.id,
                })

        identity = self.resolver.resolve(db, click_id, event_click_ids=mapped)
        click_ids = identity.click_ids
        common = dict(
            source=EventSourceEnum.postback,
            event_name=event_name,
            click_id=click_id,
            click_ids=click_ids.as_dict(),
            value=mapped.get("value"),
            debt_amount=mapped.get("debt_amount"),
            revenue=mapped.get("revenue"),
            currency=currency,
            transaction_id=transaction_id,
            resolution=identity.resolution,
        )

        if identity.resolution == ResolutionEnum.uncorrelated:
            row = ledger.record_event(
                db, status=EventStatusEnum.logged, error_message=UNKNOWN_IDENTITY_ERROR, **common
            )
            db.commit()
            logger.info("[POSTBACK] Unknown click id %s for '%s'", click_id[:20], event_name)
            return IngestResult(self.settings.UNKNOWN_IDENTITY_STATUS_CODE, {
                "success": False,
                "error": UNKNOWN_IDENTITY_ERROR,
                "event_id": row.id,
                "click_id": click_id,
            })

        if identity.resolution == ResolutionEnum.visitor_only:
            row = ledger.record_event(
                db, status=EventStatusEnum.pending, error_message=VISITOR_ONLY_DETAIL, **common
            )
            db.commit()
            return IngestResult(200, {
                "success": True,
                "warning": VISITOR_ONLY_WARNING,
                "event_id": row.id,
                "click_id": click_id,
                "gclid": click_ids.gclid,
            })

        lead = identity.lead
        merge_lead_fields(lead, mapped, event_name)
        db.add(lead)

        config = get_active_config(db, event_name)
        body: Dict[str, Any] = {
            "success": True,
            "lead_id": lead.id,
            "click_id": click_id,
            "gclid": click_ids.gclid,
            "debt_amount": _money(mapped.get("debt_amount")),
            "revenue": _money(mapped.get("revenue")),
            "google_ads_configured": bool(config and config.conversion_action_id),
        }

        if identity.blocked:
            row = ledger.record_event(
                db, status=EventStatusEnum.blocked, lead_id=lead.id,
                error_message="Lead blocked by IP blocklist", **common
            )
            db.commit()
            logger.info("[POSTBACK] Lead %s is blocked; '%s' suppressed", lead.id, event_name)
            body.update({"event_id": row.id, "blocked": True, **channel_report([], {})})
            return IngestResult(200, body)

        plans, skipped = self.dispatcher.plan_channels(config, click_ids, has_lead=True)
        ingest_row = ledger.record_event(
            db,
            status=EventStatusEnum.logged,
            lead_id=lead.id,
            conversion_action_id=config.conversion_action_id if config else None,
            error_message=None if plans else "No channel applied: " + "; ".join(skipped),
            **common,
        )

        ctx = DispatchContext(
            event_name=event_name,
            click_id=click_id,
            lead_id=lead.id,
            click_ids=click_ids,
            contact=LeadContact.from_lead(lead),
            value=mapped.get("value"),
            debt_amount=mapped.get("debt_amount"),
            revenue=mapped.get("revenue"),
            currency=currency,
            transaction_id=transaction_id,
            resolution=ResolutionEnum.lead,
        )
        prepared = self.dispatcher.prepare(db, ctx, plans)
        db.commit()

        tasks = self.dispatcher.launch(ctx, prepared) if prepared else []
        body.update({"event_id": ingest_row.id, "blocked": False})
        return IngestResult(200, body, prepared=prepared, tasks=tasks)

    async def process(self, db: Session, params: Mapping[str, Any]) -> IngestResult:
        """Ingest, optionally wait for the fan-out, then report channel state."""
        result = self.ingest(db, params)
        if result.status_code != 200 or result.body.get("duplicate") or "lead_id" not in result.body:
            return result
        if result.body.get("blocked"):
            return result

        await self.dispatcher.wait(result.tasks, self.settings.DISPATCH_ACK_WAIT_SECONDS)
        statuses = self.dispatcher.statuses(p.event_id for p in result.prepared)
        result.body.update(channel_report(result.prepared, statuses))
        return result
