"""Lead submission.

WHAT:
    Creates a Lead from a form submission, links it to its Visitor, applies
    the IP blocklist, writes the synchronous "lead" auto row and starts the
    lead-created fan-out (ad channels + Salesforce push) and the notifier.
    Also pushes existing leads to Salesforce on demand (one lead or the
    newest unpushed batch).

WHY:
    The auto row is written inside the request transaction, so it always
    exists before any later postback for the same lead can dispatch.

CLICK ID PRECEDENCE:
    Values in the submission payload beat the ones stored on the Visitor.

REFERENCES:
    - leadflow/routers/leads.py
    - leadflow/services/dispatcher.py
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from leadflow.models import (
    ConversionEvent,
    EventSourceEnum,
    EventStatusEnum,
    Lead,
    ProviderEnum,
    ResolutionEnum,
    Visitor,
)
from leadflow.services import ledger
from leadflow.services.channels.base import LeadContact
from leadflow.services.dispatcher import (
    ChannelPlan,
    DispatchContext,
    Dispatcher,
    PreparedSend,
    channel_report,
)
from leadflow.services.field_mapping import LEAD_FIELDS
from leadflow.services.identity_resolver import ClickIdentifiers, IdentityResolver
from leadflow.services.postback_service import get_active_config
from leadflow.services.token_service import get_provider_config

logger = logging.getLogger(__name__)

LEAD_EVENT = "lead"
CONTACT_FIELDS = ("full_name", "first_name", "last_name", "email", "phone", "company_name")


class LeadValidationError(ValueError):
    pass


@dataclass
class LeadSubmission:
    lead: Lead
    auto_event_id: int
    blocked: bool
    prepared: List[PreparedSend] = field(default_factory=list)
    tasks: List[asyncio.Task] = field(default_factory=list)


@dataclass
class CrmPushOutcome:
    status_code: int
    body: Dict[str, Any]


class LeadService:
    def __init__(self, dispatcher: Dispatcher, resolver: IdentityResolver, settings):
        self.dispatcher = dispatcher
        self.resolver = resolver
        self.settings = settings

    def _crm_connected(self, db: Session) -> bool:
        if EventSourceEnum.salesforce not in self.dispatcher.adapters:
            return False
        config = get_provider_config(db, ProviderEnum.salesforce)
        return bool(config and config.is_enabled and config.is_connected)

    def crm_push_applies(self, db: Session, lead: Lead) -> bool:
        """Salesforce connected and enabled, and the lead not pushed yet."""
        return not lead.crm_lead_id and self._crm_connected(db)

    def create(
        self,
        db: Session,
        payload: Mapping[str, Any],
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LeadSubmission:
        """Create the lead and its ledger rows, then launch the fan-out.

        Raises:
            LeadValidationError: When the submission has no contact data.
        """
        mapped, extras = LEAD_FIELDS.extract_with_extras(payload)
        if not any(mapped.get(name) for name in ("email", "phone", "full_name", "first_name", "last_name")):
            raise LeadValidationError("Lead requires an email, phone or name")

        click_id = mapped.get("click_id")
        visitor = (
            db.query(Visitor).filter(Visitor.click_id == click_id).first()
            if click_id else None
        )
        click_ids = ClickIdentifiers.merge(
            ClickIdentifiers.from_source(mapped),
            ClickIdentifiers.from_source(visitor),
        )

        lead = Lead(
            click_id=click_id,
            debt_amount=mapped.get("debt_amount"),
            ip_address=ip_address or (visitor.ip_address if visitor else None),
            user_agent=user_agent or (visitor.user_agent if visitor else None),
            landing_page=mapped.get("landing_page") or (visitor.landing_page if visitor else None),
            hidden_fields=extras or None,
            **{name: mapped.get(name) for name in CONTACT_FIELDS},
            **click_ids.as_dict(),
        )
        db.add(lead)
        db.flush()

        if visitor is not None:
            visitor.converted = True
            visitor.lead_id = lead.id
            db.add(visitor)

        blocked_ip = (visitor.ip_address if visitor else None) or lead.ip_address
        blocked = self.resolver.is_ip_blocked(db, blocked_ip)
        if blocked:
            lead.is_blocked = True
            logger.info("[LEAD] Lead %s blocked (ip %s)", lead.id, blocked_ip)

        auto_row = ledger.record_event(
            db,
            source=EventSourceEnum.auto,
            status=EventStatusEnum.blocked if blocked else EventStatusEnum.auto,
            event_name=LEAD_EVENT,
            click_id=click_id,
            lead_id=lead.id,
            click_ids=click_ids.as_dict(),
            debt_amount=lead.debt_amount,
            resolution=ResolutionEnum.lead,
            error_message="Lead blocked by IP blocklist" if blocked else None,
        )

        prepared: List[PreparedSend] = []
        ctx = DispatchContext(
            event_name=LEAD_EVENT,
            click_id=click_id,
            lead_id=lead.id,
            click_ids=click_ids,
            contact=LeadContact.from_lead(lead),
            debt_amount=lead.debt_amount,
            resolution=ResolutionEnum.lead,
        )
        if not blocked:
            config = get_active_config(db, LEAD_EVENT)
            plans, skipped = self.dispatcher.plan_channels(config, click_ids, has_lead=True)
            if self.crm_push_applies(db, lead):
                plans.append(ChannelPlan(EventSourceEnum.salesforce, outbound_event_name="Lead"))
            prepared = self.dispatcher.prepare(db, ctx, plans)
            if not prepared:
                auto_row.status = EventStatusEnum.logged
                auto_row.error_message = "No channel applied: " + "; ".join(skipped)

        db.commit()
        db.refresh(lead)
        logger.info("[LEAD] Created lead %s (click id %s)", lead.id, (click_id or "-")[:20])

        tasks = []
        if prepared:
            tasks = self.dispatcher.launch(ctx, prepared, auto_event_id=auto_row.id)
        if not blocked:
            self.dispatcher.notify_lead_created(lead.id)

        return LeadSubmission(
            lead=lead,
            auto_event_id=auto_row.id,
            blocked=blocked,
            prepared=prepared,
            tasks=tasks,
        )

    async def submit(
        self,
        db: Session,
        payload: Mapping[str, Any],
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Dict[str, Any]:
        submission = self.create(db, payload, ip_address=ip_address, user_agent=user_agent)

        await self.dispatcher.wait(submission.tasks, self.settings.DISPATCH_ACK_WAIT_SECONDS)
        statuses = self.dispatcher.statuses(p.event_id for p in submission.prepared)

        return {
            "success": True,
            "id": submission.lead.id,
            "click_id": submission.lead.click_id,
            "blocked": submission.blocked,
            "event_id": submission.auto_event_id,
            **channel_report(submission.prepared, statuses),
        }

    # ------------------------------------------------------------------
    # Manual CRM push
    # ------------------------------------------------------------------

    def _crm_push_in_flight(self, db: Session, lead_id: int) -> bool:
        return db.query(ConversionEvent.id).filter(
            ConversionEvent.lead_id == lead_id,
            ConversionEvent.source == EventSourceEnum.salesforce,
            ConversionEvent.status == EventStatusEnum.pending,
        ).first() is not None

    def _prepare_crm_push(self, db: Session, lead: Lead) -> Tuple[DispatchContext, List[PreparedSend]]:
        ctx = DispatchContext(
            event_name=LEAD_EVENT,
            click_id=lead.click_id,
            lead_id=lead.id,
            click_ids=ClickIdentifiers.from_source(lead),
            contact=LeadContact.from_lead(lead),
            debt_amount=lead.debt_amount,
            resolution=ResolutionEnum.lead,
        )
        plan = ChannelPlan(EventSourceEnum.salesforce, outbound_event_name="Lead")
        return ctx, self.dispatcher.prepare(db, ctx, [plan])

    async def push_to_crm(self, db: Session, lead_id: int) -> CrmPushOutcome:
        """Push one existing lead to Salesforce and wait for the answer.

        Goes through the same ledger row and adapter as the automatic push,
        so the CRM id is written at most once.
        """
        lead = db.get(Lead, lead_id)
        if lead is None:
            return CrmPushOutcome(404, {"success": False, "error": "Lead not found"})
        if lead.crm_lead_id:
            return CrmPushOutcome(409, {
                "success": False,
                "error": "Lead already pushed to Salesforce",
                "crm_lead_id": lead.crm_lead_id,
            })
        if lead.is_blocked:
            return CrmPushOutcome(400, {"success": False, "error": "Lead is blocked"})
        if not self._crm_connected(db):
            return CrmPushOutcome(400, {"success": False, "error": "Salesforce is not connected"})
        if self._crm_push_in_flight(db, lead.id):
            return CrmPushOutcome(409, {"success": False, "error": "Salesforce push already in progress"})

        ctx, prepared = self._prepare_crm_push(db, lead)
        db.commit()
        event_id = prepared[0].event_id
        logger.info("[LEAD] Manual Salesforce push of lead %s (event %s)", lead_id, event_id)

        tasks = self.dispatcher.launch(ctx, prepared)
        await self.dispatcher.wait(tasks, self.settings.DISPATCH_TASK_TIMEOUT_SECONDS)

        # The send was recorded through another session
        db.expire_all()
        row = ledger.get_event(db, event_id)
        lead = db.get(Lead, lead_id)
        if row.status == EventStatusEnum.sent:
            return CrmPushOutcome(200, {
                "success": True,
                "lead_id": lead_id,
                "event_id": event_id,
                "crm_lead_id": lead.crm_lead_id,
            })
        if row.status == EventStatusEnum.failed:
            return CrmPushOutcome(502, {
                "success": False,
                "lead_id": lead_id,
                "event_id": event_id,
                "error": row.error_message,
            })
        return CrmPushOutcome(202, {
            "success": True,
            "pending": True,
            "lead_id": lead_id,
            "event_id": event_id,
        })

    async def push_all_to_crm(self, db: Session, limit: int = 100) -> CrmPushOutcome:
        """Push the newest unpushed, unblocked leads (at most `limit`)."""
        if not self._crm_connected(db):
            return CrmPushOutcome(400, {"success": False, "error": "Salesforce is not connected"})

        in_flight = (
            select(ConversionEvent.lead_id)
            .where(
                ConversionEvent.source == EventSourceEnum.salesforce,
                ConversionEvent.status == EventStatusEnum.pending,
                ConversionEvent.lead_id.isnot(None),
            )
        )
        leads = (
            db.query(Lead)
            .filter(
                Lead.crm_lead_id.is_(None),
                Lead.is_blocked.is_(False),
                Lead.id.notin_(in_flight),
            )
            .order_by(Lead.id.desc())
            .limit(limit)
            .all()
        )

        batch = [self._prepare_crm_push(db, lead) for lead in leads]
        db.commit()

        tasks: List[asyncio.Task] = []
        event_ids: List[int] = []
        for ctx, prepared in batch:
            tasks.extend(self.dispatcher.launch(ctx, prepared))
            event_ids.extend(p.event_id for p in prepared)
        await self.dispatcher.wait(tasks, self.settings.DISPATCH_TASK_TIMEOUT_SECONDS)

        statuses = list(self.dispatcher.statuses(event_ids).values())
        pushed = statuses.count(EventStatusEnum.sent)
        failed = statuses.count(EventStatusEnum.failed)
        logger.info("[LEAD] Salesforce push-all: %d pushed, %d failed of %d", pushed, failed, len(batch))
        return CrmPushOutcome(200, {
            "success": True,
            "pushed": pushed,
            "failed": failed,
            "pending": len(event_ids) - pushed - failed,
            "total": len(batch),
        })
