"""Per-channel dispatch fan-out.

WHAT:
    Plans which channels an event goes to, writes one `pending` ledger row
    per channel, and runs each send as its own detached asyncio task. Also
    runs admin retries and the lead-created notifier.

WHY:
    One channel's failure must never block or corrupt another's. Every task
    ends in a ledger write (sent / failed), including timeouts, crashes and
    cancellation, so no row is left `pending` by a finished task.

ARCHITECTURE:
    ingest (request session)          detached tasks (own sessions)
    ┌──────────────────────┐          ┌──────────────────────────────┐
    │ plan_channels()      │          │ semaphore[channel]           │
    │ prepare() -> pending │ launch() │  └ wait_for(adapter.send())  │
    │ commit               │ ───────► │ finally: ledger write        │
    └──────────────────────┘          └──────────────────────────────┘

    The Dispatcher is built once in create_app() with its adapters and
    notifier injected, and drained on shutdown.

REFERENCES:
    - leadflow/services/channels/ (adapters)
    - leadflow/services/ledger.py (row transitions)
    - leadflow/services/postback_service.py, lead_service.py (callers)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Set, Tuple

from sqlalchemy.orm import Session

from leadflow.models import (
    ConversionEvent,
    EventSourceEnum,
    EventStatusEnum,
    Lead,
    PostbackConfig,
    ResolutionEnum,
    utcnow,
)
from leadflow.services import ledger
from leadflow.services.channels.base import ChannelAdapter, LeadContact, OutboundEvent, SendResult
from leadflow.services.identity_resolver import ClickIdentifiers
from leadflow.telemetry import capture_exception

logger = logging.getLogger(__name__)


class LeadNotifier(Protocol):
    """Downstream collaborator told about new leads (email campaigns, alerts)."""

    async def lead_created(self, lead_id: int) -> None:
        ...


class LoggingNotifier:
    """Default notifier: records the hand-off in the log only."""

    async def lead_created(self, lead_id: int) -> None:
        logger.info("[NOTIFIER] Lead %s created", lead_id)


@dataclass
class ChannelPlan:
    source: EventSourceEnum
    target_id: Optional[str] = None
    outbound_event_name: Optional[str] = None


@dataclass
class DispatchContext:
    """Event facts shared by every channel send of one inbound event."""
    event_name: str
    click_id: Optional[str] = None
    lead_id: Optional[int] = None
    click_ids: ClickIdentifiers = field(default_factory=ClickIdentifiers)
    contact: Optional[LeadContact] = None
    value: Optional[Decimal] = None
    debt_amount: Optional[Decimal] = None
    revenue: Optional[Decimal] = None
    currency: str = "USD"
    transaction_id: Optional[str] = None
    resolution: ResolutionEnum = ResolutionEnum.lead
    occurred_at: datetime = field(default_factory=utcnow)


@dataclass
class PreparedSend:
    plan: ChannelPlan
    event_id: int


REPORTED_CHANNELS = (
    EventSourceEnum.google_ads,
    EventSourceEnum.bing_ads,
    EventSourceEnum.meta_capi,
    EventSourceEnum.salesforce,
)


def channel_report(prepared: List[PreparedSend], statuses: Dict[int, EventStatusEnum]) -> Dict[str, Any]:
    """Per-channel response block plus the flat `<channel>_sent` booleans.

    "sent" reflects the ledger at the time of the call; nothing is inferred
    from a send that is still in flight.
    """
    by_source = {item.plan.source: item.event_id for item in prepared}
    channels: Dict[str, Any] = {}
    flat: Dict[str, bool] = {}
    for source in REPORTED_CHANNELS:
        event_id = by_source.get(source)
        status = statuses.get(event_id) if event_id is not None else None
        sent = status == EventStatusEnum.sent
        channels[source.value] = {
            "attempted": event_id is not None,
            "sent": sent,
            "status": status.value if status else None,
            "event_id": event_id,
        }
        flat[f"{source.value}_sent"] = sent
    return {"channels": channels, **flat}


@dataclass
class RetryOutcome:
    status_code: int
    success: bool
    error: Optional[str] = None
    event: Optional[dict] = None


class Dispatcher:
    """Fan-out engine.

    Args:
        session_factory: Returns a new Session; each task uses its own.
        adapters: Channel adapters keyed by ledger source tag.
        settings: Application Settings (timeouts, concurrency).
        notifier: LeadNotifier told about every new lead.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        adapters: Dict[EventSourceEnum, ChannelAdapter],
        settings,
        notifier: Optional[LeadNotifier] = None,
    ):
        self.session_factory = session_factory
        self.adapters = adapters
        self.settings = settings
        self.notifier = notifier or LoggingNotifier()
        self.task_timeout = settings.DISPATCH_TASK_TIMEOUT_SECONDS
        self._semaphores = {
            source: asyncio.Semaphore(settings.DISPATCH_MAX_CONCURRENCY) for source in adapters
        }
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def plan_channels(
        self,
        config: Optional[PostbackConfig],
        click_ids: ClickIdentifiers,
        has_lead: bool,
    ) -> Tuple[List[ChannelPlan], List[str]]:
        """Channels to attempt plus the reasons the others were skipped.

        Attempted = channels the config enables with a target, intersected
        with channels whose click id (if any) is available.
        """
        plans: List[ChannelPlan] = []
        skipped: List[str] = []

        if config is None or not config.is_active:
            return plans, ["No active postback config for this event"]

        if config.conversion_action_id:
            if click_ids.gclid:
                plans.append(ChannelPlan(
                    EventSourceEnum.google_ads,
                    target_id=config.conversion_action_id,
                    outbound_event_name=config.google_ads_event_name,
                ))
            else:
                skipped.append("Google Ads: no gclid")
        else:
            skipped.append("Google Ads: no conversion action configured")

        if config.send_to_bing:
            if click_ids.msclkid:
                plans.append(ChannelPlan(
                    EventSourceEnum.bing_ads,
                    target_id=config.bing_conversion_name or config.event_name,
                    outbound_event_name=config.bing_conversion_name or config.event_name,
                ))
            else:
                skipped.append("Microsoft Ads: no msclkid")

        if config.send_to_meta:
            if has_lead:
                plans.append(ChannelPlan(
                    EventSourceEnum.meta_capi,
                    outbound_event_name=config.meta_event_name or config.event_name,
                ))
            else:
                skipped.append("Meta CAPI: no lead")

        plans = [p for p in plans if p.source in self.adapters]
        return plans, skipped

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    def prepare(self, db: Session, ctx: DispatchContext, plans: Iterable[ChannelPlan]) -> List[PreparedSend]:
        """Write one pending row per planned channel. The caller commits."""
        prepared = []
        for plan in plans:
            row = ledger.record_event(
                db,
                source=plan.source,
                status=EventStatusEnum.pending,
                event_name=ctx.event_name,
                click_id=ctx.click_id,
                lead_id=ctx.lead_id,
                click_ids=ctx.click_ids.as_dict(),
                conversion_action_id=plan.target_id,
                outbound_event_name=plan.outbound_event_name,
                value=ctx.value,
                debt_amount=ctx.debt_amount,
                revenue=ctx.revenue,
                currency=ctx.currency,
                transaction_id=ctx.transaction_id,
                resolution=ctx.resolution,
            )
            prepared.append(PreparedSend(plan=plan, event_id=row.id))
        return prepared

    def launch(
        self,
        ctx: DispatchContext,
        prepared: List[PreparedSend],
        auto_event_id: Optional[int] = None,
    ) -> List[asyncio.Task]:
        """Start one detached task per prepared row (rows must be committed).

        With `auto_event_id`, the lead-created row moves to `logged` once
        every task has finished.
        """
        tasks = []
        for item in prepared:
            outbound = OutboundEvent(
                channel=item.plan.source,
                event_id=item.event_id,
                event_name=ctx.event_name,
                outbound_event_name=item.plan.outbound_event_name,
                target_id=item.plan.target_id,
                occurred_at=ctx.occurred_at,
                value=ctx.value,
                debt_amount=ctx.debt_amount,
                revenue=ctx.revenue,
                currency=ctx.currency,
                transaction_id=ctx.transaction_id,
                click_id=ctx.click_id,
                click_ids=ctx.click_ids,
                lead_id=ctx.lead_id,
                contact=ctx.contact,
            )
            tasks.append(self._spawn(self._run(item.plan.source, item.event_id, outbound)))

        if auto_event_id is not None:
            self._spawn(self._finalize_auto_event(auto_event_id, list(tasks)))

        logger.info(
            "[DISPATCH] Launched %d channel task(s) for '%s' (click id %s)",
            len(tasks), ctx.event_name, (ctx.click_id or "")[:20],
        )
        return tasks

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, source: EventSourceEnum, event_id: int, outbound: OutboundEvent) -> SendResult:
        """Send on one channel; the ledger write in `finally` always happens."""
        result = SendResult(success=False, error="Dispatch cancelled before completion")
        try:
            adapter = self.adapters[source]
            async with self._semaphores[source]:
                result = await asyncio.wait_for(adapter.send(outbound), timeout=self.task_timeout)
        except asyncio.TimeoutError:
            logger.warning("[DISPATCH] %s send for event %s timed out", source.value, event_id)
            result = SendResult(success=False, error=f"Timed out after {self.task_timeout:g}s")
        except Exception as e:
            logger.exception("[DISPATCH] %s send for event %s crashed", source.value, event_id)
            capture_exception(e, extra={"channel": source.value, "event_id": event_id})
            result = SendResult(success=False, error=f"Unexpected error: {e.__class__.__name__}")
        finally:
            self._record(source, event_id, result)
        return result

    def _record(self, source: EventSourceEnum, event_id: int, result: SendResult) -> None:
        try:
            with self.session_factory() as db:
                row = db.get(ConversionEvent, event_id)
                if row is None:
                    logger.error("[DISPATCH] Ledger row %s vanished", event_id)
                    return
                ledger.apply_send_result(db, row, result)

                if source == EventSourceEnum.salesforce and result.success and result.external_id and row.lead_id:
                    lead = db.get(Lead, row.lead_id)
                    # Set at most once: an earlier push stays authoritative
                    if lead is not None and not lead.crm_lead_id:
                        lead.crm_lead_id = result.external_id
                        db.add(lead)
                db.commit()
        except Exception as e:
            logger.error("[DISPATCH] Failed to record outcome for event %s: %s", event_id, e)
            capture_exception(e, extra={"channel": source.value, "event_id": event_id})
            return

        if result.success:
            logger.info("[DISPATCH] %s event %s sent", source.value, event_id)
        else:
            logger.warning("[DISPATCH] %s event %s failed: %s", source.value, event_id, result.error)

    async def _finalize_auto_event(self, auto_event_id: int, tasks: List[asyncio.Task]) -> None:
        results = await asyncio.gather(*tasks, return_exceptions=True)
        summary = []
        for result in results:
            if isinstance(result, SendResult):
                summary.append("sent" if result.success else "failed")
            else:
                summary.append("failed")
        self.resolve_auto_event(auto_event_id, f"Lead fan-out finished: {summary.count('sent')}/{len(summary)} sent")

    def resolve_auto_event(self, auto_event_id: int, detail: Optional[str] = None) -> None:
        """auto -> logged; other statuses are left alone."""
        try:
            with self.session_factory() as db:
                row = db.get(ConversionEvent, auto_event_id)
                if row is not None and row.status == EventStatusEnum.auto:
                    row.status = EventStatusEnum.logged
                    row.error_message = detail
                    db.commit()
        except Exception as e:
            logger.error("[DISPATCH] Failed to resolve auto event %s: %s", auto_event_id, e)
            capture_exception(e, extra={"event_id": auto_event_id})

    def notify_lead_created(self, lead_id: int) -> asyncio.Task:
        return self._spawn(self._notify(lead_id))

    async def _notify(self, lead_id: int) -> None:
        try:
            await asyncio.wait_for(self.notifier.lead_created(lead_id), timeout=self.task_timeout)
        except Exception as e:
            logger.error("[NOTIFIER] Lead %s notification failed: %s", lead_id, e)
            capture_exception(e, extra={"lead_id": lead_id})

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    async def wait(self, tasks: List[asyncio.Task], timeout: float) -> None:
        """Give the fan-out up to `timeout` seconds; never cancels anything."""
        if not tasks or timeout <= 0:
            return
        await asyncio.wait(tasks, timeout=timeout)

    def statuses(self, event_ids: Iterable[int]) -> Dict[int, EventStatusEnum]:
        """Current ledger status per row, read through a fresh session."""
        ids = list(event_ids)
        if not ids:
            return {}
        with self.session_factory() as db:
            rows = db.query(ConversionEvent.id, ConversionEvent.status).filter(ConversionEvent.id.in_(ids)).all()
        return {row_id: status for row_id, status in rows}

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight tasks (graceful shutdown)."""
        pending = list(self._tasks)
        if not pending:
            return
        logger.info("[DISPATCH] Draining %d in-flight task(s)", len(pending))
        done, still_pending = await asyncio.wait(pending, timeout=timeout)
        for task in still_pending:
            # Cancelled sends record a failed row in their finally block
            task.cancel()
        if still_pending:
            await asyncio.gather(*still_pending, return_exceptions=True)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------

    async def retry_event(self, event_id: int) -> RetryOutcome:
        """Re-invoke the adapter of a failed row and wait for the outcome."""
        with self.session_factory() as db:
            row = db.get(ConversionEvent, event_id)
            if row is None:
                return RetryOutcome(404, False, error="Event not found")
            if row.status != EventStatusEnum.failed:
                return RetryOutcome(400, False, error=f"Only failed events can be retried (status is {row.status.value})")

            adapter = self.adapters.get(row.source)
            if adapter is None:
                return RetryOutcome(400, False, error="Event has no channel to retry")

            lead = db.get(Lead, row.lead_id) if row.lead_id else None
            if row.source == EventSourceEnum.salesforce and lead is not None and lead.crm_lead_id:
                return RetryOutcome(400, False, error="Lead already pushed to Salesforce")

            outbound = OutboundEvent(
                channel=row.source,
                event_id=row.id,
                event_name=row.conversion_action_name,
                outbound_event_name=row.outbound_event_name,
                target_id=row.conversion_action_id,
                occurred_at=row.created_at or utcnow(),
                value=row.conversion_value,
                debt_amount=row.debt_amount,
                revenue=row.revenue,
                currency=row.currency,
                transaction_id=row.transaction_id,
                click_id=row.click_id,
                click_ids=ClickIdentifiers(
                    gclid=row.gclid,
                    msclkid=row.msclkid,
                    fbclid=row.fbclid,
                    fbc=row.fbc,
                    fbp=lead.fbp if lead else None,
                ),
                lead_id=row.lead_id,
                contact=LeadContact.from_lead(lead) if lead else None,
            )
            source = row.source

        missing = adapter.missing_requirement(outbound)
        if missing:
            return RetryOutcome(400, False, error=missing)

        logger.info("[DISPATCH] Retrying %s event %s", source.value, event_id)
        result = await self._run(source, event_id, outbound)

        with self.session_factory() as db:
            row = db.get(ConversionEvent, event_id)
            serialized = ledger.serialize_event(row) if row else None

        if result.success:
            return RetryOutcome(200, True, event=serialized)
        return RetryOutcome(400, False, error=result.error, event=serialized)
