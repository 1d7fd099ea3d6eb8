"""Fan-out independence, timeouts, cancellation and admin retry."""

import asyncio
from decimal import Decimal

import pytest

from leadflow.models import ConversionEvent, EventSourceEnum, EventStatusEnum, PostbackConfig
from leadflow.services import dispatcher as dispatcher_module
from leadflow.services import ledger
from leadflow.services.channels import GoogleAdsAdapter, SendResult
from leadflow.services.dispatcher import ChannelPlan, DispatchContext, Dispatcher
from leadflow.services.identity_resolver import ClickIdentifiers


class FakeAdapter:
    """Adapter double: `behaviour` is "ok", "error", "crash" or "hang"."""

    def __init__(self, behaviour="ok"):
        self.behaviour = behaviour
        self.sent = []

    def missing_requirement(self, event):
        return None

    async def send(self, event):
        self.sent.append(event)
        if self.behaviour == "crash":
            raise RuntimeError("adapter bug")
        if self.behaviour == "hang":
            await asyncio.sleep(30)
        if self.behaviour == "error":
            return SendResult(success=False, error="INVALID_CLICK_ID", payload={"gclid": "G1"})
        return SendResult(success=True, response={"ok": True}, payload={"gclid": "G1"})


class NoTokenManager:
    async def get_valid_access_token(self):
        return None


@pytest.fixture
def fast_settings(settings):
    return settings.model_copy(update={"DISPATCH_TASK_TIMEOUT_SECONDS": 0.2})


@pytest.fixture
def ctx():
    return DispatchContext(
        event_name="qualified",
        click_id="eli_1",
        click_ids=ClickIdentifiers(gclid="G1", msclkid="M1"),
        debt_amount=Decimal("25000"),
    )


def _prepare(dispatcher, db, ctx, *sources):
    prepared = dispatcher.prepare(db, ctx, [ChannelPlan(source, target_id="555") for source in sources])
    db.commit()
    return prepared


def _row(session_factory, event_id):
    with session_factory() as session:
        row = session.get(ConversionEvent, event_id)
        session.expunge(row)
        return row


def test_prepare_writes_one_pending_row_per_channel(db, session_factory, settings, ctx):
    dispatcher = Dispatcher(session_factory, {EventSourceEnum.google_ads: FakeAdapter()}, settings)

    prepared = _prepare(dispatcher, db, ctx, EventSourceEnum.google_ads)

    row = _row(session_factory, prepared[0].event_id)
    assert row.status == EventStatusEnum.pending
    assert row.source == EventSourceEnum.google_ads
    assert row.gclid == "G1"
    assert row.debt_amount == Decimal("25000")


def test_channel_failures_are_independent(db, session_factory, settings, ctx, monkeypatch):
    captured = []
    monkeypatch.setattr(dispatcher_module, "capture_exception", lambda e, extra=None: captured.append(extra))
    adapters = {
        EventSourceEnum.google_ads: FakeAdapter("crash"),
        EventSourceEnum.bing_ads: FakeAdapter("ok"),
        EventSourceEnum.meta_capi: FakeAdapter("error"),
    }
    dispatcher = Dispatcher(session_factory, adapters, settings)
    prepared = _prepare(
        dispatcher, db, ctx, EventSourceEnum.google_ads, EventSourceEnum.bing_ads, EventSourceEnum.meta_capi
    )

    async def run():
        await asyncio.gather(*dispatcher.launch(ctx, prepared))

    asyncio.run(run())

    google, bing, meta = (_row(session_factory, p.event_id) for p in prepared)
    assert google.status == EventStatusEnum.failed
    assert google.error_message == "Unexpected error: RuntimeError"
    assert bing.status == EventStatusEnum.sent
    assert bing.sent_at is not None
    assert bing.capi_payload == {"gclid": "G1"}
    assert meta.status == EventStatusEnum.failed
    assert meta.error_message == "INVALID_CLICK_ID"
    assert all(row.attempts == 1 for row in (google, bing, meta))
    assert captured == [{"channel": "google_ads", "event_id": google.id}]


def test_send_exceeding_task_timeout_is_failed(db, session_factory, fast_settings, ctx):
    dispatcher = Dispatcher(session_factory, {EventSourceEnum.google_ads: FakeAdapter("hang")}, fast_settings)
    prepared = _prepare(dispatcher, db, ctx, EventSourceEnum.google_ads)

    async def run():
        await asyncio.gather(*dispatcher.launch(ctx, prepared))

    asyncio.run(run())

    row = _row(session_factory, prepared[0].event_id)
    assert row.status == EventStatusEnum.failed
    assert row.error_message.startswith("Timed out after")


def test_missing_token_fails_without_network(db, session_factory, settings, ctx, providers):
    adapter = GoogleAdsAdapter(NoTokenManager(), settings, session_factory, providers.transport)
    dispatcher = Dispatcher(session_factory, {EventSourceEnum.google_ads: adapter}, settings)
    prepared = _prepare(dispatcher, db, ctx, EventSourceEnum.google_ads)

    async def run():
        await asyncio.gather(*dispatcher.launch(ctx, prepared))

    asyncio.run(run())

    row = _row(session_factory, prepared[0].event_id)
    assert row.status == EventStatusEnum.failed
    assert "unavailable" in row.error_message
    assert providers.calls == []


def test_drain_cancels_stragglers_and_records_them(db, session_factory, settings, ctx):
    dispatcher = Dispatcher(session_factory, {EventSourceEnum.google_ads: FakeAdapter("hang")}, settings)
    prepared = _prepare(dispatcher, db, ctx, EventSourceEnum.google_ads)

    async def run():
        dispatcher.launch(ctx, prepared)
        await asyncio.sleep(0.05)
        assert dispatcher.in_flight == 1
        await dispatcher.drain(timeout=0.1)
        await asyncio.sleep(0)

    asyncio.run(run())

    row = _row(session_factory, prepared[0].event_id)
    assert row.status == EventStatusEnum.failed
    assert row.error_message == "Dispatch cancelled before completion"
    assert dispatcher.in_flight == 0


def test_auto_row_is_logged_after_lead_fan_out(db, session_factory, settings, ctx):
    dispatcher = Dispatcher(session_factory, {EventSourceEnum.meta_capi: FakeAdapter()}, settings)
    auto_row = ledger.record_event(
        db, source=EventSourceEnum.auto, status=EventStatusEnum.auto, event_name="lead"
    )
    prepared = _prepare(dispatcher, db, ctx, EventSourceEnum.meta_capi)
    auto_id = auto_row.id

    async def run():
        dispatcher.launch(ctx, prepared, auto_event_id=auto_id)
        await dispatcher.drain()

    asyncio.run(run())

    row = _row(session_factory, auto_id)
    assert row.status == EventStatusEnum.logged
    assert row.error_message == "Lead fan-out finished: 1/1 sent"


def test_notifier_failure_never_propagates(session_factory, settings, monkeypatch):
    captured = []
    monkeypatch.setattr(dispatcher_module, "capture_exception", lambda e, extra=None: captured.append(extra))

    class BrokenNotifier:
        async def lead_created(self, lead_id):
            raise ConnectionError("email service down")

    dispatcher = Dispatcher(session_factory, {}, settings, notifier=BrokenNotifier())

    async def run():
        dispatcher.notify_lead_created(42)
        await dispatcher.drain()

    asyncio.run(run())
    assert captured == [{"lead_id": 42}]


def test_plan_channels_intersects_config_and_click_ids(session_factory, settings):
    adapters = {
        EventSourceEnum.google_ads: FakeAdapter(),
        EventSourceEnum.bing_ads: FakeAdapter(),
        EventSourceEnum.meta_capi: FakeAdapter(),
    }
    dispatcher = Dispatcher(session_factory, adapters, settings)
    config = PostbackConfig(
        name="Qualified", event_name="qualified", conversion_action_id="555",
        send_to_bing=True, bing_conversion_name=None, send_to_meta=True, is_active=True,
    )

    plans, skipped = dispatcher.plan_channels(config, ClickIdentifiers(msclkid="M1"), has_lead=True)

    assert [p.source for p in plans] == [EventSourceEnum.bing_ads, EventSourceEnum.meta_capi]
    assert plans[0].target_id == "qualified"
    assert skipped == ["Google Ads: no gclid"]

    plans, skipped = dispatcher.plan_channels(None, ClickIdentifiers(gclid="G1"), has_lead=True)
    assert plans == []
    assert skipped == ["No active postback config for this event"]


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------

def _failed_row(db, source=EventSourceEnum.google_ads, **fields):
    values = dict(
        source=source,
        status=EventStatusEnum.failed,
        event_name="qualified",
        click_id="eli_1",
        click_ids={"gclid": "G1"},
        conversion_action_id="555",
        error_message="Timed out contacting Google Ads",
    )
    values.update(fields)
    row = ledger.record_event(db, **values)
    db.commit()
    return row.id


def test_retry_unknown_event_is_404(session_factory, settings):
    dispatcher = Dispatcher(session_factory, {}, settings)
    outcome = asyncio.run(dispatcher.retry_event(999))
    assert outcome.status_code == 404


def test_retry_only_applies_to_failed_rows(db, session_factory, settings):
    dispatcher = Dispatcher(session_factory, {EventSourceEnum.google_ads: FakeAdapter()}, settings)
    event_id = _failed_row(db, status=EventStatusEnum.sent)

    outcome = asyncio.run(dispatcher.retry_event(event_id))

    assert outcome.status_code == 400
    assert "status is sent" in outcome.error


def test_retry_rejects_row_without_required_click_id(db, session_factory, settings, providers):
    adapter = GoogleAdsAdapter(NoTokenManager(), settings, session_factory, providers.transport)
    dispatcher = Dispatcher(session_factory, {EventSourceEnum.google_ads: adapter}, settings)
    event_id = _failed_row(db, click_ids={})

    outcome = asyncio.run(dispatcher.retry_event(event_id))

    assert outcome.status_code == 400
    assert outcome.error == "No gclid available"
    assert _row(session_factory, event_id).attempts == 0


def test_retry_ingest_row_has_no_channel(db, session_factory, settings):
    dispatcher = Dispatcher(session_factory, {EventSourceEnum.google_ads: FakeAdapter()}, settings)
    event_id = _failed_row(db, source=EventSourceEnum.postback)

    outcome = asyncio.run(dispatcher.retry_event(event_id))

    assert outcome.status_code == 400


def test_successful_retry_marks_row_sent(db, session_factory, settings):
    adapter = FakeAdapter()
    dispatcher = Dispatcher(session_factory, {EventSourceEnum.google_ads: adapter}, settings)
    event_id = _failed_row(db)

    outcome = asyncio.run(dispatcher.retry_event(event_id))

    assert outcome.status_code == 200
    assert outcome.event["status"] == "sent"
    assert outcome.event["error_message"] is None
    row = _row(session_factory, event_id)
    assert row.status == EventStatusEnum.sent
    assert row.attempts == 1
    assert adapter.sent[0].target_id == "555"
    assert adapter.sent[0].click_ids.gclid == "G1"


def test_failed_retry_stays_failed_with_new_error(db, session_factory, settings):
    dispatcher = Dispatcher(session_factory, {EventSourceEnum.google_ads: FakeAdapter("error")}, settings)
    event_id = _failed_row(db)

    outcome = asyncio.run(dispatcher.retry_event(event_id))

    assert outcome.status_code == 400
    assert outcome.error == "INVALID_CLICK_ID"
    row = _row(session_factory, event_id)
    assert row.status == EventStatusEnum.failed
    assert row.error_message == "INVALID_CLICK_ID"
