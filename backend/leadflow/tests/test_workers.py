"""Maintenance jobs run by the ARQ worker."""

import asyncio
from datetime import timedelta

from leadflow.models import ConversionEvent, EventSourceEnum, EventStatusEnum, Visitor, utcnow
from leadflow.services import ledger
from leadflow.workers import arq_worker


def _age(db, row, minutes):
    row.created_at = utcnow() - timedelta(minutes=minutes)
    db.add(row)
    db.commit()


def test_sweep_finishes_stuck_rows(db, session_factory, settings):
    stuck_send = ledger.record_event(
        db, source=EventSourceEnum.google_ads, status=EventStatusEnum.pending, event_name="qualified"
    )
    stuck_auto = ledger.record_event(
        db, source=EventSourceEnum.auto, status=EventStatusEnum.auto, event_name="lead"
    )
    visitor_only = ledger.record_event(
        db, source=EventSourceEnum.postback, status=EventStatusEnum.pending, event_name="qualified"
    )
    fresh_send = ledger.record_event(
        db, source=EventSourceEnum.bing_ads, status=EventStatusEnum.pending, event_name="qualified"
    )
    for row in (stuck_send, stuck_auto, visitor_only):
        _age(db, row, minutes=120)
    db.commit()
    ids = [stuck_send.id, stuck_auto.id, visitor_only.id, fresh_send.id]

    counts = asyncio.run(arq_worker.sweep_stale_events({"session_factory": session_factory, "settings": settings}))

    assert counts == {"failed": 1, "logged": 1}
    with session_factory() as session:
        statuses = [session.get(ConversionEvent, i).status for i in ids]
    assert statuses == [
        EventStatusEnum.failed,
        EventStatusEnum.logged,
        EventStatusEnum.pending,
        EventStatusEnum.pending,
    ]


def test_purge_job_uses_retention_setting(db, session_factory, settings, make_visitor):
    make_visitor(click_id="eli_old", last_visit=utcnow() - timedelta(days=365))
    make_visitor(click_id="eli_new", last_visit=utcnow())
    short = settings.model_copy(update={"VISITOR_RETENTION_DAYS": 30})

    result = asyncio.run(arq_worker.purge_expired_visitors({"session_factory": session_factory, "settings": short}))

    assert result == {"deleted": 1}
    with session_factory() as session:
        assert [v.click_id for v in session.query(Visitor).all()] == ["eli_new"]


def test_job_failure_is_reported_not_raised(session_factory, settings, monkeypatch):
    reported = []

    def broken_sweep(db, older_than_minutes):
        raise RuntimeError("database unreachable")

    monkeypatch.setattr(arq_worker.ledger, "sweep_stale_events", broken_sweep)
    monkeypatch.setattr(arq_worker, "capture_exception", lambda e, extra=None: reported.append(extra))

    result = asyncio.run(arq_worker.sweep_stale_events({"session_factory": session_factory, "settings": settings}))

    assert result == {"error": "database unreachable"}
    assert reported == [{"operation": "sweep_stale_events"}]


def test_redis_settings_parse_url(monkeypatch):
    monkeypatch.setenv("REDIS_URL", "rediss://:secret@cache.internal:6380/2")

    redis_settings = arq_worker.get_redis_settings()

    assert redis_settings.host == "cache.internal"
    assert redis_settings.port == 6380
    assert redis_settings.password == "secret"
    assert redis_settings.database == 2
    assert redis_settings.ssl is True
