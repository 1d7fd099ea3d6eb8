"""Postback ingest endpoint, routing config CRUD and ledger listing."""

import hashlib
import json
from datetime import datetime, timedelta

import httpx

from leadflow.models import ConversionEvent, EventSourceEnum, EventStatusEnum, Lead, ProviderEnum, ResolutionEnum
from leadflow.services import ledger

URL = "/api/postback/conversion"
GOOGLE = "googleads.googleapis.com"
BING = "campaign.api.bingads.microsoft.com"
META = "graph.facebook.com"


def _rows(session_factory, **filters):
    with session_factory() as session:
        query = session.query(ConversionEvent).filter_by(**filters).order_by(ConversionEvent.id)
        rows = query.all()
        session.expunge_all()
        return rows


def _lead(session_factory, lead_id):
    with session_factory() as session:
        lead = session.get(Lead, lead_id)
        session.expunge(lead)
        return lead


# =============================================================================
# Validation and identity outcomes
# =============================================================================

def test_missing_click_id_is_rejected_without_rows(client, session_factory):
    response = client.get(URL, params={"event": "qualified"})

    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "eli_clickid is required"}
    assert _rows(session_factory) == []


def test_missing_event_is_rejected(client, session_factory):
    response = client.get(URL, params={"eli_clickid": "eli_abc123"})

    assert response.status_code == 400
    assert response.json()["error"] == "event is required"
    assert _rows(session_factory) == []


def test_unknown_click_id_is_logged_and_404(client, session_factory):
    response = client.get(URL, params={"eli_clickid": "eli_nobody", "event": "qualified"})

    assert response.status_code == 404
    body = response.json()
    assert body["success"] is False
    assert body["click_id"] == "eli_nobody"

    (row,) = _rows(session_factory)
    assert row.id == body["event_id"]
    assert row.status == EventStatusEnum.logged
    assert row.source == EventSourceEnum.postback
    assert row.resolution.value == "uncorrelated"


def test_unknown_identity_status_is_configurable(app, client, session_factory):
    app.state.postback_service.settings = app.state.settings.model_copy(
        update={"UNKNOWN_IDENTITY_STATUS_CODE": 200}
    )
    response = client.get(URL, params={"click_id": "eli_nobody", "event": "qualified"})

    assert response.status_code == 200
    assert len(_rows(session_factory)) == 1


def test_visitor_only_click_id_is_pending_with_warning(client, make_visitor, session_factory, providers):
    make_visitor(click_id="eli_visitor", gclid="G-visit")

    response = client.get(URL, params={"eli_clickid": "eli_visitor", "event": "qualified"})

    assert response.status_code == 200
    body = response.json()
    assert body["warning"] == "Visitor found but no lead associated"
    assert body["gclid"] == "G-visit"
    (row,) = _rows(session_factory)
    assert row.status == EventStatusEnum.pending
    assert row.resolution.value == "visitor_only"
    assert providers.calls == []


def test_blocked_lead_suppresses_every_channel(client, connect_all, make_config, make_lead, session_factory, providers):
    make_config()
    make_lead(gclid="G1", msclkid="M1", is_blocked=True)

    response = client.get(URL, params={"eli_clickid": "eli_abc123", "event": "qualified"})

    assert response.status_code == 200
    body = response.json()
    assert body["blocked"] is True
    assert body["google_ads_sent"] is False
    (row,) = _rows(session_factory)
    assert row.status == EventStatusEnum.blocked
    assert providers.calls == []


def test_no_config_logs_ingest_with_reason(client, make_lead, session_factory):
    make_lead(gclid="G1")

    response = client.get(URL, params={"eli_clickid": "eli_abc123", "event": "signed"})

    assert response.status_code == 200
    body = response.json()
    assert body["google_ads_configured"] is False
    assert all(not channel["attempted"] for channel in body["channels"].values())
    (row,) = _rows(session_factory)
    assert row.status == EventStatusEnum.logged
    assert row.error_message == "No channel applied: No active postback config for this event"


# =============================================================================
# Fan-out
# =============================================================================

def test_fan_out_reaches_every_connected_channel(
    client, connect_all, make_config, make_lead, session_factory, providers
):
    make_config()
    lead = make_lead(gclid="G1", msclkid="M1")

    response = client.get(URL, params={
        "eli_clickid": "eli_abc123",
        "event": "Qualified",
        "debt_amount": "$25,000",
        "transaction_id": "T-1",
    })

    assert response.status_code == 200
    body = response.json()
    assert body["lead_id"] == lead.id
    assert body["debt_amount"] == 25000.0
    assert body["google_ads_configured"] is True
    assert body["google_ads_sent"] is True
    assert body["bing_ads_sent"] is True
    assert body["meta_capi_sent"] is True
    assert body["channels"]["salesforce"]["attempted"] is False

    (google_call,) = providers.calls_to(GOOGLE)
    assert google_call.url.path.endswith("/customers/1234567890:uploadClickConversions")
    assert google_call.headers["developer-token"] == "dev-token"
    assert google_call.headers["Authorization"] == "Bearer google_ads-access"
    conversion = json.loads(google_call.content)["conversions"][0]
    assert conversion["gclid"] == "G1"
    assert conversion["conversionAction"] == "customers/1234567890/conversionActions/555"
    assert conversion["conversionValue"] == 25000.0
    assert conversion["orderId"] == "T-1"

    (bing_call,) = providers.calls_to(BING)
    assert bing_call.headers["CustomerAccountId"] == "222"
    bing_conversion = json.loads(bing_call.content)["OfflineConversions"][0]
    assert bing_conversion["MicrosoftClickId"] == "M1"
    assert bing_conversion["ConversionName"] == "Qualified Lead"

    (meta_call,) = providers.calls_to(META)
    assert meta_call.url.path.endswith("/pixel-1/events")
    meta_body = json.loads(meta_call.content)
    assert meta_body["access_token"] == "meta-access"
    meta_event = meta_body["data"][0]
    assert meta_event["event_name"] == "Lead"
    assert meta_event["event_id"] == f"leadflow-{body['channels']['meta_capi']['event_id']}"
    assert meta_event["user_data"]["em"] == [hashlib.sha256(b"jane@example.com").hexdigest()]
    assert meta_event["user_data"]["ph"] == [hashlib.sha256(b"5550102030").hexdigest()]

    ingest = _rows(session_factory, source=EventSourceEnum.postback)
    assert [r.status for r in ingest] == [EventStatusEnum.logged]
    assert ingest[0].id == body["event_id"]
    (meta_row,) = _rows(session_factory, source=EventSourceEnum.meta_capi)
    assert meta_row.status == EventStatusEnum.sent
    assert "access_token" not in meta_row.capi_payload


def test_channel_failure_does_not_affect_siblings(
    client, connect_all, make_config, make_lead, session_factory, providers
):
    make_config()
    make_lead(gclid="G1", msclkid="M1")
    providers.routes[GOOGLE] = lambda r: httpx.Response(400, json={"error": {"message": "INVALID_GCLID"}})

    body = client.get(URL, params={"eli_clickid": "eli_abc123", "event": "qualified"}).json()

    assert body["channels"]["google_ads"]["status"] == "failed"
    assert body["bing_ads_sent"] is True
    assert body["meta_capi_sent"] is True
    (google_row,) = _rows(session_factory, source=EventSourceEnum.google_ads)
    assert google_row.error_message == "INVALID_GCLID"


def test_unconnected_channel_is_recorded_as_failed(
    client, connect_provider, make_config, make_lead, session_factory, providers
):
    connect_provider(ProviderEnum.google_ads, customer_id="1234567890")
    make_config(send_to_meta=False)
    make_lead(gclid="G1", msclkid="M1")

    body = client.get(URL, params={"eli_clickid": "eli_abc123", "event": "qualified"}).json()

    assert body["google_ads_sent"] is True
    assert body["channels"]["bing_ads"]["status"] == "failed"
    (bing_row,) = _rows(session_factory, source=EventSourceEnum.bing_ads)
    assert "channel unavailable" in bing_row.error_message
    assert providers.calls_to(BING) == []


def test_click_id_on_the_event_wins(client, connect_all, make_config, make_lead, providers):
    make_config(send_to_bing=False, send_to_meta=False)
    make_lead(gclid="G-lead")

    client.get(URL, params={"eli_clickid": "eli_abc123", "event": "qualified", "gclid": "G-event"})

    (google_call,) = providers.calls_to(GOOGLE)
    assert json.loads(google_call.content)["conversions"][0]["gclid"] == "G-event"


def test_crm_fields_are_merged_onto_the_lead(client, make_lead, session_factory):
    lead = make_lead(stage="new", disposition="Callback")

    client.get(URL, params={
        "eli_clickid": "eli_abc123",
        "event": "enrolled",
        "five9_dispo": "Sold",
        "revenue": "1,500.50",
    })

    merged = _lead(session_factory, lead.id)
    assert merged.disposition == "Sold"
    assert merged.stage == "new"
    assert float(merged.revenue) == 1500.5
    assert merged.hidden_fields["last_event"] == "enrolled"


def test_duplicate_transaction_is_acknowledged_once(
    client, connect_all, make_config, make_lead, session_factory, providers
):
    make_config(send_to_bing=False, send_to_meta=False)
    make_lead(gclid="G1")
    params = {"eli_clickid": "eli_abc123", "event": "qualified", "transaction_id": "T-9"}

    first = client.get(URL, params=params).json()
    second = client.get(URL, params=params).json()

    assert second["duplicate"] is True
    assert second["event_id"] == first["event_id"]
    assert len(providers.calls_to(GOOGLE)) == 1
    assert len(_rows(session_factory, source=EventSourceEnum.postback)) == 1


def test_repeat_without_transaction_id_is_not_deduplicated(client, make_config, make_lead, session_factory):
    make_lead()
    params = {"eli_clickid": "eli_abc123", "event": "qualified"}

    client.get(URL, params=params)
    client.get(URL, params=params)

    assert len(_rows(session_factory, source=EventSourceEnum.postback)) == 2


def test_retry_after_unknown_click_id_is_processed_once_lead_exists(
    client, connect_all, make_config, make_lead, session_factory, providers
):
    make_config(send_to_bing=False, send_to_meta=False)
    params = {"eli_clickid": "eli_late", "event": "qualified", "transaction_id": "T-1"}

    assert client.get(URL, params=params).status_code == 404

    make_lead(click_id="eli_late", gclid="G1")
    response = client.get(URL, params=params)

    assert response.status_code == 200
    body = response.json()
    assert "duplicate" not in body
    assert body["google_ads_sent"] is True
    assert len(providers.calls_to(GOOGLE)) == 1
    resolutions = [r.resolution.value for r in _rows(session_factory, source=EventSourceEnum.postback)]
    assert resolutions == ["uncorrelated", "lead"]

    # The processed retry is now the row later repeats collapse onto
    third = client.get(URL, params=params).json()
    assert third["duplicate"] is True
    assert third["event_id"] == body["event_id"]
    assert len(providers.calls_to(GOOGLE)) == 1


def test_repeat_outside_dedup_window_is_processed_again(
    app, client, connect_all, make_config, make_lead, session_factory, providers
):
    make_config(send_to_bing=False, send_to_meta=False)
    make_lead(gclid="G1")
    params = {"eli_clickid": "eli_abc123", "event": "qualified", "transaction_id": "T-5"}

    first = client.get(URL, params=params).json()

    window = app.state.settings.DEDUP_WINDOW_HOURS
    with session_factory() as session:
        row = session.get(ConversionEvent, first["event_id"])
        row.created_at = datetime.utcnow() - timedelta(hours=window, minutes=5)
        session.commit()

    second = client.get(URL, params=params).json()

    assert "duplicate" not in second
    assert second["event_id"] != first["event_id"]
    assert len(_rows(session_factory, source=EventSourceEnum.postback)) == 2
    assert len(providers.calls_to(GOOGLE)) == 2


def test_dedup_lookup_respects_window_edge(db, make_lead):
    lead = make_lead()
    now = datetime.utcnow()
    row = ConversionEvent(
        source=EventSourceEnum.postback,
        status=EventStatusEnum.logged,
        click_id=lead.click_id,
        conversion_action_name="qualified",
        resolution=ResolutionEnum.lead,
        created_at=now - timedelta(hours=23),
    )
    db.add(row)
    db.commit()

    assert ledger.find_recent_duplicate(db, lead.click_id, "qualified", 24, now=now).id == row.id
    assert ledger.find_recent_duplicate(db, lead.click_id, "qualified", 24, now=now + timedelta(hours=1)) is None
    assert ledger.find_recent_duplicate(db, lead.click_id, "signed", 24, now=now) is None


def test_form_body_overrides_query_string(client, make_lead, session_factory):
    make_lead()

    response = client.post(
        URL + "?event=ignored",
        data={"eli_clickid": "eli_abc123", "event": "signed", "value": "99"},
    )

    assert response.status_code == 200
    (row,) = _rows(session_factory)
    assert row.conversion_action_name == "signed"
    assert float(row.conversion_value) == 99.0


def test_json_body_is_accepted(client, make_lead, session_factory):
    make_lead()

    response = client.post(URL, json={"click_id": "eli_abc123", "event": "signed"})

    assert response.status_code == 200
    assert _rows(session_factory)[0].click_id == "eli_abc123"


# =============================================================================
# Admin: config, listing, retry
# =============================================================================

def test_config_crud_and_conflicts(client, auth_headers):
    payload = {"name": "Qualified", "event_name": " Qualified ", "conversion_action_id": "555"}

    created = client.post("/api/postback/config", json=payload, headers=auth_headers)
    assert created.status_code == 201
    config = created.json()
    assert config["event_name"] == "qualified"

    conflict = client.post("/api/postback/config", json=payload, headers=auth_headers)
    assert conflict.status_code == 409

    inactive = client.post(
        "/api/postback/config", json={**payload, "is_active": False}, headers=auth_headers
    )
    assert inactive.status_code == 201
    reactivate = client.put(
        f"/api/postback/config/{inactive.json()['id']}", json={"is_active": True}, headers=auth_headers
    )
    assert reactivate.status_code == 409

    blank = client.put(f"/api/postback/config/{config['id']}", json={"name": "  "}, headers=auth_headers)
    assert blank.status_code == 400

    updated = client.put(
        f"/api/postback/config/{config['id']}", json={"send_to_meta": True}, headers=auth_headers
    )
    assert updated.json()["send_to_meta"] is True

    listed = client.get("/api/postback/config", headers=auth_headers).json()
    assert [c["id"] for c in listed] == [config["id"], inactive.json()["id"]]

    assert client.delete(f"/api/postback/config/{config['id']}", headers=auth_headers).json() == {"success": True}
    assert client.delete(f"/api/postback/config/{config['id']}", headers=auth_headers).status_code == 404


def test_admin_routes_require_authentication(client):
    assert client.get("/api/postback/config").status_code == 401
    assert client.get("/api/postback/events").status_code == 401


def test_postback_url_describes_parameters(client, auth_headers):
    body = client.get("/api/postback/url", headers=auth_headers).json()

    assert body["postback_url"] == "http://testserver/api/postback/conversion"
    assert body["methods"] == ["GET", "POST"]
    assert "click_id" in body["parameters"]["eli_clickid"]


def test_events_listing_filters_and_paginates(client, auth_headers, connect_all, make_config, make_lead, providers):
    make_config()
    make_lead(gclid="G1", msclkid="M1")
    providers.routes[BING] = lambda r: httpx.Response(500, json={"Message": "Internal error"})
    client.get(URL, params={"eli_clickid": "eli_abc123", "event": "qualified"})

    everything = client.get("/api/postback/events", headers=auth_headers).json()
    assert everything["total"] == 4
    assert everything["events"][0]["lead_email"] == "jane@example.com"

    failed = client.get("/api/postback/events", params={"status": "failed"}, headers=auth_headers).json()
    assert [e["source"] for e in failed["events"]] == ["bing_ads"]
    assert failed["events"][0]["error_message"] == "Internal error"

    page = client.get("/api/postback/events", params={"limit": 3, "page": 2}, headers=auth_headers).json()
    assert page["pages"] == 2
    assert len(page["events"]) == 1

    by_source = client.get("/api/postback/events", params={"source": "postback"}, headers=auth_headers).json()
    assert by_source["total"] == 1


def test_retry_resends_a_failed_channel(client, auth_headers, connect_all, make_config, make_lead, providers):
    make_config(send_to_bing=False, send_to_meta=False)
    make_lead(gclid="G1")
    providers.routes[GOOGLE] = lambda r: httpx.Response(503, json={"error": {"message": "UNAVAILABLE"}})
    body = client.get(URL, params={"eli_clickid": "eli_abc123", "event": "qualified"}).json()
    event_id = body["channels"]["google_ads"]["event_id"]

    providers.routes[GOOGLE] = lambda r: httpx.Response(200, json={"results": [{}]})
    response = client.post(f"/api/postback/events/{event_id}/retry", headers=auth_headers)

    assert response.status_code == 200
    event = response.json()["event"]
    assert event["status"] == "sent"
    assert event["attempts"] == 2

    again = client.post(f"/api/postback/events/{event_id}/retry", headers=auth_headers)
    assert again.status_code == 400
    assert client.post("/api/postback/events/9999/retry", headers=auth_headers).status_code == 404
