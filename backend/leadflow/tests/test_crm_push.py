"""Manual Salesforce push and per-provider connection tests."""

import itertools

import httpx

from leadflow.models import ConversionEvent, EventSourceEnum, EventStatusEnum, Lead, ProviderEnum

SALESFORCE = "acme.my.salesforce.com"
META = "graph.facebook.com"


def _push(client, auth_headers, lead_id):
    return client.post(f"/api/channels/salesforce/push/{lead_id}", headers=auth_headers)


def _salesforce_rows(session_factory):
    with session_factory() as session:
        rows = (
            session.query(ConversionEvent)
            .filter_by(source=EventSourceEnum.salesforce)
            .order_by(ConversionEvent.id)
            .all()
        )
        session.expunge_all()
        return rows


def _crm_lead_id(session_factory, lead_id):
    with session_factory() as session:
        return session.get(Lead, lead_id).crm_lead_id


# =============================================================================
# Single lead
# =============================================================================

def test_lead_created_before_connecting_can_be_pushed(
    client, auth_headers, connect_provider, make_lead, session_factory, providers
):
    lead = make_lead()
    connect_provider(ProviderEnum.salesforce)

    response = _push(client, auth_headers, lead.id)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["crm_lead_id"] == "00Q000000000001"
    (call,) = providers.calls_to(SALESFORCE)
    assert call.url.path.endswith("/sobjects/Lead")
    assert _crm_lead_id(session_factory, lead.id) == "00Q000000000001"
    (row,) = _salesforce_rows(session_factory)
    assert row.id == body["event_id"]
    assert row.status == EventStatusEnum.sent
    assert row.lead_id == lead.id


def test_already_pushed_lead_is_refused(client, auth_headers, connect_provider, make_lead, session_factory, providers):
    connect_provider(ProviderEnum.salesforce)
    lead = make_lead(crm_lead_id="00Q-existing")

    response = _push(client, auth_headers, lead.id)

    assert response.status_code == 409
    assert response.json()["crm_lead_id"] == "00Q-existing"
    assert providers.calls == []
    assert _salesforce_rows(session_factory) == []


def test_second_push_is_refused_once_the_first_succeeded(client, auth_headers, connect_provider, make_lead, providers):
    connect_provider(ProviderEnum.salesforce)
    lead = make_lead()

    assert _push(client, auth_headers, lead.id).status_code == 200
    assert _push(client, auth_headers, lead.id).status_code == 409
    assert len(providers.calls_to(SALESFORCE)) == 1


def test_blocked_or_unknown_lead_is_refused(client, auth_headers, connect_provider, make_lead, providers):
    connect_provider(ProviderEnum.salesforce)
    blocked = make_lead(is_blocked=True)

    response = _push(client, auth_headers, blocked.id)
    assert response.status_code == 400
    assert response.json()["error"] == "Lead is blocked"

    assert _push(client, auth_headers, 9999).status_code == 404
    assert providers.calls == []


def test_push_needs_a_connected_salesforce(client, auth_headers, connect_provider, make_lead, session_factory):
    lead = make_lead()
    assert _push(client, auth_headers, lead.id).json()["error"] == "Salesforce is not connected"

    connect_provider(ProviderEnum.salesforce, is_enabled=False)
    response = _push(client, auth_headers, lead.id)

    assert response.status_code == 400
    assert _salesforce_rows(session_factory) == []


def test_salesforce_rejection_is_reported_and_recorded(
    client, auth_headers, connect_provider, make_lead, session_factory, providers
):
    connect_provider(ProviderEnum.salesforce)
    lead = make_lead()
    providers.routes[SALESFORCE] = lambda r: httpx.Response(
        400, json=[{"message": "Required fields are missing: [LastName]", "errorCode": "REQUIRED_FIELD_MISSING"}]
    )

    response = _push(client, auth_headers, lead.id)

    assert response.status_code == 502
    assert response.json()["error"] == "Required fields are missing: [LastName]"
    (row,) = _salesforce_rows(session_factory)
    assert row.status == EventStatusEnum.failed
    assert _crm_lead_id(session_factory, lead.id) is None


def test_push_requires_admin(client, make_lead):
    lead = make_lead()
    assert client.post(f"/api/channels/salesforce/push/{lead.id}").status_code == 401
    assert client.post("/api/channels/salesforce/push-all").status_code == 401


# =============================================================================
# Batch
# =============================================================================

def test_push_all_skips_pushed_and_blocked_leads(
    client, auth_headers, connect_provider, make_lead, session_factory, providers
):
    connect_provider(ProviderEnum.salesforce)
    ids = itertools.count(1)
    providers.routes[SALESFORCE] = lambda r: httpx.Response(
        201, json={"id": f"00Q{next(ids):012d}", "success": True, "errors": []}
    )
    first = make_lead(click_id="eli_one")
    second = make_lead(click_id="eli_two", email="sam@example.com")
    make_lead(click_id="eli_pushed", crm_lead_id="00Q-existing")
    make_lead(click_id="eli_blocked", is_blocked=True)

    response = client.post("/api/channels/salesforce/push-all", headers=auth_headers)

    assert response.status_code == 200
    assert response.json() == {"success": True, "pushed": 2, "failed": 0, "pending": 0, "total": 2}
    assert len(providers.calls_to(SALESFORCE)) == 2
    assert _crm_lead_id(session_factory, first.id) is not None
    assert _crm_lead_id(session_factory, second.id) is not None
    assert _crm_lead_id(session_factory, first.id) != _crm_lead_id(session_factory, second.id)

    again = client.post("/api/channels/salesforce/push-all", headers=auth_headers).json()
    assert again["total"] == 0


def test_push_all_counts_failures(client, auth_headers, connect_provider, make_lead, providers):
    connect_provider(ProviderEnum.salesforce)
    make_lead(click_id="eli_one")
    providers.routes[SALESFORCE] = lambda r: httpx.Response(500, json=[{"message": "Server error"}])

    body = client.post("/api/channels/salesforce/push-all", headers=auth_headers).json()

    assert body["pushed"] == 0
    assert body["failed"] == 1
    assert body["total"] == 1


def test_push_all_needs_a_connected_salesforce(client, auth_headers, make_lead, providers):
    make_lead()

    response = client.post("/api/channels/salesforce/push-all", headers=auth_headers)

    assert response.status_code == 400
    assert providers.calls == []


# =============================================================================
# Connection test
# =============================================================================

def test_salesforce_connection_test_describes_the_lead_object(client, auth_headers, connect_provider, providers):
    connect_provider(ProviderEnum.salesforce)

    response = client.post("/api/channels/salesforce/test", headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["success"] is True
    (call,) = providers.calls_to(SALESFORCE)
    assert call.method == "GET"
    assert call.url.path.endswith("/sobjects/Lead/describe")
    assert call.headers["Authorization"] == "Bearer salesforce-access"


def test_meta_connection_test_reports_graph_errors(client, auth_headers, connect_provider, providers):
    connect_provider(ProviderEnum.meta, account_id="pixel-1")
    providers.routes[META] = lambda r: httpx.Response(
        400, json={"error": {"message": "Invalid OAuth access token.", "code": 190}}
    )

    response = client.post("/api/channels/meta/test", headers=auth_headers)

    assert response.status_code == 502
    assert response.json() == {"success": False, "error": "Invalid OAuth access token."}
    (call,) = providers.calls_to(META)
    assert call.url.path.endswith("/pixel-1")
    assert call.url.params["fields"] == "id,name"


def test_google_connection_test_lists_accessible_customers(client, auth_headers, connect_provider, providers):
    connect_provider(ProviderEnum.google_ads, customer_id="1234567890")
    providers.routes["googleads.googleapis.com"] = lambda r: httpx.Response(
        200, json={"resourceNames": ["customers/1234567890"]}
    )

    body = client.post("/api/channels/google_ads/test", headers=auth_headers).json()

    assert body["success"] is True
    assert "1 accessible customer" in body["message"]
    (call,) = providers.calls_to("googleads.googleapis.com")
    assert call.url.path.endswith("/customers:listAccessibleCustomers")
    assert call.headers["developer-token"] == "dev-token"


def test_connection_test_of_unconnected_provider(client, auth_headers, providers):
    response = client.post("/api/channels/bing_ads/test", headers=auth_headers)

    assert response.status_code == 400
    assert "not connected" in response.json()["detail"]
    assert providers.calls == []
