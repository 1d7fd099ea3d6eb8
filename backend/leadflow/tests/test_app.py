"""Application wiring: health check and CORS."""


def test_health_reports_in_flight_tasks(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "in_flight": 0}


def test_lead_endpoint_allows_any_origin(client):
    response = client.post(
        "/api/leads", json={"email": "a@example.com"}, headers={"Origin": "https://landing.example.org"}
    )

    assert response.status_code == 201
    assert response.headers["access-control-allow-origin"] == "*"


def test_admin_routes_keep_the_allow_list(client, auth_headers):
    response = client.get(
        "/api/blocklist", headers={**auth_headers, "Origin": "https://evil.example.org"}
    )

    assert "access-control-allow-origin" not in response.headers
