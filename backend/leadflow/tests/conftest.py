"""Pytest configuration for leadflow tests.

WHAT: Shared fixtures for the database, the app and fake provider APIs.
WHY: Every test gets its own SQLite file so detached dispatch tasks (which
     open their own sessions) see exactly what the request committed.
REFERENCES:
    - leadflow/main.py: create_app (session factory / transport injection)
    - leadflow/services/dispatcher.py
"""

import os
import tempfile
from datetime import datetime, timedelta
from typing import Callable, Dict, List

import httpx
import pytest

# Set test environment before any leadflow import
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("ENCRYPTION_KEY", "test-master-secret-for-the-credential-vault")
os.environ.setdefault(
    "DATABASE_URL", f"sqlite:///{os.path.join(tempfile.mkdtemp(), 'leadflow-default.db')}"
)
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")
os.environ.pop("SENTRY_DSN", None)

from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from leadflow.deps import Settings  # noqa: E402
from leadflow.models import (  # noqa: E402
    Base,
    Lead,
    PostbackConfig,
    ProviderEnum,
    RoleEnum,
    User,
    Visitor,
)
from leadflow.security import create_access_token, get_password_hash  # noqa: E402
from leadflow.services.token_service import (  # noqa: E402
    get_or_create_provider_config,
    store_client_secret,
    store_provider_tokens,
)


# ============================================================================
# Fake provider APIs
# ============================================================================

class FakeProviders:
    """httpx.MockTransport backend keyed by host.

    Tests set `routes[host]` to a callable(request) -> httpx.Response; every
    request is recorded in `calls`.
    """

    def __init__(self):
        self.calls: List[httpx.Request] = []
        self.routes: Dict[str, Callable[[httpx.Request], httpx.Response]] = {
            "googleads.googleapis.com": lambda r: httpx.Response(200, json={"results": [{}]}),
            "campaign.api.bingads.microsoft.com": lambda r: httpx.Response(200, json={"PartialErrors": None}),
            "graph.facebook.com": lambda r: httpx.Response(200, json={"events_received": 1, "fbtrace_id": "t1"}),
            "acme.my.salesforce.com": lambda r: httpx.Response(
                201, json={"id": "00Q000000000001", "success": True, "errors": []}
            ),
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        route = self.routes.get(request.url.host)
        if route is None:
            return httpx.Response(404, json={"error": f"no route for {request.url.host}"})
        return route(request)

    def calls_to(self, host: str) -> List[httpx.Request]:
        return [c for c in self.calls if c.url.host == host]

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class RecordingNotifier:
    def __init__(self):
        self.lead_ids: List[int] = []

    async def lead_created(self, lead_id: int) -> None:
        self.lead_ids.append(lead_id)


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'leadflow-test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def settings():
    return Settings(
        BASE_URL="http://testserver",
        ADMIN_APP_URL="http://admin.test",
        GOOGLE_ADS_CLIENT_ID="google-client-id",
        GOOGLE_ADS_CLIENT_SECRET="google-client-secret",
        GOOGLE_ADS_DEVELOPER_TOKEN="dev-token",
        BING_ADS_CLIENT_ID="bing-client-id",
        BING_ADS_CLIENT_SECRET="bing-client-secret",
        BING_ADS_DEVELOPER_TOKEN="bing-dev-token",
        DISPATCH_ACK_WAIT_SECONDS=5,
        DISPATCH_TASK_TIMEOUT_SECONDS=5,
        IP_BLOCKLIST="",
    )


@pytest.fixture
def providers():
    return FakeProviders()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def app(session_factory, settings, providers, notifier):
    from leadflow.main import create_app

    return create_app(
        session_factory=session_factory,
        settings=settings,
        transport=providers.transport,
        notifier=notifier,
    )


@pytest.fixture
def client(app):
    # Entering the context keeps one event loop alive across requests, so
    # detached dispatch tasks keep running between calls.
    with TestClient(app) as test_client:
        yield test_client


# ============================================================================
# Authentication Fixtures
# ============================================================================

@pytest.fixture
def admin_user(db):
    user = User(
        email="ops@example.com",
        name="Ops",
        role=RoleEnum.admin,
        password_hash=get_password_hash("correct horse"),
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def auth_headers(admin_user):
    token = create_access_token(subject=admin_user.email, role=admin_user.role.value)
    return {"Authorization": f"Bearer {token}"}


# ============================================================================
# Model Fixtures
# ============================================================================

@pytest.fixture
def connect_provider(db):
    """Store a live credential set for a provider."""

    def _connect(provider: ProviderEnum, **fields):
        config = get_or_create_provider_config(db, provider)
        store_provider_tokens(
            db,
            config,
            access_token=f"{provider.value}-access",
            refresh_token=None if provider == ProviderEnum.meta else f"{provider.value}-refresh",
            expires_at=None if provider == ProviderEnum.meta else datetime.utcnow() + timedelta(hours=1),
            mark_connected=True,
        )
        if provider == ProviderEnum.salesforce:
            store_client_secret(db, config, "sf-client-id", "sf-client-secret")
            config.instance_url = "https://acme.my.salesforce.com"
        for key, value in fields.items():
            setattr(config, key, value)
        db.commit()
        return config

    return _connect


@pytest.fixture
def connect_all(connect_provider):
    connect_provider(ProviderEnum.google_ads, customer_id="1234567890")
    connect_provider(ProviderEnum.bing_ads, customer_id="111", account_id="222")
    connect_provider(ProviderEnum.meta, account_id="pixel-1")


@pytest.fixture
def make_config(db):
    def _make(event_name="qualified", **fields):
        values = dict(
            name=event_name.title(),
            event_name=event_name,
            conversion_action_id="555",
            send_to_bing=True,
            bing_conversion_name="Qualified Lead",
            send_to_meta=True,
            meta_event_name="Lead",
        )
        values.update(fields)
        config = PostbackConfig(**values)
        db.add(config)
        db.commit()
        db.refresh(config)
        return config

    return _make


@pytest.fixture
def make_lead(db):
    def _make(click_id="eli_abc123", **fields):
        values = dict(
            click_id=click_id,
            full_name="Jane Doe",
            email="jane@example.com",
            phone="(555) 010-2030",
            ip_address="10.0.0.1",
        )
        values.update(fields)
        lead = Lead(**values)
        db.add(lead)
        db.commit()
        db.refresh(lead)
        return lead

    return _make


@pytest.fixture
def make_visitor(db):
    def _make(click_id="eli_abc123", **fields):
        visitor = Visitor(click_id=click_id, **fields)
        db.add(visitor)
        db.commit()
        db.refresh(visitor)
        return visitor

    return _make
