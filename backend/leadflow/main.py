"""FastAPI application entrypoint.

Configures CORS, includes routers, wires the dispatch stack and exposes a
healthcheck endpoint.
"""

import logging
from typing import Callable, Optional

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response as StarletteResponse
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from . import schemas
from .database import SessionLocal, get_db
from .deps import Settings, get_settings
from .routers import auth as auth_router
from .routers import blocklist as blocklist_router
from .routers import channels as channels_router
from .routers import leads as leads_router
from .routers import postback as postback_router
from .routers import visitors as visitors_router
from .services.channels import build_adapters
from .services.dispatcher import Dispatcher, LeadNotifier
from .services.identity_resolver import IdentityResolver
from .services.lead_service import LeadService
from .services.postback_service import PostbackService
from .services.token_managers import build_token_managers
from .telemetry import init_sentry

# Import models so Alembic can discover metadata
from . import models  # noqa: F401

# Called from arbitrary landing page domains
PUBLIC_PATHS = ("/api/visitors/track", "/api/leads")


class PublicCORSMiddleware(BaseHTTPMiddleware):
    """Open CORS for the landing page beacons; admin routes keep the allow-list."""

    async def dispatch(self, request, call_next):
        if not request.url.path.startswith(PUBLIC_PATHS):
            return await call_next(request)

        cors_headers = {
            "Access-Control-Allow-Origin": "*",
            "Access-Control-Allow-Methods": "POST, OPTIONS",
            "Access-Control-Allow-Headers": "Content-Type",
            "Access-Control-Max-Age": "86400",
        }
        if request.method == "OPTIONS":
            return StarletteResponse(status_code=200, headers=cors_headers)

        response = await call_next(request)
        for key, value in cors_headers.items():
            response.headers[key] = value
        return response


def create_app(
    session_factory: Optional[Callable[[], Session]] = None,
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    notifier: Optional[LeadNotifier] = None,
) -> FastAPI:
    """Build the application and its dispatch stack.

    Args:
        session_factory: Session factory for requests and dispatch tasks
            (defaults to SessionLocal).
        settings: Settings override (defaults to get_settings()).
        transport: httpx transport for every provider call.
        notifier: Downstream collaborator told about new leads.
    """
    settings = settings or get_settings()
    session_factory = session_factory or SessionLocal

    init_sentry()

    app = FastAPI(
        title="leadflow API",
        description="""
        Conversion attribution and multi-channel postback dispatch.

        - Public: visitor tracking, lead submission, CRM conversion postbacks
        - Admin: postback routing, event ledger and retry, channel connections, IP blocklist
        """,
        version="1.0.0",
    )

    # Dispatch stack, built once per app
    token_managers = build_token_managers(session_factory, settings, transport)
    adapters = build_adapters(token_managers, settings, session_factory, transport)
    dispatcher = Dispatcher(session_factory, adapters, settings, notifier=notifier)
    resolver = IdentityResolver(settings.ip_blocklist)

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.token_managers = token_managers
    app.state.dispatcher = dispatcher
    app.state.resolver = resolver
    app.state.postback_service = PostbackService(dispatcher, resolver, settings)
    app.state.lead_service = LeadService(dispatcher, resolver, settings)

    if session_factory is not SessionLocal:
        def _get_db():
            db = session_factory()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = _get_db

    # Trust X-Forwarded-For / X-Forwarded-Proto from the load balancer
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    # Added after CORSMiddleware so it runs first
    app.add_middleware(PublicCORSMiddleware)

    app.include_router(auth_router.router)
    app.include_router(visitors_router.router)
    app.include_router(leads_router.router)
    app.include_router(postback_router.router)
    app.include_router(channels_router.router)
    app.include_router(blocklist_router.router)

    @app.get("/health", response_model=schemas.HealthResponse, tags=["Health"], summary="Health check")
    def health():
        return schemas.HealthResponse(status="ok", in_flight=dispatcher.in_flight)

    @app.on_event("shutdown")
    async def shutdown_event():
        """Let in-flight channel sends finish and record their outcome."""
        await dispatcher.drain(timeout=settings.DISPATCH_TASK_TIMEOUT_SECONDS)
        logger.info("[SHUTDOWN] Dispatcher drained")

    return app


app = create_app()
