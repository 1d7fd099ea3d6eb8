"""ARQ maintenance worker.

WHAT:
    Cron jobs that keep the ledger and the visitor table tidy:
    - sweep_stale_events: rows left `pending`/`auto` by a process that died
      mid-dispatch become `failed` (retryable) or `logged`.
    - purge_expired_visitors: unconverted visitors past the retention window
      are deleted.

WHY:
    Dispatch tasks live in the API process. A crash or a hard restart can
    leave rows that no task will ever finish; the sweeper gives them a
    terminal status so operators can retry them.

USAGE:
    arq leadflow.workers.arq_worker.WorkerSettings

REFERENCES:
    - https://arq-docs.helpmanual.io/
    - leadflow/services/ledger.py (sweep_stale_events)
    - leadflow/services/visitor_service.py (purge_expired_visitors)
"""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, timezone
from typing import Dict
from urllib.parse import urlparse

from arq import cron
from arq.connections import RedisSettings

from leadflow.database import SessionLocal
from leadflow.deps import get_settings
from leadflow.services import ledger, visitor_service
from leadflow.telemetry import capture_exception

logger = logging.getLogger(__name__)


# =============================================================================
# REDIS SETTINGS
# =============================================================================

def get_redis_settings() -> RedisSettings:
    """Redis connection settings from REDIS_URL (redis:// or rediss://)."""
    redis_url = os.getenv("REDIS_URL", "redis://localhost:6379")
    parsed = urlparse(redis_url)

    use_ssl = parsed.scheme == "rediss"
    host = parsed.hostname or "localhost"
    port = parsed.port or 6379
    database = int(parsed.path.lstrip("/")) if parsed.path and parsed.path != "/" else 0

    logger.info(f"[ARQ] Redis: host={host}, port={port}, ssl={use_ssl}, db={database}")

    return RedisSettings(
        host=host,
        port=port,
        password=parsed.password,
        database=database,
        ssl=use_ssl,
        ssl_cert_reqs="none" if use_ssl else None,
        conn_timeout=30,
        conn_retries=5,
        conn_retry_delay=1,
    )


def _open_session(ctx: Dict):
    factory = ctx.get("session_factory") or SessionLocal
    return factory()


# =============================================================================
# JOBS
# =============================================================================

async def sweep_stale_events(ctx: Dict) -> Dict:
    """Give stuck ledger rows a terminal status (every 10 minutes)."""
    settings = ctx.get("settings") or get_settings()
    db = _open_session(ctx)
    try:
        counts = await asyncio.to_thread(ledger.sweep_stale_events, db, settings.STALE_EVENT_MINUTES)
        logger.info("[ARQ] Stale sweep: %s", counts)
        return counts
    except Exception as e:
        logger.exception("[ARQ] Stale sweep failed: %s", e)
        capture_exception(e, extra={"operation": "sweep_stale_events"})
        return {"error": str(e)}
    finally:
        db.close()


async def purge_expired_visitors(ctx: Dict) -> Dict:
    """Delete unconverted visitors past VISITOR_RETENTION_DAYS (daily)."""
    settings = ctx.get("settings") or get_settings()
    db = _open_session(ctx)
    try:
        deleted = await asyncio.to_thread(
            visitor_service.purge_expired_visitors, db, settings.VISITOR_RETENTION_DAYS
        )
        return {"deleted": deleted}
    except Exception as e:
        logger.exception("[ARQ] Visitor purge failed: %s", e)
        capture_exception(e, extra={"operation": "purge_expired_visitors"})
        return {"error": str(e)}
    finally:
        db.close()


# =============================================================================
# WORKER LIFECYCLE
# =============================================================================

async def startup(ctx: Dict) -> None:
    logger.info("[ARQ] Maintenance worker starting up")
    ctx["startup_time"] = datetime.now(timezone.utc)


async def shutdown(ctx: Dict) -> None:
    uptime = datetime.now(timezone.utc) - ctx.get("startup_time", datetime.now(timezone.utc))
    logger.info(f"[ARQ] Maintenance worker shutting down (uptime {uptime})")


class WorkerSettings:
    """ARQ worker configuration (cron only, no enqueued jobs)."""

    functions = [sweep_stale_events, purge_expired_visitors]

    cron_jobs = [
        cron(sweep_stale_events, minute=set(range(0, 60, 10)), run_at_startup=True),
        cron(purge_expired_visitors, hour=3, minute=15),
    ]

    on_startup = startup
    on_shutdown = shutdown

    redis_settings = get_redis_settings()

    max_jobs = 2
    job_timeout = 300
    keep_result = 3600
