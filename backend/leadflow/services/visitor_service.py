"""Visitor tracking and retention.

WHAT:
    Creates a Visitor on the first tracked page view and merges later views
    into it. Purges unconverted visitors past the retention window.

WHY:
    Click ids reach us on the landing page, long before any lead or
    postback. First-touch values must survive later visits, so merges only
    fill fields that are still empty.

REFERENCES:
    - leadflow/routers/visitors.py
    - leadflow/workers/arq_worker.py (retention purge)
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional

from sqlalchemy.orm import Session

from leadflow.models import Visitor, utcnow

logger = logging.getLogger(__name__)

MERGED_FIELDS = (
    "gclid", "msclkid", "fbclid", "fbc", "fbp",
    "landing_page", "utm_source", "utm_medium", "utm_campaign",
)


def generate_click_id() -> str:
    return f"eli_{secrets.token_hex(12)}"


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def track_visitor(
    db: Session,
    data: Mapping[str, Any],
    *,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Visitor:
    """Create or merge the visitor for `data["click_id"]` (generated when absent)."""
    click_id = _clean(data.get("click_id")) or generate_click_id()
    now = utcnow()

    visitor = db.query(Visitor).filter(Visitor.click_id == click_id).first()
    if visitor is None:
        visitor = Visitor(
            click_id=click_id,
            ip_address=ip_address,
            user_agent=user_agent,
            first_visit=now,
            last_visit=now,
            visit_count=1,
        )
        for name in MERGED_FIELDS:
            setattr(visitor, name, _clean(data.get(name)))
        db.add(visitor)
        logger.info("[VISITOR] New visitor %s", click_id[:20])
    else:
        # COALESCE merge: first-touch values win
        for name in MERGED_FIELDS:
            if not getattr(visitor, name):
                setattr(visitor, name, _clean(data.get(name)))
        if not visitor.ip_address:
            visitor.ip_address = ip_address
        if not visitor.user_agent:
            visitor.user_agent = user_agent
        visitor.last_visit = now
        visitor.visit_count = (visitor.visit_count or 0) + 1

    db.commit()
    db.refresh(visitor)
    return visitor


def purge_expired_visitors(db: Session, retention_days: int, now: Optional[datetime] = None) -> int:
    """Delete unconverted visitors whose last visit is older than the window."""
    cutoff = (now or utcnow()) - timedelta(days=retention_days)
    deleted = (
        db.query(Visitor)
        .filter(Visitor.converted.is_(False), Visitor.last_visit < cutoff)
        .delete(synchronize_session=False)
    )
    db.commit()
    if deleted:
        logger.info("[VISITOR] Purged %d expired visitor(s)", deleted)
    return deleted
