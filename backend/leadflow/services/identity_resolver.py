"""Identity resolution for inbound conversion events.

WHAT:
    Maps a click identifier (the cross-session correlation key) to its Visitor
    and Lead, merges the per-network click ids, and applies the IP blocklist.

WHY:
    Postbacks arrive from a CRM that only knows our click id. Everything the
    ad channels need (gclid, msclkid, fbclid/fbc) has to be recovered from the
    records captured at page view and lead submission.

PRECEDENCE:
    event > lead > visitor. The visitor holds first-touch values, the lead
    holds what the form submitted, and a click id on the event itself always
    describes this specific report.

REFERENCES:
    - leadflow/services/postback_service.py
    - leadflow/services/lead_service.py
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from typing import Any, Mapping, Optional, Set

from sqlalchemy.orm import Session

from leadflow.models import BlockedIP, Lead, ResolutionEnum, Visitor

logger = logging.getLogger(__name__)


@dataclass
class ClickIdentifiers:
    gclid: Optional[str] = None
    msclkid: Optional[str] = None
    fbclid: Optional[str] = None
    fbc: Optional[str] = None
    fbp: Optional[str] = None

    @classmethod
    def from_source(cls, source: Any) -> "ClickIdentifiers":
        """Read click ids from a mapping or from an ORM row (missing -> None)."""
        if source is None:
            return cls()
        values = {}
        for f in fields(cls):
            if isinstance(source, Mapping):
                raw = source.get(f.name)
            else:
                raw = getattr(source, f.name, None)
            values[f.name] = raw or None
        return cls(**values)

    @classmethod
    def merge(cls, *sources: "ClickIdentifiers") -> "ClickIdentifiers":
        """Field by field, the first non-empty value wins."""
        merged = cls()
        for f in fields(cls):
            for source in sources:
                value = getattr(source, f.name)
                if value:
                    setattr(merged, f.name, value)
                    break
        return merged

    def as_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class ResolvedIdentity:
    click_id: str
    lead: Optional[Lead] = None
    visitor: Optional[Visitor] = None
    click_ids: ClickIdentifiers = field(default_factory=ClickIdentifiers)
    blocked: bool = False

    @property
    def resolution(self) -> ResolutionEnum:
        if self.lead is not None:
            return ResolutionEnum.lead
        if self.visitor is not None:
            return ResolutionEnum.visitor_only
        return ResolutionEnum.uncorrelated


class IdentityResolver:
    """Resolves click ids against the visitors/leads tables.

    Args:
        static_blocklist: IPs blocked through configuration, merged with the
            `blocked_ips` table on every check.
    """

    def __init__(self, static_blocklist: Optional[Set[str]] = None):
        self.static_blocklist = set(static_blocklist or ())

    def is_ip_blocked(self, db: Session, ip_address: Optional[str]) -> bool:
        if not ip_address:
            return False
        ip_address = ip_address.strip()
        if ip_address in self.static_blocklist:
            return True
        return (
            db.query(BlockedIP.id)
            .filter(BlockedIP.ip_address == ip_address)
            .first()
            is not None
        )

    def find_lead(self, db: Session, click_id: str, visitor: Optional[Visitor]) -> Optional[Lead]:
        """Newest lead carrying the click id, else the lead the visitor converted into."""
        lead = (
            db.query(Lead)
            .filter(Lead.click_id == click_id)
            .order_by(Lead.id.desc())
            .first()
        )
        if lead is None and visitor is not None and visitor.lead_id:
            lead = db.get(Lead, visitor.lead_id)
        return lead

    def resolve(
        self,
        db: Session,
        click_id: str,
        event_click_ids: Optional[Mapping[str, Any]] = None,
    ) -> ResolvedIdentity:
        """Resolve a click id. Unknown identity is a normal outcome.

        Marks the lead `is_blocked` when its IP (or its visitor's IP) is on the
        blocklist; the caller commits.
        """
        visitor = db.query(Visitor).filter(Visitor.click_id == click_id).first()
        lead = self.find_lead(db, click_id, visitor)

        if visitor is None and lead is not None:
            visitor = (
                db.query(Visitor)
                .filter(Visitor.lead_id == lead.id)
                .order_by(Visitor.id.desc())
                .first()
            )

        click_ids = ClickIdentifiers.merge(
            ClickIdentifiers.from_source(event_click_ids),
            ClickIdentifiers.from_source(lead),
            ClickIdentifiers.from_source(visitor),
        )

        blocked = bool(lead is not None and lead.is_blocked)
        if not blocked:
            ip_address = (visitor.ip_address if visitor else None) or (lead.ip_address if lead else None)
            if self.is_ip_blocked(db, ip_address):
                blocked = True
                if lead is not None:
                    lead.is_blocked = True
                    db.add(lead)
                    db.flush()
                logger.info("[IDENTITY] Blocked IP %s for click id %s", ip_address, click_id[:20])

        identity = ResolvedIdentity(
            click_id=click_id,
            lead=lead,
            visitor=visitor,
            click_ids=click_ids,
            blocked=blocked,
        )
        logger.debug(
            "[IDENTITY] %s resolved as %s (lead=%s)",
            click_id[:20], identity.resolution.value, lead.id if lead else None,
        )
        return identity
