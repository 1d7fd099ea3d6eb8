"""SQLAlchemy ORM models and enums.

This module defines the attribution schema: visitors and leads, the per-provider
credential rows, the postback routing table and the conversion event ledger.
Provider secrets are stored only as vault ciphertexts (`*_enc` columns).
"""

from datetime import datetime
import enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship


# Single Base used by the entire application
Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns below."""
    return datetime.utcnow()


def _enum(enum_cls):
    return Enum(enum_cls, values_callable=lambda obj: [e.value for e in obj])


# Enums ---------------------------------------------------------

class RoleEnum(str, enum.Enum):
    admin = "admin"
    editor = "editor"
    viewer = "viewer"


class ProviderEnum(str, enum.Enum):
    google_ads = "google_ads"
    bing_ads = "bing_ads"
    salesforce = "salesforce"
    meta = "meta"


class EventStatusEnum(str, enum.Enum):
    """Ledger lifecycle.

    pending -> sent | failed; failed -> sent | failed (admin retry only).
    logged, blocked and sent are terminal. auto is the transitional state of
    the row written synchronously at lead creation.
    """
    pending = "pending"
    sent = "sent"
    failed = "failed"
    logged = "logged"
    blocked = "blocked"
    auto = "auto"


class EventSourceEnum(str, enum.Enum):
    postback = "postback"      # Ingest row, never sent anywhere itself
    auto = "auto"              # Lead-created row
    google_ads = "google_ads"
    bing_ads = "bing_ads"
    meta_capi = "meta_capi"
    salesforce = "salesforce"


class ResolutionEnum(str, enum.Enum):
    lead = "lead"
    visitor_only = "visitor_only"
    uncorrelated = "uncorrelated"


# Core models ----------------------------------------------------

class User(Base):
    """Admin user. Only used to authenticate the admin endpoints."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=False)
    role = Column(_enum(RoleEnum), nullable=False, default=RoleEnum.viewer)
    password_hash = Column(String, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    def __str__(self):
        return self.email


class Visitor(Base):
    """Pre-conversion identity, created on the first tracked page view.

    Click ids stored here are first-touch values: later page views only fill
    fields that are still empty. Mutated once more when a lead is created from
    it (converted + lead_id); removed only by the retention purge.
    """
    __tablename__ = "visitors"

    id = Column(Integer, primary_key=True, autoincrement=True)
    click_id = Column(String, unique=True, index=True, nullable=False)

    gclid = Column(String, nullable=True)
    msclkid = Column(String, nullable=True)
    fbclid = Column(String, nullable=True)
    fbc = Column(String, nullable=True)
    fbp = Column(String, nullable=True)

    ip_address = Column(String, nullable=True)
    user_agent = Column(Text, nullable=True)
    landing_page = Column(String, nullable=True)
    utm_source = Column(String, nullable=True)
    utm_medium = Column(String, nullable=True)
    utm_campaign = Column(String, nullable=True)

    converted = Column(Boolean, default=False, nullable=False)
    lead_id = Column(Integer, ForeignKey("leads.id", ondelete="SET NULL"), nullable=True)

    first_visit = Column(DateTime, default=utcnow)
    last_visit = Column(DateTime, default=utcnow)
    visit_count = Column(Integer, default=1, nullable=False)

    lead = relationship("Lead", foreign_keys=[lead_id])


class Lead(Base):
    """A converted visitor.

    Fields are merged individually (COALESCE style) by postbacks and CRM sync,
    never replaced wholesale. `crm_lead_id` is written at most once.
    """
    __tablename__ = "leads"

    id = Column(Integer, primary_key=True, autoincrement=True)
    click_id = Column(String, index=True, nullable=True)

    # Contact
    full_name = Column(String, nullable=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    email = Column(String, index=True, nullable=True)
    phone = Column(String, nullable=True)
    company_name = Column(String, nullable=True)

    # Per-network click ids (payload values beat visitor values)
    gclid = Column(String, nullable=True)
    msclkid = Column(String, nullable=True)
    fbclid = Column(String, nullable=True)
    fbc = Column(String, nullable=True)
    fbp = Column(String, nullable=True)

    debt_amount = Column(Numeric(14, 2), nullable=True)
    revenue = Column(Numeric(14, 2), nullable=True)

    crm_lead_id = Column(String, nullable=True)
    is_blocked = Column(Boolean, default=False, nullable=False)

    ip_address = Column(String, nullable=True)
    user_agent = Column(Text, nullable=True)
    landing_page = Column(String, nullable=True)
    hidden_fields = Column(JSON, nullable=True)  # str -> str extension map

    # CRM pipeline fields (merged from postbacks)
    transfer_status = Column(String, nullable=True)
    disposition = Column(String, nullable=True)
    stage = Column(String, nullable=True)
    contract_sign_date = Column(String, nullable=True)
    total_debt_sign = Column(Numeric(14, 2), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    events = relationship("ConversionEvent", back_populates="lead")

    @property
    def display_name(self) -> str:
        if self.full_name:
            return self.full_name
        return " ".join(p for p in (self.first_name, self.last_name) if p)


class ProviderConfig(Base):
    """Credential set for one external provider, keyed by `provider`.

    Only one credential set per provider is supported. Connected means both
    the access and the refresh token ciphertexts are present; Meta has no
    refresh token and counts as connected with an access token and pixel id.
    """
    __tablename__ = "provider_configs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(_enum(ProviderEnum), unique=True, nullable=False)

    access_token_enc = Column(Text, nullable=True)
    refresh_token_enc = Column(Text, nullable=True)
    client_secret_enc = Column(Text, nullable=True)  # Salesforce only
    client_id = Column(String, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)
    connected_at = Column(DateTime, nullable=True)
    is_enabled = Column(Boolean, default=True, nullable=False)

    # Account routing
    account_id = Column(String, nullable=True)         # Bing account / Meta pixel id
    customer_id = Column(String, nullable=True)        # Google / Bing customer
    login_customer_id = Column(String, nullable=True)  # Google MCC
    account_name = Column(String, nullable=True)
    instance_url = Column(String, nullable=True)       # Salesforce
    settings = Column(JSON, nullable=True)             # e.g. {"test_event_code": ...}

    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def is_connected(self) -> bool:
        if self.provider == ProviderEnum.meta:
            return bool(self.access_token_enc and self.account_id)
        return bool(self.access_token_enc and self.refresh_token_enc)


class PostbackConfig(Base):
    """Routing from an internal event name to per-channel targets."""
    __tablename__ = "postback_configs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    event_name = Column(String, index=True, nullable=False)  # lower-cased

    conversion_action_id = Column(String, nullable=True)  # Google Ads target
    google_ads_event_name = Column(String, nullable=True)

    send_to_bing = Column(Boolean, default=False, nullable=False)
    bing_conversion_name = Column(String, nullable=True)

    send_to_meta = Column(Boolean, default=False, nullable=False)
    meta_event_name = Column(String, nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class ConversionEvent(Base):
    """Ledger row: one per ingest, per lead creation and per channel send."""
    __tablename__ = "conversion_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    lead_id = Column(Integer, ForeignKey("leads.id", ondelete="SET NULL"), nullable=True)
    click_id = Column(String, nullable=True)

    # Click ids snapshotted at write time
    gclid = Column(String, nullable=True)
    msclkid = Column(String, nullable=True)
    fbclid = Column(String, nullable=True)
    fbc = Column(String, nullable=True)

    conversion_action_id = Column(String, nullable=True)    # channel target
    conversion_action_name = Column(String, nullable=True)  # internal event name
    outbound_event_name = Column(String, nullable=True)

    conversion_value = Column(Numeric(14, 2), nullable=True)
    debt_amount = Column(Numeric(14, 2), nullable=True)
    revenue = Column(Numeric(14, 2), nullable=True)
    currency = Column(String(3), default="USD", nullable=False)
    transaction_id = Column(String, nullable=True)

    source = Column(_enum(EventSourceEnum), nullable=False)
    resolution = Column(_enum(ResolutionEnum), nullable=True)
    status = Column(_enum(EventStatusEnum), nullable=False, default=EventStatusEnum.pending)
    error_message = Column(Text, nullable=True)
    capi_payload = Column(JSON, nullable=True)
    attempts = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=utcnow, index=True)
    sent_at = Column(DateTime, nullable=True)

    lead = relationship("Lead", back_populates="events")

    __table_args__ = (
        Index("ix_conversion_events_dedup", "click_id", "conversion_action_name", "source", "created_at"),
        Index("ix_conversion_events_status", "status", "created_at"),
    )


class BlockedIP(Base):
    __tablename__ = "blocked_ips"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ip_address = Column(String, unique=True, nullable=False)
    reason = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
