"""Pydantic schemas for request/response payloads."""

from typing import Optional, List, Dict, Any

from pydantic import BaseModel, Field, field_validator


class ErrorResponse(BaseModel):
    detail: str


class UserLogin(BaseModel):
    """Payload for admin login."""

    email: str = Field(description="Admin email address", examples=["ops@example.com"])
    password: str = Field(description="Admin password")

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.strip().lower()


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    role: str


# Postback routing ----------------------------------------------

class PostbackConfigCreate(BaseModel):
    """Route an internal event name to per-channel targets."""

    name: str = Field(min_length=1, description="Display name", examples=["Qualified lead"])
    event_name: str = Field(min_length=1, description="Internal event name (lower-cased)", examples=["qualified"])
    conversion_action_id: Optional[str] = Field(default=None, description="Google Ads conversion action id")
    google_ads_event_name: Optional[str] = None
    send_to_bing: bool = False
    bing_conversion_name: Optional[str] = None
    send_to_meta: bool = False
    meta_event_name: Optional[str] = None
    is_active: bool = True

    @field_validator("name", "event_name")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v.strip()


class PostbackConfigUpdate(BaseModel):
    name: Optional[str] = None
    event_name: Optional[str] = None
    conversion_action_id: Optional[str] = None
    google_ads_event_name: Optional[str] = None
    send_to_bing: Optional[bool] = None
    bing_conversion_name: Optional[str] = None
    send_to_meta: Optional[bool] = None
    meta_event_name: Optional[str] = None
    is_active: Optional[bool] = None


class PostbackConfigOut(BaseModel):
    id: int
    name: str
    event_name: str
    conversion_action_id: Optional[str] = None
    google_ads_event_name: Optional[str] = None
    send_to_bing: bool
    bing_conversion_name: Optional[str] = None
    send_to_meta: bool
    meta_event_name: Optional[str] = None
    is_active: bool
    created_at: Optional[str] = None


class EventListResponse(BaseModel):
    events: List[Dict[str, Any]]
    total: int
    page: int
    limit: int
    pages: int


# Visitors ----------------------------------------------------------

class VisitorTrack(BaseModel):
    """Page view beacon from a landing page."""

    click_id: Optional[str] = Field(default=None, description="Existing click id (generated when absent)")
    gclid: Optional[str] = None
    msclkid: Optional[str] = None
    fbclid: Optional[str] = None
    fbc: Optional[str] = None
    fbp: Optional[str] = None
    landing_page: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None


# Channels ------------------------------------------------------------

class ChannelStatus(BaseModel):
    provider: str
    connected: bool
    enabled: bool
    connected_at: Optional[str] = None
    token_expires_at: Optional[str] = None
    account_id: Optional[str] = None
    customer_id: Optional[str] = None
    login_customer_id: Optional[str] = None
    account_name: Optional[str] = None
    instance_url: Optional[str] = None
    has_client_secret: bool = False


class ChannelAccountUpdate(BaseModel):
    customer_id: Optional[str] = None
    account_id: Optional[str] = None
    login_customer_id: Optional[str] = None
    account_name: Optional[str] = None
    is_enabled: Optional[bool] = None


class SalesforceCredentials(BaseModel):
    client_id: str = Field(min_length=1)
    client_secret: Optional[str] = Field(default=None, description="Empty keeps the stored secret")
    is_enabled: bool = True


class MetaCredentials(BaseModel):
    pixel_id: str = Field(min_length=1)
    access_token: Optional[str] = Field(default=None, description="Empty keeps the stored token")
    test_event_code: Optional[str] = None
    is_enabled: bool = True


# Blocklist -------------------------------------------------------------

class BlockedIPCreate(BaseModel):
    ip_address: str = Field(min_length=3)
    reason: Optional[str] = None

    @field_validator("ip_address")
    @classmethod
    def strip_ip(cls, v: str) -> str:
        return v.strip()


class BlockedIPOut(BaseModel):
    id: int
    ip_address: str
    reason: Optional[str] = None
    created_at: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    in_flight: int = 0
