"""Channel adapter contract.

WHAT:
    `ChannelAdapter.send(OutboundEvent) -> SendResult` for every outbound
    channel (Google Ads, Microsoft Advertising, Meta CAPI, Salesforce).

WHY:
    The dispatcher treats every channel the same way: one ledger row, one
    task, one SendResult. Adapters own token acquisition and convert every
    provider or transport problem into a failed SendResult, so nothing raises
    into sibling sends.

REFERENCES:
    - leadflow/services/dispatcher.py
    - leadflow/services/token_managers.py
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

import httpx

from leadflow.models import EventSourceEnum, ProviderEnum
from leadflow.services.identity_resolver import ClickIdentifiers
from leadflow.services.token_service import get_provider_config

logger = logging.getLogger(__name__)


class ChannelError(Exception):
    """Provider rejected the event or the channel is misconfigured."""
    pass


@dataclass
class LeadContact:
    email: Optional[str] = None
    phone: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    full_name: Optional[str] = None
    company_name: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    landing_page: Optional[str] = None
    debt_amount: Optional[Decimal] = None

    @classmethod
    def from_lead(cls, lead) -> "LeadContact":
        return cls(
            email=lead.email,
            phone=lead.phone,
            first_name=lead.first_name,
            last_name=lead.last_name,
            full_name=lead.full_name,
            company_name=lead.company_name,
            ip_address=lead.ip_address,
            user_agent=lead.user_agent,
            landing_page=lead.landing_page,
            debt_amount=lead.debt_amount,
        )

    def split_name(self):
        """(first, last), falling back to splitting the full name."""
        if self.first_name or self.last_name:
            return self.first_name or "", self.last_name or ""
        parts = (self.full_name or "").split()
        if not parts:
            return "", ""
        return parts[0], " ".join(parts[1:])


@dataclass
class OutboundEvent:
    """Everything an adapter needs to send one event to one channel."""
    channel: EventSourceEnum
    event_id: int                      # ledger row id of this channel send
    event_name: str                    # internal event name ("lead", "qualified", ...)
    outbound_event_name: Optional[str] = None
    target_id: Optional[str] = None    # conversion action id / conversion name
    occurred_at: datetime = field(default_factory=datetime.utcnow)
    value: Optional[Decimal] = None
    debt_amount: Optional[Decimal] = None
    revenue: Optional[Decimal] = None
    currency: str = "USD"
    transaction_id: Optional[str] = None
    click_id: Optional[str] = None
    click_ids: ClickIdentifiers = field(default_factory=ClickIdentifiers)
    lead_id: Optional[int] = None
    contact: Optional[LeadContact] = None


@dataclass
class SendResult:
    success: bool
    response: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    unavailable: bool = False
    payload: Optional[Dict[str, Any]] = None   # request snapshot, secrets stripped
    external_id: Optional[str] = None          # e.g. Salesforce Lead id


@dataclass
class ProviderAccount:
    """Routing fields read from the provider row at send time."""
    customer_id: Optional[str] = None
    login_customer_id: Optional[str] = None
    account_id: Optional[str] = None
    instance_url: Optional[str] = None
    settings: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ConnectionCheck:
    ok: bool
    message: str
    connected: bool = True


class ChannelAdapter(ABC):
    """Base adapter.

    Subclasses set `source`, `provider` and (for ad networks) the click id
    field they require, and implement `_send`.
    """

    source: EventSourceEnum
    provider: ProviderEnum
    label: str = "channel"
    requires_click_id: Optional[str] = None
    requires_target: bool = False
    requires_contact: bool = False

    def __init__(
        self,
        token_manager,
        settings,
        session_factory: Callable,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token_manager = token_manager
        self.settings = settings
        self.session_factory = session_factory
        self.transport = transport

    def missing_requirement(self, event: OutboundEvent) -> Optional[str]:
        """Why this event cannot be sent on this channel, or None."""
        if self.requires_click_id and not getattr(event.click_ids, self.requires_click_id):
            return f"No {self.requires_click_id} available"
        if self.requires_target and not event.target_id:
            return f"No {self.label} conversion target configured"
        if self.requires_contact and event.contact is None:
            return f"{self.label} requires a lead"
        return None

    def resolve_value(self, event: OutboundEvent) -> Optional[Decimal]:
        """Ad networks report debt amount, falling back to the generic value."""
        return event.debt_amount if event.debt_amount is not None else event.value

    def load_account(self) -> ProviderAccount:
        with self.session_factory() as db:
            config = get_provider_config(db, self.provider)
            if config is None:
                return ProviderAccount()
            return ProviderAccount(
                customer_id=config.customer_id,
                login_customer_id=config.login_customer_id,
                account_id=config.account_id,
                instance_url=config.instance_url,
                settings=dict(config.settings or {}),
            )

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.PROVIDER_TIMEOUT_SECONDS,
            transport=self.transport,
        )

    async def send(self, event: OutboundEvent) -> SendResult:
        """Send one event. Never raises for provider or transport problems."""
        missing = self.missing_requirement(event)
        if missing:
            return SendResult(success=False, error=missing)

        token = await self.token_manager.get_valid_access_token()
        if not token:
            logger.warning("[%s] Channel unavailable for event %s", self.label.upper(), event.event_id)
            return SendResult(
                success=False,
                unavailable=True,
                error=f"{self.label} channel unavailable: not connected or token refresh failed",
            )

        account = self.load_account()
        try:
            return await self._send(event, token, account)
        except ChannelError as e:
            logger.warning("[%s] Event %s rejected: %s", self.label.upper(), event.event_id, e)
            return SendResult(success=False, error=str(e))
        except httpx.TimeoutException:
            logger.warning("[%s] Event %s timed out", self.label.upper(), event.event_id)
            return SendResult(success=False, error=f"Timed out contacting {self.label}")
        except httpx.HTTPError as e:
            logger.warning("[%s] Transport error for event %s: %s", self.label.upper(), event.event_id, e)
            return SendResult(success=False, error=f"Network error contacting {self.label}")

    async def check_connection(self) -> ConnectionCheck:
        """Verify the stored credentials against the provider without sending an event."""
        token = await self.token_manager.get_valid_access_token()
        if not token:
            return ConnectionCheck(
                ok=False,
                connected=False,
                message=f"{self.label} is not connected or its token could not be refreshed",
            )

        account = self.load_account()
        try:
            message = await self._check(token, account)
        except ChannelError as e:
            logger.warning("[%s] Connection test failed: %s", self.label.upper(), e)
            return ConnectionCheck(ok=False, message=str(e))
        except httpx.HTTPError as e:
            logger.warning("[%s] Connection test transport error: %s", self.label.upper(), e)
            return ConnectionCheck(ok=False, message=f"Network error contacting {self.label}")
        return ConnectionCheck(ok=True, message=message)

    async def _check(self, token: str, account: ProviderAccount) -> str:
        """Provider round trip for `check_connection`; raise ChannelError on rejection."""
        return f"{self.label} token is valid"

    @abstractmethod
    async def _send(self, event: OutboundEvent, token: str, account: ProviderAccount) -> SendResult:
        ...


def response_json(response: httpx.Response) -> Dict[str, Any]:
    """Parse a JSON body, tolerating empty or non-JSON error pages."""
    try:
        body = response.json()
    except ValueError:
        return {"raw": response.text[:500]}
    return body if isinstance(body, dict) else {"data": body}
