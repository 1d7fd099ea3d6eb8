"""Meta Conversions API (CAPI) adapter.

WHAT:
    Sends server-side events to `/{pixel_id}/events` on the Graph API.

WHY:
    - Server-side events survive browser tracking limits
    - CRM milestones (qualified, signed) never happen in a browser

HOW:
    PII is normalized and SHA256-hashed (email lower-cased, phone digits
    only, names lower-cased). fbc/fbp and client IP/user agent are sent raw.
    The stored payload snapshot never contains the access token.

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api/conversions-api
"""

import hashlib
import logging
from datetime import timezone
from typing import Any, Dict, Optional

from leadflow.models import EventSourceEnum, ProviderEnum
from leadflow.services.channels.base import (
    ChannelAdapter,
    ChannelError,
    OutboundEvent,
    ProviderAccount,
    SendResult,
    response_json,
)

logger = logging.getLogger(__name__)


def sha256_hash(value: Optional[str]) -> Optional[str]:
    """Lowercase hex SHA256 of a trimmed, lower-cased value."""
    if not value:
        return None
    return hashlib.sha256(str(value).strip().lower().encode("utf-8")).hexdigest()


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    if not phone:
        return None
    digits = "".join(filter(str.isdigit, phone))
    return digits or None


class MetaCapiAdapter(ChannelAdapter):
    source = EventSourceEnum.meta_capi
    provider = ProviderEnum.meta
    label = "Meta CAPI"
    requires_contact = True

    def resolve_value(self, event: OutboundEvent):
        """Revenue first, then debt amount, then the generic value."""
        for candidate in (event.revenue, event.debt_amount, event.value):
            if candidate is not None:
                return candidate
        return None

    def build_event(self, event: OutboundEvent) -> Dict[str, Any]:
        contact = event.contact
        first_name, last_name = contact.split_name()

        user_data: Dict[str, Any] = {}
        if contact.email:
            user_data["em"] = [sha256_hash(contact.email)]
        phone = normalize_phone(contact.phone)
        if phone:
            user_data["ph"] = [sha256_hash(phone)]
        if first_name:
            user_data["fn"] = [sha256_hash(first_name)]
        if last_name:
            user_data["ln"] = [sha256_hash(last_name)]

        occurred_at = event.occurred_at
        if occurred_at.tzinfo is None:
            occurred_at = occurred_at.replace(tzinfo=timezone.utc)
        timestamp = int(occurred_at.timestamp())
        fbc = event.click_ids.fbc
        if not fbc and event.click_ids.fbclid:
            # fbc format: fb.1.{timestamp_ms}.{fbclid}
            fbc = f"fb.1.{timestamp * 1000}.{event.click_ids.fbclid}"
        if fbc:
            user_data["fbc"] = fbc
        if event.click_ids.fbp:
            user_data["fbp"] = event.click_ids.fbp
        if contact.ip_address:
            user_data["client_ip_address"] = contact.ip_address
        if contact.user_agent:
            user_data["client_user_agent"] = contact.user_agent
        if event.click_id:
            user_data["external_id"] = [sha256_hash(event.click_id)]

        data: Dict[str, Any] = {
            "event_name": event.outbound_event_name or event.event_name,
            "event_time": timestamp,
            # Stable across retries so Meta dedups a resend of the same row
            "event_id": f"leadflow-{event.event_id}",
            "action_source": "website" if contact.landing_page else "system_generated",
            "user_data": user_data,
        }
        if contact.landing_page:
            data["event_source_url"] = contact.landing_page

        value = self.resolve_value(event)
        if value is not None:
            data["custom_data"] = {"value": float(value), "currency": event.currency}
        return data

    async def _send(self, event: OutboundEvent, token: str, account: ProviderAccount) -> SendResult:
        pixel_id = account.account_id
        if not pixel_id:
            raise ChannelError("Meta pixel id not configured")

        snapshot: Dict[str, Any] = {"data": [self.build_event(event)]}
        test_event_code = account.settings.get("test_event_code")
        if test_event_code:
            snapshot["test_event_code"] = test_event_code

        url = f"https://graph.facebook.com/{self.settings.META_GRAPH_API_VERSION}/{pixel_id}/events"
        async with self.client() as client:
            response = await client.post(url, json={**snapshot, "access_token": token})

        body = response_json(response)
        error = body.get("error")
        if response.status_code != 200 or error:
            message = error.get("message") if isinstance(error, dict) else None
            logger.error(f"[META_CAPI] API error: {response.status_code} - {message}")
            return SendResult(
                success=False,
                error=message or f"Meta CAPI HTTP {response.status_code}",
                response=body,
                payload=snapshot,
            )

        logger.info(
            f"[META_CAPI] {body.get('events_received', 0)} event(s) received for pixel {pixel_id}",
            extra={"fbtrace_id": body.get("fbtrace_id"), "test_mode": bool(test_event_code)},
        )
        return SendResult(success=True, response=body, payload=snapshot)

    async def _check(self, token: str, account: ProviderAccount) -> str:
        """Reads the pixel itself, which also proves the token can reach it."""
        pixel_id = account.account_id
        if not pixel_id:
            raise ChannelError("Meta pixel id not configured")

        url = f"https://graph.facebook.com/{self.settings.META_GRAPH_API_VERSION}/{pixel_id}"
        async with self.client() as client:
            response = await client.get(url, params={"access_token": token, "fields": "id,name"})

        body = response_json(response)
        error = body.get("error")
        if response.status_code != 200 or error:
            message = error.get("message") if isinstance(error, dict) else None
            raise ChannelError(message or f"Meta Graph HTTP {response.status_code}")
        return f"Meta pixel {body.get('name') or pixel_id} reachable"
