"""Google Ads offline click conversions.

WHAT:
    Uploads a conversion for a gclid to a configured conversion action via
    the REST endpoint `customers/{customer_id}:uploadClickConversions`.

WHY:
    Closes the loop between an ad click and a CRM milestone (qualified,
    signed, funded) so Google can bid on real outcomes.

PREREQUISITES:
    1. Conversion action exists in the Google Ads account
    2. gclid captured within the last 90 days
    3. Developer token and a selected customer id

REFERENCES:
    - https://developers.google.com/google-ads/api/docs/conversions/upload-clicks
"""

import logging
from datetime import timezone

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


def normalize_customer_id(customer_id) -> str:
    """Google expects the 10 digit id without dashes."""
    if not customer_id:
        return ""
    return "".join(ch for ch in str(customer_id) if ch.isdigit())


def format_conversion_time(occurred_at) -> str:
    """'yyyy-mm-dd hh:mm:ss+00:00' as required by the API."""
    if occurred_at.tzinfo is not None:
        occurred_at = occurred_at.astimezone(timezone.utc).replace(tzinfo=None)
    return occurred_at.strftime("%Y-%m-%d %H:%M:%S") + "+00:00"


class GoogleAdsAdapter(ChannelAdapter):
    source = EventSourceEnum.google_ads
    provider = ProviderEnum.google_ads
    label = "Google Ads"
    requires_click_id = "gclid"
    requires_target = True

    async def _send(self, event: OutboundEvent, token: str, account: ProviderAccount) -> SendResult:
        customer_id = normalize_customer_id(account.customer_id)
        if not customer_id:
            raise ChannelError("Google Ads customer id not configured")

        developer_token = self.settings.GOOGLE_ADS_DEVELOPER_TOKEN
        if not developer_token:
            raise ChannelError("Google Ads developer token not configured")

        conversion = {
            "gclid": event.click_ids.gclid,
            "conversionAction": f"customers/{customer_id}/conversionActions/{event.target_id}",
            "conversionDateTime": format_conversion_time(event.occurred_at),
        }
        value = self.resolve_value(event)
        if value is not None:
            conversion["conversionValue"] = float(value)
            conversion["currencyCode"] = event.currency
        if event.transaction_id:
            # Google dedups uploads sharing an order id
            conversion["orderId"] = event.transaction_id

        payload = {"conversions": [conversion], "partialFailure": True}

        headers = {
            "Authorization": f"Bearer {token}",
            "developer-token": developer_token,
            "Content-Type": "application/json",
        }
        login_customer_id = normalize_customer_id(
            account.login_customer_id or self.settings.GOOGLE_ADS_LOGIN_CUSTOMER_ID
        )
        if login_customer_id:
            headers["login-customer-id"] = login_customer_id

        url = (
            f"https://googleads.googleapis.com/{self.settings.GOOGLE_ADS_API_VERSION}"
            f"/customers/{customer_id}:uploadClickConversions"
        )
        async with self.client() as client:
            response = await client.post(url, json=payload, headers=headers)

        body = response_json(response)
        if response.status_code != 200:
            error = body.get("error", {})
            message = error.get("message") if isinstance(error, dict) else None
            raise ChannelError(message or f"Google Ads HTTP {response.status_code}")

        partial = body.get("partialFailureError")
        if partial:
            message = partial.get("message") or "Partial failure"
            logger.warning(
                f"[GOOGLE_ADS] Partial failure uploading conversion: {message}",
                extra={"gclid": event.click_ids.gclid[:20], "event_id": event.event_id},
            )
            return SendResult(success=False, error=message, response=body, payload=payload)

        logger.info(
            f"[GOOGLE_ADS] Uploaded conversion for event {event.event_id}",
            extra={"gclid": event.click_ids.gclid[:20] + "...", "value": conversion.get("conversionValue")},
        )
        return SendResult(success=True, response=body, payload=payload)

    async def _check(self, token: str, account: ProviderAccount) -> str:
        developer_token = self.settings.GOOGLE_ADS_DEVELOPER_TOKEN
        if not developer_token:
            raise ChannelError("Google Ads developer token not configured")

        url = (
            f"https://googleads.googleapis.com/{self.settings.GOOGLE_ADS_API_VERSION}"
            "/customers:listAccessibleCustomers"
        )
        async with self.client() as client:
            response = await client.get(
                url,
                headers={"Authorization": f"Bearer {token}", "developer-token": developer_token},
            )

        body = response_json(response)
        if response.status_code != 200:
            error = body.get("error", {})
            message = error.get("message") if isinstance(error, dict) else None
            raise ChannelError(message or f"Google Ads HTTP {response.status_code}")
        return f"Google Ads connected ({len(body.get('resourceNames', []))} accessible customer(s))"
