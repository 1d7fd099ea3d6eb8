"""Microsoft Advertising offline conversions (OfflineConversions/Apply)."""

import logging

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

APPLY_URL = "https://campaign.api.bingads.microsoft.com/CampaignManagement/v13/OfflineConversions/Apply"


class BingAdsAdapter(ChannelAdapter):
    source = EventSourceEnum.bing_ads
    provider = ProviderEnum.bing_ads
    label = "Microsoft Ads"
    requires_click_id = "msclkid"
    requires_target = True

    async def _send(self, event: OutboundEvent, token: str, account: ProviderAccount) -> SendResult:
        if not account.account_id or not account.customer_id:
            raise ChannelError("Microsoft Ads account not selected")
        if not self.settings.BING_ADS_DEVELOPER_TOKEN:
            raise ChannelError("Microsoft Ads developer token not configured")

        conversion = {
            "MicrosoftClickId": event.click_ids.msclkid,
            "ConversionName": event.target_id,
            "ConversionTime": event.occurred_at.strftime("%Y-%m-%dT%H:%M:%SZ"),
        }
        value = self.resolve_value(event)
        if value is not None:
            conversion["ConversionValue"] = float(value)
            conversion["ConversionCurrencyCode"] = event.currency

        payload = {"OfflineConversions": [conversion]}
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "CustomerAccountId": str(account.account_id),
            "CustomerId": str(account.customer_id),
            "DeveloperToken": self.settings.BING_ADS_DEVELOPER_TOKEN,
        }

        async with self.client() as client:
            response = await client.post(APPLY_URL, json=payload, headers=headers)

        body = response_json(response)
        if not response.is_success:
            raise ChannelError(body.get("Message") or f"Microsoft Ads HTTP {response.status_code}")

        partial_errors = body.get("PartialErrors") or []
        if partial_errors:
            message = partial_errors[0].get("Message") or "Partial failure"
            return SendResult(success=False, error=message, response=body, payload=payload)

        logger.info("[BING_ADS] Uploaded conversion for msclkid %s", event.click_ids.msclkid[:20])
        return SendResult(success=True, response=body, payload=payload)
