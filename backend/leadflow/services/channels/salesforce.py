"""Salesforce CRM push: creates a Lead sObject for a new lead."""

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


class SalesforceAdapter(ChannelAdapter):
    source = EventSourceEnum.salesforce
    provider = ProviderEnum.salesforce
    label = "Salesforce"
    requires_contact = True

    def build_lead(self, event: OutboundEvent) -> dict:
        contact = event.contact
        first_name, last_name = contact.split_name()

        description = []
        if contact.debt_amount is not None:
            description.append(f"Debt Amount: {contact.debt_amount}")
        if event.click_id:
            description.append(f"Click ID: {event.click_id}")
        if contact.landing_page:
            description.append(f"Landing Page: {contact.landing_page}")

        # LastName and Company are required on the Lead object
        sf_lead = {
            "FirstName": first_name,
            "LastName": last_name or first_name or "Unknown",
            "Email": contact.email,
            "Phone": contact.phone,
            "Company": contact.company_name or "[Not Provided]",
            "LeadSource": "Web",
            "Description": "\n".join(description),
        }
        return {k: v for k, v in sf_lead.items() if v}

    async def _send(self, event: OutboundEvent, token: str, account: ProviderAccount) -> SendResult:
        if not account.instance_url:
            raise ChannelError("Salesforce instance url unknown; reconnect Salesforce")

        payload = self.build_lead(event)
        url = (
            f"{account.instance_url.rstrip('/')}/services/data/"
            f"{self.settings.SALESFORCE_API_VERSION}/sobjects/Lead"
        )
        async with self.client() as client:
            response = await client.post(
                url,
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )

        body = response_json(response)
        if response.is_success and body.get("success") and body.get("id"):
            logger.info("[SALESFORCE] Pushed lead %s -> %s", event.lead_id, body["id"])
            return SendResult(success=True, response=body, payload=payload, external_id=body["id"])

        # Errors come back as a list of {"message", "errorCode"}
        message = None
        if isinstance(body.get("data"), list) and body["data"]:
            message = body["data"][0].get("message")
        raise ChannelError(message or f"Salesforce HTTP {response.status_code}")

    async def _check(self, token: str, account: ProviderAccount) -> str:
        if not account.instance_url:
            raise ChannelError("Salesforce instance url unknown; reconnect Salesforce")

        url = (
            f"{account.instance_url.rstrip('/')}/services/data/"
            f"{self.settings.SALESFORCE_API_VERSION}/sobjects/Lead/describe"
        )
        async with self.client() as client:
            response = await client.get(url, headers={"Authorization": f"Bearer {token}"})

        if not response.is_success:
            body = response_json(response)
            message = None
            if isinstance(body.get("data"), list) and body["data"]:
                message = body["data"][0].get("message")
            raise ChannelError(message or f"Salesforce HTTP {response.status_code}")
        return f"Salesforce connected ({account.instance_url})"
