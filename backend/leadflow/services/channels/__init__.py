"""Outbound channel adapters, keyed by the ledger source tag they write."""

from typing import Callable, Dict, Optional

import httpx

from leadflow.models import EventSourceEnum, ProviderEnum
from leadflow.services.channels.base import (
    ChannelAdapter,
    ChannelError,
    LeadContact,
    OutboundEvent,
    SendResult,
)
from leadflow.services.channels.bing_ads import BingAdsAdapter
from leadflow.services.channels.google_ads import GoogleAdsAdapter
from leadflow.services.channels.meta_capi import MetaCapiAdapter
from leadflow.services.channels.salesforce import SalesforceAdapter

__all__ = [
    "ChannelAdapter",
    "ChannelError",
    "LeadContact",
    "OutboundEvent",
    "SendResult",
    "GoogleAdsAdapter",
    "BingAdsAdapter",
    "MetaCapiAdapter",
    "SalesforceAdapter",
    "build_adapters",
]


def build_adapters(
    token_managers: Dict[ProviderEnum, object],
    settings,
    session_factory: Callable,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[EventSourceEnum, ChannelAdapter]:
    adapters = {}
    for adapter_cls in (GoogleAdsAdapter, BingAdsAdapter, MetaCapiAdapter, SalesforceAdapter):
        adapters[adapter_cls.source] = adapter_cls(
            token_managers[adapter_cls.provider], settings, session_factory, transport
        )
    return adapters
