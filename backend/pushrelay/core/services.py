from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from ..config import Settings
from .campaigns import CampaignOrchestrator
from .dead_letter import DeadLetterStore
from .dispatcher import DeliveryDispatcher
from .gate import FrequencyGate
from .health import SubscriptionHealthChecker
from .retry import DEFAULT_RETRY_CONFIG, RetryConfig, RetryManager
from .transport import PushTransport, VapidKeyring, WebPushTransport


@dataclass
class PushServices:
    settings: Settings
    keyring: VapidKeyring
    transport: PushTransport
    gate: FrequencyGate
    dead_letters: DeadLetterStore
    dispatcher: DeliveryDispatcher
    campaigns: CampaignOrchestrator
    health: SubscriptionHealthChecker


def build_services(
    settings: Settings,
    transport: Optional[PushTransport] = None,
    keyring: Optional[VapidKeyring] = None,
    retry_manager: Optional[RetryManager] = None,
    retry_config: RetryConfig = DEFAULT_RETRY_CONFIG,
) -> PushServices:
    """Wire the delivery pipeline. Tests pass their own transport."""
    keyring = keyring or VapidKeyring()
    transport = transport or WebPushTransport(keyring, timeout=settings.push_timeout_sec)
    retry_manager = retry_manager or RetryManager()

    gate = FrequencyGate()
    dead_letters = DeadLetterStore(lease_seconds=settings.delivery_lease_seconds)
    dispatcher = DeliveryDispatcher(
        transport, retry_manager, dead_letters=dead_letters, retry_config=retry_config
    )
    campaigns = CampaignOrchestrator(
        dispatcher,
        gate,
        concurrency=settings.campaign_send_concurrency,
        lease_seconds=settings.delivery_lease_seconds,
    )
    health = SubscriptionHealthChecker(transport, retry_manager)

    return PushServices(
        settings=settings,
        keyring=keyring,
        transport=transport,
        gate=gate,
        dead_letters=dead_letters,
        dispatcher=dispatcher,
        campaigns=campaigns,
        health=health,
    )


# FastAPI dependency
def get_services(request: Request) -> PushServices:
    return request.app.state.services
