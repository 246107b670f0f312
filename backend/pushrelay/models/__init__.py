from .subscription import Subscription, Device
from .preference import NotificationPreference
from .campaign import Campaign, CampaignDelivery
from .dead_letter import FailedDelivery
from .notification import DeliveryEvent
from .health import SubscriptionHealthCheck
from .vapid import VapidConfig


__all__ = [
    "Subscription",
    "Device",
    "NotificationPreference",
    "Campaign",
    "CampaignDelivery",
    "FailedDelivery",
    "DeliveryEvent",
    "SubscriptionHealthCheck",
    "VapidConfig",
]
