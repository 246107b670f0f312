"""
Device profiles derived from the subscribing browser's user agent.

The payload builder adapts every send to the subscription's latest device,
so registration keeps exactly one row per subscription up to date.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session
from user_agents import parse as parse_ua

from ..models import Device

logger = logging.getLogger(__name__)

PLATFORMS = ("ios", "android", "desktop", "tablet")


def _device_type(ua) -> str:
    if ua.is_tablet:
        return "tablet"
    if ua.is_mobile:
        return "mobile"
    return "desktop"


def _platform(ua, device_type: str, provided: Optional[str]) -> str:
    if provided in PLATFORMS:
        return provided
    os_family = (ua.os.family or "").lower()
    if os_family == "ios":
        return "ios"
    if os_family == "android":
        return "android"
    if device_type == "tablet":
        return "tablet"
    return "desktop"


def parse_user_agent(user_agent: str, platform: Optional[str] = None) -> Dict[str, Any]:
    """Platform, device type, browser and OS for a user-agent string."""
    ua = parse_ua(user_agent or "")
    device_type = _device_type(ua)
    platform = _platform(ua, device_type, platform)

    browser = ua.browser.family if ua.browser.family != "Other" else None
    os_name = ua.os.family if ua.os.family != "Other" else None
    return {
        "platform": platform,
        "device_type": device_type,
        "browser_name": browser,
        "browser_version": ua.browser.version_string or None,
        "os_name": os_name,
        "os_version": ua.os.version_string or None,
        # iOS renders no actions, images or badges
        "supports_actions": platform != "ios" and browser != "Safari",
        "supports_images": platform != "ios",
        "supports_badge": platform != "ios",
    }


def get_device(db: Session, subscription_id: int) -> Optional[Device]:
    return db.query(Device).filter(Device.subscription_id == subscription_id).first()


def register_device(
    db: Session,
    subscription_id: int,
    user_agent: str,
    platform: Optional[str] = None,
    timezone: Optional[str] = None,
    supports_vibrate: Optional[bool] = None,
) -> Device:
    """Create or refresh the device row for a subscription."""
    fields = parse_user_agent(user_agent, platform)
    fields["supports_vibrate"] = fields["platform"] != "ios" and bool(supports_vibrate)

    device = get_device(db, subscription_id)
    if device is None:
        device = Device(subscription_id=subscription_id)
        db.add(device)

    device.user_agent = user_agent
    for key, value in fields.items():
        setattr(device, key, value)
    if timezone:
        device.timezone = timezone
    device.updated_at = datetime.utcnow()

    db.commit()
    db.refresh(device)
    logger.debug(
        f"Device for subscription {subscription_id}: "
        f"{device.platform}/{device.browser_name} {device.browser_version}"
    )
    return device
