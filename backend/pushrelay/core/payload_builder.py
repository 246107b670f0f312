from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from ..models import Device
from .capabilities import CapabilityProfile, data_size, resolve, resolve_by_platform

logger = logging.getLogger(__name__)

# Web Push services reject encrypted payloads above 4KB
MAX_PAYLOAD_BYTES = 4096


class NotificationAction(BaseModel):
    action: str
    title: str
    icon: Optional[str] = None
    placeholder: Optional[str] = None  # inline reply hint


class PushPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str
    body: Optional[str] = None
    icon: Optional[str] = None
    image: Optional[str] = None
    badge: Optional[str] = None
    sound: Optional[str] = None

    tag: Optional[str] = None
    renotify: Optional[bool] = None
    require_interaction: Optional[bool] = Field(default=None, alias="requireInteraction")
    silent: Optional[bool] = None
    timestamp: Optional[int] = None

    dir: Optional[str] = None  # auto | ltr | rtl
    lang: Optional[str] = None
    vibrate: Optional[List[int]] = None

    actions: Optional[List[NotificationAction]] = None
    data: Optional[Dict[str, Any]] = None

    # Seconds; sent as the TTL header, not in the body
    ttl: Optional[int] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, exclude={"ttl"})

    def serialize(self) -> str:
        return json.dumps(self.to_wire(), separators=(",", ":"), default=str)


PayloadInput = Union[PushPayload, Mapping[str, Any]]


@dataclass
class BuiltPayload:
    payload: PushPayload
    headers: Dict[str, str] = field(default_factory=dict)
    valid: bool = True
    issues: List[str] = field(default_factory=list)
    profile: Optional[CapabilityProfile] = None


def coerce_payload(raw: PayloadInput) -> PushPayload:
    if isinstance(raw, PushPayload):
        return raw
    return PushPayload.model_validate(dict(raw))


def profile_for_device(device: Device) -> CapabilityProfile:
    return resolve(device.browser_name, device.browser_version, device.platform)


def trim_for_profile(payload: PushPayload, profile: CapabilityProfile) -> PushPayload:
    """Cut text to the profile limits and drop everything it cannot render."""
    update: Dict[str, Any] = {
        "title": (payload.title or "")[: profile.max_title_length],
    }
    if payload.body is not None:
        update["body"] = payload.body[: profile.max_body_length]

    if payload.actions:
        if not profile.supports_actions or profile.max_actions <= 0:
            update["actions"] = None
        else:
            actions = payload.actions[: profile.max_actions]
            if not profile.supports_reply:
                actions = [a.model_copy(update={"placeholder": None}) for a in actions]
            update["actions"] = actions

    if not profile.supports_image:
        update["image"] = None
    if not profile.supports_silent:
        update["silent"] = None
    if not profile.supports_vibrate:
        update["vibrate"] = None
    if not profile.supports_badge:
        update["badge"] = None
    if not profile.supports_tag:
        update["tag"] = None
    if not profile.supports_renotify:
        update["renotify"] = None
    if not profile.supports_require_interaction:
        update["require_interaction"] = None
    if not profile.supports_timestamp:
        update["timestamp"] = None
    if not profile.supports_direction:
        update["dir"] = None

    return payload.model_copy(update=update)


def vibrate_pattern(platform: Optional[str], profile: CapabilityProfile) -> Optional[List[int]]:
    if platform == "ios" or not profile.supports_vibrate:
        return None
    if platform == "android":
        return [0, 200, 100, 200]
    return [200, 100, 200]


def urgency_for_priority(priority: Optional[str]) -> str:
    if priority == "low":
        return "very-low"
    if priority == "high":
        return "high"
    return "normal"


def ttl_for_priority(priority: Optional[str]) -> int:
    if priority == "low":
        return 24 * 60 * 60
    if priority == "high":
        return 30 * 60
    return 4 * 60 * 60


def payload_size(payload: PushPayload) -> int:
    return len(payload.serialize().encode("utf-8"))


def build_headers(payload: PushPayload) -> Dict[str, str]:
    priority = (payload.data or {}).get("priority")
    headers = {
        "TTL": str(payload.ttl if payload.ttl is not None else ttl_for_priority(priority)),
        "Urgency": urgency_for_priority(priority),
    }
    if payload.tag:
        headers["Topic"] = payload.tag
    return headers


def build_for_profile(
    raw_payload: PayloadInput,
    profile: CapabilityProfile,
    platform: Optional[str] = None,
) -> BuiltPayload:
    """
    Adapt a payload to a capability profile.

    Never raises for out-of-limit content: fields are truncated or dropped
    and whatever cannot be fixed is reported in ``issues``.
    """
    issues: List[str] = []
    payload = trim_for_profile(coerce_payload(raw_payload), profile)

    if payload.vibrate is None:
        pattern = vibrate_pattern(platform, profile)
        if pattern:
            payload = payload.model_copy(update={"vibrate": pattern})

    size = data_size(payload.data)
    if size > profile.max_data_size:
        issues.append(f"Data too large ({size} > {profile.max_data_size} bytes)")

    # Shed optional content until the body fits
    for optional in ("image", "actions"):
        if payload_size(payload) <= MAX_PAYLOAD_BYTES:
            break
        if getattr(payload, optional):
            payload = payload.model_copy(update={optional: None})

    size = payload_size(payload)
    if size > MAX_PAYLOAD_BYTES:
        issues.append(f"Payload size ({size} bytes) exceeds Web Push limit ({MAX_PAYLOAD_BYTES} bytes)")

    return BuiltPayload(
        payload=payload,
        headers=build_headers(payload),
        valid=not issues,
        issues=issues,
        profile=profile,
    )


def build_for_device(db: Session, device_id: Optional[int], raw_payload: PayloadInput) -> BuiltPayload:
    device = None
    if device_id is not None:
        device = db.query(Device).filter(Device.id == device_id).first()

    if device is None:
        payload = coerce_payload(raw_payload)
        return BuiltPayload(
            payload=payload,
            headers=build_headers(payload),
            valid=False,
            issues=["Device not found"],
        )

    built = build_for_profile(raw_payload, profile_for_device(device), device.platform)
    if built.issues:
        logger.info(f"Payload for device {device_id} adapted with issues: {built.issues}")
    return built


def build_for_subscription(db: Session, subscription_id: int, raw_payload: PayloadInput) -> BuiltPayload:
    """Adapt for the subscription's registered device, or the platform default."""
    device = (
        db.query(Device)
        .filter(Device.subscription_id == subscription_id)
        .order_by(Device.updated_at.desc())
        .first()
    )
    if device is None:
        return build_for_profile(raw_payload, resolve_by_platform(None), None)
    return build_for_device(db, device.id, raw_payload)
