"""
Browser and platform notification capabilities.

Each profile fixes the hard limits a push service or browser enforces on a
notification (title/body length, action count, inline data size) and which
optional features it renders.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional

KIB = 1024


@dataclass(frozen=True)
class CapabilityProfile:
    browser_name: str
    min_version: str
    max_title_length: int = 50
    max_body_length: int = 120
    max_actions: int = 2
    supports_image: bool = True
    supports_actions: bool = True
    supports_silent: bool = False
    supports_vibrate: bool = True
    supports_badge: bool = True
    supports_tag: bool = True
    supports_data: bool = True
    max_data_size: int = 4096
    max_image_size: int = 512 * KIB
    supports_renotify: bool = True
    supports_require_interaction: bool = True
    supports_timestamp: bool = True
    supports_direction: bool = True
    supports_reply: bool = False


@dataclass
class ValidationResult:
    can_send: bool
    issues: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


_CHROMIUM = CapabilityProfile(browser_name="Chrome", min_version="42")

# Safari family: short limits, one action, no images, inline reply
_WEBKIT = CapabilityProfile(
    browser_name="Safari",
    min_version="16",
    max_title_length=30,
    max_body_length=100,
    max_actions=1,
    supports_image=False,
    supports_vibrate=False,
    max_image_size=0,
    supports_renotify=False,
    supports_require_interaction=False,
    supports_timestamp=False,
    supports_reply=True,
)

BROWSER_CAPABILITIES: Dict[str, CapabilityProfile] = {
    "Chrome": _CHROMIUM,
    "Chrome Mobile": replace(_CHROMIUM, browser_name="Chrome Mobile"),
    "Firefox": replace(_CHROMIUM, browser_name="Firefox", min_version="44", supports_vibrate=False),
    "Firefox Mobile": replace(
        _CHROMIUM, browser_name="Firefox Mobile", min_version="48", supports_vibrate=False
    ),
    "Safari": _WEBKIT,
    "Mobile Safari": replace(_WEBKIT, browser_name="Mobile Safari"),
    "Edge": replace(_CHROMIUM, browser_name="Edge", min_version="17"),
    "Opera": replace(_CHROMIUM, browser_name="Opera", min_version="30"),
    "Samsung": replace(_CHROMIUM, browser_name="Samsung Internet", min_version="4"),
}

# Used when the browser cannot be identified
PLATFORM_DEFAULTS: Dict[str, CapabilityProfile] = {
    "ios": replace(_WEBKIT, browser_name="iOS Webview"),
    "android": replace(_CHROMIUM, browser_name="Android Browser", min_version="4"),
    "desktop": replace(
        _CHROMIUM, browser_name="Desktop Browser", min_version="1", supports_vibrate=False
    ),
    "tablet": replace(_CHROMIUM, browser_name="Tablet Browser", min_version="1"),
}

DEFAULT_PLATFORM = "desktop"


def _major_version(version: Optional[str]) -> Optional[int]:
    if not version:
        return None
    head = str(version).strip().split(".")[0]
    if not head.isdigit():
        return None
    return int(head)


def adjust_by_version(profile: CapabilityProfile, version: Optional[str]) -> CapabilityProfile:
    """Below major 50 images are off; actions need at least major 44."""
    major = _major_version(version)
    if major is None:
        return profile
    if major < 50:
        return replace(profile, supports_image=False, supports_actions=major >= 44)
    return profile


def lookup_browser(browser_name: Optional[str]) -> Optional[CapabilityProfile]:
    """Exact case-insensitive match first, then a substring match either way."""
    name = (browser_name or "").strip().lower()
    if not name:
        return None

    for key, profile in BROWSER_CAPABILITIES.items():
        if key.lower() == name:
            return profile

    for key, profile in BROWSER_CAPABILITIES.items():
        k = key.lower()
        if k in name or name in k:
            return profile

    return None


def resolve_by_platform(platform: Optional[str]) -> CapabilityProfile:
    return PLATFORM_DEFAULTS.get((platform or "").lower(), PLATFORM_DEFAULTS[DEFAULT_PLATFORM])


def resolve(
    browser_name: Optional[str],
    browser_version: Optional[str] = None,
    platform: Optional[str] = None,
) -> CapabilityProfile:
    profile = lookup_browser(browser_name)
    if profile is None:
        return resolve_by_platform(platform)
    return adjust_by_version(profile, browser_version)


def _get(payload: Any, name: str) -> Any:
    if isinstance(payload, Mapping):
        if name == "require_interaction":
            return payload.get(name, payload.get("requireInteraction"))
        return payload.get(name)
    return getattr(payload, name, None)


def data_size(data: Any) -> int:
    """Serialized byte size of the inline ``data`` object."""
    return len(json.dumps(data or {}, separators=(",", ":"), default=str).encode("utf-8"))


def validate(payload: Any, profile: CapabilityProfile) -> ValidationResult:
    """
    Check a payload against a profile.

    Issues block sending (limits exceeded, unsupported content present);
    warnings flag options the target will silently ignore.
    """
    issues: List[str] = []
    warnings: List[str] = []
    name = profile.browser_name

    title = _get(payload, "title") or ""
    if len(title) > profile.max_title_length:
        issues.append(f"Title length {len(title)} exceeds limit of {profile.max_title_length}")

    body = _get(payload, "body")
    if body and len(body) > profile.max_body_length:
        issues.append(f"Body length {len(body)} exceeds limit of {profile.max_body_length}")

    actions = _get(payload, "actions")
    if actions:
        if not profile.supports_actions:
            issues.append(f"Action buttons not supported on {name}")
        elif len(actions) > profile.max_actions:
            issues.append(f"Too many actions ({len(actions)} > {profile.max_actions})")

    if _get(payload, "image") and not profile.supports_image:
        issues.append(f"Images not supported on {name}")

    if _get(payload, "silent") and not profile.supports_silent:
        warnings.append(f"Silent notifications not supported on {name}")
    if _get(payload, "vibrate") and not profile.supports_vibrate:
        warnings.append(f"Vibration not supported on {name}")
    if _get(payload, "renotify") and not profile.supports_renotify:
        warnings.append(f"Renotify not supported on {name}")
    if _get(payload, "require_interaction") and not profile.supports_require_interaction:
        warnings.append(f"requireInteraction not supported on {name}")
    if _get(payload, "timestamp") and not profile.supports_timestamp:
        warnings.append(f"Custom timestamp not supported on {name}")

    size = data_size(_get(payload, "data"))
    if size > profile.max_data_size:
        issues.append(f"Data too large ({size} > {profile.max_data_size} bytes)")

    return ValidationResult(can_send=not issues, issues=issues, warnings=warnings)


def supported_browsers() -> List[str]:
    return list(BROWSER_CAPABILITIES)


def capabilities_summary(browser_name: str, browser_version: Optional[str] = None) -> Dict[str, Any]:
    """Feature and limitation lists for display in the dashboard."""
    profile = lookup_browser(browser_name)
    if profile is None:
        return {
            "browser": browser_name,
            "features": [],
            "limitations": ["Unknown browser - using defaults"],
        }
    p = adjust_by_version(profile, browser_version)

    features: List[str] = []
    if p.supports_image:
        features.append("Images")
    if p.supports_actions:
        features.append(f"Actions (max {p.max_actions})")
    if p.supports_vibrate:
        features.append("Vibration")
    if p.supports_badge:
        features.append("Badge")
    if p.supports_tag:
        features.append("Tag-based deduplication")
    if p.supports_renotify:
        features.append("Renotify")
    if p.supports_require_interaction:
        features.append("Require interaction")
    if p.supports_timestamp:
        features.append("Custom timestamp")
    if p.supports_direction:
        features.append("Text direction")
    if p.supports_reply:
        features.append("Inline replies")

    limitations: List[str] = []
    if not p.supports_image:
        limitations.append("No image support")
    if not p.supports_actions:
        limitations.append("No action buttons")
    if not p.supports_vibrate:
        limitations.append("No vibration")
    if p.max_title_length < 50:
        limitations.append(f"Short title limit ({p.max_title_length})")
    if p.max_body_length < 120:
        limitations.append(f"Short body limit ({p.max_body_length})")

    return {
        "browser": f"{p.browser_name} {browser_version or ''}+".replace(" +", "+"),
        "features": features,
        "limitations": limitations,
    }
