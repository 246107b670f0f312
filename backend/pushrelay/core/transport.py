"""
Web Push transport boundary.

Everything below the dispatcher goes through ``PushTransport``; the real
implementation wraps pywebpush and reports failures as ``PushTransportError``
with the push service's HTTP status when there was one.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import requests
from pywebpush import WebPushException, webpush

logger = logging.getLogger(__name__)


class PushTransportError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class VapidCredentials:
    public_key: str
    private_key: str
    subject: str


class VapidKeyring:
    """Holds the active VAPID key set; swapped as a whole on rotation."""

    def __init__(self, credentials: Optional[VapidCredentials] = None):
        self._lock = threading.Lock()
        self._credentials = credentials

    def current(self) -> VapidCredentials:
        with self._lock:
            if self._credentials is None:
                raise PushTransportError("VAPID credentials are not configured")
            return self._credentials

    def rotate(self, credentials: VapidCredentials) -> VapidCredentials:
        with self._lock:
            previous = self._credentials
            self._credentials = credentials
        logger.info("VAPID credentials rotated")
        return previous

    @property
    def configured(self) -> bool:
        with self._lock:
            return self._credentials is not None


class PushTransport(Protocol):
    async def send_notification(
        self,
        subscription_info: Dict[str, Any],
        data: str,
        ttl: int,
        urgency: Optional[str] = None,
        topic: Optional[str] = None,
    ) -> Any:
        ...


class WebPushTransport:
    def __init__(self, keyring: VapidKeyring, timeout: float = 10):
        self.keyring = keyring
        self.timeout = timeout

    def _send_sync(
        self,
        subscription_info: Dict[str, Any],
        data: str,
        ttl: int,
        urgency: Optional[str],
        topic: Optional[str],
    ):
        creds = self.keyring.current()
        headers = {}
        if urgency:
            headers["Urgency"] = urgency
        if topic:
            headers["Topic"] = topic

        try:
            return webpush(
                subscription_info=subscription_info,
                data=data,
                vapid_private_key=creds.private_key,
                # pywebpush adds aud/exp to the claims dict it is given
                vapid_claims={"sub": creds.subject},
                ttl=ttl,
                headers=headers,
                timeout=self.timeout,
            )
        except WebPushException as exc:
            status_code = exc.response.status_code if exc.response is not None else None
            raise PushTransportError(str(exc), status_code=status_code) from exc
        except requests.exceptions.Timeout as exc:
            raise PushTransportError(f"Push request timed out: {exc}") from exc
        except requests.exceptions.ConnectionError as exc:
            raise PushTransportError(f"Network error: {exc}") from exc

    async def send_notification(
        self,
        subscription_info: Dict[str, Any],
        data: str,
        ttl: int,
        urgency: Optional[str] = None,
        topic: Optional[str] = None,
    ):
        return await asyncio.to_thread(self._send_sync, subscription_info, data, ttl, urgency, topic)
