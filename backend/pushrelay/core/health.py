"""
Subscription health checks.

Checks push endpoints with a zero-TTL message that push services accept but
never deliver, records the outcome and demotes subscriptions whose endpoint
has expired.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
import time as time_module
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models import SubscriptionHealthCheck
from . import subscriptions
from .retry import RetryConfig, RetryManager
from .transport import PushTransport

logger = logging.getLogger(__name__)

# Outbound checks in flight at once
BATCH_SIZE = 10

CHECK_CONFIG = RetryConfig(max_attempts=1)
CHECK_PAYLOAD = json.dumps({"test": True})

HEALTHY = "healthy"
UNHEALTHY = "unhealthy"
EXPIRED = "expired"
UNKNOWN = "unknown"

_STATUS_MESSAGES = {
    400: "Bad Request - Invalid payload",
    401: "Unauthorized - Authentication failed",
    403: "Forbidden - Permission denied",
    404: "Not Found - Endpoint invalid",
    410: "Gone - Subscription expired",
    413: "Payload Too Large",
    429: "Too Many Requests - Rate limited",
    500: "Internal Server Error",
    503: "Service Unavailable",
}

_STATUS_PATTERN = re.compile(r"status\s+(\d{3})", re.IGNORECASE)

# Word-bounded so digits inside timings or ids are not read as a status
_MESSAGE_STATUS = tuple(
    (code, re.compile(pattern))
    for code, pattern in (
        (410, r"\b410\b|\bgone\b"),
        (404, r"\b404\b|not found"),
        (413, r"\b413\b|payload too large"),
        (429, r"\b429\b|rate limit|too many requests"),
        (403, r"\b403\b|forbidden"),
        (401, r"\b401\b|unauthorized"),
        (400, r"\b400\b|bad request"),
        (500, r"\b500\b|\binternal\b"),
        (503, r"\b503\b|unavailable"),
    )
)


@dataclass
class HealthResult:
    valid: bool
    issues: List[str] = field(default_factory=list)
    recommendation: Optional[str] = None
    status_code: Optional[int] = None
    response_time_ms: Optional[int] = None


@dataclass
class BatchHealthResult:
    healthy: List[int] = field(default_factory=list)
    unhealthy: List[Dict[str, Any]] = field(default_factory=list)
    unknown: List[Dict[str, Any]] = field(default_factory=list)


def extract_status_code(error: BaseException) -> Optional[int]:
    status_code = getattr(error, "status_code", None)
    if isinstance(status_code, int):
        return status_code

    message = str(error)
    match = _STATUS_PATTERN.search(message)
    if match:
        return int(match.group(1))

    lowered = message.lower()
    for code, pattern in _MESSAGE_STATUS:
        if pattern.search(lowered):
            return code
    return None


def status_message(status_code: int, fallback: str) -> str:
    return _STATUS_MESSAGES.get(status_code, fallback)


def recommendation_for(status_code: Optional[int], issues: List[str]) -> str:
    if status_code == 410:
        return "Request re-subscription"
    if len(issues) > 2:
        return "Remove subscription - too many errors"
    if status_code == 429:
        return "Retry later - rate limited"
    if status_code in (401, 403):
        return "Remove subscription - authentication failed"
    return "Retry later - transient error"


class SubscriptionHealthChecker:
    def __init__(self, transport: PushTransport, retry_manager: Optional[RetryManager] = None):
        self.transport = transport
        self.retry_manager = retry_manager or RetryManager()

    def record_health_check(
        self,
        db: Session,
        subscription_id: int,
        status: str,
        status_code: Optional[int],
        response_time_ms: Optional[int],
        error_message: Optional[str] = None,
    ) -> SubscriptionHealthCheck:
        row = SubscriptionHealthCheck(
            subscription_id=subscription_id,
            status=status,
            status_code=status_code,
            response_time_ms=response_time_ms,
            error_message=error_message,
            checked_at=datetime.utcnow(),
        )
        db.add(row)
        db.commit()
        return row

    async def validate_subscription(self, db: Session, subscription_id: int) -> HealthResult:
        sub = subscriptions.get_subscription(db, subscription_id)
        if sub is None:
            return HealthResult(valid=False, issues=["Subscription not found"], recommendation="Remove from database")

        if sub.status != subscriptions.ACTIVE:
            return HealthResult(
                valid=False,
                issues=[f"Subscription is {sub.status}"],
                recommendation="Request re-subscription",
                status_code=410,
            )

        subscription_info = sub.to_webpush_dict()

        async def _send_check():
            return await self.transport.send_notification(subscription_info, CHECK_PAYLOAD, 0, "very-low")

        start = time_module.perf_counter()
        result = await self.retry_manager.with_retry(_send_check, CHECK_CONFIG)
        response_time = int((time_module.perf_counter() - start) * 1000)

        if result.success:
            self.record_health_check(db, subscription_id, HEALTHY, 200, response_time)
            return HealthResult(valid=True, response_time_ms=response_time)

        error = result.error
        message = str(error)
        status_code = extract_status_code(error)
        issues: List[str] = []

        if status_code == 410:
            issues += ["Subscription expired (410 Gone)", "Endpoint no longer valid"]
            self.record_health_check(db, subscription_id, EXPIRED, status_code, response_time, message)
            subscriptions.demote(db, subscription_id, subscriptions.INACTIVE)
        elif status_code in (404, 413):
            issues.append(f"Invalid endpoint ({status_code})")
            self.record_health_check(db, subscription_id, UNHEALTHY, status_code, response_time, message)
        elif status_code == 429:
            issues.append("Rate limited - endpoint may be valid but throttled")
            self.record_health_check(db, subscription_id, UNHEALTHY, status_code, response_time, message)
        elif status_code in (401, 403):
            issues += [f"Authentication failed ({status_code})", "Keys may be invalid or expired"]
            self.record_health_check(db, subscription_id, UNHEALTHY, status_code, response_time, message)
        elif isinstance(error, ConnectionError) or "econnrefused" in message.lower() or "network" in message.lower():
            issues.append("Endpoint unreachable (network error)")
            self.record_health_check(db, subscription_id, UNHEALTHY, status_code, response_time, message)
        elif status_code is not None:
            issues.append(status_message(status_code, message))
            self.record_health_check(db, subscription_id, UNHEALTHY, status_code, response_time, message)
        else:
            issues.append(f"Unknown error: {message}")
            self.record_health_check(db, subscription_id, UNKNOWN, None, response_time, message)

        return HealthResult(
            valid=False,
            issues=issues,
            recommendation=recommendation_for(status_code, issues),
            status_code=status_code,
            response_time_ms=response_time,
        )

    async def health_check_batch(self, db: Session, subscription_ids: List[int]) -> BatchHealthResult:
        results = BatchHealthResult()

        for i in range(0, len(subscription_ids), BATCH_SIZE):
            batch = subscription_ids[i : i + BATCH_SIZE]
            outcomes = await asyncio.gather(
                *(self.validate_subscription(db, sid) for sid in batch),
                return_exceptions=True,
            )
            for sid, health in zip(batch, outcomes):
                if isinstance(health, BaseException):
                    logger.error(f"Health check for subscription {sid} raised: {health}")
                    continue
                if health.valid:
                    results.healthy.append(sid)
                elif health.status_code:
                    results.unhealthy.append(
                        {"id": sid, "issue": ", ".join(health.issues), "status_code": health.status_code}
                    )
                else:
                    results.unknown.append({"id": sid, "issue": ", ".join(health.issues)})

        logger.info(
            f"Health check: {len(results.healthy)} healthy, {len(results.unhealthy)} unhealthy, "
            f"{len(results.unknown)} unknown"
        )
        return results

    async def health_check_all_active(self, db: Session) -> BatchHealthResult:
        ids = [sub.id for sub in subscriptions.get_active(db)]
        return await self.health_check_batch(db, ids)

    def get_health_history(self, db: Session, subscription_id: int, limit: int = 10) -> List[SubscriptionHealthCheck]:
        return (
            db.query(SubscriptionHealthCheck)
            .filter(SubscriptionHealthCheck.subscription_id == subscription_id)
            .order_by(SubscriptionHealthCheck.checked_at.desc(), SubscriptionHealthCheck.id.desc())
            .limit(limit)
            .all()
        )

    def get_health_stats(self, db: Session, days: int = 7) -> Dict[str, Any]:
        since = datetime.utcnow() - timedelta(days=days)
        rows = (
            db.query(
                SubscriptionHealthCheck.status,
                func.count(SubscriptionHealthCheck.id),
                func.avg(SubscriptionHealthCheck.response_time_ms),
            )
            .filter(SubscriptionHealthCheck.checked_at >= since)
            .group_by(SubscriptionHealthCheck.status)
            .all()
        )

        stats: Dict[str, Any] = {"total": 0, HEALTHY: 0, UNHEALTHY: 0, EXPIRED: 0, UNKNOWN: 0}
        averages = []
        for status, count, avg_ms in rows:
            stats["total"] += count
            stats[status] = count
            if avg_ms is not None:
                averages.append(float(avg_ms))
        stats["avg_response_time_ms"] = round(sum(averages) / len(averages)) if averages else 0
        return stats

    def cleanup(self, db: Session, days_to_keep: int = 30) -> int:
        threshold = datetime.utcnow() - timedelta(days=days_to_keep)
        deleted = (
            db.query(SubscriptionHealthCheck)
            .filter(SubscriptionHealthCheck.checked_at < threshold)
            .delete(synchronize_session="fetch")
        )
        db.commit()
        return deleted
