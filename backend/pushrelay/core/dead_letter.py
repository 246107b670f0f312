"""
Dead-letter store for failed deliveries and the recovery loop that retries
them.

A record moves from pending (``will_retry`` with a ``next_retry_at``) to
resolved, either ``recovered`` or ``max_attempts_reached``. Resolution is a
conditional update on ``resolved_at IS NULL`` so it happens once.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models import FailedDelivery
from . import deliveries, subscriptions
from .database import SessionLocal
from .retry import (
    DEFAULT_RETRY_CONFIG,
    ErrorCode,
    RetryConfig,
    classify,
    classify_message,
    config_for_error,
    is_retryable,
)

if TYPE_CHECKING:
    from ..config import Settings
    from .dispatcher import DeliveryDispatcher

logger = logging.getLogger(__name__)

MAX_BACKOFF_MS = 60000

RECOVERED = "recovered"
MAX_ATTEMPTS_REACHED = "max_attempts_reached"

ERROR_CATEGORIES = {
    ErrorCode.EXPIRED: "expired",
    ErrorCode.PERMISSION_DENIED: "permission",
    ErrorCode.NOT_FOUND: "endpoint_invalid",
    ErrorCode.RATE_LIMITED: "throttling",
    ErrorCode.TIMEOUT: "network",
    ErrorCode.NETWORK: "network",
    ErrorCode.INVALID_PAYLOAD: "payload_invalid",
    ErrorCode.PAYLOAD_TOO_LARGE: "payload_too_large",
    ErrorCode.SERVER_ERROR: "server_error",
    ErrorCode.SERVICE_UNAVAILABLE: "server_error",
}


@dataclass
class RecoveryResult:
    recovered: int = 0
    permanently_failed: int = 0
    still_pending: int = 0


def categorize_error(code: Union[ErrorCode, str]) -> str:
    try:
        code = ErrorCode(code)
    except ValueError:
        return "unknown"
    return ERROR_CATEGORIES.get(code, "unknown")


def _classify(error: Union[BaseException, str, None]) -> ErrorCode:
    if isinstance(error, BaseException):
        return classify(error)
    return classify_message(error or "")


def backoff_ms(attempt: int, config: RetryConfig) -> float:
    """Dead-letter spacing: doubling from the class base delay, no jitter."""
    return min(config.base_delay_ms * 2 ** (attempt - 1), MAX_BACKOFF_MS)


class DeadLetterStore:
    def __init__(
        self,
        retry_config: RetryConfig = DEFAULT_RETRY_CONFIG,
        lease_seconds: int = 120,
        worker_id: Optional[str] = None,
    ):
        self.retry_config = retry_config
        self.lease_seconds = lease_seconds
        self.worker_id = worker_id or f"recovery-{uuid.uuid4().hex[:8]}"

    def record_failure(
        self,
        db: Session,
        delivery_id: int,
        error: Union[BaseException, str, None],
        attempt: int = 1,
        error_code: Optional[ErrorCode] = None,
        campaign_id: Optional[int] = None,
        subscription_id: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> FailedDelivery:
        now = now or datetime.utcnow()
        code = error_code or _classify(error)
        config = config_for_error(code, self.retry_config)
        will_retry = attempt < config.max_attempts

        if campaign_id is None or subscription_id is None:
            delivery = deliveries.get_delivery(db, delivery_id)
            if delivery is not None:
                campaign_id = campaign_id if campaign_id is not None else delivery.campaign_id
                subscription_id = subscription_id if subscription_id is not None else delivery.subscription_id

        record = FailedDelivery(
            delivery_id=delivery_id,
            campaign_id=campaign_id,
            subscription_id=subscription_id,
            error_code=code.value,
            error_category=categorize_error(code),
            error_message=str(error) if error is not None else None,
            attempt=attempt,
            max_attempts=config.max_attempts,
            will_retry=will_retry,
            next_retry_at=now + timedelta(milliseconds=backoff_ms(attempt, config)) if will_retry else None,
            last_attempt_at=now,
            metadata_json=metadata,
        )
        db.add(record)
        db.commit()
        db.refresh(record)

        logger.info(
            f"Dead-lettered delivery {delivery_id}: {code.value} "
            f"(attempt {attempt}/{config.max_attempts}, will_retry={will_retry})",
            extra={"delivery_id": delivery_id, "error_code": code.value, "attempt": attempt},
        )
        return record

    # ---- queries ----

    def get(self, db: Session, record_id: int) -> Optional[FailedDelivery]:
        return db.query(FailedDelivery).filter(FailedDelivery.id == record_id).first()

    def get_retryable_deliveries(
        self, db: Session, limit: int = 100, now: Optional[datetime] = None
    ) -> List[FailedDelivery]:
        now = now or datetime.utcnow()
        return (
            db.query(FailedDelivery)
            .filter(
                FailedDelivery.will_retry == True,  # noqa: E712
                FailedDelivery.resolved_at.is_(None),
                FailedDelivery.next_retry_at <= now,
            )
            .order_by(FailedDelivery.next_retry_at.asc(), FailedDelivery.id.asc())
            .limit(limit)
            .all()
        )

    def get_by_category(self, db: Session, category: str, limit: int = 100) -> List[FailedDelivery]:
        return (
            db.query(FailedDelivery)
            .filter(FailedDelivery.error_category == category)
            .order_by(FailedDelivery.last_attempt_at.desc())
            .limit(limit)
            .all()
        )

    def get_by_campaign(self, db: Session, campaign_id: int) -> List[FailedDelivery]:
        return (
            db.query(FailedDelivery)
            .filter(FailedDelivery.campaign_id == campaign_id)
            .order_by(FailedDelivery.last_attempt_at.desc())
            .all()
        )

    def get_by_subscription(self, db: Session, subscription_id: int) -> List[FailedDelivery]:
        return (
            db.query(FailedDelivery)
            .filter(FailedDelivery.subscription_id == subscription_id)
            .order_by(FailedDelivery.last_attempt_at.desc())
            .all()
        )

    def get_stats(self, db: Session) -> Dict[str, Any]:
        total = db.query(func.count(FailedDelivery.id)).scalar() or 0
        resolved = (
            db.query(func.count(FailedDelivery.id)).filter(FailedDelivery.resolved_at.is_not(None)).scalar() or 0
        )
        by_category = dict(
            db.query(FailedDelivery.error_category, func.count(FailedDelivery.id))
            .group_by(FailedDelivery.error_category)
            .all()
        )
        by_error_code = dict(
            db.query(FailedDelivery.error_code, func.count(FailedDelivery.id))
            .group_by(FailedDelivery.error_code)
            .all()
        )
        return {
            "total": total,
            "pending": total - resolved,
            "resolved": resolved,
            "by_category": by_category,
            "by_error_code": by_error_code,
        }

    # ---- resolution ----

    def mark_resolved(
        self, db: Session, record_id: int, reason: str = RECOVERED, now: Optional[datetime] = None
    ) -> bool:
        """Resolve a record once; later calls change nothing and return False."""
        now = now or datetime.utcnow()
        updated = (
            db.query(FailedDelivery)
            .filter(FailedDelivery.id == record_id, FailedDelivery.resolved_at.is_(None))
            .update(
                {
                    FailedDelivery.resolved_at: now,
                    FailedDelivery.resolution_reason: reason,
                    FailedDelivery.will_retry: False,
                    FailedDelivery.next_retry_at: None,
                },
                synchronize_session="fetch",
            )
        )
        db.commit()
        return bool(updated)

    def mark_permanently_failed(self, db: Session, record_id: int, now: Optional[datetime] = None) -> bool:
        resolved = self.mark_resolved(db, record_id, MAX_ATTEMPTS_REACHED, now=now)
        if resolved:
            logger.warning(f"Dead-letter record {record_id} permanently failed")
        return resolved

    def cleanup(self, db: Session, days_to_keep: int = 30, now: Optional[datetime] = None) -> int:
        now = now or datetime.utcnow()
        threshold = now - timedelta(days=days_to_keep)
        deleted = (
            db.query(FailedDelivery)
            .filter(FailedDelivery.resolved_at.is_not(None), FailedDelivery.resolved_at < threshold)
            .delete(synchronize_session="fetch")
        )
        db.commit()
        if deleted:
            logger.info(f"Purged {deleted} resolved dead-letter records older than {days_to_keep} days")
        return deleted

    # ---- recovery ----

    def record_retry_failure(
        self,
        db: Session,
        record: FailedDelivery,
        error: Union[BaseException, str, None],
        error_code: Optional[ErrorCode] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Count one more failed attempt. Returns True while the record stays pending."""
        now = now or datetime.utcnow()
        code = error_code or _classify(error)
        record.attempt = (record.attempt or 0) + 1
        will_retry = record.attempt < (record.max_attempts or 1) and is_retryable(code)

        record.error_code = code.value
        record.error_category = categorize_error(code)
        record.error_message = str(error) if error is not None else None
        record.last_attempt_at = now
        record.will_retry = will_retry
        record.next_retry_at = (
            now + timedelta(milliseconds=backoff_ms(record.attempt, config_for_error(code, self.retry_config)))
            if will_retry
            else None
        )
        db.commit()

        if not will_retry:
            self.mark_permanently_failed(db, record.id, now=now)
        return will_retry

    async def _retry_one(
        self, db: Session, dispatcher: "DeliveryDispatcher", record: FailedDelivery, now: datetime
    ) -> str:
        delivery = deliveries.get_delivery(db, record.delivery_id)
        subscription_id = record.subscription_id or (delivery.subscription_id if delivery else None)
        sub = subscriptions.get_subscription(db, subscription_id) if subscription_id is not None else None

        if delivery is None or sub is None:
            missing = "delivery" if delivery is None else "subscription"
            logger.info(f"Dead-letter record {record.id}: {missing} no longer exists, resolving")
            self.mark_resolved(db, record.id, RECOVERED, now=now)
            return "recovered"

        if not deliveries.acquire_lease(db, delivery.id, self.worker_id, self.lease_seconds, now=now):
            return "pending"

        try:
            payload = delivery.payload or {"title": delivery.title or "", "body": delivery.body}
            result = await dispatcher.send(db, sub.id, payload, allow_failed=True)
            if result.success:
                deliveries.mark_recovered(db, delivery.id)
                self.mark_resolved(db, record.id, RECOVERED)
                logger.info(
                    f"Recovered delivery {delivery.id} on attempt {record.attempt + 1}",
                    extra={"delivery_id": delivery.id, "subscription_id": sub.id},
                )
                return "recovered"

            error = result.exception or result.error
            if self.record_retry_failure(db, record, error, result.error_code):
                return "pending"
            return "failed"
        finally:
            deliveries.release_lease(db, delivery.id, self.worker_id)

    async def process_retry_queue(
        self,
        db: Session,
        dispatcher: "DeliveryDispatcher",
        limit: int = 100,
        now: Optional[datetime] = None,
    ) -> RecoveryResult:
        now = now or datetime.utcnow()
        result = RecoveryResult()

        for record in self.get_retryable_deliveries(db, limit=limit, now=now):
            try:
                outcome = await self._retry_one(db, dispatcher, record, now)
            except Exception as exc:
                logger.error(f"Recovery of dead-letter record {record.id} raised: {exc}", exc_info=True)
                db.rollback()
                outcome = "pending" if self.record_retry_failure(db, record, exc) else "failed"

            if outcome == "recovered":
                result.recovered += 1
            elif outcome == "failed":
                result.permanently_failed += 1
            else:
                result.still_pending += 1

        if result.recovered or result.permanently_failed:
            logger.info(
                f"Recovery run: {result.recovered} recovered, "
                f"{result.permanently_failed} permanently failed, {result.still_pending} pending"
            )
        return result


async def recovery_loop(
    store: DeadLetterStore,
    dispatcher: "DeliveryDispatcher",
    settings: "Settings",
) -> None:
    """
    Background loop that retries due dead-letter records and purges old
    resolved ones once a day.
    """
    last_cleanup: Optional[datetime] = None

    while True:
        db = SessionLocal()
        try:
            await store.process_retry_queue(db, dispatcher, limit=settings.dead_letter_batch_size)

            now = datetime.utcnow()
            if last_cleanup is None or now - last_cleanup >= timedelta(days=1):
                store.cleanup(db, days_to_keep=settings.dead_letter_retention_days)
                last_cleanup = now
        except Exception as exc:
            logger.error(f"Dead-letter recovery run failed: {exc}", exc_info=True)
        finally:
            db.close()

        await asyncio.sleep(settings.dead_letter_poll_interval_sec)
