from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from sqlalchemy.orm import Session

from . import subscriptions
from .payload_builder import PayloadInput, build_for_subscription
from .retry import DEFAULT_RETRY_CONFIG, ErrorCode, RetryConfig, RetryManager, classify
from .transport import PushTransport

if TYPE_CHECKING:
    from .dead_letter import DeadLetterStore

logger = logging.getLogger(__name__)

# The endpoint is gone for good; nothing at the recipient level will fix it
_PERMANENT_ENDPOINT_ERRORS = {
    ErrorCode.EXPIRED,
    ErrorCode.PERMISSION_DENIED,
    ErrorCode.NOT_FOUND,
}


@dataclass
class DispatchResult:
    success: bool
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    attempts: int = 0
    exception: Optional[BaseException] = None


class DeliveryDispatcher:
    """Sends one payload to one subscription through the retry engine."""

    def __init__(
        self,
        transport: PushTransport,
        retry_manager: Optional[RetryManager] = None,
        dead_letters: Optional["DeadLetterStore"] = None,
        retry_config: RetryConfig = DEFAULT_RETRY_CONFIG,
    ):
        self.transport = transport
        self.retry_manager = retry_manager or RetryManager(retry_config)
        self.retry_config = retry_config
        self.dead_letters = dead_letters

    async def send(
        self,
        db: Session,
        subscription_id: int,
        payload: PayloadInput,
        allow_failed: bool = False,
    ) -> DispatchResult:
        """
        Send ``payload`` to a subscription.

        Only ``active`` subscriptions are sent to; the recovery loop passes
        ``allow_failed`` to also reach subscriptions demoted by a transient
        error. On failure the subscription is demoted according to the error
        class.
        """
        sub = subscriptions.get_subscription(db, subscription_id)
        if sub is None:
            return DispatchResult(success=False, error="Subscription not found", error_code=ErrorCode.NOT_FOUND)

        allowed = {subscriptions.ACTIVE, subscriptions.FAILED} if allow_failed else {subscriptions.ACTIVE}
        if sub.status not in allowed:
            # Only permanent endpoint errors lead to inactive
            code = ErrorCode.EXPIRED if sub.status == subscriptions.INACTIVE else ErrorCode.UNKNOWN
            return DispatchResult(success=False, error=f"Subscription is {sub.status}", error_code=code)

        built = build_for_subscription(db, subscription_id, payload)
        if built.issues:
            logger.info(f"Sending to subscription {subscription_id} with payload issues: {built.issues}")

        subscription_info = sub.to_webpush_dict()
        data = built.payload.serialize()
        ttl = int(built.headers["TTL"])
        urgency = built.headers.get("Urgency")
        topic = built.headers.get("Topic")

        async def _send():
            return await self.transport.send_notification(subscription_info, data, ttl, urgency, topic)

        result = await self.retry_manager.with_retry(_send, self.retry_config)
        if result.success:
            return DispatchResult(success=True, attempts=result.attempts)

        code = classify(result.error)
        target = subscriptions.INACTIVE if code in _PERMANENT_ENDPOINT_ERRORS else subscriptions.FAILED
        subscriptions.demote(db, subscription_id, target)

        logger.warning(
            f"Push to subscription {subscription_id} failed after {result.attempts} attempt(s): "
            f"{code.value} {result.error}",
            extra={"subscription_id": subscription_id, "error_code": code.value, "attempt": result.attempts},
        )
        return DispatchResult(
            success=False,
            error=str(result.error),
            error_code=code,
            attempts=result.attempts,
            exception=result.error,
        )

    async def send_tracked(
        self,
        db: Session,
        delivery_id: int,
        subscription_id: int,
        payload: PayloadInput,
        campaign_id: Optional[int] = None,
    ) -> DispatchResult:
        """``send`` plus a dead-letter record for the delivery on failure."""
        result = await self.send(db, subscription_id, payload)
        if not result.success and self.dead_letters is not None:
            self.dead_letters.record_failure(
                db,
                delivery_id=delivery_id,
                error=result.exception or result.error,
                attempt=1,
                error_code=result.error_code,
                campaign_id=campaign_id,
                subscription_id=subscription_id,
            )
        return result
