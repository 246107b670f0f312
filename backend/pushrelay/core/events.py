from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy.orm import Session

from ..models import DeliveryEvent

logger = logging.getLogger(__name__)

Event = Dict[str, Any]
EventHandler = Callable[[Event], Awaitable[None]]

_handler: Optional[EventHandler] = None


def register_event_handler(handler: Optional[EventHandler]) -> None:
    """
    Register an async handler to receive delivery-tracking events.
    Delivery keeps working if no handler is registered.
    """
    global _handler
    _handler = handler


async def track_event(
    db: Session,
    event_type: str,
    *,
    campaign_id: Optional[int] = None,
    subscription_id: Optional[int] = None,
    delivery_id: Optional[int] = None,
    title: Optional[str] = None,
    payload: Optional[dict] = None,
) -> DeliveryEvent:
    """
    Persist a delivery-tracking event and pass it to the registered handler.
    """
    evt = DeliveryEvent(
        event_type=event_type,
        campaign_id=campaign_id,
        subscription_id=subscription_id,
        delivery_id=delivery_id,
        title=title,
        payload_json=payload,
    )
    db.add(evt)
    db.commit()

    handler = _handler
    if handler:
        try:
            await handler(
                {
                    "event_type": event_type,
                    "campaign_id": campaign_id,
                    "subscription_id": subscription_id,
                    "delivery_id": delivery_id,
                    "title": title,
                }
            )
        except Exception as exc:
            logger.warning(f"Delivery event handler error: {exc}")

    return evt
