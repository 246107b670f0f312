"""
Tests for the delivery dispatcher and the push transport boundary.
"""
import json
from unittest.mock import MagicMock, patch

import pytest
import requests
from pywebpush import WebPushException

from pushrelay.core.dispatcher import DeliveryDispatcher
from pushrelay.core.retry import ErrorCode
from pushrelay.core.transport import (
    PushTransportError,
    VapidCredentials,
    VapidKeyring,
    WebPushTransport,
)
from pushrelay.models import CampaignDelivery, FailedDelivery, Subscription


def _reload(db, sub):
    db.expire_all()
    return db.query(Subscription).filter(Subscription.id == sub.id).one()


class TestSend:
    @pytest.mark.asyncio
    async def test_successful_send(self, db, services, transport, make_subscription):
        sub = make_subscription()
        result = await services.dispatcher.send(db, sub.id, {"title": "Hello", "body": "World"})

        assert result.success is True
        assert result.attempts == 1
        assert len(transport.sent) == 1
        sent = transport.sent[0]
        assert json.loads(sent["data"])["title"] == "Hello"
        assert sent["ttl"] == 4 * 3600
        assert sent["urgency"] == "normal"
        assert _reload(db, sub).status == "active"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["inactive", "failed"])
    async def test_rejects_non_active_without_network(self, db, services, transport, make_subscription, status):
        sub = make_subscription(status=status)
        result = await services.dispatcher.send(db, sub.id, {"title": "Hello"})

        assert result.success is False
        assert result.error == f"Subscription is {status}"
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_missing_subscription(self, db, services, transport):
        result = await services.dispatcher.send(db, 12345, {"title": "Hello"})
        assert result.success is False
        assert result.error_code == ErrorCode.NOT_FOUND
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_recovers_from_transient_error(self, db, services, transport, make_subscription):
        sub = make_subscription()
        transport.errors[sub.endpoint] = [PushTransportError("unavailable", 503)]

        result = await services.dispatcher.send(db, sub.id, {"title": "Hello"})

        assert result.success is True
        assert result.attempts == 2
        assert _reload(db, sub).status == "active"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [404, 410, 403])
    async def test_permanent_errors_deactivate(self, db, services, transport, make_subscription, status_code):
        sub = make_subscription()
        transport.errors[sub.endpoint] = PushTransportError("push failed", status_code)

        result = await services.dispatcher.send(db, sub.id, {"title": "Hello"})

        assert result.success is False
        assert result.attempts == 1
        assert result.error == "push failed"
        assert _reload(db, sub).status == "inactive"

    @pytest.mark.asyncio
    async def test_transient_exhaustion_marks_failed(self, db, services, transport, make_subscription):
        sub = make_subscription()
        transport.errors[sub.endpoint] = PushTransportError("server error", 500)

        result = await services.dispatcher.send(db, sub.id, {"title": "Hello"})

        assert result.success is False
        assert result.error_code == ErrorCode.SERVER_ERROR
        assert result.attempts == 3
        assert len(transport.sent) == 3
        assert _reload(db, sub).status == "failed"

    @pytest.mark.asyncio
    async def test_timeout_with_digits_is_not_permanent(self, db, services, transport, make_subscription):
        sub = make_subscription()
        transport.errors[sub.endpoint] = PushTransportError("Push request timed out after 4100ms")

        result = await services.dispatcher.send(db, sub.id, {"title": "Hello"})

        assert result.error_code == ErrorCode.TIMEOUT
        assert result.attempts == 3
        assert _reload(db, sub).status == "failed"

    @pytest.mark.asyncio
    async def test_payload_adapted_to_device(self, db, services, transport, make_subscription):
        sub = make_subscription(device={"platform": "ios", "browser_name": "Mobile Safari", "browser_version": "17"})
        await services.dispatcher.send(db, sub.id, {"title": "x" * 60, "image": "https://cdn.example.com/i.png"})

        wire = json.loads(transport.sent[0]["data"])
        assert len(wire["title"]) == 30
        assert "image" not in wire


class TestSendTracked:
    @pytest.mark.asyncio
    async def test_failure_is_dead_lettered(self, db, services, transport, make_subscription):
        sub = make_subscription()
        delivery = CampaignDelivery(subscription_id=sub.id, status="pending")
        db.add(delivery)
        db.commit()
        transport.errors[sub.endpoint] = PushTransportError("timed out", 504)

        result = await services.dispatcher.send_tracked(db, delivery.id, sub.id, {"title": "Hi"}, campaign_id=None)

        assert result.success is False
        record = db.query(FailedDelivery).one()
        assert record.delivery_id == delivery.id
        assert record.subscription_id == sub.id
        assert record.error_code == "SERVICE_UNAVAILABLE"
        assert record.error_category == "server_error"
        assert record.attempt == 1
        assert record.will_retry is True

    @pytest.mark.asyncio
    async def test_success_writes_nothing(self, db, services, make_subscription):
        sub = make_subscription()
        result = await services.dispatcher.send_tracked(db, 1, sub.id, {"title": "Hi"})
        assert result.success is True
        assert db.query(FailedDelivery).count() == 0

    @pytest.mark.asyncio
    async def test_without_store(self, db, transport, make_subscription):
        dispatcher = DeliveryDispatcher(transport)
        sub = make_subscription(status="inactive")
        result = await dispatcher.send_tracked(db, 1, sub.id, {"title": "Hi"})
        assert result.success is False
        assert result.error_code == ErrorCode.EXPIRED


class TestWebPushTransport:
    def _transport(self):
        keyring = VapidKeyring(VapidCredentials("pub", "priv", "mailto:ops@example.com"))
        return WebPushTransport(keyring, timeout=5)

    @pytest.mark.asyncio
    async def test_passes_credentials_and_headers(self):
        transport = self._transport()
        info = {"endpoint": "https://push.example.com/1", "keys": {"p256dh": "k", "auth": "a"}}

        with patch("pushrelay.core.transport.webpush") as webpush:
            await transport.send_notification(info, '{"title":"x"}', 60, "high", "promo")

        kwargs = webpush.call_args.kwargs
        assert kwargs["subscription_info"] == info
        assert kwargs["vapid_private_key"] == "priv"
        assert kwargs["vapid_claims"] == {"sub": "mailto:ops@example.com"}
        assert kwargs["ttl"] == 60
        assert kwargs["headers"] == {"Urgency": "high", "Topic": "promo"}
        assert kwargs["timeout"] == 5

    @pytest.mark.asyncio
    async def test_webpush_exception_carries_status(self):
        transport = self._transport()
        response = MagicMock(status_code=410)
        error = WebPushException("Push failed: 410 Gone", response=response)

        with patch("pushrelay.core.transport.webpush", side_effect=error):
            with pytest.raises(PushTransportError) as exc_info:
                await transport.send_notification({"endpoint": "e", "keys": {}}, "{}", 60)

        assert exc_info.value.status_code == 410

    @pytest.mark.asyncio
    async def test_timeout_is_classified(self):
        transport = self._transport()
        with patch("pushrelay.core.transport.webpush", side_effect=requests.exceptions.ReadTimeout("slow")):
            with pytest.raises(PushTransportError) as exc_info:
                await transport.send_notification({"endpoint": "e", "keys": {}}, "{}", 60)

        assert exc_info.value.status_code is None
        assert "timed out" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_missing_credentials(self):
        transport = WebPushTransport(VapidKeyring())
        with patch("pushrelay.core.transport.webpush") as webpush:
            with pytest.raises(PushTransportError):
                await transport.send_notification({"endpoint": "e", "keys": {}}, "{}", 60)
        webpush.assert_not_called()


class TestVapidKeyring:
    def test_rotate_swaps_credentials(self):
        first = VapidCredentials("pub1", "priv1", "mailto:a@example.com")
        second = VapidCredentials("pub2", "priv2", "mailto:a@example.com")
        keyring = VapidKeyring(first)

        assert keyring.rotate(second) == first
        assert keyring.current() == second
        assert keyring.configured is True
