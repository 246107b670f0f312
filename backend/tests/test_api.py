"""
Tests for the HTTP surface.
"""
from datetime import datetime, timedelta

from pushrelay.core import subscriptions
from pushrelay.core.transport import PushTransportError, VapidKeyring
from pushrelay.models import CampaignDelivery


class TestStatus:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_vapid_public_key(self, client):
        response = client.get("/push/vapid-public-key")
        assert response.status_code == 200
        assert response.json() == {"public_key": "test-public-key"}

    def test_vapid_public_key_unconfigured(self, client, services):
        services.keyring = VapidKeyring()
        response = client.get("/push/vapid-public-key")
        assert response.status_code == 503


class TestCampaigns:
    def test_create_send_and_stats(self, client, make_subscription, transport):
        make_subscription()
        make_subscription(preference={"opt_in_status": False})

        created = client.post("/campaigns", json={"name": "Launch", "title_template": "We are live"})
        assert created.status_code == 201
        campaign_id = created.json()["id"]
        assert created.json()["status"] == "draft"

        sent = client.post(f"/campaigns/{campaign_id}/send")
        assert sent.status_code == 200
        assert sent.json() == {"sent": 1, "failed": 0, "skipped": 1}

        again = client.post(f"/campaigns/{campaign_id}/send")
        assert again.status_code == 409

        stats = client.get(f"/campaigns/{campaign_id}/stats").json()
        assert stats["sent"] == 1
        assert stats["total"] == 1

        assert client.get(f"/campaigns/{campaign_id}").json()["status"] == "completed"

    def test_unknown_campaign(self, client):
        assert client.get("/campaigns/999").status_code == 404
        assert client.post("/campaigns/999/send").status_code == 404
        assert client.get("/campaigns/999/stats").status_code == 404

    def test_actions_are_validated(self, client):
        bad = client.post("/campaigns", json={"name": "x", "title_template": "t", "actions": [{"action": "open"}]})
        assert bad.status_code == 422

        good = client.post(
            "/campaigns",
            json={"name": "x", "title_template": "t", "actions": [{"action": "open", "title": "Open"}]},
        )
        assert good.status_code == 201
        assert good.json()["actions"] == [{"action": "open", "title": "Open", "icon": None, "placeholder": None}]

    def test_invalid_priority(self, client):
        response = client.post("/campaigns", json={"name": "x", "title_template": "t", "priority": "urgent"})
        assert response.status_code == 422


class TestDeliveryEvents:
    def test_engagement_moves_forward_only(self, client, db, make_subscription):
        sub = make_subscription()
        delivery = CampaignDelivery(subscription_id=sub.id, status="sent", sent_at=datetime.utcnow())
        db.add(delivery)
        db.commit()

        opened = client.post(f"/deliveries/{delivery.id}/events", json={"event": "opened"})
        assert opened.json() == {"delivery_id": delivery.id, "status": "opened", "updated": True}

        delivered = client.post(f"/deliveries/{delivery.id}/events", json={"event": "delivered"})
        assert delivered.json()["status"] == "opened"
        assert delivered.json()["updated"] is False

        clicked = client.post(f"/deliveries/{delivery.id}/events", json={"event": "clicked"})
        assert clicked.json()["status"] == "clicked"

    def test_pending_delivery_cannot_be_opened(self, client, db, make_subscription):
        sub = make_subscription()
        delivery = CampaignDelivery(subscription_id=sub.id, status="pending")
        db.add(delivery)
        db.commit()

        response = client.post(f"/deliveries/{delivery.id}/events", json={"event": "opened"})
        assert response.json()["updated"] is False
        assert response.json()["status"] == "pending"

    def test_bad_event_and_missing_delivery(self, client):
        assert client.post("/deliveries/1/events", json={"event": "exploded"}).status_code == 422
        assert client.post("/deliveries/999/events", json={"event": "opened"}).status_code == 404


class TestDeadLetters:
    def test_process_and_stats(self, client, db, services, transport, make_subscription):
        sub = make_subscription()
        delivery = CampaignDelivery(subscription_id=sub.id, status="failed", payload={"title": "Retry me"})
        db.add(delivery)
        db.commit()
        record = services.dead_letters.record_failure(db, delivery.id, PushTransportError("unavailable", 503))
        record.next_retry_at = datetime.utcnow() - timedelta(seconds=1)
        db.commit()

        listed = client.get("/dead-letters", params={"unresolved": True})
        assert [r["id"] for r in listed.json()] == [record.id]

        processed = client.post("/dead-letters/process")
        assert processed.json() == {"recovered": 1, "permanently_failed": 0, "still_pending": 0}

        stats = client.get("/dead-letters/stats").json()
        assert stats["resolved"] == 1
        assert stats["by_category"] == {"server_error": 1}

        assert client.get("/dead-letters", params={"category": "server_error"}).json()[0]["resolution_reason"] == "recovered"
        assert client.post("/dead-letters/cleanup").json() == {"deleted": 0}
        assert client.post("/dead-letters/cleanup", params={"days_to_keep": 0}).json() == {"deleted": 1}


class TestPreferences:
    def test_defaults_created_lazily(self, client, make_subscription):
        sub = make_subscription()
        body = client.get(f"/preferences/{sub.id}").json()
        assert body["opt_in_status"] is True
        assert (body["max_per_hour"], body["max_per_day"], body["max_per_week"]) == (3, 10, 50)

    def test_update_and_dnd(self, client, make_subscription):
        sub = make_subscription()
        patched = client.patch(
            f"/preferences/{sub.id}",
            json={"opt_in_status": False, "quiet_hours_enabled": True, "quiet_hours_start": "22:00:00", "quiet_hours_end": "08:00:00"},
        ).json()
        assert patched["opt_in_status"] is False
        assert patched["opt_in_changed_at"] is not None
        assert patched["quiet_hours_start"] == "22:00:00"

        until = (datetime.utcnow() + timedelta(hours=2)).replace(microsecond=0)
        dnd = client.post(f"/preferences/{sub.id}/dnd", json={"until": until.isoformat(), "reason": "vacation"}).json()
        assert dnd["dnd_reason"] == "vacation"

        cleared = client.post(f"/preferences/{sub.id}/dnd", json={}).json()
        assert cleared["dnd_until"] is None

    def test_negative_cap_rejected(self, client, make_subscription):
        sub = make_subscription()
        assert client.patch(f"/preferences/{sub.id}", json={"max_per_hour": -1}).status_code == 422

    def test_unknown_subscription(self, client):
        assert client.get("/preferences/999").status_code == 404


class TestSubscriptions:
    def test_register_and_reactivate(self, client, db, make_subscription):
        payload = {"endpoint": "https://push.example.com/new", "keys": {"p256dh": "k", "auth": "a"}}
        first = client.post("/subscriptions", json=payload)
        assert first.status_code == 201
        assert first.json()["status"] == "active"

        sub_id = first.json()["id"]
        subscriptions.demote(db, sub_id, "inactive")
        again = client.post("/subscriptions", json=payload).json()
        assert again["id"] == sub_id
        assert again["status"] == "active"

    def test_health_check_and_history(self, client, make_subscription, transport):
        healthy = make_subscription()
        gone = make_subscription()
        transport.errors[gone.endpoint] = PushTransportError("gone", 410)

        result = client.post("/subscriptions/health-check", json={}).json()
        assert result["healthy"] == [healthy.id]
        assert result["unhealthy"][0]["id"] == gone.id

        history = client.get(f"/subscriptions/{gone.id}/health").json()
        assert history["status"] == "inactive"
        assert history["history"][0]["status"] == "expired"

    def test_health_check_selected_ids(self, client, make_subscription, transport):
        a = make_subscription()
        make_subscription()
        result = client.post("/subscriptions/health-check", json={"subscription_ids": [a.id]}).json()
        assert result["healthy"] == [a.id]
        assert len(transport.sent) == 1

    def test_unknown_subscription_health(self, client):
        assert client.get("/subscriptions/999/health").status_code == 404
