"""
Tests for campaign sending end to end.
"""
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from pushrelay.core.campaigns import (
    CampaignNotFoundError,
    CampaignStateError,
    build_campaign_payload,
    device_matches_segment,
)
from pushrelay.core.transport import PushTransportError
from pushrelay.models import Campaign, CampaignDelivery, DeliveryEvent, FailedDelivery, Subscription


@pytest.fixture
def orchestrator(services):
    return services.campaigns


def _campaign(db, orchestrator, **fields):
    defaults = {"name": "Summer sale", "title_template": "Sale!", "body_template": "50% off today"}
    defaults.update(fields)
    return orchestrator.create_campaign(db, **defaults)


class TestSendCampaign:
    @pytest.mark.asyncio
    async def test_hundred_recipients_with_opt_outs_and_caps(self, db, orchestrator, transport, make_subscription):
        """100 recipients, 10 opted out, 5 at their hourly cap: 85 sent, 15 skipped."""
        now = datetime.utcnow()
        for _ in range(10):
            make_subscription(preference={"opt_in_status": False})
        for _ in range(5):
            sub = make_subscription(preference={"max_per_hour": 3})
            for minutes in (5, 15, 25):
                db.add(CampaignDelivery(subscription_id=sub.id, status="sent", sent_at=now - timedelta(minutes=minutes)))
            db.commit()
        for _ in range(85):
            make_subscription()

        campaign = _campaign(db, orchestrator)
        summary = await orchestrator.send_campaign(db, campaign.id)

        assert summary.to_dict() == {"sent": 85, "failed": 0, "skipped": 15}
        assert len(transport.sent) == 85

        db.expire_all()
        assert db.query(Campaign).filter(Campaign.id == campaign.id).one().status == "completed"
        stats = orchestrator.get_campaign_stats(db, campaign.id)
        assert stats["sent"] == 85
        assert stats["total"] == 85
        assert db.query(DeliveryEvent).filter(DeliveryEvent.event_type == "sent").count() == 85

    @pytest.mark.asyncio
    async def test_failures_are_counted_and_dead_lettered(self, db, orchestrator, transport, make_subscription):
        ok = make_subscription()
        gone = make_subscription()
        flaky = make_subscription()
        transport.errors[gone.endpoint] = PushTransportError("gone", 410)
        transport.errors[flaky.endpoint] = PushTransportError("unavailable", 503)

        campaign = _campaign(db, orchestrator)
        summary = await orchestrator.send_campaign(db, campaign.id)

        assert (summary.sent, summary.failed, summary.skipped) == (1, 2, 0)

        db.expire_all()
        by_sub = {d.subscription_id: d for d in db.query(CampaignDelivery).all()}
        assert by_sub[ok.id].status == "sent"
        assert by_sub[gone.id].status == "failed"
        assert by_sub[gone.id].error_code == "EXPIRED"
        assert by_sub[flaky.id].error_code == "SERVICE_UNAVAILABLE"
        assert all(d.locked_by is None for d in by_sub.values())

        records = {r.subscription_id: r for r in db.query(FailedDelivery).all()}
        assert records[gone.id].will_retry is False
        assert records[flaky.id].will_retry is True
        assert records[flaky.id].campaign_id == campaign.id

        statuses = {s.id: s.status for s in db.query(Subscription).all()}
        assert statuses == {ok.id: "active", gone.id: "inactive", flaky.id: "failed"}

    @pytest.mark.asyncio
    async def test_one_crashing_recipient_does_not_abort_batch(self, db, orchestrator, make_subscription):
        subs = [make_subscription() for _ in range(3)]
        real_send_one = orchestrator._send_one

        async def crashing(db_, campaign, sub, payload):
            if sub.id == subs[1].id:
                raise RuntimeError("boom")
            return await real_send_one(db_, campaign, sub, payload)

        with patch.object(orchestrator, "_send_one", side_effect=crashing):
            summary = await orchestrator.send_campaign(db, _campaign(db, orchestrator).id)

        assert (summary.sent, summary.failed, summary.skipped) == (2, 1, 0)

    @pytest.mark.asyncio
    async def test_send_that_raises_leaves_no_pending_rows(self, db, orchestrator, transport, make_subscription):
        subs = [make_subscription() for _ in range(2)]
        # An action without a title cannot be built into a payload
        campaign = _campaign(db, orchestrator, actions=[{"action": "open"}])

        summary = await orchestrator.send_campaign(db, campaign.id)

        assert (summary.sent, summary.failed, summary.skipped) == (0, 2, 0)
        assert transport.sent == []
        rows = db.query(CampaignDelivery).filter(CampaignDelivery.campaign_id == campaign.id).all()
        assert sorted(r.subscription_id for r in rows) == [s.id for s in subs]
        assert {r.status for r in rows} == {"failed"}
        assert {r.error_code for r in rows} == {"UNKNOWN"}
        assert all(r.failed_at is not None and r.locked_by is None for r in rows)
        dead = db.query(FailedDelivery).all()
        assert sorted(d.delivery_id for d in dead) == sorted(r.id for r in rows)
        assert {d.campaign_id for d in dead} == {campaign.id}

    @pytest.mark.asyncio
    async def test_only_active_subscriptions_are_targeted(self, db, orchestrator, transport, make_subscription):
        active = make_subscription()
        make_subscription(status="failed")
        make_subscription(status="inactive")

        summary = await orchestrator.send_campaign(db, _campaign(db, orchestrator).id)

        assert summary.sent == 1
        assert [s["endpoint"] for s in transport.sent] == [active.endpoint]

    @pytest.mark.asyncio
    async def test_segment_targeting(self, db, orchestrator, transport, make_subscription):
        ios = make_subscription(device={"platform": "ios", "browser_name": "Mobile Safari"})
        make_subscription(device={"platform": "android", "browser_name": "Chrome Mobile"})
        make_subscription()

        campaign = _campaign(db, orchestrator, target_segment={"platforms": ["iOS"]})
        summary = await orchestrator.send_campaign(db, campaign.id)

        assert summary.sent == 1
        assert transport.sent[0]["endpoint"] == ios.endpoint

    @pytest.mark.asyncio
    async def test_cannot_resend_completed_campaign(self, db, orchestrator, make_subscription):
        make_subscription()
        campaign = _campaign(db, orchestrator)
        await orchestrator.send_campaign(db, campaign.id)

        with pytest.raises(CampaignStateError):
            await orchestrator.send_campaign(db, campaign.id)

    @pytest.mark.asyncio
    async def test_missing_or_deleted_campaign(self, db, orchestrator):
        with pytest.raises(CampaignNotFoundError):
            await orchestrator.send_campaign(db, 999)

        campaign = _campaign(db, orchestrator)
        campaign.deleted_at = datetime.utcnow()
        db.commit()
        with pytest.raises(CampaignNotFoundError):
            await orchestrator.send_campaign(db, campaign.id)

    @pytest.mark.asyncio
    async def test_scheduled_campaign_can_be_sent(self, db, orchestrator, make_subscription):
        make_subscription()
        campaign = _campaign(db, orchestrator)
        campaign.status = "scheduled"
        db.commit()

        summary = await orchestrator.send_campaign(db, campaign.id)
        assert summary.sent == 1


class TestHelpers:
    def test_create_rejects_unknown_fields(self, db, orchestrator):
        with pytest.raises(ValueError):
            orchestrator.create_campaign(db, name="x", title_template="t", colour="red")

    def test_payload_from_campaign(self, db, orchestrator):
        campaign = _campaign(
            db,
            orchestrator,
            click_url="https://shop.example.com",
            require_interaction=True,
            ttl_seconds=600,
            priority="high",
        )
        payload = build_campaign_payload(campaign)

        assert payload["title"] == "Sale!"
        assert payload["requireInteraction"] is True
        assert payload["ttl"] == 600
        assert payload["data"] == {"campaign_id": campaign.id, "priority": "high", "url": "https://shop.example.com"}
        assert "image" not in payload

    def test_segment_matching(self):
        class D:
            platform = "android"
            browser_name = "Chrome Mobile"

        assert device_matches_segment(None, None) is True
        assert device_matches_segment(None, {"platforms": ["ios"]}) is False
        assert device_matches_segment(D(), {"platforms": ["android"], "browsers": ["chrome mobile"]}) is True
        assert device_matches_segment(D(), {"browsers": ["safari"]}) is False
