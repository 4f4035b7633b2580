from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from dripflow.core.config import settings
from dripflow.core.errors import ConflictError, GuardViolation, ValidationError
from dripflow.models.campaign import CampaignSend
from dripflow.services import audience_service, campaign_service, enrollment_service, segment_service


def _segment(db, name, predicates):
    segment = segment_service.create_segment(db, name=name, description=None, predicates=predicates)
    segment_service.recalculate_segment(db, segment.id)
    return segment


def _ready_campaign(db, *, name="Spring promo"):
    campaign = campaign_service.create_campaign(db, name=name, campaign_type="event_promo", goal="engagement")
    campaign_service.add_step(db, campaign, channel="email")
    segment = _segment(db, f"{name} buyers", [{"field": "has_purchased", "operator": "equals", "value": True}])
    audience_service.attach_segment(db, campaign=campaign, segment_id=segment.id)
    db.commit()
    return campaign


def test_activation_requires_steps_and_audience(seeded):
    _, session_local = seeded
    with session_local() as db:
        campaign = campaign_service.create_campaign(db, name="Empty")
        with pytest.raises(GuardViolation) as exc:
            campaign_service.activate_campaign(db, campaign)
        assert exc.value.reasons == ["no_steps", "no_audience"]
        assert campaign.status == "draft"

        campaign_service.add_step(db, campaign, channel="sms")
        with pytest.raises(GuardViolation) as exc:
            campaign_service.activate_campaign(db, campaign)
        assert exc.value.reasons == ["no_audience"]

        segment = _segment(db, "Everyone who bought", [{"field": "has_purchased", "operator": "equals", "value": True}])
        audience_service.attach_segment(db, campaign=campaign, segment_id=segment.id)
        campaign_service.activate_campaign(db, campaign)
        db.commit()
        assert campaign.status == "active"
        assert campaign.activated_at is not None


def test_audience_without_steps_still_blocks_activation(seeded):
    _, session_local = seeded
    with session_local() as db:
        campaign = campaign_service.create_campaign(db, name="Audience only")
        segment = _segment(db, "Audience only buyers", [{"field": "has_purchased", "operator": "equals", "value": True}])
        audience_service.attach_segment(db, campaign=campaign, segment_id=segment.id)

        with pytest.raises(GuardViolation) as exc:
            campaign_service.activate_campaign(db, campaign)
        assert exc.value.reasons == ["no_steps"]
        assert campaign.status == "draft"


def test_resuming_a_paused_campaign_has_no_data_guard(seeded):
    _, session_local = seeded
    with session_local() as db:
        campaign = _ready_campaign(db)
        campaign_service.activate_campaign(db, campaign)
        campaign_service.transition_campaign(db, campaign, "paused")

        only_step = campaign_service.list_steps(db, campaign.id)[0]
        assert campaign_service.delete_step(db, campaign, only_step.id) == []
        audience = audience_service.list_audiences(db, campaign.id)[0]
        audience_service.detach_audience(db, campaign=campaign, audience_id=audience.id)

        campaign_service.transition_campaign(db, campaign, "active")
        db.commit()
        assert campaign.status == "active"


@pytest.mark.parametrize(
    "path, target",
    [
        (["archived"], "active"),
        ([], "paused"),
        ([], "completed"),
        (["active", "completed"], "active"),
        (["active", "completed"], "paused"),
    ],
)
def test_illegal_transitions_are_rejected(seeded, path, target):
    _, session_local = seeded
    with session_local() as db:
        campaign = _ready_campaign(db)
        for status in path:
            campaign_service.transition_campaign(db, campaign, status)
        with pytest.raises(GuardViolation) as exc:
            campaign_service.transition_campaign(db, campaign, target)
        assert exc.value.reasons == ["invalid_transition"]


def test_full_lifecycle_and_pause_resume(seeded):
    _, session_local = seeded
    with session_local() as db:
        campaign = _ready_campaign(db)
        for status in ("active", "paused", "active", "completed", "archived"):
            campaign_service.transition_campaign(db, campaign, status)
        db.commit()
        assert campaign.status == "archived"
        assert campaign_service.status_counts(db)["archived"] == 1


def test_locked_campaigns_reject_edits(seeded):
    _, session_local = seeded
    with session_local() as db:
        campaign = _ready_campaign(db)
        campaign_service.transition_campaign(db, campaign, "active")
        campaign_service.transition_campaign(db, campaign, "completed")
        with pytest.raises(GuardViolation):
            campaign_service.add_step(db, campaign, channel="email")
        with pytest.raises(GuardViolation):
            campaign_service.update_campaign(db, campaign, changes={"name": "Renamed"})


def test_steps_stay_contiguous_after_delete(seeded):
    _, session_local = seeded
    with session_local() as db:
        campaign = campaign_service.create_campaign(db, name="Drip")
        for channel in ("email", "sms", "whatsapp", "email"):
            steps = campaign_service.add_step(db, campaign, channel=channel)
        db.commit()
        assert [step.step_number for step in steps] == [1, 2, 3, 4]
        assert [step.name for step in steps] == ["Step 1", "Step 2", "Step 3", "Step 4"]
        original = [step.id for step in steps]

        remaining = campaign_service.delete_step(db, campaign, original[1])
        db.commit()
        assert [step.step_number for step in remaining] == [1, 2, 3]
        assert [step.id for step in remaining] == [original[0], original[2], original[3]]


def test_step_number_is_not_editable_and_subject_is_email_only(seeded):
    _, session_local = seeded
    with session_local() as db:
        campaign = campaign_service.create_campaign(db, name="Content")
        steps = campaign_service.add_step(db, campaign, channel="sms")
        step_id = steps[0].id

        with pytest.raises(ValidationError):
            campaign_service.update_step(db, campaign, step_id, changes={"step_number": 5})
        with pytest.raises(ValidationError):
            campaign_service.update_step(db, campaign, step_id, changes={"subject_line": "Hi"})
        with pytest.raises(ValidationError) as exc:
            campaign_service.update_step(db, campaign, step_id, changes={"content": None, "delay_hours": None})
        assert "content, delay_hours" in exc.value.message

        updated = campaign_service.update_step(
            db,
            campaign,
            step_id,
            changes={"delay_days": 2, "content": "See you there", "cta_url": "https://example.com"},
        )
        assert updated[0].delay_days == 2
        assert updated[0].content == "See you there"


def test_audience_size_sums_snapshots_and_rejects_duplicates(seeded):
    _, session_local = seeded
    with session_local() as db:
        first = segment_service.create_segment(
            db,
            name="Snapshot 120",
            description=None,
            predicates=[{"field": "has_purchased", "operator": "equals", "value": True}],
        )
        second = segment_service.create_segment(
            db,
            name="Snapshot 80",
            description=None,
            predicates=[{"field": "has_purchased", "operator": "equals", "value": False}],
        )
        first.estimated_size = 120
        second.estimated_size = 80
        campaign = campaign_service.create_campaign(db, name="Rollup")
        db.flush()

        audience_service.attach_segment(db, campaign=campaign, segment_id=first.id)
        second_audience = audience_service.attach_segment(db, campaign=campaign, segment_id=second.id)
        assert campaign.actual_audience_size == 200

        with pytest.raises(ConflictError):
            audience_service.attach_segment(db, campaign=campaign, segment_id=first.id)

        first_audience = next(
            row for row in audience_service.list_audiences(db, campaign.id) if row.segment_id == first.id
        )
        assert audience_service.detach_audience(db, campaign=campaign, audience_id=first_audience.id) == 80
        assert campaign.actual_audience_size == 80
        assert second_audience.estimated_size_snapshot == 80


def test_union_mode_counts_distinct_recipients(seeded):
    _, session_local = seeded
    settings.audience_size_mode = "union"
    with session_local() as db:
        buyers = _segment(db, "Buyers", [{"field": "has_purchased", "operator": "equals", "value": True}])
        actives = _segment(db, "Actives", [{"field": "engagement_level", "operator": "equals", "value": "active"}])
        campaign = campaign_service.create_campaign(db, name="Overlap")
        audience_service.attach_segment(db, campaign=campaign, segment_id=buyers.id)
        audience_service.attach_segment(db, campaign=campaign, segment_id=actives.id)
        # r1 and r5 are in both segments
        assert campaign.actual_audience_size == 4
        assert audience_service.refresh_audience_size(db, campaign, mode="sum") == 6


def test_enrollment_schedules_each_step_from_enrollment_time(seeded):
    _, session_local = seeded
    with session_local() as db:
        campaign = _ready_campaign(db)
        steps = campaign_service.add_step(db, campaign, channel="sms")
        campaign_service.update_step(db, campaign, steps[0].id, changes={"delay_days": 1})
        campaign_service.update_step(db, campaign, steps[1].id, changes={"delay_days": 2})

        with pytest.raises(GuardViolation):
            enrollment_service.enroll_recipients(db, campaign)

        campaign_service.activate_campaign(db, campaign)
        enrolled_at = datetime(2025, 1, 1, tzinfo=timezone.utc)
        summary = enrollment_service.enroll_recipients(db, campaign, enrollment_time=enrolled_at)
        db.commit()
        assert summary == {"total_recipients": 4, "total_steps": 2, "total_scheduled": 8, "skipped_existing": 0}

        sends = db.execute(
            select(CampaignSend).where(CampaignSend.recipient_id == "r1").order_by(CampaignSend.scheduled_send_time)
        ).scalars().all()
        fire_times = [send.scheduled_send_time.replace(tzinfo=timezone.utc) for send in sends]
        assert fire_times == [enrolled_at + timedelta(days=1), enrolled_at + timedelta(days=2)]

        again = enrollment_service.enroll_recipients(db, campaign, enrollment_time=enrolled_at)
        assert again["total_scheduled"] == 0
        assert again["skipped_existing"] == 8


def test_test_mode_enrollment_is_capped_and_allowed_on_drafts(seeded):
    _, session_local = seeded
    with session_local() as db:
        campaign = campaign_service.create_campaign(db, name="Preview")
        campaign_service.add_step(db, campaign, channel="email")
        everyone = _segment(db, "Everyone", [{"field": "has_purchased", "operator": "equals", "value": False}])
        buyers = _segment(db, "Buyers too", [{"field": "has_purchased", "operator": "equals", "value": True}])
        audience_service.attach_segment(db, campaign=campaign, segment_id=everyone.id)
        audience_service.attach_segment(db, campaign=campaign, segment_id=buyers.id)

        summary = enrollment_service.enroll_recipients(db, campaign, test_mode=True)
        assert summary["total_recipients"] == settings.enrollment_test_mode_limit == 5


def test_due_sends_and_cancellation_on_complete(seeded):
    _, session_local = seeded
    with session_local() as db:
        campaign = _ready_campaign(db)
        campaign_service.activate_campaign(db, campaign)
        past = datetime.now(timezone.utc) - timedelta(days=3)
        enrollment_service.enroll_recipients(db, campaign, enrollment_time=past)
        db.commit()

        due = enrollment_service.due_sends(db)
        assert len(due) == 4
        assert all(send.status == "pending" for send in due)

        campaign_service.transition_campaign(db, campaign, "completed")
        db.commit()
        rows, total = enrollment_service.list_sends(db, campaign.id, status="cancelled")
        assert total == 4
        assert enrollment_service.due_sends(db) == []


def test_delete_campaign_removes_children(seeded):
    _, session_local = seeded
    with session_local() as db:
        campaign = _ready_campaign(db)
        campaign_service.activate_campaign(db, campaign)
        enrollment_service.enroll_recipients(db, campaign)
        campaign_id = campaign.id
        campaign_service.delete_campaign(db, campaign)
        db.commit()

        assert db.execute(select(CampaignSend).where(CampaignSend.campaign_id == campaign_id)).first() is None
        assert audience_service.list_audiences(db, campaign_id) == []
        assert campaign_service.list_steps(db, campaign_id) == []


def test_send_metrics_group_by_status_and_channel(seeded):
    _, session_local = seeded
    with session_local() as db:
        email_campaign = _ready_campaign(db, name="Email drip")
        campaign_service.activate_campaign(db, email_campaign)
        enrollment_service.enroll_recipients(db, email_campaign)

        sms_campaign = campaign_service.create_campaign(db, name="Sms drip")
        campaign_service.add_step(db, sms_campaign, channel="sms")
        segment = _segment(db, "Sms drip attendees", [{"field": "total_events_attended", "operator": "greater_than", "value": 0}])
        audience_service.attach_segment(db, campaign=sms_campaign, segment_id=segment.id)
        campaign_service.activate_campaign(db, sms_campaign)
        enrollment_service.enroll_recipients(db, sms_campaign)
        db.commit()

        rows, _ = enrollment_service.list_sends(db, email_campaign.id, status="pending")
        rows[0].status = "sent"
        rows[1].status = "sent"
        rows[2].status = "sent"
        rows[3].status = "failed"
        db.commit()

        metrics = enrollment_service.send_metrics(db, email_campaign.id)
        assert metrics["total_sends"] == 4
        assert metrics["by_status"] == {"pending": 0, "sent": 3, "failed": 1, "cancelled": 0}
        assert metrics["by_channel"] == {"email": 4, "sms": 0, "whatsapp": 0}
        assert metrics["delivery_rate"] == 75.0
        assert metrics["failure_rate"] == 25.0

        overall = enrollment_service.send_metrics(db)
        assert overall["campaign_id"] is None
        assert overall["total_sends"] == 6
        assert overall["by_channel"] == {"email": 4, "sms": 2, "whatsapp": 0}
        assert overall["by_status"]["pending"] == 2

        empty = campaign_service.create_campaign(db, name="Nothing sent")
        assert enrollment_service.send_metrics(db, empty.id)["delivery_rate"] == 0.0
