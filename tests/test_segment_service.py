from datetime import timedelta

import pytest
from sqlalchemy import select

from dripflow.core.errors import ConflictError, SourceUnavailable, ValidationError
from dripflow.core.timeutils import utcnow
from dripflow.models.audit_log import AuditLog
from dripflow.models.campaign import CampaignAudience
from dripflow.models.segment import AudienceSegment
from dripflow.services import audience_service, campaign_service, segment_service
from dripflow.services.source_resolvers import build_sql_registry


def _create(db, name, predicates, **kwargs):
    segment = segment_service.create_segment(db, name=name, description=None, predicates=predicates, **kwargs)
    db.commit()
    return segment


def test_create_and_recalculate_stores_size(seeded):
    _, session_local = seeded
    with session_local() as db:
        segment = _create(
            db,
            "Big spenders",
            [
                {"field": "has_purchased", "operator": "equals", "value": True},
                {"field": "total_spent", "operator": "greater_than", "value": 100},
            ],
        )
        assert segment.estimated_size == 0
        assert segment.last_calculated_at is None

        size = segment_service.recalculate_segment(db, segment.id)
        db.commit()

        stored = db.get(AudienceSegment, segment.id)
        assert size == 3  # r1 250, r3 120, r5 500
        assert stored.estimated_size == 3
        assert stored.last_calculated_at is not None

        actions = db.execute(select(AuditLog.action).where(AuditLog.target_id == segment.id)).scalars().all()
        assert "segment.create" in actions
        assert "segment.recalculate" in actions


def test_recency_over_sql_sources(seeded):
    _, session_local = seeded
    with session_local() as db:
        lapsed = _create(db, "Lapsed", [{"field": "last_purchase_days_ago", "operator": "greater_than", "value": 30}])
        recent = _create(db, "Recent", [{"field": "last_purchase_days_ago", "operator": "less_than", "value": 30}])

        assert set(segment_service.preview_segment(db, lapsed).matched_ids) == {"r2", "r5"}
        assert set(segment_service.preview_segment(db, recent).matched_ids) == {"r1", "r3"}


def test_duplicate_names_and_empty_predicates_are_rejected(seeded):
    _, session_local = seeded
    with session_local() as db:
        _create(db, "VIP", [{"field": "pass_type", "operator": "equals", "value": "all_access"}])
        with pytest.raises(ConflictError):
            segment_service.create_segment(
                db,
                name="vip",
                description=None,
                predicates=[{"field": "pass_type", "operator": "equals", "value": "monthly"}],
            )
        with pytest.raises(ValidationError):
            segment_service.create_segment(db, name="Nothing", description=None, predicates=[])


def test_update_predicates_bumps_definition_version(seeded):
    _, session_local = seeded
    with session_local() as db:
        segment = _create(db, "Openers", [{"field": "email_opens", "operator": "greater_than", "value": 0}])
        segment_service.update_segment(db, segment, description="renamed only")
        assert segment.definition_version == 1

        segment_service.update_segment(
            db,
            segment,
            predicates=[{"field": "email_opens", "operator": "greater_than", "value": 5}],
        )
        db.commit()
        assert segment.definition_version == 2
        assert segment_service.recalculate_segment(db, segment.id) == 1


def test_recalculation_that_started_before_a_newer_result_keeps_the_newer_size(seeded):
    _, session_local = seeded
    with session_local() as db:
        segment = _create(db, "Active", [{"field": "engagement_level", "operator": "equals", "value": "active"}])
        segment_id = segment.id

    class LateWriter:
        """Registry wrapper that lets a concurrent writer finish first."""

        def __init__(self, inner):
            self.inner = inner

        def get(self, field):
            with session_local() as other:
                row = other.get(AudienceSegment, segment_id)
                row.estimated_size = 42
                row.last_calculation_started_at = utcnow() + timedelta(seconds=5)
                row.last_calculated_at = utcnow()
                other.commit()
            return self.inner.get(field)

    with session_local() as db:
        size = segment_service.recalculate_segment(db, segment_id, registry=LateWriter(build_sql_registry(db)))
        db.commit()
        assert size == 42
        assert db.get(AudienceSegment, segment_id).estimated_size == 42


def test_recalculation_that_started_later_wins_over_an_earlier_run_that_finished_first(seeded):
    _, session_local = seeded
    with session_local() as db:
        segment = _create(db, "Attending", [{"field": "total_events_attended", "operator": "greater_than", "value": 0}])
        segment_id = segment.id

    class EarlierRunFinishes:
        """Stores a result from a run that started before this one but completed during it."""

        def __init__(self, inner):
            self.inner = inner

        def get(self, field):
            with session_local() as other:
                row = other.get(AudienceSegment, segment_id)
                row.estimated_size = 99
                row.last_calculation_started_at = utcnow() - timedelta(minutes=5)
                row.last_calculated_at = utcnow()
                other.commit()
            return self.inner.get(field)

    with session_local() as db:
        size = segment_service.recalculate_segment(
            db, segment_id, registry=EarlierRunFinishes(build_sql_registry(db))
        )
        db.commit()
        assert size == 2  # r1, r4
        assert db.get(AudienceSegment, segment_id).estimated_size == 2


def test_recalculation_racing_a_predicate_edit_is_a_conflict(seeded):
    _, session_local = seeded
    with session_local() as db:
        segment = _create(db, "Dormant", [{"field": "engagement_level", "operator": "equals", "value": "dormant"}])
        segment_id = segment.id

    class EditingRegistry:
        def __init__(self, inner):
            self.inner = inner

        def get(self, field):
            with session_local() as other:
                row = other.get(AudienceSegment, segment_id)
                row.definition_version += 1
                other.commit()
            return self.inner.get(field)

    with session_local() as db:
        with pytest.raises(ConflictError):
            segment_service.recalculate_segment(db, segment_id, registry=EditingRegistry(build_sql_registry(db)))


def test_recalculate_all_records_failures_and_continues(seeded):
    _, session_local = seeded
    with session_local() as db:
        good = _create(db, "Purchasers", [{"field": "has_purchased", "operator": "equals", "value": True}])
        bad = _create(db, "At risk", [{"field": "engagement_level", "operator": "equals", "value": "at_risk"}])
        good_id, bad_id = good.id, bad.id

    class FailingRegistry:
        def __init__(self, inner):
            self.inner = inner

        def get(self, field):
            if field.value == "engagement_level":
                raise SourceUnavailable("engagement_scores", "timeout")
            return self.inner.get(field)

    results = segment_service.recalculate_all_segments(
        session_local,
        max_workers=1,
        registry_factory=lambda db: FailingRegistry(build_sql_registry(db)),
    )
    by_id = {item["id"]: item for item in results}
    assert by_id[good_id]["size"] == 4
    assert by_id[good_id]["error"] is None
    assert by_id[bad_id]["size"] is None
    assert by_id[bad_id]["error_code"] == "source_unavailable"

    with session_local() as db:
        assert db.get(AudienceSegment, good_id).estimated_size == 4
        assert db.get(AudienceSegment, bad_id).last_calculated_at is None


def test_dynamic_segment_refreshes_on_read_when_stale(seeded):
    _, session_local = seeded
    with session_local() as db:
        dynamic = _create(
            db,
            "Attendees",
            [{"field": "total_events_attended", "operator": "greater_than", "value": 0}],
            is_dynamic=True,
        )
        static = _create(
            db,
            "Static attendees",
            [{"field": "total_events_attended", "operator": "greater_than", "value": 0}],
        )

        assert segment_service.refresh_if_stale(db, dynamic) is True
        assert segment_service.refresh_if_stale(db, static) is False
        db.commit()
        db.refresh(dynamic)
        assert dynamic.estimated_size == 2
        assert segment_service.refresh_if_stale(db, dynamic) is False


def test_delete_segment_detaches_and_recomputes_campaign_size(seeded):
    _, session_local = seeded
    with session_local() as db:
        keep = _create(db, "Keep", [{"field": "has_purchased", "operator": "equals", "value": True}])
        drop = _create(db, "Drop", [{"field": "has_purchased", "operator": "equals", "value": False}])
        segment_service.recalculate_segment(db, keep.id)
        segment_service.recalculate_segment(db, drop.id)
        campaign = campaign_service.create_campaign(db, name="Winback")
        audience_service.attach_segment(db, campaign=campaign, segment_id=keep.id)
        audience_service.attach_segment(db, campaign=campaign, segment_id=drop.id)
        db.commit()
        assert campaign.actual_audience_size == 6

        affected = segment_service.delete_segment(db, drop)
        db.commit()

        assert affected == [campaign.id]
        assert campaign.actual_audience_size == 4
        remaining = db.execute(select(CampaignAudience.segment_id)).scalars().all()
        assert remaining == [keep.id]
