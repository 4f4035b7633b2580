from sqlalchemy import select
from sqlalchemy.orm import Session

from dripflow.core.config import settings
from dripflow.core.errors import ConflictError, NotFoundError
from dripflow.core.id_utils import generate_shortuuid
from dripflow.models.campaign import Campaign, CampaignAudience
from dripflow.models.segment import AudienceSegment
from dripflow.services.audit_service import log_audit_event
from dripflow.services.campaign_service import ensure_campaign_editable
from dripflow.services.segment_resolver import resolve_segment
from dripflow.services.source_resolvers import ResolverRegistry, build_sql_registry


def list_audiences(db: Session, campaign_id: str) -> list[CampaignAudience]:
    return db.execute(
        select(CampaignAudience)
        .where(CampaignAudience.campaign_id == campaign_id)
        .order_by(CampaignAudience.created_at, CampaignAudience.id)
    ).scalars().all()


def _attached_segments(db: Session, campaign_id: str) -> list[AudienceSegment]:
    return db.execute(
        select(AudienceSegment)
        .join(CampaignAudience, CampaignAudience.segment_id == AudienceSegment.id)
        .where(CampaignAudience.campaign_id == campaign_id)
        .order_by(CampaignAudience.created_at, CampaignAudience.id)
    ).scalars().all()


def resolve_campaign_recipients(
    db: Session,
    campaign_id: str,
    *,
    registry: ResolverRegistry | None = None,
) -> set[str]:
    """Union of the recipients matched by every attached segment, resolved now."""
    registry = registry or build_sql_registry(db)
    recipients: set[str] = set()
    for segment in _attached_segments(db, campaign_id):
        recipients |= resolve_segment(segment.predicates_json, registry).matched_ids
    return recipients


def refresh_audience_size(
    db: Session,
    campaign: Campaign,
    *,
    mode: str | None = None,
    registry: ResolverRegistry | None = None,
) -> int:
    """Recompute ``actual_audience_size``.

    ``sum`` adds the attach-time snapshots without deduplicating recipients
    shared by overlapping segments. ``union`` resolves the segments and counts
    distinct recipients.
    """
    mode = mode or settings.audience_size_mode
    if mode == "union":
        total = len(resolve_campaign_recipients(db, campaign.id, registry=registry))
    else:
        total = sum(audience.estimated_size_snapshot for audience in list_audiences(db, campaign.id))
    campaign.actual_audience_size = total
    return total


def attach_segment(
    db: Session,
    *,
    campaign: Campaign,
    segment_id: str,
    actor: str | None = None,
    registry: ResolverRegistry | None = None,
) -> CampaignAudience:
    ensure_campaign_editable(campaign)
    segment = db.execute(select(AudienceSegment).where(AudienceSegment.id == segment_id)).scalar_one_or_none()
    if not segment:
        raise NotFoundError("Segment not found")

    existing = db.execute(
        select(CampaignAudience.id).where(
            CampaignAudience.campaign_id == campaign.id,
            CampaignAudience.segment_id == segment_id,
        )
    ).scalar_one_or_none()
    if existing:
        raise ConflictError(f"Segment '{segment.name}' is already attached to this campaign")

    audience = CampaignAudience(
        id=generate_shortuuid(),
        campaign_id=campaign.id,
        segment_id=segment.id,
        estimated_size_snapshot=segment.estimated_size,
    )
    db.add(audience)
    db.flush()
    total = refresh_audience_size(db, campaign, registry=registry)
    log_audit_event(
        db,
        action="campaign.audience.attach",
        target_type="campaign",
        target_id=campaign.id,
        actor=actor,
        metadata_json={
            "segment_id": segment.id,
            "estimated_size_snapshot": audience.estimated_size_snapshot,
            "actual_audience_size": total,
        },
    )
    db.flush()
    return audience


def detach_audience(
    db: Session,
    *,
    campaign: Campaign,
    audience_id: str,
    actor: str | None = None,
    registry: ResolverRegistry | None = None,
) -> int:
    ensure_campaign_editable(campaign)
    audience = db.execute(
        select(CampaignAudience).where(
            CampaignAudience.id == audience_id,
            CampaignAudience.campaign_id == campaign.id,
        )
    ).scalar_one_or_none()
    if not audience:
        raise NotFoundError("Campaign audience not found")

    segment_id = audience.segment_id
    db.delete(audience)
    db.flush()
    total = refresh_audience_size(db, campaign, registry=registry)
    log_audit_event(
        db,
        action="campaign.audience.detach",
        target_type="campaign",
        target_id=campaign.id,
        actor=actor,
        metadata_json={"segment_id": segment_id, "actual_audience_size": total},
    )
    db.flush()
    return total


def detach_segment_everywhere(db: Session, *, segment_id: str, actor: str | None = None) -> list[str]:
    rows = db.execute(select(CampaignAudience).where(CampaignAudience.segment_id == segment_id)).scalars().all()
    campaign_ids = sorted({row.campaign_id for row in rows})
    for row in rows:
        db.delete(row)
    db.flush()

    for campaign_id in campaign_ids:
        campaign = db.get(Campaign, campaign_id)
        if campaign is None:
            continue
        total = refresh_audience_size(db, campaign)
        log_audit_event(
            db,
            action="campaign.audience.detach",
            target_type="campaign",
            target_id=campaign_id,
            actor=actor,
            metadata_json={"segment_id": segment_id, "actual_audience_size": total, "reason": "segment_deleted"},
        )
    return campaign_ids
