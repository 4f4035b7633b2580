import json
import logging
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from dripflow.core.config import settings
from dripflow.core.errors import GuardViolation, ValidationError
from dripflow.core.id_utils import generate_shortuuid
from dripflow.core.timeutils import as_utc, utcnow
from dripflow.models.campaign import Campaign, CampaignSend
from dripflow.services.audience_service import resolve_campaign_recipients
from dripflow.services.audit_service import log_audit_event
from dripflow.services.campaign_service import list_steps
from dripflow.services.source_resolvers import ResolverRegistry
from dripflow.services.step_sequencer import CHANNELS, schedule

logger = logging.getLogger("dripflow.campaigns")

SEND_STATUSES = ("pending", "sent", "failed", "cancelled")


def enroll_recipients(
    db: Session,
    campaign: Campaign,
    *,
    enrollment_time: datetime | None = None,
    test_mode: bool = False,
    limit: int | None = None,
    registry: ResolverRegistry | None = None,
    actor: str | None = None,
) -> dict[str, int]:
    """Schedule one pending send per recipient and step.

    Every send fires at ``enrollment_time + step offset``. Pairs that already
    have a send are skipped, so enrolling twice never duplicates messages.
    """
    if campaign.status != "active" and not test_mode:
        raise GuardViolation(
            f"Only active campaigns can enroll recipients (campaign is {campaign.status})",
            reasons=["campaign_not_active"],
        )
    steps = list_steps(db, campaign.id)
    if not steps:
        raise GuardViolation("Campaign has no steps to schedule", reasons=["no_steps"])

    cap = settings.enrollment_batch_limit
    if limit is not None:
        if limit < 1:
            raise ValidationError("Enrollment limit must be at least 1")
        cap = min(cap, limit)
    if test_mode:
        cap = min(cap, settings.enrollment_test_mode_limit)

    recipients = sorted(resolve_campaign_recipients(db, campaign.id, registry=registry))[:cap]
    enrolled_at = as_utc(enrollment_time) if enrollment_time else utcnow()
    plan = schedule(steps, enrolled_at)

    existing: set[tuple[str, str]] = set()
    if recipients:
        rows = db.execute(
            select(CampaignSend.campaign_step_id, CampaignSend.recipient_id).where(
                CampaignSend.campaign_id == campaign.id,
                CampaignSend.recipient_id.in_(recipients),
            )
        ).all()
        existing = {(step_id, recipient_id) for step_id, recipient_id in rows}

    scheduled = 0
    for recipient_id in recipients:
        for item in plan:
            if (item.step_id, recipient_id) in existing:
                continue
            db.add(
                CampaignSend(
                    id=generate_shortuuid(),
                    campaign_id=campaign.id,
                    campaign_step_id=item.step_id,
                    recipient_id=recipient_id,
                    channel=item.channel,
                    status="pending",
                    scheduled_send_time=item.fire_at,
                    enrolled_at=enrolled_at,
                )
            )
            scheduled += 1

    summary = {
        "total_recipients": len(recipients),
        "total_steps": len(plan),
        "total_scheduled": scheduled,
        "skipped_existing": len(recipients) * len(plan) - scheduled,
    }
    log_audit_event(
        db,
        action="campaign.enroll",
        target_type="campaign",
        target_id=campaign.id,
        actor=actor,
        metadata_json={**summary, "test_mode": test_mode},
    )
    logger.info(json.dumps({"event": "campaign.enrolled", "campaign_id": campaign.id, "test_mode": test_mode, **summary}))
    db.flush()
    return summary


def list_sends(
    db: Session,
    campaign_id: str,
    *,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[CampaignSend], int]:
    stmt = select(CampaignSend).where(CampaignSend.campaign_id == campaign_id)
    count_stmt = select(func.count(CampaignSend.id)).where(CampaignSend.campaign_id == campaign_id)
    if status:
        if status not in SEND_STATUSES:
            raise ValidationError(f"Unknown send status '{status}'")
        stmt = stmt.where(CampaignSend.status == status)
        count_stmt = count_stmt.where(CampaignSend.status == status)

    total = int(db.execute(count_stmt).scalar_one())
    rows = db.execute(
        stmt.order_by(CampaignSend.scheduled_send_time, CampaignSend.recipient_id).offset(offset).limit(limit)
    ).scalars().all()
    return rows, total


def due_sends(db: Session, *, now: datetime | None = None, limit: int | None = None) -> list[CampaignSend]:
    """Pending sends whose fire time has passed, oldest first. Delivery is out of process."""
    cutoff = as_utc(now) if now else utcnow()
    return db.execute(
        select(CampaignSend)
        .join(Campaign, Campaign.id == CampaignSend.campaign_id)
        .where(
            CampaignSend.status == "pending",
            CampaignSend.scheduled_send_time <= cutoff,
            Campaign.status == "active",
        )
        .order_by(CampaignSend.scheduled_send_time, CampaignSend.id)
        .limit(limit or settings.due_sends_default_limit)
    ).scalars().all()


def _rate(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


def send_metrics(db: Session, campaign_id: str | None = None) -> dict:
    """Send counts grouped by status and by channel, for one campaign or all of them.

    Rates are percentages of attempted sends (sent plus failed); pending and
    cancelled sends are not attempts.
    """
    status_query = select(CampaignSend.status, func.count(CampaignSend.id)).group_by(CampaignSend.status)
    channel_query = select(CampaignSend.channel, func.count(CampaignSend.id)).group_by(CampaignSend.channel)
    if campaign_id is not None:
        status_query = status_query.where(CampaignSend.campaign_id == campaign_id)
        channel_query = channel_query.where(CampaignSend.campaign_id == campaign_id)

    by_status = {status: 0 for status in SEND_STATUSES}
    for status, count in db.execute(status_query).all():
        by_status[status] = int(count)
    by_channel = {channel: 0 for channel in CHANNELS}
    for channel, count in db.execute(channel_query).all():
        by_channel[channel] = int(count)

    attempted = by_status["sent"] + by_status["failed"]
    return {
        "campaign_id": campaign_id,
        "total_sends": sum(by_status.values()),
        "by_status": by_status,
        "by_channel": by_channel,
        "delivery_rate": _rate(by_status["sent"], attempted),
        "failure_rate": _rate(by_status["failed"], attempted),
    }
