import json
import logging
from datetime import date
from decimal import Decimal
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from dripflow.core.errors import GuardViolation, NotFoundError, ValidationError
from dripflow.core.id_utils import generate_shortuuid
from dripflow.core.timeutils import utcnow
from dripflow.models.campaign import Campaign, CampaignAudience, CampaignSend, CampaignStep
from dripflow.services.audit_service import log_audit_event
from dripflow.services.step_sequencer import CHANNELS, meaningful_fields

logger = logging.getLogger("dripflow.campaigns")

CAMPAIGN_STATUSES = ("draft", "active", "paused", "completed", "archived")
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "draft": frozenset({"active", "archived"}),
    "active": frozenset({"paused", "completed", "archived"}),
    "paused": frozenset({"active", "completed", "archived"}),
    "completed": frozenset({"archived"}),
    "archived": frozenset(),
}
LOCKED_STATUSES = frozenset({"completed", "archived"})

_STEP_UPDATABLE_FIELDS = (
    "name",
    "step_type",
    "delay_days",
    "delay_hours",
    "delay_minutes",
    "subject_line",
    "content",
    "cta_text",
    "cta_url",
)


def get_campaign_or_404(db: Session, campaign_id: str, *, for_update: bool = False) -> Campaign:
    stmt = select(Campaign).where(Campaign.id == campaign_id)
    if for_update:
        stmt = stmt.with_for_update()
    row = db.execute(stmt).scalar_one_or_none()
    if not row:
        raise NotFoundError("Campaign not found")
    return row


def ensure_campaign_editable(campaign: Campaign) -> None:
    if campaign.status in LOCKED_STATUSES:
        raise GuardViolation(
            f"Campaign is {campaign.status}; steps and audiences can no longer change",
            reasons=["campaign_locked"],
        )


def create_campaign(
    db: Session,
    *,
    name: str,
    description: str | None = None,
    campaign_type: str = "email",
    goal: str = "sales",
    target_revenue: Decimal | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    actor: str | None = None,
) -> Campaign:
    if start_date and end_date and end_date < start_date:
        raise ValidationError("Campaign end_date cannot be before start_date")

    campaign = Campaign(
        id=generate_shortuuid(),
        name=name.strip(),
        description=description,
        campaign_type=campaign_type,
        goal=goal,
        target_revenue=target_revenue,
        start_date=start_date,
        end_date=end_date,
        status="draft",
        actual_audience_size=0,
    )
    db.add(campaign)
    log_audit_event(
        db,
        action="campaign.create",
        target_type="campaign",
        target_id=campaign.id,
        actor=actor,
        metadata_json={"name": campaign.name, "campaign_type": campaign_type, "goal": goal},
    )
    db.flush()
    return campaign


def update_campaign(db: Session, campaign: Campaign, *, changes: dict[str, Any], actor: str | None = None) -> Campaign:
    ensure_campaign_editable(campaign)
    start_date = changes.get("start_date", campaign.start_date)
    end_date = changes.get("end_date", campaign.end_date)
    if start_date and end_date and end_date < start_date:
        raise ValidationError("Campaign end_date cannot be before start_date")

    for key in ("name", "description", "campaign_type", "goal", "target_revenue", "start_date", "end_date"):
        if key in changes:
            setattr(campaign, key, changes[key])
    log_audit_event(
        db,
        action="campaign.update",
        target_type="campaign",
        target_id=campaign.id,
        actor=actor,
        metadata_json={"fields": sorted(changes)},
    )
    db.flush()
    return campaign


def delete_campaign(db: Session, campaign: Campaign, *, actor: str | None = None) -> None:
    db.execute(delete(CampaignSend).where(CampaignSend.campaign_id == campaign.id))
    db.execute(delete(CampaignAudience).where(CampaignAudience.campaign_id == campaign.id))
    db.execute(delete(CampaignStep).where(CampaignStep.campaign_id == campaign.id))
    log_audit_event(
        db,
        action="campaign.delete",
        target_type="campaign",
        target_id=campaign.id,
        actor=actor,
        metadata_json={"name": campaign.name, "status": campaign.status},
    )
    db.delete(campaign)
    db.flush()


def campaign_counts(db: Session, campaign_id: str) -> tuple[int, int]:
    steps = db.execute(select(func.count(CampaignStep.id)).where(CampaignStep.campaign_id == campaign_id)).scalar_one()
    audiences = db.execute(
        select(func.count(CampaignAudience.id)).where(CampaignAudience.campaign_id == campaign_id)
    ).scalar_one()
    return int(steps), int(audiences)


def activation_blockers(db: Session, campaign: Campaign) -> list[str]:
    steps, audiences = campaign_counts(db, campaign.id)
    blockers = []
    if steps < 1:
        blockers.append("no_steps")
    if audiences < 1:
        blockers.append("no_audience")
    return blockers


_BLOCKER_MESSAGES = {
    "no_steps": "add at least one step",
    "no_audience": "attach at least one audience segment",
}


def cancel_pending_sends(db: Session, campaign_id: str) -> int:
    result = db.execute(
        update(CampaignSend)
        .where(CampaignSend.campaign_id == campaign_id, CampaignSend.status == "pending")
        .values(status="cancelled")
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


def transition_campaign(db: Session, campaign: Campaign, target: str, *, actor: str | None = None) -> Campaign:
    """Move a campaign through its lifecycle.

    Leaving ``draft`` for ``active`` requires at least one step and one
    audience; resuming a paused campaign is a plain status change. The check
    and the status write run under the caller's per-campaign lock and the
    campaign row lock, so attach/detach cannot interleave.
    """
    target = (target or "").strip().lower()
    if target not in CAMPAIGN_STATUSES:
        raise ValidationError(f"Unknown campaign status '{target}'")
    current = campaign.status
    if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise GuardViolation(
            f"Cannot move campaign from {current} to {target}",
            reasons=["invalid_transition"],
        )

    if target == "active":
        if current == "draft":
            blockers = activation_blockers(db, campaign)
            if blockers:
                detail = " and ".join(_BLOCKER_MESSAGES[item] for item in blockers)
                raise GuardViolation(f"Campaign cannot be activated: {detail}", reasons=blockers)
        if campaign.activated_at is None:
            campaign.activated_at = utcnow()

    cancelled = 0
    if target in LOCKED_STATUSES:
        cancelled = cancel_pending_sends(db, campaign.id)

    campaign.status = target
    log_audit_event(
        db,
        action="campaign.transition",
        target_type="campaign",
        target_id=campaign.id,
        actor=actor,
        metadata_json={"from": current, "to": target, "cancelled_sends": cancelled},
    )
    logger.info(
        json.dumps(
            {
                "event": "campaign.transition",
                "campaign_id": campaign.id,
                "from": current,
                "to": target,
                "cancelled_sends": cancelled,
            }
        )
    )
    db.flush()
    return campaign


def activate_campaign(db: Session, campaign: Campaign, *, actor: str | None = None) -> Campaign:
    return transition_campaign(db, campaign, "active", actor=actor)


def list_steps(db: Session, campaign_id: str) -> list[CampaignStep]:
    return db.execute(
        select(CampaignStep)
        .where(CampaignStep.campaign_id == campaign_id)
        .order_by(CampaignStep.step_number, CampaignStep.created_at)
    ).scalars().all()


def _step_or_404(db: Session, campaign_id: str, step_id: str) -> CampaignStep:
    row = db.execute(
        select(CampaignStep).where(CampaignStep.id == step_id, CampaignStep.campaign_id == campaign_id)
    ).scalar_one_or_none()
    if not row:
        raise NotFoundError("Campaign step not found")
    return row


def add_step(
    db: Session,
    campaign: Campaign,
    *,
    channel: str,
    step_type: str = "message",
    name: str | None = None,
    actor: str | None = None,
) -> list[CampaignStep]:
    ensure_campaign_editable(campaign)
    if channel not in CHANNELS:
        raise ValidationError(f"Unknown channel '{channel}'. Available: {', '.join(CHANNELS)}")

    step_number = len(list_steps(db, campaign.id)) + 1
    step = CampaignStep(
        id=generate_shortuuid(),
        campaign_id=campaign.id,
        step_number=step_number,
        name=(name or "").strip() or f"Step {step_number}",
        step_type=step_type,
        channel=channel,
        delay_days=0,
        delay_hours=0,
        delay_minutes=0,
        subject_line="",
        content="",
        cta_text="",
        cta_url="",
    )
    db.add(step)
    log_audit_event(
        db,
        action="campaign.step.add",
        target_type="campaign_step",
        target_id=step.id,
        actor=actor,
        metadata_json={"campaign_id": campaign.id, "step_number": step_number, "channel": channel},
    )
    db.flush()
    return list_steps(db, campaign.id)


def update_step(
    db: Session,
    campaign: Campaign,
    step_id: str,
    *,
    changes: dict[str, Any],
    actor: str | None = None,
) -> list[CampaignStep]:
    ensure_campaign_editable(campaign)
    step = _step_or_404(db, campaign.id, step_id)

    if "step_number" in changes:
        raise ValidationError("step_number is assigned by position and cannot be edited")
    unknown = sorted(set(changes) - set(_STEP_UPDATABLE_FIELDS))
    if unknown:
        raise ValidationError(f"Unknown step field(s): {', '.join(unknown)}")
    cleared = sorted(key for key, value in changes.items() if value is None)
    if cleared:
        raise ValidationError(f"Step field(s) cannot be null: {', '.join(cleared)}")
    for key in ("delay_days", "delay_hours", "delay_minutes"):
        if key in changes and int(changes[key]) < 0:
            raise ValidationError(f"{key} must be zero or greater")
    if changes.get("subject_line") and "subject_line" not in meaningful_fields(step.channel):
        raise ValidationError(f"subject_line only applies to email steps, not {step.channel}")

    for key, value in changes.items():
        setattr(step, key, value)
    log_audit_event(
        db,
        action="campaign.step.update",
        target_type="campaign_step",
        target_id=step.id,
        actor=actor,
        metadata_json={"campaign_id": campaign.id, "fields": sorted(changes)},
    )
    db.flush()
    return list_steps(db, campaign.id)


def delete_step(db: Session, campaign: Campaign, step_id: str, *, actor: str | None = None) -> list[CampaignStep]:
    """Delete a step and renumber the remaining ones to 1..N-1 in their original order."""
    ensure_campaign_editable(campaign)
    step = _step_or_404(db, campaign.id, step_id)
    removed_number = step.step_number

    db.execute(delete(CampaignSend).where(CampaignSend.campaign_step_id == step.id))
    db.delete(step)
    db.flush()

    remaining = list_steps(db, campaign.id)
    for index, row in enumerate(remaining, start=1):
        if row.step_number != index:
            row.step_number = index

    log_audit_event(
        db,
        action="campaign.step.delete",
        target_type="campaign_step",
        target_id=step_id,
        actor=actor,
        metadata_json={"campaign_id": campaign.id, "step_number": removed_number, "remaining": len(remaining)},
    )
    db.flush()
    return remaining


def status_counts(db: Session) -> dict[str, int]:
    rows = db.execute(select(Campaign.status, func.count(Campaign.id)).group_by(Campaign.status)).all()
    counts = {status: 0 for status in CAMPAIGN_STATUSES}
    counts.update({status: int(count) for status, count in rows})
    counts["total"] = sum(counts[status] for status in CAMPAIGN_STATUSES)
    return counts
