from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from dripflow.core.api_docs import error_responses
from dripflow.core.deps import get_actor, get_db
from dripflow.core.locks import campaign_locks
from dripflow.core.timeutils import as_utc, utcnow
from dripflow.models.campaign import Campaign, CampaignAudience, CampaignSend, CampaignStep
from dripflow.models.segment import AudienceSegment
from dripflow.schemas.campaign import (
    CampaignAnalyticsOverviewOut,
    CampaignAudienceCreateIn,
    CampaignAudienceListOut,
    CampaignAudienceOut,
    CampaignCreateIn,
    CampaignListOut,
    CampaignOut,
    CampaignSendListOut,
    CampaignSendOut,
    CampaignStatsOut,
    CampaignStatus,
    CampaignStepCreateIn,
    CampaignStepListOut,
    CampaignStepOut,
    CampaignStepUpdateIn,
    CampaignTransitionIn,
    CampaignUpdateIn,
    DueSendsOut,
    EnrollIn,
    EnrollOut,
    ScheduledStepOut,
    ScheduleIn,
    ScheduleOut,
    SendMetricsOut,
    SendStatus,
)
from dripflow.schemas.common import PaginationMeta
from dripflow.services import audience_service, campaign_service, enrollment_service
from dripflow.services.step_sequencer import schedule

router = APIRouter(prefix="/campaigns", tags=["campaigns"])


def _campaign_out(db: Session, campaign: Campaign) -> CampaignOut:
    step_count, audience_count = campaign_service.campaign_counts(db, campaign.id)
    return CampaignOut(
        id=campaign.id,
        name=campaign.name,
        description=campaign.description,
        campaign_type=campaign.campaign_type,
        goal=campaign.goal,
        target_revenue=campaign.target_revenue,
        start_date=campaign.start_date,
        end_date=campaign.end_date,
        status=campaign.status,
        actual_audience_size=campaign.actual_audience_size,
        step_count=step_count,
        audience_count=audience_count,
        activated_at=campaign.activated_at,
        created_at=campaign.created_at,
        updated_at=campaign.updated_at,
    )


def _step_out(step: CampaignStep) -> CampaignStepOut:
    return CampaignStepOut(
        id=step.id,
        campaign_id=step.campaign_id,
        step_number=step.step_number,
        name=step.name,
        step_type=step.step_type,
        channel=step.channel,
        delay_days=step.delay_days,
        delay_hours=step.delay_hours,
        delay_minutes=step.delay_minutes,
        subject_line=step.subject_line,
        content=step.content,
        cta_text=step.cta_text,
        cta_url=step.cta_url,
    )


def _send_out(send: CampaignSend) -> CampaignSendOut:
    return CampaignSendOut(
        id=send.id,
        campaign_id=send.campaign_id,
        campaign_step_id=send.campaign_step_id,
        recipient_id=send.recipient_id,
        channel=send.channel,
        status=send.status,
        scheduled_send_time=as_utc(send.scheduled_send_time),
        enrolled_at=as_utc(send.enrolled_at),
    )


def _steps_out(campaign_id: str, steps: list[CampaignStep]) -> CampaignStepListOut:
    return CampaignStepListOut(campaign_id=campaign_id, items=[_step_out(step) for step in steps])


def _audiences_out(db: Session, campaign: Campaign) -> CampaignAudienceListOut:
    rows = audience_service.list_audiences(db, campaign.id)
    names = dict(
        db.execute(
            select(AudienceSegment.id, AudienceSegment.name).where(
                AudienceSegment.id.in_([row.segment_id for row in rows])
            )
        ).all()
    ) if rows else {}
    return CampaignAudienceListOut(
        campaign_id=campaign.id,
        actual_audience_size=campaign.actual_audience_size,
        items=[
            CampaignAudienceOut(
                id=row.id,
                campaign_id=row.campaign_id,
                segment_id=row.segment_id,
                segment_name=names.get(row.segment_id),
                estimated_size_snapshot=row.estimated_size_snapshot,
                created_at=row.created_at,
            )
            for row in rows
        ],
    )


@router.post(
    "",
    response_model=CampaignOut,
    status_code=201,
    summary="Create draft campaign",
    responses=error_responses(422, 500),
)
def create_campaign(
    payload: CampaignCreateIn,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    campaign = campaign_service.create_campaign(db, **payload.model_dump(), actor=actor)
    db.commit()
    db.refresh(campaign)
    return _campaign_out(db, campaign)


@router.get(
    "",
    response_model=CampaignListOut,
    summary="List campaigns",
    responses=error_responses(422, 500),
)
def list_campaigns(
    status: CampaignStatus | None = Query(default=None),
    q: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    count_stmt = select(func.count(Campaign.id))
    stmt = select(Campaign)
    if status:
        count_stmt = count_stmt.where(Campaign.status == status)
        stmt = stmt.where(Campaign.status == status)
    if q and q.strip():
        q_like = f"%{q.strip().lower()}%"
        count_stmt = count_stmt.where(func.lower(Campaign.name).like(q_like))
        stmt = stmt.where(func.lower(Campaign.name).like(q_like))

    total = int(db.execute(count_stmt).scalar_one())
    rows = db.execute(stmt.order_by(Campaign.created_at.desc(), Campaign.id).offset(offset).limit(limit)).scalars().all()
    items = [_campaign_out(db, row) for row in rows]
    count = len(items)
    return CampaignListOut(
        items=items,
        pagination=PaginationMeta(
            total=total,
            limit=limit,
            offset=offset,
            count=count,
            has_next=(offset + count) < total,
        ),
        status=status,
    )


@router.get(
    "/stats",
    response_model=CampaignStatsOut,
    summary="Campaign counts by lifecycle status",
    responses=error_responses(500),
)
def campaign_stats(db: Session = Depends(get_db)):
    return CampaignStatsOut(**campaign_service.status_counts(db))


@router.get(
    "/analytics",
    response_model=CampaignAnalyticsOverviewOut,
    summary="Send metrics across all campaigns",
    responses=error_responses(500),
)
def campaigns_analytics(db: Session = Depends(get_db)):
    return CampaignAnalyticsOverviewOut(
        campaigns=CampaignStatsOut(**campaign_service.status_counts(db)),
        sends=SendMetricsOut(**enrollment_service.send_metrics(db)),
    )


@router.get(
    "/sends/due",
    response_model=DueSendsOut,
    summary="Pending sends whose scheduled time has passed",
    responses=error_responses(422, 500),
)
def list_due_sends(
    limit: int | None = Query(default=None, ge=1, le=5000),
    db: Session = Depends(get_db),
):
    rows = enrollment_service.due_sends(db, limit=limit)
    return DueSendsOut(items=[_send_out(row) for row in rows], count=len(rows))


@router.get(
    "/{campaign_id}",
    response_model=CampaignOut,
    summary="Get campaign",
    responses=error_responses(404, 500),
)
def get_campaign(campaign_id: str, db: Session = Depends(get_db)):
    return _campaign_out(db, campaign_service.get_campaign_or_404(db, campaign_id))


@router.patch(
    "/{campaign_id}",
    response_model=CampaignOut,
    summary="Update campaign details",
    responses=error_responses(404, 409, 422, 500),
)
def update_campaign(
    campaign_id: str,
    payload: CampaignUpdateIn,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    with campaign_locks.hold(campaign_id):
        campaign = campaign_service.get_campaign_or_404(db, campaign_id, for_update=True)
        campaign_service.update_campaign(db, campaign, changes=payload.model_dump(exclude_unset=True), actor=actor)
        db.commit()
    db.refresh(campaign)
    return _campaign_out(db, campaign)


@router.delete(
    "/{campaign_id}",
    status_code=204,
    summary="Delete campaign with its steps, audiences and sends",
    responses=error_responses(404, 500),
)
def delete_campaign(
    campaign_id: str,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    with campaign_locks.hold(campaign_id):
        campaign = campaign_service.get_campaign_or_404(db, campaign_id, for_update=True)
        campaign_service.delete_campaign(db, campaign, actor=actor)
        db.commit()
    return None


@router.post(
    "/{campaign_id}/transition",
    response_model=CampaignOut,
    summary="Move campaign to another lifecycle status",
    responses=error_responses(404, 409, 422, 500),
)
def transition_campaign(
    campaign_id: str,
    payload: CampaignTransitionIn,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    with campaign_locks.hold(campaign_id):
        campaign = campaign_service.get_campaign_or_404(db, campaign_id, for_update=True)
        campaign_service.transition_campaign(db, campaign, payload.status, actor=actor)
        db.commit()
    db.refresh(campaign)
    return _campaign_out(db, campaign)


@router.post(
    "/{campaign_id}/activate",
    response_model=CampaignOut,
    summary="Activate campaign",
    responses=error_responses(404, 409, 500),
)
def activate_campaign(
    campaign_id: str,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    with campaign_locks.hold(campaign_id):
        campaign = campaign_service.get_campaign_or_404(db, campaign_id, for_update=True)
        campaign_service.activate_campaign(db, campaign, actor=actor)
        db.commit()
    db.refresh(campaign)
    return _campaign_out(db, campaign)


@router.get(
    "/{campaign_id}/steps",
    response_model=CampaignStepListOut,
    summary="List campaign steps in order",
    responses=error_responses(404, 500),
)
def list_steps(campaign_id: str, db: Session = Depends(get_db)):
    campaign = campaign_service.get_campaign_or_404(db, campaign_id)
    return _steps_out(campaign.id, campaign_service.list_steps(db, campaign.id))


@router.post(
    "/{campaign_id}/steps",
    response_model=CampaignStepListOut,
    status_code=201,
    summary="Append a step to the campaign sequence",
    responses=error_responses(404, 409, 422, 500),
)
def add_step(
    campaign_id: str,
    payload: CampaignStepCreateIn,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    with campaign_locks.hold(campaign_id):
        campaign = campaign_service.get_campaign_or_404(db, campaign_id, for_update=True)
        steps = campaign_service.add_step(
            db,
            campaign,
            channel=payload.channel,
            step_type=payload.step_type,
            name=payload.name,
            actor=actor,
        )
        db.commit()
    return _steps_out(campaign_id, steps)


@router.patch(
    "/{campaign_id}/steps/{step_id}",
    response_model=CampaignStepListOut,
    summary="Edit step delays and content",
    responses=error_responses(404, 409, 422, 500),
)
def update_step(
    campaign_id: str,
    step_id: str,
    payload: CampaignStepUpdateIn,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    with campaign_locks.hold(campaign_id):
        campaign = campaign_service.get_campaign_or_404(db, campaign_id, for_update=True)
        steps = campaign_service.update_step(
            db,
            campaign,
            step_id,
            changes=payload.model_dump(exclude_unset=True),
            actor=actor,
        )
        db.commit()
    return _steps_out(campaign_id, steps)


@router.delete(
    "/{campaign_id}/steps/{step_id}",
    response_model=CampaignStepListOut,
    summary="Delete a step and renumber the rest",
    responses=error_responses(404, 409, 500),
)
def delete_step(
    campaign_id: str,
    step_id: str,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    with campaign_locks.hold(campaign_id):
        campaign = campaign_service.get_campaign_or_404(db, campaign_id, for_update=True)
        steps = campaign_service.delete_step(db, campaign, step_id, actor=actor)
        db.commit()
    return _steps_out(campaign_id, steps)


@router.post(
    "/{campaign_id}/schedule",
    response_model=ScheduleOut,
    summary="Preview step fire times for an enrollment time",
    responses=error_responses(404, 422, 500),
)
def preview_schedule(
    campaign_id: str,
    payload: ScheduleIn,
    db: Session = Depends(get_db),
):
    campaign = campaign_service.get_campaign_or_404(db, campaign_id)
    enrollment_time = as_utc(payload.enrollment_time) if payload.enrollment_time else utcnow()
    plan = schedule(campaign_service.list_steps(db, campaign.id), enrollment_time)
    return ScheduleOut(
        campaign_id=campaign.id,
        enrollment_time=enrollment_time,
        steps=[
            ScheduledStepOut(
                step_id=item.step_id,
                step_number=item.step_number,
                channel=item.channel,
                offset_minutes=int(item.offset.total_seconds() // 60),
                fire_at=item.fire_at,
            )
            for item in plan
        ],
    )


@router.get(
    "/{campaign_id}/audiences",
    response_model=CampaignAudienceListOut,
    summary="List segments attached to the campaign",
    responses=error_responses(404, 500),
)
def list_audiences(campaign_id: str, db: Session = Depends(get_db)):
    campaign = campaign_service.get_campaign_or_404(db, campaign_id)
    return _audiences_out(db, campaign)


@router.post(
    "/{campaign_id}/audiences",
    response_model=CampaignAudienceListOut,
    status_code=201,
    summary="Attach a segment to the campaign",
    responses=error_responses(404, 409, 422, 500, 503),
)
def attach_audience(
    campaign_id: str,
    payload: CampaignAudienceCreateIn,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    with campaign_locks.hold(campaign_id):
        campaign = campaign_service.get_campaign_or_404(db, campaign_id, for_update=True)
        audience_service.attach_segment(db, campaign=campaign, segment_id=payload.segment_id, actor=actor)
        db.commit()
    db.refresh(campaign)
    return _audiences_out(db, campaign)


@router.delete(
    "/{campaign_id}/audiences/{audience_id}",
    response_model=CampaignAudienceListOut,
    summary="Detach a segment from the campaign",
    responses=error_responses(404, 409, 500, 503),
)
def detach_audience(
    campaign_id: str,
    audience_id: str,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    with campaign_locks.hold(campaign_id):
        campaign = campaign_service.get_campaign_or_404(db, campaign_id, for_update=True)
        audience_service.detach_audience(db, campaign=campaign, audience_id=audience_id, actor=actor)
        db.commit()
    db.refresh(campaign)
    return _audiences_out(db, campaign)


@router.post(
    "/{campaign_id}/enroll",
    response_model=EnrollOut,
    summary="Schedule pending sends for the campaign audience",
    responses=error_responses(404, 409, 422, 500, 503),
)
def enroll(
    campaign_id: str,
    payload: EnrollIn,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    with campaign_locks.hold(campaign_id):
        campaign = campaign_service.get_campaign_or_404(db, campaign_id, for_update=True)
        summary = enrollment_service.enroll_recipients(
            db,
            campaign,
            enrollment_time=payload.enrollment_time,
            test_mode=payload.test_mode,
            limit=payload.limit,
            actor=actor,
        )
        db.commit()
    return EnrollOut(campaign_id=campaign_id, test_mode=payload.test_mode, **summary)


@router.get(
    "/{campaign_id}/sends",
    response_model=CampaignSendListOut,
    summary="List scheduled sends for the campaign",
    responses=error_responses(404, 422, 500),
)
def list_sends(
    campaign_id: str,
    status: SendStatus | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    campaign = campaign_service.get_campaign_or_404(db, campaign_id)
    rows, total = enrollment_service.list_sends(db, campaign.id, status=status, limit=limit, offset=offset)
    items = [_send_out(row) for row in rows]
    count = len(items)
    return CampaignSendListOut(
        items=items,
        pagination=PaginationMeta(
            total=total,
            limit=limit,
            offset=offset,
            count=count,
            has_next=(offset + count) < total,
        ),
        status=status,
    )


@router.get(
    "/{campaign_id}/analytics",
    response_model=SendMetricsOut,
    summary="Send metrics for one campaign",
    responses=error_responses(404, 500),
)
def campaign_analytics(campaign_id: str, db: Session = Depends(get_db)):
    campaign = campaign_service.get_campaign_or_404(db, campaign_id)
    return SendMetricsOut(**enrollment_service.send_metrics(db, campaign.id))
