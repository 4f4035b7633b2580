from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from dripflow.core.api_docs import error_responses
from dripflow.core.config import settings
from dripflow.core.deps import get_actor, get_db, get_session_factory
from dripflow.models.campaign import CampaignAudience
from dripflow.models.segment import AudienceSegment
from dripflow.schemas.common import PaginationMeta
from dripflow.schemas.segment import (
    CatalogOut,
    PredicateOut,
    RecalculateAllOut,
    RecalculateResultOut,
    SegmentCreateIn,
    SegmentDeleteOut,
    SegmentListOut,
    SegmentOut,
    SegmentPreviewOut,
    SegmentRecalculateOut,
    SegmentResolveIn,
    SegmentUpdateIn,
)
from dripflow.services import segment_service
from dripflow.services.predicate_catalog import list_catalog, validate_predicates
from dripflow.services.segment_resolver import SegmentResolution, resolve_segment
from dripflow.services.source_resolvers import build_sql_registry

router = APIRouter(prefix="/segments", tags=["segments"])


def _segment_out(segment: AudienceSegment, *, campaigns_using: int = 0) -> SegmentOut:
    return SegmentOut(
        id=segment.id,
        name=segment.name,
        description=segment.description,
        predicates=[PredicateOut(**item) for item in segment.predicates_json or []],
        is_dynamic=segment.is_dynamic,
        estimated_size=segment.estimated_size,
        last_calculated_at=segment.last_calculated_at,
        definition_version=segment.definition_version,
        campaigns_using=campaigns_using,
        created_at=segment.created_at,
        updated_at=segment.updated_at,
    )


def _preview_out(resolution: SegmentResolution, *, segment_id: str | None, sample_size: int) -> SegmentPreviewOut:
    return SegmentPreviewOut(
        segment_id=segment_id,
        total_recipients=resolution.count,
        recipient_ids=sorted(resolution.matched_ids)[:sample_size],
        evaluated_fields=list(resolution.evaluated_fields),
        short_circuited=resolution.short_circuited,
    )


@router.get(
    "/catalog",
    response_model=CatalogOut,
    summary="List filterable fields with their legal operators",
    responses=error_responses(500),
)
def get_catalog():
    return CatalogOut(fields=list_catalog())


@router.post(
    "/resolve",
    response_model=SegmentPreviewOut,
    summary="Resolve ad-hoc predicates without saving a segment",
    responses=error_responses(400, 422, 500, 503),
)
def resolve_predicates(payload: SegmentResolveIn, db: Session = Depends(get_db)):
    predicates = validate_predicates([item.model_dump() for item in payload.predicates])
    resolution = resolve_segment(predicates, build_sql_registry(db))
    return _preview_out(resolution, segment_id=None, sample_size=payload.sample_size)


@router.post(
    "",
    response_model=SegmentOut,
    status_code=201,
    summary="Create audience segment",
    responses=error_responses(400, 409, 422, 500),
)
def create_segment(
    payload: SegmentCreateIn,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    segment = segment_service.create_segment(
        db,
        name=payload.name,
        description=payload.description,
        predicates=[item.model_dump() for item in payload.predicates],
        is_dynamic=payload.is_dynamic,
        actor=actor,
    )
    db.commit()
    db.refresh(segment)
    return _segment_out(segment)


@router.get(
    "",
    response_model=SegmentListOut,
    summary="List audience segments",
    responses=error_responses(422, 500, 503),
)
def list_segments(
    q: str | None = Query(default=None),
    is_dynamic: bool | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    count_stmt = select(func.count(AudienceSegment.id))
    stmt = select(AudienceSegment)

    if q and q.strip():
        q_like = f"%{q.strip().lower()}%"
        count_stmt = count_stmt.where(func.lower(AudienceSegment.name).like(q_like))
        stmt = stmt.where(func.lower(AudienceSegment.name).like(q_like))
    if is_dynamic is not None:
        count_stmt = count_stmt.where(AudienceSegment.is_dynamic == is_dynamic)
        stmt = stmt.where(AudienceSegment.is_dynamic == is_dynamic)

    total = int(db.execute(count_stmt).scalar_one())
    rows = db.execute(
        stmt.order_by(AudienceSegment.created_at.desc(), AudienceSegment.id).offset(offset).limit(limit)
    ).scalars().all()

    refreshed = [row for row in rows if segment_service.refresh_if_stale(db, row)]
    if refreshed:
        db.commit()
        for row in refreshed:
            db.refresh(row)

    usage = dict(
        db.execute(
            select(CampaignAudience.segment_id, func.count(CampaignAudience.id))
            .where(CampaignAudience.segment_id.in_([row.id for row in rows]))
            .group_by(CampaignAudience.segment_id)
        ).all()
    ) if rows else {}
    items = [_segment_out(row, campaigns_using=int(usage.get(row.id, 0))) for row in rows]
    count = len(items)
    return SegmentListOut(
        items=items,
        pagination=PaginationMeta(
            total=total,
            limit=limit,
            offset=offset,
            count=count,
            has_next=(offset + count) < total,
        ),
    )


@router.post(
    "/recalculate-all",
    response_model=RecalculateAllOut,
    summary="Recalculate every segment on a bounded worker pool",
    responses=error_responses(500),
)
def recalculate_all(
    session_factory: sessionmaker = Depends(get_session_factory),
    actor: str | None = Depends(get_actor),
):
    results = segment_service.recalculate_all_segments(
        session_factory,
        max_workers=settings.segment_recalc_max_workers,
        actor=actor,
    )
    failed = sum(1 for item in results if item["error"] is not None)
    return RecalculateAllOut(
        results=[RecalculateResultOut(**item) for item in results],
        succeeded=len(results) - failed,
        failed=failed,
    )


@router.get(
    "/{segment_id}",
    response_model=SegmentOut,
    summary="Get audience segment",
    responses=error_responses(404, 500, 503),
)
def get_segment(segment_id: str, db: Session = Depends(get_db)):
    segment = segment_service.get_segment_or_404(db, segment_id)
    if segment_service.refresh_if_stale(db, segment):
        db.commit()
        db.refresh(segment)
    return _segment_out(segment, campaigns_using=segment_service.audience_usage(db, segment.id))


@router.patch(
    "/{segment_id}",
    response_model=SegmentOut,
    summary="Update audience segment",
    responses=error_responses(400, 404, 409, 422, 500),
)
def update_segment(
    segment_id: str,
    payload: SegmentUpdateIn,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    segment = segment_service.get_segment_or_404(db, segment_id)
    segment_service.update_segment(
        db,
        segment,
        name=payload.name,
        description=payload.description,
        predicates=[item.model_dump() for item in payload.predicates] if payload.predicates is not None else None,
        is_dynamic=payload.is_dynamic,
        actor=actor,
    )
    db.commit()
    db.refresh(segment)
    return _segment_out(segment, campaigns_using=segment_service.audience_usage(db, segment.id))


@router.delete(
    "/{segment_id}",
    response_model=SegmentDeleteOut,
    summary="Delete audience segment and detach it from campaigns",
    responses=error_responses(404, 500),
)
def delete_segment(
    segment_id: str,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    segment = segment_service.get_segment_or_404(db, segment_id)
    affected = segment_service.delete_segment(db, segment, actor=actor)
    db.commit()
    return SegmentDeleteOut(segment_id=segment_id, affected_campaign_ids=affected)


@router.post(
    "/{segment_id}/recalculate",
    response_model=SegmentRecalculateOut,
    summary="Recalculate segment size",
    responses=error_responses(400, 404, 409, 500, 503),
)
def recalculate_segment(
    segment_id: str,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    size = segment_service.recalculate_segment(db, segment_id, actor=actor)
    db.commit()
    segment = segment_service.get_segment_or_404(db, segment_id)
    return SegmentRecalculateOut(
        segment_id=segment.id,
        estimated_size=size,
        last_calculated_at=segment.last_calculated_at,
        definition_version=segment.definition_version,
    )


@router.post(
    "/{segment_id}/preview",
    response_model=SegmentPreviewOut,
    summary="Preview segment audience without storing its size",
    responses=error_responses(400, 404, 500, 503),
)
def preview_segment(
    segment_id: str,
    sample_size: int = Query(default=20, ge=0, le=500),
    db: Session = Depends(get_db),
):
    segment = segment_service.get_segment_or_404(db, segment_id)
    resolution = segment_service.preview_segment(db, segment)
    return _preview_out(resolution, segment_id=segment.id, sample_size=sample_size)
