import json
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session, sessionmaker

from dripflow.core.config import settings
from dripflow.core.errors import ConflictError, NotFoundError, SegmentationError
from dripflow.core.id_utils import generate_shortuuid
from dripflow.core.timeutils import as_utc, utcnow
from dripflow.models.campaign import CampaignAudience
from dripflow.models.segment import AudienceSegment
from dripflow.services.audience_service import detach_segment_everywhere
from dripflow.services.audit_service import log_audit_event
from dripflow.services.predicate_catalog import validate_predicates
from dripflow.services.segment_resolver import SegmentResolution, resolve_segment
from dripflow.services.source_resolvers import ResolverRegistry, build_sql_registry

logger = logging.getLogger("dripflow.segments")

RegistryFactory = Callable[[Session], ResolverRegistry]


def get_segment_or_404(db: Session, segment_id: str) -> AudienceSegment:
    row = db.execute(select(AudienceSegment).where(AudienceSegment.id == segment_id)).scalar_one_or_none()
    if not row:
        raise NotFoundError("Segment not found")
    return row


def _ensure_unique_name(db: Session, name: str, *, exclude_id: str | None = None) -> None:
    stmt = select(AudienceSegment.id).where(func.lower(AudienceSegment.name) == name.strip().lower())
    if exclude_id:
        stmt = stmt.where(AudienceSegment.id != exclude_id)
    if db.execute(stmt).scalar_one_or_none():
        raise ConflictError("Segment name already exists")


def create_segment(
    db: Session,
    *,
    name: str,
    description: str | None,
    predicates: list[Mapping[str, Any]],
    is_dynamic: bool = False,
    actor: str | None = None,
) -> AudienceSegment:
    validated = validate_predicates(predicates)
    _ensure_unique_name(db, name)

    segment = AudienceSegment(
        id=generate_shortuuid(),
        name=name.strip(),
        description=description,
        predicates_json=[predicate.as_json() for predicate in validated],
        is_dynamic=is_dynamic,
        estimated_size=0,
        last_calculated_at=None,
        definition_version=1,
    )
    db.add(segment)
    log_audit_event(
        db,
        action="segment.create",
        target_type="audience_segment",
        target_id=segment.id,
        actor=actor,
        metadata_json={"name": segment.name, "predicates": len(validated), "is_dynamic": is_dynamic},
    )
    db.flush()
    return segment


def update_segment(
    db: Session,
    segment: AudienceSegment,
    *,
    name: str | None = None,
    description: str | None = None,
    predicates: list[Mapping[str, Any]] | None = None,
    is_dynamic: bool | None = None,
    actor: str | None = None,
) -> AudienceSegment:
    validated = validate_predicates(predicates) if predicates is not None else None
    if name is not None and name.strip().lower() != segment.name.lower():
        _ensure_unique_name(db, name, exclude_id=segment.id)

    if name is not None:
        segment.name = name.strip()
    if description is not None:
        segment.description = description
    if is_dynamic is not None:
        segment.is_dynamic = is_dynamic
    if validated is not None:
        segment.predicates_json = [predicate.as_json() for predicate in validated]
        segment.definition_version += 1

    log_audit_event(
        db,
        action="segment.update",
        target_type="audience_segment",
        target_id=segment.id,
        actor=actor,
        metadata_json={
            "name": segment.name,
            "definition_version": segment.definition_version,
            "predicates_changed": validated is not None,
        },
    )
    db.flush()
    return segment


def delete_segment(db: Session, segment: AudienceSegment, *, actor: str | None = None) -> list[str]:
    """Remove a segment together with the campaign audiences that reference it.

    Returns the ids of the campaigns whose audience rollup was recomputed.
    """
    affected = detach_segment_everywhere(db, segment_id=segment.id, actor=actor)
    log_audit_event(
        db,
        action="segment.delete",
        target_type="audience_segment",
        target_id=segment.id,
        actor=actor,
        metadata_json={"name": segment.name, "affected_campaigns": affected},
    )
    db.delete(segment)
    db.flush()
    return affected


def preview_segment(db: Session, segment: AudienceSegment, *, registry: ResolverRegistry | None = None) -> SegmentResolution:
    return resolve_segment(segment.predicates_json, registry or build_sql_registry(db))


def recalculate_segment(
    db: Session,
    segment_id: str,
    *,
    registry: ResolverRegistry | None = None,
    actor: str | None = None,
) -> int:
    """Resolve the segment and store its size.

    The write is a single conditional UPDATE keyed on the definition version
    seen at start and on the start time of the stored result; a computation
    that started before the stored one loses and the stored size is returned.
    """
    segment = get_segment_or_404(db, segment_id)
    seen_version = segment.definition_version
    started_at = utcnow()

    resolution = resolve_segment(segment.predicates_json, registry or build_sql_registry(db))
    calculated_at = utcnow()

    result = db.execute(
        update(AudienceSegment)
        .where(
            AudienceSegment.id == segment_id,
            AudienceSegment.definition_version == seen_version,
            or_(
                AudienceSegment.last_calculation_started_at.is_(None),
                AudienceSegment.last_calculation_started_at <= started_at,
            ),
        )
        .values(
            estimated_size=resolution.count,
            last_calculated_at=calculated_at,
            last_calculation_started_at=started_at,
        )
        .execution_options(synchronize_session=False)
    )
    db.refresh(segment)

    if result.rowcount == 0:
        if segment.definition_version != seen_version:
            raise ConflictError("Segment predicates changed while it was being recalculated")
        logger.info(
            json.dumps(
                {
                    "event": "segment.recalculate_superseded",
                    "segment_id": segment_id,
                    "stored_size": segment.estimated_size,
                }
            )
        )
        return segment.estimated_size

    log_audit_event(
        db,
        action="segment.recalculate",
        target_type="audience_segment",
        target_id=segment_id,
        actor=actor,
        metadata_json={"estimated_size": resolution.count, "short_circuited": resolution.short_circuited},
    )
    logger.info(
        json.dumps(
            {
                "event": "segment.recalculated",
                "segment_id": segment_id,
                "estimated_size": resolution.count,
                "evaluated_fields": list(resolution.evaluated_fields),
                "duration_ms": round((calculated_at - started_at).total_seconds() * 1000, 2),
            }
        )
    )
    return resolution.count


def recalculate_all_segments(
    session_factory: sessionmaker,
    *,
    max_workers: int | None = None,
    registry_factory: RegistryFactory | None = None,
    actor: str | None = None,
) -> list[dict[str, Any]]:
    """Recalculate every stored segment in-process.

    Each segment runs in its own session on a bounded worker pool; a failure
    is recorded on that segment's entry and never aborts the batch.
    """
    with session_factory() as db:
        rows = db.execute(
            select(AudienceSegment.id, AudienceSegment.name).order_by(AudienceSegment.created_at, AudienceSegment.id)
        ).all()
    if not rows:
        return []

    factory = registry_factory or build_sql_registry

    def _recalculate_one(segment_id: str, name: str) -> dict[str, Any]:
        db = session_factory()
        try:
            size = recalculate_segment(db, segment_id, registry=factory(db), actor=actor)
            db.commit()
            return {"id": segment_id, "name": name, "size": size, "error": None, "error_code": None}
        except Exception as exc:  # noqa: BLE001
            db.rollback()
            code = exc.code if isinstance(exc, SegmentationError) else "internal_error"
            logger.warning(
                json.dumps(
                    {
                        "event": "segment.recalculate_failed",
                        "segment_id": segment_id,
                        "error_code": code,
                        "error": str(exc)[:255],
                    }
                )
            )
            return {"id": segment_id, "name": name, "size": None, "error": str(exc)[:255], "error_code": code}
        finally:
            db.close()

    workers = max(1, min(max_workers or settings.segment_recalc_max_workers, len(rows)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="segment-recalc") as pool:
        return list(pool.map(lambda row: _recalculate_one(row[0], row[1]), rows))


def is_stale(segment: AudienceSegment, *, now: datetime | None = None) -> bool:
    if segment.last_calculated_at is None:
        return True
    max_age = timedelta(minutes=settings.dynamic_segment_max_age_minutes)
    return as_utc(segment.last_calculated_at) < (now or utcnow()) - max_age


def refresh_if_stale(
    db: Session,
    segment: AudienceSegment,
    *,
    registry: ResolverRegistry | None = None,
) -> bool:
    """Dynamic segments are recalculated on read once their cached size ages out."""
    if not segment.is_dynamic or not is_stale(segment):
        return False
    recalculate_segment(db, segment.id, registry=registry)
    return True


def audience_usage(db: Session, segment_id: str) -> int:
    return int(
        db.execute(
            select(func.count(CampaignAudience.id)).where(CampaignAudience.segment_id == segment_id)
        ).scalar_one()
    )
