"""Read contracts over the raw fact tables the source resolvers consume.

Resolvers depend only on the protocols below. ``SqlFactSources`` is the
implementation backed by the platform database; tests substitute in-memory
fakes.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Protocol

from sqlalchemy import distinct, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dripflow.core.errors import SourceUnavailable
from dripflow.core.timeutils import as_utc
from dripflow.models.facts import (
    Attendance,
    EngagementScore,
    PassOwnership,
    PassProduct,
    Purchase,
    Recipient,
)


@dataclass(frozen=True)
class PurchaseFact:
    recipient_id: str
    amount: float
    purchased_at: datetime


@dataclass(frozen=True)
class EngagementSnapshot:
    recipient_id: str
    level: str
    email_opens: int
    email_clicks: int


class RecipientDirectory(Protocol):
    def all_recipient_ids(self) -> set[str]:
        ...


class PurchaseSource(Protocol):
    def purchases(self) -> Iterable[PurchaseFact]:
        ...


class AttendanceSource(Protocol):
    def attendance_counts(self) -> dict[str, int]:
        ...


class PassOwnershipSource(Protocol):
    def pass_holders(self, category: str) -> set[str]:
        ...


class EngagementSource(Protocol):
    def snapshots(self) -> Iterable[EngagementSnapshot]:
        ...


class FactSources(RecipientDirectory, PurchaseSource, AttendanceSource, PassOwnershipSource, EngagementSource, Protocol):
    pass


class SqlFactSources:
    """All fact contracts served from one SQLAlchemy session.

    Driver and pool errors are surfaced as ``SourceUnavailable`` naming the
    source, so an outage is never mistaken for an empty result.
    """

    def __init__(self, db: Session):
        self.db = db

    def _execute(self, source: str, stmt):
        try:
            return self.db.execute(stmt).all()
        except SQLAlchemyError as exc:
            raise SourceUnavailable(source, str(exc).splitlines()[0][:200]) from exc

    def all_recipient_ids(self) -> set[str]:
        rows = self._execute("recipients", select(Recipient.id))
        return {row[0] for row in rows}

    def purchases(self) -> list[PurchaseFact]:
        rows = self._execute(
            "purchases",
            select(Purchase.recipient_id, Purchase.amount, Purchase.purchased_at).where(
                Purchase.recipient_id.is_not(None)
            ),
        )
        return [
            PurchaseFact(
                recipient_id=recipient_id,
                amount=float(amount or 0),
                purchased_at=as_utc(purchased_at),
            )
            for recipient_id, amount, purchased_at in rows
        ]

    def attendance_counts(self) -> dict[str, int]:
        rows = self._execute(
            "attendances",
            select(Attendance.recipient_id, func.count(Attendance.id)).group_by(Attendance.recipient_id),
        )
        return {recipient_id: int(count) for recipient_id, count in rows}

    def pass_holders(self, category: str) -> set[str]:
        rows = self._execute(
            "pass_ownerships",
            select(distinct(PassOwnership.recipient_id))
            .join(PassProduct, PassProduct.id == PassOwnership.pass_id)
            .where(PassProduct.category == category),
        )
        return {row[0] for row in rows}

    def snapshots(self) -> list[EngagementSnapshot]:
        rows = self._execute(
            "engagement_scores",
            select(
                EngagementScore.recipient_id,
                EngagementScore.engagement_level,
                EngagementScore.emails_opened,
                EngagementScore.emails_clicked,
            ),
        )
        return [
            EngagementSnapshot(
                recipient_id=recipient_id,
                level=level,
                email_opens=int(opened or 0),
                email_clicks=int(clicked or 0),
            )
            for recipient_id, level, opened, clicked in rows
        ]
