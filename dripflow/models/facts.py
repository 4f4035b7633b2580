from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from dripflow.db.base import Base


class Recipient(Base):
    __tablename__ = "recipients"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    phone: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    full_name: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Purchase(Base):
    __tablename__ = "purchases"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    recipient_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("recipients.id"), nullable=True, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    purchased_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        Index("ix_purchases_recipient_purchased_at", "recipient_id", "purchased_at"),
    )


class Attendance(Base):
    __tablename__ = "attendances"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    recipient_id: Mapped[str] = mapped_column(String(36), ForeignKey("recipients.id"), nullable=False, index=True)
    item_ref: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    attended_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class PassProduct(Base):
    __tablename__ = "pass_products"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    category: Mapped[str] = mapped_column(String(40), nullable=False, index=True)


class PassOwnership(Base):
    __tablename__ = "pass_ownerships"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    recipient_id: Mapped[str] = mapped_column(String(36), ForeignKey("recipients.id"), nullable=False, index=True)
    pass_id: Mapped[str] = mapped_column(String(36), ForeignKey("pass_products.id"), nullable=False, index=True)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class EngagementScore(Base):
    __tablename__ = "engagement_scores"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    recipient_id: Mapped[str] = mapped_column(String(36), ForeignKey("recipients.id"), nullable=False)
    engagement_level: Mapped[str] = mapped_column(String(20), nullable=False, default="active", server_default="active")
    emails_opened: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    emails_clicked: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        UniqueConstraint("recipient_id", name="uq_engagement_scores_recipient"),
        Index("ix_engagement_scores_level", "engagement_level"),
    )
