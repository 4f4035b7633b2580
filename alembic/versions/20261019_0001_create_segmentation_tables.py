"""create segmentation and campaign tables

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _table_exists(inspector: sa.Inspector, table_name: str) -> bool:
    return table_name in inspector.get_table_names()


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def _updated_at() -> sa.Column:
    return sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def _create_fact_tables(inspector: sa.Inspector) -> None:
    if not _table_exists(inspector, "recipients"):
        op.create_table(
            "recipients",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("phone", sa.String(length=40), nullable=True),
            sa.Column("full_name", sa.String(length=120), nullable=True),
            _created_at(),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_recipients_email", "recipients", ["email"], unique=False)

    if not _table_exists(inspector, "purchases"):
        op.create_table(
            "purchases",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("recipient_id", sa.String(length=36), nullable=True),
            sa.Column("amount", sa.Numeric(14, 2), nullable=False),
            sa.Column("purchased_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.ForeignKeyConstraint(["recipient_id"], ["recipients.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_purchases_recipient_id", "purchases", ["recipient_id"], unique=False)
        op.create_index(
            "ix_purchases_recipient_purchased_at",
            "purchases",
            ["recipient_id", "purchased_at"],
            unique=False,
        )

    if not _table_exists(inspector, "attendances"):
        op.create_table(
            "attendances",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("recipient_id", sa.String(length=36), nullable=False),
            sa.Column("item_ref", sa.String(length=120), nullable=True),
            sa.Column("attended_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.ForeignKeyConstraint(["recipient_id"], ["recipients.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_attendances_recipient_id", "attendances", ["recipient_id"], unique=False)

    if not _table_exists(inspector, "pass_products"):
        op.create_table(
            "pass_products",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=False),
            sa.Column("category", sa.String(length=40), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_pass_products_category", "pass_products", ["category"], unique=False)

    if not _table_exists(inspector, "pass_ownerships"):
        op.create_table(
            "pass_ownerships",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("recipient_id", sa.String(length=36), nullable=False),
            sa.Column("pass_id", sa.String(length=36), nullable=False),
            sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.ForeignKeyConstraint(["recipient_id"], ["recipients.id"]),
            sa.ForeignKeyConstraint(["pass_id"], ["pass_products.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_pass_ownerships_recipient_id", "pass_ownerships", ["recipient_id"], unique=False)
        op.create_index("ix_pass_ownerships_pass_id", "pass_ownerships", ["pass_id"], unique=False)

    if not _table_exists(inspector, "engagement_scores"):
        op.create_table(
            "engagement_scores",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("recipient_id", sa.String(length=36), nullable=False),
            sa.Column("engagement_level", sa.String(length=20), nullable=False, server_default="active"),
            sa.Column("emails_opened", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("emails_clicked", sa.Integer(), nullable=False, server_default="0"),
            _updated_at(),
            sa.ForeignKeyConstraint(["recipient_id"], ["recipients.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("recipient_id", name="uq_engagement_scores_recipient"),
        )
        op.create_index("ix_engagement_scores_level", "engagement_scores", ["engagement_level"], unique=False)


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    _create_fact_tables(inspector)

    if not _table_exists(inspector, "audience_segments"):
        op.create_table(
            "audience_segments",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=False),
            sa.Column("description", sa.String(length=255), nullable=True),
            sa.Column("predicates_json", sa.JSON(), nullable=False),
            sa.Column("is_dynamic", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("estimated_size", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_calculated_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_calculation_started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("definition_version", sa.Integer(), nullable=False, server_default="1"),
            _created_at(),
            _updated_at(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("name", name="uq_audience_segments_name"),
        )
        op.create_index(
            "ix_audience_segments_dynamic_calculated_at",
            "audience_segments",
            ["is_dynamic", "last_calculated_at"],
            unique=False,
        )

    if not _table_exists(inspector, "campaigns"):
        op.create_table(
            "campaigns",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=False),
            sa.Column("description", sa.String(length=500), nullable=True),
            sa.Column("campaign_type", sa.String(length=30), nullable=False, server_default="email"),
            sa.Column("goal", sa.String(length=30), nullable=False, server_default="sales"),
            sa.Column("target_revenue", sa.Numeric(14, 2), nullable=True),
            sa.Column("start_date", sa.Date(), nullable=True),
            sa.Column("end_date", sa.Date(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="draft"),
            sa.Column("actual_audience_size", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
            _created_at(),
            _updated_at(),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_campaigns_status_created_at", "campaigns", ["status", "created_at"], unique=False)

    if not _table_exists(inspector, "campaign_steps"):
        op.create_table(
            "campaign_steps",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("campaign_id", sa.String(length=36), nullable=False),
            sa.Column("step_number", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=False),
            sa.Column("step_type", sa.String(length=30), nullable=False, server_default="message"),
            sa.Column("channel", sa.String(length=20), nullable=False),
            sa.Column("delay_days", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("delay_hours", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("delay_minutes", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("subject_line", sa.String(length=255), nullable=False, server_default=""),
            sa.Column("content", sa.Text(), nullable=False, server_default=""),
            sa.Column("cta_text", sa.String(length=120), nullable=False, server_default=""),
            sa.Column("cta_url", sa.String(length=500), nullable=False, server_default=""),
            _created_at(),
            _updated_at(),
            sa.ForeignKeyConstraint(["campaign_id"], ["campaigns.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_campaign_steps_campaign_id", "campaign_steps", ["campaign_id"], unique=False)
        op.create_index(
            "ix_campaign_steps_campaign_step_number",
            "campaign_steps",
            ["campaign_id", "step_number"],
            unique=False,
        )

    if not _table_exists(inspector, "campaign_audiences"):
        op.create_table(
            "campaign_audiences",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("campaign_id", sa.String(length=36), nullable=False),
            sa.Column("segment_id", sa.String(length=36), nullable=False),
            sa.Column("estimated_size_snapshot", sa.Integer(), nullable=False, server_default="0"),
            _created_at(),
            sa.ForeignKeyConstraint(["campaign_id"], ["campaigns.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["segment_id"], ["audience_segments.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("campaign_id", "segment_id", name="uq_campaign_audiences_campaign_segment"),
        )
        op.create_index("ix_campaign_audiences_campaign_id", "campaign_audiences", ["campaign_id"], unique=False)
        op.create_index("ix_campaign_audiences_segment_id", "campaign_audiences", ["segment_id"], unique=False)

    if not _table_exists(inspector, "campaign_sends"):
        op.create_table(
            "campaign_sends",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("campaign_id", sa.String(length=36), nullable=False),
            sa.Column("campaign_step_id", sa.String(length=36), nullable=False),
            sa.Column("recipient_id", sa.String(length=36), nullable=False),
            sa.Column("channel", sa.String(length=20), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("scheduled_send_time", sa.DateTime(timezone=True), nullable=False),
            sa.Column("enrolled_at", sa.DateTime(timezone=True), nullable=False),
            _created_at(),
            sa.ForeignKeyConstraint(["campaign_id"], ["campaigns.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["campaign_step_id"], ["campaign_steps.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("campaign_step_id", "recipient_id", name="uq_campaign_sends_step_recipient"),
        )
        op.create_index("ix_campaign_sends_campaign_id", "campaign_sends", ["campaign_id"], unique=False)
        op.create_index("ix_campaign_sends_campaign_step_id", "campaign_sends", ["campaign_step_id"], unique=False)
        op.create_index("ix_campaign_sends_recipient_id", "campaign_sends", ["recipient_id"], unique=False)
        op.create_index(
            "ix_campaign_sends_status_scheduled",
            "campaign_sends",
            ["status", "scheduled_send_time"],
            unique=False,
        )

    if not _table_exists(inspector, "audit_logs"):
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("actor", sa.String(length=120), nullable=True),
            sa.Column("action", sa.String(length=100), nullable=False),
            sa.Column("target_type", sa.String(length=100), nullable=False),
            sa.Column("target_id", sa.String(length=36), nullable=True),
            sa.Column("metadata_json", sa.JSON(), nullable=True),
            _created_at(),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_audit_logs_actor", "audit_logs", ["actor"], unique=False)
        op.create_index("ix_audit_logs_target_id", "audit_logs", ["target_id"], unique=False)
        op.create_index("ix_audit_logs_action_created_at", "audit_logs", ["action", "created_at"], unique=False)
        op.create_index(
            "ix_audit_logs_target_created_at",
            "audit_logs",
            ["target_type", "target_id", "created_at"],
            unique=False,
        )


def downgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    for table_name in (
        "audit_logs",
        "campaign_sends",
        "campaign_audiences",
        "campaign_steps",
        "campaigns",
        "audience_segments",
        "engagement_scores",
        "pass_ownerships",
        "pass_products",
        "attendances",
        "purchases",
        "recipients",
    ):
        if _table_exists(inspector, table_name):
            op.drop_table(table_name)
