from datetime import date, datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from dripflow.schemas.common import PaginationMeta


CampaignStatus = Literal["draft", "active", "paused", "completed", "archived"]
CampaignType = Literal["email", "multi_channel", "event_promo", "seasonal", "re_engagement"]
CampaignGoal = Literal["sales", "engagement", "awareness", "retention"]
StepChannel = Literal["email", "sms", "whatsapp"]
StepType = Literal["message", "reminder", "follow_up"]
SendStatus = Literal["pending", "sent", "failed", "cancelled"]


class CampaignCreateIn(BaseModel):
    name: str = Field(min_length=2, max_length=120)
    description: str | None = Field(default=None, max_length=500)
    campaign_type: CampaignType = "email"
    goal: CampaignGoal = "sales"
    target_revenue: Decimal | None = Field(default=None, ge=0)
    start_date: date | None = None
    end_date: date | None = None


class CampaignUpdateIn(BaseModel):
    name: str | None = Field(default=None, min_length=2, max_length=120)
    description: str | None = Field(default=None, max_length=500)
    campaign_type: CampaignType | None = None
    goal: CampaignGoal | None = None
    target_revenue: Decimal | None = Field(default=None, ge=0)
    start_date: date | None = None
    end_date: date | None = None

    @model_validator(mode="after")
    def validate_has_field(self) -> "CampaignUpdateIn":
        if not self.model_fields_set:
            raise ValueError("At least one field must be provided")
        return self


class CampaignOut(BaseModel):
    id: str
    name: str
    description: str | None = None
    campaign_type: CampaignType
    goal: CampaignGoal
    target_revenue: Decimal | None = None
    start_date: date | None = None
    end_date: date | None = None
    status: CampaignStatus
    actual_audience_size: int
    step_count: int = 0
    audience_count: int = 0
    activated_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class CampaignListOut(BaseModel):
    items: list[CampaignOut]
    pagination: PaginationMeta
    status: CampaignStatus | None = None


class CampaignTransitionIn(BaseModel):
    status: CampaignStatus


class CampaignStatsOut(BaseModel):
    draft: int
    active: int
    paused: int
    completed: int
    archived: int
    total: int


class CampaignStepCreateIn(BaseModel):
    channel: StepChannel
    step_type: StepType = "message"
    name: str | None = Field(default=None, max_length=120)


class CampaignStepUpdateIn(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    step_type: StepType | None = None
    delay_days: int | None = Field(default=None, ge=0, le=3650)
    delay_hours: int | None = Field(default=None, ge=0, le=87_600)
    delay_minutes: int | None = Field(default=None, ge=0, le=5_256_000)
    subject_line: str | None = Field(default=None, max_length=255)
    content: str | None = Field(default=None, max_length=10_000)
    cta_text: str | None = Field(default=None, max_length=120)
    cta_url: str | None = Field(default=None, max_length=500)

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def validate_has_field(self) -> "CampaignStepUpdateIn":
        if not self.model_fields_set:
            raise ValueError("At least one field must be provided")
        return self


class CampaignStepOut(BaseModel):
    id: str
    campaign_id: str
    step_number: int
    name: str
    step_type: StepType
    channel: StepChannel
    delay_days: int
    delay_hours: int
    delay_minutes: int
    subject_line: str
    content: str
    cta_text: str
    cta_url: str


class CampaignStepListOut(BaseModel):
    campaign_id: str
    items: list[CampaignStepOut]


class ScheduleIn(BaseModel):
    enrollment_time: datetime | None = None


class ScheduledStepOut(BaseModel):
    step_id: str | None = None
    step_number: int
    channel: StepChannel | None = None
    offset_minutes: int
    fire_at: datetime


class ScheduleOut(BaseModel):
    campaign_id: str
    enrollment_time: datetime
    steps: list[ScheduledStepOut]


class CampaignAudienceCreateIn(BaseModel):
    segment_id: str = Field(min_length=1, max_length=36)


class CampaignAudienceOut(BaseModel):
    id: str
    campaign_id: str
    segment_id: str
    segment_name: str | None = None
    estimated_size_snapshot: int
    created_at: datetime


class CampaignAudienceListOut(BaseModel):
    campaign_id: str
    actual_audience_size: int
    items: list[CampaignAudienceOut]


class EnrollIn(BaseModel):
    enrollment_time: datetime | None = None
    test_mode: bool = False
    limit: int | None = Field(default=None, ge=1, le=100_000)


class EnrollOut(BaseModel):
    campaign_id: str
    test_mode: bool
    total_recipients: int
    total_steps: int
    total_scheduled: int
    skipped_existing: int


class CampaignSendOut(BaseModel):
    id: str
    campaign_id: str
    campaign_step_id: str
    recipient_id: str
    channel: StepChannel
    status: SendStatus
    scheduled_send_time: datetime
    enrolled_at: datetime


class CampaignSendListOut(BaseModel):
    items: list[CampaignSendOut]
    pagination: PaginationMeta
    status: SendStatus | None = None


class DueSendsOut(BaseModel):
    items: list[CampaignSendOut]
    count: int


class SendMetricsOut(BaseModel):
    campaign_id: str | None = None
    total_sends: int
    by_status: dict[str, int]
    by_channel: dict[str, int]
    delivery_rate: float
    failure_rate: float


class CampaignAnalyticsOverviewOut(BaseModel):
    campaigns: CampaignStatsOut
    sends: SendMetricsOut
