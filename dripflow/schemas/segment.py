from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from dripflow.schemas.common import PaginationMeta


class PredicateIn(BaseModel):
    field: str = Field(min_length=1, max_length=60)
    operator: str = Field(min_length=1, max_length=30)
    value: Any = None

    model_config = ConfigDict(
        json_schema_extra={"example": {"field": "total_spent", "operator": "greater_than", "value": 100}}
    )


class PredicateOut(BaseModel):
    field: str
    operator: str
    value: Any = None


class CatalogFieldOut(BaseModel):
    field: str
    label: str
    type: str
    operators: list[str]
    options: list[str] = Field(default_factory=list)


class CatalogOut(BaseModel):
    fields: list[CatalogFieldOut]


class SegmentCreateIn(BaseModel):
    name: str = Field(min_length=2, max_length=120)
    description: str | None = Field(default=None, max_length=255)
    predicates: list[PredicateIn] = Field(default_factory=list)
    is_dynamic: bool = False


class SegmentUpdateIn(BaseModel):
    name: str | None = Field(default=None, min_length=2, max_length=120)
    description: str | None = Field(default=None, max_length=255)
    predicates: list[PredicateIn] | None = None
    is_dynamic: bool | None = None

    @model_validator(mode="after")
    def validate_has_field(self) -> "SegmentUpdateIn":
        if self.name is None and self.description is None and self.predicates is None and self.is_dynamic is None:
            raise ValueError("At least one field must be provided")
        return self


class SegmentOut(BaseModel):
    id: str
    name: str
    description: str | None = None
    predicates: list[PredicateOut]
    is_dynamic: bool
    estimated_size: int
    last_calculated_at: datetime | None = None
    definition_version: int
    campaigns_using: int = 0
    created_at: datetime
    updated_at: datetime


class SegmentListOut(BaseModel):
    items: list[SegmentOut]
    pagination: PaginationMeta


class SegmentResolveIn(BaseModel):
    predicates: list[PredicateIn] = Field(default_factory=list)
    sample_size: int = Field(default=20, ge=0, le=500)


class SegmentPreviewOut(BaseModel):
    segment_id: str | None = None
    total_recipients: int
    recipient_ids: list[str]
    evaluated_fields: list[str]
    short_circuited: bool


class SegmentRecalculateOut(BaseModel):
    segment_id: str
    estimated_size: int
    last_calculated_at: datetime | None = None
    definition_version: int


class RecalculateResultOut(BaseModel):
    id: str
    name: str
    size: int | None = None
    error: str | None = None
    error_code: str | None = None


class RecalculateAllOut(BaseModel):
    results: list[RecalculateResultOut]
    succeeded: int
    failed: int


class SegmentDeleteOut(BaseModel):
    segment_id: str
    affected_campaign_ids: list[str]
