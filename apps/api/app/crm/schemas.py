from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.crm.stages import StageCategory


AnalyticsPeriod = Literal["week", "month", "year", "all"]
ForecastPeriod = Literal["week", "month", "quarter", "year"]


class StageClassifyRequest(BaseModel):
    stage: str | None = None


class StageClassifyRead(BaseModel):
    stage: str | None
    normalized: str
    category: StageCategory
    is_closed: bool
    is_closed_won: bool
    is_closed_lost: bool


class PipelineStagesParseRequest(BaseModel):
    stages: str | None = None


class PipelineStageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    color: str | None = None
    probability: int = Field(ge=0, le=100)


class PipelineCreate(BaseModel):
    name: str = Field(min_length=1)
    stages: str | list[Any]
    is_default: bool = False

    @field_validator("stages")
    @classmethod
    def _stages_not_blank(cls, value: str | list[Any]) -> str | list[Any]:
        if isinstance(value, str) and not value.strip():
            raise ValueError("stages must not be empty")
        return value


class PipelineRead(BaseModel):
    id: UUID
    company_id: UUID
    name: str
    is_default: bool
    stages: str
    parsed_stages: list[PipelineStageRead] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    row_version: int


class DealCreate(BaseModel):
    title: str = Field(min_length=1)
    stage: str = ""
    amount: Decimal = Field(default=Decimal("0"), ge=0)
    probability: int | None = Field(default=None, ge=0, le=100)
    pipeline_id: UUID | None = None
    owner_user_id: str | None = None
    expected_close_date: date | None = None


class DealChangeStageRequest(BaseModel):
    stage: str
    row_version: int = Field(ge=1)
    probability: int | None = Field(default=None, ge=0, le=100)


class DealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    company_id: UUID
    pipeline_id: UUID | None
    title: str
    stage: str
    category: StageCategory
    amount: Decimal
    probability: int
    owner_user_id: str | None
    expected_close_date: date | None
    created_at: datetime
    updated_at: datetime
    row_version: int


class StageBreakdownRead(BaseModel):
    stage: str
    category: StageCategory
    count: int
    share: float


class ManagerPerformanceRead(BaseModel):
    owner_user_id: str | None
    total_deals: int
    won_deals: int
    revenue: Decimal
    conversion: float


class DealSummaryRead(BaseModel):
    period: AnalyticsPeriod
    total: int
    active: int
    won: int
    lost: int
    total_amount: Decimal
    won_amount: Decimal
    lost_amount: Decimal
    win_rate: float
    by_stage: list[StageBreakdownRead]
    managers: list[ManagerPerformanceRead]


class FunnelStageRead(BaseModel):
    name: str
    color: str | None
    probability: int
    count: int
    amount: Decimal
    conversion: float | None


class FunnelRead(BaseModel):
    pipeline_id: UUID
    pipeline_name: str
    stages: list[FunnelStageRead]
    total: int
    won: int
    conversion: float


class FunnelReportRead(BaseModel):
    period: AnalyticsPeriod
    funnels: list[FunnelRead]


class ForecastStageRead(BaseModel):
    stage: str
    count: int
    total_amount: Decimal
    forecast: Decimal


class ForecastDealRead(BaseModel):
    id: UUID
    title: str
    stage: str
    amount: Decimal
    probability: int
    forecast: Decimal
    expected_close_date: date | None
    owner_user_id: str | None


class ForecastRead(BaseModel):
    period: ForecastPeriod
    period_end: date
    total_deals: int
    total_amount: Decimal
    weighted_forecast: Decimal
    optimistic_forecast: Decimal
    pessimistic_forecast: Decimal
    by_stage: list[ForecastStageRead]
    deals: list[ForecastDealRead]
