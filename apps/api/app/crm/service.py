from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from sqlalchemy import Select, and_, select, update
from sqlalchemy.orm import Session, selectinload

from app import audit, events
from app.core.config import get_settings
from app.crm.analytics import (
    analytics_period_start,
    build_forecast,
    build_funnel,
    forecast_period_end,
    summarize_deals,
)
from app.crm.import_export import export_deals_csv
from app.crm.models import CRMDeal, CRMPipeline
from app.crm.pipelines import parse_pipeline_stages, serialize_pipeline_stages
from app.crm.schemas import (
    AnalyticsPeriod,
    DealChangeStageRequest,
    DealCreate,
    DealRead,
    DealSummaryRead,
    ForecastPeriod,
    ForecastRead,
    FunnelReportRead,
    PipelineCreate,
    PipelineRead,
    PipelineStageRead,
    StageClassifyRead,
)
from app.crm.stages import StageCategory, classify_stage, normalize_stage
from app.metrics import observe_deal_stage_change, observe_stage_classification


logger = logging.getLogger("app.crm.service")
tracer = trace.get_tracer("app.crm.service")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ActorUser:
    user_id: str
    company_id: uuid.UUID | None
    permissions: set[str] = field(default_factory=set)
    is_admin: bool = False
    correlation_id: str | None = None


def _require_company(actor_user: ActorUser) -> uuid.UUID:
    if actor_user.company_id is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="company context required")
    return actor_user.company_id


def _stage_template() -> str:
    return get_settings().default_stage_name_template


def classify_stage_label(stage: str | None) -> StageClassifyRead:
    category = classify_stage(stage)
    observe_stage_classification(category.value)
    return StageClassifyRead(
        stage=stage,
        normalized=normalize_stage(stage),
        category=category,
        is_closed=category is not StageCategory.OPEN,
        is_closed_won=category is StageCategory.CLOSED_WON,
        is_closed_lost=category is StageCategory.CLOSED_LOST,
    )


def parse_stage_list(raw: str | None) -> list[PipelineStageRead]:
    return [
        PipelineStageRead(name=stage.name, color=stage.color, probability=stage.probability)
        for stage in parse_pipeline_stages(raw, default_name_template=_stage_template())
    ]


class PipelineService:
    entity_type = "crm.pipeline"

    def create_pipeline(self, session: Session, actor_user: ActorUser, dto: PipelineCreate) -> PipelineRead:
        company_id = _require_company(actor_user)
        pipeline = CRMPipeline(
            company_id=company_id,
            name=dto.name.strip(),
            stages=serialize_pipeline_stages(dto.stages),
            is_default=dto.is_default,
        )
        session.add(pipeline)
        session.flush()

        if dto.is_default:
            self._unset_other_defaults(session, pipeline.id, company_id)

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(pipeline.id),
            action="create",
            before=None,
            after={"name": pipeline.name, "stages": pipeline.stages, "is_default": pipeline.is_default},
            company_id=str(company_id),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        session.refresh(pipeline)
        return self.to_read(pipeline)

    def list_pipelines(self, session: Session, actor_user: ActorUser) -> list[PipelineRead]:
        company_id = _require_company(actor_user)
        rows = session.scalars(
            select(CRMPipeline)
            .where(and_(CRMPipeline.company_id == company_id, CRMPipeline.deleted_at.is_(None)))
            .order_by(CRMPipeline.is_default.desc(), CRMPipeline.created_at.asc())
        ).all()
        return [self.to_read(pipeline) for pipeline in rows]

    def get_pipeline(self, session: Session, actor_user: ActorUser, pipeline_id: uuid.UUID) -> PipelineRead:
        return self.to_read(self.get_visible_pipeline(session, actor_user, pipeline_id))

    def get_visible_pipeline(self, session: Session, actor_user: ActorUser, pipeline_id: uuid.UUID) -> CRMPipeline:
        company_id = _require_company(actor_user)
        pipeline = session.scalar(
            select(CRMPipeline).where(
                and_(
                    CRMPipeline.id == pipeline_id,
                    CRMPipeline.company_id == company_id,
                    CRMPipeline.deleted_at.is_(None),
                )
            )
        )
        if pipeline is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="pipeline not found")
        return pipeline

    def to_read(self, pipeline: CRMPipeline) -> PipelineRead:
        return PipelineRead(
            id=pipeline.id,
            company_id=pipeline.company_id,
            name=pipeline.name,
            is_default=pipeline.is_default,
            stages=pipeline.stages,
            parsed_stages=parse_stage_list(pipeline.stages),
            created_at=pipeline.created_at,
            updated_at=pipeline.updated_at,
            row_version=pipeline.row_version,
        )

    def _unset_other_defaults(self, session: Session, pipeline_id: uuid.UUID, company_id: uuid.UUID) -> None:
        session.execute(
            update(CRMPipeline)
            .where(
                and_(
                    CRMPipeline.id != pipeline_id,
                    CRMPipeline.company_id == company_id,
                    CRMPipeline.deleted_at.is_(None),
                    CRMPipeline.is_default.is_(True),
                )
            )
            .values(is_default=False, updated_at=utcnow(), row_version=CRMPipeline.row_version + 1)
        )


class DealService:
    entity_type = "crm.deal"

    def __init__(self, pipeline_service: PipelineService | None = None) -> None:
        self.pipeline_service = pipeline_service or PipelineService()

    def create_deal(self, session: Session, actor_user: ActorUser, dto: DealCreate) -> DealRead:
        company_id = _require_company(actor_user)
        pipeline: CRMPipeline | None = None
        if dto.pipeline_id is not None:
            pipeline = self.pipeline_service.get_visible_pipeline(session, actor_user, dto.pipeline_id)

        probability = dto.probability
        if probability is None:
            probability = self._stage_probability(pipeline, dto.stage)

        deal = CRMDeal(
            company_id=company_id,
            pipeline_id=pipeline.id if pipeline is not None else None,
            title=dto.title.strip(),
            stage=dto.stage.strip(),
            amount=dto.amount,
            probability=probability,
            owner_user_id=dto.owner_user_id or actor_user.user_id,
            expected_close_date=dto.expected_close_date,
        )
        session.add(deal)
        session.flush()

        category = classify_stage(deal.stage)
        observe_stage_classification(category.value)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(deal.id),
            action="create",
            before=None,
            after={"title": deal.title, "stage": deal.stage, "category": category.value},
            company_id=str(company_id),
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            {
                "event_type": "crm.deal.created",
                "company_id": str(company_id),
                "deal_id": str(deal.id),
                "stage": deal.stage,
                "category": category.value,
                "correlation_id": actor_user.correlation_id,
            }
        )
        session.commit()
        session.refresh(deal)
        return self.to_read(deal)

    def list_deals(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        pipeline_id: uuid.UUID | None = None,
        category: StageCategory | None = None,
    ) -> list[DealRead]:
        stmt = self._visible_deals(actor_user).order_by(CRMDeal.created_at.asc())
        if pipeline_id is not None:
            stmt = stmt.where(CRMDeal.pipeline_id == pipeline_id)
        rows = session.scalars(stmt).all()
        if category is not None:
            rows = [deal for deal in rows if classify_stage(deal.stage) is category]
        return [self.to_read(deal) for deal in rows]

    def change_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        dto: DealChangeStageRequest,
    ) -> DealRead:
        deal = session.scalar(self._visible_deals(actor_user).where(CRMDeal.id == deal_id))
        if deal is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="deal not found")
        if deal.row_version != dto.row_version:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version mismatch")

        previous_stage = deal.stage
        previous_category = classify_stage(previous_stage)
        new_stage = dto.stage.strip()
        category = classify_stage(new_stage)
        observe_stage_classification(category.value)

        deal.stage = new_stage
        if dto.probability is not None:
            deal.probability = dto.probability
        else:
            pipeline = deal.pipeline
            if pipeline is not None:
                deal.probability = self._stage_probability(pipeline, new_stage, fallback=deal.probability)
        deal.row_version += 1
        deal.updated_at = utcnow()

        observe_deal_stage_change(category.value)
        logger.info(
            "deal.stage_changed",
            extra={
                "deal_id": str(deal.id),
                "stage": new_stage,
                "category": category.value,
                "previous_category": previous_category.value,
            },
        )
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(deal.id),
            action="change_stage",
            before={"stage": previous_stage, "category": previous_category.value},
            after={"stage": new_stage, "category": category.value},
            company_id=str(deal.company_id),
            correlation_id=actor_user.correlation_id,
        )

        envelope: dict[str, Any] = {
            "company_id": str(deal.company_id),
            "deal_id": str(deal.id),
            "stage": new_stage,
            "previous_stage": previous_stage,
            "category": category.value,
            "correlation_id": actor_user.correlation_id,
        }
        events.publish({"event_type": "crm.deal.stage_changed", **envelope})
        if category is not StageCategory.OPEN and category is not previous_category:
            events.publish({"event_type": f"crm.deal.{category.value}", **envelope})

        session.commit()
        session.refresh(deal)
        return self.to_read(deal)

    def export_csv(self, session: Session, actor_user: ActorUser) -> str:
        stmt = (
            self._visible_deals(actor_user)
            .options(selectinload(CRMDeal.pipeline))
            .order_by(CRMDeal.created_at.asc())
            .limit(get_settings().export_max_rows)
        )
        deals = session.scalars(stmt).all()
        logger.info("deal.export", extra={"row_count": len(deals)})
        return export_deals_csv(deals)

    def to_read(self, deal: CRMDeal) -> DealRead:
        return DealRead(
            id=deal.id,
            company_id=deal.company_id,
            pipeline_id=deal.pipeline_id,
            title=deal.title,
            stage=deal.stage,
            category=classify_stage(deal.stage),
            amount=deal.amount,
            probability=deal.probability,
            owner_user_id=deal.owner_user_id,
            expected_close_date=deal.expected_close_date,
            created_at=deal.created_at,
            updated_at=deal.updated_at,
            row_version=deal.row_version,
        )

    def _visible_deals(self, actor_user: ActorUser) -> Select[tuple[CRMDeal]]:
        company_id = _require_company(actor_user)
        return select(CRMDeal).where(and_(CRMDeal.company_id == company_id, CRMDeal.deleted_at.is_(None)))

    def _stage_probability(self, pipeline: CRMPipeline | None, stage: str, fallback: int = 0) -> int:
        if pipeline is None:
            return fallback
        for descriptor in parse_pipeline_stages(pipeline.stages, default_name_template=_stage_template()):
            if descriptor.name == stage.strip():
                return descriptor.probability
        return fallback


class DealAnalyticsService:
    def summary(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        period: AnalyticsPeriod = "month",
        pipeline_id: uuid.UUID | None = None,
        owner_user_id: str | None = None,
    ) -> DealSummaryRead:
        with tracer.start_as_current_span("crm.analytics.summary") as span:
            span.set_attribute("period", period)
            span.set_attribute("correlation_id", actor_user.correlation_id or "")
            deals = self._load_created_since(session, actor_user, period, pipeline_id, owner_user_id)
            report = summarize_deals(deals, period)
            span.set_attribute("deal_count", report.total)
        logger.info("analytics.report", extra={"report": "summary", "row_count": report.total})
        return report

    def funnel(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        period: AnalyticsPeriod = "month",
        pipeline_id: uuid.UUID | None = None,
    ) -> FunnelReportRead:
        company_id = _require_company(actor_user)
        with tracer.start_as_current_span("crm.analytics.funnel") as span:
            span.set_attribute("period", period)
            span.set_attribute("correlation_id", actor_user.correlation_id or "")
            stmt = select(CRMPipeline).where(
                and_(CRMPipeline.company_id == company_id, CRMPipeline.deleted_at.is_(None))
            )
            if pipeline_id is not None:
                stmt = stmt.where(CRMPipeline.id == pipeline_id)
            pipelines = session.scalars(stmt.order_by(CRMPipeline.is_default.desc(), CRMPipeline.created_at.asc())).all()
            deals = self._load_created_since(session, actor_user, period, pipeline_id, None)

            by_pipeline: dict[uuid.UUID, list[CRMDeal]] = {}
            for deal in deals:
                if deal.pipeline_id is not None:
                    by_pipeline.setdefault(deal.pipeline_id, []).append(deal)

            funnels = [
                build_funnel(pipeline, by_pipeline.get(pipeline.id, []), default_name_template=_stage_template())
                for pipeline in pipelines
            ]
            span.set_attribute("pipeline_count", len(funnels))
        logger.info("analytics.report", extra={"report": "funnel", "row_count": len(deals)})
        return FunnelReportRead(period=period, funnels=funnels)

    def forecast(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        period: ForecastPeriod = "month",
        pipeline_id: uuid.UUID | None = None,
        owner_user_id: str | None = None,
        today: date | None = None,
    ) -> ForecastRead:
        company_id = _require_company(actor_user)
        period_end = forecast_period_end(period, today or utcnow().date())
        with tracer.start_as_current_span("crm.analytics.forecast") as span:
            span.set_attribute("period", period)
            span.set_attribute("correlation_id", actor_user.correlation_id or "")
            stmt = select(CRMDeal).where(
                and_(
                    CRMDeal.company_id == company_id,
                    CRMDeal.deleted_at.is_(None),
                    CRMDeal.expected_close_date.is_not(None),
                    CRMDeal.expected_close_date <= period_end,
                )
            )
            if pipeline_id is not None:
                stmt = stmt.where(CRMDeal.pipeline_id == pipeline_id)
            if owner_user_id is not None:
                stmt = stmt.where(CRMDeal.owner_user_id == owner_user_id)
            report = build_forecast(session.scalars(stmt).all(), period, period_end)
            span.set_attribute("deal_count", report.total_deals)
        logger.info("analytics.report", extra={"report": "forecast", "row_count": report.total_deals})
        return report

    def _load_created_since(
        self,
        session: Session,
        actor_user: ActorUser,
        period: AnalyticsPeriod,
        pipeline_id: uuid.UUID | None,
        owner_user_id: str | None,
    ) -> list[CRMDeal]:
        company_id = _require_company(actor_user)
        stmt = select(CRMDeal).where(and_(CRMDeal.company_id == company_id, CRMDeal.deleted_at.is_(None)))
        start = analytics_period_start(period, utcnow())
        if start is not None:
            stmt = stmt.where(CRMDeal.created_at >= start)
        if pipeline_id is not None:
            stmt = stmt.where(CRMDeal.pipeline_id == pipeline_id)
        if owner_user_id is not None:
            stmt = stmt.where(CRMDeal.owner_user_id == owner_user_id)
        return list(session.scalars(stmt.order_by(CRMDeal.created_at.asc())).all())
