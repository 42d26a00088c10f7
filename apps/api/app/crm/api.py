from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.database import get_db
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
    PipelineStagesParseRequest,
    StageClassifyRead,
    StageClassifyRequest,
)
from app.crm.service import (
    ActorUser,
    DealAnalyticsService,
    DealService,
    PipelineService,
    classify_stage_label,
    parse_stage_list,
)
from app.crm.stages import StageCategory

stages_router = APIRouter(prefix="/api/crm", tags=["crm.stages"])
pipelines_router = APIRouter(prefix="/api/crm", tags=["crm.pipelines"])
deals_router = APIRouter(prefix="/api/crm", tags=["crm.deals"])
analytics_router = APIRouter(prefix="/api/crm/analytics", tags=["crm.analytics"])
export_router = APIRouter(prefix="/api/crm/export", tags=["crm.export"])
pipeline_service = PipelineService()
deal_service = DealService(pipeline_service)
analytics_service = DealAnalyticsService()


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _parse_company_id(raw: str | None) -> uuid.UUID | None:
    if not raw:
        return None
    try:
        return uuid.UUID(raw)
    except ValueError:
        return None


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    company_id = _parse_company_id(auth_user.company_id)
    if company_id is None:
        company_id = _parse_company_id(getattr(getattr(request.state, "context", None), "company_id", None))

    normalized_roles = {str(role).lower() for role in auth_user.roles}
    return ActorUser(
        user_id=auth_user.sub,
        company_id=company_id,
        permissions=set(auth_user.roles),
        is_admin="admin" in normalized_roles,
        correlation_id=correlation_id,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


def require_any_permission(user: ActorUser, permissions: list[str]) -> None:
    if not any(permission in user.permissions for permission in permissions):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {' or '.join(permissions)}")


def _owner_filter(user: ActorUser, owner_user_id: str | None) -> str | None:
    # Only admins may look at another manager's numbers; everyone else sees their own.
    if user.is_admin:
        return owner_user_id
    if owner_user_id is not None and owner_user_id != user.user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="cannot read another user's analytics")
    return owner_user_id


@stages_router.post("/stages/classify", response_model=StageClassifyRead)
def classify_stage_endpoint(
    request: Request,
    dto: StageClassifyRequest,
    user: ActorUser = Depends(get_current_user),
) -> StageClassifyRead | JSONResponse:
    try:
        require_any_permission(user, ["crm.deals.read", "crm.pipelines.read"])
        return classify_stage_label(dto.stage)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_stage_classify_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@pipelines_router.post("/pipelines/stages/parse", response_model=list[PipelineStageRead])
def parse_pipeline_stages_endpoint(
    request: Request,
    dto: PipelineStagesParseRequest,
    user: ActorUser = Depends(get_current_user),
) -> list[PipelineStageRead] | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.read")
        return parse_stage_list(dto.stages)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_pipeline_stages_parse_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@pipelines_router.post("/pipelines", response_model=PipelineRead, status_code=status.HTTP_201_CREATED)
def create_pipeline(
    request: Request,
    dto: PipelineCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return pipeline_service.create_pipeline(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_pipeline_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@pipelines_router.get("/pipelines", response_model=list[PipelineRead])
def list_pipelines(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PipelineRead] | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.read")
        return pipeline_service.list_pipelines(db, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_pipeline_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@pipelines_router.get("/pipelines/{pipeline_id}", response_model=PipelineRead)
def get_pipeline(
    request: Request,
    pipeline_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.read")
        return pipeline_service.get_pipeline(db, user, pipeline_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_pipeline_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.post("/deals", response_model=DealRead, status_code=status.HTTP_201_CREATED)
def create_deal(
    request: Request,
    dto: DealCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.write")
        return deal_service.create_deal(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.get("/deals", response_model=list[DealRead])
def list_deals(
    request: Request,
    pipeline_id: uuid.UUID | None = Query(default=None),
    category: StageCategory | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[DealRead] | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return deal_service.list_deals(db, user, pipeline_id=pipeline_id, category=category)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.post("/deals/{deal_id}/stage", response_model=DealRead)
def change_deal_stage(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealChangeStageRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.write")
        return deal_service.change_stage(db, user, deal_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_change_stage_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@analytics_router.get("/deals", response_model=DealSummaryRead)
def deal_summary(
    request: Request,
    period: AnalyticsPeriod = Query(default="month"),
    pipeline_id: uuid.UUID | None = Query(default=None),
    owner_user_id: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealSummaryRead | JSONResponse:
    try:
        require_permission(user, "crm.analytics.read")
        return analytics_service.summary(
            db,
            user,
            period=period,
            pipeline_id=pipeline_id,
            owner_user_id=_owner_filter(user, owner_user_id),
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_analytics_summary_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@analytics_router.get("/funnel", response_model=FunnelReportRead)
def deal_funnel(
    request: Request,
    period: AnalyticsPeriod = Query(default="month"),
    pipeline_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FunnelReportRead | JSONResponse:
    try:
        require_permission(user, "crm.analytics.read")
        return analytics_service.funnel(db, user, period=period, pipeline_id=pipeline_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_analytics_funnel_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@analytics_router.get("/forecast", response_model=ForecastRead)
def deal_forecast(
    request: Request,
    period: ForecastPeriod = Query(default="month"),
    pipeline_id: uuid.UUID | None = Query(default=None),
    owner_user_id: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ForecastRead | JSONResponse:
    try:
        require_permission(user, "crm.analytics.read")
        return analytics_service.forecast(
            db,
            user,
            period=period,
            pipeline_id=pipeline_id,
            owner_user_id=_owner_filter(user, owner_user_id),
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_analytics_forecast_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@export_router.get("/deals")
def export_deals(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "crm.export.execute")
        content = deal_service.export_csv(db, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_export_deals_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    return Response(
        content=content.encode("utf-8"),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": 'attachment; filename="deals.csv"'},
    )
