from __future__ import annotations

import calendar
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from app.crm.models import CRMDeal, CRMPipeline
from app.crm.pipelines import DEFAULT_STAGE_NAME_TEMPLATE, PipelineStageDescriptor, parse_pipeline_stages
from app.crm.schemas import (
    AnalyticsPeriod,
    DealSummaryRead,
    ForecastDealRead,
    ForecastPeriod,
    ForecastRead,
    ForecastStageRead,
    FunnelRead,
    FunnelStageRead,
    ManagerPerformanceRead,
    StageBreakdownRead,
)
from app.crm.stages import StageCategory, classify_stage


_CENT = Decimal("0.01")
FORECAST_SPREAD = 20


@dataclass
class _Tally:
    count: int = 0
    won: int = 0
    amount: Decimal = field(default_factory=lambda: Decimal("0"))
    revenue: Decimal = field(default_factory=lambda: Decimal("0"))
    forecast: Decimal = field(default_factory=lambda: Decimal("0"))


def _money(value: Decimal) -> Decimal:
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def _amount(deal: CRMDeal) -> Decimal:
    return Decimal(deal.amount or 0)


def _percent(part: int, whole: int) -> float:
    if whole <= 0:
        return 0.0
    return part / whole * 100


def _weighted(amount: Decimal, probability: int) -> Decimal:
    return amount * Decimal(probability) / Decimal(100)


def shift_months(value: date, months: int) -> date:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def analytics_period_start(period: AnalyticsPeriod, now: datetime) -> datetime | None:
    if period == "week":
        return now - timedelta(days=7)
    if period == "month":
        return shift_months(now, -1)
    if period == "year":
        return shift_months(now, -12)
    return None


def forecast_period_end(period: ForecastPeriod, today: date) -> date:
    if period == "week":
        return today + timedelta(days=7)
    if period == "quarter":
        return shift_months(today, 3)
    if period == "year":
        return shift_months(today, 12)
    return shift_months(today, 1)


def summarize_deals(deals: Sequence[CRMDeal], period: AnalyticsPeriod = "all") -> DealSummaryRead:
    """Outcome totals, per-stage breakdown and per-owner performance for a deal set."""
    total = len(deals)
    outcomes = _Tally()
    lost = _Tally()
    everything = _Tally()
    stages: dict[str, tuple[StageCategory, _Tally]] = {}
    managers: dict[str | None, _Tally] = {}

    for deal in deals:
        category = classify_stage(deal.stage)
        amount = _amount(deal)
        everything.amount += amount

        _, stage_tally = stages.setdefault(deal.stage, (category, _Tally()))
        stage_tally.count += 1

        manager = managers.setdefault(deal.owner_user_id, _Tally())
        manager.count += 1

        if category is StageCategory.CLOSED_WON:
            outcomes.won += 1
            outcomes.revenue += amount
            manager.won += 1
            manager.revenue += amount
        elif category is StageCategory.CLOSED_LOST:
            lost.count += 1
            lost.amount += amount

    manager_rows = sorted(
        (
            ManagerPerformanceRead(
                owner_user_id=owner,
                total_deals=tally.count,
                won_deals=tally.won,
                revenue=_money(tally.revenue),
                conversion=_percent(tally.won, tally.count),
            )
            for owner, tally in managers.items()
        ),
        key=lambda row: row.revenue,
        reverse=True,
    )

    return DealSummaryRead(
        period=period,
        total=total,
        active=total - outcomes.won - lost.count,
        won=outcomes.won,
        lost=lost.count,
        total_amount=_money(everything.amount),
        won_amount=_money(outcomes.revenue),
        lost_amount=_money(lost.amount),
        win_rate=_percent(outcomes.won, total),
        by_stage=[
            StageBreakdownRead(stage=stage, category=category, count=tally.count, share=_percent(tally.count, total))
            for stage, (category, tally) in stages.items()
        ],
        managers=manager_rows,
    )


def build_funnel(
    pipeline: CRMPipeline,
    deals: Iterable[CRMDeal],
    *,
    default_name_template: str = DEFAULT_STAGE_NAME_TEMPLATE,
) -> FunnelRead:
    """Deal counts per configured stage of one pipeline, in pipeline order.

    Deals whose label is not one of the configured stage names are left out
    of the stage totals but still count towards ``won`` when their label
    classifies as won.
    """
    buckets: dict[str, tuple[PipelineStageDescriptor, _Tally]] = {}
    for descriptor in parse_pipeline_stages(pipeline.stages, default_name_template=default_name_template):
        buckets.setdefault(descriptor.name, (descriptor, _Tally()))

    total = 0
    won = 0
    for deal in deals:
        bucket = buckets.get(deal.stage)
        if bucket is not None:
            bucket[1].count += 1
            bucket[1].amount += _amount(deal)
            total += 1
        if classify_stage(deal.stage) is StageCategory.CLOSED_WON:
            won += 1

    ordered = list(buckets.values())
    stages: list[FunnelStageRead] = []
    for position, (descriptor, tally) in enumerate(ordered):
        conversion: float | None = None
        if position + 1 < len(ordered) and tally.count > 0:
            conversion = _percent(ordered[position + 1][1].count, tally.count)
        stages.append(
            FunnelStageRead(
                name=descriptor.name,
                color=descriptor.color,
                probability=descriptor.probability,
                count=tally.count,
                amount=_money(tally.amount),
                conversion=conversion,
            )
        )

    return FunnelRead(
        pipeline_id=pipeline.id,
        pipeline_name=pipeline.name,
        stages=stages,
        total=total,
        won=won,
        conversion=_percent(won, total),
    )


def build_forecast(deals: Iterable[CRMDeal], period: ForecastPeriod, period_end: date) -> ForecastRead:
    """Probability-weighted revenue forecast over the open deals of a set."""
    open_deals = [deal for deal in deals if classify_stage(deal.stage) is StageCategory.OPEN]

    totals = _Tally()
    optimistic = Decimal("0")
    pessimistic = Decimal("0")
    stages: dict[str, _Tally] = {}
    rows: list[ForecastDealRead] = []

    for deal in open_deals:
        amount = _amount(deal)
        probability = deal.probability or 0
        forecast = _weighted(amount, probability)

        totals.amount += amount
        totals.forecast += forecast
        optimistic += _weighted(amount, min(probability + FORECAST_SPREAD, 100))
        pessimistic += _weighted(amount, max(probability - FORECAST_SPREAD, 0))

        stage = stages.setdefault(deal.stage, _Tally())
        stage.count += 1
        stage.amount += amount
        stage.forecast += forecast

        rows.append(
            ForecastDealRead(
                id=deal.id,
                title=deal.title,
                stage=deal.stage,
                amount=_money(amount),
                probability=probability,
                forecast=_money(forecast),
                expected_close_date=deal.expected_close_date,
                owner_user_id=deal.owner_user_id,
            )
        )

    rows.sort(key=lambda row: row.forecast, reverse=True)

    return ForecastRead(
        period=period,
        period_end=period_end,
        total_deals=len(open_deals),
        total_amount=_money(totals.amount),
        weighted_forecast=_money(totals.forecast),
        optimistic_forecast=_money(optimistic),
        pessimistic_forecast=_money(pessimistic),
        by_stage=[
            ForecastStageRead(
                stage=stage,
                count=tally.count,
                total_amount=_money(tally.amount),
                forecast=_money(tally.forecast),
            )
            for stage, tally in stages.items()
        ],
        deals=rows,
    )
