"""
Performance Controllers (API Routes)
====================================

FastAPI routes for contract performance endpoints.

Controllers are thin - they delegate to application services. Application
exceptions propagate to the handlers registered in ``src.main``.
"""

from dataclasses import asdict
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, status

from src.config import AT_RISK_STATUSES, MeasurementPeriod, MetricType, PerformanceStatus
from src.core import ValidationException
from src.performance.application import (
    CalculatePerformanceRequest,
    CalculationRunResponse,
    ContractPerformanceService,
    ContractReportResponse,
    DashboardResponse,
    DefaultRuleConfigProvider,
    EscalateMetricRequest,
    EscalateMetricResponse,
    IRuleConfigProvider,
    MetricQuery,
    MetricResponse,
    MetricReviewRequest,
    MetricReviewService,
    PerformanceReportingService,
    TrendPointResponse,
)
from src.performance.infrastructure import (
    SQLAlchemyContractRepository,
    SQLAlchemyOrderLedger,
    SQLAlchemyPerformanceMetricRepository,
)
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/performance", tags=["Contract Performance"])


# ========== Example payloads for Swagger ==========

CALCULATION_RESPONSE_EXAMPLE = {
    "run_id": "0b8e7a0c-3f55-4c4e-9d55-6f7e5b1f2a10",
    "period_start": "2024-01-01",
    "period_end": "2024-02-01",
    "measurement_period": "MONTHLY",
    "calculated_by": "ops@example.com",
    "contracts_evaluated": 12,
    "metrics_stored": 96,
    "escalations_triggered": 2,
    "total_penalties": 1830.5,
    "total_bonuses": 240.0,
    "failed_contracts": {},
    "failed_metrics": {}
}

DASHBOARD_RESPONSE_EXAMPLE = {
    "active_contracts": 12,
    "at_risk_contracts": 3,
    "excellent_contracts": 5,
    "penalties_this_month": 1830.5,
    "bonuses_this_month": 240.0,
    "avg_delivery_performance": 91.4,
    "avg_quality_performance": 97.8,
    "pending_escalations": 2,
    "expiring_within_30_days": 1
}


# ========== Dependencies ==========

def get_config_provider(request: Request) -> IRuleConfigProvider:
    """Rule tables loaded at start-up, or the built-in defaults."""
    provider = getattr(request.app.state, "config_manager", None)
    return provider or DefaultRuleConfigProvider()


def get_performance_service(
    config_provider: IRuleConfigProvider = Depends(get_config_provider)
) -> ContractPerformanceService:
    return ContractPerformanceService(
        SQLAlchemyContractRepository(),
        SQLAlchemyOrderLedger(),
        SQLAlchemyPerformanceMetricRepository(),
        config_provider=config_provider,
    )


def get_reporting_service(
    config_provider: IRuleConfigProvider = Depends(get_config_provider)
) -> PerformanceReportingService:
    return PerformanceReportingService(
        SQLAlchemyContractRepository(),
        SQLAlchemyPerformanceMetricRepository(),
        config_provider=config_provider,
    )


def get_review_service(
    config_provider: IRuleConfigProvider = Depends(get_config_provider)
) -> MetricReviewService:
    return MetricReviewService(
        SQLAlchemyPerformanceMetricRepository(),
        config_provider=config_provider,
    )


# ========== Route Handlers ==========

@router.post(
    "/calculate",
    response_model=CalculationRunResponse,
    summary="Calculate contract performance",
    description="""
    Calculate and persist performance metrics for every active contract
    overlapping the window.

    **Idempotent**: metrics are keyed by contract, product, metric type and
    period. Re-running a window overwrites the calculated values and keeps
    review annotations and escalations.

    **Partial failure**: a contract that fails is listed in `failed_contracts`
    and the rest of the batch still completes.
    """,
    responses={
        200: {
            "description": "Batch completed",
            "content": {"application/json": {"example": CALCULATION_RESPONSE_EXAMPLE}}
        },
        422: {"description": "Invalid window"}
    }
)
async def calculate_performance(
    request: CalculatePerformanceRequest,
    service: ContractPerformanceService = Depends(get_performance_service)
):
    result = await service.calculate_all_contract_performance(
        request.period_start,
        request.period_end,
        period=request.measurement_period,
        calculated_by=request.calculated_by,
        contract_ids=request.contract_ids,
    )
    return CalculationRunResponse.from_result(result)


@router.get(
    "/dashboard",
    response_model=DashboardResponse,
    summary="Get portfolio dashboard",
    description="""
    Summary of the current month's persisted metrics across all contracts:
    at-risk and excellent contracts, penalties and bonuses, average delivery
    and quality performance, pending escalations and contracts nearing expiry.
    """,
    responses={
        200: {
            "description": "Dashboard data",
            "content": {"application/json": {"example": DASHBOARD_RESPONSE_EXAMPLE}}
        }
    }
)
async def get_dashboard(
    service: PerformanceReportingService = Depends(get_reporting_service)
):
    dashboard = await service.get_dashboard_metrics()
    return DashboardResponse(**asdict(dashboard))


@router.get(
    "/contracts/{contract_id}/report",
    response_model=ContractReportResponse,
    summary="Get contract performance report",
    description="""
    Report over the persisted metrics of one contract. Without a period the
    report covers the last 30 days; metrics whose window overlaps the period
    are included.
    """,
    responses={404: {"description": "Contract not found"}}
)
async def get_contract_report(
    contract_id: str,
    period_start: Optional[date] = Query(None, description="Report start (inclusive)"),
    period_end: Optional[date] = Query(None, description="Report end (exclusive)"),
    service: PerformanceReportingService = Depends(get_reporting_service)
):
    report = await service.generate_contract_performance_report(contract_id, period_start, period_end)
    return ContractReportResponse.from_report(report)


@router.get(
    "/metrics",
    response_model=List[MetricResponse],
    summary="List performance metrics",
    description="Persisted metrics, most recent period first."
)
async def list_metrics(
    contract_id: Optional[str] = Query(None, description="Filter by contract"),
    product_id: Optional[str] = Query(None, description="Filter by product"),
    metric_type: Optional[MetricType] = Query(None, description="Filter by metric type"),
    metric_status: Optional[PerformanceStatus] = Query(None, alias="status", description="Filter by status"),
    measurement_period: Optional[MeasurementPeriod] = Query(None, description="Filter by measurement period"),
    period_from: Optional[date] = Query(None, description="Metrics ending after this date"),
    period_to: Optional[date] = Query(None, description="Metrics starting before this date"),
    at_risk_only: bool = Query(False, description="Only BREACH and CRITICAL metrics"),
    escalated_only: bool = Query(False, description="Only escalated metrics"),
    limit: int = Query(100, ge=1, le=1000, description="Results per page"),
    offset: int = Query(0, ge=0, description="Page offset"),
    service: PerformanceReportingService = Depends(get_reporting_service)
):
    if period_from and period_to and period_to <= period_from:
        raise ValidationException(
            "period_to must be after period_from",
            {"period_from": period_from.isoformat(), "period_to": period_to.isoformat()}
        )

    statuses = None
    if at_risk_only:
        statuses = list(AT_RISK_STATUSES)
        if metric_status is not None:
            statuses = [s for s in statuses if s == metric_status]
    elif metric_status is not None:
        statuses = [metric_status]

    if statuses == []:
        return []

    query = MetricQuery(
        contract_id=contract_id,
        product_id=product_id,
        metric_type=metric_type,
        statuses=statuses,
        measurement_period=measurement_period,
        period_from=period_from,
        period_to=period_to,
        escalated_only=escalated_only,
    )
    metrics = await service.list_metrics(query, limit=limit, offset=offset)
    return [MetricResponse.from_domain(m) for m in metrics]


@router.get(
    "/escalations",
    response_model=List[MetricResponse],
    summary="List pending escalations",
    description="Escalated metrics that still require action."
)
async def list_escalations(
    level: Optional[int] = Query(None, ge=1, le=4, description="Filter by escalation level"),
    overdue: bool = Query(False, description="Only escalations past their action deadline"),
    service: PerformanceReportingService = Depends(get_reporting_service)
):
    metrics = await service.list_pending_escalations(level=level, overdue=overdue)
    return [MetricResponse.from_domain(m) for m in metrics]


@router.get(
    "/trends",
    response_model=List[TrendPointResponse],
    summary="Get performance trend",
    description="Time-ordered persisted values over the last `months` months."
)
async def get_trends(
    contract_id: Optional[str] = Query(None, description="Filter by contract"),
    product_id: Optional[str] = Query(None, description="Filter by product"),
    metric_type: Optional[MetricType] = Query(None, description="Filter by metric type"),
    months: int = Query(6, ge=1, le=36, description="Number of months"),
    service: PerformanceReportingService = Depends(get_reporting_service)
):
    points = await service.get_performance_trend(contract_id, product_id, metric_type, months)
    return [TrendPointResponse(**asdict(p)) for p in points]


@router.put(
    "/metrics/{metric_id}/review",
    response_model=MetricResponse,
    summary="Review a metric",
    description="""
    Record a review. With `close_action` the required action is closed;
    the escalation itself is never cleared.
    """,
    responses={404: {"description": "Metric not found"}}
)
async def review_metric(
    metric_id: str,
    request: MetricReviewRequest,
    service: MetricReviewService = Depends(get_review_service)
):
    metric = await service.review_metric(
        metric_id,
        reviewer=request.reviewer,
        notes=request.notes,
        action_plan=request.action_plan,
        action_deadline=request.action_deadline,
        close_action=request.close_action,
    )
    return MetricResponse.from_domain(metric)


@router.post(
    "/metrics/{metric_id}/escalate",
    response_model=EscalateMetricResponse,
    status_code=status.HTTP_200_OK,
    summary="Escalate a metric",
    description="Manual escalation. An already escalated metric is returned unchanged.",
    responses={404: {"description": "Metric not found"}}
)
async def escalate_metric(
    metric_id: str,
    request: EscalateMetricRequest,
    service: MetricReviewService = Depends(get_review_service)
):
    metric, escalated = await service.escalate_metric(metric_id, notes=request.notes, level=request.level)
    return EscalateMetricResponse(escalated=escalated, metric=MetricResponse.from_domain(metric))


# Export router for inclusion in main app
performance_router = router
