"""
Performance Application DTOs
============================

Data Transfer Objects for the performance API layer.

These Pydantic models handle serialization/deserialization and validation
for API requests and responses.
"""

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from src.config import (
    MeasurementPeriod,
    MetricType,
    PerformanceStatus,
    ReportStatus,
    Severity,
    TrendDirection,
)


# ========== Request DTOs ==========

class CalculatePerformanceRequest(BaseModel):
    """Request model for a batch calculation over one window."""
    period_start: date = Field(..., description="Window start (inclusive)")
    period_end: date = Field(..., description="Window end (exclusive)")
    measurement_period: MeasurementPeriod = Field(
        default=MeasurementPeriod.MONTHLY,
        description="Measurement period recorded on the metrics"
    )
    calculated_by: str = Field(..., min_length=1, description="Actor requesting the calculation")
    contract_ids: Optional[List[str]] = Field(
        None,
        description="Restrict the run to these contracts"
    )

    @field_validator("period_end")
    @classmethod
    def validate_period_end(cls, v: date, info) -> date:
        """Ensure the window is not empty."""
        if "period_start" in info.data and v <= info.data["period_start"]:
            raise ValueError("period_end must be after period_start")
        return v


class MetricReviewRequest(BaseModel):
    """Request model for reviewing a metric."""
    reviewer: str = Field(..., min_length=1, description="Reviewer identity")
    notes: Optional[str] = Field(None, description="Review notes")
    action_plan: Optional[str] = Field(None, description="Agreed corrective actions")
    action_deadline: Optional[date] = Field(None, description="New action deadline")
    close_action: bool = Field(default=False, description="Mark the required action as done")


class EscalateMetricRequest(BaseModel):
    """Request model for a manual escalation."""
    notes: Optional[str] = Field(None, description="Why the metric is escalated")
    level: Optional[int] = Field(None, ge=1, le=4, description="Escalation level (default 3)")


# ========== Response DTOs ==========

class MetricResponse(BaseModel):
    """Response model for a persisted performance metric."""
    id: Optional[str]
    contract_id: str
    product_id: Optional[str] = None
    metric_type: MetricType
    measurement_period: MeasurementPeriod
    period_start: date
    period_end: date

    target_value: float
    actual_value: float
    variance: float
    variance_percent: float
    status: PerformanceStatus
    severity: Severity
    performance_score: float
    is_within_sla: bool

    sample_size: int
    total_events: int
    successful_events: int
    failed_events: int

    penalties_applied: float
    bonuses_earned: float
    net_financial_impact: float
    potential_order_value: float

    trend_direction: TrendDirection
    previous_period_value: Optional[float] = None
    rolling_average_3: Optional[float] = None
    rolling_average_12: Optional[float] = None
    performance_breakdown: Dict[str, Any] = Field(default_factory=dict)

    escalation_level: int
    escalation_triggered: bool
    escalation_date: Optional[datetime] = None
    escalation_notes: Optional[str] = None
    requires_action: bool
    action_deadline: Optional[date] = None

    is_reviewed: bool
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    review_notes: Optional[str] = None
    action_plan: Optional[str] = None

    calculation_timestamp: Optional[datetime] = None
    calculated_by: Optional[str] = None
    is_estimated: bool
    confidence_level: float

    @classmethod
    def from_domain(cls, metric: Any) -> "MetricResponse":
        """Create from domain entity."""
        return cls(
            id=metric.id,
            contract_id=metric.contract_id,
            product_id=metric.product_id,
            metric_type=metric.metric_type,
            measurement_period=metric.measurement_period,
            period_start=metric.period_start,
            period_end=metric.period_end,
            target_value=metric.target_value,
            actual_value=metric.actual_value,
            variance=metric.variance,
            variance_percent=metric.variance_percent,
            status=metric.status,
            severity=metric.severity,
            performance_score=metric.performance_score,
            is_within_sla=metric.is_within_sla,
            sample_size=metric.sample_size,
            total_events=metric.total_events,
            successful_events=metric.successful_events,
            failed_events=metric.failed_events,
            penalties_applied=metric.penalties_applied,
            bonuses_earned=metric.bonuses_earned,
            net_financial_impact=metric.net_financial_impact,
            potential_order_value=metric.potential_order_value,
            trend_direction=metric.trend_direction,
            previous_period_value=metric.previous_period_value,
            rolling_average_3=metric.rolling_average_3,
            rolling_average_12=metric.rolling_average_12,
            performance_breakdown=metric.performance_breakdown,
            escalation_level=metric.escalation_level,
            escalation_triggered=metric.escalation_triggered,
            escalation_date=metric.escalation_date,
            escalation_notes=metric.escalation_notes,
            requires_action=metric.requires_action,
            action_deadline=metric.action_deadline,
            is_reviewed=metric.is_reviewed,
            reviewed_by=metric.reviewed_by,
            reviewed_at=metric.reviewed_at,
            review_notes=metric.review_notes,
            action_plan=metric.action_plan,
            calculation_timestamp=metric.calculation_timestamp,
            calculated_by=metric.calculated_by,
            is_estimated=metric.is_estimated,
            confidence_level=metric.confidence_level,
        )


class CalculationRunResponse(BaseModel):
    """Response model for a batch calculation."""
    run_id: str
    period_start: date
    period_end: date
    measurement_period: MeasurementPeriod
    calculated_by: str
    contracts_evaluated: int
    metrics_stored: int
    escalations_triggered: int
    total_penalties: float
    total_bonuses: float
    failed_contracts: Dict[str, str] = Field(default_factory=dict)
    failed_metrics: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_result(cls, result: Any) -> "CalculationRunResponse":
        return cls(
            run_id=result.run_id,
            period_start=result.window.start,
            period_end=result.window.end,
            measurement_period=result.window.period,
            calculated_by=result.calculated_by,
            contracts_evaluated=result.contracts_evaluated,
            metrics_stored=len(result.metrics),
            escalations_triggered=result.escalations_triggered,
            total_penalties=result.total_penalties,
            total_bonuses=result.total_bonuses,
            failed_contracts=result.failed_contracts,
            failed_metrics=result.failed_metrics,
        )


class EscalationResponse(BaseModel):
    """Pending escalation listed in a contract report."""
    metric_id: Optional[str]
    metric_type: MetricType
    product_id: Optional[str] = None
    level: int
    reason: str
    action_required: str
    deadline: Optional[date] = None


class ContractSummary(BaseModel):
    id: str
    contract_number: str
    name: str
    supplier_id: str
    currency: str
    valid_from: date
    valid_until: date


class ContractReportResponse(BaseModel):
    """Response model for a contract performance report."""
    contract: ContractSummary
    period_start: date
    period_end: date
    overall_score: float
    status: ReportStatus
    total_penalties: float
    total_bonuses: float
    net_impact: float
    metrics: List[MetricResponse]
    recommendations: List[str]
    escalations: List[EscalationResponse]

    @classmethod
    def from_report(cls, report: Any) -> "ContractReportResponse":
        contract = report.contract
        return cls(
            contract=ContractSummary(
                id=contract.id,
                contract_number=contract.contract_number,
                name=contract.name,
                supplier_id=contract.supplier_id,
                currency=contract.currency,
                valid_from=contract.valid_from,
                valid_until=contract.valid_until,
            ),
            period_start=report.period_start,
            period_end=report.period_end,
            overall_score=report.overall_score,
            status=report.status,
            total_penalties=report.total_penalties,
            total_bonuses=report.total_bonuses,
            net_impact=report.net_impact,
            metrics=[MetricResponse.from_domain(m) for m in report.metrics],
            recommendations=report.recommendations,
            escalations=[
                EscalationResponse(
                    metric_id=item.metric_id,
                    metric_type=item.metric_type,
                    product_id=item.product_id,
                    level=item.level,
                    reason=item.reason,
                    action_required=item.action_required,
                    deadline=item.deadline,
                )
                for item in report.escalations
            ],
        )


class DashboardResponse(BaseModel):
    """Response model for the portfolio dashboard."""
    active_contracts: int
    at_risk_contracts: int
    excellent_contracts: int
    penalties_this_month: float
    bonuses_this_month: float
    avg_delivery_performance: float
    avg_quality_performance: float
    pending_escalations: int
    expiring_within_30_days: int


class TrendPointResponse(BaseModel):
    """One point of a performance trend series."""
    contract_id: str
    product_id: Optional[str] = None
    metric_type: MetricType
    period_start: date
    period_end: date
    actual_value: float
    target_value: float
    performance_score: float
    status: PerformanceStatus
    trend_direction: TrendDirection


class EscalateMetricResponse(BaseModel):
    """Response model for a manual escalation."""
    escalated: bool = Field(..., description="False when the metric was already escalated")
    metric: MetricResponse
