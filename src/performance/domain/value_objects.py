"""
Performance Value Objects
==========================

Immutable value objects for the contract-performance domain.

Value objects are defined by their attributes rather than an identity.
They are immutable and can be freely shared between concurrent workers.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from src.config import (
    MeasurementPeriod,
    MetricType,
    PerformanceStatus,
    ReportStatus,
    Severity,
)


# ========== Measurement windows ==========

def _add_months(day: date, months: int) -> date:
    month_index = day.month - 1 + months
    return date(day.year + month_index // 12, month_index % 12 + 1, 1)


def period_start_for(period: MeasurementPeriod, day: date) -> date:
    """First day of the measurement period that contains ``day``."""
    if period == MeasurementPeriod.DAILY:
        return day
    if period == MeasurementPeriod.WEEKLY:
        return day - timedelta(days=day.weekday())
    if period == MeasurementPeriod.MONTHLY:
        return day.replace(day=1)
    if period == MeasurementPeriod.QUARTERLY:
        return date(day.year, (day.month - 1) // 3 * 3 + 1, 1)
    return date(day.year, 1, 1)


def shift_period(period: MeasurementPeriod, start: date, count: int) -> date:
    """Move a period start by ``count`` periods (negative moves back)."""
    if period == MeasurementPeriod.DAILY:
        return start + timedelta(days=count)
    if period == MeasurementPeriod.WEEKLY:
        return start + timedelta(weeks=count)
    if period == MeasurementPeriod.MONTHLY:
        return _add_months(start, count)
    if period == MeasurementPeriod.QUARTERLY:
        return _add_months(start, 3 * count)
    return date(start.year + count, 1, 1)


@dataclass(frozen=True)
class MeasurementWindow:
    """
    Half-open [start, end) window a metric is computed over.

    Boundaries are calendar days interpreted at UTC midnight.
    """
    period: MeasurementPeriod
    start: date
    end: date

    def __post_init__(self):
        if self.end <= self.start:
            raise ValueError("window end must be after window start")

    @classmethod
    def containing(cls, period: MeasurementPeriod, day: date) -> "MeasurementWindow":
        start = period_start_for(period, day)
        return cls(period, start, shift_period(period, start, 1))

    @classmethod
    def last_completed(cls, period: MeasurementPeriod, today: date) -> "MeasurementWindow":
        """The most recent window that ended on or before ``today``."""
        current_start = period_start_for(period, today)
        return cls(period, shift_period(period, current_start, -1), current_start)

    @property
    def start_datetime(self) -> datetime:
        return datetime.combine(self.start, time.min, tzinfo=timezone.utc)

    @property
    def end_datetime(self) -> datetime:
        return datetime.combine(self.end, time.min, tzinfo=timezone.utc)

    def contains(self, moment: datetime) -> bool:
        """Check if a timestamp falls inside the window."""
        return self.start_datetime <= moment < self.end_datetime


@dataclass(frozen=True)
class MetricKey:
    """Identity of one persisted metric: one row per key per calculation."""
    contract_id: str
    product_id: Optional[str]
    metric_type: MetricType
    period_start: date
    period_end: date

    CONTRACT_SCOPE = "contract"

    @property
    def scope_key(self) -> str:
        """Non-null stand-in for the product reference (contract-level rows use a sentinel)."""
        return self.product_id or self.CONTRACT_SCOPE

    def __str__(self) -> str:
        return (
            f"{self.contract_id}/{self.scope_key}/{self.metric_type.value}/"
            f"{self.period_start.isoformat()}..{self.period_end.isoformat()}"
        )


# ========== Calculation results ==========

@dataclass(frozen=True)
class EffectiveTargets:
    """SLA targets after product overrides and seasonal adjustments."""
    delivery_days: float
    quality_tolerance_percent: float
    delivery_tolerance_percent: float
    quantity_accuracy_threshold: float
    fulfillment_target: float
    max_delivery_delay_days: Optional[float] = None
    penalty_rates: Dict[MetricType, float] = field(default_factory=dict)
    bonus_rates: Dict[MetricType, float] = field(default_factory=dict)

    def penalty_rate(self, metric_type: MetricType) -> float:
        return self.penalty_rates.get(metric_type, 0.0)

    def bonus_rate(self, metric_type: MetricType) -> float:
        return self.bonus_rates.get(metric_type, 0.0)


@dataclass(frozen=True)
class RawSample:
    """
    Raw output of a metric calculator for one scope and window.

    ``early_events`` only matters for delivery (bonus qualification).
    """
    metric_type: MetricType
    actual_value: float
    target_value: float
    sample_size: int
    total_events: int
    successful_events: int
    failed_events: int
    early_events: int = 0
    potential_order_value: float = 0.0
    breakdown: Dict[str, Any] = field(default_factory=dict)

    @property
    def average_order_value(self) -> float:
        """Mean value of the orders behind the sample."""
        if self.sample_size == 0:
            return 0.0
        return round(self.potential_order_value / self.sample_size, 2)


@dataclass(frozen=True)
class Classification:
    """Status tier, score and severity derived from a raw sample."""
    variance: float
    variance_percent: float
    status: PerformanceStatus
    performance_score: float
    severity: Severity
    is_within_sla: bool


@dataclass(frozen=True)
class FinancialImpact:
    """Penalties and bonuses for one sample. Net impact may be negative."""
    penalties: float
    bonuses: float

    @property
    def net_impact(self) -> float:
        return round(self.bonuses - self.penalties, 2)


# ========== Rule tables ==========

class StatusTierRule(BaseModel):
    """One row of a status tier table: the tier applies at target + offset or better."""
    status: PerformanceStatus
    offset: float


class SeverityRule(BaseModel):
    """One row of the severity table: applies while |variance %| <= bound."""
    max_variance_percent: float = Field(ge=0)
    severity: Severity


class ReportStatusRule(BaseModel):
    """One row of the report status table: applies at or above min_score."""
    min_score: float = Field(ge=0, le=100)
    status: ReportStatus


def _tiers(excellent_margin: float) -> List[StatusTierRule]:
    return [
        StatusTierRule(status=PerformanceStatus.EXCELLENT, offset=excellent_margin),
        StatusTierRule(status=PerformanceStatus.GOOD, offset=0),
        StatusTierRule(status=PerformanceStatus.WARNING, offset=-5),
        StatusTierRule(status=PerformanceStatus.BREACH, offset=-15),
    ]


# Quality-style metrics use a tighter excellence margin
TIGHT_MARGIN_METRICS = (MetricType.QUALITY_PERFORMANCE, MetricType.QUANTITY_ACCURACY)


def default_status_tiers() -> Dict[MetricType, List[StatusTierRule]]:
    return {
        metric_type: _tiers(2 if metric_type in TIGHT_MARGIN_METRICS else 5)
        for metric_type in MetricType
    }


class PerformanceRuleConfig(BaseModel):
    """
    Rule tables used by classification, escalation and reporting.

    Loaded from YAML when present; every table falls back to the built-in
    defaults. Tables are ordered so that boundaries can be verified in
    isolation.
    """
    status_tiers: Dict[MetricType, List[StatusTierRule]] = Field(
        default_factory=default_status_tiers,
        description="Status tier rows per metric type, best tier first"
    )
    severity_rules: List[SeverityRule] = Field(
        default_factory=lambda: [
            SeverityRule(max_variance_percent=10, severity=Severity.MEDIUM),
            SeverityRule(max_variance_percent=25, severity=Severity.HIGH),
        ],
        description="Severity rows for out-of-SLA metrics; beyond the last row is CRITICAL"
    )
    escalation_levels: Dict[Severity, int] = Field(
        default_factory=lambda: {Severity.HIGH: 3, Severity.CRITICAL: 4},
        description="Escalation level per severity"
    )
    default_escalation_level: int = Field(default=2, ge=1, le=4)
    immediate_escalation_level: int = Field(default=4, ge=1, le=4)
    action_deadline_days: Dict[int, int] = Field(
        default_factory=lambda: {2: 14, 3: 7, 4: 3},
        description="Days to act per escalation level"
    )
    report_status_rules: List[ReportStatusRule] = Field(
        default_factory=lambda: [
            ReportStatusRule(min_score=95, status=ReportStatus.EXCELLENT),
            ReportStatusRule(min_score=85, status=ReportStatus.GOOD),
            ReportStatusRule(min_score=70, status=ReportStatus.NEEDS_ATTENTION),
        ],
        description="Report status rows, best first; below the last row is CRITICAL"
    )
    trend_stability_percent: float = Field(default=5.0, ge=0)
    minimum_confident_sample: int = Field(default=5, ge=1)

    @field_validator("status_tiers")
    @classmethod
    def complete_status_tiers(
        cls, v: Dict[MetricType, List[StatusTierRule]]
    ) -> Dict[MetricType, List[StatusTierRule]]:
        """Fill metric types missing from the file and order rows best first."""
        defaults = default_status_tiers()
        for metric_type in MetricType:
            rows = v.get(metric_type) or defaults[metric_type]
            v[metric_type] = sorted(rows, key=lambda row: row.offset, reverse=True)
        return v

    @field_validator("severity_rules")
    @classmethod
    def order_severity_rules(cls, v: List[SeverityRule]) -> List[SeverityRule]:
        return sorted(v, key=lambda row: row.max_variance_percent)

    @field_validator("report_status_rules")
    @classmethod
    def order_report_rules(cls, v: List[ReportStatusRule]) -> List[ReportStatusRule]:
        return sorted(v, key=lambda row: row.min_score, reverse=True)

    @model_validator(mode="after")
    def check_deadline_levels(self) -> "PerformanceRuleConfig":
        levels = set(self.escalation_levels.values())
        levels.update({self.default_escalation_level, self.immediate_escalation_level})
        missing = sorted(level for level in levels if level not in self.action_deadline_days)
        if missing:
            raise ValueError(f"action_deadline_days missing escalation levels {missing}")
        return self

    def tiers_for(self, metric_type: MetricType) -> List[StatusTierRule]:
        return self.status_tiers[metric_type]

    def severity_for(self, abs_variance_percent: float) -> Severity:
        for row in self.severity_rules:
            if abs_variance_percent <= row.max_variance_percent:
                return row.severity
        return Severity.CRITICAL

    def escalation_level_for(self, severity: Severity) -> int:
        return self.escalation_levels.get(severity, self.default_escalation_level)

    def action_deadline_days_for(self, level: int) -> int:
        return self.action_deadline_days[level]

    def report_status_for(self, score: float) -> ReportStatus:
        for row in self.report_status_rules:
            if score >= row.min_score:
                return row.status
        return ReportStatus.CRITICAL
