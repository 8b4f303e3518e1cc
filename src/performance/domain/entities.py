"""
Performance Domain Entities
============================

Pure Python domain entities for contract adherence tracking.

Following Domain-Driven Design principles, these entities contain
business logic and are free of infrastructure concerns. Contracts,
product SLAs and orders are read-only inputs; PerformanceMetric is the
only entity this context writes.
"""

import math
from dataclasses import dataclass, field, fields, replace
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from src.config import (
    ContractStatus,
    ContractType,
    DELIVERED_ORDER_STATUSES,
    MeasurementPeriod,
    MetricType,
    OrderStatus,
    PerformanceStatus,
    Severity,
    TrendDirection,
    WITHIN_SLA_STATUSES,
)
from src.core import DomainException
from src.performance.domain.scoring import performance_score_of
from src.performance.domain.value_objects import MetricKey

SECONDS_PER_DAY = 86400


# ========== SLA terms ==========

@dataclass(frozen=True)
class SeasonalRule:
    """Adjustment applied to the base targets during the listed months."""
    months: Tuple[int, ...]
    delivery_days_adjustment: float = 0.0
    quality_tolerance_adjustment: float = 0.0
    delivery_tolerance_adjustment: float = 0.0

    def applies_to(self, day: date) -> bool:
        return day.month in self.months


@dataclass(frozen=True)
class SpecialPeriod:
    """Named date range (inclusive) with its own target adjustments."""
    name: str
    start_date: date
    end_date: date
    delivery_days_adjustment: float = 0.0
    quality_tolerance_adjustment: float = 0.0
    delivery_tolerance_adjustment: float = 0.0

    def applies_to(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date


@dataclass(frozen=True)
class EscalationRules:
    """Thresholds that escalate a sample immediately, whatever its severity."""
    immediate_delivery_delay_days: Optional[float] = None
    immediate_quality_issue_rate: Optional[float] = None
    immediate_quantity_shortage_rate: Optional[float] = None


@dataclass
class ProductSLA:
    """
    Product-level override of contract SLA defaults.

    Every override is optional; ``None`` means "use the contract value".
    Only effective inside [effective_from, effective_until] while active
    and not suspended.
    """

    id: str
    contract_id: str
    product_id: str
    effective_from: date
    effective_until: Optional[date] = None

    # Target overrides
    delivery_sla_days: Optional[float] = None
    delivery_tolerance_percent: Optional[float] = None
    max_delivery_delay_days: Optional[float] = None
    quality_tolerance_percent: Optional[float] = None
    quantity_accuracy_threshold: Optional[float] = None
    minimum_order_fulfillment_rate: Optional[float] = None

    # Rate overrides
    late_delivery_penalty_percent: Optional[float] = None
    quality_issue_penalty_percent: Optional[float] = None
    quantity_shortage_penalty_percent: Optional[float] = None
    early_delivery_bonus_percent: Optional[float] = None
    quality_excellence_bonus_percent: Optional[float] = None

    # Seasonal and special rules
    peak_season: Optional[SeasonalRule] = None
    off_peak_season: Optional[SeasonalRule] = None
    special_periods: List[SpecialPeriod] = field(default_factory=list)
    special_requirements: Dict[str, Any] = field(default_factory=dict)
    escalation_rules: EscalationRules = field(default_factory=EscalationRules)

    measurement_period_days: int = 30
    grace_period_days: int = 5
    is_suspended: bool = False
    is_active: bool = True

    def is_effective_on(self, day: date) -> bool:
        """Check if the override applies on a given day."""
        if not self.is_active or self.is_suspended:
            return False
        if day < self.effective_from:
            return False
        return self.effective_until is None or day <= self.effective_until

    def seasonal_rule_for(self, day: date) -> Optional[SeasonalRule]:
        """Peak season wins; off-peak only applies outside peak months."""
        if self.peak_season and self.peak_season.applies_to(day):
            return self.peak_season
        if self.off_peak_season and self.off_peak_season.applies_to(day):
            return self.off_peak_season
        return None

    def special_periods_for(self, day: date) -> List[SpecialPeriod]:
        return [period for period in self.special_periods if period.applies_to(day)]


@dataclass
class Contract:
    """
    Supplier contract entity.

    Validity is the half-open interval [valid_from, valid_until).
    """

    id: str
    supplier_id: str
    status: ContractStatus
    valid_from: date
    valid_until: date

    contract_number: str = ""
    name: str = ""
    contract_type: ContractType = ContractType.ANNUAL

    # Default SLA targets
    default_delivery_sla_days: float = 7.0
    default_quality_tolerance_percent: float = 2.0
    default_delivery_tolerance_percent: float = 5.0
    minimum_fulfillment_rate: Optional[float] = None

    # Default penalty and bonus rates (% of order value)
    late_delivery_penalty_percent: float = 0.5
    quality_issue_penalty_percent: float = 1.0
    early_delivery_bonus_percent: float = 0.0
    quality_excellence_bonus_percent: float = 0.0

    currency: str = "EUR"
    volume_commitment: Optional[float] = None
    renewal_notice_days: int = 30

    product_slas: List[ProductSLA] = field(default_factory=list)

    def is_currently_effective(self, as_of: date) -> bool:
        """Active and inside the validity interval."""
        return (
            self.status == ContractStatus.ACTIVE
            and self.valid_from <= as_of < self.valid_until
        )

    def overlaps(self, start: date, end: date) -> bool:
        """Check if the validity interval intersects [start, end)."""
        return self.valid_from < end and start < self.valid_until

    def days_until_expiry(self, as_of: date) -> int:
        return (self.valid_until - as_of).days

    def is_expiring_soon(self, as_of: date, horizon_days: Optional[int] = None) -> bool:
        """Effective and ending within the renewal notice horizon."""
        horizon = self.renewal_notice_days if horizon_days is None else horizon_days
        return self.is_currently_effective(as_of) and self.days_until_expiry(as_of) <= horizon

    def product_sla_for(self, product_id: str, as_of: date) -> Optional[ProductSLA]:
        """
        The product override to use on a given day.

        Prefers the one effective on that day; otherwise the most recent
        one, whose terms the resolver will then ignore.
        """
        candidates = [sla for sla in self.product_slas if sla.product_id == product_id]
        if not candidates:
            return None
        for sla in candidates:
            if sla.is_effective_on(as_of):
                return sla
        return max(candidates, key=lambda sla: sla.effective_from)

    @property
    def product_ids(self) -> List[str]:
        """Distinct products with an SLA, in declaration order."""
        seen: Dict[str, None] = {}
        for sla in self.product_slas:
            seen.setdefault(sla.product_id, None)
        return list(seen)


# ========== Order ledger ==========

@dataclass(frozen=True)
class OrderLine:
    """One line item of a purchase order."""
    product_id: str
    ordered_quantity: float
    delivered_quantity: Optional[float] = None
    quality_defect: bool = False
    line_value: Optional[float] = None


@dataclass(frozen=True)
class OrderRecord:
    """
    Purchase order as recorded by the order ledger.

    Treated as an immutable fact; the engine never writes orders.
    """
    id: str
    supplier_id: str
    created_at: datetime
    status: OrderStatus
    total_value: float = 0.0
    promised_delivery_at: Optional[datetime] = None
    actual_delivery_at: Optional[datetime] = None
    lines: Tuple[OrderLine, ...] = ()

    @property
    def is_delivered(self) -> bool:
        return self.status in DELIVERED_ORDER_STATUSES and self.actual_delivery_at is not None

    @property
    def has_quality_defect(self) -> bool:
        return any(line.quality_defect for line in self.lines)

    @property
    def delivery_days(self) -> Optional[int]:
        """Whole days from creation to delivery, rounded up."""
        if self.actual_delivery_at is None:
            return None
        elapsed = (self.actual_delivery_at - self.created_at).total_seconds()
        return math.ceil(elapsed / SECONDS_PER_DAY)

    def delivered_before(self, moment: datetime) -> bool:
        return self.is_delivered and self.actual_delivery_at < moment

    def lines_for(self, product_id: str) -> List[OrderLine]:
        return [line for line in self.lines if line.product_id == product_id]


# ========== Performance metric ==========

# Fields a recalculation overwrites; everything else is identity,
# escalation state or review annotation.
CALCULATION_FIELDS = (
    "product_sla_id",
    "purchase_order_id",
    "target_value",
    "actual_value",
    "variance",
    "variance_percent",
    "status",
    "severity",
    "sample_size",
    "total_events",
    "successful_events",
    "failed_events",
    "penalties_applied",
    "bonuses_earned",
    "net_financial_impact",
    "potential_order_value",
    "trend_direction",
    "previous_period_value",
    "rolling_average_3",
    "rolling_average_12",
    "performance_breakdown",
    "calculation_method",
    "data_sources",
    "calculation_timestamp",
    "is_estimated",
    "confidence_level",
    "calculated_by",
)

ESCALATION_FIELDS = (
    "escalation_level",
    "escalation_triggered",
    "escalation_date",
    "escalation_notes",
    "requires_action",
    "action_deadline",
)

# Set when the escalation is triggered; a review only touches the action fields
ESCALATION_TRIGGER_FIELDS = (
    "escalation_level",
    "escalation_triggered",
    "escalation_date",
    "escalation_notes",
)

REVIEW_FIELDS = (
    "is_reviewed",
    "reviewed_by",
    "reviewed_at",
    "review_notes",
    "action_plan",
)

ANNOTATION_FIELDS = REVIEW_FIELDS + ESCALATION_FIELDS


def writable_annotations(
    fields: Sequence[str],
    incoming: "PerformanceMetric",
    stored_escalated: bool,
) -> List[str]:
    """
    Annotation fields of ``incoming`` that may overwrite the stored row.

    A stored escalation is never replaced or cleared: a second escalation
    of an escalated row writes nothing, and a metric that is not escalated
    never writes the trigger fields.
    """
    unknown = set(fields) - set(ANNOTATION_FIELDS)
    if unknown:
        raise DomainException(f"not annotation fields: {sorted(unknown)}")

    names = list(dict.fromkeys(fields))
    if stored_escalated and "escalation_triggered" in names:
        return [n for n in names if n not in ESCALATION_FIELDS]
    if not incoming.escalation_triggered:
        return [n for n in names if n not in ESCALATION_TRIGGER_FIELDS]
    return names


@dataclass
class PerformanceMetric:
    """
    One measured SLA metric for a contract (or one of its products) over a window.

    Identity is the metric key; the database id is assigned on first insert.
    """

    contract_id: str
    metric_type: MetricType
    measurement_period: MeasurementPeriod
    period_start: date
    period_end: date
    target_value: float
    actual_value: float

    id: Optional[str] = None
    product_id: Optional[str] = None
    product_sla_id: Optional[str] = None
    purchase_order_id: Optional[str] = None

    # Classification
    variance: float = 0.0
    variance_percent: float = 0.0
    status: PerformanceStatus = PerformanceStatus.GOOD
    severity: Severity = Severity.LOW

    # Sample counts
    sample_size: int = 0
    total_events: int = 0
    successful_events: int = 0
    failed_events: int = 0

    # Financial impact
    penalties_applied: float = 0.0
    bonuses_earned: float = 0.0
    net_financial_impact: float = 0.0
    potential_order_value: float = 0.0

    # Trend
    trend_direction: TrendDirection = TrendDirection.STABLE
    previous_period_value: Optional[float] = None
    rolling_average_3: Optional[float] = None
    rolling_average_12: Optional[float] = None

    performance_breakdown: Dict[str, Any] = field(default_factory=dict)

    # Escalation (monotonic)
    escalation_level: int = 0
    escalation_triggered: bool = False
    escalation_date: Optional[datetime] = None
    escalation_notes: Optional[str] = None
    requires_action: bool = False
    action_deadline: Optional[date] = None
    escalation_notified_at: Optional[datetime] = None

    # Review annotations
    is_reviewed: bool = False
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    review_notes: Optional[str] = None
    action_plan: Optional[str] = None

    # Provenance
    calculation_method: str = "automated_calculation"
    data_sources: List[str] = field(default_factory=lambda: ["purchase_orders", "order_lines"])
    calculation_timestamp: Optional[datetime] = None
    is_estimated: bool = False
    confidence_level: float = 95.0
    calculated_by: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        """Validate metric on initialization."""
        if self.period_end <= self.period_start:
            raise ValueError("period_end must be after period_start")
        if not 0 <= self.escalation_level <= 4:
            raise ValueError("escalation_level must be between 0 and 4")

    @property
    def key(self) -> MetricKey:
        return MetricKey(
            contract_id=self.contract_id,
            product_id=self.product_id,
            metric_type=self.metric_type,
            period_start=self.period_start,
            period_end=self.period_end,
        )

    @property
    def is_within_sla(self) -> bool:
        return self.status in WITHIN_SLA_STATUSES

    @property
    def performance_score(self) -> float:
        """Normalised 0-100 score, direction aware."""
        return performance_score_of(self.metric_type, self.actual_value, self.target_value)

    @property
    def is_pending_escalation(self) -> bool:
        return self.escalation_triggered and self.requires_action

    def is_overdue(self, as_of: date) -> bool:
        """Action still required past its deadline."""
        return (
            self.requires_action
            and self.action_deadline is not None
            and as_of > self.action_deadline
        )

    def trigger_escalation(
        self,
        level: int,
        deadline_days: int,
        notes: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> bool:
        """
        Flag the metric for action.

        One-way: an already escalated metric is left untouched.

        Returns:
            bool: True if the escalation was triggered by this call
        """
        if self.escalation_triggered:
            return False
        if not 1 <= level <= 4:
            raise ValueError("escalation level must be between 1 and 4")
        now = timestamp or datetime.now(timezone.utc)
        self.escalation_triggered = True
        self.escalation_level = level
        self.escalation_date = now
        self.escalation_notes = notes
        self.requires_action = True
        self.action_deadline = now.date() + timedelta(days=deadline_days)
        return True

    def mark_reviewed(
        self,
        reviewer: str,
        notes: Optional[str] = None,
        action_plan: Optional[str] = None,
        action_deadline: Optional[date] = None,
        close_action: bool = False,
        timestamp: Optional[datetime] = None,
    ) -> Tuple[str, ...]:
        """
        Record a manual review and return the names of the fields it set.

        Closing the action clears ``requires_action``; the escalation flag
        itself is never cleared.
        """
        changed = ["is_reviewed", "reviewed_by", "reviewed_at"]
        self.is_reviewed = True
        self.reviewed_by = reviewer
        self.reviewed_at = timestamp or datetime.now(timezone.utc)
        if notes is not None:
            self.review_notes = notes
            changed.append("review_notes")
        if action_plan is not None:
            self.action_plan = action_plan
            changed.append("action_plan")
        if action_deadline is not None:
            self.action_deadline = action_deadline
            changed.append("action_deadline")
        if close_action:
            self.requires_action = False
            changed.append("requires_action")
        return tuple(changed)

    def mark_notified(self, timestamp: Optional[datetime] = None) -> None:
        self.escalation_notified_at = timestamp or datetime.now(timezone.utc)

    def merge_recalculation(self, fresh: "PerformanceMetric") -> None:
        """
        Take the calculation results of a new run for the same key.

        Review annotations and notification stamps are kept. Escalation
        state is only ever added: a stored escalation wins over the new one.
        """
        if fresh.key != self.key:
            raise DomainException(f"cannot merge metric {fresh.key} into {self.key}", {"metric_id": self.id})
        for name in CALCULATION_FIELDS:
            setattr(self, name, getattr(fresh, name))
        self.measurement_period = fresh.measurement_period
        if not self.escalation_triggered and fresh.escalation_triggered:
            for name in ESCALATION_FIELDS:
                setattr(self, name, getattr(fresh, name))

    def copy(self) -> "PerformanceMetric":
        return replace(
            self,
            performance_breakdown=dict(self.performance_breakdown),
            data_sources=list(self.data_sources),
        )

    def summary(self) -> Dict[str, Any]:
        """Compact view used in logs and notifications."""
        return {
            "metric_id": self.id,
            "contract_id": self.contract_id,
            "product_id": self.product_id,
            "metric_type": self.metric_type.value,
            "period": f"{self.period_start.isoformat()}..{self.period_end.isoformat()}",
            "actual": self.actual_value,
            "target": self.target_value,
            "status": self.status.value,
            "severity": self.severity.value,
            "score": self.performance_score,
            "net_financial_impact": self.net_financial_impact,
            "escalation_level": self.escalation_level,
        }


def metric_field_names() -> List[str]:
    return [f.name for f in fields(PerformanceMetric)]
