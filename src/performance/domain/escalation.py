"""
Trend and Escalation
====================

Compares a metric with its preceding period and decides whether a miss
must be escalated.

Escalation is one-way for a metric instance: once triggered it stays
triggered across recalculations. Only a review can close the action.
"""

from datetime import date, datetime
from typing import List, Optional, Sequence

from src.config import MetricType, Severity, TrendDirection
from src.performance.domain.entities import PerformanceMetric, ProductSLA
from src.performance.domain.value_objects import Classification, PerformanceRuleConfig, RawSample

ESCALATING_SEVERITIES = (Severity.HIGH, Severity.CRITICAL)


class TrendAnalyzer:
    """Trend direction and rolling averages for a metric lineage."""

    def __init__(self, stability_percent: float = 5.0):
        self.stability_percent = stability_percent

    def update_trend(
        self,
        metric_type: MetricType,
        current_actual: float,
        previous_actual: Optional[float],
    ) -> TrendDirection:
        """
        Classify the change from the previous period.

        No previous value means STABLE. Changes below the stability band
        are STABLE; otherwise direction follows the metric's polarity.
        """
        if previous_actual is None:
            return TrendDirection.STABLE

        delta = current_actual - previous_actual
        if previous_actual == 0:
            if delta == 0:
                return TrendDirection.STABLE
        elif abs(delta / previous_actual * 100) < self.stability_percent:
            return TrendDirection.STABLE

        better = delta > 0 if metric_type.higher_is_better else delta < 0
        return TrendDirection.IMPROVING if better else TrendDirection.DECLINING

    @staticmethod
    def rolling_average(
        current_actual: float,
        history: Sequence[float],
        periods: int,
    ) -> float:
        """
        Mean of the current value and up to ``periods - 1`` preceding values.

        ``history`` is ordered most recent first.
        """
        values: List[float] = [current_actual, *history[: max(periods - 1, 0)]]
        return round(sum(values) / len(values), 2)


class EscalationPolicy:
    """
    Decides and applies automatic escalation.

    Variance severity drives the normal path; product SLAs may also set
    immediate thresholds that escalate regardless of severity.
    """

    def __init__(self, rules: Optional[PerformanceRuleConfig] = None):
        self.rules = rules or PerformanceRuleConfig()

    def should_escalate(self, classification: Classification, already_escalated: bool) -> bool:
        return classification.severity in ESCALATING_SEVERITIES and not already_escalated

    @staticmethod
    def immediate_escalation_reason(
        sample: RawSample,
        product_sla: Optional[ProductSLA],
        as_of: date,
    ) -> Optional[str]:
        """
        Reason the sample crosses an immediate threshold, if it does.

        Only an SLA in force on ``as_of`` (active, not suspended, inside its
        interval) can escalate immediately.
        """
        if product_sla is None or not product_sla.is_effective_on(as_of):
            return None
        rules = product_sla.escalation_rules
        breakdown = sample.breakdown

        if (
            sample.metric_type == MetricType.DELIVERY_PERFORMANCE
            and rules.immediate_delivery_delay_days is not None
            and breakdown.get("max_delay_days", 0) >= rules.immediate_delivery_delay_days
        ):
            return (
                f"Delivery delayed {breakdown['max_delay_days']} days "
                f"(immediate threshold {rules.immediate_delivery_delay_days})"
            )
        if (
            sample.metric_type == MetricType.QUALITY_PERFORMANCE
            and rules.immediate_quality_issue_rate is not None
            and breakdown.get("defect_rate", 0) >= rules.immediate_quality_issue_rate
        ):
            return (
                f"Quality issue rate {breakdown['defect_rate']}% "
                f"(immediate threshold {rules.immediate_quality_issue_rate}%)"
            )
        if (
            sample.metric_type == MetricType.QUANTITY_ACCURACY
            and rules.immediate_quantity_shortage_rate is not None
            and breakdown.get("shortage_rate", 0) >= rules.immediate_quantity_shortage_rate
        ):
            return (
                f"Quantity shortage rate {breakdown['shortage_rate']}% "
                f"(immediate threshold {rules.immediate_quantity_shortage_rate}%)"
            )
        return None

    def escalation_level(self, severity: Severity) -> int:
        return self.rules.escalation_level_for(severity)

    def trigger_escalation(
        self,
        metric: PerformanceMetric,
        severity: Severity,
        notes: Optional[str] = None,
        level: Optional[int] = None,
        timestamp: Optional[datetime] = None,
    ) -> bool:
        """
        Escalate a metric. Already escalated metrics are left as they are.

        Returns:
            bool: True if this call triggered the escalation
        """
        level = level if level is not None else self.escalation_level(severity)
        return metric.trigger_escalation(
            level=level,
            deadline_days=self.rules.action_deadline_days_for(level),
            notes=notes,
            timestamp=timestamp,
        )

    def evaluate(
        self,
        metric: PerformanceMetric,
        sample: RawSample,
        classification: Classification,
        product_sla: Optional[ProductSLA],
        already_escalated: bool,
        timestamp: Optional[datetime] = None,
    ) -> bool:
        """
        Apply the automatic escalation rules to a freshly computed metric.

        Returns:
            bool: True if the metric was escalated by this evaluation
        """
        if already_escalated:
            return False

        reason = self.immediate_escalation_reason(sample, product_sla, metric.period_start)
        if reason is not None:
            return self.trigger_escalation(
                metric,
                Severity.CRITICAL,
                notes=reason,
                level=self.rules.immediate_escalation_level,
                timestamp=timestamp,
            )

        if self.should_escalate(classification, already_escalated):
            notes = (
                f"{sample.metric_type.value} at {sample.actual_value}% against a target of "
                f"{sample.target_value}% ({classification.variance_percent}%, "
                f"{classification.severity.value} severity)"
            )
            return self.trigger_escalation(
                metric, classification.severity, notes=notes, timestamp=timestamp
            )
        return False
