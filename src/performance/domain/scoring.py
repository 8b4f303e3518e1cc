"""
Classification and Financial Impact
===================================

Turns a raw sample into a status tier, a 0-100 score and a severity, and
prices the sample in penalties and bonuses.

Thresholds come from the ordered tables in PerformanceRuleConfig so that
each boundary can be checked on its own.
"""

from typing import Optional

from src.config import MetricType, PerformanceStatus, Severity, WITHIN_SLA_STATUSES, settings
from src.performance.domain.value_objects import (
    Classification,
    EffectiveTargets,
    FinancialImpact,
    PerformanceRuleConfig,
    RawSample,
)


def variance_of(actual: float, target: float) -> float:
    return round(actual - target, 2)


def variance_percent_of(actual: float, target: float) -> float:
    """Relative deviation; a zero target yields 0."""
    if target == 0:
        return 0.0
    return round((actual - target) / target * 100, 2)


def performance_score_of(metric_type: MetricType, actual: float, target: float) -> float:
    """
    Normalised 0-100 score.

    Higher-is-better metrics score actual / target; lower-is-better
    metrics score target / actual.
    """
    if metric_type.higher_is_better:
        if target <= 0:
            return 100.0
        ratio = actual / target
    else:
        if actual <= 0:
            return 100.0
        ratio = target / actual
    return round(min(max(ratio * 100, 0.0), 100.0), 2)


class PerformanceClassifier:
    """
    Classifier for raw samples.

    Usage:
        classifier = PerformanceClassifier(rules)
        classification = classifier.classify(sample)
    """

    def __init__(self, rules: Optional[PerformanceRuleConfig] = None):
        self.rules = rules or PerformanceRuleConfig()

    def status_for(self, metric_type: MetricType, actual: float, target: float) -> PerformanceStatus:
        """First tier row the actual value reaches; CRITICAL when none does."""
        for row in self.rules.tiers_for(metric_type):
            if metric_type.higher_is_better:
                reached = actual >= target + row.offset
            else:
                reached = actual <= target - row.offset
            if reached:
                return row.status
        return PerformanceStatus.CRITICAL

    def severity_for(self, status: PerformanceStatus, variance_percent: float) -> Severity:
        if status in WITHIN_SLA_STATUSES:
            return Severity.LOW
        # A CRITICAL tier is never reported below CRITICAL severity
        if status == PerformanceStatus.CRITICAL:
            return Severity.CRITICAL
        return self.rules.severity_for(abs(variance_percent))

    def classify(self, sample: RawSample) -> Classification:
        actual, target = sample.actual_value, sample.target_value
        status = self.status_for(sample.metric_type, actual, target)
        variance_percent = variance_percent_of(actual, target)
        return Classification(
            variance=variance_of(actual, target),
            variance_percent=variance_percent,
            status=status,
            performance_score=performance_score_of(sample.metric_type, actual, target),
            severity=self.severity_for(status, variance_percent),
            is_within_sla=status in WITHIN_SLA_STATUSES,
        )


class FinancialImpactCalculator:
    """
    Prices a sample using the resolved penalty and bonus rates.

    Penalties are charged per failed event. Bonuses are only paid on a
    flawless sample or, for delivery, when enough deliveries arrived
    early while the sample stayed within SLA.
    """

    def __init__(self, early_delivery_bonus_fraction: Optional[float] = None):
        self.early_delivery_bonus_fraction = (
            settings.early_delivery_bonus_fraction
            if early_delivery_bonus_fraction is None
            else early_delivery_bonus_fraction
        )

    def qualifying_bonus_events(self, sample: RawSample, classification: Classification) -> int:
        flawless = sample.failed_events == 0
        if sample.metric_type == MetricType.DELIVERY_PERFORMANCE:
            early_share = sample.early_events / sample.total_events if sample.total_events else 0.0
            mostly_early = (
                classification.is_within_sla
                and sample.early_events > 0
                and early_share >= self.early_delivery_bonus_fraction
            )
            return sample.early_events if flawless or mostly_early else 0
        return sample.successful_events if flawless else 0

    def compute_impact(
        self,
        sample: RawSample,
        classification: Classification,
        targets: EffectiveTargets,
        average_order_value: float,
    ) -> FinancialImpact:
        penalty_rate = targets.penalty_rate(sample.metric_type)
        bonus_rate = targets.bonus_rate(sample.metric_type)

        penalties = sample.failed_events * average_order_value * penalty_rate / 100
        bonuses = (
            self.qualifying_bonus_events(sample, classification)
            * average_order_value * bonus_rate / 100
        )
        return FinancialImpact(penalties=round(penalties, 2), bonuses=round(bonuses, 2))
