import pytest

from src.config import MetricType, PerformanceStatus, Severity
from src.performance.domain import (
    Classification,
    EffectiveTargets,
    FinancialImpactCalculator,
    PerformanceClassifier,
    PerformanceRuleConfig,
    RawSample,
)
from src.performance.domain.scoring import performance_score_of, variance_percent_of


def _sample(metric_type=MetricType.DELIVERY_PERFORMANCE, actual=95.0, target=95.0, **overrides):
    fields = dict(
        metric_type=metric_type,
        actual_value=actual,
        target_value=target,
        sample_size=10,
        total_events=10,
        successful_events=10,
        failed_events=0,
        potential_order_value=10000.0,
    )
    fields.update(overrides)
    return RawSample(**fields)


def _targets(**rates):
    return EffectiveTargets(
        delivery_days=7,
        quality_tolerance_percent=2,
        delivery_tolerance_percent=5,
        quantity_accuracy_threshold=98,
        fulfillment_target=95,
        penalty_rates={
            MetricType.DELIVERY_PERFORMANCE: rates.get("late", 0.5),
            MetricType.QUALITY_PERFORMANCE: rates.get("quality", 1.0),
        },
        bonus_rates={
            MetricType.DELIVERY_PERFORMANCE: rates.get("early", 1.0),
            MetricType.QUALITY_PERFORMANCE: rates.get("excellence", 0.5),
        },
    )


TIER_ORDER = [
    PerformanceStatus.EXCELLENT,
    PerformanceStatus.GOOD,
    PerformanceStatus.WARNING,
    PerformanceStatus.BREACH,
    PerformanceStatus.CRITICAL,
]


@pytest.fixture
def classifier():
    return PerformanceClassifier(PerformanceRuleConfig())


class TestStatusTiers:
    @pytest.mark.parametrize(
        "actual,expected",
        [
            (100.0, PerformanceStatus.EXCELLENT),
            (99.99, PerformanceStatus.GOOD),
            (95.0, PerformanceStatus.GOOD),
            (94.99, PerformanceStatus.WARNING),
            (90.0, PerformanceStatus.WARNING),
            (89.99, PerformanceStatus.BREACH),
            (80.0, PerformanceStatus.BREACH),
            (79.99, PerformanceStatus.CRITICAL),
        ],
    )
    def test_delivery_tier_boundaries(self, classifier, actual, expected):
        assert classifier.status_for(MetricType.DELIVERY_PERFORMANCE, actual, 95.0) == expected

    def test_quality_uses_tight_excellence_margin(self, classifier):
        assert classifier.status_for(MetricType.QUALITY_PERFORMANCE, 100.0, 98.0) == PerformanceStatus.EXCELLENT
        assert classifier.status_for(MetricType.QUALITY_PERFORMANCE, 99.0, 98.0) == PerformanceStatus.GOOD

    def test_lower_is_better_metric(self, classifier):
        assert classifier.status_for(MetricType.RESPONSE_TIME, 18.0, 24.0) == PerformanceStatus.EXCELLENT
        assert classifier.status_for(MetricType.RESPONSE_TIME, 24.0, 24.0) == PerformanceStatus.GOOD
        assert classifier.status_for(MetricType.RESPONSE_TIME, 30.0, 24.0) == PerformanceStatus.BREACH
        assert classifier.status_for(MetricType.RESPONSE_TIME, 40.0, 24.0) == PerformanceStatus.CRITICAL

    @pytest.mark.parametrize("metric_type", list(MetricType))
    @pytest.mark.parametrize("target", [24.0, 95.0, 98.0])
    def test_better_actual_never_scores_or_ranks_worse(self, classifier, metric_type, target):
        values = [step * 0.5 for step in range(1, 301)]
        # Walk from the worst actual value to the best one
        if not metric_type.higher_is_better:
            values.reverse()

        previous_score, previous_rank = None, None
        for actual in values:
            classification = classifier.classify(_sample(metric_type, actual=actual, target=target))
            rank = TIER_ORDER.index(classification.status)
            if previous_score is not None:
                assert classification.performance_score >= previous_score
                assert rank <= previous_rank
            previous_score, previous_rank = classification.performance_score, rank


class TestClassify:
    def test_critical_miss(self, classifier):
        classification = classifier.classify(_sample(actual=75.0, target=95.0))

        assert classification.status == PerformanceStatus.CRITICAL
        assert classification.severity == Severity.CRITICAL
        assert classification.variance == -20.0
        assert classification.variance_percent == -21.05
        assert classification.performance_score == 78.95
        assert not classification.is_within_sla

    def test_breach_severity_from_variance_table(self, classifier):
        classification = classifier.classify(_sample(actual=85.0, target=95.0))

        assert classification.status == PerformanceStatus.BREACH
        assert classification.severity == Severity.HIGH

    def test_warning_is_medium_severity(self, classifier):
        classification = classifier.classify(_sample(actual=92.0, target=95.0))

        assert classification.status == PerformanceStatus.WARNING
        assert classification.severity == Severity.MEDIUM

    def test_within_sla_is_low_severity(self, classifier):
        classification = classifier.classify(_sample(actual=97.0, target=95.0))

        assert classification.is_within_sla
        assert classification.severity == Severity.LOW

    def test_zero_target_has_no_variance_percent(self):
        assert variance_percent_of(50.0, 0.0) == 0.0
        assert performance_score_of(MetricType.DELIVERY_PERFORMANCE, 50.0, 0.0) == 100.0

    def test_score_is_capped_and_direction_aware(self):
        assert performance_score_of(MetricType.DELIVERY_PERFORMANCE, 100.0, 95.0) == 100.0
        assert performance_score_of(MetricType.RESPONSE_TIME, 30.0, 24.0) == 80.0

    def test_custom_severity_table(self):
        rules = PerformanceRuleConfig(severity_rules=[{"max_variance_percent": 20, "severity": "MEDIUM"}])

        classification = PerformanceClassifier(rules).classify(_sample(actual=85.0, target=95.0))

        assert classification.severity == Severity.MEDIUM


class TestFinancialImpact:
    def _classify(self, sample):
        return PerformanceClassifier().classify(sample)

    def test_penalty_per_failed_event(self):
        sample = _sample(actual=80.0, successful_events=8, failed_events=2)

        impact = FinancialImpactCalculator(0.5).compute_impact(
            sample, self._classify(sample), _targets(late=0.5), sample.average_order_value
        )

        assert impact.penalties == 10.0
        assert impact.bonuses == 0.0
        assert impact.net_impact == -10.0

    def test_flawless_delivery_earns_bonus_for_early_events(self):
        sample = _sample(actual=100.0, early_events=4)

        impact = FinancialImpactCalculator(0.5).compute_impact(
            sample, self._classify(sample), _targets(early=1.0), sample.average_order_value
        )

        assert impact.penalties == 0.0
        assert impact.bonuses == 40.0

    def test_mostly_early_delivery_within_sla_earns_bonus(self):
        sample = _sample(actual=96.0, total_events=25, sample_size=25, successful_events=24,
                         failed_events=1, early_events=15, potential_order_value=25000.0)

        impact = FinancialImpactCalculator(0.5).compute_impact(
            sample, self._classify(sample), _targets(early=1.0, late=0.5), sample.average_order_value
        )

        assert impact.bonuses == 150.0
        assert impact.penalties == 5.0

    def test_no_delivery_bonus_outside_sla(self):
        sample = _sample(actual=80.0, successful_events=8, failed_events=2, early_events=8)
        classification = self._classify(sample)

        impact = FinancialImpactCalculator(0.5).compute_impact(
            sample, classification, _targets(early=1.0), sample.average_order_value
        )

        assert not classification.is_within_sla
        assert impact.bonuses == 0.0

    def test_quality_bonus_requires_flawless_sample(self):
        flawless = _sample(MetricType.QUALITY_PERFORMANCE, actual=100.0, target=98.0)
        flawed = _sample(MetricType.QUALITY_PERFORMANCE, actual=90.0, target=98.0,
                         successful_events=9, failed_events=1)
        calculator = FinancialImpactCalculator(0.5)

        assert calculator.compute_impact(
            flawless, self._classify(flawless), _targets(excellence=0.5), 1000.0
        ).bonuses == 50.0
        assert calculator.compute_impact(
            flawed, self._classify(flawed), _targets(excellence=0.5), 1000.0
        ).bonuses == 0.0

    def test_zero_rates_yield_no_impact(self):
        sample = _sample(MetricType.ORDER_FULFILLMENT_RATE, actual=50.0, successful_events=5, failed_events=5)
        classification = Classification(
            variance=-45.0, variance_percent=-47.37, status=PerformanceStatus.CRITICAL,
            performance_score=52.63, severity=Severity.CRITICAL, is_within_sla=False,
        )

        impact = FinancialImpactCalculator(0.5).compute_impact(sample, classification, _targets(), 1000.0)

        assert impact.penalties == 0.0
        assert impact.bonuses == 0.0
