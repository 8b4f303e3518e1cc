from datetime import date, datetime, timezone

import pytest
from pydantic import ValidationError

from src.config import MetricType, PerformanceStatus, ReportStatus, Severity, TrendDirection
from src.core import DomainException
from src.performance.domain import (
    EscalationPolicy,
    EscalationRules,
    PerformanceClassifier,
    PerformanceRuleConfig,
    RawSample,
    TrendAnalyzer,
)

NOW = datetime(2024, 2, 10, 8, 0, tzinfo=timezone.utc)


def _delivery_sample(actual, max_delay_days=0, target=95.0):
    return RawSample(
        metric_type=MetricType.DELIVERY_PERFORMANCE,
        actual_value=actual,
        target_value=target,
        sample_size=10,
        total_events=10,
        successful_events=int(actual // 10),
        failed_events=10 - int(actual // 10),
        breakdown={"max_delay_days": max_delay_days},
    )


class TestTrendAnalyzer:
    @pytest.mark.parametrize(
        "metric_type,current,previous,expected",
        [
            (MetricType.DELIVERY_PERFORMANCE, 90.0, None, TrendDirection.STABLE),
            (MetricType.DELIVERY_PERFORMANCE, 90.0, 80.0, TrendDirection.IMPROVING),
            (MetricType.DELIVERY_PERFORMANCE, 80.0, 90.0, TrendDirection.DECLINING),
            (MetricType.DELIVERY_PERFORMANCE, 92.0, 90.0, TrendDirection.STABLE),
            (MetricType.DELIVERY_PERFORMANCE, 10.0, 0.0, TrendDirection.IMPROVING),
            (MetricType.DELIVERY_PERFORMANCE, 0.0, 0.0, TrendDirection.STABLE),
            (MetricType.RESPONSE_TIME, 20.0, 30.0, TrendDirection.IMPROVING),
            (MetricType.RESPONSE_TIME, 30.0, 20.0, TrendDirection.DECLINING),
        ],
    )
    def test_update_trend(self, metric_type, current, previous, expected):
        assert TrendAnalyzer(stability_percent=5.0).update_trend(metric_type, current, previous) == expected

    def test_rolling_average_includes_current_value(self):
        assert TrendAnalyzer.rolling_average(90.0, [80.0, 70.0, 60.0], 3) == 80.0

    def test_rolling_average_with_short_history(self):
        assert TrendAnalyzer.rolling_average(90.0, [], 12) == 90.0
        assert TrendAnalyzer.rolling_average(90.0, [85.0], 12) == 87.5


class TestEscalationPolicy:
    def test_high_severity_escalates_at_mapped_level(self, make_metric):
        metric = make_metric(actual_value=85.0)
        sample = _delivery_sample(85.0)
        classification = PerformanceClassifier().classify(sample)

        escalated = EscalationPolicy().evaluate(metric, sample, classification, None, False, timestamp=NOW)

        assert escalated
        assert metric.escalation_level == 3
        assert metric.requires_action
        assert metric.action_deadline == date(2024, 2, 17)
        assert "HIGH severity" in metric.escalation_notes

    def test_medium_severity_does_not_escalate(self, make_metric):
        metric = make_metric(actual_value=92.0)
        sample = _delivery_sample(92.0)

        escalated = EscalationPolicy().evaluate(
            metric, sample, PerformanceClassifier().classify(sample), None, False, timestamp=NOW
        )

        assert not escalated
        assert not metric.escalation_triggered

    def test_immediate_threshold_escalates_regardless_of_severity(self, make_metric, make_product_sla):
        sla = make_product_sla(escalation_rules=EscalationRules(immediate_delivery_delay_days=5))
        metric = make_metric(actual_value=96.0)
        sample = _delivery_sample(96.0, max_delay_days=6)
        classification = PerformanceClassifier().classify(sample)

        escalated = EscalationPolicy().evaluate(metric, sample, classification, sla, False, timestamp=NOW)

        assert classification.severity == Severity.LOW
        assert escalated
        assert metric.escalation_level == 4
        assert metric.action_deadline == date(2024, 2, 13)
        assert metric.escalation_notes.startswith("Delivery delayed 6 days")

    @pytest.mark.parametrize(
        "overrides",
        [
            {"is_suspended": True},
            {"effective_from": date(2022, 1, 1), "effective_until": date(2023, 6, 30)},
            {"effective_from": date(2024, 3, 1)},
        ],
        ids=["suspended", "expired", "not-yet-effective"],
    )
    def test_immediate_rule_needs_sla_in_force(self, make_metric, make_product_sla, overrides):
        sla = make_product_sla(
            escalation_rules=EscalationRules(immediate_delivery_delay_days=1), **overrides
        )
        metric = make_metric(actual_value=96.0)
        sample = _delivery_sample(96.0, max_delay_days=2)
        classification = PerformanceClassifier().classify(sample)

        escalated = EscalationPolicy().evaluate(metric, sample, classification, sla, False, timestamp=NOW)

        assert classification.severity == Severity.LOW
        assert not escalated
        assert not metric.escalation_triggered
        assert metric.escalation_level == 0

    def test_immediate_rule_ignored_for_other_metric_types(self, make_product_sla):
        sla = make_product_sla(escalation_rules=EscalationRules(immediate_quality_issue_rate=10))
        sample = _delivery_sample(96.0, max_delay_days=30)

        assert EscalationPolicy.immediate_escalation_reason(sample, sla, date(2024, 1, 1)) is None

    def test_already_escalated_metric_is_not_escalated_again(self, make_metric):
        metric = make_metric(actual_value=70.0)
        sample = _delivery_sample(70.0)

        escalated = EscalationPolicy().evaluate(
            metric, sample, PerformanceClassifier().classify(sample), None, True, timestamp=NOW
        )

        assert not escalated
        assert metric.escalation_level == 0

    def test_unmapped_severity_uses_default_level(self, make_metric):
        metric = make_metric()

        assert EscalationPolicy().trigger_escalation(metric, Severity.MEDIUM, timestamp=NOW)
        assert metric.escalation_level == 2
        assert metric.action_deadline == date(2024, 2, 24)


class TestMetricLifecycle:
    def test_trigger_escalation_is_one_way(self, make_metric):
        metric = make_metric()

        assert metric.trigger_escalation(level=3, deadline_days=7, notes="first", timestamp=NOW)
        assert not metric.trigger_escalation(level=4, deadline_days=3, notes="second", timestamp=NOW)
        assert metric.escalation_level == 3
        assert metric.escalation_notes == "first"

    def test_trigger_escalation_rejects_invalid_level(self, make_metric):
        with pytest.raises(ValueError):
            make_metric().trigger_escalation(level=5, deadline_days=1)

    def test_review_closes_action_but_keeps_escalation(self, make_metric):
        metric = make_metric()
        metric.trigger_escalation(level=3, deadline_days=7, timestamp=NOW)

        metric.mark_reviewed("analyst", notes="supplier contacted", close_action=True, timestamp=NOW)

        assert metric.is_reviewed
        assert metric.reviewed_by == "analyst"
        assert metric.review_notes == "supplier contacted"
        assert metric.escalation_triggered
        assert not metric.requires_action
        assert not metric.is_pending_escalation

    def test_overdue_after_deadline(self, make_metric):
        metric = make_metric()
        metric.trigger_escalation(level=4, deadline_days=3, timestamp=NOW)

        assert not metric.is_overdue(date(2024, 2, 13))
        assert metric.is_overdue(date(2024, 2, 14))

    def test_merge_keeps_annotations_and_stored_escalation(self, make_metric):
        stored = make_metric(id="m-1", actual_value=80.0)
        stored.trigger_escalation(level=3, deadline_days=7, notes="stored", timestamp=NOW)
        stored.mark_reviewed("analyst", notes="looking into it", timestamp=NOW)
        stored.mark_notified(NOW)

        fresh = make_metric(actual_value=97.0, status=PerformanceStatus.GOOD)
        stored.merge_recalculation(fresh)

        assert stored.id == "m-1"
        assert stored.actual_value == 97.0
        assert stored.status == PerformanceStatus.GOOD
        assert stored.escalation_triggered
        assert stored.escalation_notes == "stored"
        assert stored.review_notes == "looking into it"
        assert stored.escalation_notified_at == NOW

    def test_merge_adds_new_escalation(self, make_metric):
        stored = make_metric(id="m-1")
        fresh = make_metric(actual_value=70.0)
        fresh.trigger_escalation(level=4, deadline_days=3, timestamp=NOW)

        stored.merge_recalculation(fresh)

        assert stored.escalation_triggered
        assert stored.escalation_level == 4

    def test_merge_rejects_other_key(self, make_metric):
        with pytest.raises(DomainException):
            make_metric().merge_recalculation(make_metric(product_id="P-1"))

    def test_period_must_be_non_empty(self, make_metric):
        with pytest.raises(ValueError):
            make_metric(period_end=date(2024, 1, 1))


class TestPerformanceRuleConfig:
    def test_missing_metric_tiers_fall_back_to_defaults(self):
        rules = PerformanceRuleConfig(
            status_tiers={"DELIVERY_PERFORMANCE": [{"status": "GOOD", "offset": 0}, {"status": "EXCELLENT", "offset": 3}]}
        )

        delivery = rules.tiers_for(MetricType.DELIVERY_PERFORMANCE)
        assert [row.status for row in delivery] == [PerformanceStatus.EXCELLENT, PerformanceStatus.GOOD]
        assert len(rules.tiers_for(MetricType.QUALITY_PERFORMANCE)) == 4

    def test_deadline_required_for_every_escalation_level(self):
        with pytest.raises(ValidationError):
            PerformanceRuleConfig(action_deadline_days={3: 7, 4: 3})

    @pytest.mark.parametrize(
        "score,expected",
        [
            (95.0, ReportStatus.EXCELLENT),
            (94.9, ReportStatus.GOOD),
            (85.0, ReportStatus.GOOD),
            (70.0, ReportStatus.NEEDS_ATTENTION),
            (69.9, ReportStatus.CRITICAL),
        ],
    )
    def test_report_status_boundaries(self, score, expected):
        assert PerformanceRuleConfig().report_status_for(score) == expected
