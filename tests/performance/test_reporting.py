from datetime import date, datetime, timezone

import pytest

from src.config import ContractStatus, MetricType, PerformanceStatus, ReportStatus
from src.core import ResourceNotFoundException, ValidationException
from src.performance.application.services import (
    PENALTY_RECOMMENDATIONS,
    RENEWAL_RECOMMENDATION,
    MetricQuery,
    MetricReviewService,
    PerformanceReportingService,
)

JANUARY = (date(2024, 1, 1), date(2024, 2, 1))
FEBRUARY = (date(2024, 2, 1), date(2024, 3, 1))


@pytest.fixture
def reporting(contract_repo, metric_repo, clock):
    return PerformanceReportingService(contract_repo, metric_repo, clock=clock)


@pytest.fixture
def review(metric_repo, clock):
    return MetricReviewService(metric_repo, clock=clock)


def _escalate(metric, level, deadline_days, on):
    metric.trigger_escalation(
        level=level,
        deadline_days=deadline_days,
        timestamp=datetime.combine(on, datetime.min.time(), tzinfo=timezone.utc),
    )
    return metric


class TestContractReport:
    @pytest.fixture
    def seeded(self, contract_repo, metric_repo, make_contract, make_metric):
        contract_repo.add(make_contract())
        delivery = make_metric(
            actual_value=76.0, status=PerformanceStatus.BREACH, penalties_applied=10.0
        )
        _escalate(delivery, 3, 7, date(2024, 2, 2))
        metric_repo.seed(delivery)
        metric_repo.seed(make_metric(
            metric_type=MetricType.QUALITY_PERFORMANCE,
            target_value=98.0,
            actual_value=100.0,
            status=PerformanceStatus.EXCELLENT,
            bonuses_earned=5.0,
        ))
        metric_repo.seed(make_metric(period_start=date(2024, 3, 1), period_end=date(2024, 4, 1)))

    async def test_report_aggregates_metrics_in_period(self, reporting, seeded):
        report = await reporting.generate_contract_performance_report("C-1", *JANUARY)

        assert len(report.metrics) == 2
        assert report.overall_score == 90.0
        assert report.status == ReportStatus.GOOD
        assert report.total_penalties == 10.0
        assert report.total_bonuses == 5.0
        assert report.net_impact == -5.0
        assert "Renegotiate delivery SLA terms with the supplier" in report.recommendations
        assert len(report.escalations) == 1
        assert report.escalations[0].level == 3
        assert report.escalations[0].deadline == date(2024, 2, 9)

    async def test_default_window_ends_today(self, reporting, seeded):
        report = await reporting.generate_contract_performance_report("C-1")

        assert report.period_end == date(2024, 2, 10)
        assert report.period_start == date(2024, 1, 11)
        assert len(report.metrics) == 2

    async def test_empty_report_scores_zero(self, reporting, contract_repo, make_contract):
        contract_repo.add(make_contract())

        report = await reporting.generate_contract_performance_report("C-1", *JANUARY)

        assert report.metrics == []
        assert report.overall_score == 0.0
        assert report.status == ReportStatus.CRITICAL

    async def test_penalty_and_renewal_recommendations(
        self, reporting, contract_repo, metric_repo, make_contract, make_metric
    ):
        contract_repo.add(make_contract(volume_commitment=500.0, valid_until=date(2024, 3, 1)))
        metric_repo.seed(make_metric(penalties_applied=10.0))

        report = await reporting.generate_contract_performance_report("C-1", *JANUARY)

        assert PENALTY_RECOMMENDATIONS[0] in report.recommendations
        assert RENEWAL_RECOMMENDATION in report.recommendations

    async def test_unknown_contract(self, reporting):
        with pytest.raises(ResourceNotFoundException):
            await reporting.generate_contract_performance_report("missing", *JANUARY)

    async def test_inverted_period_is_rejected(self, reporting, seeded):
        with pytest.raises(ValidationException):
            await reporting.generate_contract_performance_report("C-1", date(2024, 2, 1), date(2024, 1, 1))


class TestDashboard:
    async def test_dashboard_summarises_current_month(
        self, reporting, contract_repo, metric_repo, make_contract, make_metric
    ):
        contract_repo.add(make_contract())
        contract_repo.add(make_contract("C-2", valid_until=date(2024, 3, 1)))
        contract_repo.add(make_contract("C-3", status=ContractStatus.EXPIRED))
        metric_repo.seed(make_metric(
            period_start=FEBRUARY[0], period_end=FEBRUARY[1],
            actual_value=90.0, status=PerformanceStatus.WARNING,
        ))
        metric_repo.seed(make_metric(
            contract_id="C-2", period_start=FEBRUARY[0], period_end=FEBRUARY[1],
            actual_value=70.0, status=PerformanceStatus.CRITICAL, penalties_applied=20.0,
        ))
        metric_repo.seed(make_metric(
            contract_id="C-2", metric_type=MetricType.QUALITY_PERFORMANCE,
            period_start=FEBRUARY[0], period_end=FEBRUARY[1],
            actual_value=100.0, status=PerformanceStatus.EXCELLENT, bonuses_earned=5.0,
        ))
        metric_repo.seed(_escalate(make_metric(penalties_applied=99.0), 4, 3, date(2024, 2, 2)))

        dashboard = await reporting.get_dashboard_metrics()

        assert dashboard.active_contracts == 2
        assert dashboard.at_risk_contracts == 1
        assert dashboard.excellent_contracts == 1
        assert dashboard.penalties_this_month == 20.0
        assert dashboard.bonuses_this_month == 5.0
        assert dashboard.avg_delivery_performance == 80.0
        assert dashboard.avg_quality_performance == 100.0
        assert dashboard.pending_escalations == 1
        assert dashboard.expiring_within_30_days == 1

    async def test_empty_dashboard(self, reporting):
        dashboard = await reporting.get_dashboard_metrics()

        assert dashboard.active_contracts == 0
        assert dashboard.avg_delivery_performance == 0.0


class TestEscalationQueue:
    @pytest.fixture
    def escalations(self, metric_repo, make_metric, clock):
        overdue = metric_repo.seed(_escalate(make_metric(), 4, 3, date(2024, 2, 1)))
        open_item = metric_repo.seed(
            _escalate(make_metric(metric_type=MetricType.QUALITY_PERFORMANCE), 3, 7, date(2024, 2, 9))
        )
        closed = _escalate(make_metric(product_id="P-1"), 4, 3, date(2024, 2, 1))
        closed.mark_reviewed("analyst", close_action=True, timestamp=clock.now)
        metric_repo.seed(closed)
        return overdue, open_item

    async def test_pending_excludes_closed_actions(self, reporting, escalations):
        pending = await reporting.list_pending_escalations()

        assert {m.id for m in pending} == {m.id for m in escalations}

    async def test_filter_by_level(self, reporting, escalations):
        pending = await reporting.list_pending_escalations(level=4)

        assert [m.id for m in pending] == [escalations[0].id]

    async def test_overdue_only(self, reporting, escalations):
        pending = await reporting.list_pending_escalations(overdue=True)

        assert [m.id for m in pending] == [escalations[0].id]


class TestTrendAndListing:
    async def test_trend_is_time_ordered_within_months(self, reporting, metric_repo, make_metric):
        for start, end, actual in [
            (date(2023, 11, 1), date(2023, 12, 1), 70.0),
            (date(2024, 2, 1), date(2024, 3, 1), 95.0),
            (date(2023, 12, 1), date(2024, 1, 1), 80.0),
            (date(2024, 1, 1), date(2024, 2, 1), 90.0),
        ]:
            metric_repo.seed(make_metric(period_start=start, period_end=end, actual_value=actual))

        points = await reporting.get_performance_trend(contract_id="C-1", months=3)

        assert [p.actual_value for p in points] == [80.0, 90.0, 95.0]
        assert points[0].performance_score == 84.21

    async def test_trend_requires_positive_months(self, reporting):
        with pytest.raises(ValidationException):
            await reporting.get_performance_trend(months=0)

    async def test_list_metrics_paginates(self, reporting, metric_repo, make_metric):
        for month in (1, 2, 3):
            metric_repo.seed(make_metric(period_start=date(2024, month, 1), period_end=date(2024, month + 1, 1)))

        page = await reporting.list_metrics(MetricQuery(contract_id="C-1"), limit=2, offset=1)

        assert [m.period_start for m in page] == [date(2024, 2, 1), date(2024, 1, 1)]


class TestMetricReview:
    async def test_review_records_reviewer(self, review, metric_repo, make_metric, clock):
        metric = metric_repo.seed(make_metric())

        saved = await review.review_metric(metric.id, "analyst", notes="ok", action_plan="weekly call")

        assert saved.is_reviewed
        assert saved.reviewed_at == clock.now
        assert saved.action_plan == "weekly call"

    async def test_review_requires_reviewer(self, review, metric_repo, make_metric):
        metric = metric_repo.seed(make_metric())

        with pytest.raises(ValidationException):
            await review.review_metric(metric.id, "  ")

    async def test_review_unknown_metric(self, review):
        with pytest.raises(ResourceNotFoundException):
            await review.review_metric("missing", "analyst")

    async def test_manual_escalation_is_one_way(self, review, metric_repo, make_metric):
        metric = metric_repo.seed(make_metric())

        first, triggered = await review.escalate_metric(metric.id, notes="supplier unresponsive")
        second, triggered_again = await review.escalate_metric(metric.id, level=4)

        assert triggered
        assert first.escalation_level == 3
        assert first.action_deadline == date(2024, 2, 17)
        assert not triggered_again
        assert second.escalation_level == 3

    @pytest.mark.parametrize("level", [0, 1, 5])
    async def test_manual_escalation_rejects_unknown_level(self, review, metric_repo, make_metric, level):
        metric = metric_repo.seed(make_metric())

        with pytest.raises(ValidationException):
            await review.escalate_metric(metric.id, level=level)
