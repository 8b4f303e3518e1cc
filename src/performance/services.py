"""
Performance Background Services
===============================

Services run by the scheduler rather than by HTTP requests:
- the periodic batch over the last completed measurement window
- delivery of escalation notifications to Slack

Notification delivery is decoupled from calculation. A metric is stamped
as notified only after Slack accepted it, so an outage only delays alerts.
"""

from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from src.config import MeasurementPeriod, settings
from src.core import ApplicationException, NotificationException
from src.performance.application.services import (
    ContractPerformanceService,
    IPerformanceMetricRepository,
    MetricQuery,
    PerformanceRunResult,
)
from src.performance.domain import MeasurementWindow
from src.performance.infrastructure.external import SlackClient
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EscalationDispatcher:
    """
    Sends Slack notifications for escalated metrics not yet notified.
    """

    def __init__(
        self,
        metric_repository: IPerformanceMetricRepository,
        slack_client: SlackClient,
        batch_size: int = 50,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._metric_repo = metric_repository
        self._slack_client = slack_client
        self._batch_size = batch_size
        self._clock = clock

    async def dispatch_pending(self) -> Dict[str, int]:
        """
        Notify every pending, unnotified escalation.

        Returns:
            Summary with the number of metrics found, sent and failed
        """
        summary = {"pending": 0, "sent": 0, "failed": 0}
        if not self._slack_client.is_configured:
            return summary

        pending = await self._metric_repo.list(
            MetricQuery(pending_action_only=True, unnotified_only=True),
            limit=self._batch_size,
        )
        summary["pending"] = len(pending)

        for metric in pending:
            try:
                sent = await self._slack_client.send_escalation(metric)
            except NotificationException as e:
                summary["failed"] += 1
                logger.error(
                    "Escalation notification failed",
                    extra={"metric_id": metric.id, "error": e.message}
                )
                continue

            if not sent:
                # Circuit open: leave the rest for the next cycle
                break

            await self._metric_repo.mark_notified(metric.id, self._clock())
            summary["sent"] += 1

        if summary["pending"]:
            logger.info("Escalation dispatch finished", extra=summary)
        return summary


class PerformanceBatchJob:
    """
    Scheduled batch: calculate the last completed window, then notify.
    """

    def __init__(
        self,
        performance_service: ContractPerformanceService,
        dispatcher: Optional[EscalationDispatcher] = None,
        period: Optional[MeasurementPeriod] = None,
        calculated_by: Optional[str] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._service = performance_service
        self._dispatcher = dispatcher
        self._period = period or MeasurementPeriod(settings.performance_schedule_period)
        self._calculated_by = calculated_by or settings.performance_calculated_by
        self._clock = clock

    async def run(self) -> Optional[PerformanceRunResult]:
        """Run one cycle. Failures are logged so the scheduler keeps running."""
        window = MeasurementWindow.last_completed(self._period, self._clock().date())
        result: Optional[PerformanceRunResult] = None

        try:
            result = await self._service.calculate_all_contract_performance(
                window.start,
                window.end,
                period=self._period,
                calculated_by=self._calculated_by,
            )
        except ApplicationException as e:
            logger.error(
                "Scheduled performance calculation failed",
                extra={"error": e.message, "details": e.details}
            )

        if self._dispatcher is not None:
            try:
                await self._dispatcher.dispatch_pending()
            except ApplicationException as e:
                logger.error("Escalation dispatch failed", extra={"error": e.message})

        return result
