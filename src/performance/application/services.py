"""
Performance Application Services
================================

Application services orchestrate business logic and coordinate between
domain objects and repositories.

Following SOLID principles:
- Single Responsibility: aggregation, reporting and review are separate services
- Dependency Inversion: depend on repository interfaces, not concrete stores
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from statistics import mean
from typing import Callable, Dict, List, Optional, Sequence, Tuple
from uuid import uuid4

from src.config import (
    AT_RISK_STATUSES,
    ContractStatus,
    MeasurementPeriod,
    MetricType,
    PerformanceStatus,
    ReportStatus,
    Severity,
    TrendDirection,
    settings,
)
from src.core import (
    ApplicationException,
    RepositoryException,
    ResourceNotFoundException,
    ValidationException,
)
from src.performance.domain import (
    CONTRACT_SCOPE_METRICS,
    PRODUCT_SCOPE_METRICS,
    Contract,
    EscalationPolicy,
    FinancialImpactCalculator,
    MeasurementWindow,
    MetricCalculator,
    MetricKey,
    OrderRecord,
    PerformanceClassifier,
    PerformanceMetric,
    PerformanceRuleConfig,
    ProductSLA,
    RawSample,
    SLAResolver,
    TrendAnalyzer,
    build_calculators,
)
from src.performance.domain.entities import ESCALATION_FIELDS
from src.performance.domain.value_objects import shift_period
from src.shared.infrastructure.logging import get_context_logger, get_logger, log_latency

logger = get_logger(__name__)

ROLLING_SHORT_PERIODS = 3
ROLLING_LONG_PERIODS = 12
ESTIMATED_CONFIDENCE_LEVEL = 50.0
FULL_CONFIDENCE_LEVEL = 95.0
MANUAL_ESCALATION_LEVEL = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ========== Queries and Read Models ==========

@dataclass
class MetricQuery:
    """
    Filters for listing persisted metrics.

    Period bounds select metrics whose window overlaps [period_from, period_to).
    """
    contract_id: Optional[str] = None
    product_id: Optional[str] = None
    contract_level_only: bool = False
    metric_type: Optional[MetricType] = None
    statuses: Optional[List[PerformanceStatus]] = None
    measurement_period: Optional[MeasurementPeriod] = None
    period_from: Optional[date] = None
    period_to: Optional[date] = None
    escalated_only: bool = False
    pending_action_only: bool = False
    escalation_level: Optional[int] = None
    overdue_as_of: Optional[date] = None
    unnotified_only: bool = False

    def matches(self, metric: PerformanceMetric) -> bool:
        """In-memory evaluation of the same filters the SQL repository applies."""
        checks = (
            self.contract_id is None or metric.contract_id == self.contract_id,
            self.product_id is None or metric.product_id == self.product_id,
            not self.contract_level_only or metric.product_id is None,
            self.metric_type is None or metric.metric_type == self.metric_type,
            not self.statuses or metric.status in self.statuses,
            self.measurement_period is None or metric.measurement_period == self.measurement_period,
            self.period_from is None or metric.period_end > self.period_from,
            self.period_to is None or metric.period_start < self.period_to,
            not self.escalated_only or metric.escalation_triggered,
            not self.pending_action_only or metric.is_pending_escalation,
            self.escalation_level is None or metric.escalation_level == self.escalation_level,
            self.overdue_as_of is None or metric.is_overdue(self.overdue_as_of),
            not self.unnotified_only or metric.escalation_notified_at is None,
        )
        return all(checks)


@dataclass
class EscalationItem:
    """A pending escalation surfaced in a contract report."""
    metric_id: Optional[str]
    metric_type: MetricType
    product_id: Optional[str]
    level: int
    reason: str
    action_required: str
    deadline: Optional[date]

    @classmethod
    def from_metric(cls, metric: PerformanceMetric) -> "EscalationItem":
        return cls(
            metric_id=metric.id,
            metric_type=metric.metric_type,
            product_id=metric.product_id,
            level=metric.escalation_level,
            reason=metric.escalation_notes or f"{metric.metric_type.value} below SLA",
            action_required=metric.action_plan or "Review supplier performance and agree corrective actions",
            deadline=metric.action_deadline,
        )


@dataclass
class ContractPerformanceReport:
    contract: Contract
    period_start: date
    period_end: date
    overall_score: float
    status: ReportStatus
    total_penalties: float
    total_bonuses: float
    net_impact: float
    metrics: List[PerformanceMetric]
    recommendations: List[str]
    escalations: List[EscalationItem]


@dataclass
class DashboardMetrics:
    active_contracts: int
    at_risk_contracts: int
    excellent_contracts: int
    penalties_this_month: float
    bonuses_this_month: float
    avg_delivery_performance: float
    avg_quality_performance: float
    pending_escalations: int
    expiring_within_30_days: int


@dataclass
class TrendPoint:
    contract_id: str
    product_id: Optional[str]
    metric_type: MetricType
    period_start: date
    period_end: date
    actual_value: float
    target_value: float
    performance_score: float
    status: PerformanceStatus
    trend_direction: TrendDirection


@dataclass
class ContractOutcome:
    """What one contract contributed to a batch run."""
    contract_id: str
    metrics: List[PerformanceMetric] = field(default_factory=list)
    failed_metrics: Dict[str, str] = field(default_factory=dict)
    escalations_triggered: int = 0
    error: Optional[str] = None


@dataclass
class PerformanceRunResult:
    """Summary of one batch calculation."""
    run_id: str
    window: MeasurementWindow
    calculated_by: str
    contracts_evaluated: int = 0
    metrics: List[PerformanceMetric] = field(default_factory=list)
    failed_contracts: Dict[str, str] = field(default_factory=dict)
    failed_metrics: Dict[str, str] = field(default_factory=dict)
    escalations_triggered: int = 0

    def add(self, outcome: ContractOutcome) -> None:
        self.contracts_evaluated += 1
        if outcome.error is not None:
            self.failed_contracts[outcome.contract_id] = outcome.error
        self.metrics.extend(outcome.metrics)
        self.failed_metrics.update(outcome.failed_metrics)
        self.escalations_triggered += outcome.escalations_triggered

    @property
    def total_penalties(self) -> float:
        return round(sum(m.penalties_applied for m in self.metrics), 2)

    @property
    def total_bonuses(self) -> float:
        return round(sum(m.bonuses_earned for m in self.metrics), 2)


# ========== Repository Interfaces (Dependency Inversion) ==========

class IContractRepository(ABC):
    """Interface for read access to contract terms."""

    @abstractmethod
    async def get_by_id(self, contract_id: str) -> Optional[Contract]:
        """Get contract with its product SLAs."""

    @abstractmethod
    async def list_overlapping(
        self,
        start: date,
        end: date,
        status: ContractStatus = ContractStatus.ACTIVE,
    ) -> List[Contract]:
        """Contracts with the given status whose validity intersects [start, end)."""

    @abstractmethod
    async def list_effective_on(self, as_of: date) -> List[Contract]:
        """Contracts currently effective on a date."""


class IOrderLedger(ABC):
    """Interface for read access to purchase orders."""

    @abstractmethod
    async def list_orders(
        self,
        supplier_id: str,
        created_from: datetime,
        created_until: datetime,
    ) -> List[OrderRecord]:
        """Orders of a supplier created in [created_from, created_until)."""


class IPerformanceMetricRepository(ABC):
    """Interface for the metrics store."""

    @abstractmethod
    async def get_by_id(self, metric_id: str) -> Optional[PerformanceMetric]:
        """Get metric by ID."""

    @abstractmethod
    async def get_by_key(self, key: MetricKey) -> Optional[PerformanceMetric]:
        """Get the metric stored for a key."""

    @abstractmethod
    async def upsert(self, metric: PerformanceMetric) -> PerformanceMetric:
        """
        Insert or overwrite the calculation of a key atomically.

        Review annotations are preserved and escalation state never regresses.
        """

    @abstractmethod
    async def save_annotations(self, metric: PerformanceMetric, fields: Sequence[str]) -> PerformanceMetric:
        """
        Persist the named review or escalation fields of an existing metric.

        Fields not named keep their stored value. A stored escalation is
        never replaced or cleared.
        """

    @abstractmethod
    async def mark_notified(self, metric_id: str, timestamp: datetime) -> PerformanceMetric:
        """Stamp the first escalation notification of a stored metric."""

    @abstractmethod
    async def list_history(
        self,
        key: MetricKey,
        measurement_period: MeasurementPeriod,
        before: date,
        limit: int,
    ) -> List[PerformanceMetric]:
        """Same-lineage metrics ending on or before ``before``, most recent first."""

    @abstractmethod
    async def list(
        self,
        query: MetricQuery,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[PerformanceMetric]:
        """List metrics matching a query, most recent period first."""


class IRuleConfigProvider(ABC):
    """Interface for rule table access."""

    @abstractmethod
    def get_config(self) -> PerformanceRuleConfig:
        """Get current rule tables."""


class DefaultRuleConfigProvider(IRuleConfigProvider):
    """Built-in rule tables, used when no file-backed provider is configured."""

    def __init__(self, config: Optional[PerformanceRuleConfig] = None):
        self._config = config or PerformanceRuleConfig()

    def get_config(self) -> PerformanceRuleConfig:
        return self._config


# ========== Application Services ==========

class ContractPerformanceService:
    """
    Batch aggregation of contract performance.

    Contracts are processed concurrently up to ``max_workers``; product
    scopes of one contract run concurrently and are joined before the
    contract is reported done. Each metric is persisted on its own, so a
    failure never discards sibling metrics.
    """

    def __init__(
        self,
        contract_repository: IContractRepository,
        order_ledger: IOrderLedger,
        metric_repository: IPerformanceMetricRepository,
        config_provider: Optional[IRuleConfigProvider] = None,
        resolver: Optional[SLAResolver] = None,
        financial_calculator: Optional[FinancialImpactCalculator] = None,
        max_workers: Optional[int] = None,
        upsert_retries: Optional[int] = None,
        retry_base_delay: float = 0.5,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._contract_repo = contract_repository
        self._order_ledger = order_ledger
        self._metric_repo = metric_repository
        self._config_provider = config_provider or DefaultRuleConfigProvider()
        self._resolver = resolver or SLAResolver()
        self._calculators: Dict[MetricType, MetricCalculator] = build_calculators(self._resolver)
        self._financial = financial_calculator or FinancialImpactCalculator()
        self._max_workers = max_workers or settings.performance_max_workers
        self._upsert_retries = upsert_retries or settings.performance_upsert_retries
        self._retry_base_delay = retry_base_delay
        self._clock = clock

    async def calculate_all_contract_performance(
        self,
        start_date: date,
        end_date: date,
        period: MeasurementPeriod = MeasurementPeriod.MONTHLY,
        calculated_by: Optional[str] = None,
        contract_ids: Optional[Sequence[str]] = None,
    ) -> PerformanceRunResult:
        """
        Calculate and persist every metric of every active contract for a window.

        Args:
            start_date: Window start (inclusive)
            end_date: Window end (exclusive)
            period: Measurement period recorded on the metrics
            calculated_by: Actor recorded on the metrics
            contract_ids: Optional subset of contracts to calculate

        Returns:
            PerformanceRunResult with the stored metrics and any failures
        """
        try:
            window = MeasurementWindow(period, start_date, end_date)
        except ValueError as e:
            raise ValidationException(str(e), {"start_date": str(start_date), "end_date": str(end_date)})

        result = PerformanceRunResult(
            run_id=str(uuid4()),
            window=window,
            calculated_by=calculated_by or settings.performance_calculated_by,
        )
        run_logger = get_context_logger(__name__, run_id=result.run_id)

        contracts = await self._contract_repo.list_overlapping(start_date, end_date)
        if contract_ids is not None:
            wanted = set(contract_ids)
            contracts = [contract for contract in contracts if contract.id in wanted]

        run_logger.info(
            "Performance calculation started",
            extra={
                "period": period.value,
                "period_start": start_date.isoformat(),
                "period_end": end_date.isoformat(),
                "contracts": len(contracts),
            }
        )

        semaphore = asyncio.Semaphore(self._max_workers)

        async def worker(contract: Contract) -> ContractOutcome:
            async with semaphore:
                return await self._process_contract_safely(contract, window, result.calculated_by, run_logger)

        with log_latency(logger, "performance_calculation", run_id=result.run_id, contracts=len(contracts)):
            outcomes = await asyncio.gather(*(worker(contract) for contract in contracts))

        for outcome in outcomes:
            result.add(outcome)

        run_logger.info(
            "Performance calculation finished",
            extra={
                "contracts_evaluated": result.contracts_evaluated,
                "metrics_stored": len(result.metrics),
                "failed_contracts": len(result.failed_contracts),
                "failed_metrics": len(result.failed_metrics),
                "escalations_triggered": result.escalations_triggered,
            }
        )
        return result

    async def _process_contract_safely(
        self,
        contract: Contract,
        window: MeasurementWindow,
        calculated_by: str,
        run_logger,
    ) -> ContractOutcome:
        """Process one contract; any failure is recorded instead of raised."""
        try:
            outcome = await self._process_contract(contract, window, calculated_by, run_logger)
        except ApplicationException as e:
            run_logger.error(
                "Contract skipped",
                extra={"contract_id": contract.id, "error_type": type(e).__name__, "error": e.message}
            )
            return ContractOutcome(contract_id=contract.id, error=e.message)
        except Exception as e:
            run_logger.exception(
                "Contract calculation failed",
                extra={"contract_id": contract.id, "error_type": type(e).__name__}
            )
            return ContractOutcome(contract_id=contract.id, error=f"{type(e).__name__}: {e}")

        run_logger.info(
            "Contract processed",
            extra={
                "contract_id": contract.id,
                "metrics_stored": len(outcome.metrics),
                "failed_metrics": len(outcome.failed_metrics),
            }
        )
        return outcome

    async def _process_contract(
        self,
        contract: Contract,
        window: MeasurementWindow,
        calculated_by: str,
        run_logger,
    ) -> ContractOutcome:
        SLAResolver.validate(contract)
        orders = await self._order_ledger.list_orders(
            contract.supplier_id, window.start_datetime, window.end_datetime
        )
        # One rule snapshot per contract so a reload never splits a contract
        rules = self._config_provider.get_config()

        scopes: List[Optional[ProductSLA]] = [None]
        scopes.extend(contract.product_sla_for(product_id, window.start) for product_id in contract.product_ids)

        scope_outcomes = await asyncio.gather(*(
            self._process_scope(contract, product_sla, orders, window, calculated_by, rules, run_logger)
            for product_sla in scopes
        ))

        outcome = ContractOutcome(contract_id=contract.id)
        for metrics, failures, escalations in scope_outcomes:
            outcome.metrics.extend(metrics)
            outcome.failed_metrics.update(failures)
            outcome.escalations_triggered += escalations
        return outcome

    async def _process_scope(
        self,
        contract: Contract,
        product_sla: Optional[ProductSLA],
        orders: Sequence[OrderRecord],
        window: MeasurementWindow,
        calculated_by: str,
        rules: PerformanceRuleConfig,
        run_logger,
    ) -> Tuple[List[PerformanceMetric], Dict[str, str], int]:
        metric_types = PRODUCT_SCOPE_METRICS if product_sla is not None else CONTRACT_SCOPE_METRICS
        stored: List[PerformanceMetric] = []
        failures: Dict[str, str] = {}
        escalations = 0

        for metric_type in metric_types:
            sample = self._calculators[metric_type].compute(contract, product_sla, orders, window)
            if sample is None:
                continue
            key = self._key_for(contract, product_sla, metric_type, window)
            try:
                metric, escalated = await self._store_with_retry(
                    key, contract, product_sla, sample, window, calculated_by, rules, run_logger
                )
            except RepositoryException as e:
                failures[str(key)] = e.message
                continue
            stored.append(metric)
            escalations += int(escalated)

        return stored, failures, escalations

    @staticmethod
    def _key_for(
        contract: Contract,
        product_sla: Optional[ProductSLA],
        metric_type: MetricType,
        window: MeasurementWindow,
    ) -> MetricKey:
        return MetricKey(
            contract_id=contract.id,
            product_id=product_sla.product_id if product_sla is not None else None,
            metric_type=metric_type,
            period_start=window.start,
            period_end=window.end,
        )

    async def _store_with_retry(
        self,
        key: MetricKey,
        contract: Contract,
        product_sla: Optional[ProductSLA],
        sample: RawSample,
        window: MeasurementWindow,
        calculated_by: str,
        rules: PerformanceRuleConfig,
        run_logger,
    ) -> Tuple[PerformanceMetric, bool]:
        """Evaluate and upsert one metric, retrying with exponential backoff."""
        last_error: Optional[RepositoryException] = None

        for attempt in range(self._upsert_retries):
            try:
                return await self._evaluate_and_store(
                    key, contract, product_sla, sample, window, calculated_by, rules
                )
            except RepositoryException as e:
                last_error = e
                run_logger.warning(
                    "Metric upsert failed",
                    extra={
                        "metric_key": str(key),
                        "attempt": attempt + 1,
                        "max_attempts": self._upsert_retries,
                        "error": e.message,
                    }
                )
                if attempt < self._upsert_retries - 1:
                    await asyncio.sleep(self._retry_base_delay * (2 ** attempt))

        run_logger.error("Metric upsert gave up", extra={"metric_key": str(key)})
        raise last_error

    async def _evaluate_and_store(
        self,
        key: MetricKey,
        contract: Contract,
        product_sla: Optional[ProductSLA],
        sample: RawSample,
        window: MeasurementWindow,
        calculated_by: str,
        rules: PerformanceRuleConfig,
    ) -> Tuple[PerformanceMetric, bool]:
        now = self._clock()
        classification = PerformanceClassifier(rules).classify(sample)
        targets = self._resolver.resolve(contract, product_sla, window.start)
        impact = self._financial.compute_impact(
            sample, classification, targets, sample.average_order_value
        )

        existing = await self._metric_repo.get_by_key(key)
        history = await self._metric_repo.list_history(
            key, window.period, before=window.start, limit=ROLLING_LONG_PERIODS - 1
        )
        previous = history[0] if history and history[0].period_end == window.start else None
        history_values = [metric.actual_value for metric in history]

        trends = TrendAnalyzer(rules.trend_stability_percent)
        confident = sample.total_events >= rules.minimum_confident_sample

        metric = PerformanceMetric(
            contract_id=contract.id,
            product_id=key.product_id,
            product_sla_id=product_sla.id if product_sla is not None else None,
            metric_type=sample.metric_type,
            measurement_period=window.period,
            period_start=window.start,
            period_end=window.end,
            target_value=sample.target_value,
            actual_value=sample.actual_value,
            variance=classification.variance,
            variance_percent=classification.variance_percent,
            status=classification.status,
            severity=classification.severity,
            sample_size=sample.sample_size,
            total_events=sample.total_events,
            successful_events=sample.successful_events,
            failed_events=sample.failed_events,
            penalties_applied=impact.penalties,
            bonuses_earned=impact.bonuses,
            net_financial_impact=impact.net_impact,
            potential_order_value=sample.potential_order_value,
            trend_direction=trends.update_trend(
                sample.metric_type,
                sample.actual_value,
                previous.actual_value if previous is not None else None,
            ),
            previous_period_value=previous.actual_value if previous is not None else None,
            rolling_average_3=trends.rolling_average(sample.actual_value, history_values, ROLLING_SHORT_PERIODS),
            rolling_average_12=trends.rolling_average(sample.actual_value, history_values, ROLLING_LONG_PERIODS),
            performance_breakdown=dict(sample.breakdown),
            calculation_timestamp=now,
            is_estimated=not confident,
            confidence_level=FULL_CONFIDENCE_LEVEL if confident else ESTIMATED_CONFIDENCE_LEVEL,
            calculated_by=calculated_by,
        )

        escalated = EscalationPolicy(rules).evaluate(
            metric,
            sample,
            classification,
            product_sla,
            already_escalated=existing is not None and existing.escalation_triggered,
            timestamp=now,
        )

        stored = await self._metric_repo.upsert(metric)
        if escalated:
            logger.warning(
                "Metric escalated",
                extra={**stored.summary(), "notes": stored.escalation_notes}
            )
        return stored, escalated


# ========== Reporting ==========

# Status rows that trigger a metric-specific recommendation
RECOMMENDATION_RULES: Tuple[Tuple[MetricType, Tuple[str, ...]], ...] = (
    (
        MetricType.DELIVERY_PERFORMANCE,
        (
            "Renegotiate delivery SLA terms with the supplier",
            "Increase monitoring of delivery performance",
        ),
    ),
    (
        MetricType.QUALITY_PERFORMANCE,
        (
            "Schedule a quality audit with the supplier",
            "Tighten acceptance criteria for incoming goods",
        ),
    ),
)
PENALTY_COMMITMENT_SHARE = 0.01
PENALTY_RECOMMENDATIONS = (
    "Penalties exceed 1% of the volume commitment: renegotiate terms or consider an alternative supplier",
)
RENEWAL_RECOMMENDATION = "Contract is nearing expiry: start the renewal process"


def build_recommendations(
    contract: Contract,
    metrics: Sequence[PerformanceMetric],
    total_penalties: float,
    as_of: date,
) -> List[str]:
    """Fixed recommendation rules over the metrics of a report."""
    recommendations: List[str] = []
    for metric_type, messages in RECOMMENDATION_RULES:
        if any(m.metric_type == metric_type and m.status in AT_RISK_STATUSES for m in metrics):
            recommendations.extend(messages)
    if contract.volume_commitment and total_penalties > contract.volume_commitment * PENALTY_COMMITMENT_SHARE:
        recommendations.extend(PENALTY_RECOMMENDATIONS)
    if contract.is_expiring_soon(as_of):
        recommendations.append(RENEWAL_RECOMMENDATION)
    return recommendations


def _average(values: Sequence[float]) -> float:
    return round(mean(values), 2) if values else 0.0


class PerformanceReportingService:
    """
    Read-only views over persisted metrics.

    Nothing here recalculates; reports reflect the last committed metric per key.
    """

    def __init__(
        self,
        contract_repository: IContractRepository,
        metric_repository: IPerformanceMetricRepository,
        config_provider: Optional[IRuleConfigProvider] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._contract_repo = contract_repository
        self._metric_repo = metric_repository
        self._config_provider = config_provider or DefaultRuleConfigProvider()
        self._clock = clock

    async def generate_contract_performance_report(
        self,
        contract_id: str,
        period_start: Optional[date] = None,
        period_end: Optional[date] = None,
    ) -> ContractPerformanceReport:
        """
        Build the performance report of one contract.

        Without bounds the report covers the last ``report_default_window_days``.

        Raises:
            ResourceNotFoundException: If the contract does not exist
            ValidationException: If the period is empty
        """
        contract = await self._contract_repo.get_by_id(contract_id)
        if contract is None:
            raise ResourceNotFoundException("Contract", contract_id)

        today = self._clock().date()
        end = period_end or today
        start = period_start or end - timedelta(days=settings.report_default_window_days)
        if end <= start:
            raise ValidationException(
                "period_end must be after period_start",
                {"period_start": start.isoformat(), "period_end": end.isoformat()}
            )

        metrics = await self._metric_repo.list(
            MetricQuery(contract_id=contract_id, period_from=start, period_to=end)
        )

        overall = _average([m.performance_score for m in metrics])
        penalties = round(sum(m.penalties_applied for m in metrics), 2)
        bonuses = round(sum(m.bonuses_earned for m in metrics), 2)

        return ContractPerformanceReport(
            contract=contract,
            period_start=start,
            period_end=end,
            overall_score=overall,
            status=self._config_provider.get_config().report_status_for(overall),
            total_penalties=penalties,
            total_bonuses=bonuses,
            net_impact=round(bonuses - penalties, 2),
            metrics=metrics,
            recommendations=build_recommendations(contract, metrics, penalties, today),
            escalations=[EscalationItem.from_metric(m) for m in metrics if m.is_pending_escalation],
        )

    async def get_dashboard_metrics(self) -> DashboardMetrics:
        """Portfolio summary over the current month's metrics."""
        today = self._clock().date()
        month = MeasurementWindow.containing(MeasurementPeriod.MONTHLY, today)

        metrics = await self._metric_repo.list(
            MetricQuery(period_from=month.start, period_to=month.end)
        )
        pending = await self._metric_repo.list(MetricQuery(pending_action_only=True))
        contracts = await self._contract_repo.list_effective_on(today)

        delivery = [m.actual_value for m in metrics if m.metric_type == MetricType.DELIVERY_PERFORMANCE]
        quality = [m.actual_value for m in metrics if m.metric_type == MetricType.QUALITY_PERFORMANCE]

        return DashboardMetrics(
            active_contracts=len(contracts),
            at_risk_contracts=len({m.contract_id for m in metrics if m.status in AT_RISK_STATUSES}),
            excellent_contracts=len(
                {m.contract_id for m in metrics if m.status == PerformanceStatus.EXCELLENT}
            ),
            penalties_this_month=round(sum(m.penalties_applied for m in metrics), 2),
            bonuses_this_month=round(sum(m.bonuses_earned for m in metrics), 2),
            avg_delivery_performance=_average(delivery),
            avg_quality_performance=_average(quality),
            pending_escalations=len(pending),
            expiring_within_30_days=sum(
                1 for c in contracts if c.is_expiring_soon(today, settings.expiry_warning_days)
            ),
        )

    async def list_metrics(
        self,
        query: MetricQuery,
        limit: int = 100,
        offset: int = 0,
    ) -> List[PerformanceMetric]:
        return await self._metric_repo.list(query, limit=limit, offset=offset)

    async def list_pending_escalations(
        self,
        level: Optional[int] = None,
        overdue: bool = False,
    ) -> List[PerformanceMetric]:
        """Escalated metrics still requiring action."""
        query = MetricQuery(
            pending_action_only=True,
            escalation_level=level,
            overdue_as_of=self._clock().date() if overdue else None,
        )
        return await self._metric_repo.list(query)

    async def get_performance_trend(
        self,
        contract_id: Optional[str] = None,
        product_id: Optional[str] = None,
        metric_type: Optional[MetricType] = None,
        months: int = 6,
    ) -> List[TrendPoint]:
        """Time-ordered series of persisted values over the last ``months`` months."""
        if months < 1:
            raise ValidationException("months must be at least 1", {"months": months})

        today = self._clock().date()
        current = MeasurementWindow.containing(MeasurementPeriod.MONTHLY, today)
        since = shift_period(MeasurementPeriod.MONTHLY, current.start, -(months - 1))

        metrics = await self._metric_repo.list(
            MetricQuery(
                contract_id=contract_id,
                product_id=product_id,
                metric_type=metric_type,
                period_from=since,
                period_to=current.end,
            )
        )
        points = [
            TrendPoint(
                contract_id=m.contract_id,
                product_id=m.product_id,
                metric_type=m.metric_type,
                period_start=m.period_start,
                period_end=m.period_end,
                actual_value=m.actual_value,
                target_value=m.target_value,
                performance_score=m.performance_score,
                status=m.status,
                trend_direction=m.trend_direction,
            )
            for m in metrics
        ]
        return sorted(points, key=lambda p: (p.period_start, p.contract_id, p.product_id or "", p.metric_type.value))


# ========== Review ==========

class MetricReviewService:
    """Manual review and escalation of persisted metrics."""

    def __init__(
        self,
        metric_repository: IPerformanceMetricRepository,
        config_provider: Optional[IRuleConfigProvider] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._metric_repo = metric_repository
        self._config_provider = config_provider or DefaultRuleConfigProvider()
        self._clock = clock

    async def _get(self, metric_id: str) -> PerformanceMetric:
        metric = await self._metric_repo.get_by_id(metric_id)
        if metric is None:
            raise ResourceNotFoundException("PerformanceMetric", metric_id)
        return metric

    async def review_metric(
        self,
        metric_id: str,
        reviewer: str,
        notes: Optional[str] = None,
        action_plan: Optional[str] = None,
        action_deadline: Optional[date] = None,
        close_action: bool = False,
    ) -> PerformanceMetric:
        """
        Record a review on a metric.

        Closing the action moves an escalated metric to reviewed; the
        escalation flag itself stays set.
        """
        if not reviewer or not reviewer.strip():
            raise ValidationException("reviewer is required")

        metric = await self._get(metric_id)
        changed = metric.mark_reviewed(
            reviewer=reviewer,
            notes=notes,
            action_plan=action_plan,
            action_deadline=action_deadline,
            close_action=close_action,
            timestamp=self._clock(),
        )
        saved = await self._metric_repo.save_annotations(metric, changed)
        logger.info(
            "Metric reviewed",
            extra={"metric_id": metric_id, "reviewer": reviewer, "close_action": close_action}
        )
        return saved

    async def escalate_metric(
        self,
        metric_id: str,
        notes: Optional[str] = None,
        level: Optional[int] = None,
    ) -> Tuple[PerformanceMetric, bool]:
        """
        Escalate a metric by hand. Already escalated metrics are returned unchanged.

        Returns:
            Tuple of the metric and whether this call escalated it
        """
        level = MANUAL_ESCALATION_LEVEL if level is None else level
        if not 1 <= level <= 4:
            raise ValidationException("escalation level must be between 1 and 4", {"level": level})

        metric = await self._get(metric_id)
        policy = EscalationPolicy(self._config_provider.get_config())
        if level not in policy.rules.action_deadline_days:
            raise ValidationException("no action deadline configured for level", {"level": level})

        triggered = policy.trigger_escalation(
            metric,
            Severity.HIGH,
            notes=notes or "Manual escalation",
            level=level,
            timestamp=self._clock(),
        )
        if not triggered:
            logger.info("Metric already escalated", extra={"metric_id": metric_id})
            return metric, False

        saved = await self._metric_repo.save_annotations(metric, ESCALATION_FIELDS)
        if saved.escalation_date != metric.escalation_date:
            logger.info("Metric escalated concurrently", extra={"metric_id": metric_id})
            return saved, False
        logger.warning("Metric escalated manually", extra=saved.summary())
        return saved, True
