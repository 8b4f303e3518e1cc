"""
Performance Infrastructure Repositories
=======================================

Concrete implementations of repository interfaces using SQLAlchemy.

This layer contains the data access logic - how we store and retrieve
entities from the database. Repositories take a session factory and open
one short transaction per unit of work, so concurrent batch workers never
share a session.
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence
from uuid import UUID, uuid4

from sqlalchemy import Select, and_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from src.config import (
    ContractStatus,
    ContractType,
    MeasurementPeriod,
    MetricType,
    OrderStatus,
    PerformanceStatus,
    Severity,
    TrendDirection,
)
from src.core import DomainException, RepositoryException
from src.infrastructure.database import SessionFactory, get_session_context
from src.performance.application.services import (
    IContractRepository,
    IOrderLedger,
    IPerformanceMetricRepository,
    MetricQuery,
)
from src.performance.domain import (
    Contract,
    EscalationRules,
    MetricKey,
    OrderLine,
    OrderRecord,
    PerformanceMetric,
    ProductSLA,
    SeasonalRule,
    SpecialPeriod,
)
from src.performance.domain.entities import (
    CALCULATION_FIELDS,
    ESCALATION_FIELDS,
    metric_field_names,
    writable_annotations,
)
from src.performance.infrastructure.models import (
    ContractModel,
    OrderLineModel,
    PerformanceMetricModel,
    ProductSLAModel,
    PurchaseOrderModel,
)
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

UNPERSISTED_FIELDS = {"id", "created_at", "updated_at"}


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Drivers without timezone support hand back naive UTC timestamps."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _column_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ========== Mappers ==========

def _seasonal_rule(data: Optional[Dict[str, Any]]) -> Optional[SeasonalRule]:
    if not data:
        return None
    return SeasonalRule(
        months=tuple(int(month) for month in data.get("months", [])),
        delivery_days_adjustment=float(data.get("delivery_days_adjustment", 0)),
        quality_tolerance_adjustment=float(data.get("quality_tolerance_adjustment", 0)),
        delivery_tolerance_adjustment=float(data.get("delivery_tolerance_adjustment", 0)),
    )


def _special_period(data: Dict[str, Any]) -> SpecialPeriod:
    return SpecialPeriod(
        name=data.get("name", ""),
        start_date=date.fromisoformat(data["start_date"]),
        end_date=date.fromisoformat(data["end_date"]),
        delivery_days_adjustment=float(data.get("delivery_days_adjustment", 0)),
        quality_tolerance_adjustment=float(data.get("quality_tolerance_adjustment", 0)),
        delivery_tolerance_adjustment=float(data.get("delivery_tolerance_adjustment", 0)),
    )


def _escalation_rules(data: Optional[Dict[str, Any]]) -> EscalationRules:
    immediate = (data or {}).get("immediate") or {}
    return EscalationRules(
        immediate_delivery_delay_days=immediate.get("delivery_delay_days"),
        immediate_quality_issue_rate=immediate.get("quality_issue_rate"),
        immediate_quantity_shortage_rate=immediate.get("quantity_shortage_rate"),
    )


def product_sla_to_entity(model: ProductSLAModel) -> ProductSLA:
    """Map a product SLA row, decoding its JSON rule documents."""
    seasonal = model.seasonal_adjustments or {}
    return ProductSLA(
        id=model.id,
        contract_id=model.contract_id,
        product_id=model.product_id,
        effective_from=model.effective_from,
        effective_until=model.effective_until,
        delivery_sla_days=model.delivery_sla_days,
        delivery_tolerance_percent=model.delivery_tolerance_percent,
        max_delivery_delay_days=model.max_delivery_delay_days,
        quality_tolerance_percent=model.quality_tolerance_percent,
        quantity_accuracy_threshold=model.quantity_accuracy_threshold,
        minimum_order_fulfillment_rate=model.minimum_order_fulfillment_rate,
        late_delivery_penalty_percent=model.late_delivery_penalty_percent,
        quality_issue_penalty_percent=model.quality_issue_penalty_percent,
        quantity_shortage_penalty_percent=model.quantity_shortage_penalty_percent,
        early_delivery_bonus_percent=model.early_delivery_bonus_percent,
        quality_excellence_bonus_percent=model.quality_excellence_bonus_percent,
        peak_season=_seasonal_rule(seasonal.get("peak_season")),
        off_peak_season=_seasonal_rule(seasonal.get("off_peak_season")),
        special_periods=[_special_period(p) for p in seasonal.get("special_periods", [])],
        special_requirements=dict(model.special_requirements or {}),
        escalation_rules=_escalation_rules(model.escalation_rules),
        measurement_period_days=model.measurement_period_days,
        grace_period_days=model.grace_period_days,
        is_suspended=model.is_suspended,
        is_active=model.is_active,
    )


def contract_to_entity(model: ContractModel, product_slas: Iterable[ProductSLAModel] = ()) -> Contract:
    return Contract(
        id=model.id,
        supplier_id=model.supplier_id,
        status=ContractStatus(model.status),
        valid_from=model.valid_from,
        valid_until=model.valid_until,
        contract_number=model.contract_number,
        name=model.name,
        contract_type=ContractType(model.contract_type),
        default_delivery_sla_days=model.default_delivery_sla_days,
        default_quality_tolerance_percent=model.default_quality_tolerance_percent,
        default_delivery_tolerance_percent=model.default_delivery_tolerance_percent,
        minimum_fulfillment_rate=model.minimum_fulfillment_rate,
        late_delivery_penalty_percent=model.late_delivery_penalty_percent,
        quality_issue_penalty_percent=model.quality_issue_penalty_percent,
        early_delivery_bonus_percent=model.early_delivery_bonus_percent,
        quality_excellence_bonus_percent=model.quality_excellence_bonus_percent,
        currency=model.currency,
        volume_commitment=model.volume_commitment,
        renewal_notice_days=model.renewal_notice_days,
        product_slas=[product_sla_to_entity(sla) for sla in product_slas],
    )


def metric_to_entity(model: PerformanceMetricModel) -> PerformanceMetric:
    return PerformanceMetric(
        id=str(model.id),
        contract_id=model.contract_id,
        product_id=model.product_id,
        product_sla_id=model.product_sla_id,
        purchase_order_id=model.purchase_order_id,
        metric_type=MetricType(model.metric_type),
        measurement_period=MeasurementPeriod(model.measurement_period),
        period_start=model.period_start,
        period_end=model.period_end,
        target_value=model.target_value,
        actual_value=model.actual_value,
        variance=model.variance,
        variance_percent=model.variance_percent,
        status=PerformanceStatus(model.status),
        severity=Severity(model.severity),
        sample_size=model.sample_size,
        total_events=model.total_events,
        successful_events=model.successful_events,
        failed_events=model.failed_events,
        penalties_applied=model.penalties_applied,
        bonuses_earned=model.bonuses_earned,
        net_financial_impact=model.net_financial_impact,
        potential_order_value=model.potential_order_value,
        trend_direction=TrendDirection(model.trend_direction),
        previous_period_value=model.previous_period_value,
        rolling_average_3=model.rolling_average_3,
        rolling_average_12=model.rolling_average_12,
        performance_breakdown=dict(model.performance_breakdown or {}),
        escalation_level=model.escalation_level,
        escalation_triggered=model.escalation_triggered,
        escalation_date=_as_utc(model.escalation_date),
        escalation_notes=model.escalation_notes,
        requires_action=model.requires_action,
        action_deadline=model.action_deadline,
        escalation_notified_at=_as_utc(model.escalation_notified_at),
        is_reviewed=model.is_reviewed,
        reviewed_by=model.reviewed_by,
        reviewed_at=_as_utc(model.reviewed_at),
        review_notes=model.review_notes,
        action_plan=model.action_plan,
        calculation_method=model.calculation_method,
        data_sources=list(model.data_sources or []),
        calculation_timestamp=_as_utc(model.calculation_timestamp),
        is_estimated=model.is_estimated,
        confidence_level=model.confidence_level,
        calculated_by=model.calculated_by,
        created_at=_as_utc(model.created_at),
        updated_at=_as_utc(model.updated_at),
    )


def _write_fields(model: PerformanceMetricModel, metric: PerformanceMetric, names: Iterable[str]) -> None:
    for name in names:
        value = getattr(metric, name)
        if name == "performance_breakdown":
            value = dict(value)
        elif name == "data_sources":
            value = list(value)
        setattr(model, name, _column_value(value))


# ========== Repositories ==========

class SQLAlchemyContractRepository(IContractRepository):
    """
    SQLAlchemy implementation of the contract repository.

    Product SLAs are loaded with one extra query per call.
    """

    def __init__(self, session_factory: SessionFactory = get_session_context):
        self._session_factory = session_factory

    async def _load(self, stmt: Select) -> List[Contract]:
        try:
            async with self._session_factory() as session:
                contracts = (await session.execute(stmt)).scalars().all()
                if not contracts:
                    return []
                sla_stmt = select(ProductSLAModel).where(
                    ProductSLAModel.contract_id.in_([c.id for c in contracts])
                ).order_by(ProductSLAModel.effective_from)
                slas = (await session.execute(sla_stmt)).scalars().all()
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to load contracts: {e}") from e

        by_contract: Dict[str, List[ProductSLAModel]] = {}
        for sla in slas:
            by_contract.setdefault(sla.contract_id, []).append(sla)
        return [contract_to_entity(c, by_contract.get(c.id, [])) for c in contracts]

    async def get_by_id(self, contract_id: str) -> Optional[Contract]:
        contracts = await self._load(select(ContractModel).where(ContractModel.id == contract_id))
        return contracts[0] if contracts else None

    async def list_overlapping(
        self,
        start: date,
        end: date,
        status: ContractStatus = ContractStatus.ACTIVE,
    ) -> List[Contract]:
        stmt = select(ContractModel).where(
            and_(
                ContractModel.status == status.value,
                ContractModel.valid_from < end,
                ContractModel.valid_until > start,
            )
        ).order_by(ContractModel.id)
        return await self._load(stmt)

    async def list_effective_on(self, as_of: date) -> List[Contract]:
        stmt = select(ContractModel).where(
            and_(
                ContractModel.status == ContractStatus.ACTIVE.value,
                ContractModel.valid_from <= as_of,
                ContractModel.valid_until > as_of,
            )
        ).order_by(ContractModel.id)
        return await self._load(stmt)


class SQLAlchemyOrderLedger(IOrderLedger):
    """Read-only access to purchase orders and their lines."""

    def __init__(self, session_factory: SessionFactory = get_session_context):
        self._session_factory = session_factory

    async def list_orders(
        self,
        supplier_id: str,
        created_from: datetime,
        created_until: datetime,
    ) -> List[OrderRecord]:
        stmt = select(PurchaseOrderModel).where(
            and_(
                PurchaseOrderModel.supplier_id == supplier_id,
                PurchaseOrderModel.created_at >= created_from,
                PurchaseOrderModel.created_at < created_until,
            )
        ).order_by(PurchaseOrderModel.created_at)

        try:
            async with self._session_factory() as session:
                orders = (await session.execute(stmt)).scalars().all()
                lines: Sequence[OrderLineModel] = []
                if orders:
                    line_stmt = select(OrderLineModel).where(
                        OrderLineModel.order_id.in_([o.id for o in orders])
                    ).order_by(OrderLineModel.id)
                    lines = (await session.execute(line_stmt)).scalars().all()
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to load orders: {e}", {"supplier_id": supplier_id}) from e

        lines_by_order: Dict[str, List[OrderLine]] = {}
        for line in lines:
            lines_by_order.setdefault(line.order_id, []).append(OrderLine(
                product_id=line.product_id,
                ordered_quantity=line.ordered_quantity,
                delivered_quantity=line.delivered_quantity,
                quality_defect=line.quality_defect,
                line_value=line.line_value,
            ))

        return [
            OrderRecord(
                id=order.id,
                supplier_id=order.supplier_id,
                created_at=_as_utc(order.created_at),
                status=OrderStatus(order.status),
                total_value=order.total_value,
                promised_delivery_at=_as_utc(order.promised_delivery_at),
                actual_delivery_at=_as_utc(order.actual_delivery_at),
                lines=tuple(lines_by_order.get(order.id, [])),
            )
            for order in orders
        ]


class SQLAlchemyPerformanceMetricRepository(IPerformanceMetricRepository):
    """
    SQLAlchemy implementation of the metrics store.

    Upserts lock the key's row for the length of one transaction; a
    concurrent first insert loses on the unique key and is replayed as an
    update.
    """

    def __init__(self, session_factory: SessionFactory = get_session_context):
        self._session_factory = session_factory

    @staticmethod
    def _key_statement(key: MetricKey) -> Select:
        return select(PerformanceMetricModel).where(
            and_(
                PerformanceMetricModel.contract_id == key.contract_id,
                PerformanceMetricModel.scope_key == key.scope_key,
                PerformanceMetricModel.metric_type == key.metric_type.value,
                PerformanceMetricModel.period_start == key.period_start,
                PerformanceMetricModel.period_end == key.period_end,
            )
        )

    @staticmethod
    def _query_statement(query: MetricQuery) -> Select:
        conditions = []
        if query.contract_id is not None:
            conditions.append(PerformanceMetricModel.contract_id == query.contract_id)
        if query.product_id is not None:
            conditions.append(PerformanceMetricModel.product_id == query.product_id)
        if query.contract_level_only:
            conditions.append(PerformanceMetricModel.scope_key == MetricKey.CONTRACT_SCOPE)
        if query.metric_type is not None:
            conditions.append(PerformanceMetricModel.metric_type == query.metric_type.value)
        if query.statuses:
            conditions.append(PerformanceMetricModel.status.in_([s.value for s in query.statuses]))
        if query.measurement_period is not None:
            conditions.append(PerformanceMetricModel.measurement_period == query.measurement_period.value)
        if query.period_from is not None:
            conditions.append(PerformanceMetricModel.period_end > query.period_from)
        if query.period_to is not None:
            conditions.append(PerformanceMetricModel.period_start < query.period_to)
        if query.escalated_only:
            conditions.append(PerformanceMetricModel.escalation_triggered.is_(True))
        if query.pending_action_only:
            conditions.append(PerformanceMetricModel.escalation_triggered.is_(True))
            conditions.append(PerformanceMetricModel.requires_action.is_(True))
        if query.escalation_level is not None:
            conditions.append(PerformanceMetricModel.escalation_level == query.escalation_level)
        if query.overdue_as_of is not None:
            conditions.append(PerformanceMetricModel.requires_action.is_(True))
            conditions.append(PerformanceMetricModel.action_deadline < query.overdue_as_of)
        if query.unnotified_only:
            conditions.append(PerformanceMetricModel.escalation_notified_at.is_(None))

        stmt = select(PerformanceMetricModel)
        if conditions:
            stmt = stmt.where(and_(*conditions))
        return stmt

    async def get_by_id(self, metric_id: str) -> Optional[PerformanceMetric]:
        try:
            metric_uuid = UUID(metric_id)
        except ValueError:
            return None

        try:
            async with self._session_factory() as session:
                model = await session.get(PerformanceMetricModel, metric_uuid)
                return metric_to_entity(model) if model else None
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to load metric: {e}", {"metric_id": metric_id}) from e

    async def get_by_key(self, key: MetricKey) -> Optional[PerformanceMetric]:
        try:
            async with self._session_factory() as session:
                model = (await session.execute(self._key_statement(key))).scalar_one_or_none()
                return metric_to_entity(model) if model else None
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to load metric: {e}", {"metric_key": str(key)}) from e

    async def upsert(self, metric: PerformanceMetric) -> PerformanceMetric:
        """
        Insert or overwrite one key inside a single transaction.

        The first attempt that loses an insert race is replayed once as an
        update of the row the other writer committed.
        """
        key = metric.key
        for attempt in range(2):
            try:
                return await self._upsert_once(key, metric)
            except IntegrityError as e:
                if attempt == 0:
                    logger.info("Concurrent insert on metric key, retrying as update", extra={"metric_key": str(key)})
                    continue
                raise RepositoryException(f"Metric key conflict: {e}", {"metric_key": str(key)}) from e
            except SQLAlchemyError as e:
                raise RepositoryException(f"Failed to upsert metric: {e}", {"metric_key": str(key)}) from e
        raise RepositoryException("Metric upsert did not complete", {"metric_key": str(key)})

    async def _upsert_once(self, key: MetricKey, metric: PerformanceMetric) -> PerformanceMetric:
        now = _utcnow()
        async with self._session_factory() as session:
            stmt = self._key_statement(key).with_for_update()
            model = (await session.execute(stmt)).scalar_one_or_none()

            if model is None:
                stored = metric.copy()
                stored.created_at = now
                model = PerformanceMetricModel(id=uuid4(), scope_key=key.scope_key, created_at=now)
                _write_fields(model, stored, [n for n in metric_field_names() if n not in UNPERSISTED_FIELDS])
                session.add(model)
            else:
                stored = metric_to_entity(model)
                stored.merge_recalculation(metric)
                _write_fields(model, stored, CALCULATION_FIELDS + ESCALATION_FIELDS + ("measurement_period",))

            model.updated_at = now
            await session.flush()
            stored.id = str(model.id)
            stored.updated_at = now
        return stored

    async def _lock_by_id(self, session, metric_id: str) -> PerformanceMetricModel:
        try:
            metric_uuid = UUID(metric_id)
        except ValueError:
            metric_uuid = None
        model = None
        if metric_uuid is not None:
            stmt = select(PerformanceMetricModel).where(PerformanceMetricModel.id == metric_uuid).with_for_update()
            model = (await session.execute(stmt)).scalar_one_or_none()
        if model is None:
            raise RepositoryException(f"Metric {metric_id} not found", {"metric_id": metric_id})
        return model

    async def save_annotations(self, metric: PerformanceMetric, fields: Sequence[str]) -> PerformanceMetric:
        """
        Write only the named review or escalation fields of ``metric``.

        Other columns of the locked row are left as the last writer put
        them, so a stale copy never undoes a concurrent review.
        """
        if metric.id is None:
            raise RepositoryException("Cannot annotate a metric that was never stored")

        try:
            async with self._session_factory() as session:
                model = await self._lock_by_id(session, metric.id)
                try:
                    names = writable_annotations(fields, metric, bool(model.escalation_triggered))
                except DomainException as e:
                    raise RepositoryException(e.message, {"metric_id": metric.id}) from e
                _write_fields(model, metric, names)
                model.updated_at = _utcnow()
                await session.flush()
                return metric_to_entity(model)
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to save metric annotations: {e}", {"metric_id": metric.id}) from e

    async def mark_notified(self, metric_id: str, timestamp: datetime) -> PerformanceMetric:
        try:
            async with self._session_factory() as session:
                model = await self._lock_by_id(session, metric_id)
                if model.escalation_notified_at is None:
                    model.escalation_notified_at = timestamp
                    model.updated_at = _utcnow()
                    await session.flush()
                return metric_to_entity(model)
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to mark metric notified: {e}", {"metric_id": metric_id}) from e

    async def list_history(
        self,
        key: MetricKey,
        measurement_period: MeasurementPeriod,
        before: date,
        limit: int,
    ) -> List[PerformanceMetric]:
        stmt = select(PerformanceMetricModel).where(
            and_(
                PerformanceMetricModel.contract_id == key.contract_id,
                PerformanceMetricModel.scope_key == key.scope_key,
                PerformanceMetricModel.metric_type == key.metric_type.value,
                PerformanceMetricModel.measurement_period == measurement_period.value,
                PerformanceMetricModel.period_end <= before,
            )
        ).order_by(PerformanceMetricModel.period_end.desc()).limit(limit)

        try:
            async with self._session_factory() as session:
                models = (await session.execute(stmt)).scalars().all()
                return [metric_to_entity(m) for m in models]
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to load metric history: {e}", {"metric_key": str(key)}) from e

    async def list(
        self,
        query: MetricQuery,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[PerformanceMetric]:
        stmt = self._query_statement(query).order_by(
            PerformanceMetricModel.period_start.desc(),
            PerformanceMetricModel.contract_id,
            PerformanceMetricModel.scope_key,
            PerformanceMetricModel.metric_type,
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        if offset:
            stmt = stmt.offset(offset)

        try:
            async with self._session_factory() as session:
                models = (await session.execute(stmt)).scalars().all()
                return [metric_to_entity(m) for m in models]
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to list metrics: {e}") from e
