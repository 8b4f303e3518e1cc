"""
Shared fixtures: in-memory repositories and builders for contracts and orders.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional
from uuid import uuid4

import pytest

from src.config import ContractStatus, MeasurementPeriod, MetricType, OrderStatus
from src.core import DomainException, RepositoryException
from src.performance.application.services import (
    IContractRepository,
    IOrderLedger,
    IPerformanceMetricRepository,
    MetricQuery,
)
from src.performance.domain import (
    Contract,
    MetricKey,
    OrderLine,
    OrderRecord,
    PerformanceMetric,
    ProductSLA,
)
from src.performance.domain.entities import writable_annotations

JANUARY = (date(2024, 1, 1), date(2024, 2, 1))


class InMemoryContractRepository(IContractRepository):
    def __init__(self, contracts: Optional[List[Contract]] = None):
        self.contracts: Dict[str, Contract] = {c.id: c for c in contracts or []}

    def add(self, contract: Contract) -> Contract:
        self.contracts[contract.id] = contract
        return contract

    async def get_by_id(self, contract_id):
        return self.contracts.get(contract_id)

    async def list_overlapping(self, start, end, status=ContractStatus.ACTIVE):
        return [
            c for c in sorted(self.contracts.values(), key=lambda c: c.id)
            if c.status == status and c.overlaps(start, end)
        ]

    async def list_effective_on(self, as_of):
        return [c for c in self.contracts.values() if c.is_currently_effective(as_of)]


class InMemoryOrderLedger(IOrderLedger):
    def __init__(self, orders: Optional[List[OrderRecord]] = None):
        self.orders: List[OrderRecord] = list(orders or [])

    async def list_orders(self, supplier_id, created_from, created_until):
        return [
            o for o in self.orders
            if o.supplier_id == supplier_id and created_from <= o.created_at < created_until
        ]


class InMemoryMetricRepository(IPerformanceMetricRepository):
    """
    Metrics store keyed like the SQL table.

    ``failures`` maps a metric key string to the number of upserts that
    should fail before one succeeds.
    """

    def __init__(self):
        self.rows: Dict[MetricKey, PerformanceMetric] = {}
        self.failures: Dict[str, int] = {}
        self.upsert_calls = 0

    def seed(self, metric: PerformanceMetric) -> PerformanceMetric:
        stored = metric.copy()
        stored.id = stored.id or str(uuid4())
        self.rows[stored.key] = stored
        return stored.copy()

    async def get_by_id(self, metric_id):
        for metric in self.rows.values():
            if metric.id == metric_id:
                return metric.copy()
        return None

    async def get_by_key(self, key):
        metric = self.rows.get(key)
        return metric.copy() if metric else None

    async def upsert(self, metric):
        self.upsert_calls += 1
        key = metric.key
        remaining = self.failures.get(str(key), 0)
        if remaining:
            self.failures[str(key)] = remaining - 1
            raise RepositoryException("database unavailable", {"metric_key": str(key)})

        existing = self.rows.get(key)
        if existing is None:
            stored = metric.copy()
            stored.id = str(uuid4())
        else:
            stored = existing.copy()
            stored.merge_recalculation(metric)
        self.rows[key] = stored
        return stored.copy()

    def _stored_by_id(self, metric_id):
        for metric in self.rows.values():
            if metric.id == metric_id:
                return metric
        raise RepositoryException(f"Metric {metric_id} not found", {"metric_id": metric_id})

    async def save_annotations(self, metric, fields):
        stored = self._stored_by_id(metric.id).copy()
        try:
            names = writable_annotations(fields, metric, stored.escalation_triggered)
        except DomainException as e:
            raise RepositoryException(e.message, {"metric_id": metric.id}) from e
        for name in names:
            setattr(stored, name, getattr(metric, name))
        self.rows[stored.key] = stored
        return stored.copy()

    async def mark_notified(self, metric_id, timestamp):
        stored = self._stored_by_id(metric_id)
        if stored.escalation_notified_at is None:
            stored.escalation_notified_at = timestamp
        return stored.copy()

    async def list_history(self, key, measurement_period, before, limit):
        rows = [
            m for m in self.rows.values()
            if m.contract_id == key.contract_id
            and m.key.scope_key == key.scope_key
            and m.metric_type == key.metric_type
            and m.measurement_period == measurement_period
            and m.period_end <= before
        ]
        rows.sort(key=lambda m: m.period_end, reverse=True)
        return [m.copy() for m in rows[:limit]]

    async def list(self, query: MetricQuery, limit=None, offset=0):
        rows = [m for m in self.rows.values() if query.matches(m)]
        rows.sort(key=lambda m: m.period_start, reverse=True)
        rows = rows[offset:]
        if limit is not None:
            rows = rows[:limit]
        return [m.copy() for m in rows]


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


# ========== Builders ==========

@pytest.fixture
def make_contract():
    def _make(contract_id="C-1", supplier_id="S-1", product_slas=None, **overrides):
        fields = dict(
            id=contract_id,
            supplier_id=supplier_id,
            status=ContractStatus.ACTIVE,
            valid_from=date(2023, 1, 1),
            valid_until=date(2025, 1, 1),
            contract_number=f"CN-{contract_id}",
            name=f"Supply agreement {contract_id}",
        )
        fields.update(overrides)
        return Contract(product_slas=list(product_slas or []), **fields)
    return _make


@pytest.fixture
def make_product_sla():
    def _make(product_id="P-1", contract_id="C-1", **overrides):
        fields = dict(
            id=f"SLA-{contract_id}-{product_id}",
            contract_id=contract_id,
            product_id=product_id,
            effective_from=date(2023, 1, 1),
        )
        fields.update(overrides)
        return ProductSLA(**fields)
    return _make


@pytest.fixture
def make_order():
    counter = {"n": 0}

    def _make(
        created_at=datetime(2024, 1, 5, 10, 0, tzinfo=timezone.utc),
        delivery_days: Optional[float] = 5,
        status=OrderStatus.RECEIVED,
        supplier_id="S-1",
        total_value=1000.0,
        lines=None,
    ):
        counter["n"] += 1
        delivered_at = created_at + timedelta(days=delivery_days) if delivery_days is not None else None
        return OrderRecord(
            id=f"PO-{counter['n']}",
            supplier_id=supplier_id,
            created_at=created_at,
            status=status,
            total_value=total_value,
            actual_delivery_at=delivered_at,
            lines=tuple(lines or (OrderLine("P-1", 10, 10),)),
        )
    return _make


@pytest.fixture
def make_metric():
    def _make(**overrides):
        fields = dict(
            contract_id="C-1",
            metric_type=MetricType.DELIVERY_PERFORMANCE,
            measurement_period=MeasurementPeriod.MONTHLY,
            period_start=JANUARY[0],
            period_end=JANUARY[1],
            target_value=95.0,
            actual_value=96.0,
        )
        fields.update(overrides)
        return PerformanceMetric(**fields)
    return _make


@pytest.fixture
def contract_repo():
    return InMemoryContractRepository()


@pytest.fixture
def order_ledger():
    return InMemoryOrderLedger()


@pytest.fixture
def metric_repo():
    return InMemoryMetricRepository()


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 2, 10, 8, 0, tzinfo=timezone.utc))
