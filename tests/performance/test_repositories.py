"""
SQL repositories against a throwaway SQLite database.
"""

from contextlib import asynccontextmanager
from datetime import date, datetime, timezone

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from src.config import ContractStatus, MeasurementPeriod, MetricType, OrderStatus, PerformanceStatus
from src.core import RepositoryException
from src.infrastructure.database import Base
from src.performance.application.services import ContractPerformanceService, MetricQuery
from src.performance.domain.entities import ANNOTATION_FIELDS
from src.performance.infrastructure import (
    ContractModel,
    OrderLineModel,
    ProductSLAModel,
    PurchaseOrderModel,
    SQLAlchemyContractRepository,
    SQLAlchemyOrderLedger,
    SQLAlchemyPerformanceMetricRepository,
)

NOW = datetime(2024, 2, 10, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'performance.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    maker = async_sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)

    @asynccontextmanager
    async def factory():
        async with maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    yield factory
    await engine.dispose()


async def _add(session_factory, *models):
    async with session_factory() as session:
        session.add_all(models)


def _contract_row(contract_id="C-1", status=ContractStatus.ACTIVE.value, **overrides):
    fields = dict(
        id=contract_id,
        contract_number=f"CN-{contract_id}",
        name=f"Supply agreement {contract_id}",
        supplier_id="S-1",
        status=status,
        contract_type="ANNUAL",
        valid_from=date(2023, 1, 1),
        valid_until=date(2025, 1, 1),
    )
    fields.update(overrides)
    return ContractModel(**fields)


@pytest.fixture
def metric_store(session_factory):
    return SQLAlchemyPerformanceMetricRepository(session_factory)


class TestContractRepository:
    async def test_product_sla_documents_are_decoded(self, session_factory):
        await _add(
            session_factory,
            _contract_row(),
            ProductSLAModel(
                id="SLA-1",
                contract_id="C-1",
                product_id="P-1",
                effective_from=date(2023, 1, 1),
                delivery_sla_days=3,
                seasonal_adjustments={
                    "peak_season": {"months": [11, 12], "delivery_days_adjustment": 2},
                    "special_periods": [
                        {"name": "Shutdown", "start_date": "2024-12-20", "end_date": "2024-12-31",
                         "delivery_days_adjustment": 3},
                    ],
                },
                escalation_rules={"immediate": {"delivery_delay_days": 10}},
            ),
        )

        contract = await SQLAlchemyContractRepository(session_factory).get_by_id("C-1")

        sla = contract.product_slas[0]
        assert contract.status == ContractStatus.ACTIVE
        assert sla.delivery_sla_days == 3
        assert sla.peak_season.months == (11, 12)
        assert sla.off_peak_season is None
        assert sla.special_periods[0].start_date == date(2024, 12, 20)
        assert sla.escalation_rules.immediate_delivery_delay_days == 10

    async def test_list_overlapping_filters_status_and_validity(self, session_factory):
        await _add(
            session_factory,
            _contract_row("C-1"),
            _contract_row("C-draft", status=ContractStatus.DRAFT.value),
            _contract_row("C-ended", valid_from=date(2022, 1, 1), valid_until=date(2024, 1, 1)),
            _contract_row("C-future", valid_from=date(2024, 2, 1)),
        )

        contracts = await SQLAlchemyContractRepository(session_factory).list_overlapping(
            date(2024, 1, 1), date(2024, 2, 1)
        )

        assert [c.id for c in contracts] == ["C-1"]

    async def test_unknown_contract(self, session_factory):
        assert await SQLAlchemyContractRepository(session_factory).get_by_id("missing") is None


class TestOrderLedger:
    async def test_orders_in_window_with_lines(self, session_factory):
        await _add(
            session_factory,
            PurchaseOrderModel(
                id="PO-1", supplier_id="S-1", status=OrderStatus.RECEIVED.value, total_value=500.0,
                created_at=datetime(2024, 1, 5, tzinfo=timezone.utc),
                actual_delivery_at=datetime(2024, 1, 9, tzinfo=timezone.utc),
            ),
            PurchaseOrderModel(
                id="PO-2", supplier_id="S-1", status=OrderStatus.SUBMITTED.value,
                created_at=datetime(2024, 2, 1, tzinfo=timezone.utc),
            ),
            PurchaseOrderModel(
                id="PO-3", supplier_id="S-2", status=OrderStatus.RECEIVED.value,
                created_at=datetime(2024, 1, 6, tzinfo=timezone.utc),
            ),
        )
        await _add(
            session_factory,
            OrderLineModel(order_id="PO-1", product_id="P-1", ordered_quantity=10, delivered_quantity=9),
            OrderLineModel(order_id="PO-1", product_id="P-2", ordered_quantity=5, quality_defect=True),
        )

        orders = await SQLAlchemyOrderLedger(session_factory).list_orders(
            "S-1",
            datetime(2024, 1, 1, tzinfo=timezone.utc),
            datetime(2024, 2, 1, tzinfo=timezone.utc),
        )

        assert [o.id for o in orders] == ["PO-1"]
        order = orders[0]
        assert order.status == OrderStatus.RECEIVED
        assert order.created_at.tzinfo is not None
        assert order.delivery_days == 4
        assert [line.product_id for line in order.lines] == ["P-1", "P-2"]
        assert order.has_quality_defect


class TestPerformanceMetricRepository:
    async def test_first_upsert_inserts(self, metric_store, make_metric):
        stored = await metric_store.upsert(make_metric(performance_breakdown={"late_deliveries": 1}))

        loaded = await metric_store.get_by_id(stored.id)
        assert loaded.key == stored.key
        assert loaded.metric_type == MetricType.DELIVERY_PERFORMANCE
        assert loaded.performance_breakdown == {"late_deliveries": 1}
        assert loaded.created_at is not None

    async def test_second_upsert_updates_same_row(self, metric_store, make_metric):
        first = await metric_store.upsert(make_metric(actual_value=80.0))
        second = await metric_store.upsert(make_metric(actual_value=97.0, status=PerformanceStatus.EXCELLENT))

        rows = await metric_store.list(MetricQuery(contract_id="C-1"))
        assert second.id == first.id
        assert len(rows) == 1
        assert rows[0].actual_value == 97.0
        assert rows[0].status == PerformanceStatus.EXCELLENT

    async def test_recalculation_keeps_review_and_escalation(self, metric_store, make_metric):
        escalated = make_metric(actual_value=70.0, status=PerformanceStatus.CRITICAL)
        escalated.trigger_escalation(level=4, deadline_days=3, notes="critical miss", timestamp=NOW)
        stored = await metric_store.upsert(escalated)
        changed = stored.mark_reviewed("analyst", notes="supplier notified", timestamp=NOW)
        await metric_store.save_annotations(stored, changed)
        await metric_store.mark_notified(stored.id, NOW)

        await metric_store.upsert(make_metric(actual_value=99.0, status=PerformanceStatus.GOOD))

        loaded = await metric_store.get_by_key(stored.key)
        assert loaded.actual_value == 99.0
        assert loaded.escalation_triggered
        assert loaded.escalation_level == 4
        assert loaded.escalation_notes == "critical miss"
        assert loaded.action_deadline == date(2024, 2, 13)
        assert loaded.review_notes == "supplier notified"
        assert loaded.escalation_notified_at == NOW

    async def test_annotations_never_clear_escalation(self, metric_store, make_metric):
        escalated = make_metric()
        escalated.trigger_escalation(level=3, deadline_days=7, timestamp=NOW)
        stored = await metric_store.upsert(escalated)

        stale = make_metric(id=stored.id)
        stale.mark_reviewed("analyst", timestamp=NOW)
        saved = await metric_store.save_annotations(stale, ANNOTATION_FIELDS)

        assert saved.is_reviewed
        assert saved.escalation_triggered
        assert saved.escalation_level == 3

    async def test_review_writes_only_changed_fields(self, metric_store, make_metric):
        escalated = make_metric()
        escalated.trigger_escalation(level=3, deadline_days=7, timestamp=NOW)
        stored = await metric_store.upsert(escalated)
        closing = stored.copy()
        changed = closing.mark_reviewed("analyst", notes="resolved", close_action=True, timestamp=NOW)
        await metric_store.save_annotations(closing, changed)

        stale = stored.copy()
        changed = stale.mark_reviewed("auditor", action_plan="monthly check-in", timestamp=NOW)
        saved = await metric_store.save_annotations(stale, changed)

        assert saved.reviewed_by == "auditor"
        assert saved.action_plan == "monthly check-in"
        assert saved.review_notes == "resolved"
        assert not saved.requires_action

    async def test_mark_notified_keeps_concurrent_review(self, metric_store, make_metric):
        escalated = make_metric()
        escalated.trigger_escalation(level=4, deadline_days=3, timestamp=NOW)
        stored = await metric_store.upsert(escalated)
        reviewed = stored.copy()
        changed = reviewed.mark_reviewed("analyst", notes="on it", close_action=True, timestamp=NOW)
        await metric_store.save_annotations(reviewed, changed)

        notified = await metric_store.mark_notified(stored.id, NOW)

        assert notified.escalation_notified_at == NOW
        assert notified.is_reviewed
        assert notified.review_notes == "on it"
        assert not notified.requires_action
        assert notified.escalation_level == 4

    async def test_mark_notified_keeps_first_stamp(self, metric_store, make_metric):
        stored = await metric_store.upsert(make_metric())

        await metric_store.mark_notified(stored.id, NOW)
        again = await metric_store.mark_notified(stored.id, datetime(2024, 2, 11, tzinfo=timezone.utc))

        assert again.escalation_notified_at == NOW

    async def test_mark_notified_missing_metric(self, metric_store):
        with pytest.raises(RepositoryException):
            await metric_store.mark_notified("00000000-0000-0000-0000-000000000000", NOW)

    async def test_annotations_reject_calculation_fields(self, metric_store, make_metric):
        stored = await metric_store.upsert(make_metric())

        with pytest.raises(RepositoryException):
            await metric_store.save_annotations(stored, ["actual_value"])

    async def test_get_by_id_with_malformed_id(self, metric_store):
        assert await metric_store.get_by_id("not-a-uuid") is None

    async def test_history_is_same_lineage_most_recent_first(self, metric_store, make_metric):
        for start, end in [
            (date(2023, 11, 1), date(2023, 12, 1)),
            (date(2023, 12, 1), date(2024, 1, 1)),
            (date(2024, 1, 1), date(2024, 2, 1)),
        ]:
            await metric_store.upsert(make_metric(period_start=start, period_end=end))
        await metric_store.upsert(make_metric(product_id="P-1", period_start=date(2023, 12, 1),
                                              period_end=date(2024, 1, 1)))
        current = make_metric()

        history = await metric_store.list_history(
            current.key, MeasurementPeriod.MONTHLY, before=date(2024, 1, 1), limit=11
        )

        assert [m.period_end for m in history] == [date(2024, 1, 1), date(2023, 12, 1)]
        assert all(m.product_id is None for m in history)

    async def test_list_filters_and_paginates(self, metric_store, make_metric):
        await metric_store.upsert(make_metric(status=PerformanceStatus.BREACH))
        await metric_store.upsert(make_metric(metric_type=MetricType.QUALITY_PERFORMANCE))
        await metric_store.upsert(make_metric(contract_id="C-2", status=PerformanceStatus.CRITICAL))
        await metric_store.upsert(make_metric(period_start=date(2024, 2, 1), period_end=date(2024, 3, 1)))

        at_risk = await metric_store.list(
            MetricQuery(statuses=[PerformanceStatus.BREACH, PerformanceStatus.CRITICAL])
        )
        january = await metric_store.list(
            MetricQuery(period_from=date(2024, 1, 1), period_to=date(2024, 2, 1)), limit=2, offset=1
        )

        assert {m.contract_id for m in at_risk} == {"C-1", "C-2"}
        assert [(m.contract_id, m.metric_type) for m in january] == [
            ("C-1", MetricType.QUALITY_PERFORMANCE),
            ("C-2", MetricType.DELIVERY_PERFORMANCE),
        ]


class TestEndToEnd:
    async def test_batch_run_against_database(self, session_factory, clock):
        await _add(session_factory, _contract_row())
        await _add(
            session_factory,
            *[
                PurchaseOrderModel(
                    id=f"PO-{n}", supplier_id="S-1", status=OrderStatus.RECEIVED.value, total_value=1000.0,
                    created_at=datetime(2024, 1, 5, tzinfo=timezone.utc),
                    actual_delivery_at=datetime(2024, 1, 5 + days, tzinfo=timezone.utc),
                )
                for n, days in enumerate([3, 7, 10], start=1)
            ],
        )
        metrics = SQLAlchemyPerformanceMetricRepository(session_factory)
        service = ContractPerformanceService(
            SQLAlchemyContractRepository(session_factory),
            SQLAlchemyOrderLedger(session_factory),
            metrics,
            retry_base_delay=0,
            clock=clock,
        )

        first = await service.calculate_all_contract_performance(date(2024, 1, 1), date(2024, 2, 1))
        second = await service.calculate_all_contract_performance(date(2024, 1, 1), date(2024, 2, 1))

        rows = await metrics.list(MetricQuery(contract_id="C-1"))
        delivery = next(m for m in rows if m.metric_type == MetricType.DELIVERY_PERFORMANCE)
        assert first.failed_contracts == {} and second.failed_metrics == {}
        assert len(rows) == 3
        assert delivery.actual_value == 66.67
        assert delivery.escalation_triggered
        assert second.escalations_triggered == 0
