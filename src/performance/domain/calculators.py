"""
Metric Calculators
==================

One calculator per measurable metric type.

Each calculator takes a window of order records and the contract terms
and produces a RawSample, or None when the window holds no eligible
events. None is not an error: nothing is written for that key.

Contract-level scope counts whole orders; product-level scope counts the
line items of that product.
"""

from abc import ABC, abstractmethod
from datetime import timezone
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple

from src.config import DELIVERED_ORDER_STATUSES, MetricType
from src.performance.domain.entities import Contract, OrderLine, OrderRecord, ProductSLA
from src.performance.domain.resolver import SLAResolver
from src.performance.domain.value_objects import EffectiveTargets, MeasurementWindow, RawSample

# Over-delivery accepted on top of a complete delivery (percentage points)
OVER_DELIVERY_TOLERANCE = 2.0
MAX_QUANTITY_ACCURACY = 200.0


class Event(NamedTuple):
    """One countable event: an order, or one of its lines in product scope."""
    order: OrderRecord
    line: Optional[OrderLine] = None


def _percent(part: int, whole: int) -> float:
    return round(part / whole * 100, 2)


def _scope_events(orders: Sequence[OrderRecord], product_id: Optional[str]) -> List[Event]:
    if product_id is None:
        return [Event(order) for order in orders]
    return [Event(order, line) for order in orders for line in order.lines_for(product_id)]


def _order_totals(events: Sequence[Event]) -> Tuple[int, float]:
    """Distinct orders behind the events and their summed value."""
    orders: Dict[str, OrderRecord] = {}
    for event in events:
        orders.setdefault(event.order.id, event.order)
    return len(orders), round(sum(order.total_value for order in orders.values()), 2)


class MetricCalculator(ABC):
    """
    Base class for metric calculators.

    Subclasses select eligible events and judge each one.
    """

    metric_type: MetricType

    def __init__(self, resolver: Optional[SLAResolver] = None):
        self.resolver = resolver or SLAResolver()

    def compute(
        self,
        contract: Contract,
        product_sla: Optional[ProductSLA],
        orders: Sequence[OrderRecord],
        window: MeasurementWindow,
    ) -> Optional[RawSample]:
        """
        Compute a raw sample for the contract (or one product) over the window.

        Only orders created inside the window are considered.
        """
        in_window = [order for order in orders if window.contains(order.created_at)]
        product_id = product_sla.product_id if product_sla is not None else None
        events = self.eligible_events(in_window, window, product_id)
        if not events:
            return None
        targets = self.resolver.resolve(contract, product_sla, window.start)
        return self.build_sample(contract, product_sla, events, targets, window)

    @abstractmethod
    def eligible_events(
        self,
        orders: Sequence[OrderRecord],
        window: MeasurementWindow,
        product_id: Optional[str],
    ) -> List[Event]:
        """Events counted by this metric."""

    @abstractmethod
    def build_sample(
        self,
        contract: Contract,
        product_sla: Optional[ProductSLA],
        events: List[Event],
        targets: EffectiveTargets,
        window: MeasurementWindow,
    ) -> RawSample:
        """Judge the events and assemble the sample."""

    def _sample(
        self,
        events: List[Event],
        successes: int,
        target_value: float,
        **extra,
    ) -> RawSample:
        sample_size, order_value = _order_totals(events)
        return RawSample(
            metric_type=self.metric_type,
            actual_value=_percent(successes, len(events)),
            target_value=round(target_value, 2),
            sample_size=sample_size,
            total_events=len(events),
            successful_events=successes,
            failed_events=len(events) - successes,
            potential_order_value=order_value,
            **extra,
        )


class DeliveryPerformanceCalculator(MetricCalculator):
    """
    On-time delivery rate.

    An order counts once it is received or closed with a delivery
    timestamp before the window end. Each order is judged against the
    delivery days in force on its creation date, so seasonal terms
    follow the order rather than the window.
    """

    metric_type = MetricType.DELIVERY_PERFORMANCE

    def eligible_events(self, orders, window, product_id):
        delivered = [order for order in orders if order.delivered_before(window.end_datetime)]
        return _scope_events(delivered, product_id)

    def build_sample(self, contract, product_sla, events, targets, window):
        on_time = early = 0
        total_days = 0
        delays: List[float] = []

        for event in events:
            order = event.order
            created_on = order.created_at.astimezone(timezone.utc).date()
            allowed = self.resolver.resolve(contract, product_sla, created_on).delivery_days
            days = order.delivery_days
            total_days += days
            if days <= allowed:
                on_time += 1
                if days < allowed - 1:
                    early += 1
            else:
                delays.append(days - allowed)

        return self._sample(
            events,
            on_time,
            100 - targets.delivery_tolerance_percent,
            early_events=early,
            breakdown={
                "average_delivery_days": round(total_days / len(events), 2),
                "on_time_deliveries": on_time,
                "late_deliveries": len(delays),
                "early_deliveries": early,
                "max_delay_days": max(delays) if delays else 0,
                "average_delay_days": round(sum(delays) / len(delays), 2) if delays else 0,
                "delivery_days_target": targets.delivery_days,
            },
        )


class QualityPerformanceCalculator(MetricCalculator):
    """Share of delivered orders (or product lines) without a quality defect."""

    metric_type = MetricType.QUALITY_PERFORMANCE

    def eligible_events(self, orders, window, product_id):
        delivered = [order for order in orders if order.delivered_before(window.end_datetime)]
        return _scope_events(delivered, product_id)

    def build_sample(self, contract, product_sla, events, targets, window):
        defects = sum(
            1 for event in events
            if (event.line.quality_defect if event.line is not None else event.order.has_quality_defect)
        )
        return self._sample(
            events,
            len(events) - defects,
            100 - targets.quality_tolerance_percent,
            breakdown={
                "quality_issues_reported": defects,
                "defect_rate": _percent(defects, len(events)),
            },
        )


class QuantityAccuracyCalculator(MetricCalculator):
    """
    Share of delivered lines whose quantity matches the order.

    Accuracy is delivered / ordered, clamped to [0, 200]. A line succeeds
    from the accuracy threshold up to a complete delivery plus a small
    over-delivery tolerance.
    """

    metric_type = MetricType.QUANTITY_ACCURACY

    def eligible_events(self, orders, window, product_id):
        delivered = [order for order in orders if order.delivered_before(window.end_datetime)]
        if product_id is None:
            events = [Event(order, line) for order in delivered for line in order.lines]
        else:
            events = _scope_events(delivered, product_id)
        return [
            event for event in events
            if event.line.delivered_quantity is not None and event.line.ordered_quantity > 0
        ]

    @staticmethod
    def accuracy(line: OrderLine) -> float:
        ratio = line.delivered_quantity / line.ordered_quantity * 100
        return min(max(ratio, 0.0), MAX_QUANTITY_ACCURACY)

    def build_sample(self, contract, product_sla, events, targets, window):
        threshold = targets.quantity_accuracy_threshold
        upper = max(threshold, 100.0) + OVER_DELIVERY_TOLERANCE

        accurate = short = over = exact = 0
        deviations: List[float] = []
        for event in events:
            accuracy = self.accuracy(event.line)
            deviations.append(abs(accuracy - 100))
            if threshold <= accuracy <= upper:
                accurate += 1
            if accuracy < 100:
                short += 1
            elif accuracy > 100:
                over += 1
            else:
                exact += 1

        return self._sample(
            events,
            accurate,
            threshold,
            breakdown={
                "short_deliveries": short,
                "over_deliveries": over,
                "exact_deliveries": exact,
                "shortage_rate": _percent(short, len(events)),
                "average_variance": round(sum(deviations) / len(deviations), 2),
                "max_variance": round(max(deviations), 2),
            },
        )


class OrderFulfillmentCalculator(MetricCalculator):
    """Share of orders created in the window that were received or closed by its end."""

    metric_type = MetricType.ORDER_FULFILLMENT_RATE

    def eligible_events(self, orders, window, product_id):
        return _scope_events(orders, product_id)

    def build_sample(self, contract, product_sla, events, targets, window):
        fulfilled = sum(
            1 for event in events
            if event.order.status in DELIVERED_ORDER_STATUSES
            and (
                event.order.actual_delivery_at is None
                or event.order.actual_delivery_at < window.end_datetime
            )
        )
        return self._sample(
            events,
            fulfilled,
            targets.fulfillment_target,
            breakdown={
                "fulfilled_orders": fulfilled,
                "open_orders": len(events) - fulfilled,
            },
        )


# ========== Registry ==========

CONTRACT_SCOPE_METRICS = (
    MetricType.DELIVERY_PERFORMANCE,
    MetricType.QUALITY_PERFORMANCE,
    MetricType.ORDER_FULFILLMENT_RATE,
)

PRODUCT_SCOPE_METRICS = (
    MetricType.DELIVERY_PERFORMANCE,
    MetricType.QUALITY_PERFORMANCE,
    MetricType.QUANTITY_ACCURACY,
)

CALCULATOR_CLASSES = {
    calculator.metric_type: calculator
    for calculator in (
        DeliveryPerformanceCalculator,
        QualityPerformanceCalculator,
        QuantityAccuracyCalculator,
        OrderFulfillmentCalculator,
    )
}


def build_calculators(resolver: Optional[SLAResolver] = None) -> Dict[MetricType, MetricCalculator]:
    """Instantiate one calculator per supported metric type sharing a resolver."""
    resolver = resolver or SLAResolver()
    return {metric_type: cls(resolver) for metric_type, cls in CALCULATOR_CLASSES.items()}
