"""
Performance Infrastructure Models
=================================

SQLAlchemy ORM models for the contract performance module.

These are the database representations of our domain entities.
They belong in the infrastructure layer, not the domain layer.

Contracts, product SLAs and orders are owned by other parts of the
platform and only read here; performance_metrics is the one table this
module writes.
"""

from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

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
from src.infrastructure.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ContractModel(Base):
    """
    Database model for Contract entity.

    Maps to the 'contracts' table.
    """
    __tablename__ = "contracts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    contract_number: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    supplier_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    contract_type: Mapped[ContractType] = mapped_column(String(50), nullable=False, default=ContractType.ANNUAL)
    status: Mapped[ContractStatus] = mapped_column(String(50), nullable=False, default=ContractStatus.DRAFT)

    # Validity [valid_from, valid_until)
    valid_from: Mapped[date] = mapped_column(Date, nullable=False)
    valid_until: Mapped[date] = mapped_column(Date, nullable=False)

    # Default SLA targets
    default_delivery_sla_days: Mapped[float] = mapped_column(Float, nullable=False, default=7.0)
    default_quality_tolerance_percent: Mapped[float] = mapped_column(Float, nullable=False, default=2.0)
    default_delivery_tolerance_percent: Mapped[float] = mapped_column(Float, nullable=False, default=5.0)
    minimum_fulfillment_rate: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Default rates (% of order value)
    late_delivery_penalty_percent: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    quality_issue_penalty_percent: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    early_delivery_bonus_percent: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    quality_excellence_bonus_percent: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    volume_commitment: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    renewal_notice_days: Mapped[int] = mapped_column(Integer, nullable=False, default=30)

    __table_args__ = (
        Index("ix_contracts_status_validity", "status", "valid_from", "valid_until"),
    )


class ProductSLAModel(Base):
    """
    Database model for ProductSLA entity.

    Maps to the 'product_slas' table. Seasonal rules, special periods and
    escalation rules are stored as JSON documents.
    """
    __tablename__ = "product_slas"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    contract_id: Mapped[str] = mapped_column(ForeignKey("contracts.id"), index=True, nullable=False)
    product_id: Mapped[str] = mapped_column(String(64), nullable=False)

    delivery_sla_days: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    delivery_tolerance_percent: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    max_delivery_delay_days: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    quality_tolerance_percent: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    quantity_accuracy_threshold: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    minimum_order_fulfillment_rate: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    late_delivery_penalty_percent: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    quality_issue_penalty_percent: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    quantity_shortage_penalty_percent: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    early_delivery_bonus_percent: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    quality_excellence_bonus_percent: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    seasonal_adjustments: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    special_requirements: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    escalation_rules: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    measurement_period_days: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    grace_period_days: Mapped[int] = mapped_column(Integer, nullable=False, default=5)

    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_until: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    is_suspended: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class PurchaseOrderModel(Base):
    """
    Database model for a purchase order as seen by the order ledger.

    Maps to the 'purchase_orders' table.
    """
    __tablename__ = "purchase_orders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    supplier_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    status: Mapped[OrderStatus] = mapped_column(String(50), nullable=False, default=OrderStatus.DRAFT)
    total_value: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    promised_delivery_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    actual_delivery_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_purchase_orders_supplier_created", "supplier_id", "created_at"),
    )


class OrderLineModel(Base):
    """
    Database model for a purchase order line.

    Maps to the 'order_lines' table.
    """
    __tablename__ = "order_lines"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("purchase_orders.id"), index=True, nullable=False)
    product_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    ordered_quantity: Mapped[float] = mapped_column(Float, nullable=False)
    delivered_quantity: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    quality_defect: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    line_value: Mapped[Optional[float]] = mapped_column(Float, nullable=True)


class PerformanceMetricModel(Base):
    """
    Database model for PerformanceMetric entity.

    Maps to the 'performance_metrics' table. One row per
    (contract, scope, metric type, period window); ``scope_key`` is the
    product id or "contract" so the key stays unique without a product.
    """
    __tablename__ = "performance_metrics"

    # Primary key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Metric key
    contract_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    scope_key: Mapped[str] = mapped_column(String(64), nullable=False)
    product_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    metric_type: Mapped[MetricType] = mapped_column(String(50), nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)

    measurement_period: Mapped[MeasurementPeriod] = mapped_column(String(20), nullable=False)
    product_sla_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    purchase_order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Values and classification
    target_value: Mapped[float] = mapped_column(Float, nullable=False)
    actual_value: Mapped[float] = mapped_column(Float, nullable=False)
    variance: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    variance_percent: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    status: Mapped[PerformanceStatus] = mapped_column(String(20), nullable=False, index=True)
    severity: Mapped[Severity] = mapped_column(String(20), nullable=False, default=Severity.LOW)

    # Sample counts
    sample_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_events: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    successful_events: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_events: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Financial impact
    penalties_applied: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    bonuses_earned: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    net_financial_impact: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    potential_order_value: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    # Trend
    trend_direction: Mapped[TrendDirection] = mapped_column(String(20), nullable=False, default=TrendDirection.STABLE)
    previous_period_value: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    rolling_average_3: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    rolling_average_12: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    performance_breakdown: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    # Escalation
    escalation_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    escalation_triggered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    escalation_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    escalation_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    requires_action: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    action_deadline: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    escalation_notified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Review
    is_reviewed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reviewed_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    review_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    action_plan: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Provenance
    calculation_method: Mapped[str] = mapped_column(String(100), nullable=False, default="automated_calculation")
    data_sources: Mapped[Optional[List[str]]] = mapped_column(JSON, nullable=True)
    calculation_timestamp: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    is_estimated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    confidence_level: Mapped[float] = mapped_column(Float, nullable=False, default=95.0)
    calculated_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint(
            "contract_id", "scope_key", "metric_type", "period_start", "period_end",
            name="uq_performance_metric_key",
        ),
        Index("ix_performance_metrics_period", "period_start", "period_end"),
    )
