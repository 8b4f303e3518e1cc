"""
Performance Domain Layer
========================

Domain layer for the contract performance module.

Contains:
- Entities: Contract, ProductSLA, OrderRecord, PerformanceMetric
- Value Objects: MeasurementWindow, MetricKey, EffectiveTargets, RawSample,
  PerformanceRuleConfig
- Domain Services: SLAResolver, metric calculators, PerformanceClassifier,
  FinancialImpactCalculator, TrendAnalyzer, EscalationPolicy

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from src.performance.domain.entities import (
    Contract,
    EscalationRules,
    OrderLine,
    OrderRecord,
    PerformanceMetric,
    ProductSLA,
    SeasonalRule,
    SpecialPeriod,
)
from src.performance.domain.value_objects import (
    Classification,
    EffectiveTargets,
    FinancialImpact,
    MeasurementWindow,
    MetricKey,
    PerformanceRuleConfig,
    RawSample,
)
from src.performance.domain.resolver import SLAResolver
from src.performance.domain.calculators import (
    CONTRACT_SCOPE_METRICS,
    PRODUCT_SCOPE_METRICS,
    MetricCalculator,
    build_calculators,
)
from src.performance.domain.scoring import FinancialImpactCalculator, PerformanceClassifier
from src.performance.domain.escalation import EscalationPolicy, TrendAnalyzer

__all__ = [
    # Entities
    "Contract",
    "ProductSLA",
    "SeasonalRule",
    "SpecialPeriod",
    "EscalationRules",
    "OrderLine",
    "OrderRecord",
    "PerformanceMetric",
    # Value Objects
    "Classification",
    "EffectiveTargets",
    "FinancialImpact",
    "MeasurementWindow",
    "MetricKey",
    "PerformanceRuleConfig",
    "RawSample",
    # Domain Services
    "SLAResolver",
    "MetricCalculator",
    "build_calculators",
    "CONTRACT_SCOPE_METRICS",
    "PRODUCT_SCOPE_METRICS",
    "PerformanceClassifier",
    "FinancialImpactCalculator",
    "TrendAnalyzer",
    "EscalationPolicy",
]
