"""
Performance Application Layer
=============================

Application layer for the contract performance module.

Contains:
- Services: Batch aggregation, reporting and manual review
- DTOs: Data transfer objects for API serialization

This layer depends on the domain layer and repository interfaces,
but not on concrete infrastructure implementations.
"""

from src.performance.application.dto import (
    CalculatePerformanceRequest,
    MetricReviewRequest,
    EscalateMetricRequest,
    MetricResponse,
    CalculationRunResponse,
    ContractReportResponse,
    DashboardResponse,
    TrendPointResponse,
    EscalateMetricResponse,
)
from src.performance.application.services import (
    ContractPerformanceService,
    PerformanceReportingService,
    MetricReviewService,
    MetricQuery,
    PerformanceRunResult,
    IContractRepository,
    IOrderLedger,
    IPerformanceMetricRepository,
    IRuleConfigProvider,
    DefaultRuleConfigProvider,
)

__all__ = [
    # DTOs
    "CalculatePerformanceRequest",
    "MetricReviewRequest",
    "EscalateMetricRequest",
    "MetricResponse",
    "CalculationRunResponse",
    "ContractReportResponse",
    "DashboardResponse",
    "TrendPointResponse",
    "EscalateMetricResponse",
    # Services
    "ContractPerformanceService",
    "PerformanceReportingService",
    "MetricReviewService",
    "MetricQuery",
    "PerformanceRunResult",
    # Repository Interfaces
    "IContractRepository",
    "IOrderLedger",
    "IPerformanceMetricRepository",
    "IRuleConfigProvider",
    "DefaultRuleConfigProvider",
]
