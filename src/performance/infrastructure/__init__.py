"""
Performance Infrastructure Layer
================================

Infrastructure implementations for the performance engine:
- Models: SQLAlchemy ORM models
- Repositories: Data access layer
- External: External service integrations (Slack, config watcher, scheduler)
"""

from src.performance.infrastructure.models import (
    ContractModel,
    OrderLineModel,
    PerformanceMetricModel,
    ProductSLAModel,
    PurchaseOrderModel,
)
from src.performance.infrastructure.repositories import (
    SQLAlchemyContractRepository,
    SQLAlchemyOrderLedger,
    SQLAlchemyPerformanceMetricRepository,
)
from src.performance.infrastructure.external import (
    CircuitBreaker,
    PerformanceConfigManager,
    PerformanceScheduler,
    SlackClient,
)

__all__ = [
    "ContractModel",
    "ProductSLAModel",
    "PurchaseOrderModel",
    "OrderLineModel",
    "PerformanceMetricModel",
    "SQLAlchemyContractRepository",
    "SQLAlchemyOrderLedger",
    "SQLAlchemyPerformanceMetricRepository",
    "CircuitBreaker",
    "PerformanceConfigManager",
    "PerformanceScheduler",
    "SlackClient",
]
