"""
Configuration Module
====================

Application settings and configuration management using Pydantic.
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="contract-performance-service", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/contracts",
        description="PostgreSQL connection URL (async)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== Performance Engine ==========
    performance_config_path: Path = Field(
        default=Path("performance_config.yaml"),
        description="Path to the rule-table YAML file (status tiers, severity, escalation)"
    )
    performance_max_workers: int = Field(
        default=4,
        description="Contracts processed concurrently by one batch run",
        ge=1,
        le=64
    )
    performance_upsert_retries: int = Field(
        default=3,
        description="Attempts per single-metric upsert before giving up",
        ge=1,
        le=10
    )
    performance_evaluation_interval: int = Field(
        default=3600,
        description="Seconds between scheduled batch runs (0 disables the scheduler)",
        ge=0
    )
    performance_schedule_period: str = Field(
        default="MONTHLY",
        description="Measurement period computed by the scheduled batch"
    )
    performance_calculated_by: str = Field(
        default="batch-scheduler",
        description="Actor recorded on metrics produced by the scheduled batch"
    )
    default_fulfillment_target: float = Field(
        default=95.0,
        description="Order fulfillment target (%) when no contract override exists",
        ge=0,
        le=100
    )
    default_quantity_accuracy_threshold: float = Field(
        default=98.0,
        description="Quantity accuracy threshold (%) when no product override exists",
        ge=0,
        le=100
    )
    early_delivery_bonus_fraction: float = Field(
        default=0.5,
        description="Share of early deliveries that qualifies a sample for the delivery bonus",
        ge=0,
        le=1
    )
    report_default_window_days: int = Field(
        default=30,
        description="Report window when no period is given",
        ge=1
    )
    expiry_warning_days: int = Field(
        default=30,
        description="Horizon for the 'expiring soon' dashboard counter",
        ge=1
    )

    # ========== Slack Integration ==========
    slack_webhook_url: Optional[str] = Field(
        default=None,
        description="Slack webhook URL for escalation notifications"
    )
    slack_channel: str = Field(
        default="#supplier-performance",
        description="Slack channel for escalation notifications"
    )
    slack_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for Slack API calls",
        ge=0.1,
        le=30
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080"],
        description="Allowed CORS origins"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("performance_schedule_period")
    @classmethod
    def validate_schedule_period(cls, v: str) -> str:
        """Ensure the scheduled period is a known measurement period."""
        v = v.upper()
        if v not in VALID_MEASUREMENT_PERIODS:
            raise ValueError(f"performance_schedule_period must be one of {VALID_MEASUREMENT_PERIODS}")
        return v


# ========== Constants ==========

class ContractStatus(str, Enum):
    """Supplier contract lifecycle statuses."""
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    EXPIRED = "EXPIRED"
    TERMINATED = "TERMINATED"


class ContractType(str, Enum):
    """Commercial shape of a contract."""
    ANNUAL = "ANNUAL"
    MULTI_YEAR = "MULTI_YEAR"
    SEASONAL = "SEASONAL"
    SPOT = "SPOT"


class OrderStatus(str, Enum):
    """Purchase order lifecycle statuses as seen by the order ledger."""
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    CONFIRMED = "CONFIRMED"
    SHIPPED = "SHIPPED"
    RECEIVED = "RECEIVED"
    CLOSED = "CLOSED"
    CANCELLED = "CANCELLED"


class MetricType(str, Enum):
    """Measurable aspects of supplier performance."""
    DELIVERY_PERFORMANCE = "DELIVERY_PERFORMANCE"
    QUALITY_PERFORMANCE = "QUALITY_PERFORMANCE"
    QUANTITY_ACCURACY = "QUANTITY_ACCURACY"
    ORDER_FULFILLMENT_RATE = "ORDER_FULFILLMENT_RATE"
    RESPONSE_TIME = "RESPONSE_TIME"
    PACKAGING_COMPLIANCE = "PACKAGING_COMPLIANCE"
    DOCUMENTATION_COMPLETENESS = "DOCUMENTATION_COMPLETENESS"

    @property
    def higher_is_better(self) -> bool:
        """Direction of the metric: response time is the only lower-is-better one."""
        return self is not MetricType.RESPONSE_TIME


class MeasurementPeriod(str, Enum):
    """Length of the window a metric is computed over."""
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    ANNUAL = "ANNUAL"


class PerformanceStatus(str, Enum):
    """Status tier of a single metric."""
    EXCELLENT = "EXCELLENT"    # Above expectations
    GOOD = "GOOD"              # Meeting SLA
    WARNING = "WARNING"        # Approaching SLA breach
    BREACH = "BREACH"          # SLA breached
    CRITICAL = "CRITICAL"      # Critical breach requiring escalation


class TrendDirection(str, Enum):
    """Movement of a metric compared to the preceding period."""
    IMPROVING = "IMPROVING"
    STABLE = "STABLE"
    DECLINING = "DECLINING"


class Severity(str, Enum):
    """Qualitative size of a miss, gating escalation."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ReportStatus(str, Enum):
    """Overall status of a contract performance report."""
    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    NEEDS_ATTENTION = "NEEDS_ATTENTION"
    CRITICAL = "CRITICAL"


# ========== Lists for validation ==========

VALID_MEASUREMENT_PERIODS = [p.value for p in MeasurementPeriod]
VALID_METRIC_TYPES = [m.value for m in MetricType]
DELIVERED_ORDER_STATUSES = [OrderStatus.RECEIVED, OrderStatus.CLOSED]
WITHIN_SLA_STATUSES = [PerformanceStatus.EXCELLENT, PerformanceStatus.GOOD]
AT_RISK_STATUSES = [PerformanceStatus.BREACH, PerformanceStatus.CRITICAL]


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()
