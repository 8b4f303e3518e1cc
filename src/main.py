"""
Contract Performance Service - Main Application
===============================================

Supplier contract adherence and SLA performance engine.

Modules:
- Performance: Per-contract and per-product metrics, reports, escalations

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Services and DTOs
- Domain: Entities, value objects and rule engines
- Infrastructure: Database, Slack, rule-table watcher, scheduler
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

# Configuration and Core
from src.config import settings
from src.core import ApplicationException

# Infrastructure
from src.infrastructure.database import close_database, create_tables, database_status, init_database

# Performance Module
from src.performance.application import ContractPerformanceService
from src.performance.infrastructure import (
    PerformanceConfigManager,
    PerformanceScheduler,
    SlackClient,
    SQLAlchemyContractRepository,
    SQLAlchemyOrderLedger,
    SQLAlchemyPerformanceMetricRepository,
)
from src.performance.interfaces import performance_router
from src.performance.services import EscalationDispatcher, PerformanceBatchJob

# Middleware and Logging
from src.shared.api.middleware import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    application_exception_handler,
    global_exception_handler,
)
from src.shared.infrastructure.logging import get_logger, setup_logging

logger = get_logger(__name__)

# Global service instances
config_manager = None
performance_scheduler = None
slack_client = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize database and create tables
    3. Load rule tables and watch the file
    4. Start the batch scheduler (calculation + escalation dispatch)

    SHUTDOWN:
    1. Stop scheduler
    2. Stop config watcher
    3. Close Slack client
    4. Close database connections
    """
    global config_manager, performance_scheduler, slack_client

    # === STARTUP ===
    setup_logging(environment=settings.environment)
    logger.info("Starting Contract Performance Service", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    logger.info("Initializing database")
    init_database()

    # Note: If the database is not available, the server starts in degraded
    # mode and database-dependent endpoints fail
    logger.info("Creating database tables")
    try:
        await create_tables()
    except (OSError, SQLAlchemyError) as e:
        logger.warning(f"Database not available - running in degraded mode: {e}")

    logger.info("Loading performance rule tables")
    config_manager = PerformanceConfigManager()
    config_manager.load(settings.performance_config_path)
    config_manager.start_watching()
    app.state.config_manager = config_manager

    slack_client = SlackClient()
    metric_repository = SQLAlchemyPerformanceMetricRepository()
    dispatcher = EscalationDispatcher(metric_repository, slack_client)
    batch_job = PerformanceBatchJob(
        ContractPerformanceService(
            SQLAlchemyContractRepository(),
            SQLAlchemyOrderLedger(),
            metric_repository,
            config_provider=config_manager,
        ),
        dispatcher=dispatcher,
    )

    if settings.performance_evaluation_interval > 0:
        performance_scheduler = PerformanceScheduler(interval_seconds=settings.performance_evaluation_interval)
        await performance_scheduler.start(batch_job.run)
    else:
        logger.info("Performance scheduler disabled")

    logger.info("Contract Performance Service started successfully")

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Shutting down Contract Performance Service")

    if performance_scheduler:
        await performance_scheduler.stop()

    if config_manager:
        config_manager.stop_watching()

    if slack_client:
        await slack_client.close()

    await close_database()

    logger.info("Contract Performance Service shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="Contract Performance API",
    description="""
    ## Supplier Contract Adherence & SLA Performance

    Measures how well suppliers honor the SLA terms of their contracts.

    ---

    ### Performance Module

    **Endpoints:**
    - `POST /performance/calculate` - Calculate metrics for a window
    - `GET /performance/dashboard` - Portfolio summary of the current month
    - `GET /performance/contracts/{id}/report` - Contract performance report
    - `GET /performance/metrics` - List persisted metrics
    - `GET /performance/escalations` - Pending escalations
    - `GET /performance/trends` - Performance trend series
    - `PUT /performance/metrics/{id}/review` - Review a metric
    - `POST /performance/metrics/{id}/escalate` - Escalate a metric

    **Metrics:** delivery performance, quality performance, quantity accuracy,
    order fulfillment.

    **Statuses:** EXCELLENT, GOOD, WARNING, BREACH, CRITICAL

    ---
    """,
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)
app.state.settings = settings

# === CORS Middleware ===
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# === Custom Middleware (from shared) ===
app.add_middleware(LoggingMiddleware)
app.add_middleware(CorrelationIDMiddleware)
app.add_exception_handler(ApplicationException, application_exception_handler)
app.add_exception_handler(Exception, global_exception_handler)

# === Include Module Routers ===
app.include_router(performance_router)


# === Health Check Endpoint ===

@app.get("/health", tags=["Health"], responses={
    200: {
        "description": "Service is healthy",
        "content": {
            "application/json": {
                "example": {
                    "status": "healthy",
                    "version": "1.0.0",
                    "environment": "development",
                    "checks": {
                        "database": "ok",
                        "rule_config": "loaded",
                        "scheduler": "running",
                        "slack": "configured"
                    }
                }
            }
        }
    }
})
async def health_check(request: Request):
    """
    Liveness plus the state of the store, rule tables, scheduler and Slack.

    A database outage is reported in ``checks`` without failing the check;
    the service keeps serving in degraded mode.
    """
    checks = {
        "database": await database_status(),
        "rule_config": "loaded" if getattr(request.app.state, "config_manager", None) else "defaults",
        "scheduler": "running" if performance_scheduler and performance_scheduler.is_running else "stopped",
        "slack": "configured" if settings.slack_webhook_url else "not_configured",
    }

    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "checks": checks
    }


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information."""
    return {
        "service": "Contract Performance Service",
        "version": settings.app_version,
        "architecture": "Clean Architecture / Modular Monolith",
        "docs": "/docs",
        "health": "/health",
        "modules": {
            "performance": {
                "prefix": "/performance",
                "endpoints": [
                    "POST /performance/calculate - Calculate metrics for a window",
                    "GET /performance/dashboard - Portfolio dashboard",
                    "GET /performance/contracts/{id}/report - Contract report",
                    "GET /performance/metrics - List metrics",
                    "GET /performance/escalations - Pending escalations",
                    "GET /performance/trends - Trend series",
                    "PUT /performance/metrics/{id}/review - Review a metric",
                    "POST /performance/metrics/{id}/escalate - Escalate a metric"
                ]
            }
        }
    }


# === Development Entry Point ===

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_level="info"
    )
