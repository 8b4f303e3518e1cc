"""
Performance External Service Integrations
=========================================

External services for the performance engine:
- YAML rule-table file with hot reload (watchdog)
- Slack webhook notifications for escalations
- APScheduler for the periodic batch run
"""

import asyncio
import threading
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import yaml
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import ValidationError
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from src.config import Severity, settings
from src.core import ConfigurationException, NotificationException
from src.performance.application.services import IRuleConfigProvider
from src.performance.domain import PerformanceMetric, PerformanceRuleConfig
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class ConfigFileHandler(FileSystemEventHandler):
    """Watchdog event handler for rule-table file changes."""

    def __init__(self, config_manager: "PerformanceConfigManager", config_path: Path):
        self.config_manager = config_manager
        self.config_path = config_path
        super().__init__()

    def on_modified(self, event):
        if event.is_directory:
            return
        if Path(event.src_path).resolve() == self.config_path.resolve():
            logger.info(f"Rule config file changed: {event.src_path}")
            self.config_manager.reload()


class PerformanceConfigManager(IRuleConfigProvider):
    """
    Thread-safe rule-table provider with hot-reload support.

    A reload that fails to parse or validate keeps the previous tables.
    Callers take one snapshot per run via ``get_config``.
    """

    def __init__(self):
        self._config: Optional[PerformanceRuleConfig] = None
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._observer = None

    def load(self, path: Path) -> PerformanceRuleConfig:
        """Initial configuration load. Invalid files fail startup."""
        self._path = Path(path)
        try:
            config = self._load_from_file(self._path)
        except (yaml.YAMLError, ValidationError, OSError) as e:
            raise ConfigurationException(
                f"Invalid performance rule config: {e}",
                {"path": str(self._path)}
            ) from e
        with self._lock:
            self._config = config
        return config

    def _load_from_file(self, path: Path) -> PerformanceRuleConfig:
        if not path.exists():
            logger.warning(f"Performance config file not found: {path}, using defaults")
            return PerformanceRuleConfig()

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        return PerformanceRuleConfig(**data)

    def reload(self) -> bool:
        """Reload configuration from file."""
        if self._path is None:
            return False

        try:
            new_config = self._load_from_file(self._path)
        except (yaml.YAMLError, ValidationError, OSError) as e:
            logger.error(
                "Failed to reload performance config, keeping previous tables",
                extra={"path": str(self._path), "error": str(e)}
            )
            return False

        with self._lock:
            self._config = new_config
        logger.info("Performance configuration reloaded successfully")
        return True

    def start_watching(self) -> None:
        """
        Start watching the configuration file for changes.

        Skipped when the file does not exist or inotify is unavailable.
        """
        if self._path is None:
            raise RuntimeError("Config not loaded. Call load() first.")

        if not self._path.exists():
            logger.info(
                f"Config file doesn't exist, skipping file watch: {self._path}. "
                "Using default rule tables."
            )
            return

        try:
            self._observer = Observer()
            handler = ConfigFileHandler(self, self._path)
            self._observer.schedule(handler, str(self._path.parent), recursive=False)
            self._observer.start()
            logger.info(f"Started watching config file: {self._path}")
        except OSError as e:
            logger.warning(f"File watching not available, using static config: {e}")
            self._observer = None

    def stop_watching(self) -> None:
        """Stop watching configuration file (safe to call even if not watching)."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    def get_config(self) -> PerformanceRuleConfig:
        with self._lock:
            if self._config is None:
                raise RuntimeError("Performance configuration not loaded")
            return self._config


class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker for the notification channel.

    States:
    - CLOSED: requests pass through
    - OPEN: after N failures, reject all requests for M seconds
    - HALF_OPEN: after the timeout, allow a test request
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None

    @property
    def state(self) -> str:
        if self._state == CircuitState.OPEN and self._last_failure_time is not None:
            if time.monotonic() - self._last_failure_time >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        self._failure_count = 0
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = time.monotonic()

        if self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN
            logger.warning(
                "Circuit breaker opened",
                extra={
                    "failure_count": self._failure_count,
                    "recovery_timeout": self.recovery_timeout
                }
            )


SEVERITY_EMOJI = {
    Severity.LOW: ":large_blue_circle:",
    Severity.MEDIUM: ":large_yellow_circle:",
    Severity.HIGH: ":large_orange_circle:",
    Severity.CRITICAL: ":red_circle:",
}


class SlackClient:
    """
    Slack webhook client for escalation notifications.

    Retries with exponential backoff behind a circuit breaker.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        channel: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.webhook_url = webhook_url if webhook_url is not None else settings.slack_webhook_url
        self.channel = channel or settings.slack_channel
        self.timeout_seconds = timeout_seconds or settings.slack_timeout_seconds
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self._circuit_breaker = CircuitBreaker(failure_threshold=5, recovery_timeout=60)
        self._http_client = http_client

    @property
    def is_configured(self) -> bool:
        return bool(self.webhook_url)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    def build_message(self, metric: PerformanceMetric) -> Dict[str, Any]:
        """Build Slack Block Kit message for an escalated metric."""
        emoji = SEVERITY_EMOJI.get(metric.severity, ":warning:")
        scope = metric.product_id or "contract level"
        deadline = metric.action_deadline.isoformat() if metric.action_deadline else "n/a"

        blocks = [
            {
                "type": "header",
                "text": {
                    "type": "plain_text",
                    "text": f"Supplier performance escalation (level {metric.escalation_level})",
                    "emoji": True
                }
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Contract:*\n{metric.contract_id}"},
                    {"type": "mrkdwn", "text": f"*Scope:*\n{scope}"},
                    {"type": "mrkdwn", "text": f"*Metric:*\n{metric.metric_type.value.replace('_', ' ').title()}"},
                    {"type": "mrkdwn", "text": f"*Severity:*\n{emoji} {metric.severity.value}"},
                    {"type": "mrkdwn", "text": f"*Actual / Target:*\n{metric.actual_value}% / {metric.target_value}%"},
                    {"type": "mrkdwn", "text": f"*Action deadline:*\n{deadline}"}
                ]
            },
            {
                "type": "context",
                "elements": [
                    {
                        "type": "mrkdwn",
                        "text": (
                            f"Period {metric.period_start.isoformat()} to {metric.period_end.isoformat()}"
                            f" | {metric.escalation_notes or 'No notes'}"
                        )
                    }
                ]
            }
        ]

        return {"channel": self.channel, "blocks": blocks}

    async def send_escalation(self, metric: PerformanceMetric) -> bool:
        """
        Send an escalation to the Slack webhook.

        Returns:
            True if sent, False when Slack is not configured or the circuit is open

        Raises:
            NotificationException: If every attempt failed
        """
        if not self.is_configured:
            logger.debug("Slack webhook URL not configured, skipping notification")
            return False

        if not self._circuit_breaker.allow_request():
            logger.warning(
                "Circuit breaker open, skipping Slack notification",
                extra={"metric_id": metric.id}
            )
            return False

        message = self.build_message(metric)
        last_error = "no attempt made"

        for attempt in range(self.max_retries):
            try:
                client = await self._get_client()
                response = await client.post(self.webhook_url, json=message)

                if response.status_code == 200:
                    self._circuit_breaker.record_success()
                    logger.info(
                        "Slack notification sent",
                        extra={"metric_id": metric.id, "escalation_level": metric.escalation_level}
                    )
                    return True

                last_error = f"status {response.status_code}"
                logger.warning(
                    "Slack webhook returned non-200",
                    extra={"status_code": response.status_code, "attempt": attempt + 1}
                )
            except httpx.HTTPError as e:
                last_error = str(e)
                logger.error(
                    "Slack notification failed",
                    extra={"error": str(e), "attempt": attempt + 1, "metric_id": metric.id}
                )

            if attempt < self.max_retries - 1:
                await asyncio.sleep(self.retry_base_delay * (2 ** attempt))

        self._circuit_breaker.record_failure()
        raise NotificationException(
            f"Slack notification failed after {self.max_retries} attempts: {last_error}"
        )

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


class PerformanceScheduler:
    """
    Wrapper for APScheduler running the periodic batch.

    ``max_instances=1`` keeps a slow run from overlapping the next one.
    """

    def __init__(self, interval_seconds: int = 3600):
        self.interval_seconds = interval_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    async def start(self, job_func: Callable[[], Awaitable[None]]) -> None:
        if self._running:
            logger.warning("Performance scheduler already running")
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            job_func,
            "interval",
            seconds=self.interval_seconds,
            id="performance_calculation",
            name="Contract Performance Calculation",
            misfire_grace_time=300,
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self._scheduler.start()
        self._running = True

        logger.info(
            "Performance scheduler started",
            extra={"interval_seconds": self.interval_seconds}
        )

    async def stop(self) -> None:
        if not self._running:
            return

        if self._scheduler:
            self._scheduler.shutdown(wait=False)

        self._running = False
        logger.info("Performance scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running
