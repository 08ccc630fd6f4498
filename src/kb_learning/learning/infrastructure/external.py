"""
Learning External Service Integrations
=======================================

External services for the learning pipeline:
- YAML learning policy file watcher
- Slack webhook alerts for terminal learning failures
- APScheduler for the queue worker and effectiveness scoring
"""

import asyncio
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx
import yaml
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from kb_learning.config import FailureKind, Settings, settings
from kb_learning.learning.application.services import ILearningAlertNotifier
from kb_learning.learning.domain import LearningPolicy
from kb_learning.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class ConfigFileHandler(FileSystemEventHandler):
    """Watchdog event handler for learning policy file changes."""

    def __init__(self, config_manager: "LearningConfigManager", config_path: Path):
        self.config_manager = config_manager
        self.config_path = config_path
        super().__init__()

    def on_modified(self, event):
        if event.is_directory:
            return
        if Path(event.src_path).resolve() == self.config_path.resolve():
            logger.info(f"Learning policy file changed: {event.src_path}")
            self.config_manager.reload()


class LearningConfigManager:
    """
    Thread-safe learning policy holder with hot-reload support.

    Environment settings provide the defaults; the YAML file overrides any
    subset of them. An invalid file on reload keeps the previous policy.
    """

    def __init__(self, base_settings: Settings = settings):
        self._defaults = LearningPolicy.from_settings(base_settings)
        self._policy: Optional[LearningPolicy] = None
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._observer = None

    def load(self, path: Path) -> LearningPolicy:
        """Initial policy load. Raises on an invalid file."""
        self._path = path
        self._policy = self._load_from_file(path)
        return self._policy

    def _load_from_file(self, path: Path) -> LearningPolicy:
        if not path.exists():
            logger.warning(f"Learning policy file not found: {path}, using defaults")
            return self._defaults

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError(f"Learning policy file must contain a mapping: {path}")
        return self._defaults.merged_with(data)

    def reload(self) -> bool:
        """Reload the policy from file."""
        if self._path is None:
            return False

        try:
            new_policy = self._load_from_file(self._path)
        except (OSError, ValueError, yaml.YAMLError) as e:
            logger.error(f"Failed to reload learning policy, keeping previous: {e}")
            return False

        with self._lock:
            self._policy = new_policy
        logger.info(
            "Learning policy reloaded",
            extra={
                "publish_threshold": new_policy.publishing.publish_threshold,
                "similarity_threshold": new_policy.clustering.similarity_threshold,
                "auto_response_enabled": new_policy.gate.auto_response_enabled,
            }
        )
        return True

    def start_watching(self) -> None:
        """
        Start watching the policy file for changes.

        Skipped when the file does not exist or the platform cannot watch it.
        """
        if self._path is None:
            raise RuntimeError("Policy not loaded. Call load() first.")

        if not self._path.exists():
            logger.info(f"Learning policy file doesn't exist, skipping file watch: {self._path}")
            return

        try:
            self._observer = Observer()
            handler = ConfigFileHandler(self, self._path)
            self._observer.schedule(handler, str(self._path.parent), recursive=False)
            self._observer.start()
            logger.info(f"Started watching learning policy file: {self._path}")
        except OSError as e:
            logger.warning(f"File watching not available, using static policy: {e}")
            self._observer = None

    def stop_watching(self) -> None:
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    @property
    def policy(self) -> LearningPolicy:
        """Current policy."""
        with self._lock:
            if self._policy is None:
                raise RuntimeError("Learning policy not loaded")
            return self._policy

    def __call__(self) -> LearningPolicy:
        return self.policy


class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker for the alert webhook.

    States:
    - CLOSED: requests pass through
    - OPEN: after N failures, reject requests for recovery_timeout seconds
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
                extra={"failure_count": self._failure_count, "recovery_timeout": self.recovery_timeout}
            )


@dataclass
class LearningFailureAlert:
    """Slack alert payload for a learning failure."""
    ticket_ids: List[str]
    error_kind: str
    message: str
    timestamp: str


class SlackClient(ILearningAlertNotifier):
    """
    Slack webhook notifier with circuit breaker and retry.

    Alerts operators when queue items fail terminally or generation output
    is malformed.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        channel: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self._webhook_url = webhook_url if webhook_url is not None else settings.slack_webhook_url
        self._channel = channel or settings.slack_channel
        self._timeout = timeout_seconds or settings.slack_timeout_seconds
        self._sleep = sleep
        self._circuit_breaker = CircuitBreaker(failure_threshold=5, recovery_timeout=60)
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    def _build_message(self, alert: LearningFailureAlert) -> Dict[str, Any]:
        """Build Slack Block Kit message."""
        if alert.error_kind == FailureKind.MALFORMED_OUTPUT:
            header_text = ":warning: Article generation produced malformed output"
        else:
            header_text = ":rotating_light: Learning queue items failed"

        shown = alert.ticket_ids[:10]
        tickets_text = ", ".join(shown)
        if len(alert.ticket_ids) > len(shown):
            tickets_text += f" (+{len(alert.ticket_ids) - len(shown)} more)"

        blocks = [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": header_text, "emoji": True}
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Error kind:*\n{alert.error_kind}"},
                    {"type": "mrkdwn", "text": f"*Tickets:*\n{tickets_text or '-'}"},
                ]
            },
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"```{alert.message[:2000]}```"}
            },
            {
                "type": "context",
                "elements": [{"type": "mrkdwn", "text": f"At: {alert.timestamp}"}]
            }
        ]
        return {"channel": self._channel, "blocks": blocks}

    async def send_failure_alert(
        self,
        ticket_ids: Sequence[str],
        error_kind: str,
        message: str,
        max_retries: int = 3
    ) -> bool:
        """
        Send a failure alert to the Slack webhook.

        Returns:
            True if sent successfully, False otherwise
        """
        if not self._webhook_url:
            logger.debug("Slack webhook URL not configured, skipping alert")
            return False

        if not self._circuit_breaker.allow_request():
            logger.warning("Circuit breaker open, skipping Slack alert", extra={"error_kind": error_kind})
            return False

        payload = self._build_message(LearningFailureAlert(
            ticket_ids=list(ticket_ids),
            error_kind=error_kind,
            message=message,
            timestamp=datetime.now(timezone.utc).isoformat(),
        ))

        for attempt in range(max_retries):
            try:
                client = await self._get_client()
                response = await client.post(self._webhook_url, json=payload)

                if response.status_code == 200:
                    self._circuit_breaker.record_success()
                    logger.info(
                        "Slack alert sent",
                        extra={"error_kind": error_kind, "ticket_count": len(ticket_ids)}
                    )
                    return True

                logger.warning(
                    "Slack webhook returned non-200",
                    extra={"status_code": response.status_code, "attempt": attempt + 1}
                )
            except httpx.HTTPError as e:
                logger.error("Slack alert failed", extra={"error": str(e), "attempt": attempt + 1})

            if attempt < max_retries - 1:
                await self._sleep(2 ** attempt)

        self._circuit_breaker.record_failure()
        return False

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


class LearningScheduler:
    """
    Wrapper for APScheduler running the background learning jobs.

    Each job runs at most one instance at a time.
    """

    def __init__(self):
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._jobs: Dict[str, tuple] = {}
        self._running = False

    def add_job(self, job_id: str, job_func: Callable[[], Awaitable[Any]], interval_seconds: int) -> None:
        """Register a job; takes effect on start()."""
        self._jobs[job_id] = (job_func, interval_seconds)

    async def start(self) -> None:
        if self._running:
            logger.warning("Learning scheduler already running")
            return

        self._scheduler = AsyncIOScheduler()
        for job_id, (job_func, interval_seconds) in self._jobs.items():
            self._scheduler.add_job(
                job_func,
                "interval",
                seconds=interval_seconds,
                id=job_id,
                name=job_id.replace("_", " ").title(),
                misfire_grace_time=60,
                max_instances=1,
                replace_existing=True
            )
        self._scheduler.start()
        self._running = True

        logger.info(
            "Learning scheduler started",
            extra={"jobs": {job_id: interval for job_id, (_, interval) in self._jobs.items()}}
        )

    async def stop(self) -> None:
        if not self._running:
            return
        if self._scheduler:
            self._scheduler.shutdown(wait=False)
        self._running = False
        logger.info("Learning scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def job_ids(self) -> List[str]:
        return list(self._jobs)
