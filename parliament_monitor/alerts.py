from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Iterable

import structlog

from parliament_monitor.models import Cluster, Issue
from parliament_monitor.notifiers.base import NotifierConfigError, NotifierRegistry, UnknownNotifierError
from parliament_monitor.settings import SettingsProvider


logger = structlog.get_logger(__name__)

DEFAULT_ALERT_SPACING_SECONDS = 0.25

TEST_ALERT_MESSAGE = "Test alert"


@dataclass(frozen=True)
class PendingAlert:
    message: str
    notifier: str
    config: dict[str, str] = field(default_factory=dict, compare=False)
    issue_type: str | None = None


def render_alert_message(cluster: Cluster | str, issue: Issue) -> str:
    title = cluster if isinstance(cluster, str) else cluster.title
    return f"{title} - {issue.message}"


def dispatch_plan(alerts: Iterable[PendingAlert], spacing: float = DEFAULT_ALERT_SPACING_SECONDS) -> list[tuple[float, PendingAlert]]:
    """
    Order a batch by rendered message and give alert ``i`` a start offset of
    ``spacing * i`` seconds. Ties keep their enqueue order.
    """
    ordered = sorted(alerts, key=lambda a: a.message)
    spacing = max(0.0, float(spacing))
    return [(spacing * i, alert) for i, alert in enumerate(ordered)]


def _resolved_fields(notifier_settings: dict[str, Any]) -> dict[str, str]:
    out: dict[str, str] = {}
    for name, data in (notifier_settings.get("fields") or {}).items():
        value = data.get("value") if isinstance(data, dict) else data
        out[str(name)] = "" if value is None else str(value)
    return out


class AlertScheduler:
    """
    Collects alerts during a poll cycle and sends them as one paced batch.

    Alerts are best effort and at most once: the issue is marked alerted when
    it is enqueued, so an alert lost before ``flush`` is not retried.
    """

    def __init__(
        self,
        registry: NotifierRegistry,
        settings: SettingsProvider,
        spacing_seconds: float = DEFAULT_ALERT_SPACING_SECONDS,
    ):
        self.registry = registry
        self.settings = settings
        self.spacing_seconds = float(spacing_seconds)
        self._lock = threading.RLock()
        self._pending: list[PendingAlert] = []
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> list[PendingAlert]:
        with self._lock:
            return list(self._pending)

    def _missing_required(self, name: str, config: dict[str, str]) -> list[str]:
        provider = self.registry.get(name)
        return [f for f in provider.required_fields() if not (config.get(f) or "").strip()]

    def alert_issue(self, cluster: Cluster, issue: Issue, now: float | None = None) -> int:
        message = render_alert_message(cluster, issue)
        queued = 0
        for name in self.registry.names():
            if self.enqueue(name, issue.type, message):
                queued += 1
        return queued

    def enqueue(self, notifier_name: str, issue_type: str, message: str) -> bool:
        if notifier_name not in self.registry:
            logger.warning("Alert dropped for unknown notifier", notifier=notifier_name)
            return False

        saved = self.settings.notifier(notifier_name)
        if not saved or not saved.get("on"):
            return False
        if not (saved.get("alerts") or {}).get(issue_type):
            return False

        config = _resolved_fields(saved)
        missing = self._missing_required(notifier_name, config)
        if missing:
            for field_name in missing:
                logger.warning("Notifier missing required field", notifier=notifier_name, field=field_name)
            return False

        with self._lock:
            self._pending.append(
                PendingAlert(message=message, notifier=notifier_name, config=config, issue_type=issue_type)
            )
        return True

    async def flush(self, now: float | None = None) -> int:
        """
        Send everything enqueued so far. Returns the number of alerts issued;
        delivery runs in background tasks that ``wait_idle`` can await.
        """
        with self._lock:
            if not self._pending:
                return 0
            batch, self._pending = self._pending, []

        plan = dispatch_plan(batch, self.spacing_seconds)
        logger.info("Flushing alerts", count=len(plan), batch_ts=now if now is not None else time.time())
        for delay, alert in plan:
            task = asyncio.create_task(self._send_later(delay, alert))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return len(plan)

    async def _send_later(self, delay: float, alert: PendingAlert) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        await self._send(alert)

    async def _send(self, alert: PendingAlert) -> bool:
        try:
            provider = self.registry.get(alert.notifier)
            await provider.send_alert(alert.config, alert.message)
        except Exception:
            logger.exception("Failed to send alert", notifier=alert.notifier, issue_type=alert.issue_type)
            return False
        logger.info("Alert sent", notifier=alert.notifier, issue_type=alert.issue_type)
        return True

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def send_test_alert(self, notifier_name: str) -> None:
        if notifier_name not in self.registry:
            raise UnknownNotifierError(notifier_name)
        saved = self.settings.notifier(notifier_name) or {}
        config = _resolved_fields(saved)
        missing = self._missing_required(notifier_name, config)
        if missing:
            raise NotifierConfigError(f"Missing a required field: {missing[0]}")

        provider = self.registry.get(notifier_name)
        await provider.send_alert(config, TEST_ALERT_MESSAGE)
        logger.info("Test alert sent", notifier=notifier_name)
