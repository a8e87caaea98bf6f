from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Iterable

import httpx
import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from parliament_monitor.alerts import AlertScheduler
from parliament_monitor.clusters import ClusterRegistry
from parliament_monitor.config import ServiceConfig
from parliament_monitor.health_client import ClusterHealthClient
from parliament_monitor.issues import DEFAULT_IGNORE_SECONDS, IssueTracker
from parliament_monitor.models import Cluster, Group, Issue, IssueKey
from parliament_monitor.notifiers.base import NotifierRegistry, load_notifiers
from parliament_monitor.poller import CycleReport, Poller
from parliament_monitor.settings import SettingsProvider, describe_for_display
from parliament_monitor.storage import JsonStateStore


logger = structlog.get_logger(__name__)

POLL_JOB_ID = "poll"
FLUSH_JOB_ID = "flush"

IssueKeys = Iterable[IssueKey | tuple | dict[str, Any]]


class MonitorService:
    """
    Wires the monitor together and owns its lifecycle: load persisted state,
    run the poll and flush jobs, and write a final save on shutdown.
    """

    def __init__(
        self,
        config: ServiceConfig,
        *,
        notifiers: NotifierRegistry | None = None,
        store: JsonStateStore | None = None,
    ):
        self.config = config
        self.store = store if store is not None else JsonStateStore(config.state_file, config.issues_file)
        self.notifiers = notifiers if notifiers is not None else load_notifiers()

        # Populated by load().
        self.clusters: ClusterRegistry | None = None
        self.settings: SettingsProvider | None = None
        self.alerts: AlertScheduler | None = None
        self.tracker: IssueTracker | None = None

        self.http_client: httpx.AsyncClient | None = None
        self.poller: Poller | None = None
        self.scheduler: AsyncIOScheduler | None = None
        self.running = False

    def load(self) -> None:
        """Build in-memory state from storage. Raises StateLoadError on unreadable state."""
        self.clusters = ClusterRegistry.from_document(self.store.load_clusters())
        self.settings = SettingsProvider(self.clusters.settings)
        self.settings.backfill_notifiers(self.notifiers)

        issues: list[Issue] = []
        for doc in self.store.load_issues():
            try:
                issues.append(Issue.from_dict(doc))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping unreadable stored issue", error=str(e))

        self.alerts = AlertScheduler(self.notifiers, self.settings, self.config.alert_spacing_seconds)
        self.tracker = IssueTracker(self.settings, self.alerts, issues)
        logger.info(
            "State loaded",
            clusters=len(self.clusters.all_clusters()),
            issues=len(issues),
            state_file=str(self.store.state_path),
        )

    def _open(self) -> Poller:
        if self.tracker is None:
            self.load()
        if self.poller is None:
            self.http_client = httpx.AsyncClient(verify=self.config.verify_tls, follow_redirects=True)
            client = ClusterHealthClient(self.http_client, self.settings)
            self.poller = Poller(self.clusters, client, self.tracker, self.alerts, self.store)
        return self.poller

    async def start(self) -> None:
        if self.running:
            logger.warning("Service already running")
            return
        self._open()

        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self._poll_job,
            IntervalTrigger(seconds=self.config.poll_interval_seconds),
            id=POLL_JOB_ID,
            name="Poll clusters",
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc),
        )
        self.scheduler.add_job(
            self._flush_job,
            IntervalTrigger(seconds=self.config.flush_interval_seconds),
            id=FLUSH_JOB_ID,
            name="Flush alerts",
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        self.running = True
        logger.info(
            "Monitor service started",
            poll_interval_seconds=self.config.poll_interval_seconds,
            flush_interval_seconds=self.config.flush_interval_seconds,
        )

    async def stop(self) -> None:
        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
        self.running = False

        # A cycle already in flight must finish before the client closes.
        if self.poller is not None:
            await self.poller.wait_idle()
        if self.alerts is not None:
            await self.alerts.wait_idle()
        await self.persist()
        if self.http_client is not None:
            await self.http_client.aclose()
            self.http_client = None
            self.poller = None
        logger.info("Monitor service stopped")

    async def run_once(self) -> CycleReport:
        """One cycle, wait for its alerts to go out, then close."""
        try:
            report = await self.trigger_cycle()
            await self.alerts.wait_idle()
        finally:
            await self.stop()
        return report

    async def _poll_job(self) -> None:
        try:
            await self.poller.run_cycle()
        except Exception:
            logger.exception("Poll job failed")

    async def _flush_job(self) -> None:
        try:
            await self.alerts.flush()
        except Exception:
            logger.exception("Flush job failed")

    async def trigger_cycle(self) -> CycleReport:
        return await self._open().run_cycle()

    async def persist(self) -> bool:
        if self.tracker is None:
            return False
        return await self._open().persist()

    # Read models.

    def snapshot(self) -> dict[str, Any]:
        return self.clusters.snapshot(self.tracker)

    def list_issues(self, sort_by: str | None = None, order: str = "desc") -> list[dict[str, Any]]:
        return self.tracker.list_issues(sort_by, order)

    def settings_for_display(self) -> dict[str, Any]:
        return {
            "general": self.settings.general(),
            "notifiers": describe_for_display(self.settings.notifiers()),
        }

    # Issue edits.

    async def acknowledge(self, keys: IssueKeys) -> int:
        count = self.tracker.acknowledge(list(keys), time.time())
        await self.persist()
        return count

    async def ignore(self, keys: IssueKeys, duration: float | None = DEFAULT_IGNORE_SECONDS) -> int:
        count = self.tracker.ignore(list(keys), duration, now=time.time())
        await self.persist()
        return count

    async def clear_ignore(self, keys: IssueKeys) -> int:
        count = self.tracker.clear_ignore(list(keys))
        await self.persist()
        return count

    async def remove_issue(self, key: IssueKey | tuple | dict[str, Any]) -> bool:
        removed = self.tracker.remove(key)
        await self.persist()
        return removed

    async def remove_all_acknowledged(self) -> int:
        count = self.tracker.remove_all_acknowledged()
        await self.persist()
        return count

    # Settings edits.

    async def update_general_settings(self, values: dict[str, Any]) -> dict[str, Any]:
        self.settings.update_general(values)
        await self.persist()
        return self.settings.general()

    async def update_notifier(self, name: str, **changes: Any) -> None:
        self.settings.update_notifier(name, **changes)
        await self.persist()

    async def restore_defaults(self, kind: str = "all") -> None:
        self.settings.restore_defaults(self.notifiers, kind=kind)
        await self.persist()

    async def send_test_alert(self, name: str) -> None:
        await self.alerts.send_test_alert(name)

    # Group and cluster edits.

    async def add_group(self, title: str, description: str | None = None) -> Group:
        group = self.clusters.add_group(title, description)
        await self.persist()
        return group

    async def update_group(self, group_id: int, **changes: Any) -> Group:
        group = self.clusters.update_group(group_id, **changes)
        await self.persist()
        return group

    async def remove_group(self, group_id: int) -> Group:
        group = self.clusters.remove_group(group_id)
        await self.persist()
        return group

    async def add_cluster(self, group_id: int, *, title: str, url: str, **options: Any) -> Cluster:
        cluster = self.clusters.add_cluster(group_id, title=title, url=url, **options)
        await self.persist()
        return cluster

    async def update_cluster(self, cluster_id: int, **changes: Any) -> Cluster:
        cluster = self.clusters.update_cluster(cluster_id, **changes)
        await self.persist()
        return cluster

    async def remove_cluster(self, cluster_id: int) -> Cluster:
        cluster = self.clusters.remove_cluster(cluster_id)
        await self.persist()
        return cluster

    async def reorder(self, groups_doc: list[dict[str, Any]]) -> None:
        self.clusters.reorder(groups_doc)
        await self.persist()
