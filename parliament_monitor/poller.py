from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any

import structlog

from parliament_monitor.alerts import AlertScheduler
from parliament_monitor.clusters import ClusterRegistry
from parliament_monitor.health_client import ClusterHealthClient, FetchResult
from parliament_monitor.issues import IssueEvent, IssueTracker
from parliament_monitor.models import Cluster
from parliament_monitor.storage import JsonStateStore


logger = structlog.get_logger(__name__)


@dataclass
class CycleReport:
    started_ts: float
    clusters_polled: int = 0
    events: list[IssueEvent] = field(default_factory=list)
    issues_removed: int = 0
    alerts_sent: int = 0
    elapsed_seconds: float = 0.0

    @property
    def new_issues(self) -> int:
        return sum(1 for e in self.events if e.is_new)

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_ts": self.started_ts,
            "clusters_polled": self.clusters_polled,
            "events": len(self.events),
            "new_issues": self.new_issues,
            "issues_removed": self.issues_removed,
            "alerts_sent": self.alerts_sent,
            "elapsed_seconds": self.elapsed_seconds,
        }


class Poller:
    """
    Runs poll cycles: fetch every enabled cluster concurrently, evaluate the
    results, clean up stale issues, persist and flush alerts.

    ``run_cycle`` never runs concurrently with itself. A call made while a
    cycle is in flight is folded into a single follow-up cycle, and every
    caller that asked for it gets that follow-up's report.
    """

    def __init__(
        self,
        clusters: ClusterRegistry,
        client: ClusterHealthClient,
        tracker: IssueTracker,
        scheduler: AlertScheduler,
        store: JsonStateStore | None = None,
    ):
        self.clusters = clusters
        self.client = client
        self.tracker = tracker
        self.scheduler = scheduler
        self.store = store
        self._driver: asyncio.Task | None = None
        self._followup: asyncio.Future | None = None
        self._write_lock: asyncio.Lock | None = None

    @property
    def running(self) -> bool:
        return self._driver is not None and not self._driver.done()

    async def run_cycle(self, now: float | None = None) -> CycleReport:
        if self.running:
            if self._followup is None:
                self._followup = asyncio.get_running_loop().create_future()
                logger.info("Poll cycle in progress, queued a follow-up cycle")
            return await asyncio.shield(self._followup)

        waiter = asyncio.get_running_loop().create_future()
        self._driver = asyncio.create_task(self._drive(waiter, now))
        return await asyncio.shield(waiter)

    async def _drive(self, waiter: asyncio.Future | None, now: float | None) -> None:
        while waiter is not None:
            try:
                waiter.set_result(await self._cycle(now))
            except Exception as e:
                logger.exception("Poll cycle failed")
                waiter.set_exception(e)
            waiter, self._followup = self._followup, None
            now = None

    async def _fetch_cluster(self, cluster: Cluster) -> tuple[FetchResult, FetchResult | None]:
        if cluster.multiviewer:
            return await self.client.fetch_health(cluster), None
        health, stats = await asyncio.gather(self.client.fetch_health(cluster), self.client.fetch_stats(cluster))
        return health, stats

    async def _cycle(self, now: float | None) -> CycleReport:
        now = time.time() if now is None else float(now)
        started = time.perf_counter()
        report = CycleReport(started_ts=now)

        clusters = self.clusters.enabled_clusters()
        results = await asyncio.gather(*(self._fetch_cluster(c) for c in clusters), return_exceptions=True)

        for cluster, result in zip(clusters, results):
            if isinstance(result, BaseException):
                logger.error("Cluster fetch crashed", cluster=cluster.title, error=f"{type(result).__name__}: {result}")
                continue
            health, stats = result
            report.events.extend(self.tracker.evaluate(cluster, health, stats, now))
        report.clusters_polled = len(clusters)

        report.issues_removed = self.tracker.cleanup(now)
        await self.persist()
        report.alerts_sent = await self.scheduler.flush(now)

        report.elapsed_seconds = round(time.perf_counter() - started, 3)
        logger.info(
            "Poll cycle complete",
            clusters=report.clusters_polled,
            new_issues=report.new_issues,
            removed=report.issues_removed,
            alerts=report.alerts_sent,
            elapsed_seconds=report.elapsed_seconds,
        )
        return report

    async def wait_idle(self) -> None:
        """Wait for the in-flight cycle, and any follow-up it picked up, to finish."""
        while self.running:
            await asyncio.wait({self._driver})

    async def persist(self) -> bool:
        """
        Write clusters and issues. The snapshot is taken before handing off to
        a worker thread. Each document is written on its own, so a failed write
        of one does not block the other; failures are logged and in-memory
        state stays authoritative.
        """
        if self.store is None:
            return False
        if self._write_lock is None:
            self._write_lock = asyncio.Lock()

        saved = True
        async with self._write_lock:
            writes = (
                (self.store.state_path, self.store.save_clusters, self.clusters.to_document()),
                (self.store.issues_path, self.store.save_issues, self.tracker.to_documents()),
            )
            for path, save, doc in writes:
                try:
                    await asyncio.to_thread(save, doc)
                except Exception:
                    logger.exception("Failed to save state", path=str(path))
                    saved = False
        return saved
