from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Iterable, Protocol

import structlog

from parliament_monitor.health_client import FetchResult
from parliament_monitor.models import IGNORE_FOREVER, Cluster, Issue, IssueKey, IssueType
from parliament_monitor.settings import SettingsProvider


logger = structlog.get_logger(__name__)

DEFAULT_IGNORE_SECONDS = 60 * 60

HEALTH_PARSE_ERROR = "ES health parse failure"
STATS_PARSE_ERROR = "ES stats parse failure"

_NUMERIC_SORT_FIELDS = {"ignore_until", "first_noticed", "last_noticed", "acknowledged"}


class AlertSink(Protocol):
    def alert_issue(self, cluster: Cluster, issue: Issue, now: float) -> Any: ...


@dataclass(frozen=True)
class IssueEvent:
    issue: Issue
    is_new: bool
    alerted: bool


def _as_key(key: IssueKey | tuple | dict[str, Any]) -> IssueKey:
    if isinstance(key, IssueKey):
        return key
    if isinstance(key, dict):
        return IssueKey(int(key["cluster_id"]), str(key["type"]), str(key.get("node") or ""))
    cluster_id, issue_type, *rest = key
    return IssueKey(int(cluster_id), str(issue_type), str(rest[0] or "") if rest else "")


def _number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


class IssueTracker:
    """
    Owns the open issues. Every mutation goes through one lock so poll cycles
    and out-of-band edits (acknowledge, ignore, remove) never interleave.
    """

    def __init__(
        self,
        settings: SettingsProvider,
        alert_sink: AlertSink | None = None,
        issues: Iterable[Issue] | None = None,
    ):
        self.settings = settings
        self.alert_sink = alert_sink
        self._lock = threading.RLock()
        self._issues: dict[IssueKey, Issue] = {}
        for issue in issues or []:
            self._issues[issue.key] = issue

    def __len__(self) -> int:
        with self._lock:
            return len(self._issues)

    @property
    def issues(self) -> list[Issue]:
        with self._lock:
            return list(self._issues.values())

    def find(self, key: IssueKey | tuple | dict[str, Any]) -> Issue | None:
        with self._lock:
            return self._issues.get(_as_key(key))

    def record_or_update(self, key: IssueKey, *, cluster_title: str, value: Any = None, now: float) -> tuple[Issue, bool]:
        key = _as_key(key)
        with self._lock:
            issue = self._issues.get(key)
            if issue is None:
                issue = Issue.create(key, cluster_title=cluster_title, value=value, now=now)
                self._issues[key] = issue
                logger.info(
                    "Issue created",
                    cluster=cluster_title,
                    issue_type=key.type,
                    node=key.node or None,
                    message=issue.message,
                )
                return issue, True

            if issue.ignore_until is not None and issue.ignore_until != IGNORE_FOREVER and now > issue.ignore_until:
                # The ignore has expired, so it can alert again.
                issue.ignore_until = None
                issue.alerted = None
                logger.info("Issue ignore expired", cluster=cluster_title, issue_type=key.type, node=key.node or None)

            if now > issue.last_noticed:
                issue.last_noticed = float(now)
            return issue, False

    def _detect(self, cluster: Cluster, key: IssueKey, *, value: Any = None, now: float) -> IssueEvent:
        issue, is_new = self.record_or_update(key, cluster_title=cluster.title, value=value, now=now)
        alerted = False
        if issue.alert_eligible():
            issue.alerted = float(now)
            alerted = True
            if self.alert_sink is not None:
                self.alert_sink.alert_issue(cluster, issue, now)
        return IssueEvent(issue=issue, is_new=is_new, alerted=alerted)

    def evaluate(
        self,
        cluster: Cluster,
        health: FetchResult | None,
        stats: FetchResult | None,
        now: float,
    ) -> list[IssueEvent]:
        """
        Apply the detection rules to one cluster's fetch results and update the
        cluster's observed fields. ``None`` means the document was not fetched
        this cycle (disabled cluster, or stats on a multiviewer).
        """
        if cluster.disabled:
            return []

        events: list[IssueEvent] = []
        with self._lock:
            if health is not None:
                events.extend(self._evaluate_health(cluster, health, now))
            if stats is not None and not cluster.multiviewer:
                events.extend(self._evaluate_stats(cluster, stats, now))
        return events

    def _evaluate_health(self, cluster: Cluster, health: FetchResult, now: float) -> list[IssueEvent]:
        if health.is_parse_failure:
            cluster.health_error = HEALTH_PARSE_ERROR
            return []
        if not health.ok:
            message = health.error or "unknown error"
            cluster.health_error = message
            return [self._detect(cluster, IssueKey(cluster.id, IssueType.ES_DOWN.value), value=message, now=now)]

        doc = health.document or {}
        cluster.health_error = None
        cluster.status = doc.get("status")
        cluster.total_nodes = doc.get("number_of_nodes")
        cluster.data_nodes = doc.get("number_of_data_nodes")

        if cluster.status == "red":
            return [self._detect(cluster, IssueKey(cluster.id, IssueType.ES_RED.value), now=now)]
        return []

    def _evaluate_stats(self, cluster: Cluster, stats: FetchResult, now: float) -> list[IssueEvent]:
        if stats.is_parse_failure:
            cluster.stats_error = STATS_PARSE_ERROR
            return []
        if not stats.ok:
            message = stats.error or "unknown error"
            cluster.stats_error = message
            # Same cluster-level key as a failed health fetch.
            return [self._detect(cluster, IssueKey(cluster.id, IssueType.ES_DOWN.value), value=message, now=now)]

        doc = stats.document or {}
        cluster.stats_error = None
        if doc.get("bsqErr"):
            cluster.stats_error = str(doc["bsqErr"])
            logger.warning("Cluster stats error", cluster=cluster.title, error=cluster.stats_error)
            return []

        nodes = doc.get("data")
        if not isinstance(nodes, list):
            return []
        nodes = [n for n in nodes if isinstance(n, dict)]

        cluster.delta_bps = sum(_number(n.get("deltaBytesPerSec")) or 0 for n in nodes)
        cluster.delta_tdps = sum(_number(n.get("deltaTotalDroppedPerSec")) or 0 for n in nodes)

        out_of_date = float(self.settings.get("out_of_date"))
        events: list[IssueEvent] = []
        for node in nodes:
            name = str(node.get("nodeName") or "")

            current_time = _number(node.get("currentTime"))
            if current_time is not None and (now - current_time) > out_of_date:
                events.append(
                    self._detect(cluster, IssueKey(cluster.id, IssueType.OUT_OF_DATE.value, name), value=current_time, now=now)
                )

            packets = _number(node.get("deltaPacketsPerSec"))
            if packets is not None and packets == 0:
                events.append(self._detect(cluster, IssueKey(cluster.id, IssueType.NO_PACKETS.value, name), now=now))

            dropped = _number(node.get("deltaESDroppedPerSec"))
            if dropped is not None and dropped > 0:
                events.append(
                    self._detect(cluster, IssueKey(cluster.id, IssueType.ES_DROPPED.value, name), value=node.get("deltaESDroppedPerSec"), now=now)
                )
        return events

    def cleanup(self, now: float) -> int:
        remove_after = float(self.settings.get("remove_issues_after")) * 60
        remove_ack_after = float(self.settings.get("remove_acknowledged_after")) * 60

        removed = 0
        with self._lock:
            for key, issue in list(self._issues.items()):
                since_noticed = now - (issue.last_noticed or issue.first_noticed)
                if issue.acknowledged is None and since_noticed > remove_after:
                    del self._issues[key]
                    removed += 1
                    continue
                if issue.acknowledged is not None and since_noticed > remove_ack_after:
                    del self._issues[key]
                    removed += 1
                    continue

                # Acknowledged but still occurring: unacknowledge so it alerts again.
                if issue.acknowledged is not None and (now - issue.acknowledged) > remove_ack_after:
                    issue.acknowledged = None
                    issue.alerted = None
                    logger.info(
                        "Issue acknowledgement expired",
                        cluster=issue.cluster,
                        issue_type=issue.type,
                        node=issue.node or None,
                    )

        if removed:
            logger.info("Removed stale issues", count=removed)
        return removed

    def acknowledge(self, keys: Iterable[IssueKey | tuple | dict[str, Any]], now: float) -> int:
        count = 0
        with self._lock:
            for key in keys:
                issue = self._issues.get(_as_key(key))
                if issue is not None:
                    issue.acknowledged = float(now)
                    count += 1
        return count

    def ignore(
        self,
        keys: Iterable[IssueKey | tuple | dict[str, Any]],
        duration: float | None = DEFAULT_IGNORE_SECONDS,
        *,
        now: float,
    ) -> int:
        """``duration`` is in seconds; ``-1`` ignores forever."""
        if duration is None or duration == 0:
            duration = DEFAULT_IGNORE_SECONDS
        ignore_until = float(IGNORE_FOREVER) if duration == IGNORE_FOREVER else float(now) + float(duration)

        count = 0
        with self._lock:
            for key in keys:
                issue = self._issues.get(_as_key(key))
                if issue is not None:
                    issue.ignore_until = ignore_until
                    count += 1
        return count

    def clear_ignore(self, keys: Iterable[IssueKey | tuple | dict[str, Any]]) -> int:
        count = 0
        with self._lock:
            for key in keys:
                issue = self._issues.get(_as_key(key))
                if issue is not None:
                    issue.ignore_until = None
                    issue.alerted = None
                    count += 1
        return count

    def remove(self, key: IssueKey | tuple | dict[str, Any]) -> bool:
        with self._lock:
            return self._issues.pop(_as_key(key), None) is not None

    def remove_all_acknowledged(self) -> int:
        with self._lock:
            acked = [key for key, issue in self._issues.items() if issue.acknowledged is not None]
            for key in acked:
                del self._issues[key]
        return len(acked)

    def active_issues(self, cluster_id: int) -> list[Issue]:
        with self._lock:
            return [
                issue
                for issue in self._issues.values()
                if issue.cluster_id == cluster_id and issue.acknowledged is None and issue.ignore_until is None
            ]

    def list_issues(self, sort_by: str | None = None, order: str = "desc") -> list[dict[str, Any]]:
        items = self.to_documents()
        if not sort_by:
            return items

        reverse = order != "asc"
        if sort_by in _NUMERIC_SORT_FIELDS:
            items.sort(key=lambda d: float(d.get(sort_by) or 0), reverse=reverse)
        else:
            items.sort(key=lambda d: str(d.get(sort_by) or ""), reverse=reverse)
        return items

    def to_documents(self) -> list[dict[str, Any]]:
        with self._lock:
            return [issue.to_dict() for issue in self._issues.values()]
