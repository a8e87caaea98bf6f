from __future__ import annotations

import copy
import threading
from typing import TYPE_CHECKING, Any

import structlog

from parliament_monitor.models import Cluster, Group

if TYPE_CHECKING:
    from parliament_monitor.issues import IssueTracker


logger = structlog.get_logger(__name__)

EDITABLE_CLUSTER_FIELDS = (
    "title",
    "url",
    "local_url",
    "description",
    "disabled",
    "multiviewer",
    "hide_delta_bps",
    "hide_data_nodes",
    "hide_delta_tdps",
    "hide_total_nodes",
)

_BOOL_FIELDS = {"disabled", "multiviewer", "hide_delta_bps", "hide_data_nodes", "hide_delta_tdps", "hide_total_nodes"}


def _coerce_id(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        out = int(value)
    except (TypeError, ValueError):
        return None
    return out if out >= 0 else None


def _require_text(value: Any, what: str) -> str:
    s = str(value or "").strip()
    if not s:
        raise ValueError(f"A {what} must be provided")
    return s


class ClusterRegistry:
    """
    Groups of monitored clusters plus the id counters used to create new
    ones. ``settings`` is the raw settings block stored beside the groups in
    the same document.
    """

    def __init__(self, groups: list[Group] | None = None, settings: dict[str, Any] | None = None):
        self._lock = threading.RLock()
        self.groups: list[Group] = list(groups or [])
        self.settings: dict[str, Any] = settings if isinstance(settings, dict) else {}
        self._next_group_id = 1 + max((g.id for g in self.groups), default=-1)
        self._next_cluster_id = 1 + max((c.id for g in self.groups for c in g.clusters), default=-1)

    @classmethod
    def from_document(cls, doc: dict[str, Any] | None) -> ClusterRegistry:
        doc = doc if isinstance(doc, dict) else {}
        raw_groups = doc.get("groups") if isinstance(doc.get("groups"), list) else []

        seen_groups: set[int] = set()
        seen_clusters: set[int] = set()
        pending_group_ids: list[Group] = []
        pending_cluster_ids: list[Cluster] = []
        groups: list[Group] = []

        for raw_group in raw_groups:
            if not isinstance(raw_group, dict):
                continue
            gid = _coerce_id(raw_group.get("id"))
            group = Group(
                id=-1,
                title=str(raw_group.get("title") or ""),
                description=(str(raw_group["description"]) if raw_group.get("description") else None),
            )
            if gid is not None and gid not in seen_groups:
                group.id = gid
                seen_groups.add(gid)
            else:
                pending_group_ids.append(group)

            for raw_cluster in raw_group.get("clusters") or []:
                if not isinstance(raw_cluster, dict):
                    continue
                cid = _coerce_id(raw_cluster.get("id"))
                if cid is not None and cid not in seen_clusters:
                    seen_clusters.add(cid)
                    group.clusters.append(Cluster.from_dict(raw_cluster, cluster_id=cid))
                else:
                    cluster = Cluster.from_dict(raw_cluster, cluster_id=-1)
                    group.clusters.append(cluster)
                    pending_cluster_ids.append(cluster)
            groups.append(group)

        next_gid = 1 + max(seen_groups, default=-1)
        for group in pending_group_ids:
            group.id = next_gid
            next_gid += 1
        next_cid = 1 + max(seen_clusters, default=-1)
        for cluster in pending_cluster_ids:
            cluster.id = next_cid
            next_cid += 1

        if pending_group_ids or pending_cluster_ids:
            logger.info(
                "Assigned ids to groups and clusters",
                groups=len(pending_group_ids),
                clusters=len(pending_cluster_ids),
            )

        settings = doc.get("settings") if isinstance(doc.get("settings"), dict) else {}
        return cls(groups=groups, settings=settings)

    def to_document(self) -> dict[str, Any]:
        with self._lock:
            return {
                "groups": [g.to_dict() for g in self.groups],
                "settings": copy.deepcopy(self.settings),
            }

    def all_clusters(self) -> list[Cluster]:
        with self._lock:
            return [c for g in self.groups for c in g.clusters]

    def enabled_clusters(self) -> list[Cluster]:
        return [c for c in self.all_clusters() if not c.disabled]

    def find_group(self, group_id: int) -> Group:
        with self._lock:
            for group in self.groups:
                if group.id == group_id:
                    return group
        raise KeyError(f"Unable to find group {group_id}")

    def find_cluster(self, cluster_id: int) -> Cluster | None:
        for cluster in self.all_clusters():
            if cluster.id == cluster_id:
                return cluster
        return None

    def add_group(self, title: str, description: str | None = None) -> Group:
        title = _require_text(title, "title")
        with self._lock:
            group = Group(id=self._next_group_id, title=title, description=description or None)
            self._next_group_id += 1
            self.groups.append(group)
        logger.info("Group added", group_id=group.id, title=title)
        return group

    def update_group(self, group_id: int, *, title: str | None = None, description: str | None = None) -> Group:
        with self._lock:
            group = self.find_group(group_id)
            if title is not None:
                group.title = _require_text(title, "title")
            if description is not None:
                group.description = description or None
        return group

    def remove_group(self, group_id: int) -> Group:
        with self._lock:
            group = self.find_group(group_id)
            self.groups.remove(group)
        logger.info("Group removed", group_id=group_id, clusters=len(group.clusters))
        return group

    def add_cluster(self, group_id: int, *, title: str, url: str, **options: Any) -> Cluster:
        title = _require_text(title, "title")
        url = _require_text(url, "url")
        unknown = set(options) - set(EDITABLE_CLUSTER_FIELDS)
        if unknown:
            raise ValueError(f"Unknown cluster fields: {sorted(unknown)}")

        with self._lock:
            group = self.find_group(group_id)
            cluster = Cluster(id=self._next_cluster_id, title=title, url=url)
            self._apply(cluster, options)
            self._next_cluster_id += 1
            group.clusters.append(cluster)
        logger.info("Cluster added", cluster_id=cluster.id, group_id=group_id, title=title)
        return cluster

    def update_cluster(self, cluster_id: int, **changes: Any) -> Cluster:
        unknown = set(changes) - set(EDITABLE_CLUSTER_FIELDS)
        if unknown:
            raise ValueError(f"Unknown cluster fields: {sorted(unknown)}")
        if "title" in changes:
            changes["title"] = _require_text(changes["title"], "title")
        if "url" in changes:
            changes["url"] = _require_text(changes["url"], "url")

        with self._lock:
            cluster = self.find_cluster(cluster_id)
            if cluster is None:
                raise KeyError(f"Unable to find cluster {cluster_id}")
            self._apply(cluster, changes)
        return cluster

    def remove_cluster(self, cluster_id: int) -> Cluster:
        with self._lock:
            for group in self.groups:
                for cluster in group.clusters:
                    if cluster.id == cluster_id:
                        group.clusters.remove(cluster)
                        logger.info("Cluster removed", cluster_id=cluster_id, group_id=group.id)
                        return cluster
        raise KeyError(f"Unable to find cluster {cluster_id}")

    @staticmethod
    def _apply(cluster: Cluster, values: dict[str, Any]) -> None:
        for name, value in values.items():
            if name in _BOOL_FIELDS:
                value = bool(value)
            elif name in ("local_url", "description"):
                value = str(value) if value else None
            setattr(cluster, name, value)

    def reorder(self, groups_doc: list[dict[str, Any]]) -> None:
        """
        Rearrange groups and move clusters between them. ``groups_doc`` lists
        every group as ``{"id": ..., "clusters": [cluster id or {"id": ...}]}``
        and must mention each existing group and cluster exactly once.
        """
        with self._lock:
            groups_by_id = {g.id: g for g in self.groups}
            clusters_by_id = {c.id: c for g in self.groups for c in g.clusters}

            new_groups: list[Group] = []
            placed: set[int] = set()
            for entry in groups_doc or []:
                gid = _coerce_id(entry.get("id") if isinstance(entry, dict) else None)
                if gid not in groups_by_id or any(g.id == gid for g in new_groups):
                    raise ValueError(f"Invalid group in new order: {entry!r}")
                ordered: list[Cluster] = []
                for ref in entry.get("clusters") or []:
                    cid = _coerce_id(ref.get("id") if isinstance(ref, dict) else ref)
                    if cid not in clusters_by_id or cid in placed:
                        raise ValueError(f"Invalid cluster in new order: {ref!r}")
                    placed.add(cid)
                    ordered.append(clusters_by_id[cid])
                new_groups.append(Group(id=gid, title=groups_by_id[gid].title, description=groups_by_id[gid].description, clusters=ordered))

            if len(new_groups) != len(groups_by_id) or placed != set(clusters_by_id):
                raise ValueError("New order must include every group and cluster exactly once")

            for group in new_groups:
                groups_by_id[group.id].clusters = group.clusters
            self.groups = [groups_by_id[g.id] for g in new_groups]

    def snapshot(self, tracker: IssueTracker | None = None) -> dict[str, Any]:
        """Display copy of the groups; every cluster carries its active issues."""
        with self._lock:
            groups = [g.to_dict() for g in self.groups]
        for group in groups:
            for cluster in group["clusters"]:
                active = tracker.active_issues(cluster["id"]) if tracker is not None else []
                cluster["active_issues"] = [issue.to_dict() for issue in active]
        return {"groups": groups}
