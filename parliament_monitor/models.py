from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, NamedTuple


class IssueType(str, Enum):
    ES_RED = "esRed"
    ES_DOWN = "esDown"
    ES_DROPPED = "esDropped"
    OUT_OF_DATE = "outOfDate"
    NO_PACKETS = "noPackets"


@dataclass(frozen=True)
class IssueTypeInfo:
    id: str
    name: str
    text: str
    severity: str  # 'red'|'yellow'
    description: str
    on: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "text": self.text,
            "severity": self.severity,
            "description": self.description,
            "on": self.on,
        }


ISSUE_TYPES: dict[str, IssueTypeInfo] = {
    IssueType.ES_RED.value: IssueTypeInfo(
        id=IssueType.ES_RED.value,
        name="ES Red",
        text="ES is red",
        severity="red",
        description="ES status is red",
    ),
    IssueType.ES_DOWN.value: IssueTypeInfo(
        id=IssueType.ES_DOWN.value,
        name="ES Down",
        text="ES is down",
        severity="red",
        description="ES is unreachable",
    ),
    IssueType.ES_DROPPED.value: IssueTypeInfo(
        id=IssueType.ES_DROPPED.value,
        name="ES Dropped",
        text="ES is dropping bulk inserts",
        severity="yellow",
        description="the capture node is overloading ES",
    ),
    IssueType.OUT_OF_DATE.value: IssueTypeInfo(
        id=IssueType.OUT_OF_DATE.value,
        name="Out of Date",
        text="has not checked in since",
        severity="red",
        description="the capture node has not checked in",
    ),
    IssueType.NO_PACKETS.value: IssueTypeInfo(
        id=IssueType.NO_PACKETS.value,
        name="No Packets",
        text="is not receiving packets",
        severity="red",
        description="the capture node is not receiving packets",
    ),
}

# ignore_until sentinel: never alert again until the ignore is cleared.
IGNORE_FOREVER = -1


class IssueKey(NamedTuple):
    cluster_id: int
    type: str
    node: str = ""


def _coerce_optional_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except Exception:
        return None


def _format_value(issue_type: str, value: Any) -> str:
    if issue_type == IssueType.ES_DROPPED.value:
        try:
            return f"{int(value):,}"
        except Exception:
            return str(value)
    if issue_type == IssueType.OUT_OF_DATE.value:
        try:
            dt = datetime.fromtimestamp(float(value), tz=timezone.utc)
        except Exception:
            return str(value)
        return dt.strftime("%a %b %d %Y %H:%M:%S UTC")
    return str(value)


def format_issue_message(issue_type: str, *, node: str = "", value: Any = None) -> str:
    """
    Render the human message stored on an issue:
      "<node> <type text>[: <value>]"
    """
    info = ISSUE_TYPES[issue_type]
    message = f"{node} " if node else ""
    message += info.text
    if value is not None and value != "":
        message += f": {_format_value(issue_type, value)}"
    return message


@dataclass
class Issue:
    cluster_id: int
    type: str
    node: str = ""
    cluster: str = ""
    title: str = ""
    text: str = ""
    severity: str = ""
    message: str = ""
    value: Any = None
    first_noticed: float = 0.0
    last_noticed: float = 0.0
    acknowledged: float | None = None
    ignore_until: float | None = None
    alerted: float | None = None

    @property
    def key(self) -> IssueKey:
        return IssueKey(self.cluster_id, self.type, self.node)

    @property
    def is_ignored(self) -> bool:
        return self.ignore_until is not None

    def alert_eligible(self) -> bool:
        return self.acknowledged is None and self.ignore_until is None and self.alerted is None

    @classmethod
    def create(cls, key: IssueKey, *, cluster_title: str, value: Any, now: float) -> Issue:
        info = ISSUE_TYPES[key.type]
        return cls(
            cluster_id=int(key.cluster_id),
            type=key.type,
            node=key.node,
            cluster=cluster_title,
            title=info.name,
            text=info.text,
            severity=info.severity,
            message=format_issue_message(key.type, node=key.node, value=value),
            value=value,
            first_noticed=float(now),
            last_noticed=float(now),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "cluster_id": self.cluster_id,
            "type": self.type,
            "node": self.node,
            "cluster": self.cluster,
            "title": self.title,
            "text": self.text,
            "severity": self.severity,
            "message": self.message,
            "value": self.value,
            "first_noticed": self.first_noticed,
            "last_noticed": self.last_noticed,
            "acknowledged": self.acknowledged,
            "ignore_until": self.ignore_until,
            "alerted": self.alerted,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Issue:
        issue_type = str(data["type"])
        if issue_type not in ISSUE_TYPES:
            raise ValueError(f"Unknown issue type: {issue_type!r}")
        info = ISSUE_TYPES[issue_type]
        first = _coerce_optional_float(data.get("first_noticed")) or 0.0
        last = _coerce_optional_float(data.get("last_noticed")) or first
        return cls(
            cluster_id=int(data["cluster_id"]),
            type=issue_type,
            node=str(data.get("node") or ""),
            cluster=str(data.get("cluster") or ""),
            title=str(data.get("title") or info.name),
            text=str(data.get("text") or info.text),
            severity=str(data.get("severity") or info.severity),
            message=str(data.get("message") or ""),
            value=data.get("value"),
            first_noticed=first,
            last_noticed=last,
            acknowledged=_coerce_optional_float(data.get("acknowledged")),
            ignore_until=_coerce_optional_float(data.get("ignore_until")),
            alerted=_coerce_optional_float(data.get("alerted")),
        )


@dataclass
class Cluster:
    id: int
    title: str
    url: str
    local_url: str | None = None
    description: str | None = None
    disabled: bool = False
    multiviewer: bool = False
    hide_delta_bps: bool = False
    hide_data_nodes: bool = False
    hide_delta_tdps: bool = False
    hide_total_nodes: bool = False

    # Last observed health.
    status: str | None = None
    total_nodes: int | None = None
    data_nodes: int | None = None
    health_error: str | None = None

    # Last observed stats aggregates.
    delta_bps: float | None = None
    delta_tdps: float | None = None
    stats_error: str | None = None

    @property
    def base_url(self) -> str:
        return (self.local_url or self.url or "").rstrip("/")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "url": self.url,
            "local_url": self.local_url,
            "description": self.description,
            "disabled": self.disabled,
            "multiviewer": self.multiviewer,
            "hide_delta_bps": self.hide_delta_bps,
            "hide_data_nodes": self.hide_data_nodes,
            "hide_delta_tdps": self.hide_delta_tdps,
            "hide_total_nodes": self.hide_total_nodes,
            "status": self.status,
            "total_nodes": self.total_nodes,
            "data_nodes": self.data_nodes,
            "health_error": self.health_error,
            "delta_bps": self.delta_bps,
            "delta_tdps": self.delta_tdps,
            "stats_error": self.stats_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, cluster_id: int) -> Cluster:
        return cls(
            id=int(cluster_id),
            title=str(data.get("title") or ""),
            url=str(data.get("url") or ""),
            local_url=(str(data["local_url"]) if data.get("local_url") else None),
            description=(str(data["description"]) if data.get("description") else None),
            disabled=bool(data.get("disabled")),
            multiviewer=bool(data.get("multiviewer")),
            hide_delta_bps=bool(data.get("hide_delta_bps")),
            hide_data_nodes=bool(data.get("hide_data_nodes")),
            hide_delta_tdps=bool(data.get("hide_delta_tdps")),
            hide_total_nodes=bool(data.get("hide_total_nodes")),
            status=data.get("status"),
            total_nodes=data.get("total_nodes"),
            data_nodes=data.get("data_nodes"),
            health_error=data.get("health_error"),
            delta_bps=data.get("delta_bps"),
            delta_tdps=data.get("delta_tdps"),
            stats_error=data.get("stats_error"),
        )


@dataclass
class Group:
    id: int
    title: str
    description: str | None = None
    clusters: list[Cluster] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "clusters": [c.to_dict() for c in self.clusters],
        }
        if self.description:
            out["description"] = self.description
        return out
