from __future__ import annotations

import pytest

from parliament_monitor.health_client import FetchFailure, FetchResult
from parliament_monitor.issues import HEALTH_PARSE_ERROR, STATS_PARSE_ERROR, IssueTracker
from parliament_monitor.models import IGNORE_FOREVER, Cluster, Issue, IssueKey
from parliament_monitor.settings import SettingsProvider


class _RecordingSink:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str, str, float]] = []

    def alert_issue(self, cluster: Cluster, issue: Issue, now: float) -> None:
        self.calls.append((cluster.title, issue.type, issue.node, now))


def _ok(doc: dict) -> FetchResult:
    return FetchResult(ok=True, document=doc)


def _down(error: str = "timeout of 5s exceeded") -> FetchResult:
    return FetchResult(ok=False, error=error, failure=FetchFailure.NETWORK)


def _unparsable() -> FetchResult:
    return FetchResult(ok=False, error="unparsable body", failure=FetchFailure.PARSE)


def _green() -> FetchResult:
    return _ok({"status": "green", "number_of_nodes": 3, "number_of_data_nodes": 2})


def _node(name: str, now: float, **overrides) -> dict:
    node = {
        "nodeName": name,
        "currentTime": now,
        "deltaPacketsPerSec": 100,
        "deltaESDroppedPerSec": 0,
        "deltaBytesPerSec": 1000,
        "deltaTotalDroppedPerSec": 0,
    }
    node.update(overrides)
    return node


def _tracker() -> tuple[IssueTracker, _RecordingSink]:
    sink = _RecordingSink()
    return IssueTracker(SettingsProvider(), alert_sink=sink), sink


def _cluster(**kwargs) -> Cluster:
    return Cluster(id=1, title="CL1", url="http://cl1.example", **kwargs)


def test_repeated_detection_keeps_one_issue_and_advances_last_noticed() -> None:
    tracker, sink = _tracker()
    cluster = _cluster()

    for now in (1000.0, 1010.0, 1020.0):
        tracker.evaluate(cluster, _down(), None, now)

    assert len(tracker) == 1
    issue = tracker.find(IssueKey(1, "esDown"))
    assert issue is not None
    assert issue.first_noticed == 1000.0
    assert issue.last_noticed == 1020.0
    assert len(sink.calls) == 1


def test_last_noticed_never_moves_backwards() -> None:
    tracker, _ = _tracker()
    key = IssueKey(1, "esRed")
    tracker.record_or_update(key, cluster_title="CL1", now=2000.0)
    issue, is_new = tracker.record_or_update(key, cluster_title="CL1", now=1500.0)
    assert is_new is False
    assert issue.last_noticed == 2000.0


def test_acknowledged_issue_is_never_alerted() -> None:
    tracker, sink = _tracker()
    cluster = _cluster()
    key = IssueKey(1, "esDown")
    tracker.record_or_update(key, cluster_title="CL1", value="boom", now=1000.0)
    tracker.acknowledge([key], now=1000.0)

    for now in (1010.0, 1020.0, 1030.0):
        events = tracker.evaluate(cluster, _down(), None, now)
        assert [e.alerted for e in events] == [False]

    assert sink.calls == []


def test_ignore_window_suppresses_then_alerts_once_after_expiry() -> None:
    tracker, sink = _tracker()
    cluster = _cluster()

    tracker.evaluate(cluster, _down(), None, 1000.0)
    assert len(sink.calls) == 1

    tracker.ignore([IssueKey(1, "esDown")], duration=60, now=1000.0)
    assert tracker.find(IssueKey(1, "esDown")).ignore_until == 1060.0

    tracker.evaluate(cluster, _down(), None, 1030.0)
    assert len(sink.calls) == 1

    tracker.evaluate(cluster, _down(), None, 1061.0)
    issue = tracker.find(IssueKey(1, "esDown"))
    assert issue.ignore_until is None
    assert issue.alerted == 1061.0
    assert len(sink.calls) == 2

    tracker.evaluate(cluster, _down(), None, 1070.0)
    assert len(sink.calls) == 2


def test_ignore_forever_until_cleared() -> None:
    tracker, sink = _tracker()
    cluster = _cluster()
    key = IssueKey(1, "esRed")
    red = _ok({"status": "red"})

    tracker.record_or_update(key, cluster_title="CL1", now=1000.0)
    tracker.ignore([key], duration=IGNORE_FOREVER, now=1000.0)
    assert tracker.find(key).ignore_until == IGNORE_FOREVER

    for now in (2000.0, 10_000_000.0):
        tracker.evaluate(cluster, red, None, now)
    assert sink.calls == []

    tracker.clear_ignore([key])
    tracker.evaluate(cluster, red, None, 10_000_010.0)
    assert len(sink.calls) == 1


def test_ignore_without_duration_defaults_to_one_hour() -> None:
    tracker, _ = _tracker()
    key = IssueKey(1, "esRed")
    tracker.record_or_update(key, cluster_title="CL1", now=1000.0)
    assert tracker.ignore([key], duration=None, now=1000.0) == 1
    assert tracker.find(key).ignore_until == 1000.0 + 3600


def test_ignore_requires_the_current_time() -> None:
    tracker, _ = _tracker()
    key = IssueKey(1, "esRed")
    tracker.record_or_update(key, cluster_title="CL1", now=1000.0)
    with pytest.raises(TypeError):
        tracker.ignore([key], duration=60)
    assert tracker.find(key).ignore_until is None


def test_cleanup_removes_unacknowledged_after_remove_issues_after() -> None:
    tracker, _ = _tracker()
    key = IssueKey(1, "esRed")
    tracker.record_or_update(key, cluster_title="CL1", now=1000.0)

    # remove_issues_after defaults to 60 minutes
    assert tracker.cleanup(1000.0 + 3600) == 0
    assert tracker.find(key) is not None
    assert tracker.cleanup(1000.0 + 3601) == 1
    assert tracker.find(key) is None


def test_cleanup_uses_remove_acknowledged_after_for_acknowledged() -> None:
    tracker, _ = _tracker()
    key = IssueKey(1, "esRed")
    tracker.record_or_update(key, cluster_title="CL1", now=1000.0)
    tracker.acknowledge([key], now=1000.0)

    # remove_acknowledged_after defaults to 15 minutes
    assert tracker.cleanup(1000.0 + 900) == 0
    assert tracker.cleanup(1000.0 + 901) == 1
    assert len(tracker) == 0


def test_cleanup_honours_changed_thresholds() -> None:
    settings = SettingsProvider()
    settings.update_general({"remove_issues_after": 1})
    tracker = IssueTracker(settings)
    tracker.record_or_update(IssueKey(1, "esRed"), cluster_title="CL1", now=1000.0)
    assert tracker.cleanup(1061.0) == 1


def test_acknowledgement_expires_while_condition_persists_and_alerts_again() -> None:
    tracker, sink = _tracker()
    cluster = _cluster()
    key = IssueKey(1, "esDown")

    tracker.evaluate(cluster, _down(), None, 10_000.0)
    tracker.cleanup(10_000.0)
    assert len(sink.calls) == 1
    tracker.acknowledge([key], now=10_000.0)

    now = 10_000.0
    while now < 10_960.0:
        now += 60.0
        tracker.evaluate(cluster, _down(), None, now)
        tracker.cleanup(now)

    issue = tracker.find(key)
    assert issue is not None
    assert issue.acknowledged is None
    assert issue.alerted is None
    assert len(sink.calls) == 1

    tracker.evaluate(cluster, _down(), None, now + 60.0)
    assert len(sink.calls) == 2
    assert tracker.find(key).alerted == now + 60.0


def test_health_timeout_scenario_creates_one_issue_and_alerts_once() -> None:
    tracker, sink = _tracker()
    cluster = _cluster()
    error = "timeout of 5s exceeded"

    first = tracker.evaluate(cluster, _down(error), None, 1000.0)
    assert [(e.is_new, e.alerted) for e in first] == [(True, True)]
    issue = first[0].issue
    assert issue.value == error
    assert issue.message == f"ES is down: {error}"
    assert cluster.health_error == error

    second = tracker.evaluate(cluster, _down(error), None, 1010.0)
    assert [(e.is_new, e.alerted) for e in second] == [(False, False)]
    assert len(tracker) == 1
    assert tracker.find(IssueKey(1, "esDown")).last_noticed == 1010.0
    assert len(sink.calls) == 1


def test_health_and_stats_failures_share_one_es_down_issue() -> None:
    tracker, sink = _tracker()
    cluster = _cluster()

    tracker.evaluate(cluster, _down("health failed"), _down("stats failed"), 1000.0)

    assert len(tracker) == 1
    assert tracker.find(IssueKey(1, "esDown")).value == "health failed"
    assert cluster.health_error == "health failed"
    assert cluster.stats_error == "stats failed"
    assert len(sink.calls) == 1


def test_health_document_fields_and_red_status() -> None:
    tracker, _ = _tracker()
    cluster = _cluster()

    tracker.evaluate(cluster, _green(), None, 1000.0)
    assert (cluster.status, cluster.total_nodes, cluster.data_nodes) == ("green", 3, 2)
    assert len(tracker) == 0

    events = tracker.evaluate(cluster, _ok({"status": "red", "number_of_nodes": 1}), None, 1010.0)
    assert [e.issue.type for e in events] == ["esRed"]
    assert events[0].issue.severity == "red"
    assert events[0].issue.node == ""


def test_parse_failures_set_error_fields_without_issues() -> None:
    tracker, sink = _tracker()
    cluster = _cluster()

    events = tracker.evaluate(cluster, _unparsable(), _unparsable(), 1000.0)

    assert events == []
    assert len(tracker) == 0
    assert cluster.health_error == HEALTH_PARSE_ERROR
    assert cluster.stats_error == STATS_PARSE_ERROR
    assert sink.calls == []


def test_stats_error_document_sets_stats_error() -> None:
    tracker, _ = _tracker()
    cluster = _cluster()
    events = tracker.evaluate(cluster, _green(), _ok({"bsqErr": "index missing"}), 1000.0)
    assert events == []
    assert cluster.stats_error == "index missing"


def test_stats_node_rules() -> None:
    tracker, _ = _tracker()
    cluster = _cluster()
    now = 10_000.0
    stats = _ok(
        {
            "data": [
                _node("n1", now, deltaPacketsPerSec=0),
                _node("n2", now - 40, deltaBytesPerSec=500),
                _node("n3", now - 10, deltaESDroppedPerSec=1234, deltaTotalDroppedPerSec=7),
            ]
        }
    )

    events = tracker.evaluate(cluster, _green(), stats, now)

    keys = {e.issue.key for e in events}
    assert keys == {
        IssueKey(1, "noPackets", "n1"),
        IssueKey(1, "outOfDate", "n2"),
        IssueKey(1, "esDropped", "n3"),
    }
    assert tracker.find(IssueKey(1, "outOfDate", "n2")).value == now - 40
    dropped = tracker.find(IssueKey(1, "esDropped", "n3"))
    assert dropped.value == 1234
    assert dropped.message == "n3 ES is dropping bulk inserts: 1,234"
    assert tracker.find(IssueKey(1, "noPackets", "n1")).message == "n1 is not receiving packets"
    assert cluster.delta_bps == 2500
    assert cluster.delta_tdps == 7


def test_out_of_date_threshold_is_in_seconds() -> None:
    settings = SettingsProvider()
    settings.update_general({"out_of_date": 120})
    tracker = IssueTracker(settings)
    cluster = _cluster()
    now = 10_000.0

    assert tracker.evaluate(cluster, None, _ok({"data": [_node("n1", now - 100)]}), now) == []
    events = tracker.evaluate(cluster, None, _ok({"data": [_node("n1", now - 121)]}), now)
    assert [e.issue.type for e in events] == ["outOfDate"]


def test_multiviewer_skips_stats_rules() -> None:
    tracker, _ = _tracker()
    cluster = _cluster(multiviewer=True)
    stats = _ok({"data": [_node("n1", 0, deltaPacketsPerSec=0)]})

    assert tracker.evaluate(cluster, _green(), stats, 10_000.0) == []
    assert tracker.evaluate(cluster, _green(), _down(), 10_000.0) == []
    assert cluster.delta_bps is None


def test_disabled_cluster_is_not_evaluated() -> None:
    tracker, sink = _tracker()
    cluster = _cluster(disabled=True)
    assert tracker.evaluate(cluster, _down(), _down(), 1000.0) == []
    assert len(tracker) == 0
    assert sink.calls == []


def test_remove_and_remove_all_acknowledged() -> None:
    tracker, _ = _tracker()
    a = IssueKey(1, "esRed")
    b = IssueKey(2, "esDown")
    c = IssueKey(2, "noPackets", "n1")
    for key in (a, b, c):
        tracker.record_or_update(key, cluster_title=f"CL{key.cluster_id}", now=1000.0)

    tracker.acknowledge([b, {"cluster_id": 2, "type": "noPackets", "node": "n1"}], now=1001.0)
    assert tracker.remove_all_acknowledged() == 2
    assert [i.key for i in tracker.issues] == [a]

    assert tracker.remove((1, "esRed")) is True
    assert tracker.remove((1, "esRed")) is False
    assert len(tracker) == 0


def test_list_issues_sorting_and_active_issues() -> None:
    tracker, _ = _tracker()
    tracker.record_or_update(IssueKey(1, "esRed"), cluster_title="Alpha", now=3000.0)
    tracker.record_or_update(IssueKey(1, "esDown"), cluster_title="Alpha", value="x", now=1000.0)
    tracker.record_or_update(IssueKey(2, "esRed"), cluster_title="Beta", now=2000.0)
    tracker.acknowledge([IssueKey(1, "esDown")], now=3000.0)

    newest_first = tracker.list_issues("first_noticed", "desc")
    assert [d["first_noticed"] for d in newest_first] == [3000.0, 2000.0, 1000.0]
    oldest_first = tracker.list_issues("first_noticed", "asc")
    assert [d["first_noticed"] for d in oldest_first] == [1000.0, 2000.0, 3000.0]
    by_cluster = tracker.list_issues("cluster", "asc")
    assert [d["cluster"] for d in by_cluster] == ["Alpha", "Alpha", "Beta"]

    assert [i.key for i in tracker.active_issues(1)] == [IssueKey(1, "esRed")]


def test_issues_round_trip_through_documents() -> None:
    tracker, _ = _tracker()
    cluster = _cluster()
    tracker.evaluate(cluster, _down(), None, 1000.0)
    tracker.ignore([IssueKey(1, "esDown")], duration=IGNORE_FOREVER, now=1000.0)

    restored = IssueTracker(SettingsProvider(), issues=[Issue.from_dict(d) for d in tracker.to_documents()])
    issue = restored.find(IssueKey(1, "esDown"))
    assert issue.ignore_until == IGNORE_FOREVER
    assert issue.alerted == 1000.0
    assert issue.first_noticed == 1000.0
