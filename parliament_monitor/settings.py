from __future__ import annotations

import copy
import threading
from typing import TYPE_CHECKING, Any

import structlog

from parliament_monitor.models import ISSUE_TYPES

if TYPE_CHECKING:
    from parliament_monitor.notifiers.base import NotifierRegistry


logger = structlog.get_logger(__name__)


# out_of_date / es_query_timeout are seconds; remove_* are minutes.
GENERAL_DEFAULTS: dict[str, int] = {
    "out_of_date": 30,
    "es_query_timeout": 5,
    "remove_issues_after": 60,
    "remove_acknowledged_after": 15,
}

_ALIASES = {
    "outOfDate": "out_of_date",
    "esQueryTimeout": "es_query_timeout",
    "removeIssuesAfter": "remove_issues_after",
    "removeAcknowledgedAfter": "remove_acknowledged_after",
}


class SettingsValidationError(ValueError):
    pass


def _canonical_key(key: str) -> str:
    return _ALIASES.get(key, key)


def default_settings() -> dict[str, Any]:
    return {"general": dict(GENERAL_DEFAULTS), "notifiers": {}}


def default_notifier_settings(registry: NotifierRegistry, name: str) -> dict[str, Any]:
    provider = registry.get(name)
    fields: dict[str, Any] = {}
    for descriptor in provider.fields:
        data = descriptor.to_dict()
        data["value"] = ""
        fields[descriptor.name] = data
    return {
        "name": name,
        "on": False,
        "fields": fields,
        "alerts": {type_id: True for type_id in ISSUE_TYPES},
    }


def describe_for_display(notifier_settings: dict[str, Any]) -> dict[str, Any]:
    """
    Read model for settings screens: a deep copy where every alert flag is
    replaced by the issue type catalog entry plus its current on/off state.
    """
    out = copy.deepcopy(notifier_settings)
    for notifier in out.values():
        if not isinstance(notifier, dict):
            continue
        alerts = notifier.get("alerts")
        if not isinstance(alerts, dict):
            continue
        for type_id, enabled in list(alerts.items()):
            info = ISSUE_TYPES.get(type_id)
            if info is None:
                continue
            described = info.to_dict()
            described["on"] = bool(enabled)
            alerts[type_id] = described
    return out


class SettingsProvider:
    """
    Thresholds and notifier configuration backed by the ``settings`` block of
    the cluster document. Values are read on every call so live edits apply
    to the next poll.
    """

    def __init__(self, document: dict[str, Any] | None = None):
        self._lock = threading.RLock()
        self._doc: dict[str, Any] = document if isinstance(document, dict) else {}
        self._ensure_shape()

    def _ensure_shape(self) -> None:
        general = self._doc.get("general")
        if not isinstance(general, dict):
            general = {}
            self._doc["general"] = general
        for alias, key in _ALIASES.items():
            if alias in general and key not in general:
                general[key] = general.pop(alias)
        for key, default in GENERAL_DEFAULTS.items():
            if not general.get(key):
                general[key] = default

        if not isinstance(self._doc.get("notifiers"), dict):
            self._doc["notifiers"] = {}

    def get(self, key: str) -> Any:
        key = _canonical_key(key)
        if key not in GENERAL_DEFAULTS:
            raise KeyError(f"Unknown general setting: {key}")
        with self._lock:
            value = (self._doc.get("general") or {}).get(key)
        if not value:
            return GENERAL_DEFAULTS[key]
        return value

    def general(self) -> dict[str, Any]:
        with self._lock:
            return {key: self.get(key) for key in GENERAL_DEFAULTS}

    def notifier(self, name: str) -> dict[str, Any] | None:
        with self._lock:
            data = self._doc["notifiers"].get(name)
            return copy.deepcopy(data) if isinstance(data, dict) else None

    def notifiers(self) -> dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._doc["notifiers"])

    def backfill_notifiers(self, registry: NotifierRegistry) -> list[str]:
        added: list[str] = []
        with self._lock:
            for name in registry.names():
                if name in self._doc["notifiers"]:
                    continue
                self._doc["notifiers"][name] = default_notifier_settings(registry, name)
                added.append(name)
        if added:
            logger.info("Added default settings for notifiers", notifiers=added)
        return added

    def update_general(self, values: dict[str, Any]) -> None:
        parsed: dict[str, int] = {}
        for raw_key, raw_value in (values or {}).items():
            key = _canonical_key(str(raw_key))
            if key not in GENERAL_DEFAULTS:
                raise SettingsValidationError(f"Unknown setting: {raw_key}")
            try:
                parsed[key] = int(float(raw_value))
            except (TypeError, ValueError):
                raise SettingsValidationError(f"{raw_key} must be a number.") from None
        with self._lock:
            self._doc["general"].update(parsed)

    def update_notifier(
        self,
        name: str,
        *,
        on: bool | None = None,
        fields: dict[str, Any] | None = None,
        alerts: dict[str, bool] | None = None,
    ) -> None:
        with self._lock:
            saved = self._doc["notifiers"].get(name)
            if not isinstance(saved, dict):
                raise SettingsValidationError(f"Unable to find notifier {name!r}. Is it loaded?")

            for field_name in (fields or {}):
                if field_name not in saved.get("fields", {}):
                    raise SettingsValidationError(f"Unable to find notifier field {field_name!r} to update.")
            for type_id in (alerts or {}):
                if type_id not in saved.get("alerts", {}):
                    raise SettingsValidationError(f"Unable to find alert {type_id!r} to update.")

            if on is not None:
                saved["on"] = bool(on)
            for field_name, value in (fields or {}).items():
                saved["fields"][field_name]["value"] = "" if value is None else str(value)
            for type_id, enabled in (alerts or {}).items():
                saved["alerts"][type_id] = bool(enabled)

    def restore_defaults(self, registry: NotifierRegistry, *, kind: str = "all") -> None:
        with self._lock:
            if kind == "general":
                self._doc["general"] = dict(GENERAL_DEFAULTS)
            else:
                self._doc.clear()
                self._doc.update(default_settings())
        self.backfill_notifiers(registry)

    def to_document(self) -> dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._doc)
