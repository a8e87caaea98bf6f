from __future__ import annotations

import importlib
from dataclasses import dataclass
from importlib.metadata import entry_points
from typing import Any, Awaitable, Callable, Iterator

import structlog


logger = structlog.get_logger(__name__)

ENTRY_POINT_GROUP = "parliament_monitor.notifiers"

BUILTIN_PROVIDERS = (
    "parliament_monitor.notifiers.slack",
    "parliament_monitor.notifiers.telegram",
)

SendAlert = Callable[[dict[str, str], str], Awaitable[Any]]


class UnknownNotifierError(KeyError):
    pass


class NotifierConfigError(ValueError):
    pass


@dataclass(frozen=True)
class FieldDescriptor:
    name: str
    required: bool = False
    type: str = "text"  # 'text'|'secret'|'checkbox'
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "required": self.required,
            "type": self.type,
            "description": self.description,
        }


@dataclass(frozen=True)
class NotifierProvider:
    name: str
    fields: tuple[FieldDescriptor, ...]
    send_alert: SendAlert

    def required_fields(self) -> list[str]:
        return [f.name for f in self.fields if f.required]


class NotifierRegistry:
    """Lookup table of notifier capabilities, populated once at startup."""

    def __init__(self) -> None:
        self._providers: dict[str, NotifierProvider] = {}

    def register(self, name: str, *, fields: list[FieldDescriptor] | tuple[FieldDescriptor, ...], send_alert: SendAlert) -> NotifierProvider:
        name = str(name or "").strip()
        if not name:
            raise ValueError("Notifier name is required")
        if name in self._providers:
            logger.warning("Notifier already registered, replacing", notifier=name)
        provider = NotifierProvider(name=name, fields=tuple(fields), send_alert=send_alert)
        self._providers[name] = provider
        return provider

    def get(self, name: str) -> NotifierProvider:
        try:
            return self._providers[name]
        except KeyError:
            raise UnknownNotifierError(name) from None

    def names(self) -> list[str]:
        return list(self._providers)

    def __contains__(self, name: object) -> bool:
        return name in self._providers

    def __iter__(self) -> Iterator[NotifierProvider]:
        return iter(list(self._providers.values()))

    def __len__(self) -> int:
        return len(self._providers)


def _init_plugin(registry: NotifierRegistry, module: Any, *, source: str) -> bool:
    init = getattr(module, "init", None)
    if not callable(init):
        logger.warning("Notifier plugin has no init(registry)", source=source)
        return False
    init(registry)
    return True


def load_notifiers(
    registry: NotifierRegistry | None = None,
    *,
    include_builtin: bool = True,
    entry_point_group: str = ENTRY_POINT_GROUP,
) -> NotifierRegistry:
    """
    Register the built-in providers and any installed plugins exposing an
    ``init(registry)`` under the ``parliament_monitor.notifiers`` entry point
    group. A plugin that fails to load is logged and skipped.
    """
    registry = registry if registry is not None else NotifierRegistry()

    if include_builtin:
        for module_name in BUILTIN_PROVIDERS:
            _init_plugin(registry, importlib.import_module(module_name), source=module_name)

    for ep in entry_points(group=entry_point_group):
        try:
            _init_plugin(registry, ep.load(), source=ep.value)
        except Exception:
            logger.exception("Failed to load notifier plugin", entry_point=ep.name)

    logger.info("Notifiers loaded", notifiers=registry.names())
    return registry
