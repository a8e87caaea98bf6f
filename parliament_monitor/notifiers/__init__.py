from parliament_monitor.notifiers.base import (
    FieldDescriptor,
    NotifierConfigError,
    NotifierProvider,
    NotifierRegistry,
    UnknownNotifierError,
    load_notifiers,
)

__all__ = [
    "FieldDescriptor",
    "NotifierConfigError",
    "NotifierProvider",
    "NotifierRegistry",
    "UnknownNotifierError",
    "load_notifiers",
]
