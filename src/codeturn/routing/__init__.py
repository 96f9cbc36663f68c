"""Task classification and backend selection."""

from codeturn.routing.classifier import TaskCategory, classify_input, classify_task
from codeturn.routing.registry import (
    BackendDescriptor,
    BackendNotFoundError,
    BackendRegistry,
    BackendSelection,
    RoutingTable,
    WireProtocol,
    load_backend_catalog,
    registry_from_config,
)

__all__ = [
    "BackendDescriptor",
    "BackendNotFoundError",
    "BackendRegistry",
    "BackendSelection",
    "RoutingTable",
    "TaskCategory",
    "WireProtocol",
    "classify_input",
    "classify_task",
    "load_backend_catalog",
    "registry_from_config",
]
