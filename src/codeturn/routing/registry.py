"""
codeturn — backend registry

File: src/codeturn/routing/registry.py

Purpose
- Hold the set of interchangeable backend services addressable by id.
- Resolve a task category to a backend through an externally supplied
  routing table, falling back to the default backend.

Contracts
- Registries are constructed explicitly and injected; there is no module-level
  instance.
- Descriptors are immutable. Registering an id that already exists replaces
  the entry and emits a ``backend_reregistered`` event.
- Lookups are safe under concurrent use (internal lock, read-mostly).
"""

from __future__ import annotations

import enum
import threading
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any

import structlog
import yaml

from codeturn.constants import DEFAULT_REQUEST_TIMEOUT_SECONDS
from codeturn.routing.classifier import TaskCategory


class WireProtocol(enum.Enum):
    """Wire shape spoken by a backend."""

    CHAT = "chat"
    RESPONSES = "responses"


class BackendNotFoundError(LookupError):
    """Raised when a backend id or task mapping cannot be resolved."""

    def __init__(self, message: str, *, backend_id: str | None = None) -> None:
        super().__init__(message)
        self.backend_id = backend_id


def _validate_non_empty_str(value: object, field_name: str) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{field_name} must be a string")
    parsed = value.strip()
    if not parsed:
        raise ValueError(f"{field_name} cannot be empty")
    return parsed


def _optional_str(value: object, field_name: str) -> str | None:
    if value is None:
        return None
    return _validate_non_empty_str(value, field_name)


@dataclass(frozen=True, slots=True)
class BackendDescriptor:
    backend_id: str
    protocol: WireProtocol
    model: str
    endpoint: str | None = None
    api_key_env: str | None = None
    max_output_tokens: int | None = None
    temperature: float | None = None
    supports_streaming: bool = True
    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "backend_id", _validate_non_empty_str(self.backend_id, "backend_id")
        )
        protocol = self.protocol
        if isinstance(protocol, str):
            try:
                protocol = WireProtocol(protocol.strip().lower())
            except ValueError as exc:
                raise ValueError(f"unknown protocol {self.protocol!r}") from exc
        if not isinstance(protocol, WireProtocol):
            raise TypeError("protocol must be a WireProtocol")
        object.__setattr__(self, "protocol", protocol)
        object.__setattr__(self, "model", _validate_non_empty_str(self.model, "model"))
        object.__setattr__(self, "endpoint", _optional_str(self.endpoint, "endpoint"))
        object.__setattr__(self, "api_key_env", _optional_str(self.api_key_env, "api_key_env"))

        if self.max_output_tokens is not None:
            if isinstance(self.max_output_tokens, bool) or not isinstance(
                self.max_output_tokens, int
            ):
                raise TypeError("max_output_tokens must be an integer")
            if self.max_output_tokens <= 0:
                raise ValueError("max_output_tokens must be > 0")
        if self.temperature is not None:
            if isinstance(self.temperature, bool) or not isinstance(
                self.temperature, (int, float)
            ):
                raise TypeError("temperature must be numeric")
            if not 0.0 <= float(self.temperature) <= 2.0:
                raise ValueError("temperature must be within [0, 2]")
            object.__setattr__(self, "temperature", float(self.temperature))
        if not isinstance(self.supports_streaming, bool):
            raise TypeError("supports_streaming must be a boolean")
        if isinstance(self.request_timeout_seconds, bool) or not isinstance(
            self.request_timeout_seconds, (int, float)
        ):
            raise TypeError("request_timeout_seconds must be numeric")
        if self.request_timeout_seconds <= 0:
            raise ValueError("request_timeout_seconds must be > 0")
        object.__setattr__(self, "request_timeout_seconds", float(self.request_timeout_seconds))

    @property
    def supports_previous_response(self) -> bool:
        return self.protocol is WireProtocol.RESPONSES

    @classmethod
    def from_mapping(
        cls, payload: Mapping[str, object], *, backend_id: str | None = None
    ) -> BackendDescriptor:
        identifier = backend_id if backend_id is not None else payload.get("id")
        streaming = payload.get("streaming", payload.get("supports_streaming", True))
        timeout = payload.get("request_timeout_seconds", DEFAULT_REQUEST_TIMEOUT_SECONDS)
        return cls(
            backend_id=identifier,  # type: ignore[arg-type]
            protocol=payload.get("protocol", ""),  # type: ignore[arg-type]
            model=payload.get("model", ""),  # type: ignore[arg-type]
            endpoint=payload.get("endpoint"),  # type: ignore[arg-type]
            api_key_env=payload.get("api_key_env"),  # type: ignore[arg-type]
            max_output_tokens=payload.get("max_output_tokens"),  # type: ignore[arg-type]
            temperature=payload.get("temperature"),  # type: ignore[arg-type]
            supports_streaming=streaming,  # type: ignore[arg-type]
            request_timeout_seconds=timeout,  # type: ignore[arg-type]
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.backend_id,
            "protocol": self.protocol.value,
            "model": self.model,
            "endpoint": self.endpoint,
            "api_key_env": self.api_key_env,
            "max_output_tokens": self.max_output_tokens,
            "temperature": self.temperature,
            "streaming": self.supports_streaming,
            "request_timeout_seconds": self.request_timeout_seconds,
        }


def _coerce_category(value: TaskCategory | str) -> TaskCategory:
    if isinstance(value, TaskCategory):
        return value
    try:
        return TaskCategory(value)
    except ValueError as exc:
        raise ValueError(f"unknown task category {value!r}") from exc


@dataclass(frozen=True, slots=True)
class RoutingTable:
    """Read-only task category → backend id mapping plus the default backend."""

    default_backend: str
    task_mapping: Mapping[TaskCategory, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "default_backend", _validate_non_empty_str(self.default_backend, "default_backend")
        )
        normalized: dict[TaskCategory, str] = {}
        for raw_category, backend_id in dict(self.task_mapping).items():
            category = _coerce_category(raw_category)
            normalized[category] = _validate_non_empty_str(
                backend_id, f"task_mapping[{category.value}]"
            )
        object.__setattr__(self, "task_mapping", MappingProxyType(normalized))

    def backend_for(self, category: TaskCategory) -> str | None:
        return self.task_mapping.get(category)

    def referenced_backends(self) -> frozenset[str]:
        return frozenset((self.default_backend, *self.task_mapping.values()))


@dataclass(frozen=True, slots=True)
class BackendSelection:
    descriptor: BackendDescriptor
    category: TaskCategory
    fell_back: bool = False


class BackendRegistry:
    """Explicitly constructed id → descriptor registry."""

    def __init__(
        self,
        descriptors: Iterable[BackendDescriptor] = (),
        *,
        logger: Any | None = None,
    ) -> None:
        self._lock = threading.RLock()
        self._backends: dict[str, BackendDescriptor] = {}
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        for descriptor in descriptors:
            self.register(descriptor)

    def __contains__(self, backend_id: object) -> bool:
        with self._lock:
            return backend_id in self._backends

    def __len__(self) -> int:
        with self._lock:
            return len(self._backends)

    def ids(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._backends))

    def register(self, descriptor: BackendDescriptor) -> BackendDescriptor | None:
        """Add ``descriptor``; returns the entry it replaced, if any."""
        if not isinstance(descriptor, BackendDescriptor):
            raise TypeError("descriptor must be a BackendDescriptor")
        with self._lock:
            previous = self._backends.get(descriptor.backend_id)
            self._backends[descriptor.backend_id] = descriptor
        if previous is not None and previous != descriptor:
            self._logger.info(
                "backend_reregistered",
                backend_id=descriptor.backend_id,
                previous=previous.to_dict(),
                current=descriptor.to_dict(),
            )
        return previous

    def unregister(self, backend_id: str) -> BackendDescriptor | None:
        with self._lock:
            return self._backends.pop(backend_id, None)

    def get(self, backend_id: str) -> BackendDescriptor | None:
        with self._lock:
            return self._backends.get(backend_id)

    def resolve(self, backend_id: str) -> BackendDescriptor:
        found = self.get(backend_id)
        if found is None:
            raise BackendNotFoundError(f"unknown backend {backend_id!r}", backend_id=backend_id)
        return found

    def resolve_for_task(
        self,
        category: TaskCategory,
        task_mapping: Mapping[TaskCategory, str],
    ) -> BackendDescriptor:
        backend_id = task_mapping.get(category)
        if backend_id is None:
            raise BackendNotFoundError(f"no backend mapped for task {category.value!r}")
        return self.resolve(backend_id)

    def select(self, category: TaskCategory, routing: RoutingTable) -> BackendSelection:
        """Resolve ``category`` through ``routing``, falling back to the default."""
        try:
            descriptor = self.resolve_for_task(category, routing.task_mapping)
        except BackendNotFoundError as exc:
            descriptor = self.resolve(routing.default_backend)
            self._logger.warning(
                "backend_fallback",
                task_category=category.value,
                reason=str(exc),
                backend_id=descriptor.backend_id,
            )
            return BackendSelection(descriptor=descriptor, category=category, fell_back=True)
        return BackendSelection(descriptor=descriptor, category=category)


def load_backend_catalog(path: str | Path) -> tuple[BackendDescriptor, ...]:
    """Read a YAML catalog: a list of descriptors or ``{"backends": [...]}``."""

    candidate = Path(path).expanduser().resolve()
    try:
        payload = yaml.safe_load(candidate.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ValueError(f"invalid backend catalog YAML in {candidate}: {exc}") from exc
    except OSError as exc:
        raise ValueError(f"unable to read backend catalog file {candidate}: {exc}") from exc

    if isinstance(payload, Mapping):
        payload = payload.get("backends", ())
    if payload is None:
        return ()
    if not isinstance(payload, Sequence) or isinstance(payload, (str, bytes)):
        raise ValueError(f"backend catalog {candidate} must contain a list of backends")

    descriptors: list[BackendDescriptor] = []
    seen: set[str] = set()
    for index, entry in enumerate(payload):
        if not isinstance(entry, Mapping):
            raise ValueError(f"backend catalog entry {index} must be a mapping")
        try:
            descriptor = BackendDescriptor.from_mapping(entry)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"backend catalog entry {index}: {exc}") from exc
        if descriptor.backend_id in seen:
            raise ValueError(f"backend catalog lists {descriptor.backend_id!r} twice")
        seen.add(descriptor.backend_id)
        descriptors.append(descriptor)
    return tuple(descriptors)


def registry_from_config(
    config: Mapping[str, Any],
    *,
    logger: Any | None = None,
) -> tuple[BackendRegistry, RoutingTable]:
    """Build a registry and routing table from a validated config mapping.

    Catalog entries load first; ``backends.<id>`` sections from the config
    re-register on top of them.
    """

    registry = BackendRegistry(logger=logger)
    routing_section = config.get("routing", {})
    catalog_path = routing_section.get("catalog_path")
    if catalog_path:
        for descriptor in load_backend_catalog(catalog_path):
            registry.register(descriptor)
    for backend_id, section in config.get("backends", {}).items():
        registry.register(BackendDescriptor.from_mapping(section, backend_id=backend_id))

    routing = RoutingTable(
        default_backend=routing_section.get("default_backend", ""),
        task_mapping=dict(routing_section.get("task_mapping", {})),
    )
    missing = sorted(backend for backend in routing.referenced_backends() if backend not in registry)
    if routing.default_backend in missing:
        raise BackendNotFoundError(
            f"default backend {routing.default_backend!r} is not registered",
            backend_id=routing.default_backend,
        )
    log = logger if logger is not None else structlog.get_logger(__name__)
    for backend_id in missing:
        # Turns in these categories fall back to the default backend at select time.
        categories = sorted(
            category.value
            for category, mapped in routing.task_mapping.items()
            if mapped == backend_id
        )
        log.warning(
            "backend_mapping_unregistered",
            backend_id=backend_id,
            task_categories=categories,
            default_backend=routing.default_backend,
        )
    return registry, routing


__all__ = [
    "BackendDescriptor",
    "BackendNotFoundError",
    "BackendRegistry",
    "BackendSelection",
    "RoutingTable",
    "WireProtocol",
    "load_backend_catalog",
    "registry_from_config",
]
