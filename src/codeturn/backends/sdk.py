"""Lazy construction of the OpenAI SDK client for a backend descriptor."""

from __future__ import annotations

import importlib
import os
from typing import TYPE_CHECKING

from codeturn.backends.base import BackendAuthenticationError, BackendUnavailableError

if TYPE_CHECKING:
    from codeturn.routing.registry import BackendDescriptor

_FALLBACK_KEY_ENVS = ("OPENAI_API_KEY", "CODETURN_API_KEY")


def resolve_api_key(descriptor: BackendDescriptor) -> str:
    if descriptor.api_key_env is not None:
        configured = os.getenv(descriptor.api_key_env)
        if configured is None or not configured.strip():
            raise BackendAuthenticationError(
                f"missing API key in configured env var {descriptor.api_key_env}",
                backend=descriptor.backend_id,
                http_status=401,
            )
        return configured

    for env_name in _FALLBACK_KEY_ENVS:
        fallback = os.getenv(env_name)
        if fallback is not None and fallback.strip():
            return fallback
    raise BackendAuthenticationError(
        "missing API key; set OPENAI_API_KEY or CODETURN_API_KEY",
        backend=descriptor.backend_id,
        http_status=401,
    )


def create_async_client(descriptor: BackendDescriptor, *, required_api: str) -> object:
    """Build an ``AsyncOpenAI`` client that exposes ``required_api``."""

    try:
        openai_module = importlib.import_module("openai")
    except ImportError as exc:
        raise BackendUnavailableError(
            "openai SDK is not installed", backend=descriptor.backend_id
        ) from exc

    async_openai = getattr(openai_module, "AsyncOpenAI", None)
    if async_openai is None:
        raise BackendUnavailableError(
            "openai SDK does not expose AsyncOpenAI", backend=descriptor.backend_id
        )

    init_kwargs: dict[str, object] = {
        "api_key": resolve_api_key(descriptor),
        "timeout": descriptor.request_timeout_seconds,
        # Retries are owned by RetryingCaller.
        "max_retries": 0,
    }
    if descriptor.endpoint is not None:
        init_kwargs["base_url"] = descriptor.endpoint

    client = async_openai(**init_kwargs)
    if not hasattr(client, required_api):
        raise BackendUnavailableError(
            f"openai client missing {required_api} API", backend=descriptor.backend_id
        )
    return client


__all__ = ["create_async_client", "resolve_api_key"]
