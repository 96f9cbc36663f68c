"""Stable constants shared across codeturn packages."""

from __future__ import annotations

from typing import Final

CONFIG_SCHEMA_VERSION: Final[int] = 1
DEFAULT_CONFIG_FILE: Final[str] = "codeturn.toml"
ENV_PREFIX: Final[str] = "CODETURN_"

# Retry budget for one backend invocation (total attempts, first one included).
MAX_RETRIES: Final[int] = 8
RATE_LIMIT_RETRY_WAIT_MS: Final[int] = 500
DEFAULT_MAX_RETRY_DELAY_MS: Final[int] = 60_000

DEFAULT_MAX_STEPS: Final[int] = 50
DEFAULT_MAX_PARALLEL_TOOLS: Final[int] = 4
DEFAULT_REQUEST_TIMEOUT_SECONDS: Final[float] = 300.0
DEFAULT_EXEC_TIMEOUT_MS: Final[int] = 10_000

# Tool names advertised to backends.
SHELL_TOOL_NAME: Final[str] = "shell"
CONTAINER_EXEC_TOOL_NAME: Final[str] = "container.exec"
LOCAL_SHELL_TOOL_NAME: Final[str] = "local_shell"
APPLY_PATCH_TOOL_NAME: Final[str] = "apply_patch"

ABORTED_OUTPUT_TEXT: Final[str] = "aborted"

__all__ = [
    "ABORTED_OUTPUT_TEXT",
    "APPLY_PATCH_TOOL_NAME",
    "CONFIG_SCHEMA_VERSION",
    "CONTAINER_EXEC_TOOL_NAME",
    "DEFAULT_CONFIG_FILE",
    "DEFAULT_EXEC_TIMEOUT_MS",
    "DEFAULT_MAX_PARALLEL_TOOLS",
    "DEFAULT_MAX_RETRY_DELAY_MS",
    "DEFAULT_MAX_STEPS",
    "DEFAULT_REQUEST_TIMEOUT_SECONDS",
    "ENV_PREFIX",
    "LOCAL_SHELL_TOOL_NAME",
    "MAX_RETRIES",
    "RATE_LIMIT_RETRY_WAIT_MS",
    "SHELL_TOOL_NAME",
]
