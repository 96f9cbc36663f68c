"""
codeturn config package public API.

File: src/codeturn/config/__init__.py

Purpose
- Export config loading/validation entrypoints, runtime assembly and public
  error types.
"""

from codeturn.config.loader import (
    ConfigLoadError,
    RuntimeComponents,
    build_runtime,
    dump_effective_config,
    load_config,
    normalize_paths,
)
from codeturn.config.schema import (
    DEFAULT_CONFIG,
    PATH_FIELDS,
    CodeturnConfig,
    ConfigSchemaVersion,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
)

__all__ = [
    "CodeturnConfig",
    "ConfigLoadError",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "PATH_FIELDS",
    "RuntimeComponents",
    "assert_valid_config",
    "build_runtime",
    "default_config",
    "dump_effective_config",
    "load_config",
    "merge_config",
    "migration_guidance",
    "normalize_paths",
    "redact_config",
    "validate_config",
]
