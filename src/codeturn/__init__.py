"""
codeturn — turn orchestration core for an interactive coding assistant

File: src/codeturn/__init__.py

Purpose
- Package root. Exposes the version and the small public entry surface.

Import boundary
- Importing the package must not load the backend SDK, configure logging, or
  read configuration files.
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
