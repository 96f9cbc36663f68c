"""
codeturn — integration test package

File: tests/integration/__init__.py

Purpose
- Test package marker for end-to-end turn tests. Fakes stay in the test
  modules; nothing here may touch the network.
"""
