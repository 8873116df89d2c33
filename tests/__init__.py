"""
agrestore Test Suite.

This package contains:
- unit/: Unit tests (no instance, no backend)
- integration/: Integration tests (in-memory instances and clusters)
- e2e/: End-to-end tests (real SQL Server over ODBC)
"""
