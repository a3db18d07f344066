"""
State group finder test suite.

This package contains:
- unit/: Unit tests (no external dependencies)
- integration/: Loader and pipeline tests over the in-memory store
- e2e/: Tests against a real PostgreSQL server (set SG_FINDER_E2E_DSN)
"""
