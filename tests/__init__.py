"""
kvledger Test Suite.

This package contains:
- unit/: Unit tests (in-memory store, no external dependencies)
- integration/: Integration tests (workflows, SQLite, admin API, CLI)
"""
