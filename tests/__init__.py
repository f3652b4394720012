"""
docquery Test Suite.

This package contains:
- unit/: Unit tests (in-memory store, SQLite in a temporary directory)
- integration/: Integration tests (Engine end-to-end over SQLite)
"""
