"""
docdb Test Suite.

This package contains:
- unit/: Unit tests (no I/O beyond in-memory drivers and temp files)
- integration/: Integration tests (population, concurrency, SQLite)
"""
