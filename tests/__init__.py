"""
RecSync Test Suite.

This package contains:
- unit/: Unit tests (in-memory stores, manual timers)
- integration/: Integration tests (SQLite, shared sessions, HTTP gateway, CLI)
"""
