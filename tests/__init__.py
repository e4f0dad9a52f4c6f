"""
ttledger test suite.

This package contains:
- unit/: Unit tests (no database)
- integration/: Integration tests (SQLite, mocked HTTP)
"""
