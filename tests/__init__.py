"""
db-partition test suite.

This package contains:
- unit/: Unit tests (temporary SQLite files, in-memory sink)
- integration/: Whole pipeline runs and the replay tool
"""
