"""
versiondb test suite.

This package contains:
- unit/: Unit tests (change detector, stores, config, errors, logging)
- integration/: Engine and ingest tests over both store backends
"""
