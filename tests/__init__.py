"""
TxStore Test Suite.

This package contains:
- unit/: Unit tests (SDK against a mock service, server components in isolation)
- integration/: Integration tests (real gRPC server and admin API over SQLite)
"""
