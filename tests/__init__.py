"""
Tests Package - Unit Tests

Test structure:
- tests/conftest.py - Shared fixtures and in-process fakes for PostgreSQL and Redis
- tests/test_*.py - One module per component

No live Redis or PostgreSQL is needed; run with `pytest`.
"""
