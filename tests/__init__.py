"""Test suite for CellType-Transfer.

Test organization:
- fixtures/: Synthetic reference/query generators
- unit/: Unit tests for individual modules

Run tests with:
    pytest tests/
    pytest tests/unit/ -v --tb=short
"""
