"""Test suite for heterocell.

Test organization:
- fixtures/: Synthetic data generators
- unit/: Unit tests for individual modules and the end-to-end pipeline

Run tests with:
    pytest tests/
    pytest tests/unit/
    pytest tests/ -v --tb=short
"""
