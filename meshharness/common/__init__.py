"""Shared helpers used by the harness and the test suite."""
