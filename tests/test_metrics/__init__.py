"""Tests for account_guard.metrics."""
