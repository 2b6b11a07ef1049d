"""Tests for account_guard.notifications."""
