"""Tests for account_guard.taskmanager."""
