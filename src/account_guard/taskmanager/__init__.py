"""Task manager — periodic background sweeps.

Provides ``TaskManager`` for the recurring maintenance jobs:
- Idle rate-limit record sweep
- Audit log archival (when a retention period is configured)
- Pending withdrawal expiry
- Metrics calculation (entity counts for Prometheus gauges)
"""

from __future__ import annotations

from account_guard.taskmanager.manager import CronJob, TaskManager

__all__ = ["CronJob", "TaskManager"]
