"""
Background Jobs Module

Scheduled tasks for:
- Carrier assignment retry sweeps (expired, busy, all-rejected)
- Stale shipping lock release
"""

from scm_dispatch.jobs.scheduler import scheduler, start_scheduler, shutdown_scheduler, get_job_status
from scm_dispatch.jobs.assignment_retry import AssignmentRetryScheduler

__all__ = [
    "scheduler",
    "start_scheduler",
    "shutdown_scheduler",
    "get_job_status",
    "AssignmentRetryScheduler",
]
