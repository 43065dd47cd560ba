"""
Error types raised by the job engine and scrape tasks.

All errors inherit from TackleboxError. Per-item errors are recovered by the
task context; everything else is converted to a FAILED job at the engine boundary.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class TackleboxError(Exception):
    """Base exception for all job-related failures."""


class ValidationError(TackleboxError):
    """Unknown job type or malformed task parameters. The job is never created."""

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        self.errors = errors or []
        super().__init__(message)


class NotFoundError(TackleboxError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class InvalidStateTransitionError(TackleboxError):
    def __init__(self, job_id: str, current: str, target: str):
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(f"Invalid job state transition for {job_id}: {current} -> {target}")


class TaskItemError(TackleboxError):
    """One target site failed. Recorded and skipped; the job carries on."""

    def __init__(self, target: str, reason: str):
        self.target = target
        self.reason = reason
        super().__init__(f"{target}: {reason}")


class BlockedError(TaskItemError):
    def __init__(self, target: str, status: int):
        self.status = status
        super().__init__(target, f"Blocked or Forbidden link (HTTP {status})")


class TaskFatalError(TackleboxError):
    """The task cannot proceed at all (e.g. upstream API rejected our key)."""


class CancellationObserved(TackleboxError):
    """Raised at a checkpoint once the job's cancellation token is set."""

    def __init__(self) -> None:
        super().__init__("Cancelled")
