"""Errors raised by the job store and dispatcher."""

from __future__ import annotations


class JobNotFoundError(RuntimeError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class InvalidTransitionError(RuntimeError):
    """Requested status change is outside the job state machine."""


class UnknownJobTypeError(RuntimeError):
    def __init__(self, job_type: str) -> None:
        super().__init__(f"Unhandled scheduled job type: {job_type}")
        self.job_type = job_type
