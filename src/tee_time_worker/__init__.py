"""Background job-execution core for the tee-time worker process."""

__version__ = "0.1.0"
