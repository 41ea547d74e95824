"""Scheduled job engine: claim, execute, requeue with backoff.

Jobs live in one SQL table. A worker claims a batch with a single
conditional UPDATE (pending -> processing, attempts + 1), runs each job's
handler and writes exactly one follow-up state: completed, pending again with
a future ``run_at``, or failed once attempts are exhausted. Delivery is
at-least-once; handlers are expected to be idempotent.
"""
