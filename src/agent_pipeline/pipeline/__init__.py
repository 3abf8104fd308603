"""Durable agent job queue with a human checkpoint gate.

A job is submitted through the orchestrator facade, claimed by the worker
loop in priority order, and dispatched to a task executor. Executors either
finish, fail (bounded retries with exponential backoff) or pause on a
checkpoint that a human must approve before the job may continue.

Everything lives in one SQLite file. Claims are conditional updates, so a
second worker process pointed at the same file cannot double-execute a job,
but only one active worker loop per deployment is supported.
"""
