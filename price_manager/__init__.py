"""Variation price manager package.

Bulk variation price updates run as background jobs: a request is split into
batches, each batch is executed by the action worker pool, and progress,
logs and cancellation are tracked per job.
"""

__all__: list[str] = []
