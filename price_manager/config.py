"""Core application configuration & tunable job rules.

All values that may evolve (batch sizing, log retention, scheduling stagger,
cleanup windows, queue priorities, catalog filters) are centralized here so
they can be adjusted without diving into service logic. Deployments override
via environment variables; tests monkeypatch the dicts directly.
"""
from __future__ import annotations

import os


def _env_bool(name: str, default: str = "false") -> bool:
	return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


# ------------------------------- Price Jobs ------------------------------- #
JOB_SETTINGS: dict[str, int | float | str] = {
	# Variations per scheduled batch (one transaction each).
	"batch_size": int(os.getenv("PRICE_JOB_BATCH_SIZE", "100")),
	# Ring buffer size for per-job log lines.
	"max_logs": int(os.getenv("PRICE_JOB_MAX_LOGS", "100")),
	# Delay increment between consecutive batches.
	"stagger_seconds": float(os.getenv("PRICE_JOB_STAGGER_SECONDS", "1")),
	# Terminal jobs older than this are removed by the cleanup action.
	"retention_seconds": int(os.getenv("PRICE_JOB_RETENTION_SECONDS", "3600")),
	"cleanup_interval_seconds": int(os.getenv("PRICE_JOB_CLEANUP_INTERVAL_SECONDS", "3600")),
	"key_prefix": os.getenv("PRICE_JOB_KEY_PREFIX", "pricejob_"),
	# Compare-and-set attempts before a progress write is abandoned.
	"max_update_retries": int(os.getenv("PRICE_JOB_MAX_UPDATE_RETRIES", "20")),
	# Group tag attached to every scheduled batch action.
	"action_group": "price_manager",
}

# --------------------------------- Queue ---------------------------------- #
QUEUE_SETTINGS: dict[str, dict[str, int] | int | float | str | bool] = {
	"priorities": {  # Lower number = higher priority
		"high": 0,
		"normal": 5,
		"low": 10,
	},
	"warn_depth": 1000,
	"max_in_memory": 50000,
	"use_redis": _env_bool("USE_REDIS_QUEUE"),
	"redis_url": os.getenv("REDIS_URL", "redis://localhost:6379/0"),
	"redis_ready_key": "price_manager:ready_queue",
	"redis_scheduled_key": "price_manager:scheduled_actions",
	"redis_health_check_timeout": 2.0,
	# Threads draining the queue; batches of one job may overlap.
	"worker_count": int(os.getenv("QUEUE_WORKER_COUNT", "4")),
	"poll_timeout": float(os.getenv("QUEUE_POLL_TIMEOUT", "1.0")),
}

# -------------------------------- Catalog --------------------------------- #
CATALOG_SETTINGS: dict[str, str | int | tuple[str, ...]] = {
	"variation_kind": "product_variation",
	# Only variations in these statuses are ever read or written.
	"allowed_statuses": ("publish", "private"),
	"attribute_prefix": "attribute_",
	"per_page": int(os.getenv("CATALOG_PER_PAGE", "50")),
}

__all__ = [
	"JOB_SETTINGS",
	"QUEUE_SETTINGS",
	"CATALOG_SETTINGS",
]
