"""Core application configuration & tunable operational rules.

Queue routing, worker concurrency, retry/backoff thresholds, pipeline chunking
and report naming are centralized here so they can be adjusted without diving
into service logic. Values are module dictionaries seeded from environment
variables; tests monkeypatch them. Components never read these dictionaries
while running: `DispatchSettings.from_config()` freezes a snapshot that is
passed to each component at construction.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any


def _env_bool(name: str, default: bool) -> bool:
	raw = os.getenv(name)
	if raw is None or not raw.strip():
		return default
	return raw.strip().lower() in {"1", "true", "yes", "on"}


# --------------------------------- Queue ---------------------------------- #
QUEUE_SETTINGS: dict[str, Any] = {
	"use_redis": _env_bool("USE_REDIS_QUEUE", False),
	"redis_url": os.getenv("REDIS_URL", "redis://localhost:6379/0"),
	"redis_key_prefix": os.getenv("REDIS_KEY_PREFIX", "eod"),
	"redis_health_check_timeout": 2.0,
	# Logical queue per report kind (names are externally configured)
	"queues": {
		"REPORT": os.getenv("QUEUE_DAILY_TRANSACTION_REPORT", "daily-transaction-report"),
		"REPORT_SUMMARY": os.getenv("QUEUE_DAILY_TRANSACTION_REPORT_SUMMARY", "daily-transaction-report-summary"),
	},
	"warn_depth": 1000,
	"max_in_memory": 50000,
	# Consumer pool per queue
	"min_workers": int(os.getenv("QUEUE_MIN_WORKERS", "2")),
	"max_workers": int(os.getenv("QUEUE_MAX_WORKERS", "5")),
	"poll_timeout": 1.0,
	"idle_worker_timeout": 30.0,  # extra workers above min exit after this idle time
	"claim_lease_seconds": 900,    # PROCESSING lease held by the claiming worker
}

# ------------------------------- Retry Policy ----------------------------- #
RETRY_POLICY: dict[str, int | float] = {
	"max_deliveries": int(os.getenv("MAX_DELIVERIES", "5")),  # then dead-letter + FAILED
	"claimed_requeue_delay_seconds": 5.0,  # duplicate delivery while task is leased
}

# --------------------------------- Backoff -------------------------------- #
BACKOFF_POLICY: dict[str, int | float] = {
	"base_seconds": 1,
	"factor": 2,          # Exponential factor
	"max_seconds": 60,
	"jitter_pct": 0.10,   # +/-10% jitter
}

# -------------------------------- Pipeline -------------------------------- #
PIPELINE_SETTINGS: dict[str, int | float] = {
	"chunk_size": 10,
	"chunk_retry_limit": 2,        # extra attempts for a failing chunk write
	"read_page_size": 500,         # keyset page size for the transaction scan
	"timeout_warning_seconds": 600,
}

# --------------------------------- Reports -------------------------------- #
REPORT_SETTINGS: dict[str, str] = {
	"output_dir": os.getenv("REPORT_OUTPUT_DIR", "reports"),
	"filename_timestamp_format": "%Y%m%d_%H%M%S",
	"summary_filename": os.getenv("REPORT_SUMMARY_FILENAME", "daily_transaction_summary.csv"),
	"display_datetime_format": "%d/%m/%Y %H:%M:%S",
	"summary_date_format": "%d/%m/%Y",
	"message_timestamp_format": "%Y-%m-%d %H:%M:%S",
}

# -------------------------------- Scheduler ------------------------------- #
SCHEDULER_SETTINGS: dict[str, Any] = {
	"enabled": _env_bool("SCHEDULER_ENABLED", False),
	"interval_seconds": float(os.getenv("SCHEDULER_INTERVAL_SECONDS", "86400")),
	"main_task_kind": "EOD",
	"report_kinds": ["REPORT", "REPORT_SUMMARY"],
}

# --------------------------------- Logging -------------------------------- #
LOGGING_SETTINGS: dict[str, Any] = {
	"level": os.getenv("LOG_LEVEL", "INFO"),
	"file": os.getenv("LOG_FILE", "logs/eod_reports.log"),
	"console": _env_bool("LOG_CONSOLE", True),
	"file_max_bytes": 10 * 1024 * 1024,
	"file_backups": 5,
	# Third-party loggers pinned to their own level
	"library_levels": {
		"uvicorn": "INFO",
		"sqlalchemy.engine": "WARNING",
		"redis": "WARNING",
	},
}


@dataclass(frozen=True)
class DispatchSettings:
	"""Immutable configuration handed to queues, workers, pipelines and the scheduler."""

	queue_names: dict[str, str]
	use_redis: bool = False
	redis_url: str = "redis://localhost:6379/0"
	redis_key_prefix: str = "eod"
	warn_depth: int = 1000
	max_in_memory: int = 50000
	min_workers: int = 2
	max_workers: int = 5
	poll_timeout: float = 1.0
	idle_worker_timeout: float = 30.0
	claim_lease_seconds: float = 900
	max_deliveries: int = 5
	claimed_requeue_delay_seconds: float = 5.0
	backoff: dict[str, int | float] = field(default_factory=dict)
	chunk_size: int = 10
	chunk_retry_limit: int = 2
	read_page_size: int = 500
	timeout_warning_seconds: float = 600
	output_dir: str = "reports"
	filename_timestamp_format: str = "%Y%m%d_%H%M%S"
	summary_filename: str = "daily_transaction_summary.csv"
	display_datetime_format: str = "%d/%m/%Y %H:%M:%S"
	summary_date_format: str = "%d/%m/%Y"
	message_timestamp_format: str = "%Y-%m-%d %H:%M:%S"
	scheduler_enabled: bool = False
	scheduler_interval_seconds: float = 86400
	main_task_kind: str = "EOD"
	scheduled_report_kinds: tuple[str, ...] = ("REPORT", "REPORT_SUMMARY")

	@classmethod
	def from_config(cls, **overrides: Any) -> "DispatchSettings":
		values: dict[str, Any] = {
			"queue_names": dict(QUEUE_SETTINGS["queues"]),
			"use_redis": bool(QUEUE_SETTINGS.get("use_redis", False)),
			"redis_url": str(QUEUE_SETTINGS.get("redis_url", "redis://localhost:6379/0")),
			"redis_key_prefix": str(QUEUE_SETTINGS.get("redis_key_prefix", "eod")),
			"warn_depth": int(QUEUE_SETTINGS.get("warn_depth", 1000)),
			"max_in_memory": int(QUEUE_SETTINGS.get("max_in_memory", 50000)),
			"min_workers": int(QUEUE_SETTINGS.get("min_workers", 2)),
			"max_workers": int(QUEUE_SETTINGS.get("max_workers", 5)),
			"poll_timeout": float(QUEUE_SETTINGS.get("poll_timeout", 1.0)),
			"idle_worker_timeout": float(QUEUE_SETTINGS.get("idle_worker_timeout", 30.0)),
			"claim_lease_seconds": float(QUEUE_SETTINGS.get("claim_lease_seconds", 900)),
			"max_deliveries": int(RETRY_POLICY.get("max_deliveries", 5)),
			"claimed_requeue_delay_seconds": float(RETRY_POLICY.get("claimed_requeue_delay_seconds", 5.0)),
			"backoff": dict(BACKOFF_POLICY),
			"chunk_size": int(PIPELINE_SETTINGS.get("chunk_size", 10)),
			"chunk_retry_limit": int(PIPELINE_SETTINGS.get("chunk_retry_limit", 2)),
			"read_page_size": int(PIPELINE_SETTINGS.get("read_page_size", 500)),
			"timeout_warning_seconds": float(PIPELINE_SETTINGS.get("timeout_warning_seconds", 600)),
			"output_dir": str(REPORT_SETTINGS.get("output_dir", "reports")),
			"filename_timestamp_format": str(REPORT_SETTINGS.get("filename_timestamp_format", "%Y%m%d_%H%M%S")),
			"summary_filename": str(REPORT_SETTINGS.get("summary_filename", "daily_transaction_summary.csv")),
			"display_datetime_format": str(REPORT_SETTINGS.get("display_datetime_format", "%d/%m/%Y %H:%M:%S")),
			"summary_date_format": str(REPORT_SETTINGS.get("summary_date_format", "%d/%m/%Y")),
			"message_timestamp_format": str(REPORT_SETTINGS.get("message_timestamp_format", "%Y-%m-%d %H:%M:%S")),
			"scheduler_enabled": bool(SCHEDULER_SETTINGS.get("enabled", False)),
			"scheduler_interval_seconds": float(SCHEDULER_SETTINGS.get("interval_seconds", 86400)),
			"main_task_kind": str(SCHEDULER_SETTINGS.get("main_task_kind", "EOD")),
			"scheduled_report_kinds": tuple(SCHEDULER_SETTINGS.get("report_kinds", ("REPORT", "REPORT_SUMMARY"))),
		}
		values.update(overrides)
		return cls(**values)


__all__ = [
	"QUEUE_SETTINGS",
	"RETRY_POLICY",
	"BACKOFF_POLICY",
	"PIPELINE_SETTINGS",
	"REPORT_SETTINGS",
	"SCHEDULER_SETTINGS",
	"DispatchSettings",
]
