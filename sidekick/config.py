"""Core application configuration & tunable scheduling rules.

Everything that operators may want to tune (queue cadence, overlap policy,
retry semantics of reward ticks, chain endpoints) is centralized here as module
constants so it can be adjusted without diving into service logic. Values are
read from environment variables at import time; the dicts are intentionally
mutable so tests can monkeypatch individual entries.
"""
from __future__ import annotations

import json
import os


def _env_bool(name: str, default: bool) -> bool:
	raw = os.getenv(name)
	if raw is None or not raw.strip():
		return default
	return raw.strip().lower() in ("1", "true", "yes", "on")


# ------------------------------- HTTP surface ------------------------------ #
# Shared secret expected in the ``x-secret-key`` header of mutating requests.
SECRET_KEY: str | None = os.getenv("SECRET_KEY") or None

# Routes are mounted at the root by default to keep the public paths stable
# (e.g. POST /erc20/schedule/{chainId}/{contractAddress}/transfer).
API_PREFIX: str = os.getenv("API_PREFIX", "").rstrip("/")

SERVICE_NAME = "sidekick"
SERVICE_VERSION = "1.0.0"

# --------------------------------- Database -------------------------------- #
DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+pysqlite:///./sidekick.db")

# ---------------------------------- Redis ---------------------------------- #
def _build_redis_url() -> str:
	explicit = os.getenv("REDIS_URL")
	if explicit:
		return explicit
	password = os.getenv("REDIS_PASSWORD")
	host = os.getenv("REDIS_HOST", "localhost")
	port = os.getenv("REDIS_PORT", "6379")
	auth = f":{password}@" if password else ""
	return f"redis://{auth}{host}:{port}/0"


REDIS_URL: str = _build_redis_url()

# --------------------------------- Queue ----------------------------------- #
QUEUE_SETTINGS: dict[str, str | int | float | bool] = {
	"use_redis": _env_bool("QUEUE_USE_REDIS", True),
	"redis_url": REDIS_URL,
	"redis_health_check_timeout": 2.0,
	# All queue keys live under this prefix (definitions, schedule zset, locks, runs).
	"key_prefix": os.getenv("QUEUE_KEY_PREFIX", "sidekick:rewards-queue"),
	# How often the worker looks for due ticks.
	"poll_interval_seconds": float(os.getenv("QUEUE_POLL_INTERVAL_SECONDS", "1.0")),
	# Upper bound a single tick may hold its repeat-key lock before another
	# worker is allowed to take over (stalled tick).
	"lock_ttl_ms": int(os.getenv("QUEUE_LOCK_TTL_MS", str(15 * 60 * 1000))),
	# serialize: a due tick waits for the in-flight tick of the same task.
	# skip: a tick that falls due while the previous one runs is dropped.
	"overlap_policy": os.getenv("QUEUE_OVERLAP_POLICY", "serialize"),
	# Ticks of different schedules run concurrently up to this bound.
	"max_concurrent_ticks": int(os.getenv("QUEUE_MAX_CONCURRENT_TICKS", "4")),
	# Completed/failed tick runs kept for inspection via GET /jobs.
	"run_history_size": int(os.getenv("QUEUE_RUN_HISTORY_SIZE", "500")),
}

OVERLAP_POLICIES = ("serialize", "skip")

# -------------------------------- Scheduler -------------------------------- #
SCHEDULER_SETTINGS: dict[str, str | int] = {
	"task_name": "reward-transfer",
	"store_key_prefix": "rewards",
	# replace: creating a schedule for an existing (chain, contract) swaps the
	# previous one out. reject: the request fails with 409.
	"on_existing_schedule": os.getenv("SCHEDULER_ON_EXISTING", "replace"),
	"max_recipients": int(os.getenv("SCHEDULER_MAX_RECIPIENTS", "500")),
}

# -------------------------------- Executor --------------------------------- #
EXECUTOR_SETTINGS: dict[str, str | int | float] = {
	# full: every tick transfers the whole configured list (periodic reward).
	# failed_only: recipients already paid by an earlier tick are skipped.
	"retry_mode": os.getenv("EXECUTOR_RETRY_MODE", "full"),
	"receipt_timeout_seconds": float(os.getenv("EXECUTOR_RECEIPT_TIMEOUT_SECONDS", "120")),
	"receipt_poll_seconds": float(os.getenv("EXECUTOR_RECEIPT_POLL_SECONDS", "2")),
}

RETRY_MODES = ("full", "failed_only")

# ---------------------------------- Chains --------------------------------- #
def _load_rpc_urls() -> dict[str, str]:
	urls: dict[str, str] = {}
	raw = os.getenv("CHAIN_RPC_URLS", "").strip()
	if raw:
		parsed = json.loads(raw)
		if not isinstance(parsed, dict):
			raise ValueError("CHAIN_RPC_URLS must be a JSON object of {chainId: rpcUrl}")
		urls.update({str(k).lower(): str(v) for k, v in parsed.items()})
	# RPC_URL_<CHAIN> entries override the JSON map
	for name, value in os.environ.items():
		if name.startswith("RPC_URL_") and value.strip():
			urls[name[len("RPC_URL_"):].lower()] = value.strip()
	return urls


def _load_explorer_urls() -> dict[str, str]:
	raw = os.getenv("CHAIN_EXPLORER_URLS", "").strip()
	if not raw:
		return {}
	parsed = json.loads(raw)
	if not isinstance(parsed, dict):
		raise ValueError("CHAIN_EXPLORER_URLS must be a JSON object of {chainId: explorerBaseUrl}")
	return {str(k).lower(): str(v).rstrip("/") for k, v in parsed.items()}


CHAIN_SETTINGS: dict[str, object] = {
	"rpc_urls": _load_rpc_urls(),
	# Block explorer base URLs used to build txUrl ({base}/tx/{hash})
	"explorer_urls": _load_explorer_urls(),
	"request_timeout_seconds": float(os.getenv("CHAIN_REQUEST_TIMEOUT_SECONDS", "10")),
}

# Hot wallet key used to sign reward transfers. Never logged.
EVM_PRIVATE_KEY: str | None = os.getenv("EVM_PRIVATE_KEY") or None

__all__ = [
	"SECRET_KEY",
	"API_PREFIX",
	"SERVICE_NAME",
	"SERVICE_VERSION",
	"DATABASE_URL",
	"REDIS_URL",
	# Rule groups
	"QUEUE_SETTINGS",
	"OVERLAP_POLICIES",
	"SCHEDULER_SETTINGS",
	"EXECUTOR_SETTINGS",
	"RETRY_MODES",
	"CHAIN_SETTINGS",
	"EVM_PRIVATE_KEY",
]
