"""
Configuration loader for the OutreachIQ job engine.
Reads settings from YAML file with environment variable substitution,
then applies direct environment overrides for the worker knobs.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


def _default_provider_limits() -> dict[str, int]:
    return {
        "google": 500,
        "outlook": 300,
        "zoho": 200,
        "yahoo": 200,
        "apple": 200,
        "other": 100,
    }


def _default_handler_timeouts() -> dict[str, float]:
    return {
        "SendEmail": 30.0,
        "VerifyEmail": 30.0,
        "WarmupEmail": 30.0,
        "ProcessCampaign": 300.0,
    }


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./outreach_jobs.db"         # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory"


@dataclass
class WorkerConfig:
    worker_count: int = 4                # scheduler loops per process
    poll_interval: float = 2.0           # seconds to sleep when nothing is claimable
    eligible_types: list[str] = field(default_factory=list)   # empty = all job types
    persist_retry_attempts: int = 5      # tenacity attempts for store calls
    persist_retry_max_wait: float = 10.0


@dataclass
class ReaperConfig:
    interval: float = 60.0               # seconds between sweeps
    stale_threshold: float = 600.0       # Processing longer than this is stalled
    retry_delay: float = 1.0             # reclaimed jobs become due after this
    batch_size: int = 100


@dataclass
class RetryConfig:
    base_delay: float = 30.0
    max_delay: float = 3600.0
    jitter: float = 0.2                  # ±20%
    default_max_attempts: int = 3


@dataclass
class RateLimitConfig:
    day_boundary_hour: int = 0           # UTC hour at which daily windows roll over
    default_daily_limit: int = 100
    provider_limits: dict[str, int] = field(default_factory=_default_provider_limits)


@dataclass
class HandlerConfig:
    timeouts: dict[str, float] = field(default_factory=_default_handler_timeouts)
    campaign_batch_size: int = 50


@dataclass
class ConnectorConfig:
    type: str = "mock"                   # "rest" | "mock"
    base_url: str = ""
    api_key: str = ""
    timeout: float = 30.0
    endpoints: dict[str, str] = field(default_factory=dict)


@dataclass
class Settings:
    app_name: str = "OutreachIQ Worker"
    debug: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    reaper: ReaperConfig = field(default_factory=ReaperConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    rate_limits: RateLimitConfig = field(default_factory=RateLimitConfig)
    handlers: HandlerConfig = field(default_factory=HandlerConfig)
    connector: ConnectorConfig = field(default_factory=ConnectorConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _apply_env_overrides(settings: Settings, env: dict[str, str]) -> None:
    """Environment wins over YAML for the operational knobs."""
    if env.get("DATABASE_URL"):
        settings.database.url = env["DATABASE_URL"]
    if env.get("STORE_BACKEND"):
        settings.database.store_backend = env["STORE_BACKEND"]

    if env.get("WORKER_COUNT"):
        settings.worker.worker_count = int(env["WORKER_COUNT"])
    if env.get("WORKER_POLL_INTERVAL"):
        settings.worker.poll_interval = float(env["WORKER_POLL_INTERVAL"])
    if env.get("WORKER_JOB_TYPES"):
        settings.worker.eligible_types = [
            t.strip() for t in env["WORKER_JOB_TYPES"].split(",") if t.strip()
        ]

    if env.get("REAPER_INTERVAL"):
        settings.reaper.interval = float(env["REAPER_INTERVAL"])
    if env.get("REAPER_STALE_THRESHOLD"):
        settings.reaper.stale_threshold = float(env["REAPER_STALE_THRESHOLD"])

    if env.get("RATE_LIMIT_DAY_BOUNDARY_HOUR"):
        settings.rate_limits.day_boundary_hour = int(env["RATE_LIMIT_DAY_BOUNDARY_HOUR"])
    if env.get("RATE_LIMIT_DEFAULT"):
        settings.rate_limits.default_daily_limit = int(env["RATE_LIMIT_DEFAULT"])
    # RATE_LIMIT_GOOGLE=500, RATE_LIMIT_OUTLOOK=300, ...
    for key, value in env.items():
        if key.startswith("RATE_LIMIT_") and key not in (
            "RATE_LIMIT_DEFAULT", "RATE_LIMIT_DAY_BOUNDARY_HOUR",
        ):
            provider = key[len("RATE_LIMIT_"):].lower()
            settings.rate_limits.provider_limits[provider] = int(value)

    if env.get("CONNECTOR_BASE_URL"):
        settings.connector.type = "rest"
        settings.connector.base_url = env["CONNECTOR_BASE_URL"]
    if env.get("CONNECTOR_API_KEY"):
        settings.connector.api_key = env["CONNECTOR_API_KEY"]


def load_settings(config_path: str = None, env: dict[str, str] = None) -> Settings:
    """Load settings from YAML file, then apply environment overrides."""
    global _settings

    env = dict(os.environ) if env is None else env

    if config_path is None:
        config_path = env.get(
            "OUTREACH_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "database" in raw:
            db = raw["database"]
            settings.database = DatabaseConfig(
                url=db.get("url", settings.database.url),
                store_backend=db.get("store_backend", settings.database.store_backend),
            )

        if "worker" in raw:
            w = raw["worker"]
            settings.worker = WorkerConfig(
                worker_count=int(w.get("worker_count", 4)),
                poll_interval=float(w.get("poll_interval", 2.0)),
                eligible_types=list(w.get("eligible_types") or []),
                persist_retry_attempts=int(w.get("persist_retry_attempts", 5)),
                persist_retry_max_wait=float(w.get("persist_retry_max_wait", 10.0)),
            )

        if "reaper" in raw:
            r = raw["reaper"]
            settings.reaper = ReaperConfig(
                interval=float(r.get("interval", 60.0)),
                stale_threshold=float(r.get("stale_threshold", 600.0)),
                retry_delay=float(r.get("retry_delay", 1.0)),
                batch_size=int(r.get("batch_size", 100)),
            )

        if "retry" in raw:
            rt = raw["retry"]
            settings.retry = RetryConfig(
                base_delay=float(rt.get("base_delay", 30.0)),
                max_delay=float(rt.get("max_delay", 3600.0)),
                jitter=float(rt.get("jitter", 0.2)),
                default_max_attempts=int(rt.get("default_max_attempts", 3)),
            )

        if "rate_limits" in raw:
            rl = raw["rate_limits"]
            limits = _default_provider_limits()
            limits.update({k: int(v) for k, v in (rl.get("provider_limits") or {}).items()})
            settings.rate_limits = RateLimitConfig(
                day_boundary_hour=int(rl.get("day_boundary_hour", 0)),
                default_daily_limit=int(rl.get("default_daily_limit", 100)),
                provider_limits=limits,
            )

        if "handlers" in raw:
            h = raw["handlers"]
            timeouts = _default_handler_timeouts()
            timeouts.update({k: float(v) for k, v in (h.get("timeouts") or {}).items()})
            settings.handlers = HandlerConfig(
                timeouts=timeouts,
                campaign_batch_size=int(h.get("campaign_batch_size", 50)),
            )

        if "connector" in raw:
            c = raw["connector"]
            settings.connector = ConnectorConfig(
                type=c.get("type", "mock"),
                base_url=c.get("base_url", ""),
                api_key=c.get("api_key", ""),
                timeout=float(c.get("timeout", 30.0)),
                endpoints=c.get("endpoints", {}),
            )

    _apply_env_overrides(settings, env)

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (for testing)."""
    global _settings
    _settings = None
