"""
Configuration loader for the chat delivery pipeline.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./chat_pipeline.db"         # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory"


@dataclass
class CacheConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    key_prefix: str = "chat"
    presence_ttl: int = 86400           # seconds a presence mirror survives without refresh
    message_ttl: int = 86400


@dataclass
class BackoffConfig:
    type: str = "exponential"           # exponential | linear | fixed | none
    delay: float = 1.0                  # base delay in seconds


@dataclass
class QueuePolicyConfig:
    max_attempts: int = 3               # 0 = unlimited
    backoff: BackoffConfig = field(default_factory=BackoffConfig)
    dead_letter: bool = True
    classify_errors: bool = True


def _requeue_policy() -> QueuePolicyConfig:
    return QueuePolicyConfig(
        max_attempts=0,
        backoff=BackoffConfig(type="none", delay=0.0),
        dead_letter=False,
        classify_errors=False,
    )


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    key_prefix: str = "queue"
    dead_letter_queue: str = "dead-letter"
    dlq_sweep_interval: float = 300.0   # seconds between dead-letter replays
    failed_retention: int = 1000        # failed jobs kept per queue, newest first
    default_policy: QueuePolicyConfig = field(default_factory=QueuePolicyConfig)
    policies: dict[str, QueuePolicyConfig] = field(default_factory=lambda: {
        "messages": _requeue_policy(),
        "receipts": _requeue_policy(),
        "presence": _requeue_policy(),
        "notifications": QueuePolicyConfig(
            max_attempts=5,
            backoff=BackoffConfig(type="exponential", delay=2.0),
        ),
    })


@dataclass
class WorkerConfig:
    message_interval: float = 0.5
    receipt_interval: float = 0.5
    presence_interval: float = 1.0
    notification_interval: float = 2.0
    default_interval: float = 1.0
    message_batch_size: int = 10
    presence_batch_size: int = 10
    notification_batch_size: int = 5
    worker_count: int = 1
    restart_delay: float = 1.0
    run_in_api: bool = False            # also consume inside the API process (forced for the memory queue)


@dataclass
class BreakerConfig:
    timeout: float = 10.0                       # seconds before a call counts as failed
    error_threshold_percentage: float = 50.0
    reset_timeout: float = 30.0                 # seconds spent open before half-open
    rolling_window: float = 10.0                # seconds of history considered
    volume_threshold: int = 5                   # minimum calls before the breaker may trip


@dataclass
class PresenceConfig:
    ordering: str = "processing"        # "processing" (last dequeued wins) | "timestamp"
    stale_threshold: float = 1800.0     # seconds without activity before a forced offline
    sweep_interval: float = 300.0


@dataclass
class ProviderConfig:
    enabled: bool = False
    credentials: dict[str, Any] = field(default_factory=dict)


@dataclass
class NotificationConfig:
    enabled: bool = True
    default_app_id: str = "chat"
    token_max_idle_days: int = 30
    cleanup_interval: float = 86400.0
    providers: dict[str, ProviderConfig] = field(default_factory=dict)


@dataclass
class Settings:
    app_name: str = "ChatPipeline"
    debug: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    workers: WorkerConfig = field(default_factory=WorkerConfig)
    breaker: BreakerConfig = field(default_factory=BreakerConfig)
    presence: PresenceConfig = field(default_factory=PresenceConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)


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


def _section(cls, raw: dict[str, Any], base=None):
    """Overlay the known keys of a YAML mapping onto a dataclass instance."""
    base = base or cls()
    for key in cls.__dataclass_fields__:
        if key in raw:
            setattr(base, key, raw[key])
    return base


def _policy(raw: dict[str, Any], base: QueuePolicyConfig = None) -> QueuePolicyConfig:
    policy = base or QueuePolicyConfig()
    policy = QueuePolicyConfig(
        max_attempts=int(raw.get("max_attempts", policy.max_attempts)),
        backoff=_section(BackoffConfig, raw.get("backoff", {}),
                         BackoffConfig(policy.backoff.type, policy.backoff.delay)),
        dead_letter=bool(raw.get("dead_letter", policy.dead_letter)),
        classify_errors=bool(raw.get("classify_errors", policy.classify_errors)),
    )
    return policy


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    if config_path is None:
        config_path = os.environ.get(
            "CHAT_PIPELINE_CONFIG",
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
            settings.database = _section(DatabaseConfig, raw["database"])

        if "cache" in raw:
            settings.cache = _section(CacheConfig, raw["cache"])

        if "queue" in raw:
            q = raw["queue"]
            queue = QueueConfig()
            for key in ("backend", "redis_url", "key_prefix", "dead_letter_queue"):
                if key in q:
                    setattr(queue, key, q[key])
            if "dlq_sweep_interval" in q:
                queue.dlq_sweep_interval = float(q["dlq_sweep_interval"])
            if "failed_retention" in q:
                queue.failed_retention = int(q["failed_retention"])
            if "default_policy" in q:
                queue.default_policy = _policy(q["default_policy"])
            for name, pol in (q.get("policies") or {}).items():
                queue.policies[name] = _policy(pol or {}, queue.policies.get(name))
            settings.queue = queue

        if "workers" in raw:
            settings.workers = _section(WorkerConfig, raw["workers"])

        if "breaker" in raw:
            settings.breaker = _section(BreakerConfig, raw["breaker"])

        if "presence" in raw:
            settings.presence = _section(PresenceConfig, raw["presence"])

        if "notifications" in raw:
            n = raw["notifications"]
            notifications = NotificationConfig(
                enabled=n.get("enabled", True),
                default_app_id=n.get("default_app_id", "chat"),
                token_max_idle_days=n.get("token_max_idle_days", 30),
                cleanup_interval=float(n.get("cleanup_interval", 86400.0)),
            )
            for name, prov in (n.get("providers") or {}).items():
                notifications.providers[name] = ProviderConfig(
                    enabled=prov.get("enabled", False),
                    credentials=prov.get("credentials", {}),
                )
            settings.notifications = notifications

    return settings
