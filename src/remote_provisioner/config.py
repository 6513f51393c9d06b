"""Configuration loading utilities for remote-provisioner."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from .paths import CREDENTIALS_DIR, STORE_PATH

# Load .env file if it exists
load_dotenv()

_DEFAULT_CONFIG_PATH = Path("config/default_config.json")

EVENT_SINKS = ("log", "webhook", "redis", "none")


@dataclass
class SSHConfig:
    """Connection settings shared by every remote session."""

    connect_timeout: int = 20
    root_user: str = "root"
    app_user: str = "provisioner"
    worker_user: str = "worker"
    strict_host_keys: bool = False
    known_hosts_path: Optional[str] = None


@dataclass
class QueueConfig:
    """Redis/rq settings for job delivery and the distributed lock."""

    redis_url: str = "redis://localhost:6379/0"
    queue_name: str = "provisioning"
    release_after: int = 15        # seconds before a locked-out job is re-queued
    lock_expire_after: int = 900   # lease TTL, outlives the job timeout
    lock_wait: float = 0.0         # in-process wait before giving up on a lock


@dataclass
class StoreConfig:
    path: str = str(STORE_PATH)


@dataclass
class EventsConfig:
    """Where progress notifications go."""

    sink: str = "log"  # "log" | "webhook" | "redis" | "none"
    webhook_url: Optional[str] = None
    webhook_timeout: float = 2.0
    channel_prefix: str = "provisioning"


@dataclass
class CredentialsConfig:
    directory: str = str(CREDENTIALS_DIR)


@dataclass
class JobDefaults:
    """Queue contract applied to operations that do not override it."""

    timeout: int = 600
    tries: int = 0
    max_exceptions: int = 3


@dataclass
class AppConfig:
    """Top-level configuration."""

    ssh: SSHConfig = field(default_factory=SSHConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    events: EventsConfig = field(default_factory=EventsConfig)
    credentials: CredentialsConfig = field(default_factory=CredentialsConfig)
    jobs: JobDefaults = field(default_factory=JobDefaults)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "AppConfig":
        def section(name: str) -> Dict[str, Any]:
            raw = payload.get(name, {}) or {}
            # Keys starting with "_" are comments
            return {k: v for k, v in raw.items() if not k.startswith("_")}

        return cls(
            ssh=SSHConfig(**{**SSHConfig().__dict__, **section("ssh")}),
            queue=QueueConfig(**{**QueueConfig().__dict__, **section("queue")}),
            store=StoreConfig(**{**StoreConfig().__dict__, **section("store")}),
            events=EventsConfig(**{**EventsConfig().__dict__, **section("events")}),
            credentials=CredentialsConfig(
                **{**CredentialsConfig().__dict__, **section("credentials")}
            ),
            jobs=JobDefaults(**{**JobDefaults().__dict__, **section("jobs")}),
        )

    def validate(self) -> None:
        if self.events.sink not in EVENT_SINKS:
            raise ValueError(
                f"Unknown event sink '{self.events.sink}', expected one of {', '.join(EVENT_SINKS)}"
            )
        if self.events.sink == "webhook" and not self.events.webhook_url:
            raise ValueError("Webhook event sink selected but no webhook_url provided")
        if self.jobs.timeout <= 0:
            raise ValueError("jobs.timeout must be positive")
        if self.jobs.tries < 0 or self.jobs.max_exceptions < 1:
            raise ValueError("jobs.tries must be >= 0 and jobs.max_exceptions >= 1")


def _apply_env_overrides(config: AppConfig) -> None:
    env_redis = os.getenv("REMOTE_PROVISIONER_REDIS_URL")
    if env_redis:
        config.queue.redis_url = env_redis

    env_queue = os.getenv("REMOTE_PROVISIONER_QUEUE")
    if env_queue:
        config.queue.queue_name = env_queue

    env_store = os.getenv("REMOTE_PROVISIONER_STORE_PATH")
    if env_store:
        config.store.path = env_store

    env_credentials = os.getenv("REMOTE_PROVISIONER_CREDENTIALS_DIR")
    if env_credentials:
        config.credentials.directory = env_credentials

    env_sink = os.getenv("REMOTE_PROVISIONER_EVENT_SINK")
    if env_sink:
        config.events.sink = env_sink

    env_webhook = os.getenv("REMOTE_PROVISIONER_WEBHOOK_URL")
    if env_webhook:
        config.events.webhook_url = env_webhook
        if not env_sink:
            config.events.sink = "webhook"

    env_app_user = os.getenv("REMOTE_PROVISIONER_SSH_APP_USER")
    if env_app_user:
        config.ssh.app_user = env_app_user

    env_timeout = os.getenv("REMOTE_PROVISIONER_JOB_TIMEOUT")
    if env_timeout:
        config.jobs.timeout = int(env_timeout)


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load configuration from `path` or the default location.

    Environment variables (higher priority than config file):
    - REMOTE_PROVISIONER_REDIS_URL: Redis URL for the queue and locks
    - REMOTE_PROVISIONER_QUEUE: rq queue name
    - REMOTE_PROVISIONER_STORE_PATH: JSON resource store location
    - REMOTE_PROVISIONER_CREDENTIALS_DIR: SSH key pair directory
    - REMOTE_PROVISIONER_EVENT_SINK: log | webhook | redis | none
    - REMOTE_PROVISIONER_WEBHOOK_URL: progress webhook (implies the webhook sink)
    - REMOTE_PROVISIONER_SSH_APP_USER: application SSH user
    - REMOTE_PROVISIONER_JOB_TIMEOUT: default job timeout in seconds
    """

    candidate_paths = []
    if path:
        candidate_paths.append(Path(path))
    candidate_paths.append(_DEFAULT_CONFIG_PATH)

    for candidate in candidate_paths:
        if candidate.is_file():
            with candidate.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
            config = AppConfig.from_dict(data)
            _apply_env_overrides(config)
            config.validate()
            return config

    raise FileNotFoundError(
        f"Could not find configuration file. Looked in: {', '.join(str(p) for p in candidate_paths)}"
    )
