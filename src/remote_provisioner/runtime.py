"""Wire configuration into the collaborators a worker or CLI call needs."""

from __future__ import annotations

from typing import Any, Optional

import redis
from rq import Queue

from .config import AppConfig
from .events import build_event_sink
from .provisioners import default_registry
from .provisioning.jobs import Runtime
from .provisioning.locks import LockFactory
from .provisioning.queue import ProvisioningQueue
from .ssh import FileCredentialProvider, SSHSessionFactory
from .store import JsonResourceStore, ResourceStore


def build_runtime(
    config: AppConfig,
    *,
    connection: Any = None,
    store: Optional[ResourceStore] = None,
) -> Runtime:
    if connection is None:
        connection = redis.Redis.from_url(config.queue.redis_url)
    return Runtime(
        store=store or JsonResourceStore(config.store.path),
        sink=build_event_sink(config.events, connection),
        sessions=SSHSessionFactory(config.ssh, FileCredentialProvider(config.credentials.directory)),
        locks=LockFactory(connection, config.queue.lock_expire_after),
        registry=default_registry(),
        config=config,
        connection=connection,
    )


def build_queue(runtime: Runtime) -> ProvisioningQueue:
    queue = Queue(runtime.config.queue.queue_name, connection=runtime.connection)
    return ProvisioningQueue(runtime, queue)
