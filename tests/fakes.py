"""Hand-written fakes shared by the test modules."""

from __future__ import annotations

import threading
from typing import Any, Dict, List, Optional, Tuple

from remote_provisioner.config import AppConfig
from remote_provisioner.models import ManagedResource, ServerRecord
from remote_provisioner.provisioners import default_registry
from remote_provisioner.provisioning.jobs import Runtime
from remote_provisioner.provisioning.locks import LockFactory, RELEASE_SCRIPT
from remote_provisioner.ssh import SSHCommandResult
from remote_provisioner.store import InMemoryResourceStore


class FakeRedis:
    """Just enough of redis-py for leases and pub/sub publishing."""

    def __init__(self) -> None:
        self.values: Dict[str, Any] = {}
        self.published: List[Tuple[str, str]] = []
        self._lock = threading.Lock()

    def set(self, key: str, value: Any, nx: bool = False, px: Optional[int] = None) -> Optional[bool]:
        with self._lock:
            if nx and key in self.values:
                return None
            self.values[key] = value
            return True

    def get(self, key: str) -> Any:
        with self._lock:
            return self.values.get(key)

    def delete(self, key: str) -> int:
        with self._lock:
            return 1 if self.values.pop(key, None) is not None else 0

    def eval(self, script: str, numkeys: int, key: str, token: str) -> int:
        assert script == RELEASE_SCRIPT
        with self._lock:
            if self.values.get(key) == token:
                del self.values[key]
                return 1
            return 0

    def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        return 1


class FakeSession:
    """Records commands; fails any command containing a configured marker."""

    def __init__(self, failures: Optional[Dict[str, Tuple[int, str]]] = None, outputs: Optional[Dict[str, str]] = None) -> None:
        self.failures = dict(failures or {})
        self.outputs = dict(outputs or {})
        self.commands: List[str] = []
        self.closed = False

    def run(self, command: str, *, timeout: Optional[float] = None) -> SSHCommandResult:
        self.commands.append(command)
        for marker, (status, stderr) in self.failures.items():
            if marker in command:
                return SSHCommandResult(command=command, stdout="", stderr=stderr, exit_status=status)
        stdout = next((text for marker, text in self.outputs.items() if marker in command), "")
        return SSHCommandResult(command=command, stdout=stdout, stderr="", exit_status=0)

    def __enter__(self) -> "FakeSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.closed = True


class FakeSessionFactory:
    def __init__(self, session: Optional[FakeSession] = None) -> None:
        self.session = session or FakeSession()
        self.opened: List[Tuple[str, Any]] = []

    def open(self, server: ServerRecord, role: Any) -> FakeSession:
        self.opened.append((server.id, role))
        return self.session


class RecordingSink:
    def __init__(self) -> None:
        self.payloads: List[Tuple[str, Dict[str, Any]]] = []

    def publish(self, server_id: str, payload: Dict[str, Any]) -> None:
        self.payloads.append((server_id, payload))


def make_runtime(
    session: Optional[FakeSession] = None,
    *,
    store: Optional[InMemoryResourceStore] = None,
    redis_client: Optional[FakeRedis] = None,
    config: Optional[AppConfig] = None,
) -> Runtime:
    redis_client = redis_client or FakeRedis()
    return Runtime(
        store=store or InMemoryResourceStore(),
        sink=RecordingSink(),
        sessions=FakeSessionFactory(session),
        locks=LockFactory(redis_client, 60),
        registry=default_registry(),
        config=config or AppConfig(),
        connection=redis_client,
    )


def add_server(store: InMemoryResourceStore, server_id: str = "srv-1") -> ServerRecord:
    server = ServerRecord(id=server_id, host="203.0.113.10", name="web-1")
    store.save_server(server)
    return server


def add_resource(
    store: InMemoryResourceStore,
    resource_type: str,
    key: str,
    configuration: Optional[Dict[str, Any]] = None,
    server_id: str = "srv-1",
    **fields: Any,
) -> ManagedResource:
    resource = ManagedResource.new(server_id, resource_type, key, configuration)
    for name, value in fields.items():
        setattr(resource, name, value)
    return store.add(resource)
