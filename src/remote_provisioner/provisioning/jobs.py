"""Job lifecycle wrapper: one generic engine for every operation kind."""

from __future__ import annotations

import contextlib
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

from ..models import ManagedResource, ResourceStatus, ServerRecord
from ..utils.logging import get_logger
from .errors import (
    ConcurrentOperationError,
    ExecutionTimeout,
    InvalidTransition,
    OperationLocked,
    RemoteCommandError,
    ServerMissingError,
    UnknownOperationError,
    ValidationError,
    is_retryable,
)
from .executor import RemoteExecutor
from .provisioner import Provisioner, ProvisionerRegistry
from .rollback import SingletonRollbackManager
from .state_machine import ResourceStateMachine
from .steps import ExecutionContext
from .tracker import MilestoneTracker

if TYPE_CHECKING:
    from ..config import AppConfig, JobDefaults
    from ..events import EventSink
    from ..store import ResourceStore
    from .locks import RedisLeaseLock

logger = get_logger(__name__)


@dataclass
class JobPolicy:
    timeout: int = 600
    tries: int = 0
    max_exceptions: int = 3

    @property
    def attempts(self) -> int:
        return self.tries if self.tries > 0 else self.max_exceptions

    @classmethod
    def for_provisioner(cls, provisioner: Provisioner, defaults: Optional["JobDefaults"] = None) -> "JobPolicy":
        base = cls() if defaults is None else cls(defaults.timeout, defaults.tries, defaults.max_exceptions)
        return cls(
            timeout=provisioner.timeout if provisioner.timeout is not None else base.timeout,
            tries=provisioner.tries if provisioner.tries is not None else base.tries,
            max_exceptions=(
                provisioner.max_exceptions if provisioner.max_exceptions is not None else base.max_exceptions
            ),
        )


@dataclass
class OperationRequest:
    operation: str
    server_id: str
    resource_id: str
    config: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "server_id": self.server_id,
            "resource_id": self.resource_id,
            "config": dict(self.config),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OperationRequest":
        return cls(
            operation=data["operation"],
            server_id=str(data["server_id"]),
            resource_id=str(data["resource_id"]),
            config=dict(data.get("config") or {}),
        )


class JobOutcome(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class Runtime:
    """Collaborators shared by every job a worker runs."""

    store: "ResourceStore"
    sink: "EventSink"
    sessions: Any                                 # SSHSessionFactory-like: open(server, role)
    locks: Callable[[str], "RedisLeaseLock"]
    registry: ProvisionerRegistry
    config: Optional["AppConfig"] = None
    connection: Any = None                        # redis client backing the queue

    @property
    def state(self) -> ResourceStateMachine:
        return ResourceStateMachine(self.store)

    @property
    def rollback(self) -> SingletonRollbackManager:
        return SingletonRollbackManager(self.store)

    @property
    def lock_wait(self) -> float:
        return self.config.queue.lock_wait if self.config is not None else 0.0

    def policy_for(self, provisioner: Provisioner) -> JobPolicy:
        return JobPolicy.for_provisioner(provisioner, self.config.jobs if self.config is not None else None)


def mark_queued(runtime: Runtime, provisioner: Provisioner, resource: ManagedResource) -> None:
    """Prepare a record for a newly enqueued operation.

    Live records are moved back to pending when the operation's in-progress
    status is not directly reachable from where they are. Values a previous
    run of the operation generated for itself are dropped.
    """
    state = runtime.state
    current = resource.get_status(provisioner.status_field)
    if current is not None and current.in_progress:
        raise ConcurrentOperationError(
            f"Resource {resource.id} is already {current.value} ({resource.last_operation})"
        )
    if (
        current in (ResourceStatus.INSTALLED, ResourceStatus.ACTIVE)
        and not state.can_transition(current, provisioner.in_progress_status)
    ):
        state.transition(resource, ResourceStatus.PENDING, status_field=provisioner.status_field)
    elif not state.can_transition(current, provisioner.in_progress_status):
        raise InvalidTransition(current, provisioner.in_progress_status, provisioner.status_field)
    fields = ["last_operation"]
    stale = [key for key in provisioner.transient_config if key in resource.configuration]
    if stale:
        for key in stale:
            del resource.configuration[key]
        fields.append("configuration")
    resource.last_operation = provisioner.operation
    runtime.store.save(resource, fields)


class ProvisioningJob:
    def __init__(self, runtime: Runtime, request: OperationRequest) -> None:
        self.runtime = runtime
        self.request = request

    @property
    def store(self) -> "ResourceStore":
        return self.runtime.store

    @property
    def provisioner(self) -> Provisioner:
        return self.runtime.registry.get(self.request.operation)

    @property
    def policy(self) -> JobPolicy:
        return self.runtime.policy_for(self.provisioner)

    def handle(self, attempt: int = 1) -> JobOutcome:
        """Run one attempt.

        Raises only when the queue should try again: a transient error with
        budget left, or `OperationLocked` before anything was touched.
        """
        provisioner = self.provisioner
        policy = self.policy
        final_attempt = attempt >= policy.attempts

        resource = self._load_runnable(provisioner, attempt)
        if resource is None:
            return JobOutcome.SKIPPED

        lock = self.runtime.locks(provisioner.lock_key(resource))
        lock.acquire(self.runtime.lock_wait)
        try:
            # The previous holder may have changed the record while we waited
            resource = self._load_runnable(provisioner, attempt)
            if resource is None:
                return JobOutcome.SKIPPED
            self._run(provisioner, policy, resource, attempt, final_attempt)
            return JobOutcome.SUCCEEDED
        except ConcurrentOperationError as exc:
            logger.warning("⏭️ Skipping %s: %s", provisioner.operation, exc)
            return JobOutcome.SKIPPED
        except Exception as exc:
            if is_retryable(exc) and not final_attempt:
                self._record_attempt_failure(provisioner, exc, attempt, policy.attempts)
                raise
            self.failed(exc)
            return JobOutcome.FAILED
        finally:
            lock.release()

    def _load_runnable(self, provisioner: Provisioner, attempt: int) -> Optional[ManagedResource]:
        resource = self.store.load(self.request.resource_id)
        if resource is None:
            logger.info(
                "Resource %s no longer exists, nothing to do for %s",
                self.request.resource_id,
                self.request.operation,
            )
            return None

        current = resource.get_status(provisioner.status_field)
        if attempt > 1 and current not in (provisioner.in_progress_status, ResourceStatus.PENDING, None):
            # Cancelled or superseded between attempts
            logger.info(
                "Skipping redelivered %s for resource %s: status is %s",
                provisioner.operation,
                resource.id,
                current.value if current else None,
            )
            return None
        return resource

    def run_sync(self) -> JobOutcome:
        """Run every attempt in-process, without a queue."""
        attempts = self.policy.attempts
        for attempt in range(1, attempts + 1):
            try:
                return self.handle(attempt)
            except OperationLocked:
                raise
            except Exception as exc:
                logger.warning("Attempt %d/%d failed, retrying: %s", attempt, attempts, exc)
        return JobOutcome.FAILED

    def _run(
        self,
        provisioner: Provisioner,
        policy: JobPolicy,
        resource: ManagedResource,
        attempt: int,
        final_attempt: bool,
    ) -> None:
        server = self.store.load_server(self.request.server_id)
        if server is None:
            raise ServerMissingError(self.request.server_id)

        config = {**resource.configuration, **self.request.config}
        if provisioner.prepare is not None:
            config = provisioner.prepare(resource, config)
        build_config = config
        if provisioner.resolve is not None:
            build_config = provisioner.resolve(self.store, resource, config)
        steps = provisioner.build(resource, build_config)
        self._check_singleton(provisioner, resource)

        if provisioner.compensate:
            self.runtime.rollback.capture(resource)

        self.runtime.state.begin(resource, provisioner, redelivery=attempt > 1)
        resource.configuration = config
        self.store.save(resource, ["configuration"])

        logger.info(
            "🚀 %s %s %s on server %s (%s, attempt %d/%d)",
            provisioner.action.action_name,
            resource.resource_type,
            resource.key,
            server.id,
            provisioner.operation,
            attempt,
            policy.attempts,
        )

        tracker = MilestoneTracker(
            self.store,
            self.runtime.sink,
            provisioner.milestones,
            resource,
            server,
            action_name=provisioner.action.action_name,
            final_attempt=final_attempt,
        )
        context = ExecutionContext(store=self.store, resource=resource, server=server, config=config)
        executor = RemoteExecutor(policy.timeout)

        with self._open_session(server, provisioner, steps) as session:
            execution = executor.run(session, steps, context, tracker.on_step)

        if not execution.ok:
            if execution.timed_out:
                raise ExecutionTimeout(policy.timeout, execution.error_text())
            raise RemoteCommandError(execution.error_text(), execution.failed.exit_status)

        self._succeed(provisioner, resource, config, tracker)

    def _open_session(self, server: ServerRecord, provisioner: Provisioner, steps):
        if not any(step.is_remote for step in steps):
            return contextlib.nullcontext(None)
        return self.runtime.sessions.open(server, provisioner.role)

    def _succeed(
        self,
        provisioner: Provisioner,
        resource: ManagedResource,
        config: Dict[str, Any],
        tracker: MilestoneTracker,
    ) -> None:
        extra = provisioner.on_success(resource, config) if provisioner.on_success else {}

        if provisioner.delete_on_success:
            tracker.complete()
            self.store.delete(resource.id)
        else:
            self.runtime.state.succeed(resource, provisioner, **extra)
            tracker.complete()
            if provisioner.compensate:
                self.runtime.rollback.discard(resource)

        logger.info(
            "✅ %s finished for %s %s on server %s",
            provisioner.operation,
            resource.resource_type,
            resource.key,
            resource.server_id,
        )

    def _check_singleton(self, provisioner: Provisioner, resource: ManagedResource) -> None:
        if not provisioner.singleton:
            return
        for other in self.store.find(resource.server_id, resource.resource_type):
            if other.id != resource.id and other.status.is_live:
                raise ValidationError(
                    f"Server {resource.server_id} already has a {resource.resource_type}"
                    f" ({other.key}, {other.status.value})"
                )

    def _record_attempt_failure(self, provisioner: Provisioner, exc: Exception, attempt: int, attempts: int) -> None:
        logger.warning(
            "⚠️ %s attempt %d/%d failed for resource %s: %s",
            provisioner.operation,
            attempt,
            attempts,
            self.request.resource_id,
            exc,
        )
        resource = self.store.load(self.request.resource_id)
        if resource is None:
            return
        resource.error_log = str(exc) or type(exc).__name__
        self.store.save(resource, ["error_log"])

    def failed(self, exc: BaseException) -> None:
        """Permanent failure handler. Safe to call more than once."""
        try:
            provisioner: Optional[Provisioner] = self.provisioner
        except UnknownOperationError:
            provisioner = None
        status_field = provisioner.status_field if provisioner else "status"

        resource = self.store.load(self.request.resource_id)
        if resource is None:
            logger.info("Resource %s is gone, nothing to mark failed", self.request.resource_id)
            return

        current = resource.get_status(status_field)
        if current is ResourceStatus.FAILED:
            logger.debug("Resource %s already failed", resource.id)
            return
        if current is not None and not current.can_transition_to(ResourceStatus.FAILED):
            logger.warning("Resource %s is %s, not marking failed: %s", resource.id, current.value, exc)
            return

        error_log = str(exc) or type(exc).__name__
        self.runtime.state.fail(resource, error_log, status_field=status_field)
        logger.error(
            "❌ %s failed for %s %s on server %s: %s",
            self.request.operation,
            resource.resource_type,
            resource.key,
            resource.server_id,
            error_log,
        )

        if provisioner is not None:
            server = self.store.load_server(self.request.server_id) or ServerRecord(
                id=self.request.server_id, host="unknown"
            )
            MilestoneTracker(
                self.store,
                self.runtime.sink,
                provisioner.milestones,
                resource,
                server,
                action_name=provisioner.action.action_name,
            ).terminal_failure(error_log, _failure_details(exc))
            if provisioner.compensate:
                self.runtime.rollback.restore(resource.id)


def _failure_details(exc: BaseException) -> Dict[str, Any]:
    exit_status = getattr(exc, "exit_status", None)
    details: Dict[str, Any] = {"exception": type(exc).__name__}
    if exit_status is not None:
        details["exit_status"] = exit_status
    return details


def cancel(runtime: Runtime, resource_id: str) -> bool:
    """Force the resource's current operation to failed so a new one can start."""
    resource = runtime.store.load(resource_id)
    if resource is None:
        return False
    provisioner = (
        runtime.registry.get(resource.last_operation)
        if resource.last_operation in runtime.registry
        else None
    )
    status_field = provisioner.status_field if provisioner else "status"
    runtime.state.force_fail(resource, status_field=status_field)
    logger.warning("🛑 Cancelled %s on resource %s", resource.last_operation, resource.id)
    if provisioner is not None and provisioner.compensate:
        runtime.rollback.restore(resource.id)
    return True
