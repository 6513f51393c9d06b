"""rq front door: validate, mark the record queued, and hand the job to Redis."""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, Optional

from rq import Callback, Queue, Retry
from rq.job import Job

from ..utils.logging import get_logger
from .jobs import JobPolicy, OperationRequest, Runtime, mark_queued
from .provisioner import Provisioner

logger = get_logger(__name__)

PERFORM = "remote_provisioner.provisioning.worker.perform"
ON_FAILURE = "remote_provisioner.provisioning.worker.on_failure"

# Head room so the executor's own deadline fires before rq kills the job
JOB_TIMEOUT_GRACE = 60


class ProvisioningQueue:
    def __init__(self, runtime: Runtime, queue: Queue) -> None:
        self.runtime = runtime
        self.queue = queue

    def enqueue(
        self,
        operation: str,
        server_id: str,
        resource_id: str,
        config: Optional[Dict[str, Any]] = None,
    ) -> Job:
        provisioner = self.runtime.registry.get(operation)
        resource = self.runtime.store.load(resource_id)
        if resource is None:
            raise LookupError(f"Resource {resource_id} does not exist")
        if resource.server_id != str(server_id):
            raise ValueError(f"Resource {resource_id} does not belong to server {server_id}")

        mark_queued(self.runtime, provisioner, resource)
        request = OperationRequest(operation, str(server_id), resource_id, dict(config or {}))
        job = self._submit(provisioner, request, first_attempt=1)
        logger.info("📥 Queued %s for resource %s (job %s)", operation, resource_id, job.id)
        return job

    def requeue(self, request: OperationRequest, first_attempt: int, delay: float) -> Job:
        """Put a locked-out attempt back without spending any of its budget."""
        provisioner = self.runtime.registry.get(request.operation)
        job = self._submit(provisioner, request, first_attempt=first_attempt, delay=delay)
        logger.info(
            "🔒 %s for resource %s is locked out, retrying in %ss",
            request.operation,
            request.resource_id,
            delay,
        )
        return job

    def retry(self, resource_id: str) -> Job:
        """Re-run the last operation of a failed resource from the start."""
        resource = self.runtime.store.load(resource_id)
        if resource is None:
            raise LookupError(f"Resource {resource_id} does not exist")
        if not resource.last_operation:
            raise ValueError(f"Resource {resource_id} has no operation to retry")
        provisioner = self.runtime.registry.get(resource.last_operation)
        self.runtime.state.reset_for_retry(resource, status_field=provisioner.status_field)
        return self.enqueue(provisioner.operation, resource.server_id, resource.id)

    def _submit(
        self,
        provisioner: Provisioner,
        request: OperationRequest,
        *,
        first_attempt: int,
        delay: float = 0,
    ) -> Job:
        policy = self.runtime.policy_for(provisioner)
        payload = {**request.to_dict(), "first_attempt": first_attempt}
        remaining = policy.attempts - first_attempt
        if remaining < 0:
            raise ValueError(f"Attempt {first_attempt} exceeds the budget of {policy.attempts}")
        options: Dict[str, Any] = {
            "job_timeout": policy.timeout + JOB_TIMEOUT_GRACE,
            "on_failure": Callback(ON_FAILURE),
            "description": f"{request.operation} {request.resource_id}",
        }
        if remaining > 0:
            options["retry"] = Retry(max=remaining)
        if delay > 0:
            return self.queue.enqueue_in(timedelta(seconds=delay), PERFORM, payload, **options)
        return self.queue.enqueue(PERFORM, payload, **options)


def attempt_number(payload: Dict[str, Any], policy: JobPolicy, retries_left: Optional[int]) -> int:
    """1-based attempt from the payload's starting attempt and rq's remaining retries."""
    first_attempt = int(payload.get("first_attempt", 1))
    if retries_left is None:
        return first_attempt
    scheduled = policy.attempts - first_attempt
    return first_attempt + max(scheduled - retries_left, 0)
