"""rq worker entrypoints.

`perform` is what the queue calls; it rebuilds the request, works out which
attempt this is from rq's retry bookkeeping and delegates to
`ProvisioningJob.handle`.
"""

from __future__ import annotations

import os
from typing import Any, Dict, Iterable, Optional

from rq import Queue, Worker, get_current_job

from ..utils.logging import get_logger
from .errors import OperationLocked
from .jobs import JobOutcome, OperationRequest, ProvisioningJob, Runtime
from .queue import ProvisioningQueue, attempt_number

logger = get_logger(__name__)

_runtime: Optional[Runtime] = None


def set_runtime(runtime: Optional[Runtime]) -> None:
    global _runtime
    _runtime = runtime


def get_runtime() -> Runtime:
    global _runtime
    if _runtime is None:
        from ..config import load_config
        from ..runtime import build_runtime

        _runtime = build_runtime(load_config(os.getenv("REMOTE_PROVISIONER_CONFIG")))
    return _runtime


def perform(payload: Dict[str, Any]) -> str:
    runtime = get_runtime()
    request = OperationRequest.from_dict(payload)
    job = ProvisioningJob(runtime, request)
    current = get_current_job()
    retries_left = current.retries_left if current is not None else None
    attempt = attempt_number(payload, job.policy, retries_left)

    try:
        outcome = job.handle(attempt)
    except OperationLocked:
        if current is None:
            raise
        delay = runtime.config.queue.release_after if runtime.config is not None else 15
        queue = Queue(current.origin, connection=current.connection)
        ProvisioningQueue(runtime, queue).requeue(request, attempt, delay)
        return JobOutcome.SKIPPED.value
    return outcome.value


def on_failure(job, connection, exc_type, exc_value, traceback) -> None:
    """rq failure callback; only acts once no retry is left."""
    if job.retries_left:
        return
    payload = job.args[0] if job.args else None
    if not payload:
        return
    logger.error("❌ Job %s exhausted its attempts: %s", job.id, exc_value)
    ProvisioningJob(get_runtime(), OperationRequest.from_dict(payload)).failed(
        exc_value if exc_value is not None else RuntimeError("Job failed")
    )


def run_worker(runtime: Runtime, queue_names: Optional[Iterable[str]] = None, *, burst: bool = False) -> bool:
    if runtime.connection is None:
        raise ValueError("Runtime has no Redis connection")
    set_runtime(runtime)
    names = list(queue_names or [runtime.config.queue.queue_name])
    queues = [Queue(name, connection=runtime.connection) for name in names]
    logger.info("👷 Worker listening on %s", ", ".join(names))
    worker = Worker(queues, connection=runtime.connection)
    return worker.work(with_scheduler=True, burst=burst)
