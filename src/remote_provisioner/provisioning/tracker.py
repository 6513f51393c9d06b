"""Milestone tracking: persists progress after every step and notifies the sink."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Optional

from ..models import ManagedResource, Progress, ProgressEvent, ServerRecord, utc_now
from ..utils.logging import get_logger
from .milestones import COMPLETE, MilestoneDefinition
from .steps import Step, StepResult

if TYPE_CHECKING:
    from ..events import EventSink
    from ..store import ResourceStore

logger = get_logger(__name__)

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
STATUS_RETRYING = "retrying"


class MilestoneTracker:
    """Tracks one run of one operation against one resource."""

    def __init__(
        self,
        store: "ResourceStore",
        sink: "EventSink",
        definition: MilestoneDefinition,
        resource: ManagedResource,
        server: ServerRecord,
        *,
        action_name: str = "Installing",
        final_attempt: bool = True,
    ) -> None:
        self.store = store
        self.sink = sink
        self.definition = definition
        self.resource = resource
        self.server = server
        self.action_name = action_name
        self.final_attempt = final_attempt

    @property
    def total(self) -> int:
        return self.definition.count_labels()

    def on_step(self, step: Step, result: StepResult) -> None:
        """Executor callback, called after each step succeeds or fails."""
        if result.ok:
            self.record(result.index, step.milestone, STATUS_SUCCESS)
            return
        # Progress only; the failed audit entry is written by terminal_failure
        self.record(
            result.index,
            step.milestone,
            STATUS_FAILED if self.final_attempt else STATUS_RETRYING,
            details={"exit_status": result.exit_status},
            audit=False,
        )

    def complete(self) -> None:
        self.record(self.total, COMPLETE, STATUS_SUCCESS)

    def terminal_failure(self, error_log: str, details: Optional[Dict[str, Any]] = None) -> None:
        """Audit entry for a permanent failure, at the last recorded step.

        This is the only failed event a run of an operation produces.
        """
        step = self.resource.progress.step or 0
        key = self._key_at(step)
        self.record(step, key, STATUS_FAILED, details=details, error_log=error_log, audit=True, persist=False)

    def record(
        self,
        step: int,
        milestone_key: str,
        status: str,
        *,
        details: Optional[Dict[str, Any]] = None,
        error_log: Optional[str] = None,
        audit: bool = True,
        persist: bool = True,
    ) -> None:
        label = self.definition.label_for(milestone_key)
        logger.info(
            "%s milestone: %s (step %d/%d) for %s %s on server %s [%s]",
            self.action_name,
            label,
            step,
            self.total,
            self.resource.resource_type,
            self.resource.key,
            self.server.id,
            status,
        )

        if persist:
            self.resource.progress = Progress(step=step, total=self.total, label=label, status=status)
            self.store.save(self.resource, ["progress"])

        event_details = {
            "server_ip": self.server.host,
            "server_name": self.server.name,
            "resource_key": self.resource.key,
            "timestamp": utc_now(),
            **(details or {}),
        }
        if audit:
            self.store.append_event(
                ProgressEvent(
                    server_id=self.server.id,
                    resource_id=self.resource.id,
                    operation=self.definition.operation,
                    milestone=milestone_key,
                    label=label,
                    current_step=step,
                    total_steps=self.total,
                    status=status,
                    details=event_details,
                    error_log=error_log,
                )
            )

        self._notify(
            {
                "resource_id": self.resource.id,
                "resource_type": self.resource.resource_type,
                "operation": self.definition.operation,
                "milestone": milestone_key,
                "label": label,
                "current_step": step,
                "total_steps": self.total,
                "status": status,
                "details": event_details,
            }
        )

    def _key_at(self, step: int) -> str:
        keys = self.definition.keys()
        if 1 <= step <= len(keys):
            return keys[step - 1]
        return keys[0]

    def _notify(self, payload: Dict[str, Any]) -> None:
        try:
            self.sink.publish(self.server.id, payload)
        except Exception as exc:
            logger.warning("Event sink rejected progress for server %s: %s", self.server.id, exc)
