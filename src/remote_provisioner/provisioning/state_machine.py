"""Resource lifecycle transitions.

Every status write goes through `transition`, which checks the table in
`models.TRANSITIONS` and keeps `error_log` and the install/uninstall
timestamps consistent with the new status. Each write is persisted
immediately so polling UIs never see buffered state.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

from ..models import ManagedResource, Progress, ResourceStatus, utc_now
from ..utils.logging import get_logger
from .errors import ConcurrentOperationError, InvalidTransition

if TYPE_CHECKING:
    from ..store import ResourceStore
    from .provisioner import Provisioner

logger = get_logger(__name__)

CANCELLED_MESSAGE = "Cancelled by user"


class ResourceStateMachine:
    def __init__(self, store: "ResourceStore") -> None:
        self.store = store

    @staticmethod
    def can_transition(current: Optional[ResourceStatus], target: ResourceStatus) -> bool:
        # Secondary status fields start out empty, which behaves like pending
        return (current or ResourceStatus.PENDING).can_transition_to(target)

    def transition(
        self,
        resource: ManagedResource,
        target: ResourceStatus,
        *,
        status_field: str = "status",
        error_log: Optional[str] = None,
        **extra: Any,
    ) -> bool:
        """Apply and persist a transition. Returns False if the record is gone."""
        current = resource.get_status(status_field)
        if not self.can_transition(current, target):
            raise InvalidTransition(current, target, status_field)

        fields = [status_field, "error_log"]
        resource.set_status(status_field, target)

        if target is ResourceStatus.FAILED:
            if not error_log:
                raise ValueError("Entering failed requires a non-empty error_log")
            resource.error_log = error_log
        elif target.is_success:
            resource.error_log = None
            if target is ResourceStatus.REMOVED:
                resource.uninstalled_at = utc_now()
                fields.append("uninstalled_at")
            else:
                resource.installed_at = utc_now()
                fields.append("installed_at")
        elif error_log is not None:
            resource.error_log = error_log

        for name, value in extra.items():
            setattr(resource, name, value)
            fields.append(name)

        logger.debug(
            "Resource %s %s: %s -> %s",
            resource.id,
            status_field,
            current.value if current else None,
            target.value,
        )
        return self.store.save(resource, fields)

    def begin(self, resource: ManagedResource, provisioner: "Provisioner", *, redelivery: bool = False) -> bool:
        """Enter the operation's in-progress status.

        Re-entering the same in-progress status is a queue redelivery of this
        operation; anything else already in progress is a conflicting operation.
        """
        target = provisioner.in_progress_status
        current = resource.get_status(provisioner.status_field)
        if current is not None and current.in_progress:
            same_operation = current is target and resource.last_operation == provisioner.operation
            if not (redelivery and same_operation):
                raise ConcurrentOperationError(
                    f"Resource {resource.id} is already {current.value}"
                    f" ({resource.last_operation or 'unknown operation'})"
                )
        return self.transition(
            resource,
            target,
            status_field=provisioner.status_field,
            last_operation=provisioner.operation,
        )

    def succeed(self, resource: ManagedResource, provisioner: "Provisioner", **extra: Any) -> bool:
        return self.transition(
            resource,
            provisioner.success_status,
            status_field=provisioner.status_field,
            **extra,
        )

    def fail(self, resource: ManagedResource, error_log: str, *, status_field: str = "status") -> bool:
        return self.transition(
            resource,
            ResourceStatus.FAILED,
            status_field=status_field,
            error_log=error_log or "Unknown error",
        )

    def force_fail(self, resource: ManagedResource, *, status_field: str = "status", reason: str = CANCELLED_MESSAGE) -> bool:
        """Cancel: release the resource for a new operation. Any orphaned
        remote session times out on its own."""
        return self.fail(resource, reason, status_field=status_field)

    def reset_for_retry(self, resource: ManagedResource, *, status_field: str = "status") -> bool:
        current = resource.get_status(status_field)
        if current is not ResourceStatus.FAILED:
            raise InvalidTransition(current, ResourceStatus.PENDING, status_field)
        # transition leaves error_log alone when given None, and always saves it
        resource.error_log = None
        return self.transition(
            resource,
            ResourceStatus.PENDING,
            status_field=status_field,
            progress=Progress(),
        )
