"""The `Provisioner` value: everything the engine needs to know about one operation kind.

One generic engine runs every operation; a provisioner only contributes data
and a pure command builder.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional, Tuple

from ..models import ManagedResource, ResourceStatus
from ..ssh.credentials import CredentialRole
from .errors import UnknownOperationError
from .milestones import MilestoneDefinition, catalog_payload
from .steps import Step

if TYPE_CHECKING:
    from ..store import ResourceStore

Builder = Callable[[ManagedResource, Dict[str, Any]], List[Step]]
ConfigHook = Callable[[ManagedResource, Dict[str, Any]], Dict[str, Any]]
# Reads values from related records for the builder; the result is never persisted
Resolver = Callable[["ResourceStore", ManagedResource, Dict[str, Any]], Dict[str, Any]]


class OperationAction(Enum):
    INSTALL = "install"
    UPDATE = "update"
    REMOVE = "remove"

    @property
    def in_progress_status(self) -> ResourceStatus:
        return {
            OperationAction.INSTALL: ResourceStatus.INSTALLING,
            OperationAction.UPDATE: ResourceStatus.UPDATING,
            OperationAction.REMOVE: ResourceStatus.REMOVING,
        }[self]

    @property
    def action_name(self) -> str:
        return {
            OperationAction.INSTALL: "Installing",
            OperationAction.UPDATE: "Updating",
            OperationAction.REMOVE: "Removing",
        }[self]


class LockScope(Enum):
    """What a mutual-exclusion key is made of."""

    SERVER_TYPE = "server_type"      # provision:{server}:{type}
    RESOURCE = "resource"            # provision:{server}:{type}:{resource}
    SITE = "site"                    # provision:{server}:site:{site_id}


@dataclass(frozen=True)
class Provisioner:
    operation: str
    resource_type: str
    action: OperationAction
    milestones: MilestoneDefinition
    build: Builder
    role: CredentialRole = CredentialRole.ROOT
    status_field: str = "status"
    success_status: ResourceStatus = ResourceStatus.ACTIVE
    lock_scope: LockScope = LockScope.SERVER_TYPE
    lock_name: Optional[str] = None
    timeout: Optional[int] = None
    tries: Optional[int] = None
    max_exceptions: Optional[int] = None
    delete_on_success: bool = False
    singleton: bool = False
    compensate: bool = False
    prepare: Optional[ConfigHook] = None
    on_success: Optional[ConfigHook] = None
    resolve: Optional[Resolver] = None
    # Configuration keys that belong to one queued run; retries of that run keep them
    transient_config: Tuple[str, ...] = ()

    @property
    def in_progress_status(self) -> ResourceStatus:
        return self.action.in_progress_status

    def lock_key(self, resource: ManagedResource) -> str:
        name = self.lock_name or self.resource_type
        if self.lock_scope is LockScope.RESOURCE:
            return f"provision:{resource.server_id}:{name}:{resource.id}"
        if self.lock_scope is LockScope.SITE:
            site_id = resource.configuration.get("site_id", resource.id)
            return f"provision:{resource.server_id}:site:{site_id}"
        return f"provision:{resource.server_id}:{name}"


class ProvisionerRegistry:
    def __init__(self, provisioners: Iterable[Provisioner] = ()) -> None:
        self._provisioners: Dict[str, Provisioner] = {}
        for provisioner in provisioners:
            self.register(provisioner)

    def register(self, provisioner: Provisioner) -> None:
        if provisioner.operation != provisioner.milestones.operation:
            raise ValueError(
                f"Milestones for {provisioner.milestones.operation} attached to {provisioner.operation}"
            )
        if provisioner.operation in self._provisioners:
            raise ValueError(f"Operation {provisioner.operation} registered twice")
        self._provisioners[provisioner.operation] = provisioner

    def get(self, operation: str) -> Provisioner:
        try:
            return self._provisioners[operation]
        except KeyError:
            raise UnknownOperationError(operation) from None

    def __contains__(self, operation: str) -> bool:
        return operation in self._provisioners

    def operations(self) -> List[str]:
        return sorted(self._provisioners)

    def all(self) -> List[Provisioner]:
        return [self._provisioners[name] for name in self.operations()]

    def catalog(self) -> Dict[str, List[Dict[str, str]]]:
        return catalog_payload([p.milestones for p in self.all()])
