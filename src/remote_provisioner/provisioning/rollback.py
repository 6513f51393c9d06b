"""Compensation for singleton swaps (default site, CLI default PHP).

The snapshot is taken before the swap and persisted on the resource being
promoted, so a retry or a crashed worker never re-captures post-swap state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Optional

from ..models import ManagedResource
from ..utils.logging import get_logger

if TYPE_CHECKING:
    from ..store import ResourceStore

logger = get_logger(__name__)


@dataclass
class Snapshot:
    """`is_default` of every resource of one type on one server."""

    resource_id: str
    flags: Dict[str, bool] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, bool]:
        return dict(self.flags)

    @classmethod
    def from_resource(cls, resource: ManagedResource) -> Optional["Snapshot"]:
        if resource.rollback_snapshot is None:
            return None
        return cls(resource_id=resource.id, flags=dict(resource.rollback_snapshot))


class SingletonRollbackManager:
    def __init__(self, store: "ResourceStore") -> None:
        self.store = store

    def capture(self, resource: ManagedResource) -> Snapshot:
        existing = Snapshot.from_resource(resource)
        if existing is not None:
            logger.debug("Reusing persisted snapshot for resource %s", resource.id)
            return existing

        siblings = self.store.find(resource.server_id, resource.resource_type)
        flags = {sibling.id: sibling.is_default for sibling in siblings}
        flags[resource.id] = resource.is_default

        resource.rollback_snapshot = flags
        self.store.save(resource, ["rollback_snapshot"])
        logger.info(
            "Captured %s default flags on server %s before swapping",
            resource.resource_type,
            resource.server_id,
        )
        return Snapshot(resource_id=resource.id, flags=flags)

    def restore(self, resource_id: str) -> bool:
        """Reassert every captured flag, then drop the snapshot. Safe to call repeatedly."""
        resource = self.store.load(resource_id)
        if resource is None:
            return False
        snapshot = Snapshot.from_resource(resource)
        if snapshot is None:
            logger.debug("No rollback snapshot on resource %s", resource_id)
            return False

        for other_id, flag in snapshot.flags.items():
            if other_id == resource.id:
                continue
            other = self.store.load(other_id)
            if other is None:
                continue
            if other.is_default != flag:
                other.is_default = flag
                self.store.save(other, ["is_default"])

        resource.is_default = snapshot.flags.get(resource.id, resource.is_default)
        resource.rollback_snapshot = None
        self.store.save(resource, ["is_default", "rollback_snapshot"])
        logger.warning(
            "↩️ Restored %s default flags on server %s",
            resource.resource_type,
            resource.server_id,
        )
        return True

    def discard(self, resource: ManagedResource) -> None:
        if resource.rollback_snapshot is None:
            return
        resource.rollback_snapshot = None
        self.store.save(resource, ["rollback_snapshot"])
