"""Data models shared by the store, the engine and the CLI."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ResourceStatus(Enum):
    """Lifecycle status of a managed resource."""

    PENDING = "pending"
    INSTALLING = "installing"
    UPDATING = "updating"
    INSTALLED = "installed"
    ACTIVE = "active"
    REMOVING = "removing"
    REMOVED = "removed"
    FAILED = "failed"

    @property
    def in_progress(self) -> bool:
        return self in IN_PROGRESS_STATUSES

    @property
    def is_success(self) -> bool:
        return self in SUCCESS_STATUSES

    @property
    def is_live(self) -> bool:
        """Counts against a singleton scope (anything but failed/removed)."""
        return self not in (ResourceStatus.FAILED, ResourceStatus.REMOVED)

    def can_transition_to(self, target: "ResourceStatus") -> bool:
        return target == self or target in TRANSITIONS[self]


IN_PROGRESS_STATUSES: FrozenSet[ResourceStatus] = frozenset(
    {ResourceStatus.INSTALLING, ResourceStatus.UPDATING, ResourceStatus.REMOVING}
)

SUCCESS_STATUSES: FrozenSet[ResourceStatus] = frozenset(
    {ResourceStatus.INSTALLED, ResourceStatus.ACTIVE, ResourceStatus.REMOVED}
)

TRANSITIONS: Mapping[ResourceStatus, FrozenSet[ResourceStatus]] = {
    ResourceStatus.PENDING: frozenset(
        {
            ResourceStatus.INSTALLING,
            ResourceStatus.UPDATING,
            ResourceStatus.REMOVING,
            ResourceStatus.FAILED,
        }
    ),
    ResourceStatus.INSTALLING: frozenset(
        {ResourceStatus.INSTALLED, ResourceStatus.ACTIVE, ResourceStatus.FAILED}
    ),
    ResourceStatus.UPDATING: frozenset(
        {ResourceStatus.INSTALLED, ResourceStatus.ACTIVE, ResourceStatus.FAILED}
    ),
    ResourceStatus.INSTALLED: frozenset(
        {
            ResourceStatus.PENDING,
            ResourceStatus.UPDATING,
            ResourceStatus.REMOVING,
            ResourceStatus.FAILED,
        }
    ),
    ResourceStatus.ACTIVE: frozenset(
        {
            ResourceStatus.PENDING,
            ResourceStatus.UPDATING,
            ResourceStatus.REMOVING,
            ResourceStatus.FAILED,
        }
    ),
    ResourceStatus.REMOVING: frozenset({ResourceStatus.REMOVED, ResourceStatus.FAILED}),
    ResourceStatus.FAILED: frozenset({ResourceStatus.PENDING, ResourceStatus.REMOVING}),
    ResourceStatus.REMOVED: frozenset(),
}

# A site carries three independent lifecycles
STATUS_FIELDS = ("status", "git_status", "default_status")


@dataclass
class Progress:
    step: int = 0
    total: int = 0
    label: Optional[str] = None
    status: Optional[str] = None


@dataclass
class ServerRecord:
    id: str
    host: str
    port: int = 22
    name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServerRecord":
        return cls(
            id=str(data["id"]),
            host=data["host"],
            port=int(data.get("port", 22)),
            name=data.get("name"),
        )


@dataclass
class ManagedResource:
    """One provisioned capability on one server."""

    id: str
    server_id: str
    resource_type: str
    key: str
    status: ResourceStatus = ResourceStatus.PENDING
    git_status: Optional[ResourceStatus] = None
    default_status: Optional[ResourceStatus] = None
    is_default: bool = False
    progress: Progress = field(default_factory=Progress)
    error_log: Optional[str] = None
    configuration: Dict[str, Any] = field(default_factory=dict)
    last_operation: Optional[str] = None
    rollback_snapshot: Optional[Dict[str, bool]] = None
    installed_at: Optional[str] = None
    uninstalled_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def new(
        cls,
        server_id: str,
        resource_type: str,
        key: str,
        configuration: Optional[Dict[str, Any]] = None,
    ) -> "ManagedResource":
        return cls(
            id=uuid.uuid4().hex,
            server_id=str(server_id),
            resource_type=resource_type,
            key=str(key),
            configuration=dict(configuration or {}),
        )

    def get_status(self, status_field: str = "status") -> Optional[ResourceStatus]:
        if status_field not in STATUS_FIELDS:
            raise ValueError(f"Unknown status field: {status_field}")
        return getattr(self, status_field)

    def set_status(self, status_field: str, status: ResourceStatus) -> None:
        if status_field not in STATUS_FIELDS:
            raise ValueError(f"Unknown status field: {status_field}")
        setattr(self, status_field, status)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for name in STATUS_FIELDS:
            value = getattr(self, name)
            data[name] = value.value if value is not None else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ManagedResource":
        def status_or_none(value: Optional[str]) -> Optional[ResourceStatus]:
            return ResourceStatus(value) if value else None

        return cls(
            id=str(data["id"]),
            server_id=str(data["server_id"]),
            resource_type=data["resource_type"],
            key=str(data.get("key", "")),
            status=ResourceStatus(data.get("status", "pending")),
            git_status=status_or_none(data.get("git_status")),
            default_status=status_or_none(data.get("default_status")),
            is_default=bool(data.get("is_default", False)),
            progress=Progress(**(data.get("progress") or {})),
            error_log=data.get("error_log"),
            configuration=dict(data.get("configuration") or {}),
            last_operation=data.get("last_operation"),
            rollback_snapshot=data.get("rollback_snapshot"),
            installed_at=data.get("installed_at"),
            uninstalled_at=data.get("uninstalled_at"),
            updated_at=data.get("updated_at"),
        )


@dataclass(frozen=True)
class ProgressEvent:
    """Append-only audit record of one milestone being reached."""

    server_id: str
    resource_id: str
    operation: str
    milestone: str
    label: str
    current_step: int
    total_steps: int
    status: str
    details: Dict[str, Any] = field(default_factory=dict)
    error_log: Optional[str] = None
    created_at: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProgressEvent":
        return cls(**data)
