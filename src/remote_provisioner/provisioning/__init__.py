"""Generic job engine: milestones, state machine, locks, executor and queue glue."""

from .errors import (
    ConcurrentOperationError,
    ExecutionTimeout,
    InvalidTransition,
    OperationLocked,
    ProvisioningError,
    RemoteCommandError,
    ServerMissingError,
    UnknownOperationError,
    ValidationError,
)
from .jobs import JobOutcome, JobPolicy, OperationRequest, ProvisioningJob, Runtime, cancel, mark_queued
from .milestones import MilestoneDefinition
from .provisioner import LockScope, OperationAction, Provisioner, ProvisionerRegistry

__all__ = [
    "ConcurrentOperationError",
    "ExecutionTimeout",
    "InvalidTransition",
    "OperationLocked",
    "ProvisioningError",
    "RemoteCommandError",
    "ServerMissingError",
    "UnknownOperationError",
    "ValidationError",
    "JobOutcome",
    "JobPolicy",
    "OperationRequest",
    "ProvisioningJob",
    "Runtime",
    "cancel",
    "mark_queued",
    "MilestoneDefinition",
    "LockScope",
    "OperationAction",
    "Provisioner",
    "ProvisionerRegistry",
]
