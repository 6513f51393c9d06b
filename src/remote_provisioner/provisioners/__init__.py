"""Built-in provisioners, one module per managed service."""

from __future__ import annotations

from typing import Dict, List

from ..provisioning.provisioner import Provisioner, ProvisionerRegistry
from . import database, database_users, deployment, firewall, git, nginx, node, php, scheduler, sites, supervisor

BUILTIN_PROVISIONERS: List[Provisioner] = [
    *php.PROVISIONERS,
    *database.PROVISIONERS,
    *database_users.PROVISIONERS,
    *node.PROVISIONERS,
    *nginx.PROVISIONERS,
    *firewall.PROVISIONERS,
    *supervisor.PROVISIONERS,
    *scheduler.PROVISIONERS,
    *git.PROVISIONERS,
    *deployment.PROVISIONERS,
    *sites.PROVISIONERS,
]


def default_registry() -> ProvisionerRegistry:
    return ProvisionerRegistry(BUILTIN_PROVISIONERS)


def milestone_catalog() -> Dict[str, List[Dict[str, str]]]:
    """Milestones of every operation, for UIs rendering progress."""
    return default_registry().catalog()


__all__ = ["BUILTIN_PROVISIONERS", "default_registry", "milestone_catalog"]
