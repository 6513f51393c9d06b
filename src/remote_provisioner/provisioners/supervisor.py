"""Supervisor-managed long-running tasks."""

from __future__ import annotations

import re
from typing import Any, Dict, List

from ..models import ManagedResource, ResourceStatus
from ..provisioning.errors import ValidationError
from ..provisioning.milestones import MilestoneDefinition
from ..provisioning.provisioner import OperationAction, Provisioner
from ..provisioning.steps import Step, heredoc, remote
from .common import apt_install, apt_update, bounded_int, optional_str, required_str, single_line, system_user

CONF_DIR = "/etc/supervisor/conf.d"
LOG_DIR = "/var/log/supervisor"

_PROGRAM_NAME = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

INSTALL_MILESTONES = MilestoneDefinition.of(
    "supervisor.install_task",
    ("ensure_supervisor", "Ensuring Supervisor is installed"),
    ("write_program_config", "Writing program configuration"),
    ("reload_supervisor", "Reloading Supervisor"),
    ("start_program", "Starting program"),
    ("verify_program", "Verifying program"),
)

REMOVE_MILESTONES = MilestoneDefinition.of(
    "supervisor.remove_task",
    ("stop_program", "Stopping program"),
    ("remove_program_config", "Removing program configuration"),
    ("reload_supervisor", "Reloading Supervisor"),
)


def program_name(resource: ManagedResource, config: Dict[str, Any]) -> str:
    name = str(config.get("name") or resource.key).strip()
    if not _PROGRAM_NAME.match(name):
        raise ValidationError("Program name may only contain letters, numbers, hyphens and underscores")
    return name


def program_config(name: str, config: Dict[str, Any]) -> str:
    command = single_line(required_str(config, "command", max_length=1024), "command")
    user = system_user(config)
    directory = single_line(optional_str(config, "directory", f"/home/{user}"), "directory")
    processes = bounded_int(config.get("processes", 1), "processes", 1, 20)
    auto_restart = "true" if config.get("auto_restart", True) else "false"

    return f"""[program:{name}]
process_name=%(program_name)s_%(process_num)02d
command={command}
directory={directory}
user={user}
numprocs={processes}
autostart=true
autorestart={auto_restart}
stopasgroup=true
killasgroup=true
stopwaitsecs=3600
redirect_stderr=true
stdout_logfile={LOG_DIR}/{name}.log"""


def build_install_task(resource: ManagedResource, config: Dict[str, Any]) -> List[Step]:
    name = program_name(resource, config)
    contents = program_config(name, config)
    return [
        remote(
            "ensure_supervisor",
            f"(command -v supervisorctl >/dev/null 2>&1 || ({apt_update()} && {apt_install('supervisor')}))",
            "systemctl enable --now supervisor",
        ),
        remote("write_program_config", f"mkdir -p {LOG_DIR}", heredoc(f"{CONF_DIR}/{name}.conf", contents)),
        remote("reload_supervisor", "supervisorctl reread", "supervisorctl update"),
        remote("start_program", f"supervisorctl restart '{name}:*'"),
        remote("verify_program", f"supervisorctl status '{name}:*' | grep -q RUNNING"),
    ]


def build_remove_task(resource: ManagedResource, config: Dict[str, Any]) -> List[Step]:
    name = program_name(resource, config)
    conf = f"{CONF_DIR}/{name}.conf"
    return [
        remote("stop_program", f"if [ -f {conf} ]; then supervisorctl stop '{name}:*'; fi"),
        remote("remove_program_config", f"rm -f {conf}"),
        remote("reload_supervisor", "supervisorctl reread", "supervisorctl update"),
    ]


PROVISIONERS = [
    Provisioner(
        operation="supervisor.install_task",
        resource_type="supervisor_task",
        action=OperationAction.INSTALL,
        milestones=INSTALL_MILESTONES,
        build=build_install_task,
        tries=3,
    ),
    Provisioner(
        operation="supervisor.remove_task",
        resource_type="supervisor_task",
        action=OperationAction.REMOVE,
        milestones=REMOVE_MILESTONES,
        build=build_remove_task,
        success_status=ResourceStatus.REMOVED,
        delete_on_success=True,
    ),
]
