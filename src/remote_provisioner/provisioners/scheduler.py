"""Scheduled (cron) tasks: a wrapper script plus an /etc/cron.d entry per task."""

from __future__ import annotations

import re
from typing import Any, Dict, List, Tuple

from ..models import ManagedResource, ResourceStatus
from ..provisioning.errors import ValidationError
from ..provisioning.milestones import MilestoneDefinition
from ..provisioning.provisioner import OperationAction, Provisioner
from ..provisioning.steps import Step, heredoc, quote, remote
from .common import bounded_int, required_str, single_line, system_user

TASKS_DIR = "/opt/remote-provisioner/scheduler/tasks"
LOG_DIR = "/var/log/remote-provisioner/scheduler"
CRON_DIR = "/etc/cron.d"

FREQUENCIES = {
    "every_minute": "* * * * *",
    "hourly": "0 * * * *",
    "daily": "0 0 * * *",
    "weekly": "0 0 * * 0",
    "monthly": "0 0 1 * *",
}

MONTH_NAMES = ("jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec")
DAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")

# (name, minimum, maximum, aliases)
CRON_FIELDS: Tuple[Tuple[str, int, int, Tuple[str, ...]], ...] = (
    ("minute", 0, 59, ()),
    ("hour", 0, 23, ()),
    ("day of month", 1, 31, ()),
    ("month", 1, 12, MONTH_NAMES),
    ("day of week", 0, 7, DAY_NAMES),
)

_ATOM = re.compile(r"^(\*|[0-9A-Za-z]+(-[0-9A-Za-z]+)?)(/\d+)?$")

INSTALL_MILESTONES = MilestoneDefinition.of(
    "scheduler.install_task",
    ("prepare_task", "Preparing task"),
    ("create_wrapper_script", "Creating wrapper script"),
    ("install_cron_entry", "Installing cron entry"),
    ("verify_cron", "Verifying cron entry"),
)

REMOVE_MILESTONES = MilestoneDefinition.of(
    "scheduler.remove_task",
    ("remove_cron_entry", "Removing cron entry"),
    ("remove_wrapper_script", "Removing wrapper script"),
    ("verify_removal", "Verifying removal"),
)


def _field_value(token: str, name: str, minimum: int, maximum: int, aliases: Tuple[str, ...]) -> int:
    lowered = token.lower()
    if lowered in aliases:
        # Month names are 1-based, day names 0-based
        return aliases.index(lowered) + minimum
    if not token.isdigit():
        raise ValidationError(f"Invalid {name} value {token!r} in cron expression")
    value = int(token)
    if not minimum <= value <= maximum:
        raise ValidationError(f"{name.capitalize()} must be between {minimum} and {maximum}")
    return value


def validate_cron(expression: str) -> str:
    """Validate a standard five-field cron expression and return it normalised."""
    fields = expression.split()
    if len(fields) != 5:
        raise ValidationError("Cron expression must have exactly five fields")

    for raw, (name, minimum, maximum, aliases) in zip(fields, CRON_FIELDS):
        for atom in raw.split(","):
            match = _ATOM.match(atom)
            if not match:
                raise ValidationError(f"Invalid {name} field {raw!r} in cron expression")
            if match.group(3) and int(match.group(3)[1:]) == 0:
                raise ValidationError(f"Step in {name} field must be positive")
            base = match.group(1)
            if base == "*":
                continue
            bounds = base.split("-")
            values = [_field_value(part, name, minimum, maximum, aliases) for part in bounds]
            if len(values) == 2 and values[0] > values[1]:
                raise ValidationError(f"Invalid range {base!r} in {name} field")
    return " ".join(fields)


def cron_expression(config: Dict[str, Any]) -> str:
    frequency = str(config.get("frequency") or "custom").strip().lower()
    if frequency in FREQUENCIES:
        return FREQUENCIES[frequency]
    if frequency != "custom":
        raise ValidationError(
            f"frequency must be one of: {', '.join(list(FREQUENCIES) + ['custom'])}"
        )
    return validate_cron(required_str(config, "cron_expression"))


def wrapper_script(task_id: str, command: str, timeout: int) -> str:
    limit = f"timeout {timeout} " if timeout else ""
    return f"""#!/bin/bash
set -o pipefail
LOG_FILE={LOG_DIR}/{task_id}.log
mkdir -p {LOG_DIR}
echo "=== Task {task_id} started at $(date -Is) ===" >> "$LOG_FILE"
{limit}bash -c {quote(command)} >> "$LOG_FILE" 2>&1
STATUS=$?
echo "=== Task {task_id} finished with exit code $STATUS at $(date -Is) ===" >> "$LOG_FILE"
exit $STATUS"""


def build_install_task(resource: ManagedResource, config: Dict[str, Any]) -> List[Step]:
    task_id = resource.id
    command = single_line(required_str(config, "command", max_length=1024), "command")
    schedule = cron_expression(config)
    user = system_user(config, default="root")
    timeout = bounded_int(config.get("timeout", 0), "timeout", 0, 86400)

    script = f"{TASKS_DIR}/{task_id}.sh"
    cron_file = f"{CRON_DIR}/remote-provisioner-task-{task_id}"
    cron_entry = f"# Managed by remote-provisioner\n{schedule} {user} {script}"

    return [
        remote("prepare_task", f"mkdir -p {TASKS_DIR} {LOG_DIR}"),
        remote("create_wrapper_script", heredoc(script, wrapper_script(task_id, command, timeout)), f"chmod 755 {script}"),
        remote("install_cron_entry", heredoc(cron_file, cron_entry), f"chmod 644 {cron_file}"),
        remote(
            "verify_cron",
            f"test -f {cron_file} || (echo 'Cron entry creation failed' && exit 1)",
            f"test -x {script} || (echo 'Wrapper script creation failed' && exit 1)",
        ),
    ]


def build_remove_task(resource: ManagedResource, config: Dict[str, Any]) -> List[Step]:
    task_id = resource.id
    script = f"{TASKS_DIR}/{task_id}.sh"
    cron_file = f"{CRON_DIR}/remote-provisioner-task-{task_id}"
    return [
        remote("remove_cron_entry", f"rm -f {cron_file}"),
        remote("remove_wrapper_script", f"rm -f {script}"),
        remote("verify_removal", f"test ! -e {cron_file}", f"test ! -e {script}"),
    ]


def normalize_task(resource: ManagedResource, config: Dict[str, Any]) -> Dict[str, Any]:
    return {**config, "cron_expression": cron_expression(config)}


PROVISIONERS = [
    Provisioner(
        operation="scheduler.install_task",
        resource_type="scheduled_task",
        action=OperationAction.INSTALL,
        milestones=INSTALL_MILESTONES,
        build=build_install_task,
        prepare=normalize_task,
    ),
    Provisioner(
        operation="scheduler.remove_task",
        resource_type="scheduled_task",
        action=OperationAction.REMOVE,
        milestones=REMOVE_MILESTONES,
        build=build_remove_task,
        success_status=ResourceStatus.REMOVED,
        delete_on_success=True,
    ),
]
