"""Release-based site deployments and rollbacks.

Layout on the host::

    <site_root>/releases/<release>   one clone per deployment
    <site_root>/current              symlink to the live release
"""

from __future__ import annotations

import re
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, List

from ..models import ManagedResource, utc_now
from ..provisioning.errors import ValidationError
from ..provisioning.milestones import MilestoneDefinition
from ..provisioning.provisioner import LockScope, OperationAction, Provisioner
from ..provisioning.steps import ExecutionContext, Step, local, quote, remote
from ..ssh.credentials import CredentialRole
from ..utils.logging import get_logger
from .common import bounded_int, domain_of
from .git import git_ssh_command, normalize_branch, normalize_repository

logger = get_logger(__name__)

DEFAULT_KEEP_RELEASES = 5
LOG_DIR = "$HOME/.deployments"

_RELEASE = re.compile(r"^[A-Za-z0-9._-]{1,64}$")

RUN_MILESTONES = MilestoneDefinition.of(
    "deployment.run",
    ("prepare_release", "Preparing release directory"),
    ("fetch_source", "Fetching source"),
    ("run_deployment_script", "Running deployment script"),
    ("activate_release", "Activating release"),
    ("capture_commit", "Capturing commit"),
    ("record_deployment", "Recording deployment"),
    ("prune_releases", "Pruning old releases"),
)

ROLLBACK_MILESTONES = MilestoneDefinition.of(
    "deployment.rollback",
    ("verify_release", "Verifying release"),
    ("activate_release", "Activating release"),
    ("reload_services", "Reloading services"),
    ("record_rollback", "Recording rollback"),
)


def site_root(resource: ManagedResource, config: Dict[str, Any]) -> str:
    root = config.get("site_root")
    if root:
        return str(root).rstrip("/")
    domain = config.get("domain")
    if not domain:
        raise ValidationError("domain or site_root is required")
    return f"/var/www/{domain_of(domain)}"


def release_name(value: Any, name: str = "release") -> str:
    release = str(value).strip() if value is not None else ""
    if not _RELEASE.match(release):
        raise ValidationError(f"{name} must be 1-64 letters, numbers, periods, hyphens or underscores")
    return release


def script_lines(script: Any) -> List[str]:
    if script is None:
        return []
    if not isinstance(script, str):
        raise ValidationError("script must be a string")
    return [
        line.strip()
        for line in script.splitlines()
        if line.strip() and not line.strip().startswith("#")
    ]


def new_release() -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    return f"{stamp}-{secrets.token_hex(3)}"


def prepare_release(resource: ManagedResource, config: Dict[str, Any]) -> Dict[str, Any]:
    """Pick the release name once so every retry of a run writes to the same directory.

    A newly queued run starts without one (see `transient_config`), so it never
    reuses, and wipes, the release that is currently live.
    """
    prepared = dict(config)
    if not prepared.get("release"):
        prepared["release"] = new_release()
    return prepared


def _update_site(context: ExecutionContext, **fields: Any) -> None:
    site_id = context.config.get("site_id")
    if not site_id:
        return
    site = context.store.load(site_id)
    if site is None:
        logger.info("Site %s is gone, not recording deployment on it", site_id)
        return
    site.configuration.update(fields)
    context.store.save(site, ["configuration"])


def build_run(resource: ManagedResource, config: Dict[str, Any]) -> List[Step]:
    root = site_root(resource, config)
    release = release_name(config.get("release"))
    repository_url = normalize_repository(config.get("repository_url") or config.get("repository"))
    branch = normalize_branch(config.get("branch"))
    keep = bounded_int(config.get("keep_releases", DEFAULT_KEEP_RELEASES), "keep_releases", 1, 50)
    lines = script_lines(config.get("script"))
    ssh_command = git_ssh_command(config.get("deploy_key"))

    releases = f"{root}/releases"
    release_dir = f"{releases}/{release}"
    log_file = f"{LOG_DIR}/{release}.log"

    if lines:
        script = f"cd {quote(release_dir)} && " + " && ".join(f"({line})" for line in lines)
    else:
        script = "echo 'No deployment script configured'"

    def record(context: ExecutionContext) -> None:
        commit_sha = context.output_of("capture_commit").strip() or None
        context.resource.configuration.update(
            {
                "commit_sha": commit_sha,
                "release_path": release_dir,
                "branch": branch,
                "deployed_at": utc_now(),
            }
        )
        context.store.save(context.resource, ["configuration"])
        _update_site(context, last_deployment_sha=commit_sha, active_release=release)

    return [
        remote("prepare_release", f"mkdir -p {quote(releases)} {LOG_DIR}"),
        remote(
            "fetch_source",
            f"rm -rf {quote(release_dir)}",
            f"{ssh_command} git clone --depth 1 --branch {quote(branch)} {quote(repository_url)} {quote(release_dir)}",
        ),
        remote("run_deployment_script", f"({script}) 2>&1 | tee {log_file}; exit ${{PIPESTATUS[0]}}"),
        remote("activate_release", f"ln -sfn {quote(release_dir)} {quote(root + '/current')}"),
        remote("capture_commit", f"git -C {quote(release_dir)} rev-parse HEAD"),
        local("record_deployment", record, "Store commit and release on the deployment"),
        remote(
            "prune_releases",
            f"cd {quote(releases)} && ls -1t | tail -n +{keep + 1} | xargs -r rm -rf --",
        ),
    ]


def build_rollback(resource: ManagedResource, config: Dict[str, Any]) -> List[Step]:
    root = site_root(resource, config)
    release = release_name(config.get("target_release"), "target_release")
    release_dir = f"{root}/releases/{release}"

    def record(context: ExecutionContext) -> None:
        context.resource.configuration.update(
            {"release_path": release_dir, "rolled_back_at": utc_now()}
        )
        context.store.save(context.resource, ["configuration"])
        _update_site(context, active_release=release)

    return [
        remote("verify_release", f"test -d {quote(release_dir)} || (echo 'Release {release} does not exist' && exit 1)"),
        remote("activate_release", f"ln -sfn {quote(release_dir)} {quote(root + '/current')}"),
        remote(
            "reload_services",
            "for unit in $(systemctl list-units --type=service --state=active --plain --no-legend 'php*-fpm.service' | awk '{print $1}'); "
            'do sudo systemctl reload "$unit"; done',
        ),
        local("record_rollback", record, "Point the deployment at the restored release"),
    ]


PROVISIONERS = [
    Provisioner(
        operation="deployment.run",
        resource_type="deployment",
        action=OperationAction.INSTALL,
        milestones=RUN_MILESTONES,
        build=build_run,
        prepare=prepare_release,
        transient_config=("release",),
        role=CredentialRole.APPLICATION,
        lock_scope=LockScope.SITE,
        tries=1,
    ),
    Provisioner(
        operation="deployment.rollback",
        resource_type="deployment",
        action=OperationAction.UPDATE,
        milestones=ROLLBACK_MILESTONES,
        build=build_rollback,
        role=CredentialRole.APPLICATION,
        lock_scope=LockScope.SITE,
        tries=1,
    ),
]
