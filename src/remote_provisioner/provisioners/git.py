"""Binding a site to a Git repository: clone or fetch, then check out a branch."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..models import ManagedResource, ResourceStatus
from ..provisioning.errors import ValidationError
from ..provisioning.milestones import MilestoneDefinition
from ..provisioning.provisioner import LockScope, OperationAction, Provisioner
from ..provisioning.steps import ExecutionContext, Step, local, quote, remote
from ..ssh.credentials import CredentialRole
from .common import domain_of

DEFAULT_BRANCH = "main"
DEFAULT_PROVIDER = "github"
DEPLOY_KEY_PATH = "$HOME/.ssh/id_rsa"

_SHORTHAND = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")
_BRANCH = re.compile(r"^[A-Za-z0-9._/-]{1,255}$")
_URL_PREFIXES = ("git@", "ssh://", "https://")

_KEY_PATH = re.compile(r"^[A-Za-z0-9_./~$-]{1,255}$")


def git_ssh_command(key_path: Optional[str] = None) -> str:
    """Environment prefix making git use `key_path` (the server key by default)."""
    key_path = str(key_path or DEPLOY_KEY_PATH)
    if not _KEY_PATH.match(key_path):
        raise ValidationError("deploy_key must be a plain file path")
    return f'GIT_SSH_COMMAND="ssh -i {key_path} -o StrictHostKeyChecking=accept-new -o IdentitiesOnly=yes"'


MILESTONES = MilestoneDefinition.of(
    "git.install",
    ("ensure_repository_directory", "Ensuring repository directory"),
    ("clone_or_fetch_repository", "Cloning or fetching repository"),
    ("checkout_target_branch", "Checking out branch"),
    ("sync_worktree", "Syncing working tree"),
    ("store_repository_configuration", "Saving repository configuration"),
)


@dataclass(frozen=True)
class GitRepositoryConfig:
    provider: str
    repository: str
    repository_url: str
    branch: str
    document_root: str
    deploy_key: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "provider": self.provider,
            "repository": self.repository,
            "repository_url": self.repository_url,
            "branch": self.branch,
            "document_root": self.document_root,
            "deploy_key": self.deploy_key,
        }
        return {key: value for key, value in data.items() if value not in (None, "")}


def normalize_repository(value: Any) -> str:
    """`owner/name` -> `git@github.com:owner/name.git`; SSH/HTTPS URLs pass through."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("A repository identifier is required")
    repository = value.strip()
    if repository.startswith(_URL_PREFIXES):
        return repository
    if _SHORTHAND.match(repository):
        return f"git@github.com:{repository}.git"
    raise ValidationError("Repository must be an SSH URL or follow the owner/name format")


def normalize_branch(value: Any) -> str:
    branch = str(value).strip() if value is not None else ""
    if not branch:
        return DEFAULT_BRANCH
    if not _BRANCH.match(branch):
        raise ValidationError(
            "Branch may only contain letters, numbers, periods, hyphens, underscores, or slashes"
        )
    return branch


def resolve_document_root(resource: ManagedResource, config: Dict[str, Any]) -> str:
    document_root = config.get("document_root")
    if document_root is not None:
        if not isinstance(document_root, str) or not document_root.strip():
            raise ValidationError("Document root must be a non-empty string when provided")
        return document_root.strip().rstrip("/") or "/"
    domain = config.get("domain") or resource.key
    if not domain:
        raise ValidationError("Unable to determine repository document root")
    return f"/var/www/{domain_of(domain)}/public"


def parse_git_config(resource: ManagedResource, config: Dict[str, Any]) -> GitRepositoryConfig:
    repository = config.get("repository")
    provider = config.get("provider") or DEFAULT_PROVIDER
    return GitRepositoryConfig(
        provider=str(provider).strip(),
        repository=repository.strip() if isinstance(repository, str) else repository,
        repository_url=normalize_repository(repository),
        branch=normalize_branch(config.get("branch")),
        document_root=resolve_document_root(resource, config),
        deploy_key=config.get("deploy_key"),
    )


def build_install(resource: ManagedResource, config: Dict[str, Any]) -> List[Step]:
    git = parse_git_config(resource, config)
    root = quote(git.document_root)
    ssh_command = git_ssh_command(git.deploy_key)

    checkout = (
        f'cd {root} && BRANCH={quote(git.branch)}; '
        'if git show-ref --verify --quiet refs/heads/"$BRANCH" || git show-ref --verify --quiet refs/remotes/origin/"$BRANCH"; '
        'then git checkout "$BRANCH"; '
        "else echo \"Branch $BRANCH not found on origin\" && exit 1; fi"
    )

    def store_configuration(context: ExecutionContext) -> None:
        context.resource.configuration["git_repository"] = git.to_dict()
        context.store.save(context.resource, ["configuration"])

    return [
        remote("ensure_repository_directory", f"mkdir -p {root}", f"git config --global --add safe.directory {root}"),
        remote(
            "clone_or_fetch_repository",
            f'if [ -d {root}/.git ]; then cd {root} && {ssh_command} git fetch --all --prune; '
            f"else {ssh_command} git clone {quote(git.repository_url)} {root}; fi",
        ),
        remote("checkout_target_branch", checkout),
        remote(
            "sync_worktree",
            f"cd {root}",
            'CURRENT_BRANCH=$(git rev-parse --abbrev-ref HEAD)',
            'git reset --hard origin/"$CURRENT_BRANCH"',
        ),
        local("store_repository_configuration", store_configuration, "Persist the normalised repository settings"),
    ]


PROVISIONERS = [
    Provisioner(
        operation="git.install",
        resource_type="site",
        action=OperationAction.INSTALL,
        milestones=MILESTONES,
        build=build_install,
        role=CredentialRole.APPLICATION,
        status_field="git_status",
        success_status=ResourceStatus.INSTALLED,
        lock_scope=LockScope.SITE,
    ),
]
