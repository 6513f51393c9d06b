"""Sites: vhost install and removal, per-site deploy keys, and the default site designation."""

from __future__ import annotations

import re
from typing import Any, Dict, List

from ..models import ManagedResource, ResourceStatus
from ..provisioning.errors import ValidationError
from ..provisioning.milestones import MilestoneDefinition
from ..provisioning.provisioner import LockScope, OperationAction, Provisioner
from ..provisioning.steps import ExecutionContext, Step, heredoc, local, quote, remote
from ..ssh.credentials import CredentialRole
from .common import domain_of, optional_str, promote_default, system_user
from .nginx import DEFAULT_SITE_CONFIG_PATH, PLACEHOLDER_ROOT, default_site_config, site_config
from .php import PHP_VERSIONS

DEFAULT_LOCK = "site_default"
DEFAULT_PHP_VERSION = "8.3"
SITES_AVAILABLE = "/etc/nginx/sites-available"
SITES_ENABLED = "/etc/nginx/sites-enabled"

_PATH = re.compile(r"^(/[A-Za-z0-9._-]+){2,}$")

INSTALL_MILESTONES = MilestoneDefinition.of(
    "site.install",
    ("prepare_directories", "Preparing directories"),
    ("create_config", "Creating Nginx configuration"),
    ("enable_site", "Enabling site"),
    ("test_config", "Testing Nginx configuration"),
    ("reload_nginx", "Reloading Nginx"),
    ("set_permissions", "Setting permissions"),
)

REMOVE_MILESTONES = MilestoneDefinition.of(
    "site.remove",
    ("disable_site", "Disabling site"),
    ("remove_config", "Removing Nginx configuration"),
    ("reload_nginx", "Reloading Nginx"),
    ("remove_files", "Removing site files"),
)

DEPLOY_KEY_MILESTONES = MilestoneDefinition.of(
    "site.generate_deploy_key",
    ("generate_key", "Generating deploy key"),
    ("set_permissions", "Setting key permissions"),
    ("read_public_key", "Reading public key"),
    ("store_public_key", "Saving deploy key"),
)

SET_MILESTONES = MilestoneDefinition.of(
    "site.set_default",
    ("promote_default", "Marking default site"),
    ("swap_symlink", "Switching default symlink"),
    ("write_nginx_config", "Writing Nginx configuration"),
    ("reload_services", "Reloading services"),
    ("verify_default", "Verifying default site"),
)

UNSET_MILESTONES = MilestoneDefinition.of(
    "site.unset_default",
    ("demote_default", "Clearing default site"),
    ("restore_placeholder", "Restoring placeholder"),
    ("write_nginx_config", "Writing Nginx configuration"),
    ("reload_services", "Reloading services"),
)


def _php_version(config: Dict[str, Any]) -> Any:
    version = config.get("php_version")
    if version is None:
        return None
    if str(version) not in PHP_VERSIONS:
        raise ValidationError(f"Unsupported PHP version {version!r}")
    return str(version)


def _public_directory(config: Dict[str, Any]) -> str:
    public = optional_str(config, "public_directory", "/public")
    if public in ("", "/"):
        return ""
    if ".." in public:
        raise ValidationError("public_directory may not contain '..'")
    return "/" + public.strip("/")


def _demote(context: ExecutionContext) -> None:
    context.resource.is_default = False
    context.store.save(context.resource, ["is_default"])


def _reload(php_version: Any) -> str:
    reload_nginx = "nginx -t && systemctl reload nginx"
    if php_version:
        return f"systemctl reload php{php_version}-fpm && {reload_nginx}"
    return reload_nginx


def build_set_default(resource: ManagedResource, config: Dict[str, Any]) -> List[Step]:
    domain = domain_of(config.get("domain") or resource.key)
    app_user = system_user(config, "app_user")
    php_version = _php_version(config)
    source = optional_str(config, "source_path", f"/var/www/{domain}/current")
    link = f"/home/{app_user}/default"
    root = f"{link}{_public_directory(config)}"

    return [
        local("promote_default", promote_default, "Flag this site as the server default"),
        remote(
            "swap_symlink",
            f"test -d {quote(source)} || (echo 'Site directory {source} does not exist' && exit 1)",
            f"ln -sfn {quote(source)} {link}",
        ),
        remote("write_nginx_config", heredoc(DEFAULT_SITE_CONFIG_PATH, default_site_config(root, php_version))),
        remote("reload_services", _reload(php_version)),
        remote("verify_default", f'[ "$(readlink {link})" = {quote(source)} ]'),
    ]


def was_default(resource: ManagedResource) -> bool:
    """Whether the site held the default before this operation started."""
    if resource.rollback_snapshot is not None:
        return bool(resource.rollback_snapshot.get(resource.id))
    return resource.is_default


def build_unset_default(resource: ManagedResource, config: Dict[str, Any]) -> List[Step]:
    if not was_default(resource):
        raise ValidationError(f"Site {resource.key} is not the default site")
    app_user = system_user(config, "app_user")
    php_version = _php_version(config)
    home = f"/home/{app_user}"

    return [
        local("demote_default", _demote, "Clear the default flag"),
        remote(
            "restore_placeholder",
            f"mkdir -p {home}/{PLACEHOLDER_ROOT}/public",
            f"ln -sfn {home}/{PLACEHOLDER_ROOT} {home}/default",
        ),
        remote("write_nginx_config", heredoc(DEFAULT_SITE_CONFIG_PATH, default_site_config(f"{home}/default/public"))),
        remote("reload_services", _reload(php_version)),
    ]


def _site_path(value: Any, name: str) -> str:
    path = str(value).rstrip("/") if value is not None else ""
    if not _PATH.match(path) or any(part in (".", "..") for part in path.split("/")):
        raise ValidationError(f"{name} must be an absolute path at least two directories deep")
    return path


def _site_root(config: Dict[str, Any], domain: str) -> str:
    return _site_path(config.get("site_root") or f"/var/www/{domain}", "site_root")


def deploy_key_path(resource: ManagedResource, app_user: str) -> str:
    return f"/home/{app_user}/.ssh/site_{resource.id}_ed25519"


def prepare_site(resource: ManagedResource, config: Dict[str, Any]) -> Dict[str, Any]:
    """Fill in the directory layout and PHP version the site is created with."""
    prepared = dict(config)
    domain = domain_of(prepared.get("domain") or resource.key)
    prepared["domain"] = domain
    prepared.setdefault("site_root", f"/var/www/{domain}")
    prepared.setdefault("document_root", f"{prepared['site_root']}/public")
    # An explicit null php_version makes a static site
    prepared.setdefault("php_version", DEFAULT_PHP_VERSION)
    prepared["nginx_config_path"] = f"{SITES_AVAILABLE}/{domain}"
    return prepared


def build_install(resource: ManagedResource, config: Dict[str, Any]) -> List[Step]:
    domain = domain_of(config.get("domain") or resource.key)
    site_root = _site_root(config, domain)
    document_root = _site_path(config.get("document_root") or f"{site_root}/public", "document_root")
    php_version = _php_version(config)
    app_user = system_user(config, "app_user")
    available = f"{SITES_AVAILABLE}/{domain}"
    enabled = f"{SITES_ENABLED}/{domain}"
    placeholder = f"<h1>{domain}</h1>"

    return [
        remote(
            "prepare_directories",
            f"mkdir -p {site_root} {document_root} /var/log/nginx/{domain}",
            f"if [ ! -e {document_root}/index.php ] && [ ! -e {document_root}/index.html ]; "
            f"then echo {quote(placeholder)} > {document_root}/index.html; fi",
        ),
        remote("create_config", heredoc(available, site_config(domain, document_root, php_version))),
        remote("enable_site", f"ln -sfn {available} {enabled}"),
        # A broken vhost must not stay enabled for the next reload of another site
        remote("test_config", f"nginx -t || (rm -f {enabled} && exit 1)"),
        remote("reload_nginx", "systemctl reload nginx"),
        remote(
            "set_permissions",
            f"chown -R {app_user}:{app_user} {site_root}",
            f"chmod -R 755 {document_root}",
        ),
    ]


def build_remove(resource: ManagedResource, config: Dict[str, Any]) -> List[Step]:
    if resource.is_default:
        raise ValidationError(f"Site {resource.key} is the default site, unset it first")
    domain = domain_of(config.get("domain") or resource.key)
    site_root = _site_root(config, domain)
    key_path = deploy_key_path(resource, system_user(config, "app_user"))

    return [
        remote("disable_site", f"rm -f {SITES_ENABLED}/{domain}"),
        remote("remove_config", f"rm -f {SITES_AVAILABLE}/{domain}"),
        remote("reload_nginx", "if command -v nginx >/dev/null 2>&1; then nginx -t && systemctl reload nginx; fi"),
        remote(
            "remove_files",
            f"rm -rf {site_root} /var/log/nginx/{domain}",
            f"rm -f {key_path} {key_path}.pub",
        ),
    ]


def build_generate_deploy_key(resource: ManagedResource, config: Dict[str, Any]) -> List[Step]:
    domain = domain_of(config.get("domain") or resource.key)
    app_user = system_user(config, "app_user")
    key_path = deploy_key_path(resource, app_user)
    title = f"{domain} deploy key"

    def store_public_key(context: ExecutionContext) -> None:
        public_key = context.output_of("read_public_key").strip()
        if not public_key.startswith("ssh-ed25519 "):
            raise ValueError(f"Unexpected public key at {key_path}.pub")
        context.resource.configuration.update(
            {"deploy_key": key_path, "deploy_public_key": public_key, "deploy_key_title": title}
        )
        context.store.save(context.resource, ["configuration"])

    return [
        remote(
            "generate_key",
            f"mkdir -p -m 700 /home/{app_user}/.ssh",
            # Keep an existing key so the copy registered with the Git provider stays valid
            f"(test -f {key_path} || ssh-keygen -t ed25519 -f {key_path} -N '' -C {quote(title)})",
        ),
        remote("set_permissions", f"chmod 600 {key_path}", f"chmod 644 {key_path}.pub"),
        remote("read_public_key", f"cat {key_path}.pub"),
        local("store_public_key", store_public_key, "Record the deploy key on the site"),
    ]


PROVISIONERS = [
    Provisioner(
        operation="site.install",
        resource_type="site",
        action=OperationAction.INSTALL,
        milestones=INSTALL_MILESTONES,
        build=build_install,
        prepare=prepare_site,
        lock_scope=LockScope.SITE,
    ),
    Provisioner(
        operation="site.remove",
        resource_type="site",
        action=OperationAction.REMOVE,
        milestones=REMOVE_MILESTONES,
        build=build_remove,
        success_status=ResourceStatus.REMOVED,
        delete_on_success=True,
        lock_scope=LockScope.SITE,
    ),
    Provisioner(
        operation="site.generate_deploy_key",
        resource_type="site",
        action=OperationAction.UPDATE,
        milestones=DEPLOY_KEY_MILESTONES,
        build=build_generate_deploy_key,
        role=CredentialRole.APPLICATION,
        lock_scope=LockScope.SITE,
    ),
    Provisioner(
        operation="site.set_default",
        resource_type="site",
        action=OperationAction.INSTALL,
        milestones=SET_MILESTONES,
        build=build_set_default,
        status_field="default_status",
        lock_name=DEFAULT_LOCK,
        compensate=True,
    ),
    Provisioner(
        operation="site.unset_default",
        resource_type="site",
        action=OperationAction.UPDATE,
        milestones=UNSET_MILESTONES,
        build=build_unset_default,
        status_field="default_status",
        lock_name=DEFAULT_LOCK,
        compensate=True,
    ),
]
