"""PHP runtimes: install, remove and CLI default switching."""

from __future__ import annotations

from typing import Any, Dict, List

from ..models import ManagedResource, ResourceStatus
from ..provisioning.errors import ValidationError
from ..provisioning.milestones import MilestoneDefinition
from ..provisioning.provisioner import OperationAction, Provisioner
from ..provisioning.steps import Step, local, remote
from .common import apt_install, apt_purge_if_installed, apt_update, promote_default

PHP_VERSIONS = ("8.1", "8.2", "8.3", "8.4")

PHP_EXTENSIONS = (
    "fpm",
    "cli",
    "common",
    "curl",
    "mbstring",
    "xml",
    "zip",
    "intl",
    "mysql",
    "gd",
    "bcmath",
    "soap",
    "opcache",
    "readline",
)

FPM_SETTINGS = {
    "upload_max_filesize": "100M",
    "post_max_size": "100M",
    "max_execution_time": "300",
    "memory_limit": "256M",
}

INSTALL_MILESTONES = MilestoneDefinition.of(
    "php.install",
    ("prepare_system", "Preparing system"),
    ("setup_repository", "Setting up PHP repository"),
    ("install_php", "Installing PHP packages"),
    ("configure_php", "Configuring PHP"),
    ("enable_service", "Enabling PHP-FPM"),
    ("verify_installation", "Verifying installation"),
)

REMOVE_MILESTONES = MilestoneDefinition.of(
    "php.remove",
    ("stop_service", "Stopping PHP-FPM"),
    ("purge_packages", "Removing PHP packages"),
    ("cleanup_configuration", "Cleaning up configuration"),
)

CLI_DEFAULT_MILESTONES = MilestoneDefinition.of(
    "php.set_cli_default",
    ("verify_version", "Verifying PHP version"),
    ("promote_default", "Marking CLI default"),
    ("switch_alternatives", "Switching CLI alternative"),
    ("verify_cli", "Verifying PHP CLI"),
)


def php_version(resource: ManagedResource, config: Dict[str, Any]) -> str:
    version = str(config.get("version") or resource.key).strip()
    if version not in PHP_VERSIONS:
        raise ValidationError(f"Unsupported PHP version {version!r}, expected one of {', '.join(PHP_VERSIONS)}")
    return version


def build_install(resource: ManagedResource, config: Dict[str, Any]) -> List[Step]:
    version = php_version(resource, config)
    packages = [f"php{version}-{ext}" for ext in PHP_EXTENSIONS]
    fpm_ini = f"/etc/php/{version}/fpm/php.ini"
    cli_ini = f"/etc/php/{version}/cli/php.ini"
    fpm_edits = [
        f"sed -i 's/^;*{name}.*/{name} = {value}/' {fpm_ini}" for name, value in FPM_SETTINGS.items()
    ]

    return [
        remote(
            "prepare_system",
            apt_update(),
            apt_install("ca-certificates", "curl", "gnupg", "lsb-release", "software-properties-common"),
        ),
        remote(
            "setup_repository",
            'if [ "$(lsb_release -is 2>/dev/null)" = "Ubuntu" ]; then add-apt-repository -y ppa:ondrej/php; fi',
            apt_update(),
        ),
        remote("install_php", apt_install(*packages, flags="--no-install-recommends")),
        remote("configure_php", *fpm_edits, f"sed -i 's/^;*memory_limit.*/memory_limit = -1/' {cli_ini}"),
        remote(
            "enable_service",
            f"systemctl enable php{version}-fpm",
            f"systemctl restart php{version}-fpm",
        ),
        remote(
            "verify_installation",
            f"php{version} -v",
            f"systemctl is-active --quiet php{version}-fpm",
        ),
    ]


def build_remove(resource: ManagedResource, config: Dict[str, Any]) -> List[Step]:
    version = php_version(resource, config)
    if resource.is_default:
        raise ValidationError(f"PHP {version} is the CLI default; choose another default before removing it")

    return [
        remote(
            "stop_service",
            f"if systemctl list-unit-files | grep -q '^php{version}-fpm'; then systemctl disable --now php{version}-fpm; fi",
        ),
        remote("purge_packages", apt_purge_if_installed(f"php{version}-", f"'php{version}-*'")),
        remote("cleanup_configuration", f"rm -rf /etc/php/{version}"),
    ]


def build_set_cli_default(resource: ManagedResource, config: Dict[str, Any]) -> List[Step]:
    version = php_version(resource, config)
    if resource.status is not ResourceStatus.INSTALLED:
        raise ValidationError(f"PHP {version} is not installed (status {resource.status.value})")

    return [
        remote("verify_version", f"test -x /usr/bin/php{version} || (echo 'PHP {version} binary missing' && exit 1)"),
        local("promote_default", promote_default, "Flag this version as the CLI default"),
        remote("switch_alternatives", f"update-alternatives --set php /usr/bin/php{version}"),
        remote("verify_cli", f"php -v | grep -q 'PHP {version}'"),
    ]


PROVISIONERS = [
    Provisioner(
        operation="php.install",
        resource_type="php",
        action=OperationAction.INSTALL,
        milestones=INSTALL_MILESTONES,
        build=build_install,
        success_status=ResourceStatus.INSTALLED,
    ),
    Provisioner(
        operation="php.remove",
        resource_type="php",
        action=OperationAction.REMOVE,
        milestones=REMOVE_MILESTONES,
        build=build_remove,
        success_status=ResourceStatus.REMOVED,
    ),
    Provisioner(
        operation="php.set_cli_default",
        resource_type="php",
        action=OperationAction.INSTALL,
        milestones=CLI_DEFAULT_MILESTONES,
        build=build_set_cli_default,
        status_field="default_status",
        compensate=True,
    ),
]
