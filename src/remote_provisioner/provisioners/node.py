"""Node.js from NodeSource, with Composer alongside when asked for."""

from __future__ import annotations

from typing import Any, Dict, List

from ..models import ManagedResource, ResourceStatus
from ..provisioning.errors import ValidationError
from ..provisioning.milestones import MilestoneDefinition
from ..provisioning.provisioner import OperationAction, Provisioner
from ..provisioning.steps import Step, remote
from .common import APT, apt_install, apt_update

NODE_VERSIONS = ("18", "20", "22", "24")

COMPOSER_BIN = "/usr/local/bin/composer"

INSTALL_MILESTONES = MilestoneDefinition.of(
    "node.install",
    ("update_packages", "Updating packages"),
    ("install_prerequisites", "Installing prerequisites"),
    ("remove_conflicts", "Removing existing Node.js"),
    ("add_repository", "Adding NodeSource repository"),
    ("install_node", "Installing Node.js"),
    ("verify_node", "Verifying Node.js"),
    ("install_composer", "Installing Composer"),
)


def node_version(resource: ManagedResource, config: Dict[str, Any]) -> str:
    version = str(config.get("version") or resource.key).strip()
    if version not in NODE_VERSIONS:
        raise ValidationError(f"Unsupported Node.js version {version!r}, expected one of {', '.join(NODE_VERSIONS)}")
    return version


def composer_commands() -> List[str]:
    setup = "/tmp/composer-setup.php"
    return [
        apt_install("php-cli", "php-zip", "unzip"),
        f"(command -v composer >/dev/null 2>&1 || (curl -sS https://getcomposer.org/installer -o {setup}"
        f" && php {setup} --install-dir=/usr/local/bin --filename=composer && rm -f {setup}))",
        f"chmod +x {COMPOSER_BIN}",
        "composer --version",
    ]


def build_install(resource: ManagedResource, config: Dict[str, Any]) -> List[Step]:
    version = node_version(resource, config)
    if config.get("install_composer"):
        composer = composer_commands()
    else:
        composer = ["echo 'Composer not requested'"]

    return [
        remote("update_packages", apt_update()),
        remote("install_prerequisites", apt_install("ca-certificates", "curl", "gnupg")),
        # Only one nodejs package can be installed from NodeSource at a time
        remote("remove_conflicts", f"({APT} remove -y nodejs || true)"),
        remote("add_repository", f"curl -fsSL https://deb.nodesource.com/setup_{version}.x | bash -"),
        remote("install_node", apt_install("nodejs")),
        remote("verify_node", f"node --version | grep -q '^v{version}\\.'", "npm --version"),
        remote("install_composer", *composer),
    ]


PROVISIONERS = [
    Provisioner(
        operation="node.install",
        resource_type="node",
        action=OperationAction.INSTALL,
        milestones=INSTALL_MILESTONES,
        build=build_install,
        success_status=ResourceStatus.INSTALLED,
    ),
]
