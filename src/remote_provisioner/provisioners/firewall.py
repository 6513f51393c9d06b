"""UFW firewall rules."""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..models import ManagedResource, ResourceStatus
from ..provisioning.errors import ValidationError
from ..provisioning.milestones import MilestoneDefinition
from ..provisioning.provisioner import LockScope, OperationAction, Provisioner
from ..provisioning.steps import Step, quote, remote
from .common import choice, optional_str, single_line

PROTOCOLS = ("tcp", "udp", "any")
ACTIONS = ("allow", "deny", "reject", "limit")

_PORT = re.compile(r"^\d{1,5}(-\d{1,5})?$")

INSTALL_MILESTONES = MilestoneDefinition.of(
    "firewall.install_rule",
    ("verify_firewall", "Verifying firewall"),
    ("apply_rule", "Applying rule"),
    ("reload_firewall", "Reloading firewall"),
)

REMOVE_MILESTONES = MilestoneDefinition.of(
    "firewall.remove_rule",
    ("verify_firewall", "Verifying firewall"),
    ("delete_rule", "Deleting rule"),
    ("reload_firewall", "Reloading firewall"),
)

VERIFY_FIREWALL = (
    "(command -v ufw >/dev/null 2>&1 || (echo 'UFW is not installed' && exit 1))"
    " && (ufw status | grep -q 'Status: active' || (echo 'UFW is not enabled' && exit 1))"
)


@dataclass(frozen=True)
class FirewallRule:
    port: str
    protocol: str = "any"
    action: str = "allow"
    source: Optional[str] = None
    name: Optional[str] = None

    @property
    def is_range(self) -> bool:
        return "-" in self.port

    def ufw_spec(self) -> str:
        """The rule as ufw understands it, shared by add and delete."""
        port = self.port.replace("-", ":")
        if self.source:
            spec = f"{self.action} from {self.source} to any port {port}"
            if self.protocol != "any":
                spec += f" proto {self.protocol}"
            return spec
        if self.protocol == "any":
            return f"{self.action} {port}"
        return f"{self.action} {port}/{self.protocol}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "port": self.port,
            "protocol": self.protocol,
            "action": self.action,
            "source": self.source,
            "name": self.name,
        }


def parse_port(value: Any) -> str:
    port = str(value).strip() if value is not None else ""
    if not _PORT.match(port):
        raise ValidationError("Port must be a number between 1 and 65535 or a range such as 3000-3005")
    if "-" in port:
        start, end = (int(part) for part in port.split("-"))
        if start >= end:
            raise ValidationError("Port range start must be less than end")
        if start < 1 or end > 65535:
            raise ValidationError("Port numbers must be between 1 and 65535")
    elif not 1 <= int(port) <= 65535:
        raise ValidationError("Port number must be between 1 and 65535")
    return port


def parse_source(value: Any) -> Optional[str]:
    if value is None or str(value).strip() in ("", "any"):
        return None
    try:
        return str(ipaddress.ip_network(str(value).strip(), strict=False))
    except ValueError:
        raise ValidationError(f"Source must be an IP address or CIDR block, got {value!r}") from None


def parse_rule(resource: ManagedResource, config: Dict[str, Any]) -> FirewallRule:
    rule = FirewallRule(
        port=parse_port(config.get("port", resource.key)),
        protocol=choice(config.get("protocol", "any"), PROTOCOLS, "protocol"),
        action=choice(config.get("action", "allow"), ACTIONS, "action"),
        source=parse_source(config.get("source")),
        name=optional_str(config, "name"),
    )
    if rule.is_range and rule.protocol == "any":
        raise ValidationError("Port ranges need an explicit protocol (tcp or udp)")
    if rule.name:
        single_line(rule.name, "name")
    return rule


def build_install_rule(resource: ManagedResource, config: Dict[str, Any]) -> List[Step]:
    rule = parse_rule(resource, config)
    comment = f" comment {quote(rule.name)}" if rule.name else ""
    return [
        remote("verify_firewall", VERIFY_FIREWALL),
        # ufw skips rules that already exist
        remote("apply_rule", f"ufw {rule.ufw_spec()}{comment}"),
        remote("reload_firewall", "ufw reload"),
    ]


def build_remove_rule(resource: ManagedResource, config: Dict[str, Any]) -> List[Step]:
    rule = parse_rule(resource, config)
    return [
        remote("verify_firewall", VERIFY_FIREWALL),
        remote("delete_rule", f"ufw delete {rule.ufw_spec()}"),
        remote("reload_firewall", "ufw reload"),
    ]


def normalize_rule(resource: ManagedResource, config: Dict[str, Any]) -> Dict[str, Any]:
    return {**config, **parse_rule(resource, config).to_dict()}


PROVISIONERS = [
    Provisioner(
        operation="firewall.install_rule",
        resource_type="firewall_rule",
        action=OperationAction.INSTALL,
        milestones=INSTALL_MILESTONES,
        build=build_install_rule,
        prepare=normalize_rule,
        lock_scope=LockScope.SERVER_TYPE,
    ),
    Provisioner(
        operation="firewall.remove_rule",
        resource_type="firewall_rule",
        action=OperationAction.REMOVE,
        milestones=REMOVE_MILESTONES,
        build=build_remove_rule,
        success_status=ResourceStatus.REMOVED,
        delete_on_success=True,
    ),
]
