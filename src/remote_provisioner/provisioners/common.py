"""Helpers shared by the service provisioners."""

from __future__ import annotations

import re
from typing import Any, Dict, Iterable, Optional

from ..provisioning.errors import ValidationError
from ..provisioning.steps import ExecutionContext, quote

APT = "DEBIAN_FRONTEND=noninteractive apt-get"

APP_USER = "provisioner"

_USERNAME = re.compile(r"^[a-z_][a-z0-9_-]{0,31}$")
_DOMAIN = re.compile(r"^(?=.{1,253}$)[A-Za-z0-9-]+(\.[A-Za-z0-9-]+)*$")


def apt_update() -> str:
    return f"{APT} update -y"


def apt_install(*packages: str, flags: str = "") -> str:
    extra = f" {flags}" if flags else ""
    return f"{APT} install -y{extra} {' '.join(packages)}"


def apt_purge_if_installed(pattern: str, *packages: str) -> str:
    """Purge only when something matching `pattern` is installed."""
    return (
        f"if dpkg -l | grep -q {quote(pattern)}; then "
        f"{APT} purge -y {' '.join(packages)} && {APT} autoremove -y; fi"
    )


def required_str(config: Dict[str, Any], name: str, *, max_length: int = 255) -> str:
    value = config.get(name)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} is required")
    value = value.strip()
    if len(value) > max_length:
        raise ValidationError(f"{name} must not exceed {max_length} characters")
    return value


def optional_str(config: Dict[str, Any], name: str, default: Optional[str] = None) -> Optional[str]:
    value = config.get(name)
    if value is None:
        return default
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string")
    value = value.strip()
    return value or default


def choice(value: Any, choices: Iterable[str], name: str) -> str:
    options = tuple(choices)
    normalized = str(value).strip().lower() if value is not None else ""
    if normalized not in options:
        raise ValidationError(f"{name} must be one of: {', '.join(options)}")
    return normalized


def bounded_int(value: Any, name: str, minimum: int, maximum: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer") from None
    if isinstance(value, bool) or not minimum <= number <= maximum:
        raise ValidationError(f"{name} must be between {minimum} and {maximum}")
    return number


def system_user(config: Dict[str, Any], name: str = "user", default: str = APP_USER) -> str:
    user = optional_str(config, name, default)
    if not _USERNAME.match(user):
        raise ValidationError(f"{name} is not a valid system user name")
    return user


def domain_of(value: str) -> str:
    domain = value.strip().lower()
    if not _DOMAIN.match(domain):
        raise ValidationError(f"Invalid domain: {value}")
    return domain


def single_line(value: str, name: str) -> str:
    if "\n" in value or "\r" in value:
        raise ValidationError(f"{name} must be a single line")
    return value


def promote_default(context: ExecutionContext) -> None:
    """Make the context resource the only default of its type on the server."""
    resource = context.resource
    for sibling in context.store.find(resource.server_id, resource.resource_type):
        if sibling.id != resource.id and sibling.is_default:
            sibling.is_default = False
            context.store.save(sibling, ["is_default"])
    resource.is_default = True
    context.store.save(resource, ["is_default"])
