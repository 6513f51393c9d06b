"""Nginx reverse proxy install/remove and its configuration templates."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..models import ManagedResource, ResourceStatus
from ..provisioning.milestones import MilestoneDefinition
from ..provisioning.provisioner import OperationAction, Provisioner
from ..provisioning.steps import Step, heredoc, remote
from .common import APT, apt_install, apt_purge_if_installed, apt_update, system_user

DEFAULT_SITE_CONFIG_PATH = "/etc/nginx/sites-available/default"
PLACEHOLDER_ROOT = "default-placeholder"

INSTALL_MILESTONES = MilestoneDefinition.of(
    "reverse_proxy.install",
    ("prepare_system", "Preparing system"),
    ("remove_conflicts", "Removing conflicting web servers"),
    ("install_software", "Installing Nginx"),
    ("setup_default_site", "Setting up default site"),
    ("configure_nginx", "Configuring Nginx"),
    ("enable_service", "Enabling Nginx"),
    ("configure_firewall", "Opening HTTP and HTTPS"),
)

REMOVE_MILESTONES = MilestoneDefinition.of(
    "reverse_proxy.remove",
    ("stop_service", "Stopping Nginx"),
    ("purge_packages", "Removing Nginx"),
    ("remove_configuration", "Removing configuration"),
)

PLACEHOLDER_PAGE = """<!DOCTYPE html>
<html>
<head><title>Server ready</title></head>
<body><h1>This server is provisioned and ready.</h1></body>
</html>"""


def default_site_config(root: str, php_version: Optional[str] = None) -> str:
    """Catch-all server block serving `root`, with PHP-FPM when a version is given."""
    php_block = ""
    index = "index.html index.htm"
    if php_version:
        index = "index.php " + index
        php_block = f"""
    location ~ \\.php$ {{
        try_files $uri =404;
        fastcgi_pass unix:/run/php/php{php_version}-fpm.sock;
        fastcgi_index index.php;
        fastcgi_param SCRIPT_FILENAME $realpath_root$fastcgi_script_name;
        include fastcgi_params;
    }}
"""
    return f"""server {{
    listen 80 default_server;
    listen [::]:80 default_server;
    server_name _;
    root {root};
    index {index};
    charset utf-8;

    location / {{
        try_files $uri $uri/ /index.php?$query_string;
    }}
{php_block}
    location ~ /\\.(?!well-known).* {{
        deny all;
    }}

    client_max_body_size 100M;
}}"""


def site_config(domain: str, root: str, php_version: Optional[str] = None) -> str:
    """Named server block for one site; logs go to /var/log/nginx/<domain>/."""
    php_block = ""
    index = "index.html index.htm"
    if php_version:
        index = "index.php " + index
        php_block = f"""
    location ~ \\.php$ {{
        try_files $uri =404;
        fastcgi_pass unix:/run/php/php{php_version}-fpm.sock;
        fastcgi_param SCRIPT_FILENAME $realpath_root$fastcgi_script_name;
        include fastcgi_params;
    }}
"""
    return f"""server {{
    listen 80;
    listen [::]:80;
    server_name {domain};
    root {root};
    index {index};
    charset utf-8;

    access_log /var/log/nginx/{domain}/access.log;
    error_log /var/log/nginx/{domain}/error.log;

    location / {{
        try_files $uri $uri/ /index.php?$query_string;
    }}
{php_block}
    location ~ /\\.(?!well-known).* {{
        deny all;
    }}

    client_max_body_size 100M;
}}"""


def build_install(resource: ManagedResource, config: Dict[str, Any]) -> List[Step]:
    app_user = system_user(config, "app_user")
    php_version = config.get("php_version")
    home = f"/home/{app_user}"

    return [
        remote(
            "prepare_system",
            apt_update(),
            apt_install("ca-certificates", "curl", "gnupg", "lsb-release", "software-properties-common"),
        ),
        remote(
            "remove_conflicts",
            "if systemctl list-unit-files | grep -q '^apache2'; then systemctl disable --now apache2 && systemctl mask apache2; fi",
            f"if dpkg -l | grep -q ' apache2 '; then {APT} purge -y apache2 apache2-bin apache2-data apache2-utils; fi",
        ),
        remote("install_software", apt_install("nginx", flags="--no-install-recommends")),
        remote(
            "setup_default_site",
            f"mkdir -p {home}/{PLACEHOLDER_ROOT}/public",
            heredoc(f"{home}/{PLACEHOLDER_ROOT}/public/index.html", PLACEHOLDER_PAGE),
            f"ln -sfn {home}/{PLACEHOLDER_ROOT} {home}/default",
            f"chown -R {app_user}:{app_user} {home}/{PLACEHOLDER_ROOT}",
            f"usermod -a -G www-data {app_user}",
        ),
        remote(
            "configure_nginx",
            heredoc(DEFAULT_SITE_CONFIG_PATH, default_site_config(f"{home}/default/public", php_version)),
            f"ln -sfn {DEFAULT_SITE_CONFIG_PATH} /etc/nginx/sites-enabled/default",
            "nginx -t",
        ),
        remote("enable_service", "systemctl enable --now nginx", "systemctl reload nginx"),
        remote(
            "configure_firewall",
            "if command -v ufw >/dev/null 2>&1; then ufw allow 80/tcp && ufw allow 443/tcp; fi",
        ),
    ]


def build_remove(resource: ManagedResource, config: Dict[str, Any]) -> List[Step]:
    return [
        remote(
            "stop_service",
            "if systemctl list-unit-files | grep -q '^nginx'; then systemctl disable --now nginx; fi",
        ),
        remote("purge_packages", apt_purge_if_installed("nginx", "nginx", "nginx-common")),
        remote("remove_configuration", "rm -rf /etc/nginx /var/log/nginx"),
    ]


PROVISIONERS = [
    Provisioner(
        operation="reverse_proxy.install",
        resource_type="reverse_proxy",
        action=OperationAction.INSTALL,
        milestones=INSTALL_MILESTONES,
        build=build_install,
        singleton=True,
    ),
    Provisioner(
        operation="reverse_proxy.remove",
        resource_type="reverse_proxy",
        action=OperationAction.REMOVE,
        milestones=REMOVE_MILESTONES,
        build=build_remove,
        success_status=ResourceStatus.REMOVED,
    ),
]
