"""Database engines (MySQL, MariaDB, PostgreSQL) and the Redis cache."""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Any, Dict, List

from ..models import ManagedResource, ResourceStatus
from ..provisioning.errors import ValidationError
from ..provisioning.milestones import MilestoneDefinition
from ..provisioning.provisioner import OperationAction, Provisioner
from ..provisioning.steps import Step, conceal, quote, remote
from .common import APT, apt_install, apt_purge_if_installed, apt_update, bounded_int, choice


@dataclass(frozen=True)
class Engine:
    name: str
    service: str
    port: int
    default_version: str
    packages: tuple
    data_dir: str
    config_dir: str
    backup_dir: str


ENGINES = {
    "mysql": Engine(
        name="mysql",
        service="mysql",
        port=3306,
        default_version="8.0",
        packages=("mysql-server", "mysql-client"),
        data_dir="/var/lib/mysql",
        config_dir="/etc/mysql",
        backup_dir="/var/backups/mysql",
    ),
    "mariadb": Engine(
        name="mariadb",
        service="mariadb",
        port=3306,
        default_version="11.4",
        packages=("mariadb-server", "mariadb-client"),
        data_dir="/var/lib/mysql",
        config_dir="/etc/mysql",
        backup_dir="/var/backups/mariadb",
    ),
    "postgresql": Engine(
        name="postgresql",
        service="postgresql",
        port=5432,
        default_version="16",
        packages=(),
        data_dir="/var/lib/postgresql",
        config_dir="/etc/postgresql",
        backup_dir="/var/backups/postgresql",
    ),
}

INSTALL_MILESTONES = MilestoneDefinition.of(
    "database.install",
    ("update_packages", "Updating packages"),
    ("install_prerequisites", "Installing prerequisites"),
    ("add_repository", "Adding package repository"),
    ("install_server", "Installing database server"),
    ("start_service", "Starting service"),
    ("configure_root_password", "Configuring root password"),
    ("secure_installation", "Securing installation"),
    ("configure_remote_access", "Configuring remote access"),
    ("restart_service", "Restarting service"),
    ("configure_firewall", "Configuring firewall"),
    ("verify_installation", "Verifying installation"),
)

UPDATE_MILESTONES = MilestoneDefinition.of(
    "database.update",
    ("update_packages", "Updating packages"),
    ("backup_data", "Backing up databases"),
    ("upgrade_server", "Upgrading database server"),
    ("restart_service", "Restarting service"),
    ("verify_installation", "Verifying installation"),
)

REMOVE_MILESTONES = MilestoneDefinition.of(
    "database.remove",
    ("backup_data", "Backing up databases"),
    ("stop_service", "Stopping service"),
    ("purge_packages", "Removing packages"),
    ("remove_data", "Removing data directories"),
    ("close_firewall", "Closing firewall port"),
)

CACHE_INSTALL_MILESTONES = MilestoneDefinition.of(
    "cache.install",
    ("update_packages", "Updating packages"),
    ("install_server", "Installing Redis"),
    ("configure_server", "Configuring Redis"),
    ("enable_service", "Enabling service"),
    ("verify_installation", "Verifying installation"),
)

CACHE_REMOVE_MILESTONES = MilestoneDefinition.of(
    "cache.remove",
    ("stop_service", "Stopping Redis"),
    ("purge_packages", "Removing Redis"),
    ("remove_data", "Removing data directories"),
)


def engine_for(resource: ManagedResource, config: Dict[str, Any]) -> Engine:
    name = choice(config.get("type") or resource.key, ENGINES, "type")
    return ENGINES[name]


def prepare_database(resource: ManagedResource, config: Dict[str, Any]) -> Dict[str, Any]:
    """Resolve generated values once; they are persisted before any step runs."""
    engine = engine_for(resource, config)
    prepared = dict(config)
    prepared["type"] = engine.name
    prepared.setdefault("version", engine.default_version)
    prepared.setdefault("port", engine.port)
    if not prepared.get("root_password"):
        prepared["root_password"] = secrets.token_hex(16)
    return prepared


def mysql_command(password: str, sql: str) -> str:
    return f"MYSQL_PWD={quote(password)} mysql -u root -e {quote(sql)}"


def psql_command(sql: str) -> str:
    return f"sudo -u postgres psql -v ON_ERROR_STOP=1 -c {quote(sql)}"


def _root_password(config: Dict[str, Any]) -> str:
    password = config.get("root_password")
    if not password:
        raise ValidationError("root_password has not been generated")
    return str(password)


def build_install(resource: ManagedResource, config: Dict[str, Any]) -> List[Step]:
    engine = engine_for(resource, config)
    password = _root_password(config)
    port = bounded_int(config.get("port", engine.port), "port", 1, 65535)
    version = str(config.get("version") or engine.default_version)

    steps = [
        remote("update_packages", apt_update()),
        remote(
            "install_prerequisites",
            apt_install("ca-certificates", "curl", "gnupg", "lsb-release", "software-properties-common"),
        ),
    ]
    if engine.name == "postgresql":
        steps.extend(_postgresql_install(engine, version, password, port))
    else:
        steps.extend(_mysql_family_install(engine, version, password, port))
    steps.extend(
        [
            remote("restart_service", f"systemctl restart {engine.service}"),
            remote("configure_firewall", f"if command -v ufw >/dev/null 2>&1; then ufw allow {port}/tcp; fi"),
        ]
    )
    if engine.name == "postgresql":
        steps.append(
            remote(
                "verify_installation",
                f"systemctl is-active --quiet {engine.service}",
                psql_command("SELECT version();"),
            )
        )
    else:
        steps.append(
            remote(
                "verify_installation",
                f"systemctl is-active --quiet {engine.service}",
                mysql_command(password, "SELECT VERSION();"),
            )
        )
    return conceal(steps, password)


def _mysql_family_install(engine: Engine, version: str, password: str, port: int) -> List[Step]:
    if engine.name == "mariadb":
        repository = (
            "curl -fsSL https://r.mariadb.com/downloads/mariadb_repo_setup"
            f" | bash -s -- --mariadb-server-version={quote('mariadb-' + version)}"
        )
        set_password = f"ALTER USER 'root'@'localhost' IDENTIFIED BY '{password}';"
        cnf = "/etc/mysql/mariadb.conf.d/50-server.cnf"
    else:
        repository = "apt-cache show mysql-server >/dev/null"
        set_password = f"ALTER USER 'root'@'localhost' IDENTIFIED WITH caching_sha2_password BY '{password}';"
        cnf = "/etc/mysql/mysql.conf.d/mysqld.cnf"

    secure_sql = (
        "DELETE FROM mysql.user WHERE User=''; "
        "DELETE FROM mysql.user WHERE User='root' AND Host NOT IN ('localhost', '127.0.0.1', '::1'); "
        "DROP DATABASE IF EXISTS test; "
        "FLUSH PRIVILEGES;"
    )

    return [
        remote("add_repository", repository),
        remote("install_server", apt_install(*engine.packages)),
        remote("start_service", f"systemctl enable --now {engine.service}"),
        remote(
            "configure_root_password",
            # Works on the first run over the socket, and is a no-op once the password is set
            f"({mysql_command(password, 'SELECT 1;')} >/dev/null 2>&1 || mysql -u root -e {quote(set_password)})",
        ),
        remote(
            "secure_installation",
            mysql_command(password, secure_sql),
            f"mkdir -p {engine.backup_dir}",
            f"chown mysql:mysql {engine.backup_dir}",
        ),
        remote(
            "configure_remote_access",
            f"sed -i 's/^bind-address.*/bind-address = 0.0.0.0/' {cnf}",
            f"(grep -q '^port' {cnf} && sed -i 's/^port.*/port = {port}/' {cnf} || true)",
        ),
    ]


def _postgresql_install(engine: Engine, version: str, password: str, port: int) -> List[Step]:
    major = "".join(ch for ch in version if ch.isdigit()) or engine.default_version
    conf_dir = f"/etc/postgresql/{major}/main"
    hba_lines = [
        "host    all             all             0.0.0.0/0               scram-sha-256",
        "host    all             all             ::/0                    scram-sha-256",
    ]
    hba_edits = [
        f"(grep -qxF {quote(line)} {conf_dir}/pg_hba.conf || echo {quote(line)} >> {conf_dir}/pg_hba.conf)"
        for line in hba_lines
    ]

    return [
        remote(
            "add_repository",
            "curl -fsSL https://www.postgresql.org/media/keys/ACCC4CF8.asc"
            " | gpg --dearmor --yes -o /usr/share/keyrings/postgresql-keyring.gpg",
            'echo "deb [signed-by=/usr/share/keyrings/postgresql-keyring.gpg] http://apt.postgresql.org/pub/repos/apt'
            ' $(lsb_release -cs)-pgdg main" > /etc/apt/sources.list.d/pgdg.list',
            apt_update(),
        ),
        remote("install_server", apt_install(f"postgresql-{major}", f"postgresql-client-{major}")),
        remote("start_service", f"systemctl enable --now {engine.service}"),
        remote("configure_root_password", psql_command(f"ALTER USER postgres WITH PASSWORD '{password}';")),
        remote(
            "secure_installation",
            psql_command("REVOKE CREATE ON SCHEMA public FROM PUBLIC;"),
            f"mkdir -p {engine.backup_dir}",
            f"chown postgres:postgres {engine.backup_dir}",
        ),
        remote(
            "configure_remote_access",
            f"sed -i \"s/^#\\?listen_addresses.*/listen_addresses = '*'/\" {conf_dir}/postgresql.conf",
            f"sed -i 's/^port = .*/port = {port}/' {conf_dir}/postgresql.conf",
            *hba_edits,
        ),
    ]


def _backup_command(engine: Engine, config: Dict[str, Any], label: str) -> str:
    target = f"{engine.backup_dir}/{label}-$(date +%Y%m%d%H%M%S).sql"
    if engine.name == "postgresql":
        dump = f"sudo -u postgres pg_dumpall > {target}"
    else:
        dump = f"MYSQL_PWD={quote(_root_password(config))} mysqldump -u root --all-databases > {target}"
    # Nothing to back up once the service is gone
    return f"mkdir -p {engine.backup_dir} && if systemctl is-active --quiet {engine.service}; then {dump}; fi"


def build_update(resource: ManagedResource, config: Dict[str, Any]) -> List[Step]:
    engine = engine_for(resource, config)
    if engine.name == "postgresql":
        major = "".join(ch for ch in str(config.get("version") or engine.default_version) if ch.isdigit())
        packages = (f"postgresql-{major}", f"postgresql-client-{major}")
        verify = psql_command("SELECT version();")
    else:
        packages = engine.packages
        verify = mysql_command(_root_password(config), "SELECT VERSION();")

    steps = [
        remote("update_packages", apt_update()),
        remote("backup_data", _backup_command(engine, config, "pre-upgrade")),
        remote("upgrade_server", f"{APT} install -y --only-upgrade {' '.join(packages)}"),
        remote("restart_service", f"systemctl restart {engine.service}"),
        remote("verify_installation", f"systemctl is-active --quiet {engine.service}", verify),
    ]
    return conceal(steps, config.get("root_password"))


def build_remove(resource: ManagedResource, config: Dict[str, Any]) -> List[Step]:
    engine = engine_for(resource, config)
    port = bounded_int(config.get("port", engine.port), "port", 1, 65535)
    if engine.name == "postgresql":
        purge = apt_purge_if_installed("postgresql", "'postgresql*'")
    else:
        purge = apt_purge_if_installed(engine.packages[0], *engine.packages, f"'{engine.name}-common'")

    steps = [
        remote("backup_data", _backup_command(engine, config, "pre-removal")),
        remote(
            "stop_service",
            f"if systemctl list-unit-files | grep -q '^{engine.service}'; then systemctl disable --now {engine.service}; fi",
        ),
        remote("purge_packages", purge),
        remote("remove_data", f"rm -rf {engine.data_dir} {engine.config_dir}"),
        remote("close_firewall", f"if command -v ufw >/dev/null 2>&1; then ufw delete allow {port}/tcp; fi"),
    ]
    return conceal(steps, config.get("root_password"))


def prepare_cache(resource: ManagedResource, config: Dict[str, Any]) -> Dict[str, Any]:
    prepared = dict(config)
    prepared.setdefault("type", "redis")
    prepared.setdefault("port", 6379)
    if not prepared.get("password"):
        prepared["password"] = secrets.token_hex(16)
    return prepared


def build_cache_install(resource: ManagedResource, config: Dict[str, Any]) -> List[Step]:
    choice(config.get("type", "redis"), ("redis",), "type")
    port = bounded_int(config.get("port", 6379), "port", 1, 65535)
    password = config.get("password")
    if not password:
        raise ValidationError("password has not been generated")
    conf = "/etc/redis/redis.conf"

    steps = [
        remote("update_packages", apt_update()),
        remote("install_server", apt_install("redis-server")),
        remote(
            "configure_server",
            f"sed -i 's/^#\\? *port .*/port {port}/' {conf}",
            f"sed -i 's/^#\\? *requirepass .*/requirepass {password}/' {conf}",
            f"sed -i 's/^supervised .*/supervised systemd/' {conf}",
        ),
        remote("enable_service", "systemctl enable redis-server", "systemctl restart redis-server"),
        remote("verify_installation", f"REDISCLI_AUTH={quote(password)} redis-cli -p {port} ping | grep -q PONG"),
    ]
    return conceal(steps, password)


def build_cache_remove(resource: ManagedResource, config: Dict[str, Any]) -> List[Step]:
    return [
        remote(
            "stop_service",
            "if systemctl list-unit-files | grep -q '^redis-server'; then systemctl disable --now redis-server; fi",
        ),
        remote("purge_packages", apt_purge_if_installed("redis-server", "redis-server", "redis-tools")),
        remote("remove_data", "rm -rf /var/lib/redis /etc/redis"),
    ]


PROVISIONERS = [
    Provisioner(
        operation="database.install",
        resource_type="database",
        action=OperationAction.INSTALL,
        milestones=INSTALL_MILESTONES,
        build=build_install,
        prepare=prepare_database,
        singleton=True,
    ),
    Provisioner(
        operation="database.update",
        resource_type="database",
        action=OperationAction.UPDATE,
        milestones=UPDATE_MILESTONES,
        build=build_update,
    ),
    Provisioner(
        operation="database.remove",
        resource_type="database",
        action=OperationAction.REMOVE,
        milestones=REMOVE_MILESTONES,
        build=build_remove,
        success_status=ResourceStatus.REMOVED,
    ),
    Provisioner(
        operation="cache.install",
        resource_type="cache",
        action=OperationAction.INSTALL,
        milestones=CACHE_INSTALL_MILESTONES,
        build=build_cache_install,
        prepare=prepare_cache,
        singleton=True,
    ),
    Provisioner(
        operation="cache.remove",
        resource_type="cache",
        action=OperationAction.REMOVE,
        milestones=CACHE_REMOVE_MILESTONES,
        build=build_cache_remove,
        success_status=ResourceStatus.REMOVED,
    ),
]
