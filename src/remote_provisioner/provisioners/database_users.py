"""Users of an installed database engine: create, then re-password and re-grant."""

from __future__ import annotations

import re
import secrets
from typing import TYPE_CHECKING, Any, Dict, List

from ..models import ManagedResource, ResourceStatus
from ..provisioning.errors import ValidationError
from ..provisioning.milestones import MilestoneDefinition
from ..provisioning.provisioner import OperationAction, Provisioner
from ..provisioning.steps import Step, conceal, quote, remote
from .common import choice, required_str
from .database import ENGINES, mysql_command, psql_command

if TYPE_CHECKING:
    from ..store import ResourceStore

# Shares the engine's lock so users never change while the engine does
DATABASE_LOCK = "database"

MYSQL_GRANTS = {
    "all": "ALL PRIVILEGES",
    "read_only": "SELECT",
    "read_write": "SELECT, INSERT, UPDATE, DELETE",
}

POSTGRES_GRANTS = {
    "all": "ALL PRIVILEGES",
    "read_only": "CONNECT",
    "read_write": "ALL PRIVILEGES",
}

_USERNAME = re.compile(r"^[a-z_][a-z0-9_]{0,31}$")
_HOST = re.compile(r"^[A-Za-z0-9.%_:-]{1,255}$")
_SCHEMA = re.compile(r"^[a-z0-9_]{1,64}$")
_PASSWORD = re.compile(r"^[A-Za-z0-9!#%+,.:=@^_~-]{8,128}$")

INSTALL_MILESTONES = MilestoneDefinition.of(
    "database.user_install",
    ("create_user", "Creating database user"),
    ("grant_privileges", "Granting privileges"),
    ("flush_privileges", "Applying privileges"),
    ("verify_user", "Verifying database user"),
)

UPDATE_MILESTONES = MilestoneDefinition.of(
    "database.user_update",
    ("update_password", "Updating password"),
    ("revoke_privileges", "Revoking privileges"),
    ("grant_privileges", "Granting privileges"),
    ("flush_privileges", "Applying privileges"),
)


def prepare_user(resource: ManagedResource, config: Dict[str, Any]) -> Dict[str, Any]:
    prepared = dict(config)
    if not prepared.get("password"):
        prepared["password"] = secrets.token_hex(16)
    prepared.setdefault("privileges", "read_write")
    prepared.setdefault("host", "%")
    prepared.setdefault("schemas", [])
    return prepared


def resolve_database(store: "ResourceStore", resource: ManagedResource, config: Dict[str, Any]) -> Dict[str, Any]:
    """Engine and root password of the database the user belongs to."""
    database_id = required_str(config, "database_id")
    database = store.load(database_id)
    if database is None or database.resource_type != "database" or database.server_id != resource.server_id:
        raise ValidationError(f"Database {database_id} does not exist on server {resource.server_id}")
    if database.status not in (ResourceStatus.ACTIVE, ResourceStatus.INSTALLED):
        raise ValidationError(f"Database {database_id} is {database.status.value}, not active")
    return {
        **config,
        "engine": database.configuration.get("type") or database.key,
        "root_password": database.configuration.get("root_password"),
    }


class UserSpec:
    """Validated user settings for one build."""

    def __init__(self, resource: ManagedResource, config: Dict[str, Any]) -> None:
        self.engine = choice(config.get("engine"), ENGINES, "engine")
        self.username = str(config.get("username") or resource.key).strip()
        if not _USERNAME.match(self.username):
            raise ValidationError("username must be 1-32 lowercase letters, digits or underscores")
        self.password = str(config.get("password") or "")
        if not _PASSWORD.match(self.password):
            raise ValidationError("password must be 8-128 characters without quotes, spaces or shell metacharacters")
        self.host = str(config.get("host") or "%").strip()
        if not _HOST.match(self.host):
            raise ValidationError(f"Invalid host {self.host!r}")
        self.privileges = choice(config.get("privileges", "read_write"), MYSQL_GRANTS, "privileges")
        schemas = config.get("schemas") or []
        if not isinstance(schemas, list) or not all(isinstance(s, str) and _SCHEMA.match(s) for s in schemas):
            raise ValidationError("schemas must be a list of lowercase database names")
        self.schemas: List[str] = schemas
        self.root_password = str(config.get("root_password") or "")
        if self.is_mysql and not self.root_password:
            raise ValidationError("The database has no root password on record")

    @property
    def is_mysql(self) -> bool:
        return self.engine != "postgresql"

    @property
    def account(self) -> str:
        return f"'{self.username}'@'{self.host}'"

    def mysql(self, sql: str) -> str:
        return mysql_command(self.root_password, sql)

    def grants(self) -> str:
        if not self.schemas:
            return "echo 'No databases selected'"
        if self.is_mysql:
            privileges = MYSQL_GRANTS[self.privileges]
            return " && ".join(
                self.mysql(f"GRANT {privileges} ON `{schema}`.* TO {self.account};") for schema in self.schemas
            )
        privileges = POSTGRES_GRANTS[self.privileges]
        return " && ".join(
            psql_command(f"GRANT {privileges} ON DATABASE {schema} TO {self.username};") for schema in self.schemas
        )

    def flush(self) -> str:
        if self.is_mysql:
            return self.mysql("FLUSH PRIVILEGES;")
        return psql_command("SELECT pg_reload_conf();")

    def conceal(self, steps: List[Step]) -> List[Step]:
        return conceal(steps, self.password, self.root_password)


def build_install(resource: ManagedResource, config: Dict[str, Any]) -> List[Step]:
    user = UserSpec(resource, config)
    if user.is_mysql:
        # IF NOT EXISTS keeps a retried attempt from failing on its own leftovers
        create = user.mysql(f"CREATE USER IF NOT EXISTS {user.account} IDENTIFIED BY '{user.password}';")
        lookup = f"SELECT User FROM mysql.user WHERE User='{user.username}' AND Host='{user.host}';"
        verify = f"{user.mysql(lookup)} | grep -q {quote(user.username)}"
    else:
        create = psql_command(
            f"DO $$BEGIN IF NOT EXISTS (SELECT FROM pg_roles WHERE rolname = '{user.username}') "
            f"THEN CREATE ROLE {user.username} WITH LOGIN PASSWORD '{user.password}'; END IF; END$$;"
        )
        lookup = f"SELECT 1 FROM pg_roles WHERE rolname = '{user.username}';"
        verify = f"sudo -u postgres psql -tAc {quote(lookup)} | grep -q 1"

    return user.conceal(
        [
            remote("create_user", create),
            remote("grant_privileges", user.grants()),
            remote("flush_privileges", user.flush()),
            remote("verify_user", verify),
        ]
    )


def build_update(resource: ManagedResource, config: Dict[str, Any]) -> List[Step]:
    user = UserSpec(resource, config)
    if user.is_mysql:
        set_password = user.mysql(f"ALTER USER {user.account} IDENTIFIED BY '{user.password}';")
        revoke = user.mysql(f"REVOKE ALL PRIVILEGES, GRANT OPTION FROM {user.account};")
    else:
        set_password = psql_command(f"ALTER USER {user.username} WITH PASSWORD '{user.password}';")
        if user.schemas:
            revoke = " && ".join(
                psql_command(f"REVOKE ALL PRIVILEGES ON DATABASE {schema} FROM {user.username};")
                for schema in user.schemas
            )
        else:
            revoke = "echo 'No databases selected'"

    return user.conceal(
        [
            remote("update_password", set_password),
            remote("revoke_privileges", revoke),
            remote("grant_privileges", user.grants()),
            remote("flush_privileges", user.flush()),
        ]
    )


PROVISIONERS = [
    Provisioner(
        operation="database.user_install",
        resource_type="database_user",
        action=OperationAction.INSTALL,
        milestones=INSTALL_MILESTONES,
        build=build_install,
        prepare=prepare_user,
        resolve=resolve_database,
        lock_name=DATABASE_LOCK,
    ),
    Provisioner(
        operation="database.user_update",
        resource_type="database_user",
        action=OperationAction.UPDATE,
        milestones=UPDATE_MILESTONES,
        build=build_update,
        prepare=prepare_user,
        resolve=resolve_database,
        lock_name=DATABASE_LOCK,
    ),
]
