"""SSH credential helpers and credential providers."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Optional, Protocol, Tuple


class CredentialRole(Enum):
    """Which account an operation logs in as."""

    ROOT = "root"
    APPLICATION = "application"
    WORKER = "worker"


class CredentialNotFound(LookupError):
    """Raised when no key pair exists for a server/role."""

    def __init__(self, server_id: str, role: CredentialRole) -> None:
        self.server_id = server_id
        self.role = role
        super().__init__(f"No {role.value} credential for server {server_id}")


@dataclass(frozen=True)
class KeyPair:
    """Opaque key material; held in memory only."""

    private_key: str
    public_key: Optional[str] = None

    def __repr__(self) -> str:
        return f"KeyPair(public_key={self.public_key!r}, private_key=<redacted>)"


@dataclass
class SSHCredentials:
    """Normalized credential payload for one SSH login."""

    host: str
    username: str
    port: int = 22
    auth_method: str = "key"
    password: Optional[str] = None
    key_path: Optional[str] = None
    private_key: Optional[str] = None
    passphrase: Optional[str] = None
    timeout: int = 20

    def validate(self) -> None:
        if self.auth_method == "password" and not self.password:
            raise ValueError("Password authentication selected but no password provided")
        if self.auth_method == "key" and not (self.key_path or self.private_key):
            raise ValueError("Key authentication selected but no key_path or private_key provided")


class CredentialProvider(Protocol):
    def resolve(self, server_id: str, role: CredentialRole) -> KeyPair:
        ...


class StaticCredentialProvider:
    """In-memory provider, mostly for tests and one-off runs."""

    def __init__(self, keys: Optional[Dict[Tuple[str, CredentialRole], KeyPair]] = None) -> None:
        self._keys: Dict[Tuple[str, CredentialRole], KeyPair] = dict(keys or {})

    def add(self, server_id: str, role: CredentialRole, key_pair: KeyPair) -> None:
        self._keys[(server_id, role)] = key_pair

    def resolve(self, server_id: str, role: CredentialRole) -> KeyPair:
        try:
            return self._keys[(server_id, role)]
        except KeyError:
            raise CredentialNotFound(server_id, role) from None


class FileCredentialProvider:
    """Reads `<directory>/<server_id>/<role>` and the matching `.pub` file."""

    def __init__(self, directory: str) -> None:
        self.directory = Path(directory)

    def resolve(self, server_id: str, role: CredentialRole) -> KeyPair:
        private_path = self.directory / str(server_id) / role.value
        if not private_path.is_file():
            raise CredentialNotFound(server_id, role)
        public_path = private_path.with_name(private_path.name + ".pub")
        public_key = None
        if public_path.is_file():
            public_key = public_path.read_text(encoding="utf-8").strip()
        return KeyPair(
            private_key=private_path.read_text(encoding="utf-8"),
            public_key=public_key,
        )
