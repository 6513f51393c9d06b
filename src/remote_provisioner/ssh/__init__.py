"""SSH utilities for remote-provisioner."""

from .credentials import (
    CredentialNotFound,
    CredentialProvider,
    CredentialRole,
    FileCredentialProvider,
    KeyPair,
    SSHCredentials,
    StaticCredentialProvider,
)
from .session import (
    SSHCommandResult,
    SSHConnectionError,
    SSHSession,
    SSHSessionFactory,
    load_private_key,
)

__all__ = [
    "CredentialNotFound",
    "CredentialProvider",
    "CredentialRole",
    "FileCredentialProvider",
    "KeyPair",
    "SSHCredentials",
    "StaticCredentialProvider",
    "SSHCommandResult",
    "SSHConnectionError",
    "SSHSession",
    "SSHSessionFactory",
    "load_private_key",
]
