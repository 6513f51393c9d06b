"""SSH session management built on Paramiko."""

from __future__ import annotations

import io
import socket
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, List, Optional

import paramiko

from .credentials import CredentialProvider, CredentialRole, SSHCredentials

if TYPE_CHECKING:
    from ..config import SSHConfig
    from ..models import ServerRecord

_KEY_CLASSES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)


class SSHConnectionError(RuntimeError):
    """Raised when an SSH connection cannot be established."""

    pass


@dataclass
class SSHCommandResult:
    command: str
    stdout: str
    stderr: str
    exit_status: int

    @property
    def ok(self) -> bool:
        return self.exit_status == 0

    @property
    def timed_out(self) -> bool:
        return self.exit_status == TIMEOUT_EXIT_STATUS


TIMEOUT_EXIT_STATUS = -1
POLL_INTERVAL = 0.1
CHUNK_SIZE = 32768


def load_private_key(text: str, passphrase: Optional[str] = None) -> paramiko.PKey:
    """Parse an in-memory private key of any supported type."""
    last_error: Optional[Exception] = None
    for key_class in _KEY_CLASSES:
        try:
            return key_class.from_private_key(io.StringIO(text), password=passphrase)
        except paramiko.SSHException as exc:
            last_error = exc
    raise SSHConnectionError(f"Unsupported or invalid private key: {last_error}")


class SSHSession:
    """High-level wrapper around paramiko.SSHClient."""

    def __init__(
        self,
        credentials: SSHCredentials,
        *,
        client_factory: Callable[[], paramiko.SSHClient] | None = None,
        strict_host_keys: bool = False,
        known_hosts_path: Optional[str] = None,
    ) -> None:
        self.credentials = credentials
        self._client_factory = client_factory or paramiko.SSHClient
        self._client: Optional[paramiko.SSHClient] = None
        self.strict_host_keys = strict_host_keys
        self.known_hosts_path = known_hosts_path

    @property
    def target(self) -> str:
        return f"{self.credentials.username}@{self.credentials.host}:{self.credentials.port}"

    def __enter__(self) -> "SSHSession":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        self.close()

    def connect(self) -> None:
        if self._client:
            return
        client = self._client_factory()
        if self.strict_host_keys:
            if self.known_hosts_path:
                client.load_host_keys(self.known_hosts_path)
            else:
                client.load_system_host_keys()
            client.set_missing_host_key_policy(paramiko.RejectPolicy())
        else:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            connect_kwargs = {
                "hostname": self.credentials.host,
                "port": self.credentials.port,
                "username": self.credentials.username,
                "timeout": self.credentials.timeout,
                "look_for_keys": False,
                "allow_agent": False,
            }
            if self.credentials.auth_method == "password":
                connect_kwargs["password"] = self.credentials.password
            elif self.credentials.private_key:
                connect_kwargs["pkey"] = load_private_key(
                    self.credentials.private_key, self.credentials.passphrase
                )
            else:
                connect_kwargs["key_filename"] = self.credentials.key_path
                if self.credentials.passphrase:
                    connect_kwargs["passphrase"] = self.credentials.passphrase
            client.connect(**connect_kwargs)
        except Exception as exc:  # pragma: no cover - network errors hard to simulate
            client.close()
            raise SSHConnectionError(f"{self.target}: {exc}") from exc
        self._client = client

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None

    def run(self, command: str, *, timeout: Optional[float] = None) -> SSHCommandResult:
        """Execute a command and wait for it, at most `timeout` seconds.

        The channel is polled rather than blocked on, so output is drained
        while the command runs and a hung command is closed at the deadline.
        A timed-out command is reported with exit status -1 and a TIMEOUT
        message in stderr instead of raising.
        """
        if not self._client:
            self.connect()
        assert self._client is not None

        if timeout is None:
            timeout = 600

        try:
            _, stdout, _ = self._client.exec_command(command, timeout=timeout)
        except (paramiko.SSHException, socket.error) as exc:
            raise SSHConnectionError(f"{self.target}: {exc}") from exc

        channel = stdout.channel
        stdout_chunks: List[bytes] = []
        stderr_chunks: List[bytes] = []
        deadline = time.monotonic() + float(timeout)

        while not channel.exit_status_ready():
            _drain(channel, stdout_chunks, stderr_chunks)
            if time.monotonic() >= deadline:
                channel.close()
                return SSHCommandResult(
                    command=command,
                    stdout=_decode(stdout_chunks),
                    stderr=f"TIMEOUT: Command did not complete within {timeout} seconds.",
                    exit_status=TIMEOUT_EXIT_STATUS,
                )
            time.sleep(POLL_INTERVAL)

        _drain(channel, stdout_chunks, stderr_chunks)
        exit_status = channel.recv_exit_status()
        return SSHCommandResult(
            command=command,
            stdout=_decode(stdout_chunks),
            stderr=_decode(stderr_chunks),
            exit_status=exit_status,
        )


def _drain(channel: paramiko.Channel, stdout_chunks: List[bytes], stderr_chunks: List[bytes]) -> None:
    while channel.recv_ready():
        stdout_chunks.append(channel.recv(CHUNK_SIZE))
    while channel.recv_stderr_ready():
        stderr_chunks.append(channel.recv_stderr(CHUNK_SIZE))


def _decode(chunks: List[bytes]) -> str:
    return b"".join(chunks).decode("utf-8", errors="replace").strip()


class SSHSessionFactory:
    """Builds sessions for a server and credential role."""

    def __init__(
        self,
        ssh_config: "SSHConfig",
        credential_provider: CredentialProvider,
        *,
        client_factory: Callable[[], paramiko.SSHClient] | None = None,
    ) -> None:
        self.ssh_config = ssh_config
        self.credential_provider = credential_provider
        self._client_factory = client_factory

    def username_for(self, role: CredentialRole) -> str:
        return {
            CredentialRole.ROOT: self.ssh_config.root_user,
            CredentialRole.APPLICATION: self.ssh_config.app_user,
            CredentialRole.WORKER: self.ssh_config.worker_user,
        }[role]

    def open(self, server: "ServerRecord", role: CredentialRole) -> SSHSession:
        key_pair = self.credential_provider.resolve(server.id, role)
        credentials = SSHCredentials(
            host=server.host,
            port=server.port,
            username=self.username_for(role),
            auth_method="key",
            private_key=key_pair.private_key,
            timeout=self.ssh_config.connect_timeout,
        )
        credentials.validate()
        session = SSHSession(
            credentials,
            client_factory=self._client_factory,
            strict_host_keys=self.ssh_config.strict_host_keys,
            known_hosts_path=self.ssh_config.known_hosts_path,
        )
        session.connect()
        return session
