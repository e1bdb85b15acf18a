from __future__ import annotations

import re
from typing import Protocol

import paramiko

from .db import Machine
from .settings import settings
from .status import ReconcileError


SERVICE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_\-\.]{0,63}$")


def validate_service_name(name: str) -> None:
    # Names are templated into remote shell commands.
    if not SERVICE_NAME_RE.match(name) or ".." in name:
        raise ValueError(
            "Invalid service name. Use letters/numbers and -._, starting with a letter or number (max 64 chars)."
        )


class TransportError(ReconcileError):
    """The command could not be run: host unreachable, auth failed or timed out."""

    def __init__(self, host: str, detail: str):
        super().__init__(f"{host}: {detail}")
        self.host = host
        self.detail = detail


class RemoteExecutor(Protocol):
    def execute(self, host: str, username: str, secret: str, command: str) -> str:
        ...


class SSHExecutor:
    """Runs one command per SSH session and returns its stdout and stderr as one text stream."""

    def __init__(
        self,
        port: int = 22,
        connect_timeout_s: float = 10,
        command_timeout_s: float | None = None,
        encoding: str = "utf-8",
    ):
        self.port = port
        self.connect_timeout_s = connect_timeout_s
        self.command_timeout_s = command_timeout_s or None
        self.encoding = encoding

    @classmethod
    def from_settings(cls) -> "SSHExecutor":
        return cls(
            port=settings.ssh_port,
            connect_timeout_s=settings.ssh_connect_timeout_s,
            command_timeout_s=settings.command_timeout_s,
            encoding=settings.remote_encoding,
        )

    def _client(self) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        return client

    def execute(self, host: str, username: str, secret: str, command: str) -> str:
        client = self._client()
        try:
            client.connect(
                hostname=host,
                port=self.port,
                username=username,
                password=secret,
                timeout=self.connect_timeout_s,
                banner_timeout=self.connect_timeout_s,
                auth_timeout=self.connect_timeout_s,
                allow_agent=False,
                look_for_keys=False,
            )
            chan = client.get_transport().open_session(timeout=self.command_timeout_s)
            # stderr is merged into stdout before the command starts; one read drains both.
            chan.set_combine_stderr(True)
            chan.settimeout(self.command_timeout_s)
            chan.exec_command(command)
            with chan.makefile("rb") as stdout:
                return stdout.read().decode(self.encoding, errors="replace")
        except (paramiko.SSHException, OSError) as e:
            raise TransportError(host, f"{type(e).__name__}: {e}") from e
        finally:
            client.close()


def run_on(executor: RemoteExecutor, machine: Machine, command: str) -> str:
    return executor.execute(machine.ip, machine.username, machine.password, command)
