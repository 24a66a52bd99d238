"""SSH access to the VM over paramiko."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

try:
    import paramiko  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("paramiko is required but not installed") from exc

from crc_machine.constants import SSH_PORT, SSH_USER
from crc_machine.driver import Driver
from crc_machine.exceptions import ManagerError, SSHCommandError
from crc_machine.utils import ensure_directory, log

COMMAND_TIMEOUT = 300
KEY_BITS = 4096


class SSHRunner:
    """Runs shell commands inside the VM as the core user."""

    def __init__(
        self,
        driver: Driver,
        private_key_path: Optional[Path] = None,
        user: str = SSH_USER,
        port: int = SSH_PORT,
    ) -> None:
        self.driver = driver
        self.private_key_path = private_key_path
        self.user = user
        self.port = port
        self._client: Optional[paramiko.SSHClient] = None

    def set_private_key_path(self, path: Path) -> None:
        """Switch to another key; the next command reconnects with it."""
        self.private_key_path = path
        self.close()

    def _connect(self) -> "paramiko.SSHClient":
        if self._client is not None:
            return self._client
        host = self.driver.get_ip()
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        kwargs: dict = {
            "hostname": host,
            "port": self.port,
            "username": self.user,
            "timeout": 10,
            "allow_agent": False,
            "look_for_keys": False,
        }
        if self.private_key_path is not None:
            kwargs["key_filename"] = str(self.private_key_path)
        try:
            client.connect(**kwargs)
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            raise ManagerError(f"Cannot connect to {self.user}@{host}:{self.port}: {exc}") from exc
        self._client = client
        return client

    def _execute(self, command: str, display: str) -> str:
        client = self._connect()
        try:
            _, stdout, stderr = client.exec_command(command, timeout=COMMAND_TIMEOUT)
            code = stdout.channel.recv_exit_status()
            output = stdout.read().decode("utf-8", errors="replace")
            error = stderr.read().decode("utf-8", errors="replace")
        except (paramiko.SSHException, OSError) as exc:
            self.close()
            raise ManagerError(f"ssh command failed: {display}: {exc}") from exc
        if code != 0:
            raise SSHCommandError(display, code, (output + error).strip())
        return output

    def run(self, command: str) -> str:
        log("DEBUG", f"Running SSH command: {command}")
        output = self._execute(command, command)
        log("DEBUG", f"SSH command results: {output.strip()}")
        return output

    def run_private(self, command: str) -> str:
        """Like run() but never logs the command or its output."""
        log("DEBUG", "Running SSH command: <hidden>")
        return self._execute(command, "<hidden>")

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


def generate_ssh_key(path: Path) -> str:
    """Write a new RSA key pair at path and path.pub; return the public key line."""
    ensure_directory(path.parent)
    try:
        key = paramiko.RSAKey.generate(KEY_BITS)
        path.unlink(missing_ok=True)
        key.write_private_key_file(str(path))
        os.chmod(path, 0o600)
        public = f"{key.get_name()} {key.get_base64()}"
        path.with_suffix(".pub").write_text(public + "\n")
    except (paramiko.SSHException, OSError) as exc:
        raise ManagerError(f"Error generating ssh key pair: {exc}") from exc
    return public
