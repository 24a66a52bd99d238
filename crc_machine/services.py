"""systemd service control inside the VM."""

from __future__ import annotations

from crc_machine.ssh import SSHRunner
from crc_machine.utils import log


class SystemdCommander:
    """Wrapper driving systemctl through an SSH runner."""

    def __init__(self, runner: SSHRunner) -> None:
        self.runner = runner

    def daemon_reload(self) -> None:
        self.runner.run("sudo systemctl daemon-reload")

    def start(self, unit: str) -> str:
        log("DEBUG", f"Starting {unit}")
        return self.runner.run(f"sudo systemctl start {unit}")

    def restart(self, unit: str) -> str:
        # Unit files may have changed (proxy drop-ins); reload before restarting.
        self.daemon_reload()
        log("DEBUG", f"Restarting {unit}")
        return self.runner.run(f"sudo systemctl restart {unit}")

    def is_active(self, unit: str) -> bool:
        output = self.runner.run(f"sudo systemctl is-active {unit} || true")
        return output.strip() == "active"
