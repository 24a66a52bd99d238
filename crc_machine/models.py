"""Data models for crc-machine."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional

from crc_machine.constants import DEFAULT_DRIVER, SETTLE_DELAY_SEC

if TYPE_CHECKING:
    from crc_machine.proxy import ProxyConfig


class VMState(str, Enum):
    """Lifecycle state of the VM process as reported by the driver."""

    NONE = "None"
    RUNNING = "Running"
    PAUSED = "Paused"
    SAVED = "Saved"
    STOPPED = "Stopped"
    STOPPING = "Stopping"
    STARTING = "Starting"
    ERROR = "Error"
    TIMEOUT = "Timeout"
    MISSING = "Missing"

    def __str__(self) -> str:
        return self.value

    @property
    def is_running(self) -> bool:
        return self is VMState.RUNNING


class CertExpiryState(Enum):
    VALID = "valid"
    EXPIRED = "expired"
    CHECK_FAILED = "check-failed"


@dataclass
class OperatorsStatus:
    available: bool = False
    degraded: bool = False
    progressing: bool = False


@dataclass
class MachineConfig:
    name: str
    bundle_name: str
    vm_driver: str
    cpus: int
    memory: int  # MiB
    disk_path: Path
    kernel: Path
    initramfs: Path
    kernel_cmdline: str
    ssh_key_path: Path


@dataclass
class ClusterConfig:
    kubeconfig: Path
    kubeadmin_password: str
    web_console_url: str
    cluster_api: str
    proxy_config: "ProxyConfig"


@dataclass
class StartConfig:
    name: str
    bundle_path: Path
    cpus: int
    memory: int
    pull_secret_provider: Callable[[], str]
    nameserver: Optional[str] = None
    debug: bool = False


@dataclass
class StartResult:
    name: str
    success: bool = False
    error: Optional[str] = None
    kubelet_started: bool = False
    cluster_config: Optional[ClusterConfig] = None
    status: str = ""


@dataclass
class StopResult:
    name: str
    success: bool = False
    error: Optional[str] = None
    state: VMState = VMState.NONE


@dataclass
class PowerOffResult:
    name: str
    success: bool = False
    error: Optional[str] = None


@dataclass
class DeleteResult:
    name: str
    success: bool = False
    error: Optional[str] = None


@dataclass
class IPResult:
    name: str
    success: bool = False
    error: Optional[str] = None
    ip: str = ""


@dataclass
class ClusterStatusResult:
    name: str
    success: bool = False
    error: Optional[str] = None
    crc_status: str = ""
    openshift_status: str = ""
    disk_use: int = 0
    disk_size: int = 0


@dataclass
class ConsoleResult:
    success: bool = False
    error: Optional[str] = None
    cluster_config: Optional[ClusterConfig] = None
    state: VMState = VMState.NONE


@dataclass
class RetryPolicy:
    attempts: int
    interval: float  # seconds


@dataclass
class Settings:
    """Resolved runtime settings; see config.parse_env()."""

    home_dir: Path
    machines_dir: Path
    cache_dir: Path
    log_file: Path
    driver: str = DEFAULT_DRIVER
    ssh_retry: RetryPolicy = field(default_factory=lambda: RetryPolicy(60, 1.0))
    host_ip_retry: RetryPolicy = field(default_factory=lambda: RetryPolicy(30, 2.0))
    proxy_retry: RetryPolicy = field(default_factory=lambda: RetryPolicy(60, 2.0))
    client_ca_retry: RetryPolicy = field(default_factory=lambda: RetryPolicy(90, 2.0))
    csr_retry: RetryPolicy = field(default_factory=lambda: RetryPolicy(60, 5.0))
    settle_delay: float = float(SETTLE_DELAY_SEC)
