"""Shared test fixtures: fast settings, an in-memory driver and bundle fixtures."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import pytest

from crc_machine.models import MachineConfig, RetryPolicy, Settings, VMState

BUNDLE_NAME = "crc_libvirt_4.5.1.crcbundle"
DISK_CONTENT = b"qcow2-disk-image"
DRIVER_MUTATIONS = {"create", "start", "stop", "kill", "remove"}


class FakeDriver:
    """In-memory Driver; its state survives a store round-trip through to_dict()."""

    def __init__(self, machine_name: str, store_path: Path) -> None:
        self.machine_name = machine_name
        self.store_path = store_path
        self.bundle_name = ""
        self.state = VMState.STOPPED
        self.ip = "192.168.130.11"
        self.ssh_key_path: Optional[Path] = None
        self.calls: List[str] = []
        self.closed = False

    def create(self, config: MachineConfig) -> None:
        self.calls.append("create")
        self.bundle_name = config.bundle_name
        self.ssh_key_path = config.ssh_key_path
        self.state = VMState.RUNNING

    def start(self) -> None:
        self.calls.append("start")
        self.state = VMState.RUNNING

    def stop(self) -> None:
        self.calls.append("stop")
        self.state = VMState.STOPPED

    def kill(self) -> None:
        self.calls.append("kill")
        self.state = VMState.STOPPED

    def remove(self) -> None:
        self.calls.append("remove")

    def get_state(self) -> VMState:
        return self.state

    def get_ip(self) -> str:
        return self.ip

    def get_bundle_name(self) -> str:
        return self.bundle_name

    def get_ssh_key_path(self) -> Optional[Path]:
        return self.ssh_key_path

    def driver_name(self) -> str:
        return "fake"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bundle_name": self.bundle_name,
            "state": self.state.value,
            "ip": self.ip,
            "ssh_key_path": str(self.ssh_key_path) if self.ssh_key_path else "",
        }

    def load_dict(self, settings: Mapping[str, Any]) -> None:
        self.bundle_name = settings.get("bundle_name", "")
        self.state = VMState(settings.get("state", VMState.STOPPED.value))
        self.ip = settings.get("ip", self.ip)
        key = settings.get("ssh_key_path")
        self.ssh_key_path = Path(key) if key else None

    def close(self) -> None:
        self.closed = True


def write_bundle(directory: Path, openshift_version: str = "4.5.1", build_time: str = "2020-07-01T10:00:00+00:00") -> Path:
    """Lay out an extracted bundle in directory and return it."""
    directory.mkdir(parents=True, exist_ok=True)
    (directory / "crc.qcow2").write_bytes(DISK_CONTENT)
    (directory / "vmlinuz").write_text("kernel")
    (directory / "initramfs.img").write_text("initramfs")
    (directory / "kubeconfig").write_text("apiVersion: v1\nkind: Config\n")
    (directory / "kubeadmin-password").write_text("s3cr3t-pass\n")
    (directory / "id_ecdsa_crc").write_text("bundle-key")
    info = {
        "version": "1.0",
        "type": "snc",
        "buildInfo": {"buildTime": build_time, "openshiftInstallerVersion": "4.5.1", "sncVersion": "git1"},
        "clusterInfo": {
            "openshiftVersion": openshift_version,
            "clusterName": "crc",
            "baseDomain": "testing",
            "appsDomain": "apps-crc.testing",
            "sshPrivateKeyFile": "id_ecdsa_crc",
            "kubeConfig": "kubeconfig",
            "kubeadminPasswordFile": "kubeadmin-password",
        },
        "nodes": [
            {
                "kind": ["master", "worker"],
                "hostname": "crc-node",
                "diskImage": "crc.qcow2",
                "kernel": "vmlinuz",
                "initramfs": "initramfs.img",
                "kernelCmdLine": "console=ttyS0 root=/dev/vda4",
                "internalIP": "192.168.126.11",
            }
        ],
        "storage": {
            "diskImages": [
                {"name": "crc.qcow2", "format": "qcow2", "size": str(len(DISK_CONTENT)), "sha256sum": "abc"}
            ]
        },
        "driverInfo": {"name": "libvirt"},
    }
    (directory / "crc-bundle-info.json").write_text(json.dumps(info))
    return directory


@pytest.fixture(autouse=True)
def clean_proxy_env(monkeypatch):
    for key in ("HTTP_PROXY", "HTTPS_PROXY", "NO_PROXY"):
        monkeypatch.delenv(key, raising=False)
        monkeypatch.delenv(key.lower(), raising=False)


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings rooted in tmp_path with instant retries and no settle delay."""
    fast = RetryPolicy(attempts=3, interval=0.0)
    return Settings(
        home_dir=tmp_path,
        machines_dir=tmp_path / "machines",
        cache_dir=tmp_path / "cache",
        log_file=tmp_path / "crc.log",
        driver="fake",
        ssh_retry=fast,
        host_ip_retry=RetryPolicy(attempts=30, interval=2.0),
        proxy_retry=fast,
        client_ca_retry=fast,
        csr_retry=fast,
        settle_delay=0.0,
    )


@pytest.fixture
def fake_drivers(monkeypatch):
    """Route every driver lookup to FakeDriver."""
    monkeypatch.setattr("crc_machine.driver._driver_class", lambda name: FakeDriver)
    return FakeDriver


@pytest.fixture
def created_drivers(fake_drivers, monkeypatch) -> List[FakeDriver]:
    """Every FakeDriver built through the registry, in creation order."""
    created: List[FakeDriver] = []

    def _build(**kwargs: Any) -> FakeDriver:
        driver = fake_drivers(**kwargs)
        created.append(driver)
        return driver

    monkeypatch.setattr("crc_machine.driver._driver_class", lambda name: _build)
    return created


@pytest.fixture
def cached_bundle(settings) -> Path:
    return write_bundle(settings.cache_dir / BUNDLE_NAME[: -len(".crcbundle")])


@pytest.fixture
def bundle_file(tmp_path) -> Path:
    """The bundle archive path given on the command line; the cache already holds it."""
    path = tmp_path / "downloads" / BUNDLE_NAME
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"archive")
    return path


@pytest.fixture
def machine_config(tmp_path) -> MachineConfig:
    return MachineConfig(
        name="crc",
        bundle_name=BUNDLE_NAME,
        vm_driver="fake",
        cpus=4,
        memory=9216,
        disk_path=tmp_path / "crc.qcow2",
        kernel=tmp_path / "vmlinuz",
        initramfs=tmp_path / "initramfs.img",
        kernel_cmdline="console=ttyS0",
        ssh_key_path=tmp_path / "id_ecdsa_crc",
    )
