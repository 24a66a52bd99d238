"""libvirt backend for the crc-machine Driver capability."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Any, Dict, Mapping, Optional
from xml.dom.minidom import parseString
from xml.etree.ElementTree import Element, SubElement, tostring

try:
    import libvirt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise ImportError(f"libvirt python bindings not available: {exc}") from exc

from crc_machine.constants import LIBVIRT_NETWORK, LIBVIRT_URI
from crc_machine.exceptions import ManagerError, RetriableError
from crc_machine.models import MachineConfig, VMState
from crc_machine.retry import retry_after
from crc_machine.utils import deterministic_mac, ensure_directory, log, run

_STATE_MAP = {
    libvirt.VIR_DOMAIN_NOSTATE: VMState.NONE,
    libvirt.VIR_DOMAIN_RUNNING: VMState.RUNNING,
    libvirt.VIR_DOMAIN_BLOCKED: VMState.RUNNING,
    libvirt.VIR_DOMAIN_PAUSED: VMState.PAUSED,
    libvirt.VIR_DOMAIN_SHUTDOWN: VMState.STOPPING,
    libvirt.VIR_DOMAIN_SHUTOFF: VMState.STOPPED,
    libvirt.VIR_DOMAIN_CRASHED: VMState.ERROR,
    libvirt.VIR_DOMAIN_PMSUSPENDED: VMState.SAVED,
}

SHUTDOWN_ATTEMPTS = 120
SHUTDOWN_INTERVAL = 1.0


def _error_message(exc: "libvirt.libvirtError") -> str:
    return exc.get_error_message() if hasattr(exc, "get_error_message") else str(exc)


class LibvirtDriver:
    def __init__(self, machine_name: str, store_path: Path, uri: str = LIBVIRT_URI) -> None:
        self.machine_name = machine_name
        self.store_path = store_path
        self.uri = uri
        self.conn: Optional[libvirt.virConnect] = None
        self.bundle_name = ""
        self.cpus = 0
        self.memory = 0
        self.base_disk_path: Optional[Path] = None
        self.kernel: Optional[Path] = None
        self.initramfs: Optional[Path] = None
        self.kernel_cmdline = ""
        self.ssh_key_path: Optional[Path] = None
        self.network = LIBVIRT_NETWORK
        self.mac_address = deterministic_mac(machine_name)

    @property
    def disk_path(self) -> Path:
        return self.store_path / f"{self.machine_name}.qcow2"

    # Persistence

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uri": self.uri,
            "bundle_name": self.bundle_name,
            "cpus": self.cpus,
            "memory": self.memory,
            "base_disk_path": str(self.base_disk_path) if self.base_disk_path else "",
            "kernel": str(self.kernel) if self.kernel else "",
            "initramfs": str(self.initramfs) if self.initramfs else "",
            "kernel_cmdline": self.kernel_cmdline,
            "ssh_key_path": str(self.ssh_key_path) if self.ssh_key_path else "",
            "network": self.network,
            "mac_address": self.mac_address,
        }

    def load_dict(self, settings: Mapping[str, Any]) -> None:
        def _path(key: str) -> Optional[Path]:
            value = settings.get(key) or ""
            return Path(value) if value else None

        self.uri = settings.get("uri") or self.uri
        self.bundle_name = settings.get("bundle_name") or ""
        self.cpus = int(settings.get("cpus") or 0)
        self.memory = int(settings.get("memory") or 0)
        self.base_disk_path = _path("base_disk_path")
        self.kernel = _path("kernel")
        self.initramfs = _path("initramfs")
        self.kernel_cmdline = settings.get("kernel_cmdline") or ""
        self.ssh_key_path = _path("ssh_key_path")
        self.network = settings.get("network") or LIBVIRT_NETWORK
        self.mac_address = settings.get("mac_address") or self.mac_address

    # Connection

    def _connect(self) -> "libvirt.virConnect":
        if self.conn is None:
            try:
                self.conn = libvirt.open(self.uri)
            except libvirt.libvirtError as exc:
                raise ManagerError(f"Failed to open libvirt connection to {self.uri}: {_error_message(exc)}") from exc
            if self.conn is None:
                raise ManagerError(f"Failed to open libvirt connection to {self.uri}")
        return self.conn

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    def _lookup(self) -> Optional["libvirt.virDomain"]:
        conn = self._connect()
        try:
            return conn.lookupByName(self.machine_name)
        except libvirt.libvirtError as exc:
            if exc.get_error_code() == libvirt.VIR_ERR_NO_DOMAIN:
                return None
            raise ManagerError(f"Cannot look up domain {self.machine_name}: {_error_message(exc)}") from exc

    def _domain(self) -> "libvirt.virDomain":
        domain = self._lookup()
        if domain is None:
            raise ManagerError(f"Domain {self.machine_name} does not exist")
        return domain

    # Driver capability

    def driver_name(self) -> str:
        return "libvirt"

    def get_bundle_name(self) -> str:
        return self.bundle_name

    def get_ssh_key_path(self) -> Optional[Path]:
        return self.ssh_key_path

    def create(self, config: MachineConfig) -> None:
        self.bundle_name = config.bundle_name
        self.cpus = config.cpus
        self.memory = config.memory
        self.base_disk_path = config.disk_path
        self.kernel = config.kernel
        self.initramfs = config.initramfs
        self.kernel_cmdline = config.kernel_cmdline
        self.ssh_key_path = config.ssh_key_path

        conn = self._connect()
        if self._lookup() is not None:
            raise ManagerError(f"Domain {self.machine_name} already exists")
        self._create_disk()
        try:
            domain = conn.defineXML(self.render_domain_xml())
        except libvirt.libvirtError as exc:
            raise ManagerError(f"Failed to define domain: {_error_message(exc)}") from exc
        if domain is None:
            raise ManagerError("Failed to define libvirt domain")
        log("SUCCESS", f"Defined domain {self.machine_name}")
        self.start()

    def _create_disk(self) -> None:
        if self.base_disk_path is None:
            raise ManagerError("No base disk image configured")
        ensure_directory(self.store_path)
        if self.disk_path.exists():
            log("INFO", f"Reusing disk {self.disk_path}")
            return
        log("INFO", f"Creating disk {self.disk_path}")
        try:
            run(
                [
                    "qemu-img",
                    "create",
                    "-f",
                    "qcow2",
                    "-F",
                    "qcow2",
                    "-b",
                    str(self.base_disk_path),
                    str(self.disk_path),
                ]
            )
        except (OSError, subprocess.CalledProcessError) as exc:
            raise ManagerError(f"Failed to create disk {self.disk_path}: {exc}") from exc

    def start(self) -> None:
        domain = self._domain()
        if domain.isActive():
            log("INFO", f"Domain {self.machine_name} already running")
            return
        try:
            domain.create()
        except libvirt.libvirtError as exc:
            message = _error_message(exc)
            if "network" in message.lower() and self.network in message:
                raise ManagerError(
                    f"Failed to start domain: {message}\n"
                    f"Make sure the libvirt network '{self.network}' is defined and active."
                ) from exc
            raise ManagerError(f"Failed to start domain: {message}") from exc
        log("SUCCESS", f"Domain {self.machine_name} started")

    def stop(self) -> None:
        domain = self._domain()
        if not domain.isActive():
            return
        try:
            domain.shutdown()
        except libvirt.libvirtError as exc:
            raise ManagerError(f"Failed to shut down domain: {_error_message(exc)}") from exc

        def _stopped() -> None:
            if domain.isActive():
                raise RetriableError(message=f"Domain {self.machine_name} is still running")

        retry_after(SHUTDOWN_ATTEMPTS, _stopped, SHUTDOWN_INTERVAL)

    def kill(self) -> None:
        domain = self._domain()
        if not domain.isActive():
            return
        try:
            domain.destroy()
        except libvirt.libvirtError as exc:
            raise ManagerError(f"Failed to power off domain: {_error_message(exc)}") from exc

    def remove(self) -> None:
        domain = self._lookup()
        if domain is not None:
            try:
                if domain.isActive():
                    log("INFO", f"Shutting down domain {self.machine_name}")
                    domain.destroy()
                domain.undefine()
            except libvirt.libvirtError as exc:
                raise ManagerError(f"Failed to remove domain: {_error_message(exc)}") from exc
        self.disk_path.unlink(missing_ok=True)

    def get_state(self) -> VMState:
        domain = self._lookup()
        if domain is None:
            return VMState.MISSING
        try:
            state, _reason = domain.state()
        except libvirt.libvirtError as exc:
            log("DEBUG", f"Cannot read state of {self.machine_name}: {_error_message(exc)}")
            return VMState.ERROR
        return _STATE_MAP.get(state, VMState.NONE)

    def get_ip(self) -> str:
        domain = self._domain()
        try:
            interfaces = domain.interfaceAddresses(libvirt.VIR_DOMAIN_INTERFACE_ADDRESSES_SRC_LEASE)
        except libvirt.libvirtError as exc:
            raise ManagerError(f"Cannot read interface addresses: {_error_message(exc)}") from exc
        for iface in (interfaces or {}).values():
            if (iface.get("hwaddr") or "").lower() != self.mac_address:
                continue
            for addr in iface.get("addrs") or []:
                if addr.get("type") == libvirt.VIR_IP_ADDR_TYPE_IPV4 and addr.get("addr"):
                    return addr["addr"]
        raise ManagerError(f"No IP address found for {self.machine_name} on network '{self.network}'")

    # Domain definition

    def render_domain_xml(self) -> str:
        if self.kernel is None or self.initramfs is None:
            raise ManagerError("Kernel and initramfs are required for direct kernel boot")
        domain = Element("domain", type="kvm")
        SubElement(domain, "name").text = self.machine_name
        SubElement(domain, "memory", unit="MiB").text = str(self.memory)
        SubElement(domain, "vcpu", placement="static").text = str(self.cpus)

        os_el = SubElement(domain, "os")
        SubElement(os_el, "type", arch="x86_64", machine="q35").text = "hvm"
        SubElement(os_el, "kernel").text = str(self.kernel)
        SubElement(os_el, "initrd").text = str(self.initramfs)
        SubElement(os_el, "cmdline").text = self.kernel_cmdline

        features = SubElement(domain, "features")
        for feature in ("acpi", "apic", "pae"):
            SubElement(features, feature)
        SubElement(domain, "cpu", mode="host-passthrough")
        SubElement(domain, "clock", offset="utc")

        devices = SubElement(domain, "devices")
        disk = SubElement(devices, "disk", type="file", device="disk")
        SubElement(disk, "driver", name="qemu", type="qcow2", cache="none", io="native")
        SubElement(disk, "source", file=str(self.disk_path))
        SubElement(disk, "target", dev="vda", bus="virtio")

        devices.append(self._render_interface())

        serial = SubElement(devices, "serial", type="pty")
        SubElement(serial, "target", port="0")
        console = SubElement(devices, "console", type="pty")
        SubElement(console, "target", type="serial", port="0")
        rng = SubElement(devices, "rng", model="virtio")
        SubElement(rng, "backend", model="random").text = "/dev/urandom"
        SubElement(devices, "memballoon", model="virtio")

        raw = tostring(domain, encoding="unicode")
        return parseString(raw).documentElement.toprettyxml(indent="  ").strip()

    def _render_interface(self) -> Element:
        iface = Element("interface", type="network")
        SubElement(iface, "mac", address=self.mac_address)
        SubElement(iface, "source", network=self.network)
        SubElement(iface, "model", type="virtio")
        return iface
