"""Driver capability: the hypervisor backend that creates, runs and inspects the VM."""

from __future__ import annotations

import importlib
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

from crc_machine.exceptions import ManagerError
from crc_machine.models import MachineConfig, VMState


class Driver(Protocol):
    machine_name: str

    def create(self, config: MachineConfig) -> None: ...

    def start(self) -> None: ...

    def stop(self) -> None: ...

    def kill(self) -> None: ...

    def remove(self) -> None: ...

    def get_state(self) -> VMState: ...

    def get_ip(self) -> str: ...

    def get_bundle_name(self) -> str: ...

    def get_ssh_key_path(self) -> Optional[Path]: ...

    def driver_name(self) -> str: ...

    def to_dict(self) -> Dict[str, Any]: ...

    def load_dict(self, settings: Mapping[str, Any]) -> None: ...

    def close(self) -> None: ...


# Backends are imported on demand so optional bindings need not be installed.
DRIVERS: Dict[str, str] = {
    "libvirt": "crc_machine.libvirt_driver:LibvirtDriver",
}


def _driver_class(name: str) -> Callable[..., Driver]:
    target = DRIVERS.get(name)
    if target is None:
        supported = ", ".join(sorted(DRIVERS))
        raise ManagerError(f"Unsupported driver '{name}' (supported: {supported})")
    module_name, _, attr = target.partition(":")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ManagerError(f"Driver '{name}' is not available: {exc}") from exc
    return getattr(module, attr)


def new_driver(name: str, machine_name: str, store_path: Path) -> Driver:
    return _driver_class(name)(machine_name=machine_name, store_path=store_path)


def load_driver(name: str, machine_name: str, store_path: Path, settings: Mapping[str, Any]) -> Driver:
    driver = new_driver(name, machine_name, store_path)
    driver.load_dict(settings)
    return driver
