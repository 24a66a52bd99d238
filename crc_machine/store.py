"""Persistent instance records kept under the machines directory."""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from crc_machine.constants import MACHINE_RECORD_NAME, NAME_RE, machine_dir
from crc_machine.driver import Driver, load_driver, new_driver
from crc_machine.exceptions import ManagerError
from crc_machine.models import MachineConfig
from crc_machine.utils import ensure_directory, log


@dataclass
class Instance:
    """A named VM together with the driver that manages it."""

    name: str
    driver: Driver

    @property
    def driver_name(self) -> str:
        return self.driver.driver_name()


class InstanceStore:
    """Creates, loads and removes instance records.

    The record only describes how to reach the VM (driver name and driver
    settings). The last observed state is written for humans reading the file;
    callers always ask the driver for the live state.
    """

    def __init__(self, machines_dir: Path) -> None:
        self.machines_dir = machines_dir
        self._drivers: List[Driver] = []

    def _record_path(self, name: str) -> Path:
        return machine_dir(name, self.machines_dir) / MACHINE_RECORD_NAME

    def exists(self, name: str) -> bool:
        if not NAME_RE.match(name):
            raise ManagerError(f"Invalid machine name '{name}'")
        return self._record_path(name).is_file()

    def _track(self, driver: Driver) -> Driver:
        self._drivers.append(driver)
        return driver

    def load(self, name: str) -> Instance:
        path = self._record_path(name)
        if not path.is_file():
            raise ManagerError(f"Machine '{name}' does not exist")
        try:
            data = yaml.safe_load(path.read_text()) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ManagerError(f"Cannot read machine record {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ManagerError(f"Machine record {path} is malformed")
        driver_name = data.get("driver_name")
        if not driver_name:
            raise ManagerError(f"Machine record {path} does not name a driver")
        driver = load_driver(
            driver_name,
            machine_name=name,
            store_path=path.parent,
            settings=data.get("driver") or {},
        )
        return Instance(name=name, driver=self._track(driver))

    def create(self, machine_config: MachineConfig, driver_name: str) -> Instance:
        """Create the VM through a fresh driver. The record is written only on success."""
        directory = machine_dir(machine_config.name, self.machines_dir)
        ensure_directory(directory)
        driver = self._track(new_driver(driver_name, machine_config.name, directory))
        driver.create(machine_config)
        instance = Instance(name=machine_config.name, driver=driver)
        self.save(instance)
        return instance

    def save(self, instance: Instance) -> None:
        path = self._record_path(instance.name)
        ensure_directory(path.parent)
        record: Dict[str, Any] = {
            "name": instance.name,
            "driver_name": instance.driver_name,
            "driver": instance.driver.to_dict(),
            "state": str(instance.driver.get_state()),
        }
        try:
            path.write_text(yaml.safe_dump(record, sort_keys=False))
        except OSError as exc:
            raise ManagerError(f"Cannot write machine record {path}: {exc}") from exc
        log("DEBUG", f"Saved machine record {path}")

    def remove(self, name: str) -> None:
        directory = machine_dir(name, self.machines_dir)
        if not directory.exists():
            raise ManagerError(f"Machine '{name}' does not exist")
        try:
            shutil.rmtree(directory)
        except OSError as exc:
            raise ManagerError(f"Cannot remove {directory}: {exc}") from exc

    def close(self) -> None:
        while self._drivers:
            driver = self._drivers.pop()
            try:
                driver.close()
            except Exception as exc:  # pragma: no cover - best effort
                log("DEBUG", f"Error closing driver for {driver.machine_name}: {exc}")
