"""Tests for crc_machine.libvirt_driver (needs the libvirt python bindings)."""

from __future__ import annotations

import subprocess
import xml.etree.ElementTree as ET
from unittest.mock import MagicMock, patch

import pytest

libvirt = pytest.importorskip("libvirt")

from crc_machine.exceptions import ManagerError  # noqa: E402
from crc_machine.libvirt_driver import LibvirtDriver  # noqa: E402
from crc_machine.models import VMState  # noqa: E402


def _libvirt_error(message, code=None):
    err = libvirt.libvirtError(message)
    err.get_error_code = MagicMock(return_value=code)
    err.get_error_message = MagicMock(return_value=message)
    return err


@pytest.fixture
def driver(tmp_path, machine_config):
    drv = LibvirtDriver("crc", tmp_path / "machines" / "crc")
    drv.conn = MagicMock()
    drv.bundle_name = machine_config.bundle_name
    drv.cpus = 4
    drv.memory = 9216
    drv.base_disk_path = machine_config.disk_path
    drv.kernel = machine_config.kernel
    drv.initramfs = machine_config.initramfs
    drv.kernel_cmdline = "console=ttyS0"
    drv.ssh_key_path = machine_config.ssh_key_path
    return drv


class TestDomainXml:
    def test_direct_kernel_boot(self, driver):
        root = ET.fromstring(driver.render_domain_xml())
        assert root.get("type") == "kvm"
        assert root.findtext("name") == "crc"
        assert root.find("memory").get("unit") == "MiB"
        assert root.findtext("memory") == "9216"
        assert root.findtext("vcpu") == "4"
        assert root.findtext("os/kernel") == str(driver.kernel)
        assert root.findtext("os/initrd") == str(driver.initramfs)
        assert root.findtext("os/cmdline") == "console=ttyS0"
        assert root.find("devices/disk/source").get("file") == str(driver.disk_path)
        iface = root.find("devices/interface")
        assert iface.find("source").get("network") == "crc"
        assert iface.find("mac").get("address") == driver.mac_address

    def test_requires_kernel(self, driver):
        driver.kernel = None
        with pytest.raises(ManagerError, match="Kernel and initramfs"):
            driver.render_domain_xml()


class TestPersistence:
    def test_round_trip(self, driver, tmp_path):
        clone = LibvirtDriver("crc", tmp_path)
        clone.load_dict(driver.to_dict())
        assert clone.to_dict() == driver.to_dict()
        assert clone.get_bundle_name() == driver.bundle_name
        assert clone.get_ssh_key_path() == driver.ssh_key_path


class TestLifecycle:
    def test_create_defines_and_starts(self, driver, machine_config):
        driver.conn.lookupByName.side_effect = [
            _libvirt_error("no domain", libvirt.VIR_ERR_NO_DOMAIN),
            MagicMock(isActive=MagicMock(return_value=False)),
        ]
        with patch("crc_machine.libvirt_driver.run") as mock_run:
            driver.create(machine_config)
        assert mock_run.call_args[0][0][:2] == ["qemu-img", "create"]
        driver.conn.defineXML.assert_called_once()

    def test_create_disk_failure(self, driver, machine_config):
        driver.conn.lookupByName.side_effect = _libvirt_error("no domain", libvirt.VIR_ERR_NO_DOMAIN)
        with patch(
            "crc_machine.libvirt_driver.run",
            side_effect=subprocess.CalledProcessError(1, ["qemu-img"]),
        ):
            with pytest.raises(ManagerError, match="Failed to create disk"):
                driver.create(machine_config)
        driver.conn.defineXML.assert_not_called()

    def test_get_state_missing_domain(self, driver):
        driver.conn.lookupByName.side_effect = _libvirt_error("no domain", libvirt.VIR_ERR_NO_DOMAIN)
        assert driver.get_state() is VMState.MISSING

    def test_get_state_maps_running(self, driver):
        domain = MagicMock()
        domain.state.return_value = (libvirt.VIR_DOMAIN_RUNNING, 1)
        driver.conn.lookupByName.return_value = domain
        assert driver.get_state() is VMState.RUNNING

    def test_stop_polls_until_inactive(self, driver):
        domain = MagicMock()
        domain.isActive.side_effect = [True, True, False]
        driver.conn.lookupByName.return_value = domain
        with patch("crc_machine.retry.time.sleep"):
            driver.stop()
        domain.shutdown.assert_called_once()

    def test_kill_destroys_running_domain(self, driver):
        domain = MagicMock()
        domain.isActive.return_value = True
        driver.conn.lookupByName.return_value = domain
        driver.kill()
        domain.destroy.assert_called_once()

    def test_remove_undefines_and_deletes_disk(self, driver):
        driver.disk_path.parent.mkdir(parents=True)
        driver.disk_path.write_bytes(b"disk")
        domain = MagicMock()
        domain.isActive.return_value = False
        driver.conn.lookupByName.return_value = domain
        driver.remove()
        domain.undefine.assert_called_once()
        assert not driver.disk_path.exists()

    def test_get_ip_matches_mac(self, driver):
        domain = MagicMock()
        domain.interfaceAddresses.return_value = {
            "vnet0": {
                "hwaddr": driver.mac_address.upper(),
                "addrs": [{"type": libvirt.VIR_IP_ADDR_TYPE_IPV4, "addr": "192.168.130.11", "prefix": 24}],
            }
        }
        driver.conn.lookupByName.return_value = domain
        assert driver.get_ip() == "192.168.130.11"

    def test_get_ip_without_lease(self, driver):
        domain = MagicMock()
        domain.interfaceAddresses.return_value = {}
        driver.conn.lookupByName.return_value = domain
        with pytest.raises(ManagerError, match="No IP address"):
            driver.get_ip()
