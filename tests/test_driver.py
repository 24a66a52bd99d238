"""Tests for crc_machine.driver module."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from conftest import FakeDriver
from crc_machine import driver as driver_mod
from crc_machine.exceptions import ManagerError


class TestDriverRegistry:
    def test_unsupported_driver(self, tmp_path):
        with pytest.raises(ManagerError, match="Unsupported driver 'hyperkit'"):
            driver_mod.new_driver("hyperkit", "crc", tmp_path)

    def test_missing_bindings_become_manager_error(self, tmp_path, monkeypatch):
        monkeypatch.setitem(driver_mod.DRIVERS, "broken", "crc_machine.no_such_backend:Driver")
        with pytest.raises(ManagerError, match="Driver 'broken' is not available"):
            driver_mod.new_driver("broken", "crc", tmp_path)

    def test_resolves_by_import_path(self, tmp_path, monkeypatch):
        monkeypatch.setitem(driver_mod.DRIVERS, "fake", "conftest:FakeDriver")
        created = driver_mod.new_driver("fake", "crc", tmp_path)
        assert isinstance(created, FakeDriver)
        assert created.machine_name == "crc"
        assert created.store_path == tmp_path

    def test_load_driver_applies_settings(self, tmp_path):
        with patch("crc_machine.driver._driver_class", return_value=FakeDriver):
            loaded = driver_mod.load_driver("fake", "crc", tmp_path, {"bundle_name": "b.crcbundle", "state": "Running"})
        assert loaded.get_bundle_name() == "b.crcbundle"
        assert loaded.get_state().is_running


def test_libvirt_is_registered():
    assert driver_mod.DRIVERS["libvirt"] == "crc_machine.libvirt_driver:LibvirtDriver"
