"""Tests for crc_machine.store module."""

from __future__ import annotations

import pytest
import yaml

from crc_machine.exceptions import ManagerError
from crc_machine.models import VMState
from crc_machine.store import InstanceStore


@pytest.fixture
def store(settings, fake_drivers):
    return InstanceStore(settings.machines_dir)


class TestCreate:
    def test_create_writes_record_after_driver_create(self, store, settings, machine_config):
        instance = store.create(machine_config, "fake")
        assert instance.driver.calls == ["create"]
        record = yaml.safe_load((settings.machines_dir / "crc" / "config.yaml").read_text())
        assert record["name"] == "crc"
        assert record["driver_name"] == "fake"
        assert record["driver"]["bundle_name"] == machine_config.bundle_name
        assert record["state"] == "Running"
        assert store.exists("crc")

    def test_failed_create_leaves_no_record(self, store, machine_config, fake_drivers, monkeypatch):
        def _boom(self, config):
            raise ManagerError("qemu-img failed")

        monkeypatch.setattr(fake_drivers, "create", _boom)
        with pytest.raises(ManagerError, match="qemu-img failed"):
            store.create(machine_config, "fake")
        assert not store.exists("crc")


class TestLoad:
    def test_round_trip(self, store, machine_config):
        created = store.create(machine_config, "fake")
        created.driver.state = VMState.STOPPED
        store.save(created)

        loaded = store.load("crc")
        assert loaded.name == "crc"
        assert loaded.driver_name == "fake"
        assert loaded.driver.get_bundle_name() == machine_config.bundle_name
        assert loaded.driver.get_state() is VMState.STOPPED

    def test_missing_machine(self, store):
        with pytest.raises(ManagerError, match="does not exist"):
            store.load("crc")

    def test_record_without_driver(self, store, settings):
        path = settings.machines_dir / "crc" / "config.yaml"
        path.parent.mkdir(parents=True)
        path.write_text("name: crc\n")
        with pytest.raises(ManagerError, match="does not name a driver"):
            store.load("crc")

    def test_malformed_record(self, store, settings):
        path = settings.machines_dir / "crc" / "config.yaml"
        path.parent.mkdir(parents=True)
        path.write_text("- just\n- a list\n")
        with pytest.raises(ManagerError, match="malformed"):
            store.load("crc")


class TestExistsAndRemove:
    def test_exists_false_for_unknown(self, store):
        assert store.exists("crc") is False

    def test_exists_rejects_bad_name(self, store):
        with pytest.raises(ManagerError, match="Invalid machine name"):
            store.exists("../etc")

    def test_remove_deletes_directory(self, store, settings, machine_config):
        store.create(machine_config, "fake")
        store.remove("crc")
        assert not (settings.machines_dir / "crc").exists()
        assert not store.exists("crc")

    def test_remove_unknown(self, store):
        with pytest.raises(ManagerError, match="does not exist"):
            store.remove("crc")


def test_close_releases_every_driver(store, machine_config):
    created = store.create(machine_config, "fake")
    loaded = store.load("crc")
    store.close()
    assert created.driver.closed
    assert loaded.driver.closed
