"""Tests for crc_machine.models and crc_machine.constants."""

from pathlib import Path

from crc_machine.constants import machine_dir, private_key_path
from crc_machine.models import RetryPolicy, Settings, StartResult, VMState


class TestVMState:
    def test_str_is_value(self):
        assert str(VMState.RUNNING) == "Running"
        assert f"{VMState.STOPPED}" == "Stopped"

    def test_only_running_is_running(self):
        assert VMState.RUNNING.is_running
        assert not any(state.is_running for state in VMState if state is not VMState.RUNNING)

    def test_round_trip_from_record(self):
        assert VMState("Stopped") is VMState.STOPPED


class TestSettings:
    def test_defaults(self):
        settings = Settings(
            home_dir=Path("/h"), machines_dir=Path("/h/machines"), cache_dir=Path("/h/cache"), log_file=Path("/h/crc.log")
        )
        assert settings.driver == "libvirt"
        assert settings.host_ip_retry == RetryPolicy(30, 2.0)
        assert settings.proxy_retry == RetryPolicy(60, 2.0)
        assert settings.settle_delay == 180.0

    def test_policies_not_shared(self):
        first = Settings(Path("/a"), Path("/a/m"), Path("/a/c"), Path("/a/l"))
        second = Settings(Path("/b"), Path("/b/m"), Path("/b/c"), Path("/b/l"))
        first.ssh_retry.attempts = 1
        assert second.ssh_retry.attempts == 60


def test_start_result_defaults():
    result = StartResult(name="crc")
    assert not result.success
    assert result.error is None
    assert result.cluster_config is None


def test_machine_paths():
    machines = Path("/home/user/.crc/machines")
    assert machine_dir("crc", machines) == machines / "crc"
    assert private_key_path("crc", machines) == machines / "crc" / "id_rsa"
