"""Tests for crc_machine.ssh module."""

from __future__ import annotations

import stat
from unittest.mock import MagicMock, patch

import paramiko
import pytest

from crc_machine.exceptions import ManagerError, SSHCommandError
from crc_machine.ssh import SSHRunner, generate_ssh_key


def _channel_result(code, out=b"", err=b""):
    stdout = MagicMock()
    stdout.channel.recv_exit_status.return_value = code
    stdout.read.return_value = out
    stderr = MagicMock()
    stderr.read.return_value = err
    return MagicMock(), stdout, stderr


@pytest.fixture
def driver():
    drv = MagicMock()
    drv.get_ip.return_value = "192.168.130.11"
    return drv


@pytest.fixture
def client():
    with patch("crc_machine.ssh.paramiko.SSHClient") as mock_cls:
        yield mock_cls.return_value


class TestSSHRunner:
    def test_run_returns_stdout(self, driver, client, tmp_path):
        client.exec_command.return_value = _channel_result(0, b"active\n")
        runner = SSHRunner(driver, tmp_path / "id_rsa")
        assert runner.run("systemctl is-active kubelet") == "active\n"
        kwargs = client.connect.call_args.kwargs
        assert kwargs["hostname"] == "192.168.130.11"
        assert kwargs["username"] == "core"
        assert kwargs["port"] == 22
        assert kwargs["key_filename"] == str(tmp_path / "id_rsa")

    def test_connection_is_reused(self, driver, client):
        client.exec_command.side_effect = [_channel_result(0), _channel_result(0)]
        runner = SSHRunner(driver)
        runner.run("true")
        runner.run("true")
        client.connect.assert_called_once()

    def test_non_zero_exit_raises(self, driver, client):
        client.exec_command.return_value = _channel_result(1, b"", b"no such host\n")
        runner = SSHRunner(driver)
        with pytest.raises(SSHCommandError) as exc:
            runner.run("host -R 3 foo.apps-crc.testing")
        assert exc.value.status == 1
        assert exc.value.output == "no such host"

    def test_run_private_hides_command(self, driver, client, capsys, monkeypatch):
        monkeypatch.setattr("crc_machine.utils._log_state", {"file": None, "debug": True})
        client.exec_command.return_value = _channel_result(3, b"", b"denied")
        runner = SSHRunner(driver)
        with pytest.raises(SSHCommandError) as exc:
            runner.run_private("echo secret-token | sudo tee /etc/x")
        assert "secret-token" not in str(exc.value)
        assert "secret-token" not in capsys.readouterr().out

    def test_connect_failure(self, driver, client):
        client.connect.side_effect = paramiko.SSHException("auth failed")
        runner = SSHRunner(driver)
        with pytest.raises(ManagerError, match="Cannot connect to core@192.168.130.11:22"):
            runner.run("true")
        client.close.assert_called_once()

    def test_set_private_key_path_reconnects(self, driver, client, tmp_path):
        client.exec_command.side_effect = [_channel_result(0), _channel_result(0)]
        runner = SSHRunner(driver, tmp_path / "bundle-key")
        runner.run("true")
        runner.set_private_key_path(tmp_path / "id_rsa")
        runner.run("true")
        assert client.connect.call_count == 2
        assert client.connect.call_args.kwargs["key_filename"] == str(tmp_path / "id_rsa")


class TestGenerateSSHKey:
    def test_writes_private_and_public_key(self, tmp_path, monkeypatch):
        monkeypatch.setattr("crc_machine.ssh.KEY_BITS", 1024)
        key_path = tmp_path / "machines" / "crc" / "id_rsa"
        public = generate_ssh_key(key_path)
        assert public.startswith("ssh-rsa ")
        assert key_path.with_suffix(".pub").read_text().strip() == public
        assert stat.S_IMODE(key_path.stat().st_mode) == 0o600
        assert paramiko.RSAKey.from_private_key_file(str(key_path)).get_base64() in public

    def test_replaces_existing_key(self, tmp_path, monkeypatch):
        monkeypatch.setattr("crc_machine.ssh.KEY_BITS", 1024)
        key_path = tmp_path / "id_rsa"
        first = generate_ssh_key(key_path)
        second = generate_ssh_key(key_path)
        assert first != second
