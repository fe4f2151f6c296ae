"""Shared test fixtures and configuration for hyperv_provisioner tests."""

from unittest import mock

import pytest

from hyperv_provisioner.config import VMSpec
from hyperv_provisioner.hyperv_client import HyperVClient
from hyperv_provisioner.powershell import PowerShellResult


@pytest.fixture
def vm_spec() -> VMSpec:
    """Typical settings for the runner VM."""
    return VMSpec(
        name="ubuntu-runner",
        memory_bytes=4 * 1024**3,
        cpu_count=2,
        disk_size_bytes=60 * 1024**3,
        switch_name="ExternalSwitch",
        iso_url="https://releases.ubuntu.com/24.04.2/ubuntu-24.04.2-live-server-amd64.iso",
        iso_name="ubuntu-24.04.2-live-server-amd64.iso",
        vm_root="C:\\Hyper-V",
    )


@pytest.fixture
def mock_runner():
    """PowerShell runner that records scripts and returns empty output."""
    runner = mock.MagicMock()
    runner.dry_run = False
    runner.is_remote = False
    runner.host = None
    runner.run.return_value = PowerShellResult(stdout="", stderr="", returncode=0)
    runner.run_json.return_value = None
    return runner


@pytest.fixture
def mock_client():
    """HyperVClient mock for manager and provisioner tests."""
    client = mock.MagicMock(spec=HyperVClient)
    client.dry_run = False
    client.runner = mock.MagicMock()
    client.runner.is_remote = False
    client.runner.host = None
    client.is_feature_enabled.return_value = True
    client.get_service_status.return_value = "Running"
    client.get_vm.return_value = None
    client.get_vm_state.return_value = "Running"
    client.remove_path.return_value = False
    client.path_exists.return_value = False
    client.switch_exists.return_value = True
    return client


class FakeChannel:
    """Stand-in for a paramiko Channel that hands out buffered output in chunks."""

    def __init__(self, stdout=b"", stderr=b"", status=0, chunk=8):
        self.stdout_data = stdout
        self.stderr_data = stderr
        self.status = status
        self.chunk = chunk

    def recv_ready(self):
        return bool(self.stdout_data)

    def recv(self, size):
        data = self.stdout_data[: min(size, self.chunk)]
        self.stdout_data = self.stdout_data[len(data):]
        return data

    def recv_stderr_ready(self):
        return bool(self.stderr_data)

    def recv_stderr(self, size):
        data = self.stderr_data[: min(size, self.chunk)]
        self.stderr_data = self.stderr_data[len(data):]
        return data

    def exit_status_ready(self):
        return True

    def recv_exit_status(self):
        return self.status


@pytest.fixture
def mock_ssh_client():
    """Mock SSH client for remote PowerShell execution."""
    with mock.patch("hyperv_provisioner.powershell.paramiko.SSHClient") as mock_ssh:
        client = mock.MagicMock()
        mock_ssh.return_value = client

        stdout = mock.MagicMock()
        stdout.channel = FakeChannel(stdout=b"command output")
        client.exec_command.return_value = (None, stdout, mock.MagicMock())

        yield client


@pytest.fixture
def ssh_channel(mock_ssh_client):
    """The channel the mocked SSH command reads its output from."""
    return mock_ssh_client.exec_command.return_value[1].channel
