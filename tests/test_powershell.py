"""Tests for powershell module."""

import base64
import subprocess
from unittest import mock

import paramiko
import pytest

from hyperv_provisioner.powershell import (
    HyperVCommandError,
    PowerShellRunner,
    encode_command,
    quote,
)


def _completed(stdout="", stderr="", returncode=0):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


def test_quote_escapes_single_quotes():
    assert quote("ubuntu-runner") == "'ubuntu-runner'"
    assert quote("it's") == "'it''s'"
    assert quote(42) == "'42'"


def test_encode_command_is_utf16le_base64():
    encoded = encode_command("Get-VM")
    assert base64.b64decode(encoded).decode("utf-16-le") == "Get-VM"


@mock.patch("hyperv_provisioner.powershell.subprocess.run")
def test_run_local_success(mock_run):
    """Local mode runs powershell.exe with the error preamble prepended."""
    mock_run.return_value = _completed(stdout="Enabled\r\n")
    runner = PowerShellRunner(executable="pwsh", timeout=30)

    result = runner.run("Get-VM")

    assert result.stdout == "Enabled\r\n"
    args, kwargs = mock_run.call_args
    command = args[0]
    assert command[:4] == ["pwsh", "-NoProfile", "-NonInteractive", "-Command"]
    assert command[4].startswith("$ErrorActionPreference = 'Stop'")
    assert command[4].endswith("Get-VM")
    assert kwargs["timeout"] == 30
    assert kwargs["capture_output"] is True


@mock.patch("hyperv_provisioner.powershell.subprocess.run")
def test_run_local_failure_surfaces_platform_message(mock_run):
    message = "New-VM : The operation failed because the file was not found.\r\n"
    mock_run.return_value = _completed(stderr=message, returncode=1)
    runner = PowerShellRunner()

    with pytest.raises(HyperVCommandError) as exc_info:
        runner.run("New-VM -Name 'x'")

    assert str(exc_info.value) == message.strip()
    assert exc_info.value.returncode == 1
    assert exc_info.value.command == "New-VM -Name 'x'"


@mock.patch("hyperv_provisioner.powershell.subprocess.run")
def test_run_local_failure_falls_back_to_stdout(mock_run):
    mock_run.return_value = _completed(stdout="Access is denied.", returncode=1)

    with pytest.raises(HyperVCommandError, match="Access is denied."):
        PowerShellRunner().run("Get-VM")


@mock.patch("hyperv_provisioner.powershell.subprocess.run")
def test_run_local_timeout(mock_run):
    mock_run.side_effect = subprocess.TimeoutExpired(cmd="powershell.exe", timeout=5)

    with pytest.raises(HyperVCommandError, match="Timed out after 5s"):
        PowerShellRunner(timeout=5).run("Start-VM -Name 'x'")


@mock.patch("hyperv_provisioner.powershell.subprocess.run")
def test_run_local_missing_executable(mock_run):
    mock_run.side_effect = FileNotFoundError()

    with pytest.raises(HyperVCommandError, match="PowerShell executable not found: powershell.exe"):
        PowerShellRunner(executable="powershell.exe").run("Get-VM")


@mock.patch("hyperv_provisioner.powershell.subprocess.run")
def test_dry_run_executes_nothing(mock_run):
    runner = PowerShellRunner(dry_run=True)

    result = runner.run("Remove-VM -Name 'x' -Force")

    assert result.returncode == 0
    mock_run.assert_not_called()


@mock.patch("hyperv_provisioner.powershell.subprocess.run")
def test_run_json_parses_output(mock_run):
    mock_run.return_value = _completed(stdout='{"Name":"ubuntu-runner","State":"Running"}')

    data = PowerShellRunner().run_json("Get-VM -Name 'ubuntu-runner'")

    assert data == {"Name": "ubuntu-runner", "State": "Running"}
    script = mock_run.call_args[0][0][4]
    assert script.endswith("| ConvertTo-Json -Depth 4 -Compress")


@mock.patch("hyperv_provisioner.powershell.subprocess.run")
def test_run_json_empty_output_is_none(mock_run):
    mock_run.return_value = _completed(stdout="\r\n")

    assert PowerShellRunner().run_json("Get-VMSwitch -Name 'missing'") is None


def test_run_remote_uses_ssh(mock_ssh_client):
    runner = PowerShellRunner(host="hv01.lab", ssh_user="admin", ssh_key="/keys/id_ed25519", timeout=60)

    result = runner.run("Get-VM")

    assert result.stdout == "command output"
    mock_ssh_client.connect.assert_called_once_with(
        hostname="hv01.lab", username="admin", key_filename="/keys/id_ed25519"
    )
    command = mock_ssh_client.exec_command.call_args[0][0]
    assert command.startswith("powershell -NoProfile -NonInteractive -EncodedCommand ")
    decoded = base64.b64decode(command.split()[-1]).decode("utf-16-le")
    assert decoded.endswith("Get-VM")
    mock_ssh_client.close.assert_called_once()


def test_run_remote_failure(mock_ssh_client, ssh_channel):
    ssh_channel.stdout_data = b""
    ssh_channel.stderr_data = b"Get-VM : Hyper-V was unable to find a virtual machine with name 'x'."
    ssh_channel.status = 1

    with pytest.raises(HyperVCommandError, match="unable to find a virtual machine"):
        PowerShellRunner(host="hv01.lab").run("Get-VM -Name 'x'")

    mock_ssh_client.close.assert_called_once()


def test_run_remote_connection_error(mock_ssh_client):
    mock_ssh_client.connect.side_effect = paramiko.SSHException("No route to host")

    with pytest.raises(HyperVCommandError, match="SSH connection to hv01.lab failed: No route to host"):
        PowerShellRunner(host="hv01.lab").run("Get-VM")


def test_upload_writes_partial_file_then_moves_it(mock_ssh_client):
    sftp = mock_ssh_client.open_sftp.return_value

    PowerShellRunner(host="hv01.lab").upload("/tmp/ubuntu.iso", "C:\\Hyper-V\\ISO\\ubuntu.iso")

    sftp.put.assert_called_once_with("/tmp/ubuntu.iso", "C:/Hyper-V/ISO/ubuntu.iso.part")
    sftp.close.assert_called_once()
    command = mock_ssh_client.exec_command.call_args[0][0]
    script = base64.b64decode(command.split()[-1]).decode("utf-16-le")
    assert script.endswith(
        "Move-Item -LiteralPath 'C:\\Hyper-V\\ISO\\ubuntu.iso.part' "
        "-Destination 'C:\\Hyper-V\\ISO\\ubuntu.iso' -Force"
    )


def test_upload_failure_removes_partial_file(mock_ssh_client):
    sftp = mock_ssh_client.open_sftp.return_value
    sftp.put.side_effect = OSError("Connection reset")

    with pytest.raises(OSError, match="Connection reset"):
        PowerShellRunner(host="hv01.lab").upload("/tmp/ubuntu.iso", "C:\\Hyper-V\\ISO\\ubuntu.iso")

    sftp.remove.assert_called_once_with("C:/Hyper-V/ISO/ubuntu.iso.part")
    mock_ssh_client.exec_command.assert_not_called()
    mock_ssh_client.close.assert_called_once()


def test_upload_dry_run_connects_nowhere(mock_ssh_client):
    PowerShellRunner(host="hv01.lab", dry_run=True).upload("/tmp/ubuntu.iso", "C:\\Hyper-V\\ISO\\ubuntu.iso")

    mock_ssh_client.connect.assert_not_called()


def test_run_remote_reads_stdout_and_stderr_together(mock_ssh_client, ssh_channel):
    """Interleaved output on both streams is collected in full."""
    ssh_channel.stdout_data = b"x" * 100
    ssh_channel.stderr_data = b"WARNING: " * 50

    result = PowerShellRunner(host="hv01.lab").run("Get-VM")

    assert result.stdout == "x" * 100
    assert result.stderr == "WARNING: " * 50


def test_run_remote_timeout(mock_ssh_client, ssh_channel):
    ssh_channel.stdout_data = b""
    ssh_channel.exit_status_ready = lambda: False

    with mock.patch("hyperv_provisioner.powershell.time") as mock_time:
        mock_time.monotonic.side_effect = [0, 0, 61]
        with pytest.raises(HyperVCommandError, match="Timed out after 60s"):
            PowerShellRunner(host="hv01.lab", timeout=60).run("Start-VM -Name 'x'")

    mock_ssh_client.close.assert_called_once()


def test_is_remote():
    assert PowerShellRunner(host="hv01.lab").is_remote
    assert not PowerShellRunner().is_remote
