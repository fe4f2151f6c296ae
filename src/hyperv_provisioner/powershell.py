"""PowerShell command execution, locally or on a remote Hyper-V host over SSH."""

import base64
import json
import logging
import os
import socket
import subprocess
import time
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

import paramiko

from hyperv_provisioner.config import Config

logger = logging.getLogger(__name__)

# Makes non-terminating cmdlet errors fail the whole command with a non-zero exit
_PREAMBLE = "$ErrorActionPreference = 'Stop'; $ProgressPreference = 'SilentlyContinue'; "
_RECV_SIZE = 32768


class HyperVCommandError(RuntimeError):
    """A PowerShell command failed; str() is the platform's message verbatim."""

    def __init__(self, command: str, returncode: int, stderr: str, stdout: str = "") -> None:
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        self.stdout = stdout
        super().__init__(stderr.strip() or stdout.strip() or f"Command exited with status {returncode}")


@dataclass
class PowerShellResult:
    """Output of a single PowerShell invocation."""

    stdout: str
    stderr: str
    returncode: int


def quote(value: Any) -> str:
    """Return value as a PowerShell single-quoted string literal."""
    return "'" + str(value).replace("'", "''") + "'"


def encode_command(script: str) -> str:
    """Encode a script for powershell -EncodedCommand (base64 of UTF-16LE)."""
    return base64.b64encode(script.encode("utf-16-le")).decode("ascii")


class PowerShellRunner:
    """Runs PowerShell scripts through local powershell.exe or SSH to a remote host."""

    def __init__(
        self,
        host: Optional[str] = None,
        ssh_user: Optional[str] = None,
        ssh_key: Optional[str] = None,
        executable: Optional[str] = None,
        timeout: Optional[int] = None,
        dry_run: bool = False,
    ) -> None:
        self.host = host
        self.ssh_user = ssh_user or Config.SSH_USER
        self.ssh_key = os.path.expanduser(ssh_key or Config.SSH_KEY_PATH)
        self.executable = executable or Config.POWERSHELL_EXE
        self.timeout = timeout if timeout is not None else Config.COMMAND_TIMEOUT
        self.dry_run = dry_run

    @property
    def is_remote(self) -> bool:
        return bool(self.host)

    def run(self, script: str) -> PowerShellResult:
        """
        Execute a PowerShell script and return its output.

        Raises:
            HyperVCommandError: If the script fails, times out or cannot be launched
        """
        if self.dry_run:
            logger.info(f"[dry-run] {script}")
            return PowerShellResult(stdout="", stderr="", returncode=0)

        logger.debug(f"PS> {script}")
        full_script = _PREAMBLE + script

        if self.is_remote:
            result = self._run_ssh(full_script)
        else:
            result = self._run_local(full_script)

        if result.returncode != 0:
            logger.error(f"PowerShell command failed ({result.returncode}): {script}")
            raise HyperVCommandError(script, result.returncode, result.stderr, result.stdout)

        return result

    def run_json(self, script: str) -> Any:
        """Execute a script and parse its output as JSON; None when there is no output."""
        result = self.run(f"{script} | ConvertTo-Json -Depth 4 -Compress")
        output = result.stdout.strip()
        if not output:
            return None
        return json.loads(output)

    def _run_local(self, script: str) -> PowerShellResult:
        try:
            completed = subprocess.run(
                [self.executable, "-NoProfile", "-NonInteractive", "-Command", script],
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            raise HyperVCommandError(script, -1, f"Timed out after {self.timeout}s")
        except FileNotFoundError:
            raise HyperVCommandError(script, -1, f"PowerShell executable not found: {self.executable}")

        return PowerShellResult(stdout=completed.stdout, stderr=completed.stderr, returncode=completed.returncode)

    def _connect(self) -> paramiko.SSHClient:
        ssh = paramiko.SSHClient()
        ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        ssh.connect(hostname=self.host, username=self.ssh_user, key_filename=self.ssh_key)
        return ssh

    def _run_ssh(self, script: str) -> PowerShellResult:
        command = f"powershell -NoProfile -NonInteractive -EncodedCommand {encode_command(script)}"

        try:
            ssh = self._connect()
        except (paramiko.SSHException, OSError) as e:
            raise HyperVCommandError(script, -1, f"SSH connection to {self.host} failed: {e}")

        try:
            stdin, stdout, stderr = ssh.exec_command(command, timeout=self.timeout)
            out, err = self._drain(stdout.channel)
            status = stdout.channel.recv_exit_status()
        except socket.timeout:
            raise HyperVCommandError(script, -1, f"Timed out after {self.timeout}s")
        except (paramiko.SSHException, OSError) as e:
            raise HyperVCommandError(script, -1, f"SSH command on {self.host} failed: {e}")
        finally:
            ssh.close()

        return PowerShellResult(stdout=out.decode(), stderr=err.decode(), returncode=status)

    def _drain(self, channel: paramiko.Channel) -> Tuple[bytes, bytes]:
        """Read stdout and stderr together so neither one stalls the channel."""
        deadline = time.monotonic() + self.timeout
        out: List[bytes] = []
        err: List[bytes] = []
        while True:
            received = False
            if channel.recv_ready():
                out.append(channel.recv(_RECV_SIZE))
                received = True
            if channel.recv_stderr_ready():
                err.append(channel.recv_stderr(_RECV_SIZE))
                received = True
            if received:
                continue
            # Exit status arrives after the output, so recheck for data once it is set
            if channel.exit_status_ready() and not (channel.recv_ready() or channel.recv_stderr_ready()):
                break
            if time.monotonic() >= deadline:
                raise socket.timeout()
            time.sleep(0.1)
        return b"".join(out), b"".join(err)

    def upload(self, local_path: str, remote_path: str) -> None:
        """
        Copy a local file to the remote host over SFTP.

        The file is written next to remote_path with a ``.part`` suffix and
        moved into place once complete, so an interrupted upload never leaves
        a truncated file at remote_path.
        """
        if self.dry_run:
            logger.info(f"[dry-run] upload {local_path} -> {self.host}:{remote_path}")
            return

        partial_path = remote_path + ".part"
        # Windows OpenSSH SFTP expects forward slashes
        sftp_path = partial_path.replace("\\", "/")

        ssh = self._connect()
        try:
            sftp = ssh.open_sftp()
            try:
                sftp.put(local_path, sftp_path)
            except (paramiko.SSHException, OSError):
                logger.error(f"Upload of {local_path} to {self.host} failed, removing {partial_path}")
                try:
                    sftp.remove(sftp_path)
                except (paramiko.SSHException, OSError) as e:
                    logger.warning(f"Could not remove {partial_path}: {e}")
                raise
            finally:
                sftp.close()
        finally:
            ssh.close()

        self.run(f"Move-Item -LiteralPath {quote(partial_path)} -Destination {quote(remote_path)} -Force")
