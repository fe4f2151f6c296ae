import logging
from typing import Any, Dict, Optional

from hyperv_provisioner.powershell import HyperVCommandError, PowerShellRunner, quote

logger = logging.getLogger(__name__)

_VM_FIELDS = (
    "Name, "
    "@{n='State';e={$_.State.ToString()}}, "
    "ProcessorCount, MemoryStartup, Generation, Path, "
    "@{n='Uptime';e={$_.Uptime.ToString()}}"
)


class HyperVClient:
    """Wrapper around the Hyper-V PowerShell cmdlets used for provisioning."""

    def __init__(self, runner: PowerShellRunner) -> None:
        self.runner = runner

    @property
    def dry_run(self) -> bool:
        return self.runner.dry_run

    # Host checks

    def is_feature_enabled(self) -> bool:
        """Check whether the Hyper-V role/feature is enabled on the host."""
        if self.dry_run:
            return True
        try:
            state = self.runner.run(
                "(Get-WindowsOptionalFeature -Online -FeatureName Microsoft-Hyper-V).State.ToString()"
            ).stdout.strip()
            return state == "Enabled"
        except HyperVCommandError as e:
            # Windows Server has no optional feature of that name; use the role instead
            logger.debug(f"Optional feature query failed, trying server role: {e}")
            installed = self.runner.run("(Get-WindowsFeature -Name Hyper-V).Installed").stdout.strip()
            return installed.lower() == "true"

    def get_service_status(self, name: str) -> str:
        """Return the service status string, e.g. 'Running' or 'Stopped'."""
        if self.dry_run:
            return "Running"
        return self.runner.run(f"(Get-Service -Name {quote(name)}).Status.ToString()").stdout.strip()

    def start_service(self, name: str) -> None:
        self.runner.run(f"Start-Service -Name {quote(name)}")

    # Virtual machines

    def get_vm(self, name: str) -> Optional[Dict[str, Any]]:
        """Return VM details, or None if no VM has that name."""
        data = self.runner.run_json(
            f"Get-VM -Name {quote(name)} -ErrorAction SilentlyContinue | Select-Object {_VM_FIELDS}"
        )
        if isinstance(data, list):
            return data[0] if data else None
        return data

    def vm_exists(self, name: str) -> bool:
        return self.get_vm(name) is not None

    def get_vm_state(self, name: str) -> Optional[str]:
        vm = self.get_vm(name)
        return vm.get("State") if vm else None

    def stop_vm(self, name: str) -> None:
        """Turn the VM off without a guest shutdown."""
        self.runner.run(f"Stop-VM -Name {quote(name)} -TurnOff -Force")

    def remove_vm(self, name: str) -> None:
        self.runner.run(f"Remove-VM -Name {quote(name)} -Force")

    def new_vm(
        self, name: str, memory_bytes: int, generation: int, vhd_path: str, switch_name: str, path: str
    ) -> None:
        self.runner.run(
            f"New-VM -Name {quote(name)} -MemoryStartupBytes {memory_bytes} -Generation {generation} "
            f"-VHDPath {quote(vhd_path)} -SwitchName {quote(switch_name)} -Path {quote(path)}"
        )

    def set_processor(self, name: str, count: int) -> None:
        self.runner.run(f"Set-VMProcessor -VMName {quote(name)} -Count {count}")

    def set_memory(self, name: str, memory_bytes: int, dynamic: bool = False) -> None:
        flag = "$true" if dynamic else "$false"
        self.runner.run(
            f"Set-VMMemory -VMName {quote(name)} -DynamicMemoryEnabled {flag} -StartupBytes {memory_bytes}"
        )

    def add_dvd_drive(self, name: str, iso_path: str) -> None:
        self.runner.run(f"Add-VMDvdDrive -VMName {quote(name)} -Path {quote(iso_path)}")

    def set_boot_order_dvd_first(self, name: str, generation: int) -> None:
        """Boot from the installer DVD before the hard disk."""
        if generation == 2:
            self.runner.run(
                f"Set-VMFirmware -VMName {quote(name)} "
                f"-FirstBootDevice (Get-VMDvdDrive -VMName {quote(name)})"
            )
        else:
            self.runner.run(
                f"Set-VMBios -VMName {quote(name)} -StartupOrder @('CD', 'IDE', 'LegacyNetworkAdapter', 'Floppy')"
            )

    def set_secure_boot(self, name: str, enabled: bool) -> None:
        """Toggle Secure Boot on a generation 2 VM."""
        if enabled:
            # Linux guests need the third-party UEFI CA template
            self.runner.run(
                f"Set-VMFirmware -VMName {quote(name)} -EnableSecureBoot On "
                f"-SecureBootTemplate 'MicrosoftUEFICertificateAuthority'"
            )
        else:
            self.runner.run(f"Set-VMFirmware -VMName {quote(name)} -EnableSecureBoot Off")

    def start_vm(self, name: str) -> None:
        self.runner.run(f"Start-VM -Name {quote(name)}")

    # Disks and files

    def new_vhd(self, path: str, size_bytes: int) -> None:
        self.runner.run(f"New-VHD -Path {quote(path)} -SizeBytes {size_bytes} -Dynamic | Out-Null")

    def path_exists(self, path: str) -> bool:
        if self.dry_run:
            return False
        return self.runner.run(f"Test-Path -LiteralPath {quote(path)}").stdout.strip().lower() == "true"

    def remove_path(self, path: str) -> bool:
        """Recursively delete a file or directory; returns False if it was absent."""
        if not self.path_exists(path):
            return False
        self.runner.run(f"Remove-Item -LiteralPath {quote(path)} -Recurse -Force")
        return True

    def ensure_directory(self, path: str) -> None:
        self.runner.run(f"New-Item -ItemType Directory -Force -Path {quote(path)} | Out-Null")

    def file_sha256(self, path: str) -> str:
        """Lower-case SHA-256 hex digest of a file on the host."""
        output = self.runner.run(f"(Get-FileHash -LiteralPath {quote(path)} -Algorithm SHA256).Hash").stdout
        return output.strip().lower()

    def copy_to_host(self, local_path: str, dest_path: str) -> None:
        """Upload a local file to dest_path on the remote Hyper-V host."""
        self.runner.upload(local_path, dest_path)

    # Networking

    def get_switch(self, name: str) -> Optional[Dict[str, Any]]:
        data = self.runner.run_json(
            f"Get-VMSwitch -Name {quote(name)} -ErrorAction SilentlyContinue | "
            "Select-Object Name, @{n='SwitchType';e={$_.SwitchType.ToString()}}"
        )
        if isinstance(data, list):
            return data[0] if data else None
        return data

    def switch_exists(self, name: str) -> bool:
        return self.get_switch(name) is not None

    def get_default_net_adapter(self) -> Optional[str]:
        """Name of the first physical adapter that is up, or None."""
        output = self.runner.run(
            "Get-NetAdapter -Physical | Where-Object { $_.Status -eq 'Up' } | "
            "Select-Object -First 1 -ExpandProperty Name"
        ).stdout.strip()
        return output or None

    def new_switch(self, name: str, switch_type: str, net_adapter: Optional[str] = None) -> None:
        if switch_type == "External":
            if not net_adapter:
                raise ValueError("An External switch requires a network adapter")
            self.runner.run(
                f"New-VMSwitch -Name {quote(name)} -NetAdapterName {quote(net_adapter)} -AllowManagementOS $true"
            )
        else:
            self.runner.run(f"New-VMSwitch -Name {quote(name)} -SwitchType {switch_type}")
