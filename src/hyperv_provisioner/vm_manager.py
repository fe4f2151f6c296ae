"""
src/hyperv_provisioner/vm_manager.py

Remove, create, configure and start the Hyper-V VM that boots the Ubuntu installer.
"""

import logging
import time
from typing import Callable

from hyperv_provisioner.config import VMSpec, format_size
from hyperv_provisioner.hyperv_client import HyperVClient

logger = logging.getLogger(__name__)


class VMExistsError(RuntimeError):
    """State left over from a previous run blocks creation."""


class VMManager:
    """Handles the VM lifecycle steps of a provisioning run."""

    def __init__(self, client: HyperVClient, sleep: Callable[[float], None] = time.sleep) -> None:
        self.client = client
        self.sleep = sleep

    def cleanup(self, spec: VMSpec) -> bool:
        """
        Delete the VM and its folder if they exist.

        Returns:
            True if anything was removed
        """
        removed = False

        vm = self.client.get_vm(spec.name)
        if vm:
            if vm.get("State") != "Off":
                print(f"⏹️  Turning off VM {spec.name!r} ({vm.get('State')})")
                self.client.stop_vm(spec.name)
            print(f"🗑️  Removing VM {spec.name!r}")
            self.client.remove_vm(spec.name)
            removed = True
        else:
            print(f"ℹ️  VM {spec.name!r} does not exist")

        if self.client.remove_path(spec.vm_dir):
            print(f"🗑️  Removed {spec.vm_dir}")
            removed = True

        return removed

    def create_disk(self, spec: VMSpec) -> None:
        """Create the dynamic VHDX the VM boots from after installation."""
        self.client.ensure_directory(spec.vm_dir)

        if self.client.path_exists(spec.vhd_path):
            raise VMExistsError(f"Virtual disk already exists: {spec.vhd_path}")

        print(f"💾 Creating {format_size(spec.disk_size_bytes)} disk {spec.vhd_path}")
        self.client.new_vhd(spec.vhd_path, spec.disk_size_bytes)

    def create_vm(self, spec: VMSpec) -> None:
        """Create the VM, size it, attach the installer and set boot order."""
        print(
            f"🆕 Creating VM {spec.name!r}: {spec.cpu_count} CPUs, "
            f"{format_size(spec.memory_bytes)} RAM, generation {spec.generation}"
        )
        self.client.new_vm(
            spec.name,
            spec.memory_bytes,
            spec.generation,
            spec.vhd_path,
            spec.switch_name,
            spec.vm_root,
        )
        self.client.set_processor(spec.name, spec.cpu_count)
        self.client.set_memory(spec.name, spec.memory_bytes)

        print(f"📀 Attaching {spec.iso_path}")
        self.client.add_dvd_drive(spec.name, spec.iso_path)
        self.client.set_boot_order_dvd_first(spec.name, spec.generation)

        if spec.generation == 2:
            self.client.set_secure_boot(spec.name, spec.secure_boot)

    def start_vm(self, spec: VMSpec, timeout: int, poll_interval: float = 5) -> bool:
        """
        Start the VM and wait for it to report Running.

        Returns:
            True if the VM reached Running before the timeout
        """
        print(f"▶️  Starting VM {spec.name!r}")
        self.client.start_vm(spec.name)

        if self.client.dry_run:
            return True

        deadline = time.monotonic() + timeout
        while True:
            state = self.client.get_vm_state(spec.name)
            if state == "Running":
                print(f"✅ VM {spec.name!r} is running.")
                return True
            if time.monotonic() >= deadline:
                break
            self.sleep(poll_interval)

        logger.warning(f"VM {spec.name!r} did not reach Running within {timeout}s (state: {state})")
        return False
