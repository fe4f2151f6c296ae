"""Fixed-order provisioning of a single Hyper-V VM."""

import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from hyperv_provisioner.config import Config, VMSpec
from hyperv_provisioner.hyperv_client import HyperVClient
from hyperv_provisioner.iso_manager import IsoManager
from hyperv_provisioner.network_manager import NetworkManager
from hyperv_provisioner.powershell import PowerShellRunner
from hyperv_provisioner.vm_manager import VMManager

logger = logging.getLogger(__name__)

HYPERV_SERVICE = "vmms"


class ProvisioningError(RuntimeError):
    """A provisioning step failed; carries the step name and the underlying error."""

    def __init__(self, step: str, cause: Exception) -> None:
        self.step = step
        self.cause = cause
        self.result: Optional["ProvisionResult"] = None
        super().__init__(f"{step} failed: {cause}")


class FeatureDisabledError(ProvisioningError):
    """Hyper-V is not enabled on the host."""

    def __init__(self) -> None:
        super().__init__(
            "check_feature",
            RuntimeError(
                "Hyper-V is not enabled. Run "
                "'Enable-WindowsOptionalFeature -Online -FeatureName Microsoft-Hyper-V -All' "
                "and restart the host."
            ),
        )


@dataclass
class StepResult:
    """Outcome of one provisioning step."""

    name: str
    success: bool
    message: str = ""
    duration: float = 0.0


@dataclass
class ProvisionResult:
    """Outcome of a provisioning run."""

    spec: VMSpec
    steps: List[StepResult] = field(default_factory=list)
    running: bool = False

    @property
    def success(self) -> bool:
        return bool(self.steps) and all(step.success for step in self.steps)


class Provisioner:
    """Runs feature check, cleanup, download, disk, switch, VM and start in order."""

    STEPS = (
        "check_feature",
        "wait_for_service",
        "cleanup",
        "download_iso",
        "create_disk",
        "ensure_switch",
        "create_vm",
        "start_vm",
    )

    def __init__(
        self,
        spec: VMSpec,
        client: HyperVClient,
        iso_manager: Any = IsoManager,
        sleep: Callable[[float], None] = time.sleep,
        vm_start_timeout: Optional[int] = None,
        service_start_timeout: Optional[int] = None,
        download_dir: str = ".",
    ) -> None:
        self.spec = spec
        self.client = client
        self.iso_manager = iso_manager
        self.sleep = sleep
        self.vm_start_timeout = vm_start_timeout if vm_start_timeout is not None else Config.VM_START_TIMEOUT
        self.service_start_timeout = (
            service_start_timeout if service_start_timeout is not None else Config.SERVICE_START_TIMEOUT
        )
        self.download_dir = download_dir
        self.vms = VMManager(client, sleep=sleep)
        self.network = NetworkManager(client)
        self._running = False

    def run(self, skip_start: bool = False, skip_cleanup: bool = False) -> ProvisionResult:
        """
        Run every step once in order, stopping at the first failure.

        Raises:
            ProvisioningError: With the failing step and the platform's message
        """
        result = ProvisionResult(spec=self.spec)
        skipped = set()
        if skip_cleanup:
            skipped.add("cleanup")
        if skip_start:
            skipped.add("start_vm")

        for name in self.STEPS:
            if name in skipped:
                logger.info(f"Skipping step {name}")
                continue

            started = time.monotonic()
            try:
                message = getattr(self, f"_step_{name}")()
            except ProvisioningError as e:
                result.steps.append(StepResult(name, False, str(e.cause), time.monotonic() - started))
                e.result = result
                raise
            except Exception as e:
                logger.error(f"Step {name} failed: {e}")
                result.steps.append(StepResult(name, False, str(e), time.monotonic() - started))
                error = ProvisioningError(name, e)
                error.result = result
                raise error from e

            result.steps.append(StepResult(name, True, message or "", time.monotonic() - started))

        result.running = self._running
        return result

    def destroy(self) -> bool:
        """Remove the VM and its folder."""
        self._step_check_feature()
        return self.vms.cleanup(self.spec)

    def status(self) -> Optional[Dict[str, Any]]:
        return self.client.get_vm(self.spec.name)

    # Steps

    def _step_check_feature(self) -> str:
        if not self.client.is_feature_enabled():
            raise FeatureDisabledError()
        return "Hyper-V is enabled"

    def _step_wait_for_service(self) -> str:
        """Wait for the Virtual Machine Management service, starting it once if stopped."""
        deadline = time.monotonic() + self.service_start_timeout
        start_requested = False
        while True:
            status = self.client.get_service_status(HYPERV_SERVICE)
            if status == "Running":
                return f"{HYPERV_SERVICE} is running"
            if status == "Stopped" and not start_requested:
                print(f"🔄 Starting service {HYPERV_SERVICE}")
                self.client.start_service(HYPERV_SERVICE)
                start_requested = True
            if time.monotonic() >= deadline:
                raise TimeoutError(f"Service {HYPERV_SERVICE} not running after {self.service_start_timeout}s: {status}")
            self.sleep(2)

    def _step_cleanup(self) -> str:
        if self.vms.cleanup(self.spec):
            return "Removed previous VM state"
        return "Nothing to remove"

    def _step_download_iso(self) -> str:
        if self.client.dry_run:
            logger.info(f"[dry-run] download {self.spec.iso_url} -> {self.spec.iso_path}")
            return "Dry run"

        self.client.ensure_directory(self.spec.iso_dir)
        if self.client.runner.is_remote:
            local_path = os.path.join(self.download_dir, self.spec.iso_name)
            self.iso_manager.download_iso(self.spec.iso_url, local_path, self.spec.iso_sha256)
            if self._iso_on_host():
                print(f"✅ {self.spec.iso_name} already on {self.client.runner.host}. Skipping upload.")
            else:
                print(f"📤 Uploading {self.spec.iso_name} to {self.client.runner.host}")
                self.client.copy_to_host(local_path, self.spec.iso_path)
        else:
            self.iso_manager.download_iso(self.spec.iso_url, self.spec.iso_path, self.spec.iso_sha256)
        return self.spec.iso_path

    def _iso_on_host(self) -> bool:
        """True when the host already holds the ISO (with a matching checksum if one is set)."""
        if not self.client.path_exists(self.spec.iso_path):
            return False
        if not self.spec.iso_sha256:
            return True
        if self.client.file_sha256(self.spec.iso_path) == self.spec.iso_sha256.lower():
            return True
        logger.warning(f"Checksum mismatch for {self.spec.iso_path} on host, uploading again")
        return False

    def _step_create_disk(self) -> str:
        self.vms.create_disk(self.spec)
        return self.spec.vhd_path

    def _step_ensure_switch(self) -> str:
        created = self.network.ensure_switch(self.spec.switch_name, self.spec.switch_type, self.spec.net_adapter)
        return "Created" if created else "Already exists"

    def _step_create_vm(self) -> str:
        self.vms.create_vm(self.spec)
        return self.spec.name

    def _step_start_vm(self) -> str:
        self._running = self.vms.start_vm(self.spec, self.vm_start_timeout)
        return "Running" if self._running else "Start requested, not yet running"


def build_provisioner(spec: VMSpec, dry_run: bool = False) -> Provisioner:
    """Wire a Provisioner to a PowerShell runner for spec.host (local when None)."""
    runner = PowerShellRunner(host=spec.host, dry_run=dry_run)
    return Provisioner(spec, HyperVClient(runner))
