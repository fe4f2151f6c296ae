#!/usr/bin/env python3
"""
Hyper-V VM provisioning CLI.

    hyperv-provision apply        # Build and start the Ubuntu installer VM
    hyperv-provision validate     # Check settings without touching the host
    hyperv-provision status       # Show the VM's current state
    hyperv-provision destroy      # Remove the VM and its folder

Settings come from the environment (.env), an optional YAML file and
command-line overrides, in that order.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from hyperv_provisioner.config import VMSpec, format_size
from hyperv_provisioner.provisioner import ProvisioningError, build_provisioner

app = typer.Typer(
    name="hyperv-provision",
    help="Provision an Ubuntu VM on Hyper-V",
    add_completion=False,
)
console = Console()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)8s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

CONFIG_OPTION = typer.Option(None, "--config", "-c", help="YAML settings file")
NAME_OPTION = typer.Option(None, "--name", "-n", help="VM name")
HOST_OPTION = typer.Option(None, "--host", help="Remote Hyper-V host reached over SSH")


def load_spec(config_file: Optional[Path], overrides: Dict[str, Any]) -> VMSpec:
    """Resolve settings from env, optional YAML file and CLI overrides."""
    try:
        if config_file is not None:
            return VMSpec.from_yaml(str(config_file), overrides)
        return VMSpec.from_config(overrides)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"❌ {escape(str(e))}")
        raise typer.Exit(1)


def spec_table(spec: VMSpec) -> Table:
    table = Table(title=f"VM {spec.name}")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Host", spec.host or "localhost")
    table.add_row("Memory", format_size(spec.memory_bytes))
    table.add_row("CPUs", str(spec.cpu_count))
    table.add_row("Disk", f"{format_size(spec.disk_size_bytes)} ({spec.vhd_path})")
    table.add_row("Generation", str(spec.generation))
    table.add_row("Switch", f"{spec.switch_name} ({spec.switch_type})")
    table.add_row("ISO", spec.iso_url)
    table.add_row("Secure Boot", "On" if spec.secure_boot else "Off")
    return table


def print_steps(steps: list) -> None:
    table = Table(title="Provisioning Steps")
    table.add_column("Step", style="cyan")
    table.add_column("Status", style="bold")
    table.add_column("Details", style="yellow")
    table.add_column("Time", style="dim")

    for step in steps:
        status = "✅" if step.success else "❌"
        table.add_row(step.name, status, escape(step.message), f"{step.duration:.1f}s")

    console.print(table)


@app.command("apply")
def apply_vm(
    config_file: Optional[Path] = CONFIG_OPTION,
    name: Optional[str] = NAME_OPTION,
    memory: Optional[str] = typer.Option(None, "--memory", "-m", help="Startup memory, e.g. 4GB"),
    cpus: Optional[int] = typer.Option(None, "--cpus", help="Virtual processor count"),
    disk_size: Optional[str] = typer.Option(None, "--disk-size", help="Disk size, e.g. 60GB"),
    switch_name: Optional[str] = typer.Option(None, "--switch", help="Virtual switch name"),
    iso_url: Optional[str] = typer.Option(None, "--iso-url", help="Ubuntu installer URL"),
    host: Optional[str] = HOST_OPTION,
    no_start: bool = typer.Option(False, "--no-start", help="Create the VM but do not start it"),
    skip_cleanup: bool = typer.Option(False, "--skip-cleanup", help="Keep an existing VM and folder"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Log commands without running them"),
) -> None:
    """
    Provision the VM: feature check, cleanup, ISO download, disk,
    switch, VM creation and start.
    """
    spec = load_spec(
        config_file,
        {
            "name": name,
            "memory": memory,
            "cpus": cpus,
            "disk_size": disk_size,
            "switch_name": switch_name,
            "iso_url": iso_url,
            "host": host,
        },
    )

    errors = spec.validate()
    if errors:
        for error in errors:
            console.print(f"❌ {error}")
        raise typer.Exit(1)

    console.print(spec_table(spec))
    if dry_run:
        console.print("🔍 DRY RUN MODE - No changes will be made\n")

    provisioner = build_provisioner(spec, dry_run=dry_run)

    try:
        result = provisioner.run(skip_start=no_start, skip_cleanup=skip_cleanup)
    except ProvisioningError as e:
        if e.result is not None:
            print_steps(e.result.steps)
        console.print(f"\n❌ Step {e.step} failed:\n{escape(str(e.cause))}")
        raise typer.Exit(1)
    except Exception as e:
        console.print(f"\n❌ Provisioning failed: {escape(str(e))}")
        logger.exception("Apply error")
        raise typer.Exit(1)

    print_steps(result.steps)

    if dry_run:
        console.print("\n✅ Dry run complete - no changes made")
    elif no_start:
        console.print(f"\n✅ VM {spec.name!r} created (not started)")
    elif result.running:
        console.print(f"\n✅ VM {spec.name!r} is running. Connect with:")
        console.print(f"   vmconnect {spec.host or 'localhost'} \"{spec.name}\"")
    else:
        console.print(f"\n⚠️  VM {spec.name!r} was started but is not yet reporting Running")


@app.command("validate")
def validate_settings(
    config_file: Optional[Path] = CONFIG_OPTION,
    name: Optional[str] = NAME_OPTION,
    memory: Optional[str] = typer.Option(None, "--memory", "-m", help="Startup memory, e.g. 4GB"),
    cpus: Optional[int] = typer.Option(None, "--cpus", help="Virtual processor count"),
    disk_size: Optional[str] = typer.Option(None, "--disk-size", help="Disk size, e.g. 60GB"),
) -> None:
    """Validate settings without contacting the Hyper-V host."""
    spec = load_spec(config_file, {"name": name, "memory": memory, "cpus": cpus, "disk_size": disk_size})

    console.print(spec_table(spec))

    errors = spec.validate()
    if errors:
        console.print("\n[bold red]Errors:[/bold red]")
        for error in errors:
            console.print(f"  ❌ {error}")
        raise typer.Exit(1)

    console.print("\n✅ Settings are valid")


@app.command("status")
def show_status(
    config_file: Optional[Path] = CONFIG_OPTION,
    name: Optional[str] = NAME_OPTION,
    host: Optional[str] = HOST_OPTION,
) -> None:
    """Show the VM's current state."""
    spec = load_spec(config_file, {"name": name, "host": host})

    try:
        vm = build_provisioner(spec).status()
    except Exception as e:
        console.print(f"❌ Failed to get status: {escape(str(e))}")
        logger.exception("Status error")
        raise typer.Exit(1)

    if vm is None:
        console.print(f"❌ VM {spec.name!r} not found")
        raise typer.Exit(1)

    table = Table(title=f"VM {vm.get('Name', spec.name)}")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("State", str(vm.get("State")))
    table.add_row("CPUs", str(vm.get("ProcessorCount")))
    if vm.get("MemoryStartup"):
        table.add_row("Memory", format_size(int(vm["MemoryStartup"])))
    table.add_row("Generation", str(vm.get("Generation")))
    table.add_row("Uptime", str(vm.get("Uptime")))
    table.add_row("Path", str(vm.get("Path")))

    console.print(table)


@app.command("destroy")
def destroy_vm(
    config_file: Optional[Path] = CONFIG_OPTION,
    name: Optional[str] = NAME_OPTION,
    host: Optional[str] = HOST_OPTION,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Turn off and remove the VM and its folder."""
    spec = load_spec(config_file, {"name": name, "host": host})

    if not yes:
        typer.confirm(f"Remove VM {spec.name!r} and {spec.vm_dir}?", abort=True)

    try:
        removed = build_provisioner(spec).destroy()
    except ProvisioningError as e:
        console.print(f"❌ Step {e.step} failed:\n{escape(str(e.cause))}")
        raise typer.Exit(1)
    except Exception as e:
        console.print(f"❌ Failed to remove VM: {escape(str(e))}")
        logger.exception("Destroy error")
        raise typer.Exit(1)

    if removed:
        console.print(f"✅ Removed VM {spec.name!r}")
    else:
        console.print(f"ℹ️  Nothing to remove for {spec.name!r}")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
) -> None:
    """
    Hyper-V VM provisioning.

    Creates a single Ubuntu installer VM in a fixed sequence of steps and
    reports the platform's own error message when a step fails.
    """
    if debug:
        logging.getLogger().setLevel(logging.DEBUG)
    elif verbose:
        logging.getLogger().setLevel(logging.INFO)


if __name__ == "__main__":
    app()
