import os
import re
from dataclasses import dataclass, replace
from pathlib import Path, PureWindowsPath
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import yaml
from dotenv import load_dotenv

_SIZE_UNITS = {
    "": 1,
    "B": 1,
    "KB": 1024,
    "MB": 1024**2,
    "GB": 1024**3,
    "TB": 1024**4,
}
_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([KMGT]?B)?\s*$", re.IGNORECASE)

# Characters Hyper-V refuses in VM names (they end up in folder names too)
_INVALID_NAME_CHARS = set('\\/:*?"<>|')

SWITCH_TYPES = ("External", "Internal", "Private")


def parse_size(text: Any) -> int:
    """Convert a size such as "4GB", "512MB" or "4096" to bytes."""
    if isinstance(text, int):
        value = text
    else:
        match = _SIZE_RE.match(str(text))
        if not match:
            raise ValueError(f"Invalid size: {text!r}")
        number, unit = match.groups()
        value = int(float(number) * _SIZE_UNITS[(unit or "").upper()])
    if value <= 0:
        raise ValueError(f"Size must be positive: {text!r}")
    return value


def format_size(size_bytes: int) -> str:
    """Render bytes using the largest whole binary unit."""
    for unit in ("TB", "GB", "MB", "KB"):
        multiple = _SIZE_UNITS[unit]
        if size_bytes >= multiple and size_bytes % multiple == 0:
            return f"{size_bytes // multiple}{unit}"
    return f"{size_bytes}B"


_TRUE_VALUES = ("1", "true", "yes", "on")
_FALSE_VALUES = ("0", "false", "no", "off", "")

# Settings that must be plain strings whatever YAML parsed them as
_STRING_SETTINGS = ("name", "switch_name", "switch_type", "net_adapter", "vm_root", "iso_name", "iso_sha256", "host")


def _getenv_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in _TRUE_VALUES


def parse_bool(value: Any) -> bool:
    """Convert true/false, yes/no, on/off or 1/0 to a bool."""
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean: {value!r}")


def _parse_int(key: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError(f"Invalid value for {key}: {value!r}")
    try:
        return int(str(value).strip())
    except ValueError:
        raise ValueError(f"Invalid value for {key}: {value!r}")


class Config:
    """Loads and manages configuration from environment variables."""

    load_dotenv()

    VM_NAME = os.getenv("VM_NAME", "ubuntu-runner")
    VM_MEMORY = os.getenv("VM_MEMORY", "4GB")
    VM_CPU_COUNT = int(os.getenv("VM_CPU_COUNT", "2"))
    VM_DISK_SIZE = os.getenv("VM_DISK_SIZE", "60GB")
    VM_GENERATION = int(os.getenv("VM_GENERATION", "2"))
    VM_SWITCH_NAME = os.getenv("VM_SWITCH_NAME", "ExternalSwitch")
    VM_SWITCH_TYPE = os.getenv("VM_SWITCH_TYPE", "External")
    NET_ADAPTER_NAME = os.getenv("NET_ADAPTER_NAME") or None
    VM_ROOT = os.getenv("VM_ROOT", "C:\\Hyper-V")
    SECURE_BOOT = _getenv_bool("SECURE_BOOT")

    ISO_URL = os.getenv(
        "ISO_URL",
        "https://releases.ubuntu.com/24.04.2/ubuntu-24.04.2-live-server-amd64.iso",
    )
    ISO_NAME = os.getenv("ISO_NAME") or os.path.basename(urlparse(ISO_URL).path)
    ISO_SHA256 = os.getenv("ISO_SHA256") or None

    # Remote Hyper-V host reached over OpenSSH; local PowerShell when unset
    HYPERV_HOST = os.getenv("HYPERV_HOST") or None
    SSH_USER = os.getenv("SSH_USER", "Administrator")
    SSH_KEY_PATH = os.path.expanduser(os.getenv("SSH_KEY_PATH", "~/.ssh/id_rsa"))
    POWERSHELL_EXE = os.getenv("POWERSHELL_EXE", "powershell.exe")

    COMMAND_TIMEOUT = int(os.getenv("COMMAND_TIMEOUT", "600"))
    VM_START_TIMEOUT = int(os.getenv("VM_START_TIMEOUT", "180"))
    SERVICE_START_TIMEOUT = int(os.getenv("SERVICE_START_TIMEOUT", "60"))


@dataclass
class VMSpec:
    """Resolved settings for a single provisioning run."""

    name: str
    memory_bytes: int
    cpu_count: int
    disk_size_bytes: int
    switch_name: str
    iso_url: str
    iso_name: str
    generation: int = 2
    switch_type: str = "External"
    net_adapter: Optional[str] = None
    vm_root: str = "C:\\Hyper-V"
    secure_boot: bool = False
    iso_sha256: Optional[str] = None
    host: Optional[str] = None

    @property
    def vm_dir(self) -> str:
        return str(PureWindowsPath(self.vm_root) / self.name)

    @property
    def vhd_path(self) -> str:
        return str(PureWindowsPath(self.vm_dir) / f"{self.name}.vhdx")

    @property
    def iso_dir(self) -> str:
        # Outside vm_dir so cleanup keeps the installer for the next run
        return str(PureWindowsPath(self.vm_root) / "ISO")

    @property
    def iso_path(self) -> str:
        return str(PureWindowsPath(self.iso_dir) / self.iso_name)

    @classmethod
    def from_config(cls, overrides: Optional[Dict[str, Any]] = None) -> "VMSpec":
        """Build a spec from Config defaults, then apply non-None overrides."""
        spec = cls(
            name=Config.VM_NAME,
            memory_bytes=parse_size(Config.VM_MEMORY),
            cpu_count=Config.VM_CPU_COUNT,
            disk_size_bytes=parse_size(Config.VM_DISK_SIZE),
            switch_name=Config.VM_SWITCH_NAME,
            iso_url=Config.ISO_URL,
            iso_name=Config.ISO_NAME,
            generation=Config.VM_GENERATION,
            switch_type=Config.VM_SWITCH_TYPE,
            net_adapter=Config.NET_ADAPTER_NAME,
            vm_root=Config.VM_ROOT,
            secure_boot=Config.SECURE_BOOT,
            iso_sha256=Config.ISO_SHA256,
            host=Config.HYPERV_HOST,
        )
        return spec.with_overrides(overrides or {})

    @classmethod
    def from_yaml(cls, config_path: str, overrides: Optional[Dict[str, Any]] = None) -> "VMSpec":
        """
        Load a spec from a YAML mapping layered over environment defaults.

        Keys match VMSpec fields, with ``memory`` and ``disk_size`` accepted
        as size strings. CLI overrides are applied last.

        Raises:
            FileNotFoundError: If the file does not exist
            ValueError: If the file is empty or has unknown keys
        """
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(path) as f:
            data = yaml.safe_load(f)

        if not data:
            raise ValueError("Config file is empty")
        if not isinstance(data, dict):
            raise ValueError("Config file must contain a mapping")

        spec = cls.from_config()
        spec = spec.with_overrides(data)
        return spec.with_overrides(overrides or {})

    def with_overrides(self, values: Dict[str, Any]) -> "VMSpec":
        """
        Return a copy with the given (non-None) values applied.

        Values are converted to the field's type, so YAML scalars such as
        ``generation: "2"`` or ``secure_boot: "off"`` behave like their env
        counterparts.

        Raises:
            ValueError: On unknown keys or values that cannot be converted
        """
        changes: Dict[str, Any] = {}
        for key, value in values.items():
            if value is None:
                continue
            if key in ("memory", "memory_bytes"):
                changes["memory_bytes"] = parse_size(value)
            elif key in ("disk_size", "disk_size_bytes"):
                changes["disk_size_bytes"] = parse_size(value)
            elif key in ("cpus", "cpu_count"):
                changes["cpu_count"] = _parse_int("cpus", value)
            elif key == "generation":
                changes["generation"] = _parse_int(key, value)
            elif key == "secure_boot":
                changes["secure_boot"] = parse_bool(value)
            elif key == "iso_url":
                changes["iso_url"] = str(value)
                if "iso_name" not in values:
                    changes["iso_name"] = os.path.basename(urlparse(str(value)).path)
            elif key in _STRING_SETTINGS:
                changes[key] = str(value)
            else:
                raise ValueError(f"Unknown setting: {key}")
        return replace(self, **changes)

    def validate(self) -> List[str]:
        """Return a list of validation errors (empty when valid)."""
        errors = []

        if not self.name or not self.name.strip():
            errors.append("VM name must not be empty")
        elif _INVALID_NAME_CHARS & set(self.name):
            errors.append(f"VM name {self.name!r} contains invalid characters")

        if self.cpu_count < 1:
            errors.append("CPU count must be at least 1")

        if self.memory_bytes < 32 * 1024**2:
            errors.append("Memory must be at least 32MB")
        elif self.memory_bytes % (2 * 1024**2):
            errors.append("Memory must be a multiple of 2MB")

        if self.disk_size_bytes < 1024**3:
            errors.append("Disk size must be at least 1GB")

        if self.generation not in (1, 2):
            errors.append(f"Generation must be 1 or 2, got {self.generation}")

        if self.switch_type not in SWITCH_TYPES:
            errors.append(f"Switch type must be one of {', '.join(SWITCH_TYPES)}")

        if not self.switch_name:
            errors.append("Switch name must not be empty")

        if urlparse(self.iso_url).scheme not in ("http", "https"):
            errors.append(f"ISO URL must be http(s): {self.iso_url}")
        if not self.iso_name:
            errors.append("ISO name could not be derived from the URL")

        return errors
