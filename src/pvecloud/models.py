"""Data models for pvecloud provisioning runs."""

import ipaddress
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union
from urllib.parse import urlparse

from pvecloud.exceptions import AdvisoryFailure, ValidationError

VM_NAME_RE = re.compile(r"^[A-Za-z0-9]([A-Za-z0-9.-]*[A-Za-z0-9])?$")
IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
PERMISSIONS_RE = re.compile(r"^0?[0-7]{3}$")

# Slots used on every VM
PRIMARY_DISK = "scsi0"
EFI_DISK = "efidisk0"
CLOUDINIT_DISK = "ide2"


class FirmwareMode(Enum):
    """VM firmware flavours supported by Proxmox."""

    UEFI = "uefi"  # bios=ovmf, needs an EFI vars disk
    SEABIOS = "seabios"


class StepStatus(Enum):
    """Outcome of a single provisioning step."""

    COMPLETED = "completed"
    ADVISORY = "advisory"
    FAILED = "failed"
    SKIPPED = "skipped"


def _require_positive(label: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{label} must be a positive integer, got {value!r}")


def _single_line(label: str, value: str) -> None:
    if not value or not value.strip():
        raise ValidationError(f"{label} cannot be empty")
    if "\n" in value.strip() or "\r" in value.strip():
        raise ValidationError(f"{label} must be a single line")


# === NETWORK ===


@dataclass(frozen=True)
class DHCP:
    """Address the primary NIC via DHCP."""

    def to_ipconfig(self) -> str:
        return "ip=dhcp"


@dataclass(frozen=True)
class StaticIP:
    """Static address for the primary NIC. cidr and gateway travel together."""

    cidr: Optional[str] = None
    gateway: Optional[str] = None

    def __post_init__(self) -> None:
        if bool(self.cidr) != bool(self.gateway):
            raise ValidationError(
                "Static network config needs both an IP/CIDR and a gateway "
                f"(got cidr={self.cidr!r}, gateway={self.gateway!r})"
            )
        if not self.cidr:
            return
        if "/" not in self.cidr:
            raise ValidationError(f"Static IP {self.cidr!r} is missing a prefix length (e.g. /24)")
        try:
            ipaddress.ip_interface(self.cidr)
            ipaddress.ip_address(self.gateway)
        except ValueError as e:
            raise ValidationError(f"Invalid static network config: {e}") from e

    @property
    def is_configured(self) -> bool:
        return bool(self.cidr)

    def to_ipconfig(self) -> str:
        # An empty static config carries no address; fall back to DHCP.
        if not self.is_configured:
            return "ip=dhcp"
        return f"ip={self.cidr},gw={self.gateway}"


NetworkConfig = Union[DHCP, StaticIP]


# === IMAGE SOURCES ===


@dataclass(frozen=True)
class TemplateClone:
    """Full-clone an existing Proxmox template."""

    template_id: int

    def __post_init__(self) -> None:
        _require_positive("template_id", self.template_id)


@dataclass(frozen=True)
class CloudImageURL:
    """Import a cloud image fetched over HTTP(S)."""

    url: str

    def __post_init__(self) -> None:
        parsed = urlparse(self.url or "")
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValidationError(f"Cloud image URL must be http(s), got {self.url!r}")
        if not Path(parsed.path).name:
            raise ValidationError(f"Cloud image URL has no file name: {self.url!r}")

    @property
    def file_name(self) -> str:
        return Path(urlparse(self.url).path).name


ImageSource = Union[TemplateClone, CloudImageURL]


# === GUEST-INIT ===


@dataclass(frozen=True)
class FileSpec:
    """A file materialized inside the guest at first boot."""

    path: str
    content: str
    owner: str = "root:root"
    permissions: str = "0644"

    def __post_init__(self) -> None:
        if not self.path.startswith("/"):
            raise ValidationError(f"Guest file path must be absolute: {self.path!r}")
        if not PERMISSIONS_RE.match(self.permissions):
            raise ValidationError(f"Invalid permissions {self.permissions!r} for {self.path}")


@dataclass(frozen=True)
class RunCommand:
    """A first-boot command. Advisory commands may fail without aborting the rest."""

    command: str
    advisory: bool = False

    def __post_init__(self) -> None:
        _single_line("Run command", self.command)


@dataclass(frozen=True)
class SecretSpec:
    """A random credential generated once per payload build."""

    name: str
    length: int = 32  # hex characters

    def __post_init__(self) -> None:
        if not IDENTIFIER_RE.match(self.name):
            raise ValidationError(f"Secret name must be an identifier: {self.name!r}")
        _require_positive(f"Secret {self.name} length", self.length)


@dataclass(frozen=True)
class ComposeStack:
    """A Docker Compose project brought up inside the guest."""

    services: Mapping[str, Any]
    directory: str = "/opt/devstack"
    project_name: Optional[str] = None
    volumes: Mapping[str, Any] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    files: Tuple[FileSpec, ...] = ()

    def __post_init__(self) -> None:
        if not self.services:
            raise ValidationError("Compose stack defines no services")
        if not self.directory.startswith("/"):
            raise ValidationError(f"Compose directory must be absolute: {self.directory!r}")


@dataclass(frozen=True)
class GuestInit:
    """First-boot configuration applied by cloud-init."""

    user: str
    ssh_public_key: str = ""
    ssh_key_path: Optional[str] = None
    network: NetworkConfig = field(default_factory=DHCP)
    hostname: Optional[str] = None
    timezone: Optional[str] = None
    locale: Optional[str] = None
    groups: Tuple[str, ...] = ("sudo",)
    shell: str = "/bin/bash"
    packages: Tuple[str, ...] = ()
    package_update: bool = True
    package_upgrade: bool = False
    files: Tuple[FileSpec, ...] = ()
    run_commands: Tuple[RunCommand, ...] = ()
    secrets: Tuple[SecretSpec, ...] = ()
    variables: Mapping[str, str] = field(default_factory=dict)
    compose: Optional[ComposeStack] = None
    final_message: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.user or not IDENTIFIER_RE.match(self.user.replace("-", "_")):
            raise ValidationError(f"Invalid guest user name: {self.user!r}")
        if self.ssh_public_key:
            _single_line("SSH public key", self.ssh_public_key)
        elif not self.ssh_key_path:
            raise ValidationError("An SSH public key or a key file path is required")
        names = [s.name for s in self.secrets]
        if len(names) != len(set(names)):
            raise ValidationError(f"Duplicate secret names: {names}")


# === DESCRIPTOR ===


@dataclass(frozen=True)
class VMDescriptor:
    """Desired state of a single VM. Constructed once per run, never mutated."""

    name: str
    cores: int
    memory_mb: int
    disk_size_gb: int
    bridge: str
    image_source: ImageSource
    guest_init: GuestInit
    storage_pool: Optional[str] = None
    snippet_storage: str = "local"
    firmware: FirmwareMode = FirmwareMode.UEFI
    machine: str = "q35"
    cpu_type: str = "host"
    os_type: str = "l26"
    onboot: bool = True
    agent: bool = True
    serial_console: bool = False

    def __post_init__(self) -> None:
        if not self.name or not VM_NAME_RE.match(self.name):
            raise ValidationError(f"VM name must be a valid DNS name, got {self.name!r}")
        _require_positive("cores", self.cores)
        _require_positive("memory_mb", self.memory_mb)
        _require_positive("disk_size_gb", self.disk_size_gb)
        if not self.bridge:
            raise ValidationError("A network bridge is required")
        if not isinstance(self.image_source, (TemplateClone, CloudImageURL)):
            raise ValidationError(f"Unsupported image source: {self.image_source!r}")

    @property
    def hostname(self) -> str:
        return self.guest_init.hostname or self.name

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "VMDescriptor":
        """Build a descriptor from its YAML/dict form.

        Args:
            data: Mapping with the descriptor keys (see descriptors/*.yaml)

        Returns:
            Validated VMDescriptor

        Raises:
            ValidationError: If a key is missing or has the wrong shape
        """
        try:
            image = _section(data, "image")
            if "template" in image:
                source: ImageSource = TemplateClone(int(image["template"]))
            else:
                source = CloudImageURL(str(image["url"]))

            return cls(
                name=str(data["name"]),
                cores=int(data["cores"]),
                memory_mb=int(data["memory_mb"]),
                disk_size_gb=int(data["disk_size_gb"]),
                bridge=str(data.get("bridge", "vmbr0")),
                image_source=source,
                guest_init=_guest_init_from_dict(_section(data, "guest_init")),
                storage_pool=data.get("storage_pool"),
                snippet_storage=data.get("snippet_storage", "local"),
                firmware=FirmwareMode(data.get("firmware", "uefi")),
                machine=data.get("machine", "q35"),
                cpu_type=data.get("cpu_type", "host"),
                os_type=data.get("os_type", "l26"),
                onboot=bool(data.get("onboot", True)),
                agent=bool(data.get("agent", True)),
                serial_console=bool(data.get("serial_console", False)),
            )
        except ValidationError:
            raise
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ValidationError(f"Invalid VM descriptor: {type(e).__name__}: {e}") from e


def network_from_value(value: Any) -> NetworkConfig:
    """Parse 'dhcp' or a {cidr, gateway} mapping."""
    if value is None or value == "dhcp":
        return DHCP()
    if isinstance(value, Mapping):
        return StaticIP(cidr=value.get("cidr"), gateway=value.get("gateway"))
    raise ValidationError(f"Network must be 'dhcp' or a cidr/gateway mapping, got {value!r}")


def _section(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = data[key]
    if not isinstance(value, Mapping):
        raise ValidationError(f"Descriptor section {key!r} must be a mapping, got {value!r}")
    return value


def _file_from_dict(item: Mapping[str, Any]) -> FileSpec:
    return FileSpec(
        path=item["path"],
        content=item.get("content", ""),
        owner=item.get("owner", "root:root"),
        permissions=str(item.get("permissions", "0644")),
    )


def _guest_init_from_dict(data: Mapping[str, Any]) -> GuestInit:
    commands: List[RunCommand] = []
    for item in data.get("run_commands", []):
        if isinstance(item, str):
            commands.append(RunCommand(item))
        else:
            commands.append(RunCommand(item["command"], bool(item.get("advisory", False))))

    secrets: List[SecretSpec] = []
    for item in data.get("secrets", []):
        if isinstance(item, str):
            secrets.append(SecretSpec(item))
        else:
            secrets.append(SecretSpec(item["name"], int(item.get("length", 32))))

    compose = None
    if data.get("compose"):
        c = _section(data, "compose")
        compose = ComposeStack(
            services=c["services"],
            directory=c.get("directory", "/opt/devstack"),
            project_name=c.get("project_name"),
            volumes=c.get("volumes", {}),
            env={k: str(v) for k, v in c.get("env", {}).items()},
            files=tuple(_file_from_dict(f) for f in c.get("files", [])),
        )

    variables: Dict[str, str] = {k: str(v) for k, v in data.get("variables", {}).items()}

    return GuestInit(
        user=data["user"],
        ssh_public_key=data.get("ssh_public_key", ""),
        ssh_key_path=data.get("ssh_key_path"),
        network=network_from_value(data.get("network")),
        hostname=data.get("hostname"),
        timezone=data.get("timezone"),
        locale=data.get("locale"),
        groups=tuple(data.get("groups", ["sudo"])),
        shell=data.get("shell", "/bin/bash"),
        packages=tuple(data.get("packages", [])),
        package_update=bool(data.get("package_update", True)),
        package_upgrade=bool(data.get("package_upgrade", False)),
        files=tuple(_file_from_dict(f) for f in data.get("files", [])),
        run_commands=tuple(commands),
        secrets=tuple(secrets),
        variables=variables,
        compose=compose,
        final_message=data.get("final_message"),
    )


# === RESOLUTION & RESULTS ===


@dataclass(frozen=True)
class PoolInfo:
    """A storage pool as reported by the control plane."""

    name: str
    type: str
    content: Tuple[str, ...]
    active: bool = True
    avail_bytes: int = 0

    def supports(self, content: str) -> bool:
        return content in self.content


@dataclass(frozen=True)
class ResolvedResources:
    """Environment-dependent values computed once per run, before any step."""

    vmid: int
    storage_pool: str
    mac_address: str
    ssh_public_key: str
    image_local_path: Optional[Path] = None


@dataclass(frozen=True)
class VMHandle:
    """Reference to a VM on a node."""

    node: str
    vmid: int


@dataclass(frozen=True)
class StepOutcome:
    """What happened to one step of the plan."""

    name: str
    status: StepStatus
    detail: str = ""


@dataclass
class ProvisionResult:
    """Truthful record of a provisioning run."""

    vmid: int
    node: str
    steps: List[StepOutcome] = field(default_factory=list)
    advisories: List[AdvisoryFailure] = field(default_factory=list)
    secrets: Dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return bool(self.steps) and all(
            s.status in (StepStatus.COMPLETED, StepStatus.ADVISORY) for s in self.steps
        )

    @property
    def failed_step(self) -> Optional[str]:
        for outcome in self.steps:
            if outcome.status == StepStatus.FAILED:
                return outcome.name
        return None

    @property
    def completed_steps(self) -> List[str]:
        return [s.name for s in self.steps if s.status in (StepStatus.COMPLETED, StepStatus.ADVISORY)]
