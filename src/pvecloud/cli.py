"""
Command-line interface for pvecloud.

    pvecloud provision --name test-vm --cores 8 --memory 8192 --disk 500
    pvecloud provision --descriptor descriptors/test-vm.yaml
    pvecloud render --name test-vm --devstack > user-data.yml
    pvecloud pools
    pvecloud destroy 123
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from pvecloud.config import Config, load_descriptor
from pvecloud.exceptions import (
    ControlPlaneError,
    ProvisioningError,
    ResolutionError,
    StorageAmbiguityError,
    ValidationError,
)
from pvecloud.models import (
    CloudImageURL,
    FirmwareMode,
    GuestInit,
    ProvisionResult,
    RunCommand,
    StaticIP,
    StepStatus,
    TemplateClone,
    VMDescriptor,
    network_from_value,
)
from pvecloud.payload import PayloadBuilder
from pvecloud.presets import IMAGES, devstack_guest_init, image_url
from pvecloud.proxmox_api import ProxmoxClient
from pvecloud.resolver import load_ssh_public_key
from pvecloud.vm_manager import VMManager

# Initialize CLI app and console
app = typer.Typer(
    name="pvecloud",
    help="Provision cloud-init VMs on Proxmox VE",
    add_completion=False
)
console = Console()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)8s] %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)

STATUS_STYLES = {
    StepStatus.COMPLETED: "[green]completed[/green]",
    StepStatus.ADVISORY: "[yellow]advisory[/yellow]",
    StepStatus.FAILED: "[red]failed[/red]",
    StepStatus.SKIPPED: "[dim]skipped[/dim]",
}


def get_client() -> ProxmoxClient:
    """Get a Proxmox client for the configured host."""
    try:
        return ProxmoxClient()
    except Exception as e:
        console.print(f"❌ Failed to connect to Proxmox: {e}")
        raise typer.Exit(1)


def build_descriptor(
    descriptor_file: Optional[Path],
    name: Optional[str],
    cores: Optional[int],
    memory: Optional[int],
    disk: Optional[int],
    bridge: Optional[str],
    image: Optional[str],
    template: Optional[int],
    user: Optional[str],
    ssh_key_file: Optional[Path],
    ip: Optional[str],
    gateway: Optional[str],
    timezone: Optional[str],
    firmware: Optional[str],
    devstack: bool,
) -> VMDescriptor:
    """Build a descriptor from a YAML file or from command-line flags.

    With a descriptor file only top-level settings may be overridden; flags
    that shape guest-init or the image source must come from the file.
    """
    if descriptor_file is not None:
        conflicting = {
            "--image": image,
            "--template": template,
            "--user": user,
            "--ssh-key-file": ssh_key_file,
            "--ip": ip,
            "--gateway": gateway,
            "--timezone": timezone,
            "--devstack": devstack or None,
        }
        given = [flag for flag, value in conflicting.items() if value is not None]
        if given:
            raise ValidationError(f"{', '.join(given)} cannot be combined with --descriptor; set them in the file")

        overrides: Dict[str, Any] = {
            "name": name,
            "cores": cores,
            "memory_mb": memory,
            "disk_size_gb": disk,
            "bridge": bridge,
            "firmware": firmware,
        }
        return load_descriptor(descriptor_file, overrides)

    if not name:
        raise ValidationError("--name is required without --descriptor")

    if template is not None:
        source: Any = TemplateClone(template)
        default_user = Config.CLOUD_USER
    else:
        key = image or "debian-12"
        source = CloudImageURL(image_url(key))
        default_user = IMAGES[key].default_user if key in IMAGES else Config.CLOUD_USER

    network = network_from_value({"cidr": ip, "gateway": gateway}) if (ip or gateway) else network_from_value("dhcp")
    key_path = str(ssh_key_file) if ssh_key_file else Config.SSH_PUBKEY_PATH
    guest_user = user or default_user
    timezone = timezone or Config.TIMEZONE

    if devstack:
        guest = devstack_guest_init(guest_user, ssh_key_path=key_path, network=network, timezone=timezone)
    else:
        guest = GuestInit(
            user=guest_user,
            ssh_key_path=key_path,
            network=network,
            timezone=timezone,
            packages=("qemu-guest-agent",),
            run_commands=(RunCommand("systemctl enable --now qemu-guest-agent", advisory=True),),
        )

    return VMDescriptor(
        name=name,
        cores=cores or 2,
        memory_mb=memory or 2048,
        disk_size_gb=disk or 32,
        bridge=bridge or Config.VM_BRIDGE,
        image_source=source,
        guest_init=guest,
        snippet_storage=Config.SNIPPET_STORAGE,
        firmware=FirmwareMode(firmware or FirmwareMode.UEFI.value),
    )


def _choose_pool(candidates: List[str]) -> str:
    """Ask the operator to pick one of several image-capable pools."""
    console.print("💽 Several storage pools can hold VM disks:")
    for idx, pool in enumerate(candidates, start=1):
        console.print(f"  {idx}) {pool}")
    choice = typer.prompt("Select storage pool", type=int, default=1)
    if not 1 <= choice <= len(candidates):
        console.print(f"❌ Invalid choice {choice}")
        raise typer.Exit(1)
    return candidates[choice - 1]


def _print_steps(result: ProvisionResult) -> None:
    table = Table(title="Provisioning Steps")
    table.add_column("#", style="cyan")
    table.add_column("Step", style="blue")
    table.add_column("Status")
    table.add_column("Detail", style="green")
    for idx, outcome in enumerate(result.steps, start=1):
        table.add_row(str(idx), outcome.name, STATUS_STYLES[outcome.status], outcome.detail)
    console.print(table)


def _run_provision(manager: VMManager, descriptor: VMDescriptor, storage: Optional[str]) -> ProvisionResult:
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console
    ) as progress:
        task = progress.add_task(f"Provisioning VM {descriptor.name}...", total=None)
        result = manager.provision(descriptor, storage_override=storage)
        progress.update(task, completed=True)
    return result


@app.command("provision")
def provision(
    descriptor_file: Optional[Path] = typer.Option(None, "--descriptor", "-f", help="VM descriptor YAML file"),
    name: Optional[str] = typer.Option(None, help="VM name"),
    cores: Optional[int] = typer.Option(None, help="CPU cores"),
    memory: Optional[int] = typer.Option(None, help="RAM in MB"),
    disk: Optional[int] = typer.Option(None, help="Primary disk size in GB"),
    bridge: Optional[str] = typer.Option(None, help="Network bridge"),
    storage: Optional[str] = typer.Option(None, help="Storage pool for VM disks"),
    image: Optional[str] = typer.Option(None, help="Cloud image key (see 'images') or URL"),
    template: Optional[int] = typer.Option(None, help="Clone this template VMID instead of importing an image"),
    user: Optional[str] = typer.Option(None, help="Guest user name"),
    ssh_key_file: Optional[Path] = typer.Option(None, "--ssh-key-file", help="SSH public key for the guest user"),
    ip: Optional[str] = typer.Option(None, help="Static IP with CIDR, e.g. 10.110.11.54/24"),
    gateway: Optional[str] = typer.Option(None, help="Gateway for the static IP"),
    timezone: Optional[str] = typer.Option(None, help="Guest timezone"),
    firmware: Optional[str] = typer.Option(None, help="Firmware: uefi (default) or seabios"),
    devstack: bool = typer.Option(False, "--devstack", help="Install the Docker Compose dev stack"),
    no_input: bool = typer.Option(False, "--no-input", help="Never prompt; fail on ambiguous storage"),
) -> None:
    """Provision a VM and start it."""
    try:
        descriptor = build_descriptor(
            descriptor_file, name, cores, memory, disk, bridge, image, template,
            user, ssh_key_file, ip, gateway, timezone, firmware, devstack,
        )
    except (ValidationError, ValueError) as e:
        console.print(f"❌ Invalid VM descriptor: {e}")
        raise typer.Exit(1)

    network = descriptor.guest_init.network
    net_text = network.cidr if isinstance(network, StaticIP) and network.is_configured else "dhcp"
    console.print(
        f"🆕 {descriptor.name}: {descriptor.cores} CPUs, {descriptor.memory_mb}MB RAM, "
        f"{descriptor.disk_size_gb}G disk, bridge {descriptor.bridge}, network {net_text}"
    )

    client = get_client()
    manager = VMManager(client)
    try:
        try:
            result = _run_provision(manager, descriptor, storage)
        except StorageAmbiguityError as e:
            if no_input:
                raise
            result = _run_provision(manager, descriptor, _choose_pool(e.candidates))
    except ValidationError as e:
        console.print(f"❌ Invalid VM descriptor: {e}")
        raise typer.Exit(1)
    except ResolutionError as e:
        console.print(f"❌ Cannot resolve resources: {e}")
        raise typer.Exit(1)
    except ProvisioningError as e:
        console.print(f"❌ Provisioning failed at step '{e.step}': {e.cause}")
        if isinstance(e.result, ProvisionResult):
            _print_steps(e.result)
            console.print(
                f"⚠️  VM {e.result.vmid} was left as the completed steps created it. "
                f"Inspect it or remove it with: pvecloud destroy {e.result.vmid}"
            )
        raise typer.Exit(1)
    finally:
        client.close()

    _print_steps(result)

    table = Table(title=f"VM Details: {descriptor.name}")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("VMID", str(result.vmid))
    table.add_row("Node", result.node)
    table.add_row("Guest user", descriptor.guest_init.user)
    table.add_row("Network", net_text)
    console.print(table)

    for advisory in result.advisories:
        console.print(f"⚠️  {advisory}")
    if result.secrets:
        console.print(
            f"🔐 Generated secrets ({', '.join(result.secrets)}) live only in the cloud-init snippet "
            f"{descriptor.name}-user-data.yml on storage {descriptor.snippet_storage}"
        )
    console.print(f"✅ VM {descriptor.name!r} (vmid={result.vmid}) is running")


@app.command("render")
def render(
    descriptor_file: Optional[Path] = typer.Option(None, "--descriptor", "-f", help="VM descriptor YAML file"),
    name: Optional[str] = typer.Option(None, help="VM name"),
    user: Optional[str] = typer.Option(None, help="Guest user name"),
    image: Optional[str] = typer.Option(None, help="Cloud image key (see 'images') or URL"),
    ssh_key_file: Optional[Path] = typer.Option(None, "--ssh-key-file", help="SSH public key for the guest user"),
    timezone: Optional[str] = typer.Option(None, help="Guest timezone"),
    devstack: bool = typer.Option(False, "--devstack", help="Install the Docker Compose dev stack"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write to this file (mode 0600)"),
) -> None:
    """Render the cloud-init user-data without touching Proxmox."""
    try:
        descriptor = build_descriptor(
            descriptor_file, name, None, None, None, None, image, None,
            user, ssh_key_file, None, None, timezone, None, devstack,
        )
        payload = PayloadBuilder().build(descriptor, load_ssh_public_key(descriptor.guest_init))
    except (ValidationError, ResolutionError, ValueError) as e:
        console.print(f"❌ Cannot render payload: {e}")
        raise typer.Exit(1)

    if output is None:
        typer.echo(payload.text, nl=False)
        return

    fd = os.open(output, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        os.fchmod(f.fileno(), 0o600)
        f.write(payload.text)
    console.print(f"✅ Wrote {output}")


@app.command("pools")
def pools() -> None:
    """List storage pools on the node."""
    client = get_client()
    try:
        items = client.list_storage_pools(None)
    except ControlPlaneError as e:
        console.print(f"❌ Failed to list storage pools: {e}")
        raise typer.Exit(1)
    finally:
        client.close()

    table = Table(title=f"Storage Pools - Node: {client.node}")
    table.add_column("Name", style="cyan")
    table.add_column("Type", style="blue")
    table.add_column("Content", style="green")
    table.add_column("Available", style="yellow")
    table.add_column("VM disks", style="magenta")
    for pool in items:
        table.add_row(
            pool.name,
            pool.type,
            ",".join(pool.content),
            f"{pool.avail_bytes / (1024**3):.1f} GB",
            "yes" if pool.supports("images") and pool.active else "no",
        )
    console.print(table)


@app.command("images")
def images() -> None:
    """List the built-in cloud images."""
    table = Table(title="Cloud Images")
    table.add_column("Key", style="cyan")
    table.add_column("Default user", style="blue")
    table.add_column("Description", style="green")
    table.add_column("URL", style="dim")
    for image in IMAGES.values():
        table.add_row(image.key, image.default_user, image.description, image.url)
    console.print(table)


@app.command("destroy")
def destroy(
    vmid: int = typer.Argument(..., help="VMID to delete"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Stop and delete a VM and its disks."""
    if not yes and not typer.confirm(f"Delete VM {vmid} and all of its disks?"):
        console.print("Aborted.")
        raise typer.Exit(1)

    client = get_client()
    try:
        VMManager(client).destroy(vmid)
    except ControlPlaneError as e:
        console.print(f"❌ Failed to delete VM {vmid}: {e}")
        raise typer.Exit(1)
    finally:
        client.close()
    console.print(f"🗑️  VM {vmid} deleted")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging")
) -> None:
    """
    pvecloud - cloud-init VM provisioning for Proxmox VE

    Configuration is read from the environment and a .env file
    (API_TOKEN, PVE_HOST, PVE_NODE, SSH_KEY_PATH, ...).
    """
    if debug:
        logging.getLogger().setLevel(logging.DEBUG)
    elif verbose:
        logging.getLogger().setLevel(logging.INFO)
    else:
        logging.getLogger().setLevel(logging.WARNING)


if __name__ == "__main__":
    app()
