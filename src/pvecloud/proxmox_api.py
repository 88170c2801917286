"""
src/pvecloud/proxmox_api.py

Proxmox control plane adapter: REST API via proxmoxer, node-local commands
(qm importdisk, snippet writes) via SSH or, on the node itself, subprocess.
"""

import functools
import logging
import os
import re
import shlex
import subprocess
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar
from urllib.parse import quote

import paramiko
import requests
from proxmoxer import ProxmoxAPI
from proxmoxer.core import ResourceException

from pvecloud.config import Config
from pvecloud.exceptions import ControlPlaneError
from pvecloud.models import PoolInfo, VMHandle

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

SIZE_RE = re.compile(r"(?:^|,)size=(\d+(?:\.\d+)?)([KMGT]?)(?:,|$)")
SIZE_UNITS_GB = {"K": 1 / 1024**2, "M": 1 / 1024, "G": 1, "T": 1024, "": 1 / 1024**3}

AUX_DISK_KINDS = ("efi", "cloudinit")


def control_plane_call(operation: str) -> Callable[[F], F]:
    """Translate transport and API failures into ControlPlaneError naming the operation."""

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return func(*args, **kwargs)
            except ControlPlaneError:
                raise
            except (
                ResourceException,
                requests.RequestException,
                paramiko.SSHException,
                subprocess.TimeoutExpired,
                OSError,
            ) as e:
                raise ControlPlaneError(operation, f"{type(e).__name__}: {e}") from e

        return wrapper  # type: ignore[return-value]

    return decorator


def parse_disk_size_gb(value: str) -> Optional[float]:
    """Return the size= of a Proxmox drive string in GiB, e.g. 'local-lvm:vm-1-disk-0,size=32G'."""
    match = SIZE_RE.search(value)
    if not match:
        return None
    return float(match.group(1)) * SIZE_UNITS_GB[match.group(2)]


class NodeShell:
    """Runs commands and writes files on the Proxmox node."""

    def __init__(
        self,
        host: str,
        local: bool = False,
        user: Optional[str] = None,
        key_path: Optional[str] = None,
        timeout: Optional[int] = None,
    ) -> None:
        self.host = host
        self.local = local
        self.user = user or Config.SSH_USER
        self.key_path = key_path or Config.SSH_KEY_PATH
        self.timeout = timeout or Config.PVE_TIMEOUT
        self._ssh: Optional[paramiko.SSHClient] = None

    def _client(self) -> paramiko.SSHClient:
        if self._ssh is None:
            ssh = paramiko.SSHClient()
            ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            ssh.connect(
                hostname=self.host,
                username=self.user,
                key_filename=self.key_path,
                timeout=self.timeout,
            )
            self._ssh = ssh
        return self._ssh

    def run(self, command: List[str], timeout: Optional[int] = None) -> str:
        """Run a command on the node and return its stdout.

        Raises:
            ControlPlaneError: If the command exits non-zero
        """
        deadline = timeout or self.timeout
        logger.debug(f"[{self.host}]$ {shlex.join(command)}")

        if self.local:
            result = subprocess.run(command, capture_output=True, text=True, timeout=deadline)
            if result.returncode != 0:
                raise ControlPlaneError(command[0], result.stderr.strip() or f"exit status {result.returncode}")
            return result.stdout.strip()

        stdin, stdout, stderr = self._client().exec_command(shlex.join(command), timeout=deadline)
        out = stdout.read().decode().strip()
        err = stderr.read().decode().strip()
        status = stdout.channel.recv_exit_status()
        if status != 0:
            raise ControlPlaneError(command[0], err or f"exit status {status}")
        return out

    def file_exists(self, path: str) -> bool:
        if self.local:
            return os.path.isfile(path)
        try:
            self.run(["test", "-f", path])
            return True
        except ControlPlaneError:
            return False

    def put_file(self, local_path: str, remote_path: str) -> None:
        """Copy a local file to the node (no-op when running on the node)."""
        if self.local:
            return
        self.run(["mkdir", "-p", os.path.dirname(remote_path)])
        sftp = self._client().open_sftp()
        try:
            sftp.put(local_path, remote_path)
        finally:
            sftp.close()

    def write_text(self, path: str, text: str, mode: int = 0o600) -> None:
        """Write text to a file on the node; permissions are set before content is written."""
        if self.local:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
            with os.fdopen(fd, "w") as f:
                os.fchmod(f.fileno(), mode)
                f.write(text)
            return

        self.run(["mkdir", "-p", os.path.dirname(path)])
        sftp = self._client().open_sftp()
        try:
            with sftp.open(path, "w") as f:
                sftp.chmod(path, mode)
                f.write(text)
        finally:
            sftp.close()

    def close(self) -> None:
        if self._ssh is not None:
            self._ssh.close()
            self._ssh = None


class ProxmoxClient:
    """Wrapper around the Proxmox API exposing the provisioning operations."""

    def __init__(
        self,
        host: Optional[str] = None,
        node: Optional[str] = None,
        verify_ssl: Optional[bool] = None,
        timeout: Optional[int] = None,
        shell: Optional[NodeShell] = None,
    ) -> None:
        self.host = host or Config.PVE_HOST
        self.node = node or Config.node_name()
        self.timeout = timeout or Config.PVE_TIMEOUT
        verify = Config.PVE_VERIFY_SSL if verify_ssl is None else verify_ssl

        credentials = Config.api_credentials()
        self.proxmox = ProxmoxAPI(self.host, verify_ssl=verify, timeout=self.timeout, **credentials)
        self.shell = shell or NodeShell(self.host, local=Config.PVE_LOCAL, timeout=self.timeout)

    def _qemu(self, vmid: int) -> Any:
        return self.proxmox.nodes(self.node).qemu(vmid)

    def _wait_for_task(self, upid: Any, operation: str, timeout: Optional[int] = None) -> None:
        """Block until an asynchronous Proxmox task finishes successfully."""
        if not isinstance(upid, str) or not upid.startswith("UPID:"):
            return

        deadline = time.time() + (timeout or self.timeout)
        while time.time() < deadline:
            status = self.proxmox.nodes(self.node).tasks(upid).status.get()
            if status.get("status") == "stopped":
                exit_status = status.get("exitstatus", "")
                if exit_status != "OK":
                    raise ControlPlaneError(operation, f"task {upid} ended with: {exit_status}")
                return
            time.sleep(1)
        raise ControlPlaneError(operation, f"task {upid} did not finish within {timeout or self.timeout}s")

    # === IDENTIFIERS & STORAGE ===

    @control_plane_call("allocate-identifier")
    def allocate_identifier(self) -> int:
        """Ask the cluster for the next free VMID; never chosen locally."""
        return int(self.proxmox.cluster.nextid.get())

    @control_plane_call("list-storage-pools")
    def list_storage_pools(self, content: Optional[str] = "images") -> List[PoolInfo]:
        """List enabled storage pools on the node, optionally filtered by content type."""
        params: Dict[str, Any] = {"enabled": 1}
        if content:
            params["content"] = content

        pools = []
        for item in self.proxmox.nodes(self.node).storage.get(**params):
            pools.append(
                PoolInfo(
                    name=item["storage"],
                    type=item.get("type", "unknown"),
                    content=tuple(c for c in item.get("content", "").split(",") if c),
                    active=bool(item.get("active", 1)),
                    avail_bytes=int(item.get("avail", 0)),
                )
            )
        return pools

    # === VM LIFECYCLE ===

    @control_plane_call("create-vm")
    def create_vm(self, vmid: int, options: Dict[str, Any]) -> VMHandle:
        upid = self.proxmox.nodes(self.node).qemu.create(vmid=vmid, **options)
        self._wait_for_task(upid, "create-vm")
        return VMHandle(node=self.node, vmid=vmid)

    @control_plane_call("clone-vm")
    def clone_vm(self, template_id: int, vmid: int, name: str, storage: Optional[str] = None) -> VMHandle:
        params: Dict[str, Any] = {"newid": vmid, "name": name, "full": 1}
        if storage:
            params["storage"] = storage
        upid = self._qemu(template_id).clone.post(**params)
        # Full clones copy whole disks; allow the start timeout rather than the call deadline
        self._wait_for_task(upid, "clone-vm", timeout=max(self.timeout, Config.VM_START_TIMEOUT))
        return VMHandle(node=self.node, vmid=vmid)

    @control_plane_call("configure-vm")
    def configure_vm(self, handle: VMHandle, options: Dict[str, Any]) -> None:
        upid = self._qemu(handle.vmid).config.post(**options)
        self._wait_for_task(upid, "configure-vm")

    @control_plane_call("start-vm")
    def start_vm(self, handle: VMHandle, timeout: Optional[int] = None) -> None:
        """Start the VM and wait until it reports as running."""
        upid = self._qemu(handle.vmid).status.start.post()
        self._wait_for_task(upid, "start-vm")

        wait = timeout or Config.VM_START_TIMEOUT
        deadline = time.time() + wait
        while time.time() < deadline:
            status = self._qemu(handle.vmid).status.current.get()
            if status.get("status") == "running":
                logger.info(f"✅ VM {handle.vmid} is running")
                return
            time.sleep(2)
        raise ControlPlaneError("start-vm", f"VM {handle.vmid} did not reach 'running' within {wait}s")

    @control_plane_call("delete-vm")
    def delete_vm(self, vmid: int) -> None:
        """Stop (if running) and delete a VM together with its disks."""
        status = self._qemu(vmid).status.current.get()
        if status.get("status") == "running":
            logger.info(f"⏹️  Stopping VM {vmid}")
            upid = self._qemu(vmid).status.stop.post()
            self._wait_for_task(upid, "stop-vm")

        logger.info(f"🗑️  Deleting VM {vmid}")
        upid = self._qemu(vmid).delete(purge=1, **{"destroy-unreferenced-disks": 1})
        self._wait_for_task(upid, "delete-vm")

    # === DISKS ===

    @control_plane_call("import-disk")
    def import_disk(self, handle: VMHandle, image_path: str, pool: str) -> str:
        """Import a disk image into a pool and return the new volume (left as unusedN)."""
        if not self.shell.file_exists(image_path):
            logger.info(f"📤 Staging {os.path.basename(image_path)} on {self.host}")
            self.shell.put_file(image_path, image_path)

        logger.info(f"💾 Importing {os.path.basename(image_path)} → {pool} for VM {handle.vmid}")
        # Imports can take minutes; they share the clone deadline
        self.shell.run(
            ["qm", "importdisk", str(handle.vmid), image_path, pool],
            timeout=max(self.timeout, Config.VM_START_TIMEOUT),
        )

        config = self._qemu(handle.vmid).config.get()
        unused = sorted(
            (key for key in config if key.startswith("unused")),
            key=lambda k: int(k[len("unused"):] or 0),
        )
        if not unused:
            raise ControlPlaneError("import-disk", f"no unused volume in VM {handle.vmid} config after import")
        return str(config[unused[-1]])

    @control_plane_call("attach-disk")
    def attach_disk(self, handle: VMHandle, slot: str, disk_ref: str, options: Optional[Dict[str, Any]] = None) -> None:
        value = ",".join([disk_ref] + [f"{k}={v}" for k, v in (options or {}).items()])
        self.configure_vm(handle, {slot: value})

    @control_plane_call("attach-aux-disk")
    def attach_aux_disk(self, handle: VMHandle, slot: str, pool: str, kind: str) -> None:
        """Allocate an EFI vars disk or a cloud-init drive on the pool."""
        if kind == "efi":
            value = f"{pool}:1,efitype=4m,pre-enrolled-keys=1"
        elif kind == "cloudinit":
            value = f"{pool}:cloudinit"
        else:
            raise ControlPlaneError("attach-aux-disk", f"unknown disk kind {kind!r}; expected one of {AUX_DISK_KINDS}")
        self.configure_vm(handle, {slot: value})

    @control_plane_call("vm-config")
    def vm_config(self, vmid: int) -> Dict[str, Any]:
        """Current configuration of a VM (drive slots, options)."""
        return dict(self._qemu(vmid).config.get())

    @control_plane_call("disk-size")
    def disk_size_gb(self, vmid: int, slot: str) -> Optional[float]:
        """Current size of a VM disk in GiB, or None if the slot is empty."""
        value = self._qemu(vmid).config.get().get(slot)
        if not value:
            return None
        return parse_disk_size_gb(str(value))

    @control_plane_call("resize-disk")
    def resize_disk(self, handle: VMHandle, slot: str, size_gb: int) -> bool:
        """Grow a disk to size_gb. Returns False (no-op) when it is already at least that big."""
        current = self.disk_size_gb(handle.vmid, slot)
        if current is not None and current >= size_gb:
            logger.info(f"ℹ️  {slot} of VM {handle.vmid} is already {current:g}G (target {size_gb}G)")
            return False

        logger.info(f"🔧 Resizing {slot} of VM {handle.vmid} → {size_gb}G")
        upid = self._qemu(handle.vmid).resize.put(disk=slot, size=f"{size_gb}G")
        self._wait_for_task(upid, "resize-disk")
        return True

    @control_plane_call("set-boot-order")
    def set_boot_order(self, handle: VMHandle, order: List[str]) -> None:
        self.configure_vm(handle, {"boot": "order=" + ";".join(order)})

    # === GUEST-INIT ===

    @control_plane_call("upload-snippet")
    def upload_snippet(self, storage: str, filename: str, text: str) -> str:
        """Write a cloud-init snippet (mode 0600) to a storage and return its volume id.

        Enables the 'snippets' content type on the storage when missing.
        """
        storage_cfg = self.proxmox.storage(storage).get()
        content = [c for c in storage_cfg.get("content", "").split(",") if c]
        if "snippets" not in content:
            logger.info(f"🧩 Enabling 'snippets' content on storage {storage}")
            self.proxmox.storage(storage).put(content=",".join(content + ["snippets"]))

        base = storage_cfg.get("path")
        directory = str(Path(base) / "snippets") if base else Config.SNIPPET_DIR
        path = f"{directory}/{filename}"
        self.shell.write_text(path, text, mode=0o600)
        logger.info(f"📝 Wrote cloud-init snippet {path}")
        return f"{storage}:snippets/{filename}"

    @control_plane_call("set-guest-init")
    def set_guest_init(
        self,
        handle: VMHandle,
        user: str,
        ssh_public_key: str,
        ipconfig: str,
        custom_payload_ref: Optional[str] = None,
    ) -> None:
        options: Dict[str, Any] = {
            "ciuser": user,
            # Proxmox expects the key list URL-encoded
            "sshkeys": quote(ssh_public_key.strip(), safe=""),
            "ipconfig0": ipconfig,
        }
        if custom_payload_ref:
            options["cicustom"] = f"user={custom_payload_ref}"
        self.configure_vm(handle, options)

    def close(self) -> None:
        self.shell.close()
