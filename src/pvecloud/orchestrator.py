"""
src/pvecloud/orchestrator.py

Drive the Proxmox control plane through the fixed provisioning pipeline.

Steps run strictly in order. A failing required step stops the run and
raises ProvisioningError; nothing already done is rolled back. A failing
best-effort step is logged and recorded as an advisory.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from pvecloud.exceptions import AdvisoryFailure, ControlPlaneError, ProvisioningError
from pvecloud.models import (
    CLOUDINIT_DISK,
    EFI_DISK,
    PRIMARY_DISK,
    CloudImageURL,
    FirmwareMode,
    ProvisionResult,
    ResolvedResources,
    StepOutcome,
    StepStatus,
    TemplateClone,
    VMDescriptor,
    VMHandle,
)
from pvecloud.payload import Payload

logger = logging.getLogger(__name__)

PRIMARY_DISK_OPTIONS = {"discard": "on", "ssd": 1}
DRIVE_BUSES = ("ide", "sata", "scsi", "virtio")


def has_cloudinit_drive(config: Dict[str, Any]) -> bool:
    """True if any drive slot of a VM config already holds a cloud-init drive."""
    return any(
        key.startswith(DRIVE_BUSES) and "cloudinit" in str(value)
        for key, value in config.items()
    )


@dataclass(frozen=True)
class Step:
    """One named pipeline step."""

    name: str
    action: Callable[[], Optional[str]]
    required: bool = True


class ProvisioningRun:
    """State of a single execution: descriptor, resolved resources and the VM handle."""

    def __init__(self, client: Any, descriptor: VMDescriptor, resolved: ResolvedResources, payload: Payload):
        self.client = client
        self.descriptor = descriptor
        self.resolved = resolved
        self.payload = payload
        self.handle: Optional[VMHandle] = None

    def _vm_options(self) -> Dict[str, Any]:
        d = self.descriptor
        options: Dict[str, Any] = {
            "name": d.name,
            "cores": d.cores,
            "sockets": 1,
            "memory": d.memory_mb,
            "cpu": d.cpu_type,
            "machine": d.machine,
            "ostype": d.os_type,
            "scsihw": "virtio-scsi-pci",
            "bios": "ovmf" if d.firmware == FirmwareMode.UEFI else "seabios",
            "net0": f"virtio={self.resolved.mac_address},bridge={d.bridge}",
            "onboot": int(d.onboot),
        }
        if d.agent:
            options["agent"] = "enabled=1,fstrim_cloned_disks=1"
        if d.serial_console:
            options["serial0"] = "socket"
        return options

    def _require_handle(self) -> VMHandle:
        if self.handle is None:
            raise RuntimeError("No VM handle; create-vm has not completed")
        return self.handle

    # === STEPS ===

    def create_vm(self) -> str:
        d = self.descriptor
        options = self._vm_options()
        source = d.image_source
        if isinstance(source, TemplateClone):
            self.handle = self.client.clone_vm(
                source.template_id, self.resolved.vmid, d.name, storage=self.resolved.storage_pool
            )
            # The clone carries the template's settings; apply ours on top
            del options["name"]
            self.client.configure_vm(self.handle, options)
            return f"cloned template {source.template_id}"

        self.handle = self.client.create_vm(self.resolved.vmid, options)
        return f"{d.cores} cores, {d.memory_mb}MB, MAC {self.resolved.mac_address}"

    def attach_primary_disk(self) -> str:
        handle = self._require_handle()
        source = self.descriptor.image_source
        if isinstance(source, CloudImageURL):
            image_path = str(self.resolved.image_local_path)
            disk_ref = self.client.import_disk(handle, image_path, self.resolved.storage_pool)
            self.client.attach_disk(handle, PRIMARY_DISK, disk_ref, PRIMARY_DISK_OPTIONS)
            return disk_ref

        if self.client.disk_size_gb(handle.vmid, PRIMARY_DISK) is None:
            raise ControlPlaneError("attach-disk", f"cloned VM {handle.vmid} has no {PRIMARY_DISK} disk")
        return f"{PRIMARY_DISK} inherited from template"

    def attach_auxiliary_disks(self) -> str:
        handle = self._require_handle()
        pool = self.resolved.storage_pool
        # Clones keep the template's EFI vars and cloud-init drive
        existing: Dict[str, Any] = {}
        if isinstance(self.descriptor.image_source, TemplateClone):
            existing = self.client.vm_config(handle.vmid)

        attached = []
        if self.descriptor.firmware == FirmwareMode.UEFI:
            if existing.get(EFI_DISK):
                attached.append(f"{EFI_DISK} kept")
            else:
                self.client.attach_aux_disk(handle, EFI_DISK, pool, "efi")
                attached.append(EFI_DISK)
        if has_cloudinit_drive(existing):
            attached.append("cloud-init drive kept")
        else:
            self.client.attach_aux_disk(handle, CLOUDINIT_DISK, pool, "cloudinit")
            attached.append(CLOUDINIT_DISK)
        return ", ".join(attached)

    def configure_guest_init(self) -> str:
        handle = self._require_handle()
        guest = self.descriptor.guest_init
        ref = self.client.upload_snippet(self.descriptor.snippet_storage, self.payload.filename, self.payload.text)
        self.client.set_guest_init(
            handle,
            guest.user,
            self.resolved.ssh_public_key,
            guest.network.to_ipconfig(),
            ref,
        )
        return ref

    def resize_primary_disk(self) -> str:
        changed = self.client.resize_disk(self._require_handle(), PRIMARY_DISK, self.descriptor.disk_size_gb)
        if changed is False:
            return f"already at least {self.descriptor.disk_size_gb}G"
        return f"grown to {self.descriptor.disk_size_gb}G"

    def set_boot_order(self) -> str:
        self.client.set_boot_order(self._require_handle(), [PRIMARY_DISK])
        return f"order={PRIMARY_DISK}"

    def start_vm(self) -> str:
        self.client.start_vm(self._require_handle())
        return "running"


class ProvisioningOrchestrator:
    """Executes the provisioning plan against a control plane."""

    def __init__(self, client: Any) -> None:
        self.client = client

    def plan(self, run: ProvisioningRun) -> List[Step]:
        """The fixed, ordered plan. Only the resize is best-effort."""
        return [
            Step("create-vm", run.create_vm),
            Step("attach-primary-disk", run.attach_primary_disk),
            Step("attach-auxiliary-disks", run.attach_auxiliary_disks),
            Step("configure-guest-init", run.configure_guest_init),
            Step("resize-primary-disk", run.resize_primary_disk, required=False),
            Step("set-boot-order", run.set_boot_order),
            Step("start-vm", run.start_vm),
        ]

    @staticmethod
    def _fail(result: ProvisionResult, steps: List[Step], index: int, cause: str) -> ProvisioningError:
        """Record the failed step, mark the rest skipped and return the error to raise."""
        step = steps[index - 1]
        logger.error(f"❌ {step.name} failed: {cause}")
        result.steps.append(StepOutcome(step.name, StepStatus.FAILED, cause))
        result.steps.extend(StepOutcome(s.name, StepStatus.SKIPPED) for s in steps[index:])
        return ProvisioningError(step.name, cause, result)

    def execute(self, descriptor: VMDescriptor, resolved: ResolvedResources, payload: Payload) -> ProvisionResult:
        """Run every step in order.

        Returns:
            ProvisionResult with one outcome per step

        Raises:
            ProvisioningError: When a required step fails; its result lists
                the completed, failed and skipped steps
        """
        run = ProvisioningRun(self.client, descriptor, resolved, payload)
        result = ProvisionResult(vmid=resolved.vmid, node=getattr(self.client, "node", ""), secrets=dict(payload.secrets))
        steps = self.plan(run)

        logger.info(f"🚀 Provisioning {descriptor.name!r} as VM {resolved.vmid}")
        for index, step in enumerate(steps, start=1):
            logger.info(f"[{index}/{len(steps)}] {step.name}")
            try:
                detail = step.action() or ""
            except ControlPlaneError as e:
                if not step.required:
                    advisory = AdvisoryFailure(step.name, str(e))
                    logger.warning(f"⚠️  {advisory}; continuing")
                    result.advisories.append(advisory)
                    result.steps.append(StepOutcome(step.name, StepStatus.ADVISORY, str(e)))
                    continue
                raise self._fail(result, steps, index, str(e)) from e
            except Exception as e:
                # Unexpected errors fail the run even in a best-effort step
                raise self._fail(result, steps, index, f"{type(e).__name__}: {e}") from e

            logger.info(f"✅ {step.name}: {detail}" if detail else f"✅ {step.name}")
            result.steps.append(StepOutcome(step.name, StepStatus.COMPLETED, detail))

        logger.info(f"🎉 VM {descriptor.name!r} (vmid={resolved.vmid}) provisioned and started")
        return result
