#!/usr/bin/env python3
"""
src/pvecloud/vm_manager.py

Provision a cloud-init VM on Proxmox: validate, resolve, render, execute.
"""

import logging
import random
from typing import Any, Optional

from pvecloud.image_cache import ImageCache
from pvecloud.models import ProvisionResult, VMDescriptor
from pvecloud.orchestrator import ProvisioningOrchestrator
from pvecloud.payload import PayloadBuilder
from pvecloud.resolver import ResourceResolver, load_ssh_public_key

logger = logging.getLogger(__name__)


class VMManager:
    """Handles one provisioning run per call against a single Proxmox node."""

    def __init__(
        self,
        client: Any,
        image_cache: Optional[ImageCache] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        """
        Args:
            client: Control plane (ProxmoxClient or compatible)
            image_cache: Local cloud image cache
            rng: Randomness source for MACs and generated secrets
        """
        self.client = client
        self.resolver = ResourceResolver(client, image_cache=image_cache, rng=rng)
        self.builder = PayloadBuilder(rng=rng)
        self.orchestrator = ProvisioningOrchestrator(client)

    def provision(self, descriptor: VMDescriptor, storage_override: Optional[str] = None) -> ProvisionResult:
        """
        Provision the VM described by descriptor.

        The descriptor is validated on construction and the payload is
        rendered from local inputs only, so template errors surface before
        any control-plane call. Resolution follows; the first mutation
        happens in the pipeline.

        Args:
            descriptor: Desired VM
            storage_override: Storage pool chosen by the caller

        Returns:
            ProvisionResult of a fully successful run

        Raises:
            ValidationError: Inconsistent input
            ResolutionError: Unresolvable prerequisite (safe to retry)
            ProvisioningError: A required step failed; the VM is left as is
        """
        ssh_key = load_ssh_public_key(descriptor.guest_init)
        payload = self.builder.build(descriptor, ssh_key)
        resolved = self.resolver.resolve(descriptor, storage_override=storage_override, ssh_public_key=ssh_key)
        return self.orchestrator.execute(descriptor, resolved, payload)

    def destroy(self, vmid: int) -> None:
        """Stop and delete a VM, e.g. one left behind by a failed run."""
        self.client.delete_vm(vmid)
