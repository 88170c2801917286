"""
src/pvecloud/resolver.py

Resolve the environment-dependent parts of a provisioning run: SSH key
material, storage pool, local cloud image, MAC address and VMID.
"""

import logging
import os
import random
from typing import Any, List, Optional

from pvecloud.exceptions import ControlPlaneError, ResolutionError, StorageAmbiguityError, ValidationError
from pvecloud.image_cache import ImageCache, image_virtual_size_gb
from pvecloud.models import PRIMARY_DISK, CloudImageURL, GuestInit, ResolvedResources, VMDescriptor

logger = logging.getLogger(__name__)

IMAGE_CONTENT = "images"


def random_mac(rng: Optional[random.Random] = None) -> str:
    """Generate a locally administered, unicast MAC address."""
    rng = rng or random.SystemRandom()
    octets = [rng.randrange(256) for _ in range(6)]
    # Clear the multicast bit, set the locally-administered bit
    octets[0] = (octets[0] & 0xFC) | 0x02
    return ":".join(f"{b:02X}" for b in octets)


def load_ssh_public_key(guest_init: GuestInit) -> str:
    """Return the single-line public key for the guest user.

    Raises:
        ResolutionError: If the key file is missing, unreadable, empty or
            holds more than one line
    """
    if guest_init.ssh_public_key:
        return guest_init.ssh_public_key.strip()

    path = os.path.expanduser(guest_init.ssh_key_path or "")
    try:
        with open(path) as f:
            key = f.read().strip()
    except OSError as e:
        raise ResolutionError(f"SSH public key not readable at {path}: {e.strerror or e}") from e

    if not key:
        raise ResolutionError(f"SSH public key file {path} is empty")
    if "\n" in key:
        raise ResolutionError(f"SSH public key file {path} must hold a single key on one line")
    return key


class ResourceResolver:
    """Turns a descriptor into concrete resource identifiers before any step runs."""

    def __init__(self, client: Any, image_cache: Optional[ImageCache] = None, rng: Optional[random.Random] = None):
        """
        Args:
            client: Control plane (ProxmoxClient or compatible)
            image_cache: Local cloud image cache
            rng: Randomness source for MAC generation
        """
        self.client = client
        self.image_cache = image_cache or ImageCache()
        self.rng = rng

    def select_storage_pool(self, descriptor: VMDescriptor, override: Optional[str] = None) -> str:
        """Pick the pool for VM disks. Never guesses between several candidates.

        Raises:
            ResolutionError: If no pool qualifies or the override is not a candidate
            StorageAmbiguityError: If two or more pools qualify without an override
        """
        try:
            pools = self.client.list_storage_pools(IMAGE_CONTENT)
        except ControlPlaneError as e:
            raise ResolutionError(f"Cannot list storage pools: {e}") from e

        candidates: List[str] = [p.name for p in pools if p.active and p.supports(IMAGE_CONTENT)]
        if not candidates:
            raise ResolutionError("No active storage pool supports disk images")

        chosen = override or descriptor.storage_pool
        if chosen:
            if chosen not in candidates:
                raise ResolutionError(
                    f"Storage pool {chosen!r} does not support disk images (candidates: {', '.join(candidates)})"
                )
            return chosen

        if len(candidates) > 1:
            raise StorageAmbiguityError(candidates)

        logger.info(f"💽 Using the only image-capable storage pool: {candidates[0]}")
        return candidates[0]

    def _check_target_size(self, descriptor: VMDescriptor, current_gb: float, source: str) -> None:
        if descriptor.disk_size_gb < current_gb:
            raise ValidationError(
                f"Disk size {descriptor.disk_size_gb}G is smaller than the {source} ({current_gb:.1f}G); "
                "shrinking disks is not supported"
            )

    def resolve(
        self,
        descriptor: VMDescriptor,
        storage_override: Optional[str] = None,
        ssh_public_key: Optional[str] = None,
    ) -> ResolvedResources:
        """Resolve everything the pipeline needs.

        The VMID is allocated last, immediately before the pipeline runs.
        An already loaded ssh_public_key skips reading the key file again.

        Raises:
            ResolutionError: On any unresolvable prerequisite
            ValidationError: If the requested disk size would shrink the source disk
        """
        ssh_key = ssh_public_key or load_ssh_public_key(descriptor.guest_init)
        pool = self.select_storage_pool(descriptor, storage_override)

        image_path = None
        source = descriptor.image_source
        if isinstance(source, CloudImageURL):
            image_path = self.image_cache.ensure(source.url, source.file_name)
            self._check_target_size(descriptor, image_virtual_size_gb(image_path), f"image {source.file_name}")
        else:
            try:
                current = self.client.disk_size_gb(source.template_id, PRIMARY_DISK)
            except ControlPlaneError as e:
                raise ResolutionError(f"Cannot inspect template {source.template_id}: {e}") from e
            if current is None:
                raise ResolutionError(f"Template {source.template_id} has no {PRIMARY_DISK} disk")
            self._check_target_size(descriptor, current, f"template {source.template_id} disk")

        mac = random_mac(self.rng)

        try:
            vmid = self.client.allocate_identifier()
        except ControlPlaneError as e:
            raise ResolutionError(f"Cannot allocate a VMID: {e}") from e

        logger.info(f"🆔 Resolved VMID {vmid}, storage {pool}, MAC {mac}")
        return ResolvedResources(
            vmid=vmid,
            storage_pool=pool,
            mac_address=mac,
            ssh_public_key=ssh_key,
            image_local_path=image_path,
        )
