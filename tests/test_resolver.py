"""Tests for resolver module."""

import random

import pytest

from pvecloud.exceptions import ControlPlaneError, ResolutionError, StorageAmbiguityError, ValidationError
from pvecloud.models import GuestInit, PoolInfo, TemplateClone
from pvecloud.resolver import ResourceResolver, load_ssh_public_key, random_mac

from conftest import IMAGE_FILE, SSH_KEY


def test_random_mac_is_locally_administered_unicast():
    """Test generated MACs carry the LA bit and never the multicast bit."""
    rng = random.Random(0)
    for _ in range(200):
        mac = random_mac(rng)
        first = int(mac.split(":")[0], 16)
        assert first & 0x02
        assert not first & 0x01
        assert len(mac.split(":")) == 6
        assert mac == mac.upper()


def test_load_key_from_file(guest_init):
    """Test the key file is read and stripped."""
    assert load_ssh_public_key(guest_init) == SSH_KEY


def test_inline_key_wins():
    """Test an inline key is used without touching the filesystem."""
    guest = GuestInit(user="debian", ssh_public_key=SSH_KEY, ssh_key_path="/does/not/exist")
    assert load_ssh_public_key(guest) == SSH_KEY


def test_missing_key_file(tmp_path):
    """Test a missing key file is a ResolutionError."""
    guest = GuestInit(user="debian", ssh_key_path=str(tmp_path / "nope.pub"))
    with pytest.raises(ResolutionError, match="not readable"):
        load_ssh_public_key(guest)


def test_empty_or_multiline_key_file(tmp_path):
    """Test empty and multi-key files are rejected."""
    empty = tmp_path / "empty.pub"
    empty.write_text("\n")
    with pytest.raises(ResolutionError, match="empty"):
        load_ssh_public_key(GuestInit(user="debian", ssh_key_path=str(empty)))

    multi = tmp_path / "multi.pub"
    multi.write_text(SSH_KEY + "\n" + SSH_KEY + "\n")
    with pytest.raises(ResolutionError, match="single key"):
        load_ssh_public_key(GuestInit(user="debian", ssh_key_path=str(multi)))


def test_single_candidate_pool_is_auto_selected(fake_client, image_cache, descriptor):
    """Test the only image-capable pool is used without asking."""
    resolver = ResourceResolver(fake_client, image_cache=image_cache)
    assert resolver.select_storage_pool(descriptor) == "local-lvm"


def test_inactive_pools_are_ignored(fake_client, image_cache, descriptor):
    """Test inactive pools are not candidates."""
    fake_client.list_storage_pools.return_value.append(
        PoolInfo("local-zfs", "zfspool", ("images",), active=False)
    )
    resolver = ResourceResolver(fake_client, image_cache=image_cache)
    assert resolver.select_storage_pool(descriptor) == "local-lvm"


def test_multiple_pools_are_ambiguous(fake_client, image_cache, descriptor):
    """Test two candidates without a choice raise StorageAmbiguityError."""
    fake_client.list_storage_pools.return_value.append(PoolInfo("local-zfs", "zfspool", ("images",)))
    resolver = ResourceResolver(fake_client, image_cache=image_cache)

    with pytest.raises(StorageAmbiguityError) as exc:
        resolver.select_storage_pool(descriptor)

    assert exc.value.candidates == ["local-lvm", "local-zfs"]
    fake_client.allocate_identifier.assert_not_called()


def test_override_resolves_ambiguity(fake_client, image_cache, descriptor):
    """Test an explicit choice among several candidates is honoured."""
    fake_client.list_storage_pools.return_value.append(PoolInfo("local-zfs", "zfspool", ("images",)))
    resolver = ResourceResolver(fake_client, image_cache=image_cache)

    assert resolver.select_storage_pool(descriptor, "local-zfs") == "local-zfs"


def test_descriptor_pool_is_honoured(fake_client, image_cache, make_descriptor):
    """Test the descriptor's storage_pool counts as an explicit choice."""
    fake_client.list_storage_pools.return_value.append(PoolInfo("local-zfs", "zfspool", ("images",)))
    resolver = ResourceResolver(fake_client, image_cache=image_cache)

    assert resolver.select_storage_pool(make_descriptor(storage_pool="local-zfs")) == "local-zfs"


def test_non_candidate_override_rejected(fake_client, image_cache, descriptor):
    """Test a pool that cannot hold images is refused."""
    resolver = ResourceResolver(fake_client, image_cache=image_cache)
    with pytest.raises(ResolutionError, match="does not support disk images"):
        resolver.select_storage_pool(descriptor, "local")


def test_no_candidates(fake_client, image_cache, descriptor):
    """Test a node without image storage is a ResolutionError."""
    fake_client.list_storage_pools.return_value = [PoolInfo("local", "dir", ("iso",))]
    resolver = ResourceResolver(fake_client, image_cache=image_cache)
    with pytest.raises(ResolutionError, match="No active storage pool"):
        resolver.select_storage_pool(descriptor)


def test_pool_listing_failure(fake_client, image_cache, descriptor):
    """Test control plane errors while listing pools become ResolutionError."""
    fake_client.list_storage_pools.side_effect = ControlPlaneError("list-storage-pools", "timeout")
    resolver = ResourceResolver(fake_client, image_cache=image_cache)
    with pytest.raises(ResolutionError, match="Cannot list storage pools"):
        resolver.select_storage_pool(descriptor)


def test_resolve_cloud_image(fake_client, image_cache, descriptor):
    """Test full resolution with a cached image makes no downloads."""
    resolver = ResourceResolver(fake_client, image_cache=image_cache, rng=random.Random(1))

    resolved = resolver.resolve(descriptor)

    assert resolved.vmid == 123
    assert resolved.storage_pool == "local-lvm"
    assert resolved.ssh_public_key == SSH_KEY
    assert resolved.image_local_path == image_cache.cache_dir / IMAGE_FILE
    assert int(resolved.mac_address.split(":")[0], 16) & 0x03 == 0x02
    image_cache.session.get.assert_not_called()


def test_vmid_is_allocated_last(fake_client, image_cache, descriptor):
    """Test the VMID is requested after every other lookup."""
    resolver = ResourceResolver(fake_client, image_cache=image_cache)
    resolver.resolve(descriptor)

    names = [c[0] for c in fake_client.method_calls]
    assert names[-1] == "allocate_identifier"
    assert names.count("allocate_identifier") == 1


def test_vmid_not_allocated_when_key_missing(fake_client, image_cache, make_descriptor, tmp_path):
    """Test an unreadable key aborts before any control plane call."""
    guest = GuestInit(user="debian", ssh_key_path=str(tmp_path / "missing.pub"))
    resolver = ResourceResolver(fake_client, image_cache=image_cache)

    with pytest.raises(ResolutionError):
        resolver.resolve(make_descriptor(guest_init=guest))

    assert fake_client.method_calls == []


def test_shrinking_image_rejected(fake_client, image_cache, make_descriptor):
    """Test a target smaller than the image is a ValidationError."""
    resolver = ResourceResolver(fake_client, image_cache=image_cache)

    with pytest.raises(ValidationError, match="shrinking"):
        resolver.resolve(make_descriptor(disk_size_gb=1))

    fake_client.allocate_identifier.assert_not_called()


def test_resolve_template(fake_client, image_cache, make_descriptor):
    """Test template sources are size-checked against the template disk."""
    fake_client.disk_size_gb.return_value = 32.0
    resolver = ResourceResolver(fake_client, image_cache=image_cache)

    resolved = resolver.resolve(make_descriptor(image_source=TemplateClone(9000)))

    fake_client.disk_size_gb.assert_called_once_with(9000, "scsi0")
    assert resolved.image_local_path is None


def test_template_without_disk(fake_client, image_cache, make_descriptor):
    """Test a template lacking a primary disk is a ResolutionError."""
    fake_client.disk_size_gb.return_value = None
    resolver = ResourceResolver(fake_client, image_cache=image_cache)

    with pytest.raises(ResolutionError, match="has no scsi0"):
        resolver.resolve(make_descriptor(image_source=TemplateClone(9000)))


def test_template_shrink_rejected(fake_client, image_cache, make_descriptor):
    """Test a target smaller than the template disk is a ValidationError."""
    fake_client.disk_size_gb.return_value = 64.0
    resolver = ResourceResolver(fake_client, image_cache=image_cache)

    with pytest.raises(ValidationError):
        resolver.resolve(make_descriptor(image_source=TemplateClone(9000), disk_size_gb=32))


def test_vmid_allocation_failure(fake_client, image_cache, descriptor):
    """Test a failing nextid call becomes a ResolutionError."""
    fake_client.allocate_identifier.side_effect = ControlPlaneError("allocate-identifier", "503")
    resolver = ResourceResolver(fake_client, image_cache=image_cache)

    with pytest.raises(ResolutionError, match="Cannot allocate a VMID"):
        resolver.resolve(descriptor)
