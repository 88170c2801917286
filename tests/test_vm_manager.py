"""Tests for vm_manager module."""

import random
from unittest import mock

import pytest
import yaml

from pvecloud.exceptions import (
    ControlPlaneError,
    ProvisioningError,
    ResolutionError,
    StorageAmbiguityError,
    TemplateError,
)
from pvecloud.models import GuestInit, PoolInfo, RunCommand
from pvecloud.vm_manager import VMManager


def test_provision_end_to_end(fake_client, image_cache, descriptor):
    """Test a full run: resolve, render, execute, with the allocated VMID."""
    manager = VMManager(fake_client, image_cache=image_cache, rng=random.Random(11))

    result = manager.provision(descriptor)

    assert result.succeeded
    assert result.vmid == fake_client.allocate_identifier.return_value
    fake_client.create_vm.assert_called_once()
    assert fake_client.create_vm.call_args[0][0] == 123
    image_cache.session.get.assert_not_called()

    storage, filename, text = fake_client.upload_snippet.call_args[0]
    assert filename == "test-vm-user-data.yml"
    doc = yaml.safe_load(text)
    assert doc["hostname"] == "test-vm"
    assert doc["users"][0]["name"] == "debian"


def test_mac_in_vm_options_is_locally_administered(fake_client, image_cache, descriptor):
    """Test the generated MAC reaches net0."""
    VMManager(fake_client, image_cache=image_cache, rng=random.Random(2)).provision(descriptor)

    net0 = fake_client.create_vm.call_args[0][1]["net0"]
    mac = net0.split(",")[0].split("=")[1]
    assert int(mac.split(":")[0], 16) & 0x03 == 0x02


def test_ambiguous_storage_creates_nothing(fake_client, image_cache, descriptor):
    """Test ambiguity is raised before any VM is created or VMID allocated."""
    fake_client.list_storage_pools.return_value.append(PoolInfo("local-zfs", "zfspool", ("images",)))
    manager = VMManager(fake_client, image_cache=image_cache)

    with pytest.raises(StorageAmbiguityError):
        manager.provision(descriptor)

    fake_client.allocate_identifier.assert_not_called()
    fake_client.create_vm.assert_not_called()

    result = manager.provision(descriptor, storage_override="local-zfs")
    assert fake_client.import_disk.call_args[0][2] == "local-zfs"
    assert result.succeeded


def test_resolution_failure_creates_nothing(fake_client, image_cache, descriptor):
    """Test a failed VMID allocation leaves the node untouched."""
    fake_client.allocate_identifier.side_effect = ControlPlaneError("allocate-identifier", "timeout")

    with pytest.raises(ResolutionError):
        VMManager(fake_client, image_cache=image_cache).provision(descriptor)

    fake_client.create_vm.assert_not_called()


def test_failed_run_is_not_rolled_back(fake_client, image_cache, descriptor):
    """Test a failure leaves the VM in place for inspection."""
    fake_client.set_guest_init.side_effect = ControlPlaneError("set-guest-init", "bad key")

    with pytest.raises(ProvisioningError) as exc:
        VMManager(fake_client, image_cache=image_cache).provision(descriptor)

    assert exc.value.step == "configure-guest-init"
    fake_client.delete_vm.assert_not_called()
    fake_client.start_vm.assert_not_called()


def test_destroy(fake_client):
    """Test destroy delegates to the control plane."""
    VMManager(fake_client).destroy(123)
    fake_client.delete_vm.assert_called_once_with(123)


def test_unknown_placeholder_fails_before_any_control_plane_call(fake_client, image_cache, make_descriptor, guest_init):
    """Test rendering errors surface before storage lookup, download or VMID allocation."""
    guest = GuestInit(
        user="debian",
        ssh_key_path=guest_init.ssh_key_path,
        run_commands=(RunCommand("echo {{ nope }}"),),
    )

    with pytest.raises(TemplateError, match="nope"):
        VMManager(fake_client, image_cache=image_cache).provision(make_descriptor(guest_init=guest))

    assert fake_client.method_calls == []
    image_cache.session.get.assert_not_called()


def test_key_file_is_read_once(fake_client, image_cache, descriptor):
    """Test the rendered payload and the resolved resources share one key."""
    with mock.patch("pvecloud.vm_manager.load_ssh_public_key", return_value="ssh-ed25519 AAAA other@host") as load:
        result = VMManager(fake_client, image_cache=image_cache).provision(descriptor)

    assert result.succeeded
    load.assert_called_once_with(descriptor.guest_init)
    assert fake_client.set_guest_init.call_args[0][2] == "ssh-ed25519 AAAA other@host"
