"""Shared test fixtures and configuration for pvecloud tests."""

import random
import struct
from pathlib import Path
from unittest import mock

import pytest

from pvecloud.config import Config
from pvecloud.image_cache import QCOW2_MAGIC, ImageCache
from pvecloud.models import DHCP, CloudImageURL, GuestInit, PoolInfo, VMDescriptor, VMHandle
from pvecloud.proxmox_api import ProxmoxClient

IMAGE_URL = "https://cloud.debian.org/images/cloud/bookworm/latest/debian-12-genericcloud-amd64.qcow2"
IMAGE_FILE = "debian-12-genericcloud-amd64.qcow2"
SSH_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAITestKeyMaterial test@example.com"


def write_qcow2(path: Path, virtual_size_gb: float = 2) -> Path:
    """Write a file with a qcow2 header advertising virtual_size_gb."""
    header = bytearray(64)
    header[:4] = QCOW2_MAGIC
    header[24:32] = struct.pack(">Q", int(virtual_size_gb * 1024**3))
    path.write_bytes(bytes(header))
    return path


@pytest.fixture
def temp_ssh_key(tmp_path):
    """Create temporary SSH public key for testing."""
    key_file = tmp_path / "id_ed25519.pub"
    key_file.write_text(SSH_KEY + "\n")
    return str(key_file)


@pytest.fixture
def guest_init(temp_ssh_key):
    """Plain guest-init reading its key from a file."""
    return GuestInit(user="debian", ssh_key_path=temp_ssh_key, network=DHCP())


@pytest.fixture
def make_descriptor(guest_init):
    """Factory for descriptors; keyword arguments override the defaults."""

    def _make(**overrides):
        values = dict(
            name="test-vm",
            cores=8,
            memory_mb=8192,
            disk_size_gb=500,
            bridge="vmbr0",
            image_source=CloudImageURL(IMAGE_URL),
            guest_init=guest_init,
        )
        values.update(overrides)
        return VMDescriptor(**values)

    return _make


@pytest.fixture
def descriptor(make_descriptor):
    return make_descriptor()


@pytest.fixture
def image_cache(tmp_path):
    """Image cache with the Debian image already present; the session must never be used."""
    cache_dir = tmp_path / "cache"
    cache_dir.mkdir()
    write_qcow2(cache_dir / IMAGE_FILE)
    return ImageCache(cache_dir=cache_dir, session=mock.MagicMock(), timeout=5)


@pytest.fixture
def fake_client():
    """Control plane double with one image-capable pool and VMID 123."""
    client = mock.MagicMock(spec=ProxmoxClient)
    client.node = "pve"
    client.list_storage_pools.return_value = [
        PoolInfo("local", "dir", ("iso", "vztmpl", "snippets")),
        PoolInfo("local-lvm", "lvmthin", ("images", "rootdir")),
    ]
    client.allocate_identifier.return_value = 123
    client.create_vm.side_effect = lambda vmid, options: VMHandle("pve", vmid)
    client.clone_vm.side_effect = lambda template_id, vmid, name, storage=None: VMHandle("pve", vmid)
    client.import_disk.return_value = "local-lvm:vm-123-disk-0"
    client.upload_snippet.side_effect = lambda storage, filename, text: f"{storage}:snippets/{filename}"
    client.resize_disk.return_value = True
    client.disk_size_gb.return_value = 2.0
    client.vm_config.return_value = {}
    return client


@pytest.fixture
def rng():
    return random.Random(42)


@pytest.fixture
def mock_proxmox():
    """Mock Proxmox API client for testing."""
    with mock.patch('pvecloud.proxmox_api.ProxmoxAPI') as mock_api, \
         mock.patch.object(Config, "API_TOKEN", "root@pam!pvecloud=secretvalue"):
        proxmox = mock.MagicMock()
        mock_api.return_value = proxmox

        proxmox.cluster.nextid.get.return_value = "123"
        proxmox.nodes.return_value.tasks.return_value.status.get.return_value = {
            "status": "stopped",
            "exitstatus": "OK",
        }
        proxmox.nodes.return_value.qemu.return_value.status.current.get.return_value = {"status": "running"}

        yield proxmox


@pytest.fixture
def mock_shell():
    """Node shell double; commands succeed and files already exist on the node."""
    shell = mock.MagicMock()
    shell.file_exists.return_value = True
    shell.run.return_value = ""
    return shell


@pytest.fixture
def proxmox_client(mock_proxmox, mock_shell):
    """ProxmoxClient wired to the mocked API and shell."""
    return ProxmoxClient(host="pve.example.com", node="pve", timeout=5, shell=mock_shell)
