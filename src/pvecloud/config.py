import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from dotenv import load_dotenv

from pvecloud.exceptions import ValidationError
from pvecloud.models import VMDescriptor


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Loads and manages configuration from environment variables."""

    load_dotenv()

    # Proxmox API token in "user@realm!tokenname=secret" form
    API_TOKEN = os.getenv("API_TOKEN")
    PVE_HOST = os.getenv("PVE_HOST", "localhost")
    PVE_NODE = os.getenv("PVE_NODE")  # defaults to the short host name
    PVE_VERIFY_SSL = _env_bool("PVE_VERIFY_SSL", False)
    # Deadline in seconds applied to every control-plane call
    PVE_TIMEOUT = int(os.getenv("PVE_TIMEOUT", "60"))
    # Run node-local commands with subprocess instead of SSH
    PVE_LOCAL = _env_bool("PVE_LOCAL", False)

    SSH_USER = os.getenv("SSH_USER", "root")
    SSH_KEY_PATH = os.path.expanduser(os.getenv("SSH_KEY_PATH", "~/.ssh/id_rsa"))
    SSH_PUBKEY_PATH = os.path.expanduser(os.getenv("SSH_PUBKEY_PATH", "~/.ssh/id_rsa.pub"))

    IMAGE_CACHE_DIR = os.getenv("IMAGE_CACHE_DIR", "/var/lib/vz/template/iso")
    # Filesystem path backing SNIPPET_STORAGE on the node
    SNIPPET_DIR = os.getenv("SNIPPET_DIR", "/var/lib/vz/snippets")
    SNIPPET_STORAGE = os.getenv("SNIPPET_STORAGE", "local")
    DOWNLOAD_TIMEOUT = int(os.getenv("DOWNLOAD_TIMEOUT", "300"))

    CLOUD_USER = os.getenv("CLOUD_USER", "debian")
    TIMEZONE = os.getenv("TIMEZONE", "Etc/UTC")
    VM_BRIDGE = os.getenv("VM_BRIDGE", "vmbr0")
    VM_START_TIMEOUT = int(os.getenv("VM_START_TIMEOUT", "180"))

    @classmethod
    def node_name(cls) -> str:
        """Proxmox node name, derived from PVE_HOST when PVE_NODE is unset."""
        if cls.PVE_NODE:
            return cls.PVE_NODE
        host = cls.PVE_HOST
        if host in ("localhost", "127.0.0.1"):
            return os.uname().nodename.split(".")[0]
        return host.split(".")[0]

    @classmethod
    def api_credentials(cls) -> Dict[str, str]:
        """Split API_TOKEN into proxmoxer keyword arguments.

        Raises:
            ValueError: If API_TOKEN is unset or malformed
        """
        if cls.API_TOKEN is None:
            raise ValueError("API_TOKEN environment variable is not set")
        try:
            user_token, token_value = cls.API_TOKEN.split("=", 1)
            user, token_name = user_token.split("!", 1)
        except ValueError:
            raise ValueError("API_TOKEN must look like 'user@realm!tokenname=secret'")
        return {"user": user, "token_name": token_name, "token_value": token_value}


def load_descriptor(path: Union[str, Path], overrides: Optional[Dict[str, Any]] = None) -> VMDescriptor:
    """Load a VM descriptor from a YAML file.

    Args:
        path: Descriptor file
        overrides: Top-level keys replacing the file's values (e.g. CLI flags)

    Returns:
        Validated VMDescriptor

    Raises:
        ValidationError: If the file is missing, is not YAML, or does not
            describe a valid VM
    """
    path = Path(path)
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ValidationError(f"Descriptor file not found: {path}")
    except yaml.YAMLError as e:
        raise ValidationError(f"Descriptor {path} is not valid YAML: {e}") from e

    if not isinstance(data, dict):
        raise ValidationError(f"Descriptor {path} must contain a mapping")

    for key, value in (overrides or {}).items():
        if value is not None:
            data[key] = value
    return VMDescriptor.from_dict(data)
