"""Cloud-init VM provisioning for Proxmox VE."""

__version__ = "0.1.0"
