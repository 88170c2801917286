"""
src/pvecloud/payload.py

Render cloud-init user-data for a VM descriptor.

The document is built as plain Python data and serialized with PyYAML, so
values such as SSH keys never need escaping. User-supplied text (file
contents, run commands, compose env values, the final message) may reference
``{{ name }}`` placeholders; any placeholder without a value is an error,
never emitted literally. ``${VAR}`` is left alone for Docker Compose.
"""

import logging
import random
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import yaml

from pvecloud.exceptions import TemplateError, ValidationError
from pvecloud.models import ComposeStack, FileSpec, RunCommand, SecretSpec, VMDescriptor

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")
HEX_DIGITS = "0123456789abcdef"
PASSWORDLESS_SUDO = "ALL=(ALL) NOPASSWD:ALL"

OS_RELEASE_ID = '$(. /etc/os-release && echo "$ID")'
DOCKER_INSTALL_COMMANDS = [
    "install -m 0755 -d /etc/apt/keyrings",
    f"curl -fsSL https://download.docker.com/linux/{OS_RELEASE_ID}/gpg -o /etc/apt/keyrings/docker.asc",
    "chmod a+r /etc/apt/keyrings/docker.asc",
    'echo "deb [arch=$(dpkg --print-architecture) signed-by=/etc/apt/keyrings/docker.asc] '
    f"https://download.docker.com/linux/{OS_RELEASE_ID} "
    '$(. /etc/os-release && echo "$VERSION_CODENAME") stable" > /etc/apt/sources.list.d/docker.list',
    "apt-get update",
    "apt-get install -y docker-ce docker-ce-cli containerd.io docker-buildx-plugin docker-compose-plugin",
]
DOCKER_PREREQ_PACKAGES = ["ca-certificates", "curl", "gnupg"]


class _CloudConfigDumper(yaml.SafeDumper):
    """SafeDumper that writes multi-line strings as literal blocks."""


def _represent_str(dumper: yaml.SafeDumper, data: str) -> yaml.ScalarNode:
    if "\n" in data:
        return dumper.represent_scalar("tag:yaml.org,2002:str", data, style="|")
    return dumper.represent_scalar("tag:yaml.org,2002:str", data)


_CloudConfigDumper.add_representer(str, _represent_str)


def dump_yaml(data: Any) -> str:
    return yaml.dump(data, Dumper=_CloudConfigDumper, sort_keys=False, default_flow_style=False, width=4096)


def render_template(text: str, variables: Mapping[str, str], where: str) -> str:
    """Substitute {{ name }} placeholders, failing on any that have no value."""
    missing: List[str] = []

    def _sub(match: "re.Match[str]") -> str:
        name = match.group(1)
        if name not in variables:
            missing.append(name)
            return match.group(0)
        return variables[name]

    rendered = PLACEHOLDER_RE.sub(_sub, text)
    if missing:
        raise TemplateError(missing, where)
    return rendered


@dataclass(frozen=True)
class Payload:
    """Rendered user-data plus the secrets generated while rendering it.

    The text is the only durable record of those secrets.
    """

    filename: str
    text: str
    secrets: Dict[str, str] = field(default_factory=dict)


class PayloadBuilder:
    """Builds the cloud-config document for a descriptor."""

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self.rng = rng or random.SystemRandom()

    def generate_secret(self, spec: SecretSpec) -> str:
        return "".join(self.rng.choice(HEX_DIGITS) for _ in range(spec.length))

    def _variables(self, descriptor: VMDescriptor, ssh_public_key: str, secrets: Dict[str, str]) -> Dict[str, str]:
        guest = descriptor.guest_init
        variables = {
            "vm_name": descriptor.name,
            "hostname": descriptor.hostname,
            "user": guest.user,
            "ssh_public_key": ssh_public_key,
        }
        if guest.timezone:
            variables["timezone"] = guest.timezone
        variables.update(guest.variables)
        variables.update(secrets)
        return variables

    def _write_file(self, spec: FileSpec, variables: Mapping[str, str]) -> Dict[str, Any]:
        return {
            "path": render_template(spec.path, variables, f"path of {spec.path}"),
            "content": render_template(spec.content, variables, f"file {spec.path}"),
            "owner": spec.owner,
            "permissions": spec.permissions if spec.permissions.startswith("0") else "0" + spec.permissions,
        }

    def _run_command(self, command: RunCommand, variables: Mapping[str, str]) -> str:
        rendered = render_template(command.command, variables, f"run command {command.command!r}")
        return f"{rendered} || true" if command.advisory else rendered

    def _compose_files(self, stack: ComposeStack, variables: Mapping[str, str]) -> List[Dict[str, Any]]:
        compose_doc: Dict[str, Any] = {}
        if stack.project_name:
            compose_doc["name"] = stack.project_name
        compose_doc["services"] = dict(stack.services)
        if stack.volumes:
            compose_doc["volumes"] = dict(stack.volumes)

        files = [
            FileSpec(path=f"{stack.directory}/docker-compose.yml", content=dump_yaml(compose_doc)),
        ]
        if stack.env:
            env_text = "".join(f"{key}={value}\n" for key, value in stack.env.items())
            files.append(FileSpec(path=f"{stack.directory}/.env", content=env_text, permissions="0600"))
        files.extend(stack.files)
        return [self._write_file(spec, variables) for spec in files]

    def _compose_commands(self, stack: ComposeStack, user: str) -> List[str]:
        return DOCKER_INSTALL_COMMANDS + [
            f"usermod -aG docker {user}",
            f"mkdir -p {stack.directory}",
            f"chown -R {user}:{user} {stack.directory}",
            f"cd {stack.directory} && docker compose up -d",
        ]

    def build(self, descriptor: VMDescriptor, ssh_public_key: Optional[str] = None) -> Payload:
        """Render the user-data document for descriptor.

        Args:
            descriptor: VM to render for
            ssh_public_key: Key material resolved from ssh_key_path; defaults
                to the key embedded in the descriptor

        Returns:
            Payload with the cloud-config text and generated secrets

        Raises:
            ValidationError: If no key is available
            TemplateError: If a placeholder cannot be resolved
        """
        guest = descriptor.guest_init
        key = (ssh_public_key or guest.ssh_public_key).strip()
        if not key:
            raise ValidationError("No SSH public key available for the guest user")

        secrets = {spec.name: self.generate_secret(spec) for spec in guest.secrets}
        variables = self._variables(descriptor, key, secrets)

        doc: Dict[str, Any] = {
            "hostname": descriptor.hostname,
            "preserve_hostname": False,
            "manage_etc_hosts": True,
        }
        if guest.timezone:
            doc["timezone"] = guest.timezone
        if guest.locale:
            doc["locale"] = guest.locale

        doc["users"] = [
            {
                "name": guest.user,
                "groups": list(guest.groups),
                "shell": guest.shell,
                "sudo": PASSWORDLESS_SUDO,
                "lock_passwd": True,
                "ssh_authorized_keys": [key],
            }
        ]

        packages = list(guest.packages)
        if guest.compose:
            packages += [p for p in DOCKER_PREREQ_PACKAGES if p not in packages]
        doc["package_update"] = guest.package_update
        doc["package_upgrade"] = guest.package_upgrade
        if packages:
            doc["packages"] = packages

        write_files = [self._write_file(spec, variables) for spec in guest.files]
        if guest.compose:
            write_files += self._compose_files(guest.compose, variables)
        if write_files:
            doc["write_files"] = write_files

        commands = [self._run_command(c, variables) for c in guest.run_commands]
        if guest.compose:
            commands += self._compose_commands(guest.compose, guest.user)
        if commands:
            # runcmd becomes one shell script; stop at the first non-advisory failure
            doc["runcmd"] = ["set -e"] + commands

        if guest.final_message:
            doc["final_message"] = render_template(guest.final_message, variables, "final message")

        text = "#cloud-config\n" + dump_yaml(doc)
        if secrets:
            logger.warning(
                f"🔐 Generated {len(secrets)} secret(s) for {descriptor.name}; "
                "they are stored only in the rendered payload"
            )
        return Payload(filename=f"{descriptor.name}-user-data.yml", text=text, secrets=secrets)
