"""Built-in cloud images and the dev single-box guest preset."""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from pvecloud.exceptions import ValidationError
from pvecloud.models import DHCP, ComposeStack, FileSpec, GuestInit, NetworkConfig, RunCommand, SecretSpec


@dataclass(frozen=True)
class CloudImage:
    """A known Debian/Ubuntu cloud image."""

    key: str
    url: str
    default_user: str
    description: str


IMAGES: Dict[str, CloudImage] = {
    image.key: image
    for image in [
        CloudImage(
            "debian-12",
            "https://cloud.debian.org/images/cloud/bookworm/latest/debian-12-genericcloud-amd64.qcow2",
            "debian",
            "Debian 12 (bookworm) generic cloud",
        ),
        CloudImage(
            "ubuntu-22.04",
            "https://cloud-images.ubuntu.com/jammy/current/jammy-server-cloudimg-amd64.img",
            "ubuntu",
            "Ubuntu 22.04 LTS (jammy) server cloud image",
        ),
        CloudImage(
            "ubuntu-24.04",
            "https://cloud-images.ubuntu.com/noble/current/noble-server-cloudimg-amd64.img",
            "ubuntu",
            "Ubuntu 24.04 LTS (noble) server cloud image",
        ),
    ]
}


def image_url(key_or_url: str) -> str:
    """Expand a catalog key (e.g. 'debian-12') to its URL; URLs pass through."""
    if "://" in key_or_url:
        return key_or_url
    try:
        return IMAGES[key_or_url].url
    except KeyError:
        raise ValidationError(f"Unknown image {key_or_url!r}; known images: {', '.join(sorted(IMAGES))}")


# === DEV SINGLE-BOX ===

DEVSTACK_DIR = "/opt/devstack"

DEVSTACK_SECRETS = (
    SecretSpec("POSTGRES_PASSWORD"),
    SecretSpec("REDIS_PASSWORD"),
    SecretSpec("MINIO_ROOT_PASSWORD"),
    SecretSpec("OPENSEARCH_PASSWORD"),
    SecretSpec("GRAFANA_ADMIN_PASSWORD"),
)

PROMETHEUS_CONFIG = """\
global:
  scrape_interval: 15s
scrape_configs:
  - job_name: 'prometheus'
    static_configs:
      - targets: ['prometheus:9090']
  - job_name: 'node'
    static_configs:
      - targets: ['host.docker.internal:9100']
  - job_name: 'traefik'
    static_configs:
      - targets: ['traefik:8080']
"""


def _devstack_services() -> Dict[str, Any]:
    def web_placeholder(rule: str, name: str) -> Dict[str, Any]:
        return {
            "image": "nginx:alpine",
            "labels": [
                f"traefik.http.routers.{name}.rule={rule}",
                f"traefik.http.services.{name}.loadbalancer.server.port=80",
            ],
            "restart": "unless-stopped",
        }

    services: Dict[str, Any] = {
        "traefik": {
            "image": "traefik:v3.1",
            "command": ["--api.insecure=true", "--providers.docker=true", "--entrypoints.web.address=:80"],
            "ports": ["80:80", "8080:8080"],
            "volumes": ["/var/run/docker.sock:/var/run/docker.sock:ro"],
            "restart": "unless-stopped",
        },
        "postgres": {
            "image": "postgres:16",
            "environment": {
                "POSTGRES_USER": "${POSTGRES_USER}",
                "POSTGRES_PASSWORD": "${POSTGRES_PASSWORD}",
                "POSTGRES_DB": "${POSTGRES_DB}",
            },
            "volumes": ["pgdata:/var/lib/postgresql/data"],
            "healthcheck": {
                "test": ["CMD-SHELL", "pg_isready -U $$POSTGRES_USER"],
                "interval": "10s",
                "timeout": "5s",
                "retries": 5,
            },
            "restart": "unless-stopped",
        },
        "redis": {
            "image": "redis:7",
            "command": ["redis-server", "--requirepass", "${REDIS_PASSWORD}"],
            "ports": ["6379:6379"],
            "restart": "unless-stopped",
        },
        "opensearch": {
            "image": "opensearchproject/opensearch:2",
            "environment": [
                "discovery.type=single-node",
                "OPENSEARCH_INITIAL_ADMIN_PASSWORD=${OPENSEARCH_PASSWORD}",
                "plugins.security.disabled=true",
                "bootstrap.memory_lock=true",
            ],
            "ulimits": {"memlock": {"soft": -1, "hard": -1}, "nofile": {"soft": 65536, "hard": 65536}},
            "volumes": ["osdata:/usr/share/opensearch/data"],
            "ports": ["9200:9200", "9600:9600"],
            "restart": "unless-stopped",
        },
        "osdash": {
            "image": "opensearchproject/opensearch-dashboards:2",
            "environment": ['OPENSEARCH_HOSTS=["http://opensearch:9200"]'],
            "ports": ["5601:5601"],
            "depends_on": ["opensearch"],
            "restart": "unless-stopped",
        },
        "minio": {
            "image": "minio/minio:latest",
            "command": 'server /data --console-address ":9001"',
            "environment": {
                "MINIO_ROOT_USER": "${MINIO_ROOT_USER}",
                "MINIO_ROOT_PASSWORD": "${MINIO_ROOT_PASSWORD}",
            },
            "volumes": ["minio:/data"],
            "ports": ["9000:9000", "9001:9001"],
            "restart": "unless-stopped",
        },
        "prometheus": {
            "image": "prom/prometheus:latest",
            "volumes": ["./prometheus/prometheus.yml:/etc/prometheus/prometheus.yml:ro"],
            "ports": ["9090:9090"],
            "restart": "unless-stopped",
        },
        "grafana": {
            "image": "grafana/grafana:latest",
            "environment": [
                "GF_SECURITY_ADMIN_USER=admin",
                "GF_SECURITY_ADMIN_PASSWORD=${GRAFANA_ADMIN_PASSWORD}",
            ],
            "ports": ["3000:3000"],
            "volumes": ["grafana:/var/lib/grafana"],
            "depends_on": ["prometheus"],
            "restart": "unless-stopped",
        },
        "api": web_placeholder("HostRegexp(`{host:.+}`) && PathPrefix(`/api`)", "api"),
        "realtime": web_placeholder("PathPrefix(`/ws`)", "realtime"),
        "web": web_placeholder("PathPrefix(`/`)", "web"),
        "worker": {
            "image": "alpine:3",
            "command": ["sh", "-c", "while true; do echo worker alive; sleep 30; done"],
            "restart": "unless-stopped",
        },
    }
    services["web"]["volumes"] = ["webroot:/usr/share/nginx/html:ro"]
    return services


def devstack_guest_init(
    user: str,
    ssh_public_key: str = "",
    ssh_key_path: Optional[str] = None,
    network: Optional[NetworkConfig] = None,
    timezone: Optional[str] = None,
    hostname: Optional[str] = None,
) -> GuestInit:
    """Guest-init for a single VM running the Docker Compose dev stack."""
    compose = ComposeStack(
        services=_devstack_services(),
        directory=DEVSTACK_DIR,
        project_name="dev-singlebox",
        volumes={"pgdata": {}, "osdata": {}, "minio": {}, "grafana": {}, "webroot": {}},
        env={
            "POSTGRES_USER": "app",
            "POSTGRES_PASSWORD": "{{ POSTGRES_PASSWORD }}",
            "POSTGRES_DB": "appdb",
            "REDIS_PASSWORD": "{{ REDIS_PASSWORD }}",
            "MINIO_ROOT_USER": "minioadmin",
            "MINIO_ROOT_PASSWORD": "{{ MINIO_ROOT_PASSWORD }}",
            "OPENSEARCH_PASSWORD": "{{ OPENSEARCH_PASSWORD }}",
            "GRAFANA_ADMIN_PASSWORD": "{{ GRAFANA_ADMIN_PASSWORD }}",
        },
        files=(FileSpec(f"{DEVSTACK_DIR}/prometheus/prometheus.yml", PROMETHEUS_CONFIG),),
    )

    return GuestInit(
        user=user,
        ssh_public_key=ssh_public_key,
        ssh_key_path=ssh_key_path,
        network=network or DHCP(),
        hostname=hostname,
        timezone=timezone,
        groups=("sudo",),
        packages=("ca-certificates", "curl", "gnupg", "git", "apt-transport-https", "jq"),
        package_update=True,
        package_upgrade=True,
        files=(
            FileSpec("/etc/sysctl.d/99-opensearch.conf", "vm.max_map_count=262144\n"),
            FileSpec(
                "/etc/security/limits.d/90-opensearch.conf",
                "* soft memlock unlimited\n* hard memlock unlimited\n",
            ),
        ),
        run_commands=(RunCommand("sysctl --system"),),
        secrets=DEVSTACK_SECRETS,
        compose=compose,
        final_message=(
            "Dev single-box is ready. SSH in as '{{ user }}'. Stack is in " + DEVSTACK_DIR + ".\n"
        ),
    )
