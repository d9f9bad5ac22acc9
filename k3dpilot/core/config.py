import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(Path(Path(__file__).parent.parent.parent.absolute(), '.env'))

K3DPILOT_VERSION = '0.1.0'

DEFAULT_OBJECT_NAME_PREFIX = 'k3d'
DEFAULT_CLUSTER_NAME = 'k3s-default'
DEFAULT_CLUSTER_NAME_MAX_LENGTH = 32

DEFAULT_API_PORT = '6443'
DEFAULT_API_HOST = '0.0.0.0'

DEFAULT_K3S_IMAGE = 'docker.io/rancher/k3s:v1.27.4-k3s1'
DEFAULT_LOADBALANCER_IMAGE = 'ghcr.io/k3d-io/k3d-proxy:5.6.0'

DEFAULT_LOADBALANCER_CONFIG_PATH = '/etc/confd/values.yaml'
DEFAULT_ETC_HOSTS_PATH = '/etc/hosts'
DEFAULT_LOADBALANCER_WORKER_CONNECTIONS = 1024

DEFAULT_IMAGE_VOLUME_MOUNT_PATH = '/k3d/images'
DEFAULT_K3D_INTERNAL_HOST_RECORD = 'host.k3d.internal'

DEFAULT_RUNTIME_NETWORK = 'bridge'
HOST_NETWORK = 'host'

# flags only the initializing server may carry
DO_NOT_COPY_SERVER_FLAGS = ('--cluster-init',)

K3S_ENV_CLUSTER_TOKEN = 'K3S_TOKEN'
K3S_ENV_CLUSTER_CONNECT_URL = 'K3S_URL'
K3S_ENV_KUBECONFIG_OUTPUT = 'K3S_KUBECONFIG_OUTPUT'

DEFAULT_NODE_ENV = (f'{K3S_ENV_KUBECONFIG_OUTPUT}=/output/kubeconfig.yaml',)

NODE_WAIT_RESTART_WARN_SECONDS = 120


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


@dataclass(frozen=True)
class Settings:
    k3s_image: str = field(default_factory=lambda: os.getenv('K3D_IMAGE_K3S', DEFAULT_K3S_IMAGE))
    loadbalancer_image: str = field(
        default_factory=lambda: os.getenv('K3D_IMAGE_LOADBALANCER', DEFAULT_LOADBALANCER_IMAGE)
    )
    node_wait_backoff_limit: int = field(default_factory=lambda: _env_int('K3D_DEBUG_NODE_WAIT_BACKOFF_LIMIT', 10))
    node_wait_poll_interval: float = field(default_factory=lambda: _env_float('K3D_NODE_WAIT_POLL_INTERVAL', 0.5))
    node_wait_settle_delay: float = field(default_factory=lambda: _env_float('K3D_NODE_WAIT_SETTLE_DELAY', 0.5))
    server_create_delay: float = field(default_factory=lambda: _env_float('K3D_SERVER_CREATE_DELAY', 1.0))
    loadbalancer_worker_connections: int = field(
        default_factory=lambda: _env_int('K3D_LB_WORKER_CONNECTIONS', DEFAULT_LOADBALANCER_WORKER_CONNECTIONS)
    )


COREDNS_PATCH_RETRIES = _env_int('K3D_DEBUG_COREDNS_RETRIES', 10)
COREDNS_PATCH_RETRY_WAIT_SECONDS = _env_float('K3D_DEBUG_COREDNS_RETRY_WAIT', 1.0)
