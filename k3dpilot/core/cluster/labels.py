from types import MappingProxyType

from k3dpilot.core.config import K3DPILOT_VERSION

# labels are the only persisted cluster state, bump when a key changes meaning
LABEL_SCHEMA_VERSION = '1'

LABEL_APP = 'app'
LABEL_VERSION = 'k3d.version'
LABEL_LABELS_VERSION = 'k3d.labels.version'

LABEL_CLUSTER_NAME = 'k3d.cluster'
LABEL_CLUSTER_URL = 'k3d.cluster.url'
LABEL_CLUSTER_TOKEN = 'k3d.cluster.token'
LABEL_IMAGE_VOLUME = 'k3d.cluster.imageVolume'

LABEL_NETWORK = 'k3d.cluster.network'
LABEL_NETWORK_ID = 'k3d.cluster.network.id'
LABEL_NETWORK_EXTERNAL = 'k3d.cluster.network.external'
LABEL_NETWORK_IP_RANGE = 'k3d.cluster.network.iprange'

LABEL_ROLE = 'k3d.role'
LABEL_SERVER_IS_INIT = 'k3d.server.init'
LABEL_SERVER_API_HOST = 'k3d.server.api.host'
LABEL_SERVER_API_HOST_IP = 'k3d.server.api.hostIP'
LABEL_SERVER_API_PORT = 'k3d.server.api.port'
LABEL_NODE_STATIC_IP = 'k3d.node.staticIP'

DEFAULT_RUNTIME_LABELS = MappingProxyType({LABEL_APP: 'k3d'})

DEFAULT_RUNTIME_LABELS_VAR = MappingProxyType({
    LABEL_VERSION: K3DPILOT_VERSION,
    LABEL_LABELS_VERSION: LABEL_SCHEMA_VERSION,
})


def fill_runtime_labels(labels: dict[str, str], role: str) -> dict[str, str]:
    """Return defaults overlaid with the given labels; the role label always wins."""
    result = {**DEFAULT_RUNTIME_LABELS, **DEFAULT_RUNTIME_LABELS_VAR, **labels}
    result[LABEL_ROLE] = role

    return result


def parse_bool_label(value: str | None) -> bool | None:
    if value is None:
        return None

    lowered = value.strip().lower()
    if lowered in ('true', '1', 't', 'yes'):
        return True
    if lowered in ('false', '0', 'f', 'no'):
        return False

    return None
