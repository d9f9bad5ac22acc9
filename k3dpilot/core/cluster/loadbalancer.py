import yaml

from k3dpilot.core.actions.write_file_action import WriteFileAction
from k3dpilot.core.cluster.types import (
    Cluster,
    LifecycleStage,
    Loadbalancer,
    LoadbalancerConfig,
    LoadbalancerSettings,
    Node,
    NodeHook,
    Role,
)
from k3dpilot.core.config import (
    DEFAULT_API_PORT,
    DEFAULT_LOADBALANCER_CONFIG_PATH,
    DEFAULT_LOADBALANCER_IMAGE,
    DEFAULT_LOADBALANCER_WORKER_CONNECTIONS,
    DEFAULT_OBJECT_NAME_PREFIX,
)
from k3dpilot.core.exceptions import LoadbalancerConfigError

API_PORT_KEY = f'{DEFAULT_API_PORT}/tcp'


def _port_sort_key(port_key: str) -> tuple[int, str]:
    port, _, proto = port_key.partition('/')
    return (int(port) if port.isdigit() else 0, proto)


def normalize_port_key(port: str) -> str:
    """'80' -> '80/tcp', '53/UDP' -> '53/udp'."""
    port, _, proto = port.partition('/')
    return f'{port}/{(proto or "tcp").lower()}'


def loadbalancer_name(cluster_name: str) -> str:
    return f'{DEFAULT_OBJECT_NAME_PREFIX}-{cluster_name}-serverlb'


def new_loadbalancer(cluster_name: str, image: str = DEFAULT_LOADBALANCER_IMAGE) -> Loadbalancer:
    return Loadbalancer(
        node=Node(name=loadbalancer_name(cluster_name), role=Role.LOADBALANCER, image=image),
    )


def generate_loadbalancer_config(
    cluster: Cluster, worker_connections: int = DEFAULT_LOADBALANCER_WORKER_CONNECTIONS
) -> LoadbalancerConfig:
    # keys are sorted, backends keep cluster node order
    servers = [node.name for node in cluster.nodes if node.role == Role.SERVER]

    port_keys = {API_PORT_KEY}
    settings = LoadbalancerSettings(worker_connections=worker_connections)

    if cluster.server_loadbalancer is not None:
        port_keys.update(normalize_port_key(p) for p in cluster.server_loadbalancer.node.ports)
        settings.default_proxy_timeout = cluster.server_loadbalancer.config.settings.default_proxy_timeout

    return LoadbalancerConfig(
        ports={key: list(servers) for key in sorted(port_keys, key=_port_sort_key)},
        settings=settings,
    )


def add_port_configs(loadbalancer: Loadbalancer, port: str, nodes: list[Node]) -> None:
    """Proxy `port` to the given nodes, keeping backends already configured."""
    key = normalize_port_key(port)
    backends = loadbalancer.config.ports.setdefault(key, [])

    for node in nodes:
        if node.role == Role.LOADBALANCER:
            raise LoadbalancerConfigError(
                f'Cannot proxy port {key} to the loadbalancer itself (node {node.name})'
            )
        if node.name not in backends:
            backends.append(node.name)


def dump_loadbalancer_config(config: LoadbalancerConfig) -> str:
    data = config.model_dump(by_alias=True, exclude_none=True)
    data['ports'] = {key: data['ports'][key] for key in sorted(data['ports'], key=_port_sort_key)}

    return yaml.safe_dump(data, sort_keys=False, default_flow_style=False)


def load_loadbalancer_config(content: str | bytes) -> LoadbalancerConfig:
    if isinstance(content, bytes):
        content = content.strip(b'\x00').decode('utf-8')

    return LoadbalancerConfig.model_validate(yaml.safe_load(content) or {})


def attach_config_hook(node: Node, config: LoadbalancerConfig) -> None:
    """Replace any previous config-writing PreStart hook on the loadbalancer node."""
    node.hook_actions = [
        hook for hook in node.hook_actions
        if not (isinstance(hook.action, WriteFileAction) and hook.action.dest == DEFAULT_LOADBALANCER_CONFIG_PATH)
    ]
    node.hook_actions.append(
        NodeHook(
            stage=LifecycleStage.PRE_START,
            action=WriteFileAction(
                name='write-loadbalancer-config',
                content=dump_loadbalancer_config(config),
                dest=DEFAULT_LOADBALANCER_CONFIG_PATH,
                mode=0o744,
            ),
        )
    )


def prepare_loadbalancer(cluster: Cluster, labels: dict[str, str], image: str = DEFAULT_LOADBALANCER_IMAGE) -> Node:
    """Make sure the cluster has a loadbalancer node wired to the cluster network."""
    if cluster.server_loadbalancer is None:
        cluster.server_loadbalancer = new_loadbalancer(cluster.name, image)

    node = cluster.server_loadbalancer.node
    node.ports[API_PORT_KEY] = [cluster.kube_api.binding]
    node.networks = [cluster.network.name]
    node.runtime_labels = {**node.runtime_labels, **labels}
    node.restart = True

    if node not in cluster.nodes:
        cluster.nodes.append(node)

    return node
