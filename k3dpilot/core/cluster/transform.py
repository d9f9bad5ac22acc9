from ipaddress import IPv4Network

from k3dpilot.api.schemas.cluster import SUBNET_AUTO, ClusterCreateSchema, PortWithNodeFilters
from k3dpilot.core.cluster.loadbalancer import add_port_configs, generate_loadbalancer_config, new_loadbalancer
from k3dpilot.core.cluster.nodefilter import (
    NODE_FILTER_MAP_KEY_ALL,
    NODE_FILTER_SUFFIX_NONE,
    filter_nodes,
    filter_nodes_with_suffix,
)
from k3dpilot.core.cluster.types import (
    IPAM,
    Cluster,
    ClusterCreateOpts,
    ClusterNetwork,
    KubeAPI,
    Node,
    PortBinding,
    Role,
    ServerOpts,
    generate_node_name,
)
from k3dpilot.core.config import Settings
from k3dpilot.core.exceptions import PreconditionError
from k3dpilot.core.utils import check_cluster_name, setup_logger

PORT_SUFFIX_PROXY = 'proxy'
PORT_SUFFIX_DIRECT = 'direct'

DEFAULT_PORT_NODE_FILTERS = ('servers:*:proxy', 'agents:*:proxy')

_logger = setup_logger('ClusterTransform')


def parse_port_spec(spec: str) -> tuple[str, PortBinding]:
    """'127.0.0.1:8080:80/tcp' -> ('80/tcp', PortBinding('127.0.0.1', '8080'))."""
    address, _, proto = spec.partition('/')
    proto = (proto or 'tcp').lower()
    if proto not in ('tcp', 'udp', 'sctp'):
        raise PreconditionError(f"Invalid protocol '{proto}' in port mapping '{spec}'")

    parts = address.rsplit(':', 2)
    container_port = parts[-1]
    host_port = parts[-2] if len(parts) > 1 else ''
    host_ip = parts[-3] if len(parts) > 2 else ''

    for port in (container_port, host_port):
        if port and not (port.isdigit() and 0 < int(port) <= 65535):
            raise PreconditionError(f"Invalid port '{port}' in port mapping '{spec}'")
    if not container_port:
        raise PreconditionError(f"Port mapping '{spec}' has no container port")

    return f'{container_port}/{proto}', PortBinding(host_ip=host_ip, host_port=host_port)


def _add_port(node: Node, port_key: str, binding: PortBinding) -> None:
    node.ports.setdefault(port_key, []).append(binding)


def _transform_port(cluster: Cluster, mapping: PortWithNodeFilters) -> None:
    node_filters = list(mapping.node_filters)

    if not node_filters or any(f.startswith('loadbalancer') for f in node_filters):
        if cluster.server_loadbalancer is not None:
            _logger.info(
                f"Port mapping '{mapping.port}' has no node filter or targets the loadbalancer: "
                f'defaulting to {DEFAULT_PORT_NODE_FILTERS}'
            )
            node_filters = list(DEFAULT_PORT_NODE_FILTERS)
        elif not node_filters and len(cluster.nodes) == 1:
            node_filters = [f'server:0:{PORT_SUFFIX_DIRECT}']
        else:
            raise PreconditionError(
                f"Port mapping '{mapping.port}' needs a node filter when the loadbalancer is disabled"
            )

    port_key, binding = parse_port_spec(mapping.port)

    filtered = filter_nodes_with_suffix(cluster.nodes, node_filters, PORT_SUFFIX_PROXY, PORT_SUFFIX_DIRECT)
    for suffix, nodes in filtered.items():
        if suffix == NODE_FILTER_MAP_KEY_ALL or not nodes:
            continue

        if suffix in (PORT_SUFFIX_PROXY, NODE_FILTER_SUFFIX_NONE):
            if cluster.server_loadbalancer is None:
                raise PreconditionError(
                    f"Port mapping '{mapping.port}' of type 'proxy' specified, but the loadbalancer is disabled"
                )
            _add_port(cluster.server_loadbalancer.node, port_key, binding)
            add_port_configs(cluster.server_loadbalancer, port_key, nodes)
        else:
            if len(nodes) > 1:
                raise PreconditionError(
                    f"Cannot apply a direct port mapping ({mapping.port}) to more than one node: "
                    f'{", ".join(node.name for node in nodes)}'
                )
            _add_port(nodes[0], port_key, binding)


def _build_network(schema: ClusterCreateSchema) -> ClusterNetwork:
    network = ClusterNetwork()

    if schema.network:
        network.name = schema.network
        network.external = True

    if schema.subnet:
        network.ipam = IPAM(
            ip_prefix=None if schema.subnet == SUBNET_AUTO else IPv4Network(schema.subnet),
            managed=True,
        )

    return network


def transform_request(
    schema: ClusterCreateSchema, settings: Settings | None = None
) -> tuple[Cluster, ClusterCreateOpts]:
    settings = settings or Settings()
    check_cluster_name(schema.name)

    kube_api = KubeAPI(host=schema.api_host, host_ip=schema.api_host_ip, host_port=str(schema.api_port))
    cluster = Cluster(
        name=schema.name,
        network=_build_network(schema),
        token=schema.token or '',
        kube_api=kube_api,
    )

    image = schema.image or settings.k3s_image

    for index in range(schema.servers):
        cluster.nodes.append(
            Node(
                name=generate_node_name(cluster.name, Role.SERVER, index),
                role=Role.SERVER,
                image=image,
                server_opts=ServerOpts(kube_api=kube_api),
            )
        )

    # more than one server means embedded etcd, which needs a bootstrap node
    if schema.servers > 1:
        cluster.init_node = cluster.nodes[0]
        cluster.init_node.server_opts.is_init = True

    for index in range(schema.agents):
        cluster.nodes.append(
            Node(name=generate_node_name(cluster.name, Role.AGENT, index), role=Role.AGENT, image=image)
        )

    if not schema.disable_loadbalancer:
        cluster.server_loadbalancer = new_loadbalancer(cluster.name, settings.loadbalancer_image)
        cluster.server_loadbalancer.config = generate_loadbalancer_config(
            cluster, settings.loadbalancer_worker_connections
        )
        cluster.nodes.append(cluster.server_loadbalancer.node)

    for mapping in schema.ports:
        _transform_port(cluster, mapping)

    k3s_nodes = [node for node in cluster.nodes if node.role in (Role.SERVER, Role.AGENT)]

    for volume in schema.volumes:
        if not volume.node_filters and len(cluster.nodes) > 1:
            raise PreconditionError(
                f"Volume mapping '{volume.volume}' lacks a node filter, but there's more than one node"
            )
        for node in filter_nodes(cluster.nodes, volume.node_filters):
            node.volumes.append(volume.volume)

    for label in schema.labels:
        key, _, value = label.label.partition('=')
        for node in filter_nodes(cluster.nodes, label.node_filters):
            node.runtime_labels[key] = value

    for env_var in schema.env:
        for node in filter_nodes(k3s_nodes, env_var.node_filters):
            node.env.append(env_var.env_var)

    for arg in schema.k3s_args:
        for node in filter_nodes(k3s_nodes, arg.node_filters):
            node.args.append(arg.arg)

    opts = ClusterCreateOpts(
        timeout=schema.timeout,
        disable_loadbalancer=schema.disable_loadbalancer,
        disable_image_volume=schema.disable_image_volume,
        wait_for_server=schema.wait,
    )

    return cluster, opts
