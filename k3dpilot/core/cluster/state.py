from ipaddress import IPv4Address, IPv4Network

from k3dpilot.core.cluster import labels as k3d_labels
from k3dpilot.core.cluster.types import Cluster, KubeAPI, Loadbalancer, Node, Role
from k3dpilot.core.utils import setup_logger

_logger = setup_logger('ClusterState')


def _parse_role(value: str | None) -> Role:
    try:
        return Role(value)
    except ValueError:
        return Role.NONE


def node_state_from_labels(node: Node) -> Node:
    """Fill role, init flag, static IP and API binding of a node from its labels."""
    node_labels = node.runtime_labels

    if node.role == Role.NONE:
        node.role = _parse_role(node_labels.get(k3d_labels.LABEL_ROLE))

    if node.role == Role.SERVER:
        node.server_opts.is_init = k3d_labels.parse_bool_label(node_labels.get(k3d_labels.LABEL_SERVER_IS_INIT)) is True

        if k3d_labels.LABEL_SERVER_API_PORT in node_labels:
            node.server_opts.kube_api = KubeAPI(
                host=node_labels.get(k3d_labels.LABEL_SERVER_API_HOST, ''),
                host_ip=node_labels.get(k3d_labels.LABEL_SERVER_API_HOST_IP, ''),
                host_port=node_labels[k3d_labels.LABEL_SERVER_API_PORT],
            )

    static_ip = node_labels.get(k3d_labels.LABEL_NODE_STATIC_IP)
    if static_ip:
        try:
            node.ip.ip = IPv4Address(static_ip)
            node.ip.static = True
        except ValueError:
            _logger.warning(f"Node '{node.name}' carries an invalid static IP label '{static_ip}'")

    return node


def _populate_cluster_fields(cluster: Cluster) -> None:
    network_external_set = False
    kube_api_set = False

    for node in cluster.nodes:
        node_labels = node.runtime_labels

        if not cluster.network.name:
            cluster.network.name = node_labels.get(k3d_labels.LABEL_NETWORK, '')

        if not cluster.network.id:
            cluster.network.id = node_labels.get(k3d_labels.LABEL_NETWORK_ID, '')

        if not network_external_set:
            external = k3d_labels.parse_bool_label(node_labels.get(k3d_labels.LABEL_NETWORK_EXTERNAL))
            if external is not None:
                cluster.network.external = external
                network_external_set = True

        if cluster.network.ipam.ip_prefix is None and node_labels.get(k3d_labels.LABEL_NETWORK_IP_RANGE):
            try:
                cluster.network.ipam.ip_prefix = IPv4Network(node_labels[k3d_labels.LABEL_NETWORK_IP_RANGE])
            except ValueError:
                _logger.warning(
                    f"Ignoring invalid network range label '{node_labels[k3d_labels.LABEL_NETWORK_IP_RANGE]}' "
                    f"on node '{node.name}'"
                )

        if not cluster.image_volume:
            cluster.image_volume = node_labels.get(k3d_labels.LABEL_IMAGE_VOLUME, '')

        if not cluster.token:
            cluster.token = node_labels.get(k3d_labels.LABEL_CLUSTER_TOKEN, '')

        if node.ip.static:
            cluster.network.ipam.managed = True
            if node.ip.ip not in cluster.network.ipam.ips_used:
                cluster.network.ipam.ips_used.append(node.ip.ip)

        if node.role == Role.SERVER:
            if node.server_opts.is_init and cluster.init_node is None:
                cluster.init_node = node
            if node.server_opts.kube_api is not None and not kube_api_set:
                cluster.kube_api = node.server_opts.kube_api
                kube_api_set = True

        if node.role == Role.LOADBALANCER and cluster.server_loadbalancer is None:
            cluster.server_loadbalancer = Loadbalancer(node=node)


def cluster_from_nodes(name: str, nodes: list[Node]) -> Cluster:
    """Assemble one cluster from nodes carrying its name label, ordered by node name."""
    cluster = Cluster(name=name)

    for node in sorted(nodes, key=lambda n: n.name):
        if node.runtime_labels.get(k3d_labels.LABEL_CLUSTER_NAME) != name:
            _logger.debug(f"Skipping node '{node.name}': it does not belong to cluster '{name}'")
            continue
        cluster.nodes.append(node_state_from_labels(node))

    _populate_cluster_fields(cluster)

    return cluster


def group_clusters(nodes: list[Node]) -> list[Cluster]:
    """Group cluster-internal nodes by cluster name label; clusters are sorted by name."""
    grouped: dict[str, list[Node]] = {}

    for node in nodes:
        cluster_name = node.runtime_labels.get(k3d_labels.LABEL_CLUSTER_NAME)
        if not cluster_name:
            _logger.debug(f"Node '{node.name}' has no cluster label, ignoring it")
            continue
        grouped.setdefault(cluster_name, []).append(node)

    return [cluster_from_nodes(name, grouped[name]) for name in sorted(grouped)]
